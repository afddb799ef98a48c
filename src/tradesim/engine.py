from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, cast

from tradesim.market import banking_service_eligible, buyer_price, refresh_prices, trade_loan_status, vendor_price
from tradesim.models import (
    FINANCING_CASH,
    FINANCING_FACTORING,
    FINANCING_TRADE_LOAN,
    LOAN_FACTORING,
    LOAN_TRADE,
    RUN_ACTIVE,
    RUN_BANKRUPT,
    RUN_TIME_UP,
    RUN_VICTORY,
    BankingOutcome,
    DayAdvanceReport,
    GameState,
    Loan,
    ManufacturingOrder,
    SalesOrder,
    SourcingOrder,
)
from tradesim.reporting import format_money, format_qty


log = logging.getLogger(__name__)


EVENT_COST_SHOCK = "cost_shock"
EVENT_REPUTATION_BOOST = "reputation_boost"
EVENT_RATE_CHANGE = "rate_change"
RANDOM_EVENT_KINDS: Tuple[str, ...] = (EVENT_COST_SHOCK, EVENT_REPUTATION_BOOST, EVENT_RATE_CHANGE)


class ValidationError(Exception):
    """A rejected action. `code` is stable for callers, `message` is for people."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class EngineConfig:
    starting_cash: float = 50_000.0
    starting_reputation: int = 10
    win_cash_target: float = 1_000_000.0
    horizon_days: int = 365
    bankruptcy_grace_days: int = 60

    # Ledger caps, enforced at creation time only
    max_sourcing_orders: int = 3
    max_sales_orders: int = 3
    max_outstanding_loans: int = 5
    trade_loan_tenors: Tuple[int, ...] = (30, 60, 90)

    random_event_probability: float = 0.20
    promotion_probability: float = 0.05
    promotion_days: int = 5
    promotion_discount_min: float = 0.10
    promotion_discount_max: float = 0.30

    market_variation_min: float = 0.95
    market_variation_max: float = 1.05
    vendor_jitter_min: float = 0.98
    vendor_jitter_max: float = 1.02

    arrival_days_min: int = 2
    arrival_days_max: int = 4
    sale_completion_days_min: int = 1
    sale_completion_days_max: int = 2

    units_per_reputation_bonus: int = 1000
    reputation_per_milestone: int = 2
    reputation_buyer_paid: int = 2
    reputation_buyer_default: int = -5
    reputation_factoring_default: int = -5
    reputation_loan_default: int = -10
    reputation_banking_service: int = 5
    reputation_event_boost: int = 5

    trade_rate_min: float = 0.04
    trade_rate_max: float = 0.10
    trade_rate_step: float = 0.01
    factoring_rate_min: float = 0.04
    factoring_rate_max: float = 0.08
    factoring_rate_step: float = 0.0075
    cost_shock_min: float = 1.01
    cost_shock_max: float = 1.02


def _to_jsonable(x: object) -> object:
    if isinstance(x, tuple):
        return [_to_jsonable(v) for v in x]
    if isinstance(x, list):
        return [_to_jsonable(v) for v in x]
    if isinstance(x, dict):
        return {str(k): _to_jsonable(v) for k, v in x.items()}
    return x


def _to_tuple(x: object) -> object:
    if isinstance(x, list):
        return tuple(_to_tuple(v) for v in x)
    if isinstance(x, dict):
        return {k: _to_tuple(v) for k, v in x.items()}
    return x


def rng_from_state(state: GameState) -> random.Random:
    rng = random.Random()
    seed = int(getattr(state, "rng_seed", 20260101) or 20260101)
    st = getattr(state, "rng_state", None)
    if st is not None:
        try:
            rng.setstate(cast(tuple[Any, ...], _to_tuple(st)))
            return rng
        except (TypeError, ValueError):
            log.warning("stored rng state is unusable; reseeding from %d", seed)
    rng.seed(seed)
    return rng


def persist_rng_state(state: GameState, rng: random.Random) -> None:
    try:
        state.rng_state = _to_jsonable(rng.getstate())
    except (TypeError, NotImplementedError):
        state.rng_state = None


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(float(lo), min(float(hi), float(x)))


def _clear_bankruptcy(state: GameState) -> None:
    if state.cash >= 0 and state.bankruptcy_day is not None:
        state.bankruptcy_day = None
        state.add_event("Debt Cleared", "Cash is now positive! Bankruptcy deadline cleared.")
        log.info("day %d: bankruptcy deadline cleared", state.day)


# Run-state transitions


def _victory(state: GameState, cfg: EngineConfig) -> None:
    state.run_state = RUN_VICTORY
    state.add_event(
        "Victory",
        f"Congratulations! You have grown your business to {format_money(cfg.win_cash_target)}. "
        f"Final cash {format_money(state.cash)}, reputation {state.reputation}, day {state.day}.",
    )
    log.info("day %d: victory with cash %.2f", state.day, state.cash)


def _time_up(state: GameState, cfg: EngineConfig) -> None:
    if state.cash >= cfg.win_cash_target:
        _victory(state, cfg)
        return
    state.run_state = RUN_TIME_UP
    state.add_event(
        "Time Up",
        f"The {cfg.horizon_days}-day period has ended. You have failed to reach the "
        f"{format_money(cfg.win_cash_target)} target. Final cash {format_money(state.cash)}.",
    )
    log.info("day %d: time up with cash %.2f", state.day, state.cash)


def _game_over(state: GameState, cfg: EngineConfig) -> None:
    state.run_state = RUN_BANKRUPT
    state.add_event(
        "Game Over",
        f"Bankruptcy! You failed to repay your debts within {cfg.bankruptcy_grace_days} days. Game over!",
    )
    log.info("day %d: bankrupt with cash %.2f", state.day, state.cash)


def _check_run_end(state: GameState, cfg: EngineConfig) -> bool:
    if not state.victory_dismissed and state.cash >= cfg.win_cash_target:
        _victory(state, cfg)
        return True
    if not state.horizon_dismissed and state.day > cfg.horizon_days:
        _time_up(state, cfg)
        return True
    if state.bankruptcy_day is not None and state.day >= state.bankruptcy_day:
        _game_over(state, cfg)
        return True
    return False


def continue_run(state: GameState, cfg: Optional[EngineConfig] = None) -> None:
    """Resume play after Victory or TimeUp. Bankruptcy is final.

    Continuing from an early Victory only silences the win check, so the
    horizon still ends the run. Once past the horizon both checks are off.
    """

    cfg = cfg or EngineConfig()
    if state.run_state not in (RUN_VICTORY, RUN_TIME_UP):
        raise ValidationError("cannot_continue", f"Cannot continue from run state '{state.run_state}'")
    past_horizon = state.run_state == RUN_TIME_UP or state.day > cfg.horizon_days
    if state.run_state == RUN_VICTORY:
        reason = "despite the objective being met"
    else:
        reason = "despite the objective period being over"
    state.run_state = RUN_ACTIVE
    state.victory_dismissed = True
    if past_horizon:
        state.horizon_dismissed = True
    state.add_event(
        "Continuing",
        f"Choosing to continue playing {reason}. Good luck with your business expansion!",
    )


# Day pipeline steps


def _process_arrivals(state: GameState) -> None:
    day = state.day
    arriving = [o for o in state.orders if o.arrival_day == day]
    log.debug("day %d: %d arriving orders", day, len(arriving))
    for o in arriving:
        m = state.catalog.materials[o.material]
        v = state.catalog.vendors[o.vendor]
        state.inventory[o.material] = float(state.inventory.get(o.material, 0.0)) + float(o.quantity)
        state.add_event("Order Arrived", f"Received {format_qty(o.quantity)} {m.unit} of {m.name} from {v.name}.")


def _pay_vendor_in_cash(state: GameState, order: SourcingOrder, cfg: EngineConfig, note: str = "") -> None:
    v = state.catalog.vendors[order.vendor]
    m = state.catalog.materials[order.material]
    amount = format_money(order.total_cost)
    state.cash -= float(order.total_cost)

    if state.cash < 0:
        if state.bankruptcy_day is None:
            state.bankruptcy_day = state.day + int(cfg.bankruptcy_grace_days)
            state.add_event(
                "Negative Cash",
                f"Insufficient cash to pay {v.name} {amount}. Cash is now negative. "
                f"Must repay within {cfg.bankruptcy_grace_days} days or face bankruptcy!",
            )
            log.info("day %d: cash negative, bankruptcy deadline day %d", state.day, state.bankruptcy_day)
        else:
            state.add_event("Vendor Payment", f"Paid {v.name} {amount} for {m.name} order. Cash remains negative.")
        return

    _clear_bankruptcy(state)
    state.add_event("Vendor Payment", f"Paid {v.name} {amount} for {m.name} order{note}.")


def _process_vendor_payments(state: GameState, cfg: EngineConfig) -> None:
    day = state.day
    due = [o for o in state.orders if o.payment_due_day == day and o.arrival_day <= day]
    log.debug("day %d: %d vendor payments due, cash %.2f", day, len(due), state.cash)

    for o in due:
        if o.financing_method != FINANCING_TRADE_LOAN:
            _pay_vendor_in_cash(state, o, cfg)
            continue

        v = state.catalog.vendors[o.vendor]
        if len(state.outstanding_loans) >= int(cfg.max_outstanding_loans):
            state.add_event(
                "Loan Limit Reached",
                f"Cannot create trade loan for {v.name} payment. Maximum of {cfg.max_outstanding_loans} "
                "outstanding loans already reached. Deducting cash instead.",
            )
            _pay_vendor_in_cash(state, o, cfg, note=" (cash payment due to loan limit)")
            continue

        svc = state.catalog.banking_services.get(LOAN_TRADE)
        rate = float(svc.cost) if svc else 0.0
        tenor = int(o.tenor or cfg.trade_loan_tenors[0])
        loan = Loan(
            loan_id=state.next_id("LN"),
            order_id=o.order_id,
            loan_type=LOAN_TRADE,
            principal=float(o.total_cost),
            interest_rate=rate,
            repayment_day=day + tenor,
            total_amount=float(o.total_cost) * (1.0 + rate),
            created_day=day,
        )
        state.outstanding_loans.append(loan)
        state.add_event(
            "Trade Loan Created",
            f"Bank paid {v.name} {format_money(o.total_cost)} on your behalf. Trade loan created. "
            f"Repayment due Day {loan.repayment_day} ({tenor} days). Total amount due: {format_money(loan.total_amount)}.",
        )


def _process_manufacturing(state: GameState) -> None:
    day = state.day
    for mo in state.manufacturing_orders:
        if mo.completion_day != day:
            continue
        p = state.catalog.products[mo.product]
        state.finished_products[mo.product] = int(state.finished_products.get(mo.product, 0)) + int(mo.quantity)
        state.add_event("Manufacturing Complete", f"Completed manufacturing {format_qty(mo.quantity)} of {p.name}.")
    state.manufacturing_orders = [mo for mo in state.manufacturing_orders if mo.completion_day > day]


def _milestone_bonus(total_before: int, total_after: int, cfg: EngineConfig) -> int:
    step = max(1, int(cfg.units_per_reputation_bonus))
    crossed = total_after // step - total_before // step
    return max(0, crossed) * int(cfg.reputation_per_milestone)


def _process_sales_completions(state: GameState, cfg: EngineConfig) -> None:
    day = state.day
    for so in state.sales_orders:
        if so.completion_day != day:
            continue
        b = state.catalog.buyers[so.buyer]
        state.add_event(
            "Sale Completed",
            f"Completed sale to {b.name} ({b.location}) for {format_money(so.revenue)}. Payment due Day {so.payment_due_day}.",
        )
        before = int(state.total_products_sold)
        state.total_products_sold = before + int(so.quantity)
        bonus = _milestone_bonus(before, state.total_products_sold, cfg)
        if bonus > 0:
            state.reputation += bonus
            state.add_event(
                "Reputation Bonus",
                f"Sold {format_qty(state.total_products_sold)} total products! Reputation +{bonus}.",
            )


def _find_factoring_loan(state: GameState, order: SalesOrder) -> Optional[Loan]:
    for loan in state.outstanding_loans:
        if loan.loan_type == LOAN_FACTORING and loan.order_id == order.order_id:
            return loan
    return None


def _process_buyer_payments(state: GameState, cfg: EngineConfig) -> None:
    day = state.day
    due = [so for so in state.sales_orders if so.payment_due_day == day]
    log.debug("day %d: %d buyer payments due, cash %.2f", day, len(due), state.cash)

    for so in due:
        b = state.catalog.buyers[so.buyer]
        if so.factored:
            state.add_event(
                "Factored Invoice",
                f"Buyer {b.name} ({b.location}) payment due, but invoice was already factored. Bank will collect payment.",
            )
            loan = _find_factoring_loan(state, so)
            if loan is None:
                continue
            if state.cash >= loan.total_amount:
                state.cash -= float(loan.total_amount)
                state.add_event("Factoring Interest Paid", f"Paid factoring interest of {format_money(loan.total_amount)} to bank.")
            else:
                state.reputation += int(cfg.reputation_factoring_default)
                state.add_event(
                    "Factoring Interest Default",
                    f"Unable to pay factoring interest of {format_money(loan.total_amount)}. Insufficient cash. "
                    f"Reputation {cfg.reputation_factoring_default}.",
                )
            continue

        if so.will_default:
            state.reputation += int(cfg.reputation_buyer_default)
            state.add_event(
                "Payment Default",
                f"Buyer {b.name} ({b.location}) defaulted on payment of {format_money(so.revenue)}. No payment received.",
            )
            continue

        state.cash += float(so.revenue)
        state.reputation += int(cfg.reputation_buyer_paid)
        _clear_bankruptcy(state)
        state.add_event("Payment Received", f"Received payment of {format_money(so.revenue)} from {b.name} ({b.location}).")


def _process_loan_repayments(state: GameState, cfg: EngineConfig) -> None:
    day = state.day
    for loan in state.outstanding_loans:
        if loan.repayment_day != day or loan.loan_type == LOAN_FACTORING:
            continue
        if state.cash >= loan.total_amount:
            state.cash -= float(loan.total_amount)
            state.add_event(
                "Loan Repaid",
                f"Repaid trade loan of {format_money(loan.principal)} plus interest of {format_money(loan.interest())}. "
                f"Total: {format_money(loan.total_amount)}.",
            )
        else:
            state.reputation += int(cfg.reputation_loan_default)
            state.add_event(
                "Loan Default",
                f"Unable to repay trade loan of {format_money(loan.total_amount)}. Insufficient cash. "
                f"Reputation {cfg.reputation_loan_default}.",
            )
    state.outstanding_loans = [loan for loan in state.outstanding_loans if loan.repayment_day > day]


# Random events


def _update_manufacturing_costs(state: GameState, cfg: EngineConfig, rng: random.Random) -> None:
    factor = float(rng.uniform(cfg.cost_shock_min, cfg.cost_shock_max))
    for p in state.catalog.products.values():
        p.manufacturing_cost *= factor
    state.add_event(
        "Manufacturing Costs Updated",
        f"Manufacturing costs have increased by {(factor - 1.0) * 100:.1f}% across all products due to labor cost increases.",
    )


def _update_banking_rates(state: GameState, cfg: EngineConfig, rng: random.Random) -> None:
    trade = state.catalog.banking_services.get(LOAN_TRADE)
    factoring = state.catalog.banking_services.get(LOAN_FACTORING)

    trade_step = float(rng.uniform(-cfg.trade_rate_step, cfg.trade_rate_step))
    factoring_step = float(rng.uniform(-cfg.factoring_rate_step, cfg.factoring_rate_step))

    parts: List[str] = []
    if trade is not None:
        old = trade.cost
        trade.cost = _clamp(old + trade_step, cfg.trade_rate_min, cfg.trade_rate_max)
        parts.append(f"Trade Loan {old * 100:.2f}% → {trade.cost * 100:.2f}%")
    if factoring is not None:
        old = factoring.cost
        factoring.cost = _clamp(old + factoring_step, cfg.factoring_rate_min, cfg.factoring_rate_max)
        parts.append(f"Factoring {old * 100:.2f}% → {factoring.cost * 100:.2f}%")

    # Outstanding loans are re-priced at the new rates.
    for loan in state.outstanding_loans:
        if loan.loan_type == LOAN_FACTORING:
            if factoring is None:
                continue
            loan.interest_rate = float(factoring.cost)
            loan.total_amount = float(loan.principal) * loan.interest_rate
        else:
            if trade is None:
                continue
            loan.interest_rate = float(trade.cost)
            loan.total_amount = float(loan.principal) * (1.0 + loan.interest_rate)

    state.add_event(
        "Interest Rates Updated",
        f"Banking rates have changed: {', '.join(parts)}. Existing loans updated with new rates.",
    )


def apply_random_event(state: GameState, kind: str, cfg: EngineConfig, rng: random.Random) -> None:
    if kind == EVENT_COST_SHOCK:
        state.add_event(
            "Economic News",
            "Due to changing economic policies, labour costs have increased. Manufacturing cost increased by 1 to 2%.",
        )
        _update_manufacturing_costs(state, cfg, rng)
    elif kind == EVENT_REPUTATION_BOOST:
        state.add_event("Market Opportunity", "Your company is getting known in the market and +5 reputation.")
        state.reputation += int(cfg.reputation_event_boost)
    elif kind == EVENT_RATE_CHANGE:
        state.add_event("Banking News", "Interest rates have changed. Banking service costs may vary.")
        _update_banking_rates(state, cfg, rng)
    else:
        raise ValueError(f"unknown random event kind: {kind}")
    log.info("day %d: random event %s", state.day, kind)


def _maybe_random_event(state: GameState, cfg: EngineConfig, rng: random.Random) -> None:
    if rng.random() < float(cfg.random_event_probability) and not state.event_triggered_today:
        apply_random_event(state, rng.choice(RANDOM_EVENT_KINDS), cfg, rng)
        state.event_triggered_today = True


def _process_day(state: GameState, cfg: EngineConfig, rng: random.Random) -> None:
    _process_arrivals(state)
    _process_vendor_payments(state, cfg)
    state.orders = [o for o in state.orders if o.payment_due_day > state.day]

    _process_manufacturing(state)

    _process_sales_completions(state, cfg)
    _process_buyer_payments(state, cfg)
    state.sales_orders = [so for so in state.sales_orders if so.payment_due_day > state.day]

    _process_loan_repayments(state, cfg)

    _maybe_random_event(state, cfg, rng)
    refresh_prices(state, cfg, rng)


def _advance(state: GameState, cfg: EngineConfig, rng: random.Random, action: Optional[str]) -> DayAdvanceReport:
    if not state.is_active():
        raise ValidationError("run_not_active", f"The run is over ({state.run_state}); continue or start a new game")

    start = len(state.events)
    state.day += 1
    state.event_triggered_today = False

    if not _check_run_end(state, cfg):
        if action:
            state.add_event("Day Transition", f"Day {state.day} - {action} Action")
        else:
            state.add_event("Day Transition", f"Starting Day {state.day}")
        _process_day(state, cfg, rng)

    return DayAdvanceReport(day=state.day, run_state=state.run_state, events=list(state.events[start:]))


def advance_day(
    state: GameState,
    cfg: Optional[EngineConfig] = None,
    rng: Optional[random.Random] = None,
    action: Optional[str] = None,
) -> DayAdvanceReport:
    cfg = cfg or EngineConfig()
    r = rng or rng_from_state(state)
    report = _advance(state, cfg, r, action)
    if rng is None:
        persist_rng_state(state, r)
    return report


# Action handlers


def _require_active(state: GameState) -> None:
    if not state.is_active():
        raise ValidationError("run_not_active", f"The run is over ({state.run_state}); continue or start a new game")


def _require_fields(*values: object) -> None:
    for v in values:
        if v is None or v == "":
            raise ValidationError("missing_field", "Please fill in all fields")


def _parse_quantity(quantity: object) -> int:
    try:
        q = int(cast(Any, quantity))
    except (TypeError, ValueError):
        raise ValidationError("invalid_quantity", f"Quantity must be a whole number, got {quantity!r}") from None
    if q <= 0:
        raise ValidationError("invalid_quantity", "Quantity must be positive")
    return q


def _require_key(mapping: dict, key: str, what: str) -> None:
    if key not in mapping:
        raise ValidationError("unknown_key", f"Unknown {what}: {key}")


def _after_advance(state: GameState, rng: random.Random, owned: bool) -> None:
    if owned:
        persist_rng_state(state, rng)
    if not state.is_active():
        raise ValidationError("run_ended", f"The run ended during the day advance ({state.run_state})")


def place_sourcing_order(
    state: GameState,
    material: str,
    vendor: str,
    quantity: object,
    financing_method: str,
    tenor: Optional[object] = None,
    cfg: Optional[EngineConfig] = None,
    rng: Optional[random.Random] = None,
) -> SourcingOrder:
    cfg = cfg or EngineConfig()
    _require_active(state)
    _require_fields(material, vendor, quantity, financing_method)
    _require_key(state.catalog.materials, material, "material")
    _require_key(state.catalog.vendors, vendor, "vendor")
    qty = _parse_quantity(quantity)

    if financing_method not in (FINANCING_CASH, FINANCING_TRADE_LOAN):
        raise ValidationError("invalid_financing", f"Unsupported financing method for sourcing: {financing_method}")

    tenor_days: Optional[int] = None
    if financing_method == FINANCING_TRADE_LOAN:
        if tenor is None or tenor == "":
            raise ValidationError("tenor_required", "Please select a repayment tenor for the trade loan")
        try:
            tenor_days = int(cast(Any, tenor))
        except (TypeError, ValueError):
            raise ValidationError("invalid_tenor", f"Invalid tenor: {tenor!r}") from None
        if tenor_days not in tuple(int(t) for t in cfg.trade_loan_tenors):
            raise ValidationError("invalid_tenor", f"Tenor must be one of {list(cfg.trade_loan_tenors)} days")

    if len(state.orders) >= int(cfg.max_sourcing_orders):
        raise ValidationError("sourcing_capacity", f"Maximum of {cfg.max_sourcing_orders} active sourcing orders allowed")

    if financing_method == FINANCING_TRADE_LOAN:
        ok, reason = trade_loan_status(state, cfg)
        if not ok:
            code = "loan_capacity" if len(state.outstanding_loans) >= int(cfg.max_outstanding_loans) else "trade_loan_ineligible"
            raise ValidationError(code, reason)

    owned = rng is None
    r = rng or rng_from_state(state)
    _advance(state, cfg, r, "Source Materials")
    _after_advance(state, r, owned)

    m = state.catalog.materials[material]
    v = state.catalog.vendors[vendor]

    price = vendor_price(state, material, vendor, cfg, r)
    total = float(qty) * price
    if financing_method == FINANCING_TRADE_LOAN:
        svc = state.catalog.banking_services.get(LOAN_TRADE)
        total *= 1.0 + (float(svc.cost) if svc else 0.0)

    arrival_day = state.day + r.randint(int(cfg.arrival_days_min), int(cfg.arrival_days_max))
    order = SourcingOrder(
        order_id=state.next_id("PO"),
        material=material,
        vendor=vendor,
        quantity=qty,
        price_per_unit=price,
        total_cost=total,
        created_day=state.day,
        arrival_day=arrival_day,
        payment_due_day=arrival_day + int(v.payment_terms) + 1,
        financing_method=financing_method,
        payment_terms=int(v.payment_terms),
        tenor=tenor_days,
    )
    state.orders.append(order)

    msg = (
        f"Ordered {format_qty(qty)} {m.unit} of {m.name} from {v.name} for {format_money(total)}. "
        f"Arrives Day {order.arrival_day}. Payment due Day {order.payment_due_day}."
    )
    if financing_method == FINANCING_TRADE_LOAN:
        msg += f" Trade loan will be created when payment is due. Bank repayment due {tenor_days} days after vendor payment."
    state.add_event("Order Placed", msg)

    if owned:
        persist_rng_state(state, r)
    return order


def start_manufacturing(
    state: GameState,
    product: str,
    quantity: object,
    cfg: Optional[EngineConfig] = None,
    rng: Optional[random.Random] = None,
) -> ManufacturingOrder:
    """Start a production batch.

    The day advances before materials and cash are checked, so a rejected
    batch still consumes a day (and everything the day advance does).
    """

    cfg = cfg or EngineConfig()
    _require_active(state)
    _require_fields(product, quantity)
    _require_key(state.catalog.products, product, "product")
    qty = _parse_quantity(quantity)

    owned = rng is None
    r = rng or rng_from_state(state)
    _advance(state, cfg, r, "Manufacturing")
    _after_advance(state, r, owned)

    p = state.catalog.products[product]
    for material, per_unit in p.materials.items():
        have = float(state.inventory.get(material, 0.0))
        need = float(per_unit) * qty
        if have < need:
            m = state.catalog.materials[material]
            raise ValidationError(
                "insufficient_materials",
                f"Insufficient {m.name}. Need {format_qty(need)} {m.unit}, have {format_qty(have)} {m.unit}.",
            )

    cost = float(qty) * float(p.manufacturing_cost)
    if state.cash < cost:
        raise ValidationError(
            "insufficient_cash",
            f"Insufficient cash for manufacturing costs. Need {format_money(cost)}, have {format_money(state.cash)}.",
        )

    for material, per_unit in p.materials.items():
        left = float(state.inventory.get(material, 0.0)) - float(per_unit) * qty
        if left <= 0:
            state.inventory.pop(material, None)
        else:
            state.inventory[material] = left
    state.cash -= cost

    order = ManufacturingOrder(
        order_id=state.next_id("MO"),
        product=product,
        quantity=qty,
        created_day=state.day,
        completion_day=state.day + max(1, int(p.manufacturing_days)),
        manufacturing_cost=cost,
    )
    state.manufacturing_orders.append(order)
    state.add_event(
        "Manufacturing Started",
        f"Started manufacturing {format_qty(qty)} of {p.name}. Cost: {format_money(cost)}. Completion: Day {order.completion_day}.",
    )
    if owned:
        persist_rng_state(state, r)
    return order


def create_sales_order(
    state: GameState,
    product: str,
    buyer: str,
    quantity: object,
    financing_method: str,
    cfg: Optional[EngineConfig] = None,
    rng: Optional[random.Random] = None,
) -> SalesOrder:
    cfg = cfg or EngineConfig()
    _require_active(state)
    _require_fields(product, buyer, quantity, financing_method)
    _require_key(state.catalog.products, product, "product")
    _require_key(state.catalog.buyers, buyer, "buyer")
    qty = _parse_quantity(quantity)

    if financing_method not in (FINANCING_CASH, FINANCING_FACTORING):
        raise ValidationError("invalid_financing", f"Unsupported financing method for sales: {financing_method}")
    if len(state.sales_orders) >= int(cfg.max_sales_orders):
        raise ValidationError("sales_capacity", f"Maximum of {cfg.max_sales_orders} active sales orders allowed")

    have = int(state.finished_products.get(product, 0))
    if have < qty:
        raise ValidationError("insufficient_products", f"Insufficient inventory. Have {have}, trying to sell {qty}.")

    factoring = financing_method == FINANCING_FACTORING
    loan_cap_msg = (
        f"Maximum of {cfg.max_outstanding_loans} outstanding loans allowed. "
        "Please repay some loans or choose cash payment instead."
    )
    if factoring and len(state.outstanding_loans) >= int(cfg.max_outstanding_loans):
        raise ValidationError("loan_capacity", loan_cap_msg)

    owned = rng is None
    r = rng or rng_from_state(state)
    _advance(state, cfg, r, "Sales")
    _after_advance(state, r, owned)

    # Vendor payments during the advance may have filled the loan book.
    if factoring and len(state.outstanding_loans) >= int(cfg.max_outstanding_loans):
        raise ValidationError("loan_capacity", loan_cap_msg)

    p = state.catalog.products[product]
    b = state.catalog.buyers[buyer]

    unit_price = buyer_price(state, product, buyer)
    revenue = float(qty) * unit_price
    svc = state.catalog.banking_services.get(LOAN_FACTORING)
    rate = float(svc.cost) if svc else 0.0
    final_revenue = revenue * (1.0 - rate) if factoring else revenue

    will_default = r.random() < float(b.default_risk)
    completion_day = state.day + r.randint(int(cfg.sale_completion_days_min), int(cfg.sale_completion_days_max))

    order = SalesOrder(
        order_id=state.next_id("SO"),
        product=product,
        buyer=buyer,
        quantity=qty,
        base_price=unit_price,
        unit_price=unit_price,
        revenue=final_revenue,
        original_revenue=revenue,
        created_day=state.day,
        completion_day=completion_day,
        payment_due_day=completion_day + int(b.payment_terms) + 1,
        financing_method=financing_method,
        payment_terms=int(b.payment_terms),
        default_risk=float(b.default_risk),
        will_default=bool(will_default),
        risk_level=b.risk_level,
        factored=factoring,
    )
    state.sales_orders.append(order)

    left = int(state.finished_products.get(product, 0)) - qty
    if left <= 0:
        state.finished_products.pop(product, None)
    else:
        state.finished_products[product] = left

    if factoring:
        state.cash += final_revenue
        loan = Loan(
            loan_id=state.next_id("LN"),
            order_id=order.order_id,
            loan_type=LOAN_FACTORING,
            principal=revenue,
            interest_rate=rate,
            repayment_day=order.payment_due_day,
            total_amount=revenue * rate,
            created_day=state.day,
        )
        state.outstanding_loans.append(loan)
        state.add_event(
            "Factoring Payment",
            f"Received immediate payment of {format_money(final_revenue)} from bank for factored invoice. "
            f"Interest of {format_money(loan.total_amount)} due when buyer payment is received.",
        )
        _clear_bankruptcy(state)

    state.add_event(
        "Sales Order Created",
        f"Created sales order for {format_qty(qty)} of {p.name} to {b.name} for {format_money(final_revenue)}.",
    )
    if owned:
        persist_rng_state(state, r)
    return order


def use_banking_service(
    state: GameState,
    service_key: str,
    cfg: Optional[EngineConfig] = None,
    rng: Optional[random.Random] = None,
) -> BankingOutcome:
    """Use a banking product.

    Trade loans and factoring only exist as part of a sourcing or sales
    order, so choosing them returns a redirect instead of advancing the day.
    """

    cfg = cfg or EngineConfig()
    _require_active(state)
    _require_fields(service_key)
    _require_key(state.catalog.banking_services, service_key, "banking service")

    svc = state.catalog.banking_services[service_key]
    if not banking_service_eligible(state, service_key):
        raise ValidationError(
            "banking_ineligible",
            f"Requirements not met for {svc.name}: reputation {svc.min_reputation}, cash {format_money(svc.min_cash)}",
        )

    if service_key == LOAN_TRADE:
        return BankingOutcome(service_key=service_key, redirect="sourcing")
    if service_key == LOAN_FACTORING:
        return BankingOutcome(service_key=service_key, redirect="sales")

    owned = rng is None
    r = rng or rng_from_state(state)
    start = len(state.events)
    _advance(state, cfg, r, "Banking")
    _after_advance(state, r, owned)

    state.add_event("Banking Service Used", f"Used {svc.name}: {svc.description}")
    state.reputation += int(cfg.reputation_banking_service)
    _clear_bankruptcy(state)

    report = DayAdvanceReport(day=state.day, run_state=state.run_state, events=list(state.events[start:]))
    return BankingOutcome(service_key=service_key, report=report)


def max_affordable_units(state: GameState, product: str) -> int:
    """Units the current cash covers at today's manufacturing cost."""

    cost = float(state.catalog.products[product].manufacturing_cost)
    if cost <= 0:
        return 0
    return max(0, int(math.floor(max(0.0, state.cash) / cost)))
