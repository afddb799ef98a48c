from __future__ import annotations

from typing import Dict, Optional

from tradesim.models import FINANCING_CASH, LOAN_FACTORING, GameState


def format_money(x: float) -> str:
    v = float(x)
    if v < 0:
        return f"-${-v:,.2f}"
    return f"${v:,.2f}"


def format_qty(x: float) -> str:
    v = float(x)
    if v.is_integer():
        return f"{int(v):,}"
    return f"{v:,.3f}".rstrip("0").rstrip(".")


def receivables(state: GameState) -> float:
    """Buyer revenue still to be collected (factored invoices already paid out)."""

    return sum(float(o.revenue) for o in state.sales_orders if not o.factored and o.payment_due_day > state.day)


def payables(state: GameState) -> float:
    return sum(float(o.total_cost) for o in state.orders if o.financing_method == FINANCING_CASH and o.payment_due_day >= state.day)


def loan_exposure(state: GameState) -> Dict[str, float]:
    trade = 0.0
    factoring = 0.0
    for loan in state.outstanding_loans:
        if loan.loan_type == LOAN_FACTORING:
            factoring += float(loan.total_amount)
        else:
            trade += float(loan.total_amount)
    return {"trade_loans": trade, "factoring_interest": factoring, "total": trade + factoring}


def state_summary(state: GameState, horizon_days: int = 365, target: float = 1_000_000.0) -> Dict[str, object]:
    bankruptcy_left: Optional[int] = None
    if state.bankruptcy_day is not None:
        bankruptcy_left = max(0, int(state.bankruptcy_day) - int(state.day))

    inventory_value = 0.0
    for material, qty in state.inventory.items():
        price = state.market_prices.get(material)
        if price is None and material in state.catalog.materials:
            price = state.catalog.materials[material].base_price
        inventory_value += float(qty) * float(price or 0.0)

    return {
        "day": int(state.day),
        "days_remaining": max(0, int(horizon_days) + 1 - int(state.day)),
        "cash": float(state.cash),
        "target": float(target),
        "progress": float(state.cash) / float(target) if target > 0 else 0.0,
        "reputation": int(state.reputation),
        "run_state": state.run_state,
        "receivables": receivables(state),
        "payables": payables(state),
        "loans": loan_exposure(state),
        "inventory_value": inventory_value,
        "bankruptcy_day": state.bankruptcy_day,
        "bankruptcy_days_remaining": bankruptcy_left,
        "total_products_sold": int(state.total_products_sold),
    }
