from __future__ import annotations

import logging
import math
import random
from typing import TYPE_CHECKING, Dict, List, Sequence, Tuple

from tradesim.models import FINANCING_TRADE_LOAN, GameState, MarketOpportunity

if TYPE_CHECKING:
    from tradesim.engine import EngineConfig


log = logging.getLogger(__name__)


# (max payment-term days, multiplier); first match wins, otherwise the fallback applies.
# Faster vendor payment = lower price; longer buyer credit = higher price.
VENDOR_TERM_LADDER: Sequence[Tuple[int, float]] = ((15, 0.90), (30, 1.00), (45, 1.10), (60, 1.15))
VENDOR_TERM_FALLBACK = 1.25

BUYER_TERM_LADDER: Sequence[Tuple[int, float]] = ((0, 0.80), (15, 0.90), (30, 1.00), (45, 1.05), (60, 1.10))
BUYER_TERM_FALLBACK = 1.15


def term_multiplier(terms_days: int, ladder: Sequence[Tuple[int, float]], fallback: float) -> float:
    days = int(terms_days)
    for max_days, mult in ladder:
        if days <= int(max_days):
            return float(mult)
    return float(fallback)


def market_price(state: GameState, material: str) -> float:
    """Current market price, falling back to the catalog base price before the first refresh."""

    p = state.market_prices.get(material)
    if p is not None:
        return float(p)
    return float(state.catalog.materials[material].base_price)


def vendor_price(state: GameState, material: str, vendor: str, cfg: EngineConfig, rng: random.Random) -> float:
    v = state.catalog.vendors[vendor]
    price = market_price(state, material)
    price *= term_multiplier(v.payment_terms, VENDOR_TERM_LADDER, VENDOR_TERM_FALLBACK)
    price *= float(rng.uniform(cfg.vendor_jitter_min, cfg.vendor_jitter_max))
    return price


def buyer_price(state: GameState, product: str, buyer: str) -> float:
    p = state.catalog.products[product]
    b = state.catalog.buyers[buyer]
    return float(p.price) * term_multiplier(b.payment_terms, BUYER_TERM_LADDER, BUYER_TERM_FALLBACK)


def _trigger_opportunity(state: GameState, cfg: EngineConfig, rng: random.Random) -> None:
    materials = list(state.catalog.materials.keys())
    if not materials:
        return
    material = rng.choice(materials)
    discount = float(rng.uniform(cfg.promotion_discount_min, cfg.promotion_discount_max))

    state.market_opportunity = MarketOpportunity(
        active=True,
        material=material,
        days_remaining=int(cfg.promotion_days),
        discount_factor=1.0 - discount,
    )
    name = state.catalog.materials[material].name
    pct = int(round(discount * 100))
    state.add_event(
        "Market Oversupply",
        f"Market oversupply of {name}! {name} vendors are offering {pct}% discounts for the next "
        f"{int(cfg.promotion_days)} days. Take advantage of this opportunity!",
    )
    log.info("promotion started: %s at %.3f for %d days", material, 1.0 - discount, cfg.promotion_days)


def _end_opportunity(state: GameState) -> None:
    if not state.market_opportunity.active:
        return
    log.info("promotion ended: %s", state.market_opportunity.material)
    state.market_opportunity = MarketOpportunity()


def refresh_prices(state: GameState, cfg: EngineConfig, rng: random.Random) -> Dict[str, float]:
    """Recompute every material's market price and tick the promotion window.

    Order: maybe start a promotion (only when none is running), count the
    running one down, then draw prices so a just-ended promotion no longer
    discounts today's price.
    """

    if not state.market_opportunity.active and rng.random() < float(cfg.promotion_probability):
        _trigger_opportunity(state, cfg, rng)

    opp = state.market_opportunity
    if opp.active and opp.days_remaining > 0:
        opp.days_remaining -= 1
        if opp.days_remaining <= 0:
            _end_opportunity(state)

    opp = state.market_opportunity
    prices: Dict[str, float] = {}
    for key, material in state.catalog.materials.items():
        variation = float(rng.uniform(cfg.market_variation_min, cfg.market_variation_max))
        price = float(material.base_price) * variation
        if opp.active and opp.material == key:
            price *= float(opp.discount_factor)
        prices[key] = price

    state.market_prices = prices
    return prices


# Previews for display layers. None of these mutate the ledger.


def vendor_quotes(state: GameState, material: str, cfg: EngineConfig, rng: random.Random) -> List[dict]:
    m = state.catalog.materials[material]
    out: List[dict] = []
    for key, v in state.catalog.vendors.items():
        out.append(
            {
                "vendor": key,
                "name": v.name,
                "location": v.location,
                "payment_terms": int(v.payment_terms),
                "risk_level": v.risk_level,
                "price_per_unit": float(round(vendor_price(state, material, key, cfg, rng), 4)),
                "unit": m.unit,
            }
        )
    return out


def buyer_quotes(state: GameState, product: str) -> List[dict]:
    out: List[dict] = []
    for key, b in state.catalog.buyers.items():
        out.append(
            {
                "buyer": key,
                "name": b.name,
                "location": b.location,
                "payment_terms": int(b.payment_terms),
                "default_risk": float(b.default_risk),
                "risk_level": b.risk_level,
                "unit_price": float(round(buyer_price(state, product, key), 4)),
            }
        )
    return out


def manufacturing_capacity(state: GameState, product: str) -> Tuple[int, str]:
    """Return (max units buildable from raw inventory, limiting material key)."""

    p = state.catalog.products[product]
    best = math.inf
    limiting = ""
    for material, per_unit in p.materials.items():
        if per_unit <= 0:
            continue
        have = float(state.inventory.get(material, 0.0))
        possible = math.floor(have / float(per_unit))
        if possible < best:
            best = possible
            limiting = material
    if best == math.inf:
        return 0, ""
    return int(best), limiting


def trade_loan_status(state: GameState, cfg: EngineConfig) -> Tuple[bool, str]:
    svc = state.catalog.banking_services.get(FINANCING_TRADE_LOAN)
    if svc is None:
        return False, "Trade loans are not offered"
    n = len(state.outstanding_loans)
    if n >= int(cfg.max_outstanding_loans):
        return False, f"Maximum of {cfg.max_outstanding_loans} outstanding loans reached. Current: {n}/{cfg.max_outstanding_loans}"
    if state.reputation < int(svc.min_reputation):
        return False, f"Trade loan requires {svc.min_reputation} reputation. Current: {state.reputation}"
    return True, ""


def banking_service_eligible(state: GameState, service_key: str) -> bool:
    svc = state.catalog.banking_services[service_key]
    return state.reputation >= int(svc.min_reputation) and state.cash >= float(svc.min_cash)


def banking_menu(state: GameState) -> List[dict]:
    out: List[dict] = []
    for key, svc in state.catalog.banking_services.items():
        out.append(
            {
                "service": key,
                "name": svc.name,
                "description": svc.description,
                "rate": float(svc.cost),
                "min_reputation": int(svc.min_reputation),
                "min_cash": float(svc.min_cash),
                "eligible": banking_service_eligible(state, key),
            }
        )
    return out
