from __future__ import annotations

import csv
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable

from tradesim.models import (
    BankingService,
    Buyer,
    Catalog,
    EventRecord,
    GameState,
    Loan,
    ManufacturingOrder,
    MarketOpportunity,
    Material,
    Product,
    SalesOrder,
    SourcingOrder,
    Vendor,
)


log = logging.getLogger(__name__)

STATE_VERSION = "1.0.0"
EVENT_COLUMNS = ["day", "category", "message"]


def project_root() -> Path:
    # .../src/tradesim/storage.py -> parents[2] == project root
    return Path(__file__).resolve().parents[2]


def data_dir() -> Path:
    p = project_root() / "data"
    p.mkdir(parents=True, exist_ok=True)
    return p


def state_path() -> Path:
    return data_dir() / "state.json"


def events_path() -> Path:
    return data_dir() / "events.csv"


def reset_data_files() -> None:
    """Delete persisted state and event log."""

    for fp in [state_path(), events_path()]:
        fp.unlink(missing_ok=True)


def save_state(state: GameState, path: Path | None = None) -> None:
    p = path or state_path()
    payload = {
        "version": STATE_VERSION,
        "state": asdict(state),
    }
    p.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def _load_catalog(d: Any) -> Catalog:
    cat = Catalog()
    if not isinstance(d, dict):
        return cat

    for key, md in (d.get("materials") or {}).items():
        cat.materials[key] = Material(
            key=str(md.get("key", key)),
            name=str(md.get("name", key)),
            base_price=float(md.get("base_price", 0.0)),
            unit=str(md.get("unit", "lbs")),
        )
    for key, vd in (d.get("vendors") or {}).items():
        cat.vendors[key] = Vendor(
            key=str(vd.get("key", key)),
            name=str(vd.get("name", key)),
            location=str(vd.get("location", "")),
            payment_terms=int(vd.get("payment_terms", 30)),
            reliability=float(vd.get("reliability", 1.0)),
            margin=float(vd.get("margin", 0.0)),
            risk_level=str(vd.get("risk_level", "")),
        )
    for key, bd in (d.get("buyers") or {}).items():
        cat.buyers[key] = Buyer(
            key=str(bd.get("key", key)),
            name=str(bd.get("name", key)),
            location=str(bd.get("location", "")),
            payment_terms=int(bd.get("payment_terms", 30)),
            default_risk=float(bd.get("default_risk", 0.0)),
            reliability=float(bd.get("reliability", 1.0)),
            risk_level=str(bd.get("risk_level", "")),
        )
    for key, pd in (d.get("products") or {}).items():
        cat.products[key] = Product(
            key=str(pd.get("key", key)),
            name=str(pd.get("name", key)),
            price=float(pd.get("price", 0.0)),
            manufacturing_days=int(pd.get("manufacturing_days", 1)),
            manufacturing_cost=float(pd.get("manufacturing_cost", 0.0)),
            materials={str(k): float(v) for k, v in (pd.get("materials") or {}).items()},
            unit=str(pd.get("unit", "yards")),
            base_margin=float(pd.get("base_margin", 0.0)),
        )
    for key, sd in (d.get("banking_services") or {}).items():
        cat.banking_services[key] = BankingService(
            key=str(sd.get("key", key)),
            name=str(sd.get("name", key)),
            description=str(sd.get("description", "")),
            cost=float(sd.get("cost", 0.0)),
            min_reputation=int(sd.get("min_reputation", 0)),
            min_cash=float(sd.get("min_cash", 0.0)),
        )
    return cat


def _optional_int(x: Any) -> int | None:
    if x is None or x == "":
        return None
    return int(x)


def load_state(path: Path | None = None) -> GameState:
    p = path or state_path()
    payload = json.loads(p.read_text(encoding="utf-8"))
    d: Dict[str, Any] = payload.get("state", {})

    state = GameState(
        day=int(d.get("day", 1)),
        cash=float(d.get("cash", 0.0)),
        reputation=int(d.get("reputation", 0)),
    )
    state.catalog = _load_catalog(d.get("catalog"))
    state.inventory = {str(k): float(v) for k, v in (d.get("inventory") or {}).items()}
    state.finished_products = {str(k): int(v) for k, v in (d.get("finished_products") or {}).items()}

    for od in d.get("orders") or []:
        state.orders.append(
            SourcingOrder(
                order_id=str(od.get("order_id", "")),
                material=str(od.get("material", "")),
                vendor=str(od.get("vendor", "")),
                quantity=int(od.get("quantity", 0)),
                price_per_unit=float(od.get("price_per_unit", 0.0)),
                total_cost=float(od.get("total_cost", 0.0)),
                created_day=int(od.get("created_day", 0)),
                arrival_day=int(od.get("arrival_day", 0)),
                payment_due_day=int(od.get("payment_due_day", 0)),
                financing_method=str(od.get("financing_method", "cash")),
                payment_terms=int(od.get("payment_terms", 0)),
                tenor=_optional_int(od.get("tenor")),
            )
        )

    for md in d.get("manufacturing_orders") or []:
        state.manufacturing_orders.append(
            ManufacturingOrder(
                order_id=str(md.get("order_id", "")),
                product=str(md.get("product", "")),
                quantity=int(md.get("quantity", 0)),
                created_day=int(md.get("created_day", 0)),
                completion_day=int(md.get("completion_day", 0)),
                manufacturing_cost=float(md.get("manufacturing_cost", 0.0)),
            )
        )

    for sd in d.get("sales_orders") or []:
        state.sales_orders.append(
            SalesOrder(
                order_id=str(sd.get("order_id", "")),
                product=str(sd.get("product", "")),
                buyer=str(sd.get("buyer", "")),
                quantity=int(sd.get("quantity", 0)),
                base_price=float(sd.get("base_price", 0.0)),
                unit_price=float(sd.get("unit_price", 0.0)),
                revenue=float(sd.get("revenue", 0.0)),
                original_revenue=float(sd.get("original_revenue", 0.0)),
                created_day=int(sd.get("created_day", 0)),
                completion_day=int(sd.get("completion_day", 0)),
                payment_due_day=int(sd.get("payment_due_day", 0)),
                financing_method=str(sd.get("financing_method", "cash")),
                payment_terms=int(sd.get("payment_terms", 0)),
                default_risk=float(sd.get("default_risk", 0.0)),
                will_default=bool(sd.get("will_default", False)),
                risk_level=str(sd.get("risk_level", "")),
                factored=bool(sd.get("factored", False)),
            )
        )

    for ld in d.get("outstanding_loans") or []:
        state.outstanding_loans.append(
            Loan(
                loan_id=str(ld.get("loan_id", "")),
                order_id=str(ld.get("order_id", "")),
                loan_type=str(ld.get("loan_type", "tradeLoan")),
                principal=float(ld.get("principal", 0.0)),
                interest_rate=float(ld.get("interest_rate", 0.0)),
                repayment_day=int(ld.get("repayment_day", 0)),
                total_amount=float(ld.get("total_amount", 0.0)),
                created_day=int(ld.get("created_day", 0)),
            )
        )

    state.bankruptcy_day = _optional_int(d.get("bankruptcy_day"))
    state.event_triggered_today = bool(d.get("event_triggered_today", False))
    state.total_products_sold = int(d.get("total_products_sold", 0))
    state.market_prices = {str(k): float(v) for k, v in (d.get("market_prices") or {}).items()}

    mo = d.get("market_opportunity") or {}
    state.market_opportunity = MarketOpportunity(
        active=bool(mo.get("active", False)),
        material=mo.get("material"),
        days_remaining=int(mo.get("days_remaining", 0)),
        discount_factor=float(mo.get("discount_factor", 1.0)),
    )

    state.run_state = str(d.get("run_state", "active"))
    # Older state files carry one flag for both dismissals.
    legacy = bool(d.get("objective_dismissed", False))
    state.victory_dismissed = bool(d.get("victory_dismissed", legacy))
    state.horizon_dismissed = bool(d.get("horizon_dismissed", legacy))
    state.events = [
        EventRecord(day=int(e.get("day", 0)), category=str(e.get("category", "")), message=str(e.get("message", "")))
        for e in (d.get("events") or [])
    ]
    state.next_seq = int(d.get("next_seq", 1))
    state.rng_seed = int(d.get("rng_seed", 20260101))
    state.rng_state = d.get("rng_state")
    return state


def append_events_csv(events: Iterable[EventRecord], path: Path | None = None) -> int:
    p = path or events_path()
    rows = list(events)
    if not rows:
        return 0

    write_header = (not p.exists()) or (p.stat().st_size <= 0)
    with p.open("a", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        if write_header:
            w.writerow(EVENT_COLUMNS)
        for e in rows:
            w.writerow([e.day, e.category, e.message])
    log.debug("appended %d events to %s", len(rows), p)
    return len(rows)


def read_events_csv(path: Path | None = None) -> list[dict]:
    p = path or events_path()
    if not p.exists():
        return []
    with p.open("r", encoding="utf-8", newline="") as f:
        return list(csv.DictReader(f))
