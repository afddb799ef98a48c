from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from typing import Callable, Optional

from fastapi import Body, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from tradesim.engine import (
    EngineConfig,
    ValidationError,
    advance_day,
    continue_run,
    create_sales_order,
    max_affordable_units,
    persist_rng_state,
    place_sourcing_order,
    rng_from_state,
    start_manufacturing,
    use_banking_service,
)
from tradesim.market import (
    banking_menu,
    buyer_quotes,
    manufacturing_capacity,
    trade_loan_status,
    vendor_quotes,
)
from tradesim.models import GameState
from tradesim.presets import new_game
from tradesim.reporting import state_summary
from tradesim.storage import (
    append_events_csv,
    data_dir,
    events_path,
    load_state,
    reset_data_files,
    save_state,
    state_path,
)


log = logging.getLogger(__name__)

_lock = threading.Lock()


def _ensure_state(cfg: EngineConfig) -> GameState:
    p = state_path()
    if p.exists():
        try:
            return load_state(p)
        except (ValueError, KeyError, TypeError, OSError):
            # Corrupted state file fallback: start a new run.
            log.warning("state file %s is unreadable; starting a new run", p)
            p.unlink(missing_ok=True)
    s = new_game(cfg=cfg)
    save_state(s)
    append_events_csv(s.events)
    return s


def _error(e: ValidationError) -> dict:
    return {"error": e.message, "code": e.code}


def create_app(cfg: Optional[EngineConfig] = None) -> FastAPI:
    app = FastAPI(title="Textile Trade Finance Simulator API")
    cfg = cfg or EngineConfig()

    # Allow Vite dev server or other local frontends.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    data_dir()

    def _state_to_dto(state: GameState) -> dict:
        ok, reason = trade_loan_status(state, cfg)
        return {
            "day": int(state.day),
            "cash": float(state.cash),
            "reputation": int(state.reputation),
            "run_state": state.run_state,
            "bankruptcy_day": state.bankruptcy_day,
            "inventory": dict(state.inventory),
            "finished_products": dict(state.finished_products),
            "orders": [asdict(o) for o in state.orders],
            "manufacturing_orders": [asdict(o) for o in state.manufacturing_orders],
            "sales_orders": [asdict(o) for o in state.sales_orders],
            "outstanding_loans": [asdict(x) for x in state.outstanding_loans],
            "market_prices": dict(state.market_prices),
            "market_opportunity": asdict(state.market_opportunity),
            "trade_loan": {"available": ok, "reason": reason},
            "summary": state_summary(state, horizon_days=cfg.horizon_days, target=cfg.win_cash_target),
        }

    def _mutate(fn: Callable[[GameState], object]) -> dict:
        """Run one state-changing operation under the lock and persist its events.

        Post-advance rejections still consumed a day, so the state is saved
        even when the operation raises.
        """

        with _lock:
            state = _ensure_state(cfg)
            start = len(state.events)
            day_before = state.day
            try:
                result = fn(state)
            except ValidationError as e:
                if state.day != day_before:
                    save_state(state)
                    append_events_csv(state.events[start:])
                out = _error(e)
                out["day"] = int(state.day)
                out["events"] = [asdict(ev) for ev in state.events[start:]]
                return out
            save_state(state)
            new_events = state.events[start:]
            append_events_csv(new_events)
            dto = _state_to_dto(state)
        body = {"state": dto, "events": [asdict(ev) for ev in new_events]}
        if result is not None:
            body["result"] = asdict(result)  # type: ignore[call-overload]
        return body

    @app.get("/")
    def root():
        return {
            "name": "textile-trade-finance-simulator",
            "api": "/api/state",
            "downloads": ["/download/state", "/download/events"],
        }

    @app.get("/api/state")
    def api_state():
        with _lock:
            state = _ensure_state(cfg)
            dto = _state_to_dto(state)
        return dto

    @app.get("/api/market")
    def api_market():
        with _lock:
            state = _ensure_state(cfg)
            return {
                "day": int(state.day),
                "prices": dict(state.market_prices),
                "opportunity": asdict(state.market_opportunity),
                "materials": {k: asdict(m) for k, m in state.catalog.materials.items()},
            }

    @app.get("/api/quotes/vendors")
    def api_vendor_quotes(material: str = ""):
        with _lock:
            state = _ensure_state(cfg)
            if material not in state.catalog.materials:
                return {"error": f"Unknown material: {material}", "code": "unknown_key"}
            # Quotes carry their own jitter draw, so the generator moves on.
            rng = rng_from_state(state)
            quotes = vendor_quotes(state, material, cfg, rng)
            persist_rng_state(state, rng)
            save_state(state)
        return {"material": material, "quotes": quotes}

    @app.get("/api/quotes/buyers")
    def api_buyer_quotes(product: str = ""):
        with _lock:
            state = _ensure_state(cfg)
            if product not in state.catalog.products:
                return {"error": f"Unknown product: {product}", "code": "unknown_key"}
            return {"product": product, "quotes": buyer_quotes(state, product)}

    @app.get("/api/manufacturing/capacity")
    def api_manufacturing_capacity(product: str = ""):
        with _lock:
            state = _ensure_state(cfg)
            if product not in state.catalog.products:
                return {"error": f"Unknown product: {product}", "code": "unknown_key"}
            max_units, limiting = manufacturing_capacity(state, product)
            p = state.catalog.products[product]
            return {
                "product": product,
                "max_units": int(max_units),
                "limiting_material": limiting,
                "affordable_units": max_affordable_units(state, product),
                "unit_cost": float(p.manufacturing_cost),
                "manufacturing_days": int(p.manufacturing_days),
            }

    @app.get("/api/banking")
    def api_banking():
        with _lock:
            state = _ensure_state(cfg)
            ok, reason = trade_loan_status(state, cfg)
            return {
                "services": banking_menu(state),
                "trade_loan": {"available": ok, "reason": reason, "tenors": list(cfg.trade_loan_tenors)},
                "outstanding_loans": len(state.outstanding_loans),
                "max_outstanding_loans": int(cfg.max_outstanding_loans),
            }

    @app.get("/api/events")
    def api_events(since_day: int = 0):
        with _lock:
            state = _ensure_state(cfg)
            return {
                "day": int(state.day),
                "events": [asdict(e) for e in state.events if e.day >= int(since_day)],
            }

    @app.post("/api/sourcing-orders")
    def api_sourcing_order(payload: dict = Body(default={})):
        return _mutate(
            lambda s: place_sourcing_order(
                s,
                material=str(payload.get("material") or ""),
                vendor=str(payload.get("vendor") or ""),
                quantity=payload.get("quantity"),
                financing_method=str(payload.get("financing_method") or ""),
                tenor=payload.get("tenor"),
                cfg=cfg,
            )
        )

    @app.post("/api/manufacturing-orders")
    def api_manufacturing_order(payload: dict = Body(default={})):
        return _mutate(
            lambda s: start_manufacturing(
                s,
                product=str(payload.get("product") or ""),
                quantity=payload.get("quantity"),
                cfg=cfg,
            )
        )

    @app.post("/api/sales-orders")
    def api_sales_order(payload: dict = Body(default={})):
        return _mutate(
            lambda s: create_sales_order(
                s,
                product=str(payload.get("product") or ""),
                buyer=str(payload.get("buyer") or ""),
                quantity=payload.get("quantity"),
                financing_method=str(payload.get("financing_method") or ""),
                cfg=cfg,
            )
        )

    @app.post("/api/banking/{service_key}")
    def api_banking_use(service_key: str):
        return _mutate(lambda s: use_banking_service(s, service_key, cfg=cfg))

    @app.post("/api/advance")
    def api_advance():
        return _mutate(lambda s: advance_day(s, cfg=cfg))

    @app.post("/api/continue")
    def api_continue():
        def _continue(s: GameState) -> None:
            continue_run(s, cfg)

        return _mutate(_continue)

    @app.post("/api/reset")
    def api_reset(payload: dict = Body(default={})):
        raw = payload.get("seed")
        seed: Optional[int] = None
        if raw is not None and raw != "":
            try:
                seed = int(raw)
            except (TypeError, ValueError):
                return {"error": f"Seed must be an integer, got {raw!r}", "code": "invalid_seed"}
        with _lock:
            reset_data_files()
            s = new_game(seed=seed, cfg=cfg)
            save_state(s)
            append_events_csv(s.events)
            dto = _state_to_dto(s)
        return dto

    @app.get("/download/state")
    def download_state():
        with _lock:
            _ensure_state(cfg)
        return FileResponse(str(state_path()), media_type="application/json", filename="state.json")

    @app.get("/download/events")
    def download_events():
        with _lock:
            _ensure_state(cfg)
            p = events_path()
            if not p.exists():
                return {"error": "no events recorded yet"}
        return FileResponse(str(p), media_type="text/csv", filename="events.csv")

    return app


app = create_app()
