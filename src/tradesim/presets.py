from __future__ import annotations

from typing import Optional

from tradesim.engine import EngineConfig, persist_rng_state, rng_from_state
from tradesim.market import refresh_prices
from tradesim.models import BankingService, Buyer, Catalog, GameState, Material, Product, Vendor


def default_catalog() -> Catalog:
    """Return a fresh copy of the textile catalog.

    Each run gets its own copy because random events drift manufacturing
    costs and banking rates in place.
    """

    cat = Catalog()

    cat.materials["cotton"] = Material(key="cotton", name="Cotton", base_price=2.50, unit="lbs")
    cat.materials["wool"] = Material(key="wool", name="Wool", base_price=4.20, unit="lbs")
    cat.materials["silk"] = Material(key="silk", name="Silk", base_price=15.80, unit="lbs")

    cat.vendors["cottonVendor"] = Vendor(
        key="cottonVendor",
        name="Cotton Mills Inc.",
        location="India",
        payment_terms=30,
        reliability=0.9,
        margin=0.25,
        risk_level="Medium",
    )
    cat.vendors["woolVendor"] = Vendor(
        key="woolVendor",
        name="Highland Wool Co.",
        location="Scotland",
        payment_terms=45,
        reliability=0.85,
        margin=0.50,
        risk_level="Low",
    )
    cat.vendors["silkVendor"] = Vendor(
        key="silkVendor",
        name="Silk Road Trading",
        location="China",
        payment_terms=15,
        reliability=0.95,
        margin=0.15,
        risk_level="High",
    )

    cat.buyers["localRetailer"] = Buyer(
        key="localRetailer",
        name="Local Textile Retailer",
        location="Local",
        payment_terms=15,
        default_risk=0.05,
        reliability=0.95,
        risk_level="Low",
    )
    cat.buyers["regionalDistributor"] = Buyer(
        key="regionalDistributor",
        name="Regional Distribution Co.",
        location="Regional",
        payment_terms=30,
        default_risk=0.10,
        reliability=0.90,
        risk_level="Low",
    )
    cat.buyers["nationalChain"] = Buyer(
        key="nationalChain",
        name="National Retail Chain",
        location="National",
        payment_terms=45,
        default_risk=0.15,
        reliability=0.85,
        risk_level="Medium",
    )
    cat.buyers["europeanBuyer"] = Buyer(
        key="europeanBuyer",
        name="European Textile Import",
        location="Europe",
        payment_terms=60,
        default_risk=0.25,
        reliability=0.75,
        risk_level="High",
    )
    cat.buyers["asianBuyer"] = Buyer(
        key="asianBuyer",
        name="Asian Trading Company",
        location="Asia",
        payment_terms=0,
        default_risk=0.0,
        reliability=1.0,
        risk_level="None",
    )

    cat.products["cottonFabric"] = Product(
        key="cottonFabric",
        name="Cotton Fabric",
        price=11.25,
        manufacturing_days=2,
        manufacturing_cost=1.50,
        materials={"cotton": 2.0},
        base_margin=1.70,
    )
    cat.products["woolFabric"] = Product(
        key="woolFabric",
        name="Wool Fabric",
        price=20.25,
        manufacturing_days=3,
        manufacturing_cost=2.50,
        materials={"wool": 2.0},
        base_margin=3.40,
    )
    cat.products["syntheticFabric"] = Product(
        key="syntheticFabric",
        name="Synthetic Fabric",
        price=36.00,
        manufacturing_days=5,
        manufacturing_cost=8.00,
        materials={"wool": 2.0, "silk": 1.0},
        base_margin=6.80,
    )

    cat.banking_services["tradeLoan"] = BankingService(
        key="tradeLoan",
        name="Trade Loan",
        description="Short-term financing for inventory purchases (30-90 days)",
        cost=0.06,
        min_reputation=40,
        min_cash=2000.0,
    )
    cat.banking_services["factoring"] = BankingService(
        key="factoring",
        name="Factoring",
        description="Sell accounts receivable for immediate cash",
        cost=0.05,
        min_reputation=35,
        min_cash=1500.0,
    )
    return cat


def new_game(
    seed: Optional[int] = None,
    cfg: Optional[EngineConfig] = None,
    catalog: Optional[Catalog] = None,
) -> GameState:
    """Build a runnable day-1 state with opening market prices.

    This is shared by the web service and the tests.
    """

    cfg = cfg or EngineConfig()
    state = GameState(
        day=1,
        cash=float(cfg.starting_cash),
        reputation=int(cfg.starting_reputation),
        catalog=catalog if catalog is not None else default_catalog(),
    )
    if seed is not None:
        state.rng_seed = int(seed)

    rng = rng_from_state(state)
    state.add_event(
        "Welcome",
        f"Welcome to your new textile business! You have ${cfg.starting_cash:,.2f} in startup capital. "
        f"Your objective is to grow your business to ${cfg.win_cash_target:,.0f} within {cfg.horizon_days} days. "
        "Use trade finance banking products to get there.",
    )
    refresh_prices(state, cfg, rng)
    persist_rng_state(state, rng)
    return state
