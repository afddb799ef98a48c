from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


RUN_ACTIVE = "active"
RUN_VICTORY = "victory"
RUN_TIME_UP = "time_up"
RUN_BANKRUPT = "bankrupt"

FINANCING_CASH = "cash"
FINANCING_TRADE_LOAN = "tradeLoan"
FINANCING_FACTORING = "factoring"

LOAN_TRADE = "tradeLoan"
LOAN_FACTORING = "factoring"


@dataclass
class Material:
    key: str
    name: str
    base_price: float
    unit: str = "lbs"


@dataclass
class Vendor:
    key: str
    name: str
    location: str
    payment_terms: int  # days
    reliability: float = 1.0
    margin: float = 0.0  # per unit, informational
    risk_level: str = ""


@dataclass
class Buyer:
    key: str
    name: str
    location: str
    payment_terms: int  # days, 0 = cash terms
    default_risk: float = 0.0  # 0-1
    reliability: float = 1.0
    risk_level: str = ""


@dataclass
class Product:
    key: str
    name: str
    price: float  # list price at 30-day terms
    manufacturing_days: int
    manufacturing_cost: float  # per unit, drifts with cost shocks
    materials: Dict[str, float] = field(default_factory=dict)  # material key -> units per product unit
    unit: str = "yards"
    base_margin: float = 0.0


@dataclass
class BankingService:
    key: str
    name: str
    description: str
    cost: float  # interest rate / fee
    min_reputation: int = 0
    min_cash: float = 0.0


@dataclass
class Catalog:
    materials: Dict[str, Material] = field(default_factory=dict)
    vendors: Dict[str, Vendor] = field(default_factory=dict)
    buyers: Dict[str, Buyer] = field(default_factory=dict)
    products: Dict[str, Product] = field(default_factory=dict)
    banking_services: Dict[str, BankingService] = field(default_factory=dict)


@dataclass
class MarketOpportunity:
    active: bool = False
    material: Optional[str] = None
    days_remaining: int = 0
    discount_factor: float = 1.0


@dataclass
class SourcingOrder:
    order_id: str
    material: str
    vendor: str
    quantity: int
    price_per_unit: float
    total_cost: float  # includes trade-loan fee when financed
    created_day: int
    arrival_day: int
    payment_due_day: int
    financing_method: str = FINANCING_CASH
    payment_terms: int = 0
    tenor: Optional[int] = None


@dataclass
class ManufacturingOrder:
    order_id: str
    product: str
    quantity: int
    created_day: int
    completion_day: int
    manufacturing_cost: float


@dataclass
class SalesOrder:
    order_id: str
    product: str
    buyer: str
    quantity: int
    base_price: float
    unit_price: float
    revenue: float  # after factoring fee
    original_revenue: float
    created_day: int
    completion_day: int
    payment_due_day: int
    financing_method: str = FINANCING_CASH
    payment_terms: int = 0
    default_risk: float = 0.0
    will_default: bool = False  # decided at creation
    risk_level: str = ""
    factored: bool = False


@dataclass
class Loan:
    loan_id: str
    order_id: str  # originating sourcing/sales order
    loan_type: str
    principal: float
    interest_rate: float
    repayment_day: int
    total_amount: float
    created_day: int = 0

    def interest(self) -> float:
        if self.loan_type == LOAN_FACTORING:
            return self.total_amount
        return self.total_amount - self.principal


@dataclass
class EventRecord:
    day: int
    category: str
    message: str


@dataclass
class DayAdvanceReport:
    day: int
    run_state: str
    events: List[EventRecord] = field(default_factory=list)


@dataclass
class BankingOutcome:
    service_key: str
    redirect: Optional[str] = None  # "sourcing" | "sales"
    report: Optional[DayAdvanceReport] = None


@dataclass
class GameState:
    day: int = 1
    cash: float = 50_000.0
    reputation: int = 10

    catalog: Catalog = field(default_factory=Catalog)

    inventory: Dict[str, float] = field(default_factory=dict)  # material -> qty
    finished_products: Dict[str, int] = field(default_factory=dict)  # product -> qty

    orders: List[SourcingOrder] = field(default_factory=list)
    sales_orders: List[SalesOrder] = field(default_factory=list)
    manufacturing_orders: List[ManufacturingOrder] = field(default_factory=list)
    outstanding_loans: List[Loan] = field(default_factory=list)

    bankruptcy_day: Optional[int] = None
    event_triggered_today: bool = False
    total_products_sold: int = 0

    market_prices: Dict[str, float] = field(default_factory=dict)
    market_opportunity: MarketOpportunity = field(default_factory=MarketOpportunity)

    run_state: str = RUN_ACTIVE
    # Continuing past Victory stops the win check; continuing past TimeUp stops both.
    victory_dismissed: bool = False
    horizon_dismissed: bool = False

    events: List[EventRecord] = field(default_factory=list)
    next_seq: int = 1

    rng_seed: int = 20260101
    rng_state: Optional[Any] = None

    def next_id(self, prefix: str) -> str:
        seq = int(self.next_seq)
        self.next_seq = seq + 1
        return f"{prefix}{seq:06d}"

    def is_active(self) -> bool:
        return self.run_state == RUN_ACTIVE

    def add_event(self, category: str, message: str) -> EventRecord:
        rec = EventRecord(day=int(self.day), category=category, message=message)
        self.events.append(rec)
        return rec
