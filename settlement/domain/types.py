from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ItemType = Literal["digital", "track", "vinyl", "merch"]
PaymentMethod = Literal["card", "paypal", "free", "credit", "manual"]
OrderStatus = Literal["processing", "awaiting_release", "completed", "cancelled", "refunded"]
PayeeRole = Literal["artist", "merchSupplier", "vinylSeller"]
Rail = Literal["instant", "batch"]
PayoutStatus = Literal["completed", "reversed", "partially_reversed"]
PendingStatus = Literal["awaiting_connect", "retry_pending", "processing", "resolved", "cancelled"]
DisputeStatus = Literal["open", "won", "lost"]

PAYEE_COLLECTIONS: dict[str, str] = {
    "artist": "artists",
    "merchSupplier": "merch-suppliers",
    "vinylSeller": "users",
}

# statuses of a pending payout that still owe the payee money
OPEN_PENDING_STATUSES = ("awaiting_connect", "retry_pending", "processing")


class Document(BaseModel):
    """A stored document; attributes are snake_case, stored keys camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]):
        return cls.model_validate(doc)

    def to_doc(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"id"})


class Customer(Document):
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    user_id: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class OrderTotals(Document):
    subtotal: float = 0.0
    shipping: float = 0.0
    platform_fee: float = 0.0
    processor_fee: float = 0.0
    service_fees: float = 0.0
    total: float = 0.0


class OrderItem(Document):
    # carts carry many historical fields; unknown ones are kept verbatim
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: ItemType = "digital"
    name: str = ""
    title: str | None = None
    price: float = 0.0
    quantity: int = Field(default=1, ge=1)
    payee_id: str | None = None
    payee_role: PayeeRole | None = None
    artist_id: str | None = None
    seller_id: str | None = None
    source_listing_id: str | None = None
    release_id: str | None = None
    product_id: str | None = None
    track_id: str | None = None
    size: str | None = None
    color: str | None = None
    is_pre_order: bool = False
    release_date: str | None = None
    artwork: str | None = None
    image: str | None = None
    downloads: dict[str, Any] | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _legacy_release_type(cls, value: Any) -> Any:
        if value in (None, "", "release"):
            return "digital"
        return value

    @field_validator("quantity", mode="before")
    @classmethod
    def _default_quantity(cls, value: Any) -> Any:
        return 1 if value in (None, 0) else value

    @property
    def line_total(self) -> float:
        return self.price * self.quantity

    @property
    def is_physical(self) -> bool:
        return self.type in ("vinyl", "merch")

    @property
    def catalog_release_id(self) -> str | None:
        return self.release_id or self.product_id or self.id

    @property
    def listing_id(self) -> str | None:
        """Peer-to-peer listing this item was bought from, if any."""
        if self.source_listing_id:
            return self.source_listing_id
        if self.type == "vinyl" and self.seller_id and not self.release_id:
            return self.id
        return None


class Order(Document):
    order_number: str
    customer: Customer
    shipping: dict[str, Any] | None = None
    items: list[OrderItem] = Field(default_factory=list)
    totals: OrderTotals = Field(default_factory=OrderTotals)
    currency: str = "gbp"
    has_physical_items: bool = False
    has_pre_order_items: bool = False
    pre_order_delivery_date: str | None = None
    payment_method: PaymentMethod = "card"
    payment_reference: str | None = None
    status: OrderStatus = "processing"
    refund_status: str | None = None
    refund_amount: float | None = None
    dispute_status: str | None = None
    cancelled_at: str | None = None
    created_at: str
    updated_at: str


class StockMovement(Document):
    item_ref: str
    type: Literal["sell", "return"]
    quantity: int
    stock_delta: int
    previous_stock: int
    new_stock: int
    order_id: str
    order_number: str
    variant_key: str | None = None
    notes: str | None = None
    created_at: str
    created_by: str = "system"


class Payout(Document):
    payee_id: str
    payee_role: PayeeRole
    payee_name: str | None = None
    order_id: str
    order_number: str | None = None
    amount: float
    currency: str
    rail: Rail
    status: PayoutStatus = "completed"
    reversed_amount: float = 0.0
    external_transfer_ref: str | None = None
    payout_service_fee: float | None = None
    reason: str = "sale"
    original_payout_id: str | None = None
    from_pending_payout: str | None = None
    created_at: str
    updated_at: str | None = None

    @property
    def remaining(self) -> float:
        return round(self.amount - self.reversed_amount, 2)


class PendingPayout(Document):
    payee_id: str
    payee_role: PayeeRole
    payee_name: str | None = None
    payee_email: str | None = None
    order_id: str
    order_number: str | None = None
    amount: float
    original_amount: float | None = None
    currency: str
    status: PendingStatus
    reason: str = "sale"
    failure_reason: str | None = None
    original_payout_id: str | None = None
    retry_count: int = 0
    # whether ``amount`` was added to the payee's pendingBalance when held
    balance_counted: bool = True
    notification_sent: bool = False
    resolved_payout_id: str | None = None
    cancelled_reason: str | None = None
    created_at: str
    updated_at: str | None = None


class ReversedTransfer(Document):
    payout_id: str
    transfer_ref: str | None = None
    reversal_ref: str | None = None
    amount: float
    payee_id: str
    payee_role: PayeeRole
    failed: bool = False
    error: str | None = None


class Dispute(Document):
    order_id: str | None = None
    order_number: str | None = None
    charge_ref: str | None = None
    amount: float
    reason: str | None = None
    status: DisputeStatus = "open"
    transfers_reversed: list[ReversedTransfer] = Field(default_factory=list)
    amount_recovered: float = 0.0
    net_impact: float | None = None
    retransfers: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None
    created_at: str
    closed_at: str | None = None


class Refund(Document):
    charge_ref: str
    order_id: str
    order_number: str | None = None
    amount_total: float
    amount_refunded: float
    is_full_refund: bool = False
    events: list[dict[str, Any]] = Field(default_factory=list)
    created_at: str
    updated_at: str


class SalesLedgerEntry(Document):
    """One payee's part of one order. Sale figures are written once; refunds
    and disputes only append to ``adjustments`` and the running totals."""

    order_id: str
    order_number: str
    timestamp: str
    year: int
    month: int
    day: int
    customer_id: str | None = None
    customer_email: str
    payee_id: str
    payee_role: PayeeRole
    payee_name: str | None = None
    gross_total: float
    platform_fee: float
    processor_fee: float
    payout_service_fee: float = 0.0
    total_fees: float
    net_revenue: float
    payment_method: PaymentMethod
    payment_id: str | None = None
    currency: str
    item_count: int
    has_physical: bool
    has_digital: bool
    items: list[dict[str, Any]] = Field(default_factory=list)
    payout_state: str
    status: str = "sale"
    reversed_amount: float = 0.0
    reissued_amount: float = 0.0
    adjustments: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: str | None = None


class Payee(Document):
    email: str | None = None
    artist_name: str | None = None
    name: str | None = None
    display_name: str | None = None
    stripe_connect_id: str | None = None
    stripe_connect_status: str | None = None
    paypal_email: str | None = None
    payout_method: str | None = None
    total_earnings: float = 0.0
    pending_balance: float = 0.0

    @property
    def label(self) -> str:
        return self.artist_name or self.name or self.display_name or "there"

    @property
    def bank_transfer_account(self) -> str | None:
        if self.stripe_connect_id and self.stripe_connect_status == "active":
            return self.stripe_connect_id
        return None

    @property
    def payout_service_email(self) -> str | None:
        return self.paypal_email or None
