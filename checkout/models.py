from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Literal, Optional

OrderStatus = Literal["CREATED", "CONFIRMED", "DELIVERED", "COMPLETED", "CANCELLED"]
PaymentStatus = Literal["UNPAID", "PAID", "EXPIRED", "FAILED"]
ShipmentStatus = Literal["PENDING", "SHIPPED", "DELIVERED"]


class CartLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    quantity: int = Field(ge=1)
    unit_weight: Decimal = Field(ge=0)
    unit_price: int = Field(ge=0)

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    @property
    def line_weight(self) -> Decimal:
        return self.unit_weight * self.quantity


class CartSnapshot(BaseModel):
    """Read-only view of a buyer's cart for the duration of one checkout attempt."""

    model_config = ConfigDict(frozen=True)

    buyer_id: str
    lines: tuple[CartLine, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def subtotal(self) -> int:
        return sum(line.line_total for line in self.lines)

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def total_weight(self) -> Decimal:
        return sum((line.line_weight for line in self.lines), Decimal("0"))


class ShippingQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    service: str
    cost: int = Field(ge=0)
    etd: str = ""
    courier: str


class AggregateResult(BaseModel):
    origin: str
    destination: str
    weight: Decimal
    quotes: list[ShippingQuote] = []
    # set when the result is degraded: "configuration" or "no_carrier_response"
    reason: Optional[str] = None


class ShippingAdjustment(BaseModel):
    model_config = ConfigDict(frozen=True)

    courier: str
    service: str
    cost: int = Field(ge=0)

    @classmethod
    def from_quote(cls, quote: ShippingQuote) -> "ShippingAdjustment":
        return cls(courier=quote.courier, service=quote.service, cost=quote.cost)


class Totals(BaseModel):
    subtotal: int
    shipping_cost: int
    discount_amount: int = 0
    grand_total: int


class BuyerContext(BaseModel):
    id: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    province_id: Optional[str] = None
    city_id: Optional[str] = None
    postcode: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class ShippingAddress(BaseModel):
    first_name: str
    last_name: Optional[str] = None
    address1: str
    address2: Optional[str] = None
    phone: str
    email: str
    province_id: str
    city_id: str
    postcode: str


class CheckoutRequest(BaseModel):
    username: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    last_name: Optional[str] = None
    address1: str = Field(min_length=1)
    address2: Optional[str] = None
    province_id: str = Field(min_length=1)
    city_id: str = Field(min_length=1)
    postcode: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    email: str = Field(min_length=3)
    note: Optional[str] = None
    shipping_service: str = Field(min_length=1)

    ship_to: bool = False
    shipping_first_name: Optional[str] = None
    shipping_last_name: Optional[str] = None
    shipping_address1: Optional[str] = None
    shipping_address2: Optional[str] = None
    shipping_phone: Optional[str] = None
    shipping_email: Optional[str] = None
    shipping_province_id: Optional[str] = None
    shipping_city_id: Optional[str] = None
    shipping_postcode: Optional[str] = None

    @model_validator(mode="after")
    def _ship_to_block_complete(self):
        if self.ship_to:
            required = (
                "shipping_first_name", "shipping_address1", "shipping_phone", "shipping_email",
                "shipping_province_id", "shipping_city_id", "shipping_postcode",
            )
            missing = [name for name in required if not getattr(self, name)]
            if missing:
                raise ValueError(f"ship_to requires: {', '.join(missing)}")
        return self

    @property
    def destination(self) -> str:
        return self.shipping_city_id if self.ship_to else self.city_id

    def shipping_address(self) -> ShippingAddress:
        if self.ship_to:
            return ShippingAddress(
                first_name=self.shipping_first_name,
                last_name=self.shipping_last_name,
                address1=self.shipping_address1,
                address2=self.shipping_address2,
                phone=self.shipping_phone,
                email=self.shipping_email,
                province_id=self.shipping_province_id,
                city_id=self.shipping_city_id,
                postcode=self.shipping_postcode,
            )
        return ShippingAddress(
            first_name=self.first_name,
            last_name=self.last_name,
            address1=self.address1,
            address2=self.address2,
            phone=self.phone,
            email=self.email,
            province_id=self.province_id,
            city_id=self.city_id,
            postcode=self.postcode,
        )


class ShippingCostRequest(BaseModel):
    city_id: str


class SetShippingRequest(BaseModel):
    city_id: str
    shipping_service: str


class OrderItem(BaseModel):
    id: int
    product_id: str
    qty: int
    base_price: int
    base_total: int
    discount_amount: int = 0
    discount_percent: Decimal = Decimal("0")
    sub_total: int
    name: str
    weight: Decimal


class Shipment(BaseModel):
    id: int
    status: ShipmentStatus
    total_qty: int
    total_weight: Decimal
    first_name: str
    last_name: Optional[str] = None
    address1: str
    address2: Optional[str] = None
    phone: str
    email: str
    province_id: str
    city_id: str
    postcode: str


class Order(BaseModel):
    id: int
    code: str
    buyer_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    order_date: datetime
    payment_due: datetime
    base_total_price: int
    shipping_cost: int
    discount_amount: int = 0
    discount_percent: Decimal = Decimal("0")
    grand_total: int
    customer_first_name: str
    customer_last_name: Optional[str] = None
    customer_address1: str
    customer_address2: Optional[str] = None
    customer_phone: str
    customer_email: str
    customer_province_id: str
    customer_city_id: str
    customer_postcode: str
    note: Optional[str] = None
    shipping_courier: str
    shipping_service_name: str
    payment_token: Optional[str] = None
    payment_url: Optional[str] = None
    items: list[OrderItem] = []
    shipment: Optional[Shipment] = None


class PaymentSession(BaseModel):
    token: str
    redirect_url: str


class CheckoutResponse(BaseModel):
    status: Literal["DONE", "COMMITTED_PAYMENT_PENDING"]
    order_code: str
    grand_total: int
    redirect_url: Optional[str] = None
    retry_payment_url: Optional[str] = None
    message: str
