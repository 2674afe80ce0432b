"""
Checkout sequencing: quote -> select -> commit -> open payment -> clear cart.

The database is never held across a network call: the cart is read in its
own short transaction, carriers are queried with no connection open, and the
payment gateway is called only after the commit transaction has closed.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from . import carts, db, orders
from .errors import CheckoutError, EmptyCart, PaymentGatewayFailure, PaymentNotRetryable, SelectionNotFound
from .models import AggregateResult, BuyerContext, CartSnapshot, CheckoutRequest, Order, ShippingAdjustment, Totals
from .payments import PaymentSessionGateway
from .shipping import ShippingAggregator, compute_totals, select_shipping

logger = logging.getLogger(__name__)


class CheckoutState(str, Enum):
    QUOTING = "QUOTING"
    SELECTING = "SELECTING"
    COMMITTING = "COMMITTING"
    PAYING = "PAYING"
    DONE = "DONE"
    REJECTED = "REJECTED"
    COMMITTED_PAYMENT_PENDING = "COMMITTED_PAYMENT_PENDING"
    FAILED = "FAILED"


_TRANSITIONS = {
    CheckoutState.QUOTING: {CheckoutState.SELECTING, CheckoutState.REJECTED},
    CheckoutState.SELECTING: {CheckoutState.COMMITTING, CheckoutState.REJECTED},
    CheckoutState.COMMITTING: {CheckoutState.PAYING, CheckoutState.FAILED},
    CheckoutState.PAYING: {CheckoutState.DONE, CheckoutState.COMMITTED_PAYMENT_PENDING},
}


class CheckoutAttempt:
    """One submission; strictly forward, never restarted."""

    def __init__(self, buyer_id: str):
        self.buyer_id = buyer_id
        self.state = CheckoutState.QUOTING
        self.history = [self.state]

    def advance(self, to: CheckoutState) -> None:
        if to not in _TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"illegal checkout transition {self.state.value} -> {to.value}")
        self.state = to
        self.history.append(to)


class CheckoutOutcome(BaseModel):
    state: CheckoutState
    order: Order
    message: str
    redirect_url: Optional[str] = None
    history: list[CheckoutState] = Field(default_factory=list)


class CheckoutPreview(BaseModel):
    cart: CartSnapshot
    adjustment: Optional[ShippingAdjustment]
    totals: Totals


def _load_cart(buyer_id: str) -> CartSnapshot:
    with db.get_conn() as conn:
        return carts.load_cart(conn, buyer_id)


def _clear_cart(buyer_id: str) -> None:
    with db.get_conn() as conn:
        carts.clear_cart(conn, buyer_id)


def _save_adjustment(buyer_id: str, adjustment: ShippingAdjustment) -> None:
    with db.get_conn() as conn:
        carts.save_shipping_adjustment(conn, buyer_id, adjustment)


def _load_preview(buyer_id: str) -> CheckoutPreview:
    with db.get_conn() as conn:
        cart = carts.load_cart(conn, buyer_id)
        adjustment = carts.load_shipping_adjustment(conn, buyer_id)
    return CheckoutPreview(cart=cart, adjustment=adjustment, totals=compute_totals(cart, adjustment))


class CheckoutOrchestrator:
    def __init__(self, aggregator: ShippingAggregator, gateway: PaymentSessionGateway):
        self.aggregator = aggregator
        self.gateway = gateway

    async def preview(self, buyer_id: str) -> CheckoutPreview:
        return await run_in_threadpool(_load_preview, buyer_id)

    async def quote(self, buyer_id: str, destination: str) -> AggregateResult:
        cart = await run_in_threadpool(_load_cart, buyer_id)
        return await self.aggregator.aggregate(destination, cart.total_weight)

    async def apply_shipping(self, buyer_id: str, destination: str, submitted: str) -> Totals:
        """Re-derives quotes and replaces the buyer's shipping adjustment with the matching one."""
        cart = await run_in_threadpool(_load_cart, buyer_id)
        result = await self.aggregator.aggregate(destination, cart.total_weight)
        quote = select_shipping(result.quotes, submitted)
        if quote is None:
            raise SelectionNotFound()
        adjustment = ShippingAdjustment.from_quote(quote)
        await run_in_threadpool(_save_adjustment, buyer_id, adjustment)
        return compute_totals(cart, adjustment)

    async def submit(self, buyer: BuyerContext, req: CheckoutRequest) -> CheckoutOutcome:
        attempt = CheckoutAttempt(buyer.id)

        cart = await run_in_threadpool(_load_cart, buyer.id)
        if cart.is_empty:
            attempt.advance(CheckoutState.REJECTED)
            raise EmptyCart()
        logger.debug(
            "checkout cart buyer=%s items=%s", buyer.id,
            [(line.product_id, line.name, line.quantity, str(line.unit_weight)) for line in cart.lines],
        )

        # authoritative quote set; the price the client saw is never reused
        result = await self.aggregator.aggregate(req.destination, cart.total_weight)
        attempt.advance(CheckoutState.SELECTING)

        quote = select_shipping(result.quotes, req.shipping_service)
        logger.info(
            "comparing shipping service submitted=%r available=%s",
            req.shipping_service, [q.service for q in result.quotes],
        )
        if quote is None:
            attempt.advance(CheckoutState.REJECTED)
            raise SelectionNotFound()

        attempt.advance(CheckoutState.COMMITTING)
        try:
            order = await run_in_threadpool(orders.commit_order, buyer.id, cart, quote, req)
        except CheckoutError:
            attempt.advance(CheckoutState.FAILED)
            raise

        attempt.advance(CheckoutState.PAYING)
        redirect_url = None
        try:
            session = await self.gateway.open(order)
        except PaymentGatewayFailure as e:
            attempt.advance(CheckoutState.COMMITTED_PAYMENT_PENDING)
            message = e.message
        else:
            redirect_url = session.redirect_url
            try:
                order = await run_in_threadpool(orders.attach_payment_session, order, session)
            except Exception:
                # the session is open at the gateway; the buyer can still pay
                logger.exception("could not store payment session for order %s", order.code)
            attempt.advance(CheckoutState.DONE)
            message = "redirecting to payment"

        try:
            await run_in_threadpool(_clear_cart, buyer.id)
        except Exception:
            logger.exception("order %s committed but cart of buyer %s was not cleared", order.code, buyer.id)

        return CheckoutOutcome(
            state=attempt.state,
            order=order,
            message=message,
            redirect_url=redirect_url,
            history=list(attempt.history),
        )

    async def retry_payment(self, buyer_id: str, code: str) -> Order:
        """Opens (or returns) the payment session of an already committed, unpaid order."""
        order = await run_in_threadpool(orders.get_order, buyer_id, code)
        if order.payment_status != orders.UNPAID:
            raise PaymentNotRetryable()
        if order.payment_due < datetime.now(timezone.utc):
            raise PaymentNotRetryable("payment window has expired")
        if order.payment_url:
            return order
        session = await self.gateway.open(order)
        return await run_in_threadpool(orders.attach_payment_session, order, session)
