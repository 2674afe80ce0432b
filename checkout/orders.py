import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

from psycopg import errors as pg_errors

from . import db, repository
from .errors import CheckoutError, EmptyCart, OrderNotFound, PersistenceFailure, SelectionNotFound, StockConflict
from .models import CartSnapshot, CheckoutRequest, Order, OrderItem, PaymentSession, Shipment, ShippingAdjustment, ShippingQuote
from .settings import ORDER_CODE_ATTEMPTS, PAYMENT_DUE_DAYS
from .shipping import compute_totals

logger = logging.getLogger(__name__)

CREATED = "CREATED"
UNPAID = "UNPAID"
SHIPMENT_PENDING = "PENDING"

_CODE_ALPHABET = string.ascii_uppercase + string.digits
# driver errors that mean "someone else touched the same rows", worth a retry by the buyer
_CONFLICT_ERRORS = (pg_errors.DeadlockDetected, pg_errors.SerializationFailure, pg_errors.LockNotAvailable)


def generate_order_code(now: datetime) -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"INV-{now:%Y%m%d}-{suffix}"


def order_from_rows(order_row: dict, item_rows: list[dict], shipment_row: Optional[dict]) -> Order:
    return Order(
        **order_row,
        items=[OrderItem(**row) for row in item_rows],
        shipment=Shipment(**shipment_row) if shipment_row else None,
    )


def _insert_with_unique_code(conn, values: dict, now: datetime, attempts: int) -> dict:
    for _ in range(attempts):
        code = generate_order_code(now)
        try:
            # savepoint: a collision must not poison the surrounding transaction
            with conn.transaction():
                return repository.insert_order(conn, {**values, "code": code})
        except pg_errors.UniqueViolation:
            logger.warning("order code collision %s, regenerating", code)
    raise PersistenceFailure("could not allocate a unique order code")


def commit_order(
    buyer_id: str,
    cart: CartSnapshot,
    quote: Optional[ShippingQuote],
    req: CheckoutRequest,
    *,
    now: Optional[datetime] = None,
    due_days: int = PAYMENT_DUE_DAYS,
    code_attempts: int = ORDER_CODE_ATTEMPTS,
) -> Order:
    """
    Persists the order, its items and shipment, refreshes the buyer profile and
    decrements stock, all in one transaction.

    Totals are recomputed from `cart`; nothing submitted by the client is
    trusted. Any failure rolls every write back: the buyer update, the order
    and item rows, stock decrements and the shipment.
    """
    if cart.is_empty:
        raise EmptyCart()
    if quote is None:
        raise SelectionNotFound()

    now = now or datetime.now(timezone.utc)
    totals = compute_totals(cart, ShippingAdjustment.from_quote(quote))
    ship = req.shipping_address()

    values = {
        "buyer_id": buyer_id,
        "status": CREATED,
        "payment_status": UNPAID,
        "order_date": now,
        "payment_due": now + timedelta(days=due_days),
        "base_total_price": totals.subtotal,
        "shipping_cost": totals.shipping_cost,
        "discount_amount": totals.discount_amount,
        "discount_percent": 0,
        "grand_total": totals.grand_total,
        "customer_first_name": req.first_name,
        "customer_last_name": req.last_name,
        "customer_address1": req.address1,
        "customer_address2": req.address2,
        "customer_phone": req.phone,
        "customer_email": req.email,
        "customer_province_id": req.province_id,
        "customer_city_id": req.city_id,
        "customer_postcode": req.postcode,
        "note": req.note,
        "shipping_courier": quote.courier,
        "shipping_service_name": quote.service,
    }

    try:
        with db.get_conn() as conn:
            repository.update_buyer_profile(conn, buyer_id, req)
            order_row = _insert_with_unique_code(conn, values, now, code_attempts)
            item_rows = [repository.insert_order_item(conn, order_row["id"], line) for line in cart.lines]

            # fixed lock order across concurrent commits
            for line in sorted(cart.lines, key=lambda l: l.product_id):
                if not repository.decrement_stock(conn, line.product_id, line.quantity):
                    raise StockConflict(line.product_id)

            shipment_row = repository.insert_shipment(conn, {
                "order_id": order_row["id"],
                "buyer_id": buyer_id,
                "status": SHIPMENT_PENDING,
                "total_qty": cart.total_quantity,
                "total_weight": cart.total_weight,
                **ship.model_dump(),
            })
    except StockConflict as e:
        logger.warning("stock conflict buyer=%s product=%s", buyer_id, e.product_id)
        raise
    except CheckoutError:
        raise
    except _CONFLICT_ERRORS as e:
        logger.warning("concurrent update while committing order buyer=%s: %s", buyer_id, e)
        raise StockConflict() from e
    except Exception as e:
        logger.exception("order commit failed buyer=%s", buyer_id)
        raise PersistenceFailure() from e

    order = order_from_rows(order_row, item_rows, shipment_row)
    logger.info("order %s committed buyer=%s grand_total=%s", order.code, buyer_id, order.grand_total)
    return order


def attach_payment_session(order: Order, session: PaymentSession) -> Order:
    with db.get_conn() as conn:
        repository.set_payment_session(conn, order.id, session.token, session.redirect_url)
    return order.model_copy(update={"payment_token": session.token, "payment_url": session.redirect_url})


def get_order(buyer_id: str, code: str) -> Order:
    with db.get_conn() as conn:
        row = repository.get_order_by_code(conn, buyer_id, code)
        if not row:
            raise OrderNotFound()
        items = repository.get_order_items(conn, row["id"])
        shipment = repository.get_shipment(conn, row["id"])
    return order_from_rows(row, items, shipment)


def list_orders(buyer_id: str, page: int = 1, per_page: int = 10) -> dict:
    page = max(page, 1)
    with db.get_conn() as conn:
        rows = repository.list_orders(conn, buyer_id, per_page, (page - 1) * per_page)
        total = repository.count_orders(conn, buyer_id)
    return {
        "items": [Order(**row) for row in rows],
        "total": total,
        "page": page,
        "per_page": per_page,
    }
