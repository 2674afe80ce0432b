"""
Cart collaborator: read-only snapshots of a buyer's cart plus the single
shipping adjustment chosen for the in-progress checkout.
"""
from typing import Optional

from .models import CartLine, CartSnapshot, ShippingAdjustment


def load_cart(conn, buyer_id: str) -> CartSnapshot:
    # price, weight and name come from the live product row, never from the client
    rows = conn.execute(
        "SELECT c.product_id, p.name, c.quantity, p.weight AS unit_weight, p.price AS unit_price "
        "FROM cart_items c JOIN products p ON p.id = c.product_id "
        "WHERE c.buyer_id = %s ORDER BY c.added_at, c.product_id",
        (buyer_id,),
    ).fetchall()
    return CartSnapshot(buyer_id=buyer_id, lines=tuple(CartLine(**row) for row in rows))


def clear_cart(conn, buyer_id: str) -> None:
    conn.execute("DELETE FROM cart_items WHERE buyer_id = %s", (buyer_id,))
    conn.execute("DELETE FROM checkout_sessions WHERE buyer_id = %s", (buyer_id,))


def save_shipping_adjustment(conn, buyer_id: str, adjustment: ShippingAdjustment) -> None:
    conn.execute(
        "INSERT INTO checkout_sessions(buyer_id, courier, service, cost) VALUES (%s, %s, %s, %s) "
        "ON CONFLICT (buyer_id) DO UPDATE SET courier = EXCLUDED.courier, service = EXCLUDED.service, "
        "cost = EXCLUDED.cost, updated_at = NOW()",
        (buyer_id, adjustment.courier, adjustment.service, adjustment.cost),
    )


def load_shipping_adjustment(conn, buyer_id: str) -> Optional[ShippingAdjustment]:
    row = conn.execute(
        "SELECT courier, service, cost FROM checkout_sessions WHERE buyer_id = %s",
        (buyer_id,),
    ).fetchone()
    return ShippingAdjustment(**row) if row else None
