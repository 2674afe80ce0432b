"""
SQL for orders, order items, shipments, stock and buyer profiles.

Every function takes an open connection and never commits: the caller's
`get_conn()` block is the transaction boundary.
"""
from typing import Optional

from .models import CartLine, CheckoutRequest


def get_buyer(conn, buyer_id: str) -> Optional[dict]:
    return conn.execute(
        "SELECT id, username, first_name, last_name, address1, address2, province_id, city_id, "
        "postcode, phone, email FROM buyers WHERE id = %s",
        (buyer_id,),
    ).fetchone()


def update_buyer_profile(conn, buyer_id: str, req: CheckoutRequest) -> None:
    conn.execute(
        "UPDATE buyers SET username = %(username)s, first_name = %(first_name)s, last_name = %(last_name)s, "
        "address1 = %(address1)s, address2 = %(address2)s, province_id = %(province_id)s, "
        "city_id = %(city_id)s, postcode = %(postcode)s, phone = %(phone)s, email = %(email)s, "
        "updated_at = NOW() WHERE id = %(id)s",
        {
            "id": buyer_id,
            "username": req.username,
            "first_name": req.first_name,
            "last_name": req.last_name,
            "address1": req.address1,
            "address2": req.address2,
            "province_id": req.province_id,
            "city_id": req.city_id,
            "postcode": req.postcode,
            "phone": req.phone,
            "email": req.email,
        },
    )


def insert_order(conn, values: dict) -> dict:
    return conn.execute(
        "INSERT INTO orders(code, buyer_id, status, payment_status, order_date, payment_due, "
        "base_total_price, shipping_cost, discount_amount, discount_percent, grand_total, "
        "customer_first_name, customer_last_name, customer_address1, customer_address2, customer_phone, "
        "customer_email, customer_province_id, customer_city_id, customer_postcode, note, "
        "shipping_courier, shipping_service_name) "
        "VALUES (%(code)s, %(buyer_id)s, %(status)s, %(payment_status)s, %(order_date)s, %(payment_due)s, "
        "%(base_total_price)s, %(shipping_cost)s, %(discount_amount)s, %(discount_percent)s, %(grand_total)s, "
        "%(customer_first_name)s, %(customer_last_name)s, %(customer_address1)s, %(customer_address2)s, "
        "%(customer_phone)s, %(customer_email)s, %(customer_province_id)s, %(customer_city_id)s, "
        "%(customer_postcode)s, %(note)s, %(shipping_courier)s, %(shipping_service_name)s) "
        "RETURNING *",
        values,
    ).fetchone()


def insert_order_item(conn, order_id: int, line: CartLine) -> dict:
    return conn.execute(
        "INSERT INTO order_items(order_id, product_id, qty, base_price, base_total, discount_amount, "
        "discount_percent, sub_total, name, weight) "
        "VALUES (%s, %s, %s, %s, %s, 0, 0, %s, %s, %s) RETURNING *",
        (order_id, line.product_id, line.quantity, line.unit_price, line.line_total,
         line.line_total, line.name, line.unit_weight),
    ).fetchone()


def decrement_stock(conn, product_id: str, qty: int) -> bool:
    """
    Check-then-write in one statement: the row lock taken by UPDATE makes a
    concurrent decrement re-evaluate `quantity >= qty` against the new value.
    """
    row = conn.execute(
        "UPDATE products SET quantity = quantity - %s WHERE id = %s AND quantity >= %s RETURNING quantity",
        (qty, product_id, qty),
    ).fetchone()
    return row is not None


def insert_shipment(conn, values: dict) -> dict:
    return conn.execute(
        "INSERT INTO shipments(order_id, buyer_id, status, total_qty, total_weight, first_name, last_name, "
        "address1, address2, phone, email, province_id, city_id, postcode) "
        "VALUES (%(order_id)s, %(buyer_id)s, %(status)s, %(total_qty)s, %(total_weight)s, %(first_name)s, "
        "%(last_name)s, %(address1)s, %(address2)s, %(phone)s, %(email)s, %(province_id)s, %(city_id)s, "
        "%(postcode)s) RETURNING *",
        values,
    ).fetchone()


def set_payment_session(conn, order_id: int, token: str, url: str) -> None:
    conn.execute(
        "UPDATE orders SET payment_token = %s, payment_url = %s, updated_at = NOW() WHERE id = %s",
        (token, url, order_id),
    )


def get_order_by_code(conn, buyer_id: str, code: str) -> Optional[dict]:
    return conn.execute(
        "SELECT * FROM orders WHERE code = %s AND buyer_id = %s",
        (code, buyer_id),
    ).fetchone()


def get_order_items(conn, order_id: int) -> list[dict]:
    return conn.execute(
        "SELECT * FROM order_items WHERE order_id = %s ORDER BY id",
        (order_id,),
    ).fetchall()


def get_shipment(conn, order_id: int) -> Optional[dict]:
    return conn.execute(
        "SELECT * FROM shipments WHERE order_id = %s",
        (order_id,),
    ).fetchone()


def list_orders(conn, buyer_id: str, limit: int, offset: int) -> list[dict]:
    return conn.execute(
        "SELECT * FROM orders WHERE buyer_id = %s ORDER BY order_date DESC, id DESC LIMIT %s OFFSET %s",
        (buyer_id, limit, offset),
    ).fetchall()


def count_orders(conn, buyer_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM orders WHERE buyer_id = %s",
        (buyer_id,),
    ).fetchone()
    return row["n"]
