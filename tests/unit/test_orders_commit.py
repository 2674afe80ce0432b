import random
import pytest
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from psycopg import errors as pg_errors

from checkout import orders
from checkout.errors import EmptyCart, PersistenceFailure, SelectionNotFound, StockConflict
from checkout.models import CartSnapshot, CheckoutRequest, ShippingQuote

NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


class FakeDB:
    """Staged writes become visible only when the `get_conn` block exits cleanly."""

    def __init__(self, stock):
        self.stock = dict(stock)
        self.buyers = {}
        self.orders = []
        self.items = []
        self.shipments = []
        self.commits = 0
        self.rollbacks = 0
        self.next_id = 1

    @contextmanager
    def get_conn(self):
        conn = FakeConn(self)
        try:
            yield conn
        except Exception:
            self.rollbacks += 1
            raise
        self.buyers.update(conn.buyers)
        self.orders.extend(conn.orders)
        self.items.extend(conn.items)
        self.shipments.extend(conn.shipments)
        for pid, qty in conn.decrements.items():
            self.stock[pid] -= qty
        self.commits += 1


class FakeConn:
    def __init__(self, db: FakeDB):
        self.db = db
        self.buyers = {}
        self.orders = []
        self.items = []
        self.shipments = []
        self.decrements = {}

    def transaction(self):
        return nullcontext()

    def new_id(self):
        self.db.next_id += 1
        return self.db.next_id


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDB({"p-1": 10, "p-2": 5})
    monkeypatch.setattr("checkout.db.get_conn", db.get_conn)

    def update_buyer_profile(conn, buyer_id, req):
        conn.buyers[buyer_id] = req.model_dump()

    def insert_order(conn, values):
        row = {**values, "id": conn.new_id(), "payment_token": None, "payment_url": None}
        conn.orders.append(row)
        return row

    def insert_order_item(conn, order_id, line):
        row = {
            "id": conn.new_id(), "order_id": order_id, "product_id": line.product_id, "qty": line.quantity,
            "base_price": line.unit_price, "base_total": line.line_total, "discount_amount": 0,
            "discount_percent": Decimal("0"), "sub_total": line.line_total, "name": line.name,
            "weight": line.unit_weight,
        }
        conn.items.append(row)
        return row

    def decrement_stock(conn, product_id, qty):
        available = conn.db.stock.get(product_id, 0) - conn.decrements.get(product_id, 0)
        if available < qty:
            return False
        conn.decrements[product_id] = conn.decrements.get(product_id, 0) + qty
        return True

    def insert_shipment(conn, values):
        row = {**values, "id": conn.new_id()}
        conn.shipments.append(row)
        return row

    monkeypatch.setattr("checkout.repository.update_buyer_profile", update_buyer_profile)
    monkeypatch.setattr("checkout.repository.insert_order", insert_order)
    monkeypatch.setattr("checkout.repository.insert_order_item", insert_order_item)
    monkeypatch.setattr("checkout.repository.decrement_stock", decrement_stock)
    monkeypatch.setattr("checkout.repository.insert_shipment", insert_shipment)
    return db


def _assert_nothing_persisted(db: FakeDB, stock_before: dict):
    assert db.orders == []
    assert db.items == []
    assert db.shipments == []
    assert db.buyers == {}
    assert db.stock == stock_before
    assert db.commits == 0
    assert db.rollbacks == 1


def test_commit_persists_everything(fake_db, make_cart, jne_reg, checkout_request):
    cart = make_cart(("p-1", 2, "1.5", 50000), ("p-2", 1, "0.25", 20000))

    order = orders.commit_order("buyer-1", cart, jne_reg, checkout_request, now=NOW)

    assert order.code.startswith("INV-20261019-")
    assert order.status == "CREATED"
    assert order.payment_status == "UNPAID"
    assert order.payment_due == NOW + timedelta(days=3)
    assert order.base_total_price == 120000
    assert order.shipping_cost == 9000
    assert order.discount_amount == 0
    assert order.grand_total == 129000
    assert order.shipping_courier == "jne"
    assert order.shipping_service_name == "JNE - REG"
    assert order.payment_token is None and order.payment_url is None
    assert [(i.product_id, i.qty, i.base_total, i.sub_total) for i in order.items] == [
        ("p-1", 2, 100000, 100000),
        ("p-2", 1, 20000, 20000),
    ]
    assert order.shipment.status == "PENDING"
    assert order.shipment.total_qty == 3
    assert order.shipment.total_weight == Decimal("3.25")
    assert order.shipment.city_id == "151"

    assert fake_db.stock == {"p-1": 8, "p-2": 4}
    assert fake_db.buyers["buyer-1"]["first_name"] == "Budi"
    assert fake_db.commits == 1 and fake_db.rollbacks == 0


def test_payment_due_window_is_configurable(fake_db, make_cart, jne_reg, checkout_request):
    order = orders.commit_order("buyer-1", make_cart(), jne_reg, checkout_request, now=NOW, due_days=1)
    assert order.payment_due == NOW + timedelta(days=1)


def test_ship_to_other_address(fake_db, make_cart, jne_reg, checkout_form):
    req = CheckoutRequest(**{
        **checkout_form,
        "ship_to": True,
        "shipping_first_name": "Siti",
        "shipping_address1": "Jl. Asia Afrika 8",
        "shipping_phone": "0811111111",
        "shipping_email": "siti@example.com",
        "shipping_province_id": "9",
        "shipping_city_id": "23",
        "shipping_postcode": "40111",
    })
    assert req.destination == "23"

    order = orders.commit_order("buyer-1", make_cart(), jne_reg, req, now=NOW)

    assert order.shipment.first_name == "Siti"
    assert order.shipment.city_id == "23"
    assert order.shipment.province_id == "9"
    # billing snapshot stays on the buyer's own address
    assert order.customer_first_name == "Budi"
    assert order.customer_city_id == "151"


def test_forced_shipment_failure_rolls_everything_back(fake_db, monkeypatch, make_cart, jne_reg, checkout_request):
    def broken_shipment(conn, values):
        raise RuntimeError("disk full")

    monkeypatch.setattr("checkout.repository.insert_shipment", broken_shipment)
    before = dict(fake_db.stock)

    with pytest.raises(PersistenceFailure):
        orders.commit_order("buyer-1", make_cart(), jne_reg, checkout_request, now=NOW)

    _assert_nothing_persisted(fake_db, before)


def test_stock_conflict_aborts_whole_order(fake_db, make_cart, jne_reg, checkout_request):
    cart = make_cart(("p-1", 1, "1", 1000), ("p-2", 6, "1", 1000))
    before = dict(fake_db.stock)

    with pytest.raises(StockConflict) as exc:
        orders.commit_order("buyer-1", cart, jne_reg, checkout_request, now=NOW)

    assert exc.value.product_id == "p-2"
    assert exc.value.status_code == 409
    _assert_nothing_persisted(fake_db, before)


def test_unknown_product_is_a_stock_conflict(fake_db, make_cart, jne_reg, checkout_request):
    with pytest.raises(StockConflict):
        orders.commit_order("buyer-1", make_cart(("gone", 1, "1", 1000)), jne_reg, checkout_request, now=NOW)


def test_deadlock_maps_to_stock_conflict(fake_db, monkeypatch, make_cart, jne_reg, checkout_request):
    def deadlock(conn, product_id, qty):
        raise pg_errors.DeadlockDetected("deadlock detected")

    monkeypatch.setattr("checkout.repository.decrement_stock", deadlock)
    with pytest.raises(StockConflict):
        orders.commit_order("buyer-1", make_cart(), jne_reg, checkout_request, now=NOW)
    assert fake_db.orders == []


def test_order_code_collision_regenerates(fake_db, monkeypatch, make_cart, jne_reg, checkout_request):
    insert_order = orders.repository.insert_order
    attempts = []

    def colliding_insert(conn, values):
        attempts.append(values["code"])
        if len(attempts) < 3:
            raise pg_errors.UniqueViolation("duplicate key value violates unique constraint")
        return insert_order(conn, values)

    monkeypatch.setattr("checkout.repository.insert_order", colliding_insert)
    order = orders.commit_order("buyer-1", make_cart(), jne_reg, checkout_request, now=NOW)

    assert len(attempts) == 3
    assert order.code == attempts[-1]
    assert len(fake_db.orders) == 1


def test_order_code_collisions_exhausted(fake_db, monkeypatch, make_cart, jne_reg, checkout_request):
    def always_collides(conn, values):
        raise pg_errors.UniqueViolation("duplicate key value violates unique constraint")

    monkeypatch.setattr("checkout.repository.insert_order", always_collides)
    before = dict(fake_db.stock)

    with pytest.raises(PersistenceFailure):
        orders.commit_order("buyer-1", make_cart(), jne_reg, checkout_request, now=NOW, code_attempts=2)

    _assert_nothing_persisted(fake_db, before)


def test_preconditions_fail_before_opening_a_transaction(fake_db, make_cart, jne_reg, checkout_request):
    with pytest.raises(EmptyCart):
        orders.commit_order("buyer-1", CartSnapshot(buyer_id="buyer-1"), jne_reg, checkout_request)
    with pytest.raises(SelectionNotFound):
        orders.commit_order("buyer-1", make_cart(), None, checkout_request)
    assert fake_db.commits == 0 and fake_db.rollbacks == 0


@pytest.mark.parametrize("seed", range(25))
def test_grand_total_invariant_for_random_carts(fake_db, make_cart, checkout_request, seed):
    rng = random.Random(seed)
    fake_db.stock = {f"p-{i}": 1000 for i in range(8)}
    lines = [
        (f"p-{i}", rng.randint(1, 5), str(Decimal(rng.randint(0, 5000)) / 1000), rng.randint(0, 2_000_000))
        for i in rng.sample(range(8), rng.randint(1, 8))
    ]
    cart = make_cart(*lines)
    quote = ShippingQuote(service="POS - Kilat", cost=rng.randint(0, 500_000), courier="pos")

    order = orders.commit_order("buyer-1", cart, quote, checkout_request, now=NOW)

    assert order.base_total_price == sum(qty * price for _, qty, _, price in lines)
    assert order.grand_total == order.base_total_price + order.shipping_cost - order.discount_amount
    assert order.shipping_cost == quote.cost


def test_generate_order_code_format():
    code = orders.generate_order_code(NOW)
    prefix, day, suffix = code.split("-")
    assert (prefix, day) == ("INV", "20261019")
    assert len(suffix) == 6 and suffix.isalnum() and suffix.upper() == suffix
