import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator
from fastapi.testclient import TestClient

from checkout.main import app as fastapi_app, current_buyer
from checkout.models import BuyerContext, CartLine, CartSnapshot, CheckoutRequest, Order, ShippingQuote


# Mark tests by folder
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def app():
    return fastapi_app


@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


@pytest.fixture
def buyer() -> BuyerContext:
    return BuyerContext(
        id="buyer-1",
        username="budi",
        first_name="Budi",
        last_name="Santoso",
        address1="Jl. Merdeka 1",
        province_id="6",
        city_id="151",
        postcode="10110",
        phone="08123456789",
        email="budi@example.com",
    )


# The buyer is resolved from a header + DB lookup in production; tests pin it
@pytest.fixture(autouse=True)
def _override_current_buyer(app, buyer):
    app.dependency_overrides[current_buyer] = lambda: buyer
    try:
        yield
    finally:
        app.dependency_overrides.pop(current_buyer, None)


@pytest.fixture
def make_cart():
    def _make(*lines, buyer_id: str = "buyer-1") -> CartSnapshot:
        if not lines:
            lines = (("p-1", 2, "1.5", 50000),)
        return CartSnapshot(
            buyer_id=buyer_id,
            lines=tuple(
                CartLine(
                    product_id=pid,
                    name=f"Product {pid}",
                    quantity=qty,
                    unit_weight=Decimal(weight),
                    unit_price=price,
                )
                for pid, qty, weight, price in lines
            ),
        )
    return _make


@pytest.fixture
def jne_reg() -> ShippingQuote:
    return ShippingQuote(service="JNE - REG", cost=9000, etd="2-3", courier="jne")


@pytest.fixture
def checkout_form() -> dict:
    return {
        "username": "budi",
        "first_name": "Budi",
        "last_name": "Santoso",
        "address1": "Jl. Merdeka 1",
        "address2": None,
        "province_id": "6",
        "city_id": "151",
        "postcode": "10110",
        "phone": "08123456789",
        "email": "budi@example.com",
        "note": "leave at the gate",
        "shipping_service": "JNE-REG",
    }


@pytest.fixture
def checkout_request(checkout_form) -> CheckoutRequest:
    return CheckoutRequest(**checkout_form)


@pytest.fixture
def make_order():
    def _make(**overrides) -> Order:
        now = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)
        values = {
            "id": 1,
            "code": "INV-20261019-ABC123",
            "buyer_id": "buyer-1",
            "status": "CREATED",
            "payment_status": "UNPAID",
            "order_date": now,
            "payment_due": now + timedelta(days=3),
            "base_total_price": 100000,
            "shipping_cost": 9000,
            "grand_total": 109000,
            "customer_first_name": "Budi",
            "customer_last_name": "Santoso",
            "customer_address1": "Jl. Merdeka 1",
            "customer_phone": "08123456789",
            "customer_email": "budi@example.com",
            "customer_province_id": "6",
            "customer_city_id": "151",
            "customer_postcode": "10110",
            "shipping_courier": "jne",
            "shipping_service_name": "JNE - REG",
        }
        values.update(overrides)
        return Order(**values)
    return _make


@pytest.fixture
def cost_payload():
    """Builds a provider response body for one courier."""
    def _payload(code: str, *services):
        return {
            "rajaongkir": {
                "results": [
                    {
                        "code": code,
                        "costs": [
                            {"service": name, "cost": [{"value": value, "etd": etd}]}
                            for name, value, etd in services
                        ],
                    }
                ]
            }
        }
    return _payload
