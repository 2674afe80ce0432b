from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .carriers import LocationClient, provider_http
from .db import get_conn
from .errors import CheckoutError, EmptyCart
from .models import (
    AggregateResult,
    BuyerContext,
    CheckoutRequest,
    CheckoutResponse,
    Order,
    SetShippingRequest,
    ShippingCostRequest,
)
from .orchestrator import CheckoutOrchestrator, CheckoutState
from .payments import PaymentSessionGateway
from .shipping import ShippingAggregator
from . import orders, repository

app = FastAPI(title="Shipping Checkout", version="0.1.0")


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content={"status": exc.status_code, "message": exc.message})


def get_orchestrator() -> CheckoutOrchestrator:
    return CheckoutOrchestrator(ShippingAggregator(), PaymentSessionGateway())


def current_buyer(buyer_id: str = Header(None, alias="X-Buyer-Id")) -> BuyerContext:
    if not buyer_id:
        raise HTTPException(status_code=401, detail="Missing X-Buyer-Id header")
    with get_conn() as conn:
        row = repository.get_buyer(conn, buyer_id)
    if not row:
        raise HTTPException(status_code=401, detail="Unknown buyer")
    return BuyerContext(**row)


def retry_path(code: str) -> str:
    return f"/orders/{code}/payment"


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/locations/provinces")
async def provinces():
    async with provider_http() as http:
        return {"provinces": await LocationClient(http).list_provinces()}


@app.get("/locations/cities")
async def cities(province_id: str = Query(..., min_length=1)):
    async with provider_http() as http:
        return {"cities": await LocationClient(http).list_cities(province_id)}


@app.get("/checkout")
async def checkout_preview(
    buyer: BuyerContext = Depends(current_buyer),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    preview = await orchestrator.preview(buyer.id)
    if preview.cart.is_empty:
        raise EmptyCart()
    return {
        "items": [
            {**line.model_dump(), "line_total": line.line_total}
            for line in preview.cart.lines
        ],
        "total_weight": preview.cart.total_weight,
        "shipping": preview.adjustment,
        "totals": preview.totals,
        "buyer": buyer,
    }


@app.post("/checkout/shipping-cost", response_model=AggregateResult)
async def shipping_cost(
    req: ShippingCostRequest,
    buyer: BuyerContext = Depends(current_buyer),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.quote(buyer.id, req.city_id)


@app.post("/checkout/shipping")
async def set_shipping(
    req: SetShippingRequest,
    buyer: BuyerContext = Depends(current_buyer),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    totals = await orchestrator.apply_shipping(buyer.id, req.city_id, req.shipping_service)
    return {
        "status": 200,
        "message": "Shipping cost set",
        "data": {"total": totals.grand_total, "totals": totals.model_dump()},
    }


@app.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    req: CheckoutRequest,
    buyer: BuyerContext = Depends(current_buyer),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.submit(buyer, req)
    order = outcome.order

    if outcome.state == CheckoutState.DONE:
        return CheckoutResponse(
            status="DONE",
            order_code=order.code,
            grand_total=order.grand_total,
            redirect_url=outcome.redirect_url,
            message=outcome.message,
        )

    # order is saved; only the payment session is missing
    resp = CheckoutResponse(
        status="COMMITTED_PAYMENT_PENDING",
        order_code=order.code,
        grand_total=order.grand_total,
        retry_payment_url=retry_path(order.code),
        message=outcome.message,
    )
    return JSONResponse(status_code=202, content=resp.model_dump(mode="json"))


@app.get("/orders")
def list_orders(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    buyer: BuyerContext = Depends(current_buyer),
):
    return orders.list_orders(buyer.id, page, per_page)


@app.get("/orders/{code}", response_model=Order)
def get_order(code: str, buyer: BuyerContext = Depends(current_buyer)):
    return orders.get_order(buyer.id, code)


@app.post("/orders/{code}/payment")
async def retry_payment(
    code: str,
    buyer: BuyerContext = Depends(current_buyer),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.retry_payment(buyer.id, code)
    return {"order_code": order.code, "redirect_url": order.payment_url, "token": order.payment_token}
