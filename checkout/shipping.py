import asyncio
import logging
from decimal import Decimal
from typing import Iterable, Optional

import httpx

from .carriers import CarrierQuoteClient, CarrierQuotes, provider_http
from .models import AggregateResult, CartSnapshot, ShippingAdjustment, ShippingQuote, Totals
from .settings import (
    CARRIER_TIMEOUT_SECONDS,
    CARRIER_TIMEOUTS,
    RAJAONGKIR_API_KEY,
    RAJAONGKIR_ORIGIN,
    SHIPPING_COURIERS,
)

logger = logging.getLogger(__name__)


def service_label(code: str, service: str) -> str:
    return f"{code.upper()} - {service}"


class ShippingAggregator:
    """
    Fans out one quote request per configured courier and merges the answers.

    Each courier gets its own timeout; a courier that errors, times out or
    answers with nothing contributes no quotes. Quotes keep courier
    configuration order, then the courier's own response order.
    """

    def __init__(
        self,
        origin: str = RAJAONGKIR_ORIGIN,
        couriers: Optional[Iterable[str]] = None,
        timeouts: Optional[dict[str, float]] = None,
        default_timeout: float = CARRIER_TIMEOUT_SECONDS,
        api_key: str = RAJAONGKIR_API_KEY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.origin = origin
        self.couriers = list(SHIPPING_COURIERS if couriers is None else couriers)
        self.timeouts = dict(CARRIER_TIMEOUTS if timeouts is None else timeouts)
        self.default_timeout = default_timeout
        self.api_key = api_key
        self.transport = transport

    def timeout_for(self, courier: str) -> float:
        return self.timeouts.get(courier, self.default_timeout)

    @property
    def deadline(self) -> float:
        return max((self.timeout_for(c) for c in self.couriers), default=self.default_timeout)

    async def aggregate(self, destination: str, weight: Decimal) -> AggregateResult:
        weight = Decimal(weight)
        if not self.origin or not destination or weight <= 0:
            logger.error(
                "shipping quote skipped: invalid config or request origin=%r destination=%r weight=%s",
                self.origin, destination, weight,
            )
            return AggregateResult(
                origin=self.origin, destination=destination or "", weight=weight, reason="configuration",
            )

        async with provider_http(self.transport, timeout=self.deadline) as http:
            client = CarrierQuoteClient(http, self.api_key)
            answers = await asyncio.gather(
                *(self._quote_one(client, courier, destination, weight) for courier in self.couriers)
            )

        quotes = [
            ShippingQuote(
                service=service_label(rate.code or answer.courier, rate.service),
                cost=rate.cost,
                etd=rate.etd,
                courier=answer.courier,
            )
            for answer in answers
            for rate in answer.rates
        ]
        return AggregateResult(
            origin=self.origin,
            destination=destination,
            weight=weight,
            quotes=quotes,
            reason=None if quotes else "no_carrier_response",
        )

    async def _quote_one(self, client: CarrierQuoteClient, courier: str,
                         destination: str, weight: Decimal) -> CarrierQuotes:
        timeout = self.timeout_for(courier)
        try:
            return await asyncio.wait_for(client.quote(self.origin, destination, weight, courier), timeout)
        except asyncio.TimeoutError:
            logger.warning("carrier [%s] timed out after %.2fs", courier, timeout)
            return CarrierQuotes(courier=courier, reason="timeout")
        except Exception:
            logger.exception("carrier [%s] request failed", courier)
            return CarrierQuotes(courier=courier, reason="error")


def normalize_service(label: str) -> str:
    # strips whitespace from a quote label; case and punctuation are significant
    return "".join((label or "").split())


def select_shipping(quotes: Iterable[ShippingQuote], submitted: str) -> Optional[ShippingQuote]:
    """First quote whose label matches the submitted identifier, or None."""
    # the submitted identifier is compared exactly as sent
    if not submitted:
        return None
    for quote in quotes:
        if normalize_service(quote.service) == submitted:
            return quote
    return None


def compute_totals(cart: CartSnapshot, adjustment: Optional[ShippingAdjustment]) -> Totals:
    subtotal = cart.subtotal
    shipping_cost = adjustment.cost if adjustment else 0
    discount_amount = 0
    return Totals(
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        discount_amount=discount_amount,
        grand_total=subtotal + shipping_cost - discount_amount,
    )
