"""
Adapters for the RajaOngkir-style rate quote provider.

`CarrierQuoteClient.quote` normalizes one carrier's nested cost payload
into flat `CarrierRate` rows. Remote failures never propagate: they come
back as an empty `CarrierQuotes` tagged with a reason so the aggregator can
log it and move on to the next carrier.
"""
import logging
from decimal import Decimal, ROUND_CEILING
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError, ProviderError
from .settings import CARRIER_TIMEOUT_SECONDS, RAJAONGKIR_API_KEY, RAJAONGKIR_BASE_URL

logger = logging.getLogger(__name__)


class CarrierRate(BaseModel):
    code: str
    service: str
    cost: int = Field(ge=0)
    etd: str = ""


class CarrierQuotes(BaseModel):
    courier: str
    rates: list[CarrierRate] = []
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None


def provider_http(transport: Optional[httpx.AsyncBaseTransport] = None,
                  timeout: float = CARRIER_TIMEOUT_SECONDS) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=RAJAONGKIR_BASE_URL, timeout=timeout, transport=transport)


def to_grams(weight: Decimal) -> int:
    """Kilograms to whole grams, rounded up so a parcel is never under-declared."""
    return int((Decimal(weight) * 1000).to_integral_value(rounding=ROUND_CEILING))


def _results(payload: Any) -> list:
    if not isinstance(payload, dict):
        return []
    body = payload.get("rajaongkir")
    if not isinstance(body, dict):
        return []
    results = body.get("results")
    return results if isinstance(results, list) else []


def parse_rates(payload: Any) -> list[CarrierRate]:
    """
    Flattens `{rajaongkir: {results: [{code, costs: [{service, cost: [{value, etd}]}]}]}}`.
    Entries with missing or malformed fields are skipped one by one.
    """
    rates: list[CarrierRate] = []
    for result in _results(payload):
        if not isinstance(result, dict):
            continue
        code = str(result.get("code") or "")
        for detail in result.get("costs") or []:
            try:
                first = detail["cost"][0]
                rates.append(CarrierRate(
                    code=code,
                    service=str(detail["service"]),
                    cost=int(first["value"]),
                    etd=str(first.get("etd") or ""),
                ))
            except (KeyError, IndexError, TypeError, ValueError, ValidationError):
                logger.debug("skipping malformed cost entry code=%s entry=%r", code, detail)
    return rates


class CarrierQuoteClient:
    def __init__(self, http: httpx.AsyncClient, api_key: str = RAJAONGKIR_API_KEY):
        self.http = http
        self.api_key = api_key

    async def quote(self, origin: str, destination: str, weight: Decimal, courier: str) -> CarrierQuotes:
        if not origin or not destination:
            raise ConfigurationError("origin and destination are required")
        if weight <= 0:
            raise ConfigurationError("weight must be positive")

        params = {
            "origin": origin,
            "destination": destination,
            "weight": to_grams(weight),
            "courier": courier,
        }
        logger.info("carrier quote request %s", params)

        try:
            r = await self.http.post("cost", data=params, headers={"key": self.api_key})
            r.raise_for_status()
            payload = r.json()
        except httpx.HTTPStatusError as e:
            return self._degraded(courier, f"http {e.response.status_code}", params)
        except httpx.HTTPError as e:
            return self._degraded(courier, f"network: {type(e).__name__}", params)
        except ValueError:
            return self._degraded(courier, "malformed payload", params)

        rates = parse_rates(payload)
        if not rates:
            return self._degraded(courier, "empty results", params)
        return CarrierQuotes(courier=courier, rates=rates)

    def _degraded(self, courier: str, reason: str, params: dict) -> CarrierQuotes:
        logger.warning("carrier [%s] returned no cost data: %s params=%s", courier, reason, params)
        return CarrierQuotes(courier=courier, reason=reason)


class LocationClient:
    """Province and city reference data from the same provider."""

    def __init__(self, http: httpx.AsyncClient, api_key: str = RAJAONGKIR_API_KEY):
        self.http = http
        self.api_key = api_key

    async def _get(self, path: str, params: Optional[dict] = None) -> list:
        try:
            r = await self.http.get(path, params=params, headers={"key": self.api_key})
            r.raise_for_status()
            return _results(r.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.error("location lookup %s failed: %s", path, e)
            raise ProviderError("location service unavailable") from e

    async def list_provinces(self) -> list[dict]:
        rows = await self._get("province")
        return [
            {"id": str(row["province_id"]), "name": row["province"]}
            for row in rows
            if isinstance(row, dict) and "province_id" in row
        ]

    async def list_cities(self, province_id: str) -> list[dict]:
        rows = await self._get("city", {"province": province_id})
        return [
            {"id": str(row["city_id"]), "name": f"{row.get('type') or ''} {row['city_name']}".strip()}
            for row in rows
            if isinstance(row, dict) and "city_id" in row
        ]
