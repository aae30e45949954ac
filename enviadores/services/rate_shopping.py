"""
Rate shopping against the carrier aggregator.

Returns the priced service options for an origin/destination/parcel
triple, in upstream order. An empty list means "no service on this
route" and is a normal result; every failure raises RateQueryError.
"""
import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from enviadores.core.config import settings
from enviadores.core.exceptions import AuthError, RateQueryError, TransientError, ValidationError
from enviadores.core.http_client import extract_error_message, flatten_field_errors
from enviadores.schemas.shipping import AccountBalance, Parcel, Quote, Rate
from enviadores.services.aggregator_session import AggregatorSession

logger = logging.getLogger(__name__)

_ZIP_RE = re.compile(r"^\d{5}$")


def build_parcel_payload(parcel: Parcel, default_dimension_cm: Optional[float] = None) -> Dict[str, Any]:
    """Map a quoted parcel to the aggregator rate-query format."""
    dimension = default_dimension_cm or settings.AGGREGATOR_DEFAULT_DIMENSION_CM
    return {
        "currency": settings.AGGREGATOR_CURRENCY,
        "distance_unit": settings.AGGREGATOR_DISTANCE_UNIT,
        "mass_unit": settings.AGGREGATOR_MASS_UNIT,
        "weight": parcel.weight_kg,
        "height": parcel.height_cm or dimension,
        "length": parcel.length_cm or dimension,
        "width": parcel.width_cm or dimension,
        "product_id": settings.AGGREGATOR_PRODUCT_ID,
        "product_value": float(parcel.declared_value) if parcel.declared_value else 1,
        "quantity_products": 1,
        "content": parcel.content or settings.AGGREGATOR_DEFAULT_CONTENT,
    }


class RateShoppingClient:
    """Rate queries and account balance on the aggregator."""

    def __init__(
        self,
        session: AggregatorSession,
        rates_endpoint: Optional[str] = None,
        balance_endpoint: Optional[str] = None,
    ):
        self.session = session
        self.rates_endpoint = rates_endpoint or settings.AGGREGATOR_RATES_ENDPOINT
        self.balance_endpoint = balance_endpoint or settings.AGGREGATOR_BALANCE_ENDPOINT

    async def _call(self, method: str, endpoint: str, payload: Optional[Dict] = None) -> httpx.Response:
        try:
            return await self.session.request(method, endpoint, json=payload)
        except httpx.RequestError as e:
            logger.error(f"[RATES] {endpoint} request failed: {e.__class__.__name__}")
            raise RateQueryError(
                message="Could not reach the carrier aggregator",
                details={"reason": str(e)},
            ) from e
        except AuthError as e:
            raise RateQueryError(
                message=e.message,
                status_code=e.details.get("status"),
            ) from e
        except TransientError as e:
            raise RateQueryError(message=e.message, details=e.details) from e

    async def get_rates(self, origin_zip: str, dest_zip: str, parcel: Parcel) -> List[Rate]:
        """
        Query priced services for a route.

        Raises:
            ValidationError: ZIPs are not 5-digit strings
            RateQueryError: Upstream or network failure (status_code set when known)
        """
        bad = {
            name: "must be a 5-digit postal code"
            for name, value in (("origin_zip", origin_zip), ("dest_zip", dest_zip))
            if not isinstance(value, str) or not _ZIP_RE.match(value)
        }
        if bad:
            raise ValidationError("Invalid postal codes for rate query", field_errors=bad)

        country = settings.AGGREGATOR_COUNTRY_CODE
        payload = {
            "address_from": {"country_code": country, "zip_code": origin_zip},
            "address_to": {"country_code": country, "zip_code": dest_zip},
            "parcel": build_parcel_payload(parcel),
        }

        response = await self._call("POST", self.rates_endpoint, payload)

        if response.status_code >= 400:
            message = extract_error_message(response, f"Rate query failed ({response.status_code})")
            details: Dict[str, Any] = {}
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("errors"):
                    details["field_errors"] = flatten_field_errors(body["errors"])
            except ValueError:
                pass
            logger.error(f"[RATES] {origin_zip}->{dest_zip}: {response.status_code}")
            raise RateQueryError(message=message, status_code=response.status_code, details=details)

        try:
            body = response.json()
        except ValueError as e:
            raise RateQueryError(
                message="Carrier aggregator returned an unreadable rate list",
                status_code=response.status_code,
            ) from e

        raw_rates = body.get("data") if isinstance(body, dict) else None
        if not isinstance(raw_rates, list):
            raw_rates = []

        rates: List[Rate] = []
        for raw in raw_rates:
            if not isinstance(raw, dict) or not raw.get("uuid"):
                logger.warning("[RATES] Skipping rate without uuid")
                continue
            rates.append(Rate.from_api(raw))

        logger.info(f"[RATES] {origin_zip}->{dest_zip}: {len(rates)} rate(s)")
        return rates

    async def get_rates_for_quote(self, quote: Quote) -> List[Rate]:
        return await self.get_rates(quote.origin_zip, quote.dest_zip, quote.parcel)

    async def get_balance(self) -> AccountBalance:
        """Read-only account balance."""
        response = await self._call("GET", self.balance_endpoint)
        if response.status_code >= 400:
            raise RateQueryError(
                message=extract_error_message(response, "Could not read aggregator balance"),
                status_code=response.status_code,
            )
        try:
            data = response.json()
            if isinstance(data, dict) and isinstance(data.get("data"), dict):
                data = data["data"]
            if not isinstance(data, dict):
                raise ValueError("balance body is not an object")
            return AccountBalance(
                amount=Decimal(str(data.get("balance", data.get("amount", "0")))),
                currency=data.get("currency") or settings.AGGREGATOR_CURRENCY,
            )
        except (ValueError, ArithmeticError) as e:
            logger.error(f"[RATES] Unreadable balance response: {e.__class__.__name__}")
            raise RateQueryError(
                message="Carrier aggregator returned an unreadable balance",
                status_code=response.status_code,
                details={"reason": str(e)},
            ) from e
