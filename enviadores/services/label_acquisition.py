"""
Label purchase through the carrier aggregator.

Purchases a label for a previously quoted rate token and returns a
LabelAsset whose remote_url points at the label file. Validation failures
keep the upstream field-path -> message mapping so the caller can apply
apply_common_defaults() and resubmit once.
"""
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import httpx

from enviadores.core.config import settings
from enviadores.core.exceptions import TransientError, ValidationError
from enviadores.core.http_client import RATE_LIMIT_STATUS, extract_error_message, flatten_field_errors
from enviadores.schemas.labels import LabelAsset
from enviadores.schemas.shipping import (
    CustomerRecord,
    DestinationRecord,
    LabelHistoryEntry,
    LabelHistoryPage,
    Parcel,
    PartyAddress,
)
from enviadores.services.aggregator_session import AggregatorSession

logger = logging.getLogger(__name__)

# "No. 123", "#123", or the first bare number ("45", "45-B")
_EXTERNAL_NUMBER_RE = re.compile(
    r"\b[Nn][Oo]?\.\s*(\d+(?:-\w+)?)\b|#\s*(\d+)\b|\b(\d+(?:-\w+)?)\b"
)

SENDER = "address_from"
RECIPIENT = "address_to"


def extract_external_number(street: str, placeholder: Optional[str] = None) -> str:
    """Pull an exterior number out of a street line, or return the placeholder."""
    placeholder = placeholder or settings.PLACEHOLDER_STREET_NUMBER
    if not street:
        return placeholder
    match = _EXTERNAL_NUMBER_RE.search(street)
    if match:
        return match.group(1) or match.group(2) or match.group(3) or placeholder
    return placeholder


def map_customer_address(customer: CustomerRecord) -> PartyAddress:
    return PartyAddress(
        country_code=settings.AGGREGATOR_COUNTRY_CODE,
        zip_code=customer.postal_code,
        name=customer.name,
        street1=customer.street,
        neighborhood=customer.neighborhood,
        external_number=customer.external_number or "",
        city=customer.municipality,
        state=customer.state,
        phone=customer.phone,
        email=customer.email or "",
        country=(customer.country or "México").upper(),
        reference=customer.reference or "",
    )


def map_destination_address(destination: DestinationRecord) -> PartyAddress:
    return PartyAddress(
        country_code=settings.AGGREGATOR_COUNTRY_CODE,
        zip_code=destination.postal_code,
        name=destination.recipient_name,
        street1=destination.street,
        neighborhood=destination.neighborhood,
        external_number=destination.external_number or extract_external_number(destination.street),
        city=destination.city,
        state=destination.state,
        phone=destination.phone,
        email=destination.email or "",
        country=(destination.country or "México").upper(),
        reference=destination.reference or "",
    )


def apply_common_defaults(
    sender: PartyAddress,
    recipient: PartyAddress,
    field_errors: Dict[str, str],
    placeholder_email: Optional[str] = None,
    placeholder_number: Optional[str] = None,
) -> Tuple[PartyAddress, PartyAddress, List[str]]:
    """
    Patch the fields most often rejected by the aggregator.

    - email: recipient falls back to the sender's email, then the placeholder
    - external_number: re-extracted from the street line, then the placeholder

    Returns the corrected addresses and the field paths that were changed.
    An empty list means nothing could be fixed automatically.
    """
    placeholder_email = placeholder_email or settings.PLACEHOLDER_EMAIL
    placeholder_number = placeholder_number or settings.PLACEHOLDER_STREET_NUMBER
    addresses = {SENDER: sender, RECIPIENT: recipient}
    applied: List[str] = []

    for side, address in list(addresses.items()):
        updates: Dict[str, str] = {}

        if f"{side}.email" in field_errors:
            email = placeholder_email
            if side == RECIPIENT and sender.email and f"{SENDER}.email" not in field_errors:
                email = sender.email
            if email != address.email:
                updates["email"] = email

        if f"{side}.external_number" in field_errors:
            number = extract_external_number(address.street1 or "", placeholder_number)
            if number == address.external_number:
                number = placeholder_number
            if number != address.external_number:
                updates["external_number"] = number

        if updates:
            addresses[side] = address.model_copy(update=updates)
            applied.extend(f"{side}.{name}" for name in updates)

    return addresses[SENDER], addresses[RECIPIENT], applied


def _parse_created_at(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"[LABEL] Unparseable created_at {value!r}, using now")
    return datetime.now(timezone.utc)


def _parse_price(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal("0.00")
    except InvalidOperation:
        return Decimal("0.00")


class LabelAcquisitionClient:
    """Label purchase and label history on the aggregator."""

    def __init__(
        self,
        session: AggregatorSession,
        labels_endpoint: Optional[str] = None,
        label_format: Optional[str] = None,
    ):
        self.session = session
        self.labels_endpoint = labels_endpoint or settings.AGGREGATOR_LABELS_ENDPOINT
        self.label_format = label_format or settings.AGGREGATOR_LABEL_FORMAT

    def build_label_parcel(self, parcel: Parcel) -> Dict[str, Any]:
        """The purchase parcel carries value and content only, no dimensions."""
        return {
            "currency": settings.AGGREGATOR_CURRENCY,
            "distance_unit": settings.AGGREGATOR_DISTANCE_UNIT,
            "mass_unit": settings.AGGREGATOR_MASS_UNIT,
            "product_id": settings.AGGREGATOR_PRODUCT_ID,
            "product_value": float(parcel.declared_value) if parcel.declared_value else 1,
            "quantity_products": 1,
            "content": parcel.content or settings.AGGREGATOR_DEFAULT_CONTENT,
        }

    async def _call(self, method: str, payload: Optional[Dict] = None, params: Optional[Dict] = None) -> httpx.Response:
        try:
            return await self.session.request(method, self.labels_endpoint, json=payload, params=params)
        except httpx.RequestError as e:
            logger.error(f"[LABEL] Request failed: {e.__class__.__name__}")
            raise TransientError(
                message="Could not reach the carrier aggregator",
                details={"reason": str(e)},
            ) from e

    async def purchase_label(
        self,
        sender: PartyAddress,
        recipient: PartyAddress,
        rate_id: str,
        parcel: Parcel,
    ) -> LabelAsset:
        """
        Buy a label for a rate token.

        Raises:
            ValidationError: Upstream rejected fields (field_errors populated)
            TransientError: Network failure, 429 or 5xx
            AuthError: Still rejected after one re-login
        """
        payload = {
            SENDER: sender.to_payload(),
            RECIPIENT: recipient.to_payload(),
            "parcel": self.build_label_parcel(parcel),
            "rate_token": rate_id,
            "label_format": self.label_format,
        }

        response = await self._call("POST", payload)
        status = response.status_code

        if status == RATE_LIMIT_STATUS or status >= 500:
            logger.error(f"[LABEL] Purchase for rate {rate_id} failed: {status}")
            raise TransientError(
                message=extract_error_message(response, "Label service unavailable, try again"),
                details={"status": status},
            )

        if status >= 400:
            field_errors: Dict[str, str] = {}
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("errors"):
                    field_errors = flatten_field_errors(body["errors"])
            except ValueError:
                pass
            message = extract_error_message(response, "Label request was rejected")
            if not field_errors:
                field_errors = {"non_field_errors": message}
            logger.warning(f"[LABEL] Purchase for rate {rate_id} rejected: {sorted(field_errors)}")
            raise ValidationError(message, field_errors=field_errors, details={"status": status})

        try:
            data = response.json()
        except ValueError as e:
            raise TransientError(message="Label response was not readable") from e

        tracking_number = (data or {}).get("tracking_number") or ""
        label_url = (data or {}).get("label_url") or ""
        if not tracking_number or not label_url:
            # Purchase recorded upstream but not yet published
            raise TransientError(
                message="Label response is missing its tracking number or URL",
                details={"token": (data or {}).get("token")},
            )

        asset = LabelAsset(
            tracking_number=tracking_number,
            created_at=_parse_created_at(data.get("created_at")),
            price_charged=_parse_price(data.get("price")),
            remote_url=label_url,
            token=data.get("token") or None,
        )
        logger.info(f"[LABEL] Purchased {asset.tracking_number} for rate {rate_id}")
        return asset

    async def list_labels(
        self,
        page: Optional[int] = None,
        tracking_number: Optional[str] = None,
    ) -> LabelHistoryPage:
        """Read-only label history, optionally filtered by tracking number."""
        params: Dict[str, Any] = {}
        if page:
            params["page"] = page
        if tracking_number:
            params["tracking_number"] = tracking_number

        response = await self._call("GET", params=params)
        if response.status_code >= 400:
            raise TransientError(
                message=extract_error_message(response, "Could not read label history"),
                details={"status": response.status_code},
            )

        try:
            body = response.json()
            raw = body.get("data", []) if isinstance(body, dict) else body
            meta = body.get("meta") if isinstance(body, dict) else None
            if not isinstance(meta, dict):
                meta = {}
            return LabelHistoryPage(
                labels=[LabelHistoryEntry(**entry) for entry in (raw or []) if isinstance(entry, dict)],
                page=meta.get("current_page", page or 1),
                total_pages=meta.get("total_pages", 1),
            )
        except (ValueError, TypeError) as e:
            logger.error(f"[LABEL] Unreadable label history: {e.__class__.__name__}")
            raise TransientError(
                message="Carrier aggregator returned an unreadable label history",
                details={"status": response.status_code, "reason": str(e)},
            ) from e
