"""
Backend shipment API client.

Submits a finished shipment as a multipart form (fields plus an optional
label file) and returns the shipment id the backend assigns.

Retry policy:
- 429 is retried with 2s, 4s, 8s backoff (3 retries, 4 attempts total)
- any other error status is surfaced at once with the backend's message
- a request that may have reached the backend without an answer is
  CommitOutcomeUnknownError; it is never retried here

Every attempt of one session carries the same idempotency key so the
backend can drop a duplicate submission.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from enviadores.core.config import settings
from enviadores.core.exceptions import (
    CommitError,
    CommitOutcomeUnknownError,
    RateLimitError,
    TransientError,
)
from enviadores.core.http_client import (
    RATE_LIMIT_STATUS,
    RetryConfig,
    SleepFunc,
    create_async_client,
    extract_error_message,
    flatten_field_errors,
)
from enviadores.modules.finalization.choices import AggregatorChoice, FulfillmentChoice, ManualChoice
from enviadores.schemas.shipping import QuoteLinkage

logger = logging.getLogger(__name__)

# Backend endpoints
SHIPMENTS_PATH = "/shipments.php"
DESTINATIONS_PATH = "/destinations.php"
QUOTATIONS_PATH = "/quotations.php"

INITIAL_STATUS = "preparacion"

# Quotation status updates
STATUS_EXTERNAL_SELECTED = "external_selected"
STATUS_LABEL_GENERATED = "manuable_label_generated"

IDEMPOTENCY_HEADER = "Idempotency-Key"


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_shipment_fields(choice: FulfillmentChoice, linkage: QuoteLinkage) -> Dict[str, str]:
    """
    Backend form fields for a completed choice.

    None values are left out; every other value is sent as a string.
    """
    fields: Dict[str, Any] = {
        "cliente_id": linkage.customer_id,
        "destino_id": linkage.destination_id,
        "servicio_id": linkage.service_id,
        "peso_real": linkage.billable_weight_kg,
        "peso_volumetrico": linkage.volumetric_weight_kg or linkage.billable_weight_kg,
        "valor_declarado": linkage.declared_value,
        "costo_seguro": linkage.insurance_cost,
        "costo_envio": linkage.shipping_cost,
        "iva": linkage.tax,
        "total": linkage.total_with_tax,
        "tipo_paquete": linkage.package_type,
        "opcion_empaque": linkage.packaging_option,
        "requiere_recoleccion": linkage.requires_pickup,
        "estatus": INITIAL_STATUS,
        "contenido": linkage.content,
        "temp_cotizacion_id": linkage.temp_quote_id,
    }

    if isinstance(choice, ManualChoice):
        fields.update({
            "metodo_creacion": "externo",
            "paqueteria_externa": choice.carrier,
            "numero_guia_externa": choice.tracking_number,
            "costo_neto": choice.net_cost,
        })
    elif isinstance(choice, AggregatorChoice):
        rate = choice.rate
        label = choice.label
        fields.update({
            "metodo_creacion": "manuable",
            "uuid_manuable": rate.id if rate else None,
            "servicio_manuable": rate.display_name if rate else None,
            "costo_neto": rate.total_amount if rate else None,
            "paqueteria_externa": rate.carrier if rate else None,
            "numero_guia_externa": label.tracking_number if label else None,
            "ruta_etiqueta": label.remote_url if label else None,
        })
    else:
        raise TypeError(f"Unknown fulfillment choice: {type(choice).__name__}")

    return {key: _form_value(value) for key, value in fields.items() if value is not None}


class ShipmentCommitClient:
    """
    Client for the Enviadores backend shipment API.

    Usage:
        client = ShipmentCommitClient()
        shipment_id = await client.commit(choice, linkage, idempotency_key=key)
        await client.close()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_ms: Optional[int] = None,
        auxiliary_max_retries: Optional[int] = None,
        sleep: Optional[SleepFunc] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.BACKEND_API_URL
        self.api_token = api_token if api_token is not None else settings.BACKEND_API_TOKEN
        self.timeout = timeout or settings.BACKEND_TIMEOUT_SECONDS

        retries = settings.COMMIT_MAX_RETRIES if max_retries is None else max_retries
        base_ms = settings.COMMIT_BACKOFF_BASE_MS if backoff_base_ms is None else backoff_base_ms
        aux_retries = settings.AUXILIARY_MAX_RETRIES if auxiliary_max_retries is None else auxiliary_max_retries
        self.retry = RetryConfig(max_attempts=retries + 1, base_delay=base_ms / 1000.0)
        self.auxiliary_retry = RetryConfig(max_attempts=aux_retries + 1, base_delay=base_ms / 1000.0)

        self._sleep = sleep or asyncio.sleep
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {"Accept": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._http_client = create_async_client(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def commit(
        self,
        choice: FulfillmentChoice,
        linkage: QuoteLinkage,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Create the shipment.

        Returns:
            The backend shipment id

        Raises:
            RateLimitError: still 429 after every retry
            CommitError: backend rejected the shipment
            CommitOutcomeUnknownError: no answer; the shipment may exist
            TransientError: the backend could not be reached at all
        """
        data = build_shipment_fields(choice, linkage)
        headers: Dict[str, str] = {}
        if idempotency_key:
            data["idempotency_key"] = idempotency_key
            headers[IDEMPOTENCY_HEADER] = idempotency_key

        label_file = choice.label_file if isinstance(choice, ManualChoice) else choice.local_file
        client = self._get_http_client()
        attempt = 0

        while True:
            attempt += 1
            files = None
            if label_file is not None:
                files = {"label_file": (label_file.filename, label_file.content, label_file.content_type)}

            logger.debug(f"[COMMIT] POST {SHIPMENTS_PATH} (attempt {attempt}/{self.retry.max_attempts})")
            try:
                response = await client.post(SHIPMENTS_PATH, data=data, files=files, headers=headers)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                logger.error(f"[COMMIT] Backend unreachable: {e.__class__.__name__}")
                raise TransientError(
                    message="Could not reach the shipment service; nothing was submitted",
                    details={"reason": str(e)},
                ) from e
            except httpx.RequestError as e:
                logger.error(f"[COMMIT] No answer from backend: {e.__class__.__name__}")
                raise CommitOutcomeUnknownError(
                    message="The shipment service did not answer; check shipment history before retrying",
                    details={"reason": str(e), "idempotency_key": idempotency_key},
                ) from e

            if response.status_code == RATE_LIMIT_STATUS:
                if self.retry.has_attempts_left(attempt):
                    delay = self.retry.delay_for(attempt)
                    logger.warning(
                        f"[COMMIT] Rate limited, retrying in {delay:.1f}s "
                        f"({attempt}/{self.retry.max_attempts - 1})"
                    )
                    await self._sleep(delay)
                    continue
                logger.error(f"[COMMIT] Still rate limited after {attempt} attempts")
                raise RateLimitError(attempts=attempt)

            if response.status_code >= 400:
                details: Dict[str, Any] = {}
                try:
                    body = response.json()
                    if isinstance(body, dict) and body.get("errors"):
                        details["field_errors"] = flatten_field_errors(body["errors"])
                except ValueError:
                    pass
                message = extract_error_message(response, "The shipment could not be created")
                logger.error(f"[COMMIT] Backend rejected shipment: {response.status_code}")
                raise CommitError(message=message, status_code=response.status_code, details=details)

            try:
                body = response.json()
            except ValueError:
                body = {}
            shipment_id = body.get("id") if isinstance(body, dict) else None
            if shipment_id in (None, ""):
                raise CommitOutcomeUnknownError(
                    message="The shipment service answered without a shipment id; check shipment history",
                    status_code=response.status_code,
                )

            logger.info(f"[COMMIT] Shipment {shipment_id} created (attempt {attempt})")
            return str(shipment_id)

    async def update_quotation_status(self, temp_quote_id: Optional[str], choice: FulfillmentChoice) -> bool:
        """
        Tell the backend which path the quotation took. Best effort.

        Returns True when the backend accepted the update.
        """
        if not temp_quote_id:
            return False

        payload: Dict[str, Any] = {"temp_id": temp_quote_id}
        if isinstance(choice, ManualChoice):
            payload.update({
                "status_update": STATUS_EXTERNAL_SELECTED,
                "carrier": choice.carrier,
                "tracking_number": choice.tracking_number,
                "price": float(choice.net_cost) if choice.net_cost is not None else None,
            })
        elif choice.rate and choice.label:
            payload.update({
                "status_update": STATUS_LABEL_GENERATED,
                "service_id": choice.rate.id,
                "carrier": choice.rate.carrier,
                "service_name": choice.rate.service_name,
                "tracking_number": choice.label.tracking_number,
                "label_url": choice.label.remote_url,
                "price": float(choice.label.price_charged),
            })
        else:
            return False

        payload = {k: v for k, v in payload.items() if v is not None}
        try:
            response = await self._get_http_client().put(QUOTATIONS_PATH, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"[COMMIT] Quotation {temp_quote_id} status update failed: {e.__class__.__name__}")
            return False

        if response.status_code >= 400:
            logger.warning(f"[COMMIT] Quotation {temp_quote_id} status update rejected: {response.status_code}")
            return False

        logger.info(f"[COMMIT] Quotation {temp_quote_id} marked {payload['status_update']}")
        return True

    async def update_destination(self, destination_id: str, updates: Dict[str, Any]) -> bool:
        """
        Push destination edits before commit. Non-critical.

        429 is retried with the commit backoff; anything else, or running out
        of retries, is logged and the commit goes ahead.
        """
        client = self._get_http_client()
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await client.put(DESTINATIONS_PATH, params={"id": destination_id}, json=updates)
            except httpx.HTTPError as e:
                logger.warning(f"[COMMIT] Destination {destination_id} update failed: {e.__class__.__name__}")
                return False

            if response.status_code == RATE_LIMIT_STATUS:
                if self.auxiliary_retry.has_attempts_left(attempt):
                    delay = self.auxiliary_retry.delay_for(attempt)
                    logger.warning(f"[COMMIT] Destination {destination_id} rate limited, retrying in {delay:.1f}s")
                    await self._sleep(delay)
                    continue
                logger.warning(f"[COMMIT] Destination {destination_id} still rate limited, continuing")
                return False

            if response.status_code >= 400:
                logger.warning(f"[COMMIT] Destination {destination_id} update rejected: {response.status_code}")
                return False

            return True
