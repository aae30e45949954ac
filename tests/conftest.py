"""
Pytest configuration and fixtures for the Enviadores finalizer tests.
"""
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import List
from unittest.mock import AsyncMock

import httpx
import pytest

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["AGGREGATOR_EMAIL"] = ""
os.environ["AGGREGATOR_PASSWORD"] = ""

from enviadores.schemas.labels import LabelAsset, LocalLabelFile  # noqa: E402
from enviadores.schemas.shipping import (  # noqa: E402
    CustomerRecord,
    DestinationRecord,
    Parcel,
    Quote,
    QuoteLinkage,
    Rate,
)
from enviadores.services.aggregator_session import AggregatorSession  # noqa: E402

PROXY_URL = "https://proxy.test/manuable-proxy.php"
BACKEND_URL = "https://backend.test/api"
LABEL_URL = "https://labels.test/files/TRK123.pdf"
PDF_BYTES = b"%PDF-1.4 test label"


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def parcel() -> Parcel:
    return Parcel(weight_kg=1.5, declared_value=Decimal("500"), content="Ropa")


@pytest.fixture
def quote(parcel) -> Quote:
    return Quote(
        origin_zip="62000",
        dest_zip="06700",
        parcel=parcel,
        selected_rate_id="SKU-EXP",
        price_with_tax=Decimal("250.00"),
    )


@pytest.fixture
def linkage() -> QuoteLinkage:
    return QuoteLinkage(
        customer_id="C1",
        destination_id="D1",
        service_id="SKU-EXP",
        billable_weight_kg=1.5,
        declared_value=Decimal("500"),
        insurance_cost=Decimal("10.00"),
        shipping_cost=Decimal("215.52"),
        total_with_tax=Decimal("250.00"),
        content="Ropa",
        temp_quote_id="TMP-1",
    )


@pytest.fixture
def customer() -> CustomerRecord:
    return CustomerRecord(
        id="C1",
        nombre="Ana Torres",
        calle="Av. Morelos No. 12",
        colonia="Centro",
        municipio="Cuernavaca",
        estado="Morelos",
        codigo_postal="62000",
        telefono="7771234567",
        email="ana@example.com",
    )


@pytest.fixture
def destination() -> DestinationRecord:
    return DestinationRecord(
        id="D1",
        cliente_id="C1",
        nombre_destinatario="Luis Perez",
        direccion="Calle Durango 45-B",
        colonia="Roma Norte",
        ciudad="Ciudad de México",
        estado="CDMX",
        codigo_postal="06700",
        telefono="5512345678",
    )


@pytest.fixture
def rate() -> Rate:
    return Rate(
        id="R1",
        carrier="DHL",
        service_name="express",
        shipping_type="local",
        total_amount=Decimal("189.50"),
    )


@pytest.fixture
def rates_payload() -> dict:
    return {
        "data": [
            {
                "uuid": "R1",
                "carrier": "DHL",
                "service": "express",
                "shipping_type": "local",
                "total_amount": "189.50",
                "currency": "MXN",
                "zone": 2,
            },
            {
                "uuid": "R2",
                "carrier": "FEDEX",
                "service": "standard",
                "shipping_type": "local",
                "total_amount": "120.00",
                "currency": "MXN",
            },
        ]
    }


@pytest.fixture
def label_payload() -> dict:
    return {
        "token": "tok-1",
        "tracking_number": "TRK123",
        "label_url": LABEL_URL,
        "price": "189.50",
        "created_at": "2026-10-19T10:00:00Z",
    }


@pytest.fixture
def make_label():
    def _make(tracking_number: str = "TRK123") -> LabelAsset:
        return LabelAsset(
            tracking_number=tracking_number,
            created_at=datetime(2026, 10, 19, tzinfo=timezone.utc),
            price_charged=Decimal("189.50"),
            remote_url=LABEL_URL,
            token="tok-1",
        )
    return _make


@pytest.fixture
def label_file() -> LocalLabelFile:
    return LocalLabelFile(filename="guia.pdf", content_type="application/pdf", content=PDF_BYTES)


@pytest.fixture
def make_aggregator():
    """AggregatorSession over a MockTransport handler."""
    def _make(handler) -> AggregatorSession:
        return AggregatorSession(base_url=PROXY_URL, transport=httpx.MockTransport(handler))
    return _make


@pytest.fixture
def mock_rate_client(rate) -> AsyncMock:
    client = AsyncMock()
    client.get_rates_for_quote = AsyncMock(return_value=[rate])
    return client


@pytest.fixture
def mock_label_client(make_label) -> AsyncMock:
    client = AsyncMock()
    client.purchase_label = AsyncMock(return_value=make_label())
    return client


@pytest.fixture
def mock_retrieval(label_file) -> AsyncMock:
    service = AsyncMock()
    service.retrieve = AsyncMock(return_value=label_file)
    service.close = AsyncMock()
    return service


@pytest.fixture
def mock_commit_client() -> AsyncMock:
    client = AsyncMock()
    client.commit = AsyncMock(return_value="SHP-1")
    client.update_quotation_status = AsyncMock(return_value=True)
    client.update_destination = AsyncMock(return_value=True)
    client.close = AsyncMock()
    return client
