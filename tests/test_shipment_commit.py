"""
Tests for ShipmentCommitClient and the shipment payload.
"""
import json
from decimal import Decimal

import httpx
import pytest

from enviadores.core.exceptions import CommitError, CommitOutcomeUnknownError, RateLimitError, TransientError
from enviadores.modules.finalization.choices import AggregatorChoice, ManualChoice
from enviadores.services.shipment_commit import ShipmentCommitClient, build_shipment_fields

BACKEND_URL = "https://backend.test/api"


@pytest.fixture
def manual_choice(label_file) -> ManualChoice:
    return ManualChoice(
        carrier="Estafeta",
        tracking_number="EST-1",
        label_file=label_file,
        net_cost=Decimal("150.00"),
    )


@pytest.fixture
def aggregator_choice(rate, make_label, label_file) -> AggregatorChoice:
    label = make_label()
    label.attach_local_file(label_file)
    return AggregatorChoice(offered_rates=[rate], rate=rate, label=label)


def _client(handler, sleep, **kwargs) -> ShipmentCommitClient:
    return ShipmentCommitClient(
        base_url=BACKEND_URL,
        api_token="backend-token",
        sleep=sleep,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestBuildShipmentFields:
    def test_manual_fields(self, manual_choice, linkage):
        fields = build_shipment_fields(manual_choice, linkage)

        assert fields["metodo_creacion"] == "externo"
        assert fields["paqueteria_externa"] == "Estafeta"
        assert fields["numero_guia_externa"] == "EST-1"
        assert fields["costo_neto"] == "150.00"
        assert fields["iva"] == "34.48"
        assert fields["total"] == "250.00"
        assert fields["estatus"] == "preparacion"
        assert fields["requiere_recoleccion"] == "false"
        assert fields["peso_volumetrico"] == "1.5"
        assert "opcion_empaque" not in fields
        assert "uuid_manuable" not in fields

    def test_aggregator_fields(self, aggregator_choice, linkage):
        fields = build_shipment_fields(aggregator_choice, linkage)

        assert fields["metodo_creacion"] == "manuable"
        assert fields["uuid_manuable"] == "R1"
        assert fields["servicio_manuable"] == "DHL - express"
        assert fields["costo_neto"] == "189.50"
        assert fields["numero_guia_externa"] == "TRK123"
        assert fields["ruta_etiqueta"] == aggregator_choice.label.remote_url
        assert fields["temp_cotizacion_id"] == "TMP-1"


class TestCommit:
    @pytest.mark.asyncio
    async def test_success_sends_multipart_with_label(self, manual_choice, linkage, recording_sleep):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"id": 987})

        client = _client(handler, recording_sleep)
        shipment_id = await client.commit(manual_choice, linkage, idempotency_key="key-1")
        await client.close()

        assert shipment_id == "987"
        request = seen[0]
        assert request.url.path == "/api/shipments.php"
        assert request.headers["authorization"] == "Bearer backend-token"
        assert request.headers["idempotency-key"] == "key-1"
        assert request.headers["content-type"].startswith("multipart/form-data")
        assert b'name="label_file"; filename="guia.pdf"' in request.content
        assert b'name="idempotency_key"' in request.content

    @pytest.mark.asyncio
    async def test_rate_limit_backs_off_then_succeeds(self, aggregator_choice, linkage, recording_sleep):
        keys = []

        def handler(request):
            keys.append(request.headers.get("idempotency-key"))
            if len(keys) < 3:
                return httpx.Response(429, json={"error": "Too many requests"})
            return httpx.Response(200, json={"id": "SHP-3"})

        client = _client(handler, recording_sleep)
        shipment_id = await client.commit(aggregator_choice, linkage, idempotency_key="key-2")
        await client.close()

        assert shipment_id == "SHP-3"
        assert recording_sleep.delays == [2.0, 4.0]
        assert keys == ["key-2", "key-2", "key-2"]

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self, manual_choice, linkage, recording_sleep):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(429)

        client = _client(handler, recording_sleep)
        with pytest.raises(RateLimitError) as exc_info:
            await client.commit(manual_choice, linkage)
        await client.close()

        assert calls == 4
        assert recording_sleep.delays == [2.0, 4.0, 8.0]
        assert exc_info.value.attempts == 4

    @pytest.mark.asyncio
    async def test_validation_message_surfaced_without_retry(self, manual_choice, linkage, recording_sleep):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(400, json={"error": "Destino no encontrado"})

        client = _client(handler, recording_sleep)
        with pytest.raises(CommitError) as exc_info:
            await client.commit(manual_choice, linkage)
        await client.close()

        assert calls == 1
        assert exc_info.value.message == "Destino no encontrado"
        assert exc_info.value.status_code == 400
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_server_error_not_retried(self, manual_choice, linkage, recording_sleep):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(500, text="Internal Server Error")

        client = _client(handler, recording_sleep)
        with pytest.raises(CommitError) as exc_info:
            await client.commit(manual_choice, linkage)
        await client.close()

        assert calls == 1
        assert exc_info.value.message == "The shipment could not be created"
        assert not isinstance(exc_info.value, CommitOutcomeUnknownError)

    @pytest.mark.asyncio
    async def test_read_timeout_is_unknown_outcome(self, manual_choice, linkage, recording_sleep):
        def handler(request):
            raise httpx.ReadTimeout("no answer", request=request)

        client = _client(handler, recording_sleep)
        with pytest.raises(CommitOutcomeUnknownError):
            await client.commit(manual_choice, linkage, idempotency_key="key-3")
        await client.close()

    @pytest.mark.asyncio
    async def test_connect_error_is_transient(self, manual_choice, linkage, recording_sleep):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler, recording_sleep)
        with pytest.raises(TransientError):
            await client.commit(manual_choice, linkage)
        await client.close()

    @pytest.mark.asyncio
    async def test_success_without_id_is_unknown_outcome(self, manual_choice, linkage, recording_sleep):
        client = _client(lambda request: httpx.Response(200, json={"ok": True}), recording_sleep)
        with pytest.raises(CommitOutcomeUnknownError):
            await client.commit(manual_choice, linkage)
        await client.close()


class TestAuxiliaryCalls:
    @pytest.mark.asyncio
    async def test_update_destination_retries_rate_limit(self, recording_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429)
            return httpx.Response(200, json={"ok": True})

        client = _client(handler, recording_sleep)
        assert await client.update_destination("D1", {"codigo_postal": "06700"}) is True
        await client.close()

        assert recording_sleep.delays == [2.0]
        assert calls[0].method == "PUT"
        assert calls[0].url.params["id"] == "D1"

    @pytest.mark.asyncio
    async def test_update_destination_failure_is_not_raised(self, recording_sleep):
        client = _client(lambda request: httpx.Response(500), recording_sleep)
        assert await client.update_destination("D1", {}) is False
        await client.close()

    @pytest.mark.asyncio
    async def test_update_destination_gives_up_quietly(self, recording_sleep):
        client = _client(lambda request: httpx.Response(429), recording_sleep, auxiliary_max_retries=2)
        assert await client.update_destination("D1", {}) is False
        await client.close()

        assert recording_sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_quotation_status_is_best_effort(self, manual_choice, recording_sleep):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler, recording_sleep)
        assert await client.update_quotation_status("TMP-1", manual_choice) is False
        await client.close()

    @pytest.mark.asyncio
    async def test_quotation_status_for_generated_label(self, aggregator_choice, recording_sleep):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        client = _client(handler, recording_sleep)
        assert await client.update_quotation_status("TMP-1", aggregator_choice) is True
        await client.close()

        assert seen[0]["status_update"] == "manuable_label_generated"
        assert seen[0]["tracking_number"] == "TRK123"
        assert seen[0]["temp_id"] == "TMP-1"

    @pytest.mark.asyncio
    async def test_quotation_status_skipped_without_temp_id(self, manual_choice, recording_sleep):
        client = _client(lambda request: httpx.Response(200), recording_sleep)
        assert await client.update_quotation_status(None, manual_choice) is False
        await client.close()
