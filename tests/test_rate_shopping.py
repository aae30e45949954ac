"""
Tests for RateShoppingClient.
"""
import json
from decimal import Decimal

import httpx
import pytest

from enviadores.core.exceptions import RateQueryError, ValidationError
from enviadores.services.rate_shopping import RateShoppingClient, build_parcel_payload


def _router(rates_response):
    """Handler that logs in and answers the rates endpoint with rates_response."""
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        endpoint = request.url.params.get("endpoint")
        if endpoint == "session":
            return httpx.Response(200, json={"token": "tok"})
        sent.append(request)
        if callable(rates_response):
            return rates_response(request)
        return rates_response

    return handler, sent


class TestGetRates:
    @pytest.mark.asyncio
    async def test_returns_rates_in_upstream_order(self, make_aggregator, parcel, rates_payload):
        handler, sent = _router(httpx.Response(200, json=rates_payload))
        session = make_aggregator(handler)
        client = RateShoppingClient(session)

        rates = await client.get_rates("62000", "06700", parcel)
        await session.close()

        assert [r.id for r in rates] == ["R1", "R2"]
        assert rates[0].total_amount == Decimal("189.50")
        assert rates[0].display_name == "DHL - express"

        body = json.loads(sent[0].content)
        assert body["address_from"] == {"country_code": "MX", "zip_code": "62000"}
        assert body["address_to"] == {"country_code": "MX", "zip_code": "06700"}
        assert body["parcel"]["weight"] == 1.5
        assert body["parcel"]["height"] == 10.0

    @pytest.mark.asyncio
    async def test_empty_list_is_success(self, make_aggregator, parcel):
        handler, _ = _router(httpx.Response(200, json={"data": []}))
        session = make_aggregator(handler)

        rates = await RateShoppingClient(session).get_rates("62000", "06700", parcel)
        await session.close()

        assert rates == []

    @pytest.mark.asyncio
    async def test_missing_data_key_is_empty(self, make_aggregator, parcel):
        handler, _ = _router(httpx.Response(200, json={"message": "no coverage"}))
        session = make_aggregator(handler)

        assert await RateShoppingClient(session).get_rates("62000", "06700", parcel) == []
        await session.close()

    @pytest.mark.asyncio
    async def test_entries_without_uuid_are_skipped(self, make_aggregator, parcel, rates_payload):
        rates_payload["data"].append({"carrier": "ESTAFETA", "total_amount": "99"})
        handler, _ = _router(httpx.Response(200, json=rates_payload))
        session = make_aggregator(handler)

        rates = await RateShoppingClient(session).get_rates("62000", "06700", parcel)
        await session.close()

        assert len(rates) == 2

    @pytest.mark.asyncio
    async def test_server_error_carries_status(self, make_aggregator, parcel):
        handler, _ = _router(httpx.Response(502, json={"error": "upstream down"}))
        session = make_aggregator(handler)

        with pytest.raises(RateQueryError) as exc_info:
            await RateShoppingClient(session).get_rates("62000", "06700", parcel)
        await session.close()

        assert exc_info.value.status_code == 502
        assert exc_info.value.is_transient
        assert exc_info.value.message == "upstream down"

    @pytest.mark.asyncio
    async def test_network_error_has_no_status(self, make_aggregator, parcel):
        def fail(request):
            raise httpx.ReadTimeout("timed out", request=request)

        handler, _ = _router(fail)
        session = make_aggregator(handler)

        with pytest.raises(RateQueryError) as exc_info:
            await RateShoppingClient(session).get_rates("62000", "06700", parcel)
        await session.close()

        assert exc_info.value.status_code is None
        assert exc_info.value.is_transient

    @pytest.mark.asyncio
    async def test_persistent_auth_failure_becomes_rate_query_error(self, make_aggregator, parcel):
        handler, sent = _router(httpx.Response(401, json={"error": "expired"}))
        session = make_aggregator(handler)

        with pytest.raises(RateQueryError) as exc_info:
            await RateShoppingClient(session).get_rates("62000", "06700", parcel)
        await session.close()

        assert exc_info.value.status_code == 401
        assert len(sent) == 2

    @pytest.mark.asyncio
    async def test_invalid_zip_rejected_before_network(self, make_aggregator, parcel):
        handler, sent = _router(httpx.Response(200, json={"data": []}))
        session = make_aggregator(handler)

        with pytest.raises(ValidationError) as exc_info:
            await RateShoppingClient(session).get_rates("6200", "06700", parcel)
        await session.close()

        assert exc_info.value.has_error("origin_zip")
        assert sent == []


@pytest.mark.asyncio
async def test_get_balance(make_aggregator):
    handler, _ = _router(httpx.Response(200, json={"data": {"balance": "1520.75", "currency": "MXN"}}))
    session = make_aggregator(handler)

    balance = await RateShoppingClient(session).get_balance()
    await session.close()

    assert balance.amount == Decimal("1520.75")
    assert balance.currency == "MXN"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json={"data": {"balance": "n/a"}}),
        httpx.Response(200, json=["unexpected"]),
    ],
)
async def test_unreadable_balance_is_rate_query_error(make_aggregator, response):
    handler, _ = _router(response)
    session = make_aggregator(handler)

    with pytest.raises(RateQueryError) as exc_info:
        await RateShoppingClient(session).get_balance()
    await session.close()

    assert exc_info.value.status_code == 200


def test_parcel_payload_uses_given_dimensions(parcel):
    measured = parcel.model_copy(update={"height_cm": 30.0, "length_cm": 20.0, "width_cm": 15.0})
    payload = build_parcel_payload(measured)

    assert (payload["height"], payload["length"], payload["width"]) == (30.0, 20.0, 15.0)
    assert payload["product_value"] == 500.0
    assert payload["currency"] == "MXN"
    assert payload["content"] == "Ropa"
