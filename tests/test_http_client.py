import httpx
import pytest

from enviadores.core.http_client import RetryConfig, extract_error_message, flatten_field_errors


def test_linear_delays_grow_by_base():
    cfg = RetryConfig(max_attempts=3, base_delay=2.0, strategy="linear")
    assert [cfg.delay_for(n) for n in (1, 2)] == [2.0, 4.0]
    assert cfg.has_attempts_left(2)
    assert not cfg.has_attempts_left(3)


def test_exponential_delays_double():
    cfg = RetryConfig(max_attempts=4, base_delay=2.0)
    assert [cfg.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_max_delay_caps_backoff():
    cfg = RetryConfig(base_delay=2.0, max_delay=5.0)
    assert cfg.delay_for(4) == 5.0


def test_attempt_is_one_based():
    with pytest.raises(ValueError):
        RetryConfig().delay_for(0)


def test_flatten_nested_errors():
    errors = {
        "address_to": {"email": ["is invalid"], "external_number": ["can't be blank", "too short"]},
        "rate_token": "expired",
    }
    assert flatten_field_errors(errors) == {
        "address_to.email": "is invalid",
        "address_to.external_number": "can't be blank; too short",
        "rate_token": "expired",
    }


def test_flatten_bare_list():
    assert flatten_field_errors(["boom"]) == {"non_field_errors": "boom"}


def test_extract_error_message_prefers_error_key():
    response = httpx.Response(400, json={"error": "Cliente no encontrado"})
    assert extract_error_message(response, "fallback") == "Cliente no encontrado"


def test_extract_error_message_uses_first_field_error():
    response = httpx.Response(422, json={"errors": {"address_to": {"email": ["is invalid"]}}})
    assert extract_error_message(response, "fallback") == "address_to.email: is invalid"


def test_extract_error_message_falls_back_on_non_json():
    response = httpx.Response(500, text="<html>oops</html>")
    assert extract_error_message(response, "fallback") == "fallback"
