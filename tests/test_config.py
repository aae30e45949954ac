"""
Tests for Settings validation.
"""
import pytest

from enviadores.core.config import Settings


def test_defaults_match_workflow_limits():
    s = Settings(_env_file=None)

    assert s.AUTO_COMMIT_SECONDS == 60
    assert s.LABEL_RETRIEVAL_MAX_ATTEMPTS == 3
    assert s.LABEL_RETRIEVAL_TIMEOUT_SECONDS == 30.0
    assert s.AGGREGATOR_TIMEOUT_SECONDS == 60.0
    assert s.COMMIT_MAX_RETRIES == 3
    assert s.COMMIT_BACKOFF_BASE_MS == 2000
    assert s.PLACEHOLDER_STREET_NUMBER == "S/N"


def test_trailing_slash_is_stripped():
    s = Settings(_env_file=None, BACKEND_API_URL="https://backend.test/api/")
    assert s.BACKEND_API_URL == "https://backend.test/api"


def test_log_level_is_upper_cased():
    s = Settings(_env_file=None, LOG_LEVEL="debug")
    assert s.LOG_LEVEL == "DEBUG"


def test_production_requires_https():
    with pytest.raises(ValueError, match="HTTPS"):
        Settings(_env_file=None, ENVIRONMENT="production", BACKEND_API_URL="http://backend.test/api")


def test_plain_http_allowed_outside_production():
    s = Settings(_env_file=None, ENVIRONMENT="development", BACKEND_API_URL="http://localhost:8080/api")
    assert not s.is_production


def test_rejects_zero_retrieval_attempts():
    with pytest.raises(ValueError, match="LABEL_RETRIEVAL_MAX_ATTEMPTS"):
        Settings(_env_file=None, LABEL_RETRIEVAL_MAX_ATTEMPTS=0)


def test_rejects_invalid_label_format():
    with pytest.raises(ValueError):
        Settings(_env_file=None, AGGREGATOR_LABEL_FORMAT="PNG")
