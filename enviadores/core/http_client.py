"""
Shared HTTP plumbing for outbound calls.

Each component owns its own retry policy (rate queries re-login once,
label downloads back off linearly, commits back off exponentially on 429).
This module only supplies the pieces they share:
- AsyncClient construction with consistent defaults
- RetryConfig with deterministic delay calculation
- Error-body extraction for human-readable messages

No retries happen here; the owning component is the only layer that retries.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

# Injected by components so tests can record delays instead of waiting
SleepFunc = Callable[[float], Awaitable[None]]

RATE_LIMIT_STATUS = 429
AUTH_STATUSES = (401, 403)


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for a component's retry behavior."""
    max_attempts: int = 3               # Total attempts, first one included
    base_delay: float = 2.0             # Seconds
    exponential_base: float = 2.0
    strategy: str = "exponential"       # "exponential" or "linear"
    max_delay: Optional[float] = None   # None = uncapped

    def delay_for(self, attempt: int) -> float:
        """
        Delay to wait after failed attempt number `attempt` (1-based).

        exponential: base * exp_base ^ (attempt - 1)  -> 2, 4, 8 ...
        linear:      base * attempt                    -> 2, 4, 6 ...
        """
        if attempt < 1:
            raise ValueError("attempt is 1-based")

        if self.strategy == "linear":
            delay = self.base_delay * attempt
        elif self.strategy == "exponential":
            delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        else:
            raise ValueError(f"Unknown retry strategy: {self.strategy}")

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts


def create_async_client(
    base_url: str = "",
    timeout: float = 30.0,
    headers: Optional[Dict[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Build an AsyncClient with the defaults every component expects."""
    kwargs: Dict[str, Any] = {
        "timeout": timeout,
        "headers": headers or {},
        "follow_redirects": True,
    }
    if base_url:
        kwargs["base_url"] = base_url
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.AsyncClient(**kwargs)


def extract_error_message(response: httpx.Response, default: str) -> str:
    """
    Pull a human-readable message out of an error response.

    Understands {"error": "..."}, {"message": "..."} and
    {"errors": {...}} (first message wins); falls back to default.
    """
    try:
        data = response.json()
    except ValueError:
        return default

    if not isinstance(data, dict):
        return default

    for key in ("error", "message", "detail"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value

    errors = data.get("errors")
    if errors:
        flat = flatten_field_errors(errors)
        if flat:
            path, message = next(iter(flat.items()))
            return f"{path}: {message}"

    return default


def flatten_field_errors(errors: Any, prefix: str = "") -> Dict[str, str]:
    """
    Flatten a nested upstream error structure into dotted paths.

        {"address_to": {"email": ["is invalid"]}}
        -> {"address_to.email": "is invalid"}
    """
    flat: Dict[str, str] = {}

    if isinstance(errors, dict):
        for key, value in errors.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            flat.update(flatten_field_errors(value, path))
    elif isinstance(errors, (list, tuple)):
        strings = [str(e) for e in errors if not isinstance(e, (dict, list, tuple))]
        if strings:
            flat[prefix or "non_field_errors"] = "; ".join(strings)
        for item in errors:
            if isinstance(item, (dict, list, tuple)):
                flat.update(flatten_field_errors(item, prefix))
    elif errors is not None:
        flat[prefix or "non_field_errors"] = str(errors)

    return flat
