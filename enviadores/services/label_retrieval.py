"""
Label Retrieval Service

Downloads a purchased label from its remote URL into memory.

Label storage is eventually consistent right after purchase, so the first
fetch often fails. Attempts are bounded:
- 30s timeout per attempt
- wait attempt * 2s after a failed attempt (2s, 4s)
- 3 attempts total, then RetrievalExhaustedError

The caller treats exhaustion as "download it by hand", not as a failure.
"""
import asyncio
import logging
import mimetypes
import re
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from enviadores.core.config import settings
from enviadores.core.exceptions import RetrievalExhaustedError
from enviadores.core.http_client import RetryConfig, SleepFunc, create_async_client
from enviadores.schemas.labels import LocalLabelFile

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/pdf"
_GENERIC_CONTENT_TYPES = ("", "application/octet-stream", "binary/octet-stream")
_DISPOSITION_RE = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


def infer_filename(response: httpx.Response, remote_url: str, tracking_number: Optional[str] = None) -> str:
    """Content-Disposition filename, else the URL basename, else guia-<tracking>.pdf"""
    disposition = response.headers.get("content-disposition", "")
    match = _DISPOSITION_RE.search(disposition)
    if match:
        name = PurePosixPath(unquote(match.group(1).strip())).name
        if name:
            return name

    basename = PurePosixPath(unquote(urlparse(remote_url).path)).name
    if basename and "." in basename:
        return basename

    return f"guia-{tracking_number or 'etiqueta'}.pdf"


def infer_content_type(response: httpx.Response, filename: str) -> str:
    header = response.headers.get("content-type", "").split(";")[0].strip().lower()
    if header not in _GENERIC_CONTENT_TYPES:
        return header
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or DEFAULT_CONTENT_TYPE


class LabelRetrievalService:
    """
    Bounded-retry label downloader.

    Usage:
        service = LabelRetrievalService()
        local_file = await service.retrieve(asset.remote_url, asset.tracking_number)
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Optional[SleepFunc] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout or settings.LABEL_RETRIEVAL_TIMEOUT_SECONDS
        self.retry = RetryConfig(
            max_attempts=max_attempts or settings.LABEL_RETRIEVAL_MAX_ATTEMPTS,
            base_delay=settings.LABEL_RETRIEVAL_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds,
            strategy="linear",
        )
        self._sleep = sleep or asyncio.sleep
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = create_async_client(timeout=self.timeout, transport=self._transport)
        return self._http_client

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _fetch_once(self, remote_url: str, tracking_number: Optional[str]) -> LocalLabelFile:
        """One GET. Raises on timeout, network error, non-2xx or empty body."""
        client = self._get_http_client()
        response = await client.get(remote_url, timeout=self.timeout)
        response.raise_for_status()
        if not response.content:
            raise ValueError("empty label body")

        filename = infer_filename(response, remote_url, tracking_number)
        return LocalLabelFile(
            filename=filename,
            content_type=infer_content_type(response, filename),
            content=response.content,
        )

    async def retrieve(self, remote_url: str, tracking_number: Optional[str] = None) -> LocalLabelFile:
        """
        Download the label, retrying up to the attempt cap.

        Raises:
            RetrievalExhaustedError: every attempt failed, or the URL is malformed
        """
        last_reason = ""
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                local_file = await self._fetch_once(remote_url, tracking_number)
                logger.info(
                    f"[RETRIEVAL] {tracking_number or 'label'}: downloaded {local_file.size} bytes "
                    f"on attempt {attempt}"
                )
                return local_file
            except httpx.InvalidURL as e:
                logger.error(f"[RETRIEVAL] {tracking_number or 'label'}: malformed label URL, not retrying")
                raise RetrievalExhaustedError(
                    message="Label link is malformed; download it manually from the aggregator",
                    remote_url=remote_url,
                    attempts=attempt,
                    details={"reason": f"{e.__class__.__name__}: {e}"},
                ) from e
            except (httpx.HTTPError, ValueError) as e:
                last_reason = f"{e.__class__.__name__}: {e}"

            if not self.retry.has_attempts_left(attempt):
                break

            delay = self.retry.delay_for(attempt)
            logger.warning(
                f"[RETRIEVAL] {tracking_number or 'label'}: attempt {attempt}/{self.retry.max_attempts} "
                f"failed ({last_reason}), retrying in {delay:.1f}s"
            )
            await self._sleep(delay)

        logger.error(
            f"[RETRIEVAL] {tracking_number or 'label'}: giving up after {self.retry.max_attempts} attempts"
        )
        raise RetrievalExhaustedError(
            message="Label could not be downloaded; download it manually from the carrier link",
            remote_url=remote_url,
            attempts=self.retry.max_attempts,
            details={"reason": last_reason},
        )
