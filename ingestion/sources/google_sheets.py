"""
HTTP spreadsheet sources with retry logic and a circuit breaker.

This module provides robust sheet extraction with:
- Exponential backoff retry logic for transient failures
- Circuit breaker pattern to prevent hammering a failing provider
- Rate limiting protection (honours Retry-After)
- Malformed body detection (raw body kept for the operator)
- Timeout handling with configurable limits
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from core.exceptions import (
    AuthenticationError,
    MalformedResponseError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
    SheetExtractionError,
)
from ingestion.sources.base import SheetSource, rows_from_values

logger = logging.getLogger(__name__)


class HTTPSheetSource(SheetSource):
    """
    Shared request core for HTTP sheet providers.

    Attributes:
        max_retries: Maximum number of attempts per request (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """

    def __init__(
        self,
        name: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: int = 60,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None
    ):
        self.name = name
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=self.timeout))

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = circuit_breaker_threshold
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = circuit_breaker_timeout

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.name}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.name}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        """Record a successful request."""
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    def _redact(self, url: str) -> str:
        return url

    async def _request_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET ``url`` and decode the JSON body, retrying transient failures.

        Raises:
            AuthenticationError: 401/403, not retried
            ResourceNotFoundError: 404, not retried
            RateLimitError: 429 on the last attempt
            NetworkError: timeouts, transport errors or 5xx after all attempts
            MalformedResponseError: body is not JSON after all attempts
            SheetExtractionError: circuit breaker open
        """
        safe_url = self._redact(url)

        if self._is_circuit_open():
            raise SheetExtractionError(
                f"Circuit breaker is open for {self.name}",
                context={
                    "source_name": self.name,
                    "api_url": safe_url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        async with self._client_factory() as client:
            for attempt in range(self.max_retries):
                last_attempt = attempt == self.max_retries - 1
                delay = self.retry_delay * (2 ** attempt)

                try:
                    logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {safe_url}")
                    response = await client.get(url, params=params, timeout=self.timeout)

                except httpx.TimeoutException as e:
                    if not last_attempt:
                        logger.warning(f"Request timeout on {self.name}. Retrying in {delay} seconds")
                        await asyncio.sleep(delay)
                        continue
                    self._record_failure()
                    raise NetworkError(
                        f"Request timeout after {self.max_retries} attempts",
                        context={
                            "source_name": self.name,
                            "api_url": safe_url,
                            "timeout": self.timeout,
                            "retry_count": attempt + 1
                        },
                        original_exception=e
                    )

                except httpx.TransportError as e:
                    if not last_attempt:
                        logger.warning(f"Network error on {self.name}. Retrying in {delay} seconds")
                        await asyncio.sleep(delay)
                        continue
                    self._record_failure()
                    raise NetworkError(
                        f"Network error after {self.max_retries} attempts",
                        context={
                            "source_name": self.name,
                            "api_url": safe_url,
                            "retry_count": attempt + 1
                        },
                        original_exception=e
                    )

                status = response.status_code

                if status in (401, 403):
                    self._record_failure()
                    raise AuthenticationError(
                        f"Authentication failed for {self.name}",
                        context={"status_code": status, "api_url": safe_url, "source_name": self.name}
                    )

                if status == 404:
                    self._record_failure()
                    raise ResourceNotFoundError(
                        f"Sheet not found on {self.name}",
                        context={"status_code": 404, "api_url": safe_url, "source_name": self.name}
                    )

                if status == 429:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"), delay)
                    if not last_attempt:
                        logger.warning(f"Rate limited by {self.name}. Retrying after {retry_after} seconds")
                        await asyncio.sleep(retry_after)
                        continue
                    self._record_failure()
                    raise RateLimitError(
                        f"Rate limit exceeded for {self.name}",
                        context={
                            "status_code": 429,
                            "api_url": safe_url,
                            "source_name": self.name,
                            "retry_count": attempt + 1
                        },
                        retry_after=retry_after
                    )

                if status >= 500:
                    if not last_attempt:
                        logger.warning(
                            f"Server error {status} from {self.name}. "
                            f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                        )
                        await asyncio.sleep(delay)
                        continue
                    self._record_failure()
                    raise NetworkError(
                        f"Server error after {self.max_retries} attempts",
                        context={
                            "status_code": status,
                            "api_url": safe_url,
                            "source_name": self.name,
                            "retry_count": attempt + 1,
                            "response_body": response.text[:500]
                        }
                    )

                if status >= 400:
                    self._record_failure()
                    raise SheetExtractionError(
                        f"Unexpected status {status} from {self.name}",
                        context={
                            "status_code": status,
                            "api_url": safe_url,
                            "source_name": self.name,
                            "response_body": response.text[:500]
                        }
                    )

                try:
                    data = response.json()
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    if not last_attempt:
                        logger.warning(f"Unparseable body from {self.name}. Retrying in {delay} seconds")
                        await asyncio.sleep(delay)
                        continue
                    self._record_failure()
                    raise MalformedResponseError(
                        f"Response from {self.name} is not valid JSON",
                        raw_body=response.text,
                        context={
                            "source_name": self.name,
                            "api_url": safe_url,
                            "retry_count": attempt + 1
                        },
                        original_exception=e
                    )

                self._record_success()
                return data

        raise SheetExtractionError(
            "Max retries exceeded",
            context={"api_url": safe_url, "source_name": self.name}
        )

    def get_status(self) -> Dict[str, Any]:
        return {
            "source": self.name,
            "circuit_open": self._is_circuit_open(),
            "consecutive_failures": self._circuit_breaker_failures,
        }


def _parse_retry_after(value: Optional[str], default: float) -> float:
    if not value:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        return default


class GoogleSheetsSource(HTTPSheetSource):
    """
    Google Sheets API v4 reader.

    Reads ``GET {api_url}/{spreadsheet_id}/values/{sheet}?key=...``; the
    first row of the returned grid is the header.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        api_key: str,
        api_url: str = "https://sheets.googleapis.com/v4/spreadsheets",
        **kwargs
    ):
        kwargs.setdefault("name", "google_sheets")
        super().__init__(**kwargs)
        self.spreadsheet_id = spreadsheet_id
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")

    def _redact(self, url: str) -> str:
        return url.replace(self.api_key, "***") if self.api_key else url

    async def get_sheet_data(self, sheet_name: str) -> List[Dict[str, str]]:
        url = f"{self.api_url}/{self.spreadsheet_id}/values/{quote(sheet_name, safe='')}"
        data = await self._request_json(url, params={"key": self.api_key})

        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Unexpected payload for sheet {sheet_name}",
                raw_body=str(data),
                context={"source_name": self.name, "sheet_name": sheet_name}
            )

        rows = rows_from_values(data.get("values") or [])
        logger.info(f"Fetched {len(rows)} rows from sheet {sheet_name}")
        return rows

    async def list_sheets(self) -> List[str]:
        url = f"{self.api_url}/{self.spreadsheet_id}"
        data = await self._request_json(
            url, params={"key": self.api_key, "fields": "sheets.properties.title"}
        )
        sheets = data.get("sheets", []) if isinstance(data, dict) else []
        return [s.get("properties", {}).get("title") for s in sheets if s.get("properties", {}).get("title")]


class RowListSheetSource(HTTPSheetSource):
    """
    Reader for row-list sheet APIs (SheetDB, Sheet2API style).

    These return ``[{header: value, ...}, ...]`` directly, one object per
    row, for ``GET {base_url}?sheet={sheet}``.
    """

    def __init__(
        self,
        base_url: str,
        sheet_names: Optional[List[str]] = None,
        sheet_param: str = "sheet",
        **kwargs
    ):
        kwargs.setdefault("name", "row_list")
        super().__init__(**kwargs)
        self.base_url = base_url
        self.sheet_names = list(sheet_names or [])
        self.sheet_param = sheet_param

    async def get_sheet_data(self, sheet_name: str) -> List[Dict[str, str]]:
        data = await self._request_json(self.base_url, params={self.sheet_param: sheet_name})

        if isinstance(data, dict):
            data = data.get("data", data.get("rows"))
        if not isinstance(data, list):
            raise MalformedResponseError(
                f"Unexpected payload for sheet {sheet_name}",
                raw_body=str(data),
                context={"source_name": self.name, "sheet_name": sheet_name}
            )

        rows = [
            {str(k): "" if v is None else str(v) for k, v in row.items()}
            for row in data
            if isinstance(row, dict)
        ]
        logger.info(f"Fetched {len(rows)} rows from sheet {sheet_name} ({self.name})")
        return rows

    async def list_sheets(self) -> List[str]:
        return list(self.sheet_names)
