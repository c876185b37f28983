"""
Primary/secondary failover between two sheet sources.

Policy:
- Requests go to the active source; the primary starts active
- Every failure increments the active source's consecutive failure count;
  at ``max_fail_count`` the other source becomes active
- A failing primary request is immediately retried on the secondary;
  a failing secondary request propagates
- Once the primary has been inactive for ``retry_cooldown_seconds`` it is
  given another chance

The tracker state lives on the instance, so each application (and each
test) owns its own.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import ExtractionError
from ingestion.sources.base import SheetSource

logger = logging.getLogger(__name__)


@dataclass
class _Endpoint:
    label: str
    source: SheetSource
    fail_count: int = 0
    last_fail_time: Optional[float] = None


class FailoverSheetSource(SheetSource):
    """Route reads to a primary source and fall back to a secondary one."""

    def __init__(
        self,
        primary: SheetSource,
        secondary: SheetSource,
        max_fail_count: int = 3,
        retry_cooldown_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = "failover"
        self._primary = _Endpoint("primary", primary)
        self._secondary = _Endpoint("secondary", secondary)
        self._active = self._primary
        self.max_fail_count = max_fail_count
        self.retry_cooldown_seconds = retry_cooldown_seconds
        self._clock = clock

    @property
    def active(self) -> str:
        return self._active.label

    def _other(self, endpoint: _Endpoint) -> _Endpoint:
        return self._secondary if endpoint is self._primary else self._primary

    def _switch(self) -> None:
        previous = self._active
        previous.last_fail_time = self._clock()
        self._active = self._other(previous)
        self._active.fail_count = 0
        logger.warning(f"Switching sheet source from {previous.label} to {self._active.label}")

    def _maybe_fail_back(self) -> None:
        if self._active is self._primary:
            return
        last_fail = self._primary.last_fail_time
        if last_fail is None or self._clock() - last_fail >= self.retry_cooldown_seconds:
            logger.info("Cooldown elapsed for primary sheet source, trying it again")
            self._active = self._primary
            self._primary.fail_count = 0

    def _record_failure(self, endpoint: _Endpoint) -> None:
        endpoint.fail_count += 1
        logger.warning(
            f"Sheet source failure recorded for {endpoint.label}. Fail count: {endpoint.fail_count}"
        )
        if endpoint is self._active and endpoint.fail_count >= self.max_fail_count:
            self._switch()

    async def _call(self, operation: str, *args) -> Any:
        self._maybe_fail_back()
        endpoint = self._active

        try:
            result = await getattr(endpoint.source, operation)(*args)
        except ExtractionError as e:
            self._record_failure(endpoint)
            if endpoint is self._secondary:
                raise
            logger.warning(f"Primary sheet source failed ({e.message}), trying secondary")
            try:
                result = await getattr(self._secondary.source, operation)(*args)
            except ExtractionError:
                self._record_failure(self._secondary)
                raise
            self._secondary.fail_count = 0
            return result

        endpoint.fail_count = 0
        return result

    async def get_sheet_data(self, sheet_name: str) -> List[Dict[str, str]]:
        return await self._call("get_sheet_data", sheet_name)

    async def list_sheets(self) -> List[str]:
        return await self._call("list_sheets")

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()

        def describe(endpoint: _Endpoint) -> Dict[str, Any]:
            cooldown = 0.0
            if endpoint.last_fail_time is not None and endpoint is not self._active:
                cooldown = max(0.0, self.retry_cooldown_seconds - (now - endpoint.last_fail_time))
            return {
                "active": endpoint is self._active,
                "fail_count": endpoint.fail_count,
                "cooldown_remaining_seconds": round(cooldown, 1),
                **endpoint.source.get_status(),
            }

        return {
            "source": self.name,
            "active": self.active,
            "primary": describe(self._primary),
            "secondary": describe(self._secondary),
        }
