"""
Migration controller: drives the batch processor until the run completes.

State machine:

    IDLE ──start──> RUNNING ──(completed | 3 empty batches)──> COMPLETED
                     │  ▲
               pause │  │ resume
                     ▼  │
                    PAUSED
    RUNNING ──(non-retryable error)──> FAILED
    any state ──reset──> IDLE

Every batch call runs as its own asyncio task, registered under a request
id and bounded by ``call_timeout``; pause() and reset() cancel whatever is
in flight. A call that keeps failing is retried ``max_retries`` times with
exponential backoff and then skipped: the run moves on to the next offset.
Non-retryable errors (a rejected token, an unknown sheet) fail the run at
the offset where they happened.

Calls go through a BatchCaller, so the same loop drives the in-process
runner (server-side jobs) or a remote /admin/migrate endpoint.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, settings as default_settings
from core.exceptions import (
    AdminAuthError,
    BatchCallError,
    InvalidTransitionError,
    MalformedResponseError,
    MigrationException,
    NonRetryableError,
)
from ingestion.runner import BatchResult, MigrationRunner
from ingestion.sources.base import SheetSource
from models.base import MigrationStatus

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    batch_size: int = 10
    min_batch_size: int = 5
    max_batch_size: int = 50
    max_retries: int = 3
    retry_base_delay: float = 2.0
    call_timeout: float = 30.0
    inter_batch_delay: float = 2.0
    empty_batch_threshold: int = 3
    # Timeouts only shrink batches larger than this
    adaptive_threshold: int = 10
    event_log_size: int = 200

    @classmethod
    def from_settings(cls, settings: Settings) -> "ControllerConfig":
        return cls(
            batch_size=settings.MIGRATION_BATCH_SIZE,
            min_batch_size=settings.MIGRATION_MIN_BATCH_SIZE,
            max_batch_size=settings.MIGRATION_MAX_BATCH_SIZE,
            max_retries=settings.MIGRATION_MAX_RETRIES,
            retry_base_delay=settings.MIGRATION_RETRY_BASE_DELAY,
            call_timeout=settings.MIGRATION_CALL_TIMEOUT,
            inter_batch_delay=settings.MIGRATION_INTER_BATCH_DELAY,
            empty_batch_threshold=settings.MIGRATION_EMPTY_BATCH_THRESHOLD,
        )

    def clamp(self, batch_size: Optional[int]) -> int:
        if batch_size is None:
            return self.batch_size
        return max(self.min_batch_size, min(int(batch_size), self.max_batch_size))


# ============================================================================
# Batch callers
# ============================================================================

class BatchCaller(ABC):
    """The four operations the controller needs from a batch processor."""

    @abstractmethod
    async def get_state(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def start(self) -> int:
        """Start a run and return its total record count."""
        pass

    @abstractmethod
    async def process_batch(self, start_offset: int, batch_size: int) -> BatchResult:
        pass

    @abstractmethod
    async def reset(self) -> None:
        pass


class LocalBatchCaller(BatchCaller):
    """Run the batch processor in-process, one database session per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        source: SheetSource,
        settings: Optional[Settings] = None
    ):
        self.session_factory = session_factory
        self.source = source
        self.settings = settings or default_settings

    async def _with_runner(self, operation: Callable[[MigrationRunner], Awaitable[Any]]) -> Any:
        session: AsyncSession
        async with self.session_factory() as session:
            return await operation(MigrationRunner(session, self.source, self.settings))

    async def get_state(self) -> Dict[str, Any]:
        state = await self._with_runner(lambda runner: runner.get_state())
        return state.to_dict()

    async def start(self) -> int:
        return await self._with_runner(lambda runner: runner.start_run())

    async def process_batch(self, start_offset: int, batch_size: int) -> BatchResult:
        return await self._with_runner(lambda runner: runner.process_batch(start_offset, batch_size))

    async def reset(self) -> None:
        await self._with_runner(lambda runner: runner.reset())


class HttpBatchCaller(BatchCaller):
    """
    Drive a remote server's POST /admin/migrate endpoint.

    This is the client-driven mode: the loop runs wherever this object
    lives and every batch is one HTTP round trip.
    """

    def __init__(
        self,
        base_url: str,
        auth_key: str,
        timeout: float = 60.0,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None
    ):
        """
        Args:
            timeout: HTTP timeout, larger than the controller's call_timeout
        """
        self.base_url = base_url.rstrip("/")
        self.auth_key = auth_key
        self.timeout = timeout
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=self.timeout))

    async def _post(self, action: str, **payload) -> Dict[str, Any]:
        body = {"action": action, "authKey": self.auth_key, **payload}
        url = f"{self.base_url}/admin/migrate"

        async with self._client_factory() as client:
            try:
                response = await client.post(url, json=body)
            except httpx.TimeoutException as e:
                # Surfaces as a call timeout so the controller shrinks the batch
                logger.warning(f"Action {action} timed out against {url}: {type(e).__name__}")
                raise asyncio.TimeoutError(f"Action {action} timed out") from e
            except httpx.TransportError as e:
                raise BatchCallError(
                    f"Request for action {action} failed",
                    context={"action": action, "api_url": url, **payload},
                    original_exception=e
                )

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Non-JSON response for action {action} (HTTP {response.status_code})",
                raw_body=response.text,
                context={"action": action, "status_code": response.status_code},
                original_exception=e
            )

        if response.status_code == 401:
            raise AdminAuthError(
                f"Action {action} rejected: {data.get('error', 'unauthorized')}",
                context={"action": action, "status_code": response.status_code, **payload}
            )

        if response.status_code >= 400 or not data.get("success", False):
            raise BatchCallError(
                f"Action {action} failed: {data.get('error', 'unknown error')}",
                context={"action": action, "status_code": response.status_code, **payload}
            )
        return data

    async def get_state(self) -> Dict[str, Any]:
        return (await self._post("getState"))["state"]

    async def start(self) -> int:
        return int((await self._post("start"))["totalRecords"])

    async def process_batch(self, start_offset: int, batch_size: int) -> BatchResult:
        data = await self._post("continue", startIndex=start_offset, batchSize=batch_size)
        return BatchResult.from_dict(data["results"])

    async def reset(self) -> None:
        await self._post("reset")


# ============================================================================
# Controller
# ============================================================================

class _Interrupted(Exception):
    """The run left RUNNING while a call or backoff was pending."""


class MigrationController:
    """
    Orchestrates a migration run over a BatchCaller.

    One controller drives at most one run at a time. All state is kept
    on the instance and exposed through snapshot().
    """

    def __init__(
        self,
        caller: BatchCaller,
        config: Optional[ControllerConfig] = None
    ):
        self.caller = caller
        self.config = config or ControllerConfig()

        self.status = MigrationStatus.IDLE
        self.offset = 0
        self.batch_size = self.config.batch_size
        self.total_records = 0
        self.total_processed = 0
        self.progress_percent = 0.0
        self.empty_batches = 0
        self.last_error: Optional[Dict[str, Any]] = None
        self.last_result: Optional[BatchResult] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.events: Deque[Dict[str, Any]] = deque(maxlen=self.config.event_log_size)

        self._task: Optional[asyncio.Task] = None
        self._inflight: Dict[str, asyncio.Task] = {}
        self._wake = asyncio.Event()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def _event(self, message: str, level: str = "info") -> None:
        self.events.append({
            "timestamp": datetime.utcnow().isoformat(),
            "level": level,
            "message": message,
        })
        getattr(logger, level if level != "success" else "info")(f"[migration] {message}")

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def _run_call(self, make_call: Callable[[], Awaitable[Any]]) -> Any:
        """Run one call as a registered, cancellable, time-bounded task."""
        request_id = str(uuid.uuid4())
        task = asyncio.ensure_future(make_call())
        self._inflight[request_id] = task
        try:
            return await asyncio.wait_for(task, timeout=self.config.call_timeout)
        finally:
            self._inflight.pop(request_id, None)

    def _cancel_inflight(self) -> int:
        count = 0
        for request_id, task in list(self._inflight.items()):
            if not task.done():
                task.cancel()
                count += 1
        return count

    async def _pause_for(self, delay: float) -> None:
        """Sleep ``delay`` seconds, waking early when the run is paused or reset."""
        if delay <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        if self.status != MigrationStatus.RUNNING:
            raise _Interrupted()

    # ------------------------------------------------------------------
    # Batch loop
    # ------------------------------------------------------------------

    async def _process_with_retry(self, offset: int) -> Optional[BatchResult]:
        """
        Process the batch at ``offset``, retrying up to max_retries times.

        Returns:
            The batch result, or None when every attempt failed
        """
        attempts = 1 + self.config.max_retries

        for attempt in range(attempts):
            if self.status != MigrationStatus.RUNNING:
                raise _Interrupted()

            size = self.batch_size
            try:
                result = await self._run_call(lambda: self.caller.process_batch(offset, size))
                self.last_error = None
                return result

            except asyncio.TimeoutError:
                message = f"Batch at offset {offset} timed out after {self.config.call_timeout}s"
                if self.batch_size > self.config.adaptive_threshold:
                    self.batch_size = max(self.config.min_batch_size, self.batch_size // 2)
                    self._event(f"Reducing batch size to {self.batch_size} after timeout", "warning")

            except asyncio.CancelledError:
                if self.status == MigrationStatus.RUNNING:
                    raise
                raise _Interrupted()

            except NonRetryableError as e:
                self.last_error = {
                    "message": f"Batch at offset {offset} rejected: {e.message}",
                    "offset": offset,
                    "retryCount": attempt,
                    "maxRetries": self.config.max_retries,
                    "timestamp": datetime.utcnow().isoformat(),
                }
                raise

            except MigrationException as e:
                message = f"Batch at offset {offset} failed: {e.message}"

            except Exception as e:
                message = f"Batch at offset {offset} failed: {type(e).__name__}: {e}"

            self.last_error = {
                "message": message,
                "offset": offset,
                "retryCount": attempt,
                "maxRetries": self.config.max_retries,
                "timestamp": datetime.utcnow().isoformat(),
            }

            if attempt < attempts - 1:
                delay = self.config.retry_base_delay * (2 ** attempt)
                self._event(
                    f"{message}; retry {attempt + 1}/{self.config.max_retries} in {delay}s",
                    "warning"
                )
                await self._pause_for(delay)
            else:
                self._event(
                    f"{message}; giving up after {self.config.max_retries} retries, skipping to next batch",
                    "error"
                )

        return None

    async def _run_loop(self) -> None:
        try:
            while self.status == MigrationStatus.RUNNING:
                result = await self._process_with_retry(self.offset)

                if result is None:
                    # Past the end a skipped batch counts as empty
                    if self.total_records and self.offset >= self.total_records:
                        self.empty_batches += 1
                        if self.empty_batches >= self.config.empty_batch_threshold:
                            self._finish(
                                MigrationStatus.COMPLETED,
                                f"Migration auto-completed after {self.empty_batches} batches past the end "
                                f"({self.total_processed}/{self.total_records} processed)",
                                "warning"
                            )
                            return
                    self.offset += self.batch_size
                else:
                    self.last_result = result
                    self.total_processed = result.total_processed
                    self.total_records = result.total_records
                    self.progress_percent = result.progress_percent

                    if result.processed_in_batch == 0:
                        self.empty_batches += 1
                        self._event(
                            f"Empty batch at offset {self.offset} "
                            f"({self.empty_batches}/{self.config.empty_batch_threshold})",
                            "warning"
                        )
                    else:
                        self.empty_batches = 0
                        self._event(
                            f"Batch at offset {self.offset}: {result.processed_in_batch} processed, "
                            f"{result.success_count} ok, {result.fail_count} failed "
                            f"({self.total_processed}/{self.total_records}, {self.progress_percent}%)"
                        )

                    if result.completed:
                        self._finish(MigrationStatus.COMPLETED, "Migration completed", "success")
                        return

                    if self.empty_batches >= self.config.empty_batch_threshold:
                        self._finish(
                            MigrationStatus.COMPLETED,
                            f"Migration auto-completed after {self.empty_batches} consecutive empty batches "
                            f"({self.total_processed}/{self.total_records} processed)",
                            "warning"
                        )
                        return

                    if result.next_batch_start is not None:
                        self.offset = result.next_batch_start
                    else:
                        self.offset += result.processed_in_batch

                await self._pause_for(self.config.inter_batch_delay)

        except _Interrupted:
            logger.info(f"Migration loop stopped at offset {self.offset} ({self.status.value})")

        except asyncio.CancelledError:
            logger.info("Migration loop cancelled")
            raise

        except NonRetryableError as e:
            self._finish(
                MigrationStatus.FAILED,
                f"Migration failed at offset {self.offset}: {e.message}",
                "error"
            )

        except Exception as e:
            logger.exception("Unexpected error in migration loop")
            self.last_error = {
                "message": str(e),
                "offset": self.offset,
                "retryCount": 0,
                "maxRetries": self.config.max_retries,
                "timestamp": datetime.utcnow().isoformat(),
            }
            self._finish(MigrationStatus.FAILED, f"Migration failed: {e}", "error")

    def _finish(self, status: MigrationStatus, message: str, level: str) -> None:
        self.status = status
        self.finished_at = datetime.utcnow()
        if status == MigrationStatus.COMPLETED:
            self.progress_percent = 100.0 if self.total_processed >= self.total_records else self.progress_percent
        self._event(message, level)

    def _launch(self) -> None:
        self._wake.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def _join_loop(self) -> None:
        task = self._task
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(self, batch_size: Optional[int] = None) -> int:
        """
        Idle/Completed -> Running: start a fresh run at offset 0.

        Returns:
            total_records reported by the batch processor
        """
        async with self._lock:
            if self.status not in (MigrationStatus.IDLE, MigrationStatus.COMPLETED):
                raise InvalidTransitionError(
                    f"Cannot start a migration while {self.status.value}",
                    context={"status": self.status.value}
                )

            await self._join_loop()
            self.batch_size = self.config.clamp(batch_size)
            self.offset = 0
            self.total_processed = 0
            self.progress_percent = 0.0
            self.empty_batches = 0
            self.last_error = None
            self.last_result = None
            self.finished_at = None
            self.started_at = datetime.utcnow()
            self.status = MigrationStatus.RUNNING

            try:
                total = await self._run_call(self.caller.start)
            except (asyncio.TimeoutError, MigrationException) as e:
                message = e.message if isinstance(e, MigrationException) else "start timed out"
                self.last_error = {
                    "message": message,
                    "offset": 0,
                    "retryCount": 0,
                    "maxRetries": self.config.max_retries,
                    "timestamp": datetime.utcnow().isoformat(),
                }
                self._finish(MigrationStatus.FAILED, f"Could not start migration: {message}", "error")
                raise

            self.total_records = total
            self._event(f"Migration started: {total} records, batch size {self.batch_size}")

            if total == 0:
                self._finish(MigrationStatus.COMPLETED, "Source is empty, nothing to migrate", "warning")
                return total

            self._launch()
            return total

    async def pause(self) -> Dict[str, Any]:
        """Running -> Paused, cancelling in-flight calls and keeping the offset."""
        async with self._lock:
            if self.status != MigrationStatus.RUNNING:
                raise InvalidTransitionError(
                    f"Cannot pause a migration that is {self.status.value}",
                    context={"status": self.status.value}
                )
            self.status = MigrationStatus.PAUSED
            self._wake.set()
            cancelled = self._cancel_inflight()
            self._event(f"Migration paused at offset {self.offset} ({cancelled} in-flight calls cancelled)")
            return self.snapshot()

    async def resume(self) -> Dict[str, Any]:
        """Paused -> Running from the retained offset."""
        async with self._lock:
            if self.status != MigrationStatus.PAUSED:
                raise InvalidTransitionError(
                    f"Cannot resume a migration that is {self.status.value}",
                    context={"status": self.status.value}
                )
            await self._join_loop()
            self.status = MigrationStatus.RUNNING
            self.empty_batches = 0
            self._event(f"Migration resumed at offset {self.offset}")
            self._launch()
            return self.snapshot()

    async def reset(self) -> Dict[str, Any]:
        """
        Any state -> Idle: cancel everything, clear target data and checkpoint.

        When the batch processor's reset fails the run keeps its state
        (a running run is left Paused) and the error is re-raised.
        """
        async with self._lock:
            if self.status == MigrationStatus.RUNNING:
                self.status = MigrationStatus.PAUSED
            self._wake.set()
            cancelled = self._cancel_inflight()
            task = self._task
            if task is not None and not task.done():
                task.cancel()
            await self._join_loop()
            self._task = None

            try:
                await self._run_call(self.caller.reset)
            except (asyncio.TimeoutError, MigrationException) as e:
                message = e.message if isinstance(e, MigrationException) else "reset timed out"
                self.last_error = {
                    "message": f"Reset failed: {message}",
                    "offset": self.offset,
                    "retryCount": 0,
                    "maxRetries": self.config.max_retries,
                    "timestamp": datetime.utcnow().isoformat(),
                }
                self._event(f"Reset failed, migration left {self.status.value}: {message}", "error")
                raise

            self.status = MigrationStatus.IDLE
            self.offset = 0
            self.batch_size = self.config.batch_size
            self.total_records = 0
            self.total_processed = 0
            self.progress_percent = 0.0
            self.empty_batches = 0
            self.last_error = None
            self.last_result = None
            self.started_at = None
            self.finished_at = None
            self._event(f"Migration reset ({cancelled} in-flight calls cancelled)", "warning")
            return self.snapshot()

    async def recover(self, resume: bool = False) -> Dict[str, Any]:
        """
        Pick up an unfinished persisted run after a restart.

        The run is restored as Paused at the checkpoint offset; with
        ``resume`` it continues immediately.
        """
        async with self._lock:
            if self.status != MigrationStatus.IDLE:
                return self.snapshot()

            state = await self._run_call(self.caller.get_state)
            if not state.get("started_at") or state.get("completed"):
                return self.snapshot()

            self.offset = state.get("last_processed_id", 0)
            self.total_records = state.get("total_records", 0)
            self.total_processed = state.get("processed_records", 0)
            self.progress_percent = state.get("progress_percent", 0.0)
            self.status = MigrationStatus.PAUSED
            self._event(
                f"Recovered unfinished migration at offset {self.offset} "
                f"({self.total_processed}/{self.total_records})"
            )

        if resume:
            await self.resume()
        return self.snapshot()

    async def wait(self) -> None:
        """Wait until the current loop stops (completed, failed, paused or reset)."""
        await self._join_loop()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "offset": self.offset,
            "batchSize": self.batch_size,
            "totalRecords": self.total_records,
            "totalProcessed": self.total_processed,
            "progressPercent": self.progress_percent,
            "emptyBatches": self.empty_batches,
            "inflightCalls": self.inflight_count,
            "lastError": self.last_error,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "events": list(self.events),
        }
