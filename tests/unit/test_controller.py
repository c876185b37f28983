"""
Unit tests for the migration controller state machine
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Set

import httpx
import pytest

from core.exceptions import (
    AdminAuthError,
    AuthenticationError,
    BatchCallError,
    InvalidTransitionError,
    MalformedResponseError,
    NetworkError,
)
from ingestion.controller import ControllerConfig, HttpBatchCaller, MigrationController, BatchCaller
from ingestion.runner import BatchResult
from models.base import MigrationStatus


def fast_config(**overrides) -> ControllerConfig:
    options = dict(
        batch_size=10,
        min_batch_size=5,
        max_batch_size=50,
        max_retries=3,
        retry_base_delay=0,
        call_timeout=2.0,
        inter_batch_delay=0,
        empty_batch_threshold=3,
    )
    options.update(overrides)
    return ControllerConfig(**options)


class FakeCaller(BatchCaller):
    """Batch processor stand-in over ``total`` virtual records."""

    def __init__(self, total: int):
        self.total = total
        self.processed = 0
        self.started = False
        self.calls: List[int] = []
        self.sizes: List[int] = []
        self.fail_offsets: Set[int] = set()
        self.fail_times: Dict[int, int] = {}
        self.block_offset: Optional[int] = None
        self.blocked = asyncio.Event()
        self.gate = asyncio.Event()
        self.slow_above: Optional[int] = None
        self.never_complete = False
        self.reset_calls = 0

    async def get_state(self) -> Dict[str, Any]:
        return {
            "last_processed_id": self.processed,
            "completed": self.processed >= self.total,
            "total_records": self.total,
            "processed_records": self.processed,
            "progress_percent": 0.0,
            "started_at": "2024-01-01T00:00:00" if self.started else None,
        }

    async def start(self) -> int:
        self.started = True
        self.processed = 0
        return self.total

    async def process_batch(self, start_offset: int, batch_size: int) -> BatchResult:
        self.calls.append(start_offset)
        self.sizes.append(batch_size)

        if start_offset == self.block_offset and not self.gate.is_set():
            self.blocked.set()
            await self.gate.wait()
        if self.slow_above is not None and batch_size > self.slow_above:
            await asyncio.sleep(10)
        if start_offset in self.fail_offsets:
            raise NetworkError("sheet provider down", context={"offset": start_offset})
        if self.fail_times.get(start_offset, 0) > 0:
            self.fail_times[start_offset] -= 1
            raise NetworkError("transient failure", context={"offset": start_offset})

        count = max(0, min(batch_size, self.total - start_offset))
        self.processed = min(self.processed + count, self.total)
        completed = self.processed >= self.total and not self.never_complete
        return BatchResult(
            start_offset=start_offset,
            batch_size=batch_size,
            processed_in_batch=count,
            total_processed=self.processed,
            total_records=self.total,
            next_batch_start=None if completed else start_offset + count,
            completed=completed,
            success_count=count,
        )

    async def reset(self) -> None:
        self.reset_calls += 1
        self.processed = 0
        self.started = False


async def run_to_end(controller: MigrationController) -> None:
    await asyncio.wait_for(controller.wait(), timeout=5)


@pytest.mark.asyncio
async def test_runs_batches_in_offset_order_until_completed():
    caller = FakeCaller(total=23)
    controller = MigrationController(caller, fast_config())

    total = await controller.start(10)
    await run_to_end(controller)

    assert total == 23
    assert caller.calls == [0, 10, 20]
    assert controller.status == MigrationStatus.COMPLETED
    assert controller.total_processed == 23
    assert controller.progress_percent == 100.0
    assert controller.snapshot()["finishedAt"] is not None


@pytest.mark.asyncio
async def test_batch_size_is_clamped():
    caller = FakeCaller(total=100)
    controller = MigrationController(caller, fast_config())

    await controller.start(500)
    await run_to_end(controller)

    assert set(caller.sizes) == {50}


@pytest.mark.asyncio
async def test_failing_batch_is_retried_exactly_max_retries_times():
    caller = FakeCaller(total=30)
    caller.fail_offsets = {10}
    controller = MigrationController(caller, fast_config())

    await controller.start(10)
    await run_to_end(controller)

    assert caller.calls.count(10) == 1 + 3
    assert caller.calls[:6] == [0, 10, 10, 10, 10, 20]
    assert any("giving up after 3 retries" in e["message"] for e in controller.events)
    # the skipped batch never counts as processed, so the run ends on empty batches
    assert controller.status == MigrationStatus.COMPLETED
    assert controller.total_processed == 20


@pytest.mark.asyncio
async def test_skipping_the_last_batch_still_completes_on_empty_batches():
    caller = FakeCaller(total=20)
    caller.fail_offsets = {10}
    controller = MigrationController(caller, fast_config())

    await controller.start(10)
    await run_to_end(controller)

    assert caller.calls == [0, 10, 10, 10, 10, 20, 20, 20]
    assert controller.status == MigrationStatus.COMPLETED
    assert controller.total_processed == 10
    assert any("auto-completed" in e["message"] for e in controller.events)


@pytest.mark.asyncio
async def test_failures_past_the_end_count_as_empty_batches():
    caller = FakeCaller(total=10)
    caller.never_complete = True
    caller.fail_offsets = {10, 20, 30}
    controller = MigrationController(caller, fast_config())

    await controller.start(10)
    await run_to_end(controller)

    assert caller.calls == [0] + [10] * 4 + [20] * 4 + [30] * 4
    assert controller.status == MigrationStatus.COMPLETED
    assert controller.last_error["offset"] == 30
    assert controller.last_error["retryCount"] == 3


@pytest.mark.asyncio
async def test_non_retryable_error_fails_the_run_without_retry():
    class RejectingCaller(FakeCaller):
        async def process_batch(self, start_offset: int, batch_size: int) -> BatchResult:
            if start_offset == 10:
                self.calls.append(start_offset)
                raise AuthenticationError("API key rejected", context={"offset": start_offset})
            return await super().process_batch(start_offset, batch_size)

    caller = RejectingCaller(total=30)
    controller = MigrationController(caller, fast_config())

    await controller.start(10)
    await run_to_end(controller)

    assert caller.calls == [0, 10]
    assert controller.status == MigrationStatus.FAILED
    assert controller.offset == 10
    assert controller.total_processed == 10
    assert controller.last_error["offset"] == 10
    assert controller.last_error["retryCount"] == 0
    assert "API key rejected" in controller.last_error["message"]


@pytest.mark.asyncio
async def test_transient_failure_recovers():
    caller = FakeCaller(total=10)
    caller.fail_times = {0: 2}
    controller = MigrationController(caller, fast_config())

    await controller.start(10)
    await run_to_end(controller)

    assert caller.calls == [0, 0, 0]
    assert controller.status == MigrationStatus.COMPLETED
    assert controller.last_error is None


@pytest.mark.asyncio
async def test_three_empty_batches_auto_complete():
    caller = FakeCaller(total=20)
    caller.never_complete = True
    controller = MigrationController(caller, fast_config())

    await controller.start(10)
    await run_to_end(controller)

    assert caller.calls == [0, 10, 20, 20, 20]
    assert controller.status == MigrationStatus.COMPLETED
    assert any("auto-completed" in e["message"] for e in controller.events)


@pytest.mark.asyncio
async def test_pause_cancels_inflight_call_and_resume_continues():
    caller = FakeCaller(total=30)
    caller.block_offset = 10
    controller = MigrationController(caller, fast_config())

    await controller.start(10)
    await asyncio.wait_for(caller.blocked.wait(), timeout=5)
    assert controller.inflight_count == 1

    await controller.pause()
    await run_to_end(controller)

    assert controller.status == MigrationStatus.PAUSED
    assert controller.offset == 10
    assert controller.inflight_count == 0

    caller.gate.set()
    await controller.resume()
    await run_to_end(controller)

    assert controller.status == MigrationStatus.COMPLETED
    assert caller.calls == [0, 10, 10, 20]


@pytest.mark.asyncio
async def test_timeout_halves_large_batches():
    caller = FakeCaller(total=40)
    caller.slow_above = 20
    controller = MigrationController(caller, fast_config(call_timeout=0.05))

    await controller.start(40)
    await run_to_end(controller)

    assert caller.sizes[:2] == [40, 20]
    assert controller.batch_size == 20
    assert controller.status == MigrationStatus.COMPLETED


@pytest.mark.asyncio
async def test_timeout_does_not_shrink_small_batches():
    caller = FakeCaller(total=10)
    caller.slow_above = 5
    controller = MigrationController(caller, fast_config(call_timeout=0.05))

    await controller.start(10)
    await run_to_end(controller)

    assert set(caller.sizes) == {10}
    assert controller.total_processed == 0
    assert "timed out" in controller.last_error["message"]
    assert controller.status == MigrationStatus.COMPLETED


@pytest.mark.asyncio
async def test_empty_source_completes_immediately():
    controller = MigrationController(FakeCaller(total=0), fast_config())

    assert await controller.start() == 0
    assert controller.status == MigrationStatus.COMPLETED


@pytest.mark.asyncio
async def test_invalid_transitions():
    caller = FakeCaller(total=30)
    caller.block_offset = 0
    controller = MigrationController(caller, fast_config())

    with pytest.raises(InvalidTransitionError):
        await controller.resume()
    with pytest.raises(InvalidTransitionError):
        await controller.pause()

    await controller.start(10)
    with pytest.raises(InvalidTransitionError):
        await controller.start(10)

    await controller.reset()
    assert controller.status == MigrationStatus.IDLE


@pytest.mark.asyncio
async def test_reset_from_any_state_clears_progress():
    class RejectingCaller(FakeCaller):
        async def process_batch(self, start_offset: int, batch_size: int) -> BatchResult:
            if start_offset == 10:
                raise AuthenticationError("API key rejected")
            return await super().process_batch(start_offset, batch_size)

    caller = RejectingCaller(total=20)
    controller = MigrationController(caller, fast_config())
    await controller.start(10)
    await run_to_end(controller)
    assert controller.status == MigrationStatus.FAILED

    snapshot = await controller.reset()

    assert snapshot["status"] == "idle"
    assert snapshot["offset"] == 0
    assert snapshot["lastError"] is None
    assert caller.reset_calls == 1


@pytest.mark.asyncio
async def test_failed_reset_keeps_the_previous_state():
    class StuckCaller(FakeCaller):
        async def reset(self) -> None:
            raise NetworkError("database unreachable")

    caller = StuckCaller(total=20)
    controller = MigrationController(caller, fast_config())
    await controller.start(10)
    await run_to_end(controller)
    assert controller.status == MigrationStatus.COMPLETED

    with pytest.raises(NetworkError):
        await controller.reset()

    assert controller.status == MigrationStatus.COMPLETED
    assert controller.total_processed == 20
    assert "database unreachable" in controller.last_error["message"]


@pytest.mark.asyncio
async def test_failed_reset_leaves_a_running_run_paused():
    class StuckCaller(FakeCaller):
        async def reset(self) -> None:
            raise NetworkError("database unreachable")

    caller = StuckCaller(total=30)
    caller.block_offset = 10
    controller = MigrationController(caller, fast_config())
    await controller.start(10)
    await asyncio.wait_for(caller.blocked.wait(), timeout=5)

    with pytest.raises(NetworkError):
        await controller.reset()

    assert controller.status == MigrationStatus.PAUSED
    assert controller.offset == 10
    assert controller.inflight_count == 0


@pytest.mark.asyncio
async def test_failed_start_marks_run_failed():
    class BrokenCaller(FakeCaller):
        async def start(self) -> int:
            raise NetworkError("sheet provider down")

    controller = MigrationController(BrokenCaller(total=5), fast_config())

    with pytest.raises(NetworkError):
        await controller.start()
    assert controller.status == MigrationStatus.FAILED


@pytest.mark.asyncio
async def test_recover_restores_unfinished_run_as_paused():
    caller = FakeCaller(total=30)
    caller.started = True
    caller.processed = 10
    controller = MigrationController(caller, fast_config())

    snapshot = await controller.recover()

    assert snapshot["status"] == "paused"
    assert snapshot["offset"] == 10
    assert snapshot["totalProcessed"] == 10

    await controller.resume()
    await run_to_end(controller)
    assert caller.calls == [10, 20]
    assert controller.status == MigrationStatus.COMPLETED


@pytest.mark.asyncio
async def test_recover_ignores_finished_runs():
    caller = FakeCaller(total=10)
    caller.started = True
    caller.processed = 10
    controller = MigrationController(caller, fast_config())

    assert (await controller.recover())["status"] == "idle"


class TestHttpBatchCaller:

    def caller(self, handler) -> HttpBatchCaller:
        return HttpBatchCaller(
            "https://escuelas.test/",
            auth_key="token",
            client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

    @pytest.mark.asyncio
    async def test_continue_posts_action_and_parses_results(self):
        bodies = []

        def handler(request):
            bodies.append(request)
            return httpx.Response(200, json={
                "success": True,
                "processedInBatch": 10,
                "totalProcessed": 20,
                "totalRecords": 23,
                "progress": 86.96,
                "nextBatchStart": 20,
                "completed": False,
                "results": {
                    "startOffset": 10,
                    "batchSize": 10,
                    "processedInBatch": 10,
                    "totalProcessed": 20,
                    "totalRecords": 23,
                    "nextBatchStart": 20,
                    "completed": False,
                    "successCount": 9,
                    "failCount": 1,
                },
            })

        result = await self.caller(handler).process_batch(10, 10)

        assert bodies[0].url.path == "/admin/migrate"
        assert b'"action":"continue"' in bodies[0].content.replace(b" ", b"")
        assert b'"authKey":"token"' in bodies[0].content.replace(b" ", b"")
        assert result.total_processed == 20
        assert result.next_batch_start == 20
        assert result.fail_count == 1

    @pytest.mark.asyncio
    async def test_error_response_raises(self):
        handler = lambda r: httpx.Response(500, json={"success": False, "error": "Error interno"})
        with pytest.raises(BatchCallError) as exc_info:
            await self.caller(handler).start()
        assert "Error interno" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unauthorized_response_is_not_retryable(self):
        handler = lambda r: httpx.Response(401, json={"success": False, "error": "No autorizado"})
        with pytest.raises(AdminAuthError) as exc_info:
            await self.caller(handler).start()
        assert "No autorizado" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_expired_token_fails_the_run_without_retry(self):
        actions = []

        def handler(request):
            body = json.loads(request.content)
            actions.append(body["action"])
            if body["action"] == "start":
                return httpx.Response(200, json={"success": True, "totalRecords": 30})
            return httpx.Response(401, json={"success": False, "error": "No autorizado"})

        controller = MigrationController(self.caller(handler), fast_config())
        await controller.start(10)
        await run_to_end(controller)

        assert actions == ["start", "continue"]
        assert controller.status == MigrationStatus.FAILED
        assert controller.offset == 0

    @pytest.mark.asyncio
    async def test_http_timeout_is_a_call_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(asyncio.TimeoutError):
            await self.caller(handler).process_batch(0, 10)

    @pytest.mark.asyncio
    async def test_http_timeout_halves_the_batch(self):
        sizes = []

        def handler(request):
            body = json.loads(request.content)
            if body["action"] == "start":
                return httpx.Response(200, json={"success": True, "totalRecords": 40})
            sizes.append(body["batchSize"])
            if body["batchSize"] > 20:
                raise httpx.ReadTimeout("read timed out", request=request)
            start, size = body["startIndex"], body["batchSize"]
            done = min(start + size, 40)
            return httpx.Response(200, json={
                "success": True,
                "results": {
                    "startOffset": start,
                    "batchSize": size,
                    "processedInBatch": done - start,
                    "totalProcessed": done,
                    "totalRecords": 40,
                    "nextBatchStart": None if done >= 40 else done,
                    "completed": done >= 40,
                    "successCount": done - start,
                    "failCount": 0,
                },
            })

        controller = MigrationController(self.caller(handler), fast_config())
        await controller.start(40)
        await run_to_end(controller)

        assert sizes == [40, 20, 20]
        assert controller.batch_size == 20
        assert controller.status == MigrationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_non_json_response_raises(self):
        handler = lambda r: httpx.Response(502, text="<html>Bad gateway</html>")
        with pytest.raises(MalformedResponseError):
            await self.caller(handler).get_state()

    @pytest.mark.asyncio
    async def test_start_returns_total(self):
        handler = lambda r: httpx.Response(200, json={"success": True, "totalRecords": 23})
        assert await self.caller(handler).start() == 23
