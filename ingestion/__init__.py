"""
Spreadsheet-to-database migration components.

Modules:
    checkpoint: persisted migration progress (single row)
    runner: batch processor, one idempotent batch per call
    controller: state machine that drives batches to completion
    scheduler: APScheduler integration for the periodic full sync

Subpackages:
    sources: sheet sources (Google Sheets, secondary row API, CSV) with
        failover and TTL cache
    transformers: field mapper from raw sheet rows to target columns
    loaders: establishment/contact upserts and schema evolution

Architecture:
    The controller never touches rows itself. It calls the batch
    processor through a BatchCaller, either in-process or over the
    /admin/migrate endpoint, and only trusts what each call returns:

    1. Fetch - the full sheet is refetched for every batch
    2. Map - each row is mapped, validated and keyed by CUE
    3. Upsert - one transaction per establishment with its contacts
    4. Checkpoint - progress is written last, after the batch succeeded

    A record that fails is reported in the batch details and skipped;
    the rest of the batch still commits.

Usage:
    from ingestion.runner import MigrationRunner
    from ingestion.controller import MigrationController, LocalBatchCaller

Example:
    caller = LocalBatchCaller(async_session_maker, source)
    controller = MigrationController(caller)
    await controller.start(batch_size=20)
    await controller.wait()
"""

__all__ = [
    "CheckpointStore",
    "CheckpointState",
    "MigrationRunner",
    "BatchResult",
    "MigrationController",
    "LocalBatchCaller",
    "HttpBatchCaller",
    "MigrationScheduler",
]
