# ============================================================================
# File: ingestion/runner.py
# Description: Batch processor for the resumable sheet migration
# ============================================================================
"""
Migration Runner - processes one batch of spreadsheet rows at a time.

This module provides the server side of the migration with:
- Offset/size batches over the full establishment sheet
- Partial failure support (a failing record never aborts its batch)
- Contact rows attached by CUE, orphans dropped
- Checkpoint advance as the very last step of a batch
- Whole-sheet migration for the one-shot /migrate-sheet operation
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, settings as default_settings
from core.exceptions import (
    LoadError,
    MissingKeyError,
    TransformationError,
    ValidationError,
)
from ingestion.checkpoint import CheckpointState, CheckpointStore
from ingestion.loaders.postgres_loader import EstablishmentLoader, INSERTED
from ingestion.sources.base import SheetSource
from ingestion.transformers.field_mapper import (
    CONTACT,
    ESTABLISHMENT,
    extract_cue,
    map_record,
    normalize_headers,
    require_cue,
)
from models.base import TargetTable
from models.contact import Contact
from models.establishment import Establishment

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Outcome of one processed batch."""

    start_offset: int
    batch_size: int
    processed_in_batch: int
    total_processed: int
    total_records: int
    next_batch_start: Optional[int]
    completed: bool
    success_count: int = 0
    fail_count: int = 0
    inserted_count: int = 0
    updated_count: int = 0
    contacts_processed: int = 0
    contacts_dropped: int = 0
    added_columns: List[str] = field(default_factory=list)
    sample_details: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def progress_percent(self) -> float:
        if self.total_records <= 0:
            return 100.0 if self.completed else 0.0
        return round(min(self.total_processed, self.total_records) / self.total_records * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startOffset": self.start_offset,
            "batchSize": self.batch_size,
            "processedInBatch": self.processed_in_batch,
            "totalProcessed": self.total_processed,
            "totalRecords": self.total_records,
            "progressPercent": self.progress_percent,
            "nextBatchStart": self.next_batch_start,
            "completed": self.completed,
            "successCount": self.success_count,
            "failCount": self.fail_count,
            "insertedCount": self.inserted_count,
            "updatedCount": self.updated_count,
            "contactsProcessed": self.contacts_processed,
            "contactsDropped": self.contacts_dropped,
            "addedColumns": list(self.added_columns),
            "sampleDetails": list(self.sample_details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchResult":
        return cls(
            start_offset=data.get("startOffset", 0),
            batch_size=data.get("batchSize", 0),
            processed_in_batch=data["processedInBatch"],
            total_processed=data["totalProcessed"],
            total_records=data["totalRecords"],
            next_batch_start=data.get("nextBatchStart"),
            completed=data["completed"],
            success_count=data.get("successCount", 0),
            fail_count=data.get("failCount", 0),
            inserted_count=data.get("insertedCount", 0),
            updated_count=data.get("updatedCount", 0),
            contacts_processed=data.get("contactsProcessed", 0),
            contacts_dropped=data.get("contactsDropped", 0),
            added_columns=list(data.get("addedColumns", [])),
            sample_details=list(data.get("sampleDetails", [])),
        )


class MigrationRunner:
    """
    Batch processor for the establishment migration.

    Responsibilities:
    - Fetch the full sheets on every batch (no cross-batch caching)
    - Map, upsert and tally every record of the slice
    - Advance the checkpoint monotonically, last
    - Reset and verify the migrated data
    """

    def __init__(
        self,
        db_session: AsyncSession,
        source: SheetSource,
        settings: Optional[Settings] = None
    ):
        self.db = db_session
        self.source = source
        self.settings = settings or default_settings
        self.checkpoints = CheckpointStore(db_session)
        self.loader = EstablishmentLoader(db_session)

    # --------------------------------------------------
    # State
    # --------------------------------------------------

    async def get_state(self) -> CheckpointState:
        return await self.checkpoints.read()

    async def start_run(self) -> int:
        """
        Begin a new run: fix total_records from the source's current
        length and zero the progress.

        Returns:
            total_records
        """
        rows = await self.source.get_sheet_data(self.settings.ESTABLISHMENTS_SHEET)
        total = len(rows)

        await self.checkpoints.write(CheckpointState(
            last_processed_id=0,
            completed=total == 0,
            total_records=total,
            processed_records=0,
            started_at=datetime.utcnow(),
        ))
        logger.info(f"Migration run started with {total} records")
        return total

    async def reset(self) -> Dict[str, int]:
        """Delete all migrated rows and zero the checkpoint."""
        deleted = await self.loader.delete_all()
        await self.checkpoints.reset()
        return deleted

    async def verify(self) -> Dict[str, Any]:
        state = await self.checkpoints.read()
        return {
            "migrationState": state.to_dict(),
            "recordCounts": {
                "establishments": await self.loader.count_establishments(),
                "contacts": await self.loader.count_contacts(),
            },
        }

    # --------------------------------------------------
    # Helpers
    # --------------------------------------------------

    async def _fetch_sheets(self) -> Tuple[List[Dict[str, str]], List[Dict[str, str]]]:
        establishments = await self.source.get_sheet_data(self.settings.ESTABLISHMENTS_SHEET)
        contacts = await self.source.get_sheet_data(self.settings.CONTACTS_SHEET)
        return establishments, contacts

    def _index_contacts(self, rows: List[Dict[str, str]]) -> Tuple[Dict[int, List[Dict[str, Any]]], int]:
        """Group mapped contact rows by cue; returns (index, unresolvable count)."""
        index: Dict[int, List[Dict[str, Any]]] = {}
        unresolvable = 0
        for row in rows:
            try:
                mapped = map_record(row, CONTACT)
            except TransformationError as e:
                unresolvable += 1
                logger.debug(f"Skipping unmappable contact row: {e.message}")
                continue
            cue = mapped.get("cue")
            if cue is None:
                unresolvable += 1
                continue
            index.setdefault(cue, []).append(mapped)
        return index, unresolvable

    async def _register_headers(self, table: TargetTable, rows: List[Dict[str, str]], known) -> List[str]:
        if not rows:
            return []
        names = [n for n in normalize_headers(rows[0].keys()) if n != "cue" and n not in known]
        return await self.loader.register_columns(table.value, names)

    def _sample(self, details: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        cap = self.settings.MIGRATION_SAMPLE_DETAILS
        failures = [d for d in details if d["status"] == "error"]
        others = [d for d in details if d["status"] != "error"]
        return (failures + others)[:cap]

    # --------------------------------------------------
    # Batch processing
    # --------------------------------------------------

    async def process_batch(self, start_offset: int, batch_size: int) -> BatchResult:
        """
        Process rows [start_offset, start_offset + batch_size) of the
        establishment sheet.

        A source failure raises before anything is written. Per-record
        failures are counted in fail_count / sample_details and the
        checkpoint still advances past them.

        Raises:
            ValueError: negative offset or non-positive batch size
            ExtractionError: the source could not be read
            CheckpointError: the checkpoint could not be read or written
        """
        if start_offset < 0:
            raise ValueError("start_offset must be >= 0")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        state = await self.checkpoints.read()
        establishment_rows, contact_rows = await self._fetch_sheets()

        source_total = len(establishment_rows)
        if not state.started:
            state.started_at = datetime.utcnow()
            state.total_records = source_total
            state.processed_records = 0
            state.last_processed_id = 0
            state.completed = False

        batch = establishment_rows[start_offset:start_offset + batch_size]
        logger.info(
            f"Processing batch offset={start_offset} size={batch_size} "
            f"({len(batch)} rows, source has {source_total})"
        )

        added_columns = await self._register_headers(
            TargetTable.ESTABLISHMENTS, establishment_rows, Establishment.KNOWN_COLUMNS
        )
        added_columns += await self._register_headers(
            TargetTable.CONTACTS, contact_rows, Contact.KNOWN_COLUMNS
        )

        contacts_by_cue, _ = self._index_contacts(contact_rows) if batch else ({}, 0)

        result = BatchResult(
            start_offset=start_offset,
            batch_size=batch_size,
            processed_in_batch=len(batch),
            total_processed=0,
            total_records=state.total_records,
            next_batch_start=None,
            completed=False,
            added_columns=added_columns,
        )
        details: List[Dict[str, Any]] = []

        for position, row in enumerate(batch, start=start_offset):
            cue = None
            related: List[Dict[str, Any]] = []
            try:
                mapped = map_record(row, ESTABLISHMENT)
                cue = require_cue(mapped)
                related = contacts_by_cue.get(cue, [])
                outcome = await self.loader.upsert_establishment(mapped, related)

            except (TransformationError, LoadError) as e:
                if cue is None:
                    cue = extract_cue(row)
                    related = contacts_by_cue.get(cue, []) if cue is not None else []
                result.fail_count += 1
                result.contacts_dropped += len(related)
                details.append({
                    "index": position,
                    "cue": cue,
                    "status": "error",
                    "error": e.message,
                    "errorType": type(e).__name__,
                })
                logger.warning(
                    f"Record at offset {position} failed: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                continue

            result.success_count += 1
            if outcome["action"] == INSERTED:
                result.inserted_count += 1
            else:
                result.updated_count += 1
            result.contacts_processed += outcome["contacts_processed"]
            result.contacts_dropped += outcome["contacts_failed"]
            details.append({
                "index": position,
                "cue": cue,
                "status": outcome["action"],
                "contacts": outcome["contacts_processed"],
            })

        # Checkpoint advance is the last step of the batch
        total_processed = min(state.processed_records + len(batch), state.total_records)
        completed = state.completed or total_processed >= state.total_records
        next_start = None if completed else start_offset + len(batch)

        state.processed_records = total_processed
        state.last_processed_id = max(state.last_processed_id, start_offset + len(batch))
        state.completed = completed
        await self.checkpoints.write(state)

        result.total_processed = total_processed
        result.completed = completed
        result.next_batch_start = next_start
        result.sample_details = self._sample(details)

        logger.info(
            f"Batch offset={start_offset} done: {result.success_count} ok, "
            f"{result.fail_count} failed, progress {total_processed}/{state.total_records}"
        )
        return result

    # --------------------------------------------------
    # Whole-sheet migration
    # --------------------------------------------------

    async def migrate_sheet(
        self,
        sheet_name: str,
        table: TargetTable,
        batch_size: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Upsert every row of ``sheet_name`` into ``table`` in one call.

        Contacts whose cue has no establishment are dropped. Rows are
        loaded in chunks of ``batch_size`` (default: the whole sheet), one
        establishment lookup and one progress line per chunk.
        """
        rows = await self.source.get_sheet_data(sheet_name)
        logger.info(f"Migrating {len(rows)} rows from sheet {sheet_name} into {table.value}")

        known = Establishment.KNOWN_COLUMNS if table == TargetTable.ESTABLISHMENTS else Contact.KNOWN_COLUMNS
        added_columns = await self._register_headers(table, rows, known)

        processed = inserted = updated = failed = dropped = 0
        errors: List[Dict[str, Any]] = []

        target = ESTABLISHMENT if table == TargetTable.ESTABLISHMENTS else CONTACT
        mapped_rows: List[Tuple[int, Dict[str, Any]]] = []
        for position, row in enumerate(rows):
            try:
                mapped = map_record(row, target)
                require_cue(mapped)
                mapped_rows.append((position, mapped))
            except TransformationError as e:
                if isinstance(e, MissingKeyError):
                    dropped += 1
                else:
                    failed += 1
                    errors.append({"index": position, "error": e.message})

        chunk_size = max(1, batch_size or len(mapped_rows))
        batches = 0

        for chunk_start in range(0, len(mapped_rows), chunk_size):
            chunk = mapped_rows[chunk_start:chunk_start + chunk_size]
            batches += 1

            existing = set()
            if table == TargetTable.CONTACTS:
                existing = await self.loader.existing_cues(m["cue"] for _, m in chunk)

            for position, mapped in chunk:
                if table == TargetTable.CONTACTS and mapped["cue"] not in existing:
                    dropped += 1
                    continue
                try:
                    if table == TargetTable.ESTABLISHMENTS:
                        action = (await self.loader.upsert_establishment(mapped))["action"]
                    else:
                        action = await self.loader.upsert_contact(mapped)
                except (ValidationError, LoadError) as e:
                    failed += 1
                    errors.append({"index": position, "cue": mapped["cue"], "error": e.message})
                    continue

                processed += 1
                if action == INSERTED:
                    inserted += 1
                else:
                    updated += 1

            logger.debug(
                f"Sheet {sheet_name}: chunk {batches} done "
                f"({min(chunk_start + chunk_size, len(mapped_rows))}/{len(mapped_rows)} rows)"
            )

        logger.info(
            f"Sheet {sheet_name}: {processed} processed ({inserted} inserted, "
            f"{updated} updated), {failed} failed, {dropped} dropped"
        )
        return {
            "processed": processed,
            "inserted": inserted,
            "updated": updated,
            "failed": failed,
            "dropped": dropped,
            "batches": batches,
            "addedColumns": added_columns,
            "errors": errors[:self.settings.MIGRATION_SAMPLE_DETAILS],
        }
