"""
Checkpoint management for the resumable migration.

The checkpoint is a single row (id = "current") holding the progress of
the one migration run the system tracks. It is read at the start of
every batch and overwritten as the last step of every batch, so a crash
before the write simply repeats the batch.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import CheckpointError
from models.checkpoint import MigrationCheckpoint, CURRENT_CHECKPOINT_ID

logger = logging.getLogger(__name__)


@dataclass
class CheckpointState:
    """In-memory view of the migration checkpoint."""

    last_processed_id: int = 0
    completed: bool = False
    total_records: int = 0
    processed_records: int = 0
    started_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def progress_percent(self) -> float:
        if self.total_records <= 0:
            return 100.0 if self.completed else 0.0
        return round(min(self.processed_records, self.total_records) / self.total_records * 100, 2)

    @property
    def started(self) -> bool:
        return self.started_at is not None

    def validate(self) -> None:
        """Raise CheckpointError when the state breaks a progress invariant."""
        if self.last_processed_id < 0 or self.processed_records < 0 or self.total_records < 0:
            raise CheckpointError(
                "Checkpoint counters must be non-negative",
                context={"operation": "validate", **self.to_dict()}
            )
        if self.started and self.processed_records > self.total_records:
            raise CheckpointError(
                "processed_records exceeds total_records",
                context={"operation": "validate", **self.to_dict()}
            )
        if self.completed and self.processed_records < self.total_records:
            raise CheckpointError(
                "Checkpoint marked completed before all records were processed",
                context={"operation": "validate", **self.to_dict()}
            )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("started_at", "last_updated"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        data["progress_percent"] = self.progress_percent
        return data

    @classmethod
    def from_model(cls, row: MigrationCheckpoint) -> "CheckpointState":
        return cls(
            last_processed_id=row.last_processed_id or 0,
            completed=bool(row.completed),
            total_records=row.total_records or 0,
            processed_records=row.processed_records or 0,
            started_at=row.started_at,
            last_updated=row.last_updated,
        )


class CheckpointStore:
    """
    Persists the single-row migration checkpoint.

    Each write replaces every field of the row inside one transaction.
    The row is locked (SELECT ... FOR UPDATE) while it is replaced, so two
    batch completions racing on PostgreSQL serialise instead of
    interleaving field updates.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _get_row(self, lock: bool = False) -> Optional[MigrationCheckpoint]:
        stmt = select(MigrationCheckpoint).where(MigrationCheckpoint.id == CURRENT_CHECKPOINT_ID)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def read(self) -> CheckpointState:
        """Return the current checkpoint, creating the zero state if absent."""
        try:
            row = await self._get_row()
            if row is None:
                logger.info("No migration checkpoint found, creating zero state")
                row = MigrationCheckpoint(
                    id=CURRENT_CHECKPOINT_ID,
                    last_processed_id=0,
                    completed=False,
                    total_records=0,
                    processed_records=0,
                    last_updated=datetime.utcnow(),
                )
                self.db.add(row)
                await self.db.commit()
            return CheckpointState.from_model(row)

        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CheckpointError(
                "Failed to read migration checkpoint",
                context={"operation": "read"},
                original_exception=e
            )

    async def write(self, state: CheckpointState) -> CheckpointState:
        """Replace the checkpoint row with ``state``."""
        state.validate()
        state.last_updated = datetime.utcnow()

        try:
            row = await self._get_row(lock=True)
            if row is None:
                row = MigrationCheckpoint(id=CURRENT_CHECKPOINT_ID)
                self.db.add(row)

            row.last_processed_id = state.last_processed_id
            row.completed = state.completed
            row.total_records = state.total_records
            row.processed_records = state.processed_records
            row.started_at = state.started_at
            row.last_updated = state.last_updated

            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CheckpointError(
                "Failed to write migration checkpoint",
                context={"operation": "write", **state.to_dict()},
                original_exception=e
            )

        logger.debug(
            f"Checkpoint written: offset={state.last_processed_id} "
            f"processed={state.processed_records}/{state.total_records} "
            f"completed={state.completed}"
        )
        return state

    async def reset(self) -> CheckpointState:
        """Zero the checkpoint."""
        logger.info("Resetting migration checkpoint")
        return await self.write(CheckpointState())
