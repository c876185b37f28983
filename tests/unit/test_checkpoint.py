"""
Unit tests for the checkpoint store
"""

from datetime import datetime

import pytest
from sqlalchemy import select, func

from core.exceptions import CheckpointError
from ingestion.checkpoint import CheckpointState, CheckpointStore
from models.checkpoint import MigrationCheckpoint


class TestCheckpointState:

    def test_progress_percent(self):
        state = CheckpointState(total_records=23, processed_records=10, started_at=datetime.utcnow())
        assert state.progress_percent == 43.48

    def test_progress_of_empty_completed_run(self):
        assert CheckpointState(completed=True).progress_percent == 100.0
        assert CheckpointState().progress_percent == 0.0

    def test_processed_cannot_exceed_total(self):
        state = CheckpointState(total_records=5, processed_records=6, started_at=datetime.utcnow())
        with pytest.raises(CheckpointError):
            state.validate()

    def test_completed_requires_all_processed(self):
        state = CheckpointState(completed=True, total_records=5, processed_records=4, started_at=datetime.utcnow())
        with pytest.raises(CheckpointError):
            state.validate()

    def test_negative_counters_rejected(self):
        with pytest.raises(CheckpointError):
            CheckpointState(last_processed_id=-1).validate()

    def test_to_dict(self):
        started = datetime(2024, 5, 1, 12, 0, 0)
        data = CheckpointState(
            last_processed_id=20, total_records=23, processed_records=20, started_at=started
        ).to_dict()
        assert data["last_processed_id"] == 20
        assert data["started_at"] == "2024-05-01T12:00:00"
        assert data["progress_percent"] == 86.96


class TestCheckpointStore:

    @pytest.mark.asyncio
    async def test_read_creates_zero_state(self, db_session):
        store = CheckpointStore(db_session)

        state = await store.read()

        assert state.last_processed_id == 0
        assert state.total_records == 0
        assert not state.completed
        assert not state.started
        count = await db_session.execute(select(func.count()).select_from(MigrationCheckpoint))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_write_replaces_single_row(self, db_session):
        store = CheckpointStore(db_session)
        await store.read()

        await store.write(CheckpointState(
            last_processed_id=10, total_records=23, processed_records=10, started_at=datetime.utcnow()
        ))
        await store.write(CheckpointState(
            last_processed_id=20, total_records=23, processed_records=20, started_at=datetime.utcnow()
        ))

        state = await store.read()
        assert state.last_processed_id == 20
        assert state.processed_records == 20
        assert state.last_updated is not None
        count = await db_session.execute(select(func.count()).select_from(MigrationCheckpoint))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_invalid_state_is_not_written(self, db_session):
        store = CheckpointStore(db_session)
        await store.write(CheckpointState(
            last_processed_id=10, total_records=23, processed_records=10, started_at=datetime.utcnow()
        ))

        with pytest.raises(CheckpointError):
            await store.write(CheckpointState(
                last_processed_id=30, total_records=23, processed_records=30, started_at=datetime.utcnow()
            ))

        state = await store.read()
        assert state.processed_records == 10

    @pytest.mark.asyncio
    async def test_reset(self, db_session):
        store = CheckpointStore(db_session)
        await store.write(CheckpointState(
            last_processed_id=23, completed=True, total_records=23, processed_records=23,
            started_at=datetime.utcnow()
        ))

        await store.reset()

        state = await store.read()
        assert state == CheckpointState(last_updated=state.last_updated)
