from sqlalchemy import Column, Integer, String, Boolean, DateTime
from datetime import datetime
from models.base import Base

CURRENT_CHECKPOINT_ID = "current"


class MigrationCheckpoint(Base):
    """
    Persisted progress of the migration run.

    Purpose:
    - Resume a run from the last committed batch
    - Report progress to the admin surface

    Design:
    - Exactly one logical row, id = "current"
    - Overwritten after every batch, never deleted
    - last_processed_id is the next offset to process (exclusive end of
      the last committed slice)
    """
    __tablename__ = "migration_checkpoint"

    id = Column(String(32), primary_key=True, default=CURRENT_CHECKPOINT_ID)

    last_processed_id = Column(Integer, nullable=False, default=0)
    completed = Column(Boolean, nullable=False, default=False)
    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, nullable=False, default=datetime.utcnow)
