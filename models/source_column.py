from sqlalchemy import Column, String, DateTime, UniqueConstraint
from datetime import datetime
from models.base import Base, BigIntegerId


class SourceColumn(Base):
    """
    Registry of normalised source column names seen per target table.

    Registering a name here is how the open schema "adds a column": the
    value itself is stored in the row's extra_attributes map.
    """
    __tablename__ = "source_columns"

    id = Column(BigIntegerId, primary_key=True, autoincrement=True)
    table_name = Column(String(64), nullable=False, index=True)
    column_name = Column(String(255), nullable=False)
    first_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("table_name", "column_name", name="uq_source_column"),
    )
