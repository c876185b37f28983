from sqlalchemy import JSON, BigInteger, Integer
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntegerId = BigInteger().with_variant(Integer(), "sqlite")


# ============================================================================
# ENUMS
# ============================================================================

class MigrationStatus(str, enum.Enum):
    """Migration controller status"""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class TargetTable(str, enum.Enum):
    """Tables a sheet can be migrated into"""
    ESTABLISHMENTS = "establishments"
    CONTACTS = "contacts"
