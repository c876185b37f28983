"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class, JSON column type and shared enums
    establishment: Educational establishments keyed by CUE
    contact: Contact persons attached to an establishment
    checkpoint: Single-row migration progress checkpoint
    source_column: Registry of source columns seen per table

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and generic JSON elsewhere.

Usage:
    from models import Establishment, Contact, MigrationCheckpoint
    from models.base import MigrationStatus

Example:
    school = Establishment(
        cue=60881800,
        establecimiento="Escuela N° 1",
        distrito="La Plata",
        extra_attributes={"proveedor_internet": "ARSAT"}
    )
    session.add(school)
    await session.commit()

Relationships:
    - Establishment → Contact (one-to-many, cascade delete)
"""

from models.base import Base, MigrationStatus, TargetTable
from models.establishment import Establishment
from models.contact import Contact
from models.checkpoint import MigrationCheckpoint, CURRENT_CHECKPOINT_ID
from models.source_column import SourceColumn

__all__ = [
    "Base",
    "MigrationStatus",
    "TargetTable",
    "Establishment",
    "Contact",
    "MigrationCheckpoint",
    "CURRENT_CHECKPOINT_ID",
    "SourceColumn",
]
