"""
Load mapped records into the relational store with upsert-by-key logic.

Upsert policy (both tables):
- Row absent -> insert every mapped field
- Row present -> update only fields whose incoming value is non-null;
  blank source cells never erase data already in the store
- extra_attributes is merged key by key with the same rule

Each record is committed on its own so one failing record never rolls
back its neighbours in the batch.
"""

from typing import Any, Dict, Iterable, List, Optional, Set
from datetime import datetime
import logging

from sqlalchemy import select, func, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import (
    DatabaseError,
    SchemaEvolutionError,
    UpsertError,
    ValidationError,
)
from ingestion.transformers.field_mapper import (
    build_search_text,
    contact_key,
    require_cue,
    split_known_columns,
)
from models.contact import Contact
from models.establishment import Establishment
from models.source_column import SourceColumn

logger = logging.getLogger(__name__)

INSERTED = "inserted"
UPDATED = "updated"


def _merge_non_null(current: Optional[Dict[str, Any]], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(current or {})
    for key, value in incoming.items():
        if value is not None:
            merged[key] = value
    return merged


class EstablishmentLoader:
    """
    Idempotent writes for establishments, contacts and the column registry.

    Ensures:
    - No duplicate rows on repeated runs (keyed by cue / cue + contact_key)
    - Existing non-null values survive blank incoming cells
    - Contacts are only written for establishments that exist
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ------------------------------------------------------------------
    # Establishments
    # ------------------------------------------------------------------

    async def _apply_establishment(self, mapped: Dict[str, Any]) -> str:
        cue = require_cue(mapped)
        columns, extra = split_known_columns(mapped, Establishment.KNOWN_COLUMNS)

        school = await self.db.get(Establishment, cue)

        if school is None:
            school = Establishment(
                cue=cue,
                extra_attributes={k: v for k, v in extra.items() if v is not None},
                **columns
            )
            school.search_text = build_search_text(columns)
            self.db.add(school)
            return INSERTED

        for key, value in columns.items():
            if value is not None:
                setattr(school, key, value)

        school.extra_attributes = _merge_non_null(school.extra_attributes, extra)
        school.search_text = build_search_text(
            {field: getattr(school, field) for field in Establishment.KNOWN_COLUMNS}
        )
        school.updated_at = datetime.utcnow()
        return UPDATED

    async def _apply_contact(self, mapped: Dict[str, Any]) -> str:
        cue = require_cue(mapped)
        key = contact_key(mapped)
        if key == "|":
            raise ValidationError(
                "Contact has neither email nor name",
                context={"cue": cue, "validation_rule": "contact identity"}
            )

        columns, extra = split_known_columns(mapped, Contact.KNOWN_COLUMNS)

        result = await self.db.execute(
            select(Contact).where(Contact.cue == cue, Contact.contact_key == key)
        )
        contact = result.scalar_one_or_none()

        if contact is None:
            self.db.add(Contact(
                cue=cue,
                contact_key=key,
                extra_attributes={k: v for k, v in extra.items() if v is not None},
                **columns
            ))
            return INSERTED

        for field, value in columns.items():
            if value is not None:
                setattr(contact, field, value)
        contact.extra_attributes = _merge_non_null(contact.extra_attributes, extra)
        contact.updated_at = datetime.utcnow()
        return UPDATED

    async def upsert_establishment(
        self,
        mapped: Dict[str, Any],
        contacts: Iterable[Dict[str, Any]] = ()
    ) -> Dict[str, Any]:
        """
        Upsert one establishment and its related contacts, then commit.

        Returns:
            {"action": "inserted"|"updated", "contacts_processed": int,
             "contacts_failed": int}

        Raises:
            MissingKeyError: the record has no cue
            UpsertError: the store rejected the establishment write
        """
        cue = require_cue(mapped)

        try:
            action = await self._apply_establishment(mapped)
            await self.db.flush()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise UpsertError(
                f"Failed to upsert establishment {cue}",
                context={"cue": cue, "table_name": "establishments"},
                original_exception=e
            )

        contacts_processed = 0
        contacts_failed = 0
        for contact in contacts:
            try:
                await self._apply_contact(contact)
                await self.db.flush()
                contacts_processed += 1
            except ValidationError as e:
                contacts_failed += 1
                logger.warning(f"Skipping contact for cue={cue}: {e.message}")
            except SQLAlchemyError as e:
                await self.db.rollback()
                raise UpsertError(
                    f"Failed to upsert contacts of establishment {cue}",
                    context={"cue": cue, "table_name": "contacts"},
                    original_exception=e
                )

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise UpsertError(
                f"Failed to commit establishment {cue}",
                context={"cue": cue, "table_name": "establishments"},
                original_exception=e
            )

        return {
            "action": action,
            "contacts_processed": contacts_processed,
            "contacts_failed": contacts_failed,
        }

    async def upsert_contact(self, mapped: Dict[str, Any]) -> str:
        """
        Upsert one contact and commit.

        The establishment must already exist; callers filter orphans with
        existing_cues() first.
        """
        cue = require_cue(mapped)
        try:
            action = await self._apply_contact(mapped)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise UpsertError(
                f"Failed to upsert contact for {cue}",
                context={"cue": cue, "table_name": "contacts"},
                original_exception=e
            )
        return action

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    async def existing_cues(self, cues: Iterable[int]) -> Set[int]:
        cues = list({c for c in cues if c is not None})
        if not cues:
            return set()
        found: Set[int] = set()
        try:
            # Chunked to stay under bound-parameter limits
            for i in range(0, len(cues), 500):
                chunk = cues[i:i + 500]
                result = await self.db.execute(
                    select(Establishment.cue).where(Establishment.cue.in_(chunk))
                )
                found.update(result.scalars().all())
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to look up establishment keys",
                context={"operation": "SELECT", "table_name": "establishments"},
                original_exception=e
            )
        return found

    async def register_columns(self, table_name: str, names: Iterable[str]) -> List[str]:
        """
        Record normalised column names for a table.

        Returns:
            Names seen for the first time, in input order
        """
        names = list(dict.fromkeys(n for n in names if n))
        if not names:
            return []

        try:
            result = await self.db.execute(
                select(SourceColumn.column_name).where(SourceColumn.table_name == table_name)
            )
            known = set(result.scalars().all())
            added = [name for name in names if name not in known]

            for name in added:
                self.db.add(SourceColumn(table_name=table_name, column_name=name))

            if added:
                await self.db.commit()
                logger.info(f"Registered {len(added)} new columns for {table_name}: {added}")

            return added

        except SQLAlchemyError as e:
            await self.db.rollback()
            raise SchemaEvolutionError(
                f"Failed to register columns for {table_name}",
                context={"table_name": table_name, "columns": names[:20]},
                original_exception=e
            )

    async def count_establishments(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(Establishment))
        return result.scalar_one()

    async def count_contacts(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(Contact))
        return result.scalar_one()

    async def delete_all(self) -> Dict[str, int]:
        """Delete every contact and establishment row."""
        try:
            contacts = await self.db.execute(delete(Contact))
            schools = await self.db.execute(delete(Establishment))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatabaseError(
                "Failed to delete migrated data",
                context={"operation": "DELETE", "table_name": "establishments,contacts"},
                original_exception=e
            )

        logger.warning(
            f"Deleted {schools.rowcount} establishments and {contacts.rowcount} contacts"
        )
        return {"establishments": schools.rowcount, "contacts": contacts.rowcount}

    async def update_coordinates(self, cue: int, lat: Optional[float], lon: Optional[float]) -> bool:
        """Overwrite the coordinates of one establishment. Returns False if absent."""
        school = await self.db.get(Establishment, cue)
        if school is None:
            return False
        school.lat = lat
        school.lon = lon
        school.updated_at = datetime.utcnow()
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatabaseError(
                f"Failed to update coordinates for {cue}",
                context={"operation": "UPDATE", "table_name": "establishments", "cue": cue},
                original_exception=e
            )
        return True
