# core/schema_store.py
"""
Draft/live persistence for the report schema.

Exactly one row is live and exactly one row is the current draft. "Most
recent" always means highest id, never newest updated_at.
"""

import dataclasses
import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from core.database import Database
from core.database_models import ReportSchemaRow, utcnow
from core.errors import FirewatchError, NotFoundError, StorageError, ValidationError
from core.report_schema import ReportSchema, default_salute_schema

logger = logging.getLogger(__name__)

SEED_USER = 'system'


class SchemaStore:
    """Source of truth for the live form and the form being edited"""

    def __init__(self, db: Database):
        self.session_factory = db.session_factory

    def live_schema(self) -> ReportSchema:
        return self._latest(is_live=True)

    def draft_schema(self) -> ReportSchema:
        return self._latest(is_live=False)

    def _latest(self, is_live: bool) -> ReportSchema:
        kind = 'live' if is_live else 'draft'
        try:
            with self.session_factory() as session:
                row = session.execute(
                    select(ReportSchemaRow)
                    .where(ReportSchemaRow.is_live.is_(is_live))
                    .order_by(ReportSchemaRow.id.desc())
                    .limit(1)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load {kind} schema: {e}")
            raise StorageError(f"failed to load {kind} schema") from e

        if row is None:
            raise NotFoundError(f"no {kind} schema")
        return self._to_schema(row)

    @staticmethod
    def _to_schema(row: ReportSchemaRow) -> ReportSchema:
        try:
            schema = ReportSchema.from_json(row.schema)
        except ValidationError as e:
            logger.error(f"Stored schema row {row.id} is unreadable: {e}")
            raise StorageError(f"stored schema row {row.id} is unreadable") from e
        schema.updated_at = row.updated_at
        schema.updated_by = row.updated_by or ''
        return schema

    def save_draft(self, schema: ReportSchema, updated_by: str) -> ReportSchema:
        """
        Replace the draft with ``schema`` in one transaction.

        All non-live rows are deleted and a single new draft row is
        inserted. The caller always submits a complete document.
        """
        schema.validate()
        stamped = dataclasses.replace(schema, updated_at=utcnow(), updated_by=updated_by or '')

        try:
            with self.session_factory.begin() as session:
                session.execute(delete(ReportSchemaRow).where(ReportSchemaRow.is_live.is_(False)))
                session.add(ReportSchemaRow(
                    version=stamped.schema_version,
                    is_live=False,
                    schema=stamped.to_json(),
                    updated_at=stamped.updated_at,
                    updated_by=stamped.updated_by,
                ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to save draft schema: {e}")
            raise StorageError("failed to save draft schema") from e

        logger.info(f"Draft schema saved by {updated_by or 'unknown'}")
        return stamped

    def promote_draft(self, updated_by: str) -> ReportSchema:
        """
        Make the most recent draft live.

        Demote and promote share one transaction. Reseeding the draft from
        the new live schema happens afterwards as a separate unit of work;
        if it fails the promotion stands.
        """
        try:
            with self.session_factory.begin() as session:
                draft_id = session.execute(
                    select(ReportSchemaRow.id)
                    .where(ReportSchemaRow.is_live.is_(False))
                    .order_by(ReportSchemaRow.id.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if draft_id is None:
                    raise NotFoundError("no draft schema to promote")

                session.execute(
                    update(ReportSchemaRow)
                    .where(ReportSchemaRow.is_live.is_(True))
                    .values(is_live=False)
                )
                session.execute(
                    update(ReportSchemaRow)
                    .where(ReportSchemaRow.id == draft_id)
                    .values(is_live=True, updated_by=updated_by or '', updated_at=utcnow())
                )
                live = self._to_schema(session.get(ReportSchemaRow, draft_id))
        except SQLAlchemyError as e:
            logger.error(f"Failed to promote draft schema: {e}")
            raise StorageError("failed to promote draft schema") from e

        logger.info(f"Draft schema {draft_id} promoted to live by {updated_by or 'unknown'}")

        try:
            self.save_draft(live, updated_by)
        except FirewatchError as e:
            logger.error(f"Schema promoted but reseeding the draft failed: {e}")
        return live

    def revert_draft_to_live(self, updated_by: str) -> ReportSchema:
        """Discard unpublished edits by copying live over the draft"""
        return self.save_draft(self.live_schema(), updated_by)

    def seed_default(self) -> bool:
        """Insert the built-in schema as live and draft, only into an empty table"""
        schema = default_salute_schema()
        now = utcnow()
        payload = dataclasses.replace(schema, updated_at=now, updated_by=SEED_USER).to_json()

        try:
            with self.session_factory.begin() as session:
                count = session.scalar(select(func.count()).select_from(ReportSchemaRow))
                if count:
                    return False
                session.add(ReportSchemaRow(version=schema.schema_version, is_live=True,
                                            schema=payload, updated_at=now, updated_by=SEED_USER))
                session.flush()
                session.add(ReportSchemaRow(version=schema.schema_version, is_live=False,
                                            schema=payload, updated_at=now, updated_by=SEED_USER))
        except SQLAlchemyError as e:
            logger.error(f"Failed to seed default schema: {e}")
            raise StorageError("failed to seed default schema") from e

        logger.info("Seeded default SALUTE schema")
        return True
