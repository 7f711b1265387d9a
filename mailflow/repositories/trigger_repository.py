"""
Append-only contact history: event triggers and automation completion markers.

Rows are never updated. Completion markers are written with a conditional
insert so two handlers evaluating the same round cannot both record it.
"""

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from mailflow.db.helpers import DatabaseError, fetch_all, fetch_one, fetch_val, with_db_retry
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import CompletionMarker, Trigger

logger = get_logger(__name__)

TRIGGER_COLUMNS = "id, contact_id, event_id, automation_id, round_key, created_at"


class TriggerRepository:
    async def create_event_trigger(
        self, contact_id: UUID, event_id: UUID, created_at: datetime | None = None
    ) -> Trigger:
        query = f"""
            INSERT INTO triggers (contact_id, event_id, created_at)
            VALUES (%s, %s, COALESCE(%s, NOW()))
            RETURNING {TRIGGER_COLUMNS}
        """
        row = await fetch_one(query, (contact_id, event_id, created_at))
        if not row:
            raise DatabaseError("Failed to create event trigger", operation="create_event_trigger")
        return Trigger.model_validate(row)

    async def create_completion(self, marker: CompletionMarker) -> Trigger | None:
        """
        Record a completion marker for one round.

        Returns None when a marker for the same (contact, automation, round)
        already exists, i.e. another handler completed this round first.
        """
        query = f"""
            INSERT INTO triggers (contact_id, automation_id, round_key, created_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (contact_id, automation_id, round_key)
                WHERE automation_id IS NOT NULL
            DO NOTHING
            RETURNING {TRIGGER_COLUMNS}
        """
        row = await fetch_one(
            query, (marker.contact_id, marker.automation_id, marker.round_key, marker.created_at)
        )
        if not row:
            logger.info(
                "Completion already recorded for round",
                contact_id=str(marker.contact_id),
                automation_id=str(marker.automation_id),
                round_key=marker.round_key,
            )
            return None
        return Trigger.model_validate(row)

    @with_db_retry()
    async def find_for_contact(
        self,
        contact_id: UUID,
        event_ids: Iterable[UUID] | None = None,
        automation_ids: Iterable[UUID] | None = None,
    ) -> list[Trigger]:
        """
        History for one contact in created_at order.

        When ``event_ids`` or ``automation_ids`` are given, only event triggers
        for those events and completion markers for those automations are
        returned; the narrowing happens in the query.
        """
        if event_ids is None and automation_ids is None:
            query = f"""
                SELECT {TRIGGER_COLUMNS} FROM triggers
                WHERE contact_id = %s
                ORDER BY created_at, id
            """
            rows = await fetch_all(query, (contact_id,))
        else:
            query = f"""
                SELECT {TRIGGER_COLUMNS} FROM triggers
                WHERE contact_id = %s
                  AND (event_id = ANY(%s) OR automation_id = ANY(%s))
                ORDER BY created_at, id
            """
            rows = await fetch_all(
                query, (contact_id, list(event_ids or []), list(automation_ids or []))
            )
        return [Trigger.model_validate(row) for row in rows]

    async def has_any_event(self, contact_id: UUID, event_ids: Iterable[UUID]) -> bool:
        ids = list(event_ids)
        if not ids:
            return False
        query = "SELECT EXISTS (SELECT 1 FROM triggers WHERE contact_id = %s AND event_id = ANY(%s))"
        return bool(await fetch_val(query, (contact_id, ids)))


trigger_repository = TriggerRepository()
