"""Named event types per project."""

from uuid import UUID

from mailflow.db.helpers import DatabaseError, fetch_one
from mailflow.models.domain.automation_domain import Event

EVENT_COLUMNS = "id, project_id, name, campaign_id, template_id"


class EventRepository:
    async def find_by_name(self, project_id: UUID, name: str) -> Event | None:
        query = f"SELECT {EVENT_COLUMNS} FROM events WHERE project_id = %s AND name = %s"
        row = await fetch_one(query, (project_id, name))
        return Event.model_validate(row) if row else None

    async def create(
        self,
        project_id: UUID,
        name: str,
        campaign_id: UUID | None = None,
        template_id: UUID | None = None,
    ) -> Event:
        # Concurrent first occurrences of a name resolve to the same row
        query = f"""
            INSERT INTO events (project_id, name, campaign_id, template_id)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (project_id, name) DO UPDATE SET name = EXCLUDED.name
            RETURNING {EVENT_COLUMNS}
        """
        row = await fetch_one(query, (project_id, name, campaign_id, template_id))
        if not row:
            raise DatabaseError("Failed to create event", operation="create_event")
        return Event.model_validate(row)


event_repository = EventRepository()
