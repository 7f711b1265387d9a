"""Contacts within a project."""

from typing import Any
from uuid import UUID

from psycopg.types.json import Jsonb

from mailflow.db.helpers import DatabaseError, fetch_one
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import Contact

logger = get_logger(__name__)

CONTACT_COLUMNS = "id, project_id, email, subscribed, metadata"


class ContactRepository:
    async def get(self, contact_id: UUID) -> Contact | None:
        row = await fetch_one(f"SELECT {CONTACT_COLUMNS} FROM contacts WHERE id = %s", (contact_id,))
        return Contact.model_validate(row) if row else None

    async def find_by_email(self, project_id: UUID, email: str) -> Contact | None:
        query = f"SELECT {CONTACT_COLUMNS} FROM contacts WHERE project_id = %s AND email = %s"
        row = await fetch_one(query, (project_id, email))
        return Contact.model_validate(row) if row else None

    async def create(
        self,
        project_id: UUID,
        email: str,
        subscribed: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> Contact:
        query = f"""
            INSERT INTO contacts (project_id, email, subscribed, metadata)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (project_id, email) DO UPDATE SET updated_at = NOW()
            RETURNING {CONTACT_COLUMNS}
        """
        row = await fetch_one(query, (project_id, email, subscribed, Jsonb(metadata or {})))
        if not row:
            raise DatabaseError("Failed to create contact", operation="create_contact")

        logger.info("Contact created", project_id=str(project_id), contact_id=str(row["id"]))
        return Contact.model_validate(row)

    async def update_subscribed(self, contact_id: UUID, subscribed: bool) -> Contact | None:
        query = f"""
            UPDATE contacts SET subscribed = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {CONTACT_COLUMNS}
        """
        row = await fetch_one(query, (subscribed, contact_id))
        return Contact.model_validate(row) if row else None

    async def update_metadata(self, contact_id: UUID, values: dict[str, Any]) -> Contact | None:
        """Shallow-merge ``values`` into the stored metadata."""
        query = f"""
            UPDATE contacts SET metadata = metadata || %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {CONTACT_COLUMNS}
        """
        row = await fetch_one(query, (Jsonb(values), contact_id))
        return Contact.model_validate(row) if row else None


contact_repository = ContactRepository()
