"""Sent message records."""

from uuid import UUID

from mailflow.db.helpers import DatabaseError, fetch_one
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import Email

logger = get_logger(__name__)


class EmailRepository:
    async def create(
        self,
        message_id: str,
        contact_id: UUID,
        automation_id: UUID | None = None,
        campaign_id: UUID | None = None,
    ) -> Email:
        query = """
            INSERT INTO emails (message_id, contact_id, automation_id, campaign_id)
            VALUES (%s, %s, %s, %s)
            RETURNING id, message_id, contact_id, automation_id, campaign_id, created_at
        """
        row = await fetch_one(query, (message_id, contact_id, automation_id, campaign_id))
        if not row:
            raise DatabaseError("Failed to record email", operation="create_email")

        logger.info(
            "Email recorded",
            message_id=message_id,
            contact_id=str(contact_id),
            automation_id=str(automation_id) if automation_id else None,
            campaign_id=str(campaign_id) if campaign_id else None,
        )
        return Email.model_validate(row)


email_repository = EmailRepository()
