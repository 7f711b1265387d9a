"""Campaigns and their recipient lists."""

from datetime import datetime
from uuid import UUID

from mailflow.db.helpers import fetch_all, fetch_one
from mailflow.models.domain.automation_domain import Campaign

CAMPAIGN_COLUMNS = (
    "id, project_id, subject, body, style, sender_email, sender_name, status, delivered_at"
)


class CampaignRepository:
    async def get(self, campaign_id: UUID) -> Campaign | None:
        row = await fetch_one(
            f"SELECT {CAMPAIGN_COLUMNS} FROM campaigns WHERE id = %s", (campaign_id,)
        )
        return Campaign.model_validate(row) if row else None

    async def recipient_ids(self, campaign_id: UUID) -> list[UUID]:
        """Recipients in the order they were added to the campaign."""
        query = """
            SELECT contact_id FROM campaign_recipients
            WHERE campaign_id = %s
            ORDER BY position
        """
        rows = await fetch_all(query, (campaign_id,))
        return [row["contact_id"] for row in rows]

    async def mark_delivered(self, campaign_id: UUID, delivered_at: datetime) -> Campaign | None:
        query = f"""
            UPDATE campaigns SET status = 'DELIVERED', delivered_at = %s
            WHERE id = %s
            RETURNING {CAMPAIGN_COLUMNS}
        """
        row = await fetch_one(query, (delivered_at, campaign_id))
        return Campaign.model_validate(row) if row else None


campaign_repository = CampaignRepository()
