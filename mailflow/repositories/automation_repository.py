"""Read-only access to automation definitions with their template joined in."""

from uuid import UUID

from mailflow.db.helpers import fetch_all, fetch_one
from mailflow.models.domain.automation_domain import Automation, Template

AUTOMATION_SELECT = """
    SELECT
        a.id, a.project_id, a.name, a.run_once, a.delay_minutes,
        ARRAY(
            SELECT r.event_id FROM automation_required_events r WHERE r.automation_id = a.id
        ) AS required_event_ids,
        ARRAY(
            SELECT x.event_id FROM automation_excluded_events x WHERE x.automation_id = a.id
        ) AS excluded_event_ids,
        t.id AS template_id,
        t.subject AS template_subject,
        t.body AS template_body,
        t.type AS template_type,
        t.style AS template_style,
        t.sender_email AS template_sender_email,
        t.sender_name AS template_sender_name
    FROM automations a
    LEFT JOIN templates t ON t.id = a.template_id
"""


def _row_to_automation(row: dict) -> Automation:
    template = None
    if row.get("template_id"):
        template = Template(
            id=row["template_id"],
            project_id=row["project_id"],
            subject=row["template_subject"],
            body=row["template_body"],
            type=row["template_type"],
            style=row["template_style"],
            sender_email=row.get("template_sender_email"),
            sender_name=row.get("template_sender_name"),
        )

    return Automation(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        required_event_ids=frozenset(row.get("required_event_ids") or []),
        excluded_event_ids=frozenset(row.get("excluded_event_ids") or []),
        run_once=row["run_once"],
        delay_minutes=row["delay_minutes"],
        template=template,
    )


class AutomationRepository:
    async def find_requiring(self, event_id: UUID) -> list[Automation]:
        """Automations that list ``event_id`` among their required events."""
        query = f"""
            {AUTOMATION_SELECT}
            WHERE EXISTS (
                SELECT 1 FROM automation_required_events r
                WHERE r.automation_id = a.id AND r.event_id = %s
            )
            ORDER BY a.id
        """
        rows = await fetch_all(query, (event_id,))
        return [_row_to_automation(row) for row in rows]

    async def get(self, automation_id: UUID) -> Automation | None:
        row = await fetch_one(f"{AUTOMATION_SELECT} WHERE a.id = %s", (automation_id,))
        return _row_to_automation(row) if row else None


automation_repository = AutomationRepository()
