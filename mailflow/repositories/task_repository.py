"""Durable queue of deferred sends."""

from datetime import datetime
from uuid import UUID

from mailflow.db.helpers import (
    DatabaseError,
    execute_many,
    execute_query,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import NewTask, Task

logger = get_logger(__name__)

TASK_COLUMNS = "id, contact_id, automation_id, campaign_id, due_at"


class TaskRepository:
    async def create(
        self,
        contact_id: UUID,
        due_at: datetime,
        automation_id: UUID | None = None,
        campaign_id: UUID | None = None,
    ) -> Task:
        if (automation_id is None) == (campaign_id is None):
            raise ValueError("A task belongs to exactly one automation or campaign")

        query = f"""
            INSERT INTO tasks (contact_id, automation_id, campaign_id, due_at)
            VALUES (%s, %s, %s, %s)
            RETURNING {TASK_COLUMNS}
        """
        row = await fetch_one(query, (contact_id, automation_id, campaign_id, due_at))
        if not row:
            raise DatabaseError("Failed to create task", operation="create_task")
        return Task.model_validate(row)

    async def create_many(self, tasks: list[NewTask]) -> int:
        query = """
            INSERT INTO tasks (contact_id, automation_id, campaign_id, due_at)
            VALUES (%s, %s, %s, %s)
        """
        created = await execute_many(
            query, [(t.contact_id, t.automation_id, t.campaign_id, t.due_at) for t in tasks]
        )
        logger.info("Tasks created", count=created)
        return created

    async def exists(self, task_id: UUID) -> bool:
        return bool(await fetch_val("SELECT EXISTS(SELECT 1 FROM tasks WHERE id = %s)", (task_id,)))

    async def delete(self, task_id: UUID) -> bool:
        return await execute_query("DELETE FROM tasks WHERE id = %s", (task_id,)) > 0

    async def delete_for_project(self, project_id: UUID) -> int:
        """Remove every pending task addressed to a contact of ``project_id``."""
        query = """
            DELETE FROM tasks
            USING contacts
            WHERE tasks.contact_id = contacts.id AND contacts.project_id = %s
        """
        return await execute_query(query, (project_id,))

    @with_db_retry()
    async def find_due(self, now: datetime) -> list[Task]:
        query = f"""
            SELECT {TASK_COLUMNS} FROM tasks
            WHERE due_at <= %s
            ORDER BY due_at, id
        """
        rows = await fetch_all(query, (now,))
        return [Task.model_validate(row) for row in rows]


task_repository = TaskRepository()
