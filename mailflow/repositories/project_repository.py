"""Projects, read through the Redis cache."""

from uuid import UUID

from mailflow.db.helpers import fetch_one
from mailflow.models.domain.automation_domain import Project
from mailflow.services import keys
from mailflow.services.cache import ReadThroughCache, read_through_cache

PROJECT_COLUMNS = "id, name, email, verified, from_name, secret_key, public_key"


class ProjectRepository:
    def __init__(self, cache: ReadThroughCache | None = None):
        self.cache = cache or read_through_cache

    async def get(self, project_id: UUID) -> Project | None:
        async def load() -> Project | None:
            row = await fetch_one(
                f"SELECT {PROJECT_COLUMNS} FROM projects WHERE id = %s", (project_id,)
            )
            return Project.model_validate(row) if row else None

        return await self.cache.wrap(keys.project_cache(project_id), load, Project)

    async def find_by_key(self, key: str) -> Project | None:
        """Look a project up by its secret (``sk_``) or public key."""
        column = "secret_key" if key.startswith("sk_") else "public_key"

        async def load() -> Project | None:
            row = await fetch_one(
                f"SELECT {PROJECT_COLUMNS} FROM projects WHERE {column} = %s", (key,)
            )
            return Project.model_validate(row) if row else None

        return await self.cache.wrap(keys.project_key_cache(key), load, Project)


project_repository = ProjectRepository()
