"""
verify.py
---------
Purpose:
    Bearer authentication for the public API and the task trigger.

Notes:
    - Project keys: secret keys start with ``sk_``; anything else is a public key.
    - POST /tasks is called by the external clock with TASKS_API_KEY.
"""

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mailflow.config import settings
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import Project
from mailflow.repositories.project_repository import project_repository

logger = get_logger(__name__)

SECRET_KEY_PREFIX = "sk_"

_security = HTTPBearer()
_optional_security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def project_key_dependency(
    credentials: HTTPAuthorizationCredentials = Depends(_security),
) -> Project:
    """Resolve the calling project from a public or secret key."""
    project = await project_repository.find_by_key(credentials.credentials)
    if project is None:
        raise _unauthorized("Incorrect Bearer token specified")
    return project


async def secret_key_dependency(
    credentials: HTTPAuthorizationCredentials = Depends(_security),
) -> Project:
    """Like project_key_dependency, but only secret keys are accepted."""
    if not credentials.credentials.startswith(SECRET_KEY_PREFIX):
        raise _unauthorized("This endpoint requires a secret key")

    project = await project_repository.find_by_key(credentials.credentials)
    if project is None:
        raise _unauthorized("Incorrect Bearer token specified")
    return project


def tasks_key_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_optional_security),
) -> None:
    """Gate POST /tasks. Without TASKS_API_KEY configured the endpoint is open."""
    expected = settings.TASKS_API_KEY
    if not expected:
        return

    if credentials is None or not hmac.compare_digest(credentials.credentials, expected):
        logger.warning("Rejected task trigger with invalid key")
        raise _unauthorized("Invalid task trigger key")
