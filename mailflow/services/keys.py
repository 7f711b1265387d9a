"""Redis key layout. Locks, cache entries and ledger entries never share a prefix."""

from uuid import UUID


def task_lock(task_id: UUID | str) -> str:
    return f"lock:{task_id}"


def project_cache(project_id: UUID | str) -> str:
    return f"project:id:{project_id}"


def project_key_cache(key: str) -> str:
    return f"project:key:{key}"


def send_ledger(idempotency_key: str) -> str:
    return f"sent:{idempotency_key}"
