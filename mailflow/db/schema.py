"""
Table definitions for the automation engine.

Applied at startup when AUTO_APPLY_SCHEMA is enabled; every statement is
idempotent so the API and the worker can both run it.
"""

from mailflow.db.helpers import execute_transaction
from mailflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS projects (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        name TEXT NOT NULL,
        email TEXT,
        verified BOOLEAN NOT NULL DEFAULT false,
        from_name TEXT,
        secret_key TEXT NOT NULL UNIQUE,
        public_key TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        subscribed BOOLEAN NOT NULL DEFAULT true,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (project_id, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS templates (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        subject TEXT NOT NULL,
        body TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'MARKETING',
        style TEXT NOT NULL DEFAULT 'PLUNK',
        sender_email TEXT,
        sender_name TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS campaigns (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        subject TEXT NOT NULL,
        body TEXT NOT NULL,
        style TEXT NOT NULL DEFAULT 'PLUNK',
        sender_email TEXT,
        sender_name TEXT,
        status TEXT NOT NULL DEFAULT 'DRAFT',
        delivered_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS campaign_recipients (
        campaign_id UUID NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
        contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
        position SERIAL,
        PRIMARY KEY (campaign_id, contact_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        campaign_id UUID REFERENCES campaigns(id) ON DELETE CASCADE,
        template_id UUID REFERENCES templates(id) ON DELETE CASCADE,
        UNIQUE (project_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automations (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        run_once BOOLEAN NOT NULL DEFAULT false,
        delay_minutes INTEGER NOT NULL DEFAULT 0 CHECK (delay_minutes >= 0),
        template_id UUID REFERENCES templates(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_required_events (
        automation_id UUID NOT NULL REFERENCES automations(id) ON DELETE CASCADE,
        event_id UUID NOT NULL REFERENCES events(id) ON DELETE CASCADE,
        PRIMARY KEY (automation_id, event_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_excluded_events (
        automation_id UUID NOT NULL REFERENCES automations(id) ON DELETE CASCADE,
        event_id UUID NOT NULL REFERENCES events(id) ON DELETE CASCADE,
        PRIMARY KEY (automation_id, event_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS triggers (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
        event_id UUID REFERENCES events(id) ON DELETE CASCADE,
        automation_id UUID REFERENCES automations(id) ON DELETE CASCADE,
        round_key TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CHECK (event_id IS NOT NULL OR automation_id IS NOT NULL)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS triggers_contact_created_idx
        ON triggers (contact_id, created_at)
    """,
    # One completion marker per (contact, automation, round)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS triggers_completion_round_uniq
        ON triggers (contact_id, automation_id, round_key)
        WHERE automation_id IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
        automation_id UUID REFERENCES automations(id) ON DELETE CASCADE,
        campaign_id UUID REFERENCES campaigns(id) ON DELETE CASCADE,
        due_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CHECK ((automation_id IS NULL) <> (campaign_id IS NULL))
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS tasks_due_at_idx ON tasks (due_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS emails (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        message_id TEXT NOT NULL UNIQUE,
        contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
        automation_id UUID REFERENCES automations(id) ON DELETE SET NULL,
        campaign_id UUID REFERENCES campaigns(id) ON DELETE SET NULL,
        status TEXT NOT NULL DEFAULT 'SENDING',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
]


async def apply_schema() -> None:
    """Create tables and indexes that do not exist yet."""
    await execute_transaction([(statement, ()) for statement in SCHEMA_STATEMENTS])

    logger.info("Database schema applied", statement_count=len(SCHEMA_STATEMENTS))
