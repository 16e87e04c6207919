"""create_routing_tables

Revision ID: routing_001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "routing_001"
down_revision = None
branch_labels = ("routing",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS identity_links (
            id TEXT PRIMARY KEY,
            organization_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            doc JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_identity_links_org
        ON identity_links (organization_id, created_at)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS threads (
            id TEXT PRIMARY KEY,
            organization_id TEXT,
            property_id TEXT,
            project_id TEXT,
            doc JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_threads_org_updated
        ON threads (organization_id, updated_at DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_threads_participants
        ON threads USING GIN ((doc->'participants'))
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_threads_property ON threads (property_id)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_threads_project ON threads (project_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS thread_messages (
            thread_id TEXT NOT NULL REFERENCES threads (id) ON DELETE CASCADE,
            id TEXT NOT NULL,
            doc JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (thread_id, id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS routing_decisions (
            id TEXT PRIMARY KEY,
            organization_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            sender_identifier TEXT NOT NULL DEFAULT '',
            thread_id TEXT,
            method TEXT NOT NULL
                CHECK (method IN ('identity', 'metadata', 'context', 'created', 'manual')),
            confidence DOUBLE PRECISION NOT NULL CHECK (confidence BETWEEN 0 AND 1),
            decided_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            doc JSONB NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_routing_decisions_org
        ON routing_decisions (organization_id, created_at DESC, id DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_routing_decisions_sender
        ON routing_decisions (organization_id, sender_identifier, created_at DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_routing_decisions_thread
        ON routing_decisions (organization_id, thread_id, created_at DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS pending_retry (
            id TEXT PRIMARY KEY,
            organization_id TEXT NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            permanently_failed BOOLEAN NOT NULL DEFAULT false,
            next_eligible_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            doc JSONB NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_pending_retry_active
        ON pending_retry (next_eligible_at)
        WHERE NOT permanently_failed
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS dead_letters (
            id TEXT PRIMARY KEY,
            organization_id TEXT NOT NULL,
            failed_at TIMESTAMPTZ NOT NULL,
            doc JSONB NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_dead_letters_org_failed
        ON dead_letters (organization_id, failed_at DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS pending_routing (
            id TEXT PRIMARY KEY,
            organization_id TEXT NOT NULL,
            assigned_thread_id TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            doc JSONB NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_pending_routing_open
        ON pending_routing (organization_id, created_at)
        WHERE assigned_thread_id IS NULL
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS pending_routing")
    op.execute("DROP TABLE IF EXISTS dead_letters")
    op.execute("DROP TABLE IF EXISTS pending_retry")
    op.execute("DROP TABLE IF EXISTS routing_decisions")
    op.execute("DROP TABLE IF EXISTS thread_messages")
    op.execute("DROP TABLE IF EXISTS threads")
    op.execute("DROP TABLE IF EXISTS identity_links")
