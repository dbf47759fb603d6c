"""create_core_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS event_series (
            id SERIAL PRIMARY KEY,
            "type" TEXT NOT NULL,
            discord_category_id BIGINT,
            swissrpg_event_series_id TEXT UNIQUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS event (
            id SERIAL PRIMARY KEY,
            event_series_id INTEGER NOT NULL REFERENCES event_series (id),
            start_time TIMESTAMPTZ NOT NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            is_online BOOLEAN NOT NULL DEFAULT false,
            discord_category_id BIGINT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_event_series_start
        ON event (event_series_id, start_time DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS meetup_event (
            id SERIAL PRIMARY KEY,
            event_id INTEGER NOT NULL UNIQUE REFERENCES event (id) ON DELETE CASCADE,
            meetup_id TEXT NOT NULL UNIQUE,
            urlname TEXT NOT NULL,
            url TEXT NOT NULL
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS swissrpg_event (
            id SERIAL PRIMARY KEY,
            event_id INTEGER NOT NULL UNIQUE REFERENCES event (id) ON DELETE CASCADE,
            swissrpg_id TEXT NOT NULL UNIQUE,
            url TEXT NOT NULL
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS member (
            id SERIAL PRIMARY KEY,
            discord_id BIGINT UNIQUE,
            discord_nick TEXT,
            meetup_id BIGINT UNIQUE,
            meetup_name TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS event_host (
            event_id INTEGER NOT NULL REFERENCES event (id) ON DELETE CASCADE,
            member_id INTEGER NOT NULL REFERENCES member (id),
            PRIMARY KEY (event_id, member_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS event_participant (
            event_id INTEGER NOT NULL REFERENCES event (id) ON DELETE CASCADE,
            member_id INTEGER NOT NULL REFERENCES member (id),
            PRIMARY KEY (event_id, member_id)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS event_participant")
    op.execute("DROP TABLE IF EXISTS event_host")
    op.execute("DROP TABLE IF EXISTS member")
    op.execute("DROP TABLE IF EXISTS swissrpg_event")
    op.execute("DROP TABLE IF EXISTS meetup_event")
    op.execute("DROP INDEX IF EXISTS idx_event_series_start")
    op.execute("DROP TABLE IF EXISTS event")
    op.execute("DROP TABLE IF EXISTS event_series")
