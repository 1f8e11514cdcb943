"""Ledger, truth reconciliation and activity tables.

Creates users, xp_events, build_events, audit_events, phone_daily_logs,
usage_violations, daily_truth_checks, phone_free_blocks, urges and
hp_adjustments.

Revision ID: 001_ledger_tables
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_ledger_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- User aggregate ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id VARCHAR(64) PRIMARY KEY,
            timezone VARCHAR(64),
            total_xp BIGINT NOT NULL DEFAULT 0,
            current_level INTEGER NOT NULL DEFAULT 1,
            current_streak INTEGER NOT NULL DEFAULT 0,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            last_streak_date DATE,
            current_hp INTEGER NOT NULL DEFAULT 100,
            total_build_points BIGINT NOT NULL DEFAULT 0,
            settings JSONB,
            settings_version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_users_hp_bounds CHECK (current_hp >= 0 AND current_hp <= 100)
        )
    """)

    # --- XP Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS xp_events (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(32) NOT NULL,
            delta INTEGER NOT NULL,
            related_entity_type VARCHAR(32),
            related_entity_id VARCHAR(64),
            description VARCHAR(256),
            dedupe_key VARCHAR(256) UNIQUE,
            metadata JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_xp_events_user_created
        ON xp_events(user_id, created_at)
    """)

    # --- Build Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS build_events (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(32) NOT NULL,
            delta INTEGER NOT NULL,
            related_entity_type VARCHAR(32),
            related_entity_id VARCHAR(64),
            description VARCHAR(256),
            dedupe_key VARCHAR(256) UNIQUE,
            metadata JSONB,
            blueprint_id VARCHAR(64) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_build_events_user_created
        ON build_events(user_id, created_at)
    """)

    # --- Audit Log ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS audit_events (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(48) NOT NULL,
            description VARCHAR(512),
            entity_type VARCHAR(32),
            entity_id VARCHAR(64),
            metadata JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_audit_events_user_created
        ON audit_events(user_id, created_at)
    """)

    # --- Self-reported usage ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS phone_daily_logs (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            date DATE NOT NULL,
            social_media_min INTEGER NOT NULL,
            limit_min INTEGER NOT NULL,
            overage_min INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE(user_id, date)
        )
    """)

    # --- Truth reconciliation ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS usage_violations (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            date DATE NOT NULL,
            source VARCHAR(32) NOT NULL,
            policy_version VARCHAR(16) NOT NULL,
            threshold_minutes INTEGER NOT NULL,
            reported_minutes INTEGER NOT NULL,
            verified_minutes INTEGER NOT NULL,
            delta_minutes INTEGER NOT NULL,
            penalty_xp INTEGER NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE(user_id, date, source, policy_version)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS daily_truth_checks (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            date DATE NOT NULL,
            reported_minutes INTEGER,
            verified_minutes INTEGER,
            delta_minutes INTEGER,
            status VARCHAR(32) NOT NULL,
            source VARCHAR(32) NOT NULL,
            violation_id VARCHAR(36) REFERENCES usage_violations(id),
            computed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE(user_id, date)
        )
    """)

    # --- Activity ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS phone_free_blocks (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ,
            planned_duration_min INTEGER NOT NULL,
            status VARCHAR(16) NOT NULL,
            verified BOOLEAN NOT NULL DEFAULT false,
            is_boss_block BOOLEAN NOT NULL DEFAULT false,
            awarded_min INTEGER NOT NULL DEFAULT 0,
            xp_earned INTEGER NOT NULL DEFAULT 0,
            build_points INTEGER NOT NULL DEFAULT 0
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_phone_free_blocks_one_active
        ON phone_free_blocks(user_id) WHERE status = 'ACTIVE'
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS urges (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            trigger VARCHAR(128),
            completed_micro_task BOOLEAN NOT NULL DEFAULT false,
            during_block_id VARCHAR(36),
            xp_earned INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS hp_adjustments (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            date DATE NOT NULL,
            source VARCHAR(32) NOT NULL,
            requested_delta INTEGER NOT NULL,
            applied_delta INTEGER NOT NULL,
            hp_after INTEGER NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE(user_id, date, source)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS hp_adjustments CASCADE")
    op.execute("DROP TABLE IF EXISTS urges CASCADE")
    op.execute("DROP TABLE IF EXISTS phone_free_blocks CASCADE")
    op.execute("DROP TABLE IF EXISTS daily_truth_checks CASCADE")
    op.execute("DROP TABLE IF EXISTS usage_violations CASCADE")
    op.execute("DROP TABLE IF EXISTS phone_daily_logs CASCADE")
    op.execute("DROP TABLE IF EXISTS audit_events CASCADE")
    op.execute("DROP TABLE IF EXISTS build_events CASCADE")
    op.execute("DROP TABLE IF EXISTS xp_events CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
