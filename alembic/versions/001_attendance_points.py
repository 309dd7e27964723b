"""001 – Attendance points schema: points, expiration runs, notifications, audit.

Revision ID: 001_attendance_points
Revises:
Create Date: 2026-10-18 09:00:00.000000+00:00
"""

from alembic import op

# Revision identifiers
revision = "001_attendance_points"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    (
        "violation_type",
        [
            "whole_day_absence",
            "half_day_absence",
            "tardy",
            "undertime",
            "undertime_more_than_hour",
        ],
    ),
    ("expiration_kind", ["none", "sro", "gbro"]),
    (
        "notification_type",
        ["info", "action_required", "approval", "reminder", "alert"],
    ),
]


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── Enum types ────────────────────────────────────────────────────────
    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. attendance_points ──────────────────────────────────────────────
    op.execute("""
        CREATE TABLE attendance_points (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id            UUID NOT NULL,
            shift_date         DATE NOT NULL,
            point_type         violation_type NOT NULL,
            points             NUMERIC(5, 2) NOT NULL CHECK (points > 0),
            eligible_for_gbro  BOOLEAN DEFAULT TRUE,
            is_advised         BOOLEAN DEFAULT FALSE,
            is_manual          BOOLEAN DEFAULT FALSE,
            violation_details  TEXT,
            tardy_minutes      INTEGER,
            undertime_minutes  INTEGER,
            notes              TEXT,
            created_by         UUID,
            is_excused         BOOLEAN DEFAULT FALSE,
            excused_at         TIMESTAMPTZ,
            excused_by         UUID,
            excuse_reason      TEXT,
            expires_at         TIMESTAMPTZ,
            gbro_expires_at    DATE,
            gbro_applied_at    TIMESTAMPTZ,
            gbro_batch_id      VARCHAR(50),
            is_expired         BOOLEAN DEFAULT FALSE,
            expired_at         TIMESTAMPTZ,
            expiration_type    expiration_kind NOT NULL DEFAULT 'sro',
            created_at         TIMESTAMPTZ DEFAULT NOW(),
            updated_at         TIMESTAMPTZ DEFAULT NOW(),
            CHECK (NOT (is_excused AND is_expired))
        )
    """)
    op.execute("""
        CREATE INDEX ix_attendance_points_user_shift
            ON attendance_points(user_id, shift_date)
    """)
    op.execute("""
        CREATE INDEX ix_attendance_points_state
            ON attendance_points(is_expired, is_excused)
    """)
    op.execute("""
        CREATE INDEX idx_points_sro_due
            ON attendance_points(expires_at)
            WHERE is_expired = FALSE AND is_excused = FALSE
    """)
    op.execute("""
        CREATE INDEX idx_points_gbro_pending
            ON attendance_points(user_id)
            WHERE eligible_for_gbro = TRUE AND is_expired = FALSE
              AND is_excused = FALSE AND gbro_applied_at IS NULL
    """)

    # ── 2. point_expiration_runs ──────────────────────────────────────────
    op.execute("""
        CREATE TABLE point_expiration_runs (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            batch_id      VARCHAR(50) NOT NULL,
            kind          expiration_kind NOT NULL,
            run_date      DATE NOT NULL,
            started_at    TIMESTAMPTZ NOT NULL,
            finished_at   TIMESTAMPTZ,
            expired_count INTEGER DEFAULT 0,
            forced        BOOLEAN DEFAULT FALSE
        )
    """)
    op.execute("""
        CREATE INDEX ix_point_expiration_runs_kind_date
            ON point_expiration_runs(kind, run_date)
    """)

    # ── 3. notifications ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE notifications (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            recipient_id UUID NOT NULL,
            type         notification_type DEFAULT 'info',
            title        VARCHAR(200) NOT NULL,
            message      TEXT NOT NULL,
            entity_type  VARCHAR(50),
            entity_id    UUID,
            is_read      BOOLEAN DEFAULT FALSE,
            read_at      TIMESTAMPTZ,
            created_at   TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX ix_notifications_recipient_read
            ON notifications(recipient_id, is_read)
    """)

    # ── 4. audit_trail ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            actor_id    UUID,
            action      VARCHAR(50) NOT NULL,
            entity_type VARCHAR(50) NOT NULL,
            entity_id   UUID NOT NULL,
            old_values  JSONB,
            new_values  JSONB,
            user_agent  TEXT,
            created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_audit_trail_entity ON audit_trail(entity_type, entity_id)")
    op.execute("CREATE INDEX ix_audit_trail_actor_id ON audit_trail(actor_id)")
    op.execute("CREATE INDEX ix_audit_trail_action ON audit_trail(action)")


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    tables = [
        "audit_trail",
        "notifications",
        "point_expiration_runs",
        "attendance_points",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)
