"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

_TOUCHED_TABLES = ("users", "todos", "schemas", "rate_limits")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(50), nullable=False, server_default="user"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "todos",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("priority", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_todos_user_id", "todos", ["user_id"])
    op.create_index("ix_todos_completed", "todos", ["completed"])
    op.create_index("ix_todos_due_date", "todos", ["due_date"])

    op.create_table(
        "request_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.String(64), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("method", sa.String(10), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("ip_address", sa.String(50), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_time", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("request_body", _JSON, nullable=True),
        sa.Column("response_body", _JSON, nullable=True),
        sa.Column("request_fingerprint", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_request_logs_request_id", "request_logs", ["request_id"])
    op.create_index("ix_request_logs_endpoint", "request_logs", ["endpoint"])
    op.create_index("ix_request_logs_user_id", "request_logs", ["user_id"])
    op.create_index("ix_request_logs_status_code", "request_logs", ["status_code"])
    op.create_index("ix_request_logs_created_at", "request_logs", ["created_at"])

    op.create_table(
        "rate_limits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        # The limiter's upsert targets this constraint.
        sa.UniqueConstraint(
            "identifier", "endpoint", "window_start", "window_end", name="uq_rate_limits_window"
        ),
    )
    op.create_index("ix_rate_limits_identifier", "rate_limits", ["identifier"])
    op.create_index("ix_rate_limits_window_start", "rate_limits", ["window_start"])

    op.create_table(
        "schemas",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("model_name", sa.String(255), nullable=False),
        sa.Column("schema_definition", _JSON, nullable=False),
        sa.Column("table_created", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("endpoints_created", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_schemas_model_name", "schemas", ["model_name"], unique=True)

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key_hash", sa.String(255), nullable=False),
        sa.Column("key_prefix", sa.String(20), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])

    if op.get_bind().dialect.name == "postgresql":
        _create_postgres_objects()


def _create_postgres_objects() -> None:
    # Keep updated_at current even for writes that bypass the ORM.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = CURRENT_TIMESTAMP;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    for table in _TOUCHED_TABLES:
        op.execute(
            f"CREATE TRIGGER update_{table}_updated_at BEFORE UPDATE ON {table} "
            "FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()"
        )

    # Read-only analytics views for operators with direct database access.
    op.execute(
        """
        CREATE OR REPLACE VIEW v_api_usage_stats AS
        SELECT
            endpoint,
            method,
            COUNT(*) AS total_requests,
            COUNT(DISTINCT user_id) AS unique_users,
            AVG(response_time)::numeric(10,2) AS avg_response_time_ms,
            MAX(response_time) AS max_response_time_ms,
            MIN(response_time) AS min_response_time_ms,
            COUNT(CASE WHEN status_code >= 200 AND status_code < 300 THEN 1 END) AS success_count,
            COUNT(CASE WHEN status_code >= 400 THEN 1 END) AS error_count,
            (COUNT(CASE WHEN status_code >= 200 AND status_code < 300 THEN 1 END)::float
             / NULLIF(COUNT(*), 0) * 100)::numeric(5,2) AS success_rate_percent
        FROM request_logs
        WHERE created_at > NOW() - INTERVAL '24 hours'
        GROUP BY endpoint, method
        ORDER BY total_requests DESC
        """
    )
    op.execute(
        """
        CREATE OR REPLACE VIEW v_recent_errors AS
        SELECT id, request_id, endpoint, method, status_code, error_message, user_id, created_at
        FROM request_logs
        WHERE status_code >= 400
            AND created_at > NOW() - INTERVAL '24 hours'
        ORDER BY created_at DESC
        LIMIT 100
        """
    )
    op.execute(
        """
        CREATE OR REPLACE VIEW v_user_activity AS
        SELECT
            u.id,
            u.username,
            u.role,
            COALESCE(r.total_requests, 0) AS total_requests,
            COALESCE(r.active_days, 0) AS active_days,
            r.last_activity,
            COALESCE(t.total_todos, 0) AS total_todos,
            COALESCE(t.completed_todos, 0) AS completed_todos
        FROM users u
        LEFT JOIN (
            SELECT user_id,
                   COUNT(*) AS total_requests,
                   COUNT(DISTINCT DATE(created_at)) AS active_days,
                   MAX(created_at) AS last_activity
            FROM request_logs
            WHERE user_id IS NOT NULL
            GROUP BY user_id
        ) r ON r.user_id = u.id
        LEFT JOIN (
            SELECT user_id,
                   COUNT(*) AS total_todos,
                   COUNT(CASE WHEN completed THEN 1 END) AS completed_todos
            FROM todos
            GROUP BY user_id
        ) t ON t.user_id = u.id
        ORDER BY total_requests DESC
        """
    )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP VIEW IF EXISTS v_user_activity")
        op.execute("DROP VIEW IF EXISTS v_recent_errors")
        op.execute("DROP VIEW IF EXISTS v_api_usage_stats")
        for table in _TOUCHED_TABLES:
            op.execute(f"DROP TRIGGER IF EXISTS update_{table}_updated_at ON {table}")
        op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")

    op.drop_index("ix_api_keys_user_id", table_name="api_keys")
    op.drop_index("ix_api_keys_key_hash", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_index("ix_schemas_model_name", table_name="schemas")
    op.drop_table("schemas")
    op.drop_index("ix_rate_limits_window_start", table_name="rate_limits")
    op.drop_index("ix_rate_limits_identifier", table_name="rate_limits")
    op.drop_table("rate_limits")
    op.drop_index("ix_request_logs_created_at", table_name="request_logs")
    op.drop_index("ix_request_logs_status_code", table_name="request_logs")
    op.drop_index("ix_request_logs_user_id", table_name="request_logs")
    op.drop_index("ix_request_logs_endpoint", table_name="request_logs")
    op.drop_index("ix_request_logs_request_id", table_name="request_logs")
    op.drop_table("request_logs")
    op.drop_index("ix_todos_due_date", table_name="todos")
    op.drop_index("ix_todos_completed", table_name="todos")
    op.drop_index("ix_todos_user_id", table_name="todos")
    op.drop_table("todos")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
