"""Initial hotel operations schema."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "20260301_000001"
down_revision = None
branch_labels = None
depends_on = None

_UUID = postgresql.UUID(as_uuid=True)
_NOW = sa.text("now()")
_GEN_UUID = sa.text("gen_random_uuid()")


def _id_column() -> sa.Column:
    return sa.Column("id", _UUID, primary_key=True, nullable=False, server_default=_GEN_UUID)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW)


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "hotels",
        _id_column(),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
    )

    op.create_table(
        "rooms",
        _id_column(),
        sa.Column("hotel_id", _UUID, sa.ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("number", sa.String(length=32), nullable=False),
        _created_at(),
        sa.UniqueConstraint("hotel_id", "number", name="uq_rooms_hotel_number"),
    )

    op.create_table(
        "zones",
        _id_column(),
        sa.Column("hotel_id", _UUID, sa.ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
    )

    op.create_table(
        "departments",
        _id_column(),
        sa.Column("hotel_id", _UUID, sa.ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
    )

    op.create_table(
        "services",
        _id_column(),
        sa.Column("hotel_id", _UUID, sa.ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("department_id", _UUID, sa.ForeignKey("departments.id"), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )

    op.create_table(
        "sla_policies",
        _id_column(),
        sa.Column("department_id", _UUID, sa.ForeignKey("departments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("target_minutes", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.Column("deactivated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint("target_minutes > 0", name="ck_sla_policies_target_positive"),
    )
    op.create_index(
        "uq_sla_policies_active_department",
        "sla_policies",
        ["department_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "stays",
        _id_column(),
        sa.Column("hotel_id", _UUID, sa.ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("guest_id", _UUID, nullable=False),
        sa.Column("room_id", _UUID, sa.ForeignKey("rooms.id"), nullable=True),
        sa.Column("check_in", sa.Date(), nullable=True),
        sa.Column("check_out", sa.Date(), nullable=True),
        _created_at(),
    )

    op.create_table(
        "staff_members",
        _id_column(),
        sa.Column("hotel_id", _UUID, sa.ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_assigned_at", sa.TIMESTAMP(timezone=True), nullable=True),
        _created_at(),
    )

    op.create_table(
        "staff_departments",
        sa.Column("staff_id", _UUID, sa.ForeignKey("staff_members.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("department_id", _UUID, sa.ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "staff_zones",
        sa.Column("staff_id", _UUID, sa.ForeignKey("staff_members.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("zone_id", _UUID, sa.ForeignKey("zones.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "staff_shifts",
        _id_column(),
        sa.Column("staff_id", _UUID, sa.ForeignKey("staff_members.id", ondelete="CASCADE"), nullable=False),
        sa.Column("starts_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("ends_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint("ends_at > starts_at", name="ck_staff_shifts_window"),
    )
    op.create_index("idx_staff_shifts_staff_window", "staff_shifts", ["staff_id", "starts_at", "ends_at"])

    op.execute("CREATE SEQUENCE ticket_display_seq")
    op.create_table(
        "tickets",
        _id_column(),
        sa.Column(
            "display_code",
            sa.String(length=32),
            nullable=False,
            unique=True,
            server_default=sa.text("'REQ-' || lpad(nextval('ticket_display_seq')::text, 6, '0')"),
        ),
        sa.Column("hotel_id", _UUID, sa.ForeignKey("hotels.id"), nullable=False),
        sa.Column("department_id", _UUID, sa.ForeignKey("departments.id"), nullable=False),
        sa.Column("service_id", _UUID, sa.ForeignKey("services.id"), nullable=False),
        sa.Column("stay_id", _UUID, sa.ForeignKey("stays.id"), nullable=True),
        sa.Column("room_id", _UUID, sa.ForeignKey("rooms.id"), nullable=True),
        sa.Column("zone_id", _UUID, sa.ForeignKey("zones.id"), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default=sa.text("'NORMAL'")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'NEW'")),
        sa.Column("created_by_type", sa.String(length=16), nullable=False),
        sa.Column("created_by_id", _UUID, nullable=True),
        sa.Column("current_assignee_id", _UUID, sa.ForeignKey("staff_members.id"), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("assignment_claimed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("assignment_claim_token", _UUID, nullable=True),
        sa.Column("assignment_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("assignment_error", sa.Text(), nullable=True),
        sa.CheckConstraint("(room_id IS NULL) <> (zone_id IS NULL)", name="ck_tickets_location_xor"),
        sa.CheckConstraint(
            "status IN ('NEW', 'IN_PROGRESS', 'BLOCKED', 'COMPLETED', 'CANCELLED')",
            name="ck_tickets_status",
        ),
        sa.CheckConstraint("priority IN ('LOW', 'NORMAL', 'HIGH', 'URGENT')", name="ck_tickets_priority"),
        sa.CheckConstraint(
            "created_by_type IN ('GUEST', 'STAFF', 'FRONT_DESK', 'SYSTEM')",
            name="ck_tickets_created_by_type",
        ),
    )
    op.create_index("idx_tickets_hotel_status", "tickets", ["hotel_id", "status"])
    op.create_index(
        "idx_tickets_assignee_open",
        "tickets",
        ["current_assignee_id"],
        postgresql_where=sa.text("status IN ('NEW', 'IN_PROGRESS', 'BLOCKED')"),
    )
    op.create_index(
        "idx_tickets_unassigned_queue",
        "tickets",
        ["priority", "created_at"],
        postgresql_where=sa.text("status = 'NEW' AND current_assignee_id IS NULL"),
    )

    op.create_table(
        "ticket_events",
        _id_column(),
        sa.Column("seq", sa.BigInteger(), sa.Identity(always=True), nullable=False, unique=True),
        sa.Column("ticket_id", _UUID, sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("actor_type", sa.String(length=16), nullable=False),
        sa.Column("actor_id", _UUID, nullable=True),
        sa.Column("previous_status", sa.String(length=16), nullable=True),
        sa.Column("new_status", sa.String(length=16), nullable=True),
        sa.Column("reason_code", sa.String(length=64), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("media", postgresql.ARRAY(sa.Text()), nullable=False, server_default=sa.text("'{}'")),
        _created_at(),
        sa.CheckConstraint(
            "event_type IN ('CREATED', 'ASSIGNED', 'STATUS_CHANGED', 'COMMENT_ADDED')",
            name="ck_ticket_events_type",
        ),
    )
    op.create_index("idx_ticket_events_ticket_seq", "ticket_events", ["ticket_id", "seq"])
    op.execute(
        """
        CREATE FUNCTION ticket_events_append_only() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'ticket_events is append-only';
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ticket_events_append_only
        BEFORE UPDATE OR DELETE ON ticket_events
        FOR EACH ROW EXECUTE FUNCTION ticket_events_append_only()
        """
    )

    op.create_table(
        "ticket_attachments",
        _id_column(),
        sa.Column("ticket_id", _UUID, sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("event_id", _UUID, sa.ForeignKey("ticket_events.id"), nullable=False),
        sa.Column("storage_path", sa.Text(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "ticket_sla_state",
        sa.Column("ticket_id", _UUID, sa.ForeignKey("tickets.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("sla_policy_id", _UUID, sa.ForeignKey("sla_policies.id"), nullable=False),
        sa.Column("sla_started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("sla_paused_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("total_paused_seconds", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("breached", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.CheckConstraint("total_paused_seconds >= 0", name="ck_ticket_sla_state_paused_nonnegative"),
    )
    op.execute(
        """
        CREATE INDEX idx_sla_running_calc ON ticket_sla_state (ticket_id)
        INCLUDE (sla_started_at, total_paused_seconds, sla_policy_id)
        WHERE sla_started_at IS NOT NULL AND sla_paused_at IS NULL
        """
    )

    op.create_table(
        "idempotency_keys",
        sa.Column("route", sa.String(length=255), primary_key=True),
        sa.Column("tenant_scope", sa.String(length=64), primary_key=True),
        sa.Column("idempotency_key", sa.String(length=255), primary_key=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('in_progress', 'completed')", name="ck_idempotency_keys_status"),
    )

    op.create_table(
        "audit_log",
        _id_column(),
        _created_at(),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("actor_type", sa.String(length=16), nullable=False),
        sa.Column("actor_id", _UUID, nullable=True),
        sa.Column("tenant_scope", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
    )
    op.create_index("idx_audit_log_entity", "audit_log", ["entity_type", "entity_id"])

    op.create_table(
        "import_rows",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("hotel_id", _UUID, sa.ForeignKey("hotels.id"), nullable=True),
        sa.Column("booking_reference", sa.String(length=128), nullable=False),
        sa.Column("is_primary_guest", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("row_data", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("source", sa.String(length=32), nullable=False, server_default=sa.text("'api'")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("claim_token", _UUID, nullable=True),
        sa.Column("claimed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'imported', 'notified', 'error')",
            name="ck_import_rows_status",
        ),
    )
    op.create_index("idx_import_rows_status_reference", "import_rows", ["status", "booking_reference"])

    op.create_table(
        "bookings",
        _id_column(),
        sa.Column("code", sa.String(length=128), nullable=False, unique=True),
        sa.Column("hotel_id", _UUID, sa.ForeignKey("hotels.id"), nullable=False),
        sa.Column("guest_name", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'CONFIRMED'")),
        sa.Column("check_in", sa.Date(), nullable=True),
        sa.Column("check_out", sa.Date(), nullable=True),
        sa.Column("adults_total", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("children_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("rooms_total", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("source", sa.String(length=32), nullable=False, server_default=sa.text("'import'")),
        _created_at(),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
    )


def downgrade() -> None:
    op.drop_table("bookings")
    op.drop_index("idx_import_rows_status_reference", table_name="import_rows")
    op.drop_table("import_rows")
    op.drop_index("idx_audit_log_entity", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("idempotency_keys")
    op.execute("DROP INDEX IF EXISTS idx_sla_running_calc")
    op.drop_table("ticket_sla_state")
    op.drop_table("ticket_attachments")
    op.execute("DROP TRIGGER IF EXISTS trg_ticket_events_append_only ON ticket_events")
    op.execute("DROP FUNCTION IF EXISTS ticket_events_append_only()")
    op.drop_table("ticket_events")
    op.drop_table("tickets")
    op.execute("DROP SEQUENCE IF EXISTS ticket_display_seq")
    op.drop_table("staff_shifts")
    op.drop_table("staff_zones")
    op.drop_table("staff_departments")
    op.drop_table("staff_members")
    op.drop_table("stays")
    op.drop_index("uq_sla_policies_active_department", table_name="sla_policies")
    op.drop_table("sla_policies")
    op.drop_table("services")
    op.drop_table("departments")
    op.drop_table("zones")
    op.drop_table("rooms")
    op.drop_table("hotels")
