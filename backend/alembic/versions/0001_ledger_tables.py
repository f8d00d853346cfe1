"""Create batch ledger tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    op.create_table(
        "batches",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("batch_number", sa.String(32), nullable=False),
        sa.Column("number_scheme", sa.String(20), server_default="phase_week"),
        # Lifecycle
        sa.Column("phase", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default="growing"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("initial_quantity", sa.Integer(), nullable=False, server_default="0"),
        # Plant details
        sa.Column("variety", sa.String(120)),
        sa.Column("size", sa.String(60)),
        sa.Column("planted_at", sa.Date()),
        # Placement
        sa.Column("location_id", sa.String(36)),
        sa.Column("supplier_id", sa.String(36)),
        # Lineage
        sa.Column("transplanted_from", sa.String(36), sa.ForeignKey("batches.id")),
        # Metadata
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.String(36)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("archived_at", sa.DateTime()),
        sa.UniqueConstraint("org_id", "batch_number", name="uq_batches_org_number"),
        sa.CheckConstraint("quantity >= 0", name="ck_batches_quantity_non_negative"),
    )
    op.create_index("ix_batches_org_id", "batches", ["org_id"])
    op.create_index("ix_batches_batch_number", "batches", ["batch_number"])
    op.create_index("ix_batches_status", "batches", ["status"])
    op.create_index("ix_batches_location_id", "batches", ["location_id"])
    op.create_index("ix_batches_transplanted_from", "batches", ["transplanted_from"])
    op.create_index("ix_batches_created_at", "batches", ["created_at"])

    op.create_table(
        "batch_events",
        sa.Column("seq", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("id", sa.String(36), nullable=False, unique=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("by_user_id", sa.String(36)),
        sa.Column("request_id", sa.String(128)),
        sa.Column("at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_batch_events_org_id", "batch_events", ["org_id"])
    op.create_index("ix_batch_events_batch_id", "batch_events", ["batch_id"])
    op.create_index("ix_batch_events_type", "batch_events", ["type"])
    op.create_index("ix_batch_events_request_id", "batch_events", ["request_id"])
    op.create_index("ix_batch_events_at", "batch_events", ["at"])

    op.create_table(
        "batch_ancestry",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("parent_batch_id", sa.String(36), nullable=False),
        sa.Column("child_batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("proportion", sa.Float()),
        sa.Column("kind", sa.String(20), nullable=False, server_default="split"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("parent_batch_id", "child_batch_id", name="uq_batch_ancestry_edge"),
    )
    op.create_index("ix_batch_ancestry_org_id", "batch_ancestry", ["org_id"])
    op.create_index("ix_batch_ancestry_parent_batch_id", "batch_ancestry", ["parent_batch_id"])
    op.create_index("ix_batch_ancestry_child_batch_id", "batch_ancestry", ["child_batch_id"])

    op.create_table(
        "batch_flags",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("value", sa.JSON()),
        sa.Column("updated_by", sa.String(36)),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("batch_id", "key", name="uq_batch_flags_batch_key"),
    )
    op.create_index("ix_batch_flags_org_id", "batch_flags", ["org_id"])
    op.create_index("ix_batch_flags_batch_id", "batch_flags", ["batch_id"])

    op.create_table(
        "batch_number_counters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("phase_digit", sa.Integer(), nullable=False),
        sa.Column("period", sa.String(4), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "org_id", "phase_digit", "period", name="uq_batch_number_counter_bucket"
        ),
    )

    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("scope", sa.String(64), nullable=False),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("fingerprint", sa.String(64)),
        sa.Column("state", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("owner_token", sa.String(36), nullable=False),
        sa.Column("locked_until", sa.DateTime(), nullable=False),
        sa.Column("status_code", sa.Integer()),
        sa.Column("response_body", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("org_id", "scope", "key", name="uq_idempotency_scope_key"),
    )
    op.create_index("ix_idempotency_records_expires_at", "idempotency_records", ["expires_at"])

    op.create_table(
        "reconciliation_alerts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        # Classification
        sa.Column("alert_type", sa.String(50), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        # Mismatch details
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("expected_value", sa.Integer()),
        sa.Column("actual_value", sa.Integer()),
        sa.Column("variance", sa.Integer()),
        # Entity references
        sa.Column("entity_refs", sa.JSON()),
        # Status
        sa.Column("status", sa.String(20), server_default="open"),
        sa.Column("resolved_at", sa.DateTime()),
        sa.Column("resolved_by", sa.String(36)),
        sa.Column("resolution_note", sa.Text()),
        # Run metadata
        sa.Column("run_id", sa.String(36)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_reconciliation_alerts_org_id", "reconciliation_alerts", ["org_id"])
    op.create_index("ix_reconciliation_alerts_alert_type", "reconciliation_alerts", ["alert_type"])
    op.create_index("ix_reconciliation_alerts_severity", "reconciliation_alerts", ["severity"])
    op.create_index("ix_reconciliation_alerts_status", "reconciliation_alerts", ["status"])
    op.create_index("ix_reconciliation_alerts_run_id", "reconciliation_alerts", ["run_id"])


def downgrade() -> None:
    op.drop_table("reconciliation_alerts")
    op.drop_table("idempotency_records")
    op.drop_table("batch_number_counters")
    op.drop_table("batch_flags")
    op.drop_table("batch_ancestry")
    op.drop_table("batch_events")
    op.drop_table("batches")
