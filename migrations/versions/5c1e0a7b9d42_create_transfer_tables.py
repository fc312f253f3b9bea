"""create_transfer_tables

Creates the learner transfer schema:
  - institutions        — schools and tutor centres
  - learners            — learner case records (current institution, history)
  - transfers           — hand-off aggregate, one active row per learner
  - transfer_timeline   — append-only event log per transfer
  - audit_logs          — append-only lifecycle audit trail

Tables are created conditionally so the revision can run against databases
that already received them through db.create_all() in development.

Revision ID: 5c1e0a7b9d42
Revises:
Create Date: 2026-10-17 09:12:44.318205
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5c1e0a7b9d42'
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_WHERE = "status IN ('pending', 'approved') AND deleted_at IS NULL"


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Institution ───────────────────────────────────────────────────────
    if "institutions" not in existing:
        op.create_table(
            "institutions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column(
                "institution_type", sa.String(length=20), nullable=False,
                server_default="school", comment="school | tutor_centre",
            ),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("institution_type IN ('school','tutor_centre')", name="ck_institution_type"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_institutions_deleted_at", "institutions", ["deleted_at"])

    # ── Learner ───────────────────────────────────────────────────────────
    if "learners" not in existing:
        op.create_table(
            "learners",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("case_number", sa.String(length=32), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("last_name", sa.String(length=100), nullable=False),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="active",
                comment="active | transitioning | completed | inactive",
            ),
            sa.Column("current_institution_id", sa.String(length=36), nullable=False),
            sa.Column("enrollment_date", sa.Date(), nullable=False),
            sa.Column("exit_date", sa.Date(), nullable=True),
            sa.Column("institution_history", sa.JSON(), nullable=False),
            sa.Column("authorized_institutions", sa.JSON(), nullable=False),
            sa.Column("last_modified_by", sa.String(length=36), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(
                "status IN ('active','transitioning','completed','inactive')",
                name="ck_learner_status",
            ),
            sa.ForeignKeyConstraint(["current_institution_id"], ["institutions.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("case_number"),
        )
        op.create_index("ix_learners_current_institution_id", "learners", ["current_institution_id"])
        op.create_index("ix_learners_institution_status", "learners", ["current_institution_id", "status"])
        op.create_index("ix_learners_deleted_at", "learners", ["deleted_at"])

    # ── Transfer ──────────────────────────────────────────────────────────
    if "transfers" not in existing:
        op.create_table(
            "transfers",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("transfer_number", sa.String(length=20), nullable=False),
            sa.Column("learner_id", sa.String(length=36), nullable=False),
            sa.Column("from_institution_id", sa.String(length=36), nullable=False),
            sa.Column("to_institution_id", sa.String(length=36), nullable=False),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="pending",
                comment="pending | approved | rejected | completed | cancelled",
            ),
            sa.Column(
                "priority", sa.String(length=10), nullable=False, server_default="normal",
                comment="low | normal | high | urgent",
            ),
            sa.Column("reason", sa.String(length=40), nullable=False),
            sa.Column("reason_details", sa.Text(), nullable=False),
            sa.Column("proposed_transfer_date", sa.Date(), nullable=False),
            sa.Column("actual_transfer_date", sa.Date(), nullable=True),
            sa.Column("initiated_by", sa.String(length=36), nullable=False),
            sa.Column("reviewed_by", sa.String(length=36), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("review_notes", sa.Text(), nullable=True),
            sa.Column("handover_summary", sa.JSON(), nullable=True),
            sa.Column("shared_documents", sa.JSON(), nullable=False),
            sa.Column("shared_case_notes", sa.JSON(), nullable=False),
            sa.Column("communications", sa.JSON(), nullable=False),
            sa.Column("coordination_meeting_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("coordination_meeting_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("coordination_meeting_notes", sa.Text(), nullable=True),
            sa.Column(
                "receiving_institution_acknowledged", sa.Boolean(), nullable=False,
                server_default=sa.false(),
            ),
            sa.Column("acknowledged_by", sa.String(length=36), nullable=True),
            sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completion_checklist", sa.JSON(), nullable=True),
            sa.Column("requires_follow_up", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("follow_up_date", sa.Date(), nullable=True),
            sa.Column("follow_up_notes", sa.Text(), nullable=True),
            sa.Column("follow_up_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column(
                "metadata", sa.JSON(), nullable=False,
                comment="Acknowledgment notes, cancellation details",
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(
                "status IN ('pending','approved','rejected','completed','cancelled')",
                name="ck_transfer_status",
            ),
            sa.CheckConstraint("priority IN ('low','normal','high','urgent')", name="ck_transfer_priority"),
            sa.ForeignKeyConstraint(["learner_id"], ["learners.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["from_institution_id"], ["institutions.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["to_institution_id"], ["institutions.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("transfer_number"),
        )
        op.create_index("ix_transfers_learner_id", "transfers", ["learner_id"])
        op.create_index("ix_transfers_status_created", "transfers", ["status", "created_at"])
        op.create_index("ix_transfers_from_to", "transfers", ["from_institution_id", "to_institution_id"])
        op.create_index("ix_transfers_deleted_at", "transfers", ["deleted_at"])
        # At most one pending/approved, non-deleted transfer per learner
        op.create_index(
            "uq_transfers_learner_active",
            "transfers",
            ["learner_id"],
            unique=True,
            postgresql_where=sa.text(_ACTIVE_WHERE),
            sqlite_where=sa.text(_ACTIVE_WHERE),
        )

    # ── TransferTimeline ──────────────────────────────────────────────────
    if "transfer_timeline" not in existing:
        op.create_table(
            "transfer_timeline",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("transfer_id", sa.String(length=36), nullable=False),
            sa.Column("event_type", sa.String(length=30), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=False),
            sa.Column("performed_by", sa.String(length=36), nullable=True),
            sa.Column("event_data", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["transfer_id"], ["transfers.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_transfer_timeline_transfer_created", "transfer_timeline", ["transfer_id", "created_at"],
        )

    # ── AuditLog ──────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("institution_id", sa.String(length=36), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor_user_id", sa.String(length=36), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_institution_id", "audit_logs", ["institution_id"])
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor_user_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("transfer_timeline")
    op.drop_index("uq_transfers_learner_active", table_name="transfers")
    op.drop_table("transfers")
    op.drop_table("learners")
    op.drop_table("institutions")
