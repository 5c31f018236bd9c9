"""initial_matter_workflow_schema

Creates the stage-gating engine schema:
  - users, matters                 - collaborator defaults (identity, matter facts)
  - workflow_templates / workflow_stages / workflow_task_templates
                                   - versioned template catalog
  - task_exceptions                - append-only override ledger
  - matter_workflows / matter_stages / tasks / evidence_items
                                   - per-matter instances
  - timeline_events                - persisted domain events

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via
db.create_all() in a development environment.

Revision ID: a1f0c2d4e6b8
Revises:
Create Date: 2026-10-17 09:12:40.118204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1f0c2d4e6b8'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Collaborator defaults ─────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("full_name", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("role", sa.String(length=30), nullable=False, server_default="fee_earner",
                      comment="secretary | paralegal | fee_earner | supervisor"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "matters" not in existing:
        op.create_table(
            "matters",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("reference", sa.String(length=50), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("practice_area", sa.String(length=30), nullable=False),
            sa.Column("sub_type", sa.String(length=60), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
            sa.Column("attributes", sa.JSON(), nullable=True,
                      comment="Typed matter facts used by applicability conditions"),
            _ts("opened_at", nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("reference"),
        )
        op.create_index("ix_matters_practice_area", "matters", ["practice_area"])

    # ── Template catalog ──────────────────────────────────────────────────
    if "workflow_templates" not in existing:
        op.create_table(
            "workflow_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("key", sa.String(length=100), nullable=False),
            sa.Column("version", sa.String(length=20), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("practice_area", sa.String(length=30), nullable=False),
            sa.Column("sub_types", sa.JSON(), nullable=True, comment="list[str] | NULL (= all sub types)"),
            sa.Column("selection_conditions", sa.JSON(), nullable=True),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("released_at", nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("key", "version", name="uq_workflow_templates_key_version"),
        )
        op.create_index("ix_workflow_templates_practice_area", "workflow_templates", ["practice_area"])
        op.create_index("ix_workflow_templates_active", "workflow_templates", ["is_active"])

    if "workflow_stages" not in existing:
        op.create_table(
            "workflow_stages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_template_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False),
            sa.Column("gate_type", sa.String(length=10), nullable=False, server_default="none",
                      comment="hard | soft | none"),
            sa.Column("completion_criteria", sa.String(length=30), nullable=False,
                      server_default="all_mandatory_tasks",
                      comment="all_mandatory_tasks | all_tasks | custom"),
            sa.Column("applicability_conditions", sa.JSON(), nullable=True),
            sa.Column("client_visible", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["workflow_template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_template_id", "sort_order", name="uq_workflow_stages_template_sort"),
        )
        op.create_index("ix_workflow_stages_workflow_template_id", "workflow_stages", ["workflow_template_id"])

    if "workflow_task_templates" not in existing:
        op.create_table(
            "workflow_task_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_evidence", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("required_evidence_types", sa.JSON(), nullable=True),
            sa.Column("requires_verified_evidence", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("required_approver_role", sa.String(length=30), nullable=True),
            sa.Column("default_priority", sa.String(length=10), nullable=False, server_default="medium"),
            sa.Column("relative_due_days", sa.Integer(), nullable=True),
            sa.Column("due_date_anchor", sa.String(length=20), nullable=True,
                      comment="stage_started | task_created | matter_created | matter_opened"),
            sa.Column("client_visible", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("regulatory_basis", sa.Text(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["stage_id"], ["workflow_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("stage_id", "sort_order", name="uq_workflow_task_templates_stage_sort"),
        )
        op.create_index("ix_workflow_task_templates_stage_id", "workflow_task_templates", ["stage_id"])

    # ── Exception ledger ──────────────────────────────────────────────────
    if "task_exceptions" not in existing:
        op.create_table(
            "task_exceptions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("matter_id", sa.Integer(), nullable=False),
            sa.Column("object_type", sa.String(length=10), nullable=False, comment="task | stage"),
            sa.Column("object_id", sa.String(length=64), nullable=False),
            sa.Column("exception_type", sa.String(length=20), nullable=False,
                      comment="skipped | not_applicable | gate_override"),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column("decision_source", sa.String(length=10), nullable=False, server_default="user"),
            sa.Column("approved_by_id", sa.Integer(), nullable=True),
            sa.Column("approved_by_name_snapshot", sa.String(length=255), nullable=True),
            _ts("approved_at"),
            sa.Column("context", sa.JSON(), nullable=True),
            sa.CheckConstraint("length(trim(reason)) > 0", name="ck_task_exceptions_reason_not_blank"),
            sa.ForeignKeyConstraint(["matter_id"], ["matters.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approved_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_task_exceptions_object", "task_exceptions", ["object_type", "object_id"])
        op.create_index("ix_task_exceptions_matter", "task_exceptions", ["matter_id"])

    # ── Matter instances ──────────────────────────────────────────────────
    if "matter_workflows" not in existing:
        op.create_table(
            "matter_workflows",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("matter_id", sa.Integer(), nullable=False),
            sa.Column("workflow_template_id", sa.Integer(), nullable=False),
            sa.Column("workflow_version", sa.String(length=20), nullable=False),
            _ts("activated_at"),
            sa.Column("activated_by_id", sa.Integer(), nullable=True),
            sa.Column("current_stage_id", sa.Integer(), nullable=True,
                      comment="Cache; derivable from stage statuses"),
            _ts("completed_at", nullable=True),
            sa.ForeignKeyConstraint(["matter_id"], ["matters.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workflow_template_id"], ["workflow_templates.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["activated_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("matter_id", name="uq_matter_workflows_matter"),
        )
        op.create_index("ix_matter_workflows_workflow_template_id", "matter_workflows", ["workflow_template_id"])

    if "matter_stages" not in existing:
        op.create_table(
            "matter_stages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("matter_workflow_id", sa.Integer(), nullable=False),
            sa.Column("workflow_stage_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("skipped_reason", sa.Text(), nullable=True),
            _ts("started_at", nullable=True),
            _ts("completed_at", nullable=True),
            sa.Column("exception_id", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["matter_workflow_id"], ["matter_workflows.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workflow_stage_id"], ["workflow_stages.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["exception_id"], ["task_exceptions.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("matter_workflow_id", "sort_order", name="uq_matter_stages_workflow_sort"),
        )
        op.create_index("ix_matter_stages_matter_workflow_id", "matter_stages", ["matter_workflow_id"])

    if "tasks" not in existing:
        op.create_table(
            "tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("matter_id", sa.Integer(), nullable=False),
            sa.Column("matter_stage_id", sa.Integer(), nullable=True),
            sa.Column("workflow_task_template_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("source", sa.String(length=20), nullable=False, server_default="manual"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="medium"),
            sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_evidence", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("required_evidence_types", sa.JSON(), nullable=True),
            sa.Column("requires_verified_evidence", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("required_approver_role", sa.String(length=30), nullable=True),
            sa.Column("approval_status", sa.String(length=20), nullable=True),
            sa.Column("approval_requested_by_id", sa.Integer(), nullable=True),
            sa.Column("approved_by_id", sa.Integer(), nullable=True),
            _ts("approved_at", nullable=True),
            sa.Column("approval_comment", sa.Text(), nullable=True),
            _ts("due_date", nullable=True),
            sa.Column("due_date_anchor", sa.String(length=20), nullable=True),
            sa.Column("relative_due_days", sa.Integer(), nullable=True),
            sa.Column("assignee_id", sa.Integer(), nullable=True),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("client_visible", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("regulatory_basis", sa.Text(), nullable=True),
            _ts("completed_at", nullable=True),
            sa.Column("active_exception_id", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["matter_id"], ["matters.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["matter_stage_id"], ["matter_stages.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workflow_task_template_id"], ["workflow_task_templates.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approval_requested_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approved_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["assignee_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["active_exception_id"], ["task_exceptions.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_tasks_matter_id", "tasks", ["matter_id"])
        op.create_index("ix_tasks_matter_stage_id", "tasks", ["matter_stage_id"])
        op.create_index("ix_tasks_matter_status", "tasks", ["matter_id", "status"])

    if "evidence_items" not in existing:
        op.create_table(
            "evidence_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False,
                      comment="Task id; integrity enforced by task_lifecycle"),
            sa.Column("evidence_type", sa.String(length=60), nullable=False),
            sa.Column("document_id", sa.String(length=64), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("added_by_id", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("verified_at", nullable=True),
            sa.Column("verified_by_id", sa.Integer(), nullable=True),
            sa.Column("verification_method", sa.String(length=30), nullable=True),
            sa.Column("verification_notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["added_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["verified_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_evidence_items_task_id", "evidence_items", ["task_id"])

    # ── Timeline ──────────────────────────────────────────────────────────
    if "timeline_events" not in existing:
        op.create_table(
            "timeline_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("matter_id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=True),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("from_status", sa.String(length=20), nullable=True),
            sa.Column("to_status", sa.String(length=20), nullable=True),
            _ts("occurred_at"),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_timeline_matter", "timeline_events", ["matter_id"])
        op.create_index("idx_timeline_type", "timeline_events", ["event_type"])


def downgrade():
    for table in (
        "timeline_events",
        "evidence_items",
        "tasks",
        "matter_stages",
        "matter_workflows",
        "task_exceptions",
        "workflow_task_templates",
        "workflow_stages",
        "workflow_templates",
        "matters",
        "users",
    ):
        op.drop_table(table)
