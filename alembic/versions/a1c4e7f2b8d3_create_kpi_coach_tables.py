"""Create ai_suggestions, ai_suggestion_feedback, kpi_targets, goal_settings and outbound tables

Revision ID: a1c4e7f2b8d3
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers
revision: str = 'a1c4e7f2b8d3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(table_name):
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def upgrade() -> None:
    # ── ai_suggestions ──
    if not _has_table('ai_suggestions'):
        op.create_table(
            'ai_suggestions',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('date_key', sa.String(10), nullable=False, index=True),
            sa.Column('role', sa.String(), nullable=False, index=True),
            sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=True, index=True),
            sa.Column('owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
            sa.Column('status', sa.String(), nullable=False, server_default='ACTIVE', index=True),
            sa.Column('title', sa.String(), nullable=False),
            sa.Column('content', sa.Text(), nullable=False),
            sa.Column('severity', sa.String(), nullable=False),
            sa.Column('actions', sa.JSON(), nullable=True),
            sa.Column('evidence', sa.JSON(), nullable=True),
            sa.Column('source', sa.String(), nullable=False),
            sa.Column('run_id', sa.String(), nullable=True, index=True),
            sa.Column('content_hash', sa.String(64), nullable=False),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False, index=True),
            sa.UniqueConstraint('date_key', 'content_hash', 'source', name='uq_ai_suggestions_date_hash_source'),
        )

    # ── ai_suggestion_feedback ──
    if not _has_table('ai_suggestion_feedback'):
        op.create_table(
            'ai_suggestion_feedback',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('suggestion_id', sa.Integer(), sa.ForeignKey('ai_suggestions.id'), nullable=False, index=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
            sa.Column('feedback_type', sa.String(), nullable=False),
            sa.Column('reason', sa.String(), nullable=False),
            sa.Column('reason_detail', sa.Text(), nullable=True),
            sa.Column('actual_result', sa.JSON(), nullable=True),
            sa.Column('note', sa.Text(), nullable=True),
            sa.Column('rating', sa.Integer(), nullable=False),
            sa.Column('applied', sa.Boolean(), nullable=False),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False, index=True),
            sa.UniqueConstraint('suggestion_id', 'user_id', name='uq_ai_suggestion_feedback_suggestion_user'),
        )

    # ── kpi_targets ──
    if not _has_table('kpi_targets'):
        op.create_table(
            'kpi_targets',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=False, index=True),
            sa.Column('role', sa.String(), nullable=False),
            sa.Column('owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
            # 'ALL' when owner_id is NULL so the role-wide row is unique too
            sa.Column('owner_scope_key', sa.String(), nullable=False, server_default='ALL'),
            sa.Column('metric_key', sa.String(), nullable=False),
            sa.Column('target_value', sa.Integer(), nullable=False),
            sa.Column('day_of_week', sa.Integer(), nullable=False, server_default='-1'),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint(
                'branch_id', 'role', 'metric_key', 'day_of_week', 'owner_scope_key',
                name='uq_kpi_targets_branch_role_metric_day_owner',
            ),
        )

    # ── goal_settings ──
    if not _has_table('goal_settings'):
        op.create_table(
            'goal_settings',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('period_type', sa.String(), nullable=False),
            sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=True, index=True),
            sa.Column('branch_scope_key', sa.String(), nullable=False),
            sa.Column('date_key', sa.String(10), nullable=False, server_default=''),
            sa.Column('month_key', sa.String(7), nullable=False, server_default=''),
            sa.Column('revenue_target', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('dossier_target', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('cost_target', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('note', sa.Text(), nullable=True),
            sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint(
                'branch_scope_key', 'period_type', 'date_key', 'month_key',
                name='uq_goal_settings_scope_period',
            ),
        )

    # ── message_templates ──
    if not _has_table('message_templates'):
        op.create_table(
            'message_templates',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('key', sa.String(), nullable=False, unique=True, index=True),
            sa.Column('title', sa.String(), nullable=True),
            sa.Column('channel', sa.String(), nullable=False),
            sa.Column('body', sa.Text(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        )

    # ── outbound_messages ──
    if not _has_table('outbound_messages'):
        op.create_table(
            'outbound_messages',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('channel', sa.String(), nullable=False),
            sa.Column('template_key', sa.String(), nullable=False),
            sa.Column('rendered_text', sa.Text(), nullable=False),
            sa.Column('to', sa.String(), nullable=True),
            sa.Column('priority', sa.String(), nullable=False, server_default='MEDIUM'),
            sa.Column('status', sa.String(), nullable=False, server_default='QUEUED', index=True),
            sa.Column('lead_id', sa.Integer(), sa.ForeignKey('leads.id'), nullable=True, index=True),
            sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=True, index=True),
            sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=False, index=True),
            sa.Column('note', sa.Text(), nullable=True),
            sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False, index=True),
        )


def downgrade() -> None:
    for table in ('outbound_messages', 'message_templates', 'goal_settings', 'kpi_targets',
                  'ai_suggestion_feedback', 'ai_suggestions'):
        if _has_table(table):
            op.drop_table(table)
