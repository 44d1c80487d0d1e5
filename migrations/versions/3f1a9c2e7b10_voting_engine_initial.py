"""voting engine initial schema

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPEN_AUTO_WHERE = sa.text(
    "status IN ('draft', 'active') AND trigger_employee_id IS NOT NULL"
    " AND kind IN ('auto_promotion', 'auto_demotion')"
)


def upgrade() -> None:
    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=32), nullable=False, unique=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('position', sa.String(length=32), nullable=False),
        sa.Column('position_start_date', sa.DateTime(), nullable=True),
        sa.Column('hire_date', sa.Date(), nullable=False),
        sa.Column('current_store', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "position IN ('intern','staff','assistant_manager','manager','regional_manager')",
            name='ck_employee_position',
        ),
    )
    op.create_index('ix_emp_position_status', 'employees', ['position', 'status'])
    op.create_index('ix_emp_store', 'employees', ['current_store'])

    op.create_table(
        'voting_campaigns',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('target_position', sa.String(length=32), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('max_votes_per_voter', sa.Integer(), nullable=False),
        sa.Column('pass_threshold', sa.Numeric(5, 2), nullable=False),
        sa.Column('eligible_voter_criteria', sa.JSON(), nullable=False),
        sa.Column('trigger_employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='SET NULL'), nullable=True),
        sa.Column('trigger_conditions', sa.JSON(), nullable=True),
        sa.Column('system_generated', sa.Boolean(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('can_modify_votes', sa.Boolean(), nullable=False),
        sa.Column('max_modifications', sa.Integer(), nullable=False),
        sa.Column('buffer_period_days', sa.Integer(), nullable=False),
        sa.Column('total_votes', sa.Integer(), nullable=False),
        sa.Column('total_voters', sa.Integer(), nullable=False),
        sa.Column('results', sa.JSON(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('end_date > start_date', name='ck_campaign_window'),
        sa.CheckConstraint('max_modifications >= 0', name='ck_campaign_max_mods'),
        sa.CheckConstraint("status IN ('draft','active','closed')", name='ck_campaign_status'),
        sa.CheckConstraint("kind IN ('manual','auto_promotion','auto_demotion')", name='ck_campaign_kind'),
    )
    op.create_index('ix_voting_campaigns_trigger_employee_id', 'voting_campaigns', ['trigger_employee_id'])
    op.create_index('ix_campaign_status_end', 'voting_campaigns', ['status', 'end_date'])
    op.create_index('ix_campaign_kind', 'voting_campaigns', ['kind'])
    op.create_index(
        'uq_campaign_open_auto',
        'voting_campaigns',
        ['trigger_employee_id', 'kind'],
        unique=True,
        postgresql_where=OPEN_AUTO_WHERE,
        sqlite_where=OPEN_AUTO_WHERE,
    )

    op.create_table(
        'voting_candidates',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('voting_campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
        sa.Column('anonymous_id', sa.String(length=64), nullable=False),
        sa.Column('display_order', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('current_position', sa.String(length=32), nullable=True),
        sa.Column('vote_count', sa.Integer(), nullable=False),
        sa.Column('agree_count', sa.Integer(), nullable=False),
        sa.Column('vote_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('campaign_id', 'anonymous_id', name='uq_candidate_anonymous_id'),
        sa.UniqueConstraint('campaign_id', 'employee_id', name='uq_candidate_employee'),
    )
    op.create_index('ix_voting_candidates_campaign_id', 'voting_candidates', ['campaign_id'])
    op.create_index('ix_voting_candidates_employee_id', 'voting_candidates', ['employee_id'])

    op.create_table(
        'voting_votes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('voting_campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('candidate_id', sa.Integer(), sa.ForeignKey('voting_candidates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('voter_fingerprint', sa.String(length=64), nullable=False),
        sa.Column('original_decision', sa.String(length=10), nullable=False),
        sa.Column('current_decision', sa.String(length=10), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('modification_count', sa.Integer(), nullable=False),
        sa.Column('can_still_modify', sa.Boolean(), nullable=False),
        sa.Column('is_valid', sa.Boolean(), nullable=False),
        sa.Column('voted_at', sa.DateTime(), nullable=False),
        sa.Column('last_modified_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('campaign_id', 'voter_fingerprint', name='uq_vote_campaign_voter'),
        sa.CheckConstraint('modification_count >= 0', name='ck_vote_mod_count'),
        sa.CheckConstraint("current_decision IN ('agree','disagree','abstain')", name='ck_vote_decision'),
    )
    op.create_index('ix_voting_votes_campaign_id', 'voting_votes', ['campaign_id'])
    op.create_index('ix_voting_votes_candidate_id', 'voting_votes', ['candidate_id'])
    op.create_index('ix_vote_campaign_candidate', 'voting_votes', ['campaign_id', 'candidate_id'])

    op.create_table(
        'vote_modifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('vote_id', sa.Integer(), sa.ForeignKey('voting_votes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('modification_number', sa.Integer(), nullable=False),
        sa.Column('old_decision', sa.String(length=10), nullable=False),
        sa.Column('new_decision', sa.String(length=10), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('vote_id', 'modification_number', name='uq_vote_modification_number'),
    )
    op.create_index('ix_vote_modifications_vote_id', 'vote_modifications', ['vote_id'])

    op.create_table(
        'attendance_statistics',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('late_count', sa.Integer(), nullable=False),
        sa.Column('late_minutes_total', sa.Integer(), nullable=False),
        sa.Column('is_punishment_triggered', sa.Boolean(), nullable=False),
        sa.Column('punishment_count', sa.Integer(), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.Column('reset_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('employee_id', 'year', 'month', name='uq_attendance_stats_emp_month'),
        sa.CheckConstraint('month BETWEEN 1 AND 12', name='ck_attendance_stats_month'),
    )
    op.create_index('ix_attendance_statistics_employee_id', 'attendance_statistics', ['employee_id'])
    op.create_index('ix_attendance_stats_period', 'attendance_statistics', ['year', 'month'])
    op.create_index('ix_attendance_stats_punishment', 'attendance_statistics', ['is_punishment_triggered'])

    op.create_table(
        'attendance_late_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('statistics_id', sa.Integer(), sa.ForeignKey('attendance_statistics.id', ondelete='CASCADE'), nullable=False),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_ref', sa.String(length=128), nullable=False, unique=True),
        sa.Column('late_minutes', sa.Integer(), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=True),
        sa.Column('reason', sa.String(length=120), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_attendance_late_records_statistics_id', 'attendance_late_records', ['statistics_id'])
    op.create_index('ix_attendance_late_records_employee_id', 'attendance_late_records', ['employee_id'])

    op.create_table(
        'attendance_period_resets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('rows_reset', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('year', 'month', name='uq_period_reset_year_month'),
    )

    op.create_table(
        'position_changes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('voting_campaigns.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
        sa.Column('change_type', sa.String(length=16), nullable=False),
        sa.Column('old_position', sa.String(length=32), nullable=False),
        sa.Column('new_position', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
        sa.Column('executed_by', sa.String(length=50), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_position_changes_employee_id', 'position_changes', ['employee_id'])
    op.create_index('ix_position_change_status_due', 'position_changes', ['status', 'scheduled_for'])

    op.create_table(
        'notification_outbox',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('channel', sa.String(length=16), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint("channel IN ('management','staff')", name='ck_outbox_channel'),
    )
    op.create_index('ix_outbox_status_created', 'notification_outbox', ['status', 'created_at'])


def downgrade() -> None:
    op.drop_table('notification_outbox')
    op.drop_table('position_changes')
    op.drop_table('attendance_period_resets')
    op.drop_table('attendance_late_records')
    op.drop_table('attendance_statistics')
    op.drop_table('vote_modifications')
    op.drop_table('voting_votes')
    op.drop_table('voting_candidates')
    op.drop_index('uq_campaign_open_auto', table_name='voting_campaigns')
    op.drop_table('voting_campaigns')
    op.drop_table('employees')
