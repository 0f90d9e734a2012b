"""Initial automation schema: pipelines, agents, leads, rules, cadences, SLA, ledger, dispatch queue

Revision ID: 3f6b9c2d4e10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f6b9c2d4e10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NOW = sa.text('(CURRENT_TIMESTAMP)')


def upgrade() -> None:
    """Upgrade schema."""
    # Pipelines and stages
    op.create_table('pipelines',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('kind', sa.Text(), nullable=False, server_default='sales'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table('stages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('pipeline_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('category', sa.Text(), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['pipeline_id'], ['pipelines.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_stages_pipeline_id', 'stages', ['pipeline_id'])

    # Teams and agents
    op.create_table('teams',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_table('agents',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('team_id', sa.Integer(), nullable=True),
        sa.Column('role', sa.Text(), nullable=False, server_default='sdr'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(['team_id'], ['teams.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_agents_team_id', 'agents', ['team_id'])

    # Leads
    op.create_table('leads',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('phone', sa.Text(), nullable=True),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('pipeline_id', sa.Integer(), nullable=False),
        sa.Column('stage_id', sa.Integer(), nullable=False),
        sa.Column('team_id', sa.Integer(), nullable=True),
        sa.Column('assigned_to', sa.Integer(), nullable=True),
        sa.Column('temperature', sa.Text(), nullable=False, server_default='cold'),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('estimated_value', sa.Float(), nullable=True),
        sa.Column('source', sa.Text(), nullable=True),
        sa.Column('stage_entered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_contact_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('first_contact_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('won_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lost_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.ForeignKeyConstraint(['pipeline_id'], ['pipelines.id']),
        sa.ForeignKeyConstraint(['stage_id'], ['stages.id']),
        sa.ForeignKeyConstraint(['team_id'], ['teams.id']),
        sa.ForeignKeyConstraint(['assigned_to'], ['agents.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_leads_pipeline_id', 'leads', ['pipeline_id'])
    op.create_index('ix_leads_stage_id', 'leads', ['stage_id'])
    op.create_index('ix_leads_team_id', 'leads', ['team_id'])
    op.create_index('ix_leads_assigned_to', 'leads', ['assigned_to'])

    op.create_table('interactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lead_id', sa.Integer(), nullable=False),
        sa.Column('channel', sa.Text(), nullable=True),
        sa.Column('sentiment', sa.Text(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.ForeignKeyConstraint(['lead_id'], ['leads.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_interactions_lead_id', 'interactions', ['lead_id'])
    op.create_index('ix_interactions_created_at', 'interactions', ['created_at'])

    # Automation configuration
    op.create_table('automation_rules',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('trigger_type', sa.Text(), nullable=False),
        sa.Column('trigger_config', sa.JSON(), nullable=True),
        sa.Column('time_of_day', sa.Text(), nullable=True),
        sa.Column('actions', sa.JSON(), nullable=True),
        sa.Column('pipeline_id', sa.Integer(), nullable=True),
        sa.Column('stage_id', sa.Integer(), nullable=True),
        sa.Column('dedupe_window_hours', sa.Float(), nullable=False, server_default='24'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('run_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.ForeignKeyConstraint(['pipeline_id'], ['pipelines.id']),
        sa.ForeignKeyConstraint(['stage_id'], ['stages.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table('cadences',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('channel', sa.Text(), nullable=False, server_default='whatsapp'),
        sa.Column('pipeline_id', sa.Integer(), nullable=True),
        sa.Column('stage_id', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.ForeignKeyConstraint(['pipeline_id'], ['pipelines.id']),
        sa.ForeignKeyConstraint(['stage_id'], ['stages.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table('cadence_steps',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('cadence_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('day_offset', sa.Integer(), nullable=False),
        sa.Column('channel', sa.Text(), nullable=True),
        sa.Column('message_template', sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(['cadence_id'], ['cadences.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_cadence_steps_cadence_id', 'cadence_steps', ['cadence_id'])

    op.create_table('sla_configs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('pipeline_id', sa.Integer(), nullable=True),
        sa.Column('stage_id', sa.Integer(), nullable=True),
        sa.Column('warning_hours', sa.Float(), nullable=False),
        sa.Column('max_hours', sa.Float(), nullable=False),
        sa.Column('critical_hours', sa.Float(), nullable=False),
        sa.Column('business_hours_only', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(['pipeline_id'], ['pipelines.id']),
        sa.ForeignKeyConstraint(['stage_id'], ['stages.id']),
        sa.PrimaryKeyConstraint('id'),
    )

    # Execution ledger
    op.create_table('execution_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('source_type', sa.Text(), nullable=False),
        sa.Column('source_id', sa.Integer(), nullable=False),
        sa.Column('step_index', sa.Integer(), nullable=True),
        sa.Column('lead_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('executed_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_execution_records_lead_id', 'execution_records', ['lead_id'])
    op.create_index('ix_execution_source_lead', 'execution_records',
                    ['source_type', 'source_id', 'lead_id', 'executed_at'])

    # Engine outputs
    op.create_table('notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=True),
        sa.Column('lead_id', sa.Integer(), nullable=True),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('extra', sa.JSON(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notifications_agent_id', 'notifications', ['agent_id'])
    op.create_index('ix_notification_lead_type', 'notifications', ['lead_id', 'type', 'created_at'])

    op.create_table('tasks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lead_id', sa.Integer(), nullable=False),
        sa.Column('assigned_to', sa.Integer(), nullable=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('priority', sa.Text(), nullable=True, server_default='medium'),
        sa.Column('status', sa.Text(), nullable=True, server_default='pending'),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reminded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('escalated', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('escalated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.ForeignKeyConstraint(['lead_id'], ['leads.id']),
        sa.ForeignKeyConstraint(['assigned_to'], ['agents.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_lead_id', 'tasks', ['lead_id'])

    op.create_table('lead_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lead_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.Text(), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('from_stage_id', sa.Integer(), nullable=True),
        sa.Column('to_stage_id', sa.Integer(), nullable=True),
        sa.Column('performed_by', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.ForeignKeyConstraint(['lead_id'], ['leads.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_lead_history_lead_id', 'lead_history', ['lead_id'])

    # Outbound messages
    op.create_table('message_templates',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('key', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('channel', sa.Text(), nullable=False, server_default='whatsapp'),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key'),
    )
    op.create_table('dispatch_queue',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lead_id', sa.Integer(), nullable=False),
        sa.Column('phone', sa.Text(), nullable=True),
        sa.Column('channel', sa.Text(), nullable=False, server_default='whatsapp'),
        sa.Column('cadence_id', sa.Integer(), nullable=True),
        sa.Column('step_index', sa.Integer(), nullable=True),
        sa.Column('template_id', sa.Integer(), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.ForeignKeyConstraint(['lead_id'], ['leads.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_dispatch_queue_lead_id', 'dispatch_queue', ['lead_id'])
    op.create_index('ix_dispatch_queue_status_scheduled', 'dispatch_queue', ['status', 'scheduled_for'])

    # Orchestrator log
    op.create_table('automation_runs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('kind', sa.Text(), nullable=False, server_default='master'),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('results', sa.JSON(), nullable=True),
        sa.Column('errors', sa.JSON(), nullable=True),
        sa.Column('skipped', sa.JSON(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), server_default=NOW, nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('automation_runs')
    op.drop_index('ix_dispatch_queue_status_scheduled', table_name='dispatch_queue')
    op.drop_index('ix_dispatch_queue_lead_id', table_name='dispatch_queue')
    op.drop_table('dispatch_queue')
    op.drop_table('message_templates')
    op.drop_index('ix_lead_history_lead_id', table_name='lead_history')
    op.drop_table('lead_history')
    op.drop_index('ix_tasks_lead_id', table_name='tasks')
    op.drop_table('tasks')
    op.drop_index('ix_notification_lead_type', table_name='notifications')
    op.drop_index('ix_notifications_agent_id', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('ix_execution_source_lead', table_name='execution_records')
    op.drop_index('ix_execution_records_lead_id', table_name='execution_records')
    op.drop_table('execution_records')
    op.drop_table('sla_configs')
    op.drop_index('ix_cadence_steps_cadence_id', table_name='cadence_steps')
    op.drop_table('cadence_steps')
    op.drop_table('cadences')
    op.drop_table('automation_rules')
    op.drop_index('ix_interactions_created_at', table_name='interactions')
    op.drop_index('ix_interactions_lead_id', table_name='interactions')
    op.drop_table('interactions')
    op.drop_index('ix_leads_assigned_to', table_name='leads')
    op.drop_index('ix_leads_team_id', table_name='leads')
    op.drop_index('ix_leads_stage_id', table_name='leads')
    op.drop_index('ix_leads_pipeline_id', table_name='leads')
    op.drop_table('leads')
    op.drop_index('ix_agents_team_id', table_name='agents')
    op.drop_table('agents')
    op.drop_table('teams')
    op.drop_index('ix_stages_pipeline_id', table_name='stages')
    op.drop_table('stages')
    op.drop_table('pipelines')
