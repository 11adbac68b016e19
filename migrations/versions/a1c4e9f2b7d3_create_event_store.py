"""create event store tables

Revision ID: a1c4e9f2b7d3
Revises:
Create Date: 2026-10-19

Creates the deduplicated record sets for deployments and incidents. The unique
indexes on the external identifiers are what enforce one record per upstream
entity. Also creates source_watermarks for per-source backfill high-water marks.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'a1c4e9f2b7d3'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'deployments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('external_run_id', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_deployments_external_run_id'), 'deployments', ['external_run_id'], unique=True)
    op.create_index(op.f('ix_deployments_timestamp'), 'deployments', ['timestamp'], unique=False)

    op.create_table(
        'incidents',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('external_incident_number', sa.String(), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        op.f('ix_incidents_external_incident_number'), 'incidents', ['external_incident_number'], unique=True
    )
    op.create_index(op.f('ix_incidents_start_time'), 'incidents', ['start_time'], unique=False)

    op.create_table(
        'source_watermarks',
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('high_water_mark', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('source'),
    )


def downgrade() -> None:
    op.drop_table('source_watermarks')
    op.drop_index(op.f('ix_incidents_start_time'), table_name='incidents')
    op.drop_index(op.f('ix_incidents_external_incident_number'), table_name='incidents')
    op.drop_table('incidents')
    op.drop_index(op.f('ix_deployments_timestamp'), table_name='deployments')
    op.drop_index(op.f('ix_deployments_external_run_id'), table_name='deployments')
    op.drop_table('deployments')
