"""Create deals table.

One row per sales opportunity, with the stage-dependent attributes as
nullable columns. RLS lets any signed-in Supabase user work on deals.

Revision ID: 001_create_deals
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.dialects import postgresql

revision: str = '001_create_deals'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STAGES = ('Lead', 'Discussions', 'Qualified', 'RFQ', 'Offered', 'Won', 'Lost', 'Dropped')


def upgrade() -> None:
    stage_list = ', '.join(f"'{s}'" for s in STAGES)

    op.create_table(
        'deals',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('modified_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('modified_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('deal_name', sa.String(255), nullable=False),
        sa.Column('stage', sa.String(20), nullable=False, server_default='Lead'),
        # Lead
        sa.Column('project_name', sa.String(255), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('lead_name', sa.String(255), nullable=True),
        sa.Column('lead_owner', sa.String(255), nullable=True),
        sa.Column('region', sa.String(100), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=True),
        sa.Column('probability', sa.Integer(), nullable=True),
        sa.Column('internal_comment', sa.Text(), nullable=True),
        # Discussions
        sa.Column('expected_closing_date', sa.Date(), nullable=True),
        sa.Column('customer_need', sa.Text(), nullable=True),
        sa.Column('customer_challenges', sa.String(20), nullable=True),
        sa.Column('relationship_strength', sa.String(20), nullable=True),
        # Qualified
        sa.Column('budget', sa.String(255), nullable=True),
        sa.Column('business_value', sa.String(20), nullable=True),
        sa.Column('decision_maker_level', sa.String(20), nullable=True),
        sa.Column('is_recurring', sa.String(20), nullable=True),
        # RFQ
        sa.Column('total_contract_value', sa.Numeric(15, 2), nullable=True),
        sa.Column('currency_type', sa.String(3), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('project_duration', sa.Integer(), nullable=True),
        sa.Column('action_items', sa.Text(), nullable=True),
        sa.Column('rfq_received_date', sa.Date(), nullable=True),
        sa.Column('proposal_due_date', sa.Date(), nullable=True),
        sa.Column('rfq_status', sa.String(20), nullable=True),
        # Offered
        sa.Column('current_status', sa.Text(), nullable=True),
        sa.Column('closing', sa.Text(), nullable=True),
        # Won
        sa.Column('won_reason', sa.Text(), nullable=True),
        sa.Column('quarterly_revenue_q1', sa.Numeric(15, 2), nullable=True),
        sa.Column('quarterly_revenue_q2', sa.Numeric(15, 2), nullable=True),
        sa.Column('quarterly_revenue_q3', sa.Numeric(15, 2), nullable=True),
        sa.Column('quarterly_revenue_q4', sa.Numeric(15, 2), nullable=True),
        sa.Column('total_revenue', sa.Numeric(15, 2), nullable=True),
        sa.Column('signed_contract_date', sa.Date(), nullable=True),
        sa.Column('implementation_start_date', sa.Date(), nullable=True),
        sa.Column('handoff_status', sa.String(20), nullable=True),
        # Lost
        sa.Column('lost_reason', sa.Text(), nullable=True),
        sa.Column('need_improvement', sa.Text(), nullable=True),
        # Dropped
        sa.Column('drop_reason', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(f"stage IN ({stage_list})", name='ck_deals_stage'),
        sa.CheckConstraint('priority IS NULL OR priority BETWEEN 1 AND 5', name='ck_deals_priority'),
        sa.CheckConstraint('probability IS NULL OR probability BETWEEN 0 AND 100', name='ck_deals_probability'),
    )
    op.create_index('ix_deals_stage', 'deals', ['stage'])
    op.create_index('ix_deals_modified_at', 'deals', ['modified_at'])
    # Import upserts match on lower(deal_name)
    op.execute('CREATE INDEX ix_deals_deal_name_lower ON deals (lower(deal_name))')

    conn = op.get_bind()
    conn.execute(text('ALTER TABLE deals ENABLE ROW LEVEL SECURITY'))
    conn.execute(text('''
        CREATE POLICY deals_authenticated ON deals
        FOR ALL
        TO authenticated
        USING (auth.uid() IS NOT NULL)
        WITH CHECK (auth.uid() IS NOT NULL)
    '''))
    conn.execute(text('GRANT SELECT, INSERT, UPDATE, DELETE ON deals TO authenticated'))


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text('DROP POLICY IF EXISTS deals_authenticated ON deals'))
    op.execute('DROP INDEX IF EXISTS ix_deals_deal_name_lower')
    op.drop_index('ix_deals_modified_at', 'deals')
    op.drop_index('ix_deals_stage', 'deals')
    op.drop_table('deals')
