"""create breweries and ledger_blocks tables

Revision ID: 0001_breweries_and_ledger
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_breweries_and_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'breweries',
        sa.Column('id', sa.String(length=128), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(op.f('ix_breweries_id'), 'breweries', ['id'])
    op.create_table(
        'ledger_blocks',
        sa.Column('brewery_id', sa.String(length=128), nullable=False),
        sa.Column('index_num', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.String(length=64), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('previous_hash', sa.String(length=64), nullable=False),
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['brewery_id'], ['breweries.id'], ondelete='CASCADE'),
        # one block per (brewery, index): the loser of an append race is rejected here
        sa.PrimaryKeyConstraint('brewery_id', 'index_num', name='pk_ledger_blocks'),
    )
    op.create_index(op.f('ix_ledger_blocks_brewery_id'), 'ledger_blocks', ['brewery_id'])


def downgrade():
    op.drop_index(op.f('ix_ledger_blocks_brewery_id'), table_name='ledger_blocks')
    op.drop_table('ledger_blocks')
    op.drop_index(op.f('ix_breweries_id'), table_name='breweries')
    op.drop_table('breweries')
