"""create identity and state_entry tables

Revision ID: 4c7d2e9a1b30
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c7d2e9a1b30'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'identity' not in existing_tables:
        op.create_table(
            'identity',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('uid', sa.String(length=64), nullable=False),
            sa.Column('token_hash', sa.String(length=128), nullable=False),
            sa.Column('created_at', sa.Float(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_identity_uid', 'identity', ['uid'], unique=True)

    if 'state_entry' not in existing_tables:
        op.create_table(
            'state_entry',
            sa.Column('path', sa.String(length=255), nullable=False),
            sa.Column('value', sa.Text(), nullable=False),
            sa.PrimaryKeyConstraint('path'),
        )


def downgrade():
    op.drop_table('state_entry')
    op.drop_index('ix_identity_uid', table_name='identity')
    op.drop_table('identity')
