"""Create namespaces and arena tables

Revision ID: 001_arena
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_arena'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the namespace registry and the shared entity arena."""

    op.create_table(
        'namespaces',
        sa.Column('name', sa.String(15), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'arena',
        sa.Column('namespace', sa.String(15), primary_key=True),
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=False),

        # Hierarchy and ordering
        sa.Column('up', sa.Integer, nullable=False, server_default='0'),
        sa.Column('ord', sa.Integer, nullable=False, server_default='0'),

        # Type, base or requisite id, and the value itself
        sa.Column('t', sa.Integer, nullable=False, server_default='0'),
        sa.Column('val', sa.Text, nullable=False, server_default=''),
    )

    op.create_index('idx_arena_type', 'arena', ['namespace', 't'])
    op.create_index('idx_arena_parent', 'arena', ['namespace', 'up'])

    # Dense order per (parent, type); type rows keep their unique flag in ord
    op.create_index(
        'uq_arena_order',
        'arena',
        ['namespace', 'up', 't', 'ord'],
        unique=True,
        postgresql_where=sa.text('up <> 0'),
        sqlite_where=sa.text('up <> 0'),
    )


def downgrade() -> None:
    """Drop the arena and the namespace registry."""
    op.drop_index('uq_arena_order', table_name='arena')
    op.drop_index('idx_arena_parent', table_name='arena')
    op.drop_index('idx_arena_type', table_name='arena')
    op.drop_table('arena')
    op.drop_table('namespaces')
