"""create_video_files

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-19 09:12:05.318224

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7e40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'video_files',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('namespace', sa.String(), nullable=False),
        sa.Column('original_filename', sa.String(), nullable=False),
        sa.Column('content_type', sa.String(), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('storage_key', sa.String(), nullable=False),
        sa.Column('is_processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processing_progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('duration', sa.Float(), nullable=True),
        sa.Column('width', sa.Integer(), nullable=True),
        sa.Column('height', sa.Integer(), nullable=True),
        sa.Column('codec', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_video_files_namespace', 'video_files', ['namespace'])
    op.create_index('ix_video_files_is_processed', 'video_files', ['is_processed'])


def downgrade() -> None:
    op.drop_index('ix_video_files_is_processed', table_name='video_files')
    op.drop_index('ix_video_files_namespace', table_name='video_files')
    op.drop_table('video_files')
