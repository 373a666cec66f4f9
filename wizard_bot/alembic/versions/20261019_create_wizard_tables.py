# alembic revision: users, downloads, download_errors, stickers, inbound_messages
from alembic import op
import sqlalchemy as sa

revision = '20261019_create_wizard_tables'
down_revision = None
branch_labels = None
depends_on = None

download_status = sa.Enum('UNKNOWN', 'PENDING', 'SENT', 'FAILED', name='downloadstatus')

def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('phone', sa.String(32), nullable=False, unique=True),
        sa.Column('platform', sa.String(32), nullable=True),
        sa.Column('country', sa.String(16), nullable=True),
        sa.Column('first_seen', sa.TIMESTAMP(timezone=True), server_default=sa.text("now()")),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text("now()")),
    )

    op.create_table(
        'downloads',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('status', download_status, nullable=False, server_default='UNKNOWN'),
        sa.Column('owner_id', sa.String(36), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('requested_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text("now()")),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index('ix_downloads_status_requested', 'downloads', ['status', 'requested_at'])

    op.create_table(
        'download_errors',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('download_id', sa.String(36), sa.ForeignKey('downloads.id', ondelete='CASCADE'), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text("now()")),
    )

    op.create_table(
        'stickers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('timestamp', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text("now()")),
    )

    op.create_table(
        'inbound_messages',
        sa.Column('message_sid', sa.Text(), primary_key=True),
        sa.Column('from_number', sa.Text(), nullable=False),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('profile_name', sa.String(120), nullable=True),
        sa.Column('num_media', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('media_url', sa.Text(), nullable=True),
        sa.Column('media_content_type', sa.String(100), nullable=True),
        sa.Column('received_at', sa.TIMESTAMP(timezone=True),
                  server_default=sa.text("now()"), nullable=False),
        sa.Column('read_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index('ix_inbound_messages_from_received', 'inbound_messages', ['from_number', 'received_at'])

def downgrade():
    op.drop_index('ix_inbound_messages_from_received', table_name='inbound_messages')
    op.drop_table('inbound_messages')
    op.drop_table('stickers')
    op.drop_table('download_errors')
    op.drop_index('ix_downloads_status_requested', table_name='downloads')
    op.drop_table('downloads')
    op.drop_table('users')
    download_status.drop(op.get_bind(), checkfirst=True)
