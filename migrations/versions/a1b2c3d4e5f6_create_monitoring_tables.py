"""Create monitoring tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1b2c3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def table_exists(table_name):
    """Check if a table exists."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade():
    if not table_exists('user'):
        op.create_table('user',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(120), nullable=False),
        sa.Column('password_hash', sa.String(256), nullable=True),
        sa.Column('api_token', sa.String(64), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('unlocked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_user_email', 'user', ['email'], unique=True)
        op.create_index('ix_user_api_token', 'user', ['api_token'], unique=True)

    if not table_exists('credential_profile'):
        op.create_table('credential_profile',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('vendor', sa.String(20), nullable=False),
        sa.Column('auth_mode', sa.String(20), nullable=False),
        sa.Column('base_url', sa.String(255), nullable=True),
        sa.Column('secrets_encrypted', sa.LargeBinary(), nullable=True),
        sa.Column('secrets_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_credential_profile_user_id', 'credential_profile', ['user_id'], unique=False)

    if not table_exists('oauth_token'):
        op.create_table('oauth_token',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('profile_id', sa.Integer(), nullable=False),
        sa.Column('access_token_encrypted', sa.LargeBinary(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.LargeBinary(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('authorized_plant_ids', sa.Text(), nullable=True),
        sa.Column('secrets_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['profile_id'], ['credential_profile.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('profile_id')
        )

    if not table_exists('plant'):
        op.create_table('plant',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('vendor', sa.String(20), nullable=False),
        sa.Column('vendor_plant_id', sa.String(100), nullable=True),
        sa.Column('profile_id', sa.Integer(), nullable=True),
        sa.Column('capacity_kwp', sa.Float(), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=True),
        sa.Column('last_sync', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ),
        sa.ForeignKeyConstraint(['profile_id'], ['credential_profile.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_plant_user_id', 'plant', ['user_id'], unique=False)

    if not table_exists('reading'):
        op.create_table('reading',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('plant_id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('power_w', sa.Float(), nullable=True),
        sa.Column('energy_wh', sa.Float(), nullable=True),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('provenance', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['plant_id'], ['plant.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('plant_id', 'timestamp', 'source', name='uq_reading_plant_time_source')
        )
        op.create_index('ix_reading_plant_id', 'reading', ['plant_id'], unique=False)
        op.create_index('ix_reading_timestamp', 'reading', ['timestamp'], unique=False)

    if not table_exists('sync_run'):
        op.create_table('sync_run',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('plant_id', sa.Integer(), nullable=False),
        sa.Column('vendor', sa.String(20), nullable=False),
        sa.Column('trigger', sa.String(10), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('outcome', sa.String(10), nullable=False),
        sa.Column('error_class', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=True),
        sa.Column('readings_synced', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['plant_id'], ['plant.id'], ),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_sync_run_plant_id', 'sync_run', ['plant_id'], unique=False)

    if not table_exists('security_audit_log'):
        op.create_table('security_audit_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], ),
        sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_security_audit_log_action', 'security_audit_log', ['action'], unique=False)
        op.create_index('ix_security_audit_log_user_id', 'security_audit_log', ['user_id'], unique=False)
        op.create_index('ix_security_audit_log_created_at', 'security_audit_log', ['created_at'], unique=False)


def downgrade():
    for table in ('security_audit_log', 'sync_run', 'reading', 'plant', 'oauth_token', 'credential_profile', 'user'):
        if table_exists(table):
            op.drop_table(table)
