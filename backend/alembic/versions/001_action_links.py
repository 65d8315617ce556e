"""Action link schema.

Revision ID: 001_action_links
Revises:
Create Date: 2026-10-19

Creates users, quotes, action_links and audit_logs.

SECURITY:
- action_links stores only the SHA-256 of each token (unique index)
- CHECK constraints keep use_count within [0, max_uses]
- audit_logs is write-once: triggers block UPDATE and DELETE
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_action_links'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create action link tables and audit immutability triggers."""
    # ==========================================================================
    # USERS
    # ==========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'email', name='uq_users_tenant_email'),
    )
    op.create_index('ix_users_tenant_id', 'users', ['tenant_id'])
    op.create_index('ix_users_tenant_email', 'users', ['tenant_id', 'email'])

    # ==========================================================================
    # QUOTES (engagement columns only)
    # ==========================================================================
    op.create_table(
        'quotes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('first_opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('open_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_quotes_tenant_id', 'quotes', ['tenant_id'])

    # ==========================================================================
    # ACTION LINKS
    # ==========================================================================
    op.create_table(
        'action_links',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False),
        sa.Column('created_by_user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('token_hash', sa.String(64), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('action_type', sa.String(20), nullable=False),
        sa.Column('metadata', postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('max_uses', sa.Integer(), server_default='1', nullable=False),
        sa.Column('use_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('last_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('use_count >= 0', name='ck_action_links_use_count_nonnegative'),
        sa.CheckConstraint('use_count <= max_uses', name='ck_action_links_use_count_bounded'),
        sa.CheckConstraint('max_uses BETWEEN 1 AND 100', name='ck_action_links_max_uses_range'),
        sa.CheckConstraint("status IN ('active', 'consumed')", name='ck_action_links_status_values'),
    )
    op.create_index('ix_action_links_token_hash', 'action_links', ['token_hash'], unique=True)
    op.create_index('ix_action_links_tenant_id', 'action_links', ['tenant_id'])
    op.create_index('ix_action_links_tenant_created', 'action_links', ['tenant_id', 'created_at'])

    # ==========================================================================
    # AUDIT LOGS (immutable, hash-chained per tenant)
    # ==========================================================================
    audit_action = postgresql.ENUM(
        'action_link.create', 'action_link.verify', 'action_link.consume',
        name='auditaction',
    )
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('action', audit_action, nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('extra_data', postgresql.JSONB(), nullable=True),
        sa.Column('integrity_hash', sa.String(64), nullable=True),
        sa.Column('previous_hash', sa.String(64), nullable=True),
    )
    op.create_index('ix_audit_logs_tenant_id', 'audit_logs', ['tenant_id'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_resource_id', 'audit_logs', ['resource_id'])
    op.create_index('ix_audit_logs_integrity_hash', 'audit_logs', ['integrity_hash'])
    op.create_index('ix_audit_logs_previous_hash', 'audit_logs', ['previous_hash'])
    op.create_index('ix_audit_logs_resource', 'audit_logs', ['resource_type', 'resource_id'])
    op.create_index('ix_audit_logs_timestamp_action', 'audit_logs', ['timestamp', 'action'])

    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_audit_modification()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION '% operations are not permitted on % table. Audit records are immutable.',
                TG_OP, TG_TABLE_NAME
                USING ERRCODE = 'restrict_violation';
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER audit_logs_prevent_update
        BEFORE UPDATE ON audit_logs
        FOR EACH ROW
        EXECUTE FUNCTION prevent_audit_modification();
    """)

    op.execute("""
        CREATE TRIGGER audit_logs_prevent_delete
        BEFORE DELETE ON audit_logs
        FOR EACH ROW
        EXECUTE FUNCTION prevent_audit_modification();
    """)


def downgrade() -> None:
    """Drop action link tables."""
    op.execute("DROP TRIGGER IF EXISTS audit_logs_prevent_delete ON audit_logs")
    op.execute("DROP TRIGGER IF EXISTS audit_logs_prevent_update ON audit_logs")
    op.execute("DROP FUNCTION IF EXISTS prevent_audit_modification()")

    op.drop_table('audit_logs')
    op.execute("DROP TYPE IF EXISTS auditaction")
    op.drop_table('action_links')
    op.drop_table('quotes')
    op.drop_table('users')
