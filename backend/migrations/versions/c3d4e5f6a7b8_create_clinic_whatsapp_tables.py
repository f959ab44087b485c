"""Create clinic CRM WhatsApp tables

Revision ID: c3d4e5f6a7b8
Revises:
Create Date: 2026-10-18

This migration adds:
- companies / users: tenants (only the columns the WhatsApp core reads)
- leads: one per contact phone per tenant
- evolution_instances: tenant WhatsApp connections on the Evolution provider
- whatsapp_messages: inbound/outbound messages, unique by wamid
- webhooks: audit log of provider events and automation relays
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = 'c3d4e5f6a7b8'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'companies',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('name', sa.Text(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('api_key', sa.Text(), nullable=True, unique=True),
        sa.Column('company_name', sa.Text(), nullable=True),
        sa.Column('company_id', sa.Text(), sa.ForeignKey('companies.id', ondelete='SET NULL'), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_users_company_id', 'users', ['company_id'])

    op.create_table(
        'leads',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('user_id', sa.Text(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('contact', sa.Text(), nullable=True),
        sa.Column('source', sa.Text(), nullable=True),
        sa.Column('stage', sa.Text(), nullable=False, server_default='Novo'),
        sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_leads_user_contact', 'leads', ['user_id', 'contact'])
    op.create_index('idx_leads_stage', 'leads', ['stage'])

    op.create_table(
        'evolution_instances',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('user_id', sa.Text(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('instance_id', sa.Text(), nullable=False, unique=True),
        sa.Column('provider_instance_id', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='disconnected'),
        sa.Column('connected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=True, server_default='{}'),
        *_timestamps(),
    )
    op.create_index('idx_evolution_instances_user_created', 'evolution_instances', ['user_id', 'created_at'])
    op.create_index('idx_evolution_instances_provider_id', 'evolution_instances', ['provider_instance_id'])

    op.create_table(
        'whatsapp_messages',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('user_id', sa.Text(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),

        # Provider key
        sa.Column('wamid', sa.Text(), nullable=False, unique=True),
        sa.Column('remote_jid', sa.Text(), nullable=True),
        sa.Column('remote_jid_alt', sa.Text(), nullable=True),
        sa.Column('phone_raw', sa.Text(), nullable=True),
        sa.Column('addressing_mode', sa.Text(), nullable=True),
        sa.Column('participant', sa.Text(), nullable=True),
        sa.Column('sender', sa.Text(), nullable=True),

        # Content
        sa.Column('from_me', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('direction', sa.Text(), nullable=False),
        sa.Column('message_type', sa.Text(), nullable=True),
        sa.Column('conversation', sa.Text(), nullable=True),
        sa.Column('caption', sa.Text(), nullable=True),
        sa.Column('media_url', sa.Text(), nullable=True),
        sa.Column('push_name', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_status', sa.Text(), nullable=True),

        # Ad attribution
        sa.Column('is_ad', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ad_source_type', sa.Text(), nullable=True),
        sa.Column('ad_source_id', sa.Text(), nullable=True),
        sa.Column('ad_source_url', sa.Text(), nullable=True),
        sa.Column('ctwa_clid', sa.Text(), nullable=True),
        sa.Column('ad_title', sa.Text(), nullable=True),
        sa.Column('ad_body', sa.Text(), nullable=True),
        sa.Column('ad_thumbnail_url', sa.Text(), nullable=True),
        sa.Column('conversion_source', sa.Text(), nullable=True),

        # Hashed PII
        sa.Column('hashed_phone', sa.Text(), nullable=True),
        sa.Column('hashed_first_name', sa.Text(), nullable=True),
        sa.Column('hashed_last_name', sa.Text(), nullable=True),
        sa.Column('hashed_email', sa.Text(), nullable=True),

        sa.Column('external_id', sa.Text(), nullable=True),
        sa.Column('raw_json', postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_whatsapp_messages_user_phone_ts', 'whatsapp_messages', ['user_id', 'phone_raw', 'timestamp'])
    op.create_index('idx_whatsapp_messages_user_updated', 'whatsapp_messages', ['user_id', 'updated_at'])
    op.create_index('idx_whatsapp_messages_remote_jid', 'whatsapp_messages', ['remote_jid'])

    op.create_table(
        'webhooks',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('user_id', sa.Text(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event', sa.Text(), nullable=False),
        sa.Column('instance_id', sa.Text(), nullable=True),
        sa.Column('provider_instance_id', sa.Text(), nullable=True),
        sa.Column('slot_id', sa.Text(), nullable=True),
        sa.Column('wamid', sa.Text(), nullable=True),
        sa.Column('phone_raw', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_json', postgresql.JSONB(), nullable=True),
        sa.Column('jsonrow', postgresql.JSONB(), nullable=True),
        sa.Column('outbound_url', sa.Text(), nullable=True),
        sa.Column('outbound_json', postgresql.JSONB(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_webhooks_user_event', 'webhooks', ['user_id', 'event'])
    op.create_index('idx_webhooks_status', 'webhooks', ['status'])
    op.create_index('idx_webhooks_created_at', 'webhooks', ['created_at'])


def downgrade() -> None:
    op.drop_table('webhooks')
    op.drop_table('whatsapp_messages')
    op.drop_table('evolution_instances')
    op.drop_table('leads')
    op.drop_table('users')
    op.drop_table('companies')
