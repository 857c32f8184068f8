"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

Creates all tables for the KYC screening & escalation engine as defined
in database/models.py.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    'entity_kind': ('INDIVIDUAL', 'ORGANISATION'),
    'risk_tier': ('LOW', 'MEDIUM', 'HIGH'),
    'kyc_outcome': ('PASS', 'FAIL', 'MANUAL'),
    'case_reason': ('THRESHOLD', 'RISK_ESCALATION', 'ADVERSE_MEDIA', 'MANUAL'),
    'case_status': ('OPEN', 'UNDER_REVIEW', 'SUBMITTED', 'CLOSED'),
    'case_priority': ('LOW', 'MEDIUM', 'HIGH', 'URGENT'),
    'party_role': ('BUYER', 'SELLER'),
    'user_role': ('DIRECTOR', 'COMPLIANCE', 'AGENT'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
    ]


def upgrade() -> None:
    """Create initial database schema."""

    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name, create_type=True).create(
            op.get_bind(), checkfirst=True
        )

    op.create_table(
        'entities',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('kind', _enum('entity_kind'), nullable=False),
        sa.Column('full_name', sa.String(300)),
        sa.Column('legal_name', sa.String(300)),
        sa.Column('date_of_birth', sa.String(20)),
        sa.Column('country', sa.String(100)),
        sa.Column('org_identifier', sa.String(50)),
        sa.Column('industry', sa.String(100)),
        sa.Column('jurisdiction', sa.String(100)),
        sa.Column('org_id', sa.String(100)),
        sa.Column('risk_tier', _enum('risk_tier'), nullable=False),
        sa.Column('last_screened_at', sa.DateTime(timezone=True)),
        sa.Column('last_screening_id', sa.Uuid()),
        sa.Column('last_kyc_id', sa.Uuid()),
        sa.Column('superseded_by_id', sa.Uuid(), sa.ForeignKey('entities.id')),
        *_timestamps(),
    )

    op.create_table(
        'deals',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('address', sa.String(500), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('org_id', sa.String(100)),
        *_timestamps(),
    )

    op.create_table(
        'parties',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deal_id', sa.Uuid(), sa.ForeignKey('deals.id'), nullable=False),
        sa.Column('entity_id', sa.Uuid(), sa.ForeignKey('entities.id')),
        sa.Column('role', _enum('party_role'), nullable=False),
        sa.Column('doc_type', sa.String(50)),
        *_timestamps(),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(300), nullable=False, unique=True),
        sa.Column('role', _enum('user_role'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('org_id', sa.String(100)),
        *_timestamps(),
    )

    op.create_table(
        'kyc_records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('entity_id', sa.Uuid(), sa.ForeignKey('entities.id'), nullable=False),
        sa.Column('deal_id', sa.Uuid(), sa.ForeignKey('deals.id')),
        sa.Column('party_id', sa.Uuid(), sa.ForeignKey('parties.id')),
        sa.Column('outcome', _enum('kyc_outcome'), nullable=False),
        sa.Column('document_type', sa.String(50)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'screening_records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('entity_id', sa.Uuid(), sa.ForeignKey('entities.id'), nullable=False),
        sa.Column('pep', sa.Boolean(), nullable=False),
        sa.Column('sanctions', sa.Boolean(), nullable=False),
        sa.Column('adverse_media', sa.Boolean(), nullable=False),
        sa.Column('identity_verification_failed', sa.Boolean(), nullable=False),
        sa.Column('provider_tier', _enum('risk_tier'), nullable=False),
        sa.Column('findings', postgresql.JSONB(), nullable=False),
        sa.Column('raw_payload', postgresql.JSONB()),
        sa.Column('trigger', sa.String(20)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'cases',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('entity_id', sa.Uuid(), sa.ForeignKey('entities.id'), nullable=False),
        sa.Column('deal_id', sa.Uuid(), sa.ForeignKey('deals.id')),
        sa.Column('title', sa.String(300), nullable=False),
        sa.Column('reason', _enum('case_reason'), nullable=False),
        sa.Column('status', _enum('case_status'), nullable=False),
        sa.Column('priority', _enum('case_priority'), nullable=False),
        sa.Column('auto_created', sa.Boolean(), nullable=False),
        sa.Column('created_by_id', sa.Uuid(), sa.ForeignKey('users.id')),
        sa.Column('assigned_to_id', sa.Uuid(), sa.ForeignKey('users.id')),
        sa.Column('org_id', sa.String(100)),
        sa.Column('closed_at', sa.DateTime(timezone=True)),
        *_timestamps(),
    )

    op.create_table(
        'case_notes',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('author', sa.String(100), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('subject_type', sa.String(50), nullable=False),
        sa.Column('subject_id', sa.String(100), nullable=False),
        sa.Column('case_id', sa.String(100)),
        sa.Column('payload', postgresql.JSONB()),
        sa.Column('actor_id', sa.String(100)),
        sa.Column('org_id', sa.String(100)),
    )

    # Indexes
    op.create_index('ix_entities_full_name', 'entities', ['full_name'])
    op.create_index('ix_entities_legal_name', 'entities', ['legal_name'])
    op.create_index('ix_entities_org_id', 'entities', ['org_id'])
    op.create_index('ix_entities_last_screened_at', 'entities', ['last_screened_at'])
    op.create_index('ix_entity_org_screened', 'entities', ['org_id', 'last_screened_at'])

    op.create_index('ix_deals_org_id', 'deals', ['org_id'])
    op.create_index('ix_parties_deal_id', 'parties', ['deal_id'])
    op.create_index('ix_parties_entity_id', 'parties', ['entity_id'])
    op.create_index('ix_users_org_id', 'users', ['org_id'])

    op.create_index('ix_kyc_records_entity_id', 'kyc_records', ['entity_id'])
    op.create_index('ix_kyc_records_deal_id', 'kyc_records', ['deal_id'])
    op.create_index('ix_kyc_records_created_at', 'kyc_records', ['created_at'])
    op.create_index('ix_kyc_entity_outcome_date', 'kyc_records',
                    ['entity_id', 'outcome', 'created_at'])

    op.create_index('ix_screening_records_entity_id', 'screening_records', ['entity_id'])
    op.create_index('ix_screening_records_created_at', 'screening_records', ['created_at'])

    op.create_index('ix_cases_entity_id', 'cases', ['entity_id'])
    op.create_index('ix_cases_status', 'cases', ['status'])
    op.create_index('ix_cases_assigned_to_id', 'cases', ['assigned_to_id'])
    op.create_index('ix_cases_org_id', 'cases', ['org_id'])
    op.create_index('ix_case_entity_status', 'cases', ['entity_id', 'status'])
    op.create_index('ix_case_notes_case_id', 'case_notes', ['case_id'])

    op.create_index('ix_audit_events_timestamp', 'audit_events', ['timestamp'])
    op.create_index('ix_audit_events_action', 'audit_events', ['action'])
    op.create_index('ix_audit_events_case_id', 'audit_events', ['case_id'])
    op.create_index('ix_audit_events_actor_id', 'audit_events', ['actor_id'])
    op.create_index('ix_audit_events_org_id', 'audit_events', ['org_id'])
    op.create_index('ix_audit_subject', 'audit_events', ['subject_type', 'subject_id'])
    op.create_index('ix_audit_timestamp_action', 'audit_events', ['timestamp', 'action'])

    # Append-only tables: reject UPDATE and DELETE at the database level
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_append_only_mutation()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql;
    """)
    for table in ('kyc_records', 'screening_records', 'audit_events'):
        op.execute(f"""
            CREATE TRIGGER {table}_append_only
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION reject_append_only_mutation();
        """)


def downgrade() -> None:
    """Drop all tables."""

    for table in ('kyc_records', 'screening_records', 'audit_events'):
        op.execute(f'DROP TRIGGER IF EXISTS {table}_append_only ON {table}')
    op.execute('DROP FUNCTION IF EXISTS reject_append_only_mutation()')

    op.drop_table('audit_events')
    op.drop_table('case_notes')
    op.drop_table('cases')
    op.drop_table('screening_records')
    op.drop_table('kyc_records')
    op.drop_table('users')
    op.drop_table('parties')
    op.drop_table('deals')
    op.drop_table('entities')

    for name in reversed(list(ENUMS)):
        op.execute(f'DROP TYPE IF EXISTS {name}')
