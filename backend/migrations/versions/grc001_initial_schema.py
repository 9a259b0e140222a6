"""initial grc schema

Revision ID: grc001
Revises:
Create Date: 2026-10-01 00:00:00.000000

Creates the complete rebate schema:
- merchants / members: parties, identified by identity-provider principal ids
- certificate_purchases: inventory ledger (only confirmed rows count)
- certificates: issued GRCs, one row per issuance
- certificate_queue_entries: member activation order
- receipts / monthly_qualifications: monthly qualification tracking
- surveys / survey_responses / merchant_reviews: registration and monthly feedback
- domain_events: notification outbox

Concurrency invariants enforced here rather than in application code:
- one active certificate per member (partial unique index)
- one open certificate per (merchant, recipient_email) (partial unique index)
- one non-rejected receipt per (member, image_hash) (partial unique index)
- one qualification row per (member, certificate, year, month)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'grc001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # merchants / members
    # ============================================================================
    op.create_table(
        'merchants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_ref', sa.String(length=64), nullable=True),
        sa.Column('business_name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_ref', name='uq_merchants_user_ref'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'members',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_ref', sa.String(length=64), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='UTC'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_ref', name='uq_members_user_ref'),
        sa.UniqueConstraint('email', name='uq_members_email'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # certificate_purchases: inventory ledger
    # ============================================================================
    op.create_table(
        'certificate_purchases',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('denomination', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('total_cost_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('is_trial', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('external_ref', sa.String(length=64), nullable=True),
        sa.Column('payment_notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.String(length=255), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settled_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('merchant_id', 'external_ref', name='uq_purchases_merchant_external_ref'),
        sa.CheckConstraint('quantity > 0', name='ck_purchases_quantity_positive'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_certificate_purchases_merchant_id', 'certificate_purchases', ['merchant_id'])
    op.create_index('ix_certificate_purchases_payment_status', 'certificate_purchases', ['payment_status'])
    op.create_index('ix_purchases_merchant_denom_status', 'certificate_purchases',
                    ['merchant_id', 'denomination', 'payment_status'])

    # ============================================================================
    # certificates
    # ============================================================================
    op.create_table(
        'certificates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('member_id', sa.Integer(), nullable=True),
        sa.Column('denomination', sa.Integer(), nullable=False),
        sa.Column('cost_per_cert_cents', sa.Integer(), nullable=False),
        sa.Column('recipient_email', sa.String(length=255), nullable=True),
        sa.Column('recipient_name', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('months_remaining', sa.Integer(), nullable=False),
        sa.Column('bonus_month_awarded', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('grocery_store', sa.String(length=255), nullable=True),
        sa.Column('grocery_store_place_id', sa.String(length=255), nullable=True),
        sa.Column('start_month', sa.Integer(), nullable=True),
        sa.Column('start_year', sa.Integer(), nullable=True),
        sa.Column('issuance_key', sa.String(length=64), nullable=True),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('registered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], ),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('merchant_id', 'issuance_key', name='uq_certificates_merchant_issuance_key'),
        sa.CheckConstraint('months_remaining >= 0', name='ck_certificates_months_non_negative'),
        sa.CheckConstraint(
            "(status IN ('pending', 'expired') AND member_id IS NULL)"
            " OR (status IN ('active', 'completed') AND member_id IS NOT NULL)",
            name='ck_certificates_member_matches_status'
        ),
        sa.CheckConstraint("status <> 'completed' OR months_remaining = 0",
                           name='ck_certificates_completed_at_zero'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_certificates_merchant_id', 'certificates', ['merchant_id'])
    op.create_index('ix_certificates_member_id', 'certificates', ['member_id'])
    op.create_index('ix_certificates_status', 'certificates', ['status'])
    op.create_index('ix_certificates_merchant_denom', 'certificates', ['merchant_id', 'denomination'])
    op.create_index(
        'uq_certificates_one_active_per_member', 'certificates', ['member_id'],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index(
        'uq_certificates_open_per_recipient', 'certificates', ['merchant_id', 'recipient_email'],
        unique=True,
        sqlite_where=sa.text("status IN ('pending', 'active') AND recipient_email IS NOT NULL"),
        postgresql_where=sa.text("status IN ('pending', 'active') AND recipient_email IS NOT NULL"),
    )

    op.create_table(
        'certificate_queue_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('member_id', sa.Integer(), nullable=False),
        sa.Column('certificate_id', sa.Integer(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('eligible_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], ),
        sa.ForeignKeyConstraint(['certificate_id'], ['certificates.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('certificate_id', name='uq_queue_certificate'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_certificate_queue_entries_member_id', 'certificate_queue_entries', ['member_id'])
    op.create_index('ix_queue_member_order', 'certificate_queue_entries', ['member_id', 'sort_order'])

    # ============================================================================
    # receipts
    # ============================================================================
    op.create_table(
        'receipts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('member_id', sa.Integer(), nullable=False),
        sa.Column('certificate_id', sa.Integer(), nullable=False),
        sa.Column('image_url', sa.Text(), nullable=False),
        sa.Column('image_hash', sa.String(length=64), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=True),
        sa.Column('receipt_date', sa.Date(), nullable=True),
        sa.Column('extracted_store_name', sa.String(length=255), nullable=True),
        sa.Column('ocr_payload', sa.JSON(), nullable=True),
        sa.Column('store_mismatch', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('date_mismatch', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('member_override', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('needs_manual_review', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_year', sa.Integer(), nullable=False),
        sa.Column('period_month', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('approved_amount_cents', sa.Integer(), nullable=True),
        sa.Column('rejection_reason', sa.String(length=100), nullable=True),
        sa.Column('rejection_notes', sa.Text(), nullable=True),
        sa.Column('reupload_allowed_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('replaces_receipt_id', sa.Integer(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed_by', sa.String(length=64), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], ),
        sa.ForeignKeyConstraint(['certificate_id'], ['certificates.id'], ),
        sa.ForeignKeyConstraint(['replaces_receipt_id'], ['receipts.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('replaces_receipt_id', name='uq_receipts_replaces'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_receipts_member_id', 'receipts', ['member_id'])
    op.create_index('ix_receipts_certificate_id', 'receipts', ['certificate_id'])
    op.create_index('ix_receipts_status', 'receipts', ['status'])
    op.create_index('ix_receipts_period', 'receipts',
                    ['member_id', 'certificate_id', 'period_year', 'period_month'])
    op.create_index('ix_receipts_status_submitted', 'receipts', ['status', 'submitted_at'])
    op.create_index(
        'uq_receipts_member_image_hash_open', 'receipts', ['member_id', 'image_hash'],
        unique=True,
        sqlite_where=sa.text("status <> 'rejected' AND image_hash IS NOT NULL"),
        postgresql_where=sa.text("status <> 'rejected' AND image_hash IS NOT NULL"),
    )

    # ============================================================================
    # monthly_qualifications
    # ============================================================================
    op.create_table(
        'monthly_qualifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('member_id', sa.Integer(), nullable=False),
        sa.Column('certificate_id', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('approved_total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='in_progress'),
        sa.Column('open_review_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('survey_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('qualified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('forfeited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('forfeit_reason', sa.String(length=255), nullable=True),
        sa.Column('reward_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reward_tracking_code', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], ),
        sa.ForeignKeyConstraint(['certificate_id'], ['certificates.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('member_id', 'certificate_id', 'year', 'month', name='uq_qualifications_period'),
        sa.CheckConstraint('approved_total_cents >= 0', name='ck_qualifications_total_non_negative'),
        sa.CheckConstraint('month BETWEEN 1 AND 12', name='ck_qualifications_month_range'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_monthly_qualifications_member_id', 'monthly_qualifications', ['member_id'])
    op.create_index('ix_monthly_qualifications_certificate_id', 'monthly_qualifications', ['certificate_id'])
    op.create_index('ix_monthly_qualifications_status', 'monthly_qualifications', ['status'])
    op.create_index('ix_qualifications_status_reward', 'monthly_qualifications', ['status', 'reward_sent_at'])

    # ============================================================================
    # surveys / reviews
    # ============================================================================
    op.create_table(
        'surveys',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('questions', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_surveys_merchant_id', 'surveys', ['merchant_id'])
    op.create_index('ix_surveys_merchant_active', 'surveys', ['merchant_id', 'is_active'])

    op.create_table(
        'survey_responses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('survey_id', sa.Integer(), nullable=False),
        sa.Column('member_id', sa.Integer(), nullable=False),
        sa.Column('certificate_id', sa.Integer(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('month', sa.Integer(), nullable=True),
        sa.Column('answers', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['survey_id'], ['surveys.id'], ),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], ),
        sa.ForeignKeyConstraint(['certificate_id'], ['certificates.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('survey_id', 'member_id', 'year', 'month', name='uq_survey_responses_month'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_survey_responses_survey_id', 'survey_responses', ['survey_id'])
    op.create_index('ix_survey_responses_member_id', 'survey_responses', ['member_id'])

    op.create_table(
        'merchant_reviews',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('member_id', sa.Integer(), nullable=False),
        sa.Column('certificate_id', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('word_count', sa.Integer(), nullable=False),
        sa.Column('bonus_month_awarded', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], ),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], ),
        sa.ForeignKeyConstraint(['certificate_id'], ['certificates.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_merchant_reviews_merchant_id', 'merchant_reviews', ['merchant_id'])
    op.create_index('ix_merchant_reviews_member_id', 'merchant_reviews', ['member_id'])

    # ============================================================================
    # domain_events: notification outbox
    # ============================================================================
    op.create_table(
        'domain_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=True),
        sa.Column('member_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], ),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_domain_events_event_type', 'domain_events', ['event_type'])
    op.create_index('ix_domain_events_entity_id', 'domain_events', ['entity_id'])
    op.create_index('ix_domain_events_merchant_id', 'domain_events', ['merchant_id'])
    op.create_index('ix_domain_events_member_id', 'domain_events', ['member_id'])
    op.create_index('ix_domain_events_occurred_at', 'domain_events', ['occurred_at'])
    op.create_index('ix_domain_events_undispatched', 'domain_events', ['dispatched_at', 'id'])


def downgrade():
    op.drop_table('domain_events')
    op.drop_table('merchant_reviews')
    op.drop_table('survey_responses')
    op.drop_table('surveys')
    op.drop_table('monthly_qualifications')
    op.drop_table('receipts')
    op.drop_table('certificate_queue_entries')
    op.drop_table('certificates')
    op.drop_table('certificate_purchases')
    op.drop_table('members')
    op.drop_table('merchants')
