"""Create affiliate engine tables

Revision ID: 20261018_create_affiliate_tables
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision = '20261018_create_affiliate_tables'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(with_updated: bool = True):
    columns = [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    ]
    if with_updated:
        columns.append(
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                      server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    # Clinic projection (owned by the tenancy service)
    op.create_table(
        'clinics',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('domain', sa.String(255), nullable=True, unique=True,
                  comment='Public hostname used to resolve clinic context'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('branding', JSONB, nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index('ix_clinics_domain', 'clinics', ['domain'])

    # Commission plans and product rules
    op.create_table(
        'affiliate_commission_plans',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('clinic_id', UUID(as_uuid=True), sa.ForeignKey('clinics.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('commission_type', sa.String(50), nullable=False, server_default='PERCENT'),
        sa.Column('percent_bps', sa.Integer, nullable=True, comment='Basis points, 1000 = 10%'),
        sa.Column('flat_amount_cents', sa.Integer, nullable=True),
        sa.Column('applies_to', sa.String(50), nullable=False, server_default='ALL_PAYMENTS'),
        sa.Column('recurring_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('recurring_percent_bps', sa.Integer, nullable=True),
        sa.Column('recurring_flat_amount_cents', sa.Integer, nullable=True),
        sa.Column('recurring_months', sa.Integer, nullable=True),
        sa.Column('recurring_decay_pct', sa.Integer, nullable=True),
        sa.Column('tier_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_default', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint('percent_bps IS NULL OR (percent_bps >= 0 AND percent_bps <= 10000)',
                           name='ck_plan_percent_bps'),
        sa.CheckConstraint('flat_amount_cents IS NULL OR flat_amount_cents >= 0',
                           name='ck_plan_flat_amount'),
        sa.CheckConstraint('recurring_decay_pct IS NULL OR (recurring_decay_pct >= 0 AND recurring_decay_pct <= 100)',
                           name='ck_plan_recurring_decay'),
    )
    op.create_index('ix_commission_plans_clinic_default', 'affiliate_commission_plans',
                    ['clinic_id', 'is_default'])

    op.create_table(
        'affiliate_product_commission_rules',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('plan_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_commission_plans.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('product_id', sa.String(100), nullable=True),
        sa.Column('product_bundle_id', sa.String(100), nullable=True),
        sa.Column('bonus_type', sa.String(50), nullable=False),
        sa.Column('percent_bps', sa.Integer, nullable=True),
        sa.Column('flat_amount_cents', sa.Integer, nullable=True),
        sa.Column('priority', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(with_updated=False),
        sa.CheckConstraint('(product_id IS NULL) <> (product_bundle_id IS NULL)',
                           name='ck_rule_product_or_bundle'),
        sa.CheckConstraint('percent_bps IS NULL OR (percent_bps >= 0 AND percent_bps <= 10000)',
                           name='ck_rule_percent_bps'),
        sa.CheckConstraint('flat_amount_cents IS NULL OR flat_amount_cents >= 0',
                           name='ck_rule_flat_amount'),
    )

    op.create_table(
        'affiliate_commission_tiers',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('plan_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_commission_plans.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('level', sa.Integer, nullable=False),
        sa.Column('min_conversions', sa.Integer, nullable=False, server_default='0'),
        sa.Column('min_revenue_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('percent_bps', sa.Integer, nullable=True),
        sa.Column('flat_amount_cents', sa.Integer, nullable=True),
        sa.Column('bonus_cents', sa.Integer, nullable=False, server_default='0'),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint('plan_id', 'level', name='uq_commission_tier_level'),
        sa.UniqueConstraint('plan_id', 'name', name='uq_commission_tier_name'),
        sa.CheckConstraint('percent_bps IS NULL OR (percent_bps >= 0 AND percent_bps <= 10000)',
                           name='ck_tier_percent_bps'),
        sa.CheckConstraint('flat_amount_cents IS NULL OR flat_amount_cents >= 0',
                           name='ck_tier_flat_amount'),
        sa.CheckConstraint('bonus_cents >= 0', name='ck_tier_bonus'),
    )

    op.create_table(
        'affiliate_promotions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('plan_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_commission_plans.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('bonus_percent_bps', sa.Integer, nullable=False, server_default='0'),
        sa.Column('bonus_flat_cents', sa.Integer, nullable=False, server_default='0'),
        sa.Column('min_order_cents', sa.BigInteger, nullable=True),
        sa.Column('max_uses', sa.Integer, nullable=True),
        sa.Column('uses_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('affiliate_ids', JSONB, nullable=True),
        sa.Column('ref_codes', JSONB, nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint('ends_at > starts_at', name='ck_promotion_window'),
        sa.CheckConstraint('bonus_percent_bps >= 0 AND bonus_percent_bps <= 10000',
                           name='ck_promotion_percent_bps'),
        sa.CheckConstraint('bonus_flat_cents >= 0', name='ck_promotion_flat'),
    )
    op.create_index('ix_promotions_plan_window', 'affiliate_promotions',
                    ['plan_id', 'starts_at', 'ends_at'])

    # Affiliates and ref codes
    op.create_table(
        'affiliates',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('clinic_id', UUID(as_uuid=True), sa.ForeignKey('clinics.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('display_name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='ACTIVE'),
        sa.Column('commission_plan_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_commission_plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('payout_method_type', sa.String(50), nullable=True),
        sa.Column('payout_method_reference', sa.String(255), nullable=True),
        sa.Column('lifetime_conversions', sa.Integer, nullable=False, server_default='0'),
        sa.Column('lifetime_revenue_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('lifetime_commission_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('notes', sa.Text, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('clinic_id', 'user_id', name='uq_affiliate_clinic_user'),
    )
    op.create_index('ix_affiliates_clinic_status', 'affiliates', ['clinic_id', 'status'])

    op.create_table(
        'affiliate_ref_codes',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('clinic_id', UUID(as_uuid=True), sa.ForeignKey('clinics.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('ref_code', sa.String(50), nullable=False, index=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint('clinic_id', 'ref_code', name='uq_ref_code_clinic_code'),
    )

    # Touches
    op.create_table(
        'affiliate_touches',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('clinic_id', UUID(as_uuid=True), sa.ForeignKey('clinics.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('ref_code_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_ref_codes.id', ondelete='SET NULL'), nullable=True),
        sa.Column('ref_code', sa.String(50), nullable=False),
        sa.Column('touch_type', sa.String(50), nullable=False, server_default='CLICK'),
        sa.Column('visitor_fingerprint', sa.String(255), nullable=False),
        sa.Column('cookie_id', sa.String(255), nullable=True),
        sa.Column('ip_address_hash', sa.String(64), nullable=True,
                  comment='Salted SHA-256 of the visitor IP'),
        sa.Column('user_agent', sa.Text, nullable=True),
        sa.Column('landing_page', sa.Text, nullable=True),
        sa.Column('referrer_url', sa.Text, nullable=True),
        sa.Column('utm_source', sa.String(255), nullable=True),
        sa.Column('utm_medium', sa.String(255), nullable=True),
        sa.Column('utm_campaign', sa.String(255), nullable=True),
        sa.Column('utm_content', sa.String(255), nullable=True),
        sa.Column('utm_term', sa.String(255), nullable=True),
        sa.Column('sub_id1', sa.String(255), nullable=True),
        sa.Column('sub_id2', sa.String(255), nullable=True),
        sa.Column('sub_id3', sa.String(255), nullable=True),
        sa.Column('sub_id4', sa.String(255), nullable=True),
        sa.Column('sub_id5', sa.String(255), nullable=True),
        sa.Column('converted_patient_id', UUID(as_uuid=True), nullable=True, index=True),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('anonymized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index('ix_touches_clinic_fingerprint_created', 'affiliate_touches',
                    ['clinic_id', 'visitor_fingerprint', 'created_at'])
    op.create_index('ix_touches_clinic_cookie_created', 'affiliate_touches',
                    ['clinic_id', 'cookie_id', 'created_at'])
    op.create_index('ix_touches_affiliate_created', 'affiliate_touches', ['affiliate_id', 'created_at'])
    op.create_index('ix_touches_created_anonymized', 'affiliate_touches', ['created_at', 'anonymized_at'])

    # Payouts (before commission events, which link to them)
    op.create_table(
        'affiliate_payouts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('clinic_id', UUID(as_uuid=True), sa.ForeignKey('clinics.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('period_key', sa.String(20), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('gross_amount_cents', sa.BigInteger, nullable=False),
        sa.Column('fee_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('net_amount_cents', sa.BigInteger, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('event_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('method_type', sa.String(50), nullable=False),
        sa.Column('method_reference', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='PROCESSING'),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('affiliate_id', 'period_key', name='uq_payout_affiliate_period'),
    )
    op.create_index('ix_payouts_clinic_status', 'affiliate_payouts', ['clinic_id', 'status'])

    # Commission ledger
    op.create_table(
        'affiliate_commission_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('clinic_id', UUID(as_uuid=True), sa.ForeignKey('clinics.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('source_event_id', sa.String(255), nullable=False),
        sa.Column('source_object_id', sa.String(255), nullable=True),
        sa.Column('split_index', sa.Integer, nullable=False, server_default='0'),
        sa.Column('ref_code_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_ref_codes.id', ondelete='SET NULL'), nullable=True),
        sa.Column('touch_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_touches.id', ondelete='SET NULL'), nullable=True),
        sa.Column('commission_plan_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_commission_plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('product_rule_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_product_commission_rules.id', ondelete='SET NULL'), nullable=True),
        sa.Column('attribution_model', sa.String(50), nullable=True),
        sa.Column('attribution_weight_bps', sa.Integer, nullable=False, server_default='10000'),
        sa.Column('order_amount_cents', sa.BigInteger, nullable=False),
        sa.Column('commission_amount_cents', sa.BigInteger, nullable=False),
        sa.Column('commission_type', sa.String(50), nullable=True),
        sa.Column('percent_bps', sa.Integer, nullable=True),
        sa.Column('is_first_payment', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_recurring', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(50), nullable=False, server_default='PENDING'),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('hold_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by', UUID(as_uuid=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reversed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reversal_reason', sa.String(500), nullable=True),
        sa.Column('payout_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_payouts.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('is_risk_flagged', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('risk_reasons', JSONB, nullable=True),
        sa.Column('is_adjustment', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('adjusts_event_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_commission_events.id', ondelete='SET NULL'), nullable=True),
        sa.Column('extra_data', JSONB, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('clinic_id', 'source_event_id', 'split_index',
                            name='uq_commission_event_source'),
    )
    op.create_index('ix_commission_events_status_hold', 'affiliate_commission_events',
                    ['status', 'hold_until'])
    op.create_index('ix_commission_events_affiliate_status', 'affiliate_commission_events',
                    ['affiliate_id', 'status'])
    op.create_index('ix_commission_events_clinic_occurred', 'affiliate_commission_events',
                    ['clinic_id', 'occurred_at'])

    # Fraud review queue
    op.create_table(
        'affiliate_fraud_alerts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('clinic_id', UUID(as_uuid=True), sa.ForeignKey('clinics.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('commission_event_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_commission_events.id', ondelete='SET NULL'), nullable=True),
        sa.Column('touch_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_touches.id', ondelete='SET NULL'), nullable=True),
        sa.Column('source_event_id', sa.String(255), nullable=True),
        sa.Column('alert_type', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('decision', sa.String(20), nullable=False, comment='HOLD or BLOCK'),
        sa.Column('risk_score', sa.Integer, nullable=False, server_default='0'),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('evidence', JSONB, nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='OPEN'),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', UUID(as_uuid=True), nullable=True),
        sa.Column('resolution_notes', sa.Text, nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index('ix_fraud_alerts_clinic_status', 'affiliate_fraud_alerts', ['clinic_id', 'status'])

    # Competitions
    op.create_table(
        'affiliate_competitions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('clinic_id', UUID(as_uuid=True), sa.ForeignKey('clinics.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('metric', sa.String(50), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='SCHEDULED'),
        sa.Column('is_cancelled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('prize_description', sa.Text, nullable=True),
        sa.Column('prize_value_cents', sa.BigInteger, nullable=True),
        sa.Column('auto_enroll_all', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_competitions_clinic_status', 'affiliate_competitions', ['clinic_id', 'status'])

    op.create_table(
        'affiliate_competition_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('competition_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliate_competitions.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('current_value', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('rank', sa.Integer, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('competition_id', 'affiliate_id', name='uq_competition_entry'),
    )

    # Program settings overrides
    op.create_table(
        'affiliate_program_settings',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('clinic_id', UUID(as_uuid=True), sa.ForeignKey('clinics.id', ondelete='CASCADE'),
                  nullable=False, unique=True),
        sa.Column('overrides', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('updated_by', UUID(as_uuid=True), nullable=True),
        *_timestamps(),
    )

    # Job lock leases (databases without advisory locks)
    op.create_table(
        'job_leases',
        sa.Column('lock_key', sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column('holder', sa.String(100), nullable=False),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('job_leases')
    op.drop_table('affiliate_program_settings')
    op.drop_table('affiliate_competition_entries')
    op.drop_table('affiliate_competitions')
    op.drop_table('affiliate_fraud_alerts')
    op.drop_table('affiliate_commission_events')
    op.drop_table('affiliate_payouts')
    op.drop_table('affiliate_touches')
    op.drop_table('affiliate_ref_codes')
    op.drop_table('affiliates')
    op.drop_table('affiliate_promotions')
    op.drop_table('affiliate_commission_tiers')
    op.drop_table('affiliate_product_commission_rules')
    op.drop_table('affiliate_commission_plans')
    op.drop_table('clinics')
