"""Rewards core: accounts, points ledger, coupons, redemptions, partner keys.

Revision ID: 001_rewards_core
Revises: None
Create Date: 2026-10-12
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_rewards_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Accounts ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS accounts (
            id BIGSERIAL PRIMARY KEY,
            username VARCHAR(64) UNIQUE NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            balance BIGINT NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            deactivated_at TIMESTAMPTZ,
            CONSTRAINT ck_accounts_balance_non_negative CHECK (balance >= 0)
        )
    """)

    # --- Points ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS ledger_entries (
            id BIGSERIAL PRIMARY KEY,
            account_id BIGINT NOT NULL REFERENCES accounts(id),
            amount BIGINT NOT NULL,
            kind VARCHAR(16) NOT NULL,
            reason VARCHAR(32) NOT NULL,
            reference_type VARCHAR(16),
            reference_id VARCHAR(64),
            description VARCHAR(200),
            balance_after BIGINT NOT NULL,
            idempotency_key VARCHAR(128) UNIQUE,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_ledger_entries_amount_non_zero CHECK (amount <> 0),
            CONSTRAINT ck_ledger_entries_balance_after CHECK (balance_after >= 0)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_ledger_entries_account_created
        ON ledger_entries(account_id, created_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_ledger_entries_reason_created
        ON ledger_entries(reason, created_at)
    """)

    # --- Coupons ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS coupons (
            id BIGSERIAL PRIMARY KEY,
            title VARCHAR(100) NOT NULL,
            description VARCHAR(500) NOT NULL,
            code VARCHAR(32) UNIQUE NOT NULL,
            discount VARCHAR(50) NOT NULL,
            discount_type VARCHAR(16) NOT NULL,
            discount_value INTEGER NOT NULL DEFAULT 0,
            points_cost INTEGER NOT NULL,
            category VARCHAR(32) NOT NULL DEFAULT 'general',
            partner_name VARCHAR(128) NOT NULL,
            partner_contact JSONB NOT NULL DEFAULT '{}',
            terms JSONB NOT NULL DEFAULT '[]',
            valid_from TIMESTAMPTZ NOT NULL,
            valid_until TIMESTAMPTZ NOT NULL,
            usage_limit_total INTEGER,
            usage_limit_per_user INTEGER NOT NULL DEFAULT 1,
            is_active BOOLEAN NOT NULL DEFAULT true,
            is_featured BOOLEAN NOT NULL DEFAULT false,
            total_redemptions INTEGER NOT NULL DEFAULT 0,
            unique_users INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_coupons_validity_window CHECK (valid_until > valid_from),
            CONSTRAINT ck_coupons_points_cost CHECK (points_cost >= 1),
            CONSTRAINT ck_coupons_per_user_limit CHECK (usage_limit_per_user >= 1),
            CONSTRAINT ck_coupons_total_cap CHECK (
                usage_limit_total IS NULL OR total_redemptions <= usage_limit_total
            )
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_coupons_active_cost ON coupons(is_active, points_cost)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_coupons_active_until ON coupons(is_active, valid_until)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_coupons_category_active ON coupons(category, is_active)")

    # --- Per-account usage counters ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS coupon_usage (
            account_id BIGINT NOT NULL REFERENCES accounts(id),
            coupon_id BIGINT NOT NULL REFERENCES coupons(id),
            redemption_count INTEGER NOT NULL DEFAULT 0,
            first_redeemed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            last_redeemed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (account_id, coupon_id)
        )
    """)

    # --- Redemptions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS redemptions (
            id BIGSERIAL PRIMARY KEY,
            coupon_id BIGINT NOT NULL REFERENCES coupons(id),
            account_id BIGINT NOT NULL REFERENCES accounts(id),
            ledger_entry_id BIGINT NOT NULL REFERENCES ledger_entries(id),
            points_spent INTEGER NOT NULL,
            code VARCHAR(16) UNIQUE NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            redeemed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMPTZ NOT NULL,
            used_at TIMESTAMPTZ,
            usage_details JSONB NOT NULL DEFAULT '{}',
            CONSTRAINT ck_redemptions_points_spent CHECK (points_spent >= 1)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_redemptions_account_redeemed
        ON redemptions(account_id, redeemed_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_redemptions_coupon_account
        ON redemptions(coupon_id, account_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_redemptions_status_expires
        ON redemptions(status, expires_at)
    """)

    # --- Partner keys ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS partner_keys (
            id BIGSERIAL PRIMARY KEY,
            partner_name VARCHAR(128) NOT NULL,
            key_prefix VARCHAR(16) NOT NULL,
            key_hash TEXT NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            last_used_at TIMESTAMPTZ
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_partner_keys_key_prefix ON partner_keys(key_prefix)")


def downgrade() -> None:
    for table in ("partner_keys", "redemptions", "coupon_usage", "coupons", "ledger_entries", "accounts"):
        op.execute(f"DROP TABLE IF EXISTS {table}")
