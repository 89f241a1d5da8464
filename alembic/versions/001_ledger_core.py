"""Ledger core tables.

Creates users, token_balances, token_transactions, reward_rules,
reward_accrual_counters, data_points, marketplace_settings, data_listings,
data_purchases and purchase_access_logs. Money-safety invariants are
enforced by CHECK and UNIQUE constraints.

Revision ID: 001_ledger_core
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_ledger_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_SETTLEMENT_COLUMNS = """
            settlement_state VARCHAR(16) NOT NULL DEFAULT 'unresolved',
            settlement_signature VARCHAR(128),
            settlement_confirmations INTEGER NOT NULL DEFAULT 0,
            settlement_slot BIGINT,
            settlement_attempts INTEGER NOT NULL DEFAULT 0,
            settlement_error VARCHAR(256),
            settlement_updated_at TIMESTAMPTZ
"""


def upgrade() -> None:
    # --- Identity directory ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            username VARCHAR(64),
            wallet_address VARCHAR(64),
            role VARCHAR(16) NOT NULL DEFAULT 'user',
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Balances ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS token_balances (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE RESTRICT,
            balance NUMERIC(20, 6) NOT NULL DEFAULT 0,
            locked NUMERIC(20, 6) NOT NULL DEFAULT 0,
            lifetime_earned NUMERIC(20, 6) NOT NULL DEFAULT 0,
            lifetime_spent NUMERIC(20, 6) NOT NULL DEFAULT 0,
            wallet_address VARCHAR(64),
            last_verified_balance NUMERIC(20, 6),
            last_verified_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_token_balances_locked_non_negative CHECK (locked >= 0),
            CONSTRAINT ck_token_balances_balance_covers_locked CHECK (balance >= locked)
        )
    """)

    # --- Transactions ---
    op.execute(f"""
        CREATE TABLE IF NOT EXISTS token_transactions (
            id BIGSERIAL PRIMARY KEY,
            from_user_id BIGINT REFERENCES users(id),
            to_user_id BIGINT REFERENCES users(id),
            amount NUMERIC(20, 6) NOT NULL,
            type VARCHAR(16) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
            reference_id VARCHAR(200) NOT NULL,
            reason VARCHAR(256),
            metadata JSONB NOT NULL DEFAULT '{{}}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            completed_at TIMESTAMPTZ,
            {_SETTLEMENT_COLUMNS},
            CONSTRAINT uq_token_transactions_type_reference UNIQUE (type, reference_id),
            CONSTRAINT ck_token_transactions_amount_positive CHECK (amount > 0),
            CONSTRAINT ck_token_transactions_has_party
                CHECK (from_user_id IS NOT NULL OR to_user_id IS NOT NULL)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_token_transactions_from ON token_transactions(from_user_id)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_token_transactions_to ON token_transactions(to_user_id)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_token_transactions_settlement ON token_transactions(settlement_state)")

    # --- Reward rules ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS reward_rules (
            id VARCHAR(36) PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            description TEXT,
            activity_type VARCHAR(64) NOT NULL,
            conditions JSONB,
            amount NUMERIC(20, 6),
            reward_formula VARCHAR(512),
            max_reward NUMERIC(20, 6),
            daily_limit NUMERIC(20, 6),
            weekly_limit NUMERIC(20, 6),
            monthly_limit NUMERIC(20, 6),
            is_active BOOLEAN NOT NULL DEFAULT true,
            start_date TIMESTAMPTZ NOT NULL,
            end_date TIMESTAMPTZ,
            priority INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_reward_rules_activity ON reward_rules(activity_type, is_active)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS reward_accrual_counters (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            rule_id VARCHAR(36) NOT NULL REFERENCES reward_rules(id) ON DELETE CASCADE,
            period VARCHAR(8) NOT NULL,
            period_key VARCHAR(16) NOT NULL,
            reward_total NUMERIC(20, 6) NOT NULL DEFAULT 0,
            reward_count INTEGER NOT NULL DEFAULT 0,
            last_reward_at TIMESTAMPTZ,
            CONSTRAINT uq_reward_accrual_bucket UNIQUE (user_id, rule_id, period, period_key)
        )
    """)

    # --- Data catalog ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS data_points (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            data_hash VARCHAR(128) UNIQUE NOT NULL,
            device_type VARCHAR(32) NOT NULL,
            recorded_at TIMESTAMPTZ NOT NULL,
            metrics JSONB NOT NULL DEFAULT '{}',
            status VARCHAR(16) NOT NULL DEFAULT 'confirmed',
            deleted BOOLEAN NOT NULL DEFAULT false
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_data_points_user_time ON data_points(user_id, recorded_at)")

    # --- Marketplace ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS marketplace_settings (
            id SERIAL PRIMARY KEY,
            scope VARCHAR(16) UNIQUE NOT NULL DEFAULT 'global',
            platform_fee_rate DOUBLE PRECISION NOT NULL DEFAULT 5,
            updated_at TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS data_listings (
            id VARCHAR(36) PRIMARY KEY,
            provider_id BIGINT NOT NULL REFERENCES users(id),
            title VARCHAR(128) NOT NULL,
            description TEXT,
            data_type VARCHAR(32) NOT NULL DEFAULT 'basic',
            category VARCHAR(32),
            price NUMERIC(20, 6) NOT NULL,
            access_period_days INTEGER NOT NULL DEFAULT 30,
            data_hashes JSONB NOT NULL DEFAULT '[]',
            data_points_count INTEGER NOT NULL DEFAULT 0,
            timeframe_start TIMESTAMPTZ,
            timeframe_end TIMESTAMPTZ,
            tags JSONB NOT NULL DEFAULT '[]',
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            featured BOOLEAN NOT NULL DEFAULT false,
            purchases_count INTEGER NOT NULL DEFAULT 0,
            views_count INTEGER NOT NULL DEFAULT 0,
            rating_avg DOUBLE PRECISION NOT NULL DEFAULT 0,
            rating_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT ck_data_listings_price_non_negative CHECK (price >= 0),
            CONSTRAINT ck_data_listings_access_period CHECK (access_period_days >= 1)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_data_listings_status ON data_listings(status)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_data_listings_provider ON data_listings(provider_id)")

    op.execute(f"""
        CREATE TABLE IF NOT EXISTS data_purchases (
            id VARCHAR(36) PRIMARY KEY,
            buyer_id BIGINT NOT NULL REFERENCES users(id),
            listing_id VARCHAR(36) NOT NULL REFERENCES data_listings(id),
            provider_id BIGINT NOT NULL REFERENCES users(id),
            price NUMERIC(20, 6) NOT NULL,
            platform_fee NUMERIC(20, 6) NOT NULL,
            provider_amount NUMERIC(20, 6) NOT NULL,
            access_start_date TIMESTAMPTZ NOT NULL,
            access_end_date TIMESTAMPTZ NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            access_key TEXT NOT NULL,
            rating_score INTEGER,
            rating_comment VARCHAR(500),
            rated_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ,
            {_SETTLEMENT_COLUMNS}
        )
    """)
    # At most one active grant per (buyer, listing)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_data_purchases_active_grant
        ON data_purchases(buyer_id, listing_id) WHERE status = 'active'
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_data_purchases_provider ON data_purchases(provider_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS purchase_access_logs (
            id BIGSERIAL PRIMARY KEY,
            purchase_id VARCHAR(36) NOT NULL REFERENCES data_purchases(id) ON DELETE CASCADE,
            action VARCHAR(16) NOT NULL,
            details VARCHAR(256),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_purchase_access_logs_purchase_id ON purchase_access_logs(purchase_id)"
    )

    # Platform fee account
    op.execute("""
        INSERT INTO users (id, username, role) VALUES (1, 'platform', 'platform')
        ON CONFLICT (id) DO NOTHING
    """)
    op.execute("SELECT setval('users_id_seq', GREATEST((SELECT MAX(id) FROM users), 1))")


def downgrade() -> None:
    for table in [
        "purchase_access_logs",
        "data_purchases",
        "data_listings",
        "marketplace_settings",
        "data_points",
        "reward_accrual_counters",
        "reward_rules",
        "token_transactions",
        "token_balances",
        "users",
    ]:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")  # noqa: S608
