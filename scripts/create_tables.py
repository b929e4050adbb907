#!/usr/bin/env python3
"""Create the webhook ingestion and billing tables for CoreComm."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. webhook_events
CREATE TABLE IF NOT EXISTS webhook_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    provider VARCHAR(30) NOT NULL CHECK (provider IN ('payments', 'voice', 'sms_voice_carrier')),
    external_event_id VARCHAR(255) NOT NULL,
    event_type VARCHAR(100),
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    raw_body TEXT,
    status VARCHAR(20) NOT NULL DEFAULT 'received' CHECK (status IN ('received', 'processed', 'failed')),
    last_error TEXT,
    retryable BOOLEAN NOT NULL DEFAULT FALSE,
    duplicate_count INTEGER NOT NULL DEFAULT 0,
    replay_count INTEGER NOT NULL DEFAULT 0,
    received_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    processed_at TIMESTAMPTZ,
    UNIQUE(provider, external_event_id)
);
CREATE INDEX IF NOT EXISTS idx_webhook_events_status ON webhook_events(status);
CREATE INDEX IF NOT EXISTS idx_webhook_events_received_at ON webhook_events(received_at DESC);

-- 2. wallets
CREATE TABLE IF NOT EXISTS wallets (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    company_id UUID NOT NULL UNIQUE,
    balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 3. wallet_transactions (append-only)
CREATE TABLE IF NOT EXISTS wallet_transactions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    wallet_id UUID NOT NULL REFERENCES wallets(id) ON DELETE RESTRICT,
    amount BIGINT NOT NULL CHECK (amount <> 0),
    type VARCHAR(20) NOT NULL CHECK (type IN ('top_up', 'addon_purchase', 'usage_charge')),
    description TEXT,
    reference_id VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(wallet_id, reference_id)
);
CREATE INDEX IF NOT EXISTS idx_wallet_transactions_wallet_id ON wallet_transactions(wallet_id, created_at DESC);

-- 4. billing_subscriptions
CREATE TABLE IF NOT EXISTS billing_subscriptions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    company_id UUID NOT NULL UNIQUE,
    provider_subscription_id VARCHAR(255),
    provider_customer_id VARCHAR(255),
    plan_id VARCHAR(100),
    status VARCHAR(20) NOT NULL CHECK (status IN ('trialing', 'active', 'canceled')),
    current_period_end TIMESTAMPTZ,
    last_event_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_billing_subscriptions_provider_id ON billing_subscriptions(provider_subscription_id);

-- 5. billing_addons
CREATE TABLE IF NOT EXISTS billing_addons (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    company_id UUID NOT NULL,
    type VARCHAR(50) NOT NULL,
    quantity INTEGER NOT NULL DEFAULT 1,
    cost_cents BIGINT NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'active',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_billing_addons_company_id ON billing_addons(company_id);

-- 6. vapi_phone_numbers
CREATE TABLE IF NOT EXISTS vapi_phone_numbers (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    company_id UUID NOT NULL,
    phone_number VARCHAR(32) NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 7. super_admins
CREATE TABLE IF NOT EXISTS super_admins (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) NOT NULL UNIQUE,
    password_hash VARCHAR(255) NOT NULL,
    name VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 8. organization_memberships
CREATE TABLE IF NOT EXISTS organization_memberships (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    company_id UUID NOT NULL,
    role VARCHAR(20) NOT NULL DEFAULT 'member',
    email VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ,
    UNIQUE(user_id, company_id)
);

-- 9. observability_metric_snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(255),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

# Balance update and transaction insert commit together. A repeated
# (wallet_id, reference_id) returns the current balance without writing.
APPLY_WALLET_DELTA = """
CREATE OR REPLACE FUNCTION apply_wallet_delta(
    p_wallet_id UUID,
    p_amount BIGINT,
    p_type VARCHAR,
    p_description TEXT,
    p_reference_id VARCHAR DEFAULT NULL
) RETURNS BIGINT
LANGUAGE plpgsql
AS $$
DECLARE
    v_balance BIGINT;
BEGIN
    SELECT balance INTO v_balance FROM wallets WHERE id = p_wallet_id FOR UPDATE;
    IF NOT FOUND THEN
        RAISE EXCEPTION 'wallet % not found', p_wallet_id USING ERRCODE = 'P0002';
    END IF;

    IF p_reference_id IS NOT NULL AND EXISTS (
        SELECT 1 FROM wallet_transactions
        WHERE wallet_id = p_wallet_id AND reference_id = p_reference_id
    ) THEN
        RETURN v_balance;
    END IF;

    UPDATE wallets
    SET balance = balance + p_amount, updated_at = NOW()
    WHERE id = p_wallet_id
    RETURNING balance INTO v_balance;

    INSERT INTO wallet_transactions (wallet_id, amount, type, description, reference_id)
    VALUES (p_wallet_id, p_amount, p_type, p_description, p_reference_id);

    RETURN v_balance;
END;
$$;
"""


def main():
    print(f"Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Creating apply_wallet_delta()...")
    cur.execute(APPLY_WALLET_DELTA)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute("SELECT proname FROM pg_proc WHERE proname = 'apply_wallet_delta';")
    print(f"Functions: {[row[0] for row in cur.fetchall()]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
