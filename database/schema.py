"""Postgres schema for the stamp card tables.

Applied as a Supabase migration. Row-level security policies are managed in
the Supabase project and are not part of this file.
"""

SCHEMA = """
CREATE TABLE IF NOT EXISTS merchants (
    id UUID PRIMARY KEY REFERENCES auth.users(id) ON DELETE CASCADE,
    business_name TEXT,
    created_at TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS profiles (
    id UUID PRIMARY KEY REFERENCES auth.users(id) ON DELETE CASCADE,
    email TEXT UNIQUE,
    name TEXT,
    created_at TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS stamp_cards (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    merchant_id UUID NOT NULL REFERENCES merchants(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    total_stamps INTEGER NOT NULL CHECK (total_stamps > 0),
    reward TEXT NOT NULL,
    business_logo TEXT,
    business_color TEXT,
    is_active BOOLEAN DEFAULT TRUE,
    expiry_days INTEGER,
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS pending_customers (
    id UUID PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    merged_into UUID,
    merged_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT now()
);

-- customer_id is either a profiles.id or a pending_customers.id
CREATE TABLE IF NOT EXISTS customer_stamp_cards (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    card_id UUID NOT NULL REFERENCES stamp_cards(id) ON DELETE CASCADE,
    customer_id UUID NOT NULL,
    current_stamps INTEGER NOT NULL DEFAULT 0 CHECK (current_stamps >= 0),
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now(),
    UNIQUE (card_id, customer_id)
);

CREATE TABLE IF NOT EXISTS stamp_qr_codes (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    merchant_id UUID NOT NULL REFERENCES merchants(id) ON DELETE CASCADE,
    card_id UUID NOT NULL REFERENCES stamp_cards(id) ON DELETE CASCADE,
    code TEXT UNIQUE NOT NULL,
    created_at TIMESTAMPTZ DEFAULT now(),
    expires_at TIMESTAMPTZ NOT NULL,
    is_single_use BOOLEAN DEFAULT FALSE,
    is_used BOOLEAN DEFAULT FALSE
);

-- Append-only ledger
CREATE TABLE IF NOT EXISTS stamp_transactions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    card_id UUID NOT NULL REFERENCES stamp_cards(id) ON DELETE CASCADE,
    customer_id UUID NOT NULL,
    merchant_id UUID NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('stamp', 'reward', 'redeem')),
    count INTEGER DEFAULT 0,
    reward_code TEXT,
    timestamp TIMESTAMPTZ DEFAULT now(),
    metadata JSONB DEFAULT '{}'::jsonb
);

CREATE TABLE IF NOT EXISTS reward_grants (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    reward_code TEXT UNIQUE NOT NULL CHECK (reward_code ~ '^[A-Z0-9]{6}$'),
    card_id UUID NOT NULL REFERENCES stamp_cards(id) ON DELETE CASCADE,
    customer_id UUID NOT NULL,
    merchant_id UUID NOT NULL,
    earned_transaction_id UUID REFERENCES stamp_transactions(id),
    status TEXT NOT NULL DEFAULT 'earned' CHECK (status IN ('earned', 'redeemed', 'expired')),
    earned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    redeemed_at TIMESTAMPTZ,
    redeemed_transaction_id UUID REFERENCES stamp_transactions(id),
    claimed_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_transactions_merchant_time
    ON stamp_transactions(merchant_id, timestamp) WHERE type = 'stamp';
CREATE INDEX IF NOT EXISTS idx_transactions_pair_time
    ON stamp_transactions(merchant_id, customer_id, timestamp) WHERE type = 'stamp';
CREATE INDEX IF NOT EXISTS idx_transactions_reward_code ON stamp_transactions(reward_code);
CREATE INDEX IF NOT EXISTS idx_qr_codes_card ON stamp_qr_codes(card_id, expires_at);
CREATE INDEX IF NOT EXISTS idx_reward_grants_owner ON reward_grants(card_id, customer_id, status);
"""
