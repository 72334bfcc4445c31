#!/usr/bin/env python3
"""Create the ingestion tables and the atomic helper functions used over RPC."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. brands
CREATE TABLE IF NOT EXISTS brands (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name VARCHAR(255) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 2. webhook_sources
CREATE TABLE IF NOT EXISTS webhook_sources (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    brand_id UUID NOT NULL REFERENCES brands(id) ON DELETE CASCADE,
    name VARCHAR(255) NOT NULL,
    api_key_hash VARCHAR(64) NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    rate_limit_per_min INTEGER NOT NULL DEFAULT 60,
    mapping JSONB,
    hmac_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    hmac_secret_hash VARCHAR(64),
    replay_window_seconds INTEGER,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_webhook_sources_brand_id ON webhook_sources(brand_id);

-- 3. rate_limit_buckets (one token bucket per source)
CREATE TABLE IF NOT EXISTS rate_limit_buckets (
    source_id UUID PRIMARY KEY REFERENCES webhook_sources(id) ON DELETE CASCADE,
    tokens DOUBLE PRECISION NOT NULL,
    max_tokens DOUBLE PRECISION NOT NULL,
    refill_rate DOUBLE PRECISION NOT NULL,
    last_refill_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 4. contacts
CREATE TABLE IF NOT EXISTS contacts (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    brand_id UUID NOT NULL REFERENCES brands(id) ON DELETE CASCADE,
    first_name VARCHAR(255),
    last_name VARCHAR(255),
    email VARCHAR(255),
    city VARCHAR(255),
    cap VARCHAR(20),
    status VARCHAR(20) NOT NULL DEFAULT 'new'
        CHECK (status IN ('new', 'active', 'qualified', 'unqualified', 'archived')),
    merged_into_contact_id UUID REFERENCES contacts(id),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_contacts_brand_id ON contacts(brand_id);

-- 5. contact_phones
CREATE TABLE IF NOT EXISTS contact_phones (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    brand_id UUID NOT NULL REFERENCES brands(id) ON DELETE CASCADE,
    contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    phone_raw VARCHAR(50),
    phone_normalized VARCHAR(20) NOT NULL,
    country_code VARCHAR(2),
    assumed_country BOOLEAN NOT NULL DEFAULT FALSE,
    is_primary BOOLEAN NOT NULL DEFAULT TRUE,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_contact_phones_brand_phone
    ON contact_phones(brand_id, phone_normalized) WHERE is_active;
CREATE INDEX IF NOT EXISTS idx_contact_phones_contact_id ON contact_phones(contact_id);

-- 6. pipeline_stages
CREATE TABLE IF NOT EXISTS pipeline_stages (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    brand_id UUID NOT NULL REFERENCES brands(id) ON DELETE CASCADE,
    name VARCHAR(100) NOT NULL,
    order_index INTEGER NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);

-- 7. deals (at most one open deal per contact)
CREATE TABLE IF NOT EXISTS deals (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    brand_id UUID NOT NULL REFERENCES brands(id) ON DELETE CASCADE,
    contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    status VARCHAR(20) NOT NULL DEFAULT 'open',
    value NUMERIC(12, 2),
    current_stage_id UUID REFERENCES pipeline_stages(id),
    closed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_deals_open_per_contact ON deals(contact_id) WHERE status = 'open';

-- 8. lead_events (append-only)
CREATE TABLE IF NOT EXISTS lead_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    brand_id UUID NOT NULL REFERENCES brands(id) ON DELETE CASCADE,
    contact_id UUID REFERENCES contacts(id),
    deal_id UUID REFERENCES deals(id),
    source VARCHAR(50) NOT NULL DEFAULT 'webhook',
    source_name VARCHAR(255),
    raw_payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    occurred_at TIMESTAMPTZ,
    received_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    ai_priority INTEGER,
    archived BOOLEAN NOT NULL DEFAULT FALSE
);
CREATE INDEX IF NOT EXISTS idx_lead_events_contact_received ON lead_events(contact_id, received_at);

-- 9. incoming_requests (audit trail)
CREATE TABLE IF NOT EXISTS incoming_requests (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source_id UUID,
    brand_id UUID,
    raw_body JSONB,
    raw_body_text TEXT,
    headers JSONB NOT NULL DEFAULT '{}'::jsonb,
    ip_address VARCHAR(64),
    user_agent TEXT,
    status VARCHAR(20) NOT NULL CHECK (status IN ('pending', 'success', 'rejected', 'failed')),
    processed BOOLEAN NOT NULL DEFAULT FALSE,
    error_message TEXT,
    lead_event_id UUID REFERENCES lead_events(id),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_incoming_requests_source_created ON incoming_requests(source_id, created_at);

-- 10. sheets_export_logs (one claim per lead event)
CREATE TABLE IF NOT EXISTS sheets_export_logs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    lead_event_id UUID NOT NULL UNIQUE,
    brand_id UUID NOT NULL,
    status VARCHAR(20) NOT NULL CHECK (status IN ('processing', 'success', 'failed', 'skipped')),
    tab_name VARCHAR(255),
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

FUNCTIONS_SQL = """
-- Token bucket: refill by elapsed time, then take one token. Row lock serializes callers.
CREATE OR REPLACE FUNCTION consume_rate_limit_token(p_source_id UUID)
RETURNS BOOLEAN
LANGUAGE plpgsql
AS $$
DECLARE
    v_limit INTEGER;
    v_bucket rate_limit_buckets%ROWTYPE;
    v_tokens DOUBLE PRECISION;
BEGIN
    SELECT rate_limit_per_min INTO v_limit FROM webhook_sources WHERE id = p_source_id;
    IF v_limit IS NULL OR v_limit <= 0 THEN
        RETURN FALSE;
    END IF;

    INSERT INTO rate_limit_buckets (source_id, tokens, max_tokens, refill_rate, last_refill_at)
    VALUES (p_source_id, v_limit, v_limit, v_limit / 60.0, NOW())
    ON CONFLICT (source_id) DO NOTHING;

    SELECT * INTO v_bucket FROM rate_limit_buckets WHERE source_id = p_source_id FOR UPDATE;

    v_tokens := LEAST(
        v_bucket.max_tokens,
        v_bucket.tokens + EXTRACT(EPOCH FROM (NOW() - v_bucket.last_refill_at)) * v_bucket.refill_rate
    );

    IF v_tokens < 1 THEN
        UPDATE rate_limit_buckets SET tokens = v_tokens, last_refill_at = NOW() WHERE source_id = p_source_id;
        RETURN FALSE;
    END IF;

    UPDATE rate_limit_buckets SET tokens = v_tokens - 1, last_refill_at = NOW() WHERE source_id = p_source_id;
    RETURN TRUE;
END;
$$;

-- Contact lookup by (brand, normalized phone). Existing contact fields are never overwritten.
CREATE OR REPLACE FUNCTION find_or_create_contact(
    p_brand_id UUID,
    p_phone_normalized TEXT,
    p_phone_raw TEXT,
    p_country_code TEXT,
    p_assumed_country BOOLEAN,
    p_first_name TEXT,
    p_last_name TEXT,
    p_email TEXT,
    p_city TEXT,
    p_cap TEXT
)
RETURNS UUID
LANGUAGE plpgsql
AS $$
DECLARE
    v_contact_id UUID;
BEGIN
    PERFORM pg_advisory_xact_lock(hashtext(p_brand_id::text || ':' || p_phone_normalized));

    SELECT cp.contact_id INTO v_contact_id
    FROM contact_phones cp
    JOIN contacts c ON c.id = cp.contact_id
    WHERE cp.brand_id = p_brand_id
      AND cp.phone_normalized = p_phone_normalized
      AND cp.is_active
      AND c.merged_into_contact_id IS NULL
    LIMIT 1;

    IF v_contact_id IS NOT NULL THEN
        RETURN v_contact_id;
    END IF;

    INSERT INTO contacts (brand_id, first_name, last_name, email, city, cap, status)
    VALUES (p_brand_id, p_first_name, p_last_name, p_email, p_city, p_cap, 'new')
    RETURNING id INTO v_contact_id;

    INSERT INTO contact_phones (
        brand_id, contact_id, phone_raw, phone_normalized, country_code, assumed_country, is_primary, is_active
    )
    VALUES (
        p_brand_id, v_contact_id, p_phone_raw, p_phone_normalized, p_country_code, p_assumed_country, TRUE, TRUE
    );

    RETURN v_contact_id;
END;
$$;

-- Open deal per contact; the partial unique index resolves concurrent creators.
CREATE OR REPLACE FUNCTION find_or_create_deal(p_brand_id UUID, p_contact_id UUID)
RETURNS UUID
LANGUAGE plpgsql
AS $$
DECLARE
    v_deal_id UUID;
    v_stage_id UUID;
BEGIN
    SELECT id INTO v_deal_id FROM deals WHERE contact_id = p_contact_id AND status = 'open' LIMIT 1;
    IF v_deal_id IS NOT NULL THEN
        RETURN v_deal_id;
    END IF;

    SELECT id INTO v_stage_id
    FROM pipeline_stages
    WHERE brand_id = p_brand_id AND is_active
    ORDER BY order_index
    LIMIT 1;

    INSERT INTO deals (brand_id, contact_id, status, current_stage_id)
    VALUES (p_brand_id, p_contact_id, 'open', v_stage_id)
    ON CONFLICT (contact_id) WHERE status = 'open' DO NOTHING
    RETURNING id INTO v_deal_id;

    IF v_deal_id IS NULL THEN
        SELECT id INTO v_deal_id FROM deals WHERE contact_id = p_contact_id AND status = 'open' LIMIT 1;
    END IF;

    RETURN v_deal_id;
END;
$$;
"""


def main():
    if not DATABASE_URL:
        print("Error: DATABASE_URL must be set in .env")
        raise SystemExit(1)

    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Creating functions...")
    cur.execute(FUNCTIONS_SQL)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute(
        "SELECT routine_name FROM information_schema.routines "
        "WHERE routine_schema = 'public' AND routine_name IN "
        "('consume_rate_limit_token', 'find_or_create_contact', 'find_or_create_deal') ORDER BY routine_name;"
    )
    routines = cur.fetchall()
    print(f"Functions: {[r[0] for r in routines]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
