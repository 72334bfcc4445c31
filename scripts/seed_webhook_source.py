#!/usr/bin/env python3
"""
Register a webhook source for a brand and print its credentials once.

Only the SHA-256 hashes are stored; the plaintext API key (and HMAC secret) is
shown here and never again.

Run from project root:
    python scripts/seed_webhook_source.py --brand-id <uuid> --name "Meta Lead Ads" [--hmac]
    python scripts/seed_webhook_source.py --rotate <source-uuid> [--hmac]
"""

import argparse
import sys
import os

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Load .env file
from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.auth import generate_credential, hash_credential
from src.db import supabase


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Create or rotate a webhook source.")
    parser.add_argument("--brand-id", help="Brand that owns the new source")
    parser.add_argument("--name", help="Display name, also used for spreadsheet tab naming")
    parser.add_argument("--rate-limit", type=int, default=60, help="Requests per minute")
    parser.add_argument("--hmac", action="store_true", help="Require signed requests")
    parser.add_argument("--replay-window", type=int, default=None, help="Replay window in seconds")
    parser.add_argument("--rotate", metavar="SOURCE_ID", help="Issue new credentials for an existing source")
    return parser.parse_args(argv)


def _print_credentials(source_id: str, api_key: str, hmac_secret: str | None) -> None:
    print(f"  Source ID:   {source_id}")
    print(f"  API key:     {api_key}")
    if hmac_secret:
        print(f"  HMAC secret: {hmac_secret}")
    print("Store these now; they cannot be recovered.")


def rotate(source_id: str, with_hmac: bool) -> None:
    existing = supabase.table("webhook_sources").select("id, name, hmac_enabled").eq("id", source_id).execute()
    if not existing.data:
        print(f"Error: webhook source '{source_id}' not found")
        sys.exit(1)

    api_key = generate_credential()
    updates = {"api_key_hash": hash_credential(api_key)}
    hmac_secret = None
    if with_hmac or existing.data[0].get("hmac_enabled"):
        hmac_secret = generate_credential()
        updates["hmac_secret_hash"] = hash_credential(hmac_secret)
        updates["hmac_enabled"] = True

    supabase.table("webhook_sources").update(updates).eq("id", source_id).execute()
    print(f"Rotated credentials for '{existing.data[0]['name']}':")
    _print_credentials(source_id, api_key, hmac_secret)


def create(args) -> None:
    if not args.brand_id or not args.name:
        print("Error: --brand-id and --name are required")
        sys.exit(1)

    api_key = generate_credential()
    hmac_secret = generate_credential() if args.hmac else None
    result = supabase.table("webhook_sources").insert({
        "brand_id": args.brand_id,
        "name": args.name,
        "api_key_hash": hash_credential(api_key),
        "is_active": True,
        "rate_limit_per_min": args.rate_limit,
        "hmac_enabled": bool(hmac_secret),
        "hmac_secret_hash": hash_credential(hmac_secret) if hmac_secret else None,
        "replay_window_seconds": args.replay_window,
    }).execute()

    if not result.data:
        print("Error: Failed to create webhook source")
        sys.exit(1)

    print(f"Created webhook source '{args.name}':")
    _print_credentials(result.data[0]["id"], api_key, hmac_secret)


def main():
    args = _parse_args()
    if args.rotate:
        rotate(args.rotate, args.hmac)
    else:
        create(args)


if __name__ == "__main__":
    main()
