#!/usr/bin/env python3
"""Produce argon2id password hashes for the admin identity and seeded accounts.

Usage:
    # Hash for ADMIN_PASSWORD_HASH:
    python scripts/hash_password.py --password 'SecurePassword123!'

    # Prompt for the password and append an account to a seed file:
    python scripts/hash_password.py --seed accounts.json --role company \
        --id 7 --email shop@example.com --name "Example Shop"

The seed file is the JSON document read via ACCOUNT_SEED_PATH:
    {"company": [{"id": 7, "email": "...", "name": "...", "password_hash": "..."}],
     "customer": [...]}
"""
from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def append_seed_account(
    seed_path: Path, role: str, account_id: int, email: str, name: str, password_hash: str
) -> dict:
    """Insert or replace an account entry in the seed document."""
    from couponauth.storage.models import Role

    parsed = Role.parse(role)
    if parsed is None or parsed is Role.ADMIN:
        raise ValueError("seed accounts must be company or customer")

    document = {}
    if seed_path.exists():
        document = json.loads(seed_path.read_text() or "{}")
    entries = [
        entry
        for entry in document.get(parsed.value, [])
        if entry.get("email", "").lower() != email.lower()
    ]
    record = {"id": account_id, "email": email.lower(), "name": name, "password_hash": password_hash}
    entries.append(record)
    document[parsed.value] = entries

    tmp_path = seed_path.with_suffix(seed_path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(document, indent=2))
    os.replace(tmp_path, seed_path)
    return record


def main():
    parser = argparse.ArgumentParser(description="Hash a password with argon2id")
    parser.add_argument("--password", default=os.environ.get("ACCOUNT_PASSWORD"), help="Password to hash")
    parser.add_argument("--skip-validation", action="store_true", help="Skip password complexity check")
    parser.add_argument("--seed", type=Path, help="Seed file to add the account to")
    parser.add_argument("--role", default="company", help="company or customer")
    parser.add_argument("--id", dest="account_id", type=int, help="Account id")
    parser.add_argument("--email", help="Account email")
    parser.add_argument("--name", help="Display name")

    args = parser.parse_args()

    password = args.password or getpass.getpass("Password: ")
    if not args.skip_validation and not validate_password(password):
        print(
            "Error: Password must be at least 12 characters with 3 of: "
            "uppercase, lowercase, digit, special character",
            file=sys.stderr,
        )
        sys.exit(1)

    from couponauth.service.passwords import CredentialVerifier

    password_hash = CredentialVerifier().hash(password)

    if not args.seed:
        print(password_hash)
        return

    if args.account_id is None or not args.email or not args.name:
        print("Error: --seed requires --id, --email and --name", file=sys.stderr)
        sys.exit(1)
    try:
        record = append_seed_account(
            args.seed, args.role, args.account_id, args.email, args.name, password_hash
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    print(f"Seeded {args.role} account {record['email']} (id: {record['id']}) in {args.seed}")


if __name__ == "__main__":
    main()
