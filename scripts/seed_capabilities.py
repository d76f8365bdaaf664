#!/usr/bin/env python3
"""Seed the built-in capability catalogue into the configured store.

Usage:
    # Seed the database named by DATABASE_URL:
    DATABASE_URL=postgresql://... python scripts/seed_capabilities.py

    # Show what would be written without touching the store:
    python scripts/seed_capabilities.py --dry-run

    # Enable a capability for one tenant after seeding:
    python scripts/seed_capabilities.py --tenant acme --enable notify_webhook

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    SECRET_ENCRYPTION_KEY: Fernet key used for tenant configuration secrets
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def seed(dry_run: bool = False, tenant_id: str | None = None, enable: list[str] | None = None) -> dict:
    """Upsert every default capability, then apply any tenant toggles.

    Returns:
        dict with the seeded slugs and the tenant toggles applied
    """
    # Import here to avoid loading config before env vars are set
    from opsflow.service.catalog import default_capabilities
    from opsflow.service.runtime import get_runtime

    capabilities = default_capabilities()
    if dry_run:
        for capability in capabilities:
            print(f"[DRY RUN] Would upsert {capability.slug} ({capability.kind.value})")
        return {"seeded": [], "enabled": [], "status": "dry_run"}

    runtime = get_runtime()
    seeded = [runtime.registry.register(c).slug for c in capabilities]
    enabled = []
    for slug in enable or []:
        if not tenant_id:
            raise ValueError("--enable needs --tenant")
        runtime.registry.configure(tenant_id, slug, enabled=True)
        enabled.append(slug)
    return {"seeded": seeded, "enabled": enabled, "status": "seeded"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed the Opsflow capability catalogue",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    parser.add_argument("--tenant", default=None, help="Tenant to apply --enable toggles to")
    parser.add_argument(
        "--enable",
        action="append",
        default=[],
        metavar="SLUG",
        help="Enable a capability for --tenant (repeatable)",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = seed(args.dry_run, args.tenant, args.enable)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "seeded":
        print(f"\nSeeded {len(result['seeded'])} capabilities:")
        for slug in result["seeded"]:
            print(f"  - {slug}")
        for slug in result["enabled"]:
            print(f"Enabled {slug} for tenant {args.tenant}")


if __name__ == "__main__":
    main()
