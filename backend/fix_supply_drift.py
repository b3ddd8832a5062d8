#!/usr/bin/env python3
"""
Maintenance script to repair supply items left unminted behind completed mints.

A completed (non-test) mint attempt must have its supply item flagged
is_minted. If a completion was forced or interrupted between the two writes,
the item still counts as available. This script finds such attempts and
flips the item.

Usage:
    cd backend
    python fix_supply_drift.py [--dry-run] [--collection ID]

Options:
    --dry-run        Show what would be changed without making changes
    --collection ID  Only check one collection
"""

import argparse
import asyncio
import sys

# Add parent directory to path
sys.path.insert(0, ".")

from app.models.database import session_scope
from app.services.actor import Actor
from app.services.reconciliation import BulkReconciler


async def fix_supply_drift(collection_id=None, dry_run: bool = False):
    """Find (and unless dry_run, repair) drifted supply items."""
    actor = Actor.system("fix_supply_drift")

    async with session_scope() as session:
        # Chain lookups are not needed for drift repair
        reconciler = BulkReconciler(session, chain=None)
        drifted = await reconciler.find_supply_drift(collection_id)

        if not drifted:
            print("No supply drift found.")
            return

        print(f"Found {len(drifted)} completed attempt(s) with unminted supply items.\n")
        for attempt in drifted:
            print(f"Attempt {attempt.id} (collection {attempt.collection_id})")
            print(f"  Supply item: {attempt.supply_item_id}")
            print(f"  Reveal tx: {attempt.reveal_tx_id or '-'}")
            print()

        if dry_run:
            print(f"[DRY RUN] Would repair {len(drifted)} supply item(s).")
            return

        repaired = await reconciler.repair_supply_drift(actor, collection_id)
        print(f"Repaired {len(repaired)} supply item(s).")


def main():
    parser = argparse.ArgumentParser(description="Repair supply items behind completed mints")
    parser.add_argument("--dry-run", "-n", action="store_true", help="Show changes without applying them")
    parser.add_argument("--collection", type=int, default=None, help="Only check this collection id")
    args = parser.parse_args()

    if args.dry_run:
        print("=== DRY RUN MODE ===\n")
    else:
        print("=== APPLYING FIXES ===\n")

    asyncio.run(fix_supply_drift(args.collection, args.dry_run))


if __name__ == "__main__":
    main()
