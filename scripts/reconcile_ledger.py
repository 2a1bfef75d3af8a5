#!/usr/bin/env python3
# scripts/reconcile_ledger.py
"""
Check asset statuses and stock ``loaned`` counters against the active loan
lines, and optionally repair them.

Run from the project root:

    python -m scripts.reconcile_ledger            # report only
    python -m scripts.reconcile_ledger --apply    # write the fixes
"""
import argparse
import logging

import ledger
from db import SessionLocal


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Recompute asset statuses and stock loaned counters from active loans.")
    ap.add_argument("--apply", action="store_true", help="Write the fixes (default: report only)")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    db = SessionLocal()
    try:
        drifts = ledger.find_drift(db)
        for d in drifts:
            print(f"{d.kind} {d.item_id}: {d.field} is {d.current}, expected {d.expected}")
        print(f"Drifted rows: {len(drifts)}")

        if not args.apply:
            if drifts:
                print("Dry run: nothing written. Re-run with --apply to fix.")
            return 1 if drifts else 0

        fixed = ledger.reconcile(db, drifts=drifts)
        print(f"Fixed rows: {len(fixed)}")
        left = len(drifts) - len(fixed)
        if left:
            print(f"Left for manual review: {left}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
