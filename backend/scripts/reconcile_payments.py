#!/usr/bin/env python
"""Heal stored payment status from live processor state.

Usage:
    python backend/scripts/reconcile_payments.py                # heal and print report
    python backend/scripts/reconcile_payments.py --dry-run      # report planned changes only
    python backend/scripts/reconcile_payments.py --limit 200

Exit Codes:
  0 sweep finished (lookup failures are retried on the next run)
  3 sweep aborted
"""
from __future__ import annotations
import argparse, json, logging, os, sys

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from rental_engine import create_app, get_db  # type: ignore
from rental_engine.services.reconciliation import reconcile


def main(argv: list[str]) -> int:
    p = argparse.ArgumentParser(description="Reconcile open holds against the payment processor")
    p.add_argument('--dry-run', action='store_true', help='Compute changes without writing them')
    p.add_argument('--limit', type=int, default=None, help='Maximum transactions to check')
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    app = create_app()
    with app.app_context():
        try:
            report = reconcile(get_db(), app.extensions['payments'], limit=args.limit, dry_run=args.dry_run)
        except Exception:
            logging.getLogger('reconcile_payments').exception('reconciliation sweep aborted')
            get_db().rollback()
            return 3
    print(json.dumps(report.as_dict(), indent=2, sort_keys=True))
    return 0


if __name__ == '__main__':  # pragma: no cover
    sys.exit(main(sys.argv[1:]))
