"""Command line entry point for the reconciliation sweep.

Usage::

    python -m studio.reconcile --tenant studio-1 --days 7 --heal
"""
import argparse
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from dotenv import load_dotenv

load_dotenv()


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compare paid checkout sessions against issued subscriptions.")
    parser.add_argument("--tenant", required=True, help="Tenant (studio) id to reconcile")
    parser.add_argument("--days", type=int, default=None, help="Look-back window in days")
    parser.add_argument("--session", default=None, help="Reconcile a single checkout session id")
    heal = parser.add_mutually_exclusive_group()
    heal.add_argument("--heal", dest="heal", action="store_true", default=None, help="Provision missing subscriptions")
    heal.add_argument("--no-heal", dest="heal", action="store_false", help="Only report gaps")
    args = parser.parse_args(argv)
    if args.days is not None and args.days < 1:
        parser.error("--days must be >= 1")
    return args


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    import studio.main  # noqa: F401  configures the database connection factories
    from studio.app.provisioning import ProcessingState
    from studio.app.schemas.provisioning import ReconciliationResponse
    from studio.app.services.provisioning import get_provisioning_config, get_reconciliation_sweep

    config = get_provisioning_config()
    sweep = get_reconciliation_sweep()
    heal = config.reconciliation_heal if args.heal is None else args.heal

    if args.session:
        report = sweep.check_session(args.tenant, args.session, heal=heal)
    else:
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=args.days or config.reconciliation_window_days)
        report = sweep.run(args.tenant, start=start, end=end, heal=heal)

    print(ReconciliationResponse.from_report(report).model_dump_json(by_alias=True, indent=2))
    resolved = sum(1 for result in report.results if result.state != ProcessingState.FAILED)
    unresolved = len(report.gaps) - resolved
    return 0 if unresolved <= 0 and report.failed == 0 and report.complete else 1


if __name__ == "__main__":
    sys.exit(main())
