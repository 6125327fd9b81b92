# leadestate/maintenance.py
# Subscription maintenance jobs (cron-friendly).
#
#   python -m leadestate.maintenance expire-trials
#   python -m leadestate.maintenance expiring-trials --days 3

import argparse
import sys
from typing import List, Optional

from leadestate.config import load_settings
from leadestate.db import Database
from leadestate.plans import PlanCatalog
from leadestate.subscriptions import SubscriptionRepository


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="leadestate.maintenance", description="Subscription maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("expire-trials", help="Mark every lapsed trial as expired")

    expiring = sub.add_parser("expiring-trials", help="List trials ending soon")
    expiring.add_argument("--days", type=int, default=None, help="Window in days (default: TRIAL_EXPIRING_SOON_DAYS)")
    return parser


def main(argv: Optional[List[str]] = None, repository: Optional[SubscriptionRepository] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = load_settings()
    if repository is None:
        database = Database(settings)
        repository = SubscriptionRepository(database, PlanCatalog(database, settings.default_plan_name), settings)

    if args.command == "expire-trials":
        count = repository.expire_lapsed_trials()
        print(f"[MAINTENANCE] Expired {count} trial(s)")
        return 0

    days = args.days if args.days is not None else settings.expiring_soon_days
    trials = repository.find_expiring_trials(days)
    print(f"[MAINTENANCE] {len(trials)} trial(s) ending within {days} day(s)")
    for subscription in trials:
        print(f"  tenant={subscription.tenant_id} plan={subscription.plan_name} "
              f"ends={subscription.trial_end_date.isoformat()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
