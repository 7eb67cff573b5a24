"""Run the maintenance sweeps once; schedule with cron or Cloud Scheduler."""

import argparse
import logging
import sys

from json4ai.config.environment import Environment, configure_logging
from json4ai.core.error_handler import AppError
from json4ai.database.user_store import FirestoreUserStore
from json4ai.services.maintenance import MaintenanceJobs
from json4ai.services.notifier import EmailNotifier

logger = logging.getLogger(__name__)

JOBS = ['all', 'daily', 'monthly', 'downgrade', 'reminders', 'report']


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="JSON4AI subscription maintenance")
    parser.add_argument('job', nargs='?', default='all', choices=JOBS)
    parser.add_argument('--log-level', default=None)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    if not Environment.validate_config():
        logger.error("Invalid configuration, aborting")
        return 1

    notifier = EmailNotifier.with_thread_pool()
    jobs = MaintenanceJobs(FirestoreUserStore(), notifier=notifier)
    try:
        if args.job == 'all':
            jobs.run_all()
        elif args.job == 'daily':
            jobs.reset_daily_credits()
        elif args.job == 'monthly':
            jobs.reset_monthly_usage()
        elif args.job == 'downgrade':
            jobs.downgrade_lapsed_plans()
        elif args.job == 'reminders':
            jobs.plan_ending_reminders()
            jobs.past_due_reminders()
        elif args.job == 'report':
            print(jobs.usage_report().to_string(index=False))
    except AppError as e:
        logger.error(f"Maintenance job {args.job} failed: {e.message}")
        return 1
    finally:
        notifier.shutdown(wait=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
