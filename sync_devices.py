import argparse
import logging
import sys
from datetime import timedelta

from punchclock.config import configure_logging, settings
from punchclock.cursors import CursorStore
from punchclock.db import SessionLocal, init_db
from punchclock.ingestion import sync_all_devices
from punchclock.meal_credits import grant_credits_for_date
from punchclock.shifts import local_today
from punchclock.store import StoreUnavailable, ping
from punchclock.terminals import http_terminal_factory
from punchclock.work_records import reconcile_work_records

logger = logging.getLogger("punchclock.sync")


def main() -> int:
    parser = argparse.ArgumentParser(description="Pull attendance logs from every configured terminal")
    parser.add_argument("--init-db", action="store_true", help="Create tables and seed default shifts first")
    parser.add_argument("--grant-ot", action="store_true", help="Also grant OT meal credits for today")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    configure_logging(args.log_level)
    logger.info("database %s, %d devices", settings.database_url.rsplit("@", 1)[-1], len(settings.devices))

    db = SessionLocal()
    try:
        ping(db)
        if args.init_db:
            init_db()

        run = sync_all_devices(
            db,
            settings.devices,
            http_terminal_factory(settings.terminal_timeout_seconds),
            CursorStore(settings.sync_state_path),
            settings,
        )
        logger.info(
            "sync done: %d fetched, %d new from %d devices, %d errors",
            run.fetched,
            run.new_events,
            run.devices_synced,
            len(run.errors),
        )

        if run.new_events > 0:
            today = local_today(settings.tz)
            reconciled = reconcile_work_records(db, today - timedelta(days=1), today, settings)
            granted = grant_credits_for_date(db, today, args.grant_ot, settings)
            logger.info(
                "reconciled %d work records, granted %d lunch and %d OT meal credits",
                reconciled.processed,
                granted.lunch_granted,
                granted.ot_granted,
            )
            for error in reconciled.errors + granted.errors:
                logger.warning(error)
    except StoreUnavailable as exc:
        logger.error("store unreachable, nothing synced: %s", exc)
        return 2
    finally:
        db.close()

    return 1 if run.errors else 0


if __name__ == "__main__":
    sys.exit(main())
