#!/usr/bin/env python3
"""Run the notification retention job once against the configured database."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.database import get_db_session
from app.services.notifications import cleanup_notifications

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--auto-read-days",
        type=int,
        default=settings.notification_auto_read_days,
        help="Mark unread notifications older than this many days as read.",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.notification_retention_days,
        help="Delete read notifications older than this many days.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if args.auto_read_days <= 0 or args.retention_days <= 0:
        print("day thresholds must be positive", file=sys.stderr)
        return 2

    try:
        with get_db_session() as db:
            result = cleanup_notifications(
                db,
                now=datetime.now(timezone.utc),
                auto_read_days=args.auto_read_days,
                retention_days=args.retention_days,
            )
    except SQLAlchemyError:
        logger.exception("Notification cleanup failed")
        return 1

    print(result.model_dump_json())
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
