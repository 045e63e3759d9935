"""
Operational report and cleanup for the help-exchange store.

Prints platform totals and the current top community helpers, and can
purge expired OTP rows.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from helpexchange.config import get_settings
from helpexchange.db import DbClient
from helpexchange.dependencies import get_db_client
from helpexchange.errors import HelpExchangeError


logger = logging.getLogger(__name__)


def build_report(db: DbClient) -> dict:
    return {
        "dashboard": asdict(db.get_dashboard_stats()),
        "top_helpers": [asdict(ranking) for ranking in db.get_top_community_helpers()],
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Help-exchange maintenance")
    parser.add_argument(
        "--purge-otps",
        action="store_true",
        help="Delete expired OTP verification rows",
    )
    parser.add_argument(
        "--skip-report",
        action="store_true",
        help="Do not print dashboard stats and top helpers",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(), format="%(levelname)s:%(message)s"
    )

    try:
        db = get_db_client()
        if args.purge_otps:
            removed = db.purge_expired_otps()
            logger.info("Purged %d expired OTP rows", removed)
        if not args.skip_report:
            print(json.dumps(build_report(db), indent=2, sort_keys=True))
    except HelpExchangeError:
        logger.exception("Maintenance failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
