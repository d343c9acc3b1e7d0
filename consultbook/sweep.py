"""Cancel appointments whose confirmation deadline has passed.

Usage:
    python -m consultbook.sweep

Intended for cron when the API runs with SWEEP_INTERVAL_SECONDS=0.
"""
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from consultbook.database import ensure_appointment_schema
from consultbook.scheduling.lifecycle import build_lifecycle

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    try:
        ensure_appointment_schema()
        report = build_lifecycle().cleanup_expired_appointments()
    except SQLAlchemyError:
        logger.exception('Sweep failed. Check DATABASE_URL.')
        sys.exit(1)

    if report.failed:
        sys.exit(2)


if __name__ == "__main__":
    main()
