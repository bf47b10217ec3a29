#!/usr/bin/env python3
"""
Expired session cleanup for Bizlytics.

Deletes every session past its expiry. Meant for cron when the API's
background sweep is disabled (SESSION_SWEEP_INTERVAL_SECONDS=0).
Run from the backend directory: python -m scripts.cleanup_sessions
"""

import logging
import sys
from pathlib import Path

# Add the backend directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.database import SessionLocal
from app.models import all as models  # noqa: F401
from app.services.session_guard import sweep_expired_sessions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> int:
    db = SessionLocal()
    try:
        deleted = sweep_expired_sessions(db)
    finally:
        db.close()
    logger.info("Cleanup finished: %d sessions removed", deleted)
    return 0


if __name__ == "__main__":
    sys.exit(main())
