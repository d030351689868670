"""Block container start-up until the configured database accepts connections."""
import logging
import os
import time

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError

from sew4mi.config import Config

MAX_ATTEMPTS = int(os.environ.get("DB_WAIT_ATTEMPTS", "30"))
SLEEP_SECONDS = float(os.environ.get("DB_WAIT_INTERVAL", "2"))

logger = logging.getLogger("sew4mi.wait_for_db")


def main() -> None:
    logging.basicConfig(level=Config.LOG_LEVEL)
    if Config.DATABASE_URL.startswith("sqlite"):
        logger.info("SQLite database configured; nothing to wait for.")
        return

    engine = create_engine(Config.DATABASE_URL, pool_pre_ping=True)
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            logger.info("Database connection established.")
            return
        except OperationalError as exc:
            logger.warning("Attempt %s/%s failed: %s", attempt, MAX_ATTEMPTS, exc)
            time.sleep(SLEEP_SECONDS)

    raise RuntimeError("Database not reachable after waiting.")


if __name__ == "__main__":
    main()
