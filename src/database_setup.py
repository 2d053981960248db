"""
database_setup.py
-----------------
Waits for PostgreSQL, creates the application database if it is missing,
then creates the tables (neighborhoods, complaints, aggregates_daily,
aggregates_summary, etl_runs).

    python src/database_setup.py
"""

import logging
import time

import psycopg2
from psycopg2 import sql

from write_service import config
from write_service.db.session import create_tables, engine

logger = logging.getLogger(__name__)


def ensure_database(max_attempts=30, delay=2):
    """Create config.PG_DB on the server if it does not exist yet."""
    for attempt in range(1, max_attempts + 1):
        try:
            # Connect to default 'postgres' db to create the target db
            conn = psycopg2.connect(
                dbname="postgres",
                user=config.PG_USER,
                password=config.PG_PASSWORD,
                host=config.PG_HOST,
                port=config.PG_PORT,
            )
        except psycopg2.OperationalError as e:
            if attempt == max_attempts:
                raise
            logger.info(f"Waiting for database... ({attempt}/{max_attempts}) {e}")
            time.sleep(delay)
            continue

        try:
            conn.autocommit = True
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (config.PG_DB,))
                if not cur.fetchone():
                    cur.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(config.PG_DB)))
                    logger.info(f"Created database {config.PG_DB}")
        finally:
            conn.close()
        return


def initialize_database():
    ensure_database()
    logger.info("Attempting to create tables...")
    create_tables(engine)
    logger.info("Database and tables initialized successfully.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    initialize_database()
