"""
config.py
---------
Environment-driven settings shared by the write service pipeline and,
through the shared database, the read service.

Values come from the process environment; a local .env file is loaded
first so the same settings work both inside Docker and on a laptop.
"""

import os
import urllib.parse

from dotenv import load_dotenv

load_dotenv()

# PostgreSQL
PG_HOST = os.getenv('PG_HOST', 'localhost')
PG_PORT = os.getenv('PG_PORT', '5432')
PG_DB = os.getenv('PG_DB', 'complaint_club')
PG_USER = os.getenv('PG_USER', 'postgres')
PG_PASSWORD = os.getenv('PG_PASSWORD', 'postgres')

# wraps the password in quotes so it doesn't mistake it for the host
_encoded_password = urllib.parse.quote_plus(PG_PASSWORD)
PG_DSN = os.getenv(
    "PG_DSN",
    f"postgresql+psycopg2://{PG_USER}:{_encoded_password}@{PG_HOST}:{PG_PORT}/{PG_DB}"
)

# NYC Open Data (Socrata)
NYC311_API_URL = os.getenv("NYC311_API_URL", "https://data.cityofnewyork.us/resource/erm2-nwe9.json")
NTA_API_URL = os.getenv("NTA_API_URL", "https://data.cityofnewyork.us/resource/9nt8-h7nd.geojson")
SOCRATA_APP_TOKEN = os.getenv("SOCRATA_APP_TOKEN")
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "60"))

# Ingestion
FETCH_LIMIT = int(os.getenv("FETCH_LIMIT", "10000"))
BACKFILL_LIMIT = int(os.getenv("BACKFILL_LIMIT", "50000"))
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "500"))
INGEST_WORKERS = int(os.getenv("INGEST_WORKERS", "8"))
DEFAULT_LOOKBACK_DAYS = int(os.getenv("DEFAULT_LOOKBACK_DAYS", "7"))

# Aggregation
AGGREGATION_WORKERS = int(os.getenv("AGGREGATION_WORKERS", "4"))
CHAOS_MAXIMA_POLICY = os.getenv("CHAOS_MAXIMA_POLICY", "relative").strip().lower()
TIMEZONE = os.getenv("NYC_TIMEZONE", "America/New_York")

# Kafka (streaming ingestion path)
KAFKA_BOOTSTRAP = os.getenv("KAFKA_BOOTSTRAP", "localhost:9092")
CLASSIFIED_TOPIC = os.getenv("CLASSIFIED_TOPIC", "nyc311.complaints.classified")

# Administrative triggers
CRON_SECRET = os.getenv("CRON_SECRET")
