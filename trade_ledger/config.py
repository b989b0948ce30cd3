import os
import logging
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Configuration for the trade ledger."""

    # Storage
    DATA_DIR = os.getenv("TRADE_LEDGER_DATA_DIR", "ledger_data")
    DB_PATH = os.getenv("TRADE_LEDGER_DB", os.path.join(DATA_DIR, "ledger.db"))
    STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

    # Retry policy for transient storage failures
    MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
    RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "0.1"))  # seconds
    RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "5"))
    # The compensating write must eventually land, so it gets a larger budget
    COMPENSATION_MAX_RETRIES = int(os.getenv("COMPENSATION_MAX_RETRIES", "8"))

    # Query behaviour
    SEARCH_FIELDS = ("brand", "model", "trim")
    TRADE_SEARCH_FIELDS = ("brand", "model")
    SALES_SUMMARY_USE_COMPLETION_TIME = (
        os.getenv("SALES_SUMMARY_USE_COMPLETION_TIME", "true").lower() == "true"
    )

    # Alerting
    ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL")
    ALERT_RATE_LIMIT_WINDOW = 60  # seconds
    ALERT_RATE_LIMIT_MAX = 10     # alerts per level per window

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = "trade_ledger.log"

    @classmethod
    def setup_logging(cls):
        """Configure logging for the application."""
        os.makedirs(cls.DATA_DIR, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, cls.LOG_LEVEL),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[
                logging.StreamHandler(),
                logging.FileHandler(os.path.join(cls.DATA_DIR, cls.LOG_FILE))
            ]
        )
