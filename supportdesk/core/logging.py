import logging
import os
from typing import Optional


def configure_logging(level: Optional[str] = None) -> None:
    """Configure logging once for the API process and the job runner."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # The Stripe SDK logs every request at INFO.
    logging.getLogger("stripe").setLevel(os.getenv("STRIPE_LOG_LEVEL", "WARNING").upper())
