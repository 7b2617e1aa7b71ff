#!/usr/bin/env python3
"""
KodBank Ledger Entry Point

Starts the FastAPI server with settings from the KODBANK_* environment.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from kodbank.api import run_server
from kodbank.config import get_config
from kodbank.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(level=config.log_level, fmt=config.log_format,
                           log_file=config.log_file)

    logger.info("Starting KodBank ledger on %s:%s (storage: %s)",
                config.api_host, config.api_port, config.database_url)

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down KodBank ledger")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
