#!/usr/bin/env python3
"""
Loan Engine Entry Point

Starts the FastAPI server with settings from the LOAN_ENGINE_* environment.
"""

import sys

from loan_engine.config import get_config
from loan_engine.logging_config import setup_logging, get_logger
from loan_engine.api import run_server


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    logger = get_logger()

    logger.info(f"Starting loan engine API on {config.api_host}:{config.api_port}")
    logger.info(f"Storage: {'SQLite ' + config.database_path if config.use_sqlite else 'in-memory'}")

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            workers=config.api_workers,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        logger.info("Shutting down loan engine")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
