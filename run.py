#!/usr/bin/env python3
"""
Fieldbook Entry Point

Starts the FastAPI server with the loan collection core.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from field_lending.api import run_server
from field_lending.config import get_config
from field_lending.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(level=config.log_level, log_format=config.log_format,
                           log_file=config.log_file)

    logger.info(f"Starting Fieldbook on http://{config.api_host}:{config.api_port}")
    if config.delinquency_job_enabled:
        logger.info(f"Delinquency aggregation scheduled daily at {config.delinquency_job_time} UTC")

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down Fieldbook")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
