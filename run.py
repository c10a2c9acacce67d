#!/usr/bin/env python3
"""
Account Service Entry Point

Starts the FastAPI server with settings taken from ACCOUNTS_* environment variables.
"""

import sys

from account_service.config import get_config
from account_service.logging_config import setup_logging
from account_service.api import run_server


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("Starting Account Service...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Account Service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
