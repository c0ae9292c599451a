#!/usr/bin/env python3
"""
Field Lending Entry Point

Starts the FastAPI server with the field lending core (schedules, collection
recording and the offline mutation queue).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from field_lending.api import run_server
from field_lending.config import get_config


if __name__ == "__main__":
    config = get_config()
    remote = config.remote_url or "local storage"
    print("Starting Field Lending service...")
    print(f"Remote store: {remote}")
    print(f"Offline queue key: {config.queue_storage_key} in {config.storage_path}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\nShutting down Field Lending service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
