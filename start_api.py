#!/usr/bin/env python3
"""
ordersync API Startup Script

Starts the order sync FastAPI server. Bulk finalization and the periodic sync
run in the arq worker (python -m ordersync.workers.start_arq_worker) unless
TASK_QUEUE_BACKEND=inprocess.
"""

import os
import sys
from pathlib import Path

import uvicorn


def main():
    """Start the ordersync API server."""
    print("Starting ordersync API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("")

    if not Path(".env").exists() and not os.getenv("DATABASE_URL"):
        print("WARNING: No .env file found and DATABASE_URL is not set!")
        print("   See .env.example for the required variables.")
        print("")

    try:
        uvicorn.run(
            "ordersync.main:app",
            host="0.0.0.0",
            port=int(os.getenv("PORT", "8000")),
            reload=os.getenv("ENVIRONMENT", "development") == "development",
            reload_dirs=["ordersync"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down ordersync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
