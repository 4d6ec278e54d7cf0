#!/usr/bin/env python3
"""
shopsync API Startup Script

Starts the FastAPI server (webhooks, sync endpoints, notification WebSocket).
Workers are started separately:

    python -m shopsync.workers.start_arq_worker
    python -m shopsync.workers.start_arq_worker --scheduler
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the shopsync API server."""
    print("Starting shopsync API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    # Check for environment file
    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   JWT_SECRET=your-secret-key-here")
        print("   TOKEN_ENCRYPTION_KEY=<Fernet key>")
        print("   SHOPIFY_WEBHOOK_SECRET=<app secret>")
        print("")

    try:
        uvicorn.run(
            "shopsync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["shopsync"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down shopsync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
