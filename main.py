"""
ICP Discovery Engine - Main Entry Point
=======================================
Run this file to start the FastAPI server.

Usage:
    python main.py                    # Start server on port 8000
    python main.py --port 8080        # Start server on custom port
    python main.py --reload           # Start with auto-reload (dev mode)
    python main.py --init-db          # Create missing tables, then start

API Documentation:
    http://localhost:8000/docs        # Swagger UI
    http://localhost:8000/redoc       # ReDoc
"""

import argparse
import uvicorn
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from icp_discovery.logging_config import setup_logging


def main():
    parser = argparse.ArgumentParser(description="ICP Discovery Engine API Server")
    parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Host to bind the server to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to run the server on (default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create any missing tables in DATABASE_URL before starting",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level (default: LOG_LEVEL env var or INFO)",
    )

    args = parser.parse_args()
    setup_logging(level=args.log_level)

    if args.init_db:
        from icp_discovery.storage import create_db_engine, init_db
        init_db(create_db_engine())

    print(f"""
    ╔══════════════════════════════════════════════════════════════╗
    ║                  ICP DISCOVERY ENGINE                        ║
    ║                      Version 1.0.0                           ║
    ╠══════════════════════════════════════════════════════════════╣
    ║  Server starting on http://{args.host}:{args.port}                    ║
    ║  API Docs: http://localhost:{args.port}/docs                       ║
    ║  Health:   http://localhost:{args.port}/api/health                 ║
    ╚══════════════════════════════════════════════════════════════╝
    """)

    uvicorn.run(
        "icp_discovery.api.endpoints:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=args.workers if not args.reload else 1,
        log_config=None,
    )


if __name__ == "__main__":
    main()
