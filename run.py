#!/usr/bin/env python3
"""
Blood Allocation Engine - Server Runner
========================================
Starts the FastAPI server exposing the allocation engine to the host
application.

Usage:
    python run.py                    # Default: http://localhost:8000
    python run.py --port 3000        # Custom port
    python run.py --host 127.0.0.1   # Bind to localhost only
"""

import argparse
import logging

import uvicorn

from bloodalloc.config import API_HOST, API_PORT, LOG_FORMAT, LOG_LEVEL


def main():
    parser = argparse.ArgumentParser(description="Blood Allocation Engine - Server")
    parser.add_argument("--host", type=str, default=API_HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=API_PORT, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--log-level", type=str, default=LOG_LEVEL, help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)

    print("╔══════════════════════════════════════════════════╗")
    print("║  Blood Allocation Engine                         ║")
    print(f"║  http://{args.host}:{args.port}".ljust(51) + "║")
    print("╚══════════════════════════════════════════════════╝")
    print()
    print("  API docs:  http://localhost:{}/docs".format(args.port))
    print()

    uvicorn.run(
        "bloodalloc.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
