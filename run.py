#!/usr/bin/env python3
"""
Development server entry point.

Session state (collected set, proximity engine, caches) lives in-process,
so the app always runs with a single worker.
"""

import argparse
import logging

import uvicorn
from dotenv import load_dotenv


def main():
    load_dotenv()

    from lumigram.core.settings import settings

    parser = argparse.ArgumentParser(description="Lumigram backend server")
    parser.add_argument("--host", default=None, help="Host to bind to (overrides HOST)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (overrides PORT)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--log-level", default=None, help="Log level (overrides LOG_LEVEL)")
    args = parser.parse_args()

    log_level = (args.log_level or settings.log_level).lower()
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        "lumigram.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
        workers=1,
        log_level=log_level,
        access_log=True,
    )


if __name__ == "__main__":
    main()
