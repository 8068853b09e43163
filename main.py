"""
PDF Prodigy Service: Main Entry Point
=====================================
Starts the Flask-based job API with a worker pool.

Usage:
    python main.py                    # Default: 0.0.0.0:5000
    python main.py --port 8000        # Custom port
    python main.py --workers 4        # Worker threads
    python main.py --debug            # Debug mode
"""

import argparse
import logging

from pdfprodigy.config import LOG_DATEFMT, LOG_FORMAT, EngineConfig
from pdfprodigy.server import app, create_app

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="PDF Prodigy job service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads")
    parser.add_argument("--storage-dir", default=None, help="Persist documents here")
    parser.add_argument("--db-path", default=None, help="SQLite archive path")
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    args = parser.parse_args()

    config = EngineConfig.from_env(
        workers=args.workers,
        storage_dir=args.storage_dir,
        db_path=args.db_path,
    )
    create_app({"ENGINE_CONFIG": config})

    logger.info(f"Archive database: {config.db_path or 'disabled'}")
    logger.info(f"Starting server on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
