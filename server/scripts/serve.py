"""
Run the user accounts service under uvicorn.

uvicorn handles SIGINT/SIGTERM and runs the app shutdown, which drains the
database pool. The exit status is 0 after a clean drain and 1 otherwise.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from userstore.app import create_app

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="User store API server")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=39600, help="Bind port")
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level for the service and uvicorn",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    app = create_app()
    server = uvicorn.Server(
        uvicorn.Config(app, host=args.host, port=args.port, log_level=args.log_level)
    )
    logger.info("listening on %s", args.port)
    server.run()

    # None means the lifespan never completed its shutdown.
    if app.state.clean_shutdown is not True:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
