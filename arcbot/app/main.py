"""Entrypoint.

Usage:
  python -m arcbot.app.main engine    # run the trading agent
  python -m arcbot.app.main api       # run the read-only status API
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

import uvicorn

from arcbot.app.engine import run_engine


def main() -> None:
    parser = argparse.ArgumentParser("arcbot")
    parser.add_argument("command", choices=["engine", "api"], help="What to run")
    parser.add_argument("--config", type=Path, default=None, help="YAML config path")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    if args.command == "engine":
        try:
            code = asyncio.run(run_engine(args.config))
        except KeyboardInterrupt:
            code = 0
        sys.exit(code)

    if args.command == "api":
        uvicorn.run("arcbot.api.server:app", host=args.host, port=args.port, reload=False)
        return


if __name__ == "__main__":
    main()
