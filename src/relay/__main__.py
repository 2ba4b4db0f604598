"""Entry point for ``python -m relay``."""

import argparse
import logging
import os
from dataclasses import replace

import uvicorn

from .config import load_settings


def main() -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="llm-relay reverse proxy")
    parser.add_argument("--host", default=settings.host, help=f"bind address (default: {settings.host})")
    parser.add_argument("--port", type=int, default=settings.port, help=f"bind port (default: {settings.port})")
    parser.add_argument("--config-dir", default=settings.config_dir, help="directory holding routes.yaml")
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # server builds its module-level app from the environment on import
    os.environ["RELAY_CONFIG_DIR"] = args.config_dir
    from .server import create_app

    settings = replace(settings, host=args.host, port=args.port, config_dir=args.config_dir)
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
