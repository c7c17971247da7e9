"""Run the gateway proxy locally: ``python -m sandbox_gateway``."""

import argparse

import uvicorn

from .config import GatewaySettings
from .log_config import configure_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="Sandbox gateway proxy (local development)")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8787, help="Listen port")
    args = parser.parse_args()

    configure_logging()

    from .sandbox.local import LocalSandboxProvider
    from .web_api import create_app

    settings = GatewaySettings.from_env()
    app = create_app(settings, LocalSandboxProvider())
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
