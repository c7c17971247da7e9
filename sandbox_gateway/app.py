"""
Modal app definition.

Deploy with ``modal deploy -m sandbox_gateway.app``. Configuration is read
from the ``sandbox-gateway-secrets`` secret (see ``config.py`` for keys).

The web function runs in a single container: the de-duplication of gateway
start attempts is in memory, so a second web container could start a second
gateway.
"""

from pathlib import Path

import modal

from .config import APP_NAME, GATEWAY_PORT, GatewaySettings
from .log_config import configure_logging, get_logger

configure_logging()
log = get_logger("app")

START_SCRIPT = Path(__file__).parent / "scripts" / "start-gateway.sh"

app = modal.App(APP_NAME)

gateway_secrets = modal.Secret.from_name("sandbox-gateway-secrets")

function_image = (
    modal.Image.debian_slim(python_version="3.12")
    .pip_install("fastapi>=0.115", "httpx>=0.27", "pydantic>=2.7", "websockets>=14.0")
    .add_local_python_source("sandbox_gateway")
)

gateway_image = (
    modal.Image.from_registry("node:22-bookworm-slim", add_python="3.12")
    .apt_install("rsync", "s3fs", "procps", "ca-certificates", "git")
    .run_commands("npm install -g clawdbot@latest")
    .env({"GATEWAY_PORT": str(GATEWAY_PORT)})
    .add_local_file(START_SCRIPT, "/usr/local/bin/start-gateway.sh", copy=True)
    .run_commands("chmod +x /usr/local/bin/start-gateway.sh")
)


def _provider(settings: GatewaySettings):
    from .sandbox.modal_sandbox import ModalSandboxProvider

    return ModalSandboxProvider(image=gateway_image, options=settings.sandbox_options)


@app.function(
    image=function_image,
    secrets=[gateway_secrets],
    max_containers=1,
    timeout=3600,
)
@modal.concurrent(max_inputs=200)
@modal.asgi_app()
def web():
    from .web_api import create_app

    settings = GatewaySettings.from_env()
    log.info(
        "app.start",
        sandbox_name=settings.sandbox_name,
        storage_configured=settings.storage.is_configured,
        keep_alive=settings.sandbox_options.keep_alive,
    )
    return create_app(settings, _provider(settings))


@app.function(
    image=function_image,
    secrets=[gateway_secrets],
    schedule=modal.Cron("*/5 * * * *"),
    timeout=300,
)
async def scheduled_backup() -> None:
    """Sync gateway state from the sandbox to R2."""
    from .storage.backup import run_scheduled_backup

    settings = GatewaySettings.from_env()
    await run_scheduled_backup(_provider(settings), settings)
