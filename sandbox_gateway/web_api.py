"""
HTTP surface of the sandbox gateway.

Every path that is not one of the management endpoints below is proxied to
the gateway, after making sure it is running:

- GET  /sandbox-health      liveness of this app, does not touch the gateway
- GET  /api/storage         storage configuration and last backup time
- POST /api/storage/sync    run a backup now
- POST /api/gateway/restart kill the gateway and start a new one
- GET  /api/devices         pending and paired devices (clawdbot CLI)
- POST /api/devices/{id}/approve, /api/devices/approve-all
- *    /{path}              HTTP and WebSocket proxy to the gateway
"""

import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse

from .config import GATEWAY_PORT, SERVICE_NAME, GatewaySettings
from .gateway.devices import (
    DeviceListError,
    approve_all_devices,
    approve_device,
    list_devices,
)
from .gateway.errors import GatewayStartupError
from .gateway.lifecycle import GatewayManager
from .log_config import configure_logging, get_logger
from .models import (
    ApproveAllResponse,
    DeviceApprovalResponse,
    ErrorResponse,
    FailedApproval,
    HealthResponse,
    RestartResponse,
    StartupErrorResponse,
    StorageStatusResponse,
    SyncResponse,
)
from .proxy import RequestProxy
from .sandbox.handle import SandboxHandle, SandboxProvider
from .storage.backup import (
    CONFIGURED_MESSAGE,
    NOT_CONFIGURED_MESSAGE,
    StorageStatus,
    get_storage_status,
    sync_to_storage,
)

configure_logging()
log = get_logger("web_api")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_app(
    settings: GatewaySettings,
    provider: SandboxProvider,
    *,
    manager: GatewayManager | None = None,
    proxy: RequestProxy | None = None,
) -> FastAPI:
    """Build the FastAPI app around a sandbox provider."""
    manager = manager or GatewayManager(settings)
    proxy = proxy or RequestProxy()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await proxy.aclose()

    app = FastAPI(title="sandbox-gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.provider = provider
    app.state.manager = manager
    app.state.proxy = proxy

    async def get_sandbox() -> SandboxHandle:
        return await provider.get(settings.sandbox_name)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        http_status = 500
        outcome = "error"
        try:
            response = await call_next(request)
            http_status = response.status_code
            outcome = "success" if http_status < 500 else "error"
            return response
        finally:
            log.info(
                "http.request",
                http_method=request.method,
                http_path=request.url.path,
                http_status=http_status,
                duration_ms=int((time.time() - start_time) * 1000),
                outcome=outcome,
            )

    @app.get("/sandbox-health", response_model=HealthResponse)
    async def sandbox_health() -> HealthResponse:
        return HealthResponse(service=SERVICE_NAME, gateway_port=GATEWAY_PORT)

    @app.get("/api/storage", response_model=StorageStatusResponse, response_model_exclude_none=True)
    async def storage_status() -> StorageStatusResponse:
        if not settings.storage.is_configured:
            status = StorageStatus(
                configured=False,
                missing=settings.storage.missing(),
                message=NOT_CONFIGURED_MESSAGE,
            )
        else:
            try:
                sandbox = await get_sandbox()
                status = await get_storage_status(sandbox, settings)
            except Exception as e:
                # Ignore errors checking sync status
                log.warn("api.storage_status_error", exc=e)
                status = StorageStatus(configured=True, message=CONFIGURED_MESSAGE)

        return StorageStatusResponse(
            configured=status.configured,
            missing=status.missing or None,
            last_sync=status.last_sync,
            message=status.message,
        )

    @app.post("/api/storage/sync", response_model=SyncResponse, response_model_exclude_none=True)
    async def storage_sync():
        if not settings.storage.is_configured:
            return JSONResponse(
                status_code=400,
                content=ErrorResponse(error="R2 storage is not configured").model_dump(
                    exclude_none=True
                ),
            )

        try:
            sandbox = await get_sandbox()
            result = await sync_to_storage(sandbox, settings)
        except Exception as e:
            log.error("api.error", exc=e, endpoint_name="storage_sync")
            return JSONResponse(status_code=500, content={"error": str(e)})

        if not result.success:
            return JSONResponse(
                status_code=500,
                content=SyncResponse(
                    success=False, error=result.error, details=result.details
                ).model_dump(exclude_none=True),
            )
        return SyncResponse(
            success=True,
            message="Sync completed successfully",
            last_sync=result.last_sync,
        )

    @app.post("/api/gateway/restart", response_model=RestartResponse)
    async def gateway_restart():
        try:
            sandbox = await get_sandbox()
            result = await manager.restart(sandbox)
        except Exception as e:
            log.error("api.error", exc=e, endpoint_name="gateway_restart")
            return JSONResponse(status_code=500, content={"error": str(e)})

        return RestartResponse(
            message=result.message,
            previous_process_id=result.previous_process_id,
            status=result.status,
        )

    def startup_failure_response(e: GatewayStartupError, transport: str) -> JSONResponse:
        log.error("gateway.unavailable", exc=e, reason=e.reason, transport=transport)
        return JSONResponse(
            status_code=503,
            content=StartupErrorResponse(**e.to_payload()).model_dump(),
        )

    def sandbox_unavailable_response(e: Exception, endpoint_name: str) -> JSONResponse:
        log.error("api.error", exc=e, endpoint_name=endpoint_name)
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error="Sandbox unavailable", details=str(e)).model_dump(),
        )

    async def ready_sandbox() -> SandboxHandle:
        sandbox = await get_sandbox()
        await manager.ensure_ready(sandbox)
        return sandbox

    @app.get("/api/devices")
    async def devices_list():
        try:
            sandbox = await ready_sandbox()
            data = await list_devices(sandbox)
        except GatewayStartupError as e:
            return startup_failure_response(e, transport="http")
        except Exception as e:
            log.error("api.error", exc=e, endpoint_name="devices_list")
            return JSONResponse(status_code=500, content={"error": str(e)})
        return JSONResponse(content=data)

    @app.post(
        "/api/devices/approve-all",
        response_model=ApproveAllResponse,
        response_model_exclude_none=True,
    )
    async def devices_approve_all():
        try:
            sandbox = await ready_sandbox()
            results = await approve_all_devices(sandbox)
        except GatewayStartupError as e:
            return startup_failure_response(e, transport="http")
        except DeviceListError as e:
            log.error("api.error", exc=e, endpoint_name="devices_approve_all")
            return JSONResponse(status_code=500, content={"error": str(e), "raw": e.raw})
        except Exception as e:
            log.error("api.error", exc=e, endpoint_name="devices_approve_all")
            return JSONResponse(status_code=500, content={"error": str(e)})

        if not results:
            return JSONResponse(content={"approved": [], "message": "No pending devices to approve"})

        approved = [r.request_id for r in results if r.success]
        return ApproveAllResponse(
            approved=approved,
            failed=[
                FailedApproval(request_id=r.request_id, error=r.error)
                for r in results
                if not r.success
            ],
            message=f"Approved {len(approved)} of {len(results)} device(s)",
        )

    @app.post("/api/devices/{request_id}/approve", response_model=DeviceApprovalResponse)
    async def devices_approve(request_id: str):
        try:
            sandbox = await ready_sandbox()
            result = await approve_device(sandbox, request_id)
        except GatewayStartupError as e:
            return startup_failure_response(e, transport="http")
        except Exception as e:
            log.error("api.error", exc=e, endpoint_name="devices_approve")
            return JSONResponse(status_code=500, content={"error": str(e)})

        return DeviceApprovalResponse(
            success=result.success,
            request_id=request_id,
            message="Device approved" if result.success else "Approval may have failed",
            stdout=result.stdout,
            stderr=result.stderr,
        )

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str) -> None:
        try:
            sandbox = await ready_sandbox()
            ws_url = await sandbox.ws_url(GATEWAY_PORT)
        except GatewayStartupError as e:
            await deny_websocket(websocket, startup_failure_response(e, transport="websocket"))
            return
        except Exception as e:
            await deny_websocket(websocket, sandbox_unavailable_response(e, "proxy_websocket"))
            return

        log.info("proxy.websocket", path=websocket.url.path)
        await proxy.forward_websocket(websocket, ws_url)

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy_http(request: Request, path: str):
        try:
            sandbox = await ready_sandbox()
        except GatewayStartupError as e:
            return startup_failure_response(e, transport="http")
        except Exception as e:
            return sandbox_unavailable_response(e, "proxy_http")

        try:
            base_url = await sandbox.http_url(GATEWAY_PORT)
            return await proxy.forward_http(request, base_url)
        except httpx.TransportError as e:
            log.error("proxy.upstream_error", exc=e, http_path=request.url.path)
            return JSONResponse(
                status_code=502,
                content=ErrorResponse(error="Gateway request failed", details=str(e)).model_dump(),
            )

    return app


async def deny_websocket(websocket: WebSocket, response: JSONResponse) -> None:
    """Reject an upgrade with an HTTP response so the client sees the error body."""
    try:
        await websocket.send_denial_response(response)
    except RuntimeError:
        # Server lacks the websocket.http.response extension
        await websocket.close(code=1011)
