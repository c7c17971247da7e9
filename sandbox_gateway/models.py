"""Response models for the HTTP API."""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    gateway_port: int


class StartupErrorResponse(BaseModel):
    """Returned with 503 when the gateway cannot be made ready."""

    error: str
    kind: str
    reason: str
    details: str
    hint: str


class StorageStatusResponse(BaseModel):
    configured: bool
    missing: list[str] | None = None
    last_sync: str | None = None
    message: str


class SyncResponse(BaseModel):
    success: bool
    message: str | None = None
    last_sync: str | None = None
    error: str | None = None
    details: str | None = None


class RestartResponse(BaseModel):
    success: bool = True
    message: str
    previous_process_id: str | None = None
    status: str = "starting"


class DeviceApprovalResponse(BaseModel):
    success: bool
    request_id: str = Field(serialization_alias="requestId")
    message: str
    stdout: str
    stderr: str


class FailedApproval(BaseModel):
    request_id: str = Field(serialization_alias="requestId")
    success: bool = False
    error: str | None = None


class ApproveAllResponse(BaseModel):
    approved: list[str]
    failed: list[FailedApproval] | None = None
    message: str


class ErrorResponse(BaseModel):
    error: str
    details: str | None = None
