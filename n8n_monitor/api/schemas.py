from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# --- Request models ---

class InstanceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    base_url: str
    api_key: str = Field(min_length=1)

    @field_validator("base_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return v


class InstanceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    base_url: str | None = None
    api_key: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None

    @field_validator("base_url")
    @classmethod
    def _http_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return v


class WorkflowSyncRequest(BaseModel):
    instance_id: str


class ExecutionSyncRequest(BaseModel):
    instance_id: str
    limit: int = Field(default=100, ge=1, le=200)
    workflow_id: str | None = None


class SettingsUpdate(BaseModel):
    notification_email: str | None = None
    notify_on_error: bool | None = None
    error_threshold: int | None = Field(default=None, ge=1, le=20)
    notify_on_success: bool | None = None
    notify_on_warning: bool | None = None
    auto_deactivate_workflow: bool | None = None
    auto_deactivate_threshold: int | None = Field(default=None, ge=1, le=50)
    push_notifications_enabled: bool | None = None
    email_notifications_enabled: bool | None = None

    @field_validator("notification_email")
    @classmethod
    def _email(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return v
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("notification_email must be an email address")
        return v


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscribe(BaseModel):
    endpoint: str
    keys: PushKeys


class PushUnsubscribe(BaseModel):
    endpoint: str


# --- Response models ---

class InstanceResponse(BaseModel):
    id: str
    name: str
    base_url: str
    is_active: bool
    has_api_key: bool
    last_check: datetime | None = None
    created_at: datetime
    workflow_count: int = 0
    execution_count: int = 0


class ConnectionTestResponse(BaseModel):
    connected: bool
    message: str


class ErrorCounterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    consecutive_errors: int
    total_errors: int
    last_error_at: datetime | None = None
    last_success_at: datetime | None = None
    is_auto_deactivated: bool
    state: str


class WorkflowResponse(BaseModel):
    id: str
    instance_id: str
    remote_id: str
    name: str
    is_active: bool
    last_sync: datetime | None = None
    last_execution: datetime | None = None
    last_status: str | None = None
    execution_count: int = 0
    error_counter: ErrorCounterResponse | None = None


class WorkflowNodesResponse(BaseModel):
    id: str
    name: str
    nodes: list[dict[str, Any]]
    connections: dict[str, Any]


class WorkflowSyncResponse(BaseModel):
    count: int


class ToggleResponse(BaseModel):
    is_active: bool
    message: str


class ExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    instance_id: str
    workflow_id: str | None = None
    remote_id: str
    status: str
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ExecutionDetailResponse(ExecutionResponse):
    data: Any = None


class ExecutionSyncResponse(BaseModel):
    created: int
    updated: int
    total: int


class SettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    notification_email: str | None = None
    notify_on_error: bool
    error_threshold: int
    notify_on_success: bool
    notify_on_warning: bool
    auto_deactivate_workflow: bool
    auto_deactivate_threshold: int
    push_notifications_enabled: bool
    email_notifications_enabled: bool


class PushSubscriptionResponse(BaseModel):
    id: str
    endpoint: str
    is_active: bool


class DispatchResponse(BaseModel):
    sent: int
    failed: int


class NotificationLogResponse(BaseModel):
    id: str
    type: str
    title: str
    message: str
    workflow_id: str | None = None
    instance_id: str | None = None
    execution_id: str | None = None
    metadata: dict[str, Any] | None = None
    sent: bool
    sent_at: datetime | None = None
    created_at: datetime


class MonitorReportResponse(BaseModel):
    processed: int
    failed: int
    skipped: int
    new_executions: int
