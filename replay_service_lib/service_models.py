from __future__ import annotations

import datetime as dt
import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger("service")

EventType = Literal["navigate", "click", "input", "waitFor"]
RunStatus = Literal["queued", "running", "done", "failed"]
StatusValue = Literal["queued", "running", "done", "failed", "unknown"]
ReplayStateName = Literal["idle", "navigating", "replaying", "succeeded", "failed"]
SubmitState = Literal["started", "queued", "coalesced"]

TOGGLE_INPUT_TYPES = ("checkbox", "radio")
_KNOWN_EVENT_TYPES = {"navigate", "click", "input", "waitFor"}


class BoundingRect(BaseModel):
    model_config = ConfigDict(extra="ignore")

    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0


class ElementDescriptor(BaseModel):
    """Best-effort description of the element an event targeted at record time.

    Every field is a hint. Nothing here is guaranteed to still match the live page.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tag: Optional[str] = None
    text: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    class_name: Optional[str] = Field(default=None, alias="className")
    type: Optional[str] = None
    value: Optional[str] = None
    checked: Optional[bool] = None
    selector: Optional[str] = None
    xpath: Optional[str] = None
    bounding_client_rect: Optional[BoundingRect] = Field(default=None, alias="boundingClientRect")

    @field_validator("tag", "text", "id", "name", "class_name", "type", "value", "selector", "xpath", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Optional[str]:
        # SVG elements serialize className as an object; treat anything non-scalar as absent.
        if isinstance(v, bool) or v is None:
            return None
        if isinstance(v, (int, float)):
            v = str(v)
        if not isinstance(v, str) or not v.strip():
            return None
        return v

    @property
    def tag_name(self) -> str:
        return (self.tag or "").upper()

    @property
    def is_toggle(self) -> bool:
        return (self.type or "").lower() in TOGGLE_INPUT_TYPES


class NavigateEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["navigate"] = "navigate"
    href: str
    timestamp: float = 0


class ClickEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["click"] = "click"
    detail: Optional[ElementDescriptor] = None
    timestamp: float = 0


class InputEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["input"] = "input"
    detail: Optional[ElementDescriptor] = None
    timestamp: float = 0


class WaitForEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["waitFor"] = "waitFor"
    selector: str
    timeout: Optional[int] = None
    timestamp: float = 0

    @model_validator(mode="before")
    @classmethod
    def _lift_detail(cls, data: Any) -> Any:
        # The recorder nests selector/timeout under "detail".
        if isinstance(data, dict) and isinstance(data.get("detail"), dict):
            detail = data["detail"]
            data = dict(data)
            data.setdefault("selector", detail.get("selector"))
            data.setdefault("timeout", detail.get("timeout"))
        return data


Event = Annotated[Union[NavigateEvent, ClickEvent, InputEvent, WaitForEvent], Field(discriminator="type")]


class Session(BaseModel):
    """A recorded test: an optional device name plus timestamped events, navigation first."""

    model_config = ConfigDict(extra="ignore")

    device: str = "desktop"
    events: list[Event]

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            data = {"events": data}
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("device"):
            data["device"] = "desktop"
        raw_events = data.get("events")
        if isinstance(raw_events, list):
            kept = []
            for raw in raw_events:
                if isinstance(raw, dict) and raw.get("type") not in _KNOWN_EVENT_TYPES:
                    logger.debug("[session] dropping event of unknown type %r", raw.get("type"))
                    continue
                kept.append(raw)
            data["events"] = kept
        return data

    @model_validator(mode="after")
    def _starts_with_navigate(self) -> "Session":
        if not self.events:
            raise ValueError("session has no events")
        if not isinstance(self.events[0], NavigateEvent):
            raise ValueError("first event of a session must be a navigate event")
        return self

    @property
    def start_url(self) -> Optional[str]:
        first = self.events[0] if self.events else None
        return first.href if isinstance(first, NavigateEvent) else None


class ReplayTiming(BaseModel):
    """Timing profile for one replay run (milliseconds)."""

    model_config = ConfigDict(extra="ignore")

    max_event_delay_ms: int = Field(default=10000, ge=0)
    navigation_timeout_ms: int = Field(default=10000, ge=0)
    wait_for_timeout_ms: int = Field(default=5000, ge=0)
    input_wait_timeout_ms: int = Field(default=3000, ge=0)
    type_delay_ms: int = Field(default=50, ge=0)
    post_click_delay_ms: int = Field(default=500, ge=0)
    auto_input_window_ms: int = Field(default=300, ge=0)

    @classmethod
    def from_config(cls) -> "ReplayTiming":
        from . import service_config as cfg

        return cls(
            max_event_delay_ms=cfg.MAX_EVENT_DELAY_MS,
            navigation_timeout_ms=cfg.NAVIGATION_TIMEOUT_MS,
            wait_for_timeout_ms=cfg.WAIT_FOR_TIMEOUT_MS,
            input_wait_timeout_ms=cfg.INPUT_WAIT_TIMEOUT_MS,
            type_delay_ms=cfg.TYPE_DELAY_MS,
            post_click_delay_ms=cfg.POST_CLICK_DELAY_MS,
            auto_input_window_ms=cfg.AUTO_INPUT_WINDOW_MS,
        )


class ConsoleEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["console"] = "console"
    type: str
    text: str
    location: Optional[dict[str, Any]] = None


class PageErrorEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["pageerror"] = "pageerror"
    message: str
    stack: Optional[str] = None


class NetworkEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["request"] = "request"
    url: str
    method: Optional[str] = None
    status: Optional[int] = None
    headers: Optional[dict[str, str]] = None
    request_post_data: Optional[str] = None
    response_body: Optional[str] = None
    error: Optional[str] = None


LogEntry = Union[ConsoleEntry, PageErrorEntry, NetworkEntry]


class ReplayOutcome(BaseModel):
    """Result of one replay run."""

    test_name: str
    state: ReplayStateName
    steps_total: int = 0
    steps_replayed: int = 0
    skipped: list[str] = Field(default_factory=list)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    failed_step: Optional[int] = None
    screenshot_path: Optional[str] = None
    log_path: Optional[str] = None
    video_path: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == "succeeded"

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


class RunRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    test_name: str = Field(alias="testName")
    status: RunStatus
    timestamp: dt.datetime
    run_id: Optional[str] = None
    exit_code: Optional[int] = None

    def to_status_file(self) -> dict[str, Any]:
        return {"status": self.status, "timestamp": self.timestamp.isoformat()}


class StatusResp(BaseModel):
    status: StatusValue
    timestamp: Optional[str] = None


class SessionSummary(BaseModel):
    name: str
    href: str = ""
    device: str = "desktop"
    mtime: dt.datetime
    scheduled: bool = False


class SubmitResp(BaseModel):
    test_name: str
    state: SubmitState
    run_id: Optional[str] = None
    queue_position: Optional[int] = None


class ScheduleReq(BaseModel):
    interval_ms: Optional[int] = Field(default=None, ge=1000)


class ScheduledJobView(BaseModel):
    test_name: str
    interval_ms: int
    last_run: Optional[dt.datetime] = None
    next_run: Optional[dt.datetime] = None


class QueueView(BaseModel):
    capacity: int
    active: list[str] = Field(default_factory=list)
    queued: list[str] = Field(default_factory=list)


class CrawlReport(BaseModel):
    start_url: str
    device: str = "desktop"
    visited: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    screenshots: list[str] = Field(default_factory=list)
    log_path: Optional[str] = None
