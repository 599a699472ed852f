"""
Page log capture and failure reporting for replay runs.

PageLogObserver subscribes to the page's console, pageerror and request
events and keeps an append-only list of frozen entries. FailureDiagnostics
turns the first fatal error of a run into a screenshot, a JSON dump of
those entries and one notification; later calls are no-ops.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

from playwright.async_api import Error as PlaywrightError

from .service_config import RESPONSE_BODY_MAX_BYTES, SCREENSHOTS_BASE, VIDEO_ATTACH_MAX_BYTES
from .service_errors import ReplayError
from .service_models import ConsoleEntry, LogEntry, NetworkEntry, PageErrorEntry
from .service_notify import NotificationSink

logger = logging.getLogger("service")


class PageLogObserver:
    def __init__(self, *, max_body_bytes: int = RESPONSE_BODY_MAX_BYTES, log: Optional[logging.Logger] = None):
        self.max_body_bytes = max_body_bytes
        self.log = log or logger
        self.entries: list[LogEntry] = []
        self._pending: set[asyncio.Task] = set()

    def attach(self, page) -> "PageLogObserver":
        page.on("console", self._on_console)
        page.on("pageerror", self._on_page_error)
        page.on("requestfinished", self._on_request_finished)
        page.on("requestfailed", self._on_request_failed)
        return self

    def _record(self, entry: LogEntry) -> None:
        self.entries.append(entry)

    def _on_console(self, msg) -> None:
        location = msg.location if isinstance(msg.location, dict) else None
        entry = ConsoleEntry(type=str(msg.type), text=str(msg.text), location=location)
        self._record(entry)
        self.log.info("[replay/console] %s: %s", entry.type, entry.text)

    def _on_page_error(self, error) -> None:
        entry = PageErrorEntry(message=str(getattr(error, "message", error)), stack=getattr(error, "stack", None))
        self._record(entry)
        self.log.error("[replay/pageerror] %s", entry.message)

    def _on_request_finished(self, request) -> None:
        task = asyncio.get_running_loop().create_task(self._capture_request(request))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _on_request_failed(self, request) -> None:
        failure = request.failure
        self._record(NetworkEntry(url=request.url, method=request.method, error=str(failure) if failure else "failed"))
        self.log.warning("[replay/network] %s %s failed: %s", request.method, request.url, failure)

    async def _capture_request(self, request) -> None:
        status: Optional[int] = None
        headers: Optional[dict[str, str]] = None
        body: Optional[str] = None
        try:
            response = await request.response()
            if response is not None:
                status = response.status
                headers = dict(response.headers)
                try:
                    raw = await response.body()
                    body = raw[: self.max_body_bytes].decode("utf-8", errors="replace")
                except PlaywrightError:
                    # redirects and some cached responses carry no body
                    body = None
        except PlaywrightError as exc:
            self.log.debug("[replay/network] response unavailable for %s: %s", request.url, exc)
        self._record(
            NetworkEntry(
                url=request.url,
                method=request.method,
                status=status,
                headers=headers,
                request_post_data=request.post_data,
                response_body=body,
            )
        )

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def snapshot(self) -> list[dict[str, Any]]:
        return [entry.model_dump() for entry in self.entries]


def failure_message(test_name: str, error: ReplayError) -> str:
    return f"❌ **Test Failed**: `{test_name}` {error.describe()}"


class FailureDiagnostics:
    """First-failure-wins capture and notification for a single run."""

    def __init__(
        self,
        test_name: str,
        notifier: NotificationSink,
        *,
        screenshots_dir: Path = SCREENSHOTS_BASE,
        video_attach_max_bytes: int = VIDEO_ATTACH_MAX_BYTES,
        log: Optional[logging.Logger] = None,
    ):
        self.test_name = test_name
        self.notifier = notifier
        self.screenshots_dir = Path(screenshots_dir)
        self.video_attach_max_bytes = video_attach_max_bytes
        self.log = log or logger

        self.error: Optional[ReplayError] = None
        self.explanation: list[str] = []
        self.screenshot_path: Optional[Path] = None
        self.log_path: Optional[Path] = None
        self._published = False
        self._lock = asyncio.Lock()

    @property
    def captured(self) -> bool:
        return self.error is not None

    def _stem(self, error: ReplayError) -> str:
        if error.step_index is None:
            return f"{self.test_name}-start"
        return f"{self.test_name}-step{error.step_index + 1}"

    async def capture(
        self,
        page,
        error: ReplayError,
        entries: Sequence[LogEntry] = (),
        explanation: Sequence[str] = (),
    ) -> bool:
        """Screenshot + log dump for the first fatal error. Returns False if already captured."""
        async with self._lock:
            if self.error is not None:
                self.log.debug("[replay/diag] already captured, ignoring %s", error.kind)
                return False
            self.error = error
            self.explanation = list(explanation)

            self.screenshots_dir.mkdir(parents=True, exist_ok=True)
            stem = self._stem(error)

            if page is not None:
                shot = self.screenshots_dir / f"{stem}.png"
                try:
                    await page.screenshot(path=str(shot))
                    self.screenshot_path = shot
                    self.log.error("[replay/diag] screenshot: %s", shot)
                except PlaywrightError as exc:
                    self.log.warning("[replay/diag] screenshot failed: %s", exc)

            log_file = self.screenshots_dir / f"{stem}-log.json"
            payload = {
                "test": self.test_name,
                "error": {"kind": error.kind, "step": error.step_index, "reason": error.reason},
                "explanation": self.explanation,
                "captured_at": dt.datetime.now(dt.timezone.utc).isoformat(),
                "entries": [e.model_dump() for e in entries],
            }
            try:
                log_file.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
                self.log_path = log_file
            except OSError as exc:
                self.log.warning("[replay/diag] writing %s failed: %s", log_file, exc)
            return True

    def _attachments(self, video_path: Optional[Path]) -> list[Path]:
        files = [p for p in (self.screenshot_path, self.log_path) if p is not None]
        if video_path is not None and Path(video_path).is_file():
            size = Path(video_path).stat().st_size
            if size <= self.video_attach_max_bytes:
                files.append(Path(video_path))
            else:
                self.log.info("[replay/diag] video %s too large to attach (%s bytes)", video_path, size)
        return files

    async def publish(self, video_path: Optional[Path] = None) -> bool:
        """Send the single failure notification. No-op without a captured error or when already sent."""
        async with self._lock:
            if self.error is None or self._published:
                return False
            self._published = True
            message = failure_message(self.test_name, self.error)
            if self.explanation:
                message += "\n" + "\n".join(f"- {line}" for line in self.explanation)
            if video_path is not None and Path(video_path).is_file():
                message += f"\nvideo: {video_path}"
            return await self.notifier.send(message, self._attachments(video_path))
