import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from playwright.async_api import Error as PlaywrightError

from replay_service_lib.service_diagnostics import FailureDiagnostics, PageLogObserver, failure_message
from replay_service_lib.service_errors import ElementNotFound, InvalidSessionError
from replay_service_lib.service_models import ConsoleEntry, NetworkEntry, PageErrorEntry
from tests.mocks.page_mocks import FakePage


class FakeResponse:
    def __init__(self, status=200, body=b"", headers=None, body_error=None):
        self.status = status
        self.headers = headers or {"content-type": "application/json"}
        self._body = body
        self._body_error = body_error

    async def body(self) -> bytes:
        if self._body_error is not None:
            raise self._body_error
        return self._body


class FakeRequest:
    def __init__(self, url, method="GET", response=None, post_data=None, failure=None):
        self.url = url
        self.method = method
        self.post_data = post_data
        self.failure = failure
        self._response = response

    async def response(self):
        return self._response


class TestPageLogObserver:
    @pytest.fixture
    def page(self) -> FakePage:
        return FakePage([])

    @pytest.mark.asyncio
    async def test_console_and_page_errors(self, page):
        observer = PageLogObserver().attach(page)

        page.emit("console", SimpleNamespace(type="error", text="Uncaught x", location={"url": "app.js"}))
        page.emit("pageerror", SimpleNamespace(message="boom", stack="at f()"))

        assert observer.entries == [
            ConsoleEntry(type="error", text="Uncaught x", location={"url": "app.js"}),
            PageErrorEntry(message="boom", stack="at f()"),
        ]

    @pytest.mark.asyncio
    async def test_finished_request_body_is_truncated(self, page):
        observer = PageLogObserver(max_body_bytes=10).attach(page)
        response = FakeResponse(status=201, body=b"x" * 50)

        page.emit("requestfinished", FakeRequest("https://api.test/cart", "POST", response, post_data='{"id": 1}'))
        await observer.drain()

        (entry,) = observer.entries
        assert isinstance(entry, NetworkEntry)
        assert entry.status == 201
        assert entry.method == "POST"
        assert entry.request_post_data == '{"id": 1}'
        assert entry.response_body == "x" * 10

    @pytest.mark.asyncio
    async def test_body_errors_are_tolerated(self, page):
        observer = PageLogObserver().attach(page)
        response = FakeResponse(status=302, body_error=PlaywrightError("no body for redirect"))

        page.emit("requestfinished", FakeRequest("https://app.test/old", response=response))
        await observer.drain()

        assert observer.entries[0].status == 302
        assert observer.entries[0].response_body is None

    @pytest.mark.asyncio
    async def test_failed_request(self, page):
        observer = PageLogObserver().attach(page)
        page.emit("requestfailed", FakeRequest("https://cdn.test/a.js", failure="net::ERR_ABORTED"))

        assert observer.entries[0].error == "net::ERR_ABORTED"
        assert observer.snapshot()[0]["kind"] == "request"

    def test_entries_are_immutable(self):
        entry = ConsoleEntry(type="log", text="hi")
        with pytest.raises(Exception):
            entry.text = "changed"


class TestFailureDiagnostics:
    @pytest.fixture
    def notifier(self) -> AsyncMock:
        sink = AsyncMock()
        sink.send.return_value = True
        return sink

    @pytest.fixture
    def diagnostics(self, notifier, tmp_path) -> FailureDiagnostics:
        return FailureDiagnostics("login", notifier, screenshots_dir=tmp_path, video_attach_max_bytes=100)

    def test_failure_message(self):
        assert failure_message("login", ElementNotFound("could not click", 2)) == (
            "❌ **Test Failed**: `login` step 3: could not click"
        )

    @pytest.mark.asyncio
    async def test_capture_writes_screenshot_and_log(self, diagnostics, tmp_path):
        page = FakePage([])
        entries = [ConsoleEntry(type="warning", text="slow")]

        assert await diagnostics.capture(page, ElementNotFound("missing", 3), entries, ["exact text -> 0"])

        assert diagnostics.screenshot_path == tmp_path / "login-step4.png"
        data = json.loads((tmp_path / "login-step4-log.json").read_text())
        assert data["error"] == {"kind": "ElementNotFound", "step": 3, "reason": "missing"}
        assert data["entries"][0]["text"] == "slow"
        assert data["explanation"] == ["exact text -> 0"]
        assert data["captured_at"].endswith("+00:00")

    @pytest.mark.asyncio
    async def test_concurrent_failures_capture_once(self, diagnostics):
        page = FakePage([])

        results = await asyncio.gather(
            diagnostics.capture(page, ElementNotFound("first", 1)),
            diagnostics.capture(page, ElementNotFound("second", 2)),
        )

        assert sorted(results) == [False, True]
        assert len(page.screenshots) == 1

    @pytest.mark.asyncio
    async def test_screenshot_failure_is_best_effort(self, diagnostics, notifier):
        page = FakePage([], screenshot_error=PlaywrightError("Target closed"))

        assert await diagnostics.capture(page, ElementNotFound("gone", 0))
        assert diagnostics.screenshot_path is None
        assert diagnostics.log_path is not None

        await diagnostics.publish()
        attachments = notifier.send.await_args.args[1]
        assert attachments == [diagnostics.log_path]

    @pytest.mark.asyncio
    async def test_invalid_session_has_no_step(self, diagnostics, tmp_path):
        await diagnostics.capture(None, InvalidSessionError("session must start with a navigate event"))
        assert (tmp_path / "login-start-log.json").exists()

    @pytest.mark.asyncio
    async def test_publish_without_capture_is_noop(self, diagnostics, notifier):
        assert await diagnostics.publish() is False
        notifier.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_small_video_is_attached(self, diagnostics, notifier, tmp_path):
        video = tmp_path / "run.webm"
        video.write_bytes(b"v" * 50)
        await diagnostics.capture(FakePage([]), ElementNotFound("x", 0))

        await diagnostics.publish(video)

        assert video in notifier.send.await_args.args[1]

    @pytest.mark.asyncio
    async def test_large_video_is_kept_local(self, diagnostics, notifier, tmp_path):
        video = tmp_path / "run.webm"
        video.write_bytes(b"v" * 500)
        await diagnostics.capture(FakePage([]), ElementNotFound("x", 0))

        await diagnostics.publish(video)

        message, attachments = notifier.send.await_args.args
        assert video not in attachments
        assert str(video) in message
        assert video.exists()
