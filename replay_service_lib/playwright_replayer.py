from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, async_playwright

from .element_resolver import ElementResolver, explain_miss
from .service_config import CHROME_BIN, HEADLESS, RECORD_VIDEO, RECORDINGS_BASE
from .service_diagnostics import FailureDiagnostics, PageLogObserver
from .service_errors import (
    ElementNotFound,
    InvalidSessionError,
    NavigationError,
    ReplayError,
    UnhandledRuntimeError,
    WaitTimeout,
)
from .service_models import (
    ClickEvent,
    ElementDescriptor,
    InputEvent,
    NavigateEvent,
    ReplayOutcome,
    ReplayStateName,
    ReplayTiming,
    Session,
    WaitForEvent,
)
from .service_notify import NotificationSink, build_notifier

logger = logging.getLogger("service")

Sleep = Callable[[float], Awaitable[None]]

# Recorder device names that differ from Playwright's descriptor names.
DEVICE_ALIASES = {
    "Samsung Galaxy S9": "Galaxy S9+",
    "iPhone 11": "iPhone 11",
    "iPad": "iPad (gen 7)",
}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------
def capped_delay_ms(previous_ts: float, current_ts: float, cap_ms: int) -> float:
    """Recorded gap between two events, clamped to [0, cap_ms]."""
    return max(0.0, min(current_ts - previous_ts, float(cap_ms)))


def _same_target(a: Optional[ElementDescriptor], b: Optional[ElementDescriptor]) -> bool:
    if a is None or b is None:
        return False
    if a.id and a.id == b.id:
        return True
    return bool(a.name) and a.name == b.name


def is_auto_triggered_input(previous, event: InputEvent, window_ms: int) -> bool:
    """An Input right after a Click on the same id/name is the click's side effect."""
    if not isinstance(previous, ClickEvent):
        return False
    if event.timestamp - previous.timestamp >= window_ms:
        return False
    return _same_target(previous.detail, event.detail)


def resolve_device(devices: dict, name: Optional[str], log: Optional[logging.Logger] = None) -> Optional[dict]:
    """Playwright device descriptor for a recorded device name, None for desktop."""
    log = log or logger
    if not name or name.lower() == "desktop":
        return None
    key = DEVICE_ALIASES.get(name, name)
    descriptor = devices.get(key)
    if descriptor is None:
        log.warning("[replay] device descriptor for %r not found, using desktop", name)
        return None
    return dict(descriptor)


# -------------------------------------------------------------------
# Session state machine
# -------------------------------------------------------------------
class SessionReplayer:
    """
    Drives one Session against one page: Idle -> Navigating -> Replaying ->
    Succeeded | Failed. Execution is strictly sequential and stops at the
    first fatal error. WaitFor timeouts only log.
    """

    def __init__(
        self,
        page: Page,
        test_name: str,
        *,
        timing: Optional[ReplayTiming] = None,
        resolver: Optional[ElementResolver] = None,
        diagnostics: Optional[FailureDiagnostics] = None,
        observer: Optional[PageLogObserver] = None,
        sleep: Sleep = asyncio.sleep,
        log: Optional[logging.Logger] = None,
    ):
        self.page = page
        self.test_name = test_name
        self.timing = timing or ReplayTiming()
        self.resolver = resolver or ElementResolver(input_wait_ms=self.timing.input_wait_timeout_ms)
        self.diagnostics = diagnostics
        self.observer = observer
        self._sleep = sleep
        self.log = log or logger

        self.state: ReplayStateName = "idle"
        self.current_index: Optional[int] = None
        self.steps_replayed = 0
        self._session: Optional[Session] = None
        self.skipped: list[str] = []

    async def _pause_ms(self, ms: float) -> None:
        if ms > 0:
            await self._sleep(ms / 1000.0)

    # -- event handlers -------------------------------------------------
    async def _navigate(self, event: NavigateEvent, index: int) -> None:
        self.log.info("[replay/nav] step=%s goto %s", index + 1, event.href)
        try:
            await self.page.goto(event.href, wait_until="domcontentloaded", timeout=self.timing.navigation_timeout_ms)
        except PlaywrightError as exc:
            raise NavigationError(f"Failed to navigate to {event.href}", index) from exc

    async def _wait_for(self, event: WaitForEvent, index: int) -> None:
        timeout = event.timeout if event.timeout is not None else self.timing.wait_for_timeout_ms
        self.log.info("[replay/wait] step=%s waiting for %r", index + 1, event.selector)
        try:
            await self.page.wait_for_selector(event.selector, timeout=timeout)
        except PlaywrightError as exc:
            warning = WaitTimeout(f'waitFor("{event.selector}") timed out after {timeout}ms', index)
            warning.__cause__ = exc
            self.log.warning("[replay/wait] %s", warning.describe())
            self.skipped.append(f"waitFor (step {index + 1}): timed out")

    async def _click(self, event: ClickEvent, index: int) -> bool:
        detail = event.detail
        if detail is None:
            self.skipped.append(f"click (step {index + 1}): missing detail")
            return False
        if detail.tag_name == "INPUT" and detail.is_toggle:
            self.log.info("[replay/click] step=%s %s recorded directly, handled by its label", index + 1, detail.type)
            self.skipped.append(f"click (step {index + 1}): direct {detail.type} click")
            return False

        self.log.info(
            '[replay/click] step=%s text="%s" selector="%s" tag="%s"',
            index + 1,
            detail.text or detail.name or "",
            detail.selector or "",
            detail.tag or "",
        )
        try:
            found = await self.resolver.resolve(self.page, detail)
        except ElementNotFound as exc:
            exc.step_index = index
            raise
        try:
            await found.element.click()
        except PlaywrightError as exc:
            raise ElementNotFound(f"click via {found.strategy} failed: {exc}", index) from exc
        await self._pause_ms(self.timing.post_click_delay_ms)
        return True

    async def _input(self, event: InputEvent, index: int, previous) -> bool:
        detail = event.detail
        if detail is None:
            self.skipped.append(f"input (step {index + 1}): missing detail")
            return False
        if detail.is_toggle:
            self.skipped.append(f"input (step {index + 1}): {detail.type} handled by click")
            return False
        if is_auto_triggered_input(previous, event, self.timing.auto_input_window_ms):
            self.log.info("[replay/type] step=%s input caused by previous click, skipping", index + 1)
            self.skipped.append(f"input (step {index + 1}): triggered by click")
            return False

        value = detail.value or ""
        self.log.info('[replay/type] step=%s "%s" into %s', index + 1, value, detail.selector or detail.name or "?")
        try:
            found = await self.resolver.resolve_for_input(self.page, detail)
        except ReplayError as exc:
            exc.step_index = index
            raise
        element = found.element
        await element.focus()
        await element.click(click_count=3)
        if value:
            await element.type(value, delay=self.timing.type_delay_ms)
        return True

    # -- main loop ----------------------------------------------------
    async def _replay(self, session: Session) -> None:
        events = list(session.events or [])
        self.state = "navigating"
        if not events or not isinstance(events[0], NavigateEvent):
            raise InvalidSessionError("session must start with a navigate event")

        first = events[0]
        self.current_index = 0
        await self._navigate(first, 0)
        self.steps_replayed = 1

        self.state = "replaying"
        last_ts = first.timestamp
        for index in range(1, len(events)):
            event = events[index]
            self.current_index = index
            delay = capped_delay_ms(last_ts, event.timestamp, self.timing.max_event_delay_ms)
            last_ts = event.timestamp
            await self._pause_ms(delay)

            if isinstance(event, NavigateEvent):
                await self._navigate(event, index)
                applied = True
            elif isinstance(event, WaitForEvent):
                await self._wait_for(event, index)
                applied = True
            elif isinstance(event, ClickEvent):
                applied = await self._click(event, index)
            elif isinstance(event, InputEvent):
                applied = await self._input(event, index, events[index - 1])
            else:
                self.skipped.append(f"{getattr(event, 'type', '?')} (step {index + 1}): unsupported")
                applied = False
            if applied:
                self.steps_replayed += 1

    async def run(self, session: Session) -> ReplayOutcome:
        self._session = session
        try:
            await self._replay(session)
            self.state = "succeeded"
            self.log.info("[replay] %s passed (%s steps)", self.test_name, self.steps_replayed)
            return self._outcome(session)
        except asyncio.CancelledError:
            raise
        except ReplayError as exc:
            error = exc
        except Exception as exc:
            error = UnhandledRuntimeError.wrap(exc, self.current_index)

        self.state = "failed"
        self.log.error("[replay] %s failed: %s %s", self.test_name, error.kind, error.describe())
        await self._capture_failure(error)
        return self._outcome(session, error)

    async def _capture_failure(self, error: ReplayError) -> None:
        if self.diagnostics is None:
            return
        explanation: list[str] = []
        if isinstance(error, ElementNotFound) and self._failed_descriptor(error) is not None:
            try:
                explanation = await explain_miss(self.page, self._failed_descriptor(error))
            except PlaywrightError as exc:
                self.log.debug("[replay/diag] explain failed: %s", exc)
            for line in explanation:
                self.log.error("[replay/diag] %s", line)
        if self.observer is not None:
            await self.observer.drain()
        entries = self.observer.entries if self.observer is not None else []
        page = None if isinstance(error, InvalidSessionError) else self.page
        await self.diagnostics.capture(page, error, entries, explanation)

    def _failed_descriptor(self, error: ReplayError) -> Optional[ElementDescriptor]:
        if error.step_index is None or self._session is None:
            return None
        events = self._session.events
        if 0 <= error.step_index < len(events):
            return getattr(events[error.step_index], "detail", None)
        return None

    def _outcome(self, session: Session, error: Optional[ReplayError] = None) -> ReplayOutcome:
        diag = self.diagnostics
        return ReplayOutcome(
            test_name=self.test_name,
            state=self.state,
            steps_total=len(session.events or []),
            steps_replayed=self.steps_replayed,
            skipped=list(self.skipped),
            error_kind=error.kind if error else None,
            error_message=error.describe() if error else None,
            failed_step=(error.step_index + 1) if error and error.step_index is not None else None,
            screenshot_path=str(diag.screenshot_path) if diag and diag.screenshot_path else None,
            log_path=str(diag.log_path) if diag and diag.log_path else None,
        )


# -------------------------------------------------------------------
# Main entry
# -------------------------------------------------------------------
async def replay_session(
    test_name: str,
    session: Session,
    *,
    timing: Optional[ReplayTiming] = None,
    notifier: Optional[NotificationSink] = None,
    record_video: bool = RECORD_VIDEO,
    logger_instance: Optional[logging.Logger] = None,
) -> ReplayOutcome:
    """
    Launch Chromium, emulate the recorded device, replay the session and
    report the first fatal failure. The browser is always closed.
    """
    log = logger_instance or logger
    timing = timing or ReplayTiming.from_config()
    diagnostics = FailureDiagnostics(test_name, notifier or build_notifier(), log=log)
    observer = PageLogObserver(log=log)

    video_dir: Optional[Path] = None
    if record_video:
        video_dir = RECORDINGS_BASE / test_name
        video_dir.mkdir(parents=True, exist_ok=True)

    playwright = None
    browser = None
    context = None
    page = None
    outcome: Optional[ReplayOutcome] = None

    try:
        playwright = await async_playwright().start()
        browser = await playwright.chromium.launch(
            headless=HEADLESS,
            executable_path=CHROME_BIN if CHROME_BIN else None,
            args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"],
        )

        context_opts: dict = resolve_device(playwright.devices, session.device, log) or {}
        if video_dir is not None:
            context_opts["record_video_dir"] = str(video_dir)
        context = await browser.new_context(**context_opts)
        page = await context.new_page()
        observer.attach(page)

        replayer = SessionReplayer(page, test_name, timing=timing, diagnostics=diagnostics, observer=observer, log=log)
        outcome = await replayer.run(session)
    except PlaywrightError as exc:
        # browser failed to start: nothing to screenshot
        error = UnhandledRuntimeError.wrap(exc)
        log.error("[replay] %s could not start the browser: %s", test_name, exc)
        await diagnostics.capture(None, error, observer.entries)
        outcome = ReplayOutcome(
            test_name=test_name,
            state="failed",
            steps_total=len(session.events),
            error_kind=error.kind,
            error_message=error.describe(),
            log_path=str(diagnostics.log_path) if diagnostics.log_path else None,
        )
    finally:
        page_video = page.video if page is not None and video_dir is not None else None
        with contextlib.suppress(PlaywrightError):
            if context:
                await context.close()
        with contextlib.suppress(PlaywrightError):
            if browser:
                await browser.close()
        with contextlib.suppress(PlaywrightError):
            if playwright:
                await playwright.stop()

    video_path: Optional[Path] = None
    if page_video is not None:
        with contextlib.suppress(PlaywrightError):
            video_path = Path(await page_video.path())

    if diagnostics.captured:
        await diagnostics.publish(video_path)

    if video_path is not None:
        outcome = outcome.model_copy(update={"video_path": str(video_path)})
    return outcome
