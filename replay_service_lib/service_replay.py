from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from .playwright_replayer import replay_session
from .service_config import SCREENSHOTS_BASE, SESSIONS_DIR, TEST_NAME_RE
from .service_diagnostics import FailureDiagnostics
from .service_errors import InvalidSessionError
from .service_models import ReplayOutcome, ReplayTiming, Session, SessionSummary
from .service_notify import NotificationSink, build_notifier

logger = logging.getLogger("service")

STATUS_SUFFIX = ".status.json"


def sanitize_test_name(raw: str) -> str:
    return TEST_NAME_RE.sub("_", (raw or "").strip())


def session_path(test_name: str, sessions_dir: Optional[Path] = None) -> Path:
    return Path(sessions_dir or SESSIONS_DIR) / f"{test_name}.json"


def load_session(path: Path) -> Session:
    if not path.is_file():
        raise InvalidSessionError(f"Test file not found: {path.name}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise InvalidSessionError(f"Failed to parse JSON: {exc}") from exc
    try:
        return Session.model_validate(raw)
    except ValidationError as exc:
        reason = "; ".join(err.get("msg", "") for err in exc.errors()) or str(exc)
        raise InvalidSessionError(f"Session file is empty or invalid: {reason}") from exc


def _iter_session_files(sessions_dir: Path) -> Iterable[Path]:
    if not sessions_dir.is_dir():
        return []
    return (p for p in sessions_dir.glob("*.json") if not p.name.endswith(STATUS_SUFFIX))


def list_sessions(sessions_dir: Optional[Path] = None, scheduled: Iterable[str] = ()) -> list[SessionSummary]:
    """Every recorded test, newest first. Unreadable files are listed without href/device."""
    base = Path(sessions_dir or SESSIONS_DIR)
    scheduled_names = set(scheduled)
    out: list[SessionSummary] = []
    for path in _iter_session_files(base):
        name = path.stem
        href, device = "", "desktop"
        try:
            session = load_session(path)
            href, device = session.start_url or "", session.device
        except InvalidSessionError as exc:
            logger.warning("[sessions] %s: %s", path.name, exc.reason)
        out.append(
            SessionSummary(
                name=name,
                href=href,
                device=device,
                mtime=dt.datetime.fromtimestamp(path.stat().st_mtime, tz=dt.timezone.utc),
                scheduled=name in scheduled_names,
            )
        )
    out.sort(key=lambda s: s.mtime, reverse=True)
    return out


def delete_session(test_name: str, sessions_dir: Optional[Path] = None) -> bool:
    path = session_path(test_name, sessions_dir)
    if not path.is_file():
        return False
    path.unlink()
    logger.info("[sessions] deleted %s", path.name)
    return True


async def replay_test(
    test_name: str,
    *,
    sessions_dir: Optional[Path] = None,
    timing: Optional[ReplayTiming] = None,
    notifier: Optional[NotificationSink] = None,
    screenshots_dir: Optional[Path] = None,
) -> ReplayOutcome:
    """Load ``<sessions_dir>/<test_name>.json`` and replay it in a fresh browser."""
    path = session_path(test_name, sessions_dir)
    try:
        session = load_session(path)
    except InvalidSessionError as exc:
        logger.error("[replay] %s: %s", test_name, exc.reason)
        # no browser was started: log dump and notification only
        diagnostics = FailureDiagnostics(
            test_name, notifier or build_notifier(), screenshots_dir=screenshots_dir or SCREENSHOTS_BASE
        )
        await diagnostics.capture(None, exc)
        await diagnostics.publish()
        return ReplayOutcome(
            test_name=test_name,
            state="failed",
            error_kind=exc.kind,
            error_message=exc.describe(),
            log_path=str(diagnostics.log_path) if diagnostics.log_path else None,
        )

    logger.info(
        "[replay] starting %s device=%s events=%s start=%s",
        test_name,
        session.device,
        len(session.events),
        session.start_url,
    )
    return await replay_session(test_name, session, timing=timing, notifier=notifier)
