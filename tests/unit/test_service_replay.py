import json
import os
from unittest.mock import AsyncMock, patch

import pytest

from replay_service_lib.service_errors import InvalidSessionError
from replay_service_lib.service_models import ReplayOutcome
from replay_service_lib.service_replay import (
    delete_session,
    list_sessions,
    load_session,
    replay_test,
    sanitize_test_name,
    session_path,
)

NAV = {"type": "navigate", "href": "https://shop.test/", "timestamp": 1}


def write_session(directory, name: str, payload, mtime: float = None):
    path = directory / f"{name}.json"
    path.write_text(json.dumps(payload) if not isinstance(payload, str) else payload)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


class TestSessionFiles:
    def test_sanitize_test_name(self):
        assert sanitize_test_name("my test/../x!") == "my test____x_"
        assert sanitize_test_name("Checkout_v2-final") == "Checkout_v2-final"

    def test_session_path(self, tmp_path):
        assert session_path("a", tmp_path) == tmp_path / "a.json"

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(InvalidSessionError, match="not found"):
            load_session(tmp_path / "missing.json")

    def test_load_bad_json(self, tmp_path):
        path = write_session(tmp_path, "bad", "{oops")
        with pytest.raises(InvalidSessionError, match="parse"):
            load_session(path)

    def test_load_session_not_starting_with_navigate(self, tmp_path):
        path = write_session(tmp_path, "bad", [{"type": "click", "timestamp": 1, "detail": {"id": "x"}}])
        with pytest.raises(InvalidSessionError, match="invalid"):
            load_session(path)

    def test_load_bare_list(self, tmp_path):
        path = write_session(tmp_path, "ok", [NAV])
        session = load_session(path)
        assert session.start_url == "https://shop.test/"

    def test_list_sessions_newest_first(self, tmp_path):
        write_session(tmp_path, "old", [NAV], mtime=1_000_000)
        write_session(tmp_path, "new", {"device": "iPhone 11", "events": [NAV]}, mtime=2_000_000)
        write_session(tmp_path, "broken", "[", mtime=1_500_000)
        (tmp_path / "new.status.json").write_text('{"status": "done"}')

        listed = list_sessions(tmp_path, scheduled=["old"])

        assert [s.name for s in listed] == ["new", "broken", "old"]
        assert listed[0].device == "iPhone 11"
        assert listed[0].href == "https://shop.test/"
        assert listed[1].href == ""
        assert listed[2].scheduled is True
        assert listed[0].scheduled is False

    def test_list_sessions_missing_dir(self, tmp_path):
        assert list_sessions(tmp_path / "nope") == []

    def test_delete_session(self, tmp_path):
        write_session(tmp_path, "t", [NAV])
        assert delete_session("t", tmp_path) is True
        assert delete_session("t", tmp_path) is False


class TestReplayTest:
    @pytest.fixture
    def notifier(self) -> AsyncMock:
        sink = AsyncMock()
        sink.send.return_value = True
        return sink

    @pytest.mark.asyncio
    async def test_missing_session_fails_without_browser(self, tmp_path, notifier):
        with patch("replay_service_lib.service_replay.replay_session", new=AsyncMock()) as run:
            outcome = await replay_test(
                "ghost", sessions_dir=tmp_path, notifier=notifier, screenshots_dir=tmp_path / "shots"
            )

        run.assert_not_awaited()
        assert outcome.state == "failed"
        assert outcome.error_kind == "InvalidSessionError"
        assert outcome.exit_code == 1
        notifier.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_session_is_reported(self, tmp_path, notifier):
        write_session(tmp_path, "bad", [{"type": "click", "timestamp": 1, "detail": {"id": "x"}}])
        shots = tmp_path / "shots"

        with patch("replay_service_lib.service_replay.replay_session", new=AsyncMock()) as run:
            outcome = await replay_test("bad", sessions_dir=tmp_path, notifier=notifier, screenshots_dir=shots)

        run.assert_not_awaited()
        assert outcome.log_path == str(shots / "bad-start-log.json")
        dump = json.loads((shots / "bad-start-log.json").read_text())
        assert dump["error"]["kind"] == "InvalidSessionError"
        assert dump["error"]["step"] is None

        message, attachments = notifier.send.await_args.args
        assert message.startswith("❌ **Test Failed**: `bad`")
        assert "invalid" in message
        assert attachments == [shots / "bad-start-log.json"]

    @pytest.mark.asyncio
    async def test_valid_session_is_replayed(self, tmp_path):
        write_session(tmp_path, "shop", {"device": "desktop", "events": [NAV]})
        expected = ReplayOutcome(test_name="shop", state="succeeded", steps_total=1, steps_replayed=1)

        with patch("replay_service_lib.service_replay.replay_session", new=AsyncMock(return_value=expected)) as run:
            outcome = await replay_test("shop", sessions_dir=tmp_path)

        assert outcome is expected
        name, session = run.await_args.args
        assert name == "shop"
        assert session.start_url == "https://shop.test/"
