from __future__ import annotations

import os
import re
from pathlib import Path

APP_NAME = "Replay Service"
APP_VERSION = "1.4.0"

PORT = int(os.getenv("PORT", "3000"))
BIND = os.getenv("BIND", "0.0.0.0")
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",")]
API_KEY = os.getenv("API_KEY", "").strip()

MAX_CONCURRENCY = max(1, int(os.getenv("MAX_CONCURRENCY", "3")))
RUN_ISOLATION = os.getenv("RUN_ISOLATION", "process").strip().lower()
HEADLESS = bool(int(os.getenv("HEADLESS", "1")))

STRIP_ANSI = bool(int(os.getenv("STRIP_ANSI_IN_LOGS", "1")))
COLLAPSE_INTERNAL_SPACES = bool(int(os.getenv("COLLAPSE_INTERNAL_SPACES", "0")))
RUN_LOG_MAX_LINES = max(100, int(os.getenv("RUN_LOG_MAX_LINES", "5000")))

DB_URL = os.getenv("DB_URL", "").strip()
DISCORD_WEBHOOK = os.getenv("DISCORD_WEBHOOK", "").strip()

SESSIONS_DIR = Path(os.getenv("SESSIONS_DIR", "./sessions")).resolve()
SCREENSHOTS_BASE = Path(os.getenv("SCREENSHOTS_BASE", "./screenshots")).resolve()
RECORDINGS_BASE = Path(os.getenv("RECORDINGS_BASE", "./recordings")).resolve()

RECORD_VIDEO = bool(int(os.getenv("RECORD_VIDEO", "0")))
VIDEO_ATTACH_MAX_BYTES = int(os.getenv("VIDEO_ATTACH_MAX_BYTES", str(8 * 1024 * 1024)))
RESPONSE_BODY_MAX_BYTES = int(os.getenv("RESPONSE_BODY_MAX_BYTES", "1000"))

# Replay timing (milliseconds)
MAX_EVENT_DELAY_MS = int(os.getenv("MAX_EVENT_DELAY_MS", "10000"))
NAVIGATION_TIMEOUT_MS = int(os.getenv("NAVIGATION_TIMEOUT_MS", "10000"))
WAIT_FOR_TIMEOUT_MS = int(os.getenv("WAIT_FOR_TIMEOUT_MS", "5000"))
INPUT_WAIT_TIMEOUT_MS = int(os.getenv("INPUT_WAIT_TIMEOUT_MS", "3000"))
TYPE_DELAY_MS = int(os.getenv("TYPE_DELAY_MS", "50"))
POST_CLICK_DELAY_MS = int(os.getenv("POST_CLICK_DELAY_MS", "500"))
AUTO_INPUT_WINDOW_MS = int(os.getenv("AUTO_INPUT_WINDOW_MS", "300"))

DEFAULT_INTERVAL_MS = max(1000, int(os.getenv("DEFAULT_INTERVAL_MS", str(60 * 60 * 1000))))


def find_chrome_binary() -> str:
    env = os.getenv("CHROME_BIN") or os.getenv("BROWSER_USE_CHROME_PATH")
    if env and Path(env).exists():
        return env
    for candidate in (
        "/usr/bin/google-chrome-stable",
        "/usr/bin/google-chrome",
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/snap/bin/chromium",
    ):
        if Path(candidate).exists():
            return candidate
    # Playwright's bundled Chromium is used when nothing is installed system-wide.
    return ""


CHROME_BIN = find_chrome_binary()

ANSI_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
CTRL_ZW_RE = re.compile("[" + "\u200B\u200C\u200D\u200E\u200F" + "\u2060" + "\uFEFF" + "]")
TEST_NAME_RE = re.compile(r"[^a-zA-Z0-9 _-]")
