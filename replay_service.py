from __future__ import annotations
"""
FastAPI control surface: list recorded tests, run them through the concurrency
limiter, manage their schedules and read back status and run logs.

Environment (examples):
  PORT=3000
  BIND=0.0.0.0
  ALLOWED_ORIGINS=*
  API_KEY=                           (optional)
  MAX_CONCURRENCY=3
  SESSIONS_DIR=./sessions
  RUN_ISOLATION=process              (process | inline)
  DISCORD_WEBHOOK=                   (optional)
  DB_URL=sqlite+aiosqlite:///./replay.db   (optional)
  CHROME_BIN=/usr/bin/chromium       (optional)
"""

import contextlib
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from replay_service_lib.service_config import (
    ALLOWED_ORIGINS,
    API_KEY,
    APP_NAME,
    APP_VERSION,
    CHROME_BIN,
    DB_URL,
    MAX_CONCURRENCY,
    RUN_ISOLATION,
    SESSIONS_DIR,
)
from replay_service_lib.service_db import SessionLocal, create_tables, db_fetch_run_records
from replay_service_lib.service_jobs import build_runner
from replay_service_lib.service_logging import configure_logging, run_logs
from replay_service_lib.service_models import (
    QueueView,
    RunRecord,
    ScheduledJobView,
    ScheduleReq,
    SessionSummary,
    StatusResp,
    SubmitResp,
)
from replay_service_lib.service_queue import ConcurrencyLimiter
from replay_service_lib.service_replay import delete_session, list_sessions, sanitize_test_name, session_path
from replay_service_lib.service_scheduler import Scheduler
from replay_service_lib.service_status import RunStatusStore

logger = logging.getLogger("service")

_allow_credentials = ALLOWED_ORIGINS != ["*"]

app = FastAPI(title=APP_NAME, version=APP_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if ALLOWED_ORIGINS == ["*"] else ALLOWED_ORIGINS,
    allow_credentials=_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

status_store = RunStatusStore(SESSIONS_DIR, session_factory=SessionLocal)
limiter = ConcurrencyLimiter(MAX_CONCURRENCY, build_runner(), status_store)
scheduler = Scheduler(limiter)


def require_api_key(x_api_key: Optional[str] = Header(default=None)):
    if not API_KEY:
        return
    if x_api_key != API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def _existing_test(raw_name: str) -> str:
    test_name = sanitize_test_name(raw_name)
    if not session_path(test_name, SESSIONS_DIR).is_file():
        raise HTTPException(status_code=404, detail="Test not found")
    return test_name


@app.on_event("startup")
async def on_startup():
    await create_tables()
    configure_logging(logging.INFO, session_factory=SessionLocal)
    SESSIONS_DIR.mkdir(parents=True, exist_ok=True)
    await scheduler.start()


@app.on_event("shutdown")
async def on_shutdown():
    with contextlib.suppress(Exception):
        await scheduler.stop()
    with contextlib.suppress(Exception):
        await limiter.stop()


@app.get("/", dependencies=[Depends(require_api_key)])
def root():
    return {
        "ok": True,
        "service": APP_NAME,
        "version": APP_VERSION,
        "chrome": CHROME_BIN or "bundled",
        "db": bool(DB_URL),
        "max_concurrency": MAX_CONCURRENCY,
        "isolation": RUN_ISOLATION,
        "origins": ALLOWED_ORIGINS,
        "allow_credentials": _allow_credentials,
    }


@app.get("/tests", response_model=list[SessionSummary], dependencies=[Depends(require_api_key)])
def get_tests():
    return list_sessions(SESSIONS_DIR, scheduled=[job.test_name for job in scheduler.jobs])


@app.post("/run/{test_name}", response_model=SubmitResp, dependencies=[Depends(require_api_key)])
async def run_test(test_name: str):
    return await limiter.submit(_existing_test(test_name))


@app.post("/schedule/{test_name}", response_model=ScheduledJobView, dependencies=[Depends(require_api_key)])
async def schedule_test(test_name: str, req: Optional[ScheduleReq] = None):
    job = await scheduler.schedule(_existing_test(test_name), req.interval_ms if req else None)
    return job.view()


@app.get("/schedule/next-run", dependencies=[Depends(require_api_key)])
def get_next_runs():
    out: dict[str, Optional[str]] = {}
    for job in scheduler.jobs:
        nxt = scheduler.next_run_time(job.test_name)
        out[job.test_name] = nxt.isoformat() if nxt else None
    return out


@app.delete("/schedule/{test_name}", dependencies=[Depends(require_api_key)])
async def unschedule_test(test_name: str):
    name = sanitize_test_name(test_name)
    cancelled = await scheduler.cancel(name)
    return {"test_name": name, "status": "unscheduled", "was_scheduled": cancelled}


@app.get("/status/{test_name}", response_model=StatusResp, dependencies=[Depends(require_api_key)])
def get_status(test_name: str):
    return status_store.read(sanitize_test_name(test_name))


@app.get("/history/{test_name}", response_model=list[RunRecord], dependencies=[Depends(require_api_key)])
async def get_history(test_name: str, limit: int = 20):
    return await db_fetch_run_records(sanitize_test_name(test_name), limit=max(1, min(int(limit), 200)))


@app.get("/queue", response_model=QueueView, dependencies=[Depends(require_api_key)])
def get_queue():
    return limiter.view()


@app.get("/runs/{run_id}/logs", dependencies=[Depends(require_api_key)])
def get_run_logs(run_id: str, offset: int = 0, plain: bool = False):
    lines = run_logs.lines(run_id, max(0, int(offset)))
    if plain:
        return PlainTextResponse("\n".join(lines), headers={"X-Log-Size": str(len(lines))})
    return {"count": len(lines), "lines": lines}


@app.delete("/delete/{test_name}", dependencies=[Depends(require_api_key)])
async def delete_test(test_name: str):
    name = sanitize_test_name(test_name)
    await scheduler.cancel(name)
    removed_session = delete_session(name, SESSIONS_DIR)
    removed_status = status_store.delete(name)
    return {"test_name": name, "deleted": removed_session or removed_status}
