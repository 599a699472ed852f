from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Optional

from .service_config import SESSIONS_DIR
from .service_db import db_insert_run_record
from .service_models import RunRecord, RunStatus, StatusResp

logger = logging.getLogger("service")


class RunStatusStore:
    """Last known run status per test, as ``<test>.status.json`` next to the session file."""

    def __init__(self, sessions_dir: Path = SESSIONS_DIR, session_factory=None):
        self.sessions_dir = Path(sessions_dir)
        self._session_factory = session_factory

    def path_for(self, test_name: str) -> Path:
        return self.sessions_dir / f"{test_name}.status.json"

    async def write(self, record: RunRecord) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(record.test_name)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(record.to_status_file(), indent=2), encoding="utf-8")
        tmp.replace(path)
        logger.info("[status] %s -> %s", record.test_name, record.status)
        try:
            await db_insert_run_record(record, session_factory=self._session_factory)
        except Exception as exc:
            logger.warning("[status] db mirror failed for %s: %r", record.test_name, exc)

    async def mark(
        self, test_name: str, status: RunStatus, *, run_id: Optional[str] = None, exit_code: Optional[int] = None
    ) -> RunRecord:
        record = RunRecord(
            test_name=test_name,
            status=status,
            timestamp=dt.datetime.now(dt.timezone.utc),
            run_id=run_id,
            exit_code=exit_code,
        )
        await self.write(record)
        return record

    def read(self, test_name: str) -> StatusResp:
        path = self.path_for(test_name)
        if not path.is_file():
            return StatusResp(status="unknown")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return StatusResp(status=data.get("status") or "unknown", timestamp=data.get("timestamp"))
        except (OSError, ValueError) as exc:
            logger.warning("[status] unreadable status file %s: %s", path, exc)
            return StatusResp(status="unknown")

    def delete(self, test_name: str) -> bool:
        path = self.path_for(test_name)
        if path.is_file():
            path.unlink()
            return True
        return False
