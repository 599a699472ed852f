from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from .service_config import DB_URL
from .service_models import RunRecord

logger = logging.getLogger("service")

engine = create_async_engine(DB_URL, pool_pre_ping=True) if DB_URL else None
SessionLocal = async_sessionmaker(engine, expire_on_commit=False) if engine else None

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS run_records (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  test_name  VARCHAR(255) NOT NULL,
  run_id     VARCHAR(32) NULL,
  status     VARCHAR(16) NOT NULL,
  exit_code  INTEGER NULL,
  ts         DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS run_logs (
  id       INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id   VARCHAR(32) NOT NULL,
  ts       DATETIME NOT NULL,
  seq      INTEGER NOT NULL,
  line     TEXT NOT NULL,
  level    VARCHAR(16) NULL,
  logger   VARCHAR(64) NULL,
  payload  TEXT NULL
);

CREATE INDEX IF NOT EXISTS idx_run_records_test ON run_records (test_name, ts);

CREATE INDEX IF NOT EXISTS idx_run_logs_run_seq ON run_logs (run_id, seq)
"""


async def create_tables(db_engine=None) -> None:
    db_engine = db_engine or engine
    if not db_engine:
        return
    async with db_engine.begin() as conn:
        for stmt in CREATE_TABLES_SQL.strip().split(";\n\n"):
            s = stmt.strip().rstrip(";")
            if s:
                await conn.execute(text(s))


async def db_insert_run_record(record: RunRecord, session_factory=None) -> None:
    factory = session_factory or SessionLocal
    if not factory:
        return
    async with factory() as db:
        await db.execute(
            text(
                """INSERT INTO run_records (test_name, run_id, status, exit_code, ts)
                    VALUES (:test_name, :run_id, :status, :exit_code, :ts)"""
            ),
            {
                "test_name": record.test_name,
                "run_id": record.run_id,
                "status": record.status,
                "exit_code": record.exit_code,
                "ts": record.timestamp,
            },
        )
        await db.commit()


async def db_insert_run_log(
    *,
    run_id: str,
    ts: dt.datetime,
    seq: int,
    line: str,
    level: str,
    logger_name: str,
    payload: Optional[dict[str, Any]] = None,
    session_factory=None,
) -> None:
    factory = session_factory or SessionLocal
    if not factory:
        return
    try:
        async with factory() as db:
            await db.execute(
                text(
                    """
                    INSERT INTO run_logs(run_id, ts, seq, line, level, logger, payload)
                    VALUES (:run_id,:ts,:seq,:line,:level,:logger,:payload)
                    """
                ),
                {
                    "run_id": run_id,
                    "ts": ts,
                    "seq": seq,
                    "line": line,
                    "level": level,
                    "logger": logger_name,
                    "payload": json.dumps(payload, ensure_ascii=False) if payload is not None else None,
                },
            )
            await db.commit()
    except Exception as exc:
        # debug only: the per-run log handler is what calls this
        logger.debug("run_logs insert failed: %r", exc)


async def db_fetch_run_records(test_name: str, limit: int = 20, session_factory=None) -> list[RunRecord]:
    factory = session_factory or SessionLocal
    if not factory:
        return []
    async with factory() as db:
        rows = (
            await db.execute(
                text(
                    """SELECT test_name, run_id, status, exit_code, ts FROM run_records
                        WHERE test_name=:test_name ORDER BY ts DESC, id DESC LIMIT :limit"""
                ),
                {"test_name": test_name, "limit": int(limit)},
            )
        ).mappings().all()
    out: list[RunRecord] = []
    for row in rows:
        ts = row["ts"]
        if isinstance(ts, str):
            ts = dt.datetime.fromisoformat(ts)
        out.append(
            RunRecord(
                test_name=row["test_name"],
                run_id=row["run_id"],
                status=row["status"],
                exit_code=row["exit_code"],
                timestamp=ts,
            )
        )
    return out
