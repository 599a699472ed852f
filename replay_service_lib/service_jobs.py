from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Optional, Protocol

from .service_config import RUN_ISOLATION
from .service_logging import run_id_ctx

logger = logging.getLogger("service")

RUN_ID_ENV = "REPLAY_RUN_ID"
_STREAM_LIMIT = 1024 * 1024


@dataclass
class ReplayJob:
    test_name: str
    run_id: str
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class JobRunner(Protocol):
    async def run(self, test_name: str, run_id: str) -> int: ...


class SubprocessJobRunner:
    """
    One child interpreter per replay, so browsers never share a process.
    Child stdout/stderr lines are re-logged under the parent's run id.
    """

    def __init__(self, python: str = sys.executable, *, cwd: Optional[str] = None, env: Optional[dict] = None):
        self.python = python
        self.cwd = cwd
        self.env = env

    def command(self, test_name: str) -> list[str]:
        return [self.python, "-m", "replay_service_lib.replay_cli", "run", test_name]

    async def _forward(self, stream: Optional[asyncio.StreamReader], test_name: str, label: str) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # readline dropped the buffered head of an overlong line
                logger.warning("[job/%s] %s dropped a line over %s bytes", label, test_name, _STREAM_LIMIT)
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.info("[job/%s] %s %s", label, test_name, line)

    async def run(self, test_name: str, run_id: str) -> int:
        token = run_id_ctx.set(run_id)
        env = dict(self.env if self.env is not None else os.environ)
        env[RUN_ID_ENV] = run_id
        proc = None
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command(test_name),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
                limit=_STREAM_LIMIT,
            )
            logger.info("[job] started %s pid=%s", test_name, proc.pid)
            await asyncio.gather(
                self._forward(proc.stdout, test_name, "out"),
                self._forward(proc.stderr, test_name, "err"),
            )
            code = await proc.wait()
            logger.info("[job] %s exited with code %s", test_name, code)
            return code
        finally:
            # the child (and its browser) never outlives its slot
            if proc is not None and proc.returncode is None:
                logger.warning("[job] killing %s pid=%s", test_name, proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
            run_id_ctx.reset(token)


class InlineJobRunner:
    """Runs the replay in the service's own event loop. Meant for development and tests."""

    async def run(self, test_name: str, run_id: str) -> int:
        from .service_replay import replay_test

        token = run_id_ctx.set(run_id)
        try:
            outcome = await replay_test(test_name)
            return outcome.exit_code
        finally:
            run_id_ctx.reset(token)


def build_runner(mode: Optional[str] = None) -> JobRunner:
    mode = (mode or RUN_ISOLATION).lower()
    if mode == "inline":
        return InlineJobRunner()
    if mode != "process":
        logger.warning("[job] unknown RUN_ISOLATION=%r, using process", mode)
    return SubprocessJobRunner()
