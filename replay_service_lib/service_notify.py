from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Optional, Protocol, Sequence

import httpx

from .service_config import DISCORD_WEBHOOK

logger = logging.getLogger("service")

DISCORD_CONTENT_LIMIT = 2000


class NotificationSink(Protocol):
    async def send(self, message: str, attachments: Sequence[Path] = ()) -> bool: ...


class LogOnlyNotifier:
    """Used when no webhook is configured. Failures still reach the service log."""

    async def send(self, message: str, attachments: Sequence[Path] = ()) -> bool:
        names = [Path(p).name for p in attachments]
        logger.warning("[notify] %s attachments=%s", message, names)
        return True


class DiscordWebhookNotifier:
    """Posts a multipart message (content + files) to a Discord webhook."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    def _files(self, attachments: Sequence[Path]) -> list[tuple[str, tuple[str, bytes, str]]]:
        files = []
        for path in attachments:
            path = Path(path)
            if not path.is_file():
                logger.warning("[notify] attachment missing: %s", path)
                continue
            mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            files.append((f"files[{len(files)}]", (path.name, path.read_bytes(), mime)))
        return files

    async def send(self, message: str, attachments: Sequence[Path] = ()) -> bool:
        data = {"content": message[:DISCORD_CONTENT_LIMIT]}
        try:
            files = self._files(attachments)
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.webhook_url, data=data, files=files or None)
            resp.raise_for_status()
        except (httpx.HTTPError, OSError) as exc:
            logger.error("[notify] webhook delivery failed: %s", exc)
            return False
        logger.info("[notify] webhook delivered status=%s files=%s", resp.status_code, len(files))
        return True


def build_notifier(webhook_url: Optional[str] = None) -> NotificationSink:
    url = DISCORD_WEBHOOK if webhook_url is None else webhook_url
    if url:
        return DiscordWebhookNotifier(url)
    return LogOnlyNotifier()
