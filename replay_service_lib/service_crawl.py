"""
Smoke crawl of a site without a recorded session.

Visits a start URL, screenshots it, fills empty text fields with
placeholder values and follows the first few links one level deep,
going back after each. Console, page errors and network traffic are
collected with the same observer replays use and written as one JSON log.
"""

from __future__ import annotations

import contextlib
import json
import logging
import time
from pathlib import Path
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, async_playwright

from .playwright_replayer import resolve_device
from .service_config import CHROME_BIN, HEADLESS, NAVIGATION_TIMEOUT_MS, SCREENSHOTS_BASE
from .service_diagnostics import PageLogObserver
from .service_errors import NavigationError
from .service_models import CrawlReport

logger = logging.getLogger("service")

FILLABLE_FIELDS = 'input[type="text"],input[type="email"],textarea'
_FILL_EMPTY_JS = "(els) => els.forEach((el, i) => { if (!el.value) el.value = `test${i}`; })"
_LINK_HREFS_JS = "(els, limit) => els.map((a) => a.href).slice(0, limit)"


class SiteCrawler:
    def __init__(
        self,
        page: Page,
        *,
        screenshots_dir: Path = SCREENSHOTS_BASE,
        max_depth: int = 1,
        max_links: int = 3,
        navigation_timeout_ms: int = NAVIGATION_TIMEOUT_MS,
        log: Optional[logging.Logger] = None,
    ):
        self.page = page
        self.screenshots_dir = Path(screenshots_dir)
        self.max_depth = max_depth
        self.max_links = max_links
        self.navigation_timeout_ms = navigation_timeout_ms
        self.log = log or logger

        self.stamp = int(time.time() * 1000)
        self.visited: list[str] = []
        self.failed: list[str] = []
        self.screenshots: list[Path] = []

    async def _screenshot(self) -> None:
        shot = self.screenshots_dir / f"auto-{self.stamp}-{len(self.screenshots) + 1}.png"
        try:
            await self.page.screenshot(path=str(shot))
            self.screenshots.append(shot)
        except PlaywrightError as exc:
            self.log.warning("[crawl] screenshot failed: %s", exc)

    async def _fill_empty_fields(self) -> None:
        try:
            await self.page.eval_on_selector_all(FILLABLE_FIELDS, _FILL_EMPTY_JS)
        except PlaywrightError as exc:
            self.log.debug("[crawl] filling fields failed: %s", exc)

    async def _links(self) -> list[str]:
        try:
            return list(await self.page.eval_on_selector_all("a[href]", _LINK_HREFS_JS, self.max_links))
        except PlaywrightError as exc:
            self.log.debug("[crawl] reading links failed: %s", exc)
            return []

    async def visit(self, url: str, depth: int = 0) -> None:
        if depth > self.max_depth or url in self.visited or url in self.failed:
            return
        self.log.info("[crawl] visiting %s (depth %s)", url, depth)
        try:
            await self.page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        except PlaywrightError as exc:
            if depth == 0:
                raise NavigationError(f"Failed to navigate to {url}") from exc
            self.log.warning("[crawl] %s unreachable: %s", url, exc)
            self.failed.append(url)
            return
        self.visited.append(url)

        await self._screenshot()
        await self._fill_empty_fields()
        if depth >= self.max_depth:
            return

        for link in await self._links():
            if link in self.visited or link in self.failed:
                continue
            await self.visit(link, depth + 1)
            with contextlib.suppress(PlaywrightError):
                await self.page.go_back(wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)

    async def crawl(self, start_url: str) -> list[str]:
        self.screenshots_dir.mkdir(parents=True, exist_ok=True)
        await self.visit(start_url, 0)
        return list(self.visited)


def write_crawl_log(path: Path, observer: PageLogObserver) -> Path:
    grouped: dict[str, list] = {"console": [], "pageerror": [], "request": []}
    for entry in observer.snapshot():
        grouped.setdefault(entry.get("kind", "other"), []).append(entry)
    payload = {
        "consoleMessages": grouped["console"],
        "pageErrors": grouped["pageerror"],
        "networkRequests": grouped["request"],
    }
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    return path


async def crawl_site(
    start_url: str,
    device: Optional[str] = None,
    *,
    screenshots_dir: Optional[Path] = None,
    max_depth: int = 1,
    max_links: int = 3,
    logger_instance: Optional[logging.Logger] = None,
) -> CrawlReport:
    """Launch Chromium with the requested device, crawl and write the page log. The browser is always closed."""
    log = logger_instance or logger
    shots_dir = Path(screenshots_dir or SCREENSHOTS_BASE)
    observer = PageLogObserver(log=log)

    playwright = None
    browser = None
    context = None
    try:
        playwright = await async_playwright().start()
        browser = await playwright.chromium.launch(
            headless=HEADLESS,
            executable_path=CHROME_BIN if CHROME_BIN else None,
            args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"],
        )
        context = await browser.new_context(**(resolve_device(playwright.devices, device, log) or {}))
        page = await context.new_page()
        observer.attach(page)

        crawler = SiteCrawler(page, screenshots_dir=shots_dir, max_depth=max_depth, max_links=max_links, log=log)
        try:
            await crawler.crawl(start_url)
        finally:
            await observer.drain()
            log_path = write_crawl_log(shots_dir / f"auto-log-{crawler.stamp}.json", observer)
            log.info("[crawl] log written to %s", log_path)
    finally:
        with contextlib.suppress(PlaywrightError):
            if context:
                await context.close()
        with contextlib.suppress(PlaywrightError):
            if browser:
                await browser.close()
        with contextlib.suppress(PlaywrightError):
            if playwright:
                await playwright.stop()

    return CrawlReport(
        start_url=start_url,
        device=device or "desktop",
        visited=crawler.visited,
        failed=crawler.failed,
        screenshots=[str(p) for p in crawler.screenshots],
        log_path=str(log_path),
    )
