"""
Browser Automation

Headless Chromium sessions driven through Playwright. A session can open a
page, inject axe-core and run it; the scanner only depends on that small
surface so tests can swap in a fake session.

Every request the page makes is checked against the target validator, so
redirects or sub-resources pointing at internal addresses are aborted.
Images, media and fonts are never loaded. axe-core is injected as inline
content from a local copy, with the page's CSP bypassed.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlsplit

import axe_playwright_python
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Route, async_playwright

from app.config import settings
from app.utils.validators import TargetValidator, URLValidationError

logger = logging.getLogger(__name__)

BLOCKED_RESOURCE_TYPES = frozenset(["image", "media", "font"])

AXE_SCRIPT_NAME = "axe.min.js"

AXE_RUN_SCRIPT = """
async (tags) => {
  const result = await window.axe.run(document, {
    runOnly: { type: 'tag', values: tags },
    resultTypes: ['violations']
  });
  return { violations: result.violations };
}
"""


@lru_cache()
def load_axe_source(path: Optional[str] = None) -> str:
    """Return the axe-core source from path, or the copy bundled with axe-playwright-python."""
    if path:
        return Path(path).read_text(encoding="utf-8")

    package_dir = Path(axe_playwright_python.__file__).parent
    bundled = next(package_dir.rglob(AXE_SCRIPT_NAME), None)
    if bundled is None:
        raise FileNotFoundError(f"{AXE_SCRIPT_NAME} not found in {package_dir}")
    return bundled.read_text(encoding="utf-8")


class PageSession(Protocol):
    """What the scanner needs from a browser page."""

    async def goto(self, url: str, timeout_seconds: float) -> None: ...

    async def inject_rule_engine(self) -> None: ...

    async def run_rules(self, tags: List[str]) -> Dict[str, Any]: ...


BrowserFactory = Callable[[], Any]  # returns an async context manager yielding a PageSession


class PlaywrightPageSession:
    """PageSession backed by a Playwright page."""

    def __init__(self, page, axe_source: str):
        self.page = page
        self.axe_source = axe_source

    async def goto(self, url: str, timeout_seconds: float) -> None:
        await self.page.goto(
            url, wait_until="domcontentloaded", timeout=int(timeout_seconds * 1000)
        )

    async def inject_rule_engine(self) -> None:
        await self.page.add_script_tag(content=self.axe_source)

    async def run_rules(self, tags: List[str]) -> Dict[str, Any]:
        return await self.page.evaluate(AXE_RUN_SCRIPT, tags)


class RequestGuard:
    """Route handler that aborts heavy resources and non-public hosts."""

    def __init__(self, validator: TargetValidator):
        self.validator = validator
        self._verdicts: Dict[str, bool] = {}

    async def _host_allowed(self, url: str) -> bool:
        host = (urlsplit(url).hostname or "").lower()
        if host not in self._verdicts:
            try:
                await asyncio.to_thread(self.validator.validate, url)
                self._verdicts[host] = True
            except URLValidationError as e:
                logger.warning(f"Blocked browser request to {host}: {e.reason.value}")
                self._verdicts[host] = False
        return self._verdicts[host]

    async def handle(self, route: Route) -> None:
        request = route.request
        if request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
            return

        scheme = urlsplit(request.url).scheme
        if scheme in ("http", "https") and not await self._host_allowed(request.url):
            await route.abort("blockedbyclient")
            return

        await route.continue_()


class PlaywrightBrowserFactory:
    """Opens one isolated Chromium context per scan."""

    def __init__(
        self,
        validator: Optional[TargetValidator] = None,
        axe_script_path: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        self.validator = validator or TargetValidator()
        self.axe_script_path = axe_script_path or settings.axe_script_path
        self.user_agent = user_agent or settings.browser_user_agent

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[PlaywrightPageSession]:
        axe_source = load_axe_source(self.axe_script_path)
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            try:
                context = await browser.new_context(
                    user_agent=self.user_agent,
                    viewport={"width": 1366, "height": 900},
                    java_script_enabled=True,
                    bypass_csp=True,
                    service_workers="block",
                )
                guard = RequestGuard(self.validator)
                await context.route("**/*", guard.handle)
                page = await context.new_page()
                yield PlaywrightPageSession(page, axe_source)
            finally:
                try:
                    await browser.close()
                except PlaywrightError as e:
                    logger.warning(f"Browser close failed: {e}")
