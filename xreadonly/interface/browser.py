"""
Playwright host surface for the read-only client.

Routes every request of the browser context through the RequestClassifier, answers blocked
requests with an empty 204, injects the stylesheet and the in-page enforcer after each page
load, and hands navigations that leave the site over to an external browser.
"""

import logging
import webbrowser

from typing import Any
from urllib.parse import urlparse

from playwright.async_api import async_playwright, BrowserContext, Error as PlaywrightError, Page, Playwright, Request, Route

from xreadonly.config import Settings
from xreadonly.enforcer.script import (
    build_content_script,
    build_css_injection_script,
    build_external_link_script,
    build_stylesheet,
    load_asset,
    EXTERNAL_LINK_BINDING,
    PAGE_SCHEMES,
)
from xreadonly.policy.classifier import RequestClassifier
from xreadonly.policy.table import PolicyTable

logger = logging.getLogger(__name__)


def is_site_url(url: str | None, domains: tuple[str, ...]) -> bool:
    """True if `url` points at one of `domains` or a subdomain of one."""
    if not url:
        return False
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in domains)


def is_external_url(url: str | None, domains: tuple[str, ...]) -> bool:
    """True if `url` should leave the embedded browser: a web page off the site or a non-web scheme."""
    if not url:
        return False
    scheme = urlparse(url).scheme.lower()
    if scheme in ("http", "https"):
        return not is_site_url(url, domains)
    return bool(scheme) and scheme not in PAGE_SCHEMES


class ReadOnlyBrowser:
    """
    Runs the site in a persistent Chromium context with both enforcement layers attached.

    The persistent profile directory keeps cookies (and with them the login session)
    between runs.
    """

    def __init__(self, settings: Settings, table: PolicyTable, classifier: RequestClassifier | None = None):
        self.settings = settings
        self.table = table
        self.classifier = classifier or RequestClassifier(table, verbose=settings.debug)
        self.last_error: str | None = None

        css = build_stylesheet(table)
        if settings.extra_css_path:
            css += load_asset(settings.extra_css_path)
        self.css_injection_script = build_css_injection_script(css) if css.strip() else ""
        self.js_injection_script = build_content_script(table) if table.controls else ""
        self.link_script = build_external_link_script()
        if not self.js_injection_script:
            logger.error("No control taxonomy loaded; only network blocking is active.")

        self._playwright: Playwright | None = None
        self.context: BrowserContext | None = None
        self.page: Page | None = None

    def resolve_start_url(self, deep_link: str | None = None) -> str:
        if deep_link and is_site_url(deep_link, self.settings.site_domains):
            return deep_link
        if deep_link:
            logger.warning(f"Ignoring link outside the site: {deep_link}")
        return self.settings.start_url

    async def start(self, url: str | None = None) -> Page:
        self._playwright = await async_playwright().start()
        self.context = await self._playwright.chromium.launch_persistent_context(
            self.settings.profile_dir,
            headless=self.settings.headless,
            user_agent=self.settings.user_agent,
            is_mobile=True,
            has_touch=True,
            viewport={"width": 412, "height": 915},
            # Requests served by a service worker would bypass context.route()
            service_workers="block",
        )
        await self.attach(self.context)

        self.page = self.context.pages[0] if self.context.pages else await self.context.new_page()
        target = self.resolve_start_url(url)
        if self.settings.debug:
            logger.debug(f"Loading {target}")
        await self.page.goto(target)
        return self.page

    async def attach(self, context: BrowserContext) -> None:
        """Install request interception on a context and watch its future pages."""
        await context.route("**/*", self.handle_route)
        await context.expose_binding(EXTERNAL_LINK_BINDING, self._on_external_link)
        for page in context.pages:
            self._watch_page(page)
        context.on("page", self._watch_page)

    async def open(self, url: str) -> None:
        """Navigate the current page to a deep link, if it belongs to the site."""
        if self.page is None:
            raise RuntimeError("Browser is not started")
        self.last_error = None
        await self.page.goto(self.resolve_start_url(url))

    async def reload(self) -> None:
        if self.page is None:
            raise RuntimeError("Browser is not started")
        self.last_error = None
        await self.page.reload()

    async def close(self) -> None:
        if self.context is not None:
            await self.context.close()
            self.context = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self.page = None

    async def handle_route(self, route: Route) -> None:
        request = route.request
        classification = self.classifier.classify_request(request)
        if classification.blocked:
            # Answer locally; the request never reaches the network
            await route.fulfill(status=204, content_type="text/plain", body="")
            return

        if self._is_external_navigation(request):
            logger.info(f"External link intercepted: {request.url}")
            await route.abort()
            self.open_external(request.url)
            return

        await route.continue_()

    async def inject(self, page: Page) -> None:
        if self.css_injection_script:
            await page.evaluate(self.css_injection_script)
            if self.settings.debug:
                logger.debug("CSS injected into page")
        if self.js_injection_script:
            await page.evaluate(self.js_injection_script)
            if self.settings.debug:
                logger.debug("JS injected into page (MutationObserver + click interception)")
        await page.evaluate(self.link_script)

    def open_external(self, url: str) -> bool:
        """
        Open `url` in the configured external browser, falling back to the system default.
        Returns False if no browser could be started.
        """
        if self.settings.external_browser:
            try:
                if webbrowser.get(self.settings.external_browser).open(url, new=2):
                    logger.debug(f"Opened in {self.settings.external_browser}: {url}")
                    return True
            except webbrowser.Error:
                logger.warning(f"{self.settings.external_browser} not available, falling back to default browser")

        if webbrowser.open(url, new=2):
            logger.debug(f"Opened in default browser: {url}")
            return True
        logger.error(f"No browser available to open: {url}")
        return False

    def _watch_page(self, page: Page) -> None:
        page.on("load", self.inject)
        page.on("requestfailed", self._on_request_failed)
        page.on("framenavigated", self._on_frame_navigated)

    def _on_request_failed(self, request: Request) -> None:
        if not self._is_main_frame_navigation(request):
            return
        failure = request.failure
        if failure == "net::ERR_ABORTED":
            # Our own abort of an external navigation
            return
        self.last_error = f"{failure} ({request.url})"
        logger.error(f"Page load error: {self.last_error}")

    def _on_external_link(self, source: Any, url: str) -> bool:
        if not is_external_url(url, self.settings.site_domains):
            return False
        logger.info(f"External link intercepted: {url}")
        return self.open_external(url)

    def _on_frame_navigated(self, frame: Any) -> None:
        if self.settings.debug and frame.parent_frame is None:
            logger.debug(f"Navigation (internal): {frame.url}")

    def _is_external_navigation(self, request: Request) -> bool:
        if not self._is_main_frame_navigation(request):
            return False
        return is_external_url(request.url, self.settings.site_domains)

    @staticmethod
    def _is_main_frame_navigation(request: Request) -> bool:
        if not request.is_navigation_request():
            return False
        try:
            frame = request.frame
        except PlaywrightError:
            # Service worker requests have no frame
            return False
        return frame.parent_frame is None
