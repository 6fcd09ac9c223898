from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from app.constants import (
    CREATE_PROJECT_URL,
    FLOW_TOOL_URL,
    LOGIN_HOST_MARKER,
    PROJECT_PATH_MARKER,
    PROJECT_TOOL_NAME,
)
from app.services.errors import (
    RunCancelledError,
    SessionError,
    SessionLostError,
    SessionTimeoutError,
)

LOGGER = logging.getLogger("flow.session")

_CREATE_PROJECT_SCRIPT = """
async ({ url, title, tool }) => {
  const response = await fetch(url, {
    method: "POST",
    credentials: "include",
    headers: { "Content-Type": "application/json", "Accept": "*/*", "X-Same-Domain": "1" },
    body: JSON.stringify({ json: { projectTitle: title, toolName: tool } }),
  });
  const text = await response.text();
  return { ok: response.ok, status: response.status, text };
}
"""


def project_id_from_url(url: str) -> Optional[str]:
    if PROJECT_PATH_MARKER not in url:
        return None
    tail = url.split(PROJECT_PATH_MARKER, 1)[1]
    project_id = tail.split("?", 1)[0].split("#", 1)[0].split("/", 1)[0]
    return project_id or None


def project_url(project_id: str, base_url: str = FLOW_TOOL_URL) -> str:
    return base_url.rstrip("/") + PROJECT_PATH_MARKER + project_id


class SessionProvider:
    """Own one persistent Chromium context and the page the batch is driven through.

    All calls must come from the thread that called :meth:`start`; Playwright's sync
    API delivers response callbacks on that thread while it is blocked inside a
    Playwright call, which is why :meth:`wait` sleeps through ``wait_for_timeout``.
    """

    def __init__(
        self,
        *,
        headless: bool = False,
        login_timeout: float = 300,
        navigation_timeout_ms: int = 60000,
        start_url: str = FLOW_TOOL_URL,
    ) -> None:
        self._headless = headless
        self._login_timeout = login_timeout
        self._navigation_timeout_ms = navigation_timeout_ms
        self._start_url = start_url
        self._playwright = None
        self._context = None
        self._page = None
        self._closed = threading.Event()
        self._stopped = False

    @property
    def page(self):
        if self._page is None:
            raise SessionError("Browser session is not started.")
        return self._page

    @property
    def url(self) -> str:
        return self.page.url

    def __enter__(self) -> "SessionProvider":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def start(self, profile_dir: Union[str, Path]) -> None:
        profile_path = Path(profile_dir)
        profile_path.mkdir(parents=True, exist_ok=True)
        LOGGER.info("Launching browser with profile %s (headless=%s)", profile_path, self._headless)
        self._stopped = False
        self._closed.clear()
        self._playwright = sync_playwright().start()
        try:
            self._context = self._playwright.chromium.launch_persistent_context(
                str(profile_path),
                headless=self._headless,
                no_viewport=True,
                args=["--start-maximized"],
            )
            self._context.on("close", lambda _context: self._closed.set())
            pages = self._context.pages
            self._page = pages[0] if pages else self._context.new_page()
            self._page.on("close", lambda _page: self._closed.set())
            self._page.goto(self._start_url, wait_until="networkidle", timeout=self._navigation_timeout_ms)
        except PlaywrightTimeoutError:
            # Slow first paint is tolerated; authentication and input waits come next.
            LOGGER.warning("Initial navigation to %s did not settle before timeout", self._start_url)
        except PlaywrightError as exc:
            self.stop()
            raise SessionError(f"Failed to start browser session: {exc}") from exc

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        context, playwright = self._context, self._playwright
        self._context = None
        self._page = None
        self._playwright = None
        if context is not None:
            try:
                context.close()
            except PlaywrightError as exc:
                LOGGER.debug("Browser context close failed: %s", exc)
        if playwright is not None:
            try:
                playwright.stop()
            except PlaywrightError as exc:
                LOGGER.debug("Playwright shutdown failed: %s", exc)
        self._closed.set()
        LOGGER.info("Browser session released")

    def is_connected(self) -> bool:
        if self._stopped or self._page is None or self._closed.is_set():
            return False
        try:
            return not self._page.is_closed()
        except PlaywrightError:
            return False

    def _require_connected(self) -> None:
        if not self.is_connected():
            raise SessionLostError("Browser disconnected")

    def wait(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> None:
        """Sleep while pumping browser events; returns early on cancellation."""
        deadline = time.monotonic() + max(0.0, seconds)
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._require_connected()
            try:
                self.page.wait_for_timeout(min(remaining, 0.25) * 1000)
            except PlaywrightError as exc:
                raise SessionLostError(f"Browser disconnected: {exc}") from exc

    def ensure_authenticated(self, cancel_event: Optional[threading.Event] = None) -> None:
        if LOGIN_HOST_MARKER not in self.url:
            return
        LOGGER.info("Waiting for sign-in to complete in the browser window")
        started = time.monotonic()
        while LOGIN_HOST_MARKER in self.url:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelledError("Cancelled while waiting for sign-in")
            if self._login_timeout and time.monotonic() - started > self._login_timeout:
                raise SessionTimeoutError(
                    f"Sign-in was not completed within {int(self._login_timeout)} seconds"
                )
            self.wait(0.5, cancel_event)
        try:
            self.page.wait_for_load_state("networkidle", timeout=self._navigation_timeout_ms)
        except PlaywrightTimeoutError:
            LOGGER.debug("Post sign-in page did not reach network idle")
        except PlaywrightError as exc:
            raise SessionLostError(f"Browser disconnected: {exc}") from exc
        LOGGER.info("Sign-in detected")

    def ensure_work_context(self) -> str:
        """Return the active project id, creating a project when none is open."""
        existing = project_id_from_url(self.url)
        if existing:
            LOGGER.info("Using existing project %s", existing)
            return existing

        title = "Flow Batch " + time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        LOGGER.info("Creating project %r", title)
        try:
            result = self.page.evaluate(
                _CREATE_PROJECT_SCRIPT,
                {"url": CREATE_PROJECT_URL, "title": title, "tool": PROJECT_TOOL_NAME},
            )
        except PlaywrightError as exc:
            self._require_connected()
            raise SessionError(f"Project creation failed: {exc}") from exc
        project_id = self._parse_created_project(result)
        try:
            self.page.goto(project_url(project_id), wait_until="networkidle", timeout=self._navigation_timeout_ms)
        except PlaywrightTimeoutError:
            LOGGER.warning("Project page %s did not settle before timeout", project_id)
        except PlaywrightError as exc:
            self._require_connected()
            raise SessionError(f"Failed to open project {project_id}: {exc}") from exc
        LOGGER.info("Created project %s", project_id)
        return project_id

    @staticmethod
    def _parse_created_project(result: Any) -> str:
        if not isinstance(result, dict):
            raise SessionError("Project creation returned no response")
        text = result.get("text") or ""
        if not result.get("ok"):
            LOGGER.error("Project creation failed (%s): %s", result.get("status"), text)
            raise SessionError(f"Project creation failed with status {result.get('status')}: {text}")
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise SessionError(f"Project creation returned invalid JSON: {text[:200]}") from exc
        project_id = (
            payload.get("result", {}).get("data", {}).get("json", {}).get("result", {}).get("projectId")
            if isinstance(payload, dict)
            else None
        )
        if not isinstance(project_id, str) or not project_id:
            raise SessionError("Project creation response did not include a project id")
        return project_id

    def wait_for_selector(self, selector: str, timeout: float) -> None:
        try:
            self.page.wait_for_selector(selector, timeout=timeout * 1000)
        except PlaywrightTimeoutError as exc:
            raise SessionTimeoutError(f"Timed out waiting for {selector}") from exc
        except PlaywrightError as exc:
            self._require_connected()
            raise SessionError(f"Failed waiting for {selector}: {exc}") from exc

    def type_text(self, selector: str, text: str, delay_ms: int = 10) -> None:
        self.page.click(selector)
        self.page.type(selector, text, delay=delay_ms)

    def clear_input(self, selector: str) -> None:
        self.page.click(selector, click_count=3)
        self.page.keyboard.press("Backspace")

    def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return self.page.evaluate(script)
        return self.page.evaluate(script, arg)

    def on_response(self, handler: Callable[[Any], None]) -> None:
        self.page.on("response", handler)
