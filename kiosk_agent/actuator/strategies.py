"""Concrete actuation strategies, in order of preference."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
from typing import Any, List, Optional

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright

from .base import (
    ActuatorError,
    ActuatorStrategy,
    ActuatorUnavailable,
    BrowserSettings,
    find_chromium,
)

LOGGER = logging.getLogger(__name__)


class PlaywrightStrategy(ActuatorStrategy):
    """Fully scriptable Chromium session in a persistent Playwright context."""

    name = "playwright"
    supports_scripting = True

    def __init__(self, settings: BrowserSettings) -> None:
        super().__init__()
        self._settings = settings
        self._playwright: Optional[Playwright] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._closing = False
        self._crashed = False

    @property
    def _timeout_ms(self) -> float:
        return self._settings.navigation_timeout * 1000

    async def launch(self, url: str) -> None:
        self._closing = False
        self._crashed = False
        executable = find_chromium(self._settings.chromium_path)
        options: dict[str, Any] = {
            "headless": False,
            "args": self._settings.launch_args(),
            "ignore_default_args": ["--enable-automation"],
            "no_viewport": True,
            "ignore_https_errors": True,
        }
        if executable:
            options["executable_path"] = executable
            LOGGER.info("Using system Chromium at %s", executable)
        else:
            LOGGER.info("Using Playwright bundled Chromium")

        try:
            self._playwright = await async_playwright().start()
            user_data_dir = self._settings.prepare_user_data_dir()
            self._context = await self._playwright.chromium.launch_persistent_context(
                str(user_data_dir), **options
            )
            pages = self._context.pages
            self._page = pages[0] if pages else await self._context.new_page()
            self._page.on("crash", self._on_page_crash)
            self._context.on("close", self._on_context_close)
            await self._page.goto(
                url, wait_until="domcontentloaded", timeout=self._timeout_ms
            )
        except Exception as exc:
            await self.close()
            raise ActuatorUnavailable(f"Playwright launch failed: {exc}") from exc

    async def navigate(self, url: str) -> None:
        page = self._require_page()
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self._timeout_ms)
        except Exception as exc:
            raise ActuatorError(f"Navigation to {url} failed: {exc}") from exc

    async def evaluate(self, script: str) -> Any:
        page = self._require_page()
        try:
            return await page.evaluate("code => new Function(code)()", script)
        except Exception as exc:
            raise ActuatorError(f"Script execution failed: {exc}") from exc

    def is_alive(self) -> bool:
        page = self._page
        return (
            self._context is not None
            and page is not None
            and not page.is_closed()
            and not self._crashed
        )

    async def close(self) -> None:
        self._closing = True
        page, context, playwright = self._page, self._context, self._playwright
        self._page = None
        self._context = None
        self._playwright = None
        if page is not None:
            with contextlib.suppress(Exception):
                await page.close()
        if context is not None:
            with contextlib.suppress(Exception):
                await context.close()
        if playwright is not None:
            with contextlib.suppress(Exception):
                await playwright.stop()

    def _require_page(self) -> Page:
        if not self.is_alive() or self._page is None:
            raise ActuatorError("Playwright session is not running")
        return self._page

    def _on_page_crash(self, _page: Page) -> None:
        self._crashed = True
        LOGGER.error("Kiosk page crashed")
        self._report_crash("page crashed")

    def _on_context_close(self, _context: BrowserContext) -> None:
        if self._closing:
            return
        self._crashed = True
        LOGGER.error("Browser context closed unexpectedly")
        self._report_crash("browser disconnected")


class ProcessStrategy(ActuatorStrategy):
    """Launches the Chromium binary directly; navigation relaunches it."""

    name = "process"

    def __init__(self, settings: BrowserSettings, *, startup_grace: float = 1.0) -> None:
        super().__init__()
        self._settings = settings
        self._startup_grace = startup_grace
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watcher: Optional[asyncio.Task[None]] = None
        self._closing = False

    def build_command(self, executable: str, url: str) -> List[str]:
        user_data_dir = self._settings.prepare_user_data_dir()
        return [
            executable,
            *self._settings.launch_args(),
            f"--user-data-dir={user_data_dir}",
            url,
        ]

    async def launch(self, url: str) -> None:
        executable = find_chromium(self._settings.chromium_path)
        if executable is None:
            raise ActuatorUnavailable("No Chromium executable found")

        self._closing = False
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(executable, url),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise ActuatorUnavailable(f"Could not start {executable}: {exc}") from exc

        try:
            returncode = await asyncio.wait_for(process.wait(), self._startup_grace)
        except asyncio.TimeoutError:
            pass
        else:
            raise ActuatorUnavailable(f"Chromium exited during startup ({returncode})")

        self._process = process
        self._watcher = asyncio.create_task(self._watch(process))
        LOGGER.info("Chromium started (pid %s)", process.pid)

    async def navigate(self, url: str) -> None:
        await self._terminate()
        try:
            await self.launch(url)
        except ActuatorUnavailable as exc:
            raise ActuatorError(str(exc)) from exc

    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def close(self) -> None:
        await self._terminate()

    async def _terminate(self) -> None:
        self._closing = True
        watcher, process = self._watcher, self._process
        self._watcher = None
        self._process = None
        if watcher is not None:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), 5.0)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if self._closing or process is not self._process:
            return
        LOGGER.error("Chromium exited unexpectedly (%s)", returncode)
        self._report_crash(f"process exited with {returncode}")


class SyntheticInputStrategy(ActuatorStrategy):
    """Drives an already-open Chromium window with xdotool keystrokes."""

    name = "synthetic_input"

    def __init__(
        self,
        *,
        window_class: str = "chromium",
        command_timeout: float = 5.0,
    ) -> None:
        super().__init__()
        self._window_class = window_class
        self._command_timeout = command_timeout
        self._xdotool: Optional[str] = None
        self._window_id: Optional[str] = None

    async def launch(self, url: str) -> None:
        self._xdotool = shutil.which("xdotool")
        if self._xdotool is None:
            raise ActuatorUnavailable("xdotool is not installed")
        try:
            output = await self._run(
                "search", "--onlyvisible", "--class", self._window_class
            )
        except ActuatorError as exc:
            raise ActuatorUnavailable(f"No {self._window_class} window found") from exc
        window_ids = output.split()
        if not window_ids:
            raise ActuatorUnavailable(f"No {self._window_class} window found")
        self._window_id = window_ids[0]
        LOGGER.info("Driving existing window %s", self._window_id)
        try:
            await self.navigate(url)
        except ActuatorError as exc:
            self._window_id = None
            raise ActuatorUnavailable(str(exc)) from exc

    async def navigate(self, url: str) -> None:
        await self._focus()
        await self._run("key", "--clearmodifiers", "ctrl+l")
        await self._run("type", "--delay", "0", "--", url)
        await self._run("key", "Return")

    async def stop_media(self) -> None:
        # Navigating away is the only way to stop playback without scripting.
        return None

    async def pause_media(self) -> None:
        await self._focus()
        await self._run("key", "space")

    async def resume_media(self) -> None:
        await self._focus()
        await self._run("key", "space")

    def is_alive(self) -> bool:
        return self._window_id is not None

    async def close(self) -> None:
        # The window belongs to someone else; just stop tracking it.
        self._window_id = None

    async def _focus(self) -> None:
        if self._window_id is None:
            raise ActuatorError("No window is being driven")
        try:
            await self._run("windowactivate", "--sync", self._window_id)
        except ActuatorError:
            self._window_id = None
            raise

    async def _run(self, *args: str) -> str:
        if self._xdotool is None:
            raise ActuatorError("xdotool is not available")
        process = await asyncio.create_subprocess_exec(
            self._xdotool,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), self._command_timeout
            )
        except asyncio.TimeoutError as exc:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise ActuatorError(f"xdotool {args[0]} timed out") from exc
        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise ActuatorError(f"xdotool {args[0]} failed: {message or process.returncode}")
        return stdout.decode(errors="replace")
