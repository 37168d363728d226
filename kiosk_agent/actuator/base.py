"""Actuation strategy interface and shared browser settings."""

from __future__ import annotations

import abc
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from .. import constants

LOGGER = logging.getLogger(__name__)

KIOSK_ARGS: Sequence[str] = (
    "--kiosk",
    "--noerrdialogs",
    "--disable-infobars",
    "--no-first-run",
    "--autoplay-policy=no-user-gesture-required",
    "--disable-session-crashed-bubble",
    "--disable-features=TranslateUI",
    "--check-for-update-interval=31536000",
    "--disable-component-update",
    "--disable-background-networking",
    "--disable-sync",
    "--disable-default-apps",
    "--start-fullscreen",
    "--use-fake-ui-for-media-stream",
    "--disable-crashpad",
    "--disable-crash-reporter",
    "--disable-breakpad",
)

WAYLAND_ARGS: Sequence[str] = (
    "--enable-features=UseOzonePlatform",
    "--ozone-platform=wayland",
    "--enable-features=WebRTCPipeWireCapturer",
)

CHROMIUM_CANDIDATES: Sequence[str] = (
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/snap/bin/chromium",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
)

STOP_MEDIA_SCRIPT = """
document.querySelectorAll('video, audio').forEach(el => {
  el.pause();
  el.currentTime = 0;
  el.src = '';
  el.load();
});
"""

PAUSE_MEDIA_SCRIPT = "const v = document.querySelector('video'); if (v) v.pause();"
RESUME_MEDIA_SCRIPT = "const v = document.querySelector('video'); if (v) v.play();"

CrashHandler = Callable[[str], None]


class ActuatorError(RuntimeError):
    """Raised when the actuator cannot perform an operation."""


class ActuatorUnavailable(ActuatorError):
    """Raised when a strategy cannot be started on this host."""


def is_wayland_session() -> bool:
    return bool(os.environ.get("WAYLAND_DISPLAY")) or (
        os.environ.get("XDG_SESSION_TYPE") == "wayland"
    )


def find_chromium(configured: Optional[str] = None) -> Optional[str]:
    """Locate a Chromium binary: ``CHROMIUM_BIN``, then config, then system paths."""

    candidates: List[str] = []
    env_path = os.environ.get("CHROMIUM_BIN")
    if env_path:
        candidates.append(env_path)
    if configured:
        candidates.append(configured)
    candidates.extend(CHROMIUM_CANDIDATES)
    for candidate in candidates:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return None


@dataclass(slots=True)
class BrowserSettings:
    standby_url: str = constants.DEFAULT_STANDBY_URL
    chromium_path: Optional[str] = None
    user_data_dir: Path = constants.DEFAULT_USER_DATA_DIR
    navigation_timeout: float = 30.0
    extra_args: List[str] = field(default_factory=list)

    def launch_args(self) -> List[str]:
        args = list(KIOSK_ARGS)
        if is_wayland_session():
            args.extend(WAYLAND_ARGS)
        args.extend(self.extra_args)
        return args

    def prepare_user_data_dir(self) -> Path:
        # Chromium's crash handler refuses to start without this directory.
        crash_dir = self.user_data_dir / "Crash Reports"
        try:
            crash_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not create %s: %s", crash_dir, exc)
        return self.user_data_dir


class ActuatorStrategy(abc.ABC):
    """One way of driving the kiosk browser.

    A strategy is started with :meth:`launch` and torn down with
    :meth:`close`. When the underlying browser dies on its own the strategy
    calls the registered crash handler with a short reason.
    """

    name: str = "strategy"
    supports_scripting: bool = False

    def __init__(self) -> None:
        self._crash_handler: Optional[CrashHandler] = None

    def set_crash_handler(self, handler: Optional[CrashHandler]) -> None:
        self._crash_handler = handler

    def _report_crash(self, reason: str) -> None:
        handler = self._crash_handler
        if handler is None:
            return
        try:
            handler(reason)
        except Exception:
            LOGGER.exception("Crash handler failed for %s", self.name)

    @abc.abstractmethod
    async def launch(self, url: str) -> None:
        """Start the browser showing ``url``; raise ActuatorUnavailable if impossible."""

    @abc.abstractmethod
    async def navigate(self, url: str) -> None:
        ...

    @abc.abstractmethod
    def is_alive(self) -> bool:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...

    async def evaluate(self, script: str) -> Any:
        raise ActuatorError(f"{self.name} strategy cannot execute scripts")

    async def stop_media(self) -> None:
        await self.evaluate(STOP_MEDIA_SCRIPT)

    async def pause_media(self) -> None:
        await self.evaluate(PAUSE_MEDIA_SCRIPT)

    async def resume_media(self) -> None:
        await self.evaluate(RESUME_MEDIA_SCRIPT)
