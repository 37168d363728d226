"""Actuator lifecycle supervision.

The supervisor owns the one browser surface on the device. It picks the
first strategy that can start, keeps it ready, recovers it after crashes and
gives command handlers a uniform navigation and media-control surface.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from .. import constants
from ..timers import LoopScheduler, Scheduler
from ..validation import is_meeting_url, is_url_allowed
from .base import ActuatorError, ActuatorStrategy, ActuatorUnavailable

LOGGER = logging.getLogger(__name__)

# Characters that could break out of a command line built by a fallback strategy.
_UNSAFE_URL_CHARS = re.compile(r"[`$\\;|&><\x00-\x1f\x7f]")

CrashListener = Callable[[str, str], None]


@dataclass(slots=True)
class ActuatorHandle:
    mode: str
    strategy: ActuatorStrategy
    current_url: str
    ready: bool = True


class ActuatorSupervisor:
    def __init__(
        self,
        strategies: Sequence[ActuatorStrategy],
        *,
        scheduler: Optional[Scheduler] = None,
        standby_url: str = constants.DEFAULT_STANDBY_URL,
        recovery_delay: float = 1.0,
        restart_delay: float = 0.5,
        standby_settle_delay: float = 0.1,
    ) -> None:
        if not strategies:
            raise ValueError("At least one actuation strategy is required")
        self._strategies: List[ActuatorStrategy] = list(strategies)
        self._scheduler = scheduler or LoopScheduler()
        self._standby_url = standby_url
        self._recovery_delay = recovery_delay
        self._restart_delay = restart_delay
        self._standby_settle_delay = standby_settle_delay
        self._handle: Optional[ActuatorHandle] = None
        self._active: Optional[ActuatorStrategy] = None
        self._lock = asyncio.Lock()
        self._recovery_task: Optional[asyncio.Task[None]] = None
        self._crash_listeners: List[CrashListener] = []
        self._shutting_down = False

        for strategy in self._strategies:
            strategy.set_crash_handler(
                lambda reason, source=strategy: self._on_crash(source, reason)
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def standby_url(self) -> str:
        return self._standby_url

    @property
    def ready(self) -> bool:
        handle = self._handle
        return handle is not None and handle.ready and handle.strategy.is_alive()

    @property
    def mode(self) -> Optional[str]:
        return self._handle.mode if self._handle else None

    @property
    def recovering(self) -> bool:
        return self._recovery_task is not None and not self._recovery_task.done()

    def current_url(self) -> str:
        return self._handle.current_url if self._handle else self._standby_url

    def add_crash_listener(self, listener: CrashListener) -> None:
        """Register ``listener(mode, reason)``, called when the actuator crashes."""

        self._crash_listeners.append(listener)

    def is_local_url(self, url: str) -> bool:
        return url == self._standby_url or url.startswith(
            self._standby_url.rstrip("/") + "/"
        )

    def check_url(self, url: Any) -> None:
        """Raise ActuatorError unless ``url`` may be shown on the kiosk."""

        if not isinstance(url, str) or not url:
            raise ActuatorError("URL must be a non-empty string")
        local = self.is_local_url(url)
        if not (local or is_url_allowed(url) or is_meeting_url(url)):
            raise ActuatorError(f"URL not allowed: {url}")
        if not local and _UNSAFE_URL_CHARS.search(url):
            raise ActuatorError("URL contains invalid characters")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> ActuatorHandle:
        async with self._lock:
            if self.ready:
                assert self._handle is not None
                return self._handle
            return await self._initialize_locked(self._standby_url)

    async def force_restart(self, url: Optional[str] = None) -> ActuatorHandle:
        """Close and relaunch the actuator. Disrupts whatever is on screen."""

        LOGGER.info("Force restarting actuator")
        async with self._lock:
            await self._teardown()
            await self._scheduler.sleep(self._restart_delay)
            handle = await self._initialize_locked(self._standby_url)
        if url and url != self._standby_url:
            await self.navigate(url)
        return handle

    async def shutdown(self) -> None:
        self._shutting_down = True
        task = self._recovery_task
        self._recovery_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        async with self._lock:
            await self._teardown()
        LOGGER.info("Actuator shut down")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def navigate(self, url: str) -> None:
        self.check_url(url)
        LOGGER.info("Navigating to %s", url)
        attempted: Optional[ActuatorHandle] = None
        try:
            handle = attempted = await self._ensure_ready()
            await self._stop_media_quietly(handle)
            await handle.strategy.navigate(url)
        except ActuatorError as exc:
            # Crash recovery may have replaced the session mid-navigation;
            # the retry then runs on the fresh session without another restart.
            replaced = attempted is not None and self._handle is not attempted
            LOGGER.warning("Navigation failed (%s); retrying once", exc)
            try:
                handle = await self._recover(
                    f"navigation failed: {exc}", skip_if_ready=replaced
                )
                await handle.strategy.navigate(url)
            except ActuatorError as retry_exc:
                LOGGER.error("Navigation retry failed: %s", retry_exc)
                raise exc
        handle.current_url = url

    async def go_to_standby(self, *, recover: bool = True) -> None:
        """Stop media and show the standby page.

        A full restart happens only when the plain navigation fails and
        ``recover`` is set.
        """

        LOGGER.info("Going to standby")
        try:
            handle = await self._ensure_ready()
            await self._stop_media_quietly(handle)
            await self._scheduler.sleep(self._standby_settle_delay)
            await handle.strategy.navigate(self._standby_url)
            handle.current_url = self._standby_url
        except ActuatorError as exc:
            if not recover:
                raise
            LOGGER.warning("Failed to reach standby cleanly (%s); recovering", exc)
            await self._recover(f"standby failed: {exc}")

    async def pause(self) -> bool:
        return await self._media_control("pause")

    async def resume(self) -> bool:
        return await self._media_control("resume")

    async def stop_media(self) -> bool:
        return await self._media_control("stop")

    async def execute_script(self, code: str) -> Any:
        LOGGER.info("Executing script: %s", code[:100])
        handle = await self._ensure_ready()
        if not handle.strategy.supports_scripting:
            raise ActuatorError(f"{handle.mode} strategy cannot execute scripts")
        return await handle.strategy.evaluate(code)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _media_control(self, action: str) -> bool:
        try:
            handle = await self._ensure_ready()
            if action == "pause":
                await handle.strategy.pause_media()
            elif action == "resume":
                await handle.strategy.resume_media()
            else:
                await handle.strategy.stop_media()
        except ActuatorError as exc:
            LOGGER.warning("Media %s failed: %s", action, exc)
            return False
        LOGGER.info("Media %s sent", action)
        return True

    async def _stop_media_quietly(self, handle: ActuatorHandle) -> None:
        try:
            await handle.strategy.stop_media()
        except ActuatorError as exc:
            LOGGER.debug("Could not stop media before navigation: %s", exc)

    async def _ensure_ready(self) -> ActuatorHandle:
        async with self._lock:
            if self.ready:
                assert self._handle is not None
                return self._handle
            if self._handle is not None:
                LOGGER.warning("Actuator not ready; reinitialising")
                await self._teardown()
            return await self._initialize_locked(self._standby_url)

    async def _recover(self, reason: str, *, skip_if_ready: bool = False) -> ActuatorHandle:
        async with self._lock:
            if skip_if_ready and self.ready:
                assert self._handle is not None
                return self._handle
            LOGGER.info("Recovering actuator: %s", reason)
            await self._teardown()
            await self._scheduler.sleep(self._recovery_delay)
            handle = await self._initialize_locked(self._standby_url)
            LOGGER.info("Actuator recovery complete (%s)", handle.mode)
            return handle

    async def _initialize_locked(self, url: str) -> ActuatorHandle:
        if self._shutting_down:
            raise ActuatorUnavailable("Actuator is shutting down")

        order = list(self._strategies)
        if self._active is not None and self._active in order:
            order.remove(self._active)
            order.insert(0, self._active)

        failures: List[str] = []
        for strategy in order:
            try:
                await strategy.launch(url)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("Actuation strategy %s unavailable: %s", strategy.name, exc)
                failures.append(f"{strategy.name}: {exc}")
                continue

            if self._active is not strategy:
                LOGGER.info("Actuator running with %s strategy", strategy.name)
            self._active = strategy
            self._handle = ActuatorHandle(
                mode=strategy.name, strategy=strategy, current_url=url
            )
            return self._handle

        raise ActuatorUnavailable(
            "No actuation strategy could start: " + "; ".join(failures)
        )

    async def _teardown(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is None:
            return
        handle.ready = False
        try:
            await handle.strategy.close()
        except Exception as exc:
            LOGGER.debug("Error closing %s strategy: %s", handle.mode, exc)

    def _on_crash(self, strategy: ActuatorStrategy, reason: str) -> None:
        handle = self._handle
        if self._shutting_down or handle is None or handle.strategy is not strategy:
            return
        handle.ready = False
        LOGGER.error("Actuator %s crashed: %s", handle.mode, reason)
        for listener in list(self._crash_listeners):
            try:
                listener(handle.mode, reason)
            except Exception:
                LOGGER.exception("Actuator crash listener failed")
        if self.recovering:
            return
        self._recovery_task = asyncio.create_task(self._recover_after_crash(reason))

    async def _recover_after_crash(self, reason: str) -> None:
        try:
            await self._recover(f"crash: {reason}", skip_if_ready=True)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Actuator crash recovery failed")
