"""Pollers that scrape tmux panes and feed the session registry."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .detectors import detect_bypass_warning, detect_permission_prompt, parse_token_count
from .models import ManagedSession
from .tmux_controller import TmuxController, TmuxError, ValidationError, validate_tmux_session

logger = logging.getLogger(__name__)

# Tail of the pane compared between token polls
TOKEN_CHANGE_WINDOW = 500


class OutputMonitor:
    """
    Runs the permission, token, health and working-timeout pollers.

    Each poller is a separate task on its own interval. Per-session
    captures within one cycle run concurrently and fail independently.
    """

    def __init__(
        self,
        session_manager,
        tmux: TmuxController,
        config: Optional[dict] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_manager = session_manager
        self.tmux = tmux
        self.config = config or {}
        self._sleep = sleep

        monitor_config = self.config.get("monitor", {})
        self.permission_poll_seconds = monitor_config.get("permission_poll_seconds", 1)
        self.token_poll_seconds = monitor_config.get("token_poll_seconds", 2)
        self.health_check_seconds = monitor_config.get("health_check_seconds", 5)
        self.working_check_seconds = monitor_config.get("working_check_seconds", 10)
        self.capture_lines = monitor_config.get("capture_lines", 50)

        self._running = False
        self._tasks: dict[str, asyncio.Task] = {}
        self._last_token_tail: dict[str, str] = {}

    def start(self):
        """Start all poller tasks on the running event loop."""
        if self._running:
            return
        self._running = True
        pollers = {
            "permissions": (self.permission_poll_seconds, self.poll_permissions_once),
            "tokens": (self.token_poll_seconds, self.poll_tokens_once),
            "health": (self.health_check_seconds, self.check_health_once),
            "working_timeout": (self.working_check_seconds, self.sweep_working_once),
        }
        for name, (interval, poll) in pollers.items():
            self._tasks[name] = asyncio.create_task(self._run_loop(name, interval, poll))
        logger.info(f"Started {len(self._tasks)} pollers")

    async def stop_all(self):
        """Stop all poller tasks."""
        self._running = False
        for name, task in list(self._tasks.items()):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Stopped pollers")

    async def _run_loop(self, name: str, interval: float, poll: Callable[[], Awaitable]):
        while self._running:
            try:
                await poll()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Poller {name} cycle failed: {e}")
            await self._sleep(interval)

    async def _capture(self, session: ManagedSession) -> Optional[str]:
        """Capture a session's pane. Failures are logged and return None."""
        try:
            validate_tmux_session(session.tmux_session)
            return await self.tmux.capture_output(session.tmux_session, self.capture_lines)
        except ValidationError as e:
            logger.error(f"Skipping capture for {session.id[:8]}: {e}")
        except TmuxError as e:
            logger.debug(f"Capture failed for {session.tmux_session}: {e}")
        return None

    async def _for_each_active(self, handler: Callable[[ManagedSession], Awaitable]):
        sessions = self.session_manager.active_sessions()
        if not sessions:
            return
        results = await asyncio.gather(
            *(handler(session) for session in sessions), return_exceptions=True
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.error(f"Poll failed for session {session.id[:8]}: {result}")

    async def poll_permissions_once(self):
        await self._for_each_active(self._poll_permission)

    async def _poll_permission(self, session: ManagedSession):
        output = await self._capture(session)
        if output is None:
            return

        if detect_bypass_warning(output):
            if await self.session_manager.accept_bypass_warning(session.id):
                return

        self.session_manager.apply_permission_signal(session.id, detect_permission_prompt(output))

    async def poll_tokens_once(self):
        await self._for_each_active(self._poll_tokens)
        live_ids = set(self.session_manager.sessions)
        for session_id in list(self._last_token_tail):
            if session_id not in live_ids:
                del self._last_token_tail[session_id]

    async def _poll_tokens(self, session: ManagedSession):
        output = await self._capture(session)
        if output is None:
            return

        tail = output[-TOKEN_CHANGE_WINDOW:]
        if self._last_token_tail.get(session.id) == tail:
            return
        self._last_token_tail[session.id] = tail

        tokens = parse_token_count(output)
        if tokens is not None:
            self.session_manager.apply_token_count(session.id, tokens)

    async def check_health_once(self):
        await self.session_manager.refresh_health()

    async def sweep_working_once(self):
        self.session_manager.sweep_working_timeout()
