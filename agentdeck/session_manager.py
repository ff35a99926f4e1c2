"""Session registry: lifecycle, status state machine and persistence."""

import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Callable, Optional, List

from .broadcaster import Broadcaster, make_message
from .event_ledger import EventLedger
from .models import (
    ClaudeEvent,
    EventType,
    LaunchFlags,
    ManagedSession,
    PermissionPrompt,
    SessionStatus,
    SessionTokenCounter,
    ZonePosition,
    now_ms,
)
from .tmux_controller import (
    TmuxController,
    TmuxError,
    ValidationError,
    build_claude_command,
    validate_directory_path,
    validate_display_name,
    validate_tmux_session,
)

logger = logging.getLogger(__name__)

_UNSET = object()
_OPTION_RE = re.compile(r"^\d+$")

# Statuses an event may move into working from; offline only leaves via
# the health check or a restart.
_TOOL_START_FROM = (SessionStatus.IDLE, SessionStatus.WORKING)
_PROMPT_SUBMIT_FROM = (SessionStatus.IDLE, SessionStatus.WORKING, SessionStatus.WAITING)


class SessionManager:
    """
    Owns every ManagedSession and its transient trackers.

    All status changes go through _transition(), which broadcasts the
    session list and persists it only when status or current tool changed.
    """

    def __init__(
        self,
        tmux: TmuxController,
        broadcaster: Broadcaster,
        state_file: str = "~/.agentdeck/data/sessions.json",
        ledger: Optional[EventLedger] = None,
        git_status=None,
        config: Optional[dict] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.tmux = tmux
        self.broadcaster = broadcaster
        self.state_file = Path(state_file).expanduser()
        self.config = config or {}
        self.clock = clock
        self.git_status = git_status

        ledger_config = self.config.get("ledger", {})
        self.ledger = ledger or EventLedger(max_events=ledger_config.get("max_events", 1000))

        monitor_config = self.config.get("monitor", {})
        self.working_timeout_ms = int(monitor_config.get("working_timeout_seconds", 120) * 1000)

        claude_config = self.config.get("claude", {})
        self.claude_binary = claude_config.get("command", "claude")
        self.claude_extra_path = claude_config.get("extra_path")

        self.sessions: dict[str, ManagedSession] = {}
        self.claude_to_managed: dict[str, str] = {}
        self.session_counter = 0

        # Transient per-session trackers, never persisted
        self.pending_permissions: dict[str, PermissionPrompt] = {}
        self.token_counters: dict[str, SessionTokenCounter] = {}
        self.bypass_warning_handled: set[str] = set()

        self._load_state()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_state(self) -> bool:
        """
        Load the session registry from disk.

        Restored sessions are forced offline until the next health check.

        Returns:
            True if state loaded successfully (or no state file exists),
            False if an error occurred during loading.
        """
        if not self.state_file.exists():
            return True
        try:
            with open(self.state_file) as f:
                data = json.load(f)

            for session_data in data.get("sessions", []):
                session = ManagedSession.from_dict(session_data)
                session.status = SessionStatus.OFFLINE
                session.current_tool = None
                self.sessions[session.id] = session
                if self.git_status and session.cwd:
                    self.git_status.track(session.id, session.cwd)

            for claude_id, managed_id in data.get("claudeToManagedMap", []):
                if managed_id in self.sessions:
                    self.claude_to_managed[claude_id] = managed_id

            counter = data.get("sessionCounter")
            if isinstance(counter, int):
                self.session_counter = counter

            logger.info(f"Loaded {len(self.sessions)} sessions from {self.state_file}")
            return True
        except Exception as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            return False

    def _save_state(self) -> bool:
        """
        Save the registry snapshot to disk using atomic file operations.

        Returns:
            True if state saved successfully, False if an error occurred.
        """
        temp_file = self.state_file.with_suffix('.tmp')
        try:
            data = {
                "sessions": [s.to_dict() for s in self.sessions.values()],
                "claudeToManagedMap": [[k, v] for k, v in self.claude_to_managed.items()],
                "sessionCounter": self.session_counter,
            }
            self.state_file.parent.mkdir(parents=True, exist_ok=True)

            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)

            # Atomic rename (POSIX guarantees atomicity)
            temp_file.rename(self.state_file)
            return True

        except Exception as e:
            logger.error(f"CRITICAL: Failed to save state to {self.state_file}: {e}")
            logger.error("Session state NOT persisted! Data may be lost on restart.")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            return False

    # ------------------------------------------------------------------
    # Snapshots and notification
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[ManagedSession]:
        return self.sessions.get(session_id)

    def list_sessions(self) -> List[ManagedSession]:
        return list(self.sessions.values())

    def active_sessions(self) -> List[ManagedSession]:
        """Sessions the pollers should capture (everything not offline)."""
        return [s for s in self.sessions.values() if s.status != SessionStatus.OFFLINE]

    def find_by_claude_session(self, claude_session_id: str) -> Optional[ManagedSession]:
        managed_id = self.claude_to_managed.get(claude_session_id)
        if managed_id:
            return self.sessions.get(managed_id)
        return None

    def session_snapshot(self, session: ManagedSession) -> dict:
        """Wire representation including token and git status."""
        data = session.to_dict()
        counter = self.token_counters.get(session.id)
        if counter:
            data["tokens"] = counter.to_dict()
        if self.git_status:
            git = self.git_status.get_status(session.id)
            if git:
                data["gitStatus"] = git.to_dict()
        return data

    def sessions_payload(self) -> List[dict]:
        return [self.session_snapshot(s) for s in self.sessions.values()]

    def broadcast_sessions(self):
        self.broadcaster.publish(make_message("sessions", self.sessions_payload()))

    def _notify_changed(self):
        self.broadcast_sessions()
        self._save_state()

    def on_git_status_changed(self, session_id: str):
        """Callback from the git status poller."""
        if session_id in self.sessions:
            self.broadcast_sessions()

    def _transition(
        self,
        session: ManagedSession,
        status: Optional[SessionStatus] = None,
        current_tool=_UNSET,
        reason: str = "",
        force_notify: bool = False,
    ) -> bool:
        """
        Apply a status / current tool change to a session.

        Broadcasts and persists exactly once if (status, current_tool)
        changed, or if force_notify says the caller changed other fields.

        Returns:
            True if a notification was emitted
        """
        new_status = status or session.status
        new_tool = session.current_tool if current_tool is _UNSET else current_tool
        if new_status == SessionStatus.OFFLINE:
            new_tool = None

        changed = (new_status, new_tool) != (session.status, session.current_tool)
        if not changed and not force_notify:
            return False

        old_status = session.status
        session.status = new_status
        session.current_tool = new_tool
        if old_status != new_status:
            logger.info(
                f"Session {session.name} ({session.id[:8]}): "
                f"{old_status.value} -> {new_status.value}" + (f" ({reason})" if reason else "")
            )
        if new_status == SessionStatus.OFFLINE:
            self._drop_permission_prompt(session.id)

        self._notify_changed()
        return True

    # ------------------------------------------------------------------
    # Event ingestion
    # ------------------------------------------------------------------

    def handle_event(self, event: ClaudeEvent) -> Optional[ClaudeEvent]:
        """
        Ingest a lifecycle event and derive the linked session's status.

        Returns:
            The processed event, or None for a duplicate
        """
        processed = self.ledger.ingest(event)
        if processed is None:
            return None

        session = self.find_by_claude_session(processed.session_id)
        if session:
            session.last_activity = self.clock()
            if processed.cwd:
                session.cwd = processed.cwd
            self._apply_event(session, processed)

        self.broadcaster.publish(make_message("event", processed.to_dict()))
        return processed

    def _apply_event(self, session: ManagedSession, event: ClaudeEvent):
        event_type = event.type
        status = session.status
        if event_type == EventType.PRE_TOOL_USE.value:
            if status in _TOOL_START_FROM:
                self._transition(session, SessionStatus.WORKING, event.tool, reason=f"tool {event.tool}")
        elif event_type == EventType.POST_TOOL_USE.value:
            if status == SessionStatus.WORKING:
                self._transition(session, current_tool=None, reason="tool finished")
        elif event_type == EventType.USER_PROMPT_SUBMIT.value:
            if status in _PROMPT_SUBMIT_FROM:
                self._transition(session, SessionStatus.WORKING, None, reason="prompt submitted")
        elif event_type in (EventType.STOP.value, EventType.SESSION_END.value):
            self._transition(session, SessionStatus.IDLE, None, reason=event_type)

    def load_event_history(self, events: List[ClaudeEvent]) -> int:
        """Replay persisted events into the ledger without broadcasting."""
        loaded = self.ledger.load(events)
        logger.info(f"Loaded {loaded} events into ledger")
        return loaded

    def history_for_linked_sessions(self, limit: int = 50) -> List[dict]:
        linked = set(self.claude_to_managed.keys())
        return [e.to_dict() for e in self.ledger.recent_for_sessions(linked, limit)]

    # ------------------------------------------------------------------
    # Inbound commands
    # ------------------------------------------------------------------

    async def create_session(
        self,
        name: Optional[str] = None,
        cwd: Optional[str] = None,
        flags: Optional[LaunchFlags] = None,
    ) -> ManagedSession:
        """
        Spawn a new Claude session in tmux and register it.

        Args:
            name: Display name (defaults to "Claude <n>")
            cwd: Working directory (defaults to the server's cwd)
            flags: Launch flags

        Returns:
            The new session

        Raises:
            ValidationError: if name or directory are malformed
            TmuxError: if tmux fails to start the session
        """
        if name is not None:
            name = validate_display_name(name)
        working_dir = validate_directory_path(cwd or os.getcwd())
        flags = flags or LaunchFlags()

        session_id = str(uuid.uuid4())
        tmux_name = validate_tmux_session(f"agentdeck-{session_id[:8]}")
        command = self._launch_command(flags)

        await self.tmux.spawn_session(tmux_name, working_dir, command)

        self.session_counter += 1
        now = self.clock()
        session = ManagedSession(
            id=session_id,
            name=name or f"Claude {self.session_counter}",
            tmux_session=tmux_name,
            cwd=working_dir,
            status=SessionStatus.IDLE,
            created_at=now,
            last_activity=now,
            flags=flags,
        )
        self.sessions[session_id] = session
        if self.git_status:
            self.git_status.track(session_id, working_dir)

        logger.info(f"Created session {session.name} ({session_id[:8]}) in {working_dir}")
        self._notify_changed()
        return session

    def _launch_command(self, flags: LaunchFlags) -> str:
        return build_claude_command(
            continue_conversation=flags.continue_conversation,
            skip_permissions=flags.skip_permissions,
            chrome=flags.chrome,
            binary=self.claude_binary,
            extra_path=self.claude_extra_path,
        )

    def update_session(
        self,
        session_id: str,
        name: Optional[str] = None,
        zone_position: Optional[ZonePosition] = None,
    ) -> Optional[ManagedSession]:
        """
        Rename a session or move it in the visual layer.

        Returns:
            Updated session, or None if not found
        """
        session = self.sessions.get(session_id)
        if not session:
            return None
        if name is not None:
            session.name = validate_display_name(name)
        if zone_position is not None:
            session.zone_position = zone_position

        logger.info(f"Updated session {session.name} ({session_id[:8]})")
        self._notify_changed()
        return session

    async def delete_session(self, session_id: str) -> bool:
        """
        Kill a session's tmux session and forget it.

        Cleanup happens even if the kill fails or the stored tmux name is
        invalid; an invalid name is never passed to tmux.

        Returns:
            True if the session existed
        """
        session = self.sessions.get(session_id)
        if not session:
            return False

        try:
            validate_tmux_session(session.tmux_session)
            await self.tmux.kill_session(session.tmux_session)
        except ValidationError as e:
            logger.error(f"Refusing to kill session {session_id[:8]}: {e}")
        except TmuxError as e:
            logger.warning(f"Kill failed for {session.tmux_session} (continuing cleanup): {e}")

        del self.sessions[session_id]
        self.claude_to_managed = {
            claude_id: managed_id
            for claude_id, managed_id in self.claude_to_managed.items()
            if managed_id != session_id
        }
        self._drop_permission_prompt(session_id)
        self.token_counters.pop(session_id, None)
        self.bypass_warning_handled.discard(session_id)
        if self.git_status:
            self.git_status.untrack(session_id)

        logger.info(f"Deleted session {session.name} ({session_id[:8]})")
        self._notify_changed()
        return True

    def _resolve_target(self, session_id: str) -> Optional[ManagedSession]:
        session = self.sessions.get(session_id)
        if session:
            validate_tmux_session(session.tmux_session)
        return session

    async def send_prompt(self, session_id: str, prompt: str) -> bool:
        """
        Paste a prompt into a session and submit it.

        Returns:
            False if the session does not exist

        Raises:
            ValidationError: if the prompt is empty or the tmux name is invalid
            TmuxError: if injecting the text fails
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("Prompt is required")
        session = self._resolve_target(session_id)
        if not session:
            return False

        await self.tmux.load_and_paste_buffer(session.tmux_session, prompt)
        session.last_activity = self.clock()
        logger.info(f"Prompt sent to {session.name}: {prompt[:50]}...")
        return True

    async def cancel_session(self, session_id: str) -> bool:
        """Send Ctrl+C to a session. Returns False if it does not exist."""
        session = self._resolve_target(session_id)
        if not session:
            return False
        await self.tmux.send_keys(session.tmux_session, "C-c")
        logger.info(f"Sent Ctrl+C to {session.name}")
        return True

    async def respond_permission(self, session_id: str, option: str) -> bool:
        """
        Answer a permission prompt by selecting a numbered option.

        Returns:
            False if the session does not exist

        Raises:
            ValidationError: if option is not a number
            TmuxError: if the keystroke cannot be sent
        """
        option = str(option).strip() if option is not None else ""
        if not _OPTION_RE.match(option):
            raise ValidationError(f"Invalid permission response: {option!r}")
        session = self._resolve_target(session_id)
        if not session:
            return False

        await self.tmux.send_keys(session.tmux_session, option)
        logger.info(f"Sent permission response '{option}' to {session.name}")

        # Session may have been deleted while the keystroke was in flight
        session = self.sessions.get(session_id)
        if not session:
            return True
        self._drop_permission_prompt(session_id)
        if session.status == SessionStatus.WAITING:
            session.last_activity = self.clock()
            self._transition(session, SessionStatus.WORKING, None, reason="permission answered")
        return True

    def link_claude_session(self, session_id: str, claude_session_id: str) -> Optional[ManagedSession]:
        """
        Route events for a Claude conversation id to a managed session.

        Returns:
            The session, or None if not found
        """
        if not isinstance(claude_session_id, str) or not claude_session_id.strip():
            raise ValidationError("claudeSessionId is required")
        session = self.sessions.get(session_id)
        if not session:
            return None

        claude_session_id = claude_session_id.strip()
        self.claude_to_managed[claude_session_id] = session_id
        session.claude_session_id = claude_session_id
        logger.info(f"Linked Claude session {claude_session_id[:8]} to {session.name}")
        self._notify_changed()
        return session

    async def restart_session(self, session_id: str) -> Optional[ManagedSession]:
        """
        Kill and respawn a session's Claude process under the same tmux name.

        Returns:
            The restarted session, or None if not found

        Raises:
            ValidationError: if the stored tmux name or directory is invalid
            TmuxError: if the respawn fails
        """
        session = self._resolve_target(session_id)
        if not session:
            return None
        working_dir = validate_directory_path(session.cwd or os.getcwd())

        try:
            await self.tmux.kill_session(session.tmux_session)
        except TmuxError as e:
            logger.debug(f"Kill before restart of {session.tmux_session} failed: {e}")

        restart_flags = LaunchFlags(
            continue_conversation=True,
            skip_permissions=session.flags.skip_permissions,
            chrome=session.flags.chrome,
        )
        await self.tmux.spawn_session(
            session.tmux_session, working_dir, self._launch_command(restart_flags)
        )

        # Session may have been deleted while tmux was respawning
        if session_id not in self.sessions:
            try:
                await self.tmux.kill_session(session.tmux_session)
            except TmuxError as e:
                logger.warning(f"Could not kill respawned {session.tmux_session} after delete: {e}")
            return None

        session.cwd = working_dir
        session.last_activity = self.clock()
        session.claude_session_id = None
        self.claude_to_managed = {
            claude_id: managed_id
            for claude_id, managed_id in self.claude_to_managed.items()
            if managed_id != session_id
        }
        self._drop_permission_prompt(session_id)
        self.token_counters.pop(session_id, None)

        logger.info(f"Restarted session {session.name} ({session_id[:8]})")
        self._transition(session, SessionStatus.IDLE, None, reason="restart", force_notify=True)
        return session

    # ------------------------------------------------------------------
    # Poller results
    # ------------------------------------------------------------------

    async def refresh_health(self) -> bool:
        """
        Reconcile every session against the live tmux session list.

        Returns:
            False if the liveness check was inconclusive
        """
        try:
            live_names = await self.tmux.list_live_session_names()
        except TmuxError as e:
            logger.warning(f"Health check skipped: {e}")
            return False
        self.apply_liveness(set(live_names))
        return True

    def apply_liveness(self, live_names: set):
        for session in list(self.sessions.values()):
            alive = session.tmux_session in live_names
            if not alive and session.status != SessionStatus.OFFLINE:
                self._transition(session, SessionStatus.OFFLINE, reason="tmux session gone")
            elif alive and session.status == SessionStatus.OFFLINE:
                self._transition(session, SessionStatus.IDLE, reason="tmux session found")

    def sweep_working_timeout(self) -> List[str]:
        """
        Return working sessions with no activity for working_timeout_ms to idle.

        Returns:
            Ids of sessions that were reset
        """
        now = self.clock()
        reset = []
        for session in list(self.sessions.values()):
            if session.status != SessionStatus.WORKING:
                continue
            if now - session.last_activity > self.working_timeout_ms:
                self._transition(session, SessionStatus.IDLE, None, reason="working timeout")
                reset.append(session.id)
        return reset

    def apply_permission_signal(self, session_id: str, detected) -> None:
        """
        Fold one permission-poll result into the session.

        Args:
            session_id: Polled session
            detected: DetectedPrompt from the detector, or None
        """
        session = self.sessions.get(session_id)
        if not session or session.status == SessionStatus.OFFLINE:
            return

        existing = self.pending_permissions.get(session_id)
        if detected and not existing:
            prompt = PermissionPrompt(
                tool=detected.tool,
                context=detected.context,
                options=list(detected.options),
                detected_at=self.clock(),
            )
            self.pending_permissions[session_id] = prompt
            logger.info(f"Permission prompt in {session.name}: {prompt.tool}")
            self.broadcaster.publish(make_message("permission_prompt", prompt.to_payload(session_id)))
            session.last_activity = self.clock()
            self._transition(session, SessionStatus.WAITING, prompt.tool, reason="permission prompt")
        elif not detected and existing:
            self._drop_permission_prompt(session_id)
            if session.status == SessionStatus.WAITING:
                session.last_activity = self.clock()
                self._transition(session, SessionStatus.WORKING, None, reason="permission resolved")

    def get_permission_prompt(self, session_id: str) -> Optional[PermissionPrompt]:
        return self.pending_permissions.get(session_id)

    def _drop_permission_prompt(self, session_id: str):
        if self.pending_permissions.pop(session_id, None) is not None:
            self.broadcaster.publish(make_message("permission_resolved", {"sessionId": session_id}))

    async def accept_bypass_warning(self, session_id: str) -> bool:
        """
        Select "accept" on the bypass-permissions warning, once per session.

        Returns:
            True if the keystroke was sent now
        """
        session = self.sessions.get(session_id)
        if not session or session_id in self.bypass_warning_handled:
            return False
        self.bypass_warning_handled.add(session_id)
        validate_tmux_session(session.tmux_session)
        logger.info(f"Auto-accepting bypass permissions warning for {session.name}")
        await self.tmux.send_keys(session.tmux_session, "2")
        return True

    def apply_token_count(self, session_id: str, tokens: int) -> None:
        session = self.sessions.get(session_id)
        if not session:
            return
        counter = self.token_counters.setdefault(session_id, SessionTokenCounter())
        if counter.observe(tokens, self.clock()):
            self.broadcaster.publish(make_message("tokens", {
                "sessionId": session_id,
                "session": session.tmux_session,
                "current": counter.last_seen,
                "cumulative": counter.cumulative,
            }))

    def token_totals(self) -> dict:
        return {
            session_id: counter.to_dict()
            for session_id, counter in self.token_counters.items()
        }
