"""Data models for the agentdeck session engine."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, List
import time
import uuid


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SessionStatus(Enum):
    """Managed session status."""
    IDLE = "idle"        # Waiting for input
    WORKING = "working"  # Agent is running tools / thinking
    WAITING = "waiting"  # Blocked on a permission prompt
    OFFLINE = "offline"  # tmux session not found


class EventType(Enum):
    """Lifecycle event types emitted by Claude Code hooks."""
    PRE_TOOL_USE = "pre_tool_use"
    POST_TOOL_USE = "post_tool_use"
    STOP = "stop"
    SUBAGENT_STOP = "subagent_stop"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    USER_PROMPT_SUBMIT = "user_prompt_submit"
    NOTIFICATION = "notification"
    PRE_COMPACT = "pre_compact"


# Claude Code hook_event_name -> EventType
HOOK_EVENT_TYPES = {
    "PreToolUse": EventType.PRE_TOOL_USE,
    "PostToolUse": EventType.POST_TOOL_USE,
    "Stop": EventType.STOP,
    "SubagentStop": EventType.SUBAGENT_STOP,
    "SessionStart": EventType.SESSION_START,
    "SessionEnd": EventType.SESSION_END,
    "UserPromptSubmit": EventType.USER_PROMPT_SUBMIT,
    "Notification": EventType.NOTIFICATION,
    "PreCompact": EventType.PRE_COMPACT,
}


@dataclass
class LaunchFlags:
    """Flags used to build the claude launch command."""
    continue_conversation: bool = True
    skip_permissions: bool = True
    chrome: bool = False

    def to_dict(self) -> dict:
        return {
            "continue": self.continue_conversation,
            "skipPermissions": self.skip_permissions,
            "chrome": self.chrome,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "LaunchFlags":
        data = data or {}
        return cls(
            continue_conversation=data.get("continue", True),
            skip_permissions=data.get("skipPermissions", True),
            chrome=data.get("chrome", False),
        )


@dataclass
class ZonePosition:
    """Hex-grid placement of a session in the visual layer. Opaque to the engine."""
    q: int
    r: int

    def to_dict(self) -> dict:
        return {"q": self.q, "r": self.r}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ZonePosition"]:
        if not data:
            return None
        return cls(q=int(data["q"]), r=int(data["r"]))


@dataclass
class GitStatus:
    """Working tree status for a session directory."""
    is_repo: bool = False
    branch: str = ""
    ahead: int = 0
    behind: int = 0
    staged: dict = field(default_factory=lambda: {"added": 0, "modified": 0, "deleted": 0})
    unstaged: dict = field(default_factory=lambda: {"added": 0, "modified": 0, "deleted": 0})
    untracked: int = 0
    total_files: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    last_commit_time: Optional[int] = None
    last_commit_message: Optional[str] = None
    last_checked: int = 0

    def signature(self) -> tuple:
        """Everything except last_checked, for change detection."""
        return (
            self.is_repo, self.branch, self.ahead, self.behind,
            tuple(sorted(self.staged.items())), tuple(sorted(self.unstaged.items())),
            self.untracked, self.total_files, self.lines_added, self.lines_removed,
            self.last_commit_time, self.last_commit_message,
        )

    def to_dict(self) -> dict:
        return {
            "isRepo": self.is_repo,
            "branch": self.branch,
            "ahead": self.ahead,
            "behind": self.behind,
            "staged": dict(self.staged),
            "unstaged": dict(self.unstaged),
            "untracked": self.untracked,
            "totalFiles": self.total_files,
            "linesAdded": self.lines_added,
            "linesRemoved": self.lines_removed,
            "lastCommitTime": self.last_commit_time,
            "lastCommitMessage": self.last_commit_message,
            "lastChecked": self.last_checked,
        }


@dataclass
class ManagedSession:
    """One managed Claude instance and the tmux session hosting it."""
    id: str
    name: str
    tmux_session: str
    cwd: str
    status: SessionStatus = SessionStatus.IDLE
    current_tool: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    last_activity: int = field(default_factory=now_ms)
    claude_session_id: Optional[str] = None
    zone_position: Optional[ZonePosition] = None
    flags: LaunchFlags = field(default_factory=LaunchFlags)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "tmuxSession": self.tmux_session,
            "status": self.status.value,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
            "cwd": self.cwd,
            "flags": self.flags.to_dict(),
        }
        if self.current_tool:
            data["currentTool"] = self.current_tool
        if self.claude_session_id:
            data["claudeSessionId"] = self.claude_session_id
        if self.zone_position:
            data["zonePosition"] = self.zone_position.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ManagedSession":
        return cls(
            id=data["id"],
            name=data["name"],
            tmux_session=data["tmuxSession"],
            cwd=data.get("cwd", ""),
            status=SessionStatus(data.get("status", "offline")),
            current_tool=data.get("currentTool"),
            created_at=data.get("createdAt", 0),
            last_activity=data.get("lastActivity", 0),
            claude_session_id=data.get("claudeSessionId"),
            zone_position=ZonePosition.from_dict(data.get("zonePosition")),
            flags=LaunchFlags.from_dict(data.get("flags")),
        )


# Wire keys mapped onto ClaudeEvent attributes; anything else lands in `extra`
_EVENT_FIELDS = {
    "id": "id",
    "timestamp": "timestamp",
    "type": "type",
    "sessionId": "session_id",
    "cwd": "cwd",
    "tool": "tool",
    "toolInput": "tool_input",
    "toolResponse": "tool_response",
    "toolUseId": "tool_use_id",
    "success": "success",
    "duration": "duration",
}


@dataclass(frozen=True)
class ClaudeEvent:
    """A lifecycle event reported by a Claude Code hook."""
    id: str
    timestamp: int
    type: str
    session_id: str
    cwd: str = ""
    tool: Optional[str] = None
    tool_input: Optional[Any] = None
    tool_response: Optional[Any] = None
    tool_use_id: Optional[str] = None
    success: Optional[bool] = None
    duration: Optional[int] = None
    extra: dict = field(default_factory=dict)

    def with_duration(self, duration: int) -> "ClaudeEvent":
        return replace(self, duration=duration)

    def to_dict(self) -> dict:
        data = dict(self.extra)
        for wire_key, attr in _EVENT_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                data[wire_key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ClaudeEvent":
        """
        Build an event from its wire representation.

        Raises:
            ValueError: if a required field is missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError("Event must be a JSON object")
        for required in ("id", "type", "sessionId", "timestamp"):
            if data.get(required) in (None, ""):
                raise ValueError(f"Event missing required field: {required}")
        try:
            timestamp = int(data["timestamp"])
        except (TypeError, ValueError):
            raise ValueError(f"Invalid event timestamp: {data['timestamp']!r}")

        kwargs = {}
        extra = {}
        for key, value in data.items():
            attr = _EVENT_FIELDS.get(key)
            if attr is None:
                extra[key] = value
            elif attr not in ("timestamp", "duration"):
                kwargs[attr] = value
        kwargs["timestamp"] = timestamp
        kwargs["id"] = str(kwargs["id"])
        kwargs["session_id"] = str(kwargs["session_id"])
        kwargs["cwd"] = kwargs.get("cwd") or ""
        if data.get("duration") is not None:
            kwargs["duration"] = int(data["duration"])
        return cls(extra=extra, **kwargs)

    @classmethod
    def from_hook_payload(cls, payload: dict, timestamp: Optional[int] = None) -> "ClaudeEvent":
        """
        Convert a raw Claude Code hook payload (stdin of a hook command).

        Args:
            payload: Hook JSON with hook_event_name, session_id, tool_name, ...
            timestamp: Event time in epoch ms (defaults to now)

        Returns:
            ClaudeEvent with a generated id
        """
        if not isinstance(payload, dict):
            raise ValueError("Hook payload must be a JSON object")
        ts = timestamp if timestamp is not None else now_ms()
        session_id = payload.get("session_id") or "unknown"
        hook_name = payload.get("hook_event_name", "")
        event_type = HOOK_EVENT_TYPES.get(hook_name)
        type_value = event_type.value if event_type else "unknown"

        extra = {}
        tool = tool_input = tool_response = tool_use_id = success = None
        if event_type in (EventType.PRE_TOOL_USE, EventType.POST_TOOL_USE):
            tool = payload.get("tool_name") or "unknown"
            tool_input = payload.get("tool_input") or {}
            tool_use_id = payload.get("tool_use_id") or None
            if event_type == EventType.POST_TOOL_USE:
                tool_response = payload.get("tool_response") or {}
                success = True
                if isinstance(tool_response, dict) and tool_response.get("success") is False:
                    success = False
        elif event_type in (EventType.STOP, EventType.SUBAGENT_STOP):
            extra["stopHookActive"] = bool(payload.get("stop_hook_active", False))
        elif event_type == EventType.SESSION_START:
            extra["source"] = payload.get("source", "startup")
        elif event_type == EventType.SESSION_END:
            extra["reason"] = payload.get("reason", "other")
        elif event_type == EventType.USER_PROMPT_SUBMIT:
            extra["prompt"] = payload.get("prompt", "")
        elif event_type == EventType.NOTIFICATION:
            extra["message"] = payload.get("message", "")
            extra["notificationType"] = payload.get("notification_type", "unknown")
        elif event_type == EventType.PRE_COMPACT:
            extra["trigger"] = payload.get("trigger", "manual")
            extra["customInstructions"] = payload.get("custom_instructions", "")

        return cls(
            id=f"{session_id}-{ts}-{uuid.uuid4().hex[:8]}",
            timestamp=ts,
            type=type_value,
            session_id=session_id,
            cwd=payload.get("cwd") or "",
            tool=tool,
            tool_input=tool_input,
            tool_response=tool_response,
            tool_use_id=tool_use_id,
            success=success,
            extra=extra,
        )


@dataclass
class PermissionOption:
    """One numbered choice in a permission prompt."""
    number: str
    label: str

    def to_dict(self) -> dict:
        return {"number": self.number, "label": self.label}


@dataclass
class PermissionPrompt:
    """A permission prompt currently pending in a session's pane."""
    tool: str
    context: str
    options: List[PermissionOption]
    detected_at: int = field(default_factory=now_ms)

    def to_payload(self, session_id: str) -> dict:
        return {
            "sessionId": session_id,
            "tool": self.tool,
            "context": self.context,
            "options": [o.to_dict() for o in self.options],
            "detectedAt": self.detected_at,
        }


@dataclass
class SessionTokenCounter:
    """Token usage observed in a session's pane."""
    last_seen: int = 0
    cumulative: int = 0
    last_update: int = 0

    def observe(self, tokens: int, now: int) -> bool:
        """
        Fold a newly observed token count into the counter.

        A value above last_seen adds the difference to cumulative. A lower
        value means the conversation was cleared and only resets last_seen.

        Returns:
            True if cumulative grew
        """
        if tokens > self.last_seen:
            self.cumulative += tokens - self.last_seen
            self.last_seen = tokens
            self.last_update = now
            return True
        if 0 < tokens < self.last_seen:
            self.last_seen = tokens
            self.last_update = now
        return False

    def to_dict(self) -> dict:
        return {"current": self.last_seen, "cumulative": self.cumulative}
