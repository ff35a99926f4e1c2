"""Command implementations for the agentdeck CLI."""

import json
import os
import sys
from typing import Optional, TextIO

from .client import AgentDeckClient
from ..event_watcher import append_event
from ..models import ClaudeEvent

DEFAULT_EVENTS_FILE = "~/.agentdeck/data/events.jsonl"


def format_session_line(session: dict) -> str:
    """One-line summary of a session dict from the API."""
    line = f"{session['name']} ({session['id'][:8]}) | {session['status']}"
    if session.get("currentTool"):
        line += f" | {session['currentTool']}"
    tokens = session.get("tokens")
    if tokens:
        line += f" | {tokens['cumulative']:,} tokens"
    line += f" | {session.get('cwd', '')}"
    return line


def find_session(sessions: list, identifier: str) -> Optional[dict]:
    """
    Find a session by full id, exact name, or unique id prefix.

    Returns:
        Session dict, or None if not found or ambiguous
    """
    for session in sessions:
        if session["id"] == identifier or session["name"] == identifier:
            return session
    matches = [s for s in sessions if s["id"].startswith(identifier)]
    if len(matches) == 1:
        return matches[0]
    return None


def _resolve_or_report(client: AgentDeckClient, identifier: str) -> Optional[dict]:
    sessions = client.list_sessions()
    if sessions is None:
        print("Error: agentdeck server unavailable", file=sys.stderr)
        return None
    session = find_session(sessions, identifier)
    if session is None:
        print(f"Error: Session '{identifier}' not found", file=sys.stderr)
    return session


def _report_failure(client: AgentDeckClient, action: str) -> int:
    print(f"Error: Failed to {action}: {client.last_error}", file=sys.stderr)
    return 1


def cmd_list(client: AgentDeckClient) -> int:
    """
    List all managed sessions.

    Exit codes:
        0: Sessions found
        1: No sessions
        2: Server unavailable
    """
    sessions = client.list_sessions()
    if sessions is None:
        print("Error: agentdeck server unavailable", file=sys.stderr)
        return 2
    if not sessions:
        print("No sessions")
        return 1
    for session in sessions:
        print(format_session_line(session))
    return 0


def cmd_create(
    client: AgentDeckClient,
    name: Optional[str],
    cwd: Optional[str],
    continue_conversation: bool,
    skip_permissions: bool,
    chrome: bool,
) -> int:
    flags = {
        "continue": continue_conversation,
        "skipPermissions": skip_permissions,
        "chrome": chrome,
    }
    session = client.create_session(name, os.path.abspath(os.path.expanduser(cwd or ".")), flags)
    if session is None:
        return _report_failure(client, "create session")
    print(f"Created {session['name']} ({session['id'][:8]}) in tmux session {session['tmuxSession']}")
    return 0


def cmd_kill(client: AgentDeckClient, identifier: str) -> int:
    session = _resolve_or_report(client, identifier)
    if session is None:
        return 1
    if not client.delete_session(session["id"]):
        return _report_failure(client, "kill session")
    print(f"Killed {session['name']} ({session['id'][:8]})")
    return 0


def cmd_rename(client: AgentDeckClient, identifier: str, name: str) -> int:
    session = _resolve_or_report(client, identifier)
    if session is None:
        return 1
    if not client.rename_session(session["id"], name):
        return _report_failure(client, "rename session")
    print(f"Renamed {session['id'][:8]} to {name}")
    return 0


def cmd_prompt(client: AgentDeckClient, identifier: str, text: str) -> int:
    session = _resolve_or_report(client, identifier)
    if session is None:
        return 1
    if not client.send_prompt(session["id"], text):
        return _report_failure(client, "send prompt")
    print(f"Sent to {session['name']}")
    return 0


def cmd_cancel(client: AgentDeckClient, identifier: str) -> int:
    session = _resolve_or_report(client, identifier)
    if session is None:
        return 1
    if not client.cancel(session["id"]):
        return _report_failure(client, "cancel")
    print(f"Sent Ctrl+C to {session['name']}")
    return 0


def cmd_permit(client: AgentDeckClient, identifier: str, option: str) -> int:
    session = _resolve_or_report(client, identifier)
    if session is None:
        return 1
    if not client.respond_permission(session["id"], option):
        return _report_failure(client, "send permission response")
    print(f"Selected option {option} in {session['name']}")
    return 0


def cmd_restart(client: AgentDeckClient, identifier: str) -> int:
    session = _resolve_or_report(client, identifier)
    if session is None:
        return 1
    restarted = client.restart(session["id"])
    if restarted is None:
        return _report_failure(client, "restart session")
    print(f"Restarted {restarted['name']} ({restarted['id'][:8]})")
    return 0


def cmd_link(client: AgentDeckClient, identifier: str, claude_session_id: str) -> int:
    session = _resolve_or_report(client, identifier)
    if session is None:
        return 1
    if not client.link(session["id"], claude_session_id):
        return _report_failure(client, "link session")
    print(f"Linked {claude_session_id[:8]} to {session['name']}")
    return 0


def cmd_refresh(client: AgentDeckClient) -> int:
    sessions = client.refresh()
    if sessions is None:
        print("Error: agentdeck server unavailable", file=sys.stderr)
        return 2
    for session in sessions:
        print(format_session_line(session))
    return 0


def cmd_output(client: AgentDeckClient, identifier: str, lines: int) -> int:
    session = _resolve_or_report(client, identifier)
    if session is None:
        return 1
    output = client.get_output(session["id"], lines)
    if output is None:
        return _report_failure(client, "capture output")
    print(output.rstrip("\n"))
    return 0


def cmd_hook(
    client: AgentDeckClient,
    events_file: Optional[str] = None,
    notify: bool = True,
    stdin: Optional[TextIO] = None,
) -> int:
    """
    Record a Claude Code hook invocation.

    Reads the hook JSON from stdin, appends the converted event to the
    events file and pushes it to the server if one is running. Never
    fails because the server is down.
    """
    stdin = stdin or sys.stdin
    try:
        payload = json.loads(stdin.read() or "{}")
        event = ClaudeEvent.from_hook_payload(payload)
    except ValueError as e:
        print(f"agentdeck hook: invalid hook payload: {e}", file=sys.stderr)
        return 1

    events_file = events_file or os.environ.get("AGENTDECK_EVENTS_FILE", DEFAULT_EVENTS_FILE)
    try:
        append_event(events_file, event)
    except OSError as e:
        print(f"agentdeck hook: failed to write {events_file}: {e}", file=sys.stderr)

    if notify:
        client.post_event(event.to_dict())
    return 0
