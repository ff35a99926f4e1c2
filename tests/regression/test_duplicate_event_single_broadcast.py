"""
Regression: one hook invocation arrives twice, once through POST /event
and once through the events.jsonl tailer. It must be broadcast and
applied only once.
"""

import json

from agentdeck.event_watcher import EventFileWatcher
from agentdeck.models import ClaudeEvent, SessionStatus

from conftest import drain, messages_of_type


def test_http_then_file_delivery(session_manager, add_session, subscriber, tmp_path):
    add_session(claude_session_id="claude-1")
    event = ClaudeEvent.from_hook_payload(
        {"hook_event_name": "PreToolUse", "session_id": "claude-1", "tool_name": "Bash", "tool_use_id": "t1"},
        timestamp=1000,
    )
    events_file = tmp_path / "events.jsonl"
    events_file.write_text("")
    watcher = EventFileWatcher(session_manager, str(events_file))

    session_manager.handle_event(ClaudeEvent.from_dict(event.to_dict()))
    with open(events_file, "a") as f:
        f.write(json.dumps(event.to_dict()) + "\n")
    assert watcher.poll_once() == 0

    messages = drain(subscriber)
    assert len(messages_of_type(messages, "event")) == 1
    assert len(messages_of_type(messages, "sessions")) == 1


def test_replayed_history_is_not_reapplied(session_manager, add_session, subscriber, tmp_path):
    session = add_session(claude_session_id="claude-1")
    submitted = {"id": "e-submit", "timestamp": 1, "type": "user_prompt_submit", "sessionId": "claude-1"}
    events_file = tmp_path / "events.jsonl"
    events_file.write_text(json.dumps(submitted) + "\n")

    EventFileWatcher(session_manager, str(events_file)).load_history()
    session_manager.handle_event(ClaudeEvent.from_dict(submitted))

    assert session.status == SessionStatus.IDLE
    assert drain(subscriber) == []
