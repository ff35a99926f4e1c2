"""End-to-end lifecycle of one session driven by hook events and pollers."""

import pytest

from agentdeck.models import ClaudeEvent, SessionStatus
from agentdeck.output_monitor import OutputMonitor

from conftest import drain, messages_of_type


@pytest.mark.asyncio
async def test_create_events_and_working_timeout(session_manager, mock_tmux, project_dir, clock, subscriber):
    monitor = OutputMonitor(session_manager, mock_tmux, config={})

    session = await session_manager.create_session(cwd=str(project_dir))
    assert [s.status for s in session_manager.list_sessions()] == [SessionStatus.IDLE]
    session_manager.link_claude_session(session.id, "claude-abc")

    clock.advance(1000)
    session_manager.handle_event(ClaudeEvent(
        id="e1", timestamp=clock(), type="pre_tool_use", session_id="claude-abc",
        tool="Bash", tool_use_id="tu1", cwd=str(project_dir),
    ))
    assert (session.status, session.current_tool) == (SessionStatus.WORKING, "Bash")

    clock.advance(800)
    post = session_manager.handle_event(ClaudeEvent(
        id="e2", timestamp=clock(), type="post_tool_use", session_id="claude-abc",
        tool="Bash", tool_use_id="tu1", success=True,
    ))
    assert post.duration == 800
    assert (session.status, session.current_tool) == (SessionStatus.WORKING, None)

    clock.advance(500)
    session_manager.handle_event(ClaudeEvent(id="e3", timestamp=clock(), type="stop", session_id="claude-abc"))
    assert session.status == SessionStatus.IDLE

    # Missed stop: forced into working, then nothing happens for 130s
    session_manager.handle_event(ClaudeEvent(
        id="e4", timestamp=clock(), type="user_prompt_submit", session_id="claude-abc",
    ))
    assert session.status == SessionStatus.WORKING
    clock.advance(130_000)
    await monitor.sweep_working_once()
    assert session.status == SessionStatus.IDLE

    messages = drain(subscriber)
    statuses = [m["payload"][0]["status"] for m in messages_of_type(messages, "sessions")]
    assert statuses == ["idle", "idle", "working", "working", "idle", "working", "idle"]
    assert [m["payload"]["id"] for m in messages_of_type(messages, "event")] == ["e1", "e2", "e3", "e4"]


@pytest.mark.asyncio
async def test_permission_round_trip(session_manager, mock_tmux, add_session):
    monitor = OutputMonitor(session_manager, mock_tmux, config={})
    session = add_session(status=SessionStatus.WORKING)
    mock_tmux.capture_output.return_value = (
        "● Write(notes.md)\n\n Do you want to proceed?\n ❯ 1. Yes\n   2. No\n\n Esc to cancel\n"
    )

    await monitor.poll_permissions_once()
    assert session.status == SessionStatus.WAITING
    assert session_manager.get_permission_prompt(session.id).tool == "Write"

    await session_manager.respond_permission(session.id, "1")
    assert session.status == SessionStatus.WORKING

    mock_tmux.capture_output.return_value = "⏺ Wrote 3 lines to notes.md"
    await monitor.poll_permissions_once()
    assert session.status == SessionStatus.WORKING
    assert session_manager.get_permission_prompt(session.id) is None
