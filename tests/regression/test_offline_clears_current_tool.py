"""
Regression: a session that went offline mid-tool kept reporting
currentTool, so the UI showed an offline session still running Bash.
"""

import pytest

from agentdeck.models import SessionStatus
from agentdeck.session_manager import SessionManager


def test_liveness_offline_clears_tool(session_manager, add_session):
    session = add_session(status=SessionStatus.WAITING)
    session.current_tool = "Edit"

    session_manager.apply_liveness(set())

    assert session.status == SessionStatus.OFFLINE
    assert session.current_tool is None
    assert "currentTool" not in session_manager.session_snapshot(session)


def test_transition_to_offline_ignores_requested_tool(session_manager, add_session):
    session = add_session(status=SessionStatus.WORKING)

    session_manager._transition(session, SessionStatus.OFFLINE, "Bash")

    assert session.current_tool is None


@pytest.mark.asyncio
async def test_restored_snapshot_has_no_tool(session_manager, mock_tmux, broadcaster, temp_state_file, add_session):
    session = add_session(status=SessionStatus.WORKING, claude_session_id="claude-1")
    session.current_tool = "Bash"
    session_manager._save_state()

    restored = SessionManager(tmux=mock_tmux, broadcaster=broadcaster, state_file=str(temp_state_file))
    mock_tmux.list_live_session_names.return_value = [session.tmux_session]
    await restored.refresh_health()

    copy = restored.get_session(session.id)
    assert copy.status == SessionStatus.IDLE
    assert copy.current_tool is None
