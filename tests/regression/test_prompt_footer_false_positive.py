"""
Regression: Claude quoting "Do you want to proceed?" in its own answer
flipped the session to waiting with a phantom permission prompt.
"""

import pytest

from agentdeck.models import SessionStatus
from agentdeck.output_monitor import OutputMonitor

PROSE_PANE = """\
⏺ The installer asks "Do you want to proceed?" and offers:
  1. Yes
  2. No
  Pick 1 to continue the install.

> \
"""


@pytest.mark.asyncio
async def test_quoted_prompt_text_is_not_a_permission_prompt(session_manager, mock_tmux, add_session):
    session = add_session(status=SessionStatus.WORKING)
    mock_tmux.capture_output.return_value = PROSE_PANE

    await OutputMonitor(session_manager, mock_tmux, config={}).poll_permissions_once()

    assert session.status == SessionStatus.WORKING
    assert session_manager.get_permission_prompt(session.id) is None
