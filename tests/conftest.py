"""Shared pytest fixtures for agentdeck tests."""

from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock, AsyncMock

import pytest
from fastapi.testclient import TestClient

from agentdeck.broadcaster import Broadcaster
from agentdeck.models import ManagedSession, SessionStatus
from agentdeck.server import create_app
from agentdeck.session_manager import SessionManager
from agentdeck.tmux_controller import TmuxController

START_MS = 1_700_000_000_000


class FakeClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def drain(subscription) -> list:
    """Pop every message currently queued for a subscription."""
    messages = []
    while not subscription.queue.empty():
        message = subscription.queue.get_nowait()
        if message is not None:
            messages.append(message)
    return messages


def messages_of_type(messages: list, msg_type: str) -> list:
    return [m for m in messages if m["type"] == msg_type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without actual tmux sessions.

    Returns:
        MagicMock whose command methods are AsyncMocks that succeed
    """
    mock = MagicMock(spec=TmuxController)
    mock.session_exists = AsyncMock(return_value=True)
    mock.spawn_session = AsyncMock(return_value=None)
    mock.kill_session = AsyncMock(return_value=None)
    mock.send_keys = AsyncMock(return_value=None)
    mock.load_and_paste_buffer = AsyncMock(return_value=None)
    mock.capture_output = AsyncMock(return_value="")
    mock.list_live_session_names = AsyncMock(return_value=[])
    mock.run_git = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def temp_state_file(tmp_path: Path) -> Path:
    """Path for the session registry; the file does not exist yet."""
    return tmp_path / "data" / "sessions.json"


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "proj"
    path.mkdir()
    return path


@pytest.fixture
def broadcaster() -> Broadcaster:
    return Broadcaster()


@pytest.fixture
def subscriber(broadcaster):
    """A subscription that records everything the engine publishes."""
    return broadcaster.subscribe()


@pytest.fixture
def session_manager(mock_tmux, broadcaster, temp_state_file, clock) -> SessionManager:
    """SessionManager wired to the mocked tmux gateway and a fake clock."""
    return SessionManager(
        tmux=mock_tmux,
        broadcaster=broadcaster,
        state_file=str(temp_state_file),
        clock=clock,
    )


@pytest.fixture
def add_session(session_manager, clock):
    """Register a session directly, bypassing tmux."""

    def _add(
        session_id: str = "sess-0001-aaaa",
        status: SessionStatus = SessionStatus.IDLE,
        claude_session_id: str = None,
        tmux_session: str = None,
        cwd: str = "/tmp",
    ) -> ManagedSession:
        session = ManagedSession(
            id=session_id,
            name=f"Claude {len(session_manager.sessions) + 1}",
            tmux_session=tmux_session or f"agentdeck-{session_id[:8]}",
            cwd=cwd,
            status=status,
            created_at=clock(),
            last_activity=clock(),
        )
        session_manager.sessions[session_id] = session
        if claude_session_id:
            session_manager.claude_to_managed[claude_session_id] = session_id
            session.claude_session_id = claude_session_id
        return session

    return _add


@pytest.fixture
def test_client(session_manager, broadcaster) -> Generator[TestClient, None, None]:
    """
    Create a FastAPI TestClient backed by the real manager and mocked tmux.

    Entered as a context manager so HTTP requests and WebSocket sessions
    share one event loop, like they do under uvicorn.
    """
    app = create_app(session_manager=session_manager, broadcaster=broadcaster, config={})
    with TestClient(app) as client:
        yield client
