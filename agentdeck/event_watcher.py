"""Tails the hook events file (events.jsonl) into the session manager."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from .models import ClaudeEvent

logger = logging.getLogger(__name__)


def parse_event_line(line: str) -> Optional[ClaudeEvent]:
    """Parse one JSONL line, returning None for blank or malformed lines."""
    line = line.strip()
    if not line:
        return None
    try:
        return ClaudeEvent.from_dict(json.loads(line))
    except (json.JSONDecodeError, ValueError, TypeError) as e:
        logger.warning(f"Skipping malformed event line: {e}")
        return None


def append_event(events_file: str, event: ClaudeEvent):
    """Append an event to the events file as one JSON line."""
    path = Path(events_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as f:
        f.write(json.dumps(event.to_dict()) + "\n")


class EventFileWatcher:
    """Reads events appended to events.jsonl by the hook command."""

    def __init__(
        self,
        session_manager,
        events_file: str,
        config: Optional[dict] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_manager = session_manager
        self.events_file = Path(events_file).expanduser()
        self.config = config or {}
        self.poll_seconds = self.config.get("monitor", {}).get("events_file_poll_seconds", 0.25)
        self._sleep = sleep
        self._position = 0
        self._partial = b""
        self._task: Optional[asyncio.Task] = None

    def load_history(self) -> int:
        """
        Load existing events into the ledger without broadcasting them.

        Returns:
            Number of events accepted
        """
        if not self.events_file.exists():
            return 0
        try:
            with open(self.events_file, "rb") as f:
                content = f.read()
        except OSError as e:
            logger.error(f"Failed to read {self.events_file}: {e}")
            return 0
        self._position = len(content)

        lines = content.split(b"\n")
        self._partial = lines.pop()

        events: List[ClaudeEvent] = []
        for line in lines:
            event = parse_event_line(line.decode("utf-8", errors="replace"))
            if event:
                events.append(event)
        return self.session_manager.load_event_history(events)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._watch_loop())
            logger.info(f"Watching {self.events_file}")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _watch_loop(self):
        while True:
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Event file poll failed: {e}")
            await self._sleep(self.poll_seconds)

    def poll_once(self) -> int:
        """
        Ingest complete lines appended since the last read.

        Returns:
            Number of new events accepted
        """
        if not self.events_file.exists():
            return 0

        current_size = self.events_file.stat().st_size
        if current_size < self._position:
            logger.info(f"{self.events_file} was truncated, reading from start")
            self._position = 0
            self._partial = b""
        if current_size == self._position:
            return 0

        with open(self.events_file, "rb") as f:
            f.seek(self._position)
            new_content = f.read()
        self._position += len(new_content)

        # Keep an unterminated last line until the writer finishes it
        lines = (self._partial + new_content).split(b"\n")
        self._partial = lines.pop()

        accepted = 0
        for line in lines:
            event = parse_event_line(line.decode("utf-8", errors="replace"))
            if event and self.session_manager.handle_event(event) is not None:
                accepted += 1
        return accepted
