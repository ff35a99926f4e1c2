"""Bounded, de-duplicated ledger of Claude lifecycle events."""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from typing import Iterable, Optional

from .models import ClaudeEvent, EventType

logger = logging.getLogger(__name__)


class EventLedger:
    """Keeps the most recent events and matches tool starts to tool ends."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max(1, max_events)
        self._events: deque[ClaudeEvent] = deque(maxlen=self.max_events)
        # Insertion-ordered so trimming keeps the newest ids
        self._seen_ids: OrderedDict[str, None] = OrderedDict()
        # toolUseId -> pre_tool_use event awaiting its post_tool_use
        self._pending_tool_uses: OrderedDict[str, ClaudeEvent] = OrderedDict()

    def __len__(self) -> int:
        return len(self._events)

    def ingest(self, event: ClaudeEvent) -> Optional[ClaudeEvent]:
        """
        Accept an event unless its id was already seen.

        Args:
            event: Incoming event

        Returns:
            The processed event (with duration resolved for tool ends),
            or None if the event is a duplicate
        """
        if event.id in self._seen_ids:
            logger.debug(f"Dropping duplicate event {event.id}")
            return None

        self._mark_seen(event.id)
        processed = self._match_tool_use(event)
        self._events.append(processed)
        return processed

    def load(self, events: Iterable[ClaudeEvent]) -> int:
        """
        Replay stored events at startup. Duplicates are skipped.

        Returns:
            Number of events accepted
        """
        loaded = 0
        for event in events:
            if self.ingest(event) is not None:
                loaded += 1
        return loaded

    def _mark_seen(self, event_id: str):
        self._seen_ids[event_id] = None
        if len(self._seen_ids) > self.max_events * 2:
            while len(self._seen_ids) > self.max_events:
                self._seen_ids.popitem(last=False)

    def _match_tool_use(self, event: ClaudeEvent) -> ClaudeEvent:
        if event.type == EventType.PRE_TOOL_USE.value and event.tool_use_id:
            self._pending_tool_uses[event.tool_use_id] = event
            if len(self._pending_tool_uses) > self.max_events:
                orphan_id, _ = self._pending_tool_uses.popitem(last=False)
                logger.debug(f"Evicted unmatched tool use {orphan_id}")
            return event

        if event.type == EventType.POST_TOOL_USE.value:
            pre = None
            if event.tool_use_id:
                pre = self._pending_tool_uses.pop(event.tool_use_id, None)
            if pre is None:
                # Orphaned completion, e.g. the server restarted mid-call
                return event.with_duration(None) if event.duration is not None else event
            return event.with_duration(event.timestamp - pre.timestamp)

        return event

    def recent(self, limit: int = 100) -> list[ClaudeEvent]:
        """Return up to `limit` most recent events, oldest first."""
        if limit <= 0:
            return []
        return list(self._events)[-limit:]

    def recent_for_sessions(self, session_ids: set[str], limit: int = 50) -> list[ClaudeEvent]:
        """Return the most recent events whose sessionId is in session_ids."""
        matching = [e for e in self._events if e.session_id in session_ids]
        if limit <= 0:
            return []
        return matching[-limit:]

    def tool_stats(self) -> dict:
        """Per-tool call counts and average durations over the ledger window."""
        counts: dict[str, int] = {}
        durations: dict[str, list[int]] = {}
        for event in self._events:
            if event.type != EventType.POST_TOOL_USE.value or not event.tool:
                continue
            counts[event.tool] = counts.get(event.tool, 0) + 1
            if event.duration is not None:
                durations.setdefault(event.tool, []).append(event.duration)

        return {
            "totalEvents": len(self._events),
            "toolCounts": counts,
            "avgDurations": {
                tool: round(sum(values) / len(values))
                for tool, values in durations.items()
            },
        }
