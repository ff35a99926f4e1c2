"""Working-tree status poller for session directories."""

import asyncio
import logging
import re
from typing import Callable, Optional

from .models import GitStatus, now_ms
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

_both_stat_re = re.compile(r"(\d+) insertion.*?(\d+) deletion", re.IGNORECASE)
_insert_re = re.compile(r"(\d+) insertion", re.IGNORECASE)
_delete_re = re.compile(r"(\d+) deletion", re.IGNORECASE)


def parse_shortstat(output: str) -> tuple[int, int]:
    """Parse `git diff --shortstat` into (lines added, lines removed)."""
    if not output:
        return 0, 0
    match = _both_stat_re.search(output)
    if match:
        return int(match.group(1)), int(match.group(2))
    added = _insert_re.search(output)
    removed = _delete_re.search(output)
    return (
        int(added.group(1)) if added else 0,
        int(removed.group(1)) if removed else 0,
    )


def parse_porcelain(output: str, status: GitStatus):
    """Count staged / unstaged / untracked entries from `git status --porcelain`."""
    for line in (output or "").split("\n"):
        if len(line) < 2:
            continue
        staged, unstaged = line[0], line[1]
        if staged == "?" and unstaged == "?":
            status.untracked += 1
            continue
        if staged == "A":
            status.staged["added"] += 1
        elif staged == "M":
            status.staged["modified"] += 1
        elif staged == "D":
            status.staged["deleted"] += 1
        if unstaged == "M":
            status.unstaged["modified"] += 1
        elif unstaged == "D":
            status.unstaged["deleted"] += 1


class GitStatusManager:
    """Polls git status for each tracked session and reports changes."""

    def __init__(
        self,
        tmux: TmuxController,
        config: Optional[dict] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.tmux = tmux
        self.config = config or {}
        git_config = self.config.get("git", {})
        self.poll_seconds = git_config.get("poll_seconds", 5)

        self.clock = clock or now_ms

        self._directories: dict[str, str] = {}
        self._cache: dict[str, GitStatus] = {}
        self._on_update: Optional[Callable[[str], None]] = None
        self._task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()

    def set_update_callback(self, callback: Callable[[str], None]):
        """Set the callback invoked with a session id when its status changes."""
        self._on_update = callback

    def track(self, session_id: str, directory: str):
        self._directories[session_id] = directory
        if self._task is None:
            return
        # Fetch right away instead of waiting for the next cycle
        task = asyncio.get_running_loop().create_task(self.refresh(session_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def untrack(self, session_id: str):
        self._directories.pop(session_id, None)
        self._cache.pop(session_id, None)

    def get_status(self, session_id: str) -> Optional[GitStatus]:
        return self._cache.get(session_id)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._poll_loop())
            logger.info("Started git status polling")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _poll_loop(self):
        while True:
            try:
                await self.poll_all()
            except Exception as e:
                logger.error(f"Git status poll failed: {e}")
            await asyncio.sleep(self.poll_seconds)

    async def poll_all(self):
        await asyncio.gather(
            *(self.refresh(session_id) for session_id in list(self._directories)),
            return_exceptions=True,
        )

    async def refresh(self, session_id: str) -> Optional[GitStatus]:
        """Re-read one session's status, notifying if it changed."""
        directory = self._directories.get(session_id)
        if not directory:
            return None

        status = await self.fetch_status(directory)

        # Untracked (or moved) while git was running
        if self._directories.get(session_id) != directory:
            return None

        old = self._cache.get(session_id)
        self._cache[session_id] = status
        if (old is None or old.signature() != status.signature()) and self._on_update:
            self._on_update(session_id)
        return status

    async def fetch_status(self, directory: str) -> GitStatus:
        """Run the git queries for one directory."""
        status = GitStatus(last_checked=self.clock())
        if await self.tmux.run_git(directory, "rev-parse", "--git-dir") is None:
            return status
        status.is_repo = True

        branch, porcelain, staged_diff, unstaged_diff, last_log = await asyncio.gather(
            self.tmux.run_git(directory, "rev-parse", "--abbrev-ref", "HEAD"),
            self.tmux.run_git(directory, "status", "--porcelain"),
            self.tmux.run_git(directory, "diff", "--cached", "--shortstat"),
            self.tmux.run_git(directory, "diff", "--shortstat"),
            self.tmux.run_git(directory, "log", "-1", "--format=%ct|||%s"),
        )
        status.branch = (branch or "").strip()

        # No upstream configured is common; counts stay 0
        ahead_behind = await self.tmux.run_git(
            directory, "rev-list", "--left-right", "--count", "@{upstream}...HEAD"
        )
        if ahead_behind:
            parts = ahead_behind.split()
            if len(parts) == 2 and parts[0].isdigit() and parts[1].isdigit():
                status.behind, status.ahead = int(parts[0]), int(parts[1])

        parse_porcelain(porcelain, status)
        staged_added, staged_removed = parse_shortstat(staged_diff)
        unstaged_added, unstaged_removed = parse_shortstat(unstaged_diff)
        status.lines_added = staged_added + unstaged_added
        status.lines_removed = staged_removed + unstaged_removed
        status.total_files = (
            sum(status.staged.values())
            + status.unstaged["modified"] + status.unstaged["deleted"]
            + status.untracked
        )

        if last_log and last_log.strip():
            timestamp, _, message = last_log.strip().partition("|||")
            status.last_commit_time = int(timestamp) if timestamp.isdigit() else None
            status.last_commit_message = message or None

        return status
