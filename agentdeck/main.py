"""Main entry point for the agentdeck server."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .broadcaster import Broadcaster
from .event_watcher import EventFileWatcher
from .git_status import GitStatusManager
from .output_monitor import OutputMonitor
from .server import create_app
from .session_manager import SessionManager
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "~/.agentdeck/data/sessions.json"
DEFAULT_EVENTS_FILE = "~/.agentdeck/data/events.jsonl"


def load_config(config_path: Optional[str] = None) -> dict:
    """
    Load configuration from YAML file.

    The path defaults to $AGENTDECK_CONFIG, then config.yaml in the cwd.
    A missing file yields an empty config (all defaults).
    """
    config_path = config_path or os.environ.get("AGENTDECK_CONFIG", "config.yaml")
    path = Path(config_path).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def setup_logging(config: dict, debug: bool = False):
    level_name = "DEBUG" if debug else config.get("logging", {}).get("level", "INFO")
    logging.basicConfig(
        level=getattr(logging, str(level_name).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class AgentDeckApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        server_config = config.get("server", {})
        self.host = server_config.get("host", "127.0.0.1")
        self.port = server_config.get("port", 4003)

        paths = config.get("paths", {})
        self.events_file = paths.get("events_file", DEFAULT_EVENTS_FILE)

        self.tmux = TmuxController(config=config)
        self.broadcaster = Broadcaster(config=config)
        self.git_status = GitStatusManager(self.tmux, config=config)
        self.session_manager = SessionManager(
            tmux=self.tmux,
            broadcaster=self.broadcaster,
            state_file=paths.get("state_file", DEFAULT_STATE_FILE),
            git_status=self.git_status,
            config=config,
        )
        self.git_status.set_update_callback(self.session_manager.on_git_status_changed)

        self.output_monitor = OutputMonitor(self.session_manager, self.tmux, config=config)
        self.event_watcher = EventFileWatcher(self.session_manager, self.events_file, config=config)

        self.app = create_app(
            session_manager=self.session_manager,
            broadcaster=self.broadcaster,
            config=config,
        )

    async def start(self):
        """Start background components and serve until shutdown."""
        logger.info("Starting agentdeck...")

        self.event_watcher.load_history()
        await self.session_manager.refresh_health()

        self.event_watcher.start()
        self.git_status.start()
        self.output_monitor.start()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")
        logger.info(f"Events file: {Path(self.events_file).expanduser()}")

        await server.serve()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping agentdeck...")
        await self.output_monitor.stop_all()
        await self.event_watcher.stop()
        await self.git_status.stop()
        self.broadcaster.close_all()
        logger.info("Shutdown complete")


async def main(config_path: Optional[str] = None, debug: bool = False):
    """Main entry point."""
    config = load_config(config_path)
    setup_logging(config, debug=debug)

    app = AgentDeckApp(config)
    try:
        await app.start()
    finally:
        await app.stop()


def run(config_path: Optional[str] = None, debug: bool = False):
    """Entry point for the serve command."""
    asyncio.run(main(config_path, debug=debug))


if __name__ == "__main__":
    run()
