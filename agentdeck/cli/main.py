"""Main entry point for the agentdeck CLI."""

import argparse
import sys

from .client import AgentDeckClient
from . import commands


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentdeck",
        description="agentdeck - orchestrate Claude Code sessions running in tmux",
    )
    parser.add_argument("--api-url", help="Server URL (default: $AGENTDECK_API_URL or http://127.0.0.1:4003)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    serve_parser = subparsers.add_parser("serve", help="Run the agentdeck server")
    serve_parser.add_argument("--config", help="Path to config.yaml (default: $AGENTDECK_CONFIG or ./config.yaml)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    hook_parser = subparsers.add_parser("hook", help="Record a Claude Code hook event read from stdin")
    hook_parser.add_argument("--events-file", help="Events file (default: $AGENTDECK_EVENTS_FILE)")
    hook_parser.add_argument("--no-notify", action="store_true", help="Only append to the events file")

    subparsers.add_parser("list", help="List managed sessions")
    subparsers.add_parser("refresh", help="Force a health check and list sessions")

    create_parser = subparsers.add_parser("create", help="Start a new Claude session")
    create_parser.add_argument("--name", help="Display name")
    create_parser.add_argument("--cwd", help="Working directory (default: current directory)")
    create_parser.add_argument("--no-continue", action="store_true", help="Start a fresh conversation")
    create_parser.add_argument("--ask-permissions", action="store_true", help="Keep interactive permission prompts")
    create_parser.add_argument("--chrome", action="store_true", help="Enable browser integration")

    kill_parser = subparsers.add_parser("kill", help="Kill a session")
    kill_parser.add_argument("session", help="Session id, id prefix or name")

    rename_parser = subparsers.add_parser("rename", help="Rename a session")
    rename_parser.add_argument("session", help="Session id, id prefix or name")
    rename_parser.add_argument("name", help="New display name")

    prompt_parser = subparsers.add_parser("prompt", help="Send a prompt to a session")
    prompt_parser.add_argument("session", help="Session id, id prefix or name")
    prompt_parser.add_argument("text", nargs="+", help="Prompt text")

    cancel_parser = subparsers.add_parser("cancel", help="Send Ctrl+C to a session")
    cancel_parser.add_argument("session", help="Session id, id prefix or name")

    permit_parser = subparsers.add_parser("permit", help="Answer a permission prompt")
    permit_parser.add_argument("session", help="Session id, id prefix or name")
    permit_parser.add_argument("option", help="Option number to select")

    restart_parser = subparsers.add_parser("restart", help="Restart a session's Claude process")
    restart_parser.add_argument("session", help="Session id, id prefix or name")

    link_parser = subparsers.add_parser("link", help="Link a Claude conversation id to a session")
    link_parser.add_argument("session", help="Session id, id prefix or name")
    link_parser.add_argument("claude_session_id", help="Claude Code session id")

    output_parser = subparsers.add_parser("output", help="Show the tail of a session's pane")
    output_parser.add_argument("session", help="Session id, id prefix or name")
    output_parser.add_argument("-n", "--lines", type=int, default=50, help="Lines to capture")

    return parser


def main():
    """Main entry point for agentdeck CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "serve":
        from ..main import run
        run(args.config, debug=args.debug)
        sys.exit(0)

    client = AgentDeckClient(args.api_url)

    if args.command == "hook":
        sys.exit(commands.cmd_hook(client, args.events_file, notify=not args.no_notify))
    elif args.command == "list":
        sys.exit(commands.cmd_list(client))
    elif args.command == "refresh":
        sys.exit(commands.cmd_refresh(client))
    elif args.command == "create":
        sys.exit(commands.cmd_create(
            client,
            name=args.name,
            cwd=args.cwd,
            continue_conversation=not args.no_continue,
            skip_permissions=not args.ask_permissions,
            chrome=args.chrome,
        ))
    elif args.command == "kill":
        sys.exit(commands.cmd_kill(client, args.session))
    elif args.command == "rename":
        sys.exit(commands.cmd_rename(client, args.session, args.name))
    elif args.command == "prompt":
        sys.exit(commands.cmd_prompt(client, args.session, " ".join(args.text)))
    elif args.command == "cancel":
        sys.exit(commands.cmd_cancel(client, args.session))
    elif args.command == "permit":
        sys.exit(commands.cmd_permit(client, args.session, args.option))
    elif args.command == "restart":
        sys.exit(commands.cmd_restart(client, args.session))
    elif args.command == "link":
        sys.exit(commands.cmd_link(client, args.session, args.claude_session_id))
    elif args.command == "output":
        sys.exit(commands.cmd_output(client, args.session, args.lines))
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
