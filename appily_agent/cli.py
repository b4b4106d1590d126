from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from appily_agent.agents.base import BACKENDS, resolve_backend
from appily_agent.config import REMOTE_LOG_DIR, read_prompt_file
from appily_agent.controller import launch_turn, read_agent_log, restore_project, stop_turn
from appily_agent.errors import SandboxSetupError
from appily_agent.models import DEFAULT_WORKING_DIRECTORY, TurnRequest
from appily_agent.sandbox import SandboxConfig, connect_sandbox
from appily_agent.session import render_history
from appily_agent.store import HISTORY_EVENT_TYPES, SupabaseStore


def open_store() -> SupabaseStore:
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        print(
            "error: SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set",
            file=sys.stderr,
        )
        sys.exit(1)
    return SupabaseStore(url, key)


async def launch_command(args: argparse.Namespace) -> int:
    user_prompt = args.prompt
    if user_prompt is None and args.prompt_file:
        user_prompt = Path(args.prompt_file).read_text()
    if not user_prompt:
        print("error: --prompt or --prompt-file is required", file=sys.stderr)
        return 1
    async with open_store() as store:
        session_id = args.session_id
        if args.resume and session_id is None:
            project = await store.get_project(args.project)
            session_id = project.session_id if project else None
            if session_id is None:
                print("no stored session, starting a new one")
        request = TurnRequest(
            provider=args.provider,
            project_id=args.project,
            user_id=args.user_id,
            working_directory=args.working_directory,
            session_id=session_id,
            system_prompt=read_prompt_file(args.system_prompt_file),
            user_prompt=user_prompt,
            sandbox_id=args.sandbox,
        )
        sandbox = await connect_sandbox(
            args.sandbox_provider, SandboxConfig(sandbox_id=args.sandbox),
        )
        try:
            handle = await launch_turn(sandbox, request, state=store)
        except SandboxSetupError as error:
            print(f"launch failed: {error}", file=sys.stderr)
            return 1
    print(handle.model_dump_json(indent=2))
    return 0


async def stop_command(args: argparse.Namespace) -> int:
    async with open_store() as store:
        pid = args.pid
        if pid is None:
            project = await store.get_project(args.project)
            pid = project.agent_pid if project else None
        if pid is None:
            print("no running agent recorded for this project")
            return 0
        sandbox = await connect_sandbox(
            args.sandbox_provider, SandboxConfig(sandbox_id=args.sandbox),
        )
        signalled = await stop_turn(sandbox, args.project, pid, state=store)
    return 0 if signalled else 2


async def history_command(args: argparse.Namespace) -> int:
    async with open_store() as store:
        events = await store.list_events(
            args.project, None if args.all else HISTORY_EVENT_TYPES,
        )
    if args.all:
        for event in events:
            print(f"{event.created_at.isoformat()} {event.event_type} {event.session_id}")
    else:
        print("\n\n".join(render_history(events)))
    return 0


async def logs_command(args: argparse.Namespace) -> int:
    spec = resolve_backend(args.provider)
    sandbox = await connect_sandbox(
        args.sandbox_provider, SandboxConfig(sandbox_id=args.sandbox),
    )
    print(await read_agent_log(
        sandbox, f"{REMOTE_LOG_DIR}/{spec.log_name}", lines=args.lines,
    ))
    return 0


async def restore_command(args: argparse.Namespace) -> int:
    r2_path = args.r2_path
    if r2_path is None:
        async with open_store() as store:
            r2_path = await store.snapshot_path(args.project, args.version)
    if r2_path is None:
        print("no snapshot recorded for this project", file=sys.stderr)
        return 1
    sandbox = await connect_sandbox(
        args.sandbox_provider, SandboxConfig(sandbox_id=args.sandbox),
    )
    result = await restore_project(sandbox, r2_path, target_dir=args.working_directory)
    print(result.model_dump_json(indent=2))
    return 0 if result.success else 1


def main() -> None:
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)
    else:
        load_dotenv()
    parser = argparse.ArgumentParser(prog="appily-agent")
    parser.add_argument("--sandbox-provider", default="e2b")
    subparsers = parser.add_subparsers(dest="command")

    launch_parser = subparsers.add_parser("launch", help="Start an agent turn")
    launch_parser.add_argument("--provider", choices=sorted(BACKENDS), default="claude")
    launch_parser.add_argument("--project", required=True)
    launch_parser.add_argument("--sandbox", required=True, help="Sandbox id")
    launch_parser.add_argument("--user-id", default="")
    launch_parser.add_argument("--prompt", default=None)
    launch_parser.add_argument("--prompt-file", default=None)
    launch_parser.add_argument("--system-prompt-file", default=None)
    launch_parser.add_argument("--working-directory", default=DEFAULT_WORKING_DIRECTORY)
    launch_parser.add_argument("--session-id", default=None)
    launch_parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume the session stored on the project row",
    )

    stop_parser = subparsers.add_parser("stop", help="Stop a running agent")
    stop_parser.add_argument("--project", required=True)
    stop_parser.add_argument("--sandbox", required=True)
    stop_parser.add_argument("--pid", type=int, default=None)

    history_parser = subparsers.add_parser("history", help="Show stored conversation")
    history_parser.add_argument("--project", required=True)
    history_parser.add_argument("--all", action="store_true", help="List every event")

    logs_parser = subparsers.add_parser("logs", help="Tail a driver log")
    logs_parser.add_argument("--provider", choices=sorted(BACKENDS), default="claude")
    logs_parser.add_argument("--sandbox", required=True)
    logs_parser.add_argument("--lines", type=int, default=50)

    restore_parser = subparsers.add_parser(
        "restore", help="Restore a source snapshot into a sandbox",
    )
    restore_parser.add_argument("--project", required=True)
    restore_parser.add_argument("--sandbox", required=True)
    restore_parser.add_argument("--version", type=int, default=None, help="Default: latest")
    restore_parser.add_argument("--r2-path", default=None, help="Skip the snapshot lookup")
    restore_parser.add_argument("--working-directory", default=DEFAULT_WORKING_DIRECTORY)

    args = parser.parse_args()
    commands = {
        "launch": launch_command,
        "stop": stop_command,
        "history": history_command,
        "logs": logs_command,
        "restore": restore_command,
    }
    if args.command is None:
        parser.print_help()
        sys.exit(1)
    sys.exit(asyncio.run(commands[args.command](args)))


if __name__ == "__main__":
    main()
