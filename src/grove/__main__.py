"""Grove CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import re
import sys
import uuid
from pathlib import Path

from grove.models import DispatchTrigger, MentionKind, Persona, Project, Ticket
from grove.roles import Role, parse_role

logger = logging.getLogger(__name__)


# ── Default template for `grove init` ────────────────────────────────────────

_DEFAULT_CONFIG = """\
# .grove/config.yaml — Grove configuration for {project_name}

paths:
  data_dir: .grove-data

cooldown:
  mention_window: 30
  auto_window: 300

timeouts:
  research: 300
  planning: 300
  implementation: 600
  conversational: 300

scheduler:
  interval: 900
  max_concurrent: 2
  per_phase_limit: 2
  activity_quiet_period: 1800
  research_version_cap: 3

supervisor:
  cli_binary: claude
  model: sonnet

conversation:
  api_key_env: ANTHROPIC_API_KEY
  max_turns: 40

runtime:
  strategy: cli
"""


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "project"


def _new_id() -> str:
    return uuid.uuid4().hex[:8]


# ── Commands ─────────────────────────────────────────────────────────────────


async def _seed_project(repo_root: Path, project_name: str) -> Project:
    from grove.app import GroveApp

    grove = GroveApp(repo_root / ".grove")
    await grove.start()
    try:
        project = await grove.store.create_project(
            Project(id=_new_id(), name=project_name, slug=_slugify(project_name), root=str(repo_root))
        )
        for role in Role:
            await grove.store.create_persona(
                Persona(id=_new_id(), name=role.spec.label, role=role, project_id=project.id)
            )
        return project
    finally:
        await grove.stop()


def _init_project(repo_root: Path) -> None:
    """Scaffold a .grove/ directory and register the repository as a project."""
    grove_dir = repo_root / ".grove"
    if grove_dir.exists():
        print(f"Error: {grove_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    project_name = repo_root.resolve().name
    grove_dir.mkdir(parents=True)
    (grove_dir / "config.yaml").write_text(_DEFAULT_CONFIG.format(project_name=project_name))

    project = asyncio.run(_seed_project(repo_root.resolve(), project_name))

    print(f"Initialized Grove in {grove_dir}")
    print(f"  Project: {project.name} ({project.id})")
    print(f"  Personas: {', '.join(r.spec.label for r in Role)}")
    print()
    print("Next steps:")
    print("  1. Review .grove/config.yaml")
    print("  2. Add a ticket: grove ticket 'Title' --description '...'")
    print("  3. Start the server: grove serve")


async def _heartbeat(grove_dir: Path, limit: int | None, once: bool) -> int:
    from grove.app import GroveApp

    grove = GroveApp(grove_dir)
    await grove.start()
    try:
        while True:
            report = await grove.scheduler.sweep(limit=limit)
            if report.paused:
                print("Dispatching is paused.")
            for p in report.passes:
                print(f"{p.phase.value}: {len(p.completed)}/{len(p.selected)} completed", end="")
                if p.skipped:
                    reasons = ", ".join(f"{ticket_id}={s.reason.value}" for ticket_id, s in p.skipped)
                    print(f", skipped {reasons}", end="")
                if p.errors:
                    print(f", errors {'; '.join(p.errors)}", end="")
                print()
            if once:
                return 0
            await asyncio.sleep(grove.config.scheduler.interval)
    finally:
        await grove.stop()


async def _dispatch(grove_dir: Path, args: argparse.Namespace) -> int:
    from grove.app import GroveApp
    from grove.errors import NotFound

    role = None
    if args.role:
        role = parse_role(args.role)
        if role is None:
            print(f"Error: unknown role {args.role!r}", file=sys.stderr)
            return 1

    trigger = DispatchTrigger(
        kind=MentionKind.URGENT if args.urgent else MentionKind.HUMAN,
        persona_id=args.persona,
        mention=args.mention,
        role=role,
        message=args.message,
        broadcast=args.broadcast,
    )

    grove = GroveApp(grove_dir)
    await grove.start()
    try:
        outcome, results = await grove.router.dispatch_and_wait(args.ticket_id, trigger)
    except NotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await grove.stop()

    for agent in outcome.dispatched:
        print(f"dispatched {agent.persona_name} ({agent.role.value}) → {agent.session_dir}")
    for skip in outcome.skipped:
        print(f"skipped {skip.persona_id or '-'}: {skip.reason.value} {skip.detail}".rstrip())
    for result in results:
        print(f"{result.persona_id}: {result.status} {result.detail}".rstrip())
    return 0 if outcome.dispatched and all(r.ok for r in results) else 1


async def _add_ticket(grove_dir: Path, args: argparse.Namespace) -> int:
    from grove.app import GroveApp

    grove = GroveApp(grove_dir)
    await grove.start()
    try:
        projects = await grove.store.list_projects()
        if args.project:
            projects = [p for p in projects if args.project in (p.id, p.slug)]
        if not projects:
            print("Error: no matching project; run 'grove init' first", file=sys.stderr)
            return 1
        ticket = await grove.store.create_ticket(
            Ticket(
                id=_new_id(),
                project_id=projects[0].id,
                title=args.title,
                description=args.description,
                acceptance_criteria=args.acceptance,
                priority=args.priority,
            )
        )
    finally:
        await grove.stop()
    print(ticket.id)
    return 0


async def _approve(grove_dir: Path, ticket_id: str, stage: str, dispatch: bool) -> int:
    from grove.app import GroveApp

    grove = GroveApp(grove_dir)
    await grove.start()
    outcome = None
    try:
        if await grove.store.get_ticket(ticket_id) is None:
            print(f"Error: ticket {ticket_id} not found", file=sys.stderr)
            return 1
        if stage == "research":
            await grove.store.approve_research(ticket_id, actor_id="cli")
            ticket = await grove.store.get_ticket(ticket_id)
        else:
            ticket, outcome = await grove.approve_plan(ticket_id, actor_id="cli", dispatch=dispatch)
    finally:
        # Waits for the implementation run started by a plan approval.
        await grove.stop()
    print(f"{ticket_id}: {ticket.state.value} ({ticket.phase.value})")
    if outcome is not None:
        for agent in outcome.dispatched:
            print(f"dispatched {agent.persona_name} ({agent.role.value}) → {agent.session_dir}")
        for skip in outcome.skipped:
            print(f"skipped {skip.persona_id or '-'}: {skip.reason.value} {skip.detail}".rstrip())
    return 0


async def _unblock(grove_dir: Path, ticket_id: str) -> int:
    from grove.app import GroveApp
    from grove.errors import NotFound

    grove = GroveApp(grove_dir)
    await grove.start()
    try:
        await grove.unblock_ticket(ticket_id, actor_id="cli")
    except NotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await grove.stop()
    print(f"{ticket_id}: unblocked")
    return 0


async def _ship(grove_dir: Path, ticket_id: str) -> int:
    from grove.app import GroveApp
    from grove.errors import GroveError

    grove = GroveApp(grove_dir)
    await grove.start()
    try:
        result = await grove.ship_ticket(ticket_id, actor_id="cli")
    except GroveError as e:
        print(f"Error: {e}", file=sys.stderr)
        for line in getattr(e, "log", []):
            print(f"  {line}", file=sys.stderr)
        return 1
    finally:
        await grove.stop()
    print(json.dumps({"merge_commit": result.merge_commit, "recovered": result.recovered, "log": result.log}, indent=2))
    return 0


# ── Parser ───────────────────────────────────────────────────────────────────


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grove",
        description="Grove — multi-phase ticket dispatch for coding agents",
    )
    subparsers = parser.add_subparsers(dest="command")

    # grove init
    init_parser = subparsers.add_parser("init", help="Initialize Grove in a repository")
    _add_common(init_parser)

    # grove serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server and scheduler")
    _add_common(serve_parser)
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")

    # grove heartbeat
    hb_parser = subparsers.add_parser("heartbeat", help="Run scheduler sweeps in the foreground")
    _add_common(hb_parser)
    hb_parser.add_argument("--limit", type=int, default=None, help="Tickets per phase pass")
    hb_parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")

    # grove dispatch
    dispatch_parser = subparsers.add_parser("dispatch", help="Dispatch an agent to a ticket")
    _add_common(dispatch_parser)
    dispatch_parser.add_argument("ticket_id")
    dispatch_parser.add_argument("--persona", help="Persona id")
    dispatch_parser.add_argument("--mention", help="Persona name, as in an @mention")
    dispatch_parser.add_argument("--role", help="Role to route to")
    dispatch_parser.add_argument("--message", help="Comment the agent should respond to")
    dispatch_parser.add_argument("--broadcast", action="store_true", help="Dispatch every phase role")
    dispatch_parser.add_argument("--urgent", action="store_true", help="Bypass the cooldown")

    # grove ticket
    ticket_parser = subparsers.add_parser("ticket", help="Create a ticket")
    _add_common(ticket_parser)
    ticket_parser.add_argument("title")
    ticket_parser.add_argument("--description", default="")
    ticket_parser.add_argument("--acceptance", default="", help="Acceptance criteria")
    ticket_parser.add_argument("--priority", type=int, default=0)
    ticket_parser.add_argument("--project", help="Project id or slug (default: first project)")

    # grove approve
    approve_parser = subparsers.add_parser("approve", help="Approve a ticket's research or plan")
    _add_common(approve_parser)
    approve_parser.add_argument("ticket_id")
    approve_parser.add_argument("stage", choices=["research", "plan"])
    approve_parser.add_argument(
        "--no-dispatch", action="store_true", help="Do not start implementation after a plan approval"
    )

    # grove unblock
    unblock_parser = subparsers.add_parser("unblock", help="Return a blocked ticket to automatic dispatch")
    _add_common(unblock_parser)
    unblock_parser.add_argument("ticket_id")

    # grove ship
    ship_parser = subparsers.add_parser("ship", help="Merge a ticket's workspace and mark it shipped")
    _add_common(ship_parser)
    ship_parser.add_argument("ticket_id")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "init":
        _init_project(args.repo_root)
        return

    grove_dir = args.repo_root / ".grove"
    if not grove_dir.exists():
        print(f"Error: .grove/ directory not found at {grove_dir}", file=sys.stderr)
        print("Run 'grove init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)

    if args.command == "serve":
        import uvicorn

        from grove.server import create_app

        app = create_app(grove_dir)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    if args.command == "heartbeat":
        code = asyncio.run(_heartbeat(grove_dir, args.limit, args.once))
    elif args.command == "dispatch":
        code = asyncio.run(_dispatch(grove_dir, args))
    elif args.command == "ticket":
        code = asyncio.run(_add_ticket(grove_dir, args))
    elif args.command == "approve":
        code = asyncio.run(_approve(grove_dir, args.ticket_id, args.stage, not args.no_dispatch))
    elif args.command == "unblock":
        code = asyncio.run(_unblock(grove_dir, args.ticket_id))
    else:
        code = asyncio.run(_ship(grove_dir, args.ticket_id))
    sys.exit(code)


if __name__ == "__main__":
    main()
