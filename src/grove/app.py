"""Grove application — wires configuration into running components.

Startup sequence:
1. Load .grove/ config
2. Initialize the record store
3. Build the execution strategy (CLI supervisor or conversation runtime)
4. Start the completion worker
5. Start the phase scheduler (serve only)

Shutdown runs in reverse: scheduler, in-flight jobs, completion worker,
model client, store.
"""

from __future__ import annotations

import logging
from pathlib import Path

from grove.completion import CompletionHandler
from grove.config import GroveConfig, load_config
from grove.conversation import ConversationRuntime
from grove.cooldown import CooldownTracker
from grove.credits import PauseManager
from grove.errors import NotFound
from grove.model_client import ModelClient
from grove.models import CommentKind, DispatchOutcome, DispatchTrigger, MentionKind, Phase, Ticket, TicketState
from grove.roles import Role
from grove.router import DispatchRouter
from grove.runner import AgentRunner, CliRunner, ConversationRunner
from grove.scheduler import PhaseScheduler
from grove.session import ConversationStore
from grove.store import RecordStore
from grove.supervisor import ProcessSupervisor
from grove.workspace import ShipResult, WorkspaceManager

logger = logging.getLogger(__name__)


class GroveApp:
    """Encapsulates all components and their lifecycle."""

    def __init__(self, grove_dir: Path | None = None, config: GroveConfig | None = None):
        self.grove_dir = grove_dir or Path.cwd() / ".grove"
        self.config = config

        # Components (initialized in start())
        self.store: RecordStore | None = None
        self.pause: PauseManager | None = None
        self.cooldown: CooldownTracker | None = None
        self.workspaces: WorkspaceManager | None = None
        self.model_client: ModelClient | None = None
        self.completions: CompletionHandler | None = None
        self.router: DispatchRouter | None = None
        self.scheduler: PhaseScheduler | None = None

    async def start(self, *, scheduler: bool = False) -> None:
        """Initialize components. With ``scheduler`` also start the heartbeat loop."""
        if self.config is None:
            self.config = load_config(self.grove_dir)
        config = self.config

        # Relative data paths are anchored at the repository owning .grove/
        data_dir = Path(config.paths.data_dir)
        if not data_dir.is_absolute():
            data_dir = self.grove_dir.parent / data_dir
            config.paths.data_dir = str(data_dir)
        if config.paths.worktrees_dir and not Path(config.paths.worktrees_dir).is_absolute():
            config.paths.worktrees_dir = str(self.grove_dir.parent / config.paths.worktrees_dir)

        for directory in (data_dir, config.paths.sessions_dir, config.paths.worktrees_path):
            directory.mkdir(parents=True, exist_ok=True)

        self.store = RecordStore(
            str(config.paths.db_path),
            regression_ratio=config.documents.regression_ratio,
            research_version_cap=config.scheduler.research_version_cap,
        )
        await self.store.initialize()

        self.pause = PauseManager(self.store)
        self.cooldown = CooldownTracker(
            mention_window=config.cooldown.mention_window,
            auto_window=config.cooldown.auto_window,
            prune_threshold=config.cooldown.prune_threshold,
        )
        self.workspaces = WorkspaceManager(config.paths.worktrees_path)

        self.completions = CompletionHandler(self.store, self.pause, config.documents)
        await self.completions.start()

        self.router = DispatchRouter(
            config=config,
            store=self.store,
            workspaces=self.workspaces,
            cooldown=self.cooldown,
            pause=self.pause,
            runner=await self._build_runner(),
            deliver=self.completions.submit,
        )
        self.scheduler = PhaseScheduler(config, self.store, self.router, self.pause)
        if scheduler:
            await self.scheduler.start()

        logger.info("Grove started (strategy=%s)", config.runtime.strategy)

    async def _build_runner(self) -> AgentRunner:
        config = self.config
        if config.runtime.strategy == "conversation":
            conv = config.conversation
            self.model_client = ModelClient(
                base_url=conv.api_base_url,
                api_key=conv.api_key,
                api_version=conv.api_version,
                timeout=conv.request_timeout,
            )
            await self.model_client.start()
            runtime = ConversationRuntime(
                self.model_client,
                ConversationStore(config.paths.conversations_dir),
                conv,
            )
            return ConversationRunner(runtime)

        sup = config.supervisor
        return CliRunner(
            ProcessSupervisor(
                cli_binary=sup.cli_binary,
                model=sup.model,
                min_output_chars=sup.min_output_chars,
                output_cap_bytes=sup.output_cap_bytes,
                kill_grace=config.timeouts.kill_grace,
            )
        )

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("Grove shutting down")

        if self.scheduler:
            await self.scheduler.stop()
        if self.router:
            await self.router.drain()
        if self.completions:
            await self.completions.stop()
        if self.model_client:
            await self.model_client.close()
        if self.store:
            await self.store.close()

        logger.info("Grove stopped")

    async def ship_ticket(self, ticket_id: str, actor_id: str | None = None) -> ShipResult:
        """Merge a reviewed ticket's workspace into its project and mark it shipped.

        Raises:
            NotFound: Unknown ticket or project.
            WorkspaceUnavailable: The project's main repository is missing.
            ShipFailed: The merge could not be completed.
        """
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound("ticket", ticket_id)
        project = await self.store.get_project(ticket.project_id)
        if project is None:
            raise NotFound("project", ticket.project_id)

        result = await self.workspaces.ship(project, ticket.id, ticket.title)
        await self.store.set_state(ticket.id, TicketState.SHIPPED, actor_id=actor_id)
        return result

    async def approve_plan(
        self, ticket_id: str, actor_id: str | None = None, dispatch: bool = True
    ) -> tuple[Ticket, DispatchOutcome | None]:
        """Approve the plan and, unless told otherwise, start implementation now.

        The developer dispatch is urgent so the planning run's cooldown does
        not hold it back.

        Raises:
            NotFound: Unknown ticket.
        """
        if await self.store.get_ticket(ticket_id) is None:
            raise NotFound("ticket", ticket_id)
        await self.store.approve_plan(ticket_id, actor_id=actor_id)
        await self.store.add_comment(
            ticket_id, "Moved from planning to building: plan approved.", kind=CommentKind.STATUS
        )
        ticket = await self.store.get_ticket(ticket_id)
        if not dispatch:
            return ticket, None
        outcome = await self.router.dispatch(
            ticket_id, DispatchTrigger(kind=MentionKind.URGENT, role=Role.DEVELOPER)
        )
        return ticket, outcome

    async def unblock_ticket(self, ticket_id: str, actor_id: str | None = None) -> None:
        """Return a blocked ticket to automatic dispatch with fresh conversations.

        Raises:
            NotFound: Unknown ticket.
        """
        if await self.store.get_ticket(ticket_id) is None:
            raise NotFound("ticket", ticket_id)
        conversations = ConversationStore(self.config.paths.conversations_dir)
        for phase in Phase:
            conversations.clear(f"{ticket_id}-{phase.value}")
        await self.store.unblock(ticket_id, actor_id=actor_id)
