"""Workspace Manager — one isolated git worktree per ticket.

``ensure_workspace`` is idempotent and never fatal: any provisioning
failure falls back to the project's main checkout so a ticket is not
blocked by git trouble. ``ship`` merges a ticket branch back and cleans
up, with a file-copy recovery path for worktrees whose .git has been
replaced by a standalone repository (scaffolding tools that run
``git init`` do this).
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from grove.errors import ShipFailed, WorkspaceUnavailable
from grove.models import Project

logger = logging.getLogger(__name__)

ENV_FILES = (".env", ".env.local", ".env.development", ".env.development.local")

_GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Grove",
    "GIT_AUTHOR_EMAIL": "grove@localhost",
    "GIT_COMMITTER_NAME": "Grove",
    "GIT_COMMITTER_EMAIL": "grove@localhost",
}


async def run_git(cwd: Path, *args: str, timeout: int = 60) -> tuple[int, str, str]:
    """Run a git command asynchronously without blocking the event loop.

    Returns (returncode, stdout, stderr).
    """
    env = {**_GIT_IDENTITY, **os.environ}
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        (stdout_bytes or b"").decode(),
        (stderr_bytes or b"").decode(),
    )


@dataclass
class ShipResult:
    merge_commit: str | None
    recovered: bool = False
    log: list[str] = field(default_factory=list)


class WorkspaceManager:
    def __init__(self, worktrees_dir: Path):
        self.worktrees_dir = Path(worktrees_dir)

    @staticmethod
    def branch_name(ticket_key: str) -> str:
        return f"ticket/{ticket_key}"

    def workspace_path(self, project: Project, ticket_key: str) -> Path:
        return self.worktrees_dir / project.slug / ticket_key

    async def ensure_workspace(self, project: Project, ticket_key: str) -> Path:
        """Return the ticket's working directory, creating it if needed.

        Falls back to the main repository on any failure. A missing main
        repository is returned unchanged; callers must check it exists.
        """
        main_repo = project.repo_path
        if not main_repo.exists():
            logger.warning("Main repo not found for project %s: %s", project.slug, main_repo)
            return main_repo

        if not (main_repo / ".git").exists():
            logger.warning("%s is not a git repo, using it directly", main_repo)
            return main_repo

        worktree = self.workspace_path(project, ticket_key)
        branch = self.branch_name(ticket_key)

        if worktree.exists():
            logger.debug("Reusing worktree for %s at %s", ticket_key, worktree)
            return worktree

        try:
            worktree.parent.mkdir(parents=True, exist_ok=True)

            code, _, _ = await run_git(main_repo, "rev-parse", "--verify", "--quiet", branch)
            if code != 0:
                code, _, stderr = await run_git(main_repo, "branch", branch)
                if code != 0:
                    logger.error("Failed to create branch %s: %s", branch, stderr.strip())
                    return main_repo
                logger.info("Created branch %s in %s", branch, main_repo)

            code, _, stderr = await run_git(main_repo, "worktree", "add", str(worktree), branch)
            if code != 0:
                logger.error("Failed to create worktree for %s: %s", ticket_key, stderr.strip()[:200])
                return main_repo
            logger.info("Created worktree: %s → %s", branch, worktree)

            for name in ENV_FILES:
                src, dst = main_repo / name, worktree / name
                if src.exists() and not dst.exists():
                    shutil.copy2(src, dst)
                    logger.debug("Copied %s into worktree %s", name, worktree)
        except Exception:
            logger.exception("Worktree creation failed for %s, using main repo", ticket_key)
            return main_repo

        return worktree

    @staticmethod
    def is_corrupted(worktree: Path) -> bool:
        """True when .git is a standalone repo, or a gitfile pointing nowhere."""
        git_path = worktree / ".git"
        if git_path.is_dir():
            return True
        if git_path.is_file():
            match = re.match(r"^gitdir:\s*(.+)$", git_path.read_text().strip())
            if match:
                target = Path(match.group(1).strip())
                if not target.is_absolute():
                    target = worktree / target
                return not target.exists()
        return False

    async def _commit_all(self, cwd: Path, message: str) -> bool:
        """Stage and commit everything. Returns True if a commit was made."""
        await run_git(cwd, "add", "-A")
        _, status, _ = await run_git(cwd, "status", "--porcelain")
        if not status.strip():
            return False
        code, _, stderr = await run_git(cwd, "commit", "-m", message)
        if code != 0:
            logger.warning("Commit in %s failed: %s", cwd, stderr.strip())
            return False
        return True

    async def ship(self, project: Project, ticket_key: str, title: str = "") -> ShipResult:
        """Merge the ticket branch into the main repository and clean up.

        Raises:
            WorkspaceUnavailable: If the main repository does not exist.
            ShipFailed: If the merge itself fails.
        """
        main_repo = project.repo_path
        if not main_repo.exists():
            raise WorkspaceUnavailable(f"Main repo not found: {main_repo}")

        worktree = self.workspace_path(project, ticket_key)
        branch = self.branch_name(ticket_key)
        message = f"merge {ticket_key}: {title}".rstrip(": ")
        result = ShipResult(merge_commit=None)

        if worktree.exists() and self.is_corrupted(worktree):
            result.recovered = True
            result.log.append("Detected corrupted worktree; recovering via file copy.")
            if (worktree / ".git").is_dir():
                if await self._commit_all(worktree, f"ship {ticket_key}: commit before merge"):
                    result.log.append("Committed pending work in corrupted worktree.")
            for entry in worktree.iterdir():
                if entry.name == ".git":
                    continue
                dst = main_repo / entry.name
                if entry.is_dir() and not entry.is_symlink():
                    shutil.copytree(entry, dst, dirs_exist_ok=True, symlinks=True)
                else:
                    shutil.copy2(entry, dst, follow_symlinks=False)
            result.log.append("Copied files from worktree to main repo.")
            if await self._commit_all(main_repo, message):
                result.log.append("Committed merged code on main.")
            shutil.rmtree(worktree)
            await run_git(main_repo, "worktree", "prune")
            result.log.append("Removed corrupted worktree directory.")
        else:
            if worktree.exists():
                if await self._commit_all(worktree, f"ship {ticket_key}: commit before merge"):
                    result.log.append("Committed pending work in worktree.")
                code, _, stderr = await run_git(main_repo, "worktree", "remove", str(worktree), "--force")
                if code != 0:
                    raise ShipFailed(f"Could not remove worktree: {stderr.strip()}", result.log)
                result.log.append("Removed worktree.")

            code, _, _ = await run_git(main_repo, "rev-parse", "--verify", "--quiet", branch)
            if code != 0:
                result.log.append(f"No branch {branch}; nothing to merge.")
                logger.info("Ship %s: no branch to merge", ticket_key)
                return result

            if await self._commit_all(main_repo, f"auto-commit before merging {ticket_key}"):
                result.log.append("Committed pending work in main repo.")

            code, _, _ = await run_git(main_repo, "merge", branch, "--no-ff", "-m", message)
            if code != 0:
                await run_git(main_repo, "merge", "--abort")
                code, _, stderr = await run_git(main_repo, "merge", branch)
                if code != 0:
                    await run_git(main_repo, "merge", "--abort")
                    result.log.append(f"Merge failed: {stderr.strip()[:200]}")
                    raise ShipFailed(f"Merge of {branch} failed", result.log)
            result.log.append(f"Merged {branch} into main.")

            code, _, _ = await run_git(main_repo, "branch", "-d", branch)
            if code == 0:
                result.log.append(f"Deleted branch {branch}.")

        _, head, _ = await run_git(main_repo, "rev-parse", "HEAD")
        result.merge_commit = head.strip() or None
        logger.info("Shipped %s → %s (recovered=%s)", ticket_key, result.merge_commit, result.recovered)
        return result
