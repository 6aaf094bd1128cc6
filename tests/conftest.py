"""Shared fixtures: a fresh record store, real git repositories, seed records."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
import pytest_asyncio

from grove.models import Persona, Project, Ticket
from grove.roles import Role
from grove.store import RecordStore


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
        env={
            "GIT_AUTHOR_NAME": "Test",
            "GIT_AUTHOR_EMAIL": "test@example.com",
            "GIT_COMMITTER_NAME": "Test",
            "GIT_COMMITTER_EMAIL": "test@example.com",
            "HOME": str(cwd),
            "PATH": "/usr/local/bin:/usr/bin:/bin",
        },
    )
    return result.stdout


def init_repo(path: Path) -> Path:
    """Create a git repository with one commit on ``main``."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q", "-b", "main")
    (path / "README.md").write_text("# demo\n")
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", "initial")
    return path


@pytest.fixture
def repo(tmp_path) -> Path:
    return init_repo(tmp_path / "demo")


@pytest_asyncio.fixture
async def store(tmp_path):
    """Create a fresh record store for each test."""
    s = RecordStore(str(tmp_path / "grove.db"))
    await s.initialize()
    yield s
    await s.close()


def make_project(root: Path, project_id: str = "p1", slug: str = "demo") -> Project:
    return Project(id=project_id, name=slug.title(), slug=slug, root=str(root))


def make_persona(role: Role, persona_id: str | None = None, project_id: str | None = "p1", **kwargs) -> Persona:
    return Persona(
        id=persona_id or f"{role.value}-1",
        name=kwargs.pop("name", role.spec.label),
        role=role,
        project_id=project_id,
        **kwargs,
    )


def make_ticket(ticket_id: str = "t1", project_id: str = "p1", **kwargs) -> Ticket:
    return Ticket(id=ticket_id, project_id=project_id, title=kwargs.pop("title", f"Ticket {ticket_id}"), **kwargs)


async def seed(store: RecordStore, root: Path, roles=tuple(Role)) -> Project:
    """One project with one persona per role."""
    project = await store.create_project(make_project(root))
    for role in roles:
        await store.create_persona(make_persona(role))
    return project
