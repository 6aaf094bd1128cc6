"""Tests for the workspace manager, run against real git repositories."""

import pytest

from conftest import git, init_repo, make_project
from grove.errors import ShipFailed, WorkspaceUnavailable
from grove.workspace import WorkspaceManager, run_git


@pytest.fixture
def workspaces(tmp_path):
    return WorkspaceManager(tmp_path / "worktrees")


@pytest.fixture
def project(repo):
    return make_project(repo)


class TestEnsureWorkspace:
    @pytest.mark.asyncio
    async def test_creates_worktree_on_ticket_branch(self, workspaces, project, repo):
        path = await workspaces.ensure_workspace(project, "t1")

        assert path == workspaces.worktrees_dir / "demo" / "t1"
        assert (path / "README.md").exists()
        _, branch, _ = await run_git(path, "rev-parse", "--abbrev-ref", "HEAD")
        assert branch.strip() == "ticket/t1"

    @pytest.mark.asyncio
    async def test_idempotent(self, workspaces, project):
        first = await workspaces.ensure_workspace(project, "t1")
        (first / "scratch.txt").write_text("work in progress")
        second = await workspaces.ensure_workspace(project, "t1")
        assert second == first
        assert (second / "scratch.txt").read_text() == "work in progress"

    @pytest.mark.asyncio
    async def test_reuses_existing_branch(self, workspaces, project, repo):
        git(repo, "branch", "ticket/t1")
        path = await workspaces.ensure_workspace(project, "t1")
        assert path != repo
        assert path.exists()

    @pytest.mark.asyncio
    async def test_copies_env_files(self, workspaces, project, repo):
        (repo / ".env").write_text("SECRET=1\n")
        path = await workspaces.ensure_workspace(project, "t1")
        assert (path / ".env").read_text() == "SECRET=1\n"

    @pytest.mark.asyncio
    async def test_missing_repo_returned_unchanged(self, workspaces, tmp_path):
        project = make_project(tmp_path / "gone")
        path = await workspaces.ensure_workspace(project, "t1")
        assert path == tmp_path / "gone"
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_non_git_directory_used_directly(self, workspaces, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        path = await workspaces.ensure_workspace(make_project(plain), "t1")
        assert path == plain

    @pytest.mark.asyncio
    async def test_git_failure_falls_back_to_main(self, workspaces, project, repo):
        # An existing file where the worktree's parent directory should go.
        workspaces.worktrees_dir.mkdir(parents=True)
        (workspaces.worktrees_dir / "demo").write_text("not a directory")
        path = await workspaces.ensure_workspace(project, "t1")
        assert path == repo


class TestCorruptionDetection:
    @pytest.mark.asyncio
    async def test_healthy_worktree(self, workspaces, project):
        path = await workspaces.ensure_workspace(project, "t1")
        assert not workspaces.is_corrupted(path)

    @pytest.mark.asyncio
    async def test_git_directory_is_corrupted(self, workspaces, project):
        path = await workspaces.ensure_workspace(project, "t1")
        (path / ".git").unlink()
        (path / ".git").mkdir()
        assert workspaces.is_corrupted(path)

    def test_dangling_gitfile_is_corrupted(self, tmp_path):
        wt = tmp_path / "wt"
        wt.mkdir()
        (wt / ".git").write_text(f"gitdir: {tmp_path / 'nowhere'}\n")
        assert WorkspaceManager.is_corrupted(wt)


class TestShip:
    @pytest.mark.asyncio
    async def test_merges_branch_and_cleans_up(self, workspaces, project, repo):
        path = await workspaces.ensure_workspace(project, "t1")
        (path / "feature.py").write_text("print('hi')\n")

        result = await workspaces.ship(project, "t1", "Add feature")

        assert not result.recovered
        assert result.merge_commit
        assert (repo / "feature.py").exists()
        assert not path.exists()
        assert "ticket/t1" not in git(repo, "branch", "--list")
        assert "merge t1: Add feature" in git(repo, "log", "-1", "--format=%s")

    @pytest.mark.asyncio
    async def test_no_branch_is_noop(self, workspaces, project, repo):
        head = git(repo, "rev-parse", "HEAD").strip()
        result = await workspaces.ship(project, "t9")
        assert any("nothing to merge" in line for line in result.log)
        assert git(repo, "rev-parse", "HEAD").strip() == head

    @pytest.mark.asyncio
    async def test_missing_repo_raises(self, workspaces, tmp_path):
        with pytest.raises(WorkspaceUnavailable):
            await workspaces.ship(make_project(tmp_path / "gone"), "t1")

    @pytest.mark.asyncio
    async def test_conflict_raises_ship_failed(self, workspaces, project, repo):
        path = await workspaces.ensure_workspace(project, "t1")
        (path / "README.md").write_text("# from ticket\n")
        (repo / "README.md").write_text("# from main\n")
        git(repo, "commit", "-q", "-am", "main edit")

        with pytest.raises(ShipFailed) as exc_info:
            await workspaces.ship(project, "t1")
        assert any("Merge failed" in line for line in exc_info.value.log)
        assert "# from main" in (repo / "README.md").read_text()

    @pytest.mark.asyncio
    async def test_recovers_corrupted_worktree(self, workspaces, project, repo):
        path = await workspaces.ensure_workspace(project, "t1")
        (path / ".git").unlink()
        init_repo(path)
        (path / "app.js").write_text("console.log('scaffolded')\n")

        result = await workspaces.ship(project, "t1", "Scaffold app")

        assert result.recovered
        assert (repo / "app.js").exists()
        assert not path.exists()
        assert git(repo, "status", "--porcelain").strip() == ""
        assert result.merge_commit == git(repo, "rev-parse", "HEAD").strip()


class TestRunGit:
    @pytest.mark.asyncio
    async def test_returns_code_and_output(self, repo):
        code, out, _ = await run_git(repo, "rev-parse", "--abbrev-ref", "HEAD")
        assert code == 0
        assert out.strip() == "main"

    @pytest.mark.asyncio
    async def test_failure_code(self, repo):
        code, _, err = await run_git(repo, "rev-parse", "--verify", "--quiet", "no-such-ref")
        assert code != 0
