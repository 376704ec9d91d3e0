from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def run_git(cwd: Path, *cmd: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *cmd],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )


@dataclass(slots=True)
class TreeRepo:
    """Fixture payload representing a checked-out working tree."""

    root: Path

    def write(self, name: str, content: str) -> Path:
        path = self.root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def read(self, name: str) -> str:
        return (self.root / name).read_text(encoding="utf-8")

    def commit_all(self, message: str) -> None:
        run_git(self.root, "add", "--all")
        run_git(self.root, "commit", "-m", message)

    def head(self) -> str:
        return run_git(self.root, "rev-parse", "HEAD").stdout.strip()

    def tracked(self) -> list[str]:
        return run_git(self.root, "ls-files").stdout.split()

    def status(self) -> str:
        return run_git(self.root, "status", "--porcelain").stdout


@pytest.fixture()
def tree(tmp_path: Path) -> TreeRepo:
    """Create a git working tree on branch ``feature`` with file ``f`` = ``old``."""

    repo_root = tmp_path / "tree"
    repo_root.mkdir()
    run_git(repo_root, "init")
    run_git(repo_root, "config", "user.email", "bot@example.com")
    run_git(repo_root, "config", "user.name", "Wingman Bot")
    run_git(repo_root, "config", "commit.gpgsign", "false")
    repo = TreeRepo(root=repo_root)
    repo.write("f", "old\n")
    repo.commit_all("Initial tree state")
    run_git(repo_root, "checkout", "-b", "feature")
    return repo


@pytest.fixture()
def remote(tmp_path: Path, tree: TreeRepo) -> Path:
    """Attach a bare ``origin`` remote to ``tree``."""

    bare = tmp_path / "remote.git"
    run_git(tmp_path, "init", "--bare", str(bare))
    run_git(tree.root, "remote", "add", "origin", str(bare))
    run_git(tree.root, "push", "origin", "feature")
    return bare
