"""Helpers shared by cityctl tests."""

import subprocess
from pathlib import Path

from cityctl.agents import Agent
from cityctl.session import session_name_for


def make_agent(name: str, rig: str = "", command: str = "claude", city: str = "demo",
               **kwargs) -> Agent:
    """Build a concrete agent with its session name resolved."""
    agent = Agent(name=name, rig=rig, command=command, **kwargs)
    agent.session_name = session_name_for(city, agent.qualified_name)
    return agent


def make_completed(stdout="", stderr="", returncode=0):
    """Helper to create a CompletedProcess."""
    return subprocess.CompletedProcess(
        args=[], returncode=returncode, stdout=stdout, stderr=stderr
    )


def git(args: list[str], cwd: Path) -> str:
    """Run a git command and raise on failure."""
    result = subprocess.run(["git"] + args, cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout


def init_git_repo(path: Path) -> Path:
    """Initialise a repo with one commit and no remote."""
    path.mkdir(parents=True, exist_ok=True)
    git(["init"], cwd=path)
    git(["checkout", "-B", "main"], cwd=path)
    git(["config", "user.email", "test@example.com"], cwd=path)
    git(["config", "user.name", "Test"], cwd=path)
    (path / "README.md").write_text("init\n")
    git(["add", "."], cwd=path)
    git(["commit", "-m", "init"], cwd=path)
    return path
