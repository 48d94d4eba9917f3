"""Session providers: start, stop and inspect named agent sessions.

The reconciler depends only on the SessionProvider interface. Production
cities use TmuxSessionProvider; tests use FakeSessionProvider, which records
every call and can be told to fail specific operations.
"""

import logging
import os
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from string import Template

from .errors import SessionError

logger = logging.getLogger(__name__)

# Session metadata key holding the config fingerprint
CONFIG_HASH_KEY = "CITY_CONFIG_HASH"

_DEFAULT_TEMPLATE = "gc-$city-$agent"


@dataclass
class SessionConfig:
    """Everything needed to launch one agent session."""
    command: str
    work_dir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    # Identity fields that are not part of the command but should restart
    # the agent on change (isolation mode, pool bounds)
    fingerprint_extra: dict[str, str] = field(default_factory=dict)
    session_setup: list[str] = field(default_factory=list)
    pre_start: list[str] = field(default_factory=list)


def _session_safe(qualified_name: str) -> str:
    # "rig/name" -> "rig--name"; tmux rejects "." and ":" in session names
    return qualified_name.replace("/", "--").replace(".", "_").replace(":", "_")


def session_name_for(city_name: str, qualified_name: str, template: str = "") -> str:
    """Return the session name for an agent.

    The name is a pure function of the city, the qualified agent name and
    the naming template. Templates use $city and $agent placeholders; an
    unusable template falls back to the default "gc-$city-$agent".
    """
    values = {"city": city_name, "agent": _session_safe(qualified_name)}
    try:
        return Template(template or _DEFAULT_TEMPLATE).substitute(values)
    except (KeyError, ValueError):
        logger.warning("Bad session template %r, using default", template)
        return Template(_DEFAULT_TEMPLATE).substitute(values)


def session_prefix(city_name: str, template: str = "") -> str:
    """Return the fixed prefix every session name of this city starts with."""
    return session_name_for(city_name, "", template)


class SessionProvider(ABC):
    """Manages agent sessions."""

    @abstractmethod
    def is_running(self, name: str) -> bool:
        """Report whether the named session exists and is alive."""

    @abstractmethod
    def start(self, name: str, cfg: SessionConfig) -> None:
        """Create a session. Raises SessionError if it cannot be started."""

    @abstractmethod
    def stop(self, name: str) -> None:
        """Destroy a session. No-op if it does not exist."""

    @abstractmethod
    def list_running(self, prefix: str) -> list[str]:
        """Return the names of running sessions starting with prefix."""

    @abstractmethod
    def set_meta(self, name: str, key: str, value: str) -> None:
        """Attach a key/value pair to the session."""

    @abstractmethod
    def get_meta(self, name: str, key: str) -> str:
        """Read a metadata value; returns "" if unset."""

    def last_activity(self, name: str) -> datetime | None:
        """Time of the last output in the session, or None if unknown."""
        return None


class ReconcileOps:
    """Session operations only reconciliation needs.

    Kept apart from SessionProvider so providers stay small; the config
    fingerprint lives in session metadata under CONFIG_HASH_KEY.
    """

    def __init__(self, provider: SessionProvider):
        self.provider = provider

    def list_running(self, prefix: str) -> list[str]:
        return self.provider.list_running(prefix)

    def store_config_hash(self, name: str, config_hash: str) -> None:
        self.provider.set_meta(name, CONFIG_HASH_KEY, config_hash)

    def config_hash(self, name: str) -> str:
        """Return the stored hash, or "" if none was ever stored."""
        return self.provider.get_meta(name, CONFIG_HASH_KEY)


# ---------------------------------------------------------------------------
# In-memory provider
# ---------------------------------------------------------------------------


class FakeSessionProvider(SessionProvider):
    """In-memory SessionProvider with spy capabilities.

    Every call is appended to ``calls`` as a (method, name) tuple. Names in
    ``fail_start`` / ``fail_stop`` / ``fail_meta`` make the matching call
    raise; ``fail_list`` makes list_running raise.
    """

    def __init__(self):
        self.sessions: dict[str, SessionConfig] = {}
        self.meta: dict[str, dict[str, str]] = {}
        self.activity: dict[str, datetime] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_start: set[str] = set()
        self.fail_stop: set[str] = set()
        self.fail_meta: set[str] = set()
        self.fail_list = False
        self._lock = threading.Lock()

    def _record(self, method: str, name: str) -> None:
        with self._lock:
            self.calls.append((method, name))

    def calls_for(self, method: str) -> list[str]:
        """Return the session names passed to one method, in call order."""
        return [n for m, n in self.calls if m == method]

    def is_running(self, name: str) -> bool:
        self._record("is_running", name)
        return name in self.sessions

    def start(self, name: str, cfg: SessionConfig) -> None:
        self._record("start", name)
        if name in self.fail_start:
            raise SessionError(f"start failed for {name}", session=name)
        if name in self.sessions:
            raise SessionError(f"session {name} already exists", session=name)
        self.sessions[name] = cfg
        self.meta.setdefault(name, {})
        self.activity[name] = datetime.now(tz=timezone.utc)

    def stop(self, name: str) -> None:
        self._record("stop", name)
        if name in self.fail_stop:
            raise SessionError(f"stop failed for {name}", session=name)
        self.sessions.pop(name, None)
        self.meta.pop(name, None)
        self.activity.pop(name, None)

    def list_running(self, prefix: str) -> list[str]:
        self._record("list_running", prefix)
        if self.fail_list:
            raise SessionError("listing sessions failed")
        return sorted(n for n in self.sessions if n.startswith(prefix))

    def set_meta(self, name: str, key: str, value: str) -> None:
        self._record("set_meta", name)
        if name in self.fail_meta:
            raise SessionError(f"set_meta failed for {name}", session=name)
        self.meta.setdefault(name, {})[key] = value

    def get_meta(self, name: str, key: str) -> str:
        self._record("get_meta", name)
        if name in self.fail_meta:
            raise SessionError(f"get_meta failed for {name}", session=name)
        return self.meta.get(name, {}).get(key, "")

    def last_activity(self, name: str) -> datetime | None:
        return self.activity.get(name)


# ---------------------------------------------------------------------------
# tmux provider
# ---------------------------------------------------------------------------


class TmuxSessionProvider(SessionProvider):
    """SessionProvider backed by the tmux CLI.

    Each agent runs in its own detached tmux session. Metadata is stored in
    the session environment (tmux set-environment) so it survives controller
    restarts.
    """

    def __init__(self, socket_name: str = "", timeout: int = 30):
        self.socket_name = socket_name
        self.timeout = timeout

    def _run_tmux(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess:
        """Run a tmux command."""
        cmd = ["tmux"]
        if self.socket_name:
            cmd += ["-L", self.socket_name]
        cmd += args
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=check,
            timeout=self.timeout,
        )

    def is_running(self, name: str) -> bool:
        try:
            result = self._run_tmux(["has-session", "-t", f"={name}"], check=False)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

    def start(self, name: str, cfg: SessionConfig) -> None:
        if self.is_running(name):
            raise SessionError(f"session {name} already exists", session=name)

        args = ["new-session", "-d", "-s", name]
        if cfg.work_dir:
            args += ["-c", cfg.work_dir]
        for key in sorted(cfg.env):
            args += ["-e", f"{key}={cfg.env[key]}"]

        try:
            for cmd in cfg.pre_start:
                subprocess.run(
                    ["sh", "-c", cmd],
                    cwd=cfg.work_dir or None,
                    env={**os.environ, **cfg.env},
                    capture_output=True,
                    timeout=self.timeout,
                    check=True,
                )
            if cfg.command:
                args.append(cfg.command)
            self._run_tmux(args)
        except subprocess.CalledProcessError as e:
            raise SessionError(
                f"starting {name}: {(e.stderr or '').strip() or e}", session=name
            ) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SessionError(f"starting {name}: {e}", session=name) from e

        for cmd in cfg.session_setup:
            # Setup commands are best-effort: the session is already up
            result = subprocess.run(
                ["sh", "-c", cmd],
                cwd=cfg.work_dir or None,
                env={**os.environ, **cfg.env, "CITY_SESSION": name},
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
            if result.returncode != 0:
                logger.warning("session_setup for %s failed: %s", name, result.stderr.strip())

    def stop(self, name: str) -> None:
        if not self.is_running(name):
            return
        try:
            self._run_tmux(["kill-session", "-t", f"={name}"])
        except subprocess.CalledProcessError as e:
            raise SessionError(f"stopping {name}: {e.stderr.strip()}", session=name) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SessionError(f"stopping {name}: {e}", session=name) from e

    def list_running(self, prefix: str) -> list[str]:
        try:
            result = self._run_tmux(["list-sessions", "-F", "#{session_name}"], check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SessionError(f"listing sessions: {e}") from e
        if result.returncode != 0:
            # "no server running" means no sessions, not a failure
            if "no server" in result.stderr or "No such file" in result.stderr:
                return []
            raise SessionError(f"listing sessions: {result.stderr.strip()}")
        return [
            line.strip()
            for line in result.stdout.splitlines()
            if line.strip().startswith(prefix)
        ]

    def set_meta(self, name: str, key: str, value: str) -> None:
        try:
            self._run_tmux(["set-environment", "-t", name, key, value])
        except subprocess.CalledProcessError as e:
            raise SessionError(f"set_meta {name}: {e.stderr.strip()}", session=name) from e

    def get_meta(self, name: str, key: str) -> str:
        result = self._run_tmux(["show-environment", "-t", name, key], check=False)
        if result.returncode != 0:
            return ""
        # Output is "KEY=value" or "-KEY" when unset
        line = result.stdout.strip()
        if not line or line.startswith("-") or "=" not in line:
            return ""
        return line.split("=", 1)[1]

    def last_activity(self, name: str) -> datetime | None:
        result = self._run_tmux(
            ["display-message", "-p", "-t", name, "#{session_activity}"], check=False
        )
        if result.returncode != 0:
            return None
        try:
            return datetime.fromtimestamp(int(result.stdout.strip()), tz=timezone.utc)
        except ValueError:
            return None
