"""Config fingerprints for drift detection.

A fingerprint is a hex SHA-256 over the fields that define how a session is
launched. The reconciler stores it on the session at start time and compares
it with the current desired fingerprint on every tick; a mismatch means the
configuration drifted and the session is restarted.
"""

import hashlib

from .session import SessionConfig


def _write_sorted(h, mapping: dict[str, str]) -> None:
    """Feed a mapping into h in sorted-key order."""
    for key in sorted(mapping):
        h.update(key.encode())
        h.update(b"=")
        h.update(str(mapping[key]).encode())
        h.update(b"\0")


def config_fingerprint(cfg: SessionConfig) -> str:
    """Return a deterministic hash of a session's launch configuration.

    Included: command, environment, working directory and fingerprint_extra
    (isolation mode, pool bounds). Startup hints such as session_setup are
    excluded; changing them does not restart a running agent.
    """
    h = hashlib.sha256()
    h.update(cfg.command.encode())
    h.update(b"\0")

    _write_sorted(h, cfg.env)

    h.update(b"dir\0")
    h.update(str(cfg.work_dir).encode())
    h.update(b"\0")

    # "fp" marker keeps extra keys from colliding with env keys
    if cfg.fingerprint_extra:
        h.update(b"fp\0")
        _write_sorted(h, cfg.fingerprint_extra)

    return h.hexdigest()
