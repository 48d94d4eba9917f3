"""Bead store: the work-item and audit-trail substrate.

Everything is a bead: work items, molecules cooked from formulas, and the
tracking records the automation dispatcher uses as its cooldown clock.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import BeadNotFound

logger = logging.getLogger(__name__)


@dataclass
class Bead:
    """A single unit of work or audit record."""
    title: str
    id: str = ""
    status: str = "open"  # "open", "in_progress", "closed"
    type: str = "task"
    created_at: datetime | None = None
    assignee: str = ""
    parent_id: str = ""
    ref: str = ""  # formula name for molecules
    description: str = ""
    labels: list[str] = field(default_factory=list)

    def has_label(self, label: str) -> bool:
        return label in self.labels

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "type": self.type,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "assignee": self.assignee,
            "parent_id": self.parent_id,
            "ref": self.ref,
            "description": self.description,
            "labels": list(self.labels),
        }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bead":
        created = data.get("created_at")
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            status=data.get("status", "open"),
            type=data.get("type", "task"),
            created_at=datetime.fromisoformat(created) if created else None,
            assignee=data.get("assignee", ""),
            parent_id=data.get("parent_id", ""),
            ref=data.get("ref", ""),
            description=data.get("description", ""),
            labels=list(data.get("labels") or []),
        )


class BeadStore(ABC):
    """Interface for bead persistence.

    Implementations assign unique non-empty IDs, default status to "open"
    and type to "task", and set created_at on create when the caller left
    it empty.
    """

    @abstractmethod
    def create(self, bead: Bead) -> Bead:
        """Persist a new bead and return the stored copy."""

    @abstractmethod
    def get(self, bead_id: str) -> Bead:
        """Return a bead. Raises BeadNotFound."""

    @abstractmethod
    def update(self, bead_id: str, *, labels: list[str] | None = None,
               description: str | None = None) -> None:
        """Add labels and/or replace the description. Raises BeadNotFound."""

    @abstractmethod
    def close(self, bead_id: str) -> None:
        """Mark a bead closed. Raises BeadNotFound."""

    @abstractmethod
    def list(self) -> list[Bead]:
        """All beads in creation order."""

    def children(self, parent_id: str) -> list[Bead]:
        return [b for b in self.list() if b.parent_id == parent_id]

    def list_by_label(self, label: str, limit: int = 0) -> list[Bead]:
        """Beads carrying label, most recently created first."""
        indexed = [(i, b) for i, b in enumerate(self.list()) if label in b.labels]
        indexed.sort(
            key=lambda ib: (ib[1].created_at or datetime.min.replace(tzinfo=timezone.utc), ib[0]),
            reverse=True,
        )
        result = [b for _, b in indexed]
        return result[:limit] if limit > 0 else result

    def mol_cook(self, formula: str, base: str = "", labels: list[str] | None = None) -> str:
        """Instantiate a formula as a molecule root bead and return its ID."""
        root = self.create(Bead(
            title=formula,
            type="molecule",
            ref=formula,
            parent_id=base,
            labels=list(labels or []),
        ))
        return root.id


def _merge_labels(existing: list[str], extra: list[str]) -> list[str]:
    merged = list(existing)
    for label in extra:
        if label not in merged:
            merged.append(label)
    return merged


class MemBeadStore(BeadStore):
    """In-memory, thread-safe bead store."""

    def __init__(self, prefix: str = "mem"):
        self.prefix = prefix
        self._beads: list[Bead] = []
        self._next_id = 1
        self._lock = threading.RLock()

    def create(self, bead: Bead) -> Bead:
        with self._lock:
            stored = replace(
                bead,
                id=f"{self.prefix}-{self._next_id}",
                status=bead.status or "open",
                type=bead.type or "task",
                created_at=bead.created_at or datetime.now(tz=timezone.utc),
                labels=list(bead.labels),
            )
            self._next_id += 1
            self._beads.append(stored)
            return replace(stored, labels=list(stored.labels))

    def _find(self, bead_id: str) -> Bead:
        for b in self._beads:
            if b.id == bead_id:
                return b
        raise BeadNotFound(bead_id)

    def get(self, bead_id: str) -> Bead:
        with self._lock:
            b = self._find(bead_id)
            return replace(b, labels=list(b.labels))

    def update(self, bead_id: str, *, labels: list[str] | None = None,
               description: str | None = None) -> None:
        with self._lock:
            b = self._find(bead_id)
            if labels:
                b.labels = _merge_labels(b.labels, labels)
            if description is not None:
                b.description = description

    def close(self, bead_id: str) -> None:
        with self._lock:
            self._find(bead_id).status = "closed"

    def list(self) -> list[Bead]:
        with self._lock:
            return [replace(b, labels=list(b.labels)) for b in self._beads]


class FileBeadStore(MemBeadStore):
    """Bead store persisted as a single JSON document.

    Every mutation rewrites the file atomically (temp file, then rename), so
    a crash mid-write never leaves a truncated store behind.
    """

    def __init__(self, path: Path | str):
        super().__init__(prefix="gc")
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path) as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not read bead store %s: %s", self.path, e)
            return
        self._beads = [Bead.from_dict(b) for b in raw.get("beads", [])]
        self._next_id = int(raw.get("next_id", len(self._beads) + 1))

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "next_id": self._next_id,
            "beads": [b.to_dict() for b in self._beads],
        }
        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=".beads_", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.rename(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def create(self, bead: Bead) -> Bead:
        with self._lock:
            stored = super().create(bead)
            try:
                self._save()
            except Exception:
                self._beads.pop()
                self._next_id -= 1
                raise
            return stored

    def update(self, bead_id: str, *, labels: list[str] | None = None,
               description: str | None = None) -> None:
        with self._lock:
            b = self._find(bead_id)
            old_labels, old_description = list(b.labels), b.description
            super().update(bead_id, labels=labels, description=description)
            try:
                self._save()
            except Exception:
                b.labels, b.description = old_labels, old_description
                raise

    def close(self, bead_id: str) -> None:
        with self._lock:
            b = self._find(bead_id)
            old_status = b.status
            super().close(bead_id)
            try:
                self._save()
            except Exception:
                b.status = old_status
                raise
