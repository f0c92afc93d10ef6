from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ChangeKind(str, Enum):
    """The two bundle types whose modifications trigger deployment updates."""

    CONFIG_MAP = "ConfigMap"
    SECRET = "Secret"


@dataclass(frozen=True)
class ChangeDescriptor:
    """A modification seen on a watched bundle.

    Identity is ``(kind, name)``; the change debouncer uses it as its key.
    """

    kind: ChangeKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value} {self.name}"


@dataclass(frozen=True)
class WorkloadRef:
    """A deployment queued for update, pinned to the version observed when queued.

    A new ``observed_version`` is a distinct key, so an update queued against a
    stale version is never coalesced with one queued against a newer version.
    """

    name: str
    observed_version: str

    def __str__(self) -> str:
        return self.name
