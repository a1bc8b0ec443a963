"""Small value types shared between the provisioning layers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Acquired(Generic[T]):
    """A resource obtained by a setup step.

    ``was_created`` is ``True`` only when this run brought the resource into
    existence. Compensations undo a resource only when it is set, never
    because the resource happens to be present.
    """

    value: T
    was_created: bool


__all__ = ["Acquired"]
