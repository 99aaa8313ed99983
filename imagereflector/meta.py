"""Shared object metadata, references, access rules and status conditions."""

from __future__ import annotations

import dataclasses
import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

GROUP = "image.toolkit.fluxcd.io"

READY_CONDITION = "Ready"
RECONCILING_CONDITION = "Reconciling"
STALLED_CONDITION = "Stalled"


class ConditionStatus(str, enum.Enum):
    """The status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """One aspect of an object's observed state."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: datetime | None = None


@dataclass(frozen=True)
class GroupVersion:
    """An API group together with one of its versions."""

    group: str
    version: str

    def __str__(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"


V1BETA1 = GroupVersion(GROUP, "v1beta1")
V1BETA2 = GroupVersion(GROUP, "v1beta2")


@dataclass
class ObjectMeta:
    """Identity and lifecycle metadata of a stored object."""

    name: str = ""
    namespace: str = ""
    generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: datetime | None = None
    creation_timestamp: datetime | None = None

    def is_deleting(self) -> bool:
        """Whether the object has been marked for deletion."""
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add the finalizer unless present; return whether it was added."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove every occurrence of the finalizer; return whether any was removed."""
        kept = [f for f in self.finalizers if f != finalizer]
        removed = len(kept) != len(self.finalizers)
        self.finalizers[:] = kept
        return removed


@dataclass(frozen=True)
class NamespacedObjectReference:
    """A reference to an object, optionally in another namespace."""

    name: str
    namespace: str = ""


@dataclass(frozen=True)
class LocalObjectReference:
    """A reference to an object in the same namespace."""

    name: str


@dataclass
class NamespaceSelector:
    """Selects namespaces whose labels contain all of ``match_labels``."""

    match_labels: dict[str, str] = field(default_factory=dict)

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        labels = labels or {}
        return all(labels.get(key) == value for key, value in self.match_labels.items())


@dataclass
class AccessFrom:
    """Namespaces allowed to reference an object, by namespace labels."""

    namespace_selectors: list[NamespaceSelector] = field(default_factory=list)

    def allows(self, labels: Mapping[str, str] | None) -> bool:
        return any(selector.matches(labels) for selector in self.namespace_selectors)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def find_status_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    """Return the condition of the given type, or None."""
    return next((c for c in conditions if c.type == condition_type), None)


def set_status_condition(conditions: list[Condition], new_condition: Condition) -> bool:
    """Insert or update a condition in place; return whether anything changed.

    The transition time only moves when the status changes.
    """
    existing = find_status_condition(conditions, new_condition.type)
    if existing is None:
        added = dataclasses.replace(new_condition)
        if added.last_transition_time is None:
            added.last_transition_time = _now()
        conditions.append(added)
        return True

    changed = False
    if existing.status != new_condition.status:
        existing.status = new_condition.status
        existing.last_transition_time = new_condition.last_transition_time or _now()
        changed = True
    if existing.reason != new_condition.reason:
        existing.reason = new_condition.reason
        changed = True
    if existing.message != new_condition.message:
        existing.message = new_condition.message
        changed = True
    if existing.observed_generation != new_condition.observed_generation:
        existing.observed_generation = new_condition.observed_generation
        changed = True
    return changed


def remove_status_condition(conditions: list[Condition], condition_type: str) -> bool:
    """Remove the condition of the given type in place; return whether it was present."""
    kept = [c for c in conditions if c.type != condition_type]
    removed = len(kept) != len(conditions)
    conditions[:] = kept
    return removed


def is_status_condition_true(conditions: list[Condition], condition_type: str) -> bool:
    condition = find_status_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def is_status_condition_false(conditions: list[Condition], condition_type: str) -> bool:
    condition = find_status_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.FALSE