"""Image policy and image repository types of API version v1beta1."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .meta import (
    READY_CONDITION,
    V1BETA1,
    AccessFrom,
    Condition,
    ConditionStatus,
    LocalObjectReference,
    NamespacedObjectReference,
    ObjectMeta,
    set_status_condition,
)

GROUP_VERSION = V1BETA1

IMAGE_URL_INVALID_REASON = "ImageURLInvalid"
DEPENDENCY_NOT_READY_REASON = "DependencyNotReady"
RECONCILIATION_SUCCEEDED_REASON = "ReconciliationSucceeded"
RECONCILIATION_FAILED_REASON = "ReconciliationFailed"

IMAGE_POLICY_KIND = "ImagePolicy"
IMAGE_POLICY_FINALIZER = "finalizers.fluxcd.io"
IMAGE_REPOSITORY_KIND = "ImageRepository"
IMAGE_REPOSITORY_FINALIZER = "finalizers.fluxcd.io"

_ORDERS = ("asc", "desc")
_MIN_TIMEOUT = timedelta(seconds=1)


def _check_order(order: str) -> None:
    if order not in _ORDERS:
        raise ValueError(f"order must be one of {', '.join(_ORDERS)}, got {order!r}")


@dataclass
class SemVerPolicy:
    """Selects the highest tag within a semantic version range."""

    range: str


@dataclass
class AlphabeticalPolicy:
    """Orders tags alphabetically; ascending selects the last one."""

    order: str = "asc"

    def __post_init__(self) -> None:
        _check_order(self.order)


@dataclass
class NumericalPolicy:
    """Orders tags numerically; ascending selects the largest one."""

    order: str = "asc"

    def __post_init__(self) -> None:
        _check_order(self.order)


@dataclass
class ImagePolicyChoice:
    """The policy used to select the latest tag; one field is set."""

    semver: SemVerPolicy | None = None
    alphabetical: AlphabeticalPolicy | None = None
    numerical: NumericalPolicy | None = None


@dataclass
class TagFilter:
    """A regular expression that tags must match, and what to extract from them."""

    pattern: str = ""
    extract: str = ""


@dataclass
class ImagePolicySpec:
    image_repository_ref: NamespacedObjectReference
    policy: ImagePolicyChoice
    filter_tags: TagFilter | None = None


@dataclass
class ImagePolicyStatus:
    latest_image: str = ""
    observed_generation: int = -1
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class ImagePolicy:
    spec: ImagePolicySpec
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    status: ImagePolicyStatus = field(default_factory=ImagePolicyStatus)


@dataclass
class ImagePolicyList:
    items: list[ImagePolicy] = field(default_factory=list)


@dataclass
class ImageRepositorySpec:
    image: str = ""
    interval: timedelta = timedelta(0)
    timeout: timedelta | None = None
    secret_ref: LocalObjectReference | None = None
    service_account_name: str = ""
    cert_secret_ref: LocalObjectReference | None = None
    suspend: bool = False
    access_from: AccessFrom | None = None
    exclusion_list: list[str] = field(default_factory=list)


@dataclass
class ScanResult:
    tag_count: int
    scan_time: datetime | None = None


@dataclass
class ImageRepositoryStatus:
    conditions: list[Condition] = field(default_factory=list)
    observed_generation: int = -1
    canonical_image_name: str = ""
    last_scan_result: ScanResult | None = None
    last_handled_reconcile_at: str = ""


@dataclass
class ImageRepository:
    spec: ImageRepositorySpec = field(default_factory=ImageRepositorySpec)
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    status: ImageRepositoryStatus = field(default_factory=ImageRepositoryStatus)

    def timeout(self) -> timedelta:
        """The scan timeout: the spec timeout, else the interval, at least one second."""
        duration = self.spec.timeout if self.spec.timeout is not None else self.spec.interval
        return max(duration, _MIN_TIMEOUT)


@dataclass
class ImageRepositoryList:
    items: list[ImageRepository] = field(default_factory=list)


def _set_readiness(metadata: ObjectMeta, status, ready: ConditionStatus, reason: str, message: str) -> None:
    status.observed_generation = metadata.generation
    set_status_condition(
        status.conditions,
        Condition(type=READY_CONDITION, status=ConditionStatus(ready), reason=reason, message=message),
    )


def set_image_policy_readiness(policy: ImagePolicy, status: ConditionStatus, reason: str, message: str) -> None:
    """Set the Ready condition and record the observed generation."""
    _set_readiness(policy.metadata, policy.status, status, reason, message)


def set_image_repository_readiness(
    repository: ImageRepository, status: ConditionStatus, reason: str, message: str
) -> None:
    """Set the Ready condition and record the observed generation."""
    _set_readiness(repository.metadata, repository.status, status, reason, message)