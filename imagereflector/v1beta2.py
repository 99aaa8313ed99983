"""Image policy and image repository types of API version v1beta2."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .meta import (
    V1BETA2,
    AccessFrom,
    Condition,
    LocalObjectReference,
    NamespacedObjectReference,
    ObjectMeta,
)

GROUP_VERSION = V1BETA2

IMAGE_FINALIZER = "finalizers.fluxcd.io"

IMAGE_URL_INVALID_REASON = "ImageURLInvalid"
DEPENDENCY_NOT_READY_REASON = "DependencyNotReady"
AUTHENTICATION_FAILED_REASON = "AuthenticationFailed"
READ_OPERATION_FAILED_REASON = "ReadOperationFailed"
INTERVAL_NOT_CONFIGURED_REASON = "IntervalNotConfigured"

IMAGE_POLICY_KIND = "ImagePolicy"
IMAGE_POLICY_FINALIZER = IMAGE_FINALIZER
IMAGE_REPOSITORY_KIND = "ImageRepository"
IMAGE_REPOSITORY_FINALIZER = IMAGE_FINALIZER

DEFAULT_EXCLUSION_LIST = ("^.*\\.sig$",)
MAX_EXCLUSION_LIST_ITEMS = 25
DEFAULT_PROVIDER = "generic"
PROVIDERS = ("generic", "aws", "azure", "gcp")
MAX_SERVICE_ACCOUNT_NAME_LENGTH = 253

INTERVAL_REQUIRED_MESSAGE = "spec.interval must be set when spec.digestReflectionPolicy is set to 'Always'"

_ORDERS = ("asc", "desc")
_MIN_TIMEOUT = timedelta(seconds=1)


def _check_order(order: str) -> None:
    if order not in _ORDERS:
        raise ValueError(f"order must be one of {', '.join(_ORDERS)}, got {order!r}")


class ReflectionPolicy(str, enum.Enum):
    """When a value from the registry is reflected into an object field."""

    ALWAYS = "Always"
    IF_NOT_PRESENT = "IfNotPresent"
    NEVER = "Never"


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


@dataclass(frozen=True)
class ImageRef:
    """An image name with its tag and, optionally, its digest."""

    name: str
    tag: str
    digest: str = ""

    def __str__(self) -> str:
        text = f"{self.name}:{self.tag}"
        if self.digest:
            text += f"@{self.digest}"
        return text


@dataclass
class ImagePolicySpec:
    image_repository_ref: NamespacedObjectReference
    policy: ImagePolicyChoice
    filter_tags: TagFilter | None = None
    digest_reflection_policy: ReflectionPolicy | None = None
    interval: timedelta | None = None

    def __post_init__(self) -> None:
        if self.digest_reflection_policy is not None:
            self.digest_reflection_policy = ReflectionPolicy(self.digest_reflection_policy)


@dataclass
class ImagePolicyStatus:
    latest_image: str = ""
    observed_previous_image: str = ""
    latest_ref: ImageRef | None = None
    observed_previous_ref: ImageRef | None = None
    observed_generation: int = -1
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class ImagePolicy:
    spec: ImagePolicySpec
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    status: ImagePolicyStatus = field(default_factory=ImagePolicyStatus)

    def digest_reflection_policy(self) -> ReflectionPolicy:
        """The digest reflection policy, Never when unset."""
        return self.spec.digest_reflection_policy or ReflectionPolicy.NEVER

    def interval(self) -> timedelta:
        """The digest refresh interval; zero unless the policy is Always."""
        if self.digest_reflection_policy() is not ReflectionPolicy.ALWAYS:
            return timedelta(0)
        if self.spec.interval is None:
            raise ValueError(INTERVAL_REQUIRED_MESSAGE)
        return self.spec.interval


@dataclass
class ImagePolicyList:
    items: list[ImagePolicy] = field(default_factory=list)


@dataclass
class ImageRepositorySpec:
    image: str = ""
    interval: timedelta = timedelta(0)
    timeout: timedelta | None = None
    secret_ref: LocalObjectReference | None = None
    proxy_secret_ref: LocalObjectReference | None = None
    service_account_name: str = ""
    cert_secret_ref: LocalObjectReference | None = None
    suspend: bool = False
    access_from: AccessFrom | None = None
    exclusion_list: list[str] = field(default_factory=list)
    provider: str = ""
    insecure: bool = False

    def __post_init__(self) -> None:
        if self.provider and self.provider not in PROVIDERS:
            raise ValueError(f"provider must be one of {', '.join(PROVIDERS)}, got {self.provider!r}")
        if len(self.exclusion_list) > MAX_EXCLUSION_LIST_ITEMS:
            raise ValueError(f"exclusion list may hold at most {MAX_EXCLUSION_LIST_ITEMS} items")
        if len(self.service_account_name) > MAX_SERVICE_ACCOUNT_NAME_LENGTH:
            raise ValueError(
                f"service account name may be at most {MAX_SERVICE_ACCOUNT_NAME_LENGTH} characters"
            )


@dataclass
class ScanResult:
    tag_count: int
    revision: str = ""
    scan_time: datetime | None = None
    latest_tags: list[str] = field(default_factory=list)


@dataclass
class ImageRepositoryStatus:
    conditions: list[Condition] = field(default_factory=list)
    observed_generation: int = -1
    canonical_image_name: str = ""
    last_scan_result: ScanResult | None = None
    observed_exclusion_list: list[str] = field(default_factory=list)
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

    def exclusion_list(self) -> list[str]:
        """The tag exclusion patterns, with the signature-tag default when unset."""
        return list(self.spec.exclusion_list or DEFAULT_EXCLUSION_LIST)

    def provider(self) -> str:
        """The authentication provider, generic when unset."""
        return self.spec.provider or DEFAULT_PROVIDER

    def requeue_after(self) -> timedelta:
        """How long to wait before scanning again."""
        return self.spec.interval


@dataclass
class ImageRepositoryList:
    items: list[ImageRepository] = field(default_factory=list)