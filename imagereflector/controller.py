"""Reconciliation of image policies against the tags scanned for their repository."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Protocol

from .meta import (
    READY_CONDITION,
    RECONCILING_CONDITION,
    STALLED_CONDITION,
    Condition,
    ConditionStatus,
    find_status_condition,
    is_status_condition_false,
    is_status_condition_true,
    remove_status_condition,
    set_status_condition,
)
from .v1beta2 import (
    DEPENDENCY_NOT_READY_REASON,
    IMAGE_FINALIZER,
    IMAGE_POLICY_KIND,
    IMAGE_REPOSITORY_KIND,
    IMAGE_URL_INVALID_REASON,
    INTERVAL_NOT_CONFIGURED_REASON,
    INTERVAL_REQUIRED_MESSAGE,
    ImagePolicy,
    ImagePolicyChoice,
    ImageRef,
    ImageRepository,
    ReflectionPolicy,
)

log = logging.getLogger(__name__)

PROGRESSING_REASON = "Progressing"
PROGRESSING_WITH_RETRY_REASON = "ProgressingWithRetry"
SUCCEEDED_REASON = "Succeeded"
FAILURE_REASON = "Failure"
ACCESS_DENIED_REASON = "AccessDenied"
FEATURE_GATE_DISABLED_REASON = "FeatureGateDisabled"
INVALID_POLICY_REASON = "InvalidPolicy"

OBJECT_LEVEL_WORKLOAD_IDENTITY_GATE = "ObjectLevelWorkloadIdentity"
OPERATION_RECONCILE = "reconcile"


class NotFoundError(LookupError):
    """A referenced object does not exist."""


class AccessDeniedError(PermissionError):
    """A policy may not reference the image repository it names."""


class InvalidPolicyError(ValueError):
    """The policy or its tag filter cannot be used."""


class NoTagsInDatabaseError(LookupError):
    """The database holds no tags for the repository."""

    def __init__(self, message: str = "no tags in database") -> None:
        super().__init__(message)


class DatabaseReader(Protocol):
    """Reads the stored tags of an image repository."""

    def tags(self, repo: str) -> list[str]:
        """Return the stored tags of the repository, empty when there are none."""


class DatabaseWriter(Protocol):
    """Records the tags of an image repository."""

    def set_tags(self, repo: str, tags: Sequence[str]) -> str:
        """Store the tags of the repository and return a revision for them."""


class ObjectStore(Protocol):
    """Where image repositories, namespaces and policies are looked up."""

    def get_image_repository(self, namespace: str, name: str) -> ImageRepository:
        """Return the repository, raising NotFoundError when it does not exist."""

    def namespace_labels(self, namespace: str) -> Mapping[str, str]:
        """Return the labels of the namespace, raising NotFoundError when it does not exist."""

    def list_image_policies(self) -> list[ImagePolicy]:
        """Return every stored image policy."""


class _Policer(Protocol):
    def latest(self, versions: Sequence[str]) -> str: ...


class _TagFilterer(Protocol):
    def apply(self, tags: Sequence[str]) -> None: ...

    def items(self) -> list[str]: ...

    def original_tag(self, tag: str) -> str: ...


class _TokenCache(Protocol):
    def delete_events_for_object(self, kind: str, name: str, namespace: str, operation: str) -> None: ...


@dataclass(frozen=True)
class ReconcileResult:
    """What the caller should do after a reconciliation."""

    requeue: bool = False
    requeue_after: timedelta = timedelta(0)


def repository_index_key(policy: ImagePolicy) -> str:
    """The "namespace/name" of the repository a policy refers to."""
    ref = policy.spec.image_repository_ref
    namespace = ref.namespace or policy.metadata.namespace
    return f"{namespace}/{ref.name}"


def image_repository_changed(old: ImageRepository | None, new: ImageRepository | None) -> bool:
    """Whether a repository update should trigger the policies that refer to it."""
    if old is None or new is None:
        return False
    if new.status.last_scan_result is None:
        return False
    old_scan = old.status.last_scan_result
    return old_scan is None or old_scan.revision != new.status.last_scan_result.revision


def compose_ready_message(policy: ImagePolicy) -> str:
    """The Ready message describing the latest and, if different, the previous image."""
    latest = policy.status.latest_ref
    if latest is None:
        raise ValueError("policy has no latest image reference")
    message = f"Latest image tag for {latest.name} resolved to {latest.tag}"
    if latest.digest:
        message += f" with digest {latest.digest}"
    previous = policy.status.observed_previous_ref
    if previous is not None and previous != latest:
        message += f" (previously {previous.name}:{previous.tag}"
        if previous.digest:
            message += f"@{previous.digest}"
        message += ")"
    return message


def migrate_image_to_ref(image_with_tag: str, ref: ImageRef | None) -> ImageRef | None:
    """Build a reference from an "image:tag" string unless one is already present."""
    if ref is not None or not image_with_tag:
        return ref
    name, sep, tag = image_with_tag.rpartition(":")
    if not sep:
        raise ValueError(f"image {image_with_tag!r} has no tag")
    return ImageRef(name=name, tag=tag)


@dataclass
class ImagePolicyReconciler:
    """Brings an image policy's status in line with the tags of its repository.

    ``policer_from_spec`` and ``regex_filter`` raise ValueError for an unusable
    policy or pattern; ``image_validator`` raises ValueError for a bad image.
    """

    store: ObjectStore
    database: DatabaseReader
    policer_from_spec: Callable[[ImagePolicyChoice], _Policer]
    regex_filter: Callable[[str, str], _TagFilterer]
    digest_fetcher: Callable[[ImageRepository, ImagePolicy, str], str] | None = None
    image_validator: Callable[[str, bool], object] | None = None
    token_cache: _TokenCache | None = None
    no_cross_namespace_refs: bool = False
    object_level_workload_identity: bool = False

    def reconcile(self, policy: ImagePolicy) -> ReconcileResult:
        """Reconcile the policy in place; errors are raised after the status is updated."""
        if policy.metadata.is_deleting():
            return self.reconcile_delete(policy)
        if policy.metadata.add_finalizer(IMAGE_FINALIZER):
            return ReconcileResult(requeue=True)

        status = policy.status
        status.latest_ref = migrate_image_to_ref(status.latest_image, status.latest_ref)
        status.observed_previous_ref = migrate_image_to_ref(
            status.observed_previous_image, status.observed_previous_ref
        )

        try:
            result, ready_message = self._reconcile(policy)
        except Exception as exc:
            self._finalize(policy, ReconcileResult(), exc, "")
            raise
        self._finalize(policy, result, None, ready_message)
        return result

    def reconcile_delete(self, policy: ImagePolicy) -> ReconcileResult:
        """Release the policy for deletion and drop its cached credentials."""
        policy.metadata.remove_finalizer(IMAGE_FINALIZER)
        if self.token_cache is not None:
            self.token_cache.delete_events_for_object(
                IMAGE_POLICY_KIND, policy.metadata.name, policy.metadata.namespace, OPERATION_RECONCILE
            )
        return ReconcileResult()

    def get_image_repository(self, policy: ImagePolicy) -> ImageRepository:
        """Fetch the referenced repository if the policy may access it."""
        ref = policy.spec.image_repository_ref
        namespace = ref.namespace or policy.metadata.namespace
        key = f"{namespace}/{ref.name}"
        own_namespace = policy.metadata.namespace

        if self.no_cross_namespace_refs and namespace != own_namespace:
            raise AccessDeniedError(
                f"cannot access '{IMAGE_REPOSITORY_KIND}/{key}', cross-namespace references have been blocked"
            )

        try:
            repository = self.store.get_image_repository(namespace, ref.name)
        except NotFoundError as exc:
            raise NotFoundError(f"referenced {IMAGE_REPOSITORY_KIND} does not exist: {exc}") from exc

        if namespace != own_namespace:
            denied = AccessDeniedError(
                f"access denied: namespace '{own_namespace}' is not allowed to access "
                f"{IMAGE_REPOSITORY_KIND} '{key}'"
            )
            access_from = repository.spec.access_from
            if access_from is None:
                raise denied
            try:
                labels = self.store.namespace_labels(own_namespace)
            except NotFoundError as exc:
                raise denied from exc
            if not access_from.allows(labels):
                raise denied
        return repository

    def apply_policy(self, policy: ImagePolicy, repository: ImageRepository) -> str:
        """Filter the repository's stored tags and return the latest by the policy."""
        try:
            policer = self.policer_from_spec(policy.spec.policy)
        except ValueError as exc:
            raise InvalidPolicyError(f"invalid policy: {exc}") from exc

        try:
            tags = list(self.database.tags(repository.status.canonical_image_name))
        except Exception as exc:
            raise RuntimeError(f"failed to read tags from database: {exc}") from exc
        if not tags:
            raise NoTagsInDatabaseError()

        filter_tags = policy.spec.filter_tags
        if filter_tags is None:
            return policer.latest(tags)

        try:
            tag_filter = self.regex_filter(filter_tags.pattern, filter_tags.extract)
        except ValueError as exc:
            raise InvalidPolicyError(f"failed to filter tags: {exc}") from exc
        tag_filter.apply(tags)
        latest = policer.latest(tag_filter.items())
        return tag_filter.original_tag(latest)

    def update_image_refs(self, repository: ImageRepository, policy: ImagePolicy, latest: str) -> None:
        """Record the latest reference, fetching its digest as the reflection policy asks."""
        name = repository.spec.image
        current = policy.status.latest_ref
        digest = ""

        reflection = policy.digest_reflection_policy()
        if reflection is ReflectionPolicy.IF_NOT_PRESENT:
            should_fetch = (
                current is None or current.name != name or current.tag != latest or not current.digest
            )
            if not should_fetch and current is not None:
                digest = current.digest
        else:
            should_fetch = reflection is ReflectionPolicy.ALWAYS

        if should_fetch:
            try:
                digest = self._fetch_digest(repository, policy, latest)
            except Exception as exc:
                raise RuntimeError(f"failed fetching digest of {ImageRef(name, latest)}: {exc}") from exc

        latest_ref = ImageRef(name=name, tag=latest, digest=digest)
        if current is None or latest_ref != current:
            policy.status.observed_previous_ref = current
            policy.status.latest_ref = latest_ref

    def policies_for_repository(self, repository: ImageRepository) -> list[tuple[str, str]]:
        """The (namespace, name) of every policy that refers to the repository."""
        key = f"{repository.metadata.namespace}/{repository.metadata.name}"
        try:
            policies = self.store.list_image_policies()
        except Exception:
            log.exception("failed to list image policies for repository %s", key)
            return []
        return [
            (policy.metadata.namespace, policy.metadata.name)
            for policy in policies
            if repository_index_key(policy) == key
        ]

    def _fetch_digest(self, repository: ImageRepository, policy: ImagePolicy, latest: str) -> str:
        if self.digest_fetcher is None:
            raise RuntimeError("no digest fetcher is configured")
        return self.digest_fetcher(repository, policy, latest)

    def _reconcile(self, policy: ImagePolicy) -> tuple[ReconcileResult, str]:
        remove_status_condition(policy.status.conditions, STALLED_CONDITION)

        if policy.digest_reflection_policy() is ReflectionPolicy.ALWAYS and policy.spec.interval is None:
            self._mark_stalled(policy, INTERVAL_NOT_CONFIGURED_REASON, INTERVAL_REQUIRED_MESSAGE)
            return ReconcileResult(), ""

        message = "reconciliation in progress"
        if policy.metadata.generation != policy.status.observed_generation:
            message = (
                f"processing object: new generation "
                f"{policy.status.observed_generation} -> {policy.metadata.generation}"
            )
        self._mark_progressing(policy, message)

        try:
            repository = self.get_image_repository(policy)
        except Exception as exc:
            if isinstance(exc, AccessDeniedError):
                reason = ACCESS_DENIED_REASON
            elif isinstance(exc, NotFoundError):
                reason = DEPENDENCY_NOT_READY_REASON
            else:
                reason = FAILURE_REASON
            self._set(
                policy, READY_CONDITION, ConditionStatus.FALSE, reason,
                f"failed to get the referred ImageRepository: {exc}",
            )
            raise

        if self.image_validator is not None:
            try:
                self.image_validator(repository.spec.image, repository.spec.insecure)
            except ValueError as exc:
                self._mark_stalled(policy, IMAGE_URL_INVALID_REASON, str(exc))
                return ReconcileResult(), ""

        if (
            repository.spec.provider != "generic"
            and repository.spec.service_account_name
            and not self.object_level_workload_identity
        ):
            self._mark_stalled(
                policy,
                FEATURE_GATE_DISABLED_REASON,
                "to use spec.serviceAccountName in the ImageRepository for provider authentication "
                f"please enable the {OBJECT_LEVEL_WORKLOAD_IDENTITY_GATE} feature gate in the controller",
            )
            return ReconcileResult(), ""

        try:
            latest = self.apply_policy(policy, repository)
        except InvalidPolicyError as exc:
            self._mark_stalled(policy, INVALID_POLICY_REASON, str(exc))
            return ReconcileResult(), ""
        except NoTagsInDatabaseError as exc:
            self._set(policy, READY_CONDITION, ConditionStatus.FALSE, DEPENDENCY_NOT_READY_REASON, str(exc))
            return ReconcileResult(), ""
        except Exception as exc:
            self._set(policy, READY_CONDITION, ConditionStatus.FALSE, FAILURE_REASON, str(exc))
            raise

        self.update_image_refs(repository, policy, latest)
        ready_message = compose_ready_message(policy)

        policy.status.latest_image = f"{repository.spec.image}:{latest}"
        previous = policy.status.observed_previous_ref
        if previous is not None:
            policy.status.observed_previous_image = f"{previous.name}:{previous.tag}"

        remove_status_condition(policy.status.conditions, READY_CONDITION)
        return ReconcileResult(requeue_after=policy.interval()), ready_message

    def _finalize(
        self, policy: ImagePolicy, result: ReconcileResult, error: Exception | None, ready_message: str
    ) -> None:
        conditions = policy.status.conditions
        success = error is None and not result.requeue
        stalled = is_status_condition_true(conditions, STALLED_CONDITION)

        if success or stalled:
            remove_status_condition(conditions, RECONCILING_CONDITION)

        if stalled:
            stall = find_status_condition(conditions, STALLED_CONDITION)
            self._set(policy, READY_CONDITION, ConditionStatus.FALSE, stall.reason, stall.message)
        elif success:
            remove_status_condition(conditions, STALLED_CONDITION)
            ready = find_status_condition(conditions, READY_CONDITION)
            if ready is None or ready.status == ConditionStatus.UNKNOWN:
                self._set(policy, READY_CONDITION, ConditionStatus.TRUE, SUCCEEDED_REASON, ready_message)
        else:
            if not is_status_condition_false(conditions, READY_CONDITION):
                self._set(policy, READY_CONDITION, ConditionStatus.FALSE, FAILURE_REASON, str(error))
            reconciling = find_status_condition(conditions, RECONCILING_CONDITION)
            if reconciling is not None:
                reconciling.reason = PROGRESSING_WITH_RETRY_REASON

        if success or stalled:
            policy.status.observed_generation = policy.metadata.generation

    def _set(self, policy: ImagePolicy, kind: str, status: ConditionStatus, reason: str, message: str) -> None:
        set_status_condition(
            policy.status.conditions,
            Condition(
                type=kind,
                status=status,
                reason=reason,
                message=message,
                observed_generation=policy.metadata.generation,
            ),
        )

    def _mark_stalled(self, policy: ImagePolicy, reason: str, message: str) -> None:
        self._set(policy, STALLED_CONDITION, ConditionStatus.TRUE, reason, message)
        remove_status_condition(policy.status.conditions, RECONCILING_CONDITION)

    def _mark_progressing(self, policy: ImagePolicy, message: str) -> None:
        self._set(policy, RECONCILING_CONDITION, ConditionStatus.TRUE, PROGRESSING_REASON, message)
        if not is_status_condition_false(policy.status.conditions, READY_CONDITION):
            self._set(policy, READY_CONDITION, ConditionStatus.UNKNOWN, PROGRESSING_REASON, message)