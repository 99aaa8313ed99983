import re
from datetime import datetime, timedelta, timezone

import pytest

from imagereflector.controller import (
    AccessDeniedError,
    ImagePolicyReconciler,
    NotFoundError,
    ReconcileResult,
    compose_ready_message,
    image_repository_changed,
    migrate_image_to_ref,
    repository_index_key,
)
from imagereflector.meta import (
    READY_CONDITION,
    RECONCILING_CONDITION,
    STALLED_CONDITION,
    AccessFrom,
    ConditionStatus,
    NamespacedObjectReference,
    NamespaceSelector,
    ObjectMeta,
    find_status_condition,
)
from imagereflector.v1beta2 import (
    IMAGE_FINALIZER,
    AlphabeticalPolicy,
    ImagePolicy,
    ImagePolicyChoice,
    ImagePolicySpec,
    ImageRef,
    ImageRepository,
    ImageRepositorySpec,
    ReflectionPolicy,
    ScanResult,
    SemVerPolicy,
    TagFilter,
)

IMAGE = "localhost:5000/test-policy"
DIGEST = "sha256:" + "a" * 64


class FakeStore:
    def __init__(self, repositories=(), namespaces=None, policies=()):
        self.repositories = {(r.metadata.namespace, r.metadata.name): r for r in repositories}
        self.namespaces = namespaces or {}
        self.policies = list(policies)

    def get_image_repository(self, namespace, name):
        try:
            return self.repositories[(namespace, name)]
        except KeyError:
            raise NotFoundError(f'imagerepositories "{name}" not found') from None

    def namespace_labels(self, namespace):
        if namespace not in self.namespaces:
            raise NotFoundError(f'namespaces "{namespace}" not found')
        return self.namespaces[namespace]

    def list_image_policies(self):
        return list(self.policies)


class FakeDatabase:
    def __init__(self, tags=None):
        self.stored = dict(tags or {})

    def tags(self, repo):
        return list(self.stored.get(repo, []))


class ExtremePolicer:
    def __init__(self, order):
        self.order = order

    def latest(self, versions):
        if not versions:
            raise ValueError("version list argument cannot be empty")
        return max(versions) if self.order == "asc" else min(versions)


def policer_from_spec(choice):
    if choice.semver is not None:
        raise ValueError(f"improper constraint: {choice.semver.range}")
    if choice.alphabetical is not None:
        return ExtremePolicer(choice.alphabetical.order)
    raise ValueError("given policy is not supported")


class RegexTagFilter:
    def __init__(self, pattern, extract):
        try:
            self.regex = re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"invalid regular expression pattern '{pattern}': {exc}") from exc
        self.template = re.sub(r"\$(\d+)", r"\\\1", extract)
        self.mapping = {}

    def apply(self, tags):
        for tag in tags:
            match = self.regex.search(tag)
            if match:
                key = match.expand(self.template) if self.template else tag
                self.mapping[key] = tag

    def items(self):
        return list(self.mapping)

    def original_tag(self, tag):
        return self.mapping[tag]


class CountingFetcher:
    def __init__(self, digest=DIGEST):
        self.calls = 0
        self.digest = digest

    def __call__(self, repository, policy, tag):
        self.calls += 1
        return self.digest


class RecordingTokenCache:
    def __init__(self):
        self.deleted = []

    def delete_events_for_object(self, kind, name, namespace, operation):
        self.deleted.append((kind, name, namespace, operation))


def make_repository(name="repo", namespace="default", image=IMAGE, **spec):
    repo = ImageRepository(
        spec=ImageRepositorySpec(image=image, interval=timedelta(seconds=2), **spec),
        metadata=ObjectMeta(name=name, namespace=namespace),
    )
    repo.status.canonical_image_name = image
    return repo


def make_policy(name="policy", namespace="default", repo_name="repo", repo_namespace="", choice=None, **spec):
    return ImagePolicy(
        spec=ImagePolicySpec(
            image_repository_ref=NamespacedObjectReference(name=repo_name, namespace=repo_namespace),
            policy=choice or ImagePolicyChoice(alphabetical=AlphabeticalPolicy()),
            **spec,
        ),
        metadata=ObjectMeta(name=name, namespace=namespace, generation=1, finalizers=[IMAGE_FINALIZER]),
    )


def make_reconciler(store, database, **kwargs):
    return ImagePolicyReconciler(
        store=store,
        database=database,
        policer_from_spec=policer_from_spec,
        regex_filter=RegexTagFilter,
        **kwargs,
    )


def condition(policy, kind):
    return find_status_condition(policy.status.conditions, kind)


def test_cross_namespace_refs_disallowed():
    repo = make_repository(
        access_from=AccessFrom([NamespaceSelector({"foo": "bar"})]),
    )
    policy = make_policy(namespace="cross-ns-test", repo_namespace="default",
                         choice=ImagePolicyChoice(semver=SemVerPolicy("1.x")))
    store = FakeStore([repo], namespaces={"cross-ns-test": {"foo": "bar"}})
    reconciler = make_reconciler(
        store, FakeDatabase({IMAGE: ["1.0.1", "1.0.2", "1.1.0-alpha"]}), no_cross_namespace_refs=True
    )
    with pytest.raises(AccessDeniedError):
        reconciler.reconcile(policy)
    ready = condition(policy, READY_CONDITION)
    assert ready.reason == "AccessDenied"
    assert ready.status == ConditionStatus.FALSE
    assert ready.message.startswith("failed to get the referred ImageRepository: cannot access")
    assert condition(policy, RECONCILING_CONDITION).reason == "ProgressingWithRetry"


def test_alphabetical_policy_selects_latest():
    repo = make_repository()
    policy = make_policy()
    policy.metadata.generation = 3
    database = FakeDatabase({IMAGE: ["xenial", "yakkety", "zesty", "artful", "bionic"]})
    result = make_reconciler(FakeStore([repo]), database).reconcile(policy)
    assert result == ReconcileResult()
    assert str(policy.status.latest_ref) == IMAGE + ":zesty"
    assert policy.status.latest_image == IMAGE + ":zesty"
    assert policy.status.observed_previous_image == ""
    assert policy.status.observed_previous_ref is None
    ready = condition(policy, READY_CONDITION)
    assert ready.status == ConditionStatus.TRUE
    assert ready.reason == "Succeeded"
    assert ready.message == f"Latest image tag for {IMAGE} resolved to zesty"
    assert condition(policy, RECONCILING_CONDITION) is None
    assert condition(policy, STALLED_CONDITION) is None
    assert policy.status.observed_generation == 3


def test_invalid_policy_stalls():
    repo = make_repository()
    policy = make_policy(choice=ImagePolicyChoice(semver=SemVerPolicy("*-*")))
    database = FakeDatabase({IMAGE: ["0.1.0", "1.0.2"]})
    result = make_reconciler(FakeStore([repo]), database).reconcile(policy)
    assert result == ReconcileResult()
    ready = condition(policy, READY_CONDITION)
    assert ready.status == ConditionStatus.FALSE
    assert "InvalidPolicy" in ready.reason
    assert condition(policy, STALLED_CONDITION).status == ConditionStatus.TRUE
    assert policy.status.latest_ref is None


VERSIONS = ["test-0.1.0", "test-0.1.1", "dev-0.2.0", "1.0.0", "1.0.1", "1.0.2", "1.1.0-alpha"]


def test_filter_tags_valid_regex():
    repo = make_repository()
    policy = make_policy(filter_tags=TagFilter(pattern="^test-(.*)$", extract="$1"))
    make_reconciler(FakeStore([repo]), FakeDatabase({IMAGE: VERSIONS})).reconcile(policy)
    assert str(policy.status.latest_ref) == IMAGE + ":test-0.1.1"


def test_filter_tags_invalid_regex():
    repo = make_repository()
    policy = make_policy(filter_tags=TagFilter(pattern="^test-(.*", extract="$1"))
    make_reconciler(FakeStore([repo]), FakeDatabase({IMAGE: VERSIONS})).reconcile(policy)
    ready = condition(policy, READY_CONDITION)
    assert ready.status == ConditionStatus.FALSE
    assert "invalid regular expression pattern" in ready.message


@pytest.mark.parametrize(
    "access_from, policy_namespace, namespace_labels, accessible",
    [
        (None, "default", None, True),
        (None, "acl-a", {"tenant": "a", "env": "test"}, False),
        (AccessFrom([NamespaceSelector({})]), "acl-b", {}, True),
        (AccessFrom([NamespaceSelector({"tenant": "b", "env": "test"})]), "acl-c",
         {"tenant": "b", "env": "test"}, True),
        (AccessFrom([NamespaceSelector({"tenant": "b", "env": "test"})]), "acl-d",
         {"tenant": "a", "env": "test"}, False),
    ],
)
def test_access_image_repository(access_from, policy_namespace, namespace_labels, accessible):
    repo = make_repository(access_from=access_from)
    namespaces = {"default": {}}
    if namespace_labels is not None:
        namespaces[policy_namespace] = namespace_labels
    policy = make_policy(namespace=policy_namespace, repo_namespace="default")
    reconciler = make_reconciler(FakeStore([repo], namespaces=namespaces), FakeDatabase({IMAGE: ["1.0.0", "1.0.1"]}))
    if accessible:
        reconciler.reconcile(policy)
        assert str(policy.status.latest_ref) == IMAGE + ":1.0.1"
    else:
        with pytest.raises(AccessDeniedError):
            reconciler.reconcile(policy)
        assert condition(policy, READY_CONDITION).reason == "AccessDenied"


def test_no_tags_marks_dependency_not_ready():
    repo = make_repository()
    policy = make_policy()
    result = make_reconciler(FakeStore([repo]), FakeDatabase()).reconcile(policy)
    assert result == ReconcileResult()
    ready = condition(policy, READY_CONDITION)
    assert ready.status == ConditionStatus.FALSE
    assert ready.reason == "DependencyNotReady"
    assert ready.message == "no tags in database"


def test_missing_repository():
    policy = make_policy()
    with pytest.raises(NotFoundError, match="referenced ImageRepository does not exist"):
        make_reconciler(FakeStore(), FakeDatabase()).reconcile(policy)
    assert condition(policy, READY_CONDITION).reason == "DependencyNotReady"


def test_first_reconcile_adds_finalizer():
    policy = make_policy()
    policy.metadata.finalizers.clear()
    result = make_reconciler(FakeStore(), FakeDatabase()).reconcile(policy)
    assert result == ReconcileResult(requeue=True)
    assert policy.metadata.finalizers == [IMAGE_FINALIZER]


def test_delete_removes_finalizer_and_cache_entries():
    cache = RecordingTokenCache()
    policy = make_policy(name="pol", namespace="ns")
    policy.metadata.deletion_timestamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
    result = make_reconciler(FakeStore(), FakeDatabase(), token_cache=cache).reconcile(policy)
    assert result == ReconcileResult()
    assert policy.metadata.finalizers == []
    assert cache.deleted == [("ImagePolicy", "pol", "ns", "reconcile")]


def test_digest_if_not_present_fetched_once():
    fetcher = CountingFetcher()
    repo = make_repository()
    policy = make_policy(digest_reflection_policy=ReflectionPolicy.IF_NOT_PRESENT)
    reconciler = make_reconciler(FakeStore([repo]), FakeDatabase({IMAGE: ["a", "b"]}), digest_fetcher=fetcher)
    reconciler.reconcile(policy)
    reconciler.reconcile(policy)
    assert fetcher.calls == 1
    assert str(policy.status.latest_ref) == f"{IMAGE}:b@{DIGEST}"
    assert condition(policy, READY_CONDITION).message == (
        f"Latest image tag for {IMAGE} resolved to b with digest {DIGEST}"
    )


def test_digest_always_requeues_after_interval():
    fetcher = CountingFetcher()
    repo = make_repository()
    policy = make_policy(digest_reflection_policy=ReflectionPolicy.ALWAYS, interval=timedelta(minutes=10))
    reconciler = make_reconciler(FakeStore([repo]), FakeDatabase({IMAGE: ["a", "b"]}), digest_fetcher=fetcher)
    first = reconciler.reconcile(policy)
    reconciler.reconcile(policy)
    assert first == ReconcileResult(requeue_after=timedelta(minutes=10))
    assert fetcher.calls == 2


def test_digest_always_without_interval_stalls():
    repo = make_repository()
    policy = make_policy(digest_reflection_policy=ReflectionPolicy.ALWAYS)
    result = make_reconciler(FakeStore([repo]), FakeDatabase({IMAGE: ["a"]})).reconcile(policy)
    assert result == ReconcileResult()
    assert condition(policy, STALLED_CONDITION).reason == "IntervalNotConfigured"
    assert condition(policy, READY_CONDITION).status == ConditionStatus.FALSE


def test_digest_fetch_failure():
    def failing(repository, policy, tag):
        raise RuntimeError("registry unavailable")

    repo = make_repository()
    policy = make_policy(digest_reflection_policy=ReflectionPolicy.IF_NOT_PRESENT)
    reconciler = make_reconciler(FakeStore([repo]), FakeDatabase({IMAGE: ["a"]}), digest_fetcher=failing)
    with pytest.raises(RuntimeError, match="failed fetching digest of"):
        reconciler.reconcile(policy)
    ready = condition(policy, READY_CONDITION)
    assert ready.status == ConditionStatus.FALSE
    assert ready.reason == "Failure"
    assert condition(policy, RECONCILING_CONDITION).reason == "ProgressingWithRetry"


def test_new_tag_records_previous():
    repo = make_repository()
    database = FakeDatabase({IMAGE: ["a", "b"]})
    policy = make_policy()
    reconciler = make_reconciler(FakeStore([repo]), database)
    reconciler.reconcile(policy)
    database.stored[IMAGE].append("c")
    reconciler.reconcile(policy)
    assert policy.status.observed_previous_ref == ImageRef(IMAGE, "b")
    assert policy.status.observed_previous_image == f"{IMAGE}:b"
    assert policy.status.latest_ref == ImageRef(IMAGE, "c")
    assert condition(policy, READY_CONDITION).message == (
        f"Latest image tag for {IMAGE} resolved to c (previously {IMAGE}:b)"
    )


def test_feature_gate_for_service_account():
    repo = make_repository(provider="aws", service_account_name="sa")
    database = FakeDatabase({IMAGE: ["a"]})
    policy = make_policy()
    make_reconciler(FakeStore([repo]), database).reconcile(policy)
    assert condition(policy, READY_CONDITION).reason == "FeatureGateDisabled"

    enabled = make_policy()
    make_reconciler(FakeStore([repo]), database, object_level_workload_identity=True).reconcile(enabled)
    assert enabled.status.latest_ref == ImageRef(IMAGE, "a")


def test_invalid_image_stalls():
    def validator(image, insecure):
        raise ValueError("could not parse reference")

    repo = make_repository()
    policy = make_policy()
    make_reconciler(FakeStore([repo]), FakeDatabase({IMAGE: ["a"]}), image_validator=validator).reconcile(policy)
    stalled = condition(policy, STALLED_CONDITION)
    assert stalled.reason == "ImageURLInvalid"
    assert stalled.message == "could not parse reference"


def test_compose_ready_message_with_digests():
    policy = make_policy()
    policy.status.latest_ref = ImageRef("img", "1.0", "sha256:abc")
    policy.status.observed_previous_ref = ImageRef("img", "0.9", "sha256:def")
    assert compose_ready_message(policy) == (
        "Latest image tag for img resolved to 1.0 with digest sha256:abc (previously img:0.9@sha256:def)"
    )
    policy.status.observed_previous_ref = ImageRef("img", "1.0", "sha256:abc")
    assert compose_ready_message(policy) == "Latest image tag for img resolved to 1.0 with digest sha256:abc"


def test_migrate_image_to_ref():
    assert migrate_image_to_ref("localhost:5000/app:v1", None) == ImageRef("localhost:5000/app", "v1")
    existing = ImageRef("other", "v2")
    assert migrate_image_to_ref("localhost:5000/app:v1", existing) is existing
    assert migrate_image_to_ref("", None) is None
    with pytest.raises(ValueError):
        migrate_image_to_ref("notag", None)


def test_image_repository_changed():
    old = make_repository()
    new = make_repository()
    assert image_repository_changed(None, new) is False
    assert image_repository_changed(old, new) is False
    new.status.last_scan_result = ScanResult(tag_count=1, revision="r1")
    assert image_repository_changed(old, new) is True
    old.status.last_scan_result = ScanResult(tag_count=1, revision="r1")
    assert image_repository_changed(old, new) is False
    new.status.last_scan_result = ScanResult(tag_count=2, revision="r2")
    assert image_repository_changed(old, new) is True


def test_repository_index_key_and_policies_for_repository():
    local = make_policy(name="local", namespace="default")
    remote = make_policy(name="remote", namespace="other", repo_namespace="default")
    unrelated = make_policy(name="unrelated", namespace="other")
    assert repository_index_key(local) == "default/repo"
    assert repository_index_key(remote) == "default/repo"
    assert repository_index_key(unrelated) == "other/repo"

    store = FakeStore(policies=[local, remote, unrelated])
    reconciler = make_reconciler(store, FakeDatabase())
    assert reconciler.policies_for_repository(make_repository()) == [("default", "local"), ("other", "remote")]