# imagereflector

`imagereflector` models image repositories and image policies as
Python dataclasses. It also provides a reconciler that takes the tags
stored for a repository, works out the latest tag for a policy, and
records the result in the policy's status.

## Modules

- `imagereflector.meta`: the shared types.
  - `ObjectMeta` holds the name, namespace, generation, labels,
    finalizers and deletion timestamp. Its methods are `is_deleting`,
    `has_finalizer`, `add_finalizer` and `remove_finalizer`.
  - `Condition` and `ConditionStatus` describe status conditions.
  - `GroupVersion` prints as `group/version`.
  - `NamespacedObjectReference` and `LocalObjectReference` refer to
    other objects.
  - `NamespaceSelector` and `AccessFrom` describe which namespaces may
    refer to an object. `AccessFrom.allows(labels)` is true when any
    selector's `match_labels` are all present in `labels`.
  - Helpers for condition lists: `set_status_condition`,
    `find_status_condition`, `remove_status_condition`,
    `is_status_condition_true` and `is_status_condition_false`. The
    transition time of a condition changes only when its status
    changes.
- `imagereflector.v1beta1`: the older `ImagePolicy` and
  `ImageRepository` resources.
  - `ImageRepository.timeout()` returns the spec timeout, or the
    interval when no timeout is set, and never less than one second.
  - `set_image_policy_readiness` and `set_image_repository_readiness`
    set the `Ready` condition and record the observed generation.
- `imagereflector.v1beta2`: the current resources.
  - `ImageRef` prints as `name:tag`, or as `name:tag@digest` when it
    has a digest.
  - `ReflectionPolicy` has the values `Always`, `IfNotPresent` and
    `Never`.
  - `ImagePolicy.digest_reflection_policy()` returns `Never` when the
    spec leaves it unset. `ImagePolicy.interval()` is zero unless the
    policy is `Always`, and in that case it raises `ValueError` if no
    interval is set.
  - `ImageRepository` has `timeout()`, `exclusion_list()`,
    `provider()` and `requeue_after()`. The default exclusion list is
    `^.*\.sig$` and the default provider is `generic`.
  - `ImageRepositorySpec` raises `ValueError` for an unknown provider,
    for more than 25 exclusion patterns, or for a service account name
    longer than 253 characters.
  - `AlphabeticalPolicy` and `NumericalPolicy` accept only the orders
    `asc` and `desc`.
- `imagereflector.controller`: `ImagePolicyReconciler` and the
  protocols it works with.
  - `ObjectStore` supplies repositories, namespace labels and
    policies.
  - `DatabaseReader` returns stored tags, and `DatabaseWriter` stores
    them.
  - Errors: `NotFoundError`, `AccessDeniedError`,
    `InvalidPolicyError` and `NoTagsInDatabaseError`.
  - Module-level helpers: `image_repository_changed`,
    `repository_index_key`, `compose_ready_message` and
    `migrate_image_to_ref`.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Reconciling a policy

The reconciler does not choose tags by itself. It asks
`policer_from_spec(choice)` for an object whose `latest(tags)` picks a
tag. When the policy has `filter_tags`, it asks
`regex_filter(pattern, extract)` for an object with `apply(tags)`,
`items()` and `original_tag(tag)`. Both factories should raise
`ValueError` when the policy or the pattern cannot be used.

```python
import re

from imagereflector.controller import ImagePolicyReconciler, NotFoundError
from imagereflector.meta import NamespacedObjectReference, ObjectMeta
from imagereflector.v1beta2 import (
    AlphabeticalPolicy, ImagePolicy, ImagePolicyChoice, ImagePolicySpec,
    ImageRepository, ImageRepositorySpec,
)


class Store:
    def __init__(self, repositories):
        self.repositories = repositories

    def get_image_repository(self, namespace, name):
        try:
            return self.repositories[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"{namespace}/{name}") from None

    def namespace_labels(self, namespace):
        return {}

    def list_image_policies(self):
        return []


class Tags:
    def __init__(self, tags_by_repo):
        self.tags_by_repo = tags_by_repo

    def tags(self, repo):
        return self.tags_by_repo.get(repo, [])


class Alphabetical:
    def latest(self, versions):
        return max(versions)


class RegexFilter:
    def __init__(self, pattern, extract):
        self.pattern = re.compile(pattern)
        self.extract = extract
        self.originals = {}

    def apply(self, tags):
        for tag in tags:
            match = self.pattern.search(tag)
            if match:
                self.originals[match.expand(self.extract) if self.extract else tag] = tag

    def items(self):
        return list(self.originals)

    def original_tag(self, tag):
        return self.originals[tag]


repository = ImageRepository(
    metadata=ObjectMeta(name="app", namespace="default"),
    spec=ImageRepositorySpec(image="ghcr.io/example/app"),
)
repository.status.canonical_image_name = "ghcr.io/example/app"

policy = ImagePolicy(
    metadata=ObjectMeta(name="app", namespace="default"),
    spec=ImagePolicySpec(
        image_repository_ref=NamespacedObjectReference(name="app"),
        policy=ImagePolicyChoice(alphabetical=AlphabeticalPolicy()),
    ),
)

reconciler = ImagePolicyReconciler(
    store=Store({("default", "app"): repository}),
    database=Tags({"ghcr.io/example/app": ["xenial", "zesty", "bionic"]}),
    policer_from_spec=lambda choice: Alphabetical(),
    regex_filter=RegexFilter,
)

reconciler.reconcile(policy)           # adds the finalizer, asks to requeue
result = reconciler.reconcile(policy)  # selects the latest tag
print(policy.status.latest_ref)        # ghcr.io/example/app:zesty
```

What `reconcile(policy)` does:

- It changes the policy in place and returns a `ReconcileResult`.
- A policy that is being deleted has its finalizer removed. If a token
  cache is configured, its cached entries are dropped.
- A policy without the finalizer gets it added, and the result asks
  for a requeue.
- A successful run records `latest_ref`, moves the reference it
  replaces into `observed_previous_ref`, and sets `Ready` to true with
  a message such as `Latest image tag for ghcr.io/example/app resolved
  to zesty`.
- An invalid policy or tag filter, an invalid image, or a missing
  interval for the `Always` digest policy marks the policy `Stalled`.
  No error is raised.
- An empty tag list sets `Ready` to false with the reason
  `DependencyNotReady`.
- A repository that is missing or not accessible sets `Ready` to false
  and then raises `NotFoundError` or `AccessDeniedError`.
- Cross-namespace references are checked against the repository's
  `access_from`. They are refused outright when
  `no_cross_namespace_refs` is set.

## What this package does not do

- It does not talk to a container registry. It neither lists tags nor
  fetches digests. Digests come only from the `digest_fetcher`
  callable you supply, and image references are checked only by an
  `image_validator` you supply.
- It includes no semver, alphabetical or numerical tag ordering and no
  regex tag filter. You provide these through `policer_from_spec` and
  `regex_filter`.
- It does not store tags. `DatabaseReader` and `DatabaseWriter` are
  protocols only.
- It has no command-line program and no long-running controller loop.
  You call `reconcile` yourself.