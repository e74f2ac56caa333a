"""Kustomization objects, an in-memory object store and source change helpers."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping


class NotFoundError(LookupError):
    """Raised when an object does not exist in the store."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f'{kind} "{namespace}/{name}" not found')


class DependencyCycleError(ValueError):
    """Raised when Kustomizations depend on each other in a cycle."""


class KubeClient:
    """Read access to cluster objects, held as plain dictionaries."""

    def __init__(self, objects: Iterable[Mapping[str, Any]] = ()) -> None:
        self._objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        for obj in objects:
            metadata = obj.get("metadata") or {}
            key = (obj.get("kind", ""), metadata.get("namespace", ""), metadata.get("name", ""))
            self._objects[key] = copy.deepcopy(dict(obj))

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        """Return a copy of the object, or raise NotFoundError."""
        try:
            return copy.deepcopy(self._objects[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(kind, namespace, name) from None


@dataclass
class SourceReference:
    kind: str
    name: str
    namespace: str = ""


@dataclass
class SubstituteReference:
    kind: str
    name: str
    optional: bool = False


@dataclass
class PostBuild:
    substitute: dict[str, str] = field(default_factory=dict)
    substitute_from: list[SubstituteReference] = field(default_factory=list)


@dataclass
class Decryption:
    provider: str = ""
    secret_ref: str | None = None


@dataclass
class Kustomization:
    """The spec and status fields of a Kustomization that the controller uses."""

    name: str
    namespace: str = "default"
    source_ref: SourceReference | None = None
    path: str = "./"
    prune: bool = False
    target_namespace: str = ""
    service_account_name: str = ""
    kubeconfig_secret_ref: str | None = None
    depends_on: list[str] = field(default_factory=list)
    post_build: PostBuild | None = None
    decryption: Decryption | None = None
    patches: list[dict[str, Any]] = field(default_factory=list)
    patches_strategic_merge: list[Any] = field(default_factory=list)
    patches_json6902: list[dict[str, Any]] = field(default_factory=list)
    images: list[dict[str, Any]] = field(default_factory=list)
    last_attempted_revision: str = ""


@dataclass
class Artifact:
    revision: str
    url: str = ""
    path: str = ""
    checksum: str = ""


@dataclass
class Source:
    kind: str
    name: str
    namespace: str = "default"
    artifact: Artifact | None = None


def index_by(kind: str) -> Callable[[Kustomization], list[str]]:
    """Return an indexer giving the 'namespace/name' of a source of the given kind."""

    def index(obj: Kustomization) -> list[str]:
        if not isinstance(obj, Kustomization):
            raise TypeError(f"Expected a Kustomization, got {type(obj).__name__}")
        ref = obj.source_ref
        if ref is not None and ref.kind == kind:
            namespace = ref.namespace or obj.namespace
            return [f"{namespace}/{ref.name}"]
        return []

    return index


def _dependency_key(owner: Kustomization, reference: str) -> tuple[str, str]:
    namespace, sep, name = reference.partition("/")
    if not sep:
        return owner.namespace, reference
    return namespace or owner.namespace, name


def sort_by_dependencies(kustomizations: Iterable[Kustomization]) -> list[Kustomization]:
    """Order Kustomizations so that each comes after those it depends on.

    Dependencies outside the given collection are ignored; ties keep input order.
    """
    pending = list(kustomizations)
    present = {(k.namespace, k.name) for k in pending}
    emitted: set[tuple[str, str]] = set()
    ordered: list[Kustomization] = []
    while pending:
        for candidate in pending:
            deps = {_dependency_key(candidate, d) for d in candidate.depends_on} & present
            if deps <= emitted:
                break
        else:
            names = ", ".join(f"{k.namespace}/{k.name}" for k in pending)
            raise DependencyCycleError(f"circular dependency detected among: {names}")
        pending.remove(candidate)
        emitted.add((candidate.namespace, candidate.name))
        ordered.append(candidate)
    return ordered


def requests_for_revision_change(
    source: Source, kustomizations: Iterable[Kustomization], index_key: str
) -> list[tuple[str, str]]:
    """Return (namespace, name) of Kustomizations to reconcile after a source change.

    index_key is the source kind the Kustomizations are indexed by.
    """
    if source.artifact is None:
        return []
    key = f"{source.namespace}/{source.name}"
    index = index_by(index_key)
    candidates = [
        k
        for k in kustomizations
        if key in index(k) and k.last_attempted_revision != source.artifact.revision
    ]
    try:
        ordered = sort_by_dependencies(candidates)
    except DependencyCycleError:
        return []
    return [(k.namespace, k.name) for k in ordered]


def source_revision_changed(old: Source | None, new: Source | None) -> bool:
    """Report whether an update of a source brings a new artifact revision."""
    if old is None or new is None:
        return False
    if old.artifact is None and new.artifact is not None:
        return True
    return (
        old.artifact is not None
        and new.artifact is not None
        and old.artifact.revision != new.artifact.revision
    )