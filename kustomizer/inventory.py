"""Inventory of applied objects and helpers to list and compare it."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

_FIELD_SEPARATOR = "_"
_COLON_TRANSCODED = "__"

_KIND_ORDER_FIRST = (
    "Namespace",
    "ResourceQuota",
    "StorageClass",
    "CustomResourceDefinition",
    "MutatingWebhookConfiguration",
    "ServiceAccount",
    "PodSecurityPolicy",
    "Role",
    "ClusterRole",
    "RoleBinding",
    "ClusterRoleBinding",
    "ConfigMap",
    "Secret",
    "Service",
    "LimitRange",
    "PriorityClass",
    "Deployment",
    "StatefulSet",
    "CronJob",
    "PodDisruptionBudget",
)
_KIND_ORDER_LAST = ("ValidatingWebhookConfiguration",)
_KIND_INDEX = {
    **{kind: i - len(_KIND_ORDER_FIRST) for i, kind in enumerate(_KIND_ORDER_FIRST)},
    **{kind: 1 + i for i, kind in enumerate(_KIND_ORDER_LAST)},
}


class InventoryError(ValueError):
    """Raised when inventory data cannot be parsed."""


@dataclass(frozen=True)
class ObjMetadata:
    """The identity of an object: namespace, name, API group and kind."""

    namespace: str
    name: str
    group: str
    kind: str

    def __str__(self) -> str:
        name = self.name.replace(":", _COLON_TRANSCODED)
        return _FIELD_SEPARATOR.join((self.namespace, name, self.group, self.kind))

    @classmethod
    def parse(cls, value: str) -> ObjMetadata:
        """Parse the 'namespace_name_group_kind' form produced by str()."""
        namespace, sep, rest = value.partition(_FIELD_SEPARATOR)
        if not sep:
            raise InventoryError(f"unable to parse stored object metadata: {value}")
        head, sep, kind = rest.rpartition(_FIELD_SEPARATOR)
        if not sep:
            raise InventoryError(f"unable to parse stored object metadata: {rest}")
        name, sep, group = head.rpartition(_FIELD_SEPARATOR)
        if not sep:
            raise InventoryError(f"unable to parse stored object metadata: {head}")
        name = name.replace(_COLON_TRANSCODED, ":")
        if _FIELD_SEPARATOR in name:
            raise InventoryError(f"too many fields within: {head}")
        return cls(namespace=namespace, name=name, group=group, kind=kind)


@dataclass
class ResourceRef:
    id: str
    version: str


@dataclass
class ResourceInventory:
    entries: list[ResourceRef] = field(default_factory=list)


@dataclass
class ChangeSetEntry:
    obj_metadata: ObjMetadata
    group_version: str


def parse_group_version(value: str) -> tuple[str, str]:
    """Split an apiVersion into (group, version)."""
    if value in ("", "/"):
        return "", ""
    parts = value.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise InventoryError(f"unexpected GroupVersion string: {value}")


def new_inventory() -> ResourceInventory:
    return ResourceInventory()


def add_objects_to_inventory(
    inv: ResourceInventory, change_set: Iterable[ChangeSetEntry] | None
) -> None:
    """Append the identity of every change set entry to the inventory."""
    if change_set is None:
        return
    inv.entries.extend(
        ResourceRef(id=str(entry.obj_metadata), version=entry.group_version) for entry in change_set
    )


def _sort_key(meta: ObjMetadata) -> tuple[int, str, str, str]:
    group_kind = f"{meta.kind}.{meta.group}" if meta.group else meta.kind
    return _KIND_INDEX.get(meta.kind, 0), group_kind, meta.namespace, meta.name


def _to_object(meta: ObjMetadata, version: str) -> dict[str, Any]:
    metadata: dict[str, str] = {}
    if meta.name:
        metadata["name"] = meta.name
    if meta.namespace:
        metadata["namespace"] = meta.namespace
    api_version = f"{meta.group}/{version}" if meta.group else version
    return {"apiVersion": api_version, "kind": meta.kind, "metadata": metadata}


def _sorted_objects(pairs: Iterable[tuple[ObjMetadata, str]]) -> list[dict[str, Any]]:
    ordered = sorted(pairs, key=lambda pair: _sort_key(pair[0]))
    return [_to_object(meta, version) for meta, version in ordered]


def list_objects_in_inventory(inv: ResourceInventory) -> list[dict[str, Any]]:
    """Return the inventory entries as sorted object stubs."""
    return _sorted_objects((ObjMetadata.parse(e.id), e.version) for e in inv.entries)


def list_meta_in_inventory(inv: ResourceInventory) -> list[ObjMetadata]:
    return [ObjMetadata.parse(e.id) for e in inv.entries]


def diff_inventory(inv: ResourceInventory, target: ResourceInventory) -> list[dict[str, Any]]:
    """Return sorted object stubs of entries in inv that are missing from target."""
    current = list_meta_in_inventory(inv)
    wanted = set(list_meta_in_inventory(target))
    versions: dict[str, str] = {}
    for entry in inv.entries:
        versions.setdefault(entry.id, entry.version)

    missing = [m for m in dict.fromkeys(current) if m not in wanted]
    return _sorted_objects((m, versions.get(str(m), "")) for m in missing)


def reference_to_obj_metadata_set(references: Iterable[Mapping[str, str]]) -> list[ObjMetadata]:
    """Turn object references (apiVersion, kind, name, namespace) into identities."""
    result = []
    for ref in references:
        group, _version = parse_group_version(ref.get("apiVersion") or "apps/v1")
        result.append(
            ObjMetadata(
                namespace=ref.get("namespace") or "",
                name=ref.get("name") or "",
                group=group,
                kind=ref.get("kind") or "",
            )
        )
    return result