"""Generation and amendment of the kustomization.yaml file for a Kustomization."""

from __future__ import annotations

import json
import os
import stat
from typing import Any, Iterable, Mapping

import yaml

from kustomizer.kustfile import (
    KUSTOMIZATION_API_VERSION,
    KUSTOMIZATION_KIND,
    recognized_kustomization_file_names,
)
from kustomizer.kustomization import Kustomization
from kustomizer.securepath import secure_paths

DEFAULT_KUSTOMIZATION_FILE_NAME = "kustomization.yaml"

_SELECTOR_FIELDS = (
    "group",
    "version",
    "kind",
    "name",
    "namespace",
    "labelSelector",
    "annotationSelector",
)


def check_kustomize_image_exists(
    images: Iterable[Mapping[str, Any]], image_name: str
) -> tuple[bool, int]:
    """Return whether an image with image_name is present and its index (-1 if not)."""
    for index, image in enumerate(images):
        if image.get("name") == image_name:
            return True, index
    return False, -1


def adapt_selector(selector: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Turn a Kustomization patch target into a kustomize selector."""
    if selector is None:
        return None
    return {key: selector[key] for key in _SELECTOR_FIELDS if selector.get(key)}


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _dump(document: Mapping[str, Any]) -> bytes:
    return yaml.safe_dump(dict(document), sort_keys=False, width=2**31 - 1).encode()


def _write(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o777)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


def _validate_manifests(contents: bytes, path: str) -> None:
    try:
        documents = list(yaml.safe_load_all(contents))
    except yaml.YAMLError as err:
        raise ValueError(f"failed to decode Kubernetes YAML from {path}: {err}") from err
    for document in documents:
        if document is not None and not isinstance(document, dict):
            raise ValueError(
                f"failed to decode Kubernetes YAML from {path}: document is not a mapping"
            )


class KustomizeGenerator:
    """Writes a kustomization.yaml carrying the Kustomization's overrides."""

    def __init__(self, root: str, kustomization: Kustomization) -> None:
        self.root = os.path.abspath(root)
        self.kustomization = kustomization

    def _secure(self, path: str) -> str:
        return secure_paths(self.root, os.path.abspath(path))[0]

    def _has_kustomization_file(self, directory: str) -> bool:
        for name in recognized_kustomization_file_names():
            candidate = self._secure(os.path.join(directory, name))
            if os.path.exists(candidate) and not os.path.isdir(candidate):
                return True
        return False

    def write_file(self, dir_path: str) -> None:
        """Make sure dir_path holds a kustomization.yaml and apply the spec overrides to it."""
        base = self._secure(dir_path)
        self._generate_kustomization(base)

        kfile = os.path.join(base, DEFAULT_KUSTOMIZATION_FILE_NAME)
        with open(kfile, "rb") as handle:
            loaded = yaml.safe_load(handle.read())
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{kfile}: kustomization file is not a mapping")
        kus: dict[str, Any] = {
            "apiVersion": KUSTOMIZATION_API_VERSION,
            "kind": KUSTOMIZATION_KIND,
            **loaded,
        }

        spec = self.kustomization
        if spec.target_namespace:
            kus["namespace"] = spec.target_namespace

        def append(key: str, item: Any) -> None:
            kus[key] = list(kus.get(key) or []) + [item]

        for patch in spec.patches:
            append(
                "patches",
                {"patch": patch.get("patch", ""), "target": adapt_selector(patch.get("target") or {})},
            )
        for patch in spec.patches_strategic_merge:
            append("patchesStrategicMerge", patch if isinstance(patch, str) else _compact_json(patch))
        for patch in spec.patches_json6902:
            append(
                "patchesJson6902",
                {
                    "patch": _compact_json(patch.get("patch")),
                    "target": adapt_selector(patch.get("target") or {}),
                },
            )

        for image in spec.images:
            new_image = {
                key: image[key] for key in ("name", "newName", "newTag") if image.get(key)
            }
            images = list(kus.get("images") or [])
            exists, index = check_kustomize_image_exists(images, image.get("name", ""))
            if exists:
                images[index] = new_image
            else:
                images.append(new_image)
            kus["images"] = images

        _write(kfile, _dump(kus))

    def _scan(self, base: str) -> list[str]:
        paths: list[str] = []

        def visit(directory: str) -> None:
            for entry in sorted(os.listdir(directory)):
                path = os.path.join(directory, entry)
                info = os.lstat(path)
                if stat.S_ISDIR(info.st_mode):
                    if self._has_kustomization_file(path):
                        paths.append(path)
                    else:
                        visit(path)
                    continue
                if os.path.splitext(path)[1] not in (".yaml", ".yml"):
                    continue
                with open(self._secure(path), "rb") as handle:
                    contents = handle.read()
                _validate_manifests(contents, path)
                paths.append(path)

        visit(base)
        return paths

    def _generate_kustomization(self, base: str) -> None:
        if self._has_kustomization_file(base):
            return
        files = self._scan(base)
        kus: dict[str, Any] = {"apiVersion": KUSTOMIZATION_API_VERSION, "kind": KUSTOMIZATION_KIND}
        resources = ["." + f[len(base):] if f.startswith(base) else f for f in files]
        if resources:
            kus["resources"] = resources
        _write(os.path.join(base, DEFAULT_KUSTOMIZATION_FILE_NAME), _dump(kus))