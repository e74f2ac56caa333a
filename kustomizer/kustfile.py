"""Secure loading of Kustomization files and recursion over their resources."""

from __future__ import annotations

import os
import posixpath
import stat
from typing import Any, Callable

import yaml

from kustomizer.securepath import secure_join, secure_path_error, secure_paths

KUSTOMIZATION_API_VERSION = "kustomize.config.k8s.io/v1beta1"
KUSTOMIZATION_KIND = "Kustomization"

Visit = Callable[[str, str, dict[str, Any]], None]


class KustomizationFileError(Exception):
    """Raised when a Kustomization file cannot be found or loaded."""


class RecurseIgnoreError(Exception):
    """Signals that recursion may skip a reference, e.g. because it does not exist."""

    def __init__(self, err: BaseException | None = None) -> None:
        self.err = err
        super().__init__(str(err) if err is not None else "recurse ignore")


def recognized_kustomization_file_names() -> list[str]:
    return ["kustomization.yaml", "kustomization.yml", "Kustomization"]


def secure_load_kustomization_file(root: str, path: str) -> dict[str, Any]:
    """Load the single Kustomization file in directory path below root."""
    if not posixpath.isabs(root):
        raise KustomizationFileError(f"root '{root}' must be absolute")
    if posixpath.isabs(path):
        raise KustomizationFileError(f"path '{path}' must be relative")

    load_path: str | None = None
    for name in recognized_kustomization_file_names():
        try:
            candidate = secure_join(root, posixpath.join(path, name))
        except OSError as err:
            raise KustomizationFileError(f"failed to secure join {name}: {err}") from err
        try:
            info = os.lstat(candidate)
        except FileNotFoundError:
            continue
        except OSError as err:
            raise KustomizationFileError(
                f"failed to lstat {name}: {secure_path_error(root, err)}"
            ) from err
        if not stat.S_ISREG(info.st_mode):
            raise KustomizationFileError(f"expected {name} to be a regular file")
        if load_path is not None:
            raise KustomizationFileError("found multiple kustomization files")
        load_path = candidate

    if load_path is None:
        raise KustomizationFileError("no kustomization file found")

    try:
        with open(load_path, "rb") as handle:
            data = handle.read()
    except OSError as err:
        raise KustomizationFileError(
            f"failed to read kustomization file: {secure_path_error(root, err)}"
        ) from err

    try:
        loaded = yaml.safe_load(data)
    except yaml.YAMLError as err:
        raise KustomizationFileError(f"failed to unmarshal kustomization file: {err}") from err
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise KustomizationFileError(
            "failed to unmarshal kustomization file: document is not a mapping"
        )
    resources = loaded.get("resources")
    if resources is not None and (
        not isinstance(resources, list) or not all(isinstance(r, str) for r in resources)
    ):
        raise KustomizationFileError(
            "failed to unmarshal kustomization file: resources must be a list of strings"
        )

    return {"apiVersion": KUSTOMIZATION_API_VERSION, "kind": KUSTOMIZATION_KIND, **loaded}


def recurse_kustomization_files(root: str, path: str, visit: Visit, visited: set[str]) -> None:
    """Load and visit the Kustomization at path, then every directory it refers to.

    path may be relative (joined onto root) or absolute (must lie inside root).
    References that do not exist or are not directories are skipped; any other
    error is raised.
    """
    abs_path, rel_path = secure_paths(root, path)
    if abs_path in visited:
        return
    visited.add(abs_path)

    try:
        info = os.lstat(abs_path)
    except OSError as err:
        secured = secure_path_error(root, err)
        if isinstance(err, FileNotFoundError):
            raise RecurseIgnoreError(secured) from err
        if secured is err:
            raise
        raise secured from err
    if not stat.S_ISDIR(info.st_mode):
        raise RecurseIgnoreError(NotADirectoryError("not a directory"))

    kustomization = secure_load_kustomization_file(root, rel_path)
    visit(root, path, kustomization)

    for resource in kustomization.get("resources") or []:
        if not posixpath.isabs(resource):
            resource = posixpath.normpath(posixpath.join(path, resource))
        try:
            recurse_kustomization_files(root, resource, visit, visited)
        except RecurseIgnoreError:
            continue