"""Post-build variable substitution in the style of bash parameter expansion."""

from __future__ import annotations

import base64
import re
from fnmatch import fnmatchcase
from typing import Any, Callable

import yaml

from kustomizer.kustomization import KubeClient, Kustomization, NotFoundError

VARSUB_REGEX = "^[_[:alpha:]][_[:alpha:][:digit:]]*$"
_VAR_NAME = re.compile(r"[_A-Za-z][_A-Za-z0-9]*\Z")
_NAME = re.compile(r"[_A-Za-z][_A-Za-z0-9]*")
_DOLLAR = re.compile(r"\$(\$|[_A-Za-z][_A-Za-z0-9]*|\{)")

SUBSTITUTE_KEY = "kustomize.toolkit.fluxcd.io/substitute"
DISABLED_VALUE = "disabled"

Lookup = Callable[[str], str]


class SubstitutionError(Exception):
    """Raised when variables cannot be loaded or substituted."""


def _closing_brace(text: str, start: int) -> int:
    depth = 1
    for offset, char in enumerate(text[start:]):
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return start + offset
    raise SubstitutionError("missing closing brace")


def _substring(value: str, arg: str) -> str:
    offset_text, _, length_text = arg.partition(":")
    try:
        offset = int(offset_text.strip() or "0")
        length = int(length_text.strip()) if length_text.strip() else None
    except ValueError as err:
        raise SubstitutionError(f"bad substring expression: {arg}") from err
    start = offset if offset >= 0 else max(len(value) + offset, 0)
    result = value[start:]
    if length is not None:
        result = result[:length]
    return result


def _strip_prefix(value: str, pattern: str, longest: bool) -> str:
    cuts = range(len(value), -1, -1) if longest else range(len(value) + 1)
    for cut in cuts:
        if fnmatchcase(value[:cut], pattern):
            return value[cut:]
    return value


def _strip_suffix(value: str, pattern: str, longest: bool) -> str:
    cuts = range(len(value) + 1) if longest else range(len(value), -1, -1)
    for cut in cuts:
        if fnmatchcase(value[cut:], pattern):
            return value[:cut]
    return value


def _replace(value: str, arg: str, mode: str) -> str:
    pattern, _, replacement = arg.partition("/")
    if not pattern:
        return value
    if mode == "all":
        return value.replace(pattern, replacement)
    if mode == "prefix":
        return replacement + value[len(pattern):] if value.startswith(pattern) else value
    if mode == "suffix":
        return value[: -len(pattern)] + replacement if value.endswith(pattern) else value
    return value.replace(pattern, replacement, 1)


def _expand_braced(body: str, lookup: Lookup) -> str:
    if body.startswith("#") and _VAR_NAME.match(body[1:]):
        return str(len(lookup(body[1:])))
    match = _NAME.match(body)
    if match is None:
        raise SubstitutionError(f"bad substitution: ${{{body}}}")
    name = match.group()
    rest = body[match.end():]
    value = lookup(name)
    if not rest:
        return value

    def arg(size: int) -> str:
        return envsubst(rest[size:], lookup)

    for op in (":-", ":=", "-", "="):
        if rest.startswith(op):
            return value if value else arg(len(op))
    for op in (":+", "+"):
        if rest.startswith(op):
            return arg(len(op)) if value else ""
    for op in (":?", "?"):
        if rest.startswith(op):
            if value:
                return value
            message = arg(len(op))
            raise SubstitutionError(message or f"{name}: parameter null or not set")
    if rest.startswith(":"):
        return _substring(value, arg(1))

    two_char = {
        "^^": lambda: value.upper(),
        ",,": lambda: value.lower(),
        "##": lambda: _strip_prefix(value, arg(2), longest=True),
        "%%": lambda: _strip_suffix(value, arg(2), longest=True),
        "//": lambda: _replace(value, arg(2), "all"),
        "/#": lambda: _replace(value, arg(2), "prefix"),
        "/%": lambda: _replace(value, arg(2), "suffix"),
    }
    one_char = {
        "^": lambda: value[:1].upper() + value[1:],
        ",": lambda: value[:1].lower() + value[1:],
        "#": lambda: _strip_prefix(value, arg(1), longest=False),
        "%": lambda: _strip_suffix(value, arg(1), longest=False),
        "/": lambda: _replace(value, arg(1), "first"),
    }
    if rest[:2] in two_char:
        return two_char[rest[:2]]()
    if rest[:1] in one_char:
        return one_char[rest[:1]]()
    raise SubstitutionError(f"bad substitution: ${{{body}}}")


def envsubst(text: str, lookup: Lookup) -> str:
    """Expand $var and ${var...} expressions in text using lookup for values."""
    parts: list[str] = []
    pos = 0
    while (match := _DOLLAR.search(text, pos)) is not None:
        parts.append(text[pos:match.start()])
        token = match.group(1)
        if token == "$":
            parts.append("$")
            pos = match.end()
        elif token == "{":
            end = _closing_brace(text, match.end())
            parts.append(_expand_braced(text[match.end():end], lookup))
            pos = end + 1
        else:
            parts.append(lookup(token))
            pos = match.end()
    parts.append(text[pos:])
    return "".join(parts)


def _decode(value: Any) -> str:
    raw = value if isinstance(value, bytes) else base64.b64decode(value)
    return raw.decode("utf-8", errors="replace")


def load_variables(client: KubeClient, kustomization: Kustomization) -> dict[str, str]:
    """Collect variables from referenced ConfigMaps and Secrets, then inline ones."""
    post_build = kustomization.post_build
    if post_build is None:
        return {}
    variables: dict[str, str] = {}
    for reference in post_build.substitute_from:
        if reference.kind not in ("ConfigMap", "Secret"):
            continue
        try:
            obj = client.get(reference.kind, kustomization.namespace, reference.name)
        except NotFoundError as err:
            if reference.optional:
                continue
            raise SubstitutionError(
                f"substitute from '{reference.kind}/{reference.name}' error: {err}"
            ) from err
        for key, value in (obj.get("data") or {}).items():
            text = value if reference.kind == "ConfigMap" else _decode(value)
            variables[key] = text.replace("\n", "")
    for key, value in post_build.substitute.items():
        variables[key] = value.replace("\n", "")
    return variables


def substitute_variables(
    client: KubeClient, kustomization: Kustomization, resource: dict[str, Any]
) -> dict[str, Any] | None:
    """Replace variables in resource in place and return it.

    Returns None when the resource opts out through its labels or annotations.
    """
    metadata = resource.get("metadata") or {}
    labels = metadata.get("labels") or {}
    annotations = metadata.get("annotations") or {}
    if DISABLED_VALUE in (labels.get(SUBSTITUTE_KEY), annotations.get(SUBSTITUTE_KEY)):
        return None

    variables = load_variables(client, kustomization)
    if not variables:
        return resource

    for name in variables:
        if not _VAR_NAME.match(name):
            raise SubstitutionError(f"'{name}' var name is invalid, must match '{VARSUB_REGEX}'")

    document = yaml.safe_dump(resource, sort_keys=False, width=2**31 - 1)
    try:
        output = envsubst(document, lambda key: variables.get(key, ""))
    except SubstitutionError as err:
        raise SubstitutionError(f"variable substitution failed: {err}") from err
    try:
        result = yaml.safe_load(output)
    except yaml.YAMLError as err:
        raise SubstitutionError(f"YAMLToJSON: {err}") from err
    if not isinstance(result, dict):
        raise SubstitutionError("UnmarshalJSON: substituted document is not an object")
    resource.clear()
    resource.update(result)
    return resource