"""Decryption of SOPS-style encrypted resources and Kustomization env sources."""

from __future__ import annotations

import base64
import binascii
import configparser
import enum
import hashlib
import io
import json
import os
import posixpath
import stat
from datetime import datetime, timezone
from typing import Any

import yaml
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from kustomizer.kustfile import recurse_kustomization_files
from kustomizer.kustomization import KubeClient, Kustomization, NotFoundError
from kustomizer.securepath import secure_path_error, secure_paths

DECRYPTION_PROVIDER_SOPS = "sops"
DECRYPTION_PGP_EXT = ".asc"
DECRYPTION_AGE_EXT = ".agekey"
DECRYPTION_VAULT_TOKEN_FILE_NAME = "sops.vault-token"
DECRYPTION_AZURE_AUTH_FILE = "sops.azure-kv"

MAX_ENCRYPTED_FILE_SIZE = 5 << 20

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_HKDF_INFO = b"kustomizer-data-key"
_SOPS_FIELD = DECRYPTION_PROVIDER_SOPS


class SopsFormat(enum.Enum):
    BINARY = "binary"
    DOTENV = "dotenv"
    INI = "INI"
    JSON = "JSON"
    YAML = "YAML"


_MARKERS = {
    SopsFormat.BINARY: b'"mac": "ENC[',
    SopsFormat.DOTENV: b"sops_mac=ENC[",
    SopsFormat.INI: b"[sops]",
    SopsFormat.JSON: b'"mac": "ENC[',
    SopsFormat.YAML: b"mac: ENC[",
}


class DecryptionError(Exception):
    """Raised when keys cannot be imported or data cannot be decrypted."""


def format_for_path(path: str) -> SopsFormat:
    """Return the store format matching the extension of path."""
    ext = posixpath.splitext(path)[1]
    if ext in (".yaml", ".yml"):
        return SopsFormat.YAML
    if ext == ".json":
        return SopsFormat.JSON
    if ext == ".env":
        return SopsFormat.DOTENV
    if ext == ".ini":
        return SopsFormat.INI
    return SopsFormat.BINARY


def is_encrypted_secret(obj: dict[str, Any]) -> bool:
    """Report whether obj is a v1 Secret carrying a 'sops' field."""
    return obj.get("kind") == "Secret" and obj.get("apiVersion") == "v1" and _SOPS_FIELD in obj


def is_sops_encrypted_resource(resource: dict[str, Any] | None) -> bool:
    """Report whether resource has non-empty 'sops' and 'sops.mac' fields."""
    if not resource:
        return False
    sops = resource.get(_SOPS_FIELD)
    if not isinstance(sops, dict) or not sops:
        return False
    return bool(sops.get("mac"))


# --- cipher -----------------------------------------------------------------

def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _encrypt_value(value: Any, key: bytes, aad: str) -> str:
    if isinstance(value, bool):
        kind, text = "bool", "True" if value else "False"
    elif isinstance(value, int):
        kind, text = "int", str(value)
    elif isinstance(value, float):
        kind, text = "float", repr(value)
    else:
        kind, text = "str", str(value)
    iv = os.urandom(32)
    sealed = AESGCM(key).encrypt(iv, text.encode(), aad.encode())
    return (
        f"ENC[AES256_GCM,data:{_b64(sealed[:-16])},iv:{_b64(iv)},"
        f"tag:{_b64(sealed[-16:])},type:{kind}]"
    )


def _decrypt_value(value: str, key: bytes, aad: str) -> Any:
    if not (value.startswith("ENC[AES256_GCM,") and value.endswith("]")):
        raise DecryptionError(f"input string {value} does not match sops' data format")
    fields = dict(part.split(":", 1) for part in value[15:-1].split(","))
    try:
        data = base64.b64decode(fields["data"])
        iv = base64.b64decode(fields["iv"])
        tag = base64.b64decode(fields["tag"])
        kind = fields["type"]
    except (KeyError, binascii.Error) as err:
        raise DecryptionError(f"malformed encrypted value: {err}") from err
    try:
        text = AESGCM(key).decrypt(iv, data + tag, aad.encode()).decode()
    except InvalidTag as err:
        raise DecryptionError("could not decrypt with AES_GCM") from err
    if kind == "int":
        return int(text)
    if kind == "float":
        return float(text)
    if kind == "bool":
        return text == "True"
    return text


def _plain_bytes(value: Any) -> bytes:
    if isinstance(value, bool):
        return b"True" if value else b"False"
    return str(value).encode()


def _walk(tree: Any, path: tuple[str, ...], transform, digest) -> Any:
    if isinstance(tree, dict):
        return {k: _walk(v, path + (str(k),), transform, digest) for k, v in tree.items()}
    if isinstance(tree, list):
        return [_walk(v, path, transform, digest) for v in tree]
    if tree is None:
        return None
    aad = "".join(p + ":" for p in path)
    return transform(tree, aad, digest)


def _encrypt_tree(tree: dict[str, Any], key: bytes) -> tuple[dict[str, Any], str]:
    digest = hashlib.sha512()

    def transform(value, aad, dig):
        dig.update(_plain_bytes(value))
        return _encrypt_value(value, key, aad)

    return _walk(tree, (), transform, digest), digest.hexdigest().upper()


def _decrypt_tree(tree: dict[str, Any], key: bytes) -> tuple[dict[str, Any], str]:
    digest = hashlib.sha512()

    def transform(value, aad, dig):
        plain = _decrypt_value(value, key, aad) if isinstance(value, str) else value
        dig.update(_plain_bytes(plain))
        return plain

    return _walk(tree, (), transform, digest), digest.hexdigest().upper()


# --- data key wrapping ------------------------------------------------------

def _derive(shared: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_HKDF_INFO).derive(shared)


def _raw_public(key: X25519PublicKey) -> bytes:
    return key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def _wrap_data_key(recipient: str, data_key: bytes) -> str:
    try:
        public = X25519PublicKey.from_public_bytes(base64.b64decode(recipient))
    except (ValueError, binascii.Error) as err:
        raise DecryptionError(f"invalid recipient '{recipient}': {err}") from err
    ephemeral = X25519PrivateKey.generate()
    wrapped = AESGCM(_derive(ephemeral.exchange(public))).encrypt(bytes(12), data_key, None)
    return _b64(_raw_public(ephemeral.public_key()) + wrapped)


def _unwrap_data_key(identity: X25519PrivateKey, enc: str) -> bytes:
    blob = base64.b64decode(enc)
    shared = identity.exchange(X25519PublicKey.from_public_bytes(blob[:32]))
    return AESGCM(_derive(shared)).decrypt(bytes(12), blob[32:], None)


def _parse_identities(text: str) -> list[X25519PrivateKey]:
    identities = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            identities.append(X25519PrivateKey.from_private_bytes(base64.b64decode(line)))
        except (ValueError, binascii.Error) as err:
            raise DecryptionError(f"failed to parse identity: {err}") from err
    return identities


# --- stores -----------------------------------------------------------------

def _flatten_metadata(metadata: dict[str, Any]) -> dict[str, str]:
    return {k: v if isinstance(v, str) else json.dumps(v) for k, v in metadata.items()}


def _unflatten_metadata(flat: dict[str, str]) -> dict[str, Any]:
    result: dict[str, Any] = dict(flat)
    if "age" in result:
        result["age"] = json.loads(result["age"])
    return result


def _parse_dotenv(data: bytes) -> dict[str, Any]:
    tree: dict[str, Any] = {}
    for line in data.decode().splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            raise ValueError(f"invalid dotenv input line: {line}")
        tree[key] = value
    return tree


def _parse_ini(data: bytes) -> dict[str, Any]:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # type: ignore[assignment]
    parser.read_string(data.decode())
    return {section: dict(parser[section]) for section in parser.sections()}


def _emit_ini(tree: dict[str, Any]) -> bytes:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # type: ignore[assignment]
    for section, values in tree.items():
        parser[section] = {k: str(v) for k, v in (values or {}).items()}
    buffer = io.StringIO()
    parser.write(buffer)
    return buffer.getvalue().encode()


def _load_plain(fmt: SopsFormat, data: bytes) -> dict[str, Any]:
    if fmt is SopsFormat.BINARY:
        return {"data": data.decode()}
    if fmt is SopsFormat.DOTENV:
        return _parse_dotenv(data)
    if fmt is SopsFormat.INI:
        return _parse_ini(data)
    loaded = json.loads(data) if fmt is SopsFormat.JSON else yaml.safe_load(data)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError("document is not a mapping")
    return loaded


def _load_encrypted(fmt: SopsFormat, data: bytes) -> tuple[dict[str, Any], dict[str, Any]]:
    if fmt is SopsFormat.DOTENV:
        flat = _parse_dotenv(data)
        meta = {k[5:]: v for k, v in flat.items() if k.startswith("sops_")}
        tree = {k: v for k, v in flat.items() if not k.startswith("sops_")}
        metadata = _unflatten_metadata(meta)
    elif fmt is SopsFormat.INI:
        tree = _parse_ini(data)
        metadata = _unflatten_metadata(tree.pop(_SOPS_FIELD, {}))
    else:
        loaded = json.loads(data) if fmt in (SopsFormat.JSON, SopsFormat.BINARY) else yaml.safe_load(data)
        if not isinstance(loaded, dict):
            raise ValueError("document is not a mapping")
        metadata = loaded.pop(_SOPS_FIELD, None)
        tree = loaded
    if not isinstance(metadata, dict) or not metadata:
        raise ValueError("sops metadata not found")
    return tree, metadata


def _emit_plain(fmt: SopsFormat, tree: dict[str, Any]) -> bytes:
    if fmt is SopsFormat.BINARY:
        return str(tree.get("data", "")).encode()
    if fmt is SopsFormat.DOTENV:
        return "".join(f"{k}={v}\n" for k, v in tree.items()).encode()
    if fmt is SopsFormat.INI:
        return _emit_ini(tree)
    if fmt is SopsFormat.JSON:
        return json.dumps(tree, indent=4).encode()
    return yaml.safe_dump(tree, sort_keys=False, width=2**31 - 1).encode()


def _emit_encrypted(fmt: SopsFormat, tree: dict[str, Any], metadata: dict[str, Any]) -> bytes:
    if fmt is SopsFormat.DOTENV:
        flat = {**tree, **{f"sops_{k}": v for k, v in _flatten_metadata(metadata).items()}}
        return _emit_plain(fmt, flat)
    if fmt is SopsFormat.INI:
        return _emit_ini({**tree, _SOPS_FIELD: _flatten_metadata(metadata)})
    document = {**tree, _SOPS_FIELD: metadata}
    if fmt in (SopsFormat.JSON, SopsFormat.BINARY):
        return json.dumps(document, indent=4).encode()
    return yaml.safe_dump(document, sort_keys=False, width=2**31 - 1).encode()


def _user_error(message: str, err: BaseException) -> DecryptionError:
    return DecryptionError(f"{message}: {err}")


# --- decryptor --------------------------------------------------------------

class KustomizeDecryptor:
    """Performs decryption operations for a Kustomization."""

    def __init__(
        self,
        root: str,
        kustomization: Kustomization,
        max_file_size: int = MAX_ENCRYPTED_FILE_SIZE,
        check_sops_mac: bool = False,
    ) -> None:
        self.root = root
        self.kustomization = kustomization
        self.max_file_size = max_file_size
        self.check_sops_mac = check_sops_mac
        self.identities: list[X25519PrivateKey] = []
        self.pgp_keys: list[bytes] = []
        self.vault_token = str()
        self.azure_config: dict[str, Any] | None = None
        self._key_services: list[X25519PrivateKey] | None = None

    def import_keys(self, client: KubeClient) -> None:
        """Import keys from the Secret referenced by the decryption spec."""
        decryption = self.kustomization.decryption
        if decryption is None or decryption.secret_ref is None:
            return
        provider = decryption.provider
        if provider != DECRYPTION_PROVIDER_SOPS:
            return
        ref_name = f"{self.kustomization.namespace}/{decryption.secret_ref}"
        try:
            key_source = client.get("Secret", self.kustomization.namespace, decryption.secret_ref)
        except NotFoundError:
            raise
        except Exception as err:
            raise DecryptionError(
                f"cannot get {provider} decryption Secret '{ref_name}': {err}"
            ) from err

        for name, raw in (key_source.get("data") or {}).items():
            value = raw if isinstance(raw, bytes) else base64.b64decode(raw)
            ext = posixpath.splitext(name)[1]
            failure = f"failed to import '{name}' data from {provider} decryption Secret '{ref_name}'"
            try:
                if ext == DECRYPTION_PGP_EXT:
                    if b"-----BEGIN PGP" not in value:
                        raise DecryptionError("no armored PGP key block found")
                    self.pgp_keys.append(value)
                elif ext == DECRYPTION_AGE_EXT:
                    self.identities.extend(_parse_identities(value.decode()))
                elif name == DECRYPTION_VAULT_TOKEN_FILE_NAME:
                    self.vault_token = value.decode().strip()
                elif name == DECRYPTION_AZURE_AUTH_FILE:
                    conf = yaml.safe_load(value)
                    if not isinstance(conf, dict):
                        raise DecryptionError("invalid Azure AAD configuration")
                    self.azure_config = conf
            except (DecryptionError, yaml.YAMLError, UnicodeDecodeError) as err:
                raise DecryptionError(f"{failure}: {err}") from err

    def _keys(self) -> list[X25519PrivateKey]:
        if self._key_services is None:
            self._key_services = list(self.identities)
        return self._key_services

    def _data_key(self, metadata: dict[str, Any]) -> bytes:
        failures = []
        for entry in metadata.get("age") or []:
            for identity in self._keys():
                if _b64(_raw_public(identity.public_key())) != entry.get("recipient"):
                    continue
                try:
                    return _unwrap_data_key(identity, entry["enc"])
                except (InvalidTag, ValueError, KeyError) as err:
                    failures.append(str(err))
        detail = "; ".join(failures) or "no identity matches any recipient"
        raise DecryptionError(f"Error getting data key: {detail}")

    def sops_decrypt_with_format(
        self, data: bytes, input_format: SopsFormat, output_format: SopsFormat
    ) -> bytes:
        """Decrypt data in input_format and return it emitted in output_format."""
        try:
            tree, metadata = _load_encrypted(input_format, data)
        except (ValueError, yaml.YAMLError, configparser.Error, UnicodeDecodeError) as err:
            raise _user_error(f"failed to load encrypted {input_format.value} data", err) from err
        try:
            key = self._data_key(metadata)
        except DecryptionError as err:
            raise _user_error("cannot get sops data key", err) from err
        try:
            plain, mac = _decrypt_tree(tree, key)
        except DecryptionError as err:
            raise _user_error("error decrypting sops tree", err) from err

        if self.check_sops_mac:
            try:
                original = _decrypt_value(
                    metadata.get("mac", ""), key, str(metadata.get("lastmodified", ""))
                )
            except DecryptionError as err:
                raise _user_error("failed to verify sops data integrity", err) from err
            if original != mac:
                raise DecryptionError(
                    f"failed to verify sops data integrity: expected mac "
                    f"'{original or 'no MAC'}', got '{mac}'"
                )
        try:
            return _emit_plain(output_format, plain)
        except (TypeError, ValueError, AttributeError) as err:
            raise _user_error(
                f"failed to emit encrypted {input_format.value} file as decrypted "
                f"{output_format.value}",
                err,
            ) from err

    def _sops_encrypt_with_format(
        self, recipients: list[str], data: bytes, input_format: SopsFormat, output_format: SopsFormat
    ) -> bytes:
        """Encrypt plain data for the given recipients."""
        tree = _load_plain(input_format, data)
        key = os.urandom(32)
        encrypted, mac = _encrypt_tree(tree, key)
        last_modified = datetime.now(timezone.utc).strftime(_TIME_FORMAT)
        metadata = {
            "age": [{"recipient": r, "enc": _wrap_data_key(r, key)} for r in recipients],
            "lastmodified": last_modified,
            "mac": _encrypt_value(mac, key, last_modified),
        }
        return _emit_encrypted(output_format, encrypted, metadata)

    def decrypt_resource(self, resource: dict[str, Any] | None) -> dict[str, Any] | None:
        """Decrypt resource in place; return None when there is nothing to do."""
        decryption = self.kustomization.decryption
        if resource is None or decryption is None or not decryption.provider:
            return None
        if decryption.provider != DECRYPTION_PROVIDER_SOPS:
            return None
        metadata = resource.get("metadata") or {}
        ident = f"'{metadata.get('namespace', '')}/{metadata.get('name', '')}'"

        if is_sops_encrypted_resource(resource):
            try:
                out = self.sops_decrypt_with_format(
                    json.dumps(resource).encode(), SopsFormat.JSON, SopsFormat.JSON
                )
            except DecryptionError as err:
                raise DecryptionError(
                    f"failed to decrypt and format {ident} {resource.get('kind')} data: {err}"
                ) from err
            resource.clear()
            resource.update(json.loads(out))
            return resource

        if resource.get("kind") == "Secret":
            data_map = resource.get("data") or {}
            for key, value in list(data_map.items()):
                try:
                    raw = base64.b64decode(value, validate=True)
                except (binascii.Error, ValueError, TypeError):
                    continue
                if _MARKERS[SopsFormat.YAML] in raw or _MARKERS[SopsFormat.JSON] in raw:
                    try:
                        out = self.sops_decrypt_with_format(raw, SopsFormat.YAML, format_for_path(key))
                    except DecryptionError as err:
                        raise DecryptionError(
                            f"failed to decrypt and format {ident} Secret field '{key}': {err}"
                        ) from err
                    data_map[key] = _b64(out)
            if data_map:
                resource["data"] = data_map
            return resource
        return None

    def decrypt_env_sources(self, path: str) -> None:
        """Decrypt secret generator file and env sources below the Kustomization at path."""
        decryption = self.kustomization.decryption
        if decryption is None or decryption.provider != DECRYPTION_PROVIDER_SOPS:
            return
        decrypted: set[str] = set()

        def visit_ref(root: str, base: str, ref: str, fmt: SopsFormat) -> None:
            parts = ref.split("=")
            if len(parts) > 1:
                ref = parts[1]
            if not posixpath.isabs(ref):
                ref = posixpath.join(base, ref)
            absolute, _ = secure_paths(root, ref)
            if absolute in decrypted:
                return
            try:
                self._sops_decrypt_file(absolute, fmt, fmt)
            except OSError as err:
                raise secure_path_error(root, err) from err
            decrypted.add(absolute)

        def visit(root: str, base: str, kus: dict[str, Any]) -> None:
            for gen in kus.get("secretGenerator") or []:
                for file_src in gen.get("files") or []:
                    visit_ref(root, base, file_src, format_for_path(file_src))
                for env_file in gen.get("envs") or []:
                    fmt = format_for_path(env_file)
                    if fmt is SopsFormat.BINARY:
                        fmt = SopsFormat.DOTENV
                    visit_ref(root, base, env_file, fmt)

        recurse_kustomization_files(self.root, path, visit, set())

    def _sops_decrypt_file(self, path: str, input_format: SopsFormat, output_format: SopsFormat) -> None:
        info = os.lstat(path)
        if not stat.S_ISREG(info.st_mode):
            raise DecryptionError("cannot decrypt irregular file as it has file mode type bits set")
        if self.max_file_size > 0 and info.st_size > self.max_file_size:
            raise DecryptionError(
                f"cannot decrypt file with size ({info.st_size} bytes) exceeding limit "
                f"({self.max_file_size})"
            )
        with open(path, "rb") as handle:
            data = handle.read()
        if _MARKERS[input_format] not in data:
            return
        out = self.sops_decrypt_with_format(data, input_format, output_format)
        try:
            with open(path, "wb") as handle:
                handle.write(out)
        except OSError as err:
            raise DecryptionError(
                f"error writing sops decrypted {input_format.value} data to "
                f"{output_format.value} file: {err}"
            ) from err