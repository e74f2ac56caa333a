"""Selection of the cluster credentials a Kustomization is applied with."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml

from kustomizer.kustomization import KubeClient, Kustomization

_KUBECONFIG_KEYS = ("value", "value.yaml")


@dataclass
class ClientConfig:
    """How to reach the cluster: the default client, or a server with an identity."""

    default: bool = False
    kubeconfig: bytes | None = None
    server: str = ""
    impersonate: str = ""
    options: dict[str, Any] = field(default_factory=dict)


def _named(entries: Any, name: str, what: str) -> dict[str, Any]:
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry.get(what) or {}
    raise ValueError(f'invalid configuration: {what} "{name}" does not exist')


def _server_from_kubeconfig(data: bytes) -> str:
    try:
        conf = yaml.safe_load(data)
    except yaml.YAMLError as err:
        raise ValueError(f"invalid kubeconfig: {err}") from err
    if not isinstance(conf, dict) or not conf.get("current-context"):
        raise ValueError("invalid configuration: no configuration has been provided")
    context = _named(conf.get("contexts"), conf["current-context"], "context")
    cluster_name = context.get("cluster") or ""
    cluster = _named(conf.get("clusters"), cluster_name, "cluster")
    server = cluster.get("server") or ""
    if not server:
        raise ValueError(f'invalid configuration: no server found for cluster "{cluster_name}"')
    return server


class KustomizeImpersonation:
    """Holds the state for impersonating a service account."""

    def __init__(
        self,
        kustomization: Kustomization,
        client: KubeClient,
        default_service_account: str = "",
        kubeconfig_options: Mapping[str, Any] | None = None,
    ) -> None:
        self.kustomization = kustomization
        self.client = client
        self.default_service_account = default_service_account
        self.kubeconfig_options = dict(kubeconfig_options or {})

    def _service_account(self) -> str:
        return self.kustomization.service_account_name or self.default_service_account

    def impersonation_username(self) -> str:
        """Return the user name to impersonate, or an empty string for none."""
        name = self._service_account()
        if not name:
            return ""
        return f"system:serviceaccount:{self.kustomization.namespace}:{name}"

    def get_client(self) -> ClientConfig:
        """Choose the credentials: kubeconfig Secret, service account, or the default client."""
        if self.kustomization.kubeconfig_secret_ref is not None:
            kubeconfig = self.get_kubeconfig()
            return ClientConfig(
                kubeconfig=kubeconfig,
                server=_server_from_kubeconfig(kubeconfig),
                impersonate=self.impersonation_username(),
                options=dict(self.kubeconfig_options),
            )
        if self._service_account():
            return ClientConfig(impersonate=self.impersonation_username())
        return ClientConfig(default=True)

    def can_finalize(self) -> bool:
        """Report whether the service account to impersonate, if any, exists."""
        name = self._service_account()
        if not name:
            return True
        try:
            self.client.get("ServiceAccount", self.kustomization.namespace, name)
        except Exception:
            return False
        return True

    def get_kubeconfig(self) -> bytes:
        """Read the kubeconfig from the Secret referenced by the Kustomization."""
        ref = self.kustomization.kubeconfig_secret_ref or ""
        secret_name = f"{self.kustomization.namespace}/{ref}"
        try:
            secret = self.client.get("Secret", self.kustomization.namespace, ref)
        except Exception as err:
            raise LookupError(
                f"unable to read KubeConfig secret '{secret_name}' error: {err}"
            ) from err

        kubeconfig = b""
        for key, value in (secret.get("data") or {}).items():
            if key in _KUBECONFIG_KEYS:
                kubeconfig = value if isinstance(value, bytes) else base64.b64decode(value)
                break
        if not kubeconfig:
            raise ValueError(
                f"KubeConfig secret '{secret_name}' doesn't contain a 'value' key "
            )
        return kubeconfig