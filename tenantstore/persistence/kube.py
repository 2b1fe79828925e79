from __future__ import annotations

import base64
import copy
import logging
from typing import Any, Callable

import httpx
import yaml

from tenantstore.core.config import get_settings
from tenantstore.core.errors import ConfigurationError, ConflictError, KubeApiError, NotFoundError
from tenantstore.domain.models import OperationResult
from tenantstore.services.crypto.tls import build_ssl_context
from tenantstore.services.resilience import retry_on_conflict


logger = logging.getLogger(__name__)


def core_path(resource: str, *, namespace: str | None = None, name: str | None = None) -> str:
    path = "/api/v1"
    if namespace:
        path += f"/namespaces/{namespace}"
    path += f"/{resource}"
    if name:
        path += f"/{name}"
    return path


def group_path(
    group: str,
    version: str,
    resource: str,
    *,
    namespace: str | None = None,
    name: str | None = None,
) -> str:
    path = f"/apis/{group}/{version}"
    if namespace:
        path += f"/namespaces/{namespace}"
    path += f"/{resource}"
    if name:
        path += f"/{name}"
    return path


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        return str(payload.get("message") or payload)
    return str(payload)


def _raise_for_status(response: httpx.Response) -> None:
    # Map API status codes onto the error taxonomy callers branch on.
    if response.status_code < 400:
        return
    message = _error_message(response)
    if response.status_code == 404:
        raise NotFoundError(404, message)
    if response.status_code == 409:
        raise ConflictError(409, message)
    raise KubeApiError(response.status_code, message)


class KubeClient:
    """Minimal JSON client for the Kubernetes REST API."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @classmethod
    def in_cluster(cls) -> "KubeClient":
        settings = get_settings()
        with open(settings.kube_token_path, encoding="utf-8") as handle:
            token = handle.read().strip()
        client = httpx.AsyncClient(
            base_url=settings.kube_api_url,
            verify=build_ssl_context(ca_pem=_read_bytes(settings.kube_ca_path)),
            headers={"Authorization": f"Bearer {token}"},
            timeout=settings.kube_request_timeout_s,
        )
        return cls(client)

    @classmethod
    def from_kubeconfig(cls, kubeconfig: bytes | str) -> "KubeClient":
        settings = get_settings()
        server, verify, headers = _parse_kubeconfig(kubeconfig)
        client = httpx.AsyncClient(
            base_url=server,
            verify=verify,
            headers=headers,
            timeout=settings.kube_request_timeout_s,
        )
        return cls(client)

    async def __aenter__(self) -> "KubeClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, path: str) -> dict[str, Any]:
        response = await self._client.get(path)
        _raise_for_status(response)
        return response.json()

    async def list_items(self, path: str, *, label_selector: str | None = None) -> list[dict[str, Any]]:
        params = {"labelSelector": label_selector} if label_selector else None
        response = await self._client.get(path, params=params)
        _raise_for_status(response)
        return list(response.json().get("items") or [])

    async def create(self, collection_path: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(collection_path, json=body)
        _raise_for_status(response)
        return response.json()

    async def replace(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.put(path, json=body)
        _raise_for_status(response)
        return response.json()

    async def delete(self, path: str, *, propagation_policy: str | None = None) -> None:
        body = {"propagationPolicy": propagation_policy} if propagation_policy else None
        response = await self._client.request("DELETE", path, json=body)
        _raise_for_status(response)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()


def _b64_field(entry: dict[str, Any], key: str) -> bytes | None:
    value = entry.get(key)
    return base64.b64decode(value) if value else None


def _named(items: list[dict[str, Any]], name: str | None, kind: str) -> dict[str, Any]:
    for item in items or []:
        if name is None or item.get("name") == name:
            return item.get(kind) or {}
    raise ConfigurationError(f"kubeconfig has no {kind} named {name!r}")


def _parse_kubeconfig(kubeconfig: bytes | str) -> tuple[str, Any, dict[str, str]]:
    # Resolve the current context into server URL, TLS verification and auth headers.
    try:
        document = yaml.safe_load(kubeconfig)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"kubeconfig is not valid YAML: {exc}") from exc
    if not isinstance(document, dict):
        raise ConfigurationError("kubeconfig is empty")

    context_name = document.get("current-context")
    context = _named(document.get("contexts") or [], context_name, "context") if context_name else {}
    cluster = _named(document.get("clusters") or [], context.get("cluster"), "cluster")
    user = _named(document.get("users") or [], context.get("user"), "user")

    server = cluster.get("server")
    if not server:
        raise ConfigurationError("kubeconfig cluster has no server")

    headers: dict[str, str] = {}
    if user.get("token"):
        headers["Authorization"] = f"Bearer {user['token']}"

    if cluster.get("insecure-skip-tls-verify"):
        verify: Any = False
    else:
        verify = build_ssl_context(
            ca_pem=_b64_field(cluster, "certificate-authority-data"),
            cert_pem=_b64_field(user, "client-certificate-data"),
            key_pem=_b64_field(user, "client-key-data"),
        )
    return server, verify, headers


async def create_or_update(
    kube: KubeClient,
    collection_path: str,
    name: str,
    mutate: Callable[[dict[str, Any]], None],
) -> tuple[OperationResult, dict[str, Any]]:
    """Read-modify-write a named object, creating it when missing and retrying on conflicts."""
    object_path = f"{collection_path}/{name}"

    async def _attempt() -> tuple[OperationResult, dict[str, Any]]:
        try:
            current = await kube.get(object_path)
        except NotFoundError:
            desired: dict[str, Any] = {"metadata": {"name": name}}
            mutate(desired)
            return OperationResult.CREATED, await kube.create(collection_path, desired)

        desired = copy.deepcopy(current)
        mutate(desired)
        if desired == current:
            return OperationResult.NONE, current
        return OperationResult.UPDATED, await kube.replace(object_path, desired)

    return await retry_on_conflict(_attempt)


async def delete_if_exists(kube: KubeClient, path: str, *, propagation_policy: str | None = None) -> bool:
    try:
        await kube.delete(path, propagation_policy=propagation_policy)
    except NotFoundError:
        return False
    logger.info("kube_object_deleted path=%s", path)
    return True
