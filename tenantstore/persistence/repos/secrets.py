from __future__ import annotations

import base64
from typing import Any

from tenantstore.persistence.kube import KubeClient, core_path


def secrets_path(namespace: str) -> str:
    return core_path("secrets", namespace=namespace)


def decode_data(secret: dict[str, Any]) -> dict[str, bytes]:
    return {key: base64.b64decode(value) for key, value in (secret.get("data") or {}).items()}


def encode_data(data: dict[str, bytes]) -> dict[str, str]:
    return {key: base64.b64encode(value).decode("ascii") for key, value in data.items()}


async def get_secret(kube: KubeClient, *, namespace: str, name: str) -> dict[str, Any]:
    return await kube.get(core_path("secrets", namespace=namespace, name=name))


async def get_secret_data(kube: KubeClient, *, namespace: str, name: str) -> dict[str, bytes]:
    return decode_data(await get_secret(kube, namespace=namespace, name=name))
