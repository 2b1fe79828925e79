from __future__ import annotations

from typing import Any

from tenantstore.core.config import get_settings
from tenantstore.core.errors import ConfigurationError
from tenantstore.domain.models import TenantControlPlane
from tenantstore.persistence.kube import KubeClient, group_path
from tenantstore.services.resilience import retry_on_conflict


def tenant_path(namespace: str, name: str | None = None) -> str:
    settings = get_settings()
    return group_path(
        settings.crd_group,
        settings.crd_version,
        "tenantcontrolplanes",
        namespace=namespace,
        name=name,
    )


def parse_namespaced_name(value: str) -> tuple[str, str]:
    parts = value.split("/")
    if len(parts) != 2 or not all(parts):
        raise ConfigurationError(
            f"non well-formed namespaced name for the tenant control plane, expected <NAMESPACE>/<NAME>, got {value}"
        )
    return parts[0], parts[1]


def tenant_owner_reference(tenant: TenantControlPlane) -> dict[str, Any]:
    # Generated objects are garbage collected together with their tenant.
    settings = get_settings()
    return {
        "apiVersion": tenant.api_version or f"{settings.crd_group}/{settings.crd_version}",
        "kind": tenant.kind or "TenantControlPlane",
        "name": tenant.name,
        "uid": tenant.metadata.uid or "",
        "controller": True,
        "blockOwnerDeletion": True,
    }


async def get_tenant(kube: KubeClient, namespace: str, name: str) -> TenantControlPlane:
    return TenantControlPlane.model_validate(await kube.get(tenant_path(namespace, name)))


async def update_tenant_status(kube: KubeClient, tenant: TenantControlPlane) -> TenantControlPlane:
    # Status is owned here: on conflict, carry it onto the latest revision.
    async def _attempt() -> TenantControlPlane:
        latest = await get_tenant(kube, tenant.namespace, tenant.name)
        latest.status = tenant.status
        stored = await kube.replace(f"{tenant_path(tenant.namespace, tenant.name)}/status", latest.to_api())
        return TenantControlPlane.model_validate(stored)

    return await retry_on_conflict(_attempt)


async def _set_finalizer(kube: KubeClient, tenant: TenantControlPlane, finalizer: str, *, present: bool) -> TenantControlPlane:
    async def _attempt() -> TenantControlPlane:
        latest = await get_tenant(kube, tenant.namespace, tenant.name)
        finalizers = [item for item in latest.metadata.finalizers if item != finalizer]
        if present:
            finalizers.append(finalizer)
        if finalizers == latest.metadata.finalizers:
            return latest
        latest.metadata.finalizers = finalizers
        stored = await kube.replace(tenant_path(tenant.namespace, tenant.name), latest.to_api())
        return TenantControlPlane.model_validate(stored)

    return await retry_on_conflict(_attempt)


async def add_finalizer(kube: KubeClient, tenant: TenantControlPlane, finalizer: str) -> TenantControlPlane:
    return await _set_finalizer(kube, tenant, finalizer, present=True)


async def remove_finalizer(kube: KubeClient, tenant: TenantControlPlane, finalizer: str) -> TenantControlPlane:
    return await _set_finalizer(kube, tenant, finalizer, present=False)
