from __future__ import annotations

from tenantstore.core.config import get_settings
from tenantstore.domain.models import DataStore
from tenantstore.persistence.kube import KubeClient, group_path
from tenantstore.services.resilience import retry_on_conflict


def datastore_path(name: str | None = None) -> str:
    settings = get_settings()
    return group_path(settings.crd_group, settings.crd_version, "datastores", name=name)


async def get_datastore(kube: KubeClient, name: str) -> DataStore:
    return DataStore.model_validate(await kube.get(datastore_path(name)))


async def list_datastores(kube: KubeClient) -> list[DataStore]:
    return [DataStore.model_validate(item) for item in await kube.list_items(datastore_path())]


async def _update_used_by(kube: KubeClient, name: str, tenant_ref: str, *, present: bool) -> DataStore:
    async def _attempt() -> DataStore:
        datastore = await get_datastore(kube, name)
        used_by = [item for item in datastore.status.used_by if item != tenant_ref]
        if present:
            used_by.append(tenant_ref)
        used_by.sort()
        if used_by == sorted(datastore.status.used_by):
            return datastore
        datastore.status.used_by = used_by
        stored = await kube.replace(f"{datastore_path(name)}/status", datastore.to_api())
        return DataStore.model_validate(stored)

    return await retry_on_conflict(_attempt)


async def add_used_by(kube: KubeClient, name: str, tenant_ref: str) -> DataStore:
    return await _update_used_by(kube, name, tenant_ref, present=True)


async def remove_used_by(kube: KubeClient, name: str, tenant_ref: str) -> DataStore:
    return await _update_used_by(kube, name, tenant_ref, present=False)
