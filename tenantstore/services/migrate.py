from __future__ import annotations

import functools
import hashlib
import logging
from typing import Any, Awaitable, Callable

from tenantstore.core.config import get_settings
from tenantstore.core.errors import (
    ConfigurationError,
    ConsistencyViolation,
    MigrationInProgressError,
    MigrationNotSupportedError,
    NotFoundError,
)
from tenantstore.domain.models import DataStore, Driver, OperationResult, TenantControlPlane
from tenantstore.persistence.kube import KubeClient, create_or_update, delete_if_exists, group_path
from tenantstore.persistence.repos.secrets import get_secret_data
from tenantstore.services.freeze import install_freeze_policy, remove_freeze_policy
from tenantstore.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)

ABORT_MIGRATION_ANNOTATION = "tenantstore.io/abort-migration"
MIGRATE_CONTAINER = "migrate"
# Drivers whose connection can copy tenant data to another DataStore.
MIGRATABLE_DRIVERS = frozenset({Driver.ETCD, Driver.NATS})

TenantClusterFactory = Callable[[TenantControlPlane], Awaitable[KubeClient]]


def validate_migration(tenant: TenantControlPlane, origin: DataStore, target: DataStore) -> None:
    if origin.driver is not target.driver:
        raise ConsistencyViolation("migration between DataStore with different driver is not supported")
    if origin.name == target.name:
        raise ConsistencyViolation("cannot migrate to the same DataStore")
    if origin.driver not in MIGRATABLE_DRIVERS:
        raise MigrationNotSupportedError(f"data migration is not supported for the {origin.driver.value} driver")


def migration_job_name(tenant: TenantControlPlane, target_name: str) -> str:
    # Deterministic so every pass observes the same Job for a tenant and target.
    digest = hashlib.sha256(f"{tenant.namespaced_name}:{target_name}".encode("utf-8")).hexdigest()
    return f"migrate-{digest[:16]}"


def jobs_path(namespace: str, name: str | None = None) -> str:
    return group_path("batch", "v1", "jobs", namespace=namespace, name=name)


def _job_condition(job: dict[str, Any], condition_type: str) -> bool:
    for condition in (job.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type and condition.get("status") == "True":
            return True
    return False


def job_complete(job: dict[str, Any]) -> bool:
    return _job_condition(job, "Complete")


def job_failed(job: dict[str, Any]) -> bool:
    return _job_condition(job, "Failed")


async def open_tenant_cluster(kube: KubeClient, tenant: TenantControlPlane) -> KubeClient:
    """Build a client for the tenant's own API server from its admin kubeconfig secret."""
    settings = get_settings()
    name = f"{tenant.name}{settings.tenant_kubeconfig_secret_suffix}"
    try:
        data = await get_secret_data(kube, namespace=tenant.namespace, name=name)
    except NotFoundError as exc:
        raise ConfigurationError(f"tenant kubeconfig secret {tenant.namespace}/{name} does not exist") from exc
    kubeconfig = data.get(settings.tenant_kubeconfig_secret_key)
    if not kubeconfig:
        raise ConfigurationError(
            f"tenant kubeconfig secret {tenant.namespace}/{name} has no key {settings.tenant_kubeconfig_secret_key}"
        )
    return KubeClient.from_kubeconfig(kubeconfig)


class MigrateService:
    """Drives the write-freeze and the migration Job for one tenant."""

    def __init__(
        self,
        kube: KubeClient,
        tenant_cluster_factory: TenantClusterFactory | None = None,
        *,
        metrics: MetricsRegistry,
    ) -> None:
        self._kube = kube
        self._tenant_cluster_factory = tenant_cluster_factory or functools.partial(open_tenant_cluster, kube)
        self._metrics = metrics

    def _mutate_job(self, tenant: TenantControlPlane, target_name: str) -> Callable[[dict[str, Any]], None]:
        settings = get_settings()
        args = [
            "migrate",
            f"--tenant-control-plane={tenant.namespaced_name}",
            f"--target-datastore={target_name}",
            f"--timeout={settings.migrate_timeout_s}s",
        ]
        labels = {
            "app.kubernetes.io/managed-by": "tenantstore",
            "tenantstore.io/tenant-namespace": tenant.namespace,
            "tenantstore.io/tenant-name": tenant.name,
            "tenantstore.io/target-datastore": target_name,
        }

        def _mutate(job: dict[str, Any]) -> None:
            # Set fields one by one so server-side defaults on the pod template survive.
            metadata = job.setdefault("metadata", {})
            metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
            spec = job.setdefault("spec", {})
            spec["backoffLimit"] = settings.migrate_job_backoff_limit
            pod_spec = spec.setdefault("template", {}).setdefault("spec", {})
            pod_spec["serviceAccountName"] = settings.migrate_service_account
            pod_spec["restartPolicy"] = "OnFailure"
            containers = pod_spec.setdefault("containers", [])
            container = next((item for item in containers if item.get("name") == MIGRATE_CONTAINER), None)
            if container is None:
                container = {"name": MIGRATE_CONTAINER}
                containers.append(container)
            container["image"] = settings.migrate_image
            container["args"] = args

        return _mutate

    async def ensure(self, tenant: TenantControlPlane, target_name: str) -> None:
        """Freeze the tenant cluster and observe the Job; raises MigrationInProgressError until it completes."""
        settings = get_settings()
        name = migration_job_name(tenant, target_name)
        async with self._metrics.timed("migrate", "ensure"):
            tenant_kube = await self._tenant_cluster_factory(tenant)
            async with tenant_kube:
                await install_freeze_policy(tenant_kube)
            result, job = await create_or_update(
                self._kube,
                jobs_path(settings.operator_namespace),
                name,
                self._mutate_job(tenant, target_name),
            )

        if result is not OperationResult.NONE:
            logger.info(
                "datastore_migration_job_applied tenant=%s target=%s job=%s result=%s",
                tenant.namespaced_name,
                target_name,
                name,
                result.value,
            )
            raise MigrationInProgressError(f"migration job {name} has been {result.value}")
        if job_failed(job):
            logger.warning("datastore_migration_job_failed tenant=%s job=%s", tenant.namespaced_name, name)
        if not job_complete(job):
            raise MigrationInProgressError(f"migration job {name} is not completed yet")
        logger.info("datastore_migration_job_completed tenant=%s target=%s", tenant.namespaced_name, target_name)

    async def delete_job(self, tenant: TenantControlPlane, target_name: str) -> None:
        settings = get_settings()
        await delete_if_exists(
            self._kube,
            jobs_path(settings.operator_namespace, migration_job_name(tenant, target_name)),
            propagation_policy="Background",
        )

    async def cleanup(self, tenant: TenantControlPlane, target_name: str) -> None:
        async with self._metrics.timed("migrate", "cleanup"):
            tenant_kube = await self._tenant_cluster_factory(tenant)
            async with tenant_kube:
                await remove_freeze_policy(tenant_kube)
            await self.delete_job(tenant, target_name)
        logger.info("datastore_migration_cleaned_up tenant=%s target=%s", tenant.namespaced_name, target_name)
