from __future__ import annotations

import logging

from tenantstore.core.errors import (
    ConfigurationError,
    MigrationInProgressError,
    NotFoundError,
    TenantStoreError,
)
from tenantstore.domain.models import DataStore, TenantControlPlane, VersionStatus
from tenantstore.persistence.kube import KubeClient
from tenantstore.persistence.repos.datastores import add_used_by, get_datastore, remove_used_by
from tenantstore.persistence.repos.tenants import add_finalizer, remove_finalizer, update_tenant_status
from tenantstore.providers.datastore.factory import ConnectionFactory, new_storage_connection, open_storage_connection
from tenantstore.services.certificate import CertificateService
from tenantstore.services.connection import build_connection_config
from tenantstore.services.migrate import (
    ABORT_MIGRATION_ANNOTATION,
    MigrateService,
    TenantClusterFactory,
    validate_migration,
)
from tenantstore.services.multitenancy import check_multi_tenancy
from tenantstore.services.setup import SetupService
from tenantstore.services.storage_config import ConfigService
from tenantstore.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)

DATASTORE_FINALIZER = "finalizer.tenantstore.io/datastore"


class StorageReconciler:
    """Storage pass for one tenant: Config, Setup and Certificate, or a migration."""

    def __init__(
        self,
        kube: KubeClient,
        *,
        metrics: MetricsRegistry,
        connection_factory: ConnectionFactory = new_storage_connection,
        tenant_cluster_factory: TenantClusterFactory | None = None,
    ) -> None:
        self._kube = kube
        self._metrics = metrics
        self._connection_factory = connection_factory
        self._config = ConfigService(kube, metrics=metrics)
        self._setup = SetupService(kube, metrics=metrics)
        self._certificate = CertificateService(kube, metrics=metrics)
        self._migrate = MigrateService(kube, tenant_cluster_factory, metrics=metrics)

    async def reconcile(self, tenant: TenantControlPlane) -> TenantControlPlane:
        if tenant.metadata.deletion_timestamp is not None:
            await self.delete(tenant)
            return tenant

        desired = tenant.spec.data_store
        if not desired:
            raise ConfigurationError(f"tenant {tenant.namespaced_name} does not reference any DataStore")
        bound = tenant.status.storage.data_store_name
        if bound and bound != desired:
            return await self._reconcile_migration(tenant, bound, desired)

        # Register the finalizer before touching the backend so deletion always tears down.
        await add_finalizer(self._kube, tenant, DATASTORE_FINALIZER)
        datastore = await get_datastore(self._kube, desired)
        version = tenant.status.kubernetes.version
        if version.status is VersionStatus.MIGRATING:
            # A completed migration left its freeze policy and Job behind.
            await self._migrate.cleanup(tenant, desired)
            version.status = VersionStatus.READY

        await self._sync(tenant, datastore)
        await add_used_by(self._kube, datastore.name, tenant.namespaced_name)
        return await update_tenant_status(self._kube, tenant)

    async def _sync(self, tenant: TenantControlPlane, datastore: DataStore, *, rebind: bool = False) -> None:
        async with self._metrics.timed("storage", "sync"):
            check_multi_tenancy(datastore, tenant)
            config = await build_connection_config(self._kube, datastore)
            try:
                async with open_storage_connection(datastore.driver, config, factory=self._connection_factory) as conn:
                    await self._config.reconcile(tenant, datastore, conn.get_connection_string())
                    if rebind:
                        # The data was copied by the migration Job; only create what is missing.
                        await self._setup.provision(tenant, conn)
                    else:
                        await self._setup.reconcile(tenant, conn)
                    await self._certificate.reconcile(tenant, datastore)
            except TenantStoreError as exc:
                logger.warning(
                    "datastore_storage_sync_failed tenant=%s datastore=%s error=%s",
                    tenant.namespaced_name,
                    datastore.name,
                    exc,
                )
                raise

    async def _reconcile_migration(self, tenant: TenantControlPlane, bound: str, desired: str) -> TenantControlPlane:
        origin = await get_datastore(self._kube, bound)
        target = await get_datastore(self._kube, desired)
        validate_migration(tenant, origin, target)
        version = tenant.status.kubernetes.version

        if ABORT_MIGRATION_ANNOTATION in tenant.metadata.annotations:
            await self._migrate.cleanup(tenant, desired)
            version.status = VersionStatus.READY
            logger.warning(
                "datastore_migration_aborted tenant=%s origin=%s target=%s",
                tenant.namespaced_name,
                origin.name,
                target.name,
            )
            # The origin keeps serving the tenant until spec.dataStore points back at it.
            await self._sync(tenant, origin)
            await add_used_by(self._kube, origin.name, tenant.namespaced_name)
            return await update_tenant_status(self._kube, tenant)

        check_multi_tenancy(target, tenant)
        target_config = await build_connection_config(self._kube, target)
        async with open_storage_connection(target.driver, target_config, factory=self._connection_factory) as conn:
            await self._setup.provision(tenant, conn, record=False)

        try:
            await self._migrate.ensure(tenant, desired)
        except MigrationInProgressError:
            if version.status is not VersionStatus.MIGRATING:
                version.status = VersionStatus.MIGRATING
                await update_tenant_status(self._kube, tenant)
            raise

        await self._sync(tenant, target, rebind=True)
        tenant = await update_tenant_status(self._kube, tenant)
        await self._migrate.cleanup(tenant, desired)
        tenant.status.kubernetes.version.status = VersionStatus.READY
        tenant = await update_tenant_status(self._kube, tenant)

        await remove_used_by(self._kube, origin.name, tenant.namespaced_name)
        await add_used_by(self._kube, target.name, tenant.namespaced_name)
        logger.info(
            "datastore_migration_finished tenant=%s origin=%s target=%s",
            tenant.namespaced_name,
            origin.name,
            target.name,
        )
        return tenant

    async def _teardown(self, tenant: TenantControlPlane, name: str) -> None:
        try:
            datastore = await get_datastore(self._kube, name)
        except NotFoundError:
            logger.warning("datastore_missing_on_delete tenant=%s datastore=%s", tenant.namespaced_name, name)
            return
        config = await build_connection_config(self._kube, datastore)
        async with open_storage_connection(datastore.driver, config, factory=self._connection_factory) as conn:
            await self._setup.delete(tenant, conn)
        await remove_used_by(self._kube, datastore.name, tenant.namespaced_name)

    async def delete(self, tenant: TenantControlPlane) -> None:
        """Tear the tenant storage down and release the finalizer."""
        bound = tenant.status.storage.data_store_name
        desired = tenant.spec.data_store
        if bound and desired and bound != desired:
            # An unfinished migration left its Job and the target identity behind.
            # The freeze policy goes away with the tenant cluster itself.
            await self._migrate.delete_job(tenant, desired)
            await self._teardown(tenant, desired)
        name = bound or desired
        if name:
            await self._teardown(tenant, name)
        await remove_finalizer(self._kube, tenant, DATASTORE_FINALIZER)
