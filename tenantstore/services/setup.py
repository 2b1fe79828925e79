from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from tenantstore.core.errors import ConfigurationError, NotFoundError
from tenantstore.domain.models import OperationResult, TenantControlPlane, merge_results
from tenantstore.persistence.kube import KubeClient
from tenantstore.persistence.repos.secrets import get_secret_data
from tenantstore.providers.datastore.base import StorageConnection, tenant_schema, tenant_user
from tenantstore.services.storage_config import KEY_PASSWORD, KEY_SCHEMA, KEY_USER, config_secret_name
from tenantstore.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)


class SetupState(str, Enum):
    MISSING = "missing"
    CURRENT = "current"
    STALE = "stale"


def setup_state(tenant: TenantControlPlane) -> SetupState:
    storage = tenant.status.storage
    if not storage.setup.checksum:
        return SetupState.MISSING
    if storage.setup.checksum == storage.config.checksum:
        return SetupState.CURRENT
    return SetupState.STALE


@dataclass(frozen=True)
class SetupResource:
    schema: str
    user: str
    password: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SetupService:
    """Idempotent provisioning of the tenant database, user and grant."""

    def __init__(self, kube: KubeClient, *, metrics: MetricsRegistry) -> None:
        self._kube = kube
        self._metrics = metrics

    async def load_resource(self, tenant: TenantControlPlane) -> SetupResource:
        name = tenant.status.storage.config.secret_name or config_secret_name(tenant)
        try:
            data = await get_secret_data(self._kube, namespace=tenant.namespace, name=name)
        except NotFoundError as exc:
            raise ConfigurationError(f"credential secret {tenant.namespace}/{name} does not exist") from exc
        missing = [key for key in (KEY_SCHEMA, KEY_USER, KEY_PASSWORD) if key not in data]
        if missing:
            raise ConfigurationError(f"credential secret {tenant.namespace}/{name} misses {', '.join(missing)}")
        return SetupResource(
            schema=data[KEY_SCHEMA].decode("utf-8"),
            user=data[KEY_USER].decode("utf-8"),
            password=data[KEY_PASSWORD].decode("utf-8"),
        )

    async def _create_missing(self, conn: StorageConnection, resource: SetupResource) -> OperationResult:
        # Probe each step first so a rerun after partial failure only does what is left.
        result = OperationResult.NONE
        if not await conn.db_exists(resource.schema):
            await conn.create_db(resource.schema)
            result = merge_results(result, OperationResult.CREATED)
        if not await conn.user_exists(resource.user):
            await conn.create_user(resource.user, resource.password)
            result = merge_results(result, OperationResult.CREATED)
        if not await conn.grant_privileges_exists(resource.user, resource.schema):
            await conn.grant_privileges(resource.user, resource.schema)
            result = merge_results(result, OperationResult.CREATED)
        return result

    async def _teardown(self, conn: StorageConnection, schema: str, user: str) -> None:
        if await conn.grant_privileges_exists(user, schema):
            await conn.revoke_privileges(user, schema)
        if await conn.db_exists(schema):
            await conn.delete_db(schema)
        if await conn.user_exists(user):
            await conn.delete_user(user)

    def _record(self, tenant: TenantControlPlane, resource: SetupResource) -> None:
        setup = tenant.status.storage.setup
        setup.schema_name = resource.schema
        setup.user = resource.user
        setup.checksum = tenant.status.storage.config.checksum
        setup.last_update = _utc_now()

    async def reconcile(self, tenant: TenantControlPlane, conn: StorageConnection) -> OperationResult:
        state = setup_state(tenant)
        if state is SetupState.CURRENT:
            return OperationResult.NONE

        async with self._metrics.timed("setup", "reconcile"):
            resource = await self.load_resource(tenant)
            if state is SetupState.STALE:
                recorded = tenant.status.storage.setup
                # Drop the previously provisioned identity before re-creating it from the new credentials.
                await self._teardown(
                    conn,
                    recorded.schema_name or resource.schema,
                    recorded.user or resource.user,
                )
                await self._create_missing(conn, resource)
                result = OperationResult.UPDATED
            else:
                result = await self._create_missing(conn, resource)
            self._record(tenant, resource)

        logger.info(
            "datastore_setup_reconciled tenant=%s state=%s result=%s",
            tenant.namespaced_name,
            state.value,
            result.value,
        )
        return result

    async def provision(
        self,
        tenant: TenantControlPlane,
        conn: StorageConnection,
        *,
        record: bool = True,
    ) -> OperationResult:
        async with self._metrics.timed("setup", "provision"):
            resource = await self.load_resource(tenant)
            result = await self._create_missing(conn, resource)
        if record:
            self._record(tenant, resource)
        return result

    async def delete(self, tenant: TenantControlPlane, conn: StorageConnection) -> None:
        async with self._metrics.timed("setup", "delete"):
            await self._teardown(conn, tenant_schema(tenant), tenant_user(tenant))
        logger.info("datastore_setup_deleted tenant=%s", tenant.namespaced_name)
