from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from tenantstore.domain.models import DataStore, Driver, OperationResult, TenantControlPlane
from tenantstore.persistence.kube import KubeClient, create_or_update
from tenantstore.persistence.repos.secrets import decode_data, encode_data, secrets_path
from tenantstore.persistence.repos.tenants import tenant_owner_reference
from tenantstore.providers.datastore.base import tenant_schema, tenant_user
from tenantstore.services.checksum import CHECKSUM_ANNOTATION, calculate_checksum
from tenantstore.services.content import resolve_content
from tenantstore.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)

CONFIG_SECRET_SUFFIX = "-datastore-config"

KEY_CONNECTION_STRING = "DB_CONNECTION_STRING"
KEY_SCHEMA = "DB_SCHEMA"
KEY_USER = "DB_USER"
KEY_PASSWORD = "DB_PASSWORD"


def config_secret_name(tenant: TenantControlPlane) -> str:
    return f"{tenant.name}{CONFIG_SECRET_SUFFIX}"


def managed_labels(tenant: TenantControlPlane, component: str) -> dict[str, str]:
    return {
        "app.kubernetes.io/managed-by": "tenantstore",
        "tenantstore.io/tenant": tenant.name,
        "tenantstore.io/component": component,
    }


def _stable_password(secret: dict[str, Any]) -> str | None:
    # Reuse the stored password only when the data still matches its recorded checksum.
    current = decode_data(secret)
    annotations = (secret.get("metadata") or {}).get("annotations") or {}
    password = current.get(KEY_PASSWORD)
    if not password or annotations.get(CHECKSUM_ANNOTATION) != calculate_checksum(current):
        return None
    return password.decode("utf-8")


class ConfigService:
    """Maintains the per-tenant credential secret."""

    def __init__(self, kube: KubeClient, *, metrics: MetricsRegistry) -> None:
        self._kube = kube
        self._metrics = metrics

    async def _shared_credentials(self, datastore: DataStore) -> tuple[str, str] | None:
        # NATS tenants authenticate with the DataStore account itself.
        if datastore.driver is not Driver.NATS or datastore.spec.basic_auth is None:
            return None
        username = await resolve_content(self._kube, datastore.spec.basic_auth.username, "basicAuth.username")
        password = await resolve_content(self._kube, datastore.spec.basic_auth.password, "basicAuth.password")
        return username.decode("utf-8"), password.decode("utf-8")

    async def reconcile(
        self,
        tenant: TenantControlPlane,
        datastore: DataStore,
        connection_string: str,
    ) -> OperationResult:
        async with self._metrics.timed("config", "reconcile"):
            shared = await self._shared_credentials(datastore)
            name = config_secret_name(tenant)

            def _mutate(secret: dict[str, Any]) -> None:
                if shared is not None:
                    user, password = shared
                else:
                    user = tenant_user(tenant)
                    password = _stable_password(secret) or str(uuid4())
                data = {
                    KEY_CONNECTION_STRING: connection_string.encode("utf-8"),
                    KEY_SCHEMA: tenant_schema(tenant).encode("utf-8"),
                    KEY_USER: user.encode("utf-8"),
                    KEY_PASSWORD: password.encode("utf-8"),
                }
                metadata = secret.setdefault("metadata", {})
                metadata["annotations"] = {
                    **(metadata.get("annotations") or {}),
                    CHECKSUM_ANNOTATION: calculate_checksum(data),
                }
                metadata["labels"] = {**(metadata.get("labels") or {}), **managed_labels(tenant, "datastore-config")}
                if tenant.metadata.uid:
                    metadata["ownerReferences"] = [tenant_owner_reference(tenant)]
                secret["type"] = "Opaque"
                secret["data"] = encode_data(data)

            result, secret = await create_or_update(
                self._kube,
                secrets_path(tenant.namespace),
                name,
                _mutate,
            )

        storage = tenant.status.storage
        storage.driver = datastore.driver.value
        storage.data_store_name = datastore.name
        storage.config.secret_name = name
        storage.config.checksum = secret["metadata"]["annotations"][CHECKSUM_ANNOTATION]
        if result is not OperationResult.NONE:
            logger.info("datastore_config_reconciled tenant=%s result=%s", tenant.namespaced_name, result.value)
        return result
