from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import nats
from nats.errors import Error as NatsError
from nats.js.api import KeyValueConfig
from nats.js.errors import BucketNotFoundError, NoKeysError

from tenantstore.core.config import get_settings
from tenantstore.core.errors import ConfigurationError, ConnectivityError, ConsistencyViolation
from tenantstore.domain.models import Driver, TenantControlPlane
from tenantstore.providers.datastore.base import (
    OP_CHECK,
    OP_CLOSE,
    OP_CREATE_DB,
    OP_DB_EXISTS,
    OP_DELETE_DB,
    OP_MIGRATE,
    OP_OPEN,
    ConnectionConfig,
    StorageConnection,
    tenant_schema,
)


logger = logging.getLogger(__name__)

NatsConnector = Callable[..., Awaitable[Any]]


class NATSConnection:
    """NATS JetStream key-value; one bucket per tenant.

    NATS offers no programmatic user or grant management here, so user and
    privilege operations are no-ops and tenants share the DataStore credentials.
    """

    driver = Driver.NATS

    def __init__(self, config: ConnectionConfig, connector: NatsConnector | None = None) -> None:
        if not config.endpoints:
            raise ConfigurationError("NATS connection requires at least one endpoint")
        self._config = config
        self._connector = connector or nats.connect
        self._nc: Any | None = None
        self._js: Any | None = None

    @property
    def servers(self) -> list[str]:
        return [f"nats://{endpoint}" for endpoint in self._config.endpoints]

    async def connect(self) -> None:
        settings = get_settings()
        options: dict[str, Any] = {
            "servers": self.servers,
            "connect_timeout": settings.datastore_connect_timeout_s,
            "allow_reconnect": False,
        }
        ssl_context = self._config.ssl_context()
        if ssl_context is not None:
            options["tls"] = ssl_context
        if self._config.user and self._config.password:
            options["user"] = self._config.user
            options["password"] = self._config.password
        try:
            self._nc = await self._connector(**options)
        except (NatsError, OSError, TimeoutError) as exc:
            raise ConnectivityError(OP_OPEN, exc) from exc
        self._js = self._nc.jetstream()

    def _jetstream(self) -> Any:
        if self._js is None:
            raise ConnectivityError(OP_CHECK, "NATS connection is not open")
        return self._js

    async def create_user(self, user: str, password: str) -> None:
        return None

    async def create_db(self, db_name: str) -> None:
        try:
            await self._jetstream().create_key_value(config=KeyValueConfig(bucket=db_name))
        except NatsError as exc:
            raise ConnectivityError(OP_CREATE_DB, exc) from exc

    async def grant_privileges(self, user: str, db_name: str) -> None:
        # TODO: scope bucket access per tenant once NATS accounts are provisioned by the operator.
        return None

    async def user_exists(self, user: str) -> bool:
        return True

    async def db_exists(self, db_name: str) -> bool:
        try:
            await self._jetstream().key_value(db_name)
        except BucketNotFoundError:
            return False
        except NatsError as exc:
            raise ConnectivityError(OP_DB_EXISTS, exc) from exc
        return True

    async def grant_privileges_exists(self, user: str, db_name: str) -> bool:
        return True

    async def delete_user(self, user: str) -> None:
        return None

    async def delete_db(self, db_name: str) -> None:
        try:
            await self._jetstream().delete_key_value(db_name)
        except NatsError as exc:
            raise ConnectivityError(OP_DELETE_DB, exc) from exc

    async def revoke_privileges(self, user: str, db_name: str) -> None:
        return None

    async def check(self) -> None:
        if self._nc is None or not self._nc.is_connected:
            raise ConnectivityError(OP_CHECK, "NATS connection is not established")

    def get_connection_string(self) -> str:
        return str(self._config.endpoints[0])

    async def _bucket(self, name: str, *, create: bool = False) -> Any:
        js = self._jetstream()
        try:
            return await js.key_value(name)
        except BucketNotFoundError:
            if not create:
                raise
        return await js.create_key_value(config=KeyValueConfig(bucket=name))

    async def migrate(self, tenant: TenantControlPlane, target: StorageConnection) -> None:
        if not isinstance(target, NATSConnection):
            raise ConsistencyViolation(f"cannot migrate NATS data into a {target.driver.value} DataStore")
        await target.check()

        bucket = tenant_schema(tenant)
        copied = 0
        try:
            source_kv = await self._bucket(bucket)
            target_kv = await target._bucket(bucket, create=True)
            try:
                keys = await source_kv.keys()
            except NoKeysError:
                keys = []
            for key in keys:
                entry = await source_kv.get(key)
                if entry.value is None:
                    continue
                await target_kv.put(key, entry.value)
                copied += 1
        except NatsError as exc:
            raise ConnectivityError(OP_MIGRATE, exc) from exc
        logger.info("nats_migration_copied tenant=%s bucket=%s keys=%s", tenant.namespaced_name, bucket, copied)

    async def close(self) -> None:
        if self._nc is None:
            return
        try:
            await self._nc.drain()
        except (NatsError, OSError) as exc:
            raise ConnectivityError(OP_CLOSE, exc) from exc
        finally:
            self._nc = None
            self._js = None
