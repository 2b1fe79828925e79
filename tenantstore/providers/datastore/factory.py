from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from tenantstore.core.errors import ConfigurationError, ConnectivityError
from tenantstore.domain.models import Driver
from tenantstore.providers.datastore.base import ConnectionConfig, StorageConnection
from tenantstore.providers.datastore.etcd import EtcdConnection
from tenantstore.providers.datastore.mysql import MySQLConnection
from tenantstore.providers.datastore.nats import NATSConnection
from tenantstore.providers.datastore.postgresql import PostgreSQLConnection


logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[Driver, ConnectionConfig], StorageConnection]

_DRIVERS: dict[Driver, Callable[[ConnectionConfig], StorageConnection]] = {
    Driver.ETCD: EtcdConnection,
    Driver.MYSQL: MySQLConnection,
    Driver.POSTGRESQL: PostgreSQLConnection,
    Driver.NATS: NATSConnection,
}


def new_storage_connection(driver: Driver, config: ConnectionConfig) -> StorageConnection:
    try:
        connection_cls = _DRIVERS[Driver(driver)]
    except (KeyError, ValueError) as exc:
        raise ConfigurationError(f"{driver} is not a valid driver") from exc
    return connection_cls(config)


@asynccontextmanager
async def open_storage_connection(
    driver: Driver,
    config: ConnectionConfig,
    *,
    factory: ConnectionFactory = new_storage_connection,
) -> AsyncIterator[StorageConnection]:
    """Open a connection for one operation and always close it afterwards."""
    connection = factory(driver, config)
    try:
        await connection.connect()
        yield connection
    finally:
        try:
            await connection.close()
        except ConnectivityError as exc:
            # Keep the operation's own outcome; a failed close is only reported.
            logger.warning("datastore_connection_close_failed driver=%s error=%s", driver, exc)
