from __future__ import annotations

import logging

import pytest

from tenantstore.core.errors import ConfigurationError, ConnectivityError
from tenantstore.domain.models import Driver
from tenantstore.providers.datastore.base import ConnectionConfig, ConnectionEndpoint
from tenantstore.providers.datastore.etcd import EtcdConnection
from tenantstore.providers.datastore.factory import new_storage_connection, open_storage_connection
from tenantstore.providers.datastore.mysql import MySQLConnection
from tenantstore.providers.datastore.nats import NATSConnection
from tenantstore.providers.datastore.postgresql import PostgreSQLConnection


class _RecordingConnection:
    driver = Driver.ETCD

    def __init__(self, *, fail_connect: bool = False, fail_close: bool = False) -> None:
        self.fail_connect = fail_connect
        self.fail_close = fail_close
        self.closed = False

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectivityError("open connection", "refused")

    async def close(self) -> None:
        self.closed = True
        if self.fail_close:
            raise ConnectivityError("close connection", "broken pipe")


def _config() -> ConnectionConfig:
    return ConnectionConfig(endpoints=[ConnectionEndpoint("db", 1234)])


@pytest.mark.parametrize(
    ("driver", "expected"),
    [
        (Driver.ETCD, EtcdConnection),
        (Driver.MYSQL, MySQLConnection),
        (Driver.POSTGRESQL, PostgreSQLConnection),
        (Driver.NATS, NATSConnection),
        ("etcd", EtcdConnection),
    ],
)
def test_factory_maps_drivers_to_connections(driver, expected) -> None:
    assert isinstance(new_storage_connection(driver, _config()), expected)


def test_factory_rejects_unknown_driver() -> None:
    with pytest.raises(ConfigurationError, match="is not a valid driver"):
        new_storage_connection("cockroach", _config())


@pytest.mark.asyncio
async def test_open_connection_closes_after_use_and_on_failure() -> None:
    conn = _RecordingConnection()
    async with open_storage_connection(Driver.ETCD, _config(), factory=lambda driver, config: conn) as opened:
        assert opened is conn
    assert conn.closed is True

    failing = _RecordingConnection(fail_connect=True)
    with pytest.raises(ConnectivityError, match="cannot open connection"):
        async with open_storage_connection(Driver.ETCD, _config(), factory=lambda driver, config: failing):
            pass
    assert failing.closed is True


@pytest.mark.asyncio
async def test_close_failure_does_not_mask_the_outcome(caplog: pytest.LogCaptureFixture) -> None:
    conn = _RecordingConnection(fail_close=True)
    with caplog.at_level(logging.WARNING):
        async with open_storage_connection(Driver.ETCD, _config(), factory=lambda driver, config: conn):
            pass
    assert "datastore_connection_close_failed" in caplog.text

    with pytest.raises(RuntimeError, match="boom"):
        async with open_storage_connection(Driver.ETCD, _config(), factory=lambda driver, config: conn):
            raise RuntimeError("boom")
