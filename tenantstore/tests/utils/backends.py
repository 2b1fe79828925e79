from __future__ import annotations

import base64
from typing import Any

from tenantstore.core.config import get_settings
from tenantstore.domain.models import Driver
from tenantstore.persistence.repos.datastores import datastore_path
from tenantstore.persistence.repos.tenants import tenant_path
from tenantstore.providers.datastore.base import ConnectionConfig, StorageConnection
from tenantstore.providers.datastore.etcd import EtcdConnection
from tenantstore.providers.datastore.factory import ConnectionFactory
from tenantstore.providers.datastore.mysql import MySQLConnection
from tenantstore.providers.datastore.nats import NATSConnection
from tenantstore.providers.datastore.postgresql import PostgreSQLConnection
from tenantstore.tests.utils.etcd import FakeEtcdGateway
from tenantstore.tests.utils.kube import FakeKubeApi
from tenantstore.tests.utils.nats import FakeNatsCluster
from tenantstore.tests.utils.sql import FakeSqlServer


def inline(value: bytes | str) -> dict[str, str]:
    raw = value.encode("utf-8") if isinstance(value, str) else value
    return {"content": base64.b64encode(raw).decode("ascii")}


def datastore_body(
    name: str,
    driver: Driver,
    endpoints: list[str],
    *,
    basic_auth: tuple[str, str] | None = None,
    ca: tuple[bytes, bytes | None] | None = None,
    client: tuple[bytes, bytes] | None = None,
    used_by: list[str] | None = None,
) -> dict[str, Any]:
    settings = get_settings()
    spec: dict[str, Any] = {"driver": driver.value, "endpoints": endpoints}
    if basic_auth is not None:
        spec["basicAuth"] = {"username": inline(basic_auth[0]), "password": inline(basic_auth[1])}
    if ca is not None:
        authority: dict[str, Any] = {"certificate": inline(ca[0])}
        if ca[1] is not None:
            authority["privateKey"] = inline(ca[1])
        spec["tlsConfig"] = {"certificateAuthority": authority}
        if client is not None:
            spec["tlsConfig"]["clientCertificate"] = {
                "certificate": inline(client[0]),
                "privateKey": inline(client[1]),
            }
    return {
        "apiVersion": f"{settings.crd_group}/{settings.crd_version}",
        "kind": "DataStore",
        "metadata": {"name": name},
        "spec": spec,
        "status": {"usedBy": list(used_by or [])},
    }


def tenant_body(namespace: str, name: str, data_store: str, **spec: str) -> dict[str, Any]:
    settings = get_settings()
    return {
        "apiVersion": f"{settings.crd_group}/{settings.crd_version}",
        "kind": "TenantControlPlane",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"dataStore": data_store, **spec},
        "status": {},
    }


def seed_datastore(kube_api: FakeKubeApi, body: dict[str, Any]) -> dict[str, Any]:
    return kube_api.seed(datastore_path(), body)


def seed_tenant(kube_api: FakeKubeApi, body: dict[str, Any]) -> dict[str, Any]:
    return kube_api.seed(tenant_path(body["metadata"]["namespace"]), body)


def connection_factory(
    *,
    etcd: FakeEtcdGateway | None = None,
    nats: FakeNatsCluster | None = None,
    sql: dict[str, FakeSqlServer] | None = None,
) -> ConnectionFactory:
    """Driver factory wiring every driver to its in-memory backend."""

    def _factory(driver: Driver, config: ConnectionConfig) -> StorageConnection:
        if driver is Driver.ETCD:
            assert etcd is not None
            return EtcdConnection(config, client=etcd.client())
        if driver is Driver.NATS:
            assert nats is not None
            return NATSConnection(config, connector=nats.connect)
        assert sql is not None
        server = sql[config.endpoints[0].host]
        if driver is Driver.MYSQL:
            return MySQLConnection(config, engine=server.engine())
        return PostgreSQLConnection(config, engine_factory=server.engine)

    return _factory
