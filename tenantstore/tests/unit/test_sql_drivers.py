from __future__ import annotations

import pytest

from tenantstore.core.errors import ConnectivityError, MigrationNotSupportedError
from tenantstore.domain.models import TenantControlPlane
from tenantstore.providers.datastore.base import ConnectionConfig, ConnectionEndpoint
from tenantstore.providers.datastore.mysql import MySQLConnection
from tenantstore.providers.datastore.postgresql import PostgreSQLConnection
from tenantstore.tests.utils.backends import tenant_body
from tenantstore.tests.utils.sql import FakeSqlServer


def _config(port: int, user: str) -> ConnectionConfig:
    return ConnectionConfig(endpoints=[ConnectionEndpoint("db", port)], user=user, password="rootpw")


def _mysql(server: FakeSqlServer) -> MySQLConnection:
    return MySQLConnection(_config(3306, "root"), engine=server.engine())


def _postgres(server: FakeSqlServer) -> PostgreSQLConnection:
    return PostgreSQLConnection(_config(5432, "postgres"), engine_factory=server.engine)


@pytest.mark.asyncio
async def test_mysql_probes_return_false_on_absence() -> None:
    server = FakeSqlServer(root_user="root")
    conn = _mysql(server)
    await conn.connect()

    assert await conn.db_exists("ns1_cp_a") is False
    assert await conn.user_exists("ns1_cp_a") is False
    # SHOW GRANTS for an unknown account fails with error 1141 instead of returning rows.
    assert await conn.grant_privileges_exists("ns1_cp_a", "ns1_cp_a") is False
    await conn.close()


@pytest.mark.asyncio
async def test_mysql_provision_and_teardown() -> None:
    server = FakeSqlServer(root_user="root")
    conn = _mysql(server)
    await conn.connect()

    await conn.create_db("ns1_cp_a")
    await conn.create_db("ns1_cp_a")
    await conn.create_user("ns1_cp_a", "pw")
    await conn.grant_privileges("ns1_cp_a", "ns1_cp_a")

    assert await conn.db_exists("ns1_cp_a") is True
    assert await conn.user_exists("ns1_cp_a") is True
    assert await conn.grant_privileges_exists("ns1_cp_a", "ns1_cp_a") is True
    assert await conn.grant_privileges_exists("ns1_cp_a", "other") is False
    assert "CREATE USER `ns1_cp_a`@`%` IDENTIFIED BY :password" in server.statements

    await conn.revoke_privileges("ns1_cp_a", "ns1_cp_a")
    await conn.delete_db("ns1_cp_a")
    await conn.delete_user("ns1_cp_a")
    await conn.delete_user("ns1_cp_a")
    assert server.databases == set()
    assert set(server.users) == {"root"}
    assert conn.get_connection_string() == "db:3306"
    await conn.close()


@pytest.mark.asyncio
async def test_mysql_duplicate_user_is_a_connectivity_error() -> None:
    server = FakeSqlServer(root_user="root")
    conn = _mysql(server)
    await conn.create_user("ns1_cp_a", "pw")
    with pytest.raises(ConnectivityError) as exc_info:
        await conn.create_user("ns1_cp_a", "pw")
    assert exc_info.value.operation == "create user"
    await conn.close()


@pytest.mark.asyncio
async def test_postgres_probes_return_false_on_absence() -> None:
    server = FakeSqlServer(root_user="postgres")
    conn = _postgres(server)
    await conn.connect()

    assert await conn.db_exists("ns1_cp_a") is False
    assert await conn.user_exists("ns1_cp_a") is False
    # has_database_privilege raises for a missing database.
    assert await conn.grant_privileges_exists("ns1_cp_a", "ns1_cp_a") is False
    await conn.close()


@pytest.mark.asyncio
async def test_postgres_grant_transfers_database_and_kine_ownership() -> None:
    server = FakeSqlServer(root_user="postgres")
    conn = _postgres(server)
    await conn.connect()

    await conn.create_db("ns1_cp_a")
    await conn.create_user("ns1_cp_a", "it's-a-pw")
    assert server.users["ns1_cp_a"] == "it's-a-pw"
    assert await conn.grant_privileges_exists("ns1_cp_a", "ns1_cp_a") is False

    await conn.grant_privileges("ns1_cp_a", "ns1_cp_a")
    assert server.owners["ns1_cp_a"] == "ns1_cp_a"
    assert await conn.grant_privileges_exists("ns1_cp_a", "ns1_cp_a") is True

    # A kine table created by the tenant API server must be owned by the tenant as well.
    server.kine_tables["ns1_cp_a"] = "postgres"
    assert await conn.grant_privileges_exists("ns1_cp_a", "ns1_cp_a") is False
    await conn.grant_privileges("ns1_cp_a", "ns1_cp_a")
    assert server.kine_tables["ns1_cp_a"] == "ns1_cp_a"
    assert await conn.grant_privileges_exists("ns1_cp_a", "ns1_cp_a") is True
    await conn.close()


@pytest.mark.asyncio
async def test_postgres_delete_db_regains_ownership_first() -> None:
    server = FakeSqlServer(root_user="postgres")
    conn = _postgres(server)
    await conn.create_db("ns1_cp_a")
    await conn.create_user("ns1_cp_a", "pw")
    await conn.grant_privileges("ns1_cp_a", "ns1_cp_a")

    await conn.revoke_privileges("ns1_cp_a", "ns1_cp_a")
    await conn.delete_db("ns1_cp_a")
    await conn.delete_user("ns1_cp_a")

    assert server.databases == set()
    assert "ns1_cp_a" not in server.users
    assert 'ALTER DATABASE "ns1_cp_a" OWNER TO "postgres"' in server.statements
    assert server.statements[-2] == 'DROP DATABASE "ns1_cp_a" WITH (FORCE)'
    await conn.close()


@pytest.mark.asyncio
async def test_sql_drivers_report_unreachable_backends() -> None:
    server = FakeSqlServer(root_user="root", available=False)
    for conn in (_mysql(server), _postgres(server)):
        with pytest.raises(ConnectivityError, match="cannot check connection"):
            await conn.check()
        await conn.close()


@pytest.mark.asyncio
async def test_sql_drivers_do_not_migrate() -> None:
    tenant = TenantControlPlane.model_validate(tenant_body("ns1", "cp-a", "mysql-1"))
    server = FakeSqlServer(root_user="root")
    for conn in (_mysql(server), _postgres(server)):
        with pytest.raises(MigrationNotSupportedError):
            await conn.migrate(tenant, conn)
