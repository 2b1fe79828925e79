from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from tenantstore.core.config import get_settings
from tenantstore.core.errors import ConfigurationError, ConnectivityError, MigrationNotSupportedError
from tenantstore.domain.models import Driver, TenantControlPlane
from tenantstore.providers.datastore.base import (
    OP_CHECK,
    OP_CLOSE,
    OP_CREATE_DB,
    OP_CREATE_USER,
    OP_DB_EXISTS,
    OP_DELETE_DB,
    OP_DELETE_USER,
    OP_GRANT,
    OP_GRANT_EXISTS,
    OP_REVOKE,
    OP_USER_EXISTS,
    ConnectionConfig,
    StorageConnection,
)


logger = logging.getLogger(__name__)

_FETCH_USER = "SELECT User FROM mysql.user WHERE User = :user LIMIT 1"
_FETCH_DB = "SELECT SCHEMA_NAME FROM INFORMATION_SCHEMA.SCHEMATA WHERE SCHEMA_NAME = :db LIMIT 1"
_SHOW_GRANTS = "SHOW GRANTS FOR {user}@`%`"
_CREATE_DB = "CREATE DATABASE IF NOT EXISTS {db}"
_CREATE_USER = "CREATE USER {user}@`%` IDENTIFIED BY :password"
_GRANT = "GRANT ALL PRIVILEGES ON {db}.* TO {user}@`%`"
_DROP_DB = "DROP DATABASE IF EXISTS {db}"
_DROP_USER = "DROP USER IF EXISTS {user}"
_REVOKE = "REVOKE ALL PRIVILEGES ON {db}.* FROM {user}"
_PING = "SELECT 1"

# ER_NONEXISTING_GRANT: SHOW GRANTS for an unknown account.
_NONEXISTING_GRANT = 1141


def _mysql_error_code(exc: BaseException) -> int | None:
    orig = getattr(exc, "orig", None)
    args = getattr(orig, "args", ()) or ()
    if args and isinstance(args[0], int):
        return args[0]
    return None


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


class MySQLConnection:
    driver = Driver.MYSQL

    def __init__(self, config: ConnectionConfig, engine: AsyncEngine | None = None) -> None:
        if not config.endpoints:
            raise ConfigurationError("MySQL connection requires at least one endpoint")
        self._config = config
        self._endpoint = config.endpoints[0]
        self._engine = engine

    def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            settings = get_settings()
            url = URL.create(
                "mysql+aiomysql",
                username=self._config.user or None,
                password=self._config.password or None,
                host=self._endpoint.host,
                port=self._endpoint.port,
                database=self._config.db_name or None,
                query=self._config.parameters,
            )
            connect_args: dict[str, Any] = {"connect_timeout": int(settings.datastore_connect_timeout_s)}
            ssl_context = self._config.ssl_context()
            if ssl_context is not None:
                connect_args["ssl"] = ssl_context
            # One short-lived connection per operation: nothing is pooled across reconciles.
            self._engine = create_async_engine(
                url,
                poolclass=NullPool,
                isolation_level="AUTOCOMMIT",
                connect_args=connect_args,
            )
        return self._engine

    async def _fetch(self, statement: str, **params: Any) -> list[Any]:
        async with self._get_engine().connect() as conn:
            result = await conn.execute(text(statement), params)
            return list(result.fetchall())

    async def _exec(self, statement: str, **params: Any) -> None:
        async with self._get_engine().connect() as conn:
            await conn.execute(text(statement), params)

    async def connect(self) -> None:
        self._get_engine()

    async def create_user(self, user: str, password: str) -> None:
        try:
            await self._exec(_CREATE_USER.format(user=quote_identifier(user)), password=password)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_CREATE_USER, exc) from exc

    async def create_db(self, db_name: str) -> None:
        try:
            await self._exec(_CREATE_DB.format(db=quote_identifier(db_name)))
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_CREATE_DB, exc) from exc

    async def grant_privileges(self, user: str, db_name: str) -> None:
        try:
            await self._exec(_GRANT.format(db=quote_identifier(db_name), user=quote_identifier(user)))
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_GRANT, exc) from exc

    async def user_exists(self, user: str) -> bool:
        try:
            rows = await self._fetch(_FETCH_USER, user=user)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_USER_EXISTS, exc) from exc
        return any(row[0] == user for row in rows)

    async def db_exists(self, db_name: str) -> bool:
        try:
            rows = await self._fetch(_FETCH_DB, db=db_name)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_DB_EXISTS, exc) from exc
        return any(row[0] == db_name for row in rows)

    async def grant_privileges_exists(self, user: str, db_name: str) -> bool:
        expected = _GRANT.format(db=quote_identifier(db_name), user=quote_identifier(user))
        try:
            rows = await self._fetch(_SHOW_GRANTS.format(user=quote_identifier(user)))
        except DBAPIError as exc:
            if _mysql_error_code(exc) == _NONEXISTING_GRANT:
                return False
            raise ConnectivityError(OP_GRANT_EXISTS, exc) from exc
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_GRANT_EXISTS, exc) from exc
        return any(row[0] == expected for row in rows)

    async def delete_user(self, user: str) -> None:
        try:
            await self._exec(_DROP_USER.format(user=quote_identifier(user)))
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_DELETE_USER, exc) from exc

    async def delete_db(self, db_name: str) -> None:
        try:
            await self._exec(_DROP_DB.format(db=quote_identifier(db_name)))
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_DELETE_DB, exc) from exc

    async def revoke_privileges(self, user: str, db_name: str) -> None:
        try:
            await self._exec(_REVOKE.format(db=quote_identifier(db_name), user=quote_identifier(user)))
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_REVOKE, exc) from exc

    async def check(self) -> None:
        try:
            await self._fetch(_PING)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_CHECK, exc) from exc

    def get_connection_string(self) -> str:
        return str(self._endpoint)

    async def migrate(self, tenant: TenantControlPlane, target: StorageConnection) -> None:
        raise MigrationNotSupportedError("data migration is not supported for the MySQL driver")

    async def close(self) -> None:
        if self._engine is None:
            return
        try:
            await self._engine.dispose()
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_CLOSE, exc) from exc
        finally:
            self._engine = None
