from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
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

_FETCH_DB = "SELECT 1 FROM pg_database WHERE datname = :db"
_CREATE_DB = "CREATE DATABASE {db}"
_USER_EXISTS = "SELECT 1 FROM pg_roles WHERE rolname = :user"
_CREATE_USER = "CREATE ROLE {user} LOGIN PASSWORD {password}"
_SHOW_GRANTS = (
    "SELECT has_database_privilege(rolname, CAST(:db AS text), 'create') "
    "FROM pg_roles WHERE rolcanlogin AND rolname = :user"
)
_SHOW_OWNERSHIP = (
    "SELECT 't' FROM pg_catalog.pg_database AS d "
    "WHERE d.datname = :db AND pg_catalog.pg_get_userbyid(d.datdba) = :user"
)
_SHOW_TABLE_OWNERSHIP = "SELECT 't' FROM pg_tables WHERE tableowner = :user AND tablename = :table"
_KINE_TABLE_EXISTS = "SELECT 't' FROM pg_tables WHERE schemaname = :schema AND tablename = :table"
_GRANT = "GRANT CONNECT, CREATE ON DATABASE {db} TO {user}"
_CHANGE_OWNER = "ALTER DATABASE {db} OWNER TO {user}"
_CHANGE_TABLE_OWNER = "ALTER TABLE kine OWNER TO {user}"
_REVOKE = "REVOKE ALL PRIVILEGES ON DATABASE {db} FROM {user}"
_DROP_ROLE = "DROP ROLE {user}"
_DROP_DB = "DROP DATABASE {db} WITH (FORCE)"
_PING = "SELECT 1"

_KINE_TABLE = "kine"
_NOT_EXISTS = "does not exist"


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    # Utility statements take no bind parameters.
    return "'" + value.replace("'", "''") + "'"


class PostgreSQLConnection:
    driver = Driver.POSTGRESQL

    def __init__(
        self,
        config: ConnectionConfig,
        engine_factory: Callable[[str], AsyncEngine] | None = None,
    ) -> None:
        if not config.endpoints:
            raise ConfigurationError("PostgreSQL connection requires at least one endpoint")
        self._config = config
        self._endpoint = config.endpoints[0]
        self._engine_factory = engine_factory or self._create_engine
        self._engine: AsyncEngine | None = None
        # The DataStore admin account regains ownership before a database drop.
        self._root_user = config.user

    def _create_engine(self, database: str) -> AsyncEngine:
        settings = get_settings()
        url = URL.create(
            "postgresql+asyncpg",
            username=self._config.user or None,
            password=self._config.password or None,
            host=self._endpoint.host,
            port=self._endpoint.port,
            database=database or None,
            query=self._config.parameters,
        )
        connect_args: dict[str, Any] = {"timeout": settings.datastore_connect_timeout_s}
        ssl_context = self._config.ssl_context()
        if ssl_context is not None:
            connect_args["ssl"] = ssl_context
        return create_async_engine(
            url,
            poolclass=NullPool,
            isolation_level="AUTOCOMMIT",
            connect_args=connect_args,
        )

    def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = self._engine_factory(self._config.db_name)
        return self._engine

    @asynccontextmanager
    async def _database_engine(self, database: str) -> AsyncIterator[AsyncEngine]:
        # Table ownership can only be inspected or changed from inside the tenant database.
        engine = self._engine_factory(database)
        try:
            yield engine
        finally:
            await engine.dispose()

    @staticmethod
    async def _fetch(engine: AsyncEngine, statement: str, **params: Any) -> list[Any]:
        async with engine.connect() as conn:
            result = await conn.execute(text(statement), params)
            return list(result.fetchall())

    @staticmethod
    async def _exec(engine: AsyncEngine, statement: str, **params: Any) -> None:
        async with engine.connect() as conn:
            await conn.execute(text(statement), params)

    async def _kine_table_exists(self, engine: AsyncEngine) -> bool:
        rows = await self._fetch(engine, _KINE_TABLE_EXISTS, schema="public", table=_KINE_TABLE)
        return bool(rows) and rows[0][0] == "t"

    async def connect(self) -> None:
        self._get_engine()

    async def create_user(self, user: str, password: str) -> None:
        statement = _CREATE_USER.format(user=quote_identifier(user), password=quote_literal(password))
        try:
            await self._exec(self._get_engine(), statement)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_CREATE_USER, exc) from exc

    async def create_db(self, db_name: str) -> None:
        try:
            await self._exec(self._get_engine(), _CREATE_DB.format(db=quote_identifier(db_name)))
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_CREATE_DB, exc) from exc

    async def grant_privileges(self, user: str, db_name: str) -> None:
        db, role = quote_identifier(db_name), quote_identifier(user)
        try:
            await self._exec(self._get_engine(), _GRANT.format(db=db, user=role))
            async with self._database_engine(db_name) as engine:
                await self._exec(engine, _CHANGE_OWNER.format(db=db, user=role))
                if await self._kine_table_exists(engine):
                    await self._exec(engine, _CHANGE_TABLE_OWNER.format(user=role))
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_GRANT, exc) from exc

    async def user_exists(self, user: str) -> bool:
        try:
            rows = await self._fetch(self._get_engine(), _USER_EXISTS, user=user)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_USER_EXISTS, exc) from exc
        return bool(rows)

    async def db_exists(self, db_name: str) -> bool:
        try:
            rows = await self._fetch(self._get_engine(), _FETCH_DB, db=db_name)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_DB_EXISTS, exc) from exc
        return bool(rows)

    async def grant_privileges_exists(self, user: str, db_name: str) -> bool:
        try:
            privilege = await self._fetch(self._get_engine(), _SHOW_GRANTS, db=db_name, user=user)
        except SQLAlchemyError as exc:
            if _NOT_EXISTS in str(exc):
                return False
            raise ConnectivityError(OP_GRANT_EXISTS, exc) from exc

        try:
            owner = await self._fetch(self._get_engine(), _SHOW_OWNERSHIP, db=db_name, user=user)
            has_privilege = bool(privilege) and bool(privilege[0][0])
            is_owner = bool(owner)
            async with self._database_engine(db_name) as engine:
                if not await self._kine_table_exists(engine):
                    return has_privilege and is_owner
                table_owner = await self._fetch(engine, _SHOW_TABLE_OWNERSHIP, user=user, table=_KINE_TABLE)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_GRANT_EXISTS, exc) from exc
        return has_privilege and is_owner and bool(table_owner)

    async def delete_user(self, user: str) -> None:
        try:
            await self._exec(self._get_engine(), _DROP_ROLE.format(user=quote_identifier(user)))
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_DELETE_USER, exc) from exc

    async def delete_db(self, db_name: str) -> None:
        try:
            await self.grant_privileges(self._root_user, db_name)
        except ConnectivityError as exc:
            raise ConnectivityError(OP_DELETE_DB, f"cannot grant privileges to root user: {exc}") from exc
        try:
            await self._exec(self._get_engine(), _DROP_DB.format(db=quote_identifier(db_name)))
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_DELETE_DB, exc) from exc

    async def revoke_privileges(self, user: str, db_name: str) -> None:
        statement = _REVOKE.format(db=quote_identifier(db_name), user=quote_identifier(user))
        try:
            await self._exec(self._get_engine(), statement)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_REVOKE, exc) from exc

    async def check(self) -> None:
        try:
            await self._fetch(self._get_engine(), _PING)
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_CHECK, exc) from exc

    def get_connection_string(self) -> str:
        return str(self._endpoint)

    async def migrate(self, tenant: TenantControlPlane, target: StorageConnection) -> None:
        raise MigrationNotSupportedError("data migration is not supported for the PostgreSQL driver")

    async def close(self) -> None:
        if self._engine is None:
            return
        try:
            await self._engine.dispose()
        except SQLAlchemyError as exc:
            raise ConnectivityError(OP_CLOSE, exc) from exc
        finally:
            self._engine = None
