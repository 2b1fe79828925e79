from __future__ import annotations

import ssl
from dataclasses import dataclass, field
from typing import Protocol

from tenantstore.domain.models import Driver, TenantControlPlane
from tenantstore.services.crypto.tls import build_ssl_context


# Stable operation verbs carried by ConnectivityError so logs stay driver-agnostic.
OP_OPEN = "open connection"
OP_CREATE_USER = "create user"
OP_CREATE_DB = "create database"
OP_GRANT = "grant privileges"
OP_USER_EXISTS = "check if user exists"
OP_DB_EXISTS = "check if database exists"
OP_GRANT_EXISTS = "check if grant exists"
OP_DELETE_USER = "delete user"
OP_DELETE_DB = "delete database"
OP_REVOKE = "revoke privileges"
OP_CHECK = "check connection"
OP_CLOSE = "close connection"
OP_MIGRATE = "migrate data"


@dataclass(frozen=True)
class ConnectionEndpoint:
    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass
class ConnectionConfig:
    """Material needed to reach one backend, resolved per operation and never persisted."""

    endpoints: list[ConnectionEndpoint]
    user: str = ""
    password: str = ""
    db_name: str = ""
    ca_pem: bytes | None = None
    cert_pem: bytes | None = None
    key_pem: bytes | None = None
    parameters: dict[str, str] = field(default_factory=dict)

    @property
    def tls_enabled(self) -> bool:
        return bool(self.ca_pem or (self.cert_pem and self.key_pem))

    def ssl_context(self) -> ssl.SSLContext | None:
        if not self.tls_enabled:
            return None
        return build_ssl_context(ca_pem=self.ca_pem, cert_pem=self.cert_pem, key_pem=self.key_pem)

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks.
        return (
            f"ConnectionConfig(endpoints={[str(ep) for ep in self.endpoints]}, user={self.user!r}, "
            f"db_name={self.db_name!r}, tls={self.tls_enabled})"
        )


class StorageConnection(Protocol):
    driver: Driver

    async def connect(self) -> None:
        ...

    async def create_user(self, user: str, password: str) -> None:
        ...

    async def create_db(self, db_name: str) -> None:
        ...

    async def grant_privileges(self, user: str, db_name: str) -> None:
        ...

    async def user_exists(self, user: str) -> bool:
        ...

    async def db_exists(self, db_name: str) -> bool:
        ...

    async def grant_privileges_exists(self, user: str, db_name: str) -> bool:
        ...

    async def delete_user(self, user: str) -> None:
        ...

    async def delete_db(self, db_name: str) -> None:
        ...

    async def revoke_privileges(self, user: str, db_name: str) -> None:
        ...

    async def check(self) -> None:
        ...

    def get_connection_string(self) -> str:
        ...

    async def migrate(self, tenant: TenantControlPlane, target: "StorageConnection") -> None:
        ...

    async def close(self) -> None:
        ...


def default_storage_name(tenant: TenantControlPlane) -> str:
    # Dashes are rejected in unquoted PostgreSQL identifiers.
    return f"{tenant.namespace}_{tenant.name}".replace("-", "_")


def tenant_schema(tenant: TenantControlPlane) -> str:
    return (
        tenant.status.storage.setup.schema_name
        or tenant.spec.data_store_schema
        or default_storage_name(tenant)
    )


def tenant_user(tenant: TenantControlPlane) -> str:
    return (
        tenant.status.storage.setup.user
        or tenant.spec.data_store_username
        or default_storage_name(tenant)
    )
