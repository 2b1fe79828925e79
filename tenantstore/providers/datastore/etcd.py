from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from tenantstore.core.config import get_settings
from tenantstore.core.errors import ConfigurationError, ConnectivityError, ConsistencyViolation
from tenantstore.domain.models import Driver, TenantControlPlane
from tenantstore.providers.datastore.base import (
    OP_CHECK,
    OP_CLOSE,
    OP_CREATE_USER,
    OP_DB_EXISTS,
    OP_DELETE_DB,
    OP_DELETE_USER,
    OP_GRANT,
    OP_GRANT_EXISTS,
    OP_MIGRATE,
    OP_OPEN,
    OP_REVOKE,
    OP_USER_EXISTS,
    ConnectionConfig,
    StorageConnection,
    tenant_schema,
)


logger = logging.getLogger(__name__)

_USER_NOT_FOUND = "user name not found"
_ROLE_NOT_FOUND = "role name not found"
_ROLE_EXISTS = "role name already exists"
_RANGE_PAGE_SIZE = 500


class EtcdRequestError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(message)


def _b64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _unb64(value: str | None) -> bytes:
    return base64.b64decode(value) if value else b""


def build_key(name: str) -> bytes:
    # Trailing slash keeps /cp-a/ from covering /cp-aa/ once the range end is derived.
    return f"/{name}/".encode("utf-8")


def prefix_range_end(prefix: bytes) -> bytes:
    """Smallest key greater than every key starting with prefix."""
    end = bytearray(prefix)
    for index in range(len(end) - 1, -1, -1):
        if end[index] < 0xFF:
            end[index] += 1
            return bytes(end[: index + 1])
    # All 0xff: range to the end of the keyspace.
    return b"\x00"


class EtcdConnection:
    """etcd v3 through its JSON gateway; tenants are key prefixes guarded by per-tenant roles."""

    driver = Driver.ETCD

    def __init__(self, config: ConnectionConfig, client: httpx.AsyncClient | None = None) -> None:
        if not config.endpoints:
            raise ConfigurationError("etcd connection requires at least one endpoint")
        self._config = config
        self._client = client
        self._token: str | None = None
        scheme = "https" if config.tls_enabled else "http"
        self._base_urls = [f"{scheme}://{endpoint}" for endpoint in config.endpoints]

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            settings = get_settings()
            verify: Any = self._config.ssl_context() or True
            self._client = httpx.AsyncClient(
                verify=verify,
                timeout=httpx.Timeout(
                    settings.datastore_request_timeout_s,
                    connect=settings.datastore_connect_timeout_s,
                ),
            )
        return self._client

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        # Walk the endpoint list until one answers at the transport level.
        client = self._get_client()
        headers = {"Authorization": self._token} if self._token else None
        last_error: Exception | None = None
        for base_url in self._base_urls:
            try:
                response = await client.post(f"{base_url}{path}", json=payload, headers=headers)
            except httpx.TransportError as exc:
                logger.warning("etcd_endpoint_unreachable endpoint=%s error=%s", base_url, exc)
                last_error = exc
                continue
            if response.status_code >= 400:
                try:
                    body = response.json()
                    message = str(body.get("message") or body.get("error") or body)
                except ValueError:
                    message = response.text
                raise EtcdRequestError(response.status_code, message)
            return response.json() if response.content else {}
        raise EtcdRequestError(503, f"no etcd endpoint reachable: {last_error}")

    async def connect(self) -> None:
        # Basic auth is exchanged for a simple token; mTLS identities need no handshake here.
        if not (self._config.user and self._config.password):
            return
        try:
            payload = await self._post(
                "/v3/auth/authenticate",
                {"name": self._config.user, "password": self._config.password},
            )
        except (EtcdRequestError, httpx.HTTPError) as exc:
            raise ConnectivityError(OP_OPEN, exc) from exc
        self._token = payload.get("token")

    async def create_user(self, user: str, password: str) -> None:
        # Identity comes from the client certificate CN, never from a password.
        try:
            await self._post("/v3/auth/user/add", {"name": user, "options": {"no_password": True}})
        except (EtcdRequestError, httpx.HTTPError) as exc:
            raise ConnectivityError(OP_CREATE_USER, exc) from exc

    async def create_db(self, db_name: str) -> None:
        return None

    async def _add_role(self, role: str) -> None:
        try:
            await self._post("/v3/auth/role/add", {"name": role})
        except EtcdRequestError as exc:
            # Left behind by an earlier pass that failed after adding the role.
            if _ROLE_EXISTS not in str(exc):
                raise

    async def grant_privileges(self, user: str, db_name: str) -> None:
        key = build_key(db_name)
        try:
            await self._add_role(db_name)
            # Granting the same permission and role again replaces them in place.
            await self._post(
                "/v3/auth/role/grant",
                {
                    "name": db_name,
                    "perm": {
                        "permType": "READWRITE",
                        "key": _b64(key),
                        "range_end": _b64(prefix_range_end(key)),
                    },
                },
            )
            await self._post("/v3/auth/user/grant", {"user": user, "role": db_name})
        except (EtcdRequestError, httpx.HTTPError) as exc:
            raise ConnectivityError(OP_GRANT, exc) from exc

    async def user_exists(self, user: str) -> bool:
        try:
            await self._post("/v3/auth/user/get", {"name": user})
        except EtcdRequestError as exc:
            if _USER_NOT_FOUND in str(exc):
                return False
            raise ConnectivityError(OP_USER_EXISTS, exc) from exc
        except httpx.HTTPError as exc:
            raise ConnectivityError(OP_USER_EXISTS, exc) from exc
        return True

    async def db_exists(self, db_name: str) -> bool:
        # A key prefix always exists.
        return True

    async def grant_privileges_exists(self, user: str, db_name: str) -> bool:
        try:
            await self._post("/v3/auth/role/get", {"role": db_name})
            payload = await self._post("/v3/auth/user/get", {"name": user})
        except EtcdRequestError as exc:
            if _ROLE_NOT_FOUND in str(exc) or _USER_NOT_FOUND in str(exc):
                return False
            raise ConnectivityError(OP_GRANT_EXISTS, exc) from exc
        except httpx.HTTPError as exc:
            raise ConnectivityError(OP_GRANT_EXISTS, exc) from exc
        return db_name in (payload.get("roles") or [])

    async def delete_user(self, user: str) -> None:
        try:
            await self._post("/v3/auth/user/delete", {"name": user})
        except (EtcdRequestError, httpx.HTTPError) as exc:
            raise ConnectivityError(OP_DELETE_USER, exc) from exc

    async def delete_db(self, db_name: str) -> None:
        key = build_key(db_name)
        try:
            await self._post(
                "/v3/kv/deleterange",
                {"key": _b64(key), "range_end": _b64(prefix_range_end(key))},
            )
        except (EtcdRequestError, httpx.HTTPError) as exc:
            raise ConnectivityError(OP_DELETE_DB, exc) from exc

    async def revoke_privileges(self, user: str, db_name: str) -> None:
        try:
            await self._post("/v3/auth/role/delete", {"role": db_name})
        except (EtcdRequestError, httpx.HTTPError) as exc:
            raise ConnectivityError(OP_REVOKE, exc) from exc

    async def check(self) -> None:
        try:
            await self._post("/v3/auth/status", {})
        except (EtcdRequestError, httpx.HTTPError) as exc:
            raise ConnectivityError(OP_CHECK, exc) from exc

    def get_connection_string(self) -> str:
        # Kine is not involved for etcd; the API server talks to etcd directly.
        return ""

    async def range_prefix(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        """All key/value pairs under prefix, paging through large keyspaces."""
        range_end = prefix_range_end(prefix)
        start = prefix
        pairs: list[tuple[bytes, bytes]] = []
        while True:
            payload = await self._post(
                "/v3/kv/range",
                {"key": _b64(start), "range_end": _b64(range_end), "limit": _RANGE_PAGE_SIZE},
            )
            kvs = payload.get("kvs") or []
            pairs.extend((_unb64(kv.get("key")), _unb64(kv.get("value"))) for kv in kvs)
            if not payload.get("more") or not kvs:
                return pairs
            start = pairs[-1][0] + b"\x00"

    async def put(self, key: bytes, value: bytes) -> None:
        await self._post("/v3/kv/put", {"key": _b64(key), "value": _b64(value)})

    async def migrate(self, tenant: TenantControlPlane, target: StorageConnection) -> None:
        if not isinstance(target, EtcdConnection):
            raise ConsistencyViolation(f"cannot migrate etcd data into a {target.driver.value} DataStore")
        await target.check()

        prefix = build_key(tenant_schema(tenant))
        try:
            pairs = await self.range_prefix(prefix)
            # Keys are copied verbatim: the API server owns the key layout.
            for key, value in pairs:
                await target.put(key, value)
        except (EtcdRequestError, httpx.HTTPError) as exc:
            raise ConnectivityError(OP_MIGRATE, exc) from exc
        logger.info("etcd_migration_copied tenant=%s keys=%s", tenant.namespaced_name, len(pairs))

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except httpx.HTTPError as exc:
            raise ConnectivityError(OP_CLOSE, exc) from exc
        finally:
            self._client = None
