from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from nats.errors import Error as NatsError
from nats.js.errors import BucketNotFoundError, NoKeysError


@dataclass
class FakeEntry:
    key: str
    value: bytes | None


class FakeKeyValue:
    def __init__(self, bucket: str, data: dict[str, bytes]) -> None:
        self.bucket = bucket
        self._data = data

    async def put(self, key: str, value: bytes) -> int:
        self._data[key] = value
        return len(self._data)

    async def get(self, key: str) -> FakeEntry:
        return FakeEntry(key=key, value=self._data.get(key))

    async def keys(self) -> list[str]:
        if not self._data:
            raise NoKeysError()
        return sorted(self._data)


@dataclass
class FakeNatsServer:
    user: str = ""
    password: str = ""
    buckets: dict[str, dict[str, bytes]] = field(default_factory=dict)


class FakeJetStream:
    def __init__(self, server: FakeNatsServer) -> None:
        self._server = server

    async def create_key_value(self, config: Any = None, **params: Any) -> FakeKeyValue:
        bucket = config.bucket if config is not None else params["bucket"]
        data = self._server.buckets.setdefault(bucket, {})
        return FakeKeyValue(bucket, data)

    async def key_value(self, bucket: str) -> FakeKeyValue:
        if bucket not in self._server.buckets:
            raise BucketNotFoundError()
        return FakeKeyValue(bucket, self._server.buckets[bucket])

    async def delete_key_value(self, bucket: str) -> bool:
        if self._server.buckets.pop(bucket, None) is None:
            raise BucketNotFoundError()
        return True


class FakeNatsClient:
    def __init__(self, server: FakeNatsServer) -> None:
        self._server = server
        self.is_connected = True

    def jetstream(self) -> FakeJetStream:
        return FakeJetStream(self._server)

    async def drain(self) -> None:
        self.is_connected = False


class FakeNatsCluster:
    """Stand-in for nats.connect routing on the first server host."""

    def __init__(self) -> None:
        self.servers: dict[str, FakeNatsServer] = {}
        self.connect_options: list[dict[str, Any]] = []

    def add_server(self, host: str, *, user: str = "", password: str = "") -> FakeNatsServer:
        self.servers[host] = FakeNatsServer(user=user, password=password)
        return self.servers[host]

    async def connect(self, **options: Any) -> FakeNatsClient:
        self.connect_options.append(options)
        host = urlparse(options["servers"][0]).hostname or ""
        server = self.servers.get(host)
        if server is None:
            raise NatsError(f"nats: no servers available for connection to {host}")
        if server.user and (options.get("user") != server.user or options.get("password") != server.password):
            raise NatsError("nats: 'Authorization Violation'")
        return FakeNatsClient(server)
