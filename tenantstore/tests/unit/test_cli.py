from __future__ import annotations

import asyncio

import pytest

from tenantstore.apps.cli import main, parse_duration
from tenantstore.core.errors import ConfigurationError
from tenantstore.domain.models import Driver
from tenantstore.providers.datastore.base import ConnectionConfig
from tenantstore.tests.utils.backends import (
    connection_factory,
    datastore_body,
    seed_datastore,
    seed_tenant,
    tenant_body,
)
from tenantstore.tests.utils.etcd import FakeEtcdGateway
from tenantstore.tests.utils.kube import FakeKubeApi


def _seed_etcd_pair(kube_api: FakeKubeApi, etcd_ca: tuple[bytes, bytes], *, bound: str = "etcd-bronze") -> None:
    for name, host in (("etcd-bronze", "etcd-bronze-0"), ("etcd-silver", "etcd-silver-0")):
        seed_datastore(
            kube_api,
            datastore_body(name, Driver.ETCD, [f"{host}:2379"], ca=etcd_ca, client=(b"admin-cert", b"admin-key")),
        )
    body = tenant_body("ns1", "cp-a", "etcd-silver")
    if bound:
        body["status"] = {"storage": {"driver": "etcd", "dataStoreName": bound}}
    seed_tenant(kube_api, body)


@pytest.mark.parametrize(
    ("value", "seconds"),
    [("90s", 90.0), ("5m", 300.0), ("1h2m3s", 3723.0), ("15", 15.0), (" 2m ", 120.0)],
)
def test_parse_duration(value: str, seconds: float) -> None:
    assert parse_duration(value) == seconds


@pytest.mark.parametrize("value", ["", "m", "5x", "0s", "1.5m", "-3s"])
def test_parse_duration_rejects_invalid_values(value: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_duration(value)


def test_migrate_copies_the_tenant_prefix(etcd_gateway: FakeEtcdGateway, etcd_ca: tuple[bytes, bytes]) -> None:
    kube_api = FakeKubeApi()
    _seed_etcd_pair(kube_api, etcd_ca)
    origin = etcd_gateway.add_server("etcd-bronze-0")
    target = etcd_gateway.add_server("etcd-silver-0")
    origin.kv[b"/ns1_cp_a/registry/pods/default/web"] = b"pod"
    origin.kv[b"/ns2_cp_b/registry/pods/default/web"] = b"other"

    code = main(
        ["migrate", "--tenant-control-plane=ns1/cp-a", "--target-datastore=etcd-silver", "--timeout=30s"],
        kube_factory=kube_api.client,
        connection_factory=connection_factory(etcd=etcd_gateway),
    )

    assert code == 0
    assert target.kv == {b"/ns1_cp_a/registry/pods/default/web": b"pod"}


@pytest.mark.parametrize(
    ("argv", "message"),
    [
        (["migrate", "--tenant-control-plane=cp-a", "--target-datastore=etcd-silver"], "non well-formed namespaced name"),
        (["migrate", "--tenant-control-plane=ns1/cp-a", "--target-datastore=etcd-silver", "--timeout=soon"], "invalid duration"),
        (["migrate", "--tenant-control-plane=ns1/cp-a", "--target-datastore=etcd-bronze"], "cannot migrate to the same DataStore"),
        (["migrate", "--tenant-control-plane=ns1/cp-a", "--target-datastore=pg-1"], "different driver"),
        (["migrate", "--tenant-control-plane=ns1/missing", "--target-datastore=etcd-silver"], "404"),
    ],
)
def test_migrate_failures_exit_non_zero(
    argv: list[str],
    message: str,
    etcd_ca: tuple[bytes, bytes],
    capsys: pytest.CaptureFixture[str],
) -> None:
    kube_api = FakeKubeApi()
    _seed_etcd_pair(kube_api, etcd_ca)
    seed_datastore(kube_api, datastore_body("pg-1", Driver.POSTGRESQL, ["pg-0:5432"], basic_auth=("postgres", "pw")))

    assert main(argv, kube_factory=kube_api.client) == 1
    err = capsys.readouterr().err
    assert err.startswith("migrate failed: ")
    assert message in err


def test_unbound_tenant_cannot_be_migrated(etcd_ca: tuple[bytes, bytes], capsys: pytest.CaptureFixture[str]) -> None:
    kube_api = FakeKubeApi()
    _seed_etcd_pair(kube_api, etcd_ca, bound="")

    argv = ["migrate", "--tenant-control-plane=ns1/cp-a", "--target-datastore=etcd-silver"]
    assert main(argv, kube_factory=kube_api.client) == 1
    assert "is not bound to any DataStore yet" in capsys.readouterr().err


class _StuckConnection:
    driver = Driver.ETCD

    async def connect(self) -> None:
        await asyncio.sleep(30)

    async def close(self) -> None:
        return None


def test_migrate_times_out(etcd_ca: tuple[bytes, bytes], capsys: pytest.CaptureFixture[str]) -> None:
    kube_api = FakeKubeApi()
    _seed_etcd_pair(kube_api, etcd_ca)

    def _factory(driver: Driver, config: ConnectionConfig) -> _StuckConnection:
        return _StuckConnection()

    argv = ["migrate", "--tenant-control-plane=ns1/cp-a", "--target-datastore=etcd-silver", "--timeout=1s"]
    assert main(argv, kube_factory=kube_api.client, connection_factory=_factory) == 1
    assert "cannot migrate data: timed out after 1s" in capsys.readouterr().err


def test_migrate_subcommand_is_required() -> None:
    with pytest.raises(SystemExit) as exc_info:
        main([])
    assert exc_info.value.code == 2
