from __future__ import annotations

import pytest

from tenantstore.core.config import get_settings
from tenantstore.persistence.kube import KubeClient
from tenantstore.services.telemetry import MetricsRegistry
from tenantstore.tests.utils.etcd import FakeEtcdGateway
from tenantstore.tests.utils.kube import FakeKubeApi
from tenantstore.tests.utils.nats import FakeNatsCluster
from tenantstore.tests.utils.pki import generate_ca


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep settings isolated per test and retries fast.
    monkeypatch.setenv("CONFLICT_RETRY_BACKOFF_MS", "1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(scope="session")
def etcd_ca() -> tuple[bytes, bytes]:
    return generate_ca("etcd-ca")


@pytest.fixture
def kube_api() -> FakeKubeApi:
    return FakeKubeApi()


@pytest.fixture
async def kube(kube_api: FakeKubeApi) -> KubeClient:
    client = kube_api.client()
    yield client
    await client.aclose()


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def etcd_gateway() -> FakeEtcdGateway:
    return FakeEtcdGateway()


@pytest.fixture
def nats_cluster() -> FakeNatsCluster:
    return FakeNatsCluster()
