from __future__ import annotations

import pytest

from tenantstore.core.errors import MultiTenancyViolation
from tenantstore.domain.models import DataStore, Driver, TenantControlPlane
from tenantstore.services.multitenancy import check_multi_tenancy
from tenantstore.tests.utils.backends import datastore_body, tenant_body


def _tenant() -> TenantControlPlane:
    return TenantControlPlane.model_validate(tenant_body("ns1", "cp-a", "store"))


def _datastore(driver: Driver, used_by: list[str]) -> DataStore:
    return DataStore.model_validate(
        datastore_body("store", driver, ["db-0:1"], basic_auth=("admin", "pw"), used_by=used_by)
    )


def test_nats_datastore_hosts_a_single_tenant() -> None:
    check_multi_tenancy(_datastore(Driver.NATS, []), _tenant())
    check_multi_tenancy(_datastore(Driver.NATS, ["ns1/cp-a"]), _tenant())

    with pytest.raises(MultiTenancyViolation, match="already used by ns2/cp-b"):
        check_multi_tenancy(_datastore(Driver.NATS, ["ns1/cp-a", "ns2/cp-b"]), _tenant())


@pytest.mark.parametrize("driver", [Driver.ETCD, Driver.MYSQL, Driver.POSTGRESQL])
def test_shared_drivers_accept_many_tenants(driver: Driver) -> None:
    check_multi_tenancy(_datastore(driver, ["ns2/cp-b", "ns3/cp-c"]), _tenant())
