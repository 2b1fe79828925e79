from __future__ import annotations

import logging

from tenantstore.core.errors import MultiTenancyViolation
from tenantstore.domain.models import DataStore, Driver, TenantControlPlane


logger = logging.getLogger(__name__)

# Drivers without per-tenant access control can only host a single tenant.
SINGLE_TENANT_DRIVERS = frozenset({Driver.NATS})


def check_multi_tenancy(datastore: DataStore, tenant: TenantControlPlane) -> None:
    if datastore.driver not in SINGLE_TENANT_DRIVERS:
        return
    others = [ref for ref in datastore.status.used_by if ref != tenant.namespaced_name]
    if others:
        logger.warning(
            "datastore_multitenancy_denied datastore=%s tenant=%s used_by=%s",
            datastore.name,
            tenant.namespaced_name,
            ",".join(others),
        )
        raise MultiTenancyViolation(
            f"DataStore {datastore.name} uses the {datastore.driver.value} driver which does not support "
            f"multi-tenancy and is already used by {', '.join(others)}"
        )
