from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
from typing import Callable, Sequence

from tenantstore.core.errors import ConfigurationError, ConnectivityError
from tenantstore.core.logging import configure_logging
from tenantstore.persistence.kube import KubeClient
from tenantstore.persistence.repos.datastores import get_datastore
from tenantstore.persistence.repos.tenants import get_tenant, parse_namespaced_name
from tenantstore.providers.datastore.base import OP_MIGRATE
from tenantstore.providers.datastore.factory import ConnectionFactory, new_storage_connection, open_storage_connection
from tenantstore.services.connection import build_connection_config
from tenantstore.services.migrate import validate_migration


logger = logging.getLogger(__name__)

_DURATION = re.compile(r"^(?:(?P<h>\d+)h)?(?:(?P<m>\d+)m)?(?:(?P<s>\d+)s)?$")


def parse_duration(value: str) -> float:
    """Parse durations like 90s, 5m or 1h2m3s into seconds; bare numbers are seconds."""
    value = value.strip()
    if value.isdigit():
        seconds = float(value)
    else:
        match = _DURATION.match(value)
        if not value or match is None:
            raise ConfigurationError(f"invalid duration {value!r}")
        seconds = float(
            int(match.group("h") or 0) * 3600 + int(match.group("m") or 0) * 60 + int(match.group("s") or 0)
        )
    if seconds <= 0:
        raise ConfigurationError(f"duration must be positive, got {value!r}")
    return seconds


async def run_migrate(
    kube: KubeClient,
    *,
    tenant_ref: str,
    target_name: str,
    connection_factory: ConnectionFactory = new_storage_connection,
) -> None:
    """Copy the tenant data from its bound DataStore into the target one."""
    namespace, name = parse_namespaced_name(tenant_ref)
    tenant = await get_tenant(kube, namespace, name)
    bound = tenant.status.storage.data_store_name
    if not bound:
        raise ConfigurationError(f"tenant {tenant.namespaced_name} is not bound to any DataStore yet")

    origin = await get_datastore(kube, bound)
    target = await get_datastore(kube, target_name)
    validate_migration(tenant, origin, target)

    origin_config = await build_connection_config(kube, origin)
    target_config = await build_connection_config(kube, target)
    async with open_storage_connection(origin.driver, origin_config, factory=connection_factory) as origin_conn:
        async with open_storage_connection(target.driver, target_config, factory=connection_factory) as target_conn:
            await target_conn.check()
            await origin_conn.migrate(tenant, target_conn)
    logger.info("datastore_migration_done tenant=%s origin=%s target=%s", tenant.namespaced_name, origin.name, target.name)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tenantstore", description="Tenant storage maintenance commands")
    subcommands = parser.add_subparsers(dest="command", required=True)
    migrate = subcommands.add_parser("migrate", help="Migrate tenant data to another DataStore of the same driver")
    migrate.add_argument("--tenant-control-plane", required=True, help="Tenant to migrate, as <NAMESPACE>/<NAME>")
    migrate.add_argument("--target-datastore", required=True, help="Name of the DataStore receiving the data")
    migrate.add_argument("--timeout", default="5m", help="Abort the migration after this duration (default 5m)")
    return parser


async def _migrate(
    args: argparse.Namespace,
    timeout: float,
    kube_factory: Callable[[], KubeClient],
    connection_factory: ConnectionFactory,
) -> int:
    async with kube_factory() as kube:
        try:
            await asyncio.wait_for(
                run_migrate(
                    kube,
                    tenant_ref=args.tenant_control_plane,
                    target_name=args.target_datastore,
                    connection_factory=connection_factory,
                ),
                timeout,
            )
        except TimeoutError as exc:
            raise ConnectivityError(OP_MIGRATE, f"timed out after {args.timeout}") from exc
    return 0


def main(
    argv: Sequence[str] | None = None,
    *,
    kube_factory: Callable[[], KubeClient] = KubeClient.in_cluster,
    connection_factory: ConnectionFactory = new_storage_connection,
) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    try:
        timeout = parse_duration(args.timeout)
        return asyncio.run(_migrate(args, timeout, kube_factory, connection_factory))
    except Exception as exc:  # noqa: BLE001 - surface migration failures clearly in Job logs.
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        return 1


def entrypoint() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    entrypoint()
