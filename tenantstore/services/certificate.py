from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from tenantstore.core.config import get_settings
from tenantstore.core.errors import ConfigurationError
from tenantstore.domain.models import DataStore, Driver, OperationResult, TenantControlPlane
from tenantstore.persistence.kube import KubeClient, create_or_update
from tenantstore.persistence.repos.secrets import decode_data, encode_data, secrets_path
from tenantstore.persistence.repos.tenants import tenant_owner_reference
from tenantstore.providers.datastore.base import tenant_user
from tenantstore.services.checksum import CHECKSUM_ANNOTATION, calculate_checksum
from tenantstore.services.content import resolve_content
from tenantstore.services.crypto.x509 import (
    certificate_common_name,
    generate_client_certificate,
    is_valid_key_pair,
)
from tenantstore.services.storage_config import managed_labels
from tenantstore.services.telemetry import MetricsRegistry


logger = logging.getLogger(__name__)

CERTIFICATE_SECRET_SUFFIX = "-datastore-certificate"
ROTATE_ANNOTATION = "certs.tenantstore.io/rotate"

KEY_CA = "ca.crt"
KEY_CERT = "server.crt"
KEY_KEY = "server.key"


def certificate_secret_name(tenant: TenantControlPlane) -> str:
    return f"{tenant.name}{CERTIFICATE_SECRET_SUFFIX}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class _TLSMaterial:
    ca_cert: bytes
    ca_key: bytes | None
    client_cert: bytes | None
    client_key: bytes | None


class CertificateService:
    """Maintains the per-tenant certificate secret consumed by the tenant API server."""

    def __init__(self, kube: KubeClient, *, metrics: MetricsRegistry) -> None:
        self._kube = kube
        self._metrics = metrics

    async def _material(self, datastore: DataStore) -> _TLSMaterial | None:
        tls = datastore.spec.tls_config
        if tls is None:
            return None
        ca_key = None
        if tls.certificate_authority.private_key is not None:
            ca_key = await resolve_content(self._kube, tls.certificate_authority.private_key, "tlsConfig.certificateAuthority.privateKey")
        client_cert = client_key = None
        if tls.client_certificate is not None:
            client_cert = await resolve_content(self._kube, tls.client_certificate.certificate, "tlsConfig.clientCertificate.certificate")
            client_key = await resolve_content(self._kube, tls.client_certificate.private_key, "tlsConfig.clientCertificate.privateKey")
        return _TLSMaterial(
            ca_cert=await resolve_content(self._kube, tls.certificate_authority.certificate, "tlsConfig.certificateAuthority.certificate"),
            ca_key=ca_key,
            client_cert=client_cert,
            client_key=client_key,
        )

    def _etcd_pair(
        self,
        current: dict[str, bytes],
        annotations: dict[str, str],
        material: _TLSMaterial,
        user: str,
        now: datetime,
    ) -> tuple[bytes, bytes]:
        settings = get_settings()
        # An empty marker value asks for a rotation; a timestamp records one already done.
        rotate = annotations.get(ROTATE_ANNOTATION) == ""
        cert, key = current.get(KEY_CERT), current.get(KEY_KEY)
        if not rotate and cert and key:
            valid_until = now + timedelta(seconds=settings.certificate_expiration_threshold_s)
            if (
                is_valid_key_pair(cert, key, valid_until=valid_until, ca_cert_pem=material.ca_cert)
                and certificate_common_name(cert) == user
            ):
                return cert, key

        if material.ca_key is None:
            raise ConfigurationError("tlsConfig.certificateAuthority.privateKey is required to issue etcd client certificates")
        cert, key = generate_client_certificate(
            common_name=user,
            ca_cert_pem=material.ca_cert,
            ca_key_pem=material.ca_key,
            now=now,
        )
        if rotate:
            annotations[ROTATE_ANNOTATION] = now.isoformat(timespec="seconds")
        logger.info("datastore_certificate_issued user=%s rotated=%s", user, rotate)
        return cert, key

    async def reconcile(self, tenant: TenantControlPlane, datastore: DataStore) -> OperationResult:
        async with self._metrics.timed("certificate", "reconcile"):
            material = await self._material(datastore)
            user = tenant_user(tenant)
            name = certificate_secret_name(tenant)

            def _mutate(secret: dict[str, Any]) -> None:
                metadata = secret.setdefault("metadata", {})
                annotations = dict(metadata.get("annotations") or {})
                data: dict[str, bytes] = {}
                if material is not None:
                    data[KEY_CA] = material.ca_cert
                    if datastore.driver is Driver.ETCD:
                        cert, key = self._etcd_pair(decode_data(secret), annotations, material, user, _utc_now())
                        data[KEY_CERT], data[KEY_KEY] = cert, key
                    elif material.client_cert is not None and material.client_key is not None:
                        data[KEY_CERT], data[KEY_KEY] = material.client_cert, material.client_key
                annotations[CHECKSUM_ANNOTATION] = calculate_checksum(data)
                metadata["annotations"] = annotations
                metadata["labels"] = {**(metadata.get("labels") or {}), **managed_labels(tenant, "datastore-certificate")}
                if tenant.metadata.uid:
                    metadata["ownerReferences"] = [tenant_owner_reference(tenant)]
                secret["type"] = "Opaque"
                # The API server omits an empty data map, so leave it absent to stay idempotent.
                if data or "data" in secret:
                    secret["data"] = encode_data(data)

            result, secret = await create_or_update(
                self._kube,
                secrets_path(tenant.namespace),
                name,
                _mutate,
            )

        status = tenant.status.storage.certificate
        checksum = secret["metadata"]["annotations"][CHECKSUM_ANNOTATION]
        if result is not OperationResult.NONE or status.checksum != checksum or status.last_update is None:
            status.last_update = _utc_now()
        status.secret_name = name
        status.checksum = checksum
        return result
