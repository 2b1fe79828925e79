from __future__ import annotations

from tenantstore.core.errors import ConfigurationError
from tenantstore.domain.models import DataStore, Driver
from tenantstore.persistence.kube import KubeClient
from tenantstore.providers.datastore.base import ConnectionConfig, ConnectionEndpoint
from tenantstore.services.content import resolve_content, validate_content_ref


_DRIVER_PARAMETERS: dict[Driver, dict[str, str]] = {
    Driver.MYSQL: {"charset": "utf8mb4"},
}


def parse_endpoint(value: str) -> ConnectionEndpoint:
    host, sep, port = value.strip().rpartition(":")
    if not sep or not host or not port:
        raise ConfigurationError(f"cannot retrieve host-port pair from DataStore endpoint {value!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port_number = int(port)
    except ValueError as exc:
        raise ConfigurationError(f"invalid port in DataStore endpoint {value!r}") from exc
    if not 0 < port_number < 65536:
        raise ConfigurationError(f"invalid port in DataStore endpoint {value!r}")
    return ConnectionEndpoint(host=host, port=port_number)


def validate_datastore(datastore: DataStore) -> None:
    """Reject malformed DataStore specs before any connection is attempted."""
    spec = datastore.spec
    name = datastore.name
    if not spec.endpoints:
        raise ConfigurationError(f"DataStore {name}: at least one endpoint is required")
    for endpoint in spec.endpoints:
        parse_endpoint(endpoint)

    tls = spec.tls_config
    if spec.driver is Driver.ETCD:
        # etcd authenticates tenants by client certificate, signed here with the CA key.
        if tls is None:
            raise ConfigurationError(f"DataStore {name}: etcd driver requires tlsConfig")
        if tls.certificate_authority.private_key is None:
            raise ConfigurationError(f"DataStore {name}: etcd driver requires the CA private key")
        if tls.client_certificate is None:
            raise ConfigurationError(f"DataStore {name}: etcd driver requires a client certificate")
    elif tls is None and spec.basic_auth is None:
        raise ConfigurationError(f"DataStore {name}: {spec.driver.value} driver requires tlsConfig or basicAuth")

    if tls is not None:
        validate_content_ref(tls.certificate_authority.certificate, "tlsConfig.certificateAuthority.certificate")
        if tls.certificate_authority.private_key is not None:
            validate_content_ref(tls.certificate_authority.private_key, "tlsConfig.certificateAuthority.privateKey")
        if tls.client_certificate is not None:
            validate_content_ref(tls.client_certificate.certificate, "tlsConfig.clientCertificate.certificate")
            validate_content_ref(tls.client_certificate.private_key, "tlsConfig.clientCertificate.privateKey")
    if spec.basic_auth is not None:
        validate_content_ref(spec.basic_auth.username, "basicAuth.username")
        validate_content_ref(spec.basic_auth.password, "basicAuth.password")


async def build_connection_config(kube: KubeClient, datastore: DataStore) -> ConnectionConfig:
    validate_datastore(datastore)
    spec = datastore.spec
    config = ConnectionConfig(
        endpoints=[parse_endpoint(endpoint) for endpoint in spec.endpoints],
        parameters=dict(_DRIVER_PARAMETERS.get(spec.driver, {})),
    )

    if spec.basic_auth is not None:
        config.user = (await resolve_content(kube, spec.basic_auth.username, "basicAuth.username")).decode("utf-8")
        config.password = (await resolve_content(kube, spec.basic_auth.password, "basicAuth.password")).decode("utf-8")

    tls = spec.tls_config
    if tls is not None:
        config.ca_pem = await resolve_content(kube, tls.certificate_authority.certificate, "tlsConfig.certificateAuthority.certificate")
        if tls.client_certificate is not None:
            config.cert_pem = await resolve_content(kube, tls.client_certificate.certificate, "tlsConfig.clientCertificate.certificate")
            config.key_pem = await resolve_content(kube, tls.client_certificate.private_key, "tlsConfig.clientCertificate.privateKey")
    return config
