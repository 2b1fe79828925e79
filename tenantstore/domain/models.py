from __future__ import annotations

import base64
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel


class Driver(str, Enum):
    ETCD = "etcd"
    MYSQL = "MySQL"
    POSTGRESQL = "PostgreSQL"
    NATS = "NATS"


class VersionStatus(str, Enum):
    PROVISIONING = "Provisioning"
    MIGRATING = "Migrating"
    READY = "Ready"
    NOT_READY = "NotReady"


class OperationResult(str, Enum):
    NONE = "unchanged"
    CREATED = "created"
    UPDATED = "updated"


def merge_results(current: OperationResult, step: OperationResult) -> OperationResult:
    # Any step that changed something wins over a no-op.
    if current is OperationResult.NONE:
        return step
    return current


class KubeModel(BaseModel):
    # Kubernetes JSON is camelCase; unknown fields round-trip untouched.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ObjectMeta(KubeModel):
    name: str
    namespace: str | None = None
    uid: str | None = None
    resource_version: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = None


class SecretReference(KubeModel):
    name: str = ""
    namespace: str = ""
    key_path: str = ""


class ContentRef(KubeModel):
    """Bytes given inline or read from a Secret key; inline content wins."""

    content: bytes | None = None
    secret_reference: SecretReference | None = None

    @field_validator("content", mode="before")
    @classmethod
    def _decode_content(cls, value: Any) -> Any:
        # Inline content is base64 on the wire.
        if isinstance(value, str):
            return base64.b64decode(value)
        return value

    @field_serializer("content", when_used="json-unless-none")
    def _encode_content(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


class BasicAuth(KubeModel):
    username: ContentRef
    password: ContentRef


class CertKeyPair(KubeModel):
    certificate: ContentRef
    private_key: ContentRef | None = None


class ClientCertificate(KubeModel):
    certificate: ContentRef
    private_key: ContentRef


class TLSConfig(KubeModel):
    certificate_authority: CertKeyPair
    client_certificate: ClientCertificate | None = None


class DataStoreSpec(KubeModel):
    driver: Driver
    endpoints: list[str] = Field(default_factory=list)
    basic_auth: BasicAuth | None = None
    tls_config: TLSConfig | None = None


class DataStoreStatus(KubeModel):
    # Denormalized and eventually consistent.
    used_by: list[str] = Field(default_factory=list)


class DataStore(KubeModel):
    api_version: str | None = None
    kind: str | None = None
    metadata: ObjectMeta
    spec: DataStoreSpec
    status: DataStoreStatus = Field(default_factory=DataStoreStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def driver(self) -> Driver:
        return self.spec.driver


class TenantControlPlaneSpec(KubeModel):
    data_store: str = ""
    # Optional immutable overrides of the derived schema and user names.
    data_store_schema: str = ""
    data_store_username: str = ""


class DataStoreConfigStatus(KubeModel):
    secret_name: str = ""
    checksum: str = ""


class DataStoreSetupStatus(KubeModel):
    schema_name: str = Field(default="", alias="schema")
    user: str = ""
    checksum: str = ""
    last_update: datetime | None = None


class DataStoreCertificateStatus(KubeModel):
    secret_name: str = ""
    checksum: str = ""
    last_update: datetime | None = None


class StorageStatus(KubeModel):
    driver: str = ""
    data_store_name: str = ""
    config: DataStoreConfigStatus = Field(default_factory=DataStoreConfigStatus)
    setup: DataStoreSetupStatus = Field(default_factory=DataStoreSetupStatus)
    certificate: DataStoreCertificateStatus = Field(default_factory=DataStoreCertificateStatus)


class KubernetesVersion(KubeModel):
    version: str = ""
    status: VersionStatus | None = None


class KubernetesStatus(KubeModel):
    version: KubernetesVersion = Field(default_factory=KubernetesVersion)


class TenantControlPlaneStatus(KubeModel):
    storage: StorageStatus = Field(default_factory=StorageStatus)
    kubernetes: KubernetesStatus = Field(default_factory=KubernetesStatus, alias="kubernetesResources")


class TenantControlPlane(KubeModel):
    api_version: str | None = None
    kind: str | None = None
    metadata: ObjectMeta
    spec: TenantControlPlaneSpec = Field(default_factory=TenantControlPlaneSpec)
    status: TenantControlPlaneStatus = Field(default_factory=TenantControlPlaneStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or "default"

    @property
    def namespaced_name(self) -> str:
        return f"{self.namespace}/{self.name}"
