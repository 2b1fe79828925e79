from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "tenantstore"
    log_level: str = "INFO"

    # Namespace hosting the operator and the migration Jobs it launches.
    operator_namespace: str = "tenantstore-system"
    # Management cluster API access; defaults follow the in-cluster service account mount.
    kube_api_url: str = "https://kubernetes.default.svc"
    kube_token_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    kube_ca_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
    kube_request_timeout_s: float = 10.0
    # API group/version serving DataStore and TenantControlPlane resources.
    crd_group: str = "tenantstore.io"
    crd_version: str = "v1alpha1"
    # Tenant admin kubeconfig used to reach the tenant cluster for the write-freeze.
    tenant_kubeconfig_secret_suffix: str = "-admin-kubeconfig"
    tenant_kubeconfig_secret_key: str = "admin.conf"

    # Migration Job image, identity and bounds.
    migrate_image: str = "ghcr.io/tenantstore/tenantstore:latest"
    migrate_service_account: str = "tenantstore-controller"
    migrate_timeout_s: int = 300
    migrate_job_backoff_limit: int = 6

    # Write-freeze admission policy installed into the tenant cluster during a migration.
    freeze_policy_name: str = "tenantstore-freeze"
    freeze_webhook_service: str = "tenantstore-webhook-service"
    # Empty falls back to operator_namespace.
    freeze_webhook_namespace: str = ""
    freeze_webhook_path: str = "/migrate"
    # PEM bundle trusted by the tenant API server when calling the freeze webhook.
    freeze_webhook_ca_bundle_path: str = ""
    # Comma-delimited namespaces left writable while frozen.
    freeze_excluded_namespaces: str = "kube-system,kube-node-lease"
    # Listener of the freeze webhook server; TLS is enabled when both paths are set.
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 9443
    webhook_tls_cert_path: str = ""
    webhook_tls_key_path: str = ""

    # Reissue etcd client certificates expiring within this window.
    certificate_expiration_threshold_s: int = 86400

    # Backend round trip bounds for every driver.
    datastore_connect_timeout_s: float = 10.0
    datastore_request_timeout_s: float = 30.0

    # Local read-modify-write retry for generated objects.
    conflict_retry_max_attempts: int = 5
    conflict_retry_backoff_ms: int = 50

    def excluded_namespaces(self) -> list[str]:
        return [item.strip() for item in self.freeze_excluded_namespaces.split(",") if item.strip()]

    def webhook_namespace(self) -> str:
        return self.freeze_webhook_namespace or self.operator_namespace


@lru_cache
def get_settings() -> Settings:
    return Settings()
