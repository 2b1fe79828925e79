from __future__ import annotations

import base64
import logging
from typing import Any

from tenantstore.core.config import get_settings
from tenantstore.domain.models import OperationResult
from tenantstore.persistence.kube import KubeClient, create_or_update, delete_if_exists, group_path


logger = logging.getLogger(__name__)

FREEZE_WEBHOOK_NAME = "catchall.migrate.tenantstore.io"
FREEZE_DENIAL_MESSAGE = (
    "the current Control Plane is in freezing mode due to a maintenance mode, "
    "all the changes are blocked: removing the webhook may lead to an inconsistent state upon its completion"
)

_ADMISSION_GROUP = "admissionregistration.k8s.io"
_ADMISSION_VERSION = "v1"


def freeze_policy_path(name: str | None = None) -> str:
    return group_path(_ADMISSION_GROUP, _ADMISSION_VERSION, "validatingwebhookconfigurations", name=name)


def _ca_bundle() -> str | None:
    path = get_settings().freeze_webhook_ca_bundle_path
    if not path:
        return None
    with open(path, "rb") as handle:
        return base64.b64encode(handle.read()).decode("ascii")


def freeze_webhook() -> dict[str, Any]:
    """Catch-all webhook rejecting every write outside the excluded namespaces."""
    settings = get_settings()
    client_config: dict[str, Any] = {
        "url": (
            f"https://{settings.freeze_webhook_service}.{settings.webhook_namespace()}.svc:443"
            f"{settings.freeze_webhook_path}"
        ),
    }
    ca_bundle = _ca_bundle()
    if ca_bundle:
        client_config["caBundle"] = ca_bundle
    return {
        "name": FREEZE_WEBHOOK_NAME,
        "admissionReviewVersions": ["v1"],
        "clientConfig": client_config,
        "failurePolicy": "Fail",
        "matchPolicy": "Equivalent",
        "sideEffects": "NoneOnDryRun",
        "namespaceSelector": {
            "matchExpressions": [
                {
                    "key": "kubernetes.io/metadata.name",
                    "operator": "NotIn",
                    "values": settings.excluded_namespaces(),
                }
            ]
        },
        "rules": [
            {
                "apiGroups": ["*"],
                "apiVersions": ["*"],
                "operations": ["*"],
                "resources": ["*"],
                "scope": "*",
            }
        ],
    }


async def install_freeze_policy(tenant_kube: KubeClient) -> OperationResult:
    settings = get_settings()

    def _mutate(policy: dict[str, Any]) -> None:
        metadata = policy.setdefault("metadata", {})
        metadata["labels"] = {**(metadata.get("labels") or {}), "app.kubernetes.io/managed-by": "tenantstore"}
        policy["webhooks"] = [freeze_webhook()]

    result, _ = await create_or_update(tenant_kube, freeze_policy_path(), settings.freeze_policy_name, _mutate)
    if result is not OperationResult.NONE:
        logger.info("freeze_policy_installed name=%s result=%s", settings.freeze_policy_name, result.value)
    return result


async def remove_freeze_policy(tenant_kube: KubeClient) -> bool:
    return await delete_if_exists(tenant_kube, freeze_policy_path(get_settings().freeze_policy_name))


def deny_admission_review(review: dict[str, Any]) -> dict[str, Any]:
    request = review.get("request") or {}
    return {
        "apiVersion": review.get("apiVersion") or "admission.k8s.io/v1",
        "kind": review.get("kind") or "AdmissionReview",
        "response": {
            "uid": request.get("uid", ""),
            "allowed": False,
            "status": {"code": 403, "message": FREEZE_DENIAL_MESSAGE},
        },
    }
