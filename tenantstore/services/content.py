from __future__ import annotations

from tenantstore.core.errors import ConfigurationError, NotFoundError
from tenantstore.domain.models import ContentRef
from tenantstore.persistence.kube import KubeClient
from tenantstore.persistence.repos.secrets import get_secret_data


def validate_content_ref(ref: ContentRef, field: str) -> None:
    if ref.content:
        return
    secret_ref = ref.secret_reference
    if secret_ref is None:
        raise ConfigurationError(f"{field}: neither content nor secretReference is set")
    if not (secret_ref.name and secret_ref.namespace and secret_ref.key_path):
        raise ConfigurationError(f"{field}: secretReference requires name, namespace and keyPath")


async def resolve_content(kube: KubeClient, ref: ContentRef, field: str = "content") -> bytes:
    """Inline content wins; otherwise read the referenced Secret key."""
    validate_content_ref(ref, field)
    if ref.content:
        return ref.content

    secret_ref = ref.secret_reference
    if secret_ref is None:
        raise ConfigurationError(f"{field}: neither content nor secretReference is set")
    try:
        data = await get_secret_data(kube, namespace=secret_ref.namespace, name=secret_ref.name)
    except NotFoundError as exc:
        raise ConfigurationError(
            f"{field}: secret {secret_ref.namespace}/{secret_ref.name} does not exist"
        ) from exc
    if secret_ref.key_path not in data:
        raise ConfigurationError(
            f"{field}: secret {secret_ref.namespace}/{secret_ref.name} has no key {secret_ref.key_path}"
        )
    return data[secret_ref.key_path]
