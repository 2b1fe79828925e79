from __future__ import annotations

import httpx
import pytest

from tenantstore.apps.webhook.main import create_app
from tenantstore.core.config import get_settings
from tenantstore.services.freeze import FREEZE_DENIAL_MESSAGE


def _client() -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=create_app())
    return httpx.AsyncClient(transport=transport, base_url="http://webhook.test")


@pytest.mark.asyncio
async def test_health() -> None:
    async with _client() as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_every_write_is_denied_while_frozen() -> None:
    review = {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": "b1f6a7a8-0c1e-4c5d-8f3e-2a9d2e4f7c10",
            "operation": "UPDATE",
            "namespace": "default",
            "resource": {"group": "apps", "version": "v1", "resource": "deployments"},
        },
    }
    async with _client() as client:
        response = await client.post("/migrate", json=review)

    assert response.status_code == 200
    body = response.json()
    assert body["kind"] == "AdmissionReview"
    assert body["response"]["uid"] == "b1f6a7a8-0c1e-4c5d-8f3e-2a9d2e4f7c10"
    assert body["response"]["allowed"] is False
    assert body["response"]["status"] == {"code": 403, "message": FREEZE_DENIAL_MESSAGE}


@pytest.mark.asyncio
async def test_webhook_path_follows_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FREEZE_WEBHOOK_PATH", "/freeze")
    get_settings.cache_clear()
    async with _client() as client:
        assert (await client.post("/freeze", json={"request": {"uid": "u"}})).json()["response"]["allowed"] is False
        assert (await client.post("/migrate", json={})).status_code == 404
