"""Integration tests for signed content URLs and reconciliation endpoints."""

from conftest import COURSE, SUBJECT


class TestSignedUrl:
    async def test_issue(self, client, token_issuer):
        resp = await client.get("/access/signed-url", params={"content_id": "bafy123"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["signed_url"].startswith("https://cdn.example/bafy123")
        assert data["seconds_remaining"] == 600
        assert data["expires_in"] == "10m 0s"

    async def test_cached(self, client, token_issuer):
        await client.get("/access/signed-url", params={"content_id": "bafy123"})
        await client.get("/access/signed-url", params={"content_id": "bafy123"})
        assert token_issuer.calls == 1

    async def test_issuer_down(self, client, token_issuer):
        token_issuer.failures = 1
        resp = await client.get("/access/signed-url", params={"content_id": "bafy123"})
        assert resp.status_code == 502
        assert resp.json()["code"] == "TOKEN_ISSUER_ERROR"


class TestReconcile:
    async def test_nothing_pending(self, client, admin_headers):
        resp = await client.post("/reconcile", json={}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {"results": [], "pending": 0}

    async def test_partial_key_rejected(self, client, admin_headers):
        resp = await client.post("/reconcile", json={"subject_id": SUBJECT}, headers=admin_headers)
        assert resp.status_code == 422

    async def test_unknown_kind(self, client, admin_headers):
        resp = await client.post("/reconcile", json={
            "subject_id": SUBJECT, "resource_id": COURSE, "kind": "wallet",
        }, headers=admin_headers)
        assert resp.status_code == 422

    async def test_confirms_timed_out_purchase(self, client, admin_headers, engine, ledger):
        engine.ledger.confirmation_timeout = 0
        ledger.mode = "pending"
        resp = await client.post("/license/purchase", json={
            "subject_id": SUBJECT, "resource_id": COURSE,
        }, headers=admin_headers)
        assert resp.json()["reconciliation"]["status"] == "pending_confirmation"
        assert resp.json()["license"]["unconfirmed"] is True

        ledger.mode = "confirm"
        resp = await client.post("/reconcile", json={
            "subject_id": SUBJECT, "resource_id": COURSE, "kind": "license",
        }, headers=admin_headers)
        data = resp.json()
        assert [r["status"] for r in data["results"]] == ["converged"]
        assert data["pending"] == 0

    async def test_requires_api_key(self, client):
        resp = await client.post("/reconcile", json={}, headers={"X-Eduverse-Api-Key": "wrong"})
        assert resp.status_code == 403
