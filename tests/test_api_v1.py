from __future__ import annotations

import json
import time

from tests.conftest import encode_png


def _wait_for_batch(client, headers, batch_id: str, timeout_s: float = 10.0) -> dict:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        resp = client.get(f"/v1/ingest/batches/{batch_id}", headers=headers)
        assert resp.status_code == 200, resp.text
        body = resp.json()
        if body["finished"]:
            return body
        time.sleep(0.02)
    raise AssertionError(f"batch {batch_id} did not finish")


def _submit(client, headers, count: int = 1, **form):
    files = [("files", (f"still-{index}.png", encode_png(colour=(index, 10, 20)), "image/png")) for index in range(count)]
    return client.post("/v1/ingest/batches", files=files, data=form, headers=headers)


def test_v1_health_ok(client):
    resp = client.get("/v1/health")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["status"] == "ok"
    assert payload["running_batches"] == 0


def test_routes_require_studio_scope(client, viewer_headers):
    assert client.get("/v1/media").status_code == 401
    resp = client.get("/v1/media", headers=viewer_headers)
    assert resp.status_code == 403
    assert resp.json()["detail"] == "studio_access_required"


def test_env_check_reports_configuration(client, studio_headers):
    resp = client.get("/v1/admin/env-check", headers=studio_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["storage_backend"] == "local"
    assert body["classifier_backend"] == "static"
    assert body["storage_configured"] is True


def test_batch_ingest_archives_into_default_agent(client, studio_headers):
    resp = _submit(client, studio_headers, count=2)
    assert resp.status_code == 202, resp.text
    accepted = resp.json()
    assert resp.headers["Location"] == accepted["location"]
    assert len(accepted["items"]) == 2

    state = _wait_for_batch(client, studio_headers, accepted["batch_id"])
    assert state["counts"]["complete"] == 2
    assert state["metrics"]["bytes_transferred"] == state["metrics"]["bytes_expected"]
    assert all(item["agent"] == "julian" and item["slot"] == 3 for item in state["items"])
    assert any("✓ Archived" in line for line in state["log"])

    media = client.get("/v1/media", params={"visual_bible": True}, headers=studio_headers).json()
    assert len(media) == 2
    anchors = client.get("/v1/anchors/julian", headers=studio_headers).json()
    assert [anchor["identity_slot"] for anchor in anchors] == [3]

    urls = client.get("/v1/media/visual-bible", headers=studio_headers).json()["urls"]
    assert len(urls) == 2

    orphans = client.get("/v1/storage/orphans", headers=studio_headers).json()
    assert orphans == {"keys": []}


def test_batch_overrides_are_validated(client, studio_headers):
    assert _submit(client, studio_headers, override_slot="15").status_code == 422
    assert _submit(client, studio_headers, override_agent="mallory").status_code == 422


def test_oversized_batch_is_rejected(client, studio_headers):
    resp = _submit(client, studio_headers, count=51)
    assert resp.status_code == 413
    assert client.get("/v1/health").json()["running_batches"] == 0


def test_batch_overrides_route_items(client, studio_headers):
    resp = _submit(client, studio_headers, override_agent="cassie", override_slot="12")
    state = _wait_for_batch(client, studio_headers, resp.json()["batch_id"])
    item = state["items"][0]
    assert (item["agent"], item["slot"]) == ("cassie", 12)
    assert item["public_id"].startswith("Luminous Deep/Visual_Bible/cassie/")

    asset = client.get(f"/v1/media/{item['public_id']}", headers=studio_headers)
    assert asset.status_code == 200
    assert asset.json()["identity_slot"] == 12


def test_batch_events_stream_ndjson(client, studio_headers):
    batch_id = _submit(client, studio_headers).json()["batch_id"]
    _wait_for_batch(client, studio_headers, batch_id)

    resp = client.get(f"/v1/ingest/batches/{batch_id}/events", headers=studio_headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/x-ndjson")
    events = [json.loads(line) for line in resp.text.splitlines() if line]
    assert [event["state"] for event in events] == ["analyzing", "syncing", "complete"]

    assert client.delete(f"/v1/ingest/batches/{batch_id}", headers=studio_headers).status_code == 204
    assert client.get(f"/v1/ingest/batches/{batch_id}", headers=studio_headers).status_code == 404


def test_media_patch_and_anchor_management(client, studio_headers):
    batch_id = _submit(client, studio_headers, count=2, override_agent="eleanor", override_slot="1").json()["batch_id"]
    state = _wait_for_batch(client, studio_headers, batch_id)
    first, second = (item["public_id"] for item in state["items"])

    current = client.get("/v1/anchors/eleanor", headers=studio_headers).json()
    assert len(current) == 1
    holder = current[0]["public_id"]
    other = second if holder == first else first

    moved = client.put("/v1/anchors/eleanor/1", json={"public_id": other}, headers=studio_headers)
    assert moved.status_code == 200
    assert moved.json()["evicted_public_id"] == holder

    patched = client.patch(f"/v1/media/{holder}", json={"is_visual_bible": False, "tags": ["retired"]}, headers=studio_headers)
    assert patched.status_code == 200
    assert patched.json()["tags"] == ["retired"]
    assert patched.json()["identity_slot"] is None

    cleared = client.delete("/v1/anchors/eleanor/1", headers=studio_headers).json()
    assert cleared["evicted_public_id"] == other
    assert client.get("/v1/anchors/eleanor", headers=studio_headers).json() == []


def test_anchor_errors(client, studio_headers):
    assert client.put("/v1/anchors/julian/2", json={"public_id": "missing"}, headers=studio_headers).status_code == 404
    assert client.put("/v1/anchors/julian/0", json={"public_id": "x"}, headers=studio_headers).status_code == 422
    assert client.get("/v1/anchors/mallory", headers=studio_headers).status_code == 422
    assert client.get("/v1/media/nope", headers=studio_headers).status_code == 404
    assert client.get("/v1/ingest/batches/nope", headers=studio_headers).status_code == 404


def test_openapi_lists_v1_routes(client):
    resp = client.get("/openapi.json")
    assert resp.status_code == 200
    paths = resp.json()["paths"]
    assert "/v1/health" in paths
    assert "/v1/ingest/batches" in paths
    assert "/metadata" not in paths
