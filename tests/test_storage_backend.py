from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path

import httpx
import pytest

from registrar.core.config import get_settings
from registrar.core.storage import (
    CloudinaryObjectStore,
    LocalObjectStore,
    StorageRequestError,
    get_object_store,
)
from tests.conftest import encode_png


def _cloudinary(handler) -> CloudinaryObjectStore:
    return CloudinaryObjectStore(
        cloud_name="demo",
        api_key="key-1",
        api_secret="shh",
        api_base="https://media.test/v1_1",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def _form(request: httpx.Request) -> dict[str, str]:
    return dict(httpx.QueryParams(request.content.decode()))


def test_default_backend_is_local(tmp_path: Path):
    settings = get_settings()
    store = get_object_store(settings)
    assert isinstance(store, LocalObjectStore)
    assert settings.storage_configured


def test_selecting_cloudinary_requires_credentials(monkeypatch):
    monkeypatch.setenv("REGISTRAR_STORAGE_BACKEND", "cloudinary")
    get_settings.cache_clear()
    with pytest.raises(ValueError):
        get_object_store(get_settings())

    monkeypatch.setenv("CLOUDINARY_CLOUD_NAME", "demo")
    monkeypatch.setenv("CLOUDINARY_API_KEY", "key-1")
    monkeypatch.setenv("CLOUDINARY_API_SECRET", "shh")
    get_settings.cache_clear()
    store = get_object_store(get_settings())
    assert isinstance(store, CloudinaryObjectStore)
    asyncio.run(store.aclose())


def test_local_store_upload_rename_and_metadata(tmp_path: Path):
    store = LocalObjectStore(base_path=tmp_path, base_url="http://media.local/")

    async def _run():
        uploaded = await store.upload(encode_png(16, 8), key="LD_INGEST_TEMP_1_abc", mime_type="image/png", resource_kind="image")
        final = await store.rename("LD_INGEST_TEMP_1_abc", "Root/julian/portrait_1_ff", resource_kind="image")
        await store.update_metadata(
            final.provider_id,
            resource_kind="image",
            tags=["julian", "portrait"],
            context={"agent": "julian", "slot": 1},
        )
        return uploaded, final, await store.list_keys()

    uploaded, final, keys = asyncio.run(_run())
    assert uploaded.format == "png"
    assert (uploaded.width, uploaded.height) == (16, 8)
    assert final.provider_id == "Root/julian/portrait_1_ff"
    assert final.folder == "Root/julian"
    assert final.url == "http://media.local/image/Root/julian/portrait_1_ff.png"
    assert keys == ["Root/julian/portrait_1_ff"]

    meta = store.read_metadata("Root/julian/portrait_1_ff", resource_kind="image")
    assert meta["tags"] == ["julian", "portrait"]
    assert meta["context"] == {"agent": "julian", "slot": "1"}
    assert meta["mime_type"] == "image/png"


def test_local_store_missing_object_raises_not_found(tmp_path: Path):
    store = LocalObjectStore(base_path=tmp_path, base_url="http://media.local")
    with pytest.raises(StorageRequestError) as excinfo:
        asyncio.run(store.rename("nope", "other", resource_kind="image"))
    assert excinfo.value.status_code == 404


def test_local_store_refuses_overwrite_when_disabled(tmp_path: Path):
    store = LocalObjectStore(base_path=tmp_path, base_url="http://media.local")

    async def _run():
        await store.upload(b"a", key="first", mime_type="image/png", resource_kind="image")
        await store.upload(b"b", key="second", mime_type="image/png", resource_kind="image")
        await store.rename("first", "second", resource_kind="image", overwrite=False)

    with pytest.raises(StorageRequestError) as excinfo:
        asyncio.run(_run())
    assert excinfo.value.status_code == 409


def test_local_store_lists_by_prefix_and_deletes(tmp_path: Path):
    store = LocalObjectStore(base_path=tmp_path, base_url="http://media.local")

    async def _run():
        await store.upload(b"v", key="LD_INGEST_TEMP_2_aa", mime_type="video/mp4", resource_kind="video")
        await store.upload(b"i", key="kept", mime_type="image/jpeg", resource_kind="image")
        before = await store.list_keys("LD_INGEST_TEMP_")
        await store.delete("LD_INGEST_TEMP_2_aa", resource_kind="video")
        return before, await store.list_keys("LD_INGEST_TEMP_"), await store.list_keys()

    before, after, everything = asyncio.run(_run())
    assert before == ["LD_INGEST_TEMP_2_aa"]
    assert after == []
    assert everything == ["kept"]


def test_cloudinary_signature_matches_documented_scheme():
    store = _cloudinary(lambda request: httpx.Response(200, json={}))
    params = {"public_id": "sample", "timestamp": "1315060510", "eager": "", "overwrite": None}
    expected = hashlib.sha1(b"public_id=sample&timestamp=1315060510shh").hexdigest()
    assert store.sign(params) == expected


def test_cloudinary_rename_posts_signed_form():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["form"] = _form(request)
        return httpx.Response(
            200,
            json={
                "public_id": "Root/julian/final_1_aa",
                "secure_url": "https://cdn.test/final.png",
                "resource_type": "image",
                "format": "png",
                "bytes": 321,
                "width": 10,
                "height": 20,
                "folder": "Root/julian",
            },
        )

    store = _cloudinary(handler)
    receipt = asyncio.run(store.rename("LD_INGEST_TEMP_1_aa", "Root/julian/final_1_aa", resource_kind="image"))

    assert seen["path"] == "/v1_1/demo/image/rename"
    form = seen["form"]
    assert form["from_public_id"] == "LD_INGEST_TEMP_1_aa"
    assert form["overwrite"] == "true"
    assert form["api_key"] == "key-1"
    unsigned = {name: value for name, value in form.items() if name not in {"signature", "api_key"}}
    assert form["signature"] == store.sign(unsigned)
    assert receipt.byte_size == 321
    assert receipt.url == "https://cdn.test/final.png"


def test_cloudinary_error_carries_status_and_provider_message():
    store = _cloudinary(lambda request: httpx.Response(420, json={"error": {"message": "Rate Limit Exceeded"}}))
    with pytest.raises(StorageRequestError) as excinfo:
        asyncio.run(store.update_metadata("k", resource_kind="image", tags=["a"], context={"agent": "julian"}))
    assert excinfo.value.status_code == 420
    assert excinfo.value.provider_message == "Rate Limit Exceeded"


def test_cloudinary_list_keys_follows_cursor():
    pages = {
        ("image", None): {"resources": [{"public_id": "LD_INGEST_TEMP_1_a"}], "next_cursor": "c2"},
        ("image", "c2"): {"resources": [{"public_id": "LD_INGEST_TEMP_2_b"}]},
        ("video", None): {"resources": [{"public_id": "LD_INGEST_TEMP_0_v"}]},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        kind = request.url.path.split("/")[-2]
        cursor = request.url.params.get("next_cursor")
        assert request.url.params["prefix"] == "LD_INGEST_TEMP_"
        assert request.headers["authorization"].startswith("Basic ")
        return httpx.Response(200, json=pages[(kind, cursor)])

    keys = asyncio.run(_cloudinary(handler).list_keys("LD_INGEST_TEMP_"))
    assert keys == ["LD_INGEST_TEMP_0_v", "LD_INGEST_TEMP_1_a", "LD_INGEST_TEMP_2_b"]


def test_cloudinary_timeout_sets_timed_out_flag():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    with pytest.raises(StorageRequestError) as excinfo:
        asyncio.run(_cloudinary(handler).delete("k", resource_kind="image"))
    assert excinfo.value.timed_out
    assert excinfo.value.status_code is None


def test_cloudinary_non_json_success_raises_storage_error():
    store = _cloudinary(lambda request: httpx.Response(200, text="<html>OK</html>"))
    with pytest.raises(StorageRequestError) as excinfo:
        asyncio.run(store.rename("LD_INGEST_TEMP_1_aa", "Root/julian/final", resource_kind="image"))
    assert excinfo.value.status_code == 200
    assert excinfo.value.provider_message == "<html>OK</html>"
    assert not excinfo.value.timed_out


def test_cloudinary_receipt_without_public_id_raises_storage_error():
    store = _cloudinary(lambda request: httpx.Response(200, json={"secure_url": "https://cdn.test/x.png"}))
    with pytest.raises(StorageRequestError, match="missing public_id"):
        asyncio.run(store.upload(b"png", key="LD_INGEST_TEMP_1_aa", mime_type="image/png", resource_kind="image"))
