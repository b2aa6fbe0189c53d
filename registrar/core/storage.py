from __future__ import annotations

import asyncio
import hashlib
import json
import mimetypes
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import httpx

from .config import Settings
from .logging import get_logger


class StorageRequestError(Exception):
    """A storage call the provider refused or never answered."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider_message: str | None = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.provider_message = provider_message
        self.timed_out = timed_out


@dataclass(slots=True)
class UploadReceipt:
    provider_id: str
    url: str
    resource_kind: str
    format: str
    byte_size: int
    width: int | None = None
    height: int | None = None
    folder: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class ObjectStore(ABC):
    """Remote object storage as seen by the ingest pipeline."""

    @abstractmethod
    async def upload(
        self,
        data: bytes,
        *,
        key: str,
        mime_type: str,
        resource_kind: str,
        eager_loop_transcode: bool = False,
    ) -> UploadReceipt: ...

    @abstractmethod
    async def rename(self, from_key: str, to_key: str, *, resource_kind: str, overwrite: bool = True) -> UploadReceipt: ...

    @abstractmethod
    async def update_metadata(
        self,
        key: str,
        *,
        resource_kind: str,
        tags: Iterable[str],
        context: Mapping[str, Any],
    ) -> None: ...

    @abstractmethod
    async def delete(self, key: str, *, resource_kind: str) -> None: ...

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]: ...

    async def aclose(self) -> None:
        return None


def _guess_format(mime_type: str, fallback: str = "bin") -> str:
    extension = mimetypes.guess_extension(mime_type or "") or ""
    extension = extension.lstrip(".")
    return {"jpe": "jpg", "jpeg": "jpg"}.get(extension, extension) or fallback


class LocalObjectStore(ObjectStore):
    """Filesystem-backed object store for development and tests.

    Objects live at ``<base>/<resource_kind>/<key>.<format>`` with a JSON
    metadata file beside them holding tags and context.
    """

    def __init__(self, base_path: Path, base_url: str):
        self.base_path = base_path
        self.base_url = base_url.rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(component="local_object_store")

    def _find(self, key: str, resource_kind: str) -> Path:
        root = self.base_path / resource_kind
        matches = sorted(p for p in root.glob(f"{key}.*") if not p.name.endswith(".meta.json"))
        if not matches:
            raise StorageRequestError(f"object not found: {key}", status_code=404, provider_message="Resource not found")
        return matches[0]

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + ".meta.json")

    def _receipt(self, path: Path, key: str, resource_kind: str) -> UploadReceipt:
        width, height = _measure(path, resource_kind)
        relative = path.relative_to(self.base_path).as_posix()
        folder = key.rsplit("/", 1)[0] if "/" in key else None
        return UploadReceipt(
            provider_id=key,
            url=f"{self.base_url}/{relative}",
            resource_kind=resource_kind,
            format=path.suffix.lstrip("."),
            byte_size=path.stat().st_size,
            width=width,
            height=height,
            folder=folder,
        )

    def _write(self, data: bytes, key: str, fmt: str, resource_kind: str, meta: dict[str, Any]) -> UploadReceipt:
        target = self.base_path / resource_kind / f"{key}.{fmt}"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        self._meta_path(target).write_text(json.dumps(meta, sort_keys=True), encoding="utf-8")
        return self._receipt(target, key, resource_kind)

    def _move(self, from_key: str, to_key: str, resource_kind: str, overwrite: bool) -> UploadReceipt:
        source = self._find(from_key, resource_kind)
        target = self.base_path / resource_kind / f"{to_key}{source.suffix}"
        if target.exists() and not overwrite:
            raise StorageRequestError(f"object exists: {to_key}", status_code=409, provider_message="Resource already exists")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        meta_source = self._meta_path(source)
        if meta_source.exists():
            shutil.move(str(meta_source), str(self._meta_path(target)))
        return self._receipt(target, to_key, resource_kind)

    def _merge_meta(self, key: str, resource_kind: str, tags: list[str], context: dict[str, Any]) -> None:
        path = self._find(key, resource_kind)
        meta_path = self._meta_path(path)
        meta = json.loads(meta_path.read_text(encoding="utf-8")) if meta_path.exists() else {}
        meta["tags"] = tags
        meta["context"] = {key_: str(value) for key_, value in context.items()}
        meta_path.write_text(json.dumps(meta, sort_keys=True), encoding="utf-8")

    def _remove(self, key: str, resource_kind: str) -> None:
        path = self._find(key, resource_kind)
        path.unlink()
        self._meta_path(path).unlink(missing_ok=True)

    def _scan(self, prefix: str) -> list[str]:
        keys = []
        for path in self.base_path.rglob("*"):
            if not path.is_file() or path.name.endswith(".meta.json"):
                continue
            relative = path.relative_to(self.base_path)
            key = relative.relative_to(relative.parts[0]).with_suffix("").as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    async def upload(
        self,
        data: bytes,
        *,
        key: str,
        mime_type: str,
        resource_kind: str,
        eager_loop_transcode: bool = False,
    ) -> UploadReceipt:
        meta: dict[str, Any] = {"mime_type": mime_type, "uploaded_at": time.time()}
        if eager_loop_transcode:
            meta["eager"] = ["e_loop"]
        fmt = _guess_format(mime_type, fallback="mp4" if resource_kind == "video" else "jpg")
        return await asyncio.to_thread(self._write, data, key, fmt, resource_kind, meta)

    async def rename(self, from_key: str, to_key: str, *, resource_kind: str, overwrite: bool = True) -> UploadReceipt:
        return await asyncio.to_thread(self._move, from_key, to_key, resource_kind, overwrite)

    async def update_metadata(
        self,
        key: str,
        *,
        resource_kind: str,
        tags: Iterable[str],
        context: Mapping[str, Any],
    ) -> None:
        await asyncio.to_thread(self._merge_meta, key, resource_kind, list(tags), dict(context))

    async def delete(self, key: str, *, resource_kind: str) -> None:
        await asyncio.to_thread(self._remove, key, resource_kind)

    async def list_keys(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._scan, prefix)

    def read_metadata(self, key: str, *, resource_kind: str) -> dict[str, Any]:
        path = self._meta_path(self._find(key, resource_kind))
        return json.loads(path.read_text(encoding="utf-8"))


class CloudinaryObjectStore(ObjectStore):
    """Signed REST client for a Cloudinary-compatible media host."""

    def __init__(
        self,
        *,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        api_base: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.logger = get_logger(component="cloudinary_object_store")
        self._client = httpx.AsyncClient(
            base_url=f"{api_base.rstrip('/')}/{cloud_name}",
            timeout=timeout,
            transport=transport,
        )

    def sign(self, params: Mapping[str, Any]) -> str:
        """Return the SHA-1 request signature over the sorted, non-empty parameters."""
        payload = "&".join(f"{name}={params[name]}" for name in sorted(params) if params[name] not in (None, ""))
        return hashlib.sha1((payload + self.api_secret).encode("utf-8")).hexdigest()

    def _signed(self, params: dict[str, Any]) -> dict[str, Any]:
        params = {name: value for name, value in params.items() if value not in (None, "")}
        params["timestamp"] = str(int(time.time()))
        params["signature"] = self.sign(params)
        params["api_key"] = self.api_key
        return params

    async def _post(self, path: str, data: dict[str, Any], files: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self._client.post(path, data=data, files=files)
        except httpx.TimeoutException as exc:
            raise StorageRequestError(
                f"storage request timed out: {path}",
                provider_message=str(exc),
                timed_out=True,
            ) from exc
        except httpx.HTTPError as exc:
            raise StorageRequestError(f"storage transport failure: {path}", provider_message=str(exc)) from exc
        if response.status_code >= 300:
            raise StorageRequestError(
                f"storage request failed: {path} ({response.status_code})",
                status_code=response.status_code,
                provider_message=_provider_message(response),
            )
        return _json_object(response, path)

    @staticmethod
    def _receipt(body: dict[str, Any]) -> UploadReceipt:
        provider_id = body.get("public_id")
        if not isinstance(provider_id, str) or not provider_id:
            raise StorageRequestError("storage response missing public_id", provider_message=str(body)[:500])
        return UploadReceipt(
            provider_id=provider_id,
            url=body.get("secure_url") or body.get("url", ""),
            resource_kind=body.get("resource_type", "image"),
            format=body.get("format", ""),
            byte_size=int(body.get("bytes") or 0),
            width=body.get("width"),
            height=body.get("height"),
            folder=body.get("folder") or None,
            extra={name: body[name] for name in ("version", "etag", "eager") if name in body},
        )

    async def upload(
        self,
        data: bytes,
        *,
        key: str,
        mime_type: str,
        resource_kind: str,
        eager_loop_transcode: bool = False,
    ) -> UploadReceipt:
        params: dict[str, Any] = {"public_id": key}
        if eager_loop_transcode:
            params["eager"] = "e_loop/f_mp4"
            params["eager_async"] = "true"
        files = {"file": (key, data, mime_type)}
        body = await self._post(f"/{resource_kind}/upload", self._signed(params), files=files)
        return self._receipt(body)

    async def rename(self, from_key: str, to_key: str, *, resource_kind: str, overwrite: bool = True) -> UploadReceipt:
        params = {
            "from_public_id": from_key,
            "to_public_id": to_key,
            "overwrite": "true" if overwrite else "false",
        }
        body = await self._post(f"/{resource_kind}/rename", self._signed(params))
        return self._receipt(body)

    async def update_metadata(
        self,
        key: str,
        *,
        resource_kind: str,
        tags: Iterable[str],
        context: Mapping[str, Any],
    ) -> None:
        params = {
            "public_id": key,
            "type": "upload",
            "tags": ",".join(tags),
            "context": "|".join(f"{name}={value}" for name, value in context.items()),
        }
        await self._post(f"/{resource_kind}/explicit", self._signed(params))

    async def delete(self, key: str, *, resource_kind: str) -> None:
        await self._post(f"/{resource_kind}/destroy", self._signed({"public_id": key}))

    async def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        for resource_kind in ("image", "video"):
            cursor: Optional[str] = None
            while True:
                params: dict[str, Any] = {"prefix": prefix, "max_results": 500}
                if cursor:
                    params["next_cursor"] = cursor
                try:
                    response = await self._client.get(
                        f"/resources/{resource_kind}/upload",
                        params=params,
                        auth=(self.api_key, self.api_secret),
                    )
                except httpx.TimeoutException as exc:
                    raise StorageRequestError("storage listing timed out", provider_message=str(exc), timed_out=True) from exc
                except httpx.HTTPError as exc:
                    raise StorageRequestError("storage listing failed", provider_message=str(exc)) from exc
                if response.status_code >= 300:
                    raise StorageRequestError(
                        "storage listing failed",
                        status_code=response.status_code,
                        provider_message=_provider_message(response),
                    )
                body = _json_object(response, "storage listing")
                keys.extend(
                    resource["public_id"]
                    for resource in body.get("resources") or []
                    if isinstance(resource, dict) and resource.get("public_id")
                )
                cursor = body.get("next_cursor")
                if not cursor:
                    break
        return sorted(keys)

    async def aclose(self) -> None:
        await self._client.aclose()


def _json_object(response: httpx.Response, what: str) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise StorageRequestError(
            f"unreadable storage response: {what}",
            status_code=response.status_code,
            provider_message=response.text[:500],
        ) from exc
    if not isinstance(body, dict):
        raise StorageRequestError(f"unexpected storage response: {what}", status_code=response.status_code)
    return body


def _provider_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error or body)[:500]


def _measure(path: Path, resource_kind: str) -> tuple[int | None, int | None]:
    import cv2  # type: ignore

    if resource_kind == "video":
        capture = cv2.VideoCapture(str(path))
        try:
            if not capture.isOpened():
                return None, None
            width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)) or None
            height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)) or None
            return width, height
        finally:
            capture.release()
    image = cv2.imread(str(path))
    if image is None:
        return None, None
    height, width = image.shape[:2]
    return width, height


def get_object_store(settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> ObjectStore:
    if settings.storage_backend == "local":
        return LocalObjectStore(base_path=Path(settings.local_storage_base_path), base_url=settings.local_storage_base_url)
    if settings.storage_backend == "cloudinary":
        if not settings.storage_configured:
            raise ValueError("cloudinary storage requires cloud name, api key and api secret")
        return CloudinaryObjectStore(
            cloud_name=settings.storage_cloud_name or "",
            api_key=settings.secrets.storage_api_key or "",
            api_secret=settings.secrets.storage_api_secret or "",
            api_base=settings.storage_api_base,
            timeout=settings.upload_timeout_s,
            transport=transport,
        )
    raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")


__all__ = [
    "ObjectStore",
    "LocalObjectStore",
    "CloudinaryObjectStore",
    "StorageRequestError",
    "UploadReceipt",
    "get_object_store",
]
