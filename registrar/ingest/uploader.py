from __future__ import annotations

import asyncio

from registrar.core.logging import get_logger
from registrar.core.storage import ObjectStore, StorageRequestError, UploadReceipt

from .errors import UploadError


class ProvisionalUploader:
    """Puts raw bytes into the object store under a disposable key.

    The caller generates the key; this adapter never invents names, so the
    reconciliation step always knows exactly which object to promote.
    """

    def __init__(self, store: ObjectStore, *, timeout_s: float):
        self.store = store
        self.timeout_s = timeout_s
        self.logger = get_logger(component="provisional_uploader")

    async def upload_provisional(self, data: bytes, mime_hint: str, provisional_key: str) -> UploadReceipt:
        resource_kind = "video" if mime_hint.startswith("video/") else "image"
        try:
            receipt = await asyncio.wait_for(
                self.store.upload(
                    data,
                    key=provisional_key,
                    mime_type=mime_hint,
                    resource_kind=resource_kind,
                    eager_loop_transcode=resource_kind == "video",
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise UploadError(
                f"Initial upload timed out after {self.timeout_s:.0f}s",
                timed_out=True,
            ) from exc
        except StorageRequestError as exc:
            raise UploadError(
                f"Initial upload failed: {exc}",
                status_code=exc.status_code,
                provider_message=exc.provider_message,
                timed_out=exc.timed_out,
            ) from exc
        except OSError as exc:
            raise UploadError(f"Initial upload failed: {exc}") from exc

        self.logger.debug(
            "provisional_upload_stored",
            key=provisional_key,
            resource_kind=receipt.resource_kind,
            byte_size=receipt.byte_size,
        )
        return receipt


__all__ = ["ProvisionalUploader"]
