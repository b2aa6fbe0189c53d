"""Domain entities shared by the API, the CLI and the queue."""

from registrar.ingest.errors import (
    ClassificationError,
    IngestError,
    ReconciliationError,
    UploadError,
    ValidationError,
)
from registrar.ingest.models import ClassificationResult, IngestItem, ItemState, RawMedia

__all__ = [
    "ClassificationError",
    "ClassificationResult",
    "IngestError",
    "IngestItem",
    "ItemState",
    "RawMedia",
    "ReconciliationError",
    "UploadError",
    "ValidationError",
]
