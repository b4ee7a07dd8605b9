"""
docledger_services.ports -- Seams to external collaborators.

Responsibility:
    Typed Protocols for everything the pipeline consumes but does not own:
    the object store, OCR, the document classifier (with multi-receipt
    detection), image preprocessing, periodization hints, exchange-rate
    providers and the ERP.  Also the small built-in implementations used
    when a deployment does not supply its own.

Architecture position:
    Services -- imported by the pipeline, the currency service and the
    facade.  Nothing here touches the database.

Failure modes:
    Implementations signal failure by raising.  The pipeline decides
    whether a failure is stage-fatal (OCR, classification, upload) or a
    warning (preprocessing, receipt detection, rates, periodization, ERP).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from docledger_kernel.domain.documents import Classification


@dataclass(frozen=True)
class DetectedReceipt:
    """One receipt found on a scanned image."""

    index: int
    content: bytes | None = None
    description: str | None = None
    bounds: dict[str, Any] | None = None


@runtime_checkable
class ObjectStore(Protocol):
    """Durable storage for uploaded files."""

    def upload(self, company_id: str, file_name: str, content: bytes, mime_type: str | None) -> str:
        """Store ``content`` and return an opaque reference."""
        ...

    def get(self, ref: str) -> bytes: ...

    def delete(self, ref: str) -> None: ...


class OcrService(Protocol):
    def extract_text(self, content: bytes, mime_type: str | None, file_name: str) -> str: ...


class DocumentClassifier(Protocol):
    """Turns OCR text into structured facts."""

    def classify(self, text: str, *, company_id: str, file_name: str) -> Classification: ...

    def detect_receipts(self, content: bytes, mime_type: str | None) -> list[DetectedReceipt]:
        """Receipts found on an image; a single-receipt image returns one entry or none."""
        ...


class ImagePreprocessor(Protocol):
    def preprocess(self, content: bytes, mime_type: str | None) -> bytes: ...


class PeriodizationAdvisor(Protocol):
    """Suggests spreading a cost over several periods (prepaid rent, licences...)."""

    def suggest(self, classification: Classification) -> dict[str, Any] | None: ...


class RateProvider(Protocol):
    """
    One source of exchange rates.

    ``fetch_rate`` returns the number of ``to_currency`` units per unit of
    ``from_currency`` on ``on_date``, or None when the source has no rate
    for that day (weekends, holidays).
    """

    name: str
    timeout_seconds: float

    def fetch_rate(self, from_currency: str, to_currency: str, on_date: date) -> Decimal | None: ...


class ErpClient(Protocol):
    def find_or_create_supplier(self, company_id: str, name: str) -> str:
        """Return the ERP's supplier id for ``name``, creating the supplier if needed."""
        ...

    def post_voucher(
        self,
        company_id: str,
        voucher_number: str,
        classification: Classification,
        supplier_id: str | None = None,
    ) -> str:
        """Push a posted voucher; returns the ERP's reference."""
        ...


# ---------------------------------------------------------------------------
# Built-in implementations
# ---------------------------------------------------------------------------


class PassthroughPreprocessor:
    """Default: images are used as uploaded."""

    def preprocess(self, content: bytes, mime_type: str | None) -> bytes:
        return content


class NoPeriodization:
    """Default: no periodization hints."""

    def suggest(self, classification: Classification) -> dict[str, Any] | None:
        return None


class InMemoryObjectStore:
    """Process-local store, suitable for tests and single-process tools."""

    def __init__(self):
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def upload(self, company_id: str, file_name: str, content: bytes, mime_type: str | None) -> str:
        ref = f"mem://{company_id}/{uuid4().hex}/{file_name}"
        with self._lock:
            self._objects[ref] = content
        return ref

    def get(self, ref: str) -> bytes:
        with self._lock:
            try:
                return self._objects[ref]
            except KeyError:
                raise FileNotFoundError(ref) from None

    def delete(self, ref: str) -> None:
        with self._lock:
            self._objects.pop(ref, None)

    def __contains__(self, ref: str) -> bool:
        return ref in self._objects

    def __len__(self) -> int:
        return len(self._objects)


class FileSystemObjectStore:
    """Stores files below ``root/<company_id>/``."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def upload(self, company_id: str, file_name: str, content: bytes, mime_type: str | None) -> str:
        safe_name = Path(file_name).name or "document"
        relative = Path(company_id) / f"{uuid4().hex}_{safe_name}"
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return relative.as_posix()

    def get(self, ref: str) -> bytes:
        return (self.root / ref).read_bytes()

    def delete(self, ref: str) -> None:
        (self.root / ref).unlink(missing_ok=True)
