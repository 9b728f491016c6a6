from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from io import BytesIO

import pytesseract
from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from payment_recon.core.config import settings
from payment_recon.core.errors import ExtractionFailure, UpstreamUnavailable
from payment_recon.core.logging import get_logger, log_event, monotonic_ms
from payment_recon.modules.extraction.amount import find_amount

logger = get_logger(__name__)

PDF = "pdf"
IMAGE = "image"


@dataclass(frozen=True)
class ExtractedAmount:
    amount: Decimal | None
    currency: str | None = None
    strategy: str | None = None


def detect_slip_kind(*, body: bytes, media_type: str | None) -> str | None:
    """Classify a slip as ``pdf`` / ``image`` from its declared type, sniffing opaque uploads."""
    ctype = (media_type or "").split(";", 1)[0].strip().lower()
    if ctype == "application/pdf":
        return PDF
    if ctype.startswith("image/"):
        return IMAGE
    if ctype in {"", "application/octet-stream", "binary/octet-stream"}:
        if _looks_like_pdf_bytes(body):
            return PDF
        if _looks_like_image_bytes(body):
            return IMAGE
    return None


def extract_text(body: bytes, media_type: str | None) -> str:
    """Readable text of a slip.

    Raises ``ExtractionFailure`` when the bytes can't be read and ``UpstreamUnavailable``
    when the OCR engine is missing, fails or times out.
    """
    kind = detect_slip_kind(body=body, media_type=media_type)
    if kind is None:
        raise ExtractionFailure("Unsupported slip media type", media_type=media_type)

    start = time.monotonic()
    try:
        text = _pdf_text(body) if kind == PDF else _ocr_image_bytes(body)
    except (PdfReadError, UnidentifiedImageError, RuntimeError, OSError, ValueError) as e:
        log_event(
            logger,
            "extraction.text.failure",
            slip_kind=kind,
            error_type=type(e).__name__,
            duration_ms=monotonic_ms(start),
        )
        if kind == IMAGE and _is_ocr_engine_error(e):
            raise UpstreamUnavailable("OCR engine unavailable", slip_kind=kind) from e
        raise ExtractionFailure(f"Could not read {kind} slip", slip_kind=kind) from e

    log_event(
        logger,
        "extraction.text.success",
        slip_kind=kind,
        char_count=len(text),
        duration_ms=monotonic_ms(start),
    )
    return text


def extract_amount_detail(body: bytes, media_type: str | None) -> ExtractedAmount:
    try:
        text = extract_text(body, media_type)
    except ExtractionFailure:
        return ExtractedAmount(amount=None)
    # A bad slip never fails the caller; anything the engines raise means "no amount".
    except Exception:  # noqa: BLE001
        log_event(logger, "extraction.amount.engine_error", media_type=media_type)
        return ExtractedAmount(amount=None)

    found = find_amount(text)
    if found is None:
        log_event(logger, "extraction.amount.not_found", media_type=media_type)
        return ExtractedAmount(amount=None)
    log_event(
        logger,
        "extraction.amount.found",
        media_type=media_type,
        strategy=found.strategy,
        currency=found.currency,
    )
    return ExtractedAmount(amount=found.amount, currency=found.currency, strategy=found.strategy)


def extract_amount(body: bytes, media_type: str | None) -> Decimal | None:
    return extract_amount_detail(body, media_type).amount


def _pdf_text(body: bytes) -> str:
    # Text layer only: scanned PDFs yield no text and therefore no amount.
    reader = PdfReader(BytesIO(body))
    pages = [
        (page.extract_text() or "").replace("\u202f", " ").replace("\xa0", " ")
        for page in reader.pages
    ]
    return "\n".join(pages)


def _ocr_image_bytes(body: bytes) -> str:
    image = Image.open(BytesIO(body))
    if image.mode not in {"RGB", "L"}:
        image = image.convert("RGB")
    return (
        pytesseract.image_to_string(
            image,
            lang=settings.tesseract_lang,
            timeout=settings.ocr_timeout_seconds,
        )
        or ""
    )


def _is_ocr_engine_error(error: Exception) -> bool:
    # pytesseract reports timeouts and non-zero exits as RuntimeError subclasses.
    return isinstance(error, (RuntimeError, pytesseract.TesseractNotFoundError))


def _looks_like_pdf_bytes(body: bytes) -> bool:
    if not body:
        return False
    b = body.lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    return b.startswith(b"%PDF")


def _looks_like_image_bytes(body: bytes) -> bool:
    if not body:
        return False
    b = body.lstrip()
    return (
        b.startswith(b"\x89PNG\r\n\x1a\n")
        or b.startswith(b"\xff\xd8\xff")
        or b.startswith(b"II*\x00")
        or b.startswith(b"MM\x00*")
        or b.startswith(b"BM")
        or b.startswith((b"GIF87a", b"GIF89a"))
        or (len(b) >= 12 and b.startswith(b"RIFF") and b[8:12] == b"WEBP")
    )
