"""Extraction router: images go to OCR, everything else to Docling."""

from __future__ import annotations

import io
import logging
import math
from pathlib import Path
from typing import TYPE_CHECKING, Any

from PIL import UnidentifiedImageError

from core.errors import ExtractionError, ExtractionFailure
from core.models import ExtractionMethod, RawDocument

if TYPE_CHECKING:
    from docling.document_converter import DocumentConverter

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".tiff", ".tif", ".bmp", ".gif"})
PLAIN_TEXT_EXTENSIONS = frozenset({".txt", ".md", ".csv"})
DOCLING_EXTENSIONS = frozenset(
    {".pdf", ".docx", ".pptx", ".xlsx", ".html", ".htm", ".xhtml", ".adoc", ".asciidoc"}
)
SUPPORTED_EXTENSIONS = IMAGE_EXTENSIONS | PLAIN_TEXT_EXTENSIONS | DOCLING_EXTENSIONS

NO_TEXT_SENTINEL = "No text extracted from image"


def is_image_file(file_path: str | Path) -> bool:
    return Path(file_path).suffix.lower() in IMAGE_EXTENSIONS


def build_document_converter(use_gpu: bool = False) -> DocumentConverter:
    """Docling converter for PDF/DOCX/PPTX/XLSX/HTML documents."""
    from docling.document_converter import DocumentConverter

    converter_kwargs: dict = {}

    if use_gpu:
        try:
            from docling.datamodel.accelerator_options import (
                AcceleratorDevice,
                AcceleratorOptions,
            )
            from docling.datamodel.base_models import InputFormat
            from docling.datamodel.pipeline_options import PdfPipelineOptions
            from docling.document_converter import PdfFormatOption

            accel = AcceleratorOptions(device=AcceleratorDevice.AUTO)
            pdf_opts = PdfPipelineOptions(accelerator_options=accel)
            converter_kwargs["format_options"] = {
                InputFormat.PDF: PdfFormatOption(pipeline_options=pdf_opts),
            }
            logger.info("GPU acceleration enabled for PDF")
        except ImportError:
            logger.warning("GPU acceleration imports failed, falling back to CPU")

    return DocumentConverter(**converter_kwargs)


def build_ocr_converter() -> DocumentConverter:
    """Docling converter restricted to images with forced full-page OCR."""
    from docling.datamodel.base_models import InputFormat
    from docling.datamodel.pipeline_options import PdfPipelineOptions
    from docling.document_converter import DocumentConverter, ImageFormatOption

    pipeline_options = PdfPipelineOptions(do_ocr=True)
    pipeline_options.ocr_options.force_full_page_ocr = True

    return DocumentConverter(
        allowed_formats=[InputFormat.IMAGE],
        format_options={
            InputFormat.IMAGE: ImageFormatOption(pipeline_options=pipeline_options),
        },
    )


class Extractor:
    """Turns a file into a RawDocument.

    Built once at startup and shared by every ingestion worker. Converters can
    be injected (tests, custom Docling pipelines); otherwise they are created
    here so initialization order is explicit.
    """

    def __init__(
        self,
        document_converter: DocumentConverter | None = None,
        ocr_converter: DocumentConverter | None = None,
        use_gpu: bool = False,
    ):
        self._document_converter = document_converter or build_document_converter(use_gpu)
        self._ocr_converter = ocr_converter or build_ocr_converter()

    def extract(self, file_path: str | Path) -> RawDocument:
        """Extract text and metadata from a file.

        Raises:
            ExtractionError: UNSUPPORTED_FORMAT, IO_FAILURE or BACKEND_FAILURE.
        """
        path = Path(file_path)
        suffix = path.suffix.lower()

        if suffix not in SUPPORTED_EXTENSIONS:
            raise ExtractionError(
                f"Unsupported file format: {suffix or '<none>'}",
                kind=ExtractionFailure.UNSUPPORTED_FORMAT,
                file_path=str(path),
            )
        if not path.is_file():
            raise ExtractionError(
                f"File not found: {file_path}",
                kind=ExtractionFailure.IO_FAILURE,
                file_path=str(path),
            )

        if suffix in IMAGE_EXTENSIONS:
            return self._extract_image(path)
        if suffix in PLAIN_TEXT_EXTENSIONS:
            return self._extract_plain_text(path)
        return self._extract_with_docling(path)

    def _extract_image(self, path: Path) -> RawDocument:
        logger.info("Processing image with OCR: %s", path.name)
        try:
            source: Any = _gif_to_png_stream(path) if path.suffix.lower() == ".gif" else str(path)
            result = self._ocr_converter.convert(source)
            text = result.document.export_to_text()
        except UnidentifiedImageError as e:
            logger.error("Unreadable image %s: %s", path.name, e)
            raise ExtractionError(
                f"Cannot decode image {path.name}: {e}",
                kind=ExtractionFailure.BACKEND_FAILURE,
                file_path=str(path),
            ) from e
        except OSError as e:
            raise ExtractionError(
                f"Failed to read image {path.name}: {e}",
                kind=ExtractionFailure.IO_FAILURE,
                file_path=str(path),
            ) from e
        except Exception as e:
            logger.error("OCR failed for %s: %s", path.name, e)
            raise ExtractionError(
                f"OCR processing failed for {path.name}: {e}",
                kind=ExtractionFailure.BACKEND_FAILURE,
                file_path=str(path),
            ) from e

        if not text or not text.strip():
            logger.warning("No text found in image: %s", path.name)
            text = NO_TEXT_SENTINEL

        metadata = _base_metadata(path, ExtractionMethod.IMAGE_OCR, text)
        ocr_score = _ocr_confidence(result)
        if ocr_score is not None:
            metadata["ocr_confidence"] = f"{ocr_score:.3f}"

        return RawDocument(
            source_path=str(path.resolve()),
            display_name=path.name,
            extracted_text=text,
            metadata=metadata,
            extraction_method=ExtractionMethod.IMAGE_OCR,
        )

    def _extract_plain_text(self, path: Path) -> RawDocument:
        logger.info("Loading text file: %s", path)
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                text = f.read()
        except OSError as e:
            raise ExtractionError(
                f"Failed to read {path.name}: {e}",
                kind=ExtractionFailure.IO_FAILURE,
                file_path=str(path),
            ) from e

        if text.startswith("\ufeff"):
            text = text[1:]

        return RawDocument(
            source_path=str(path.resolve()),
            display_name=path.name,
            extracted_text=text,
            metadata=_base_metadata(path, ExtractionMethod.GENERIC_EXTRACTION, text),
            extraction_method=ExtractionMethod.GENERIC_EXTRACTION,
        )

    def _extract_with_docling(self, path: Path) -> RawDocument:
        logger.info("Loading document via Docling: %s", path)
        try:
            result = self._document_converter.convert(str(path))
            text = result.document.export_to_markdown()
        except OSError as e:
            raise ExtractionError(
                f"Failed to read {path.name}: {e}",
                kind=ExtractionFailure.IO_FAILURE,
                file_path=str(path),
            ) from e
        except Exception as e:
            logger.error("Docling conversion failed for %s: %s", path.name, e)
            raise ExtractionError(
                f"Document extraction failed for {path.name}: {e}",
                kind=ExtractionFailure.BACKEND_FAILURE,
                file_path=str(path),
            ) from e

        metadata = _base_metadata(path, ExtractionMethod.GENERIC_EXTRACTION, text)
        page_count = result.input.page_count
        if isinstance(page_count, int) and page_count > 0:
            metadata["page_count"] = str(page_count)
        ocr_score = _ocr_confidence(result)
        if ocr_score is not None:
            metadata["ocr_confidence"] = f"{ocr_score:.3f}"

        logger.info("Loaded %d characters from %s", len(text), path)
        return RawDocument(
            source_path=str(path.resolve()),
            display_name=path.name,
            extracted_text=text,
            metadata=metadata,
            extraction_method=ExtractionMethod.GENERIC_EXTRACTION,
        )


def _base_metadata(path: Path, method: ExtractionMethod, text: str) -> dict[str, str]:
    return {
        "file_name": path.name,
        "file_extension": path.suffix.lower().lstrip("."),
        "extraction_method": method.value,
        "has_ocr": "true" if method == ExtractionMethod.IMAGE_OCR else "false",
        "char_count": str(len(text)),
    }


def _ocr_confidence(result: Any) -> float | None:
    # Confidence reports only exist on newer Docling releases.
    confidence = getattr(result, "confidence", None)
    score = getattr(confidence, "ocr_score", None)
    if isinstance(score, (int, float)) and not math.isnan(score):
        return float(score)
    return None


def _gif_to_png_stream(path: Path):
    """Docling does not read GIF, so hand it the first frame as PNG."""
    from PIL import Image

    buffer = io.BytesIO()
    with Image.open(path) as image:
        image.convert("RGB").save(buffer, format="PNG")
    buffer.seek(0)

    from docling.datamodel.base_models import DocumentStream

    return DocumentStream(name=f"{path.stem}.png", stream=buffer)
