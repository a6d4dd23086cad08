# =============================================================================
# PDF Parser - Docling Text Extraction
# =============================================================================
#
# Turns an uploaded PDF into reading-order text elements, each annotated
# with the page it came from. The chunker consumes ParsedDocument; nothing
# downstream touches Docling types.
#
# Docling is synchronous and CPU heavy. The index runner calls parse_pdf()
# through asyncio.to_thread() so the event loop keeps serving requests.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

logger = logging.getLogger(__name__)

_TEXT_LABELS = frozenset({
    DocItemLabel.TITLE,
    DocItemLabel.SECTION_HEADER,
    DocItemLabel.TEXT,
    DocItemLabel.PARAGRAPH,
    DocItemLabel.LIST_ITEM,
    DocItemLabel.CAPTION,
    DocItemLabel.FOOTNOTE,
})


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ParsedElement:
    """One paragraph, heading or table in reading order."""

    text: str
    page_number: int  # 1-indexed; 0 when Docling gave no provenance
    element_type: str  # "text", "heading" or "table"


@dataclass
class ParsedDocument:
    elements: list[ParsedElement] = field(default_factory=list)
    page_count: int = 0
    filename: str = ""

    @property
    def text(self) -> str:
        return "\n\n".join(e.text for e in self.elements)


# ---------------------------------------------------------------------------
# Docling Converter - Lazy Singleton
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info("Initializing Docling DocumentConverter (first use)")
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = False
        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
            }
        )
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_pdf(file_path: str) -> ParsedDocument:
    """
    Extract text elements from a PDF.

    Raises:
        FileNotFoundError: If the file does not exist.
        RuntimeError: If Docling fails to convert the document.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"PDF not found: {file_path}")

    logger.info("Parsing PDF: %s", path.name)
    try:
        result = _get_converter().convert(str(path))
    except Exception as exc:
        raise RuntimeError(f"Docling failed to parse '{path.name}': {exc}") from exc

    document = result.document
    elements: list[ParsedElement] = []
    pages: set[int] = set()

    for item, _level in document.iterate_items():
        page_no = item.prov[0].page_no if getattr(item, "prov", None) else 0
        label = getattr(item, "label", None)

        if label == DocItemLabel.TABLE:
            text = item.export_to_markdown(doc=document).strip()
            element_type = "table"
        elif label in _TEXT_LABELS:
            text = (getattr(item, "text", "") or "").strip()
            element_type = (
                "heading"
                if label in (DocItemLabel.TITLE, DocItemLabel.SECTION_HEADER)
                else "text"
            )
        else:
            continue

        if text:
            elements.append(ParsedElement(text=text, page_number=page_no, element_type=element_type))
            pages.add(page_no)

    page_count = max(pages - {0}, default=0)
    logger.info("Parsed '%s': %d elements, %d pages", path.name, len(elements), page_count)
    return ParsedDocument(elements=elements, page_count=page_count, filename=path.name)
