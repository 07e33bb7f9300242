"""
PDF content extraction for developer brochures.

Text, header/paragraph blocks, tables and document metadata are pulled out
with pdfplumber. Tables come from two places: pdfplumber's own table finder,
and runs of column-aligned text lines (brochures often lay price lists out
with spaces rather than ruled tables).
"""

import asyncio
import io
import logging
import re
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional

import pdfplumber

logger = logging.getLogger(__name__)

CELL_SPLIT = re.compile(r"\t| {2,}")
PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")
CAPS_LINE = re.compile(r"^[A-Z][A-Z\s]+$")

PRICING_KEYWORDS = [
    "price", "pricing", "cost", "aed", "usd", "payment", "plan",
    "bedroom", "br", "unit", "type", "size", "sqft", "sqm",
    "מחיר", "תשלום", "יחידה",
]

PAYMENT_KEYWORDS = ["payment", "plan", "milestone", "booking", "handover", "construction", "תשלום"]


class PDFProcessingError(Exception):
    """Raised when a PDF cannot be opened or read."""


@dataclass
class ExtractedBlock:
    type: str  # header | text | table
    content: str
    page: int


@dataclass
class TableData:
    headers: List[str]
    rows: List[List[str]]
    page: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PDFExtractionResult:
    text: str
    page_count: int
    blocks: List[ExtractedBlock] = field(default_factory=list)
    tables: List[TableData] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def header_count(self) -> int:
        return sum(1 for block in self.blocks if block.type == "header")


# ============================================================================
# LINE PARSING
# ============================================================================

def is_header_line(line: str) -> bool:
    return (
        (line.isupper() and 2 < len(line) < 50)
        or line.endswith(":")
        or bool(CAPS_LINE.match(line))
    )


def split_cells(line: str) -> List[str]:
    return [cell.strip() for cell in CELL_SPLIT.split(line) if cell.strip()]


def parse_text_blocks(text: str, page: int = 1):
    """
    Classify the lines of one page into header/text/table blocks.

    Returns ``(blocks, tables)``.
    """
    blocks: List[ExtractedBlock] = []
    tables: List[TableData] = []
    lines = [line.strip() for line in text.split("\n") if line.strip()]

    i = 0
    while i < len(lines):
        line = lines[i]

        if is_header_line(line):
            blocks.append(ExtractedBlock(type="header", content=line, page=page))

        elif len(split_cells(line)) >= 3:
            headers: List[str] = []
            rows: List[List[str]] = []

            if blocks and blocks[-1].type == "header":
                headers = [blocks[-1].content]

            cells = split_cells(line)
            if not headers:
                headers = cells
            else:
                rows.append(cells)

            while i + 1 < len(lines):
                next_cells = split_cells(lines[i + 1])
                if len(next_cells) < 2:
                    break
                rows.append(next_cells)
                i += 1

            if rows:
                table = TableData(headers=headers, rows=rows, page=page)
                tables.append(table)
                blocks.append(ExtractedBlock(type="table", content=str(table.to_dict()), page=page))

        else:
            blocks.append(ExtractedBlock(type="text", content=line, page=page))

        i += 1

    return blocks, tables


def _clean_table(raw_table: List[List[Optional[str]]], page: int) -> Optional[TableData]:
    rows = [
        [(cell or "").strip() for cell in row]
        for row in raw_table
        if any(cell and cell.strip() for cell in row)
    ]
    if len(rows) < 2:
        return None
    return TableData(headers=rows[0], rows=rows[1:], page=page)


def _parse_metadata(info: Dict[str, Any], page_count: int) -> Dict[str, Any]:
    def text(key):
        value = info.get(key)
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="ignore")
        return str(value).strip() if value else None

    return {
        "title": text("Title"),
        "author": text("Author"),
        "subject": text("Subject"),
        "creator": text("Creator"),
        "producer": text("Producer"),
        "creationDate": text("CreationDate"),
        "modDate": text("ModDate"),
        "pageCount": page_count,
    }


# ============================================================================
# EXTRACTION
# ============================================================================

def _extract_sync(pdf_bytes: bytes) -> PDFExtractionResult:
    page_texts = []
    blocks: List[ExtractedBlock] = []
    tables: List[TableData] = []

    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        for page_number, page in enumerate(pdf.pages, start=1):
            page_text = page.extract_text() or ""
            page_texts.append(page_text)

            page_blocks, page_tables = parse_text_blocks(page_text, page=page_number)
            blocks.extend(page_blocks)
            tables.extend(page_tables)

            for raw_table in page.extract_tables():
                table = _clean_table(raw_table, page_number)
                if table:
                    tables.append(table)

        metadata = _parse_metadata(pdf.metadata or {}, len(pdf.pages))

    return PDFExtractionResult(
        text="\n".join(page_texts),
        page_count=metadata["pageCount"],
        blocks=blocks,
        tables=tables,
        metadata=metadata,
    )


async def extract_pdf_content(pdf_bytes: bytes) -> PDFExtractionResult:
    """Extract text, blocks, tables and metadata. pdfplumber runs in a worker thread."""
    try:
        result = await asyncio.to_thread(_extract_sync, pdf_bytes)
    except Exception as e:
        logger.error(f"PDF extraction error: {e}")
        raise PDFProcessingError(f"Failed to extract PDF content: {e}") from e

    logger.info(
        f"Extracted {result.page_count} pages, {len(result.blocks)} blocks, {len(result.tables)} tables"
    )
    return result


# ============================================================================
# TABLE ANALYSIS
# ============================================================================

def identify_pricing_tables(tables: List[TableData]) -> List[TableData]:
    """Tables whose headers (or, failing that, first row) mention prices, units or payments."""
    pricing = []
    for table in tables:
        header_text = " ".join(table.headers).lower()
        if any(keyword in header_text for keyword in PRICING_KEYWORDS):
            pricing.append(table)
            continue
        if table.rows:
            first_row = " ".join(table.rows[0]).lower()
            if any(keyword in first_row for keyword in PRICING_KEYWORDS):
                pricing.append(table)
    return pricing


def extract_payment_milestones(tables: List[TableData]) -> List[Dict[str, Any]]:
    """Pull ``{percentage, description}`` pairs out of payment-plan tables."""
    milestones = []
    for table in tables:
        header_text = " ".join(table.headers).lower()
        if table.headers and not any(keyword in header_text for keyword in PAYMENT_KEYWORDS):
            continue

        for row in table.rows:
            for index, cell in enumerate(row):
                match = PERCENT_RE.search(cell)
                if not match:
                    continue
                description = " ".join(c for i, c in enumerate(row) if i != index).strip()
                milestones.append({
                    "percentage": float(match.group(1)),
                    "description": description or cell,
                })
    return milestones


def calculate_confidence(result: PDFExtractionResult) -> int:
    """Rough 0-100 score of how much usable content the PDF yielded."""
    score = 0

    text_length = len(result.text)
    if text_length > 1000:
        score += 30
    elif text_length > 500:
        score += 20
    elif text_length > 100:
        score += 10

    headers = result.header_count
    if headers > 5:
        score += 30
    elif headers > 3:
        score += 20
    elif headers > 0:
        score += 10

    if len(result.tables) > 2:
        score += 30
    elif result.tables:
        score += 20

    if result.metadata.get("title"):
        score += 5
    if result.metadata.get("author"):
        score += 5

    return min(score, 100)
