import hashlib
import html
import io
import logging
import re
import zipfile
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

import docx
import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 5 * 1024 * 1024  # 5 MB
CHUNK_WORDS = 1500

PDF_TYPE = "application/pdf"
DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PPTX_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

ALLOWED_FILE_TYPES = {
    PDF_TYPE: "pdf",
    DOCX_TYPE: "docx",
    PPTX_TYPE: "pptx",
}

_EXTENSION_TYPES = {
    ".pdf": PDF_TYPE,
    ".docx": DOCX_TYPE,
    ".pptx": PPTX_TYPE,
}

_SLIDE_NAME = re.compile(r"ppt/slides/slide(\d+)\.xml$")
_SLIDE_TEXT = re.compile(r"<a:t>(.+?)</a:t>", flags=re.DOTALL)


@dataclass
class ExtractionResult:
    text: str
    success: bool
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_content_type(content_type: Optional[str], filename: str) -> str:
    """
    Declared content type wins. Browsers sometimes send nothing or
    application/octet-stream, then the extension decides.
    """
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared and declared != "application/octet-stream":
        return declared
    for extension, mime in _EXTENSION_TYPES.items():
        if filename.lower().endswith(extension):
            return mime
    return declared


def strip_document_extension(filename: str) -> str:
    return re.sub(r"\.(pdf|docx|pptx)$", "", filename, flags=re.IGNORECASE)


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def count_words(text: str) -> int:
    return len(text.split())


def split_into_chunks(text: str, max_words: int = CHUNK_WORDS) -> List[str]:
    """Splits text on whitespace into chunks of at most max_words words."""
    words = text.split()
    return [" ".join(words[i : i + max_words]) for i in range(0, len(words), max_words)]


def _extract_pdf(data: bytes) -> Tuple[str, int]:
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        pages = [page.get_text("text") for page in doc]
        return "\n\n".join(pages), len(pages)
    finally:
        doc.close()


def _extract_docx(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    parts = [p.text for p in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            parts.append(" ".join(cell.text for cell in row.cells))
    return "\n".join(parts)


def _extract_pptx(data: bytes) -> Tuple[str, int]:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        slides = []
        for name in archive.namelist():
            m = _SLIDE_NAME.match(name)
            if m:
                slides.append((int(m.group(1)), name))
        slides.sort()

        texts = []
        for _, name in slides:
            xml = archive.read(name).decode("utf-8", errors="ignore")
            texts.append(" ".join(html.unescape(t) for t in _SLIDE_TEXT.findall(xml)))
    return "\n\n".join(texts), len(slides)


def _rejected(filename: str, file_type: str, error: str) -> ExtractionResult:
    logger.warning(f"DocumentProcessor: Rejected {filename}: {error}")
    return ExtractionResult(
        text="",
        success=False,
        error=error,
        metadata={
            "hash": "",
            "filename": filename,
            "file_type": file_type,
            "chunks": [],
            "word_count": 0,
            "page_count": None,
        },
    )


def extract_document(data: bytes, content_type: Optional[str], filename: str) -> ExtractionResult:
    """
    Turns an uploaded PDF, DOCX or PPTX file into plain text.

    Oversized files and unsupported types are rejected before extraction
    (success=False). Extraction problems never fail the call: an empty
    result or a parser exception is replaced by a bracketed placeholder
    text and success stays True, so the session can continue without
    document analysis.
    """
    file_type = resolve_content_type(content_type, filename)

    if len(data) > MAX_FILE_SIZE:
        return _rejected(filename, file_type, "File is too large. Please upload a file less than 5MB.")

    kind = ALLOWED_FILE_TYPES.get(file_type)
    if kind is None:
        return _rejected(filename, file_type, "Unsupported file type. Please upload a PDF, DOCX, or PPTX file.")

    logger.info(f"DocumentProcessor: Extracting text from {kind} file {filename} ({len(data) // 1024}KB)")

    page_count = None
    try:
        if kind == "pdf":
            text, page_count = _extract_pdf(data)
        elif kind == "docx":
            text = _extract_docx(data)
        else:
            text, page_count = _extract_pptx(data)

        if not text or not text.strip():
            logger.warning(f"DocumentProcessor: No text extracted from {filename}")
            text = (
                f"[No text could be extracted from {filename}. "
                f"The file might be scanned or contain only images.]"
            )
    except Exception as e:
        logger.error(f"DocumentProcessor: Error extracting text from {filename}: {e}", exc_info=True)
        text = f"[Error extracting text from {filename}: {str(e) or 'Unknown extraction error'}]"

    text = normalize_text(text)

    return ExtractionResult(
        text=text,
        success=True,
        metadata={
            "hash": hashlib.sha256(text.encode("utf-8")).hexdigest(),
            "filename": filename,
            "file_type": file_type,
            "chunks": split_into_chunks(text),
            "word_count": count_words(text),
            "page_count": page_count,
        },
    )
