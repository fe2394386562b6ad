# utils/document_loaders/pdf_loader.py

from typing import Iterator, Union, Optional, Dict, Any, List
import io
import re
import logging
from langchain_core.documents import Document
import fitz
from .base import BaseDocumentLoader, PageInfo, as_stream

logger = logging.getLogger(__name__)

_HORIZONTAL_WS = re.compile(r"[ \t]+")
_SOFT_LINE_BREAK = re.compile(r"([^\n])\n([^\n])")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


def clean_pdf_text(text: str) -> str:
    """Collapse layout whitespace: runs of spaces, hard-wrapped lines, stacked blank lines"""
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _SOFT_LINE_BREAK.sub(r"\1 \2", text)
    text = _EXTRA_BLANK_LINES.sub("\n\n", text)
    return text.strip()


class PDFLoader(BaseDocumentLoader):
    """
    PyMuPDF loader that yields one Document per page, so page spans are real
    page boundaries rather than an even split of the text.
    """
    mime_type = "application/pdf"
    supported_mime_types = ["application/pdf"]

    def __init__(self,
                min_page_length: int = 0,
                text_flags: Optional[int] = None):
        """
        Args:
            min_page_length: Pages with fewer stripped characters are skipped
            text_flags: PyMuPDF text extraction flags
        """
        self.min_page_length = min_page_length

        if text_flags is None:
            # Drop whitespace preservation and ligatures for speed
            self.text_flags = (
                fitz.TEXTFLAGS_TEXT &
                ~fitz.TEXT_PRESERVE_WHITESPACE &
                ~fitz.TEXT_PRESERVE_LIGATURES
            )
        else:
            self.text_flags = text_flags
        self._page_count = 0

    def stream_documents(self, source: Union[bytes, io.BytesIO]) -> Iterator[Document]:
        stream = as_stream(source)
        try:
            pdf = fitz.open(stream=stream, filetype="pdf")
        except Exception as e:
            logger.error(f"Failed to open PDF: {e}")
            raise ValueError(f"Cannot open PDF: {e}") from e

        try:
            total_pages = len(pdf)
            self._page_count = total_pages
            logger.debug(f"Processing PDF with {total_pages} pages")

            for page_num in range(total_pages):
                page = pdf[page_num]
                text = clean_pdf_text(page.get_text("text", flags=self.text_flags))

                if len(text) < max(1, self.min_page_length):
                    logger.debug(f"Skipping page {page_num + 1}: too short ({len(text)} chars)")
                    continue

                yield Document(page_content=text, metadata={
                    "page": page_num + 1,
                    "total_pages": total_pages,
                })
        finally:
            pdf.close()

    def describe(self, pages: List[PageInfo]) -> Dict[str, Any]:
        return {"page_count": self._page_count, "text_pages": len(pages)}
