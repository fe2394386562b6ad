"""In-memory Word loader"""

# utils/document_loaders/docx_loader.py

import io
import logging
from typing import Iterator, Union
from langchain_core.documents import Document
from .base import BaseDocumentLoader, as_stream
import docx # python-docx

logger = logging.getLogger(__name__)

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class DocxLoader(BaseDocumentLoader):
    """
    A loader for .docx files that operates on in-memory streams.

    Word files carry no reliable page boundaries, so the whole body is a single
    page-1 Document with paragraphs separated by blank lines. The legacy binary .doc
    format is not parseable by python-docx and fails with a descriptive error.
    """
    mime_type = DOCX_MIME
    supported_mime_types = [DOCX_MIME, "application/msword"]

    def stream_documents(self, source: Union[bytes, io.BytesIO]) -> Iterator[Document]:
        try:
            document = docx.Document(as_stream(source))
        except Exception as e:
            raise RuntimeError(f"Failed to process DOCX stream: {e}") from e

        paragraphs = [p.text.strip() for p in document.paragraphs if p.text.strip()]
        if not paragraphs:
            logger.warning("DOCX contains no text paragraphs")
            return

        yield Document(
            page_content="\n\n".join(paragraphs),
            metadata={"page": 1, "paragraph_count": len(paragraphs)},
        )
