"""In-memory document loading: bytes in, text plus page spans out"""

# utils/document_loaders/base.py

import io
from dataclasses import dataclass, field
from typing import List, Any, Dict, Iterator, Union
from langchain_core.documents import Document

from utils.chunking import normalize_text

PAGE_SEPARATOR = "\n\n"


@dataclass
class PageInfo:
    page_number: int
    start_offset: int
    end_offset: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DocumentLoadResult:
    content: str
    mime_type: str
    pages: List[PageInfo] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class BaseDocumentLoader:
    """
    Subclasses implement `stream_documents`, yielding one langchain `Document` per
    page (or logical section). `load_from_buffer` stitches them into a single text and
    records where each page starts and ends in it.
    """
    mime_type: str = "application/octet-stream"
    supported_mime_types: List[str] = []

    def stream_documents(self, source: Union[bytes, io.BytesIO]) -> Iterator[Document]:
        """Yield Document objects one by one from the source."""
        raise NotImplementedError("Subclasses must override stream_documents().")

    def load_from_buffer(self, data: bytes, preserve_structure: bool = True) -> DocumentLoadResult:
        """
        Parse `data` into normalized text.

        Each page is normalized on its own and pages are joined with a blank line, so
        the joined text is already normalized and page offsets stay valid for chunking.
        """
        parts: List[str] = []
        pages: List[PageInfo] = []
        offset = 0

        for position, doc in enumerate(self.stream_documents(data), start=1):
            text = normalize_text(doc.page_content)
            if not text:
                continue
            if parts:
                offset += len(PAGE_SEPARATOR)
            page_number = int(doc.metadata.get("page", position))
            pages.append(PageInfo(
                page_number=page_number,
                start_offset=offset,
                end_offset=offset + len(text),
                metadata={k: v for k, v in doc.metadata.items() if k != "page"},
            ))
            parts.append(text)
            offset += len(text)

        content = PAGE_SEPARATOR.join(parts)
        return DocumentLoadResult(
            content=content,
            mime_type=self.mime_type,
            pages=pages if preserve_structure else [],
            metadata=self.describe(pages),
        )

    def describe(self, pages: List[PageInfo]) -> Dict[str, Any]:
        return {"page_count": len(pages)}


def as_stream(source: Union[bytes, io.BytesIO]) -> io.BytesIO:
    """Wrap raw bytes in a rewound BytesIO"""
    if isinstance(source, io.BytesIO):
        source.seek(0)
        return source
    return io.BytesIO(source)
