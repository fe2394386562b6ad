# utils/document_loaders/text_loader.py

import io
from typing import Iterator, Union
from langchain_core.documents import Document
from .base import BaseDocumentLoader, as_stream


def decode_text(data: bytes) -> str:
    """UTF-8 decode with BOM stripped; undecodable bytes are replaced"""
    return data.decode("utf-8", errors="replace").lstrip("\ufeff")


class TextLoader(BaseDocumentLoader):
    """Plain text, markdown and python script sources as a single page"""
    mime_type = "text/plain"
    supported_mime_types = ["text/plain", "text/markdown", "text/x-python", "application/x-python-code"]

    def stream_documents(self, source: Union[bytes, io.BytesIO]) -> Iterator[Document]:
        text = decode_text(as_stream(source).getvalue())
        if text.strip():
            yield Document(page_content=text, metadata={"page": 1})
