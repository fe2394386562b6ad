# utils/document_loaders/loader_factory.py

import os
import logging
from typing import Type, Optional, Dict
from .base import BaseDocumentLoader
from .pdf_loader import PDFLoader
from .docx_loader import DocxLoader
from .text_loader import TextLoader
from .zip_loader import ZipSkillLoader

logger = logging.getLogger(__name__)

# Map declared MIME type → loader class, from each loader's `supported_mime_types`
LOADER_CLASSES = (PDFLoader, DocxLoader, TextLoader, ZipSkillLoader)

_LOADER_MAP: Dict[str, Type[BaseDocumentLoader]] = {
    mime: loader_cls for loader_cls in LOADER_CLASSES for mime in loader_cls.supported_mime_types
}

# Unknown or missing MIME types fall back to the PDF parser
DEFAULT_LOADER: Type[BaseDocumentLoader] = PDFLoader

SCRIPT_EXTENSIONS = (".py",)


def get_loader_for_mime(mime: Optional[str]) -> BaseDocumentLoader:
    """Pick a loader by declared MIME type (parameters such as `; charset=` are ignored)"""
    normalized = (mime or "").split(";")[0].strip().lower()
    loader_cls = _LOADER_MAP.get(normalized)
    if loader_cls is None:
        logger.debug(f"No loader registered for MIME '{normalized or '<none>'}', using {DEFAULT_LOADER.__name__}")
        loader_cls = DEFAULT_LOADER
    return loader_cls()


def is_script_source(filename: Optional[str], mime: Optional[str]) -> bool:
    """Python script sources are detected by extension or MIME"""
    lower_mime = (mime or "").lower()
    ext = os.path.splitext((filename or "").lower())[1]
    return "x-python" in lower_mime or ext in SCRIPT_EXTENSIONS
