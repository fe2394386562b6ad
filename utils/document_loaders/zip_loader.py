# utils/document_loaders/zip_loader.py

import io
import logging
import posixpath
import zipfile
from typing import Iterator, Union, List
from langchain_core.documents import Document
from .base import BaseDocumentLoader, as_stream
from .text_loader import decode_text

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {
    "md", "markdown", "txt", "json", "yaml", "yml", "toml", "ini", "cfg", "conf",
    "csv", "tsv", "py", "js", "ts", "tsx", "jsx",
}

MAX_FILES = 60
MAX_FILE_CHARS = 120_000

EMPTY_PACKAGE_NOTICE = (
    "Skill package contains no supported text files. "
    "Include SKILL.md and optional references/*.md files."
)


def _is_skill_path(path: str) -> bool:
    lower = path.lower()
    return (
        lower == "skill.md"
        or lower.endswith("/skill.md")
        or lower.startswith("references/")
        or "/references/" in lower
    )


class ZipSkillLoader(BaseDocumentLoader):
    """
    Zip "skill package" loader: every text file becomes one page, SKILL.md and
    references/ first, capped at MAX_FILES files of MAX_FILE_CHARS characters.
    """
    mime_type = "application/zip"
    supported_mime_types = ["application/zip", "application/x-zip-compressed"]

    def stream_documents(self, source: Union[bytes, io.BytesIO]) -> Iterator[Document]:
        try:
            archive = zipfile.ZipFile(as_stream(source))
        except zipfile.BadZipFile as e:
            raise ValueError(f"Cannot open zip package: {e}") from e

        with archive:
            names: List[str] = [
                info.filename for info in archive.infolist()
                if not info.is_dir()
                and posixpath.splitext(info.filename)[1].lstrip(".").lower() in TEXT_EXTENSIONS
            ]
            names.sort(key=lambda name: (0 if _is_skill_path(name) else 1, name))

            emitted = 0
            for name in names[:MAX_FILES]:
                raw = decode_text(archive.read(name)).strip()
                if not raw:
                    continue
                if len(raw) > MAX_FILE_CHARS:
                    raw = f"{raw[:MAX_FILE_CHARS]}\n\n...[TRUNCATED]"
                emitted += 1
                yield Document(
                    page_content=f"### FILE: {name}\n{raw}",
                    metadata={"page": emitted, "path": name},
                )

            if emitted == 0:
                logger.warning(f"Zip package has no supported text files ({len(names)} candidates)")
                yield Document(page_content=EMPTY_PACKAGE_NOTICE, metadata={"page": 1})
