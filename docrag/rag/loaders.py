"""Document loaders for plain text, markdown and PDF files.

Handles:
- YAML frontmatter parsing for markdown (title, url and source are lifted out)
- PDF text extraction with PyMuPDF
- Loading from a path or from uploaded bytes
"""
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import fitz  # PyMuPDF
import structlog
import yaml

logger = structlog.get_logger()

SUPPORTED_SUFFIXES = (".txt", ".md", ".pdf")


@dataclass
class DocumentInput:
    """A document ready to be stored, before it has an id."""

    name: str
    content: str
    source: str = "upload"
    type: Optional[str] = None
    url: Optional[str] = None
    path: Optional[str] = None

    def __post_init__(self):
        if self.type is None:
            self.type = Path(self.name).suffix.lstrip(".").lower() or "txt"


class UnsupportedDocumentError(ValueError):
    """The file type cannot be loaded."""


class DocumentLoader:
    """Turns files into DocumentInput records."""

    # Regex for YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)

    def discover(self, input_dir: Path) -> List[Path]:
        """Find every supported file under a directory, sorted by path.

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        if not input_dir.exists():
            raise FileNotFoundError(f"Input directory not found: {input_dir}")

        files = sorted(
            p for p in input_dir.rglob("*") if p.is_file() and p.suffix.lower() in SUPPORTED_SUFFIXES
        )
        logger.info("documents_discovered", count=len(files), input_dir=str(input_dir))
        return files

    def load_file(
        self, file_path: Path, source: str = "file", base_dir: Optional[Path] = None
    ) -> DocumentInput:
        """Load a document from disk.

        Documents are named by their path relative to `base_dir` when given
        (names are unique in the store), otherwise by the file name.

        Raises:
            FileNotFoundError: If the file doesn't exist
            UnsupportedDocumentError: If the suffix is not supported
        """
        if not file_path.exists():
            raise FileNotFoundError(f"Document not found: {file_path}")

        name = file_path.relative_to(base_dir).as_posix() if base_dir else file_path.name
        document = self.load_bytes(name, file_path.read_bytes(), source=source)
        document.path = str(file_path)
        return document

    def load_bytes(self, name: str, data: bytes, source: str = "upload") -> DocumentInput:
        """Load a document from raw bytes (an upload or a file read).

        Raises:
            UnsupportedDocumentError: If the suffix is not supported
        """
        suffix = Path(name).suffix.lower()

        if suffix == ".pdf":
            content = self._extract_pdf_text(data)
            document = DocumentInput(name=name, content=content, source=source, type="pdf")
        elif suffix == ".md":
            text = data.decode("utf-8", errors="replace")
            frontmatter, body = self._parse_frontmatter(text)
            document = DocumentInput(
                name=name,
                content=body,
                source=str(frontmatter.get("source") or source),
                type="md",
                url=frontmatter.get("url"),
            )
            title = frontmatter.get("title")
            if title:
                document.content = f"{title}\n\n{body}"
        elif suffix in (".txt", ""):
            document = DocumentInput(
                name=name,
                content=data.decode("utf-8", errors="replace"),
                source=source,
                type="txt",
            )
        else:
            raise UnsupportedDocumentError(f"Unsupported document type: {suffix}")

        logger.info(
            "document_loaded",
            name=name,
            type=document.type,
            content_length=len(document.content),
        )
        return document

    def _extract_pdf_text(self, data: bytes) -> str:
        try:
            with fitz.open(stream=data, filetype="pdf") as pdf:
                pages = [page.get_text() for page in pdf]
        except RuntimeError as e:
            # fitz.FileDataError is a RuntimeError
            raise UnsupportedDocumentError(f"Unreadable PDF: {e}") from e
        return "\n\n".join(page.strip() for page in pages if page.strip())

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        """Extract YAML frontmatter from markdown content.

        Returns:
            Tuple of (frontmatter_dict, content_without_frontmatter)
        """
        match = self.FRONTMATTER_PATTERN.match(content)
        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = None

        if not isinstance(frontmatter, dict):
            frontmatter = {}

        return frontmatter, content[match.end():]
