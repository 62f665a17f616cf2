from __future__ import annotations

import csv
import io
import json
from abc import ABC, abstractmethod
from pathlib import Path

import docx
import pypdf
from bs4 import BeautifulSoup

from agentcore.services.errors import UnsupportedFormat


def _decode(raw: bytes) -> str:
    for enc in ("utf-8", "latin-1", "cp1251"):
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="replace")


class DocumentParser(ABC):
    @abstractmethod
    def parse(self, path: str | Path) -> str:
        """Return the document's plain text."""


class PlainTextParser(DocumentParser):
    def parse(self, path: str | Path) -> str:
        return _decode(Path(path).read_bytes())


class JsonParser(DocumentParser):
    def parse(self, path: str | Path) -> str:
        data = json.loads(_decode(Path(path).read_bytes()))
        return json.dumps(data, indent=2, ensure_ascii=False)


class CsvParser(DocumentParser):
    def parse(self, path: str | Path) -> str:
        reader = csv.reader(io.StringIO(_decode(Path(path).read_bytes())))
        return "\n".join(", ".join(cell.strip() for cell in row) for row in reader if row)


class HtmlParser(DocumentParser):
    _DROP = ["head", "script", "style", "noscript"]

    def parse(self, path: str | Path) -> str:
        soup = BeautifulSoup(_decode(Path(path).read_bytes()), "html.parser")
        for tag in soup.find_all(self._DROP):
            tag.decompose()
        return soup.get_text("\n", strip=True)


class PdfParser(DocumentParser):
    def parse(self, path: str | Path) -> str:
        reader = pypdf.PdfReader(str(path))
        return "\n\n".join(page.extract_text() or "" for page in reader.pages)


class DocxParser(DocumentParser):
    def parse(self, path: str | Path) -> str:
        document = docx.Document(str(path))
        return "\n\n".join(p.text for p in document.paragraphs if p.text.strip())


class ParserRegistry:
    def __init__(self, parsers: dict[str, DocumentParser] | None = None) -> None:
        self._parsers: dict[str, DocumentParser] = {}
        for ext, parser in (parsers or {}).items():
            self.register(ext, parser)

    @classmethod
    def default(cls) -> "ParserRegistry":
        text = PlainTextParser()
        return cls(
            {
                "txt": text,
                "md": text,
                "csv": CsvParser(),
                "json": JsonParser(),
                "html": HtmlParser(),
                "pdf": PdfParser(),
                "docx": DocxParser(),
            }
        )

    def register(self, extension: str, parser: DocumentParser) -> None:
        self._parsers[extension.lower().lstrip(".")] = parser

    def supports(self, extension: str) -> bool:
        return extension.lower().lstrip(".") in self._parsers

    def for_extension(self, extension: str) -> DocumentParser:
        parser = self._parsers.get(extension.lower().lstrip("."))
        if parser is None:
            raise UnsupportedFormat(f"No parser registered for .{extension}")
        return parser

    def parse(self, path: str | Path, extension: str | None = None) -> str:
        ext = extension or Path(path).suffix
        return self.for_extension(ext).parse(path)
