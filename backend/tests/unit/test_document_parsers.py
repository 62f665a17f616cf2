from __future__ import annotations

import json

import docx
import pytest

from agentcore.services.document_parsers import ParserRegistry
from agentcore.services.errors import UnsupportedFormat


@pytest.fixture()
def registry():
    return ParserRegistry.default()


def test_plain_text_and_markdown(tmp_path, registry):
    path = tmp_path / "notes.md"
    path.write_text("# Title\n\nBody text", encoding="utf-8")
    assert registry.parse(path) == "# Title\n\nBody text"


def test_latin1_text_is_decoded(tmp_path, registry):
    path = tmp_path / "legacy.txt"
    path.write_bytes("café".encode("latin-1"))
    assert registry.parse(path) == "café"


def test_csv_rows_become_lines(tmp_path, registry):
    path = tmp_path / "table.csv"
    path.write_text("name, role\nada , engineer\n\n", encoding="utf-8")
    assert registry.parse(path) == "name, role\nada, engineer"


def test_json_is_pretty_printed(tmp_path, registry):
    path = tmp_path / "data.json"
    path.write_text(json.dumps({"a": [1, 2]}), encoding="utf-8")
    assert json.loads(registry.parse(path)) == {"a": [1, 2]}


def test_html_drops_script_and_style(tmp_path, registry):
    path = tmp_path / "page.html"
    path.write_text(
        "<html><head><title>T</title><style>p{}</style></head>"
        "<body><p>Hello</p><script>var x = 1;</script><p>World</p></body></html>",
        encoding="utf-8",
    )
    assert registry.parse(path) == "Hello\nWorld"


def test_html_decodes_entities_and_drops_noscript(tmp_path, registry):
    path = tmp_path / "menu.html"
    path.write_text("<p>Fish &amp; chips</p><noscript>Enable JavaScript</noscript>", encoding="utf-8")
    assert registry.parse(path) == "Fish & chips"


def test_docx_paragraphs(tmp_path, registry):
    path = tmp_path / "report.docx"
    document = docx.Document()
    document.add_paragraph("First paragraph")
    document.add_paragraph("   ")
    document.add_paragraph("Second paragraph")
    document.save(str(path))

    assert registry.parse(path) == "First paragraph\n\nSecond paragraph"


def test_explicit_extension_wins_over_suffix(tmp_path, registry):
    path = tmp_path / "upload.bin"
    path.write_text('{"k": 1}', encoding="utf-8")
    assert json.loads(registry.parse(path, "json")) == {"k": 1}


def test_unsupported_extension(tmp_path, registry):
    path = tmp_path / "archive.zip"
    path.write_bytes(b"PK")
    assert not registry.supports("zip")
    with pytest.raises(UnsupportedFormat):
        registry.parse(path)
