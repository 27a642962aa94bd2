"""Tests for format detection, chunking and asset anchoring."""

import io

import pytest
from bs4 import BeautifulSoup
from conftest import PNG_BYTES, PNG_DATA_URI, SAMPLE_HTML

from doc_translator.assets import compute_asset_id
from doc_translator.errors import EmptyContentError, ParseError, UnsupportedFormatError
from doc_translator.parsing import DocumentParser
from doc_translator.parsing.base import DocumentFormat, decode_data_uri, detect_document_format
from doc_translator.parsing.document import (
    assemble_html_document,
    extract_blocks,
    normalize_html,
    text_to_html,
)
from doc_translator.translation.markup import tag_sequence


@pytest.fixture(scope="module")
def parser():
    return DocumentParser()


class TestFormatDetection:
    """Tests for detect_document_format."""

    def test_extension_wins(self):
        assert detect_document_format("report.pdf", "text/html") == DocumentFormat.PDF

    def test_media_type_fallback(self):
        assert detect_document_format("upload", "text/markdown; charset=utf-8") == DocumentFormat.MARKDOWN
        assert detect_document_format(None, "text/x-log") == DocumentFormat.TEXT

    def test_unknown_format(self):
        with pytest.raises(UnsupportedFormatError):
            detect_document_format("archive.zip", "application/zip")


class TestHtmlHelpers:
    """Tests for the small HTML helpers."""

    def test_normalize_wraps_fragment(self):
        html = normalize_html("<p>Salut</p>")
        assert html.startswith("<html><head>")
        assert "<body><p>Salut</p></body>" in html

    def test_normalize_keeps_full_document(self):
        doc = "<html><head></head><body><p>x</p></body></html>"
        assert normalize_html(doc) == doc

    def test_text_to_html_paragraphs_and_breaks(self):
        html = text_to_html("Ligne un\nligne deux\n\nSecond bloc")
        soup = BeautifulSoup(html, "html.parser")
        paragraphs = soup.find_all("p")
        assert len(paragraphs) == 2
        assert paragraphs[0].find("br") is not None
        assert paragraphs[1].get_text() == "Second bloc"

    def test_text_to_html_empty(self):
        assert text_to_html("") == "<p></p>"

    def test_decode_data_uri(self):
        data, media_type = decode_data_uri(PNG_DATA_URI)
        assert data == PNG_BYTES
        assert media_type == "image/png"
        assert decode_data_uri("https://example.com/a.png") is None


class TestChunking:
    """Tests for block extraction."""

    def test_orders_are_dense_from_zero(self):
        soup = BeautifulSoup("<body><h1>T</h1><p>a</p><ul><li>b</li></ul></body>", "html.parser")
        chunks = extract_blocks(soup)
        assert [c.order for c in chunks] == [0, 1, 2]

    def test_bare_text_is_wrapped(self):
        soup = BeautifulSoup("<body>Texte libre<p>Para</p></body>", "html.parser")
        chunks = extract_blocks(soup)
        assert chunks[0].source_html == "<p>Texte libre</p>"
        assert chunks[0].source_text == "Texte libre"

    def test_inline_container_is_flattened(self):
        soup = BeautifulSoup("<body><span><b>un</b><i>deux</i></span></body>", "html.parser")
        chunks = extract_blocks(soup)
        assert [c.source_html for c in chunks] == ["<b>un</b>", "<i>deux</i>"]

    def test_chunk_ids_are_deterministic(self, parser):
        first = parser.prepare(SAMPLE_HTML.encode(), "text/html", "a.html")
        second = parser.prepare(SAMPLE_HTML.encode(), "text/html", "a.html")
        assert [c.chunk_id for c in first.chunks] == [c.chunk_id for c in second.chunks]


class TestPrepare:
    """Tests for DocumentParser.prepare."""

    def test_paragraphs_and_image(self, parser):
        prepared = parser.prepare(SAMPLE_HTML.encode(), "text/html", "rapport.html")

        assert len(prepared.chunks) == 4
        assert len(prepared.assets) == 1
        assert len(prepared.anchors) == 1

        asset = prepared.assets[0]
        assert asset.asset_id == compute_asset_id(PNG_BYTES)
        assert asset.media_type == "image/png"
        assert asset.width == 120
        assert prepared.asset_data[asset.asset_id] == PNG_BYTES

        anchor = prepared.anchors[0]
        image_chunk = prepared.chunks[2]
        assert image_chunk.anchor_ids == [anchor.anchor_id]
        assert anchor.chunk_id == image_chunk.chunk_id
        assert anchor.before_span_id is not None
        assert anchor.after_span_id is not None
        assert anchor.text_window_hash.startswith("sha256:")

    def test_structure_preserved_across_chunks(self, parser):
        html = (
            "<body><h2>Titre</h2><p>Un <strong>mot</strong> important.</p>"
            "<table><tr><th>A</th><td>B</td></tr></table><ol><li>x</li><li>y</li></ol></body>"
        )
        prepared = parser.prepare(html.encode(), "text/html", "doc.html")
        joined = "".join(c.source_html for c in prepared.chunks)
        assert tag_sequence(joined) == tag_sequence(prepared.body_html)

    def test_same_image_twice_is_one_asset(self, parser):
        html = f'<body><p>a</p><img src="{PNG_DATA_URI}"><p>b</p><img src="{PNG_DATA_URI}"></body>'
        prepared = parser.prepare(html.encode(), "text/html", "doc.html")
        assert len(prepared.assets) == 1
        assert len(prepared.anchors) == 2
        assert len({a.anchor_id for a in prepared.anchors}) == 2

    def test_remote_image_keeps_url(self, parser):
        html = '<body><p>a</p><img src="https://cdn.example.com/x.png" alt="x"></body>'
        prepared = parser.prepare(html.encode(), "text/html", "doc.html")
        assert prepared.assets[0].source_url == "https://cdn.example.com/x.png"
        assert prepared.asset_data == {}

    def test_scripts_are_dropped(self, parser):
        html = "<body><script>alert(1)</script><p>texte</p></body>"
        prepared = parser.prepare(html.encode(), "text/html", "doc.html")
        assert [c.source_text for c in prepared.chunks] == ["texte"]

    def test_plain_text(self, parser):
        prepared = parser.prepare("Bonjour\n\nAu revoir".encode(), "text/plain", "notes.txt")
        assert [c.source_text for c in prepared.chunks] == ["Bonjour", "Au revoir"]

    def test_markdown(self, parser):
        prepared = parser.prepare("# Titre\n\nCorps du texte".encode(), "text/markdown", "notes.md")
        assert prepared.chunks[0].source_html.startswith("<h1>")
        assert prepared.metadata["format"] == "markdown"

    def test_csv_becomes_table(self, parser):
        prepared = parser.prepare("nom,ville\nAda,Paris\n".encode(), "text/csv", "data.csv")
        assert "<table" in prepared.body_html
        assert "Paris" in prepared.body_html

    def test_docx(self, parser):
        from docx import Document

        document = Document()
        document.add_heading("Rapport annuel", level=1)
        document.add_paragraph("Premier paragraphe.")
        buffer = io.BytesIO()
        document.save(buffer)

        prepared = parser.prepare(buffer.getvalue(), None, "rapport.docx")
        texts = [c.source_text for c in prepared.chunks]
        assert "Rapport annuel" in texts
        assert "Premier paragraphe." in texts

    def test_pdf(self, parser):
        import fitz

        doc = fitz.open()
        page = doc.new_page()
        page.insert_text((72, 72), "Bonjour le monde")
        data = doc.tobytes()
        doc.close()

        prepared = parser.prepare(data, "application/pdf", "page.pdf")
        assert 'class="pdf-page"' in prepared.body_html
        assert "Bonjour le monde" in " ".join(c.source_text for c in prepared.chunks)

    def test_unsupported_format(self, parser):
        with pytest.raises(UnsupportedFormatError):
            parser.prepare(b"PK\x03\x04", "application/zip", "archive.zip")

    def test_empty_document(self, parser):
        with pytest.raises(EmptyContentError):
            parser.prepare(b"   ", "text/plain", "empty.txt")

    def test_broken_pdf_is_parse_error(self, parser):
        with pytest.raises(ParseError):
            parser.prepare(b"not a pdf at all", "application/pdf", "broken.pdf")


class TestAssembly:
    """Tests for assemble_html_document."""

    def test_anchor_becomes_figure(self, parser):
        prepared = parser.prepare(SAMPLE_HTML.encode(), "text/html", "rapport.html")
        html = assemble_html_document(
            prepared.head_html,
            prepared.chunks,
            prepared.assets,
            prepared.anchors,
            resolve_bytes=lambda asset: prepared.asset_data.get(asset.asset_id),
        )
        soup = BeautifulSoup(html, "html.parser")
        figure = soup.find("figure")
        assert figure["data-asset"] == prepared.assets[0].asset_id
        assert figure.img["src"].startswith("data:image/png;base64,")
        assert soup.find(class_="asset-anchor") is None

    def test_unresolved_anchor_is_left_in_place(self, parser):
        prepared = parser.prepare(SAMPLE_HTML.encode(), "text/html", "rapport.html")
        html = assemble_html_document(prepared.head_html, prepared.chunks, [], [])
        assert "asset-anchor" in html

    def test_reviewer_preferred(self):
        class Row:
            def __init__(self, order, source, machine=None, reviewer=None):
                self.order = order
                self.source_html = source
                self.machine_html = machine
                self.reviewer_html = reviewer

        rows = [Row(1, "<p>b</p>", "<p>B</p>", "<p>B!</p>"), Row(0, "<p>a</p>", "<p>A</p>")]
        machine = assemble_html_document(None, rows)
        reviewed = assemble_html_document(None, rows, prefer_reviewer=True)
        assert machine.index("<p>A</p>") < machine.index("<p>B</p>")
        assert "<p>B!</p>" in reviewed and "<p>B!</p>" not in machine
