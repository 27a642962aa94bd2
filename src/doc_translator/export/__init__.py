"""Export modules for approved translations."""

from doc_translator.export.docx import HtmlDocxExporter, html_to_docx

__all__ = [
    "HtmlDocxExporter",
    "html_to_docx",
]
