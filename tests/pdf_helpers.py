"""
PDF and series utilities for testing

These helpers build realistic invoice documents and manipulate the
generated QR PDFs (reversing or reordering pages) to create scanning
scenarios.
"""

import random
from typing import List
from pypdf import PdfReader, PdfWriter


def make_invoice_xml(services: int = 40) -> str:
    """Build a Tardoc-like invoice request with varied service lines.

    Values differ per line so the document does not compress down to a
    handful of bytes.
    """
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<invoice:request xmlns:invoice="http://www.forum-datenaustausch.ch/invoice" '
        'language="de" modus="production">',
        '  <invoice:payload type="invoice" storno="0" copy="0">',
        '    <invoice:body role="physician" place="practice">',
        '      <invoice:services>',
    ]
    for i in range(services):
        lines.append(
            f'        <invoice:service_ex record_id="{i + 1}" tariff_type="007" '
            f'code="AA.{i % 17:02d}.{(i * 37) % 1000:04d}" session="{i // 5 + 1}" '
            f'quantity="{i % 3 + 1}" date_begin="2024-03-{i % 28 + 1:02d}T00:00:00" '
            f'provider_id="7601000{(i * 7919) % 1000000:06d}" '
            f'amount="{(i * 13.75) % 500:.2f}" unit="{(i * 3.31) % 90:.2f}" '
            f'name="Leistung {i * 101 % 997}"/>')
    lines += [
        '      </invoice:services>',
        '    </invoice:body>',
        '  </invoice:payload>',
        '</invoice:request>',
        '',
    ]
    return '\n'.join(lines)


def shuffled(items: List, seed: int) -> List:
    """Return a reproducibly shuffled copy of items."""
    copy = list(items)
    random.Random(seed).shuffle(copy)
    return copy


def reverse_pdf_pages(input_pdf: str, output_pdf: str) -> None:
    """Reverse the order of pages in a PDF.

    Args:
        input_pdf: Path to input PDF
        output_pdf: Path to output PDF with reversed pages

    Example:
        Input pages: [1, 2, 3]
        Output pages: [3, 2, 1]
    """
    reader = PdfReader(input_pdf)
    writer = PdfWriter()

    for page in reversed(reader.pages):
        writer.add_page(page)

    with open(output_pdf, 'wb') as f:
        writer.write(f)


def get_pdf_page_count(pdf_path: str) -> int:
    """Get the number of pages in a PDF."""
    reader = PdfReader(pdf_path)
    return len(reader.pages)
