#!/usr/bin/env python3
"""
Tardoc QR - Recover Tardoc invoice XML from Structured Append QR code series

Tardoc (V500) medical invoices print their XML payload as a series of QR codes.
The XML is compressed with raw DEFLATE, base64 encoded and split across the
symbols, the last symbol being padded with spaces up to its fixed capacity.
This tool scans the printed codes, puts the fragments back in order and only
accepts the result once it decompresses to well-formed markup.

REQUIREMENTS:
  Python 3.8+

  Install with:
    pip install -e .

  System dependencies (for pyzbar and pdf2image):
    - Linux: sudo apt-get install libzbar0 poppler-utils
    - macOS: brew install zbar poppler

USAGE:
  Decode a scanned invoice:
    tardoc-qr decode invoice.pdf -o invoice.xml

  Decode a series photographed one symbol per image:
    tardoc-qr decode qr1.png qr2.png qr3.png

  Reassemble from a decoder report (JSON or zbarimg output):
    tardoc-qr reassemble fragments.json

  Inflate an already combined base64 payload:
    tardoc-qr inflate invoice.base64

  List the QR symbols found in a document:
    tardoc-qr info invoice.pdf

  Print an XML document as a QR series:
    tardoc-qr encode invoice.xml -o invoice.qr.pdf
"""

import sys
import os
import io
import json
import base64
import itertools
import zlib
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple, Callable, Sequence, Iterable, Iterator

import click
import qrcode
from qrcode.constants import ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q, ERROR_CORRECT_H
from PIL import Image
from reportlab.lib.pagesizes import A4, LETTER, LEGAL
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as pdf_canvas
import cv2
import numpy as np

VERSION = "1.0.0"

# Candidate-order search: every permutation up to this many fragments,
# a fixed handful of patterns above it
EXHAUSTIVE_LIMIT = 4

# Upper bound on inflated output per oracle call (64 MiB)
MAX_INFLATED_BYTES = 64 * 1024 * 1024

# Characters per symbol used by Tardoc invoices; the last symbol is
# space-padded up to this width
SYMBOL_CAPACITY = 1264

# Structured Append addresses at most 16 symbols (4-bit sequence index)
MAX_SERIES_LENGTH = 16

DEFAULT_DPI = 300

# Trailing padding seen on the final symbol of a series
PADDING_CHARS = ' \t\r\n\x0b\x0c\x00'

# Vertical distance (pixels) below which two symbols count as one row
ROW_TOLERANCE_PX = 100

# QR Code error correction mapping
ERROR_CORRECTION_LEVELS = {
    'L': ERROR_CORRECT_L,  # ~7% error correction
    'M': ERROR_CORRECT_M,  # ~15% error correction (default)
    'Q': ERROR_CORRECT_Q,  # ~25% error correction
    'H': ERROR_CORRECT_H,  # ~30% error correction
}

# Page size mapping
PAGE_SIZES = {
    'A4': A4,
    'LETTER': LETTER,
    'LEGAL': LEGAL,
}

# Callback receiving (event_name, details) from the reassembly engine
EventSink = Callable[[str, Dict[str, Any]], None]


# ============================================================================
# DATA MODEL AND ERRORS
# ============================================================================

@dataclass(frozen=True)
class DecodedSymbol:
    """One symbol as reported by a QR decoder.

    total_count follows the Structured Append convention: it stores the
    number of symbols in the series minus one.
    """
    payload: str
    sequence_index: Optional[int] = None
    total_count: Optional[int] = None
    parity: Optional[int] = None


@dataclass(frozen=True)
class Fragment:
    """A decoded symbol tagged with the source it was read from."""
    source_id: str
    payload: str
    sequence_index: Optional[int] = None
    total_count: Optional[int] = None
    parity: Optional[int] = None

    @property
    def is_addressed(self) -> bool:
        return self.sequence_index is not None and self.total_count is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_id': self.source_id,
            'payload': self.payload,
            'sequence_index': self.sequence_index,
            'total_count': self.total_count,
            'parity': self.parity,
        }


@dataclass
class ReassemblyResult:
    """Validated outcome of one reassembly attempt."""
    order_used: List[str]
    combined_payload: str
    decompressed: str
    complete: bool = True
    missing_indices: List[int] = field(default_factory=list)
    strategy: str = 'exact'
    warnings: List[str] = field(default_factory=list)
    candidates_tried: int = 1


class ReassemblyError(ValueError):
    """Base class for reassembly failures.

    Every failure carries the payload that was being attempted so the caller
    can persist it for diagnosis, plus the sequence indices known to be
    missing when the fragments carried Structured Append metadata. Failures
    of an order search also list each (order, reason) attempt.
    """

    def __init__(self, message: str, combined_payload: str = '',
                 missing_indices: Optional[Sequence[int]] = None,
                 attempts: Optional[Sequence[Tuple[List[str], str]]] = None):
        super().__init__(message)
        self.combined_payload = combined_payload
        self.missing_indices = list(missing_indices or [])
        self.attempts = list(attempts or [])


class NoFragmentsError(ReassemblyError):
    """No fragment survived decoding."""


class OracleError(ReassemblyError):
    """A candidate payload was rejected by the decompression oracle."""


class MalformedEncodingError(OracleError):
    """The payload is not valid base64."""


class DecompressionFailedError(OracleError):
    """The decoded bytes are not a complete raw DEFLATE stream of UTF-8 text."""


class NotMarkupError(OracleError):
    """The payload inflates cleanly but the result is not markup."""


class NoValidOrderError(ReassemblyError):
    """The bounded order search found no candidate the oracle accepts.

    Raised when the rejections were mixed or the inflated text was not
    markup. When every candidate failed base64 decoding, or every one failed
    inflation, the search raises that error type instead.
    """


def _emit(on_event: Optional[EventSink], name: str, **details: Any) -> None:
    if on_event is not None:
        on_event(name, details)


# ============================================================================
# DECOMPRESSION ORACLE
# ============================================================================

def strip_padding(text: str) -> str:
    """Remove padding from the end of a payload.

    Only the tail is touched: leading and interior characters are kept, so
    applying this twice gives the same result as applying it once.
    """
    return text.rstrip(PADDING_CHARS)


def clean_payload(payload: str) -> str:
    """Drop CR/LF anywhere in the payload and padding at its end."""
    return strip_padding(payload.replace('\r', '').replace('\n', ''))


def inflate_payload(payload: str, max_output: int = MAX_INFLATED_BYTES) -> str:
    """Base64-decode and raw-inflate a combined payload.

    Each step is a hard gate. The DEFLATE stream must be RFC 1951 without a
    zlib or gzip envelope, must reach its final block and must not be followed
    by stray bytes. Since raw DEFLATE has no checksum, these structural checks
    are what rejects most wrongly ordered payloads.

    Args:
        payload: Base64 text, possibly with line breaks and trailing padding
        max_output: Largest accepted inflated size in bytes

    Returns:
        Inflated data decoded as UTF-8

    Raises:
        MalformedEncodingError: If the payload is not standard base64
        DecompressionFailedError: If inflation fails, is truncated, has
            trailing data, exceeds max_output or is not UTF-8
    """
    cleaned = clean_payload(payload)

    try:
        compressed = base64.b64decode(cleaned, validate=True)
    except ValueError as e:
        # binascii.Error for bad alphabet/padding, ValueError for non-ASCII
        raise MalformedEncodingError(f"Invalid base64 payload: {e}", cleaned) from e

    inflater = zlib.decompressobj(-zlib.MAX_WBITS)
    try:
        raw = inflater.decompress(compressed, max_output)
    except zlib.error as e:
        raise DecompressionFailedError(f"Raw DEFLATE stream is invalid: {e}", cleaned) from e

    if inflater.unconsumed_tail:
        raise DecompressionFailedError(
            f"Inflated output exceeds {max_output:,} bytes", cleaned)
    if not inflater.eof:
        raise DecompressionFailedError("Raw DEFLATE stream ended unexpectedly", cleaned)
    if inflater.unused_data:
        raise DecompressionFailedError(
            f"{len(inflater.unused_data)} trailing byte(s) after end of DEFLATE stream",
            cleaned)

    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecompressionFailedError(f"Inflated data is not UTF-8 text: {e}", cleaned) from e


def is_markup(text: str) -> bool:
    """Check whether text starts like an XML document (prolog or any tag)."""
    stripped = text.lstrip().lstrip('\ufeff').lstrip()
    return stripped.startswith('<?xml') or stripped.startswith('<')


def inflate_markup(payload: str) -> str:
    """Decompression oracle: inflate a payload and require markup.

    Used both for the final output and as the acceptance test for every
    candidate order during the heuristic search.

    Raises:
        MalformedEncodingError, DecompressionFailedError: See inflate_payload
        NotMarkupError: If the inflated text does not start with markup
    """
    text = inflate_payload(payload)
    if not is_markup(text):
        raise NotMarkupError(
            f"Inflated data is not markup (starts with {text[:20]!r})",
            clean_payload(payload))
    return text


# ============================================================================
# FRAGMENT CLASSIFIER
# ============================================================================

@dataclass(frozen=True)
class Addressing:
    addressed: bool
    sequence_index: Optional[int] = None
    total_count: Optional[int] = None


UNADDRESSED = Addressing(False)


def classify_fragment(fragment: Fragment) -> Addressing:
    """Report the Structured Append address of a fragment, if it has one."""
    if not fragment.is_addressed:
        return UNADDRESSED
    return Addressing(True, fragment.sequence_index, fragment.total_count)


def classify_batch(fragments: Sequence[Fragment]) -> bool:
    """True only when every fragment in the batch is addressed.

    A single fragment without metadata demotes the whole batch: partially
    addressed batches are treated as unaddressed.
    """
    return bool(fragments) and all(classify_fragment(f).addressed for f in fragments)


def find_metadata_conflicts(fragments: Sequence[Fragment]) -> List[str]:
    """Describe disagreements in the metadata of an addressed batch.

    Checks that all fragments declare the same total, that every sequence
    index falls inside the declared series and that no index is claimed by
    two different payloads.

    Returns:
        Human-readable descriptions, empty when the metadata is consistent
    """
    problems = []

    totals = sorted({f.total_count for f in fragments})
    if len(totals) > 1:
        problems.append(f"fragments disagree on series length: {[t + 1 for t in totals]}")

    claimed: Dict[int, Fragment] = {}
    for fragment in fragments:
        if not 0 <= fragment.sequence_index <= fragment.total_count:
            problems.append(
                f"{fragment.source_id}: sequence index {fragment.sequence_index} "
                f"outside a series of {fragment.total_count + 1}")
        first = claimed.setdefault(fragment.sequence_index, fragment)
        if first is not fragment and first.payload != fragment.payload:
            problems.append(
                f"sequence index {fragment.sequence_index} claimed by both "
                f"{first.source_id} and {fragment.source_id}")

    return problems


def dedupe_fragments(fragments: Sequence[Fragment],
                     on_event: Optional[EventSink] = None) -> List[Fragment]:
    """Drop repeated reads of the same symbol, keeping the first one.

    Two fragments are the same symbol when payload and metadata are equal.
    """
    kept: Dict[Tuple[Optional[int], Optional[int], str], Fragment] = {}
    unique = []
    for fragment in fragments:
        key = (fragment.sequence_index, fragment.total_count, fragment.payload)
        if key in kept:
            _emit(on_event, 'duplicate_fragment', source_id=fragment.source_id,
                  kept=kept[key].source_id)
            continue
        kept[key] = fragment
        unique.append(fragment)
    return unique


# ============================================================================
# EXACT REASSEMBLER
# ============================================================================

@dataclass
class SeriesLayout:
    """Fragments of an addressed series in sequence order."""
    fragments: List[Fragment]
    expected_total: int
    missing_indices: List[int]
    combined_payload: str

    @property
    def complete(self) -> bool:
        return not self.missing_indices


class ExactReassembler:
    """Reassemble a fully addressed series by its sequence indices."""

    def __init__(self, oracle: Callable[[str], str] = inflate_markup,
                 on_event: Optional[EventSink] = None):
        self.oracle = oracle
        self.on_event = on_event

    def layout(self, fragments: Sequence[Fragment]) -> SeriesLayout:
        """Order the series and find its gaps without decompressing.

        The expected series length comes from the first fragment in sequence
        order: Structured Append stores it as count minus one. Only the end
        of the concatenation is trimmed since only the final symbol is padded.
        """
        ordered = sorted(fragments, key=lambda f: f.sequence_index)
        expected_total = ordered[0].total_count + 1

        observed = {f.sequence_index for f in ordered}
        missing = sorted(set(range(expected_total)) - observed)

        combined = strip_padding(''.join(f.payload for f in ordered))
        return SeriesLayout(ordered, expected_total, missing, combined)

    def reassemble(self, fragments: Sequence[Fragment]) -> ReassemblyResult:
        """Concatenate in sequence order and validate through the oracle.

        An incomplete series is still decompressed (best effort); the result
        is flagged with complete=False and a warning.

        Raises:
            NoFragmentsError: If fragments is empty
            ValueError: If any fragment lacks sequence metadata
            OracleError: If the oracle rejects the payload; the error carries
                the missing indices of the series
        """
        if not fragments:
            raise NoFragmentsError("No fragments to reassemble")
        if not classify_batch(fragments):
            raise ValueError("Exact reassembly requires sequence metadata on every fragment")

        layout = self.layout(fragments)
        _emit(self.on_event, 'completeness', expected_total=layout.expected_total,
              found=len(layout.fragments), missing_indices=layout.missing_indices)

        warnings = []
        if layout.missing_indices:
            warnings.append(
                f"Incomplete series: missing sequence index(es) {layout.missing_indices} "
                f"of {layout.expected_total}")
            _emit(self.on_event, 'incomplete_series',
                  missing_indices=layout.missing_indices,
                  expected_total=layout.expected_total)

        try:
            decompressed = self.oracle(layout.combined_payload)
        except OracleError as e:
            e.missing_indices = list(layout.missing_indices)
            raise

        return ReassemblyResult(
            order_used=[f.source_id for f in layout.fragments],
            combined_payload=layout.combined_payload,
            decompressed=decompressed,
            complete=layout.complete,
            missing_indices=list(layout.missing_indices),
            strategy='exact',
            warnings=warnings,
        )


# ============================================================================
# HEURISTIC REASSEMBLER
# ============================================================================

# Maps a batch size to candidate orderings, each a permutation of
# range(batch_size) over the length-ranked fragments
OrderingPolicy = Callable[[int], Sequence[Tuple[int, ...]]]


def rank_by_length(fragments: Sequence[Fragment]) -> List[Fragment]:
    """Sort fragments longest first, measuring without trailing padding.

    The final fragment of a series is usually the short, padded one, so it
    sorts last. Equal lengths keep their scan order.
    """
    return sorted(fragments, key=lambda f: len(strip_padding(f.payload)), reverse=True)


def bounded_orderings(batch_size: int,
                      exhaustive_limit: int = EXHAUSTIVE_LIMIT) -> List[Tuple[int, ...]]:
    """Default candidate-order policy.

    Up to exhaustive_limit fragments every permutation is tried (at most 24
    for the default of 4), starting with the length ranking itself. Larger
    batches get a fixed set of plausible orders instead of n! permutations:
    the ranking, its reverse, the first element followed by the rest
    reversed, and a single left rotation.

    Example:
        >>> bounded_orderings(5)
        [(0, 1, 2, 3, 4), (4, 3, 2, 1, 0), (0, 4, 3, 2, 1), (1, 2, 3, 4, 0)]
    """
    if batch_size <= 0:
        return []
    if batch_size <= exhaustive_limit:
        return list(itertools.permutations(range(batch_size)))

    ranked = tuple(range(batch_size))
    patterns = [
        ranked,
        ranked[::-1],
        ranked[:1] + ranked[:0:-1],
        ranked[1:] + ranked[:1],
    ]

    orderings = []
    for pattern in patterns:
        if pattern not in orderings:
            orderings.append(pattern)
    return orderings


def concatenate_in_scan_order(fragments: Sequence[Fragment]) -> str:
    """Naive concatenation in the order fragments were read. Not validated."""
    return strip_padding(''.join(f.payload for f in fragments))


class HeuristicReassembler:
    """Recover fragment order by searching candidate orders with the oracle.

    The first candidate the oracle accepts wins; there is no ranking between
    successes. The search is bounded by the size of the policy's candidate
    list and runs in a fixed order, so the same batch always gives the same
    answer.
    """

    def __init__(self, orderings: OrderingPolicy = bounded_orderings,
                 oracle: Callable[[str], str] = inflate_markup,
                 on_event: Optional[EventSink] = None):
        self.orderings = orderings
        self.oracle = oracle
        self.on_event = on_event

    def reassemble(self, fragments: Sequence[Fragment]) -> ReassemblyResult:
        """Try candidate orders until one decompresses to markup.

        Raises:
            NoFragmentsError: If fragments is empty
            ValueError: If the ordering policy yields something that is not
                a permutation of the batch
            MalformedEncodingError, DecompressionFailedError: If every
                candidate failed at that same step
            NoValidOrderError: If every candidate is rejected for any other
                mix of reasons. All three hold each attempt and the
                unvalidated scan-order concatenation
        """
        if not fragments:
            raise NoFragmentsError("No fragments to reassemble")

        ranked = rank_by_length(fragments)
        _emit(self.on_event, 'ranked',
              lengths=[(f.source_id, len(strip_padding(f.payload))) for f in ranked])

        attempts: List[Tuple[List[str], str]] = []
        failure_types = set()
        for order in self.orderings(len(ranked)):
            if sorted(order) != list(range(len(ranked))):
                raise ValueError(
                    f"Ordering policy returned {tuple(order)!r}, "
                    f"not a permutation of {len(ranked)} fragments")

            candidate = [ranked[i] for i in order]
            order_ids = [f.source_id for f in candidate]
            combined = strip_padding(''.join(f.payload for f in candidate))

            try:
                decompressed = self.oracle(combined)
            except OracleError as e:
                attempts.append((order_ids, str(e)))
                failure_types.add(type(e))
                _emit(self.on_event, 'candidate', order=order_ids, ok=False, reason=str(e))
                continue

            _emit(self.on_event, 'candidate', order=order_ids, ok=True, reason=None)
            _emit(self.on_event, 'order_found', order=order_ids,
                  candidates_tried=len(attempts) + 1)
            return ReassemblyResult(
                order_used=order_ids,
                combined_payload=combined,
                decompressed=decompressed,
                strategy='heuristic',
                candidates_tried=len(attempts) + 1,
            )

        _emit(self.on_event, 'no_valid_order', candidates_tried=len(attempts),
              fragments=len(fragments))
        message = (f"No valid order found among {len(attempts)} candidate ordering(s) "
                   f"of {len(fragments)} fragment(s)")
        error_class = NoValidOrderError
        if len(failure_types) == 1 and failure_types <= {MalformedEncodingError,
                                                         DecompressionFailedError}:
            # Every order failed the same structural gate
            error_class = failure_types.pop()
            message += f": {attempts[-1][1]}"
        raise error_class(
            message,
            concatenate_in_scan_order(fragments),
            attempts=attempts,
        )


# ============================================================================
# FRAGMENT COLLECTOR
# ============================================================================

class FragmentCollector:
    """Gather fragments from one or more sources and reassemble them once.

    Sources are pages or images; each contributes zero or more decoded
    symbols. reassemble() consumes the collected batch: the collector is
    empty again afterwards, whether the attempt succeeded or not.

    Example:
        >>> collector = FragmentCollector()
        >>> for source_id, symbols in collect_sources(['invoice.pdf']):
        ...     collector.add(source_id, symbols)
        >>> result = collector.reassemble()
    """

    def __init__(self, on_event: Optional[EventSink] = None,
                 orderings: OrderingPolicy = bounded_orderings,
                 oracle: Callable[[str], str] = inflate_markup):
        self.on_event = on_event
        self.orderings = orderings
        self.oracle = oracle
        self._fragments: List[Fragment] = []

    def __len__(self) -> int:
        return len(self._fragments)

    @property
    def fragments(self) -> List[Fragment]:
        return list(self._fragments)

    def add(self, source_id: str, symbols: Sequence[DecodedSymbol]) -> int:
        """Add the symbols decoded from one source.

        A source without symbols is reported and skipped. When a source
        yields several symbols they are told apart as source_id#1, #2, ...

        Returns:
            Number of fragments added
        """
        if not symbols:
            _emit(self.on_event, 'source_empty', source_id=source_id)
            return 0

        for n, symbol in enumerate(symbols, 1):
            fragment_id = source_id if len(symbols) == 1 else f"{source_id}#{n}"
            self.add_fragment(Fragment(fragment_id, symbol.payload, symbol.sequence_index,
                                       symbol.total_count, symbol.parity))
        return len(symbols)

    def add_fragment(self, fragment: Fragment) -> None:
        self._fragments.append(fragment)
        _emit(self.on_event, 'fragment', source_id=fragment.source_id,
              length=len(fragment.payload), sequence_index=fragment.sequence_index,
              total_count=fragment.total_count, parity=fragment.parity)

    def reassemble(self) -> ReassemblyResult:
        """Reassemble the collected batch.

        Fully addressed, consistent batches go through the exact reassembler;
        everything else, and addressed batches whose sequence order fails the
        oracle, goes through the heuristic search.

        Returns:
            ReassemblyResult for a validated document

        Raises:
            NoFragmentsError: If nothing was collected
            MalformedEncodingError, DecompressionFailedError: If every
                candidate order failed at that same step
            NoValidOrderError: If no order decompresses to markup otherwise
        """
        fragments, self._fragments = self._fragments, []

        if not fragments:
            raise NoFragmentsError("No QR fragments were decoded from any source")

        fragments = dedupe_fragments(fragments, self.on_event)
        addressed = classify_batch(fragments)
        _emit(self.on_event, 'classified', addressed=addressed, fragments=len(fragments),
              unaddressed=[f.source_id for f in fragments if not f.is_addressed])

        warnings: List[str] = []
        exact_error: Optional[OracleError] = None

        if addressed:
            conflicts = find_metadata_conflicts(fragments)
            for conflict in conflicts:
                warnings.append(f"Inconsistent Structured Append metadata: {conflict}")
                _emit(self.on_event, 'inconsistent_metadata', detail=conflict)

            if not conflicts:
                exact = ExactReassembler(self.oracle, self.on_event)
                try:
                    result = exact.reassemble(fragments)
                except OracleError as e:
                    exact_error = e
                    warnings.append(f"Sequence order did not validate: {e}")
                    _emit(self.on_event, 'exact_failed', reason=str(e),
                          missing_indices=e.missing_indices)
                else:
                    result.warnings = warnings + result.warnings
                    return result

        heuristic = HeuristicReassembler(self.orderings, self.oracle, self.on_event)
        try:
            result = heuristic.reassemble(fragments)
        except ReassemblyError as e:
            if exact_error is not None:
                # Unvalidated fallback follows sequence order, not scan order
                e.combined_payload = exact_error.combined_payload
                e.missing_indices = list(exact_error.missing_indices)
            raise

        result.warnings = warnings + result.warnings
        return result


def reassemble_fragments(fragments: Iterable[Fragment],
                         on_event: Optional[EventSink] = None,
                         orderings: OrderingPolicy = bounded_orderings,
                         oracle: Callable[[str], str] = inflate_markup) -> ReassemblyResult:
    """One-shot reassembly of an already collected batch."""
    collector = FragmentCollector(on_event=on_event, orderings=orderings, oracle=oracle)
    for fragment in fragments:
        collector.add_fragment(fragment)
    return collector.reassemble()


# ============================================================================
# SYMBOL DECODING
# ============================================================================

def pdf_to_images(pdf_path: str, dpi: int = DEFAULT_DPI) -> List[np.ndarray]:
    """Convert PDF pages to OpenCV images.

    Args:
        pdf_path: Path to PDF file
        dpi: Rendering resolution

    Returns:
        List of images as numpy arrays (OpenCV BGR format)
    """
    from pdf2image import convert_from_path

    pil_images = convert_from_path(pdf_path, dpi=dpi)

    cv_images = []
    for pil_img in pil_images:
        img_array = np.array(pil_img.convert('RGB'))
        cv_images.append(cv2.cvtColor(img_array, cv2.COLOR_RGB2BGR))

    return cv_images


def load_image(image_path: str) -> np.ndarray:
    """Read an image file as an OpenCV array."""
    image = cv2.imread(image_path)
    if image is None:
        raise ValueError(f"Cannot read image: {image_path}")
    return image


def _reading_order(located: List[Tuple[int, int, str]]) -> List[str]:
    """Sort (left, top, text) triples top-to-bottom, then left-to-right.

    Symbols whose tops are within ROW_TOLERANCE_PX of a row's first symbol
    belong to that row.
    """
    rows: List[List[Tuple[int, int, str]]] = []
    for item in sorted(located, key=lambda t: t[1]):
        if rows and item[1] - rows[-1][0][1] <= ROW_TOLERANCE_PX:
            rows[-1].append(item)
        else:
            rows.append([item])
    return [text for row in rows for _, _, text in sorted(row, key=lambda t: t[0])]


def _decode_with_pyzbar(gray: np.ndarray) -> List[Tuple[int, int, str]]:
    from pyzbar import pyzbar

    located = []
    for obj in pyzbar.decode(gray, symbols=[pyzbar.ZBarSymbol.QRCODE]):
        try:
            text = obj.data.decode('utf-8')
        except UnicodeDecodeError:
            # Not a text payload, cannot be part of a base64 series
            continue
        located.append((obj.rect.left, obj.rect.top, text))
    return located


def _decode_with_opencv(gray: np.ndarray) -> List[Tuple[int, int, str]]:
    detector = cv2.QRCodeDetector()
    found, texts, points, _ = detector.detectAndDecodeMulti(gray)
    if not found or points is None:
        return []

    located = []
    for text, corners in zip(texts, points):
        if text:
            located.append((int(corners[:, 0].min()), int(corners[:, 1].min()), text))
    return located


def decode_symbols_from_image(image: np.ndarray) -> List[DecodedSymbol]:
    """Find and decode all QR symbols in an image.

    ZBar (through pyzbar) is tried first; OpenCV's detector is the fallback
    when ZBar finds nothing. Neither exposes Structured Append headers, so
    the symbols come back unaddressed, in reading order.

    Args:
        image: OpenCV image (numpy array, BGR or grayscale)

    Returns:
        Decoded symbols, possibly empty
    """
    gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image

    located = _decode_with_pyzbar(gray)
    if not located:
        located = _decode_with_opencv(gray)

    return [DecodedSymbol(text) for text in _reading_order(located)]


def collect_sources(paths: Sequence[str],
                    dpi: int = DEFAULT_DPI) -> Iterator[Tuple[str, List[DecodedSymbol]]]:
    """Decode every page of every PDF and every image in paths.

    Yields:
        (source_id, symbols) per PDF page ("name.pdf:p2") or image ("name.png")
    """
    for path in paths:
        name = os.path.basename(path)
        if path.lower().endswith('.pdf'):
            for page_num, image in enumerate(pdf_to_images(path, dpi), 1):
                yield f"{name}:p{page_num}", decode_symbols_from_image(image)
        else:
            yield name, decode_symbols_from_image(load_image(path))


# ============================================================================
# FRAGMENT REPORTS
# ============================================================================

def parse_zbarimg_report(text: str) -> List[DecodedSymbol]:
    """Parse the text printed by the zbarimg command-line scanner.

    Only "QR-Code:<data>" lines are kept; everything else (other symbologies,
    the scan summary) is ignored.
    """
    prefix = 'QR-Code:'
    return [DecodedSymbol(line[len(prefix):])
            for line in text.splitlines() if line.startswith(prefix)]


def _optional_int(entry: Dict[str, Any], key: str, position: int) -> Optional[int]:
    value = entry.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Fragment report entry {position}: '{key}' must be an integer")
    return value


def load_fragment_report(report_path: str, fmt: str = 'json') -> List[Fragment]:
    """Load fragments produced by an external decoder.

    JSON reports are a list of objects with a 'payload' string and optional
    'source_id', 'sequence_index', 'total_count' (series length minus one)
    and 'parity'. zbarimg reports carry payloads only.

    Args:
        report_path: Path to the report
        fmt: 'json' or 'zbarimg'

    Returns:
        Fragments in report order

    Raises:
        ValueError: If the report is malformed or fmt is unknown
    """
    with open(report_path, 'r', encoding='utf-8') as f:
        text = f.read()

    name = os.path.basename(report_path)

    if fmt == 'zbarimg':
        return [Fragment(f"{name}#{n}", symbol.payload)
                for n, symbol in enumerate(parse_zbarimg_report(text), 1)]

    if fmt != 'json':
        raise ValueError(f"Unsupported report format: {fmt}")

    try:
        entries = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Fragment report is not valid JSON: {e}") from e

    if not isinstance(entries, list):
        raise ValueError("Fragment report must be a JSON list")

    fragments = []
    for n, entry in enumerate(entries, 1):
        if not isinstance(entry, dict) or not isinstance(entry.get('payload'), str):
            raise ValueError(f"Fragment report entry {n} has no 'payload' string")
        fragments.append(Fragment(
            source_id=str(entry.get('source_id') or f"{name}#{n}"),
            payload=entry['payload'],
            sequence_index=_optional_int(entry, 'sequence_index', n),
            total_count=_optional_int(entry, 'total_count', n),
            parity=_optional_int(entry, 'parity', n),
        ))
    return fragments


def fragment_report(fragments: Sequence[Fragment]) -> str:
    """Serialize fragments as a JSON report readable by load_fragment_report."""
    return json.dumps([f.to_dict() for f in fragments], indent=2)


# ============================================================================
# SERIES ENCODING
# ============================================================================

def compress_markup(markup: str) -> str:
    """Compress markup the way Tardoc invoices do: raw DEFLATE, then base64."""
    compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
    raw = compressor.compress(markup.encode('utf-8')) + compressor.flush()
    return base64.b64encode(raw).decode('ascii')


def split_payload(payload: str, count: Optional[int] = None,
                  capacity: int = SYMBOL_CAPACITY) -> List[str]:
    """Split a payload into fixed-width symbol texts.

    The final piece is padded with spaces to the common width, as the
    Structured Append buffers of a Tardoc invoice are.

    Args:
        payload: Text to split
        count: Exact number of pieces wanted (overrides capacity)
        capacity: Characters per piece when count is not given

    Returns:
        List of equally long pieces

    Raises:
        ValueError: If the payload is empty or cannot be split into count pieces
    """
    if not payload:
        raise ValueError("Cannot split an empty payload")

    if count is not None:
        if count < 1:
            raise ValueError(f"Fragment count must be positive, got {count}")
        width = -(-len(payload) // count)
    else:
        width = capacity

    if width < 1:
        raise ValueError(f"Symbol capacity must be positive, got {width}")

    pieces = [payload[i:i + width] for i in range(0, len(payload), width)]

    if count is not None and len(pieces) != count:
        raise ValueError(
            f"Payload of {len(payload)} characters cannot be split into {count} fragments")

    pieces[-1] = pieces[-1].ljust(width)
    return pieces


def structured_append_parity(text: str) -> int:
    """XOR of every byte of the series data, as stored in Structured Append headers."""
    parity = 0
    for byte in text.encode('utf-8'):
        parity ^= byte
    return parity


def build_series(markup: str, count: Optional[int] = None,
                 capacity: int = SYMBOL_CAPACITY) -> List[Fragment]:
    """Turn a markup document into an addressed fragment series.

    Args:
        markup: XML document
        count: Number of fragments (default: as many as capacity requires)
        capacity: Characters per fragment when count is not given

    Returns:
        Fragments qr1..qrN with sequence index, total (N - 1) and parity

    Raises:
        ValueError: If the series would exceed MAX_SERIES_LENGTH symbols
    """
    pieces = split_payload(compress_markup(markup), count, capacity)
    if len(pieces) > MAX_SERIES_LENGTH:
        raise ValueError(
            f"Document needs {len(pieces)} symbols, Structured Append allows "
            f"at most {MAX_SERIES_LENGTH}; increase the capacity")

    parity = structured_append_parity(''.join(pieces))
    last = len(pieces) - 1
    return [Fragment(f"qr{n + 1}", piece, n, last, parity) for n, piece in enumerate(pieces)]


def create_qr_code(text: str, error_correction: str = 'M',
                   box_size: int = 10, border: int = 4) -> Image.Image:
    """Generate a QR code image for one fragment.

    Args:
        text: Fragment payload, including any padding
        error_correction: Error correction level ('L', 'M', 'Q', 'H')
        box_size: Size of each QR module in pixels
        border: Quiet zone in modules

    Returns:
        PIL Image of the QR code
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECTION_LEVELS[error_correction],
        box_size=box_size,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)

    return qr.make_image(fill_color="black", back_color="white").get_image()


def calculate_grid_layout(page_width_mm: float, page_height_mm: float,
                          qr_size_mm: float, margin_mm: float, spacing_mm: float,
                          header_height_mm: float) -> Tuple[int, int]:
    """Calculate how many QR codes fit on a page as (rows, columns).

    The last QR code in a row or column needs no trailing spacing, hence
    floor((available + spacing) / (qr_size + spacing)). At least one row and
    one column are always returned.
    """
    available_width = page_width_mm - 2 * margin_mm
    available_height = page_height_mm - 2 * margin_mm - header_height_mm

    cols = max(1, int((available_width + spacing_mm) / (qr_size_mm + spacing_mm)))
    rows = max(1, int((available_height + spacing_mm) / (qr_size_mm + spacing_mm)))

    return (rows, cols)


def generate_pdf(qr_images: List[Image.Image], output_path: str, title: str,
                 page_size: str = 'A4', qr_size_mm: float = 60.0,
                 margin_mm: float = 15.0, spacing_mm: float = 8.0,
                 no_header: bool = False) -> int:
    """Lay out the QR codes of a series on PDF pages, in series order.

    Each code is labelled "QR n/N" underneath so a person can tell the order
    even though the symbols carry no Structured Append header.

    Args:
        qr_images: PIL Images of the QR codes, in series order
        output_path: Path for output PDF
        title: Title for page headers
        page_size: Key of PAGE_SIZES
        qr_size_mm: Printed size of each QR code
        margin_mm: Page margin
        spacing_mm: Spacing between QR codes (leaves room for labels)
        no_header: Skip the page header if True

    Returns:
        Number of PDF pages written
    """
    page_width, page_height = PAGE_SIZES[page_size]
    margin = margin_mm * mm
    spacing = spacing_mm * mm
    qr_size = qr_size_mm * mm
    header_height_mm = 0.0 if no_header else 30.0
    header_height = header_height_mm * mm

    rows, cols = calculate_grid_layout(page_width / mm, page_height / mm, qr_size_mm,
                                       margin_mm, spacing_mm, header_height_mm)
    qrs_on_page = rows * cols
    total_pages = max(1, (len(qr_images) + qrs_on_page - 1) // qrs_on_page)

    grid_width = cols * qr_size + (cols - 1) * spacing
    horizontal_offset = (page_width - 2 * margin - grid_width) / 2

    c = pdf_canvas.Canvas(output_path, pagesize=(page_width, page_height))

    for page_idx in range(total_pages):
        if not no_header:
            c.setFont("Helvetica-Bold", 14)
            c.drawString(margin, page_height - margin - 5*mm, "Tardoc Invoice QR Series")
            c.setFont("Helvetica", 10)
            c.drawString(margin, page_height - margin - 12*mm, f"Title: {title}")
            c.drawString(margin, page_height - margin - 18*mm,
                         f"Page {page_idx + 1} of {total_pages} - decode with: tardoc-qr decode")
            c.line(margin, page_height - margin - 22*mm,
                   page_width - margin, page_height - margin - 22*mm)

        start_idx = page_idx * qrs_on_page
        end_idx = min(start_idx + qrs_on_page, len(qr_images))

        for local_idx, qr_idx in enumerate(range(start_idx, end_idx)):
            row = local_idx // cols
            col = local_idx % cols

            x = margin + horizontal_offset + col * (qr_size + spacing)
            y = page_height - header_height - margin - (row + 1) * qr_size - row * spacing

            img_buffer = io.BytesIO()
            qr_images[qr_idx].save(img_buffer, format='PNG')
            img_buffer.seek(0)
            c.drawImage(ImageReader(img_buffer), x, y, width=qr_size, height=qr_size)

            c.setFont("Helvetica", 8)
            c.drawCentredString(x + qr_size / 2, y - 4*mm, f"QR {qr_idx + 1}/{len(qr_images)}")

        c.showPage()

    c.save()
    return total_pages


# ============================================================================
# CONSOLE REPORTING
# ============================================================================

WARNING_EVENTS = {
    'source_empty', 'duplicate_fragment', 'inconsistent_metadata',
    'incomplete_series', 'exact_failed', 'no_valid_order',
}


def describe_event(name: str, details: Dict[str, Any]) -> Optional[str]:
    """Render a reassembly event as one console line (None to stay silent)."""
    if name == 'source_empty':
        return f"No QR code found in {details['source_id']}"
    if name == 'fragment':
        line = f"  {details['source_id']}: {details['length']} characters"
        if details['sequence_index'] is not None and details['total_count'] is not None:
            line += f", sequence {details['sequence_index']}/{details['total_count']}"
        return line
    if name == 'duplicate_fragment':
        return f"{details['source_id']} repeats {details['kept']}, ignoring it"
    if name == 'classified':
        if details['addressed']:
            return (f"Structured Append metadata on all {details['fragments']} fragment(s) - "
                    f"using sequence order")
        return (f"{len(details['unaddressed'])} of {details['fragments']} fragment(s) without "
                f"sequence metadata - searching for the order")
    if name == 'inconsistent_metadata':
        return f"Inconsistent Structured Append metadata: {details['detail']}"
    if name == 'completeness':
        return f"Expected {details['expected_total']} fragment(s), found {details['found']}"
    if name == 'incomplete_series':
        missing = ', '.join(str(i) for i in details['missing_indices'])
        return f"Incomplete series, missing sequence(s): {missing}. Result may be corrupted."
    if name == 'exact_failed':
        return f"Sequence order did not decompress ({details['reason']}) - trying order search"
    if name == 'ranked':
        return "Fragments by length: " + ', '.join(
            f"{source_id} ({length})" for source_id, length in details['lengths'])
    if name == 'candidate':
        order = ' -> '.join(details['order'])
        if details['ok']:
            return f"  ✓ {order}"
        return f"  ✗ {order}: {details['reason']}"
    if name == 'order_found':
        return (f"Valid order: {' -> '.join(details['order'])} "
                f"({details['candidates_tried']} candidate(s) tried)")
    if name == 'no_valid_order':
        return f"No valid order among {details['candidates_tried']} candidate(s)"
    return None


def make_event_printer(quiet: bool = False) -> EventSink:
    """Build an event sink that echoes events; warnings go to stderr."""
    def echo_event(name: str, details: Dict[str, Any]) -> None:
        message = describe_event(name, details)
        if message is None:
            return
        if name in WARNING_EVENTS:
            click.echo(f"Warning: {message}", err=True)
        elif not quiet:
            click.echo(message)

    return echo_event


def _say(ctx: click.Context, message: str) -> None:
    if not ctx.obj.get('quiet'):
        click.echo(message)


def _refuse_overwrite(paths: Iterable[str], force: bool) -> None:
    for path in paths:
        if os.path.exists(path) and not force:
            raise click.ClickException(
                f"Output file '{path}' already exists. Use --force to overwrite.")


def _write_text(path: str, text: str) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        f.write(text)


def _finish_reassembly(ctx: click.Context, collector: FragmentCollector, xml_path: str,
                       base64_path: str, keep_base64: bool, recovery_mode: bool) -> None:
    """Reassemble, write outputs and report; exits with status 1 on failure."""
    _say(ctx, "Reassembling...")
    try:
        result = collector.reassemble()
    except ReassemblyError as e:
        click.echo(f"\nError: {e}", err=True)
        if e.missing_indices:
            click.echo(f"Missing sequence(s): {e.missing_indices}", err=True)
        if recovery_mode and e.combined_payload:
            _write_text(base64_path, e.combined_payload)
            click.echo(f"UNVALIDATED payload saved to: {base64_path}", err=True)
        elif not recovery_mode:
            click.echo("Use --recovery-mode to save the unvalidated payload", err=True)
        sys.exit(1)

    _write_text(xml_path, result.decompressed)
    if keep_base64:
        _write_text(base64_path, result.combined_payload)

    _say(ctx, f"\nRecovered: {xml_path} ({len(result.decompressed):,} characters)")
    _say(ctx, f"Order: {' -> '.join(result.order_used)} ({result.strategy})")
    if keep_base64:
        _say(ctx, f"Base64 payload: {base64_path}")
    if not result.complete:
        click.echo(f"Warning: Incomplete series, missing sequence(s) {result.missing_indices}",
                   err=True)


# ============================================================================
# CLI COMMANDS
# ============================================================================

@click.group()
@click.version_option(version=VERSION)
@click.option('-q', '--quiet', is_flag=True, help='Only report warnings and errors')
@click.pass_context
def cli(ctx, quiet):
    """Tardoc QR - Recover invoice XML from Structured Append QR code series.

    Reads the QR codes printed on Tardoc invoices, restores the fragment
    order and decompresses the embedded XML.
    """
    ctx.ensure_object(dict)
    ctx.obj['quiet'] = quiet


@cli.command()
@click.argument('inputs', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('-o', '--output', type=click.Path(), default=None,
              help='Output XML path (default: <first input>.xml)')
@click.option('--dpi', type=click.IntRange(min=72), default=DEFAULT_DPI, show_default=True,
              help='Resolution used to render PDF pages')
@click.option('--keep-base64', is_flag=True,
              help='Also save the combined base64 payload as <output>.base64')
@click.option('--recovery-mode', is_flag=True,
              help='On failure, save the unvalidated payload as <output>.base64')
@click.option('--force', is_flag=True, help='Overwrite existing output files')
@click.pass_context
def decode(ctx, inputs, output, dpi, keep_base64, recovery_mode, force):
    """Decode the QR series in PDFs and/or images into the invoice XML.

    Every PDF page and every image is one source; all symbols found are
    treated as one series.

    Example:
        tardoc-qr decode invoice.pdf
        tardoc-qr decode qr1.png qr2.png qr3.png -o invoice.xml
    """
    if output is None:
        output = os.path.splitext(inputs[0])[0] + '.xml'
    base64_path = os.path.splitext(output)[0] + '.base64'

    try:
        _refuse_overwrite([output] + ([base64_path] if keep_base64 or recovery_mode else []), force)

        _say(ctx, f"\nDecoding: {', '.join(inputs)}")
        collector = FragmentCollector(on_event=make_event_printer(ctx.obj['quiet']))
        for source_id, symbols in collect_sources(inputs, dpi):
            collector.add(source_id, symbols)
        _say(ctx, f"Decoded {len(collector)} QR fragment(s)")

        _finish_reassembly(ctx, collector, output, base64_path, keep_base64, recovery_mode)

    except click.ClickException:
        raise
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('report', type=click.Path(exists=True, dir_okay=False))
@click.option('--format', 'fmt', type=click.Choice(['json', 'zbarimg']), default='json',
              show_default=True, help='Report format')
@click.option('-o', '--output', type=click.Path(), default=None,
              help='Output XML path (default: <report>.xml)')
@click.option('--keep-base64', is_flag=True,
              help='Also save the combined base64 payload as <output>.base64')
@click.option('--recovery-mode', is_flag=True,
              help='On failure, save the unvalidated payload as <output>.base64')
@click.option('--force', is_flag=True, help='Overwrite existing output files')
@click.pass_context
def reassemble(ctx, report, fmt, output, keep_base64, recovery_mode, force):
    """Reassemble fragments listed by an external decoder.

    JSON reports may carry Structured Append metadata (sequence_index,
    total_count); zbarimg reports never do.

    Example:
        tardoc-qr reassemble fragments.json
        zbarimg invoice.png > scan.txt && tardoc-qr reassemble scan.txt --format zbarimg
    """
    if output is None:
        output = os.path.splitext(report)[0] + '.xml'
    base64_path = os.path.splitext(output)[0] + '.base64'

    try:
        _refuse_overwrite([output] + ([base64_path] if keep_base64 or recovery_mode else []), force)

        fragments = load_fragment_report(report, fmt)
        _say(ctx, f"\nLoaded {len(fragments)} fragment(s) from {report}")

        collector = FragmentCollector(on_event=make_event_printer(ctx.obj['quiet']))
        for fragment in fragments:
            collector.add_fragment(fragment)

        _finish_reassembly(ctx, collector, output, base64_path, keep_base64, recovery_mode)

    except click.ClickException:
        raise
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('base64_file', type=click.Path(exists=True, dir_okay=False))
@click.option('-o', '--output', type=click.Path(), default=None,
              help='Output path (default: <base64_file>.xml)')
@click.option('--force', is_flag=True, help='Overwrite existing output file')
@click.pass_context
def inflate(ctx, base64_file, output, force):
    """Inflate an already combined base64 raw-DEFLATE payload.

    Example:
        tardoc-qr inflate invoice.base64 -o invoice.xml
    """
    if output is None:
        output = os.path.splitext(base64_file)[0] + '.xml'

    try:
        _refuse_overwrite([output], force)

        with open(base64_file, 'r', encoding='utf-8') as f:
            payload = f.read()
        _say(ctx, f"\nInflating: {base64_file} ({len(clean_payload(payload)):,} characters)")

        try:
            text = inflate_payload(payload)
        except OracleError as e:
            click.echo(f"\nError: {e}", err=True)
            sys.exit(1)

        _write_text(output, text)
        _say(ctx, f"Decompressed: {output} ({len(text):,} characters)")
        if is_markup(text):
            _say(ctx, "Content type: XML")
        else:
            click.echo("Warning: Decompressed data does not look like XML", err=True)

    except click.ClickException:
        raise
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('inputs', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--dpi', type=click.IntRange(min=72), default=DEFAULT_DPI, show_default=True,
              help='Resolution used to render PDF pages')
@click.option('--json', 'as_json', is_flag=True,
              help='Print a JSON fragment report (input for the reassemble command)')
def info(inputs, dpi, as_json):
    """List the QR symbols found in PDFs and/or images.

    Example:
        tardoc-qr info invoice.pdf
        tardoc-qr info invoice.pdf --json > fragments.json
    """
    try:
        collector = FragmentCollector()
        sources = 0
        for source_id, symbols in collect_sources(inputs, dpi):
            sources += 1
            collector.add(source_id, symbols)
        fragments = collector.fragments

        if as_json:
            click.echo(fragment_report(fragments))
            return

        click.echo(f"\n{'='*60}")
        click.echo("TARDOC QR SYMBOLS")
        click.echo(f"{'='*60}")
        for fragment in fragments:
            click.echo(f"{fragment.source_id}:")
            click.echo(f"  Length:            {len(fragment.payload)} characters "
                       f"({len(strip_padding(fragment.payload))} without padding)")
            if fragment.is_addressed:
                click.echo(f"  Structured Append: {fragment.sequence_index}/{fragment.total_count}, "
                           f"parity={fragment.parity}")
            else:
                click.echo("  Structured Append: not reported by decoder")
            preview = fragment.payload[:50]
            click.echo(f"  Preview:           {preview}{'...' if len(fragment.payload) > 50 else ''}")
        click.echo(f"{'='*60}")
        click.echo(f"Sources scanned:     {sources}")
        click.echo(f"QR symbols found:    {len(fragments)}")
        click.echo(f"{'='*60}\n")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('xml_file', type=click.Path(exists=True, dir_okay=False))
@click.option('-o', '--output', type=click.Path(), default=None,
              help='Output PDF path (default: <xml_file>.qr.pdf)')
@click.option('--fragments', 'count', type=click.IntRange(1, MAX_SERIES_LENGTH), default=None,
              help='Number of QR codes (default: as many as --capacity requires)')
@click.option('--capacity', type=click.IntRange(min=16), default=SYMBOL_CAPACITY,
              show_default=True, help='Characters per QR code')
@click.option('--error-correction', type=click.Choice(['L', 'M', 'Q', 'H']), default='M',
              help='Error correction level: L(7%), M(15%), Q(25%), H(30%) [default: M]')
@click.option('--density', type=float, default=0.8, show_default=True,
              help='QR module size in mm (smaller = denser)')
@click.option('--page-size', type=click.Choice(sorted(PAGE_SIZES)), default='A4',
              show_default=True)
@click.option('--title', type=str, default=None, help='Title for page headers (default: filename)')
@click.option('--force', is_flag=True, help='Overwrite existing output file')
@click.pass_context
def encode(ctx, xml_file, output, count, capacity, error_correction, density, page_size,
           title, force):
    """Print an XML document as a QR code series (test and reprint aid).

    The payload is compressed and split like a Tardoc invoice, the last
    code padded with spaces. The codes carry no Structured Append header,
    so decoding them relies on the order search.

    Example:
        tardoc-qr encode invoice.xml -o invoice.qr.pdf
    """
    if output is None:
        output = xml_file + '.qr.pdf'
    if title is None:
        title = os.path.basename(xml_file)

    try:
        _refuse_overwrite([output], force)

        if density < 0.5:
            click.echo(f"\nWARNING: Density {density}mm is below 0.5mm and may not scan reliably.",
                       err=True)

        with open(xml_file, 'r', encoding='utf-8') as f:
            markup = f.read()
        if not is_markup(markup):
            click.echo(f"Warning: {xml_file} does not look like XML", err=True)

        fragments = build_series(markup, count, capacity)
        payload_length = sum(len(strip_padding(f.payload)) for f in fragments)
        _say(ctx, f"\nEncoding: {xml_file}")
        _say(ctx, f"  Original size: {len(markup):,} characters")
        _say(ctx, f"  Compressed payload: {payload_length:,} base64 characters")
        _say(ctx, f"QR codes required: {len(fragments)} ({len(fragments[0].payload)} characters each)")

        box_size = 10
        qr_images = []
        with click.progressbar(fragments, label='Creating QR codes') as bar:
            for fragment in bar:
                qr_images.append(create_qr_code(fragment.payload, error_correction,
                                                box_size=box_size))

        # Every code in the series uses the size of the largest symbol
        modules = max(img.size[0] for img in qr_images) // box_size
        pages = generate_pdf(qr_images, output, title, page_size=page_size,
                             qr_size_mm=modules * density)

        _say(ctx, f"\nOutput: {output} ({pages} page(s))")

    except click.ClickException:
        raise
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


if __name__ == '__main__':
    cli()
