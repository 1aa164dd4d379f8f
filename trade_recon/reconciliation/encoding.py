"""
Encoding and format detection for uploaded broker reports

MetaTrader exporters commonly write UTF-16 without a byte-order mark, so the
decoder looks at null-byte parity before falling back to single-byte text.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

SNIFF_BYTES = 512
MIN_NULL_BYTES = 8


class ReportFormat(Enum):
    """Document shapes the report pipeline can route to"""
    TABULAR = "tabular"
    STRUCTURED = "structured"
    DELIMITED = "delimited"


@dataclass
class DecodedReport:
    """Decoded report text with the encoding that produced it"""
    text: str
    encoding: str


def detect_encoding(data: bytes) -> str:
    """
    Pick a decoding strategy from the first bytes of a file

    Returns:
        Python codec name: utf-8, utf-16-le, utf-16-be or "single-byte"
    """
    head = data[:SNIFF_BYTES]

    if head.startswith(b"\xff\xfe"):
        return "utf-16-le"
    if head.startswith(b"\xfe\xff"):
        return "utf-16-be"
    if head.startswith(b"\xef\xbb\xbf"):
        return "utf-8"

    zeros_even = 0
    zeros_odd = 0
    for index, byte in enumerate(head):
        if byte == 0:
            if index % 2 == 0:
                zeros_even += 1
            else:
                zeros_odd += 1

    if zeros_odd > zeros_even * 2 and zeros_odd > MIN_NULL_BYTES:
        return "utf-16-le"
    if zeros_even > zeros_odd * 2 and zeros_even > MIN_NULL_BYTES:
        return "utf-16-be"
    return "single-byte"


def decode_report(data: bytes) -> DecodedReport:
    """
    Decode raw report bytes into text

    Never raises: undecodable sequences are replaced rather than failing the
    whole import.
    """
    encoding = detect_encoding(data)

    if encoding == "single-byte":
        try:
            text = data.decode("utf-8")
            encoding = "utf-8"
        except UnicodeDecodeError:
            text = data.decode("cp1252", errors="replace")
            encoding = "cp1252"
    else:
        text = data.decode(encoding, errors="replace")

    if text.startswith("\ufeff"):
        text = text[1:]

    logger.debug(f"Decoded {len(data)} bytes as {encoding}")
    return DecodedReport(text=text, encoding=encoding)


def detect_format(text: str, filename: Optional[str] = None) -> ReportFormat:
    """
    Classify decoded text by content sniffing

    The filename only breaks ties when the content looks like plain text.
    """
    trimmed = text.lstrip().lower()

    if trimmed.startswith("<!doctype") or trimmed.startswith("<html") or "<table" in trimmed:
        return ReportFormat.TABULAR
    if trimmed.startswith("<?xml") or trimmed.startswith("<report"):
        return ReportFormat.STRUCTURED

    name = (filename or "").lower()
    if name.endswith((".htm", ".html")):
        return ReportFormat.TABULAR
    if name.endswith(".xml"):
        return ReportFormat.STRUCTURED

    return ReportFormat.DELIMITED
