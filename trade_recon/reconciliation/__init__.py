"""
Reconciliation Module

Parses broker report files (HTML, SpreadsheetML, XML, CSV, plain text) and
reconciles per-fill deals into canonical round-trip trades.
"""

from .aggregator import aggregate_deals
from .encoding import ReportFormat, decode_report, detect_format
from .models import CanonicalTrade, Direction, EntryMarker, RawDeal
from .report_parser import ImportOutcome, ParsedReport, ReportImporter, parse_report

__all__ = [
    'aggregate_deals',
    'ReportFormat',
    'decode_report',
    'detect_format',
    'CanonicalTrade',
    'Direction',
    'EntryMarker',
    'RawDeal',
    'ImportOutcome',
    'ParsedReport',
    'ReportImporter',
    'parse_report'
]
