"""
Report import pipeline

Decodes uploaded file bytes, routes the text through the format parsers in
fallback order and hands the resulting trades to a trade store.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from .aggregator import source_keys
from .delimited_parser import parse_delimited
from .encoding import ReportFormat, decode_report, detect_format
from .models import CanonicalTrade, number_repeated_keys
from .structured_parser import parse_structured
from .tabular_parser import parse_tabular
from ..utils.structured_logging import get_import_logger

logger = logging.getLogger(__name__)
import_logger = get_import_logger(__name__)

NO_TRADES_MESSAGE = "No valid trades found in file. Please check the format."

PARSERS: Dict[ReportFormat, Callable[[str], List[CanonicalTrade]]] = {
    ReportFormat.STRUCTURED: parse_structured,
    ReportFormat.TABULAR: parse_tabular,
    ReportFormat.DELIMITED: parse_delimited,
}

FALLBACK_ORDER = [ReportFormat.STRUCTURED, ReportFormat.TABULAR, ReportFormat.DELIMITED]


@dataclass
class ParsedReport:
    """Result of running a file through the parser chain"""
    trades: List[CanonicalTrade]
    encoding: str
    detected_format: ReportFormat
    parsed_by: Optional[ReportFormat] = None

    @property
    def is_empty(self) -> bool:
        return not self.trades


@dataclass
class ImportOutcome:
    """Outcome of a report import, returned instead of raising"""
    ok: bool
    imported: int = 0
    upserted: int = 0
    reason: Optional[str] = None
    message: str = ""
    trades: List[CanonicalTrade] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "ok": self.ok,
            "imported": self.imported,
            "upserted": self.upserted,
            "message": self.message,
        }
        if self.reason:
            data["reason"] = self.reason
        return data


def parser_chain(detected: ReportFormat) -> List[ReportFormat]:
    """Detected format first, then the remaining formats in fallback order"""
    return [detected] + [fmt for fmt in FALLBACK_ORDER if fmt != detected]


def parse_text(text: str, detected: ReportFormat) -> ParsedReport:
    for fmt in parser_chain(detected):
        trades = PARSERS[fmt](text)
        logger.debug(f"{fmt.value} parser returned {len(trades)} trades")
        if trades:
            return ParsedReport(trades=number_repeated_keys(trades), encoding="",
                                detected_format=detected, parsed_by=fmt)
    return ParsedReport(trades=[], encoding="", detected_format=detected)


def parse_report(data: bytes, filename: Optional[str] = None) -> ParsedReport:
    """
    Parse raw report bytes into canonical trades

    Args:
        data: File contents
        filename: Original file name, used only as a tie-breaking hint

    Returns:
        ParsedReport; `trades` is empty when no parser found anything
    """
    decoded = decode_report(data)
    detected = detect_format(decoded.text, filename)
    report = parse_text(decoded.text, detected)
    report.encoding = decoded.encoding

    parsed_by = report.parsed_by.value if report.parsed_by else None
    if report.is_empty:
        import_logger.parse_event(
            "no_trades", f"No trades found in {filename or 'report'}",
            report_file=filename, encoding=decoded.encoding, detected_format=detected.value,
        )
    else:
        import_logger.parse_event(
            "completed", f"Parsed {filename or 'report'}: {len(report.trades)} trades",
            report_file=filename, encoding=decoded.encoding, detected_format=detected.value,
            parsed_by=parsed_by, trade_count=len(report.trades),
        )
    return report


def to_dataframe(trades: List[CanonicalTrade]) -> pd.DataFrame:
    """Flatten trades into a DataFrame for export"""
    if not trades:
        return pd.DataFrame()
    df = pd.DataFrame([trade.to_dict() for trade in trades])
    df["close_time"] = pd.to_datetime(df["close_time"], utc=True, errors="coerce")
    return df.sort_values("close_time").reset_index(drop=True)


class ReportImporter:
    """
    Client-side report import

    Parses a file and writes the trades through the trade store, enforcing
    the plan quota on trades that are not already stored.
    """

    def __init__(self, store, max_trades: Optional[int] = None):
        self.store = store
        self.max_trades = max_trades

    def _quota_outcome(self, user_id: str, trades: List[CanonicalTrade]) -> Optional[ImportOutcome]:
        if self.max_trades is None:
            return None

        keyed = source_keys(trades)
        existing_keys = self.store.existing_source_keys(user_id, list(keyed))
        new_count = len(set(keyed) - existing_keys)
        existing_count = self.store.count_trades(user_id)

        if existing_count + new_count <= self.max_trades:
            return None

        remaining = max(0, self.max_trades - existing_count)
        logger.warning(f"Trade limit reached for user {user_id}: "
                       f"{existing_count} stored, {new_count} new, limit {self.max_trades}")
        return ImportOutcome(
            ok=False,
            reason="trade_limit",
            message=(f"Free plan can only save {self.max_trades} trades. "
                     f"You can add {remaining} more; upgrade to add all."),
        )

    def import_file(self, user_id: str, data: bytes, filename: Optional[str] = None) -> ImportOutcome:
        report = parse_report(data, filename)
        if report.is_empty:
            return ImportOutcome(ok=False, reason="no_trades", message=NO_TRADES_MESSAGE)

        blocked = self._quota_outcome(user_id, report.trades)
        if blocked is not None:
            return blocked

        upserted = self.store.upsert_trades(user_id, report.trades)
        return ImportOutcome(
            ok=True,
            imported=len(report.trades),
            upserted=upserted,
            message=f"Successfully imported {len(report.trades)} trades!",
            trades=report.trades,
        )
