import csv
import io
import logging
import re
import time
from enum import Enum
from typing import List, Optional, Callable, Awaitable, Any

from src.core.models import ScanResult

logger = logging.getLogger(__name__)

# Time, SN, OtherCodes, Confidence, Duplicate
CSV_HEADERS = ['时间', 'SN', '其他编码', '置信度', '重复']
YES = '是'
NO = '否'


class ShareOutcome(Enum):
    SHARED = "shared"
    CANCELLED = "cancelled"
    UNSUPPORTED = "unsupported"


def _single_line(text: str) -> str:
    # One record per physical line, even when OCR returns multi-line values.
    return re.sub(r"[\r\n]+", " ", text)


def format_row(item: ScanResult) -> List[str]:
    return [
        item.captured_at,
        # Leading apostrophe keeps spreadsheets from turning long SNs into numbers.
        _single_line(f"'{item.sn or ''}"),
        _single_line("; ".join(f"{c.label}:{c.value}" for c in item.other_codes)),
        f"{item.confidence * 100:.0f}%",
        YES if item.duplicate else NO,
    ]


def build_csv(records: List[ScanResult]) -> bytes:
    """CSV in history order (newest first), UTF-8 with BOM so Excel picks the encoding."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for item in records:
        writer.writerow(format_row(item))
    # No trailing newline: header + N rows is exactly N+1 lines.
    text = buffer.getvalue().rstrip("\n")
    return ("\ufeff" + text).encode("utf-8")


def export_filename(now: Optional[float] = None) -> str:
    ts = now if now is not None else time.time()
    return f"BATCH_{int(ts * 1000)}.csv"


async def deliver_csv(records: List[ScanResult],
                      share: Callable[[bytes, str], Awaitable[ShareOutcome]],
                      download: Callable[[bytes, str], Any]) -> Optional[str]:
    """
    Hands the batch to the native share sheet, falling back to a plain
    download when sharing is unavailable or the user backs out.
    Returns the delivery mode used, or None when there was nothing to export.
    """
    if not records:
        return None

    payload = build_csv(records)
    filename = export_filename()

    outcome = await share(payload, filename)
    if outcome == ShareOutcome.SHARED:
        logger.info(f"Shared {filename} ({len(records)} rows)")
        return "share"

    if outcome == ShareOutcome.CANCELLED:
        logger.debug("Share cancelled, downloading instead")
    download(payload, filename)
    logger.info(f"Downloaded {filename} ({len(records)} rows)")
    return "download"
