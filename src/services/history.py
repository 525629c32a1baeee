import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple, Callable, Iterator

from pydantic import BaseModel

from src.core.models import Notice, RecognitionResult, ScanResult

logger = logging.getLogger(__name__)

# Field name -> attribute compared against existing records.
MATCH_FIELDS = {
    "SN": "sn",
}


class IngestOutcome(BaseModel):
    record: Optional[ScanResult] = None
    notice: Notice


def local_time() -> str:
    return datetime.now().strftime("%H:%M:%S")


def new_id() -> str:
    return uuid.uuid4().hex


class ScanHistory:
    """
    Session scan history, most recent first. In-memory only.

    Duplicate status is decided once, when a record is created, by comparing
    against every record present at that moment. Later scans, edits and
    deletes never change it.
    """

    def __init__(self, match_fields: Tuple[str, ...] = ("SN",),
                 clock: Callable[[], str] = local_time,
                 id_factory: Callable[[], str] = new_id):
        self.match_fields = match_fields
        self.clock = clock
        self.id_factory = id_factory
        self._records: List[ScanResult] = []
        self._issued_ids = set()

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ScanResult]:
        return iter(list(self._records))

    @property
    def records(self) -> List[ScanResult]:
        return list(self._records)

    def is_empty(self) -> bool:
        return not self._records

    def get(self, record_id: str) -> Optional[ScanResult]:
        return next((r for r in self._records if r.id == record_id), None)

    def find_duplicate_fields(self, result: RecognitionResult) -> List[str]:
        fields: List[str] = []
        for item in self._records:
            for field in self.match_fields:
                attr = MATCH_FIELDS[field]
                value = getattr(result, attr, None)
                if value and getattr(item, attr, None) == value and field not in fields:
                    fields.append(field)
        return fields

    def _next_id(self) -> str:
        record_id = self.id_factory()
        while record_id in self._issued_ids:
            record_id = self.id_factory()
        self._issued_ids.add(record_id)
        return record_id

    def ingest(self, result: RecognitionResult) -> IngestOutcome:
        if not result.has_content:
            logger.info("Recognition returned no codes, nothing recorded")
            return IngestOutcome(notice=Notice(message="图中未发现有效编码，请对准标签重试", level="info"))

        duplicate_fields = self.find_duplicate_fields(result)
        record = ScanResult(
            id=self._next_id(),
            captured_at=self.clock(),
            sn=result.sn,
            other_codes=list(result.other_codes),
            confidence=result.confidence,
            duplicate=bool(duplicate_fields),
            duplicate_fields=duplicate_fields,
        )
        self._records.insert(0, record)

        if record.duplicate:
            logger.info(f"Duplicate scan {record.id}: {duplicate_fields}")
            notice = Notice(message=f"发现重复: {'/'.join(duplicate_fields)} 已在记录中", level="warning")
        else:
            logger.info(f"Recorded scan {record.id} (SN={record.sn})")
            notice = Notice(message="识别成功", level="info")
        return IngestOutcome(record=record, notice=notice)

    def edit_sn(self, record_id: str, value: Optional[str]) -> Optional[ScanResult]:
        record = self.get(record_id)
        if record is None:
            return None
        new_sn = (value or "").strip() or None
        record.sn = new_sn
        logger.info(f"Edited SN of {record_id} -> {new_sn}")
        return record

    def delete(self, record_id: str) -> bool:
        before = len(self._records)
        self._records = [r for r in self._records if r.id != record_id]
        removed = len(self._records) != before
        if removed:
            logger.info(f"Deleted scan {record_id}")
        return removed

    def reset_batch(self, confirmed: bool) -> bool:
        """Clears the batch. Needs a non-empty history and an explicit confirmation."""
        if not self._records or not confirmed:
            return False
        count = len(self._records)
        self._records = []
        logger.info(f"Batch reset, {count} records cleared")
        return True
