import itertools
import unittest

from src.core.models import OtherCode, RecognitionResult
from src.services.history import ScanHistory

SN_A = "952985A1B123456789AX"
SN_B = "952985C2D987654321BY"


def make_history():
    counter = itertools.count(1)
    return ScanHistory(clock=lambda: "12:00:00", id_factory=lambda: f"id-{next(counter)}")


class TestScanHistory(unittest.TestCase):
    def test_first_scan_is_not_duplicate(self):
        history = make_history()
        outcome = history.ingest(RecognitionResult(sn=SN_A, confidence=0.95))

        self.assertIsNotNone(outcome.record)
        self.assertFalse(outcome.record.duplicate)
        self.assertEqual(outcome.record.duplicate_fields, [])
        self.assertEqual(outcome.record.captured_at, "12:00:00")
        self.assertEqual(outcome.notice.message, "识别成功")
        self.assertEqual(outcome.notice.level, "info")

    def test_repeat_sn_is_flagged(self):
        history = make_history()
        first = history.ingest(RecognitionResult(sn=SN_A)).record
        second = history.ingest(RecognitionResult(sn=SN_A))

        self.assertTrue(second.record.duplicate)
        self.assertEqual(second.record.duplicate_fields, ["SN"])
        self.assertEqual(second.notice.level, "warning")
        self.assertEqual(second.notice.message, "发现重复: SN 已在记录中")
        # Earlier record keeps its own status
        self.assertFalse(first.duplicate)

    def test_dedup_against_existing_batch(self):
        history = make_history()
        history.ingest(RecognitionResult(sn="X1"))
        history.ingest(RecognitionResult(sn="X2"))

        repeat = history.ingest(RecognitionResult(sn="X1")).record
        fresh = history.ingest(RecognitionResult(sn="X3")).record

        self.assertTrue(repeat.duplicate)
        self.assertEqual(repeat.duplicate_fields, ["SN"])
        self.assertFalse(fresh.duplicate)

    def test_newest_first(self):
        history = make_history()
        history.ingest(RecognitionResult(sn=SN_A))
        history.ingest(RecognitionResult(sn=SN_B))
        self.assertEqual([r.sn for r in history.records], [SN_B, SN_A])

    def test_empty_result_not_recorded(self):
        history = make_history()
        for result in (RecognitionResult(), RecognitionResult(sn="", other_codes=[])):
            outcome = history.ingest(result)
            self.assertIsNone(outcome.record)
            self.assertEqual(outcome.notice.message, "图中未发现有效编码，请对准标签重试")
        self.assertTrue(history.is_empty())

    def test_other_codes_only_is_recorded_without_duplicate(self):
        history = make_history()
        codes = [OtherCode(label="Batch", value="B-1")]
        history.ingest(RecognitionResult(other_codes=codes))
        outcome = history.ingest(RecognitionResult(other_codes=codes))

        self.assertEqual(len(history), 2)
        self.assertIsNone(outcome.record.sn)
        self.assertFalse(outcome.record.duplicate)

    def test_missing_sn_never_matches_missing_sn(self):
        history = make_history()
        history.ingest(RecognitionResult(other_codes=[OtherCode(label="X", value="1")]))
        outcome = history.ingest(RecognitionResult(other_codes=[OtherCode(label="Y", value="2")]))
        self.assertFalse(outcome.record.duplicate)

    def test_edit_does_not_change_duplicate_status(self):
        history = make_history()
        a = history.ingest(RecognitionResult(sn=SN_A)).record
        b = history.ingest(RecognitionResult(sn=SN_B)).record

        history.edit_sn(b.id, SN_A)
        self.assertEqual(history.get(b.id).sn, SN_A)
        self.assertFalse(history.get(b.id).duplicate)
        self.assertFalse(history.get(a.id).duplicate)

    def test_scan_after_edit_compares_edited_value(self):
        history = make_history()
        a = history.ingest(RecognitionResult(sn=SN_A)).record
        history.edit_sn(a.id, SN_B)

        self.assertTrue(history.ingest(RecognitionResult(sn=SN_B)).record.duplicate)
        self.assertFalse(history.ingest(RecognitionResult(sn=SN_A)).record.duplicate)

    def test_delete_does_not_change_duplicate_status(self):
        history = make_history()
        first = history.ingest(RecognitionResult(sn=SN_A)).record
        second = history.ingest(RecognitionResult(sn=SN_A)).record

        self.assertTrue(history.delete(first.id))
        self.assertTrue(history.get(second.id).duplicate)
        self.assertEqual(len(history), 1)

    def test_scan_after_delete_is_not_duplicate(self):
        history = make_history()
        record = history.ingest(RecognitionResult(sn=SN_A)).record
        history.delete(record.id)
        self.assertFalse(history.ingest(RecognitionResult(sn=SN_A)).record.duplicate)

    def test_unknown_ids_are_noops(self):
        history = make_history()
        history.ingest(RecognitionResult(sn=SN_A))
        self.assertIsNone(history.edit_sn("missing", SN_B))
        self.assertFalse(history.delete("missing"))
        self.assertEqual(len(history), 1)

    def test_edit_strips_and_blank_becomes_none(self):
        history = make_history()
        record = history.ingest(RecognitionResult(sn=SN_A)).record

        history.edit_sn(record.id, f"  {SN_B} ")
        self.assertEqual(record.sn, SN_B)

        history.edit_sn(record.id, "   ")
        self.assertIsNone(record.sn)
        self.assertEqual(record.validation.texts, ["SN为空"])

    def test_validation_follows_edits(self):
        history = make_history()
        record = history.ingest(RecognitionResult(sn="952985")).record
        self.assertFalse(record.validation.is_valid)

        history.edit_sn(record.id, SN_A)
        self.assertTrue(record.validation.is_valid)

    def test_ids_are_unique(self):
        ids = iter(["a", "a", "b", "b", "c"])
        history = ScanHistory(id_factory=lambda: next(ids))
        for _ in range(3):
            history.ingest(RecognitionResult(sn=SN_A))
        self.assertEqual(sorted(r.id for r in history.records), ["a", "b", "c"])

    def test_reset_batch_requires_confirmation(self):
        history = make_history()
        history.ingest(RecognitionResult(sn=SN_A))

        self.assertFalse(history.reset_batch(confirmed=False))
        self.assertEqual(len(history), 1)

        self.assertTrue(history.reset_batch(confirmed=True))
        self.assertTrue(history.is_empty())

    def test_reset_empty_batch_is_noop(self):
        self.assertFalse(make_history().reset_batch(confirmed=True))

    def test_reset_forgets_previous_sns(self):
        history = make_history()
        history.ingest(RecognitionResult(sn=SN_A))
        history.reset_batch(confirmed=True)
        self.assertFalse(history.ingest(RecognitionResult(sn=SN_A)).record.duplicate)


if __name__ == '__main__':
    unittest.main()
