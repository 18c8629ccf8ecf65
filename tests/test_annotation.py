"""Tests for read annotation and demultiplexing statistics."""

from collections import Counter

import pytest

from sc_longread.config import ProtocolTemplate
from sc_longread.core.annotation import ReadAnnotator, format_read_id, parse_read_id
from sc_longread.core.correction import BarcodeCorrector
from sc_longread.core.matching import PatternMatcher
from sc_longread.core.models import BarcodeStats, CorrectionStatus, RawRead
from sc_longread.errors import RecordError

from conftest import BARCODE, CDNA, UMI, build_read

# BARCODE with its last base substituted
NEAR_BARCODE = BARCODE[:-1] + "A"


def make_annotator(unmatched='drop', allow_list=(BARCODE,)):
    matcher = PatternMatcher(ProtocolTemplate.default(), max_edit=2)
    corrector = BarcodeCorrector(set(allow_list) if allow_list else None, max_distance=2)
    return ReadAnnotator(matcher, corrector, unmatched=unmatched)


class TestReadIds:
    """Test BC_UMI#id naming."""

    def test_format(self):
        """Test barcode and UMI are prepended to the read id."""
        assert format_read_id("ACGT", "TTTT", "read1") == "ACGT_TTTT#read1"

    def test_parse(self):
        """Test an annotated id splits back into its parts."""
        assert parse_read_id("ACGT_TTTT#read1") == ("ACGT", "TTTT", "read1")

    def test_parse_plain_id(self):
        """Test ids without the prefix are returned unchanged."""
        assert parse_read_id("m64011_190830/1/ccs") == (None, None, "m64011_190830/1/ccs")


class TestRawRead:
    """Test record validation."""

    def test_quality_length_mismatch(self):
        """Test sequence/quality length mismatch is a record error."""
        with pytest.raises(RecordError) as exc:
            RawRead("r1", "ACGT", "II").validate()
        assert exc.value.record_id == "r1"

    def test_invalid_base(self):
        """Test characters outside ACGTN are rejected."""
        with pytest.raises(RecordError, match="Invalid bases"):
            RawRead("r1", "ACGX").validate()

    def test_empty_id(self):
        """Test reads need an identifier."""
        with pytest.raises(RecordError):
            RawRead("", "ACGT").validate()


class TestReadAnnotator:
    """Test combined matching and correction."""

    def test_corrected_read(self):
        """Test a barcode one substitution away is corrected and trimmed."""
        annotator = make_annotator()
        stats = BarcodeStats()
        read = RawRead("read1", build_read(barcode=NEAR_BARCODE, poly_t="TTTTATTTT"))
        annotated = annotator.annotate(read, stats)

        assert annotated.status == CorrectionStatus.CORRECTED
        assert annotated.barcode == BARCODE
        assert annotated.umi == UMI
        assert annotated.read_id == f"{BARCODE}_{UMI}#read1"
        assert annotated.sequence == CDNA
        assert annotated.comment == f"CB:Z:{BARCODE}\tUB:Z:{UMI}"
        assert stats.corrected == 1
        assert stats.barcode_counts[BARCODE] == 1

    def test_exact_read(self):
        """Test an allow-listed barcode is counted as exact."""
        annotator = make_annotator()
        stats = BarcodeStats()
        annotated = annotator.annotate(RawRead("read1", build_read(), "I" * len(build_read())), stats)
        assert annotated.status == CorrectionStatus.EXACT
        assert annotated.quality == "I" * len(CDNA)
        assert stats.exact == 1

    def test_match_failure_counted(self):
        """Test template failures are recorded by reason."""
        annotator = make_annotator()
        stats = BarcodeStats()
        assert annotator.annotate(RawRead("r1", "ACGT"), stats) is None
        assert stats.unmatched == 1
        assert stats.failure_reasons == Counter({'ReadTooShort': 1})

    def test_barcode_failure_counted(self):
        """Test barcodes outside the allow-list are unmatched."""
        annotator = make_annotator()
        stats = BarcodeStats()
        read = RawRead("r1", build_read(barcode="GGGGGGGGGGGGGGGG"))
        assert annotator.annotate(read, stats) is None
        assert stats.failure_reasons == Counter({'barcode_no_match': 1})

    def test_emit_unmatched(self):
        """Test unmatched reads are passed through under the emit policy."""
        annotator = make_annotator(unmatched='emit')
        stats = BarcodeStats()
        annotated = annotator.annotate(RawRead("r1", "G" * 100, comment="orig"), stats)
        assert annotated.status == CorrectionStatus.UNMATCHED
        assert annotated.read_id == "r1"
        assert annotated.sequence == "G" * 100
        assert annotated.comment == "orig"

    def test_unknown_policy(self):
        """Test an unknown unmatched policy is rejected."""
        with pytest.raises(ValueError):
            make_annotator(unmatched='keep')

    def test_batch_skips_malformed(self):
        """Test malformed reads are counted and do not stop the batch."""
        annotator = make_annotator()
        reads = [
            RawRead("good", build_read()),
            RawRead("bad", "ACGT", "I"),
            RawRead("short", "ACGT"),
        ]
        records, stats = annotator.annotate_batch(reads)
        assert [r.source_id for r in records] == ["good"]
        assert stats.record_errors == 1
        assert stats.total_reads == 2
        assert stats.is_consistent

    def test_passthrough_accepts_any_barcode(self):
        """Test every extracted barcode is exact without an allow-list."""
        annotator = make_annotator(allow_list=None)
        records, stats = annotator.annotate_batch([RawRead("r1", build_read(barcode="GGGGGGGGGGGGGGGG"))])
        assert records[0].barcode == "GGGGGGGGGGGGGGGG"
        assert stats.exact == 1


class TestBarcodeStats:
    """Test statistics merging."""

    def make_stats(self, exact, corrected, unmatched, barcode):
        return BarcodeStats(
            total_reads=exact + corrected + unmatched,
            exact=exact,
            corrected=corrected,
            unmatched=unmatched,
            failure_reasons=Counter({'NoAnchorFound': unmatched}),
            barcode_counts=Counter({barcode: exact + corrected}),
        )

    def test_merge_sums(self):
        """Test merging adds every counter."""
        merged = self.make_stats(3, 1, 2, "AAAA").merge(self.make_stats(1, 0, 1, "CCCC"))
        assert merged.total_reads == 8
        assert merged.matched == 5
        assert merged.failure_reasons['NoAnchorFound'] == 3
        assert merged.barcode_counts == Counter({'AAAA': 4, 'CCCC': 1})
        assert merged.is_consistent

    def test_merge_order_independent(self):
        """Test merge order does not change the result."""
        a = self.make_stats(3, 1, 2, "AAAA")
        b = self.make_stats(1, 0, 1, "CCCC")
        c = self.make_stats(0, 2, 0, "AAAA")
        assert ((a + b) + c).to_dict() == (c + (b + a)).to_dict()

    def test_to_dict(self):
        """Test flat summary keys."""
        summary = self.make_stats(3, 1, 2, "AAAA").to_dict()
        assert summary['total_reads'] == 6
        assert summary['unmatched_NoAnchorFound'] == 2
        assert summary['unique_barcodes'] == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
