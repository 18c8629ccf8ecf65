"""Tests for sc_longread.core.correction."""

import gzip
import random

import pytest

from sc_longread.core.correction import BarcodeCorrector, hamming_neighbours, load_allow_list
from sc_longread.core.models import CorrectionStatus
from sc_longread.errors import ResourceError

A16 = "AAAAAAAAAAAAAAAA"
C16 = "CCCCCCCCCCCCCCCC"


class TestHammingNeighbours:
    """Test neighbour enumeration."""

    def test_distance_one_count(self):
        """Test each position yields three substitutions."""
        neighbours = list(hamming_neighbours("ACGT", 1))
        assert len(neighbours) == 12
        assert "ACGT" not in neighbours
        assert "TCGT" in neighbours

    def test_distance_two_count(self):
        """Test two substitutions over four positions."""
        assert len(list(hamming_neighbours("ACGT", 2))) == 6 * 9

    def test_n_is_always_mismatch(self):
        """Test an N position is replaced by every base."""
        assert sorted(hamming_neighbours("N", 1)) == ["A", "C", "G", "T"]


class TestBarcodeCorrectorHamming:
    """Test Hamming-distance correction."""

    def test_exact_member(self):
        """Test an allow-list member is returned as exact, never corrected."""
        corrector = BarcodeCorrector({A16, C16}, max_distance=2)
        result = corrector.correct(A16)
        assert result.status == CorrectionStatus.EXACT
        assert result.barcode == A16
        assert result.distance == 0

    def test_unique_neighbour_corrected(self):
        """Test a single entry within budget is a correction."""
        corrector = BarcodeCorrector({A16, C16}, max_distance=2)
        result = corrector.correct("AAAAAAAAAAAAAAAG")
        assert result.status == CorrectionStatus.CORRECTED
        assert result.barcode == A16
        assert result.distance == 1

    def test_tie_is_unmatched(self):
        """Test two equidistant entries leave the barcode unmatched."""
        corrector = BarcodeCorrector({A16, "AAAAAAAAAAAAAACC"}, max_distance=2)
        result = corrector.correct("AAAAAAAAAAAAAAAC")
        assert result.status == CorrectionStatus.UNMATCHED
        assert result.barcode is None
        assert result.reason == 'ambiguous'

    def test_closer_entry_wins_over_farther(self):
        """Test a unique nearest entry is chosen even with others in budget."""
        corrector = BarcodeCorrector({A16, "AAAAAAAAAAAAAAGG"}, max_distance=2)
        result = corrector.correct("AAAAAAAAAAAAAAAG")
        assert result.status == CorrectionStatus.CORRECTED
        assert result.distance == 1

    def test_outside_budget(self):
        """Test barcodes farther than the budget are not corrected."""
        corrector = BarcodeCorrector({A16}, max_distance=1)
        result = corrector.correct("AAAAAAAAAAAAAAGG")
        assert result.status == CorrectionStatus.UNMATCHED
        assert result.reason == 'no_match'

    def test_wrong_length(self):
        """Test Hamming mode cannot correct a barcode of another length."""
        corrector = BarcodeCorrector({A16}, max_distance=2)
        assert corrector.correct(A16[:-1]).reason == 'no_match'

    def test_lowercase_input(self):
        """Test barcodes are compared case-insensitively."""
        corrector = BarcodeCorrector({A16})
        assert corrector.correct(A16.lower()).status == CorrectionStatus.EXACT

    def test_results_cached(self):
        """Test repeated barcodes reuse the cached result."""
        corrector = BarcodeCorrector({A16})
        first = corrector.correct("AAAAAAAAAAAAAAAG")
        assert corrector.correct("AAAAAAAAAAAAAAAG") is first
        assert corrector.cache_info().hits == 1

    def test_cache_bounded(self):
        """Test many distinct unmatched barcodes do not grow the cache past its size."""
        corrector = BarcodeCorrector({A16}, max_distance=1, cache_size=100)
        rng = random.Random(7)
        for _ in range(2000):
            barcode = ''.join(rng.choice('ACGT') for _ in range(16))
            corrector.correct(barcode)
        info = corrector.cache_info()
        assert info.currsize <= 100
        assert info.maxsize == 100

    def test_exact_not_cached(self):
        """Test exact members are answered without touching the cache."""
        corrector = BarcodeCorrector({A16})
        corrector.correct(A16)
        assert corrector.cache_info().currsize == 0


class TestBarcodeCorrectorEdit:
    """Test edit-distance correction."""

    def test_deletion_corrected(self):
        """Test a barcode with a deleted base is corrected."""
        corrector = BarcodeCorrector({"ACGTACGTACGTACGT", C16}, max_distance=1, metric='edit')
        result = corrector.correct("ACGTACGTACGTACG")
        assert result.status == CorrectionStatus.CORRECTED
        assert result.barcode == "ACGTACGTACGTACGT"

    def test_tie_is_unmatched(self):
        """Test equidistant entries are ambiguous under edit distance too."""
        corrector = BarcodeCorrector({A16, "AAAAAAAAAAAAAACC"}, max_distance=2, metric='edit')
        result = corrector.correct("AAAAAAAAAAAAAAAC")
        assert result.reason == 'ambiguous'

    def test_unknown_metric(self):
        """Test an unknown metric is rejected."""
        with pytest.raises(ValueError, match="metric"):
            BarcodeCorrector({A16}, metric='levenshtein')


class TestPassThrough:
    """Test behaviour without an allow-list."""

    def test_every_barcode_exact(self):
        """Test any extracted barcode is accepted as-is."""
        corrector = BarcodeCorrector(None)
        assert corrector.is_passthrough
        result = corrector.correct("acgtnacgt")
        assert result.status == CorrectionStatus.EXACT
        assert result.barcode == "ACGTNACGT"


class TestLoadAllowList:
    """Test allow-list loading."""

    def test_plain_file(self, tmp_path):
        """Test comments, blank lines and -1 suffixes are handled."""
        path = tmp_path / "allow.txt"
        path.write_text(f"# cells\n{A16}-1\n\n{C16.lower()}\n")
        assert load_allow_list(path) == {A16, C16}

    def test_gzipped_file(self, tmp_path):
        """Test gzipped allow-lists are read."""
        path = tmp_path / "allow.txt.gz"
        with gzip.open(path, 'wt') as f:
            f.write(f"{A16}\n{C16}\n")
        assert load_allow_list(path) == {A16, C16}

    def test_missing_file(self, tmp_path):
        """Test an unreadable allow-list is a resource error."""
        with pytest.raises(ResourceError):
            load_allow_list(tmp_path / "missing.txt")

    def test_empty_file(self, tmp_path):
        """Test an allow-list with no barcodes is rejected."""
        path = tmp_path / "empty.txt"
        path.write_text("# nothing here\n")
        with pytest.raises(ResourceError, match="no barcodes"):
            load_allow_list(path)

    def test_mixed_lengths(self, tmp_path):
        """Test barcodes of different lengths are rejected."""
        path = tmp_path / "mixed.txt"
        path.write_text(f"{A16}\nACGT\n")
        with pytest.raises(ResourceError, match="lengths"):
            load_allow_list(path)

    def test_non_dna_barcode(self, tmp_path):
        """Test header lines or other non-DNA entries are rejected."""
        path = tmp_path / "allow.txt"
        path.write_text(f"barcode\n{A16}\n")
        with pytest.raises(ResourceError, match="non-DNA"):
            load_allow_list(path)

    def test_from_file(self, tmp_path):
        """Test building a corrector from a file."""
        path = tmp_path / "allow.txt"
        path.write_text(f"{A16}\n")
        corrector = BarcodeCorrector.from_file(path, max_distance=1)
        assert corrector.barcode_length == 16
        assert corrector.correct("AAAAAAAAAAAAAAAT").barcode == A16


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
