"""Tests for bulk and single-cell variant calling."""

import pandas as pd
import pysam
import pytest

from sc_longread.config import VariantConfig
from sc_longread.errors import ConfigError, ResourceError
from sc_longread.io.output import ALLELE_COLUMNS, SINGLE_CELL_COLUMNS, VARIANT_COLUMNS
from sc_longread.io.regions import Region, RegionIndex
from sc_longread.variants.calling import (
    allele_table,
    call_bulk_variants,
    call_single_cell,
    filter_by_frequency,
    find_variants,
    group_by_region,
    sc_mutations,
)
from sc_longread.variants.pileup import PileupCell, PileupStats

from conftest import REF_NAME


def bulk_cell(pos, counts, seqname='chr1'):
    cell = PileupCell(seqname, pos)
    for allele, n in counts.items():
        cell.add('', allele, n)
    return cell


class TestBulkCalling:
    """Test depth/frequency summaries."""

    def test_frequency_example(self):
        """Test 1000 alternate reads out of 2500 pass a 0.2-0.8 filter."""
        cells = [
            bulk_cell(100, {'A': 1500, 'G': 1000}),
            bulk_cell(200, {'A': 2490, 'C': 10}),
        ]
        candidates = call_bulk_variants(cells, min_depth=2000)
        assert [(c.pos, c.depth, c.alt_count) for c in candidates] == [(100, 2500, 1000), (200, 2500, 10)]
        assert candidates[0].freq == 0.4
        assert candidates[1].freq == 0.004

        kept = filter_by_frequency(candidates, 0.2, 0.8)
        assert [c.pos for c in kept] == [100]
        assert kept[0].ref == 'A'
        assert kept[0].alt == 'G'

    def test_bounds_are_exclusive(self):
        """Test frequencies equal to a bound are filtered out."""
        cells = [bulk_cell(1, {'A': 8, 'G': 2}), bulk_cell(2, {'A': 5, 'G': 5})]
        candidates = call_bulk_variants(cells, min_depth=1)
        assert [c.pos for c in filter_by_frequency(candidates, 0.2, 0.8)] == [2]

    def test_depth_floor(self):
        """Test positions below the minimum depth are not reported."""
        assert call_bulk_variants([bulk_cell(1, {'A': 1999})], min_depth=2000) == []

    def test_zero_depth_excluded(self):
        """Test empty cells never yield a candidate."""
        assert call_bulk_variants([PileupCell('chr1', 1)], min_depth=0) == []

    def test_barcodes_pooled(self):
        """Test depth counts reads from every barcode."""
        cell = PileupCell('chr1', 7)
        cell.add('AAAA', 'A', 3)
        cell.add('CCCC', 'T', 2)
        candidate = call_bulk_variants({('chr1', 7): cell}, min_depth=5)[0]
        assert candidate.depth == 5
        assert candidate.alt == 'T'

    def test_no_alternate(self):
        """Test monomorphic positions have no alternate allele."""
        candidate = call_bulk_variants([bulk_cell(1, {'A': 10})], min_depth=1)[0]
        assert candidate.alt is None
        assert candidate.freq == 0.0

    def test_reference_allele(self, reference_fasta):
        """Test the reference base is used when a FASTA is given."""
        # chr1:21 is 'A' in the test reference
        with pysam.FastaFile(str(reference_fasta)) as reference:
            candidate = call_bulk_variants(
                [bulk_cell(21, {'G': 60, 'A': 40})], min_depth=1, reference=reference
            )[0]
        assert candidate.ref == 'A'
        assert candidate.alt == 'G'
        assert candidate.freq == 0.6

    def test_homopolymer_flag(self, tmp_path):
        """Test positions next to reference homopolymers are flagged."""
        path = tmp_path / "hp.fa"
        path.write_text(">chr1\nACGTAAAAAACGTACGTACG\n")
        pysam.faidx(str(path))
        with pysam.FastaFile(str(path)) as reference:
            candidates = call_bulk_variants(
                [bulk_cell(6, {'A': 5, 'C': 5}), bulk_cell(14, {'A': 5, 'C': 5})],
                min_depth=1,
                reference=reference,
                homopolymer_window=3,
            )
        assert [c.homopolymer for c in candidates] == [True, False]

    def test_contig_missing_from_reference(self, tmp_path):
        """Test positions on a contig absent from the FASTA fall back to the major allele."""
        path = tmp_path / "subset.fa"
        path.write_text(">chr19\nACGTAAAAAACGTACGTACG\n")
        pysam.faidx(str(path))
        with pysam.FastaFile(str(path)) as reference:
            candidate = call_bulk_variants(
                [bulk_cell(21, {'G': 60, 'A': 40})],
                min_depth=1,
                reference=reference,
                homopolymer_window=3,
            )[0]
        assert candidate.ref == 'G'
        assert candidate.alt == 'A'
        assert candidate.homopolymer is None

    def test_region_labels(self):
        """Test candidates are labelled and grouped by overlapping regions."""
        index = RegionIndex([Region('chr1', 50, 150, 'GENE1'), Region('chr1', 90, 120, 'GENE2')])
        candidates = call_bulk_variants(
            [bulk_cell(60, {'A': 5, 'G': 5}), bulk_cell(100, {'A': 5, 'G': 5}), bulk_cell(500, {'A': 5, 'G': 5})],
            min_depth=1,
            region_index=index,
        )
        assert [c.region for c in candidates] == ['GENE1', 'GENE1,GENE2', None]
        groups = group_by_region(candidates)
        assert [c.pos for c in groups['GENE1']] == [60, 100]
        assert [c.pos for c in groups['GENE2']] == [100]


class TestSingleCellCalling:
    """Test per-barcode dominant alleles."""

    @pytest.fixture
    def cell(self):
        cell = PileupCell('chr1', 42)
        cell.add('AAAA', 'A', 3)
        cell.add('AAAA', 'G', 1)
        cell.add('CCCC', 'G', 2)
        cell.add('TTTT', 'C', 2)
        cell.add('TTTT', 'A', 2)
        cell.counts['GGGG']  # touched but empty
        return cell

    def test_dominant_allele(self, cell):
        """Test dominant allele, support and fraction per barcode."""
        calls = {c.barcode: c for c in call_single_cell([cell])}
        assert (calls['AAAA'].allele, calls['AAAA'].allele_count, calls['AAAA'].cell_total_reads) == ('A', 3, 4)
        assert calls['AAAA'].fraction == 0.75
        assert calls['CCCC'].fraction == 1.0

    def test_zero_read_barcode_omitted(self, cell):
        """Test barcodes without reads get no call."""
        calls = call_single_cell([cell], barcodes={'AAAA', 'GGGG', 'NOTSEEN'})
        assert [c.barcode for c in calls] == ['AAAA']

    def test_tie_goes_to_smallest_allele(self, cell):
        """Test equal support is resolved lexicographically."""
        calls = {c.barcode: c for c in call_single_cell([cell])}
        assert calls['TTTT'].allele == 'A'
        assert calls['TTTT'].fraction == 0.5

    def test_allele_table(self, cell):
        """Test every allele is listed with its percentage."""
        rows = allele_table([cell], barcodes={'AAAA'})
        assert [(r.allele, r.allele_count, r.pct) for r in rows] == [('A', 3, 75.0), ('G', 1, 25.0)]


class TestFindVariants:
    """Test bulk discovery over a BAM."""

    def test_discovery(self, variant_bam):
        """Test the variant position is reported with its frequency."""
        df = find_variants(variant_bam, VariantConfig(min_depth=10))
        assert list(df.columns) == VARIANT_COLUMNS
        assert len(df) == 1
        row = df.iloc[0]
        assert (row['seqname'], row['pos'], row['alt']) == (REF_NAME, 21, 'C')
        assert (row['depth'], row['alt_count']) == (10, 4)
        assert row['freq'] == pytest.approx(0.4)

    def test_without_frequency_filter(self, variant_bam):
        """Test every position over the depth floor is returned unfiltered."""
        df = find_variants(variant_bam, VariantConfig(min_depth=10), apply_frequency_filter=False)
        assert len(df) == 50

    def test_depth_floor(self, variant_bam):
        """Test nothing passes a depth floor above the coverage."""
        df = find_variants(variant_bam, VariantConfig(min_depth=11))
        assert df.empty
        assert list(df.columns) == VARIANT_COLUMNS

    def test_reference_and_regions(self, variant_bam, reference_fasta):
        """Test reference alleles and region labels."""
        regions = RegionIndex([Region(REF_NAME, 10, 30, 'GENE1')])
        df = find_variants(variant_bam, VariantConfig(min_depth=10), reference=reference_fasta, regions=regions)
        row = df.iloc[0]
        assert row['ref'] == 'A'
        assert row['region'] == 'GENE1'

    @pytest.mark.parametrize("threads", [1, 2])
    def test_subset_reference(self, variant_bam, tmp_path, threads):
        """Test a FASTA lacking the BAM's contig still reports its variants."""
        path = tmp_path / "chr19.fa"
        path.write_text(">chr19\nACGTACGTACGTACGTACGT\n")
        pysam.faidx(str(path))
        df = find_variants(variant_bam, VariantConfig(min_depth=10), reference=path, threads=threads)
        assert len(df) == 1
        row = df.iloc[0]
        assert (row['pos'], row['ref'], row['alt']) == (21, 'A', 'C')
        assert pd.isna(row['homopolymer'])

    def test_stats(self, variant_bam):
        """Test alignment counters are filled in for the caller."""
        stats = PileupStats()
        find_variants(variant_bam, VariantConfig(min_depth=10), stats=stats)
        assert stats.alignments == 10
        assert stats.record_errors == 0
        assert stats.failed_regions == 0

    def test_annotated_only(self, variant_bam):
        """Test scanning is limited to annotated regions."""
        regions = RegionIndex([Region(REF_NAME, 30, 40, 'GENE2')])
        config = VariantConfig(min_depth=10, annotated_only=True)
        assert find_variants(variant_bam, config, regions=regions).empty

    def test_annotated_only_needs_regions(self, variant_bam):
        """Test annotated_only without regions is a configuration error."""
        with pytest.raises(ConfigError):
            find_variants(variant_bam, VariantConfig(annotated_only=True))

    def test_missing_reference(self, variant_bam, tmp_path):
        """Test an unreadable reference is a resource error."""
        with pytest.raises(ResourceError):
            find_variants(variant_bam, VariantConfig(min_depth=10), reference=tmp_path / "missing.fa")

    def test_parallel(self, variant_bam):
        """Test worker processes give the same result."""
        config = VariantConfig(min_depth=10, window_size=10)
        inline = find_variants(variant_bam, config, threads=1)
        parallel = find_variants(variant_bam, config, threads=2)
        assert inline.equals(parallel)


class TestScMutations:
    """Test single-cell calls over a BAM."""

    def test_calls(self, variant_bam):
        """Test each cell gets its dominant allele at the requested position."""
        calls, alleles = sc_mutations(variant_bam, [(REF_NAME, 21)])
        assert list(calls.columns) == SINGLE_CELL_COLUMNS
        assert list(alleles.columns) == ALLELE_COLUMNS
        assert list(calls['barcode']) == ['AAAAAAAAAAAAAAAA', 'CCCCCCCCCCCCCCCC']
        assert list(calls['allele']) == ['A', 'A']
        assert list(calls['fraction']) == [0.6, 0.6]
        assert len(alleles) == 4

    def test_barcode_subset(self, variant_bam):
        """Test only requested barcodes are reported."""
        calls, _ = sc_mutations(variant_bam, [(REF_NAME, 21)], barcodes=['CCCCCCCCCCCCCCCC', 'GGGGGGGGGGGGGGGG'])
        assert list(calls['barcode']) == ['CCCCCCCCCCCCCCCC']

    def test_uncovered_position(self, variant_bam):
        """Test positions without reads give no calls."""
        calls, _ = sc_mutations(variant_bam, [(REF_NAME, 500)])
        assert calls.empty


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
