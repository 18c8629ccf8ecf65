"""Shared fixtures: synthetic reads, FASTQ files and indexed BAMs."""

from pathlib import Path

import pysam
import pytest

PRIMER = "CTACACGACGCTCTTCCGATCT"
POLY_T = "TTTTTTTTT"
BARCODE = "AAACCCAAGAAACACT"
OTHER_BARCODE = "TTTGTCATCTGCTTGC"
UMI = "GATCGATCGATC"
CDNA = "GGCATCAGCGTACGATCGGACTAGCATGCAGGACC"

REF_NAME = "chr1"
REF_SEQ = "ACGT" * 250


def build_read(barcode=BARCODE, umi=UMI, cdna=CDNA, poly_t=POLY_T, prefix=""):
    """Read laid out as primer, barcode, UMI, poly-T, cDNA."""
    return prefix + PRIMER + barcode + umi + poly_t + cdna


def write_fastq(path: Path, records):
    """Write (read_id, sequence[, quality]) tuples as FASTQ."""
    with open(path, 'w') as f:
        for record in records:
            read_id, seq = record[0], record[1]
            qual = record[2] if len(record) > 2 else 'I' * len(seq)
            f.write(f"@{read_id}\n{seq}\n+\n{qual}\n")
    return path


def write_allow_list(path: Path, barcodes):
    path.write_text('\n'.join(barcodes) + '\n')
    return path


def make_alignment(name, start, seq=None, cigar=None, barcode=None, flag=0, mapq=60, length=20,
                   no_seq=False):
    """
    Fields of one alignment against REF_SEQ.

    seq defaults to the reference at [start, start + length). With
    no_seq the record keeps its CIGAR but is written with SEQ "*".
    """
    if seq is None:
        seq = REF_SEQ[start:start + length]
    if cigar is None:
        cigar = [(0, len(seq))]
    return {
        'name': name,
        'start': start,
        'seq': None if no_seq else seq,
        'cigar': cigar,
        'barcode': barcode,
        'flag': flag,
        'mapq': mapq,
    }


def with_substitution(seq: str, offset: int, base: str) -> str:
    return seq[:offset] + base + seq[offset + 1:]


def write_bam(path: Path, alignments, index: bool = True):
    """Write alignments (see make_alignment) to a coordinate-sorted BAM."""
    header = {
        'HD': {'VN': '1.6', 'SO': 'coordinate'},
        'SQ': [{'SN': REF_NAME, 'LN': len(REF_SEQ)}],
    }
    with pysam.AlignmentFile(str(path), 'wb', header=header) as out:
        for fields in sorted(alignments, key=lambda a: a['start']):
            a = pysam.AlignedSegment(out.header)
            a.query_name = fields['name']
            if fields['seq'] is not None:
                a.query_sequence = fields['seq']
            a.flag = fields['flag']
            a.reference_id = 0
            a.reference_start = fields['start']
            a.mapping_quality = fields['mapq']
            a.cigartuples = fields['cigar']
            if fields['seq'] is not None:
                a.query_qualities = pysam.qualitystring_to_array('I' * len(fields['seq']))
            if fields['barcode'] is not None:
                a.set_tag('CB', fields['barcode'])
            out.write(a)
    if index:
        pysam.index(str(path))
    return path


@pytest.fixture
def reference_fasta(tmp_path):
    path = tmp_path / "ref.fa"
    lines = [REF_SEQ[i:i + 60] for i in range(0, len(REF_SEQ), 60)]
    path.write_text(f">{REF_NAME}\n" + '\n'.join(lines) + '\n')
    pysam.faidx(str(path))
    return path


@pytest.fixture
def variant_bam(tmp_path):
    """
    Ten reads covering chr1:1-50; four of them carry C instead of A at
    position 21, split across two cells.
    """
    alignments = []
    for i in range(10):
        seq = REF_SEQ[0:50]
        if i < 4:
            seq = with_substitution(seq, 20, 'C')
        barcode = 'AAAAAAAAAAAAAAAA' if i % 2 == 0 else 'CCCCCCCCCCCCCCCC'
        alignments.append(make_alignment(f"r{i}", 0, seq=seq, barcode=barcode))
    return write_bam(tmp_path / "variants.bam", alignments)
