"""
Demultiplexing pipeline orchestration for sc-longread.

Author: Kevin R. Roy
"""

from collections import deque
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple
import logging

from .config import DemultiplexConfig
from .core.annotation import ReadAnnotator
from .core.correction import BarcodeCorrector, load_allow_list
from .core.matching import PatternMatcher
from .core.models import AnnotatedRead, BarcodeStats, RawRead
from .errors import ConfigError
from .io.fastq import FastqReader, FastqWriter, read_batches
from .io.output import generate_summary_report, write_barcode_stats

logger = logging.getLogger(__name__)

# Per-process annotator, installed by _init_worker
_ANNOTATOR: Optional[ReadAnnotator] = None


def build_annotator(
    config: DemultiplexConfig,
    allow_list: Optional[FrozenSet[str]] = None,
) -> ReadAnnotator:
    """Create the matcher/corrector/annotator stack for a configuration."""
    matcher = PatternMatcher(
        config.template,
        max_edit=config.max_flank_edit,
        both_strands=config.both_strands,
    )
    corrector = BarcodeCorrector(allow_list, max_distance=config.max_bc_edit, metric=config.bc_metric)
    return ReadAnnotator(matcher, corrector, unmatched=config.unmatched)


def _init_worker(config: DemultiplexConfig, allow_list: Optional[FrozenSet[str]]):
    global _ANNOTATOR
    _ANNOTATOR = build_annotator(config, allow_list)


def _annotate_worker(reads: List[RawRead]) -> Tuple[List[AnnotatedRead], BarcodeStats]:
    """Module-level worker so batches can be sent to ProcessPoolExecutor."""
    return _ANNOTATOR.annotate_batch(reads)


@dataclass
class DemultiplexResult:
    """Outcome of a demultiplexing run."""
    stats: BarcodeStats
    output_fastq: Path
    reads_written: int = 0
    failed_batches: int = 0
    reports: List[Path] = field(default_factory=list)

    def print_summary(self):
        stats = self.stats
        print("\n" + "=" * 60)
        print("=== Demultiplexing Summary ===")
        print("=" * 60)
        print(f"Total reads: {stats.total_reads:,}")
        print(f"  Exact barcodes: {stats.exact:,}")
        print(f"  Corrected barcodes: {stats.corrected:,}")
        print(f"  Unmatched: {stats.unmatched:,}")
        for reason, count in stats.failure_reasons.most_common():
            print(f"    {reason}: {count:,}")
        print(f"Reverse strand: {stats.reverse_strand:,}")
        print(f"Malformed records skipped: {stats.record_errors:,}")
        if self.failed_batches:
            print(f"Failed batches: {self.failed_batches}")
        print(f"Unique barcodes: {len(stats.barcode_counts):,}")
        print(f"Reads written: {self.reads_written:,} -> {self.output_fastq}")
        print()


class DemultiplexPipeline:
    """
    Extract barcodes and UMIs from long reads and write annotated FASTQ.

    Reads are streamed in batches; with threads > 1 batches are annotated
    in worker processes and written back in input order.

    Example:
        >>> pipeline = DemultiplexPipeline(DemultiplexConfig(allow_list=Path('737K.txt')), threads=8)
        >>> result = pipeline.run(Path('reads.fastq.gz'), Path('out/matched.fastq.gz'))
        >>> result.stats.matched
    """

    def __init__(self, config: DemultiplexConfig, threads: int = 1):
        self.config = config
        self.threads = max(1, threads)
        self.allow_list: Optional[FrozenSet[str]] = None
        self._prepare()

    def _prepare(self):
        """Load and check the allow-list before any reads are touched."""
        self.config.template.validate()

        if self.config.allow_list is None:
            logger.info("No allow-list given; barcodes are accepted as extracted")
            return

        self.allow_list = frozenset(load_allow_list(self.config.allow_list))
        allow_length = len(next(iter(self.allow_list)))
        if allow_length != self.config.template.barcode_length:
            raise ConfigError(
                f"Allow-list barcodes are {allow_length} bp but the template's BC segment "
                f"is {self.config.template.barcode_length} bp"
            )
        logger.info(f"Loaded {len(self.allow_list):,} allowed barcodes from {self.config.allow_list}")

    def run(
        self,
        input_fastq: Path,
        output_fastq: Path,
        report_dir: Optional[Path] = None,
    ) -> DemultiplexResult:
        """
        Demultiplex one FASTQ file.

        Args:
            input_fastq: Input reads (.fastq or .fastq.gz)
            output_fastq: Annotated reads (.gz to compress)
            report_dir: Directory for summary tables and report
                (defaults to the output FASTQ's directory)

        Returns:
            DemultiplexResult with merged statistics

        Raises:
            ResourceError: If the input cannot be read; the output is not
                created in that case
        """
        output_fastq = Path(output_fastq)
        report_dir = Path(report_dir) if report_dir is not None else output_fastq.parent

        reader = FastqReader(input_fastq)
        reader.check()
        batches = read_batches(reader, self.config.batch_size)

        logger.info(f"Demultiplexing {input_fastq} with {self.threads} worker(s)")
        with FastqWriter(output_fastq) as writer:
            if self.threads == 1:
                stats, failed = self._run_inline(batches, writer)
            else:
                stats, failed = self._run_parallel(batches, writer)
            written = writer.written

        stats.record_errors += reader.errors

        result = DemultiplexResult(
            stats=stats,
            output_fastq=output_fastq,
            reads_written=written,
            failed_batches=failed,
        )
        result.reports = self._write_reports(stats, report_dir)

        logger.info(
            f"Processed {stats.total_reads:,} reads: {stats.matched:,} matched, "
            f"{stats.unmatched:,} unmatched, {stats.record_errors:,} malformed"
        )
        return result

    def _run_inline(self, batches, writer: FastqWriter) -> Tuple[BarcodeStats, int]:
        annotator = build_annotator(self.config, self.allow_list)
        stats = BarcodeStats()
        failed = 0
        for batch in batches:
            try:
                records, batch_stats = annotator.annotate_batch(batch)
            except Exception as e:
                failed += 1
                stats.record_errors += len(batch)
                logger.error(f"Batch starting at read {batch[0].read_id} failed: {e}")
                continue
            writer.write_all(records)
            stats = stats.merge(batch_stats)

        if failed:
            logger.warning(f"{failed} batch(es) failed; their reads were counted as record errors")
        return stats, failed

    def _run_parallel(self, batches, writer: FastqWriter) -> Tuple[BarcodeStats, int]:
        stats = BarcodeStats()
        failed = 0
        # Bound in-flight batches so memory stays flat on large inputs
        max_pending = self.threads * 2
        pending = deque()

        def collect():
            nonlocal stats, failed
            batch, future = pending.popleft()
            try:
                records, batch_stats = future.result()
            except Exception as e:
                failed += 1
                stats.record_errors += len(batch)
                logger.error(f"Batch starting at read {batch[0].read_id} failed: {e}")
                return
            writer.write_all(records)
            stats = stats.merge(batch_stats)

        with ProcessPoolExecutor(
            max_workers=self.threads,
            initializer=_init_worker,
            initargs=(self.config, self.allow_list),
        ) as executor:
            for batch in batches:
                pending.append((batch, executor.submit(_annotate_worker, batch)))
                if len(pending) >= max_pending:
                    collect()
            while pending:
                collect()

        if failed:
            logger.warning(f"{failed} batch(es) failed; their reads were counted as record errors")
        return stats, failed

    def _write_reports(self, stats: BarcodeStats, report_dir: Path) -> List[Path]:
        report_dir.mkdir(parents=True, exist_ok=True)
        written = write_barcode_stats(
            stats,
            report_dir / "demultiplex_summary.tsv",
            report_dir / "barcode_counts.tsv",
        )
        written.append(generate_summary_report(stats, report_dir / "summary_report.md"))
        return written
