"""
Command-line interface for sc-longread.

Author: Kevin R. Roy
"""

import dataclasses
import logging
import sys
from pathlib import Path

import click

from . import __version__
from .config import PipelineConfig
from .errors import ConfigError, ResourceError


def _setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def _load_config(config) -> PipelineConfig:
    if config is None:
        return PipelineConfig()
    return PipelineConfig.from_yaml(Path(config))


def _override(section, **values):
    """Apply command-line values that were actually given."""
    given = {k: v for k, v in values.items() if v is not None}
    return dataclasses.replace(section, **given) if given else section


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _report_pileup(stats):
    """Echo alignment records and regions the pileup could not use."""
    if stats.missing_sequence:
        click.echo(f"Skipped {stats.missing_sequence} alignments without sequence or CIGAR")
    if stats.failed_regions:
        click.echo(f"Warning: {stats.failed_regions} regions failed and were skipped", err=True)


@click.group()
@click.version_option(version=__version__)
def cli():
    """sc-longread: barcode demultiplexing and variant analysis for single-cell long reads."""
    pass


@cli.command()
@click.argument('fastq', type=click.Path(exists=True))
@click.option('--output', '-o', type=click.Path(), required=True,
              help='Output FASTQ for annotated reads (.gz to compress)')
@click.option('--config', '-c', type=click.Path(exists=True),
              help='YAML configuration file')
@click.option('--allow-list', '-b', type=click.Path(exists=True),
              help='Barcode allow-list (one per line, .gz accepted)')
@click.option('--max-bc-edit', type=int, help='Barcode correction budget (default: 2)')
@click.option('--max-flank-edit', type=int, help='Fixed segment edit budget (default: 2)')
@click.option('--bc-metric', type=click.Choice(['hamming', 'edit']),
              help='Distance used for barcode correction (default: hamming)')
@click.option('--single-strand', is_flag=True, default=False,
              help='Do not search the reverse complement of reads')
@click.option('--emit-unmatched', is_flag=True, default=False,
              help='Write unmatched reads to the output unchanged')
@click.option('--report-dir', type=click.Path(),
              help='Directory for summary tables (default: next to the output FASTQ)')
@click.option('--threads', '-t', type=int, help='Number of worker processes (default: 4)')
def demultiplex(fastq, output, config, allow_list, max_bc_edit, max_flank_edit, bc_metric,
                single_strand, emit_unmatched, report_dir, threads):
    """
    Extract cell barcodes and UMIs from long reads.

    Annotated reads are named BC_UMI#READID and carry CB/UB tags in the
    header comment.

    \b
    Example:
      sclr demultiplex reads.fastq.gz -b 3M-february-2018.txt.gz -o out/matched.fastq.gz
    """
    from .pipeline import DemultiplexPipeline

    _setup_logging()

    try:
        cfg = _load_config(config)
        demux = _override(
            cfg.demultiplex,
            allow_list=Path(allow_list) if allow_list else None,
            max_bc_edit=max_bc_edit,
            max_flank_edit=max_flank_edit,
            bc_metric=bc_metric,
            both_strands=False if single_strand else None,
            unmatched='emit' if emit_unmatched else None,
        )
        pipeline = DemultiplexPipeline(demux, threads=threads or cfg.threads)
        result = pipeline.run(Path(fastq), Path(output), Path(report_dir) if report_dir else None)
    except (ConfigError, ResourceError) as e:
        _fail(str(e))

    result.print_summary()


@cli.command('find-variants')
@click.argument('bam', type=click.Path(exists=True))
@click.option('--output', '-o', type=click.Path(), required=True,
              help='Output TSV of candidate variants')
@click.option('--config', '-c', type=click.Path(exists=True),
              help='YAML configuration file')
@click.option('--reference', '-r', type=click.Path(exists=True),
              help='Indexed reference FASTA (reference alleles and homopolymer flags)')
@click.option('--bed', type=click.Path(exists=True),
              help='Annotated regions (BED) used to label variants')
@click.option('--positions', '-p', type=click.Path(exists=True),
              help='Restrict to candidate positions (TSV: seqname, pos)')
@click.option('--annotated-only', is_flag=True, default=False,
              help='Only scan positions inside the BED regions')
@click.option('--min-depth', type=int, help='Minimum total depth (default: 100)')
@click.option('--min-freq', type=float, help='Lower frequency bound, exclusive (default: 0.2)')
@click.option('--max-freq', type=float, help='Upper frequency bound, exclusive (default: 0.8)')
@click.option('--no-freq-filter', is_flag=True, default=False,
              help='Report every position passing the depth floor')
@click.option('--indel', is_flag=True, default=False, help='Tabulate insertions and deletions')
@click.option('--min-mapq', type=int, help='Minimum mapping quality (default: 0)')
@click.option('--threads', '-t', type=int, help='Number of worker processes (default: 4)')
def find_variants(bam, output, config, reference, bed, positions, annotated_only, min_depth,
                  min_freq, max_freq, no_freq_filter, indel, min_mapq, threads):
    """
    Discover candidate variants from pooled reads of all cells.

    \b
    Example:
      sclr find-variants aligned.bam -r genome.fa --bed genes.bed --min-depth 2000 -o variants.tsv
    """
    from .io.output import write_table
    from .io.regions import load_bed, load_positions
    from .variants.calling import find_variants as run_find_variants
    from .variants.pileup import PileupStats

    _setup_logging()
    stats = PileupStats()

    try:
        cfg = _load_config(config)
        variant_cfg = _override(
            cfg.variants,
            min_depth=min_depth,
            min_freq=min_freq,
            max_freq=max_freq,
            indel=True if indel else None,
            annotated_only=True if annotated_only else None,
            min_mapq=min_mapq,
        )
        regions = load_bed(Path(bed)) if bed else None
        candidate_positions = load_positions(Path(positions)) if positions else None

        df = run_find_variants(
            Path(bam),
            config=variant_cfg,
            reference=Path(reference) if reference else None,
            regions=regions,
            positions=candidate_positions,
            threads=threads or cfg.threads,
            apply_frequency_filter=not no_freq_filter,
            stats=stats,
        )
    except (ConfigError, ResourceError) as e:
        _fail(str(e))

    write_table(df, Path(output))
    click.echo(f"Found {len(df)} candidate variants")
    _report_pileup(stats)
    click.echo(f"Results written to: {output}")


@cli.command('sc-mutations')
@click.argument('bam', type=click.Path(exists=True))
@click.option('--positions', '-p', type=click.Path(exists=True), required=True,
              help='Positions to call (TSV: seqname, pos)')
@click.option('--output', '-o', type=click.Path(), required=True,
              help='Output TSV of per-cell dominant alleles')
@click.option('--barcodes', '-b', type=click.Path(exists=True),
              help='Barcodes to report (one per line); default all')
@click.option('--alleles', type=click.Path(),
              help='Also write every allele per cell to this TSV')
@click.option('--config', '-c', type=click.Path(exists=True),
              help='YAML configuration file')
@click.option('--indel', is_flag=True, default=False, help='Tabulate insertions and deletions')
@click.option('--min-mapq', type=int, help='Minimum mapping quality (default: 0)')
@click.option('--barcode-tag', type=str, help='Alignment tag with the cell barcode (default: CB)')
@click.option('--threads', '-t', type=int, help='Number of worker processes (default: 4)')
def sc_mutations(bam, positions, output, barcodes, alleles, config, indel, min_mapq,
                 barcode_tag, threads):
    """
    Call the dominant allele of each cell at known positions.

    \b
    Example:
      sclr sc-mutations aligned.bam -p variants.tsv -b cells.txt -o cell_calls.tsv
    """
    from .io.output import write_table
    from .io.regions import load_barcode_list, load_positions
    from .variants.calling import sc_mutations as run_sc_mutations
    from .variants.pileup import PileupStats

    _setup_logging()
    stats = PileupStats()

    try:
        cfg = _load_config(config)
        variant_cfg = _override(cfg.variants, indel=True if indel else None, min_mapq=min_mapq, barcode_tag=barcode_tag)
        calls, allele_rows = run_sc_mutations(
            Path(bam),
            load_positions(Path(positions)),
            barcodes=load_barcode_list(Path(barcodes)) if barcodes else None,
            config=variant_cfg,
            threads=threads or cfg.threads,
            stats=stats,
        )
    except (ConfigError, ResourceError) as e:
        _fail(str(e))

    write_table(calls, Path(output))
    if alleles:
        write_table(allele_rows, Path(alleles))
    click.echo(f"Called {len(calls)} cell/position pairs")
    _report_pileup(stats)
    click.echo(f"Results written to: {output}")


@cli.command()
@click.option('--counts', type=click.Path(exists=True), required=True,
              help='Transcript x cell count matrix (TSV, first column transcript id)')
@click.option('--transcripts', type=click.Path(exists=True), required=True,
              help='Isoform structures (TSV: transcript_id, gene_id, exons)')
@click.option('--labels', type=click.Path(exists=True),
              help='Cell to label map (TSV: cell, label); default each cell is its own label')
@click.option('--min-count', type=int, help='Minimum reads per label and gene (default: 15)')
@click.option('--config', '-c', type=click.Path(exists=True),
              help='YAML configuration file')
@click.option('--output', '-o', type=click.Path(), required=True,
              help='Output TSV of per-gene usage tests')
def dtu(counts, transcripts, labels, min_count, config, output):
    """
    Test for differential transcript usage between cell labels.

    \b
    Example:
      sclr dtu --counts transcript_count.tsv --transcripts isoforms.tsv --labels clusters.tsv -o dtu.tsv
    """
    from .analysis.statistics import add_adjusted_pvalues
    from .analysis.usage import (
        build_usage_table,
        load_labels,
        load_transcript_counts,
        load_transcripts,
        run_usage_test,
    )
    from .io.output import write_table

    _setup_logging()

    try:
        cfg = _load_config(config)
        usage_cfg = _override(cfg.usage, min_count=min_count)
        table = build_usage_table(
            load_transcript_counts(Path(counts)),
            load_transcripts(Path(transcripts)),
            load_labels(Path(labels)) if labels else None,
        )
    except (ConfigError, ResourceError) as e:
        _fail(str(e))

    results = add_adjusted_pvalues(run_usage_test(table, min_count=usage_cfg.min_count))
    write_table(results, Path(output))
    click.echo(f"Tested {int(results['p_value'].notna().sum())} of {len(results)} genes")
    click.echo(f"Results written to: {output}")


@cli.command()
@click.option('--output', '-o', type=click.Path(), default='sclr_config.yaml',
              help='Output config file path')
def init(output):
    """Generate a template configuration file."""
    template = '''# sc-longread Configuration Template
# Edit this file to configure your analysis

demultiplex:
  # Read layout, in order. Literal sequences are searched approximately;
  # BC and UMI are placeholders (an integer length or a run of N).
  pattern:
    primer: CTACACGACGCTCTTCCGATCT
    BC: 16
    UMI: 12
    polyT: TTTTTTTTT
  allow_list: 3M-february-2018.txt.gz   # omit to accept barcodes as extracted
  max_bc_edit: 2
  max_flank_edit: 2
  bc_metric: hamming                    # hamming or edit
  both_strands: true
  unmatched: drop                       # drop or emit
  batch_size: 10000

variants:
  min_depth: 100
  min_freq: 0.2
  max_freq: 0.8
  indel: false
  annotated_only: false
  min_mapq: 0
  barcode_tag: CB
  homopolymer_window: 3

usage:
  min_count: 15

output_dir: ./results
threads: 4
'''

    with open(output, 'w') as f:
        f.write(template)

    click.echo(f"Generated configuration template: {output}")
    click.echo("\nEdit this file and run:")
    click.echo(f"  sclr demultiplex reads.fastq.gz --config {output} -o matched.fastq.gz")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='YAML configuration file (default: 10x 3\' layout)')
def info(config):
    """Show the read layout and settings that a run would use."""
    try:
        cfg = _load_config(config)
        cfg.demultiplex.template.validate()
    except (ConfigError, ResourceError) as e:
        _fail(str(e))

    cfg.demultiplex.template.print_summary()

    demux = cfg.demultiplex
    click.echo(f"Allow-list: {demux.allow_list or 'none (pass-through)'}")
    click.echo(f"Barcode correction: {demux.bc_metric}, up to {demux.max_bc_edit} edits")
    click.echo(f"Fixed segment budget: {demux.max_flank_edit} edits")
    click.echo(f"Strands searched: {'both' if demux.both_strands else 'forward only'}")
    click.echo(f"Unmatched reads: {demux.unmatched}")


if __name__ == '__main__':
    cli()
