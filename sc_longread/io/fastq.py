"""
FASTQ reading and writing.

Author: Kevin R. Roy
"""

from pathlib import Path
from typing import Iterable, Iterator, List
import gzip
import logging

from ..core.models import AnnotatedRead, RawRead
from ..errors import ResourceError

logger = logging.getLogger(__name__)


def _opener(path: Path):
    return gzip.open if str(path).endswith('.gz') else open


class FastqReader:
    """
    Iterate over FASTQ records, skipping malformed ones.

    Malformed records (bad header, missing '+' line, sequence/quality
    length mismatch, truncated record) are logged and counted in
    `errors`; iteration continues with the next record.

    Example:
        >>> reader = FastqReader(Path('reads.fastq.gz'))
        >>> for read in reader:
        ...     process(read)
        >>> print(f"{reader.errors} malformed records")
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.errors = 0
        self.records = 0

    def check(self):
        """
        Make sure the file can be opened and read.

        Raises:
            ResourceError: If it cannot
        """
        try:
            with _opener(self.path)(self.path, 'rb') as f:
                f.read(1)
        except (OSError, EOFError) as e:
            raise ResourceError(f"Could not open {self.path}: {e}")

    def __iter__(self) -> Iterator[RawRead]:
        try:
            handle = _opener(self.path)(self.path, 'rt')
        except OSError as e:
            raise ResourceError(f"Could not open {self.path}: {e}")

        with handle as f:
            line_number = 0
            while True:
                header = f.readline()
                line_number += 1
                if not header:
                    break
                header = header.rstrip('\r\n')
                if not header:
                    continue
                if not header.startswith('@'):
                    self._malformed(line_number, "expected '@' header line")
                    continue

                seq = f.readline().rstrip('\r\n')
                plus = f.readline().rstrip('\r\n')
                qual = f.readline().rstrip('\r\n')
                line_number += 3

                if not plus.startswith('+'):
                    self._malformed(line_number, f"record {header[1:]} has no '+' separator")
                    continue
                if len(seq) != len(qual):
                    self._malformed(line_number, f"record {header[1:]} sequence/quality length mismatch")
                    continue

                read_id, _, comment = header[1:].partition(' ')
                self.records += 1
                yield RawRead(
                    read_id=read_id,
                    sequence=seq,
                    quality=qual,
                    comment=comment or None,
                )

    def _malformed(self, line_number: int, reason: str):
        self.errors += 1
        logger.warning(f"{self.path.name}:{line_number}: skipping malformed FASTQ record ({reason})")


def read_batches(reads: Iterable[RawRead], batch_size: int) -> Iterator[List[RawRead]]:
    """Group reads into lists of at most batch_size."""
    batch = []
    for read in reads:
        batch.append(read)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


class FastqWriter:
    """Write annotated reads to plain or gzipped FASTQ."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.written = 0
        self._handle = None

    def __enter__(self) -> 'FastqWriter':
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = _opener(self.path)(self.path, 'wt')
        return self

    def __exit__(self, *exc):
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def write(self, read: AnnotatedRead):
        self._handle.write(read.to_fastq())
        self.written += 1

    def write_all(self, reads: Iterable[AnnotatedRead]):
        for read in reads:
            self.write(read)
