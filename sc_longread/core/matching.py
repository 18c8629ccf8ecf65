"""
Protocol template matching for long reads.

Locates the primer, barcode, UMI and poly-tail segments of a template
inside a noisy read:

1. The longest literal segment is used as the anchor and searched for
   anywhere in the read with edlib infix alignment.
2. From every best-scoring anchor location the remaining segments are
   placed outward in template order. Placeholders (BC, UMI) are taken
   at their exact offset and length; other literals are aligned in a
   short window next to the current cursor.
3. The candidate with the lowest total edit distance wins, ties going
   to the leftmost anchor.

Author: Kevin R. Roy
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union
import logging

import edlib

from ..config import ProtocolTemplate, Segment
from ..utils.sequence import reverse_complement
from .models import MatchFailure, MatchResult, RawRead, SegmentMatch

logger = logging.getLogger(__name__)

# How far a read got before failing; used to report the most informative reason
_FAILURE_RANK = {
    MatchFailure.READ_TOO_SHORT: 0,
    MatchFailure.NO_ANCHOR_FOUND: 1,
    MatchFailure.SEGMENT_ORDER_VIOLATION: 2,
    MatchFailure.EDIT_BUDGET_EXCEEDED: 3,
}


@dataclass
class _Placement:
    """A complete candidate placement of every segment."""
    segments: List[SegmentMatch]
    edit_distance: int
    anchor_start: int


def find_all_locations(
    query: str,
    target: str,
    max_distance: int,
) -> Tuple[int, List[Tuple[int, int]]]:
    """
    Find the best infix alignments of query inside target.

    Args:
        query: Literal sequence to search for
        target: Sequence to search in
        max_distance: Maximum edit distance allowed

    Returns:
        Tuple of (edit_distance, [(start, end_exclusive), ...]) sorted by
        start; edit_distance is -1 and the list empty if nothing is within
        max_distance.
    """
    if not query or not target:
        return -1, []

    result = edlib.align(query, target, mode='HW', task='locations', k=max_distance)
    distance = result['editDistance']
    # edlib occasionally reports a hit above k
    if distance == -1 or distance > max_distance:
        return -1, []

    locations = sorted({
        (start, end + 1) for start, end in result['locations']
        if start is not None and end is not None
    })
    return distance, locations


class PatternMatcher:
    """
    Match reads against a protocol template.

    The matcher holds no per-read state, so one instance can be shared by
    any number of workers.

    Example:
        >>> matcher = PatternMatcher(ProtocolTemplate.default(), max_edit=2)
        >>> result = matcher.match(read)
        >>> if result.is_match:
        ...     barcode = result.extract('BC')
    """

    def __init__(
        self,
        template: ProtocolTemplate,
        max_edit: int = 2,
        both_strands: bool = True,
    ):
        self.template = template
        self.max_edit = max_edit
        self.both_strands = both_strands

        # Longest literal is the anchor, first one wins on equal length
        literals = [i for i, s in enumerate(template.segments) if not s.is_variable]
        self.anchor_index = max(literals, key=lambda i: (template.segments[i].length, -i))

    @property
    def anchor(self) -> Segment:
        return self.template.segments[self.anchor_index]

    def budget(self, segment: Segment) -> int:
        """Edit budget of a literal segment."""
        return segment.max_edit if segment.max_edit is not None else self.max_edit

    def match(self, read: RawRead) -> MatchResult:
        """
        Match one read against the template.

        Args:
            read: Raw read to match

        Returns:
            MatchResult; check `is_match`, otherwise `failure` gives the reason
        """
        if len(read.sequence) < self.template.min_length:
            return MatchResult(read_id=read.read_id, failure=MatchFailure.READ_TOO_SHORT)

        sequence = read.sequence.upper()
        orientations = [('+', sequence, read.quality)]
        if self.both_strands:
            quality = read.quality[::-1] if read.quality is not None else None
            orientations.append(('-', reverse_complement(sequence), quality))

        best = None
        best_failure = None
        for strand, oriented, quality in orientations:
            outcome = self._match_oriented(oriented)
            if isinstance(outcome, MatchFailure):
                if best_failure is None or _FAILURE_RANK[outcome] > _FAILURE_RANK[best_failure]:
                    best_failure = outcome
                continue
            # Forward strand wins ties
            if best is None or outcome.edit_distance < best[0].edit_distance:
                best = (outcome, strand, oriented, quality)
            if best[0].edit_distance == 0:
                break

        if best is None:
            return MatchResult(read_id=read.read_id, failure=best_failure)

        placement, strand, oriented, quality = best
        return MatchResult(
            read_id=read.read_id,
            segments=placement.segments,
            edit_distance=placement.edit_distance,
            strand=strand,
            sequence=oriented,
            quality=quality,
        )

    def _match_oriented(self, sequence: str) -> Union[_Placement, MatchFailure]:
        """Match the template against one orientation of the read."""
        anchor = self.anchor
        distance, locations = find_all_locations(anchor.sequence, sequence, self.budget(anchor))
        if distance < 0:
            return MatchFailure.NO_ANCHOR_FOUND

        best = None
        best_failure = None
        for start, end in locations:
            outcome = self._expand(sequence, start, end, distance)
            if isinstance(outcome, MatchFailure):
                if best_failure is None or _FAILURE_RANK[outcome] > _FAILURE_RANK[best_failure]:
                    best_failure = outcome
                continue
            # locations are sorted by start, so strict < keeps the leftmost
            if best is None or outcome.edit_distance < best.edit_distance:
                best = outcome

        return best if best is not None else best_failure

    def _expand(
        self,
        sequence: str,
        anchor_start: int,
        anchor_end: int,
        anchor_distance: int,
    ) -> Union[_Placement, MatchFailure]:
        """Place the remaining segments outward from an anchor hit."""
        segments = self.template.segments
        placed = {
            self.anchor_index: SegmentMatch(self.anchor.name, anchor_start, anchor_end, anchor_distance)
        }
        total = anchor_distance

        # Upstream of the anchor, walking right to left
        cursor = anchor_start
        for i in range(self.anchor_index - 1, -1, -1):
            seg = segments[i]
            if seg.is_variable:
                start = cursor - seg.length
                if start < 0:
                    return MatchFailure.SEGMENT_ORDER_VIOLATION
                placed[i] = SegmentMatch(seg.name, start, cursor)
            else:
                hit = self._place_literal(sequence, seg, cursor, upstream=True)
                if isinstance(hit, MatchFailure):
                    return hit
                placed[i] = hit
                total += hit.edit_distance
            cursor = placed[i].start

        # Downstream of the anchor, walking left to right
        cursor = anchor_end
        for i in range(self.anchor_index + 1, len(segments)):
            seg = segments[i]
            if seg.is_variable:
                end = cursor + seg.length
                if end > len(sequence):
                    return MatchFailure.SEGMENT_ORDER_VIOLATION
                placed[i] = SegmentMatch(seg.name, cursor, end)
            else:
                hit = self._place_literal(sequence, seg, cursor, upstream=False)
                if isinstance(hit, MatchFailure):
                    return hit
                placed[i] = hit
                total += hit.edit_distance
            cursor = placed[i].end

        return _Placement(
            segments=[placed[i] for i in range(len(segments))],
            edit_distance=total,
            anchor_start=anchor_start,
        )

    def _place_literal(
        self,
        sequence: str,
        segment: Segment,
        cursor: int,
        upstream: bool,
    ) -> Union[SegmentMatch, MatchFailure]:
        """
        Align a non-anchor literal in the window adjoining the cursor.

        Bases left between the cursor and the aligned literal are unexplained
        insertions and are added to the literal's edit distance.
        """
        budget = self.budget(segment)
        span = segment.length + budget
        if upstream:
            window_start = max(0, cursor - span)
            window = sequence[window_start:cursor]
        else:
            window_start = cursor
            window = sequence[cursor:cursor + span]

        if not window:
            return MatchFailure.SEGMENT_ORDER_VIOLATION

        distance, locations = find_all_locations(segment.sequence, window, budget)
        if distance < 0:
            return MatchFailure.EDIT_BUDGET_EXCEEDED

        best = None
        for start, end in locations:
            gap = len(window) - end if upstream else start
            cost = distance + gap
            if cost > budget:
                continue
            # Prefer the hit closest to the cursor
            key = (cost, gap)
            if best is None or key < best[0]:
                best = (key, start, end)

        if best is None:
            return MatchFailure.EDIT_BUDGET_EXCEEDED

        (cost, _), start, end = best
        return SegmentMatch(segment.name, window_start + start, window_start + end, cost)
