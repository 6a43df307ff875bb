"""Barcode correction against the inferred whitelist"""
import logging

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Iterable

import Levenshtein
import polars as pl

from quick_bc.constants import (
    STATUS_AMBIGUOUS,
    STATUS_CORRECTED,
    STATUS_EXACT,
    STATUS_UNCORRECTABLE,
    SUBSET_COLUMN,
)

logger = logging.getLogger(__name__)


def chunk_boundaries(length: int, n_chunks: int) -> list[tuple[int, int]]:
    """Split `length` positions into `n_chunks` contiguous, near equal chunks."""
    base, extra = divmod(length, n_chunks)
    boundaries = []
    start = 0
    for chunk in range(n_chunks):
        stop = start + base + (1 if chunk < extra else 0)
        boundaries.append((start, stop))
        start = stop
    return boundaries


class BarcodeIndex:
    """Finds whitelist barcodes within a Hamming distance without a full scan.

    Every barcode is cut in `max_distance + 1` chunks. Two barcodes with at
    most `max_distance` substitutions share at least one identical chunk, so
    only barcodes sharing a chunk with the query are compared.
    """

    def __init__(self, barcodes: Iterable[str], max_distance: int):
        self.max_distance = max_distance
        self.barcodes = sorted(set(barcodes))
        lengths = {len(barcode) for barcode in self.barcodes}
        if len(lengths) > 1:
            raise ValueError(f"Whitelist barcodes have different lengths: {sorted(lengths)}")
        self.barcode_length = lengths.pop() if lengths else 0
        # every barcode is a neighbour once distance reaches the length
        self.full_scan = max_distance >= self.barcode_length
        self._chunks = []
        self._index = defaultdict(list)
        if not self.full_scan:
            self._chunks = chunk_boundaries(self.barcode_length, max_distance + 1)
            for barcode in self.barcodes:
                for chunk_id, (start, stop) in enumerate(self._chunks):
                    self._index[(chunk_id, barcode[start:stop])].append(barcode)

    def candidates(self, barcode: str) -> set[str]:
        if self.full_scan:
            return set(self.barcodes)
        found = set()
        for chunk_id, (start, stop) in enumerate(self._chunks):
            found.update(self._index.get((chunk_id, barcode[start:stop]), ()))
        return found

    def neighbours(self, barcode: str) -> list[tuple[int, str]]:
        """Whitelist barcodes within the distance budget, closest first.

        Args:
            barcode (str): Query barcode

        Returns:
            list[tuple[int, str]]: (distance, barcode) sorted by distance then barcode
        """
        if len(barcode) != self.barcode_length:
            return []
        found = []
        for candidate in self.candidates(barcode):
            # pylint: disable=no-member
            distance = Levenshtein.hamming(barcode, candidate)
            if distance <= self.max_distance:
                found.append((distance, candidate))
        return sorted(found)


@dataclass(frozen=True)
class Whitelist:
    barcodes: frozenset
    threshold: int | None
    max_distance: int
    index: BarcodeIndex = field(compare=False, repr=False)

    @classmethod
    def from_subset(
        cls, barcode_subset_df: pl.DataFrame, threshold: int | None, max_distance: int
    ) -> "Whitelist":
        barcodes = frozenset(barcode_subset_df[SUBSET_COLUMN].to_list())
        return cls(
            barcodes=barcodes,
            threshold=threshold,
            max_distance=max_distance,
            index=BarcodeIndex(barcodes, max_distance),
        )

    def __contains__(self, barcode: str) -> bool:
        return barcode in self.barcodes

    def __len__(self) -> int:
        return len(self.barcodes)


def correct_barcode(raw_barcode: str, whitelist: Whitelist) -> tuple[str, str]:
    """Correct one raw barcode.

    Ambiguous and uncorrectable barcodes are returned unchanged.

    Args:
        raw_barcode (str): Barcode as read
        whitelist (Whitelist): Genuine barcodes

    Returns:
        tuple[str, str]: barcode to use, status
    """
    if raw_barcode in whitelist:
        return raw_barcode, STATUS_EXACT
    if whitelist.max_distance < 1:
        return raw_barcode, STATUS_UNCORRECTABLE
    neighbours = whitelist.index.neighbours(raw_barcode)
    if not neighbours:
        return raw_barcode, STATUS_UNCORRECTABLE
    best_distance, best_barcode = neighbours[0]
    if len(neighbours) > 1 and neighbours[1][0] == best_distance:
        return raw_barcode, STATUS_AMBIGUOUS
    return best_barcode, STATUS_CORRECTED


def correct_barcodes(
    histogram: Counter, whitelist: Whitelist
) -> tuple[dict[str, tuple[str, str]], Counter]:
    """Correct every distinct barcode of the histogram once.

    Args:
        histogram (Counter): Raw barcode counts
        whitelist (Whitelist): Genuine barcodes

    Returns:
        tuple[dict, Counter]: raw barcode -> (barcode, status) and the number
        of distinct barcodes per status
    """
    logger.info("Correcting barcodes")
    mapped_barcodes = {}
    status_counts = Counter()
    for raw_barcode in histogram:
        barcode, status = correct_barcode(raw_barcode, whitelist)
        mapped_barcodes[raw_barcode] = (barcode, status)
        status_counts[status] += 1
    logger.info(
        "Distinct barcodes: %s exact, %s corrected, %s ambiguous, %s uncorrectable",
        status_counts[STATUS_EXACT],
        status_counts[STATUS_CORRECTED],
        status_counts[STATUS_AMBIGUOUS],
        status_counts[STATUS_UNCORRECTABLE],
    )
    return mapped_barcodes, status_counts
