"""Sets of functions to extract barcodes and build the barcode histogram"""

import logging
import time

from collections import Counter
from typing import Iterable

import polars as pl
import umi_tools.whitelist_methods as whitelist_method

from quick_bc.chemistry import Chemistry
from quick_bc.constants import (
    BARCODE_COLUMN,
    COUNT_COLUMN,
    POLICY_STRICT,
    PROGRESS_EVERY,
    REFERENCE_COLUMN,
    SEGMENT_SEPARATOR,
    SUBSET_COLUMN,
    WHITELIST_KNEE,
    WHITELIST_MIN_COUNT,
    WHITELIST_TOP_N,
)
from quick_bc.errors import ConfigurationError, MalformedReadError

logger = logging.getLogger(__name__)


def extract_barcode_umi(sequence: str, chemistry: Chemistry) -> tuple[str, str]:
    """Slice the barcode and the UMI out of the barcode read.

    Segments of combinatorial barcodes are joined with a dot.

    Args:
        sequence (str): Sequence of the read holding the barcode
        chemistry (Chemistry): Barcode layout

    Raises:
        MalformedReadError: If the read is shorter than the layout

    Returns:
        tuple[str, str]: raw barcode, UMI (empty if the layout has none)
    """
    if len(sequence) < chemistry.min_read_length:
        raise MalformedReadError(
            f"Read of length {len(sequence)} is shorter than the "
            f"{chemistry.min_read_length} bases required by the barcode layout"
        )
    barcode = SEGMENT_SEPARATOR.join(
        sequence[start - 1 : stop] for start, stop in chemistry.barcode_segments
    )
    if chemistry.umi_barcode_start is None:
        return barcode, ""
    umi = sequence[chemistry.umi_barcode_start - 1 : chemistry.umi_barcode_end]
    return barcode, umi


def build_barcode_histogram(
    sequences: Iterable[str], chemistry: Chemistry, malformed_policy: str
) -> tuple[Counter, int, int]:
    """Count every raw barcode of the input. This is the first pass.

    Args:
        sequences (Iterable[str]): Barcode read sequences in input order
        chemistry (Chemistry): Barcode layout
        malformed_policy (str): skip or strict

    Raises:
        MalformedReadError: On a short read when the policy is strict

    Returns:
        tuple[Counter, int, int]: histogram, reads seen, malformed reads
    """
    histogram = Counter()
    n_malformed = 0
    n_reads = 0
    start = time.time()
    for n_reads, sequence in enumerate(sequences, start=1):
        try:
            barcode, _ = extract_barcode_umi(sequence, chemistry)
        except MalformedReadError as error:
            if malformed_policy == POLICY_STRICT:
                error.record_index = n_reads - 1
                raise
            n_malformed += 1
            continue
        histogram[barcode] += 1
        if n_reads % PROGRESS_EVERY == 0:
            logger.info(
                "Counted barcodes of %s reads in %.1f seconds", f"{n_reads:,}", time.time() - start
            )
    logger.info(
        "Found %s distinct barcodes in %s reads (%s too short)",
        f"{len(histogram):,}",
        f"{n_reads:,}",
        f"{n_malformed:,}",
    )
    return histogram, n_reads, n_malformed


def histogram_to_df(histogram: Counter) -> pl.DataFrame:
    return pl.DataFrame(
        {
            BARCODE_COLUMN: list(histogram.keys()),
            COUNT_COLUMN: list(histogram.values()),
        },
        schema={BARCODE_COLUMN: pl.String, COUNT_COLUMN: pl.UInt64},
    )


def find_knee_estimated_barcodes(barcodes_df: pl.DataFrame) -> pl.DataFrame:
    """Find the subset of barcodes by the knee method

    Args:
        barcodes_df (pl.DataFrame): barcodes to use

    Returns:
        pl.DataFrame: Final list of barcodes
    """
    raw_barcodes_df = barcodes_df.filter(
        ~pl.col(BARCODE_COLUMN).str.contains("N")
    ).sort([COUNT_COLUMN, BARCODE_COLUMN], descending=[True, False])
    if raw_barcodes_df.is_empty():
        return pl.DataFrame(schema={SUBSET_COLUMN: pl.String})
    barcode_counter = Counter()
    barcode_counter.update(dict(raw_barcodes_df.iter_rows()))
    try:
        true_barcodes = whitelist_method.getKneeEstimateDistance(
            cell_barcode_counts=barcode_counter
        )
    except ValueError as error:
        # umi_tools can't place a knee on a degenerate distribution,
        # e.g. a single distinct barcode.
        logger.warning(
            "Knee estimation failed on %s distinct barcodes: %s",
            raw_barcodes_df.shape[0],
            error,
        )
        return pl.DataFrame(schema={SUBSET_COLUMN: pl.String})
    barcode_subset = pl.DataFrame(
        {SUBSET_COLUMN: sorted(true_barcodes or [])}, schema={SUBSET_COLUMN: pl.String}
    )
    return barcode_subset


def get_abundance_threshold(
    barcodes_df: pl.DataFrame,
    method: str,
    n_barcodes: int | None = None,
    min_count: int | None = None,
) -> int | None:
    """Infer the count a barcode needs to be considered genuine.

    Args:
        barcodes_df (pl.DataFrame): Candidate barcodes with their counts
        method (str): top_n, knee or min_count
        n_barcodes (int, optional): Number of expected barcodes for top_n
        min_count (int, optional): Fixed threshold for min_count

    Raises:
        ConfigurationError: If the method misses its parameter

    Returns:
        int | None: The threshold, None if no barcode qualifies
    """
    if barcodes_df.is_empty():
        return None
    if method == WHITELIST_TOP_N:
        if not n_barcodes or n_barcodes < 1:
            raise ConfigurationError("top_n whitelist requires --expected_barcodes >= 1")
        ranked = barcodes_df.sort(
            [COUNT_COLUMN, BARCODE_COLUMN], descending=[True, False]
        )
        if n_barcodes > ranked.shape[0]:
            logger.warning(
                "Number of expected barcodes, %s, is higher than number of "
                "barcodes found %s. Using all of them",
                n_barcodes,
                ranked.shape[0],
            )
        return int(ranked[COUNT_COLUMN][min(n_barcodes, ranked.shape[0]) - 1])
    if method == WHITELIST_KNEE:
        subset = find_knee_estimated_barcodes(barcodes_df)
        if subset.is_empty():
            return None
        return int(
            barcodes_df.filter(
                pl.col(BARCODE_COLUMN).is_in(subset[SUBSET_COLUMN].implode())
            )[COUNT_COLUMN].min()
        )
    if method == WHITELIST_MIN_COUNT:
        if min_count is None or min_count < 1:
            raise ConfigurationError("min_count whitelist requires --min_count >= 1")
        return min_count
    raise ConfigurationError(f"Unknown whitelist method {method}")


def filter_by_rounds(barcodes_df: pl.DataFrame, rounds: list) -> pl.DataFrame:
    """Keep barcodes whose every segment is in the list of its round.

    Args:
        barcodes_df (pl.DataFrame): Barcodes with segments joined by a dot
        rounds (list): One set of barcodes per segment, in barcode order

    Returns:
        pl.DataFrame: The barcodes passing every round
    """
    segments = pl.col(BARCODE_COLUMN).str.split_exact(SEGMENT_SEPARATOR, len(rounds) - 1)
    return barcodes_df.filter(
        pl.all_horizontal(
            [
                segments.struct.field(f"field_{index}").is_in(sorted(round_barcodes))
                for index, round_barcodes in enumerate(rounds)
            ]
        )
    )


def get_barcode_subset(
    barcodes_df: pl.DataFrame,
    method: str,
    n_barcodes: int | None = None,
    min_count: int | None = None,
    barcode_reference: pl.DataFrame | None = None,
    segment_reference: list | None = None,
) -> tuple[pl.DataFrame, int | None]:
    """Generate the barcode list used for barcode correction

    When a reference is given only its barcodes can be part of the subset.
    With a per round reference every segment has to be in its round.

    Args:
        barcodes_df (pl.DataFrame): Barcodes from the input data
        method (str): Threshold inference method
        n_barcodes (int, optional): Number of expected barcodes
        min_count (int, optional): Fixed threshold
        barcode_reference (pl.DataFrame, optional): Allowed barcodes
        segment_reference (list, optional): Allowed segments, one set per round

    Returns:
        tuple[pl.DataFrame, int | None]: Barcode subset, abundance threshold
    """
    candidates = barcodes_df
    if barcode_reference is not None:
        candidates = barcodes_df.filter(
            pl.col(BARCODE_COLUMN).is_in(barcode_reference[REFERENCE_COLUMN].implode())
        )
        logger.info(
            "%s of %s observed barcodes are in the barcode reference",
            candidates.shape[0],
            barcodes_df.shape[0],
        )
    if segment_reference is not None:
        n_candidates = candidates.shape[0]
        candidates = filter_by_rounds(candidates, segment_reference)
        logger.info(
            "%s of %s observed barcodes have every segment in its round reference",
            candidates.shape[0],
            n_candidates,
        )
    threshold = get_abundance_threshold(
        candidates, method=method, n_barcodes=n_barcodes, min_count=min_count
    )
    if threshold is None:
        logger.warning("No barcode passed the whitelist. Not performing barcode correction")
        return pl.DataFrame(schema={SUBSET_COLUMN: pl.String}), None
    barcode_subset = (
        candidates.filter(pl.col(COUNT_COLUMN) >= threshold)
        .sort([COUNT_COLUMN, BARCODE_COLUMN], descending=[True, False])
        .select(pl.col(BARCODE_COLUMN).alias(SUBSET_COLUMN))
    )
    if barcode_subset.is_empty():
        logger.warning(
            "No barcode was seen %s times. Not performing barcode correction", threshold
        )
    logger.info(
        "Whitelist holds %s barcodes seen at least %s times",
        barcode_subset.shape[0],
        threshold,
    )
    return barcode_subset, threshold
