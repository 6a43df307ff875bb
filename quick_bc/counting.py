"""Count alignments per barcode and/or feature from a coordinate sorted stream.

Records sharing a (reference, position) form a position group. A group is
open while records at its position arrive, closing once the stream moves past
it and closed after its counts were merged. Keys holding a feature are final
once their reference is done and are written out right away, barcode keys are
final at the end of the stream.
"""
import enum
import logging
import math
import time

from collections import Counter, defaultdict
from pathlib import Path
from typing import Iterable, Iterator

from umi_tools import network

from quick_bc import io
from quick_bc.constants import (
    BARCODE_COLUMN,
    COUNT_COLUMN,
    FEATURE_COLUMN,
    KEY_BARCODE,
    KEY_BARCODE_FEATURE,
    KEY_CHOICES,
    KEY_FEATURE,
    PROGRESS_EVERY,
    UMI_DEDUP_DIRECTIONAL,
    UMI_DEDUP_EXACT,
    UMI_DEDUP_NONE,
    UNMAPPED_FEATURE,
)
from quick_bc.errors import ConfigurationError, SortOrderViolation

logger = logging.getLogger(__name__)


class GroupState(enum.Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def get_key_columns(key_mode: str) -> list[str]:
    if key_mode == KEY_BARCODE:
        return [BARCODE_COLUMN, COUNT_COLUMN]
    if key_mode == KEY_FEATURE:
        return [FEATURE_COLUMN, COUNT_COLUMN]
    if key_mode == KEY_BARCODE_FEATURE:
        return [BARCODE_COLUMN, FEATURE_COLUMN, COUNT_COLUMN]
    raise ConfigurationError(f"Key must be one of {','.join(KEY_CHOICES)}, got {key_mode}")


def get_feature(record: io.AlignmentRecord) -> str:
    return UNMAPPED_FEATURE if record.unmapped else record.reference


def get_key(record: io.AlignmentRecord, key_mode: str) -> tuple | None:
    """Grouping key of a record, None when the record has no barcode."""
    if key_mode == KEY_FEATURE:
        return (get_feature(record),)
    if record.barcode is None:
        return None
    if key_mode == KEY_BARCODE:
        return (record.barcode,)
    return (record.barcode, get_feature(record))


class PositionGroup:
    """Records of one (reference, position), counted per key."""

    def __init__(self, reference: str, position: int):
        self.reference = reference
        self.position = position
        self.state = GroupState.OPEN
        self.weights = Counter()
        self.umis = defaultdict(Counter)

    def add(self, key: tuple, umi: str, weight: int) -> None:
        if self.state is not GroupState.OPEN:
            raise RuntimeError(
                f"Group {self.reference}:{self.position} is {self.state.value}"
            )
        self.weights[key] += weight
        self.umis[key][umi] += weight

    def close(self, umi_dedup: str, umi_clusterer=None, umi_distance: int = 1) -> Counter:
        """Finalise the counts of the group and drop its records.

        Args:
            umi_dedup (str): none, exact or directional
            umi_clusterer (UMIClusterer, optional): Needed for directional
            umi_distance (int): Hamming distance for directional collapsing

        Returns:
            Counter: key -> count
        """
        self.state = GroupState.CLOSING
        if umi_dedup == UMI_DEDUP_NONE:
            counts = Counter(self.weights)
        elif umi_dedup == UMI_DEDUP_EXACT:
            counts = Counter({key: len(umis) for key, umis in self.umis.items()})
        else:
            counts = Counter()
            for key, umis in self.umis.items():
                # UMIClusterer needs UMIs of a single length
                by_length = defaultdict(dict)
                for umi, count in umis.items():
                    by_length[len(umi)][umi.encode()] = count
                counts[key] = sum(
                    len(umi_clusterer(encoded, umi_distance)) for encoded in by_length.values()
                )
        self.weights = Counter()
        self.umis = defaultdict(Counter)
        self.state = GroupState.CLOSED
        return counts


class AlignmentCountAggregator:
    """Counts a coordinate sorted record stream per key with bounded memory.

    Args:
        key_mode (str): barcode, feature or barcode_feature
        umi_dedup (str): none, exact or directional
        umi_distance (int): Hamming distance for directional collapsing
        skip_unmapped (bool): Don't count unmapped records
    """

    def __init__(
        self,
        key_mode: str = KEY_BARCODE,
        umi_dedup: str = UMI_DEDUP_NONE,
        umi_distance: int = 1,
        skip_unmapped: bool = False,
    ):
        get_key_columns(key_mode)
        self.key_mode = key_mode
        self.umi_dedup = umi_dedup
        self.umi_distance = umi_distance
        self.skip_unmapped = skip_unmapped
        self.umi_clusterer = (
            network.UMIClusterer(cluster_method="directional")
            if umi_dedup == UMI_DEDUP_DIRECTIONAL
            else None
        )
        self.open_groups = {}
        # scope (a feature, or None for barcode keys) -> key -> count
        self.pending = {}
        self.watermark = None
        self.watermark_reference = None
        self.records_seen = 0
        self.records_counted = 0
        self.unmapped_skipped = 0
        self.missing_barcode = 0
        self.missing_umi = 0
        self.groups_closed = 0
        self.keys_closed = 0

    def _scope(self, key: tuple) -> str | None:
        if self.key_mode == KEY_BARCODE:
            return None
        return key[-1]

    def _check_order(self, record: io.AlignmentRecord) -> bool:
        """Move the watermark to the record. True when it entered a new reference."""
        rank = record.reference_id if record.reference_id >= 0 else math.inf
        if self.watermark is not None:
            last_rank, last_position = self.watermark
            if rank < last_rank or (rank == last_rank and record.position < last_position):
                raise SortOrderViolation(
                    f"{record.reference}:{record.position} comes after "
                    f"{self.watermark_reference}:{last_position}, input is not "
                    "coordinate sorted",
                    record.index,
                )
            new_reference = rank != last_rank
        else:
            new_reference = True
        self.watermark = (rank, record.position)
        return new_reference

    def _close_groups(self, before: tuple | None) -> None:
        """Close every open group strictly behind `before` (all when None)."""
        for group_id in list(self.open_groups):
            if before is not None and group_id >= before:
                continue
            group = self.open_groups.pop(group_id)
            counts = group.close(self.umi_dedup, self.umi_clusterer, self.umi_distance)
            for key, count in counts.items():
                scope_counts = self.pending.setdefault(self._scope(key), {})
                scope_counts[key] = scope_counts.get(key, 0) + count
            self.groups_closed += 1

    def _flush_scope(self, scope) -> Iterator[tuple]:
        for key, count in self.pending.pop(scope, {}).items():
            self.keys_closed += 1
            yield (*key, count)

    def consume(self, records: Iterable[io.AlignmentRecord]) -> Iterator[tuple]:
        """Count records and yield `(*key, count)` rows as keys become final.

        Raises:
            SortOrderViolation: If the stream is not coordinate sorted
        """
        start = time.time()
        for record in records:
            self.records_seen += 1
            previous_reference = self.watermark_reference
            new_reference = self._check_order(record)
            self._close_groups(self.watermark)
            if new_reference and previous_reference is not None:
                if self.key_mode != KEY_BARCODE and previous_reference != UNMAPPED_FEATURE:
                    yield from self._flush_scope(previous_reference)
            self.watermark_reference = record.reference
            if record.unmapped and self.skip_unmapped:
                self.unmapped_skipped += 1
                continue
            key = get_key(record, self.key_mode)
            if key is None:
                self.missing_barcode += 1
                continue
            if not record.umi and self.umi_dedup != UMI_DEDUP_NONE:
                self.missing_umi += 1
                continue
            group_id = self.watermark
            group = self.open_groups.get(group_id)
            if group is None:
                group = PositionGroup(record.reference, record.position)
                self.open_groups[group_id] = group
            group.add(key, record.umi, record.weight)
            self.records_counted += 1
            if self.records_seen % PROGRESS_EVERY == 0:
                logger.info(
                    "Counted %s alignments in %.1f seconds",
                    f"{self.records_seen:,}",
                    time.time() - start,
                )
        self._close_groups(None)
        for scope in list(self.pending):
            yield from self._flush_scope(scope)

    def summary(self) -> dict:
        return {
            "key": self.key_mode,
            "umi_dedup": self.umi_dedup,
            "records_seen": self.records_seen,
            "records_counted": self.records_counted,
            "unmapped_skipped": self.unmapped_skipped,
            "missing_barcode": self.missing_barcode,
            "missing_umi": self.missing_umi,
            "position_groups": self.groups_closed,
            "keys": self.keys_closed,
        }


def run_bam_to_count(
    alignment_path: str | Path,
    out_path: str | Path,
    key_mode: str = KEY_BARCODE_FEATURE,
    barcode_source: str = "name",
    barcode_tag: str = "CB",
    umi_tag: str = "UB",
    umi_dedup: str = UMI_DEDUP_NONE,
    umi_distance: int = 1,
    include_secondary: bool = False,
    skip_unmapped: bool = False,
    mtx_path: str | None = None,
) -> dict:
    """Count a sorted alignment file into a tab separated summary.

    The summary, and the MatrixMarket folder when asked for, only appear once
    the whole stream was counted.

    Returns:
        dict: Counting summary for the report
    """
    columns = get_key_columns(key_mode)
    if mtx_path and key_mode != KEY_BARCODE_FEATURE:
        raise ConfigurationError("--mtx requires --key barcode_feature")
    if key_mode == KEY_FEATURE and umi_dedup == UMI_DEDUP_NONE:
        barcode_source = "none"
    aggregator = AlignmentCountAggregator(
        key_mode=key_mode,
        umi_dedup=umi_dedup,
        umi_distance=umi_distance,
        skip_unmapped=skip_unmapped,
    )
    alignment_file = io.open_alignments(alignment_path)
    features = list(alignment_file.references) + [UNMAPPED_FEATURE]
    try:
        with alignment_file, io.CountTableWriter(out_path, columns) as writer:
            writer.write_rows(
                aggregator.consume(
                    io.iter_alignments(
                        alignment_file,
                        barcode_source=barcode_source,
                        barcode_tag=barcode_tag,
                        umi_tag=umi_tag,
                        include_secondary=include_secondary,
                    )
                )
            )
            if mtx_path:
                writer.flush()
                io.write_data_to_mtx(writer.temp_path, features, mtx_path)
    except BaseException:
        if mtx_path:
            io.discard_output(mtx_path)
        raise
    if mtx_path:
        io.commit_output(mtx_path)
    summary = aggregator.summary()
    summary["rows_written"] = writer.rows_written
    logger.info(
        "Counted %s of %s alignments into %s rows",
        summary["records_counted"],
        summary["records_seen"],
        summary["rows_written"],
    )
    if aggregator.missing_barcode:
        logger.warning("%s alignments had no barcode", aggregator.missing_barcode)
    if aggregator.missing_umi:
        logger.warning("%s alignments had no UMI", aggregator.missing_umi)
    return summary
