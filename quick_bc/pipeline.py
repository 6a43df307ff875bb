"""Two pass barcode extraction, correction and FASTQ rewriting.

The second pass runs as three threads connected by bounded queues:

    reader (decompress, parse, pair) -> processor (extract, correct, format)
    -> writer (compress, write)

Batches keep their order since every stage has a single worker. A full
queue blocks its producer. The first failing stage cancels the others, the
outputs are then removed and the error is raised again by `StagedPipeline.run`.
"""
import logging
import queue
import threading
import time

from dataclasses import dataclass, asdict
from pathlib import Path

from quick_bc import io, preprocessing, processing
from quick_bc.chemistry import Chemistry
from quick_bc.constants import (
    BARCODE_TAG,
    DEFAULT_BATCH_SIZE,
    DEFAULT_QUEUE_SIZE,
    GZIP_LEVEL,
    NAME_SEPARATOR,
    POLICY_STRICT,
    PROGRESS_EVERY,
    RAW_BARCODE_TAG,
    REQUIRED_REFERENCE_HEADER,
    STATUS_TAG,
    UMI_TAG,
)
from quick_bc.errors import InvariantViolation, MalformedReadError

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.1
END_OF_STREAM = object()


@dataclass
class RunSummary:
    malformed_policy: str
    total: int = 0
    exact: int = 0
    corrected: int = 0
    ambiguous: int = 0
    uncorrectable: int = 0
    malformed: int = 0
    written: int = 0

    def add(self, status: str) -> None:
        setattr(self, status, getattr(self, status) + 1)

    @property
    def classified(self) -> int:
        return self.exact + self.corrected + self.ambiguous + self.uncorrectable

    def check(self) -> None:
        """Every input pair is classified or malformed, and every classified one written."""
        if self.classified + self.malformed != self.total:
            raise InvariantViolation(
                f"{self.classified} classified and {self.malformed} malformed pairs "
                f"don't add up to {self.total} input pairs"
            )
        if self.written != self.total - self.malformed:
            raise InvariantViolation(
                f"{self.written} pairs written, expected {self.total - self.malformed}"
            )

    def as_dict(self) -> dict:
        return asdict(self)


class StagedPipeline:
    """Runs stage functions in threads with cooperative cancellation."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self.cancelled = threading.Event()
        self._errors = []
        self._lock = threading.Lock()

    def make_queue(self) -> queue.Queue:
        return queue.Queue(maxsize=self.queue_size)

    def put(self, handoff: queue.Queue, item) -> bool:
        """Blocking put that gives up once the pipeline is cancelled."""
        while not self.cancelled.is_set():
            try:
                handoff.put(item, timeout=POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def get(self, handoff: queue.Queue):
        """Blocking get, returns END_OF_STREAM once the pipeline is cancelled."""
        while not self.cancelled.is_set():
            try:
                return handoff.get(timeout=POLL_SECONDS)
            except queue.Empty:
                continue
        return END_OF_STREAM

    def consume(self, handoff: queue.Queue):
        while True:
            item = self.get(handoff)
            if item is END_OF_STREAM:
                return
            yield item

    def _run_stage(self, name: str, target, args: tuple) -> None:
        try:
            target(self, *args)
        except Exception as error:  # pylint: disable=broad-except
            with self._lock:
                self._errors.append(error)
            logger.debug("Stage %s failed: %s", name, error)
            self.cancelled.set()

    def run(self, stages: list[tuple]) -> None:
        """Run `(name, target, args)` stages until all of them return.

        Raises:
            Exception: The first error raised by a stage
        """
        threads = [
            threading.Thread(
                target=self._run_stage, args=(name, target, args), name=name, daemon=True
            )
            for name, target, args in stages
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        if self._errors:
            raise self._errors[0]


def read_stage(
    pipeline: StagedPipeline, pairs, out_queue: queue.Queue, batch_size: int
) -> None:
    batch = []
    for pair in pairs:
        if pipeline.cancelled.is_set():
            return
        batch.append(pair)
        if len(batch) >= batch_size:
            if not pipeline.put(out_queue, batch):
                return
            batch = []
    if batch and not pipeline.put(out_queue, batch):
        return
    pipeline.put(out_queue, END_OF_STREAM)


def format_pair(
    pair: io.PairedRead,
    barcode: str,
    raw_barcode: str,
    umi: str,
    status: str,
    chemistry: Chemistry,
) -> tuple[str, str]:
    """Render both reads with the barcode and UMI in their headers."""
    read_name = io.pair_name(pair.read1.name)
    header = (
        f"{barcode}{NAME_SEPARATOR}{umi}{NAME_SEPARATOR}{read_name} "
        f"{BARCODE_TAG}:Z:{barcode}\t{RAW_BARCODE_TAG}:Z:{raw_barcode}\t"
        f"{UMI_TAG}:Z:{umi}\t{STATUS_TAG}:Z:{status}"
    )
    texts = []
    for read_number, record in (("R1", pair.read1), ("R2", pair.read2)):
        sequence, quality = record.sequence, record.quality
        if read_number == chemistry.barcode_read and chemistry.barcode_read_trim:
            sequence = sequence[chemistry.barcode_read_trim :]
            quality = quality[chemistry.barcode_read_trim :]
        texts.append(io.format_fastq(header, sequence, quality))
    return texts[0], texts[1]


def process_batch(
    batch: list[io.PairedRead],
    chemistry: Chemistry,
    mapped_barcodes: dict,
    summary: RunSummary,
) -> tuple[str, str, int]:
    """Extract, correct and format one batch of pairs.

    Raises:
        MalformedReadError: On a short read when the policy is strict
        InvariantViolation: If a barcode was not seen by the first pass

    Returns:
        tuple[str, str, int]: read 1 text, read 2 text, pairs written
    """
    read1_texts = []
    read2_texts = []
    for pair in batch:
        summary.total += 1
        barcode_record = pair.read1 if chemistry.barcode_read == "R1" else pair.read2
        try:
            raw_barcode, umi = preprocessing.extract_barcode_umi(
                barcode_record.sequence, chemistry
            )
        except MalformedReadError as error:
            if summary.malformed_policy == POLICY_STRICT:
                error.record_index = pair.index
                raise
            summary.malformed += 1
            continue
        try:
            barcode, status = mapped_barcodes[raw_barcode]
        except KeyError as error:
            raise InvariantViolation(
                f"Barcode {raw_barcode} was not seen by the first pass, "
                "the input changed between passes",
                pair.index,
            ) from error
        summary.add(status)
        read1_text, read2_text = format_pair(
            pair, barcode, raw_barcode, umi, status, chemistry
        )
        read1_texts.append(read1_text)
        read2_texts.append(read2_text)
    return "".join(read1_texts), "".join(read2_texts), len(read1_texts)


def process_stage(
    pipeline: StagedPipeline,
    in_queue: queue.Queue,
    out_queue: queue.Queue,
    chemistry: Chemistry,
    mapped_barcodes: dict,
    summary: RunSummary,
) -> None:
    start = time.time()
    next_progress = PROGRESS_EVERY
    for batch in pipeline.consume(in_queue):
        chunk = process_batch(batch, chemistry, mapped_barcodes, summary)
        if not pipeline.put(out_queue, chunk):
            return
        if summary.total >= next_progress:
            logger.info(
                "Processed %s read pairs in %.1f seconds",
                f"{summary.total:,}",
                time.time() - start,
            )
            next_progress += PROGRESS_EVERY
    pipeline.put(out_queue, END_OF_STREAM)


def write_stage(
    pipeline: StagedPipeline, in_queue: queue.Queue, writer: io.PairedFastqWriter
) -> None:
    for read1_text, read2_text, n_records in pipeline.consume(in_queue):
        writer.write_chunk(read1_text, read2_text, n_records)


def rewrite_pairs(
    pairs,
    chemistry: Chemistry,
    mapped_barcodes: dict,
    writer: io.PairedFastqWriter,
    summary: RunSummary,
    batch_size: int = DEFAULT_BATCH_SIZE,
    queue_size: int = DEFAULT_QUEUE_SIZE,
) -> None:
    """Second pass: stream pairs through the reader, processor and writer stages."""
    pipeline = StagedPipeline(queue_size=queue_size)
    read_queue = pipeline.make_queue()
    write_queue = pipeline.make_queue()
    pipeline.run(
        [
            ("reader", read_stage, (pairs, read_queue, batch_size)),
            (
                "processor",
                process_stage,
                (read_queue, write_queue, chemistry, mapped_barcodes, summary),
            ),
            ("writer", write_stage, (write_queue, writer)),
        ]
    )
    summary.written = writer.records_written


def run_to_fastq(
    read1_path: str | Path,
    read2_path: str | Path,
    out1_path: str | Path,
    out2_path: str | Path,
    histogram_path: str | Path,
    chemistry: Chemistry,
    whitelist_method: str,
    expected_barcodes: int | None = None,
    min_count: int | None = None,
    barcode_reference_path: str | None = None,
    segment_reference_path: str | None = None,
    max_distance: int = 1,
    malformed_policy: str = "skip",
    first_n: int | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    queue_size: int = DEFAULT_QUEUE_SIZE,
    compresslevel: int = GZIP_LEVEL,
) -> tuple[RunSummary, dict]:
    """Extract and correct barcodes of a pair of FASTQ files.

    Outputs only appear once the whole input was processed and the summary
    checks passed. The histogram is committed together with the reads.

    Returns:
        tuple[RunSummary, dict]: pair counts and whitelist details for the report
    """
    logger.info("Malformed read policy: %s", malformed_policy)
    logger.info(
        "First pass: counting barcodes in %s",
        read1_path if chemistry.barcode_read == "R1" else read2_path,
    )
    histogram, n_reads, n_malformed = preprocessing.build_barcode_histogram(
        io.read_barcode_reads(read1_path, read2_path, chemistry.barcode_read, first_n),
        chemistry,
        malformed_policy,
    )
    barcodes_df = preprocessing.histogram_to_df(histogram)
    barcode_reference = None
    if barcode_reference_path:
        barcode_reference = io.parse_barcode_file(
            filename=barcode_reference_path,
            barcode_length=chemistry.barcode_length,
            required_header=REQUIRED_REFERENCE_HEADER,
        )
    segment_reference = None
    if segment_reference_path:
        segment_reference = io.parse_segment_reference(
            filename=segment_reference_path,
            segment_lengths=[stop - start + 1 for start, stop in chemistry.barcode_segments],
        )
    barcode_subset, threshold = preprocessing.get_barcode_subset(
        barcodes_df,
        method=whitelist_method,
        n_barcodes=expected_barcodes,
        min_count=min_count,
        barcode_reference=barcode_reference,
        segment_reference=segment_reference,
    )
    whitelist = processing.Whitelist.from_subset(barcode_subset, threshold, max_distance)
    mapped_barcodes, distinct_status = processing.correct_barcodes(histogram, whitelist)

    logger.info("Second pass: writing corrected reads")
    summary = RunSummary(malformed_policy=malformed_policy)
    writer = io.PairedFastqWriter(out1_path, out2_path, compresslevel=compresslevel)
    try:
        with writer:
            rewrite_pairs(
                io.read_pairs(read1_path, read2_path, first_n),
                chemistry,
                mapped_barcodes,
                writer,
                summary,
                batch_size=batch_size,
                queue_size=queue_size,
            )
            summary.check()
            if summary.total != n_reads or summary.malformed != n_malformed:
                raise InvariantViolation(
                    f"First pass saw {n_reads} reads ({n_malformed} malformed), second "
                    f"pass {summary.total} ({summary.malformed} malformed)"
                )
            io.write_histogram(barcodes_df, histogram_path)
    except BaseException:
        io.discard_output(histogram_path)
        raise
    io.commit_output(histogram_path)
    logger.info("Wrote %s barcodes to %s", barcodes_df.shape[0], histogram_path)
    logger.info(
        "Pairs: %s total, %s exact, %s corrected, %s ambiguous, %s uncorrectable, "
        "%s malformed (%s), %s written",
        summary.total,
        summary.exact,
        summary.corrected,
        summary.ambiguous,
        summary.uncorrectable,
        summary.malformed,
        malformed_policy,
        summary.written,
    )
    whitelist_report = {
        "method": whitelist_method,
        "abundance_threshold": whitelist.threshold,
        "barcodes": len(whitelist),
        "max_distance": max_distance,
        "distinct_raw_barcodes": len(histogram),
        "distinct_by_status": dict(sorted(distinct_status.items())),
    }
    return summary, whitelist_report
