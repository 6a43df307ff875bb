"""Reading and writing of reads, alignments, tables and reports."""
import datetime
import gzip
import logging
import os
import shutil
import zlib

from itertools import zip_longest
from pathlib import Path
from typing import Iterator, NamedTuple

import polars as pl
import pysam
import yaml

from scipy.io import mmwrite
from scipy.sparse import coo_matrix

from quick_bc.constants import (
    BARCODE_COLUMN,
    BARCODE_MTX,
    COUNT_COLUMN,
    FEATURE_COLUMN,
    FEATURES_MTX,
    GZIP_LEVEL,
    MATRIX_MTX,
    NAME_SEPARATOR,
    REFERENCE_COLUMN,
    REQUIRED_SEGMENT_HEADER,
    ROUND_BARCODE_COLUMN,
    ROUND_COLUMN,
    STRIP_CHARS,
    TEMP_SUFFIX,
    UNMAPPED_FEATURE,
)
from quick_bc.errors import PairingMismatchError, StreamDecodeError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


class FastqRecord(NamedTuple):
    name: str
    sequence: str
    quality: str


class PairedRead(NamedTuple):
    index: int
    read1: FastqRecord
    read2: FastqRecord


class AlignmentRecord(NamedTuple):
    index: int
    reference: str
    reference_id: int
    position: int
    name: str
    barcode: str | None
    umi: str
    unmapped: bool
    weight: int = 1


def check_file(file_str: str) -> Path:
    """Check that a file exists and return it as a Path

    Args:
        file_str (str): Path to the file

    Raises:
        SystemExit: If the file doesn't exist

    Returns:
        Path: Path of the file
    """
    file_path = Path(file_str)
    if not file_path.is_file():
        raise SystemExit(f"The file {file_str} does not exist. Exiting")
    return file_path


def open_input(path: str | Path):
    """Open a plain or gzipped text file, sniffing the gzip magic bytes."""
    with open(path, "rb") as raw_file:
        magic = raw_file.read(2)
    if magic == GZIP_MAGIC:
        return gzip.open(path, "rt", encoding="ascii")
    return open(path, "rt", encoding="ascii")


def parse_fastq(path: str | Path, first_n: int | None = None) -> Iterator[FastqRecord]:
    """Lazily parse a FASTQ file.

    Args:
        path (str): FASTQ file, gzipped or not
        first_n (int, optional): Stop after this many records

    Raises:
        StreamDecodeError: On broken framing or a broken compressed stream

    Yields:
        FastqRecord: records in file order
    """
    fastq_file = open_input(path)
    index = 0
    with fastq_file:
        try:
            while first_n is None or index < first_n:
                header = fastq_file.readline()
                if not header:
                    return
                sequence_line = fastq_file.readline()
                separator = fastq_file.readline()
                quality_line = fastq_file.readline()
                if not quality_line:
                    raise StreamDecodeError(f"{path} ends inside a record", index)
                if header[0] != "@":
                    raise StreamDecodeError(
                        f"{path}: header line does not start with '@'", index
                    )
                if separator[0] != "+":
                    raise StreamDecodeError(
                        f"{path}: separator line does not start with '+'", index
                    )
                sequence = sequence_line.rstrip("\r\n")
                quality = quality_line.rstrip("\r\n")
                if len(sequence) != len(quality):
                    raise StreamDecodeError(
                        f"{path}: sequence and quality lengths differ", index
                    )
                name_fields = header[1:].split(None, 1)
                name = name_fields[0] if name_fields else ""
                yield FastqRecord(name, sequence, quality)
                index += 1
        except (OSError, EOFError, zlib.error, UnicodeDecodeError) as error:
            raise StreamDecodeError(f"{path} could not be decoded: {error}", index) from error


def pair_name(name: str) -> str:
    """Read name without the /1 or /2 mate suffix."""
    if name.endswith(("/1", "/2")):
        return name[:-2]
    return name


def read_pairs(
    read1_path: str | Path, read2_path: str | Path, first_n: int | None = None
) -> Iterator[PairedRead]:
    """Read two FASTQ files in lockstep.

    Raises:
        PairingMismatchError: If a file ends first or names don't match
    """
    pairs = zip_longest(parse_fastq(read1_path, first_n), parse_fastq(read2_path, first_n))
    for index, (read1, read2) in enumerate(pairs):
        if read1 is None or read2 is None:
            shorter = read1_path if read1 is None else read2_path
            raise PairingMismatchError(f"{shorter} ended before its mate file", index)
        if pair_name(read1.name) != pair_name(read2.name):
            raise PairingMismatchError(
                f"Read names {read1.name} and {read2.name} don't match", index
            )
        yield PairedRead(index, read1, read2)


def read_barcode_reads(
    read1_path: str | Path,
    read2_path: str | Path,
    barcode_read: str,
    first_n: int | None = None,
) -> Iterator[str]:
    """Stream the sequences of the read holding the barcode."""
    path = read1_path if barcode_read == "R1" else read2_path
    for record in parse_fastq(path, first_n):
        yield record.sequence


def format_fastq(name: str, sequence: str, quality: str) -> str:
    return f"@{name}\n{sequence}\n+\n{quality}\n"


def get_temp_path(path: str | Path) -> str:
    return f"{path}{TEMP_SUFFIX}"


def commit_output(path: str | Path) -> None:
    """Move a finished temporary file or folder to its final path."""
    if os.path.isdir(path):
        shutil.rmtree(path)
    os.replace(get_temp_path(path), path)


def discard_output(path: str | Path) -> None:
    temp_path = get_temp_path(path)
    if not os.path.exists(temp_path):
        return
    if os.path.isdir(temp_path):
        shutil.rmtree(temp_path)
    else:
        os.remove(temp_path)
    logger.debug("Removed incomplete output %s", temp_path)


def open_output(path: str | Path, compresslevel: int = GZIP_LEVEL):
    """Open a binary output. Paths ending in .gz are gzip compressed.

    Returns:
        tuple: The handle to write to and the underlying raw file
    """
    raw_file = open(get_temp_path(path), "wb")
    if str(path).endswith(".gz"):
        handle = gzip.GzipFile(
            filename="", mode="wb", fileobj=raw_file, compresslevel=compresslevel, mtime=0
        )
        return handle, raw_file
    return raw_file, raw_file


class PairedFastqWriter:
    """Writes two synchronised FASTQ outputs.

    Data goes to temporary files that are only renamed to the final paths by
    `close`. `abort` removes them.
    """

    def __init__(
        self, read1_path: str | Path, read2_path: str | Path, compresslevel: int = GZIP_LEVEL
    ):
        self.paths = (read1_path, read2_path)
        self._outputs = [open_output(path, compresslevel) for path in self.paths]
        self.records_written = 0

    def write_chunk(self, read1_text: str, read2_text: str, n_records: int) -> None:
        for (handle, _), text in zip(self._outputs, (read1_text, read2_text)):
            handle.write(text.encode("ascii"))
        self.records_written += n_records

    def _close_handles(self) -> None:
        for handle, raw_file in self._outputs:
            handle.close()
            raw_file.close()

    def close(self) -> None:
        self._close_handles()
        for path in self.paths:
            commit_output(path)

    def abort(self) -> None:
        self._close_handles()
        for path in self.paths:
            discard_output(path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.close()
        else:
            self.abort()


def write_histogram(histogram_df: pl.DataFrame, path: str | Path) -> None:
    """Write the barcode histogram, most frequent first.

    Ties are ordered by barcode so identical inputs give identical files. The
    histogram goes to the temporary path, `commit_output` publishes it.

    Args:
        histogram_df (pl.DataFrame): barcode and count columns
        path (str): Output path
    """
    histogram_df.sort(
        [COUNT_COLUMN, BARCODE_COLUMN], descending=[True, False]
    ).write_csv(get_temp_path(path), separator="\t")


def check_sequence_pattern(
    df: pl.DataFrame, pattern: str, column_name: str, filename: str
) -> None:
    """Exit if a column holds anything else than barcode sequences."""
    offending = df.filter(~pl.col(column_name).str.contains(pattern))
    if not offending.is_empty():
        sequences_str = "\n".join(offending[column_name].to_list())
        raise SystemExit(
            f"Some sequences in the barcode reference are not only composed of ATGCN "
            f"in the column: {column_name}. Here are the sequences: {sequences_str}. "
            f"Filepath: {filename}"
        )


def parse_barcode_file(
    filename: str, barcode_length: int, required_header: list
) -> pl.DataFrame:
    """Reads reference barcodes from a CSV file.

    The function accepts plain barcodes or even 10X style barcodes with the
    `-1` at the end of each barcode.

    Args:
        filename (str): Barcode reference file.
        barcode_length (int): Length of the expected barcodes.
        required_header (list): Columns that have to be present.

    Returns:
        pl.DataFrame: The reference barcodes.
    """
    file_path = check_file(filename)
    barcodes_df = pl.read_csv(file_path.absolute(), infer_schema_length=0)

    set_dif = set(required_header) - set(barcodes_df.columns)
    if len(set_dif) != 0:
        set_diff_string = ",".join(sorted(set_dif))
        raise SystemExit(f"The header is missing {set_diff_string}. Exiting")
    barcodes_df = barcodes_df.select(
        pl.col(REFERENCE_COLUMN).str.strip_chars(STRIP_CHARS)
    )
    check_sequence_pattern(
        df=barcodes_df,
        pattern=r"^[ATGCN.]+$",
        column_name=REFERENCE_COLUMN,
        filename=filename,
    )
    lengths = barcodes_df[REFERENCE_COLUMN].str.len_chars().unique().to_list()
    if lengths != [barcode_length]:
        raise SystemExit(
            f"Barcodes in {filename} should all be {barcode_length} long, "
            f"found lengths {sorted(lengths)}. Exiting"
        )
    return barcodes_df.unique(maintain_order=True)


def parse_segment_reference(filename: str, segment_lengths: list[int]) -> list[frozenset]:
    """Reads the barcodes allowed in each round of a split-pool chemistry.

    The file is tab separated with a `pos`, a `well` and a `bc` column. `pos`
    is the 1-based round, matching the order of the barcode segments.

    Args:
        filename (str): Per round barcode file.
        segment_lengths (list): Length of each barcode segment.

    Returns:
        list: One set of barcodes per round.
    """
    file_path = check_file(filename)
    rounds_df = pl.read_csv(file_path.absolute(), separator="\t", infer_schema_length=0)

    set_dif = set(REQUIRED_SEGMENT_HEADER) - set(rounds_df.columns)
    if len(set_dif) != 0:
        set_diff_string = ",".join(sorted(set_dif))
        raise SystemExit(f"The header is missing {set_diff_string}. Exiting")
    rounds_df = rounds_df.select(
        pl.col(ROUND_COLUMN).str.strip_chars(),
        pl.col(ROUND_BARCODE_COLUMN).str.strip_chars(),
    )
    check_sequence_pattern(
        df=rounds_df,
        pattern=r"^[ATGCN]+$",
        column_name=ROUND_BARCODE_COLUMN,
        filename=filename,
    )
    expected_rounds = [str(index) for index in range(1, len(segment_lengths) + 1)]
    found_rounds = rounds_df[ROUND_COLUMN].unique().to_list()
    if sorted(found_rounds) != sorted(expected_rounds):
        raise SystemExit(
            f"Rounds in {filename} should be {','.join(expected_rounds)}, "
            f"found {','.join(sorted(found_rounds))}. Exiting"
        )
    rounds = []
    for round_name, segment_length in zip(expected_rounds, segment_lengths):
        round_barcodes = rounds_df.filter(pl.col(ROUND_COLUMN) == round_name)[
            ROUND_BARCODE_COLUMN
        ]
        lengths = round_barcodes.str.len_chars().unique().to_list()
        if lengths != [segment_length]:
            raise SystemExit(
                f"Barcodes of round {round_name} in {filename} should all be "
                f"{segment_length} long, found lengths {sorted(lengths)}. Exiting"
            )
        rounds.append(frozenset(round_barcodes.to_list()))
    logger.info(
        "Loaded %s rounds of %s barcodes from %s",
        len(rounds),
        "/".join(str(len(round_barcodes)) for round_barcodes in rounds),
        filename,
    )
    return rounds


def open_alignments(path: str | Path) -> pysam.AlignmentFile:
    """Open a SAM/BAM/CRAM file, the format is detected by htslib."""
    try:
        alignment_file = pysam.AlignmentFile(str(path), "r", check_sq=False)
    except (OSError, ValueError) as error:
        raise StreamDecodeError(f"Could not open alignments {path}: {error}") from error
    sort_order = alignment_file.header.to_dict().get("HD", {}).get("SO")
    if sort_order != "coordinate":
        logger.warning(
            "Header of %s declares sort order %s, expecting coordinate sorted input",
            path,
            sort_order,
        )
    return alignment_file


def split_read_name(name: str) -> tuple[str, str] | None:
    """Return barcode and UMI from a `barcode_umi_readname` style name."""
    fields = name.split(NAME_SEPARATOR, 2)
    if len(fields) < 2:
        return None
    umi = fields[1] if len(fields) == 3 else ""
    return fields[0], umi


def iter_alignments(
    alignment_file: pysam.AlignmentFile,
    barcode_source: str = "name",
    barcode_tag: str = "CB",
    umi_tag: str = "UB",
    include_secondary: bool = False,
) -> Iterator[AlignmentRecord]:
    """Turn pysam segments into AlignmentRecord values.

    Args:
        alignment_file (pysam.AlignmentFile): Open alignments
        barcode_source (str): "name" to read barcode and UMI from the read
            name, "tag" to read them from SAM tags, "none" to skip them
        barcode_tag (str): Tag holding the barcode
        umi_tag (str): Tag holding the UMI
        include_secondary (bool): Count secondary and supplementary alignments

    Raises:
        StreamDecodeError: Truncated input, or a read name without barcode
    """
    index = 0
    try:
        for segment in alignment_file.fetch(until_eof=True):
            if not include_secondary and (
                segment.is_secondary or segment.is_supplementary
            ):
                continue
            name = segment.query_name or ""
            barcode = None
            umi = ""
            if barcode_source == "name":
                fields = split_read_name(name)
                if fields is None:
                    raise StreamDecodeError(
                        f"Read name {name} does not start with barcode{NAME_SEPARATOR}",
                        index,
                    )
                barcode, umi = fields
            elif barcode_source == "tag":
                if segment.has_tag(barcode_tag):
                    barcode = str(segment.get_tag(barcode_tag))
                if segment.has_tag(umi_tag):
                    umi = str(segment.get_tag(umi_tag))
            reference_id = segment.reference_id
            yield AlignmentRecord(
                index=index,
                reference=segment.reference_name if reference_id >= 0 else UNMAPPED_FEATURE,
                reference_id=reference_id,
                position=segment.reference_start,
                name=name,
                barcode=barcode,
                umi=umi,
                unmapped=segment.is_unmapped,
            )
            index += 1
    except OSError as error:
        raise StreamDecodeError(f"Could not read alignments: {error}", index) from error


class CountTableWriter:
    """Tab separated count summary, written to a temporary file until committed."""

    def __init__(self, path: str | Path, columns: list[str]):
        self.path = path
        self.temp_path = get_temp_path(path)
        self.rows_written = 0
        self._handle = open(self.temp_path, "w", encoding="utf-8")
        self._handle.write("\t".join(columns) + "\n")

    def write_rows(self, rows) -> None:
        for row in rows:
            self._handle.write("\t".join(str(value) for value in row) + "\n")
            self.rows_written += 1

    def flush(self) -> None:
        self._handle.flush()

    def close(self) -> None:
        self._handle.close()
        commit_output(self.path)

    def abort(self) -> None:
        self._handle.close()
        discard_output(self.path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.close()
        else:
            self.abort()


def write_data_to_mtx(count_table_path: str | Path, features: list[str], outpath: str) -> None:
    """Write a barcode x feature count summary in gzipped MatrixMarket format.

    Features are rows and barcodes are columns. Barcodes are written in the
    order they first appear in the count summary. Files go to the temporary
    folder of `outpath`, `commit_output` publishes it.

    Args:
        count_table_path (str): barcode, feature, count table
        features (list): All features, in output order
        outpath (str): Output folder
    """
    temp_outpath = get_temp_path(outpath)
    os.makedirs(temp_outpath, exist_ok=True)
    counts_df = pl.read_csv(
        count_table_path,
        separator="\t",
        schema={
            BARCODE_COLUMN: pl.String,
            FEATURE_COLUMN: pl.String,
            COUNT_COLUMN: pl.Int64,
        },
    )
    barcodes = counts_df[BARCODE_COLUMN].unique(maintain_order=True).to_list()
    barcode_ids = {barcode: index for index, barcode in enumerate(barcodes)}
    feature_ids = {feature: index for index, feature in enumerate(features)}
    unknown = set(counts_df[FEATURE_COLUMN].to_list()) - set(feature_ids)
    if unknown:
        raise SystemExit(f"Features missing from the header: {','.join(sorted(unknown))}")
    sparse_matrix = coo_matrix(
        (
            counts_df[COUNT_COLUMN].to_numpy(),
            (
                [feature_ids[feature] for feature in counts_df[FEATURE_COLUMN]],
                [barcode_ids[barcode] for barcode in counts_df[BARCODE_COLUMN]],
            ),
        ),
        shape=(len(features), len(barcodes)),
    )
    matrix_path = os.path.join(temp_outpath, MATRIX_MTX)
    mmwrite(matrix_path, sparse_matrix, field="integer")
    with gzip.open(os.path.join(temp_outpath, BARCODE_MTX), "wb") as barcode_file:
        for barcode in barcodes:
            barcode_file.write(f"{barcode}\n".encode())
    with gzip.open(os.path.join(temp_outpath, FEATURES_MTX), "wb") as feature_file:
        for feature in features:
            feature_file.write(f"{feature}\n".encode())
    with open(matrix_path, "rb") as mtx_in:
        with gzip.open(matrix_path + ".gz", "wb") as mtx_gz:
            shutil.copyfileobj(mtx_in, mtx_gz)
    os.remove(matrix_path)
    logger.info(
        "Wrote a %s features x %s barcodes matrix to %s",
        len(features),
        len(barcodes),
        outpath,
    )


def seconds_to_text(secs: float) -> str:
    """Human readable running time, e.g. `1 hour, 2 minutes, 3.5 seconds`."""
    days, remainder = divmod(float(secs), 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)
    parts = []
    for value, unit in ((days, "day"), (hours, "hour"), (minutes, "minute")):
        if value:
            parts.append(f"{int(value)} {unit}{'s' if value != 1 else ''}")
    if seconds or not parts:
        parts.append(f"{seconds:.4} second{'s' if seconds != 1 else ''}")
    return ", ".join(parts)


def create_report(path: str | Path, report: dict, start_time: float, end_time: float) -> None:
    """Write the run report as YAML.

    Args:
        path (str): Report path
        report (dict): Command specific content
        start_time (float): Epoch seconds at start
        end_time (float): Epoch seconds at the end
    """
    content = {
        "Date": datetime.datetime.fromtimestamp(start_time).strftime("%Y-%m-%d %H:%M:%S"),
        "Running time": seconds_to_text(end_time - start_time),
    }
    content.update(report)
    with open(path, "w", encoding="utf-8") as report_file:
        yaml.safe_dump(content, report_file, sort_keys=False)
    logger.info("Run report written to %s", path)
