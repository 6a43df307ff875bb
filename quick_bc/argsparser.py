"""Functions for argument parsing
"""

from argparse import ArgumentParser, ArgumentTypeError, RawTextHelpFormatter
from importlib import metadata

from quick_bc.constants import (
    BARCODE_TAG,
    DEFAULT_BATCH_SIZE,
    DEFAULT_QUEUE_SIZE,
    KEY_BARCODE_FEATURE,
    KEY_CHOICES,
    UMI_DEDUP_CHOICES,
    UMI_DEDUP_NONE,
    UMI_TAG,
    WHITELIST_METHODS,
)


def get_package_version():
    """Return package version

    Returns:
        str: Package version as string
    """
    return metadata.version("quick-bc")


def size_limit(value: str) -> int:
    """Validates batch and queue size limits"""
    max_size = 2147483647
    try:
        size = int(value)
    except ValueError:
        raise ArgumentTypeError(f"{value} is not an int")
    if size < 1 or size > max_size:
        raise ArgumentTypeError(f"Argument must be < {max_size} and > 0")
    return size


def non_negative(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ArgumentTypeError(f"{value} is not an int")
    if number < 0:
        raise ArgumentTypeError("Argument can't be negative")
    return number


def add_report_argument(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--report",
        required=False,
        type=str,
        dest="report",
        default=None,
        help=("Write a YAML run report to this path."),
    )


def add_to_fastq_parser(subparsers) -> None:
    parser = subparsers.add_parser(
        "to-fastq",
        formatter_class=RawTextHelpFormatter,
        help="Extract and correct barcodes of paired FASTQ files.",
        description=(
            "Extracts barcode and UMI from the barcode read, infers the whitelist\n"
            "from the barcode histogram, corrects barcodes and writes both reads\n"
            "with the barcode and UMI in their names."
        ),
    )
    # REQUIRED INPUTS group.
    inputs = parser.add_argument_group("Inputs", description="Required input files.")
    inputs.add_argument(
        "--i1",
        dest="read1_path",
        required=True,
        help=("The path of Read1, gzipped or not."),
    )
    inputs.add_argument(
        "--i2",
        dest="read2_path",
        required=True,
        help=("The path of Read2, gzipped or not."),
    )
    # OUTPUTS group.
    outputs = parser.add_argument_group("Outputs")
    outputs.add_argument(
        "--o1",
        dest="out1_path",
        required=True,
        help=("Output path of Read1. Gzipped when it ends in .gz"),
    )
    outputs.add_argument(
        "--o2",
        dest="out2_path",
        required=True,
        help=("Output path of Read2. Gzipped when it ends in .gz"),
    )
    outputs.add_argument(
        "--h",
        "--histogram",
        dest="histogram_path",
        required=True,
        help=("Output path of the barcode histogram (barcode<TAB>count)."),
    )
    add_report_argument(outputs)
    # BARCODES group.
    barcodes = parser.add_argument_group(
        "Barcodes",
        description=(
            "Positions of the cellular barcodes and UMI. If your "
            "cellular barcodes and UMI\n are positioned as follows:\n"
            "\tBarcodes from 1 to 16 and UMI from 17 to 28\n"
            "then this is the input you need:\n"
            "\t-cbf 1 -cbl 16 -umif 17 -umil 28\n"
            "or use a chemistry with --chemistry"
        ),
    )
    barcodes.add_argument(
        "--chemistry",
        dest="chemistry",
        type=str,
        required=False,
        default=None,
        help=(
            "Name of a bundled chemistry (atrandi, 10xv3) or path to a YAML\n"
            "chemistry file. Replaces the position options below."
        ),
    )
    barcodes.add_argument(
        "-cbf",
        "--cell_barcode_first_base",
        dest="cb_first",
        required=False,
        type=int,
        help=("Postion of the first base of your cell barcodes."),
    )
    barcodes.add_argument(
        "-cbl",
        "--cell_barcode_last_base",
        dest="cb_last",
        required=False,
        type=int,
        help=("Postion of the last base of your cell barcodes."),
    )
    barcodes.add_argument(
        "-umif",
        "--umi_first_base",
        dest="umi_first",
        required=False,
        type=int,
        help=("Postion of the first base of your UMI."),
    )
    barcodes.add_argument(
        "-umil",
        "--umi_last_base",
        dest="umi_last",
        required=False,
        type=int,
        help=("Postion of the last base of your UMI."),
    )
    barcodes.add_argument(
        "--barcode_read",
        dest="barcode_read",
        required=False,
        choices=["R1", "R2"],
        default="R1",
        help=("Read carrying the barcode and UMI."),
    )
    barcodes.add_argument(
        "-trim",
        "--start-trim",
        dest="start_trim",
        required=False,
        type=non_negative,
        default=0,
        help=("Number of bases to discard from the barcode read on output."),
    )
    # WHITELIST group.
    whitelist = parser.add_argument_group(
        "Whitelist",
        description=("How genuine barcodes are told apart from sequencing errors."),
    )
    whitelist.add_argument(
        "--whitelist_method",
        dest="whitelist_method",
        required=False,
        choices=WHITELIST_METHODS,
        default=None,
        help=(
            "top_n: keep the --expected_barcodes most frequent barcodes\n"
            "knee: find the knee of the barcode distribution (umi_tools)\n"
            "min_count: keep barcodes seen at least --min_count times\n"
            "Defaults to top_n with --expected_barcodes, knee otherwise."
        ),
    )
    whitelist.add_argument(
        "-n_cells",
        "--expected_barcodes",
        dest="expected_barcodes",
        required=False,
        type=int,
        default=None,
        help=("Number of expected barcodes from your run."),
    )
    whitelist.add_argument(
        "--min_count",
        dest="min_count",
        required=False,
        type=int,
        default=None,
        help=("Minimum count of a genuine barcode."),
    )
    whitelist.add_argument(
        "--barcode_reference",
        dest="barcode_reference",
        required=False,
        type=str,
        default=None,
        help=(
            "A csv file restricting the barcodes that can be genuine.\n\n"
            "\tExample:\n"
            "\treference\n"
            "\tAAACCCAAGAAACACT\n"
            "\tAAACCCAAGAAACCAT\n"
        ),
    )
    whitelist.add_argument(
        "--segment_reference",
        dest="segment_reference",
        required=False,
        type=str,
        default=None,
        help=(
            "A tab separated file listing the barcodes allowed in each round of\n"
            "a split-pool chemistry. pos is the round, in barcode segment order.\n"
            "A barcode can only be genuine if every segment is in its round.\n\n"
            "\tExample:\n"
            "\tpos\twell\tbc\n"
            "\t1\tA1\tAGTTCAGG\n"
            "\t2\tA1\tCTGAGCCA\n"
        ),
    )
    whitelist.add_argument(
        "--bc_collapsing_dist",
        dest="bc_threshold",
        required=False,
        type=non_negative,
        default=1,
        help=("Hamming distance for cellular barcode correction."),
    )
    # Parallel group.
    parallel = parser.add_argument_group(
        "Parallelization options",
        description=("Options for performance on parallelization"),
    )
    parallel.add_argument(
        "--batch_size",
        required=False,
        type=size_limit,
        dest="batch_size",
        default=DEFAULT_BATCH_SIZE,
        help=("How many read pairs are handed from one stage to the next at a time"),
    )
    parallel.add_argument(
        "--queue_size",
        required=False,
        type=size_limit,
        dest="queue_size",
        default=DEFAULT_QUEUE_SIZE,
        help=("How many batches can wait between two stages"),
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        default=False,
        dest="strict",
        help=("Stop on reads too short for the barcode layout instead of skipping them."),
    )
    parser.add_argument(
        "-n",
        "--first_n",
        required=False,
        type=size_limit,
        dest="first_n",
        default=None,
        help=("Select N reads to run on instead of all."),
    )


def add_bam_to_count_parser(subparsers) -> None:
    parser = subparsers.add_parser(
        "bam-to-count",
        formatter_class=RawTextHelpFormatter,
        help="Count a coordinate sorted alignment file per barcode and/or feature.",
        description=(
            "Counts alignments of a coordinate sorted SAM/BAM/CRAM file. Barcodes\n"
            "are read from the read names written by to-fastq or from a tag."
        ),
    )
    inputs = parser.add_argument_group("Inputs", description="Required input files.")
    inputs.add_argument(
        "--ibam",
        dest="alignment_path",
        required=True,
        help=("Coordinate sorted SAM/BAM/CRAM file."),
    )
    outputs = parser.add_argument_group("Outputs")
    outputs.add_argument(
        "--out",
        dest="out_path",
        required=True,
        help=("Output path of the tab separated counts."),
    )
    outputs.add_argument(
        "--mtx",
        dest="mtx_path",
        required=False,
        default=None,
        help=("Also write a MatrixMarket folder. Requires --key barcode_feature"),
    )
    add_report_argument(outputs)
    counting = parser.add_argument_group("Counting")
    counting.add_argument(
        "--key",
        dest="key",
        required=False,
        choices=KEY_CHOICES,
        default=KEY_BARCODE_FEATURE,
        help=("What alignments are counted by. Features are reference names, * if unmapped."),
    )
    counting.add_argument(
        "--barcode_source",
        dest="barcode_source",
        required=False,
        choices=["name", "tag"],
        default="name",
        help=(
            "name: barcode_umi_readname read names written by to-fastq\n"
            "tag: --barcode_tag and --umi_tag alignment tags"
        ),
    )
    counting.add_argument(
        "--barcode_tag",
        dest="barcode_tag",
        required=False,
        default=BARCODE_TAG,
        help=("Tag holding the barcode."),
    )
    counting.add_argument(
        "--umi_tag",
        dest="umi_tag",
        required=False,
        default=UMI_TAG,
        help=("Tag holding the UMI."),
    )
    counting.add_argument(
        "--umi_dedup",
        dest="umi_dedup",
        required=False,
        choices=UMI_DEDUP_CHOICES,
        default=UMI_DEDUP_NONE,
        help=(
            "none: count every alignment\n"
            "exact: count distinct UMIs per position\n"
            "directional: count UMI clusters per position (umi_tools)"
        ),
    )
    counting.add_argument(
        "--umi_collapsing_dist",
        dest="umi_threshold",
        required=False,
        type=non_negative,
        default=1,
        help=("threshold for umi collapsing."),
    )
    counting.add_argument(
        "--include_secondary",
        action="store_true",
        default=False,
        dest="include_secondary",
        help=("Also count secondary and supplementary alignments."),
    )
    counting.add_argument(
        "--skip_unmapped",
        action="store_true",
        default=False,
        dest="skip_unmapped",
        help=("Don't count unmapped reads under the * feature."),
    )


def get_args() -> ArgumentParser:
    """
    Get args.
    """

    parser = ArgumentParser(
        prog="quick-bc",
        formatter_class=RawTextHelpFormatter,
        description=(
            "Barcode extraction and correction for paired FASTQ files and "
            f"counting of sorted alignments. Version {get_package_version()}"
        ),
    )
    parser.add_argument(
        "--debug", action="store_true", help=("Print extra information for debugging.")
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"quick-bc v{get_package_version()}",
        help="Print version number.",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="command")
    subparsers.required = True
    add_to_fastq_parser(subparsers)
    add_bam_to_count_parser(subparsers)
    return parser
