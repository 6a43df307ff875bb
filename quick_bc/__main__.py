"""Command line entry point of quick-bc."""
import logging
import sys
import time

from quick_bc import argsparser, chemistry, counting, io, pipeline
from quick_bc.constants import POLICY_SKIP, POLICY_STRICT, WHITELIST_KNEE, WHITELIST_TOP_N
from quick_bc.errors import ConfigurationError, QuickBcError

logger = logging.getLogger("quick_bc")

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s]: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(debug: bool = False) -> None:
    """Configure the package logger once, on stderr."""
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)


def get_whitelist_method(args) -> str:
    if args.whitelist_method:
        return args.whitelist_method
    if args.expected_barcodes:
        return WHITELIST_TOP_N
    return WHITELIST_KNEE


def to_fastq(args) -> dict:
    chemistry_def = chemistry.setup_chemistry(args)
    for path in (args.read1_path, args.read2_path):
        io.check_file(path)
    whitelist_method = get_whitelist_method(args)
    malformed_policy = POLICY_STRICT if args.strict else POLICY_SKIP
    summary, whitelist_report = pipeline.run_to_fastq(
        read1_path=args.read1_path,
        read2_path=args.read2_path,
        out1_path=args.out1_path,
        out2_path=args.out2_path,
        histogram_path=args.histogram_path,
        chemistry=chemistry_def,
        whitelist_method=whitelist_method,
        expected_barcodes=args.expected_barcodes,
        min_count=args.min_count,
        barcode_reference_path=args.barcode_reference,
        segment_reference_path=args.segment_reference,
        max_distance=args.bc_threshold,
        malformed_policy=malformed_policy,
        first_n=args.first_n,
        batch_size=args.batch_size,
        queue_size=args.queue_size,
    )
    return {
        "Inputs": {
            "read1": args.read1_path,
            "read2": args.read2_path,
            "barcode_reference": args.barcode_reference,
            "segment_reference": args.segment_reference,
        },
        "Outputs": {
            "read1": args.out1_path,
            "read2": args.out2_path,
            "histogram": args.histogram_path,
        },
        "Chemistry": chemistry_def.describe(),
        "Whitelist": whitelist_report,
        "Reads": summary.as_dict(),
    }


def bam_to_count(args) -> dict:
    io.check_file(args.alignment_path)
    summary = counting.run_bam_to_count(
        alignment_path=args.alignment_path,
        out_path=args.out_path,
        key_mode=args.key,
        barcode_source=args.barcode_source,
        barcode_tag=args.barcode_tag,
        umi_tag=args.umi_tag,
        umi_dedup=args.umi_dedup,
        umi_distance=args.umi_threshold,
        include_secondary=args.include_secondary,
        skip_unmapped=args.skip_unmapped,
        mtx_path=args.mtx_path,
    )
    return {
        "Inputs": {"alignments": args.alignment_path},
        "Outputs": {"counts": args.out_path, "mtx": args.mtx_path},
        "Counting": summary,
    }


COMMANDS = {"to-fastq": to_fastq, "bam-to-count": bam_to_count}


def report_failure(args, report: dict, kind: str, message: str, record_index, start_time):
    report["Status"] = "failed"
    report["Error"] = {
        "kind": kind,
        "message": message,
        "record_index": record_index,
    }
    if args.report:
        io.create_report(args.report, report, start_time, time.time())


def main():
    """Main"""
    start_time = time.time()
    parser = argsparser.get_args()
    if not sys.argv[1:]:
        parser.print_help(file=sys.stderr)
        sys.exit(2)

    args = parser.parse_args()
    setup_logging(args.debug)
    report = {
        "Version": argsparser.get_package_version(),
        "Command": args.command,
    }
    try:
        report.update(COMMANDS[args.command](args))
    except QuickBcError as error:
        logger.error("%s", error)
        report_failure(
            args, report, error.kind, error.message, error.record_index, start_time
        )
        sys.exit(error.exit_code)
    except SystemExit as error:
        # Input checks exit with their message
        report_failure(
            args, report, ConfigurationError.kind, str(error.code), None, start_time
        )
        raise
    report["Status"] = "success"
    if args.report:
        io.create_report(args.report, report, start_time, time.time())
    logger.info("Done in %s", io.seconds_to_text(time.time() - start_time))


if __name__ == "__main__":
    main()
