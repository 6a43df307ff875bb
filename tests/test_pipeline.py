import gzip
import itertools
import os

import pytest

from quick_bc import io, pipeline
from quick_bc.chemistry import Chemistry, load_chemistry_file
from quick_bc.errors import (
    InvariantViolation,
    MalformedReadError,
    PairingMismatchError,
)

TEST_DATA = os.path.join(os.path.dirname(__file__), "test_data")

BARCODES = [
    ("AAAA", "CCCC"),
    ("TTTT", "GGGG"),
    ("AAAA", "CCCG"),
    ("AAAT", "CCCA"),
    ("AAAC", ""),
    ("AAAA", "CCTT"),
    ("TTTT", "GGGA"),
    ("AAAA", "CCCC"),
    ("TTTT", "GGGT"),
    ("AAAA", "CCAA"),
]


def write_fastq(path, records):
    with gzip.open(path, "wt") as fastq_file:
        for name, sequence in records:
            fastq_file.write(f"@{name} 1:N:0:1\n{sequence}\n+\n{'F' * len(sequence)}\n")


def read_fastq_lines(path):
    with gzip.open(path, "rt") as fastq_file:
        return fastq_file.read().splitlines()


@pytest.fixture
def chemistry_def():
    return Chemistry(
        name="test",
        barcode_segments=((1, 4),),
        umi_barcode_start=5,
        umi_barcode_end=8,
    )


@pytest.fixture
def inputs(tmp_path):
    read1 = tmp_path / "R1.fastq.gz"
    read2 = tmp_path / "R2.fastq.gz"
    write_fastq(
        read1,
        [
            (f"read{index}/1", barcode + umi + ("ACGTAC" if umi else ""))
            for index, (barcode, umi) in enumerate(BARCODES)
        ],
    )
    write_fastq(
        read2, [(f"read{index}/2", "GATTACAGAT") for index in range(len(BARCODES))]
    )
    return read1, read2


@pytest.fixture
def outputs(tmp_path):
    return {
        "out1_path": tmp_path / "out" / "out_R1.fastq.gz",
        "out2_path": tmp_path / "out" / "out_R2.fastq.gz",
        "histogram_path": tmp_path / "out" / "histogram.tsv",
    }


def run(inputs, outputs, chemistry_def, **kwargs):
    outputs["out1_path"].parent.mkdir(exist_ok=True)
    options = {"whitelist_method": "top_n", "expected_barcodes": 2}
    options.update(kwargs)
    return pipeline.run_to_fastq(
        read1_path=inputs[0],
        read2_path=inputs[1],
        chemistry=chemistry_def,
        **outputs,
        **options,
    )


@pytest.mark.dependency()
def test_run_to_fastq(inputs, outputs, chemistry_def):
    summary, whitelist_report = run(inputs, outputs, chemistry_def, batch_size=3)
    assert summary.as_dict() == {
        "malformed_policy": "skip",
        "total": 10,
        "exact": 8,
        "corrected": 1,
        "ambiguous": 0,
        "uncorrectable": 0,
        "malformed": 1,
        "written": 9,
    }
    assert whitelist_report["abundance_threshold"] == 3
    assert whitelist_report["barcodes"] == 2
    assert whitelist_report["distinct_by_status"] == {"corrected": 1, "exact": 2}
    assert outputs["histogram_path"].read_text() == (
        "barcode\tcount\nAAAA\t5\nTTTT\t3\nAAAT\t1\n"
    )

    read1_lines = read_fastq_lines(outputs["out1_path"])
    read2_lines = read_fastq_lines(outputs["out2_path"])
    assert len(read1_lines) == len(read2_lines) == 9 * 4
    assert read1_lines[0] == "@AAAA_CCCC_read0 CB:Z:AAAA\tCR:Z:AAAA\tUB:Z:CCCC\tXS:Z:exact"
    assert read1_lines[1] == "AAAACCCCACGTAC"
    assert read1_lines[3] == "F" * 14
    assert read1_lines[12] == (
        "@AAAA_CCCA_read3 CB:Z:AAAA\tCR:Z:AAAT\tUB:Z:CCCA\tXS:Z:corrected"
    )
    # the short read 4 is skipped
    assert read1_lines[16].startswith("@AAAA_CCTT_read5 ")
    assert read1_lines[0::4] == read2_lines[0::4]
    assert set(read2_lines[1::4]) == {"GATTACAGAT"}
    assert not list(outputs["out1_path"].parent.glob("*.tmp"))


@pytest.mark.dependency(depends=["test_run_to_fastq"])
def test_run_to_fastq_is_deterministic(inputs, outputs, chemistry_def, tmp_path):
    run(inputs, outputs, chemistry_def, batch_size=1, queue_size=1)
    other_outputs = {
        name: tmp_path / "other" / path.name for name, path in outputs.items()
    }
    run(inputs, other_outputs, chemistry_def, batch_size=4)
    for name, path in outputs.items():
        assert path.read_bytes() == other_outputs[name].read_bytes()


def test_first_n(inputs, outputs, chemistry_def):
    summary, _ = run(inputs, outputs, chemistry_def, first_n=4)
    assert summary.total == 4
    assert summary.written == 4


def test_barcode_read_trim(inputs, outputs, chemistry_def):
    trimmed = Chemistry(
        name="trimmed",
        barcode_segments=chemistry_def.barcode_segments,
        umi_barcode_start=5,
        umi_barcode_end=8,
        barcode_read_trim=8,
    )
    run(inputs, outputs, trimmed)
    read1_lines = read_fastq_lines(outputs["out1_path"])
    assert set(read1_lines[1::4]) == {"ACGTAC"}
    assert set(read1_lines[3::4]) == {"FFFFFF"}
    assert set(read_fastq_lines(outputs["out2_path"])[1::4]) == {"GATTACAGAT"}


def test_empty_whitelist(inputs, outputs, chemistry_def):
    summary, whitelist_report = run(
        inputs, outputs, chemistry_def, whitelist_method="min_count", min_count=100
    )
    assert whitelist_report["barcodes"] == 0
    assert summary.uncorrectable == 9
    assert summary.written == 9


def test_strict_policy(inputs, outputs, chemistry_def):
    with pytest.raises(MalformedReadError) as error:
        run(inputs, outputs, chemistry_def, malformed_policy="strict")
    assert error.value.record_index == 4
    assert not list(outputs["out1_path"].parent.iterdir())


def test_pairing_mismatch_leaves_no_output(inputs, outputs, chemistry_def):
    write_fastq(inputs[1], [(f"read{index}/2", "GATTACAGAT") for index in range(9)])
    with pytest.raises(PairingMismatchError) as error:
        run(inputs, outputs, chemistry_def, batch_size=2)
    assert error.value.record_index == 9
    assert not list(outputs["out1_path"].parent.iterdir())


def test_knee_on_single_barcode(tmp_path, outputs, chemistry_def):
    read1 = tmp_path / "single_R1.fastq.gz"
    read2 = tmp_path / "single_R2.fastq.gz"
    write_fastq(read1, [(f"read{index}/1", "AAAACCCCACGTAC") for index in range(5)])
    write_fastq(read2, [(f"read{index}/2", "GATTACAGAT") for index in range(5)])
    summary, whitelist_report = run(
        (read1, read2), outputs, chemistry_def, whitelist_method="knee"
    )
    assert whitelist_report["barcodes"] == 0
    assert whitelist_report["abundance_threshold"] is None
    assert summary.uncorrectable == 5
    assert summary.written == 5
    assert outputs["histogram_path"].read_text() == "barcode\tcount\nAAAA\t5\n"


def test_histogram_failure_leaves_no_output(inputs, outputs, chemistry_def, monkeypatch):
    def failing_histogram(histogram_df, path):
        with open(io.get_temp_path(path), "w") as partial:
            partial.write("barcode\tcount\n")
        raise OSError("disk full")

    monkeypatch.setattr(pipeline.io, "write_histogram", failing_histogram)
    with pytest.raises(OSError):
        run(inputs, outputs, chemistry_def)
    assert not list(outputs["out1_path"].parent.iterdir())


def test_segment_reference(tmp_path, outputs):
    split_pool = load_chemistry_file(os.path.join(TEST_DATA, "chemistries", "split_pool.yaml"))
    read2_sequences = [
        "AAAAACGTGGGGCCCCGATTACA",
        "AAAAACGTGGGGCCCAGATTACA",
        "CCCCACGTTTTTGGGGGATTACA",
        "AAAAACGTAAAAGGGGGATTACA",
        "AAAAACGTAAAAGGGAGATTACA",
        "AAAAACGTAAAAGGGCGATTACA",
        "AAAAACGTGGGTGGGCGATTACA",
    ]
    read1 = tmp_path / "split_R1.fastq.gz"
    read2 = tmp_path / "split_R2.fastq.gz"
    write_fastq(read1, [(f"read{index}/1", "ACGTACGT") for index in range(7)])
    write_fastq(
        read2, [(f"read{index}/2", sequence) for index, sequence in enumerate(read2_sequences)]
    )
    summary, whitelist_report = run(
        (read1, read2),
        outputs,
        split_pool,
        whitelist_method="min_count",
        min_count=1,
        segment_reference_path=os.path.join(
            TEST_DATA, "segment_references", "pass", "split_pool.tsv"
        ),
    )
    assert whitelist_report["barcodes"] == 2
    assert summary.exact == 3
    assert summary.corrected == 1
    assert summary.uncorrectable == 3
    read2_lines = read_fastq_lines(outputs["out2_path"])
    assert read2_lines[0].startswith("@AAAA.GGGG_CCCC_read0 ")
    assert read2_lines[1] == "GATTACA"
    assert read2_lines[24].endswith("CR:Z:AAAA.GGGT\tUB:Z:GGGC\tXS:Z:corrected")


def test_missing_barcode_mapping(chemistry_def):
    summary = pipeline.RunSummary(malformed_policy="skip")
    batch = [
        io.PairedRead(
            0,
            io.FastqRecord("r0", "GGGGCCCC", "FFFFFFFF"),
            io.FastqRecord("r0", "ACGT", "FFFF"),
        )
    ]
    with pytest.raises(InvariantViolation):
        pipeline.process_batch(batch, chemistry_def, {}, summary)


def test_summary_check():
    summary = pipeline.RunSummary(
        malformed_policy="skip", total=3, exact=1, corrected=1, malformed=1, written=2
    )
    summary.check()
    summary.written = 1
    with pytest.raises(InvariantViolation):
        summary.check()
    summary.written = 2
    summary.total = 4
    with pytest.raises(InvariantViolation):
        summary.check()


def test_staged_pipeline_cancels_on_error():
    staged = pipeline.StagedPipeline(queue_size=1)
    handoff = staged.make_queue()

    def endless(pipeline_, out_queue):
        for number in itertools.count():
            if not pipeline_.put(out_queue, [number]):
                return

    def failing(pipeline_, in_queue):
        for _ in pipeline_.consume(in_queue):
            raise ValueError("processing failed")

    with pytest.raises(ValueError):
        staged.run([("reader", endless, (handoff,)), ("processor", failing, (handoff,))])
    assert staged.cancelled.is_set()
