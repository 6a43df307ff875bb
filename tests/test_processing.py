import random

from collections import Counter

import pytest
import Levenshtein
import polars as pl

from quick_bc import processing
from quick_bc.constants import SUBSET_COLUMN


def make_whitelist(barcodes, max_distance=1, threshold=1):
    subset_df = pl.DataFrame({SUBSET_COLUMN: barcodes}, schema={SUBSET_COLUMN: pl.String})
    return processing.Whitelist.from_subset(subset_df, threshold, max_distance)


@pytest.fixture
def barcodes_histogram():
    return Counter(
        {
            "TACATATTCTTTACTG": 5,
            "AACATATTCTTTACTG": 1,
            "CACATATTCTTTACTG": 1,
            "GACATATTCTTTACTG": 1,
            "GCTAGTCGTAGCTAGA": 5,
            "GCTAGTCGTAGCTAGT": 1,
            "GCTAGTCGTAGCTAGG": 1,
            "GCTAGTCGTAGCTAGC": 1,
            "TAGAGGGAGGTCAAGC": 5,
            "TAGAGGGACGTCAAGC": 1,
            "TAGAGGGATGTCAAGC": 1,
            "TAGAGGGAAGTCAAGC": 1,
        }
    )


@pytest.fixture
def whitelist():
    return make_whitelist(
        ["TACATATTCTTTACTG", "GCTAGTCGTAGCTAGA", "TAGAGGGAGGTCAAGC"]
    )


def test_chunk_boundaries():
    assert processing.chunk_boundaries(16, 2) == [(0, 8), (8, 16)]
    assert processing.chunk_boundaries(10, 3) == [(0, 4), (4, 7), (7, 10)]
    assert processing.chunk_boundaries(4, 1) == [(0, 4)]


def test_correct_barcodes(barcodes_histogram, whitelist):
    mapped_barcodes, status_counts = processing.correct_barcodes(
        barcodes_histogram, whitelist
    )
    expected_corrections = {
        "AACATATTCTTTACTG": "TACATATTCTTTACTG",
        "CACATATTCTTTACTG": "TACATATTCTTTACTG",
        "GACATATTCTTTACTG": "TACATATTCTTTACTG",
        "GCTAGTCGTAGCTAGT": "GCTAGTCGTAGCTAGA",
        "GCTAGTCGTAGCTAGG": "GCTAGTCGTAGCTAGA",
        "GCTAGTCGTAGCTAGC": "GCTAGTCGTAGCTAGA",
        "TAGAGGGACGTCAAGC": "TAGAGGGAGGTCAAGC",
        "TAGAGGGATGTCAAGC": "TAGAGGGAGGTCAAGC",
        "TAGAGGGAAGTCAAGC": "TAGAGGGAGGTCAAGC",
    }
    assert status_counts == Counter({"corrected": 9, "exact": 3})
    assert len(mapped_barcodes) == len(barcodes_histogram)
    for raw_barcode, corrected in expected_corrections.items():
        assert mapped_barcodes[raw_barcode] == (corrected, "corrected")
    for barcode in whitelist.barcodes:
        assert mapped_barcodes[barcode] == (barcode, "exact")


def test_correct_single_substitution():
    whitelist = make_whitelist(["AAAA", "TTTT"], threshold=900)
    assert processing.correct_barcode("AAAT", whitelist) == ("AAAA", "corrected")
    assert processing.correct_barcode("AAAA", whitelist) == ("AAAA", "exact")
    assert processing.correct_barcode("TTTT", whitelist) == ("TTTT", "exact")


def test_correct_ambiguous():
    whitelist = make_whitelist(["AAAA", "AATT"])
    assert processing.correct_barcode("AAAT", whitelist) == ("AAAT", "ambiguous")


def test_correct_uncorrectable():
    whitelist = make_whitelist(["AAAA", "TTTT"])
    assert processing.correct_barcode("GGGG", whitelist) == ("GGGG", "uncorrectable")
    # different length than the whitelist
    assert processing.correct_barcode("AAAAA", whitelist) == ("AAAAA", "uncorrectable")


def test_correct_prefers_closest():
    whitelist = make_whitelist(["AAAAAA", "AAATTT"], max_distance=2)
    assert processing.correct_barcode("AAAAAT", whitelist) == ("AAAAAA", "corrected")
    assert processing.correct_barcode("AAAAGT", whitelist) == ("AAAAGT", "ambiguous")


def test_no_correction_at_distance_zero():
    whitelist = make_whitelist(["AAAA"], max_distance=0)
    assert processing.correct_barcode("AAAT", whitelist) == ("AAAT", "uncorrectable")
    assert processing.correct_barcode("AAAA", whitelist) == ("AAAA", "exact")


def test_empty_whitelist():
    whitelist = make_whitelist([], threshold=None)
    assert len(whitelist) == 0
    assert processing.correct_barcode("AAAA", whitelist) == ("AAAA", "uncorrectable")


def test_split_barcodes():
    whitelist = make_whitelist(["AAAA.CCCC", "GGGG.TTTT"])
    assert processing.correct_barcode("AAAA.CCCA", whitelist) == (
        "AAAA.CCCC",
        "corrected",
    )


def test_index_full_scan():
    index = processing.BarcodeIndex(["AC", "GT"], max_distance=2)
    assert index.full_scan
    assert index.neighbours("AG") == [(1, "AC"), (2, "GT")]


def test_index_mixed_lengths():
    with pytest.raises(ValueError):
        processing.BarcodeIndex(["AAAA", "AAA"], max_distance=1)


@pytest.mark.parametrize("max_distance", [1, 2, 3])
def test_index_matches_full_scan(max_distance):
    rng = random.Random(42)
    barcodes = {"".join(rng.choice("ACGT") for _ in range(10)) for _ in range(300)}
    index = processing.BarcodeIndex(barcodes, max_distance=max_distance)
    for _ in range(300):
        query = list(rng.choice(sorted(barcodes)))
        for _ in range(rng.randint(0, max_distance + 1)):
            query[rng.randrange(10)] = rng.choice("ACGTN")
        query = "".join(query)
        expected = sorted(
            (Levenshtein.hamming(query, barcode), barcode)  # pylint: disable=no-member
            for barcode in barcodes
            if Levenshtein.hamming(query, barcode) <= max_distance  # pylint: disable=no-member
        )
        assert index.neighbours(query) == expected


def test_correction_independent_of_order(barcodes_histogram, whitelist):
    reversed_histogram = Counter(dict(reversed(list(barcodes_histogram.items()))))
    forward, _ = processing.correct_barcodes(barcodes_histogram, whitelist)
    backward, _ = processing.correct_barcodes(reversed_histogram, whitelist)
    assert forward == backward
