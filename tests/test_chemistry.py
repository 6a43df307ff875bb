import os

from argparse import Namespace

import pytest

from quick_bc import chemistry
from quick_bc.errors import ConfigurationError, MalformedReadError
from quick_bc.preprocessing import extract_barcode_umi

TEST_DATA = os.path.join(os.path.dirname(__file__), "test_data", "chemistries")


@pytest.fixture
def chemistry_args():
    return Namespace(
        chemistry=None,
        cb_first=1,
        cb_last=16,
        umi_first=17,
        umi_last=28,
        barcode_read="R1",
        start_trim=0,
    )


def test_list_chemistries():
    assert chemistry.list_chemistries() == ["10xv3", "atrandi"]


def test_atrandi_chemistry():
    chemistry_def = chemistry.load_chemistry_file("atrandi")
    assert chemistry_def.barcode_read == "R2"
    assert chemistry_def.barcode_read_trim == 44
    assert chemistry_def.min_read_length == 45
    assert chemistry_def.umi_length == 0
    linker = "GTCA"
    sequence = "AAAAAAAA" + linker + "CCCCCCCC" + linker + "GGGGGGGG" + linker + "TTTTTTTT"
    assert extract_barcode_umi(sequence + "ACGT", chemistry_def) == (
        "TTTTTTTT.GGGGGGGG.CCCCCCCC.AAAAAAAA",
        "",
    )
    assert chemistry_def.barcode_length == 35


def test_trimmed_read_needs_a_base_after_the_trim():
    chemistry_def = chemistry.load_chemistry_file("atrandi")
    linker = "GTCA"
    barcode_block = "AAAAAAAA" + linker + "CCCCCCCC" + linker + "GGGGGGGG" + linker + "TTTTTTTT"
    with pytest.raises(MalformedReadError):
        extract_barcode_umi(barcode_block, chemistry_def)
    assert extract_barcode_umi(barcode_block + "A", chemistry_def)[0] == (
        "TTTTTTTT.GGGGGGGG.CCCCCCCC.AAAAAAAA"
    )


def test_10xv3_chemistry():
    chemistry_def = chemistry.load_chemistry_file("10xv3")
    assert chemistry_def.barcode_segments == ((1, 16),)
    assert chemistry_def.umi_length == 12
    assert chemistry_def.barcode_read_trim == 0


def test_chemistry_file():
    chemistry_def = chemistry.load_chemistry_file(os.path.join(TEST_DATA, "split_pool.yaml"))
    assert chemistry_def.name == "split_pool"
    assert chemistry_def.barcode_segments == ((1, 4), (9, 12))
    assert (chemistry_def.umi_barcode_start, chemistry_def.umi_barcode_end) == (13, 16)
    assert chemistry_def.barcode_read_trim == 16
    assert chemistry_def.describe()["barcode_segments"] == ["1-4", "9-12"]


def test_broken_chemistry_file():
    with pytest.raises(ConfigurationError):
        chemistry.load_chemistry_file(os.path.join(TEST_DATA, "broken.yaml"))


def test_unknown_chemistry():
    with pytest.raises(ConfigurationError):
        chemistry.load_chemistry_file("not_a_chemistry")


def test_create_chemistry_definition(chemistry_args):
    chemistry_def = chemistry.setup_chemistry(chemistry_args)
    assert chemistry_def.name == "custom"
    assert chemistry_def.barcode_length == 16
    assert chemistry_def.min_read_length == 28


def test_chemistry_option_wins(chemistry_args):
    chemistry_args.chemistry = "atrandi"
    assert chemistry.setup_chemistry(chemistry_args).name == "atrandi"


@pytest.mark.parametrize(
    "changes",
    [
        {"cb_first": None},
        {"umi_last": None},
        {"cb_first": 0},
        {"cb_first": 17},
        {"start_trim": -1},
    ],
)
def test_invalid_positions(chemistry_args, changes):
    for name, value in changes.items():
        setattr(chemistry_args, name, value)
    with pytest.raises(ConfigurationError):
        chemistry.setup_chemistry(chemistry_args)
