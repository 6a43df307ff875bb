"""Barcode and UMI layouts of the supported library chemistries."""
import logging
import os

from dataclasses import dataclass
from argparse import Namespace

import yaml

from quick_bc.constants import SEGMENT_SEPARATOR
from quick_bc.errors import ConfigurationError

logger = logging.getLogger(__name__)

CHEMISTRY_FOLDER = os.path.join(os.path.dirname(__file__), "chemistries")
READ_CHOICES = ("R1", "R2")


@dataclass(frozen=True)
class Chemistry:
    name: str
    barcode_segments: tuple[tuple[int, int], ...]
    umi_barcode_start: int | None = None
    umi_barcode_end: int | None = None
    barcode_read: str = "R1"
    barcode_read_trim: int = 0

    @property
    def barcode_length(self) -> int:
        """Length of the extracted barcode, separators included."""
        segments = sum(stop - start + 1 for start, stop in self.barcode_segments)
        return segments + len(self.barcode_segments) - 1

    @property
    def umi_length(self) -> int:
        if self.umi_barcode_start is None:
            return 0
        return self.umi_barcode_end - self.umi_barcode_start + 1

    @property
    def min_read_length(self) -> int:
        """Shortest barcode read that still holds every segment and the UMI.

        With a trim, at least one base has to be left after it.
        """
        ends = [stop for _, stop in self.barcode_segments]
        if self.umi_barcode_end is not None:
            ends.append(self.umi_barcode_end)
        if self.barcode_read_trim:
            ends.append(self.barcode_read_trim + 1)
        return max(ends)

    def describe(self) -> dict:
        segments = [f"{start}-{stop}" for start, stop in self.barcode_segments]
        umi = (
            f"{self.umi_barcode_start}-{self.umi_barcode_end}"
            if self.umi_barcode_start is not None
            else None
        )
        return {
            "name": self.name,
            "barcode_read": self.barcode_read,
            "barcode_segments": segments,
            "segment_separator": SEGMENT_SEPARATOR,
            "umi": umi,
            "barcode_read_trim": self.barcode_read_trim,
        }


def check_chemistry(chemistry_def: Chemistry) -> Chemistry:
    """Validate the positions of a chemistry definition.

    Args:
        chemistry_def (Chemistry): Definition to check

    Raises:
        ConfigurationError: If positions are not usable for slicing

    Returns:
        Chemistry: The same definition
    """
    if not chemistry_def.barcode_segments:
        raise ConfigurationError(
            f"Chemistry {chemistry_def.name} does not define any barcode position."
        )
    ranges = list(chemistry_def.barcode_segments)
    if chemistry_def.umi_barcode_start is not None:
        if chemistry_def.umi_barcode_end is None:
            raise ConfigurationError("UMI first base given without a last base.")
        ranges.append((chemistry_def.umi_barcode_start, chemistry_def.umi_barcode_end))
    for start, stop in ranges:
        if start < 1 or stop < start:
            raise ConfigurationError(
                f"Invalid positions {start}-{stop} in chemistry {chemistry_def.name}. "
                "Positions are 1-based and the last base can't be before the first."
            )
    if chemistry_def.barcode_read not in READ_CHOICES:
        raise ConfigurationError(
            f"Barcode read must be one of {','.join(READ_CHOICES)}, "
            f"got {chemistry_def.barcode_read}"
        )
    if chemistry_def.barcode_read_trim < 0:
        raise ConfigurationError("Barcode read trim can't be negative.")
    return chemistry_def


def parse_chemistry_definition(name: str, chemistry_defs: dict) -> Chemistry:
    """Build a chemistry from a definitions dictionary.

    The structure follows the chemistry definitions files:

        barcode_read: R2
        barcode_structure_indexes:
            cell_barcode:
                - {start: 37, stop: 44}
                - {start: 25, stop: 32}
            umi_barcode: {start: 45, stop: 52}
        sequence_structure_indexes:
            start: 53

    `cell_barcode` can also be a single mapping instead of a list.
    """
    try:
        indexes = chemistry_defs["barcode_structure_indexes"]
        cell_barcode = indexes["cell_barcode"]
        if isinstance(cell_barcode, dict):
            cell_barcode = [cell_barcode]
        segments = tuple(
            (int(segment["start"]), int(segment["stop"])) for segment in cell_barcode
        )
        umi = indexes.get("umi_barcode")
        sequence_start = chemistry_defs.get("sequence_structure_indexes", {}).get(
            "start", 1
        )
        chemistry_def = Chemistry(
            name=chemistry_defs.get("name", name),
            barcode_segments=segments,
            umi_barcode_start=int(umi["start"]) if umi else None,
            umi_barcode_end=int(umi["stop"]) if umi else None,
            barcode_read=chemistry_defs.get("barcode_read", "R1"),
            barcode_read_trim=int(sequence_start) - 1,
        )
    except (KeyError, TypeError, ValueError) as error:
        raise ConfigurationError(
            f"Chemistry definition {name} is missing or has an invalid field: {error}"
        ) from error
    return check_chemistry(chemistry_def)


def load_chemistry_file(path: str) -> Chemistry:
    """Load a chemistry from a YAML file or from the name of a bundled one."""
    if not os.path.exists(path):
        bundled = os.path.join(CHEMISTRY_FOLDER, f"{path}.yaml")
        if not os.path.exists(bundled):
            raise ConfigurationError(
                f"Chemistry {path} is neither a file nor one of: "
                f"{', '.join(list_chemistries())}"
            )
        path = bundled
    with open(path, encoding="utf-8") as chemistry_file:
        chemistry_defs = yaml.safe_load(chemistry_file)
    if not isinstance(chemistry_defs, dict):
        raise ConfigurationError(f"Chemistry file {path} is not a mapping.")
    name = os.path.splitext(os.path.basename(path))[0]
    return parse_chemistry_definition(name, chemistry_defs)


def list_chemistries() -> list[str]:
    return sorted(
        os.path.splitext(filename)[0]
        for filename in os.listdir(CHEMISTRY_FOLDER)
        if filename.endswith(".yaml")
    )


def create_chemistry_definition(args: Namespace) -> Chemistry:
    if args.cb_first is None or args.cb_last is None:
        raise ConfigurationError(
            "Either --chemistry or both -cbf and -cbl are required."
        )
    if (args.umi_first is None) != (args.umi_last is None):
        raise ConfigurationError("-umif and -umil have to be given together.")
    chemistry_def = Chemistry(
        name="custom",
        barcode_segments=((args.cb_first, args.cb_last),),
        umi_barcode_start=args.umi_first,
        umi_barcode_end=args.umi_last,
        barcode_read=args.barcode_read,
        barcode_read_trim=args.start_trim,
    )
    return check_chemistry(chemistry_def)


def setup_chemistry(args: Namespace) -> Chemistry:
    if args.chemistry:
        chemistry_def = load_chemistry_file(args.chemistry)
    else:
        chemistry_def = create_chemistry_definition(args)
    logger.info(
        "Using chemistry %s: barcode on %s at %s, UMI %s",
        chemistry_def.name,
        chemistry_def.barcode_read,
        ",".join(f"{start}-{stop}" for start, stop in chemistry_def.barcode_segments),
        chemistry_def.describe()["umi"] or "not set",
    )
    return chemistry_def
