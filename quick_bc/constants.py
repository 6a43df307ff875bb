# Polars column names
# Histogram and reference lists
BARCODE_COLUMN = "barcode"
COUNT_COLUMN = "count"
REFERENCE_COLUMN = "reference"
SUBSET_COLUMN = "subset"
REQUIRED_REFERENCE_HEADER = [REFERENCE_COLUMN]
STRIP_CHARS = '"0123456789- \t\n'

# Per round barcode lists (pos, well, bc)
ROUND_COLUMN = "pos"
WELL_COLUMN = "well"
ROUND_BARCODE_COLUMN = "bc"
REQUIRED_SEGMENT_HEADER = [ROUND_COLUMN, WELL_COLUMN, ROUND_BARCODE_COLUMN]

# Count summaries
FEATURE_COLUMN = "feature"
UNMAPPED_FEATURE = "*"
KEY_BARCODE = "barcode"
KEY_FEATURE = "feature"
KEY_BARCODE_FEATURE = "barcode_feature"
KEY_CHOICES = [KEY_BARCODE, KEY_FEATURE, KEY_BARCODE_FEATURE]

# Barcode status
STATUS_EXACT = "exact"
STATUS_CORRECTED = "corrected"
STATUS_AMBIGUOUS = "ambiguous"
STATUS_UNCORRECTABLE = "uncorrectable"

# Whitelist inference
WHITELIST_TOP_N = "top_n"
WHITELIST_KNEE = "knee"
WHITELIST_MIN_COUNT = "min_count"
WHITELIST_METHODS = [WHITELIST_TOP_N, WHITELIST_KNEE, WHITELIST_MIN_COUNT]

# Malformed read policy
POLICY_SKIP = "skip"
POLICY_STRICT = "strict"

# UMI deduplication in counting
UMI_DEDUP_NONE = "none"
UMI_DEDUP_EXACT = "exact"
UMI_DEDUP_DIRECTIONAL = "directional"
UMI_DEDUP_CHOICES = [UMI_DEDUP_NONE, UMI_DEDUP_EXACT, UMI_DEDUP_DIRECTIONAL]

# Read name / FASTQ header layout
NAME_SEPARATOR = "_"
SEGMENT_SEPARATOR = "."
BARCODE_TAG = "CB"
RAW_BARCODE_TAG = "CR"
UMI_TAG = "UB"
STATUS_TAG = "XS"

# Pipeline
DEFAULT_BATCH_SIZE = 10000
DEFAULT_QUEUE_SIZE = 8
PROGRESS_EVERY = 1000000
GZIP_LEVEL = 6
TEMP_SUFFIX = ".tmp"

# MTX format
MATRIX_MTX = "matrix.mtx"
FEATURES_MTX = "features.tsv.gz"
BARCODE_MTX = "barcodes.tsv.gz"
