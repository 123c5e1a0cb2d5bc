#!/usr/bin/env python3
"""
CSV Key Diff - Keyed Comparison of Two CSV Files

Features:
- Composite keys built from one or more user-specified columns
- Per-cell mismatch detection with an ignore-list
- Rows present in only one file reported with a readable preview
- Bounded terminal output that never changes the summary counts
- Optional multi-sheet Excel report with the full, untruncated differences
"""

import os
import sys
import logging
import argparse
from dataclasses import dataclass, field
from enum import Enum

import pandas as pd


__version__ = "0.2.0"

logger = logging.getLogger(__name__)

KEY_SEPARATOR = '|'
PREVIEW_SEPARATOR = ','
PREVIEW_WIDTH = 50
ELLIPSIS = '...'
NARROW_ELLIPSIS = '…'

DEFAULT_MAX_ROWS = 20
DEFAULT_MAX_CELL_WIDTH = 30

CANDIDATE_DELIMITERS = (',', '|', '\t', ';', '~')
DELIMITER_NAMES = {',': 'comma', '|': 'pipe', '\t': 'tab', '~': 'tilde', ';': 'semicolon'}


# =============================================================================
# ERRORS
# =============================================================================

class KeyDiffError(Exception):
    """Base class for every fatal comparison error."""


class InvalidConfiguration(KeyDiffError):
    """The key/ignore columns or display limits cannot be used."""


class MissingKeyColumn(KeyDiffError):
    """A key column is absent from one file's header."""

    def __init__(self, file, column):
        self.file = file
        self.column = column
        super().__init__(f"Key column '{column}' not found in {file}")


class DatasetLoadError(KeyDiffError):
    """A CSV file could not be read."""


class ReportWriteError(KeyDiffError):
    """The Excel report cannot hold the comparison result."""


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class DiffConfig:
    """Settings threaded through indexing, diffing and truncation."""

    key_columns: tuple
    ignore_columns: frozenset = frozenset()
    max_rows: int = DEFAULT_MAX_ROWS
    max_cell_width: int = DEFAULT_MAX_CELL_WIDTH
    truncate: bool = True

    @classmethod
    def from_args(cls, args):
        return cls(
            key_columns=tuple(args.key or ()),
            ignore_columns=frozenset(args.ignore or ()),
            max_rows=args.max_rows,
            max_cell_width=args.max_cell_width,
            truncate=not args.no_truncate,
        )


def validate_config(config, headers1, headers2):
    """
    Reject configurations that can never produce a meaningful diff.

    Runs before any file is indexed so that nothing is reported for a
    misconfigured invocation.
    """
    if not config.key_columns:
        raise InvalidConfiguration("At least one key column is required (use --key)")

    seen = set()
    for col in config.key_columns:
        if col in seen:
            raise InvalidConfiguration(f"Key column '{col}' is listed more than once")
        seen.add(col)

    both_ways = [c for c in config.key_columns if c in config.ignore_columns]
    if both_ways:
        raise InvalidConfiguration(
            f"Column(s) used as key and ignored at the same time: {', '.join(both_ways)}"
        )

    known = set(headers1) | set(headers2)
    unknown = sorted(c for c in config.ignore_columns if c not in known)
    if unknown:
        raise InvalidConfiguration(
            f"Ignored column(s) not found in either file: {', '.join(unknown)}"
        )

    if config.max_rows < 0:
        raise InvalidConfiguration(f"--max-rows must be >= 0, got {config.max_rows}")
    if config.max_cell_width < 1:
        raise InvalidConfiguration(f"--max-cell-width must be >= 1, got {config.max_cell_width}")


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class Dataset:
    """Parsed content of one input file."""

    name: str
    headers: tuple
    rows: tuple


@dataclass(frozen=True)
class DatasetIndex:
    """Rows of one file keyed by composite key, in first-seen key order."""

    name: str
    headers: tuple
    rows: dict
    keys: tuple
    duplicate_count: int = 0

    def __len__(self):
        return len(self.keys)

    def __contains__(self, key):
        return key in self.rows


class ColumnStatus(Enum):
    MATCH = 'Match'
    ONLY_IN_FILE1 = 'OnlyInFile1'
    ONLY_IN_FILE2 = 'OnlyInFile2'


@dataclass(frozen=True)
class HeaderStatus:
    column: str
    status: ColumnStatus


@dataclass(frozen=True)
class HeaderComparison:
    columns: tuple

    @property
    def shared_columns(self):
        return [h.column for h in self.columns if h.status is ColumnStatus.MATCH]

    @property
    def only_in_file1(self):
        return [h.column for h in self.columns if h.status is ColumnStatus.ONLY_IN_FILE1]

    @property
    def only_in_file2(self):
        return [h.column for h in self.columns if h.status is ColumnStatus.ONLY_IN_FILE2]

    @property
    def matches(self):
        return all(h.status is ColumnStatus.MATCH for h in self.columns)


@dataclass(frozen=True)
class CellDiff:
    key: str
    column: str
    value1: str
    value2: str


@dataclass(frozen=True)
class MissingIn:
    """A row whose key exists only in the other file.

    ``file_index`` is the file that lacks the row (1 or 2).
    """

    key: str
    file_index: int
    representative_value: str


@dataclass(frozen=True)
class DiffSummary:
    total: int = 0
    cell_diffs: int = 0
    missing_in_file1: int = 0
    missing_in_file2: int = 0


@dataclass(frozen=True)
class DiffResult:
    records: tuple
    summary: DiffSummary

    def __len__(self):
        return len(self.records)


@dataclass(frozen=True)
class DisplayRow:
    key: str
    column: str
    file1: str
    file2: str


@dataclass(frozen=True)
class TruncatedView:
    """What the table renderer shows, plus the untouched summary counts."""

    rows: tuple
    summary: DiffSummary
    remainder: int = 0
    truncated: bool = False


@dataclass(frozen=True)
class Comparison:
    index1: DatasetIndex
    index2: DatasetIndex
    headers: HeaderComparison
    result: DiffResult
    config: DiffConfig = field(repr=False)


# =============================================================================
# ROW INDEXER
# =============================================================================

def make_key(row, key_columns):
    """Join the key column values in configured order."""
    return KEY_SEPARATOR.join(row.get(col, '') for col in key_columns)


def build_index(rows, headers, config, name):
    """
    Index one file's rows by composite key.

    Duplicate keys follow last-write-wins: the later row replaces the earlier
    one while the key keeps its first-seen position.
    """
    header_set = set(headers)
    for col in config.key_columns:
        if col not in header_set:
            raise MissingKeyColumn(name, col)

    index = {}
    order = []
    duplicates = 0
    for row in rows:
        key = make_key(row, config.key_columns)
        if key in index:
            duplicates += 1
        else:
            order.append(key)
        index[key] = row

    if duplicates:
        logger.warning(
            "%s: %d duplicate key occurrence(s), keeping the last row for each key",
            name, duplicates,
        )
    logger.debug("Indexed %s: %d rows, %d unique keys", name, len(rows), len(order))

    return DatasetIndex(name=name, headers=tuple(headers), rows=index,
                        keys=tuple(order), duplicate_count=duplicates)


# =============================================================================
# HEADER RECONCILER
# =============================================================================

def reconcile_headers(headers1, headers2):
    """Classify every column of either file as shared or one-sided."""
    set1 = set(headers1)
    set2 = set(headers2)

    ordered = []
    seen = set()
    for col in list(headers1) + list(headers2):
        if col in seen:
            continue
        seen.add(col)
        if col in set1 and col in set2:
            status = ColumnStatus.MATCH
        elif col in set1:
            status = ColumnStatus.ONLY_IN_FILE1
        else:
            status = ColumnStatus.ONLY_IN_FILE2
        ordered.append(HeaderStatus(col, status))

    comparison = HeaderComparison(tuple(ordered))
    if not comparison.matches:
        logger.warning(
            "Header mismatch between files (only in file1: %s; only in file2: %s). "
            "Comparing shared columns only.",
            ', '.join(comparison.only_in_file1) or '-',
            ', '.join(comparison.only_in_file2) or '-',
        )
    return comparison


# =============================================================================
# DIFF ENGINE
# =============================================================================

def comparison_columns(shared_columns, config):
    excluded = set(config.ignore_columns) | set(config.key_columns)
    return [c for c in shared_columns if c not in excluded]


def row_preview(row, headers):
    """Short comma-joined summary of a row, used for rows missing on one side."""
    text = PREVIEW_SEPARATOR.join(row.get(col, '') for col in headers)
    if len(text) >= PREVIEW_WIDTH:
        return text[:PREVIEW_WIDTH - len(ELLIPSIS)] + ELLIPSIS
    return text


def diff_indexes(index1, index2, shared_columns, config):
    """
    Produce every difference between two indexed files.

    Records follow file1's key order, then keys only found in file2 in
    file2's order. Within one key, cell differences follow the shared
    column order. Counts are accumulated while the records are produced.
    """
    columns = comparison_columns(shared_columns, config)
    logger.debug("Comparing %d column(s): %s", len(columns), ', '.join(columns))

    records = []
    cell_diffs = 0
    missing_in_file1 = 0
    missing_in_file2 = 0

    for key in index1.keys:
        row1 = index1.rows[key]
        row2 = index2.rows.get(key)
        if row2 is None:
            records.append(MissingIn(key, 2, row_preview(row1, index1.headers)))
            missing_in_file2 += 1
            continue
        for col in columns:
            value1 = row1.get(col, '')
            value2 = row2.get(col, '')
            if value1 != value2:
                records.append(CellDiff(key, col, value1, value2))
                cell_diffs += 1

    for key in index2.keys:
        if key in index1:
            continue
        records.append(MissingIn(key, 1, row_preview(index2.rows[key], index2.headers)))
        missing_in_file1 += 1

    summary = DiffSummary(
        total=cell_diffs + missing_in_file1 + missing_in_file2,
        cell_diffs=cell_diffs,
        missing_in_file1=missing_in_file1,
        missing_in_file2=missing_in_file2,
    )
    return DiffResult(tuple(records), summary)


def compare_datasets(dataset1, dataset2, config):
    """Validate, index both files, reconcile headers and diff."""
    validate_config(config, dataset1.headers, dataset2.headers)

    index1 = build_index(dataset1.rows, dataset1.headers, config, dataset1.name)
    index2 = build_index(dataset2.rows, dataset2.headers, config, dataset2.name)

    headers = reconcile_headers(dataset1.headers, dataset2.headers)
    result = diff_indexes(index1, index2, headers.shared_columns, config)

    return Comparison(index1=index1, index2=index2, headers=headers,
                      result=result, config=config)


# =============================================================================
# TRUNCATION PLANNER
# =============================================================================

def truncate_cell(value, width):
    if len(value) <= width:
        return value
    marker = NARROW_ELLIPSIS if width <= len(ELLIPSIS) else ELLIPSIS
    return value[:width - len(marker)] + marker


def to_display_row(record):
    """Flatten a difference record into the four displayed columns."""
    if isinstance(record, CellDiff):
        return DisplayRow(record.key, record.column, record.value1, record.value2)
    if isinstance(record, MissingIn):
        if record.file_index == 2:
            return DisplayRow(record.key, '[missing in file2]', record.representative_value, '')
        return DisplayRow(record.key, '[missing in file1]', '', record.representative_value)
    raise TypeError(f"Unknown difference record: {type(record).__name__}")


def plan_view(result, config):
    """
    Decide which records to display.

    Only display copies are shortened; the summary counts always describe
    the full result.
    """
    if not config.truncate:
        rows = tuple(to_display_row(r) for r in result.records)
        return TruncatedView(rows=rows, summary=result.summary)

    width = config.max_cell_width
    records = result.records[:config.max_rows]
    remainder = len(result.records) - len(records)

    shown = []
    for record in records:
        r = to_display_row(record)
        shown.append(DisplayRow(
            truncate_cell(r.key, width),
            truncate_cell(r.column, width),
            truncate_cell(r.file1, width),
            truncate_cell(r.file2, width),
        ))
    return TruncatedView(rows=tuple(shown), summary=result.summary,
                         remainder=remainder, truncated=remainder > 0)


# =============================================================================
# CSV LOADING
# =============================================================================

def detect_delimiter(line):
    """Pick the most frequent candidate delimiter in a header line."""
    counts = {delim: line.count(delim) for delim in CANDIDATE_DELIMITERS}
    best = max(counts, key=counts.get)
    if counts[best] == 0:
        return ','
    return best


def load_csv_file(filepath, source_name, delimiter=None, encoding='utf-8'):
    """Load a CSV file keeping every cell as its literal text."""
    if not os.path.exists(filepath):
        raise DatasetLoadError(f"{source_name} file not found: {filepath}")

    try:
        if delimiter is None:
            with open(filepath, 'r', encoding=encoding, errors='replace') as f:
                delimiter = detect_delimiter(f.readline())
            print(f"  Detected delimiter for {source_name}: "
                  f"{DELIMITER_NAMES.get(delimiter, repr(delimiter))}")

        # The header is read as an ordinary row: its width fixes the field
        # count, so a longer data row is a parse error instead of an index.
        raw = pd.read_csv(
            filepath,
            sep=delimiter,
            header=None,
            index_col=False,
            dtype=str,
            keep_default_na=False,
            encoding=encoding,
            engine='python' if len(delimiter) > 1 else 'c',
        )
    except pd.errors.EmptyDataError as e:
        raise DatasetLoadError(f"{source_name} file is empty: {filepath}") from e
    except (pd.errors.ParserError, UnicodeDecodeError, OSError) as e:
        raise DatasetLoadError(f"Could not read {source_name} ({filepath}): {e}") from e

    raw = raw.fillna('')
    headers = tuple(raw.iloc[0])
    repeated = sorted({h for h in headers if headers.count(h) > 1})
    if repeated:
        raise DatasetLoadError(
            f"{source_name} has repeated column name(s): {', '.join(repeated)}"
        )

    rows = tuple(dict(zip(headers, values)) for values in raw.iloc[1:].itertuples(index=False))

    print(f"  [OK] Loaded {source_name}: {len(rows):,} rows, {len(headers)} columns")
    return Dataset(name=source_name, headers=headers, rows=rows)


# =============================================================================
# PRESENTATION
# =============================================================================

TABLE_COLUMNS = ['key', 'column', 'file1', 'file2']


def render_table(view):
    """Render the truncated view and its summary as terminal text."""
    summary = view.summary
    if summary.total == 0:
        return "[OK] No differences found."

    data = [[r.key, r.column, r.file1, r.file2] for r in view.rows]
    if view.remainder:
        data.append([ELLIPSIS, f"... ({view.remainder} more rows) ...", ELLIPSIS, ELLIPSIS])

    df = pd.DataFrame(data, columns=TABLE_COLUMNS)
    lines = [df.to_string(index=False, justify='left'), ""]

    if view.truncated:
        lines.append(f"Summary: {summary.total} total differences found")
        lines.append(f"   Showing {len(view.rows)} rows "
                     f"(use --max-rows to adjust or --no-truncate to show all)")
    else:
        lines.append(f"Total differences: {summary.total}")

    lines.append(f"   Cell differences: {summary.cell_diffs}, "
                 f"missing in file1: {summary.missing_in_file1}, "
                 f"missing in file2: {summary.missing_in_file2}")
    return "\n".join(lines)


EXCEL_WRITER_OPTIONS = {
    # Cell text is data; never let it become a formula or hyperlink.
    'strings_to_formulas': False,
    'strings_to_urls': False,
}

# Worksheet limits; the header row takes one of the sheet's rows.
EXCEL_MAX_ROWS = 1048576
EXCEL_MAX_CELL_CHARS = 32767


def check_excel_limits(result):
    """
    Make sure the full Differences sheet fits in one worksheet.

    Called before anything is printed or written, so an oversized report
    fails the run without leaving a partial workbook behind.
    """
    capacity = EXCEL_MAX_ROWS - 1
    if len(result.records) > capacity:
        raise ReportWriteError(
            f"{len(result.records):,} differences do not fit in one Excel sheet "
            f"(limit {capacity:,} rows); rerun without --excel-output"
        )


def record_to_report_row(record):
    if isinstance(record, CellDiff):
        return ['CELL_DIFF', record.key, record.column, record.value1, record.value2]
    if isinstance(record, MissingIn):
        if record.file_index == 2:
            return ['MISSING_IN_FILE2', record.key, 'ALL', record.representative_value, '']
        return ['MISSING_IN_FILE1', record.key, 'ALL', '', record.representative_value]
    raise TypeError(f"Unknown difference record: {type(record).__name__}")


def write_excel_report(comparison, output_path, file1=None, file2=None):
    """
    Write the Summary, Headers and Differences sheets.

    The Differences sheet always holds the full result, whatever the
    terminal truncation settings were.
    """
    result = comparison.result
    check_excel_limits(result)

    summary = result.summary
    config = comparison.config
    index1 = comparison.index1
    index2 = comparison.index2

    counts = [
        ("File 1", file1 or index1.name),
        ("File 2", file2 or index2.name),
        ("Key columns", ', '.join(config.key_columns)),
        ("Ignored columns", ', '.join(sorted(config.ignore_columns))),
        ("Rows in file 1 (unique keys)", len(index1)),
        ("Rows in file 2 (unique keys)", len(index2)),
        ("Duplicate keys in file 1", index1.duplicate_count),
        ("Duplicate keys in file 2", index2.duplicate_count),
        ("Total differences", summary.total),
        ("Cell differences", summary.cell_diffs),
        ("Missing in file 1", summary.missing_in_file1),
        ("Missing in file 2", summary.missing_in_file2),
    ]
    summary_df = pd.DataFrame(counts, columns=["Metric", "Value"])

    set1 = set(index1.headers)
    set2 = set(index2.headers)
    headers_df = pd.DataFrame(
        [[h.column, h.status.value,
          'Y' if h.column in set1 else 'N',
          'Y' if h.column in set2 else 'N']
         for h in comparison.headers.columns],
        columns=["Column", "Status", "In file 1", "In file 2"],
    )

    diffs_df = pd.DataFrame(
        [record_to_report_row(r) for r in result.records],
        columns=["Type", "Key", "Column", "File 1", "File 2"],
    )

    too_long = sum(
        1 for row in diffs_df.itertuples(index=False) for value in row
        if len(value) > EXCEL_MAX_CELL_CHARS
    )
    if too_long:
        logger.warning(
            "%d value(s) exceed Excel's %d character cell limit and are cut in the report",
            too_long, EXCEL_MAX_CELL_CHARS,
        )

    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with pd.ExcelWriter(output_path, engine='xlsxwriter',
                        engine_kwargs={'options': EXCEL_WRITER_OPTIONS}) as writer:
        workbook = writer.book
        fmt_header = workbook.add_format({'bold': True, 'bg_color': '#D3D3D3', 'border': 1})
        fmt_only = workbook.add_format({'bg_color': '#FFF3CD'})

        summary_df.to_excel(writer, sheet_name="Summary", index=False)
        ws_summary = writer.sheets["Summary"]
        ws_summary.set_column("A:A", 30)
        ws_summary.set_column("B:B", 40)
        ws_summary.write_url("D2", "internal:'Headers'!A1", string="Go to Headers")
        ws_summary.write_url("D3", "internal:'Differences'!A1", string="Go to Differences")

        headers_df.to_excel(writer, sheet_name="Headers", index=False)
        ws_headers = writer.sheets["Headers"]
        ws_headers.set_column("A:A", 30)
        ws_headers.set_column("B:D", 14)
        for row_idx, h in enumerate(comparison.headers.columns, start=1):
            if h.status is not ColumnStatus.MATCH:
                ws_headers.set_row(row_idx, None, fmt_only)

        diffs_df.to_excel(writer, sheet_name="Differences", index=False)
        ws_diffs = writer.sheets["Differences"]
        ws_diffs.set_column("A:A", 18)
        ws_diffs.set_column("B:C", 24)
        ws_diffs.set_column("D:E", 40)
        ws_diffs.freeze_panes(1, 0)

        for ws, df in ((ws_summary, summary_df), (ws_headers, headers_df), (ws_diffs, diffs_df)):
            for col_idx, col_name in enumerate(df.columns):
                ws.write(0, col_idx, col_name, fmt_header)

    return output_path


# =============================================================================
# COMMAND LINE
# =============================================================================

def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="csv-keydiff",
        description="Compare two CSV files based on key column(s), with options to ignore some columns.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Repeat --key for composite keys and --ignore for several ignored columns.",
    )

    parser.add_argument("--file1", required=True, help="First CSV file path")
    parser.add_argument("--file2", required=True, help="Second CSV file path")
    parser.add_argument("-k", "--key", action="append", default=[],
                        help="Key column (repeat for composite keys)")
    parser.add_argument("-i", "--ignore", action="append", default=[],
                        help="Column to ignore when comparing (repeatable)")
    parser.add_argument("--max-rows", dest="max_rows", type=int, default=DEFAULT_MAX_ROWS,
                        help=f"Maximum number of rows to display (default: {DEFAULT_MAX_ROWS})")
    parser.add_argument("--max-cell-width", dest="max_cell_width", type=int,
                        default=DEFAULT_MAX_CELL_WIDTH,
                        help=f"Maximum width for cell content (default: {DEFAULT_MAX_CELL_WIDTH})")
    parser.add_argument("--no-truncate", dest="no_truncate", action="store_true", default=False,
                        help="Show all differences without truncation")
    parser.add_argument("--excel-output", dest="excel_output",
                        help="Also write a multi-sheet Excel report to this path")
    parser.add_argument("--delimiter", default=None,
                        help="Field delimiter (detected from the header line when omitted)")
    parser.add_argument("--encoding", default="utf-8", help="File encoding (default: utf-8)")
    parser.add_argument("-v", "--verbose", action="store_true", default=False,
                        help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser.parse_args(argv)


def configure_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="  [!] %(message)s",
        stream=sys.stderr,
    )


def run(args):
    """Execute one comparison; raises KeyDiffError on fatal problems."""
    config = DiffConfig.from_args(args)

    print(f"\nFile 1: {args.file1}")
    print(f"File 2: {args.file2}")
    print(f"Keys: {', '.join(config.key_columns) if config.key_columns else '(none)'}")
    if config.ignore_columns:
        print(f"Ignoring: {', '.join(sorted(config.ignore_columns))}")

    if not config.key_columns:
        raise InvalidConfiguration("At least one key column is required (use --key)")

    print("\n" + "-" * 40)
    print("Loading files...")
    dataset1 = load_csv_file(args.file1, "file1", args.delimiter, args.encoding)
    dataset2 = load_csv_file(args.file2, "file2", args.delimiter, args.encoding)

    comparison = compare_datasets(dataset1, dataset2, config)
    if args.excel_output:
        check_excel_limits(comparison.result)
    view = plan_view(comparison.result, config)

    print("\n" + "=" * 60)
    print("DIFFERENCES")
    print("=" * 60 + "\n")
    print(render_table(view))

    if args.excel_output:
        path = write_excel_report(comparison, args.excel_output, args.file1, args.file2)
        print(f"\n[OK] Excel report saved to: {path}")

    return comparison


def main(argv=None):
    args = parse_arguments(argv)
    configure_logging(args.verbose)

    print("=" * 60)
    print(f"CSV Key Diff {__version__}")
    print("=" * 60)

    try:
        run(args)
    except KeyDiffError as e:
        print(f"\n[X] Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
