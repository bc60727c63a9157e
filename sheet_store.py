"""Spreadsheet side of the sync: read a selection, write result rows.

``CsvWorkbookStore`` treats a directory as a workbook with one CSV file per sheet.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod

import pandas as pd

from sync_errors import ValidationError
from sync_models import SheetSnapshot

logger = logging.getLogger(__name__)

WRITE_TARGETS = ('cursor', 'active', 'new')

CELL_PATTERN = re.compile(r'^([A-Z]+)(\d+)$')


def column_index(letters):
    """'A' -> 0, 'Z' -> 25, 'AA' -> 26."""
    col = 0
    for char in letters:
        col = col * 26 + (ord(char) - 64)
    return col - 1


def column_letter(index):
    letters = ''
    n = index
    while n >= 0:
        letters = chr(n % 26 + 65) + letters
        n = n // 26 - 1
    return letters


def parse_cell(cell):
    """Return the 0-based ``(row, col)`` of an A1 reference."""
    match = CELL_PATTERN.match(cell.strip().upper())
    if not match:
        raise ValidationError('INVALID_SELECTION', f"Invalid cell reference: {cell!r}")
    return int(match.group(2)) - 1, column_index(match.group(1))


def parse_range(address):
    """Return 0-based inclusive ``(first_row, first_col, last_row, last_col)`` for ``A1`` or ``A1:C10``."""
    parts = address.split(':')
    first_row, first_col = parse_cell(parts[0])
    last_row, last_col = parse_cell(parts[1]) if len(parts) > 1 else (first_row, first_col)
    if last_row < first_row or last_col < first_col:
        raise ValidationError('INVALID_SELECTION', f"No cells selected in {address!r}")
    return first_row, first_col, last_row, last_col


def snapshot_from_grid(grid):
    """Validate a selected block (header row first) and wrap it as a SheetSnapshot."""
    if len(grid) < 2:
        raise ValidationError(
            'INSUFFICIENT_DATA', "Selection must include headers and at least one data row"
        )

    headers = ['' if h is None else str(h) for h in grid[0]]
    rows = [list(row) for row in grid[1:]]

    if all(not h.strip() for h in headers):
        raise ValidationError('EMPTY_HEADERS', "Selection must include at least one non-empty header")

    if not any(cell is not None and cell != '' for row in rows for cell in row):
        raise ValidationError('EMPTY_ROWS', "Selection must include at least one row with data")

    return SheetSnapshot(headers=headers, rows=rows, row_count=len(grid), col_count=len(headers))


def normalize_cell(value):
    """Make a value safe to put in a cell: dicts and lists become JSON text."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def resolve_path(record, path):
    """Look up ``Account.Name`` style relationship paths in a nested record."""
    if path in record:
        return record[path]
    value = record
    for part in path.split('.'):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def records_to_rows(records, fields):
    """Query records -> rows in ``fields`` order (the ``attributes`` entry is ignored)."""
    return [
        [normalize_cell(resolve_path(record, f)) for f in fields]
        for record in records
    ]


class SheetStore(ABC):
    """Where snapshots come from and result rows go."""

    @abstractmethod
    def read_selection(self):
        """Return the current selection as a validated SheetSnapshot."""

    @abstractmethod
    def write_rows(self, headers, rows, target='cursor', sheet_prefix='Sheet'):
        """Write a header row followed by ``rows``; returns the name of the sheet written."""

    def write_records(self, headers, records, fields, target='cursor', sheet_prefix='Sheet'):
        if len(headers) != len(fields):
            raise ValidationError('LENGTH_MISMATCH', "Headers/fields length mismatch")
        return self.write_rows(headers, records_to_rows(records, fields), target, sheet_prefix)


class CsvWorkbookStore(SheetStore):
    """A directory of ``<sheet>.csv`` files with one active sheet and an optional A1 selection."""

    def __init__(self, directory, active_sheet='Sheet1', selection=None):
        self.directory = directory
        self.active_sheet = active_sheet
        self.selection = selection

    def sheet_path(self, sheet_name):
        return os.path.join(self.directory, f"{sheet_name}.csv")

    def sheet_names(self):
        if not os.path.isdir(self.directory):
            return []
        return sorted(name[:-4] for name in os.listdir(self.directory) if name.endswith('.csv'))

    def _load_frame(self, sheet_name):
        path = self.sheet_path(sheet_name)
        if not os.path.exists(path):
            return pd.DataFrame()
        try:
            # Keep every cell as text so ids and zip codes survive untouched
            return pd.read_csv(path, header=None, dtype=str, keep_default_na=False)
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
        except pd.errors.ParserError as e:
            raise ValidationError('INVALID_SHEET', f"Sheet {sheet_name!r} could not be read: {e}")

    def read_selection(self):
        if not os.path.exists(self.sheet_path(self.active_sheet)):
            raise ValidationError('NO_SELECTION', f"Sheet {self.active_sheet!r} does not exist")

        frame = self._load_frame(self.active_sheet)
        if self.selection:
            first_row, first_col, last_row, last_col = parse_range(self.selection)
        else:
            first_row, first_col = 0, 0
            last_row, last_col = len(frame.index) - 1, len(frame.columns) - 1
            if last_row < 0 or last_col < 0:
                raise ValidationError('INSUFFICIENT_DATA', "Selection must include headers and at least one data row")

        frame = frame.reindex(
            index=range(max(len(frame.index), last_row + 1)),
            columns=range(max(len(frame.columns), last_col + 1)),
            fill_value='',
        )
        block = frame.iloc[first_row:last_row + 1, first_col:last_col + 1]
        grid = [[None if cell == '' else cell for cell in row] for row in block.values.tolist()]

        logger.info(
            f"Read {len(grid)} rows x {last_col - first_col + 1} columns from sheet {self.active_sheet}"
        )
        return snapshot_from_grid(grid)

    def _new_sheet_name(self, prefix):
        existing = set(self.sheet_names())
        n = len(existing) + 1
        while f"{prefix} {n}" in existing:
            n += 1
        return f"{prefix} {n}"

    def write_rows(self, headers, rows, target='cursor', sheet_prefix='Sheet'):
        if not headers:
            raise ValidationError('INVALID_HEADERS', "Headers required")
        if target not in WRITE_TARGETS:
            raise ValidationError('INVALID_TARGET', f"Unknown write target: {target!r}")

        start_row, start_col = 0, 0
        if target == 'new':
            sheet_name = self._new_sheet_name(sheet_prefix)
            self.active_sheet = sheet_name
            self.selection = None
        else:
            sheet_name = self.active_sheet
            if target == 'cursor' and self.selection:
                start_row, start_col = parse_range(self.selection)[:2]

        width = len(headers)
        data = [list(headers)] + [
            [normalize_cell(cell) for cell in list(row)[:width]] + [None] * (width - len(row))
            for row in rows
        ]
        block = [['' if cell is None else cell for cell in row] for row in data]

        frame = self._load_frame(sheet_name)
        frame = frame.reindex(
            index=range(max(len(frame.index), start_row + len(block))),
            columns=range(max(len(frame.columns), start_col + width)),
            fill_value='',
        ).astype(object)
        frame.iloc[start_row:start_row + len(block), start_col:start_col + width] = block

        os.makedirs(self.directory, exist_ok=True)
        frame.to_csv(self.sheet_path(sheet_name), header=False, index=False)

        end = f"{column_letter(start_col + width - 1)}{start_row + len(block)}"
        logger.info(
            f"Wrote {len(rows)} rows to {sheet_name}!{column_letter(start_col)}{start_row + 1}:{end}"
        )
        return sheet_name
