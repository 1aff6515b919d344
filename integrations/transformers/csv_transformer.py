"""
CSV transformer backed by pandas.

Rows are parsed in chunks so large files are never fully materialized as
records. Processing order per row:

1. rename columns (``column_mappings``)
2. per-column value transforms, otherwise automatic type coercion
3. row predicate ``filter_row(row, index)``
4. id / timestamp extraction
5. column exclusion
"""

import csv
import io
import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Optional

import pandas as pd

from core.exceptions import TransformationError
from integrations.transformers.base import RawInput, Transformer, safe_filename
from schemas.sync import DataFormat, TransformContext, TransformResult

logger = logging.getLogger(__name__)

_INT = re.compile(r"^-?(0|[1-9]\d*)$")
_FLOAT = re.compile(r"^-?\d*\.\d+([eE][-+]?\d+)?$")


def auto_convert(value: Optional[str]) -> Any:
    """
    Coerce a raw CSV string.

    Empty -> None, true/false -> bool, integers and decimals -> numbers.
    Integers with leading zeros (account numbers, zip codes) stay text, as
    do ISO dates.
    """
    if value is None or value == "":
        return None
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _INT.match(value):
        return int(value)
    if _FLOAT.match(value):
        return float(value)
    return value


def write_csv(
    rows: List[Dict[str, Any]],
    delimiter: str = ",",
    quote_char: str = '"',
    columns: Optional[List[str]] = None
) -> str:
    """
    Serialize rows as CSV text with a header line.

    Values containing the delimiter, quote character or a newline are
    quoted; embedded quotes are doubled. None becomes an empty field.
    """
    frame = pd.DataFrame(rows, columns=columns, dtype=object)
    return frame.to_csv(
        index=False,
        sep=delimiter,
        quotechar=quote_char,
        quoting=csv.QUOTE_MINIMAL,
        doublequote=True,
        lineterminator="\n"
    )


class CsvTransformer(Transformer):
    """
    Transform CSV text into one record per row.

    Supports:
    - Custom delimiter and quote character
    - Header row or explicit column names
    - Column renaming, exclusion and per-column value transforms
    - Row filtering
    - Malformed rows (too many fields) reported per row instead of failing the file
    - JSON (default) or single-row CSV output
    """

    format = DataFormat.CSV

    def __init__(
        self,
        delimiter: str = ",",
        quote_char: str = '"',
        has_header: bool = True,
        columns: Optional[List[str]] = None,
        skip_empty_rows: bool = True,
        trim: bool = True,
        column_mappings: Optional[Dict[str, str]] = None,
        exclude_columns: Optional[List[str]] = None,
        filter_row: Optional[Callable[[Dict[str, Any], int], bool]] = None,
        value_transformers: Optional[Dict[str, Callable[[str], Any]]] = None,
        auto_convert_values: bool = True,
        output_format: str = "json",
        encoding: str = "utf-8",
        chunk_size: int = 1000,
        id_field: Optional[str] = "id",
        timestamp_field: Optional[str] = None
    ):
        super().__init__(id_field=id_field, timestamp_field=timestamp_field)
        if output_format not in ("json", "csv"):
            raise ValueError(f"Unsupported output format: {output_format}")
        if not has_header and not columns:
            raise ValueError("CSV without a header row needs explicit column names")

        self.delimiter = delimiter
        self.quote_char = quote_char
        self.has_header = has_header
        self.columns = list(columns) if columns else None
        self.skip_empty_rows = skip_empty_rows
        self.trim = trim
        self.column_mappings = dict(column_mappings or {})
        self.exclude_columns = set(exclude_columns or [])
        self.filter_row = filter_row
        self.value_transformers = dict(value_transformers or {})
        self.auto_convert_values = auto_convert_values
        self.output_format = output_format
        self.encoding = encoding
        self.chunk_size = chunk_size

    def transform(self, data: RawInput, context: TransformContext) -> Iterator[TransformResult]:
        text = self._to_text(data, self.encoding)
        if not text.strip():
            return

        bad_lines: List[List[str]] = []

        def on_bad_line(fields: List[str]) -> None:
            bad_lines.append(fields)
            return None

        try:
            reader = pd.read_csv(
                io.StringIO(text),
                sep=self.delimiter,
                quotechar=self.quote_char,
                header=0 if self.has_header else None,
                names=None if self.has_header else self.columns,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=self.skip_empty_rows,
                engine="python",
                on_bad_lines=on_bad_line,
                chunksize=self.chunk_size
            )
        except pd.errors.EmptyDataError:
            return
        except (pd.errors.ParserError, ValueError) as e:
            raise TransformationError(
                f"CSV parsing failed: {e}",
                context={"source": context.source},
                original_exception=e
            )

        index = 0
        invalid = 0
        with reader:
            while True:
                try:
                    chunk = next(reader)
                except StopIteration:
                    break
                except (pd.errors.ParserError, ValueError) as e:
                    raise TransformationError(
                        f"CSV parsing failed: {e}",
                        context={"source": context.source, "rows_parsed": index},
                        original_exception=e
                    )

                if len(chunk) and not isinstance(chunk.index, pd.RangeIndex):
                    # pandas promotes surplus leading fields of the first row to an index
                    raise TransformationError(
                        "First CSV row has more fields than the header",
                        context={"source": context.source}
                    )

                header = [str(c).strip() if self.trim else str(c) for c in chunk.columns]
                for values in chunk.itertuples(index=False, name=None):
                    raw = {
                        column: ("" if value is None or (not isinstance(value, str) and pd.isna(value)) else value)
                        for column, value in zip(header, values)
                    }
                    result = self._transform_row(raw, index, context)
                    index += 1
                    if result is not None:
                        yield result

                for fields in bad_lines:
                    yield self._malformed_row(fields, len(header), invalid, context)
                    invalid += 1
                bad_lines.clear()

        if invalid:
            logger.warning(f"{invalid} malformed CSV rows in {context.source}")

    def _transform_row(
        self,
        raw: Dict[str, str],
        index: int,
        context: TransformContext
    ) -> Optional[TransformResult]:
        errors: List[str] = []
        row: Dict[str, Any] = {}

        for column, value in raw.items():
            if self.trim:
                value = value.strip()
            name = self.column_mappings.get(column, column)
            transformer = self.value_transformers.get(name) or self.value_transformers.get(column)
            if transformer is not None:
                try:
                    value = transformer(value)
                except Exception as e:
                    errors.append(f"{name}: {e}")
                    value = None
            elif self.auto_convert_values:
                value = auto_convert(value)
            row[name] = value

        if self.filter_row is not None:
            try:
                keep = self.filter_row(row, index)
            except Exception as e:
                return self._filter_failed(row, context, index, "filter_row", e)
            if not keep:
                return None

        item_id, item_timestamp = self._identify(row)

        if self.exclude_columns:
            row = {
                name: value for name, value in row.items()
                if name not in self.exclude_columns and _original(self.column_mappings, name) not in self.exclude_columns
            }

        if self.output_format == "csv":
            return self._build_result(
                row, context, index, item_id, item_timestamp, errors,
                payload=write_csv([row], self.delimiter, self.quote_char).encode(self.encoding),
                content_type="text/csv",
                extension="csv"
            )
        return self._build_result(row, context, index, item_id, item_timestamp, errors)

    def _malformed_row(
        self,
        fields: List[str],
        expected: int,
        position: int,
        context: TransformContext
    ) -> TransformResult:
        message = f"Malformed CSV row: expected {expected} fields, got {len(fields)}"
        result = self._build_result(
            {"fields": fields},
            context,
            None,
            None,
            None,
            errors=[message]
        )
        result.filename = f"{safe_filename(context.source)}-invalid-{position}.json"
        return result


def _original(mappings: Dict[str, str], name: str) -> str:
    for original, renamed in mappings.items():
        if renamed == name:
            return original
    return name
