"""
Fixed-width flat file transformer.

Mainframe and banking exports still arrive as fixed-column text. Each field
is described by a 1-based start position and a length; values are sliced,
trimmed and coerced to the declared type.
"""

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from core.exceptions import ConfigurationError
from integrations.transformers.base import RawInput, Transformer
from integrations.utils import format_timestamp, parse_timestamp
from schemas.sync import DataFormat, TransformContext, TransformResult


TRUE_VALUES = {"true", "yes", "y", "1", "t"}
FALSE_VALUES = {"false", "no", "n", "0", "f"}


class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"


class FieldSpec(BaseModel):
    """Position and type of one fixed-width column"""
    name: str
    start: int = Field(ge=1, description="1-based start position")
    length: int = Field(ge=1)
    type: FieldType = FieldType.STRING
    trim: bool = True
    date_format: Optional[str] = Field(None, description="strptime format, e.g. %Y%m%d")
    transform: Optional[Callable[[str], Any]] = None

    def slice(self, line: str) -> str:
        value = line[self.start - 1:self.start - 1 + self.length]
        return value.strip() if self.trim else value


class FlatFileTransformer(Transformer):
    """
    Transform fixed-width text into one record per line.

    Args:
        fields: Field specifications (dicts or FieldSpec)
        record_delimiter: Line separator (default: newline)
        skip_rows: Header lines to skip
        skip_footer: Trailer lines to skip
        filter_record: Predicate ``(record, index)``; False drops the record
        encoding: Encoding of byte input
    """

    format = DataFormat.FLAT_FILE

    def __init__(
        self,
        fields: List[Any],
        record_delimiter: str = "\n",
        skip_rows: int = 0,
        skip_footer: int = 0,
        filter_record: Optional[Callable[[Dict[str, Any], int], bool]] = None,
        encoding: str = "utf-8",
        id_field: Optional[str] = "id",
        timestamp_field: Optional[str] = None
    ):
        super().__init__(id_field=id_field, timestamp_field=timestamp_field)
        if not fields:
            raise ConfigurationError("Flat file transformer requires field specifications")
        self.fields = [f if isinstance(f, FieldSpec) else FieldSpec(**f) for f in fields]
        self.record_delimiter = record_delimiter
        self.skip_rows = max(0, skip_rows)
        self.skip_footer = max(0, skip_footer)
        self.filter_record = filter_record
        self.encoding = encoding

    def transform(self, data: RawInput, context: TransformContext) -> Iterator[TransformResult]:
        text = self._to_text(data, self.encoding)
        index = 0
        for line in self._lines(text):
            record, errors = self.parse_line(line)
            if self.filter_record is not None:
                try:
                    keep = self.filter_record(record, index)
                except Exception as e:
                    yield self._filter_failed(record, context, index, "filter_record", e)
                    index += 1
                    continue
                if not keep:
                    index += 1
                    continue
            item_id, item_timestamp = self._identify(record)
            yield self._build_result(record, context, index, item_id, item_timestamp, errors)
            index += 1

    def _lines(self, text: str) -> Iterator[str]:
        """Yield data lines, holding back ``skip_footer`` lines until the end is known."""
        lines = text.split(self.record_delimiter)
        # Blank lines after the trailer are not footer lines
        while lines and not lines[-1].strip():
            lines.pop()

        lookahead: deque = deque()
        for position, line in enumerate(lines):
            if position < self.skip_rows:
                continue
            line = line.rstrip("\r")
            lookahead.append(line)
            if len(lookahead) > self.skip_footer:
                candidate = lookahead.popleft()
                if candidate.strip():
                    yield candidate

    def parse_line(self, line: str) -> Tuple[Dict[str, Any], List[str]]:
        record: Dict[str, Any] = {}
        errors: List[str] = []
        for spec in self.fields:
            raw = spec.slice(line)
            try:
                if spec.transform is not None:
                    record[spec.name] = spec.transform(raw)
                else:
                    record[spec.name] = coerce(raw, spec)
            except Exception as e:
                errors.append(f"{spec.name}: {e}")
                record[spec.name] = None
        return record, errors


def coerce(value: str, spec: FieldSpec) -> Any:
    """
    Convert a sliced value to the field's declared type.

    Blank values become None for every type.

    Raises:
        ValueError: Value does not match the declared type
    """
    if not value.strip():
        return None
    text = value.strip()

    if spec.type == FieldType.INTEGER:
        return int(text)
    if spec.type == FieldType.NUMBER:
        return float(text)
    if spec.type == FieldType.BOOLEAN:
        lowered = text.lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise ValueError(f"not a boolean: {text!r}")
    if spec.type == FieldType.DATE:
        return _parse_date(text, spec.date_format)
    return value


def _parse_date(text: str, date_format: Optional[str]) -> str:
    if date_format:
        return format_timestamp(datetime.strptime(text, date_format))

    parsed = parse_timestamp(text)
    if parsed is None and len(text) == 8 and text.isdigit():
        parsed = parse_timestamp(f"{text[:4]}-{text[4:6]}-{text[6:]}")
    if parsed is None:
        raise ValueError(f"not a date: {text!r}")
    return format_timestamp(parsed)
