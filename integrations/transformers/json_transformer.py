"""
JSON transformer.

Selects the records inside a document with a simple path expression and
emits one result per record, applying (in order): item filter, item
transform, field renames, id/timestamp extraction, field exclusion and
optional flattening.
"""

import json
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from core.exceptions import TransformationError
from integrations.transformers.base import RawInput, Transformer
from integrations.utils import extract_by_path
from schemas.sync import DataFormat, TransformContext, TransformResult

logger = logging.getLogger(__name__)


class JsonTransformer(Transformer):
    """
    Transform JSON documents into one record per item.

    Args:
        data_path: Where the records live (``$.data.items``, ``results[*]``, ``items[0]``)
        field_mappings: Key renames, applied at every nesting level
        exclude_fields: Keys dropped at every nesting level
        flatten: Collapse nested objects into ``parent<sep>child`` keys
        flatten_separator: Separator used when flattening
        filter_item: Predicate ``(item, index)``; False drops the item
        transform_item: Callable applied to each kept item before mapping
    """

    format = DataFormat.JSON

    def __init__(
        self,
        data_path: Optional[str] = None,
        field_mappings: Optional[Dict[str, str]] = None,
        exclude_fields: Optional[List[str]] = None,
        flatten: bool = False,
        flatten_separator: str = ".",
        filter_item: Optional[Callable[[Any, int], bool]] = None,
        transform_item: Optional[Callable[[Any], Any]] = None,
        encoding: str = "utf-8",
        id_field: Optional[str] = "id",
        timestamp_field: Optional[str] = None
    ):
        super().__init__(id_field=id_field, timestamp_field=timestamp_field)
        self.data_path = data_path
        self.field_mappings = dict(field_mappings or {})
        self.exclude_fields = set(exclude_fields or [])
        self.flatten = flatten
        self.flatten_separator = flatten_separator
        self.filter_item = filter_item
        self.transform_item = transform_item
        self.encoding = encoding

    def transform(self, data: RawInput, context: TransformContext) -> Iterator[TransformResult]:
        document = self._parse(data, context)

        if self.data_path:
            document = extract_by_path(document, self.data_path)

        if document is None:
            logger.debug(f"No records at {self.data_path or '$'} for {context.source}")
            return

        items = document if isinstance(document, list) else [document]

        for index, item in enumerate(items):
            if self.filter_item is not None:
                try:
                    keep = self.filter_item(item, index)
                except Exception as e:
                    yield self._filter_failed(item, context, index, "filter_item", e)
                    continue
                if not keep:
                    continue
            yield self._transform_item(item, index, context)

    def _parse(self, data: RawInput, context: TransformContext) -> Any:
        if not isinstance(data, (bytes, bytearray, str)):
            return data
        text = self._to_text(data, self.encoding)
        try:
            return json.loads(text)
        except ValueError as e:
            raise TransformationError(
                f"JSON parsing failed: {e}",
                context={"source": context.source},
                original_exception=e
            )

    def _transform_item(self, item: Any, index: int, context: TransformContext) -> TransformResult:
        errors: List[str] = []
        record = item

        if self.transform_item is not None:
            try:
                record = self.transform_item(record)
            except Exception as e:
                errors.append(f"transform_item: {e}")
                record = item

        if self.field_mappings:
            record = rename_keys(record, self.field_mappings)

        item_id, item_timestamp = self._identify(record)

        if self.exclude_fields:
            record = drop_keys(record, self.exclude_fields)
        if self.flatten and isinstance(record, dict):
            record = flatten_object(record, self.flatten_separator)

        return self._build_result(record, context, index, item_id, item_timestamp, errors)


def rename_keys(value: Any, mappings: Dict[str, str]) -> Any:
    if isinstance(value, dict):
        return {mappings.get(key, key): rename_keys(child, mappings) for key, child in value.items()}
    if isinstance(value, list):
        return [rename_keys(child, mappings) for child in value]
    return value


def drop_keys(value: Any, excluded: set) -> Any:
    if isinstance(value, dict):
        return {key: drop_keys(child, excluded) for key, child in value.items() if key not in excluded}
    if isinstance(value, list):
        return [drop_keys(child, excluded) for child in value]
    return value


def flatten_object(value: Dict[str, Any], separator: str = ".", prefix: str = "") -> Dict[str, Any]:
    """
    Collapse nested dicts into a single level.

    Lists are kept as values; an empty nested dict is kept under its own key.
    """
    flat: Dict[str, Any] = {}
    for key, child in value.items():
        name = f"{prefix}{separator}{key}" if prefix else str(key)
        if isinstance(child, dict) and child:
            flat.update(flatten_object(child, separator, name))
        else:
            flat[name] = child
    return flat
