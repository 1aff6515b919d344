"""
Abstract transformer and shared record helpers
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from core.exceptions import TransformationError
from integrations.utils import extract_by_path, format_timestamp, parse_timestamp
from schemas.sync import DataFormat, TransformContext, TransformResult

RawInput = Union[bytes, str, Any]

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


class Transformer(ABC):
    """
    Maps one unit of raw input into a lazy sequence of TransformResults.

    Transformers are pure: no network or filesystem effects, and calling
    ``transform`` twice on the same input yields equivalent sequences.

    Args:
        id_field: Dot path of the record identifier (drives ``item_id``)
        timestamp_field: Dot path of the record timestamp (drives ``item_timestamp``)
    """

    format: DataFormat = DataFormat.CUSTOM

    def __init__(self, id_field: Optional[str] = "id", timestamp_field: Optional[str] = None):
        self.id_field = id_field
        self.timestamp_field = timestamp_field

    @abstractmethod
    def transform(self, data: RawInput, context: TransformContext) -> Iterator[TransformResult]:
        """
        Yield one TransformResult per record.

        Raises:
            TransformationError: The whole unit could not be parsed
        """
        pass

    def validate(self, data: RawInput) -> bool:
        """True if ``data`` parses into at least one record without a unit-level error."""
        context = TransformContext(source="validation", format=self.format)
        try:
            for _ in self.transform(data, context):
                return True
        except TransformationError:
            return False
        return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _to_text(self, data: RawInput, encoding: str = "utf-8") -> str:
        if isinstance(data, (bytes, bytearray)):
            try:
                return bytes(data).decode(encoding)
            except UnicodeDecodeError as e:
                raise TransformationError(
                    f"Input is not valid {encoding}",
                    context={"encoding": encoding},
                    original_exception=e
                )
        if isinstance(data, str):
            return data
        raise TransformationError(
            f"Unsupported input type: {type(data).__name__}",
            context={"transformer": type(self).__name__}
        )

    def _identify(self, record: Any) -> Tuple[Optional[str], Optional[str]]:
        """Extract (item_id, item_timestamp ISO string) from a record."""
        item_id = None
        if self.id_field:
            value = extract_by_path(record, self.id_field)
            if value is not None and value != "":
                item_id = str(value)

        item_timestamp = None
        if self.timestamp_field:
            parsed = parse_timestamp(extract_by_path(record, self.timestamp_field))
            if parsed is not None:
                item_timestamp = format_timestamp(parsed)

        return item_id, item_timestamp

    def _filter_failed(
        self,
        record: Any,
        context: TransformContext,
        index: int,
        filter_name: str,
        error: Exception
    ) -> TransformResult:
        """Error result for an item whose filter predicate raised."""
        logger.warning(f"{filter_name} raised on item {index} of {context.source}: {error}")
        item_id, item_timestamp = self._identify(record)
        return self._build_result(
            record, context, index, item_id, item_timestamp,
            errors=[f"{filter_name}: {error}"]
        )

    def _build_result(
        self,
        record: Any,
        context: TransformContext,
        index: Optional[int],
        item_id: Optional[str],
        item_timestamp: Optional[str],
        errors: Optional[List[str]] = None,
        payload: Optional[bytes] = None,
        content_type: str = "application/json",
        extension: str = "json"
    ) -> TransformResult:
        if payload is None:
            payload = json.dumps(record, default=str, ensure_ascii=False).encode("utf-8")

        name_part = item_id if item_id is not None else (f"row-{index}" if index is not None else "invalid")
        filename = f"{safe_filename(context.source)}-{safe_filename(name_part)}.{extension}"

        metadata: Dict[str, Any] = {
            **context.metadata,
            "source": context.source,
            "format": context.format.value,
            "index": index,
            "item_id": item_id,
            "item_timestamp": item_timestamp,
        }
        if context.trace_id:
            metadata["trace_id"] = context.trace_id

        return TransformResult(
            filename=filename,
            data=payload,
            content_type=content_type,
            metadata=metadata,
            errors=list(errors or [])
        )


def safe_filename(value: str) -> str:
    return _UNSAFE_FILENAME.sub("_", str(value)).strip("_") or "item"
