"""
Transformers: pure functions from raw input to normalized records.

Modules:
    base: Transformer contract and result helpers
    csv_transformer: Delimited text (pandas)
    json_transformer: JSON documents and API payloads
    flat_file: Fixed-width text
"""

from integrations.transformers.base import Transformer
from integrations.transformers.csv_transformer import CsvTransformer, auto_convert, write_csv
from integrations.transformers.json_transformer import JsonTransformer
from integrations.transformers.flat_file import FieldSpec, FieldType, FlatFileTransformer

__all__ = [
    "Transformer",
    "CsvTransformer",
    "JsonTransformer",
    "FlatFileTransformer",
    "FieldSpec",
    "FieldType",
    "auto_convert",
    "write_csv",
]
