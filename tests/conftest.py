"""
Pytest configuration and fixtures
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

import pytest

from core.exceptions import NetworkError, UploadError
from integrations.connectors.base import ConnectorContext
from integrations.ingest import IngestClient, UploadResult


class RecordingIngestClient(IngestClient):
    """
    In-memory ingestion boundary.

    Deduplicates by idempotency key like the real platform, and can be told
    to reject specific item ids (``fail_ids``) or fail transiently a number
    of times (``transient_failures``).
    """

    def __init__(self):
        self.uploads: List[Dict[str, Any]] = []
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.fail_ids: Set[str] = set()
        self.transient_failures = 0
        self.calls = 0

    async def upload(
        self,
        file: bytes,
        filename: str,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        content_type: str = "application/json",
        trace_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> UploadResult:
        self.calls += 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise NetworkError("connection reset")

        item_id = metadata.get("item_id")
        if item_id is not None and str(item_id) in self.fail_ids:
            raise UploadError(f"rejected {item_id}")

        record = {
            "file": file,
            "filename": filename,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
            "content_type": content_type,
            "trace_id": trace_id,
        }
        self.uploads.append(record)
        self.documents.setdefault(idempotency_key or filename, record)
        return UploadResult(document_ids=[len(self.documents)])

    @property
    def uploaded_ids(self) -> List[str]:
        return [u["metadata"].get("item_id") for u in self.uploads]


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def ingest_client():
    """Recording ingestion client"""
    return RecordingIngestClient()


@pytest.fixture
def connector_context(ingest_client):
    """Connector context around the recording ingestion client"""
    return ConnectorContext(ingest_client=ingest_client)


@pytest.fixture
def instant_sleep():
    """Sleep replacement that returns immediately"""
    return no_sleep


@pytest.fixture
def mock_api_items():
    """Mock API items ordered by update time"""
    return [
        {"id": "api_001", "name": "Test Product 1", "updated_at": "2024-01-15T10:00:00Z"},
        {"id": "api_002", "name": "Test Product 2", "updated_at": "2024-01-15T11:00:00Z"},
        {"id": "api_003", "name": "Test Product 3", "updated_at": "2024-01-15T12:00:00Z"},
        {"id": "api_004", "name": "Test Product 4", "updated_at": "2024-01-15T13:00:00Z"},
    ]


@pytest.fixture
def mock_csv_text():
    """Mock CSV export"""
    return (
        "customerId,name,email,signup_date,balance\n"
        "C001,Alice Smith,alice@example.com,2024-01-15,1500.50\n"
        "C002,Bob Jones,bob@example.com,2024-01-16,0\n"
        "C003,\"Carol, Jr.\",carol@example.com,2024-01-17,250\n"
    )
