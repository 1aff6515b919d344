"""
Pydantic schemas for transports: pagination, server-sent events and files
"""

import asyncio
from enum import Enum
from pathlib import Path
from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from schemas.sync import Checkpoint, CheckpointKind


# ============================================================================
# Pagination Schemas
# ============================================================================

class PaginationStyle(str, Enum):
    CURSOR = "cursor"
    OFFSET = "offset"
    PAGE = "page"


_DEFAULT_PARAMS = {
    PaginationStyle.CURSOR: ("cursor", "limit"),
    PaginationStyle.OFFSET: ("offset", "limit"),
    PaginationStyle.PAGE: ("page", "per_page"),
}


class PaginationConfig(BaseModel):
    """
    How a REST endpoint pages its results.

    Response paths are dot paths into the JSON body; ``items_path`` of
    ``None`` means the body itself is the item list.
    """
    style: PaginationStyle = PaginationStyle.CURSOR
    param_name: Optional[str] = None
    limit_param: Optional[str] = None
    page_size: int = Field(100, ge=1)
    max_page_size: int = Field(1000, ge=1)
    items_path: Optional[str] = "data"
    cursor_path: str = "next_cursor"
    total_path: Optional[str] = "total"
    total_pages_path: Optional[str] = None
    start_page: int = 1
    max_pages: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def apply_defaults(self):
        position, limit = _DEFAULT_PARAMS[self.style]
        if self.param_name is None:
            self.param_name = position
        if self.limit_param is None:
            self.limit_param = limit
        if self.page_size > self.max_page_size:
            self.page_size = self.max_page_size
        return self

    def initial_state(self) -> "PaginationState":
        return PaginationState(style=self.style, page=self.start_page)


class PaginationState(BaseModel):
    """
    Position of a paginated traversal.

    Only the field matching ``style`` is meaningful. States are restartable:
    passing one back to ``RestTransport.paginate`` resumes from it.
    """
    style: PaginationStyle
    cursor: Optional[str] = None
    offset: int = 0
    page: int = 1

    def to_params(self, config: PaginationConfig) -> Dict[str, Any]:
        params: Dict[str, Any] = {config.limit_param: config.page_size}
        if self.style == PaginationStyle.CURSOR:
            if self.cursor:
                params[config.param_name] = self.cursor
        elif self.style == PaginationStyle.OFFSET:
            params[config.param_name] = self.offset
        else:
            params[config.param_name] = self.page
        return params

    def to_checkpoint(self) -> Optional[Checkpoint]:
        if self.style == PaginationStyle.CURSOR:
            if not self.cursor:
                return None
            return Checkpoint(kind=CheckpointKind.CURSOR, value=self.cursor)
        if self.style == PaginationStyle.OFFSET:
            return Checkpoint(kind=CheckpointKind.OFFSET, value=str(self.offset))
        return Checkpoint(kind=CheckpointKind.PAGE, value=str(self.page))

    @classmethod
    def from_checkpoint(
        cls,
        config: PaginationConfig,
        checkpoint: Optional[Checkpoint]
    ) -> "PaginationState":
        """Build the state to resume from; unrelated checkpoint kinds start over."""
        state = config.initial_state()
        if checkpoint is None:
            return state
        if config.style == PaginationStyle.CURSOR and checkpoint.kind == CheckpointKind.CURSOR:
            state.cursor = checkpoint.value
        elif config.style == PaginationStyle.OFFSET and checkpoint.kind == CheckpointKind.OFFSET:
            state.offset = checkpoint.as_int() or 0
        elif config.style == PaginationStyle.PAGE and checkpoint.kind == CheckpointKind.PAGE:
            state.page = checkpoint.as_int() or config.start_page
        return state


class Page(BaseModel):
    """
    One page of a paginated traversal. ``next_state`` is None when exhausted.

    ``truncated`` marks the last page yielded when ``max_pages`` stopped the
    traversal before the source ran out.
    """
    items: List[Any] = Field(default_factory=list)
    state: PaginationState
    next_state: Optional[PaginationState] = None
    total: Optional[int] = None
    number: int = 1
    truncated: bool = False


class ServerSentEvent(BaseModel):
    """A single event from a ``text/event-stream`` response"""
    event: str = "message"
    data: Any = None
    id: Optional[str] = None
    retry: Optional[int] = None


# ============================================================================
# File Schemas
# ============================================================================

class RemoteFile(BaseModel):
    """An entry on an FTP/SFTP server"""
    path: str
    name: str
    size: Optional[int] = None
    modified_at: Optional[datetime] = None
    is_directory: bool = False


class FileEvent(BaseModel):
    """A new or modified file seen by the file watcher"""
    path: str
    name: str
    size: int
    modified_at: datetime
    mtime_ns: int

    async def read(self) -> bytes:
        return await asyncio.to_thread(Path(self.path).read_bytes)
