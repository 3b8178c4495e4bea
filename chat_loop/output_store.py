"""Size-bounded storage for large tool results.

Small values stay resident in memory, values above ``file_threshold`` are
written to one JSON file per record. Every record expires after ``ttl``
seconds whatever its storage kind; expiry is checked on access, swept on
each ``store`` and scheduled on the running event loop.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

from chat_loop.config import (
    DEFAULT_FILE_THRESHOLD,
    DEFAULT_MAX_RESULT_SIZE,
    DEFAULT_OUTPUT_TTL,
    Settings,
)
from chat_loop.exceptions import OutputNotFound
from chat_loop.truncation import (
    data_type_of,
    format_bytes,
    summarize_value,
    truncate_value,
)

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class OutputRecord:
    id: str
    conversation_id: str
    invocation_id: str
    size_bytes: int
    storage_kind: str  # "memory" | "file"
    created_at: float
    data_type: str
    row_count: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PeekResult:
    output_id: str
    data: Any
    total_size: int
    data_type: str
    offset: int
    limit: int
    returned: int
    has_more: bool
    next_offset: Optional[int] = None
    row_count: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Entry:
    record: OutputRecord
    value: Any = None
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class OutputStore:
    def __init__(
        self,
        storage_dir: Union[str, Path],
        file_threshold: int = DEFAULT_FILE_THRESHOLD,
        ttl: float = DEFAULT_OUTPUT_TTL,
        max_inline_bytes: int = DEFAULT_MAX_RESULT_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.storage_dir = Path(storage_dir)
        self.file_threshold = file_threshold
        self.ttl = ttl
        self.max_inline_bytes = max_inline_bytes
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "OutputStore":
        return cls(
            storage_dir=settings.output_storage_dir,
            file_threshold=settings.output_file_threshold,
            ttl=settings.output_ttl,
            max_inline_bytes=settings.max_result_size,
        )

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def store(
        self, value: Any, conversation_id: str, invocation_id: str
    ) -> OutputRecord:
        await self.clear_expired()

        serialized = json.dumps(value, default=str)
        size = len(serialized.encode("utf-8"))
        output_id = self._generate_id(conversation_id, invocation_id)
        record = OutputRecord(
            id=output_id,
            conversation_id=conversation_id,
            invocation_id=invocation_id,
            size_bytes=size,
            storage_kind="file" if size > self.file_threshold else "memory",
            created_at=self._clock(),
            data_type=data_type_of(value),
            row_count=len(value) if isinstance(value, (list, tuple)) else None,
        )

        entry = _Entry(record=record)
        if record.storage_kind == "file":
            path = self._file_path(output_id)
            await asyncio.to_thread(self._write_file, path, serialized)
            logger.debug(f"Stored output {output_id} on disk ({format_bytes(size)})")
        else:
            entry.value = value
            logger.debug(f"Stored output {output_id} in memory ({format_bytes(size)})")

        entry.timer = self._schedule_expiry(output_id)
        self._entries[output_id] = entry
        return record

    async def retrieve(self, output_id: str) -> Any:
        entry = self._live_entry(output_id)
        if entry.record.storage_kind == "memory":
            return entry.value

        path = self._file_path(output_id)
        try:
            content = await asyncio.to_thread(path.read_text, "utf-8")
        except FileNotFoundError:
            self._entries.pop(output_id, None)
            raise OutputNotFound(f"Output file not found: {output_id}")
        return json.loads(content)

    def get_record(self, output_id: str) -> Optional[OutputRecord]:
        entry = self._entries.get(output_id)
        if entry is None or self._is_expired(entry.record):
            return None
        return entry.record

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def peek(self, output_id: str, offset: int = 0, limit: int = 100) -> PeekResult:
        """Return a bounded slice of a stored output.

        Lists are sliced by index, strings by character and mappings by key
        order. Other values are returned whole.
        """
        if offset < 0:
            raise ValueError("Offset must be non-negative")
        if limit <= 0:
            raise ValueError("Limit must be positive")

        record = self._live_entry(output_id).record
        value = await self.retrieve(output_id)

        if isinstance(value, (list, tuple, str)):
            end = min(offset + limit, len(value))
            data = value[offset:end]
            total = len(value)
        elif isinstance(value, dict):
            keys = list(value.keys())
            end = min(offset + limit, len(keys))
            data = {key: value[key] for key in keys[offset:end]}
            total = len(keys)
        else:
            return PeekResult(
                output_id=output_id,
                data=value,
                total_size=record.size_bytes,
                data_type=record.data_type,
                offset=offset,
                limit=limit,
                returned=1,
                has_more=False,
                row_count=record.row_count,
            )

        has_more = end < total
        return PeekResult(
            output_id=output_id,
            data=data,
            total_size=record.size_bytes,
            data_type=record.data_type,
            offset=offset,
            limit=limit,
            returned=len(data),
            has_more=has_more,
            next_offset=end if has_more else None,
            row_count=record.row_count,
        )

    def peek_info(self, output_id: str) -> dict:
        record = self._live_entry(output_id).record
        return {
            "output_id": record.id,
            "total_size": record.size_bytes,
            "size_formatted": format_bytes(record.size_bytes),
            "data_type": record.data_type,
            "row_count": record.row_count,
            "storage_kind": record.storage_kind,
            "created_at": record.created_at,
        }

    # ------------------------------------------------------------------
    # Truncation of oversized tool results
    # ------------------------------------------------------------------

    async def prepare_result(
        self,
        value: Any,
        conversation_id: str,
        invocation_id: str,
        max_inline_bytes: Optional[int] = None,
    ) -> Any:
        """Return ``value`` or, if it is too large, a preview pointing at the stored copy."""
        if value is None:
            return value
        limit = max_inline_bytes or self.max_inline_bytes
        try:
            size = len(json.dumps(value, default=str).encode("utf-8"))
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not serialize result for size check: {e}")
            return value
        if size <= limit:
            return value

        logger.info(
            f"Result too large ({size} bytes > {limit} bytes), storing and truncating"
        )
        record = await self.store(value, conversation_id, invocation_id)
        return {
            "_truncated": True,
            "_output_id": record.id,
            "_total_size": size,
            "_total_size_formatted": format_bytes(size),
            "_data_type": record.data_type,
            "_row_count": record.row_count,
            "_summary": summarize_value(value, size),
            "_message": (
                f"Output was too large ({format_bytes(size)}) and has been stored. "
                f"Use await peek('{record.id}', offset, limit) in a new script "
                "to retrieve specific portions of the data."
            ),
            "data": truncate_value(value),
        }

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    async def clear_for_conversation(self, conversation_id: str) -> int:
        output_ids = [
            output_id
            for output_id, entry in self._entries.items()
            if entry.record.conversation_id == conversation_id
        ]
        for output_id in output_ids:
            self._evict(output_id)
        return len(output_ids)

    async def clear_expired(self) -> int:
        expired = [
            output_id
            for output_id, entry in self._entries.items()
            if self._is_expired(entry.record)
        ]
        for output_id in expired:
            self._evict(output_id)
        return len(expired)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _live_entry(self, output_id: str) -> _Entry:
        entry = self._entries.get(output_id)
        if entry is None:
            raise OutputNotFound(f"Output not found: {output_id}")
        if self._is_expired(entry.record):
            self._evict(output_id)
            raise OutputNotFound(f"Output expired: {output_id}")
        return entry

    def _is_expired(self, record: OutputRecord) -> bool:
        return self._clock() - record.created_at >= self.ttl

    def _evict(self, output_id: str) -> None:
        entry = self._entries.pop(output_id, None)
        if entry is None:
            return
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.record.storage_kind == "file":
            self._file_path(output_id).unlink(missing_ok=True)
        logger.debug(f"Evicted output {output_id}")

    def _schedule_expiry(self, output_id: str) -> Optional[asyncio.TimerHandle]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        return loop.call_later(self.ttl, self._evict, output_id)

    def _generate_id(self, conversation_id: str, invocation_id: str) -> str:
        raw = f"{conversation_id}-{invocation_id}-{uuid.uuid4().hex[:12]}"
        return _UNSAFE_ID_CHARS.sub("_", raw)

    def _file_path(self, output_id: str) -> Path:
        return self.storage_dir / f"{output_id}.json"

    def _write_file(self, path: Path, serialized: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(serialized, encoding="utf-8")
