"""
Exchange log storage for the LLM proxy.

Provides persistent storage of one record per proxied exchange with:
- Directory-per-day organization for efficient TTL cleanup
- Index file with file locking for id allocation and fast lookups
- Count-based pruning of the oldest records
- Async-compatible operations
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import platformdirs
from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

STATE_HOME_ENV = "LLM_PROXY_STATE_HOME"


def default_log_dir() -> Path:
    """
    Where records go when no directory is configured.

    ``$LLM_PROXY_STATE_HOME/exchanges`` if the variable is set, else the
    per-user state directory from platformdirs (on Linux
    ``${XDG_STATE_HOME:-~/.local/state}/llm_proxy/exchanges``).
    """
    state_home = os.environ.get(STATE_HOME_ENV)
    if state_home:
        return Path(state_home) / "exchanges"
    return Path(platformdirs.user_state_dir("llm_proxy")) / "exchanges"


@dataclass(frozen=True)
class ExchangeRecord:
    """One complete client exchange, as written to the log."""

    timestamp: float
    endpoint: str
    method: str
    model: str
    status_code: int
    latency_ms: int
    stream: bool = False
    backend_type: str = ""
    state: str = ""  # Completed, ClientDisconnected, BackendCallFailed
    prompt: str = ""
    response: str = ""
    error: str = ""
    last_message: str = ""
    frontend_url: str = ""
    backend_url: str = ""
    frontend_request: str = ""  # Verbatim client request body
    frontend_response: str = ""  # Increments as sent, newline-delimited
    backend_request: str = ""  # Verbatim backend request body
    backend_response: str = ""  # Verbatim backend response, including framing

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExchangeSummary:
    """Summary information about a logged exchange."""

    id: int
    date: str  # YYYY-MM-DD
    timestamp: float
    endpoint: str
    model: str
    status_code: int
    latency_ms: int
    stream: bool
    last_message: str
    error: str
    frontend_response_size: int = 0
    backend_response_size: int = 0


@dataclass
class _IndexData:
    next_id: int = 1
    records: dict[str, dict[str, Any]] = field(default_factory=dict)


class ExchangeIndex:
    """
    Manages the exchange index file with proper file locking.

    The index allocates record ids and maps each id to its date directory.

    Index file format (index.json):
    {
        "version": 1,
        "next_id": 42,
        "records": {
            "41": {"date": "2026-02-02", "timestamp": 1738512000.0},
            ...
        }
    }
    """

    INDEX_VERSION = 1

    def __init__(self, log_dir: Path):
        self.log_dir = log_dir
        self.index_path = log_dir / "index.json"
        self.lock_path = log_dir / "index.lock"
        self._lock = FileLock(str(self.lock_path), timeout=10)
        # In-process async lock to coordinate async operations
        self._async_lock = asyncio.Lock()

    def _read_index_sync(self) -> _IndexData:
        """Read index file synchronously (call within file lock)."""
        if not self.index_path.exists():
            return _IndexData()

        try:
            with open(self.index_path, encoding="utf-8") as f:
                data = json.load(f)
            return _IndexData(
                next_id=int(data.get("next_id", 1)),
                records=dict(data.get("records", {})),
            )
        except (json.JSONDecodeError, OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to read exchange index, starting fresh: {e}")
            return _IndexData()

    def _write_index_sync(self, data: _IndexData) -> None:
        """Write index file synchronously (call within file lock)."""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        # Write to temp file then rename for atomicity
        temp_path = self.index_path.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "version": self.INDEX_VERSION,
                    "next_id": data.next_id,
                    "records": data.records,
                },
                f,
                indent=2,
            )
        temp_path.replace(self.index_path)

    async def run_locked(self, func: Any, *args: Any) -> Any:
        """Run ``func(data, *args)`` against the index under both locks.

        ``func`` returns ``(result, changed)``; the index is rewritten only
        when ``changed`` is true.
        """
        async with self._async_lock:
            return await asyncio.to_thread(self._run_locked_sync, func, *args)

    def _run_locked_sync(self, func: Any, *args: Any) -> Any:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        try:
            with self._lock:
                data = self._read_index_sync()
                result, changed = func(data, *args)
                if changed:
                    self._write_index_sync(data)
                return result
        except Timeout:
            logger.error(f"Timeout acquiring exchange index lock for {func.__name__}")
            raise

    async def get_location(self, record_id: int) -> str | None:
        """Return the date directory for a record, or None if unknown."""

        def lookup(data: _IndexData) -> tuple[str | None, bool]:
            info = data.records.get(str(record_id))
            return (info["date"] if info else None), False

        return await self.run_locked(lookup)

    async def list_records(self) -> dict[int, dict[str, Any]]:
        """Map every record id to its {date, timestamp}."""

        def snapshot(data: _IndexData) -> tuple[dict[int, dict[str, Any]], bool]:
            return {int(rid): dict(info) for rid, info in data.records.items()}, False

        return await self.run_locked(snapshot)

    async def remove(self, record_ids: list[int]) -> int:
        """Remove record ids from the index. Returns the number removed."""

        def drop(data: _IndexData) -> tuple[int, bool]:
            removed = 0
            for rid in record_ids:
                if data.records.pop(str(rid), None) is not None:
                    removed += 1
            return removed, removed > 0

        return await self.run_locked(drop)

    async def remove_by_date(self, dates: list[str]) -> int:
        """Remove all records stored under the given dates."""
        date_set = set(dates)

        def drop(data: _IndexData) -> tuple[int, bool]:
            to_remove = [
                rid for rid, info in data.records.items() if info.get("date") in date_set
            ]
            for rid in to_remove:
                del data.records[rid]
            return len(to_remove), bool(to_remove)

        return await self.run_locked(drop)

    async def rebuild_from_disk(self) -> int:
        """
        Rebuild the index by scanning date directories.

        Returns:
            Number of records indexed
        """
        async with self._async_lock:
            return await asyncio.to_thread(self._rebuild_from_disk_sync)

    def _rebuild_from_disk_sync(self) -> int:
        records: dict[str, dict[str, Any]] = {}
        max_id = 0

        if self.log_dir.exists():
            for date_dir in self.log_dir.iterdir():
                if not date_dir.is_dir() or not _is_date_dir(date_dir.name):
                    continue

                for record_file in date_dir.glob("*.json"):
                    if not record_file.stem.isdigit():
                        continue
                    record_id = int(record_file.stem)
                    try:
                        with open(record_file, encoding="utf-8") as f:
                            timestamp = json.load(f).get("timestamp", record_file.stat().st_mtime)
                    except (json.JSONDecodeError, OSError):
                        timestamp = record_file.stat().st_mtime

                    records[str(record_id)] = {"date": date_dir.name, "timestamp": timestamp}
                    max_id = max(max_id, record_id)

        try:
            with self._lock:
                self._write_index_sync(_IndexData(next_id=max_id + 1, records=records))
        except Timeout:
            logger.error("Timeout acquiring exchange index lock for rebuild")
            raise

        logger.info(f"Rebuilt exchange index: {len(records)} records")
        return len(records)

    async def needs_rebuild(self) -> bool:
        """True when the index is missing or unreadable but records exist on disk."""
        async with self._async_lock:
            return await asyncio.to_thread(self._needs_rebuild_sync)

    def _needs_rebuild_sync(self) -> bool:
        if not self.index_path.exists():
            if not self.log_dir.exists():
                return False
            return any(
                date_dir.is_dir() and any(date_dir.glob("*.json"))
                for date_dir in self.log_dir.iterdir()
            )

        try:
            with self._lock:
                with open(self.index_path, encoding="utf-8") as f:
                    data = json.load(f)
            if "records" not in data or "next_id" not in data:
                logger.warning("Exchange index corrupted (missing keys), rebuilding")
                return True
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Exchange index corrupted or unreadable: {e}, rebuilding")
            return True
        return False


class ExchangeLog:
    """
    Durable store of exchange records.

    Storage structure:
    exchanges/
    ├── 2026-02-02/
    │   ├── 1.json
    │   └── 2.json
    ├── 2026-02-03/
    │   └── 3.json
    └── index.json
    """

    def __init__(
        self,
        log_dir: Path | str | None = None,
        ttl_hours: int = 168,
        max_records: int = 100,
    ):
        """
        Args:
            log_dir: Directory for records (None uses default_log_dir())
            ttl_hours: Hours to retain records (0 = forever)
            max_records: Maximum number of records kept by prune() (0 = unlimited)
        """
        self.log_dir = Path(log_dir) if log_dir else default_log_dir()
        self.ttl_hours = ttl_hours
        self.max_records = max_records
        self.index = ExchangeIndex(self.log_dir)

    async def validate_on_startup(self) -> dict[str, Any]:
        """
        Rebuild the index if needed, then apply retention.

        Returns:
            Dict with index_rebuilt, record_count and removed
        """
        rebuilt = False
        if await self.index.needs_rebuild():
            await self.index.rebuild_from_disk()
            rebuilt = True

        removed = await self.cleanup()
        count = await self.count()

        if rebuilt:
            logger.info(f"Exchange log startup: index rebuilt with {count} records")
        if removed > 0:
            logger.info(f"Exchange log startup: removed {removed} old records")

        return {"index_rebuilt": rebuilt, "record_count": count, "removed": removed}

    async def append(self, record: ExchangeRecord) -> int:
        """Write a record and return its id."""
        date_str = datetime.fromtimestamp(record.timestamp).strftime("%Y-%m-%d")
        payload = record.to_dict()

        def allocate_and_write(data: _IndexData) -> tuple[int, bool]:
            record_id = data.next_id
            data.next_id += 1
            date_dir = self.log_dir / date_str
            date_dir.mkdir(parents=True, exist_ok=True)
            self._write_record_file(date_dir / f"{record_id}.json", {"id": record_id, **payload})
            data.records[str(record_id)] = {"date": date_str, "timestamp": record.timestamp}
            return record_id, True

        record_id = await self.index.run_locked(allocate_and_write)
        logger.debug(f"Logged exchange {record_id} ({record.endpoint}) to {date_str}/")
        return record_id

    def _write_record_file(self, record_file: Path, data: dict[str, Any]) -> None:
        """Write record file atomically."""
        temp_path = record_file.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        temp_path.replace(record_file)

    async def get(self, record_id: int) -> dict[str, Any] | None:
        """
        Retrieve a record.

        Returns:
            Record dict if found, None otherwise
        """
        date_str = await self.index.get_location(record_id)
        if not date_str:
            return None

        record_file = self.log_dir / date_str / f"{record_id}.json"
        if not record_file.exists():
            # Index out of sync, remove stale entry
            await self.index.remove([record_id])
            return None

        try:
            return await asyncio.to_thread(_read_json, record_file)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to read exchange record {record_id}: {e}")
            return None

    async def list_recent(self, limit: int = 25, offset: int = 0) -> list[ExchangeSummary]:
        """
        List records, most recent first.

        Stale index entries (file deleted manually) are dropped from the
        index and excluded from the results.
        """
        index_records = await self.index.list_records()
        ordered = sorted(
            index_records.items(),
            key=lambda item: (item[1].get("timestamp", 0), item[0]),
            reverse=True,
        )

        summaries: list[ExchangeSummary] = []
        for record_id, info in ordered[offset:offset + limit]:
            data = await self.get(record_id)
            if not data:
                continue
            summaries.append(
                ExchangeSummary(
                    id=record_id,
                    date=info["date"],
                    timestamp=data.get("timestamp", info.get("timestamp", 0)),
                    endpoint=data.get("endpoint", ""),
                    model=data.get("model", ""),
                    status_code=data.get("status_code", 0),
                    latency_ms=data.get("latency_ms", 0),
                    stream=data.get("stream", False),
                    last_message=data.get("last_message", ""),
                    error=data.get("error", ""),
                    frontend_response_size=len(data.get("frontend_response", "")),
                    backend_response_size=len(data.get("backend_response", "")),
                )
            )
        return summaries

    async def count(self) -> int:
        """Get total number of records."""
        return len(await self.index.list_records())

    async def cleanup(self) -> int:
        """Apply both retention rules. Returns number of records removed."""
        return await self.cleanup_expired() + await self.prune()

    async def cleanup_expired(self) -> int:
        """
        Remove date directories older than ttl_hours.

        Returns:
            Number of records removed
        """
        if self.ttl_hours <= 0:
            return 0  # TTL disabled

        if not self.log_dir.exists():
            return 0

        cutoff_str = (datetime.now() - timedelta(hours=self.ttl_hours)).strftime("%Y-%m-%d")
        dates_to_remove = [
            date_dir.name
            for date_dir in self.log_dir.iterdir()
            if date_dir.is_dir() and _is_date_dir(date_dir.name) and date_dir.name < cutoff_str
        ]

        removed_count = 0
        for date_str in dates_to_remove:
            date_dir = self.log_dir / date_str
            try:
                file_count = len(list(date_dir.glob("*.json")))
                await asyncio.to_thread(shutil.rmtree, date_dir)
                removed_count += file_count
                logger.info(f"Removed expired exchange directory: {date_str}/ ({file_count} records)")
            except OSError as e:
                logger.error(f"Failed to remove exchange directory {date_str}: {e}")

        if dates_to_remove:
            await self.index.remove_by_date(dates_to_remove)

        return removed_count

    async def prune(self, max_records: int | None = None) -> int:
        """
        Delete the oldest records beyond ``max_records``.

        Returns:
            Number of records removed
        """
        limit = self.max_records if max_records is None else max_records
        if limit <= 0:
            return 0

        index_records = await self.index.list_records()
        excess = len(index_records) - limit
        if excess <= 0:
            return 0

        oldest = sorted(
            index_records.items(), key=lambda item: (item[1].get("timestamp", 0), item[0])
        )[:excess]

        for record_id, info in oldest:
            record_file = self.log_dir / info["date"] / f"{record_id}.json"
            try:
                await asyncio.to_thread(record_file.unlink, True)
            except OSError as e:
                logger.error(f"Failed to delete exchange record {record_id}: {e}")

        removed = await self.index.remove([record_id for record_id, _ in oldest])
        if removed:
            logger.info(f"Pruned {removed} old exchange record(s)")
        return removed


def _read_json(path: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _is_date_dir(name: str) -> bool:
    try:
        datetime.strptime(name, "%Y-%m-%d")
    except ValueError:
        return False
    return True
