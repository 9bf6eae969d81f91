"""Tests for exchange log storage."""

import json
import os
import tempfile
import time
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

import pytest

from exchange_log import ExchangeIndex, ExchangeLog, ExchangeRecord, default_log_dir


def make_record(timestamp: float | None = None, **overrides) -> ExchangeRecord:
    record = ExchangeRecord(
        timestamp=time.time() if timestamp is None else timestamp,
        endpoint="/api/generate",
        method="POST",
        model="llama3",
        status_code=200,
        latency_ms=12,
        stream=True,
        backend_type="openai",
        state="Completed",
        prompt="Say hello",
        response="Hello",
        last_message="Say hello",
        frontend_request='{"model": "llama3", "prompt": "Say hello"}',
        frontend_response='{"response": "Hello", "done": true}',
        backend_request='{"model": "llama3", "prompt": "Say hello", "stream": true}',
        backend_response='data: {"choices": [{"text": "Hello"}]}\n\ndata: [DONE]\n',
    )
    return replace(record, **overrides)


class TestDefaultLogDir:
    """Tests for default_log_dir."""

    def test_platform_default(self) -> None:
        """Test the platform state directory is used when env not set."""
        with patch.dict(os.environ, {}, clear=True):
            path = default_log_dir()
        assert path.name == "exchanges"
        assert "llm_proxy" in str(path)

    def test_state_home_from_env(self) -> None:
        """Test LLM_PROXY_STATE_HOME replaces the platform directory."""
        with patch.dict(os.environ, {"LLM_PROXY_STATE_HOME": "/custom/state"}):
            path = default_log_dir()
        assert path == Path("/custom/state/exchanges")

    def test_log_uses_default_without_directory(self) -> None:
        with patch.dict(os.environ, {"LLM_PROXY_STATE_HOME": "/custom/state"}):
            log = ExchangeLog()
        assert log.log_dir == Path("/custom/state/exchanges")

    def test_log_accepts_string_directory(self) -> None:
        log = ExchangeLog(log_dir="/custom/exchanges")
        assert log.log_dir == Path("/custom/exchanges")


class TestExchangeLog:
    """Tests for ExchangeLog."""

    @pytest.fixture
    def log_dir(self) -> Path:
        """Create a temporary log directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def exchange_log(self, log_dir: Path) -> ExchangeLog:
        """Create an ExchangeLog instance."""
        return ExchangeLog(log_dir=log_dir, ttl_hours=168, max_records=100)

    @pytest.mark.asyncio
    async def test_append_assigns_increasing_ids(self, exchange_log: ExchangeLog) -> None:
        """Test that every append gets a new, larger id."""
        first = await exchange_log.append(make_record())
        second = await exchange_log.append(make_record())
        third = await exchange_log.append(make_record())

        assert first < second < third

    @pytest.mark.asyncio
    async def test_append_and_get(self, exchange_log: ExchangeLog) -> None:
        """Test retrieving a stored record."""
        record_id = await exchange_log.append(make_record(model="qwen"))

        stored = await exchange_log.get(record_id)

        assert stored is not None
        assert stored["id"] == record_id
        assert stored["model"] == "qwen"
        assert stored["backend_response"].endswith("data: [DONE]\n")

    @pytest.mark.asyncio
    async def test_record_file_layout(self, exchange_log: ExchangeLog, log_dir: Path) -> None:
        """Test records are written under a per-day directory."""
        timestamp = time.time()
        record_id = await exchange_log.append(make_record(timestamp=timestamp))

        date_str = time.strftime("%Y-%m-%d", time.localtime(timestamp))
        record_file = log_dir / date_str / f"{record_id}.json"
        assert record_file.exists()
        with open(record_file) as f:
            assert json.load(f)["endpoint"] == "/api/generate"

    @pytest.mark.asyncio
    async def test_get_nonexistent(self, exchange_log: ExchangeLog) -> None:
        """Test retrieving a record that doesn't exist."""
        assert await exchange_log.get(999) is None

    @pytest.mark.asyncio
    async def test_get_with_missing_file(
        self, exchange_log: ExchangeLog, log_dir: Path
    ) -> None:
        """Test that a record deleted from disk is dropped from the index."""
        record_id = await exchange_log.append(make_record())
        for record_file in log_dir.glob(f"*/{record_id}.json"):
            record_file.unlink()

        assert await exchange_log.get(record_id) is None
        assert await exchange_log.count() == 0

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, exchange_log: ExchangeLog) -> None:
        """Test listing summaries, most recent first, with paging."""
        now = time.time()
        ids = [
            await exchange_log.append(make_record(timestamp=now - 30, last_message="a")),
            await exchange_log.append(make_record(timestamp=now - 20, last_message="b")),
            await exchange_log.append(make_record(timestamp=now - 10, last_message="c")),
        ]

        summaries = await exchange_log.list_recent(limit=2)
        assert [s.id for s in summaries] == [ids[2], ids[1]]
        assert summaries[0].last_message == "c"
        assert summaries[0].backend_response_size > 0

        page_two = await exchange_log.list_recent(limit=2, offset=2)
        assert [s.id for s in page_two] == [ids[0]]

    @pytest.mark.asyncio
    async def test_count(self, exchange_log: ExchangeLog) -> None:
        """Test the record count."""
        assert await exchange_log.count() == 0

        await exchange_log.append(make_record())
        await exchange_log.append(make_record())

        assert await exchange_log.count() == 2

    @pytest.mark.asyncio
    async def test_prune_removes_oldest(self, log_dir: Path) -> None:
        """Test that pruning keeps only the newest max_records."""
        exchange_log = ExchangeLog(log_dir=log_dir, ttl_hours=0, max_records=2)
        now = time.time()
        oldest = await exchange_log.append(make_record(timestamp=now - 30))
        middle = await exchange_log.append(make_record(timestamp=now - 20))
        newest = await exchange_log.append(make_record(timestamp=now - 10))

        removed = await exchange_log.prune()

        assert removed == 1
        assert await exchange_log.get(oldest) is None
        assert await exchange_log.get(middle) is not None
        assert await exchange_log.get(newest) is not None

    @pytest.mark.asyncio
    async def test_prune_unlimited(self, log_dir: Path) -> None:
        """Test that max_records=0 disables pruning."""
        exchange_log = ExchangeLog(log_dir=log_dir, max_records=0)
        for _ in range(3):
            await exchange_log.append(make_record())

        assert await exchange_log.prune() == 0
        assert await exchange_log.count() == 3

    @pytest.mark.asyncio
    async def test_ids_not_reused_after_prune(self, log_dir: Path) -> None:
        """Test that ids keep increasing after old records are pruned."""
        exchange_log = ExchangeLog(log_dir=log_dir, max_records=1)
        first = await exchange_log.append(make_record())
        second = await exchange_log.append(make_record())
        await exchange_log.prune()

        third = await exchange_log.append(make_record())

        assert third > second > first

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, exchange_log: ExchangeLog, log_dir: Path) -> None:
        """Test that day directories older than the TTL are removed."""
        old_id = await exchange_log.append(make_record(timestamp=time.time() - 10 * 86400))
        new_id = await exchange_log.append(make_record())

        removed = await exchange_log.cleanup_expired()

        assert removed == 1
        assert await exchange_log.get(old_id) is None
        assert await exchange_log.get(new_id) is not None

    @pytest.mark.asyncio
    async def test_cleanup_expired_disabled(self, log_dir: Path) -> None:
        """Test that ttl_hours=0 keeps everything."""
        exchange_log = ExchangeLog(log_dir=log_dir, ttl_hours=0)
        await exchange_log.append(make_record(timestamp=time.time() - 30 * 86400))

        assert await exchange_log.cleanup_expired() == 0
        assert await exchange_log.count() == 1


class TestExchangeIndex:
    """Tests for ExchangeIndex with file locking."""

    @pytest.fixture
    def log_dir(self) -> Path:
        """Create a temporary log directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def exchange_log(self, log_dir: Path) -> ExchangeLog:
        return ExchangeLog(log_dir=log_dir)

    @pytest.mark.asyncio
    async def test_get_location(self, exchange_log: ExchangeLog) -> None:
        """Test looking up the day directory of a record."""
        timestamp = time.time()
        record_id = await exchange_log.append(make_record(timestamp=timestamp))

        location = await exchange_log.index.get_location(record_id)

        assert location == time.strftime("%Y-%m-%d", time.localtime(timestamp))

    @pytest.mark.asyncio
    async def test_remove(self, exchange_log: ExchangeLog) -> None:
        """Test removing records from the index."""
        record_id = await exchange_log.append(make_record())

        assert await exchange_log.index.remove([record_id, 12345]) == 1
        assert await exchange_log.index.get_location(record_id) is None

    @pytest.mark.asyncio
    async def test_list_records_uses_int_ids(self, exchange_log: ExchangeLog) -> None:
        """Test that list_records keys are integer ids."""
        record_id = await exchange_log.append(make_record())

        records = await exchange_log.index.list_records()

        assert list(records) == [record_id]

    @pytest.mark.asyncio
    async def test_empty_dir_needs_no_rebuild(self, log_dir: Path) -> None:
        """Test that a fresh directory does not need a rebuild."""
        index = ExchangeIndex(log_dir)

        assert await index.needs_rebuild() is False


class TestExchangeLogValidation:
    """Tests for startup validation and index rebuild."""

    @pytest.fixture
    def log_dir(self) -> Path:
        """Create a temporary log directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.mark.asyncio
    async def test_validate_empty(self, log_dir: Path) -> None:
        """Test validation on an empty log (no index, no files)."""
        exchange_log = ExchangeLog(log_dir=log_dir)

        result = await exchange_log.validate_on_startup()

        assert result["index_rebuilt"] is False
        assert result["record_count"] == 0

    @pytest.mark.asyncio
    async def test_validate_rebuilds_corrupted_index(self, log_dir: Path) -> None:
        """Test that a corrupted index is rebuilt from the record files."""
        exchange_log = ExchangeLog(log_dir=log_dir)
        first = await exchange_log.append(make_record())
        second = await exchange_log.append(make_record())

        with open(log_dir / "index.json", "w") as f:
            f.write("not valid json {{{")

        result = await exchange_log.validate_on_startup()

        assert result["index_rebuilt"] is True
        assert result["record_count"] == 2
        assert await exchange_log.get(first) is not None

        # Allocation continues after the highest id found on disk
        assert await exchange_log.append(make_record()) == second + 1

    @pytest.mark.asyncio
    async def test_validate_rebuilds_missing_index(self, log_dir: Path) -> None:
        """Test that a deleted index is rebuilt from the record files."""
        exchange_log = ExchangeLog(log_dir=log_dir)
        record_id = await exchange_log.append(make_record())
        (log_dir / "index.json").unlink()

        result = await exchange_log.validate_on_startup()

        assert result["index_rebuilt"] is True
        assert await exchange_log.get(record_id) is not None

    @pytest.mark.asyncio
    async def test_validate_applies_retention(self, log_dir: Path) -> None:
        """Test that startup validation prunes beyond max_records."""
        exchange_log = ExchangeLog(log_dir=log_dir, max_records=1)
        await exchange_log.append(make_record(timestamp=time.time() - 10))
        await exchange_log.append(make_record())

        result = await exchange_log.validate_on_startup()

        assert result["removed"] == 1
        assert result["record_count"] == 1
