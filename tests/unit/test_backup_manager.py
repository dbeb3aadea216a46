"""
Tests for the backup manager.

Tests cover:
- Cooldown gating and the backup state machine
- Retention of the newest backups
- Restore with cache invalidation
- Validation and cleanup of orphaned and corrupted backups
- File name parsing for project names containing underscores
- Byte-exact copies and per-project locking
"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from memory_lifecycle.backup import format_backup_name, parse_backup_name
from memory_lifecycle.errors import (
    BackupCorruptedError,
    BackupNotFoundError,
    CooldownActiveError,
    SourceNotFoundError,
)
from memory_lifecycle.models import BackupState, MemoryEntry, ProjectRecord


async def _seed(store, project="demo", *titles):
    record = ProjectRecord(
        project_name=project,
        memories={t: MemoryEntry(title=t, content=f"content {t}") for t in titles},
    )
    return await store.write(record)


# =============================================================================
# File naming
# =============================================================================


class TestBackupNaming:
    def test_format_and_parse(self):
        when = datetime(2025, 3, 4, 5, 6, 7, 890123, tzinfo=timezone.utc)
        name = format_backup_name("demo", when)

        assert name == "demo_2025-03-04_05-06-07-890123.json"
        assert parse_backup_name(Path(name)) == ("demo", when)

    def test_project_with_underscores(self):
        when = datetime(2025, 1, 1, tzinfo=timezone.utc)
        project, parsed = parse_backup_name(Path(format_backup_name("my_cool_project", when)))
        assert project == "my_cool_project"
        assert parsed == when

    def test_legacy_second_resolution_name(self):
        project, parsed = parse_backup_name(Path("demo_2024-06-01T10-20-30.json"))
        assert project == "demo"
        assert parsed == datetime(2024, 6, 1, 10, 20, 30, tzinfo=timezone.utc)

    def test_unrecognised_name(self):
        assert parse_backup_name(Path("random.json")) == ("random", None)

    def test_names_sort_chronologically(self):
        early = format_backup_name("demo", datetime(2025, 1, 1, 9, 59, 59, 999999, tzinfo=timezone.utc))
        late = format_backup_name("demo", datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc))
        assert sorted([late, early]) == [early, late]


# =============================================================================
# Cooldown
# =============================================================================


class TestCooldown:
    @pytest.mark.asyncio
    async def test_state_transitions(self, record_store, backup_manager, utc_clock):
        await _seed(record_store, "demo", "a")
        assert backup_manager.state("demo") == BackupState.NO_BACKUP

        await backup_manager.backup("demo")
        assert backup_manager.state("demo") == BackupState.COOLDOWN_ACTIVE
        assert backup_manager.last_backup_time("demo") == utc_clock.now

        utc_clock.advance(120)
        assert backup_manager.state("demo") == BackupState.READY

    @pytest.mark.asyncio
    async def test_unforced_backup_inside_cooldown_fails(self, record_store, backup_manager, utc_clock):
        await _seed(record_store, "demo", "a")
        await backup_manager.backup("demo")
        utc_clock.advance(30)

        with pytest.raises(CooldownActiveError) as exc_info:
            await backup_manager.backup("demo")

        assert exc_info.value.code == "COOLDOWN_ACTIVE"
        assert exc_info.value.retry_after == pytest.approx(90)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_forced_backup_bypasses_cooldown(self, record_store, backup_manager, utc_clock):
        await _seed(record_store, "demo", "a")
        first = await backup_manager.backup("demo")
        utc_clock.advance(1)

        second = await backup_manager.backup("demo", force=True)

        assert first != second
        assert second.exists()

    @pytest.mark.asyncio
    async def test_cooldown_is_per_project(self, record_store, backup_manager):
        await _seed(record_store, "one", "a")
        await _seed(record_store, "two", "a")

        await backup_manager.backup("one")
        assert backup_manager.can_backup("two")
        await backup_manager.backup("two")

    @pytest.mark.asyncio
    async def test_missing_source(self, backup_manager):
        with pytest.raises(SourceNotFoundError):
            await backup_manager.backup("ghost")
        assert backup_manager.state("ghost") == BackupState.NO_BACKUP


# =============================================================================
# Retention
# =============================================================================


class TestRetention:
    @pytest.mark.asyncio
    async def test_thirty_forced_backups_keep_newest_twenty_five(self, record_store, backup_manager, utc_clock):
        await _seed(record_store, "demo", "a")
        created = []
        for _ in range(30):
            created.append(await backup_manager.backup("demo", force=True))
            utc_clock.advance(1)

        backups = await backup_manager.list_backups("demo")

        assert len(backups) == 25
        assert [Path(b.file_path) for b in backups] == list(reversed(created[5:]))

    @pytest.mark.asyncio
    async def test_cleanup_with_explicit_cap(self, record_store, backup_manager, utc_clock):
        await _seed(record_store, "demo", "a")
        for _ in range(5):
            await backup_manager.backup("demo", force=True)
            utc_clock.advance(1)

        assert await backup_manager.cleanup_old_backups("demo", max_backups=2) == 3
        assert len(await backup_manager.list_backups("demo")) == 2
        assert await backup_manager.cleanup_old_backups("demo", max_backups=2) == 0

    @pytest.mark.asyncio
    async def test_custom_path(self, record_store, backup_manager, tmp_path):
        await _seed(record_store, "demo", "a")
        target_dir = tmp_path / "elsewhere"

        path = await backup_manager.backup("demo", custom_path=target_dir)

        assert path.parent == target_dir
        assert await backup_manager.list_backups("demo") == []

    @pytest.mark.asyncio
    async def test_retention_in_shared_directory_keeps_foreign_files(
        self, record_store, backup_manager, utc_clock, tmp_path
    ):
        await _seed(record_store, "demo", "a")
        shared = tmp_path / "shared"
        shared.mkdir()
        for i in range(30):
            (shared / f"unrelated_{i:02d}.json").write_text("{}", encoding="utf-8")
        other = shared / format_backup_name("other", datetime(2020, 1, 1, tzinfo=timezone.utc))
        other.write_text("{}", encoding="utf-8")

        for _ in range(27):
            await backup_manager.backup("demo", force=True, custom_path=shared)
            utc_clock.advance(1)

        assert len(list(shared.glob("unrelated_*.json"))) == 30
        assert other.exists()
        assert len(await backup_manager.list_backups("demo", directory=shared)) == 25

    @pytest.mark.asyncio
    async def test_retention_failure_does_not_fail_backup(self, record_store, backup_manager):
        await _seed(record_store, "demo", "a")

        with patch.object(backup_manager, "cleanup_old_backups", AsyncMock(side_effect=OSError("denied"))):
            path = await backup_manager.backup("demo")

        assert path.exists()
        assert backup_manager.state("demo") == BackupState.COOLDOWN_ACTIVE


# =============================================================================
# Restore and validation
# =============================================================================


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_replaces_record_and_invalidates_cache(self, record_store, backup_manager):
        await _seed(record_store, "demo", "original")
        path = await backup_manager.backup("demo")

        await _seed(record_store, "demo", "changed")
        assert "changed" in (await record_store.read("demo")).memories

        restored = await backup_manager.restore(path)

        assert restored == "demo"
        record = await record_store.read("demo")
        assert set(record.memories) == {"original"}

    @pytest.mark.asyncio
    async def test_restore_into_other_project(self, record_store, backup_manager):
        await _seed(record_store, "demo", "a")
        path = await backup_manager.backup("demo")

        await backup_manager.restore(path, project="copy")

        assert "a" in (await record_store.read("copy")).memories

    @pytest.mark.asyncio
    async def test_restore_missing_backup(self, backup_manager, tmp_path):
        with pytest.raises(BackupNotFoundError):
            await backup_manager.restore(tmp_path / "nope.json")

    @pytest.mark.asyncio
    async def test_restore_corrupted_backup_leaves_project(self, record_store, backup_manager, tmp_path):
        await _seed(record_store, "demo", "keep")
        bad = tmp_path / "demo_2025-01-01_00-00-00-000000.json"
        bad.write_text("{broken", encoding="utf-8")

        with pytest.raises(BackupCorruptedError):
            await backup_manager.restore(bad)

        assert "keep" in (await record_store.read("demo")).memories

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content,expected",
        [('{"memories": {}}', True), ("{}", True), ("null", False), ("[1]", False), ("not json", False)],
    )
    async def test_validate(self, backup_manager, tmp_path, content, expected):
        path = tmp_path / "b.json"
        path.write_text(content, encoding="utf-8")
        assert await backup_manager.validate(path) is expected

    @pytest.mark.asyncio
    async def test_validate_missing_file(self, backup_manager, tmp_path):
        assert await backup_manager.validate(tmp_path / "missing.json") is False


# =============================================================================
# Cleanup sweeps and statistics
# =============================================================================


class TestCleanup:
    @pytest.mark.asyncio
    async def test_orphaned_backups_removed(self, record_store, backup_manager):
        await _seed(record_store, "keep", "a")
        await _seed(record_store, "gone", "a")
        await backup_manager.backup("keep")
        await backup_manager.backup("gone")
        await record_store.delete("gone")

        stats = await backup_manager.get_cleanup_stats()
        assert stats.orphaned_backups == 1

        assert await backup_manager.cleanup_orphaned() == 1
        remaining = await backup_manager.list_backups()
        assert [b.project_name for b in remaining] == ["keep"]

    @pytest.mark.asyncio
    async def test_corrupted_backups_removed(self, record_store, backup_manager):
        await _seed(record_store, "demo", "a")
        good = await backup_manager.backup("demo")
        bad = good.parent / "demo_2020-01-01_00-00-00-000000.json"
        bad.write_text("[]", encoding="utf-8")

        assert (await backup_manager.get_cleanup_stats()).corrupted_backups == 1
        assert await backup_manager.cleanup_corrupted() == 1
        assert good.exists()
        assert not bad.exists()

    @pytest.mark.asyncio
    async def test_delete_missing_backup(self, backup_manager, tmp_path):
        with pytest.raises(BackupNotFoundError):
            await backup_manager.delete_backup(tmp_path / "none.json")

    @pytest.mark.asyncio
    async def test_backup_stats(self, record_store, backup_manager, utc_clock):
        empty = await backup_manager.get_backup_stats("demo")
        assert empty.total_backups == 0
        assert empty.newest_backup is None

        await _seed(record_store, "demo", "a")
        await backup_manager.backup("demo")
        utc_clock.advance(1)
        await backup_manager.backup("demo", force=True)

        stats = await backup_manager.get_backup_stats("demo")
        assert stats.total_backups == 2
        assert stats.oldest_backup < stats.newest_backup
        assert stats.average_size == round(stats.total_size / 2)

    @pytest.mark.asyncio
    async def test_backup_content_matches_source(self, record_store, backup_manager):
        await _seed(record_store, "demo", "a")
        path = await backup_manager.backup("demo")

        source = json.loads(record_store.get_project_path("demo").read_text(encoding="utf-8"))
        assert json.loads(path.read_text(encoding="utf-8")) == source

    @pytest.mark.asyncio
    async def test_backup_of_non_utf8_file_is_byte_exact(self, record_store, backup_manager):
        raw = b'{"memories": {"a": "\xff"}}'
        source = record_store.get_project_path("demo")
        source.parent.mkdir(parents=True, exist_ok=True)
        source.write_bytes(raw)

        path = await backup_manager.backup("demo", force=True)

        assert path.read_bytes() == raw


# =============================================================================
# Locking
# =============================================================================


class TestLocking:
    @pytest.mark.asyncio
    async def test_projects_back_up_independently(self, record_store, backup_manager):
        await _seed(record_store, "alpha", "a")
        await _seed(record_store, "beta", "b")

        async with backup_manager._project_lock("alpha"):
            assert backup_manager.in_progress
            path = await asyncio.wait_for(backup_manager.backup("beta"), timeout=0.5)

        assert path.exists()
        assert not backup_manager.in_progress
