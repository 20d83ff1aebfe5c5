"""Tests for ConflictResolver and merge_content."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from meeting_sync.errors import FileSystemError
from meeting_sync.sync.locks import PathLockManager
from meeting_sync.sync.models import Conflict, ConflictResolution, ConflictType
from meeting_sync.sync.resolver import ConflictResolver, merge_content
from meeting_sync.sync.store import FileSystemDocumentStore

LOCAL = "---\nremote_id: doc-1\nmine: true\n---\n\n# Sync\n\nLocal body with extra notes.\n"
REMOTE = "---\nremote_id: doc-1\n---\n\n# Sync\n\nRemote body.\n"


def _conflict(
    conflict_type: ConflictType,
    local_path: str | None = "Meetings/a.md",
    remote_path: str | None = "Meetings/a.md",
) -> Conflict:
    return Conflict(
        type=conflict_type,
        remote_id="doc-1",
        local_path=local_path,
        remote_path=remote_path,
        description="test",
    )


@pytest.fixture
def store(vault):
    return FileSystemDocumentStore(vault)


@pytest.fixture
def resolver(store):
    return ConflictResolver(store, PathLockManager(timeout=1.0))


@pytest.fixture
def local_note(vault):
    (vault / "Meetings").mkdir()
    note = vault / "Meetings" / "a.md"
    note.write_bytes(LOCAL.encode("utf-8"))
    return note


# ---------------------------------------------------------------------------
# suggest
# ---------------------------------------------------------------------------


class TestSuggest:
    @pytest.mark.parametrize(
        "conflict_type, prefer_local, expected",
        [
            (ConflictType.USER_MODIFIED, True, ConflictResolution.KEEP_LOCAL),
            (ConflictType.USER_MODIFIED, False, ConflictResolution.BACKUP_AND_UPDATE),
            (ConflictType.BOTH_MODIFIED, True, ConflictResolution.BACKUP_AND_UPDATE),
            (ConflictType.FILE_MISSING, True, ConflictResolution.KEEP_REMOTE),
            (ConflictType.METADATA_CORRUPTED, True, ConflictResolution.KEEP_REMOTE),
            (ConflictType.DUPLICATE_ID, True, ConflictResolution.CREATE_DUPLICATE),
            (ConflictType.PATH_CONFLICT, True, ConflictResolution.CREATE_DUPLICATE),
        ],
    )
    def test_default_table(self, store, conflict_type, prefer_local, expected):
        resolver = ConflictResolver(store, PathLockManager(), prefer_local)
        assert resolver.suggest(_conflict(conflict_type)) is expected

    @pytest.mark.parametrize(
        "strategy, expected",
        [
            ("local", ConflictResolution.KEEP_LOCAL),
            ("remote", ConflictResolution.KEEP_REMOTE),
            ("backup", ConflictResolution.BACKUP_AND_UPDATE),
        ],
    )
    def test_strategy_overrides_every_type(self, resolver, strategy, expected):
        for conflict_type in ConflictType:
            assert resolver.suggest(_conflict(conflict_type), strategy) is expected

    def test_unknown_strategy_raises(self, resolver):
        with pytest.raises(ValueError, match="Unknown resolution strategy"):
            resolver.suggest(_conflict(ConflictType.USER_MODIFIED), "newest")


# ---------------------------------------------------------------------------
# apply
# ---------------------------------------------------------------------------


class TestApply:
    async def test_skip(self, resolver, local_note):
        outcome = await resolver.apply(
            _conflict(ConflictType.USER_MODIFIED), ConflictResolution.SKIP, REMOTE
        )
        assert outcome.kind == "skip"

    async def test_keep_local(self, resolver, local_note):
        outcome = await resolver.apply(
            _conflict(ConflictType.USER_MODIFIED),
            ConflictResolution.KEEP_LOCAL,
            REMOTE,
        )
        assert outcome.kind == "keep"
        assert outcome.path == "Meetings/a.md"
        assert local_note.read_text() == LOCAL

    async def test_keep_local_without_note_skips(self, resolver):
        outcome = await resolver.apply(
            _conflict(ConflictType.FILE_MISSING),
            ConflictResolution.KEEP_LOCAL,
            REMOTE,
        )
        assert outcome.kind == "skip"

    async def test_keep_local_on_path_conflict_skips(self, resolver, local_note):
        outcome = await resolver.apply(
            _conflict(ConflictType.PATH_CONFLICT),
            ConflictResolution.KEEP_LOCAL,
            REMOTE,
        )
        assert outcome.kind == "skip"

    async def test_keep_remote_recreates_missing_note(self, resolver):
        outcome = await resolver.apply(
            _conflict(ConflictType.FILE_MISSING, remote_path="Meetings/new.md"),
            ConflictResolution.KEEP_REMOTE,
            REMOTE,
        )
        assert outcome.kind == "write"
        assert outcome.path == "Meetings/new.md"
        assert outcome.content == REMOTE

    async def test_keep_remote_overwrites_in_place(self, resolver, local_note):
        outcome = await resolver.apply(
            _conflict(ConflictType.METADATA_CORRUPTED, remote_path="Meetings/b.md"),
            ConflictResolution.KEEP_REMOTE,
            REMOTE,
        )
        assert outcome.path == "Meetings/a.md"

    async def test_backup_and_update_copies_bytes(self, resolver, local_note, vault):
        outcome = await resolver.apply(
            _conflict(ConflictType.BOTH_MODIFIED),
            ConflictResolution.BACKUP_AND_UPDATE,
            REMOTE,
        )

        assert outcome.kind == "write"
        assert outcome.path == "Meetings/a.md"
        assert outcome.backup_path.startswith("Meetings/a.backup-")
        assert outcome.backup_path.endswith(".md")
        assert (vault / outcome.backup_path).read_bytes() == LOCAL.encode("utf-8")

    async def test_backup_and_update_dry_run(self, resolver, local_note, vault):
        outcome = await resolver.apply(
            _conflict(ConflictType.BOTH_MODIFIED),
            ConflictResolution.BACKUP_AND_UPDATE,
            REMOTE,
            dry_run=True,
        )

        assert outcome.backup_path is None
        assert [p.name for p in (vault / "Meetings").iterdir()] == ["a.md"]

    async def test_backup_and_update_without_backup(self, resolver, local_note, vault):
        outcome = await resolver.apply(
            _conflict(ConflictType.BOTH_MODIFIED),
            ConflictResolution.BACKUP_AND_UPDATE,
            REMOTE,
            backup=False,
        )

        assert outcome.kind == "write"
        assert outcome.content == REMOTE
        assert outcome.backup_path is None
        assert [p.name for p in (vault / "Meetings").iterdir()] == ["a.md"]

    async def test_merge(self, resolver, local_note):
        outcome = await resolver.apply(
            _conflict(ConflictType.BOTH_MODIFIED),
            ConflictResolution.MERGE,
            REMOTE,
        )
        assert outcome.merged is True
        assert outcome.content == merge_content(LOCAL, REMOTE)

    async def test_merge_without_local_writes_remote(self, resolver):
        outcome = await resolver.apply(
            _conflict(ConflictType.FILE_MISSING),
            ConflictResolution.MERGE,
            REMOTE,
        )
        assert outcome.merged is False
        assert outcome.content == REMOTE

    async def test_create_duplicate_uses_first_free_path(self, resolver, local_note):
        taken = {"Meetings/a.md", "Meetings/a (2).md"}
        outcome = await resolver.apply(
            _conflict(ConflictType.PATH_CONFLICT),
            ConflictResolution.CREATE_DUPLICATE,
            REMOTE,
            is_taken=taken.__contains__,
        )
        assert outcome.kind == "write"
        assert outcome.path == "Meetings/a (3).md"

    async def test_create_duplicate_default_predicate(self, resolver, local_note):
        outcome = await resolver.apply(
            _conflict(ConflictType.DUPLICATE_ID),
            ConflictResolution.CREATE_DUPLICATE,
            REMOTE,
        )
        assert outcome.path == "Meetings/a (2).md"


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


class TestBackups:
    async def test_backup_name_made_unique(self, resolver, local_note, vault):
        with patch("meeting_sync.sync.resolver.time.time", return_value=1700000000.0):
            first = await resolver.create_backup("Meetings/a.md")
            second = await resolver.create_backup("Meetings/a.md")

        assert first == "Meetings/a.backup-1700000000000.md"
        assert second == "Meetings/a.backup-1700000000000-1.md"
        assert (vault / second).read_bytes() == LOCAL.encode("utf-8")

    async def test_backup_missing_note_raises(self, resolver):
        with pytest.raises(FileSystemError):
            await resolver.create_backup("Meetings/missing.md")


# ---------------------------------------------------------------------------
# merge_content
# ---------------------------------------------------------------------------


class TestMergeContent:
    def test_longer_local_body_wins(self):
        merged = merge_content(LOCAL, REMOTE)

        assert merged.startswith("---\nremote_id: doc-1\n---\n\n# Sync")
        assert "mine: true" not in merged
        assert "Local body with extra notes." in merged
        assert "<!-- BEGIN DISCARDED REMOTE VERSION -->" in merged
        assert "Remote body." in merged

    def test_longer_remote_body_wins(self):
        merged = merge_content(
            REMOTE, REMOTE.replace("Remote body.", "Remote body, longer.")
        )
        assert "Remote body, longer." in merged
        assert "<!-- BEGIN DISCARDED LOCAL VERSION -->" in merged

    def test_identical_bodies_have_no_marker(self):
        merged = merge_content(LOCAL.replace("mine: true\n", ""), LOCAL)
        assert "DISCARDED" not in merged

    def test_empty_local_body(self):
        merged = merge_content("---\nremote_id: doc-1\n---\n", REMOTE)
        assert "DISCARDED" not in merged
        assert merged.endswith("Remote body.\n")

    def test_nothing_lost(self):
        merged = merge_content(LOCAL, REMOTE)
        for fragment in ("Local body with extra notes.", "Remote body."):
            assert fragment in merged
