"""Tests for sidecar store I/O and serialized mutations."""

import asyncio
import json
import os
from pathlib import Path

import pytest

from ghost_comments.config import GhostConfig
from ghost_comments.document import TextDocument
from ghost_comments.logging import Logger
from ghost_comments.models import Annotation
from ghost_comments.storage import (
    AnnotationStore,
    AnnotationTooLongError,
    MalformedStoreError,
    is_safe_sidecar_name,
    read_store_file,
    write_store_file,
)
from ghost_comments.workspace import WorkspaceResolver


def read_json(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


class TestSidecarName:
    """Tests for is_safe_sidecar_name()."""

    @pytest.mark.parametrize("name", [".ghost-comments.json", "notes.json", "x.json"])
    def test_plain_names_allowed(self, name: str) -> None:
        assert is_safe_sidecar_name(name)

    @pytest.mark.parametrize("name", ["", "../evil.json", "sub/notes.json", "sub\\notes.json", ".."])
    def test_escaping_names_rejected(self, name: str) -> None:
        assert not is_safe_sidecar_name(name)


class TestReadWriteStoreFile:
    """Tests for the raw sidecar read/write functions."""

    def test_missing_file_is_empty_store(self, tmp_path: Path) -> None:
        assert read_store_file(tmp_path / "none.json", 1024) == {}

    def test_oversized_file_is_empty_store(self, tmp_path: Path) -> None:
        path = tmp_path / "big.json"
        path.write_text(json.dumps({"a.py": {}}) + " " * 100)
        assert read_store_file(path, 10) == {}

    def test_invalid_json_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(MalformedStoreError, match="Invalid JSON"):
            read_store_file(path, 1024)

    def test_wrong_shape_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"a.py": {"1": {"text": "no author"}}}))
        with pytest.raises(MalformedStoreError, match="schema validation"):
            read_store_file(path, 1024)

    def test_write_is_indented_and_sorted(self, tmp_path: Path) -> None:
        path = tmp_path / "store.json"
        store = {
            "b.py": {3: Annotation(text="b", author="x", updated_at=1, context="")},
            "a.py": {12: Annotation(text="a", author="x", updated_at=2, context="c")},
        }
        write_store_file(path, store)

        content = path.read_text(encoding="utf-8")
        assert content.startswith('{\n  "a.py": {\n    "12": {')
        assert content.endswith("}\n")
        assert read_store_file(path, 1 << 20) == store

    def test_write_leaves_no_temp_files(self, tmp_path: Path) -> None:
        write_store_file(tmp_path / "store.json", {})
        assert sorted(p.name for p in tmp_path.iterdir()) == ["store.json"]

    def test_failed_write_keeps_original(self, tmp_path: Path, monkeypatch) -> None:
        path = tmp_path / "store.json"
        path.write_text("{}\n")

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", fail_replace)
        with pytest.raises(OSError, match="disk full"):
            write_store_file(path, {"a.py": {0: Annotation(text="t", author="x", updated_at=1)}})

        assert path.read_text() == "{}\n"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["store.json"]


class TestStoreLocation:
    """Tests for AnnotationStore.resolve_store_location()."""

    def test_file_in_workspace(self, store: AnnotationStore, workspace: Path) -> None:
        assert store.resolve_store_location(workspace / "a.py") == workspace / ".ghost-comments.json"

    def test_file_outside_workspace(self, store: AnnotationStore, tmp_path: Path) -> None:
        assert store.resolve_store_location(tmp_path / "elsewhere.py") is None

    def test_traversal_filename_rejected(self, workspace: Path, capsys) -> None:
        config = GhostConfig(filename="../../etc/evil.json")
        store = AnnotationStore(config, WorkspaceResolver([workspace]), logger=Logger(use_colors=False))

        assert store.resolve_store_location(workspace / "a.py") is None
        assert "Invalid sidecar filename" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_traversal_filename_never_written(self, workspace: Path, tmp_path: Path) -> None:
        config = GhostConfig(filename="../evil.json")
        store = AnnotationStore(config, WorkspaceResolver([workspace]), logger=Logger(use_colors=False))
        (workspace / "a.py").write_text("x\n")

        assert await store.save(workspace / "a.py", 0, "note", "me", "x") is False
        assert await store.load(workspace / "a.py") == {}
        assert not (tmp_path / "evil.json").exists()

    def test_nested_workspace_gets_own_sidecar(self, workspace: Path) -> None:
        inner = workspace / "packages" / "inner"
        inner.mkdir(parents=True)
        store = AnnotationStore(GhostConfig(), WorkspaceResolver([workspace, inner]))
        assert store.resolve_store_location(inner / "x.py") == inner.resolve() / ".ghost-comments.json"


class TestLoad:
    """Tests for AnnotationStore.load()."""

    @pytest.mark.asyncio
    async def test_no_sidecar_is_empty(self, store: AnnotationStore, workspace: Path, sidecar: Path) -> None:
        assert await store.load(workspace / "a.py") == {}
        assert not sidecar.exists()

    @pytest.mark.asyncio
    async def test_oversized_sidecar_is_empty(self, workspace: Path, sidecar: Path) -> None:
        sidecar.write_text(json.dumps({"a.py": {"0": {"text": "t", "author": "a", "updatedAt": 1}}}))
        store = AnnotationStore(GhostConfig(max_file_size=10), WorkspaceResolver([workspace]))
        assert await store.load(workspace / "a.py") == {}

    @pytest.mark.asyncio
    async def test_malformed_sidecar_raises_and_logs(
        self, store: AnnotationStore, workspace: Path, sidecar: Path, capsys
    ) -> None:
        sidecar.write_text("[1, 2")
        with pytest.raises(MalformedStoreError):
            await store.load(workspace / "a.py")
        assert "Failed to parse the comments file" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_legacy_entries_without_context(
        self, store: AnnotationStore, workspace: Path, sidecar: Path
    ) -> None:
        sidecar.write_text(json.dumps({"a.py": {"2": {"text": "old", "author": "a", "updatedAt": 5}}}))
        annotations = await store.annotations_for(workspace / "a.py")
        assert annotations[2].context == ""


class TestSave:
    """Tests for AnnotationStore.save() and delete()."""

    @pytest.mark.asyncio
    async def test_save_creates_sidecar(
        self, store: AnnotationStore, sample_file: Path, sidecar: Path
    ) -> None:
        assert await store.save(sample_file, 4, "fix this", "alice", "value_5 = 5") is True

        data = read_json(sidecar)
        entry = data["src/app.py"]["4"]
        assert entry["text"] == "fix this"
        assert entry["author"] == "alice"
        assert entry["context"] == "value_5 = 5"
        assert isinstance(entry["updatedAt"], int)

    @pytest.mark.asyncio
    async def test_save_replaces_existing_entry(
        self, store: AnnotationStore, sample_file: Path
    ) -> None:
        await store.save(sample_file, 4, "first", "alice", "value_5 = 5")
        await store.save(sample_file, 4, "second", "bob", "value_5 = 5")

        annotations = await store.annotations_for(sample_file)
        assert list(annotations) == [4]
        assert annotations[4].text == "second"
        assert annotations[4].author == "bob"

    @pytest.mark.asyncio
    async def test_empty_text_deletes_and_prunes(
        self, store: AnnotationStore, sample_file: Path, sidecar: Path
    ) -> None:
        await store.save(sample_file, 4, "fix this", "alice", "value_5 = 5")
        assert await store.delete(sample_file, 4) is True
        assert read_json(sidecar) == {}

    @pytest.mark.asyncio
    async def test_delete_missing_entry_is_noop(
        self, store: AnnotationStore, sample_file: Path, sidecar: Path
    ) -> None:
        assert await store.delete(sample_file, 3) is False
        assert not sidecar.exists()

    @pytest.mark.asyncio
    async def test_previous_line_removed_in_same_write(
        self, store: AnnotationStore, sample_file: Path
    ) -> None:
        await store.save(sample_file, 4, "draft", "alice", "value_5 = 5")
        await store.save(sample_file, 6, "final", "alice", "value_5 = 5", previous_line=4)

        annotations = await store.annotations_for(sample_file)
        assert list(annotations) == [6]
        assert annotations[6].text == "final"

    @pytest.mark.asyncio
    async def test_too_long_text_rejected(self, workspace: Path, sample_file: Path, sidecar: Path) -> None:
        store = AnnotationStore(GhostConfig(max_comment_length=5), WorkspaceResolver([workspace]))
        with pytest.raises(AnnotationTooLongError, match="limit 5"):
            await store.save(sample_file, 0, "too long", "alice", "")
        assert not sidecar.exists()

    @pytest.mark.asyncio
    async def test_outside_workspace_is_noop(self, store: AnnotationStore, tmp_path: Path) -> None:
        assert await store.save(tmp_path / "stray.py", 0, "note", "me", "") is False

    @pytest.mark.asyncio
    async def test_malformed_sidecar_not_overwritten(
        self, store: AnnotationStore, sample_file: Path, sidecar: Path
    ) -> None:
        sidecar.write_text("{broken")
        with pytest.raises(MalformedStoreError):
            await store.save(sample_file, 0, "note", "me", "")
        assert sidecar.read_text() == "{broken"

    @pytest.mark.asyncio
    async def test_concurrent_saves_all_persist(
        self, store: AnnotationStore, sample_file: Path
    ) -> None:
        results = await asyncio.gather(
            *(store.save(sample_file, line, f"note {line}", "alice", "") for line in range(10))
        )
        assert all(results)

        annotations = await store.annotations_for(sample_file)
        assert sorted(annotations) == list(range(10))

    @pytest.mark.asyncio
    async def test_separate_stores_do_not_lose_updates(
        self, workspace: Path, sample_file: Path, sidecar: Path
    ) -> None:
        """Independent stores on one sidecar, as separate front ends would have."""
        first = AnnotationStore(GhostConfig(), WorkspaceResolver([workspace]))
        second = AnnotationStore(GhostConfig(), WorkspaceResolver([workspace]))

        results = await asyncio.gather(
            *(
                (first if line % 2 else second).save(sample_file, line, f"note {line}", "a", "")
                for line in range(6)
            )
        )
        assert all(results)

        assert sorted(read_json(sidecar)["src/app.py"], key=int) == [str(n) for n in range(6)]
        assert (workspace / ".ghost-comments.json.lock").exists()

    @pytest.mark.asyncio
    async def test_other_files_untouched(
        self, store: AnnotationStore, sample_file: Path, workspace: Path, sidecar: Path
    ) -> None:
        other = workspace / "README.md"
        other.write_text("# Title\n")
        await store.save(other, 0, "keep me", "bob", "# Title")
        await store.save(sample_file, 1, "new", "alice", "value_2 = 2")
        await store.delete(sample_file, 1)

        assert list(read_json(sidecar)) == ["README.md"]

    @pytest.mark.asyncio
    async def test_subscribers_notified(self, store: AnnotationStore, sample_file: Path) -> None:
        seen: list[str] = []
        unsubscribe = store.subscribe(seen.append)

        await store.save(sample_file, 0, "note", "me", "")
        await store.delete(sample_file, 5)  # nothing there, no notification
        unsubscribe()
        await store.delete(sample_file, 0)

        assert seen == ["src/app.py"]


class TestRename:
    """Tests for AnnotationStore.rename()."""

    @pytest.mark.asyncio
    async def test_rename_moves_annotations(
        self, store: AnnotationStore, sample_file: Path, workspace: Path, sidecar: Path
    ) -> None:
        await store.save(sample_file, 2, "note", "alice", "value_3 = 3")
        new_path = workspace / "lib" / "app.py"

        assert await store.rename(sample_file, new_path) is True

        data = read_json(sidecar)
        assert "src/app.py" not in data
        assert data["lib/app.py"]["2"]["text"] == "note"

    @pytest.mark.asyncio
    async def test_rename_without_annotations_is_noop(
        self, store: AnnotationStore, workspace: Path, sidecar: Path
    ) -> None:
        assert await store.rename(workspace / "a.py", workspace / "b.py") is False
        assert not sidecar.exists()

    @pytest.mark.asyncio
    async def test_rename_to_same_path_is_noop(
        self, store: AnnotationStore, sample_file: Path
    ) -> None:
        await store.save(sample_file, 0, "note", "alice", "")
        assert await store.rename(sample_file, sample_file) is False

    @pytest.mark.asyncio
    async def test_rename_to_other_workspace_is_noop(
        self, store: AnnotationStore, sample_file: Path, tmp_path: Path, capsys
    ) -> None:
        await store.save(sample_file, 0, "note", "alice", "")
        assert await store.rename(sample_file, tmp_path / "outside.py") is False
        assert "different workspace" in capsys.readouterr().err
        assert 0 in await store.annotations_for(sample_file)

    @pytest.mark.asyncio
    async def test_rename_notifies_both_paths(
        self, store: AnnotationStore, sample_file: Path, workspace: Path
    ) -> None:
        await store.save(sample_file, 0, "note", "alice", "")
        seen: list[str] = []
        store.subscribe(seen.append)

        await store.rename(sample_file, workspace / "moved.py")
        assert seen == ["src/app.py", "moved.py"]


class TestReconcile:
    """Tests for AnnotationStore.reconcile() and reconcile_report()."""

    @pytest.mark.asyncio
    async def test_insert_above_rekeys_annotation(
        self, store: AnnotationStore, sample_file: Path, sidecar: Path
    ) -> None:
        await store.save(sample_file, 4, "fix this", "alice", "value_5 = 5")

        lines = sample_file.read_text().split("\n")
        lines[4:4] = ["# inserted one", "# inserted two"]
        sample_file.write_text("\n".join(lines))

        assert await store.reconcile(TextDocument.from_file(sample_file)) is True

        data = read_json(sidecar)
        assert list(data["src/app.py"]) == ["6"]
        assert data["src/app.py"]["6"]["text"] == "fix this"

    @pytest.mark.asyncio
    async def test_no_drift_does_not_write(
        self, store: AnnotationStore, sample_file: Path, sidecar: Path
    ) -> None:
        await store.save(sample_file, 4, "fix this", "alice", "value_5 = 5")
        before = sidecar.stat().st_mtime_ns

        report = await store.reconcile_report(TextDocument.from_file(sample_file))
        assert report is not None
        assert report.changed is False
        assert report.anchored == 1
        assert sidecar.stat().st_mtime_ns == before

    @pytest.mark.asyncio
    async def test_no_annotations_returns_none(
        self, store: AnnotationStore, sample_file: Path
    ) -> None:
        assert await store.reconcile_report(TextDocument.from_file(sample_file)) is None
        assert await store.reconcile(TextDocument.from_file(sample_file)) is False

    @pytest.mark.asyncio
    async def test_broken_anchor_keeps_key(
        self, store: AnnotationStore, sample_file: Path, sidecar: Path
    ) -> None:
        await store.save(sample_file, 1, "gone", "alice", "deleted_function()")
        await store.save(sample_file, 4, "moved", "alice", "value_5 = 5")

        lines = sample_file.read_text().split("\n")
        lines.insert(0, "import os")
        sample_file.write_text("\n".join(lines))

        report = await store.reconcile_report(TextDocument.from_file(sample_file))
        assert report is not None
        assert report.changed is True
        assert report.broken == 1
        assert report.relocated == 1

        data = read_json(sidecar)["src/app.py"]
        assert sorted(data, key=int) == ["1", "5"]
        assert data["1"]["text"] == "gone"

    @pytest.mark.asyncio
    async def test_only_broken_anchors_does_not_write(
        self, store: AnnotationStore, sample_file: Path, sidecar: Path
    ) -> None:
        await store.save(sample_file, 1, "gone", "alice", "deleted_function()")
        before = sidecar.read_text()

        assert await store.reconcile(TextDocument.from_file(sample_file)) is False
        assert sidecar.read_text() == before

    @pytest.mark.asyncio
    async def test_collision_warns_and_keeps_later_entry(
        self, store: AnnotationStore, workspace: Path, capsys
    ) -> None:
        source = workspace / "dup.py"
        source.write_text("call()\nother\n")
        await store.save(source, 0, "first", "alice", "call()")
        await store.save(source, 1, "second", "alice", "call()")

        assert await store.reconcile(TextDocument.from_file(source)) is True

        annotations = await store.annotations_for(source)
        assert list(annotations) == [0]
        assert annotations[0].text == "second"
        assert "already annotated line" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_anchored_annotations_for_display(
        self, store: AnnotationStore, sample_file: Path
    ) -> None:
        await store.save(sample_file, 4, "fix this", "alice", "value_5 = 5")
        lines = sample_file.read_text().split("\n")
        lines.insert(0, "import os")
        document = TextDocument.from_text(sample_file, "\n".join(lines))

        [item] = await store.anchored_annotations(document)
        assert (item.line, item.original_line, item.is_match) == (5, 4, True)
        # Display never rewrites the store
        assert list(await store.annotations_for(sample_file)) == [4]
