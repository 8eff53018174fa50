"""Tests for artifact storage and output assembly."""

import io

import pytest

from dbtrim.core.assembly import ArtifactStore, FileAssembler, rewrite_line
from dbtrim.exceptions import ArtifactIOFailure
from dbtrim.models import ArtifactKind, ExportArtifact


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path)


def write_artifact(store, label, text, kind=ArtifactKind.DATA, **fields) -> ExportArtifact:
    path = store.new_path(label)
    path.write_text(text)
    return ExportArtifact(path, kind, table=label if kind == ArtifactKind.DATA else None, **fields)


class TestArtifactStore:
    """Tests for ArtifactStore."""

    def test_paths_are_unique_and_inside_root(self, store):
        first = store.new_path("wp_posts")
        second = store.new_path("wp_posts")

        assert first != second
        assert first.parent == store.root
        assert first.exists()

    def test_unsafe_labels_are_sanitised(self, store):
        path = store.new_path("../evil name")
        assert path.parent == store.root

    def test_discard_all(self, store):
        store.new_path("a")
        store.new_path("b")
        assert store.discard_all() == 2
        assert not store.root.exists()
        assert store.leftovers() == []

    def test_missing_base_dir(self, tmp_path):
        with pytest.raises(ArtifactIOFailure):
            ArtifactStore(tmp_path / "missing")


class TestRewriteLine:
    """Tests for rewrite_line()."""

    def test_replaces_every_occurrence(self):
        assert rewrite_line(b"a _s_ b _s_\n", b"_s_", b"t") == b"a t b t\n"

    def test_untouched_without_match(self):
        line = b"INSERT INTO other VALUES(1);\n"
        assert rewrite_line(line, b"_s_", b"t") is line


class TestFileAssembler:
    """Tests for FileAssembler."""

    def test_writes_in_order_and_renames(self, store, tmp_path):
        target = tmp_path / "out.sql"
        structure = write_artifact(store, "structure", "CREATE TABLE t (id int);\n", ArtifactKind.STRUCTURE)
        data = write_artifact(
            store,
            "t",
            'INSERT INTO "_dbtrim_t_1" VALUES(1);\n',
            rewrite_from='"_dbtrim_t_1"',
            rewrite_to='"t"',
        )

        with FileAssembler(target) as assembler:
            assembler.append(structure)
            assert (tmp_path / "out.sql.partial").exists()
            assert not target.exists()
            assembler.append(data)

        assert target.read_text() == 'CREATE TABLE t (id int);\nINSERT INTO "t" VALUES(1);\n'
        assert not (tmp_path / "out.sql.partial").exists()
        assert assembler.artifacts_written == 2
        assert assembler.output_size() == target.stat().st_size

    def test_artifacts_deleted_after_append(self, store, tmp_path):
        structure = write_artifact(store, "structure", "-- s\n", ArtifactKind.STRUCTURE)
        with FileAssembler(tmp_path / "out.sql") as assembler:
            assembler.append(structure)
        assert not structure.path.exists()
        assert store.leftovers() == []

    def test_failure_removes_partial(self, store, tmp_path):
        target = tmp_path / "out.sql"
        structure = write_artifact(store, "structure", "-- s\n", ArtifactKind.STRUCTURE)

        with pytest.raises(RuntimeError):
            with FileAssembler(target) as assembler:
                assembler.append(structure)
                raise RuntimeError("stop")

        assert not target.exists()
        assert not (tmp_path / "out.sql.partial").exists()

    def test_failure_keeps_existing_target(self, store, tmp_path):
        target = tmp_path / "out.sql"
        target.write_text("previous export")

        with pytest.raises(RuntimeError):
            with FileAssembler(target):
                raise RuntimeError("stop")

        assert target.read_text() == "previous export"

    def test_structure_must_come_first(self, store, tmp_path):
        data = write_artifact(store, "t", "INSERT;\n")
        with pytest.raises(ArtifactIOFailure, match="before structure"):
            with FileAssembler(tmp_path / "out.sql") as assembler:
                assembler.append(data)

    def test_structure_only_once(self, store, tmp_path):
        first = write_artifact(store, "s1", "-- s\n", ArtifactKind.STRUCTURE)
        second = write_artifact(store, "s2", "-- s\n", ArtifactKind.STRUCTURE)
        with pytest.raises(ArtifactIOFailure, match="first artifact"):
            with FileAssembler(tmp_path / "out.sql") as assembler:
                assembler.append(first)
                assembler.append(second)

    def test_missing_artifact_file(self, store, tmp_path):
        structure = write_artifact(store, "structure", "-- s\n", ArtifactKind.STRUCTURE)
        structure.path.unlink()
        with pytest.raises(ArtifactIOFailure) as exc_info:
            with FileAssembler(tmp_path / "out.sql") as assembler:
                assembler.append(structure)
        assert exc_info.value.stage == "assembly"

    def test_stdout(self, store):
        stream = io.BytesIO()
        structure = write_artifact(store, "structure", "-- s\n", ArtifactKind.STRUCTURE)

        with FileAssembler("-", stdout=stream) as assembler:
            assert assembler.to_stdout
            assembler.append(structure)

        assert stream.getvalue() == b"-- s\n"
        assert assembler.output_size() == len(b"-- s\n")

    def test_append_when_closed(self, store, tmp_path):
        structure = write_artifact(store, "structure", "-- s\n", ArtifactKind.STRUCTURE)
        assembler = FileAssembler(tmp_path / "out.sql")
        with pytest.raises(ArtifactIOFailure, match="not open"):
            assembler.append(structure)
