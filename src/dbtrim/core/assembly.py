"""
Artifact storage and output assembly.

Every dump is first written to a private temporary directory. The assembler
appends artifacts to the output one at a time, in the order they are
produced, rewriting shadow table names back to the real ones and deleting
each artifact once it has been copied.
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import BinaryIO

from dbtrim.constants import STDOUT_TARGET
from dbtrim.exceptions import ArtifactIOFailure
from dbtrim.logging import get_logger
from dbtrim.models import ArtifactKind, ExportArtifact

logger = get_logger(__name__)


class ArtifactStore:
    """Private temporary directory holding artifacts of one run."""

    def __init__(self, base_dir: str | Path | None = None):
        try:
            self.root = Path(tempfile.mkdtemp(prefix="dbtrim-", dir=base_dir))
        except OSError as e:
            raise ArtifactIOFailure(f"Cannot create temporary directory: {e}") from e

    def new_path(self, label: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "_-" else "_" for c in label)[:80]
        try:
            fd, name = tempfile.mkstemp(prefix=f"{safe}-", suffix=".sql", dir=self.root)
        except OSError as e:
            raise ArtifactIOFailure(f"Cannot create artifact file: {e}", table=label) from e
        os.close(fd)
        return Path(name)

    def leftovers(self) -> list[Path]:
        if not self.root.exists():
            return []
        return sorted(self.root.iterdir())

    def discard_all(self) -> int:
        """Remove the directory and everything left in it. Returns the file count."""
        remaining = len(self.leftovers())
        shutil.rmtree(self.root, ignore_errors=True)
        return remaining


def rewrite_line(line: bytes, find: bytes, replace: bytes) -> bytes:
    return line.replace(find, replace) if find in line else line


class FileAssembler:
    """
    Writes the final export, structure first, then data in order.

    Use as a context manager. A file target is written to
    ``<target>.partial`` and renamed when the block finishes without error;
    on error the partial file is removed. ``-`` streams to standard output.
    """

    def __init__(self, target: str | Path, stdout: BinaryIO | None = None):
        self.target = str(target)
        self._stdout = stdout
        self._out: BinaryIO | None = None
        self._partial: Path | None = None
        self._structure_written = False
        self.bytes_written = 0
        self.artifacts_written = 0

    @property
    def to_stdout(self) -> bool:
        return self.target == STDOUT_TARGET

    def __enter__(self) -> "FileAssembler":
        if self.to_stdout:
            self._out = self._stdout or sys.stdout.buffer
            return self

        self._partial = Path(self.target + ".partial")
        try:
            self._out = open(self._partial, "wb")
        except OSError as e:
            raise ArtifactIOFailure(f"Cannot open output: {e}", stage="assembly") from e
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.to_stdout:
            if self._out is not None:
                self._out.flush()
            self._out = None
            return False

        if self._out is not None:
            self._out.close()
            self._out = None

        if exc_type is not None:
            self._discard_partial()
            return False

        try:
            os.replace(self._partial, self.target)
        except OSError as e:
            self._discard_partial()
            raise ArtifactIOFailure(f"Cannot move output into place: {e}", stage="assembly")
        return False

    def append(self, artifact: ExportArtifact) -> int:
        """Copy one artifact into the output, rewriting and then deleting it."""
        if self._out is None:
            raise ArtifactIOFailure("Assembler is not open", table=artifact.table, stage="assembly")

        if artifact.kind == ArtifactKind.STRUCTURE:
            if self._structure_written or self.artifacts_written:
                raise ArtifactIOFailure(
                    "Structure must be the first artifact", stage="assembly"
                )
            self._structure_written = True
        elif not self._structure_written:
            raise ArtifactIOFailure(
                "Data artifact appended before structure", table=artifact.table, stage="assembly"
            )

        find = artifact.rewrite_from.encode("utf-8") if artifact.needs_rewrite else b""
        replace = artifact.rewrite_to.encode("utf-8") if artifact.needs_rewrite else b""

        written = 0
        try:
            with open(artifact.path, "rb") as source:
                for line in source:
                    if find:
                        line = rewrite_line(line, find, replace)
                    self._out.write(line)
                    written += len(line)
            artifact.path.unlink()
        except OSError as e:
            raise ArtifactIOFailure(str(e), table=artifact.table, stage="assembly") from e

        self.bytes_written += written
        self.artifacts_written += 1
        logger.debug(
            "Artifact appended",
            table=artifact.table or artifact.kind.value,
            bytes=written,
        )
        return written

    def output_size(self) -> int:
        if self.to_stdout:
            return self.bytes_written
        return Path(self.target).stat().st_size

    def _discard_partial(self) -> None:
        if self._partial is not None and self._partial.exists():
            try:
                self._partial.unlink()
            except OSError as e:
                logger.warning("Could not remove partial output", path=str(self._partial), error=str(e))
