"""Artifact persistence.

Artifacts are captured after every run, whatever its outcome, and stored in a
blob store under keys scoped to the run (`<run_id>/<name>`), so concurrent runs
can share one store without coordination.
"""

from __future__ import annotations

import io
import logging
import os
import tempfile
import threading
import zipfile
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path

from .config import get_default_store_root
from .errors import ArtifactCollectionError
from .model import ArtifactFailure, ArtifactRecord, ArtifactSpec, PipelineRun, StepResult, slugify

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """
    Base class for artifact storage backends.

    After `put` returns, the blob must be retrievable with `get`. There is no
    transaction across several puts.
    """

    @abstractmethod
    def put(self, name: str, data: bytes) -> str:
        """Store `data` under `name`. Returns an opaque location handle."""
        ...

    @abstractmethod
    def get(self, location: str) -> bytes:
        """Read back a blob by the location `put` returned."""
        ...


class FileSystemBlobStore(BlobStore):
    """Stores blobs as files below a root directory. Locations are file paths."""

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root) if root is not None else get_default_store_root()

    def _checked_path(self, path: Path) -> Path:
        resolved = path.resolve()
        root = self.root.resolve()
        if resolved == root or not resolved.is_relative_to(root):
            raise ValueError(f"Location escapes the store root {root}: {path}")
        return resolved

    def put(self, name: str, data: bytes) -> str:
        path = self._checked_path(self.root / name)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a temp file and rename, so readers never see a partial blob
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return str(path)

    def get(self, location: str) -> bytes:
        return self._checked_path(Path(location)).read_bytes()


class MemoryBlobStore(BlobStore):
    """Keeps blobs in a dict. Safe to share between threads."""

    PREFIX = "memory://"

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, name: str, data: bytes) -> str:
        with self._lock:
            self._blobs[name] = bytes(data)
        return f"{self.PREFIX}{name}"

    def get(self, location: str) -> bytes:
        if not location.startswith(self.PREFIX):
            raise KeyError(location)
        with self._lock:
            return self._blobs[location[len(self.PREFIX) :]]

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._blobs)


def zip_directory(directory: Path) -> bytes:
    """Pack a directory tree into an in-memory zip archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path in sorted(directory.rglob("*")):
            if path.is_file():
                archive.write(path, path.relative_to(directory).as_posix())
    return buffer.getvalue()


def render_step_log(result: StepResult) -> bytes:
    """Render a step's captured output as a plain-text log."""
    header = (
        f"# step: {result.step.name}\n"
        f"# command: {result.step.command}\n"
        f"# outcome: {result.outcome.value} (exit code {result.exit_code}) in {result.duration:.2f}s\n"
    )
    if result.error:
        header += f"# error: {result.error}\n"
    parts = [header.encode(), b"\n--- stdout ---\n", result.stdout]
    if result.stdout and not result.stdout.endswith(b"\n"):
        parts.append(b"\n")
    parts += [b"--- stderr ---\n", result.stderr]
    return b"".join(parts)


class ArtifactCollector:
    """
    Collects artifacts for a finished run into a blob store.

    Collection is best-effort and independent per artifact: a missing or
    unreadable source is recorded on the run as an ArtifactFailure and the
    remaining artifacts are still collected. Failures never change the run's
    status.
    """

    def __init__(self, store: BlobStore):
        self.store = store

    def collect(self, run: PipelineRun, specs: Iterable[ArtifactSpec]) -> list[ArtifactRecord]:
        """
        Persist each declared artifact of `run`.

        Relative source paths are resolved against the run's working directory.
        Records and failures are appended to the run.

        Returns:
            The records of the artifacts stored by this call.

        """
        records: list[ArtifactRecord] = []
        seen: set[str] = set()
        for spec in specs:
            source = self.resolve_source(run, spec)
            try:
                if spec.name in seen:
                    raise ArtifactCollectionError(spec.name, "another artifact in this run has the same name")
                seen.add(spec.name)
                record = self._collect_one(run, spec, source)
            except ArtifactCollectionError as e:
                logger.warning("%s", e)
                run.artifact_failures.append(ArtifactFailure(name=spec.name, source_path=source, reason=e.reason))
                continue
            logger.info("Stored artifact '%s' (%d bytes) at %s", record.name, record.size_bytes, record.location)
            run.artifacts.append(record)
            records.append(record)
        return records

    def collect_logs(self, run: PipelineRun) -> list[ArtifactRecord]:
        """Persist the captured output of every executed step as `logs/<NN>_<step>.log`."""
        records: list[ArtifactRecord] = []
        for index, result in enumerate(run.results, start=1):
            name = f"logs/{index:02d}_{slugify(result.step.name)}.log"
            data = render_step_log(result)
            try:
                location = self._put(name, f"{run.run_id}/{name}", data)
            except ArtifactCollectionError as e:
                logger.warning("%s", e)
                run.artifact_failures.append(ArtifactFailure(name=name, source_path=Path(name), reason=e.reason))
                continue
            record = ArtifactRecord(name=name, location=location, size_bytes=len(data))
            run.artifacts.append(record)
            records.append(record)
        return records

    @staticmethod
    def resolve_source(run: PipelineRun, spec: ArtifactSpec) -> Path:
        if spec.source_path.is_absolute():
            return spec.source_path
        return run.working_directory / spec.source_path

    def _collect_one(self, run: PipelineRun, spec: ArtifactSpec, source: Path) -> ArtifactRecord:
        key = f"{run.run_id}/{spec.name}"
        try:
            if not source.exists():
                raise ArtifactCollectionError(spec.name, f"no file found at {source}")
            if source.is_dir():
                data = zip_directory(source)
                key += ".zip"
            else:
                data = source.read_bytes()
        except OSError as e:
            raise ArtifactCollectionError(spec.name, f"could not read {source}: {e}") from e

        location = self._put(spec.name, key, data)
        return ArtifactRecord(name=spec.name, location=location, size_bytes=len(data), source_path=source)

    def _put(self, name: str, key: str, data: bytes) -> str:
        try:
            return self.store.put(key, data)
        except (OSError, ValueError) as e:
            raise ArtifactCollectionError(name, f"could not store: {e}") from e
