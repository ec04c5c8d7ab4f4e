from __future__ import annotations

import fcntl
import json
import logging
import os
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

logger = logging.getLogger("solarwatch.records")


class StorageError(RuntimeError):
    """A file could not be opened, locked or written.

    ``reason`` is the short machine-readable code surfaced to ingest callers.
    """

    def __init__(self, reason: str, *, path: str | Path | None = None) -> None:
        super().__init__(reason if path is None else f"{reason}: {path}")
        self.reason = reason
        self.path = str(path) if path is not None else None


def _fsync_directory(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Not every filesystem supports directory fsync.
        pass
    finally:
        os.close(fd)


def load_json_record(path: str | Path) -> dict[str, Any]:
    """Load a JSON object. Missing, unreadable or non-object files read as ``{}``."""

    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError:
        logger.warning("Unreadable record", extra={"fields": {"path": str(p)}})
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Corrupt record", extra={"fields": {"path": str(p)}})
        return {}
    return data if isinstance(data, dict) else {}


def dump_json_record(obj: dict[str, Any]) -> bytes:
    return (json.dumps(obj, ensure_ascii=False, indent=4) + "\n").encode("utf-8")


class StagedRecord:
    """A record written to a temp file, made visible only by :meth:`commit`."""

    def __init__(self, target: Path, tmp: Path) -> None:
        self.target = target
        self.tmp = tmp
        self.committed = False

    def commit(self) -> None:
        try:
            os.replace(self.tmp, self.target)
        except OSError as exc:
            raise StorageError("write failed", path=self.target) from exc
        self.committed = True
        _fsync_directory(self.target.parent)

    def discard(self) -> None:
        if not self.committed:
            self.tmp.unlink(missing_ok=True)


def stage_json_record(path: str | Path, obj: dict[str, Any]) -> StagedRecord:
    target = Path(path)
    tmp = target.with_name(f"{target.name}.{uuid.uuid4().hex}.tmp")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with tmp.open("wb") as handle:
            handle.write(dump_json_record(obj))
            handle.flush()
            os.fsync(handle.fileno())
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise StorageError("write failed", path=target) from exc
    return StagedRecord(target, tmp)


def save_json_record(path: str | Path, obj: dict[str, Any]) -> None:
    """Atomically replace ``path`` (temp file + fsync + rename)."""

    staged = stage_json_record(path, obj)
    try:
        staged.commit()
    finally:
        staged.discard()


@contextmanager
def exclusive_lock(handle) -> Iterator[None]:
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
    except OSError as exc:
        raise StorageError("lock failed", path=getattr(handle, "name", None)) from exc
    try:
        yield
    finally:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class FileRecordStore:
    """Key-addressed records under one root directory.

    Two lock-scoped primitives:

    - ``append(key, lines, header=...)``: append to a log file under an
      exclusive lock on that file. ``header`` goes in first only when the file
      is empty at the moment the lock is held.
    - ``read_modify_write(key, fn)``: load a JSON record, apply ``fn`` and
      atomically replace it, serialized by a sidecar ``.lock`` file.

    Keys are relative path segments, e.g. ``("X1", "log", "2023-11.csv")``.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, key: Sequence[str]) -> Path:
        if not key:
            raise ValueError("empty record key")
        for part in key:
            if not part or part in {".", ".."} or "/" in part or "\\" in part:
                raise ValueError(f"invalid record key segment: {part!r}")
        return self.root.joinpath(*key)

    def exists(self, key: Sequence[str]) -> bool:
        return self.path_for(key).exists()

    def read(self, key: Sequence[str]) -> dict[str, Any] | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        return load_json_record(path)

    def write(self, key: Sequence[str], obj: dict[str, Any]) -> None:
        save_json_record(self.path_for(key), obj)

    def stage(self, key: Sequence[str], obj: dict[str, Any]) -> StagedRecord:
        return stage_json_record(self.path_for(key), obj)

    def append(self, key: Sequence[str], data: bytes, *, header: bytes = b"") -> bool:
        """Append ``data``; returns True when the header was written."""

        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = path.open("ab")
        except OSError as exc:
            raise StorageError("cannot open csv", path=path) from exc

        with handle:
            with exclusive_lock(handle):
                # Size check happens under the lock: two first-writers racing on a
                # brand-new file must not both emit a header.
                need_header = bool(header) and os.fstat(handle.fileno()).st_size == 0
                buf = (header + data) if need_header else data
                try:
                    handle.write(buf)
                    handle.flush()
                    os.fsync(handle.fileno())
                except OSError as exc:
                    raise StorageError("write failed", path=path) from exc
        return need_header

    def read_modify_write(
        self, key: Sequence[str], fn: Callable[[dict[str, Any]], dict[str, Any]]
    ) -> dict[str, Any]:
        path = self.path_for(key)
        lock_path = path.with_name(path.name + ".lock")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            lock_handle = lock_path.open("a")
        except OSError as exc:
            raise StorageError("write failed", path=path) from exc

        with lock_handle:
            with exclusive_lock(lock_handle):
                updated = fn(load_json_record(path))
                save_json_record(path, updated)
        return updated
