"""
JSON-lines audit sink

Appends every audit record of a delivered changeset to an append-only JSONL
file. Each line carries a hash of the previous line so any later edit,
removal or reordering is detectable with verify_chain().

Format (one JSON object per line):
{"seq": 1, "prev_line_hash": null, "changeset_id": "...", "record_hash": "...", "record": {...}, "line_hash": "..."}

Files are rotated once they grow past max_file_size_mb. Only one process may
write a directory's current file: it is locked exclusively while open.
"""

import fcntl
import hashlib
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from loguru import logger

from ..models import Changeset
from ..records import records_from_changeset
from .base import AuditSink


def compute_line_hash(data: Dict[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def verify_chain(filepath: Union[str, Path]) -> Dict[str, Any]:
    """
    Verify the hash chain of a JSONL audit file.

    Returns {"valid", "file", "line_count", "broken_links"}.
    """
    filepath = Path(filepath)
    if not filepath.exists():
        return {"valid": False, "file": str(filepath), "error": "File not found"}

    broken_links = []
    line_count = 0
    prev_hash = None

    with open(filepath, "r") as f:
        for line_num, line in enumerate(f, 1):
            if not line.strip():
                continue

            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                broken_links.append({"line": line_num, "error": f"JSON decode error: {e}"})
                continue

            if data.get("prev_line_hash") != prev_hash:
                broken_links.append({
                    "line": line_num,
                    "seq": data.get("seq"),
                    "error": "prev_line_hash mismatch",
                    "expected": prev_hash,
                    "actual": data.get("prev_line_hash"),
                })

            stored_hash = data.pop("line_hash", None)
            computed_hash = compute_line_hash(data)
            if stored_hash != computed_hash:
                broken_links.append({
                    "line": line_num,
                    "seq": data.get("seq"),
                    "error": "line_hash mismatch (tampering detected)",
                    "stored": stored_hash[:16] if stored_hash else None,
                    "computed": computed_hash[:16],
                })

            prev_hash = stored_hash
            line_count += 1

    return {
        "valid": len(broken_links) == 0,
        "file": str(filepath),
        "line_count": line_count,
        "broken_links": broken_links,
    }


class JsonlSink(AuditSink):
    """
    Hash-chained JSON-lines sink.

    Usage:
        with JsonlSink("/var/log/auditpipe") as sink:
            uow = AuditUnitOfWork(factory, processor, sink)
            ...
        verify_chain(sink.current_file)
    """

    def __init__(
        self,
        log_dir: Union[str, Path],
        log_prefix: str = "audit",
        max_file_size_mb: int = 100,
        sync_on_write: bool = True,
    ):
        self.log_dir = Path(log_dir)
        self.log_prefix = log_prefix
        self.max_file_size_mb = max_file_size_mb
        self.sync_on_write = sync_on_write

        self._current_file: Optional[Path] = None
        self._file_handle = None
        self._sequence_number = 0
        self._prev_line_hash: Optional[str] = None
        self._write_count = 0
        self._bytes_written = 0

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @property
    def current_file(self) -> Optional[Path]:
        return self._current_file

    def _initialize(self) -> None:
        existing_files = sorted(self.log_dir.glob(f"{self.log_prefix}_*.jsonl"))
        if existing_files:
            self._resume_from_file(existing_files[-1])
        else:
            self._start_new_file()

    def _start_new_file(self) -> None:
        self._close_current_file()

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        self._current_file = self.log_dir / f"{self.log_prefix}_{timestamp}.jsonl"
        self._open(self._current_file)
        self._sequence_number = 0
        self._prev_line_hash = None
        self._bytes_written = 0

        logger.info(f"Started new audit log file: {self._current_file}")

    def _resume_from_file(self, filepath: Path) -> None:
        last_line = None
        with open(filepath, "r") as f:
            for line in f:
                if line.strip():
                    last_line = line

        self._current_file = filepath
        if last_line is not None:
            # A corrupt tail must not be silently chained over
            data = json.loads(last_line)
            self._sequence_number = data["seq"]
            self._prev_line_hash = data["line_hash"]

        self._open(filepath)
        self._bytes_written = filepath.stat().st_size
        logger.info("Resuming audit log", file=str(filepath), seq=self._sequence_number)

    def _open(self, filepath: Path) -> None:
        self._file_handle = open(filepath, "a")
        fcntl.flock(self._file_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _close_current_file(self) -> None:
        if not self._file_handle:
            return
        try:
            self._file_handle.flush()
            os.fsync(self._file_handle.fileno())
            fcntl.flock(self._file_handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._file_handle.close()
            self._file_handle = None

    def _should_rotate(self) -> bool:
        return self._bytes_written > self.max_file_size_mb * 1024 * 1024

    def commit_audit(self, changeset: Changeset) -> None:
        if self._file_handle is None:
            raise ValueError("JsonlSink is closed")
        if self._should_rotate():
            self._start_new_file()

        lines: List[str] = []
        seq = self._sequence_number
        prev_hash = self._prev_line_hash
        for record in records_from_changeset(changeset):
            seq += 1
            line = {
                "seq": seq,
                "prev_line_hash": prev_hash,
                "changeset_id": changeset.id,
                "record_hash": record.compute_hash(),
                "record": record.to_payload(),
            }
            line["line_hash"] = prev_hash = compute_line_hash(line)
            lines.append(json.dumps(line, separators=(",", ":")) + "\n")

        if not lines:
            return

        # The exclusive lock taken in _open() is held until the file is closed
        payload = "".join(lines)
        self._file_handle.write(payload)
        self._file_handle.flush()
        if self.sync_on_write:
            os.fsync(self._file_handle.fileno())

        # Chain state only advances once the lines are written
        self._sequence_number = seq
        self._prev_line_hash = prev_hash
        self._bytes_written += len(payload.encode())
        self._write_count += len(lines)

    def verify_chain(self, filepath: Optional[Path] = None) -> Dict[str, Any]:
        if filepath is None and self._file_handle:
            self._file_handle.flush()
        return verify_chain(filepath or self._current_file)

    def iter_records(self, filepath: Optional[Path] = None, start_seq: int = 0) -> Iterator[Dict[str, Any]]:
        """Iterate over stored lines, optionally from a starting sequence."""
        if filepath is None and self._file_handle:
            self._file_handle.flush()

        filepath = filepath or self._current_file
        if not filepath or not filepath.exists():
            return

        with open(filepath, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                data = json.loads(line)
                if data.get("seq", 0) >= start_seq:
                    yield data

    def get_stats(self) -> Dict[str, Any]:
        return {
            "current_file": str(self._current_file) if self._current_file else None,
            "sequence_number": self._sequence_number,
            "write_count": self._write_count,
            "bytes_written": self._bytes_written,
            "prev_line_hash": self._prev_line_hash[:16] if self._prev_line_hash else None,
        }

    def close(self) -> None:
        self._close_current_file()
        logger.info("Audit log closed", writes=self._write_count, bytes=self._bytes_written)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
