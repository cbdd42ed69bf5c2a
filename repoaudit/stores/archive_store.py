"""SQLite persistence for repository archives."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import ArchiveStorageFailure
from ..models import FileIndexEntry, RepoArchive

_SCHEMA = """
CREATE TABLE IF NOT EXISTS repo_archives (
    repo_id TEXT PRIMARY KEY,
    repo_name TEXT,
    ref TEXT,
    archive_blob BLOB NOT NULL,
    archive_hash TEXT NOT NULL,
    archive_size INTEGER NOT NULL,
    file_index TEXT NOT NULL,
    last_accessed TEXT,
    updated_at TEXT
);
"""


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class ArchiveStore:
    """One ``repo_archives`` row per repository identity.

    The connection is shared across threads and every statement runs under a
    single lock. ``path`` may be ``":memory:"``.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = path
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise ArchiveStorageFailure(f"Cannot open archive store at {path}: {exc}") from exc
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get(self, repo_id: str) -> Optional[RepoArchive]:
        row = self._fetch_one("SELECT * FROM repo_archives WHERE repo_id=?", (repo_id,))
        return _row_to_archive(row) if row is not None else None

    def get_file_index(self, repo_id: str) -> Optional[Dict[str, FileIndexEntry]]:
        row = self._fetch_one("SELECT file_index FROM repo_archives WHERE repo_id=?", (repo_id,))
        return _decode_index(row["file_index"]) if row is not None else None

    def exists(self, repo_id: str) -> bool:
        return self._fetch_one("SELECT 1 FROM repo_archives WHERE repo_id=?", (repo_id,)) is not None

    def list_repo_ids(self) -> List[str]:
        with self._lock:
            try:
                rows = self._conn.execute("SELECT repo_id FROM repo_archives ORDER BY repo_id").fetchall()
            except sqlite3.Error as exc:
                raise ArchiveStorageFailure(f"Archive store read failed: {exc}") from exc
        return [row["repo_id"] for row in rows]

    def put(self, archive: RepoArchive) -> RepoArchive:
        """Insert or replace the row for ``archive.repo_id``.

        A ``None`` ``last_accessed`` keeps the value already stored.
        """
        archive.updated_at = _now()
        index_json = json.dumps(
            {
                path: {"size": entry.size, "hash": entry.hash, "type": entry.type}
                for path, entry in archive.file_index.items()
            },
            sort_keys=True,
        )
        self._execute(
            "INSERT INTO repo_archives "
            "(repo_id, repo_name, ref, archive_blob, archive_hash, archive_size, file_index, "
            "last_accessed, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(repo_id) DO UPDATE SET "
            "repo_name=excluded.repo_name, ref=excluded.ref, archive_blob=excluded.archive_blob, "
            "archive_hash=excluded.archive_hash, archive_size=excluded.archive_size, "
            "file_index=excluded.file_index, "
            "last_accessed=COALESCE(excluded.last_accessed, repo_archives.last_accessed), "
            "updated_at=excluded.updated_at",
            (
                archive.repo_id,
                archive.repo_name,
                archive.ref,
                sqlite3.Binary(archive.blob),
                archive.blob_hash,
                archive.blob_size,
                index_json,
                archive.last_accessed,
                archive.updated_at,
            ),
        )
        return archive

    def touch(self, repo_id: str) -> None:
        self._execute(
            "UPDATE repo_archives SET last_accessed=? WHERE repo_id=?", (_now(), repo_id)
        )

    def delete(self, repo_id: str) -> bool:
        with self._lock:
            try:
                cursor = self._conn.execute("DELETE FROM repo_archives WHERE repo_id=?", (repo_id,))
                self._conn.commit()
            except sqlite3.Error as exc:
                raise ArchiveStorageFailure(f"Archive delete failed for {repo_id}: {exc}") from exc
        return cursor.rowcount > 0

    def _fetch_one(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as exc:
                raise ArchiveStorageFailure(f"Archive store read failed: {exc}") from exc

    def _execute(self, sql: str, params: tuple) -> None:
        with self._lock:
            try:
                self._conn.execute(sql, params)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise ArchiveStorageFailure(f"Archive store write failed: {exc}") from exc


def _decode_index(raw: str) -> Dict[str, FileIndexEntry]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ArchiveStorageFailure(f"Corrupt file index: {exc}") from exc
    return {
        path: FileIndexEntry(size=int(entry["size"]), hash=str(entry["hash"]), type=str(entry["type"]))
        for path, entry in payload.items()
    }


def _row_to_archive(row: sqlite3.Row) -> RepoArchive:
    return RepoArchive(
        repo_id=row["repo_id"],
        blob=bytes(row["archive_blob"]),
        blob_hash=row["archive_hash"],
        blob_size=row["archive_size"],
        file_index=_decode_index(row["file_index"]),
        repo_name=row["repo_name"] or "",
        ref=row["ref"] or "",
        last_accessed=row["last_accessed"],
        updated_at=row["updated_at"],
    )
