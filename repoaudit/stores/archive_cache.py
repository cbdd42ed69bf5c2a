"""Compressed per-repository snapshot cache backing file retrieval."""

from __future__ import annotations

import hashlib
import io
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import ArchiveStorageFailure, AuditError, ValidationError
from ..logging import get_logger
from ..models import FileIndexEntry, RepoArchive
from .archive_store import ArchiveStore

if TYPE_CHECKING:  # pragma: no cover
    from ..github.client import SourceHostClient

NOISE_DIRS = frozenset(
    {".git", ".hg", ".svn", "node_modules", "vendor", "__pycache__", ".venv", "dist", "build", ".next"}
)
COMPRESS_LEVEL = 6


def file_type(path: str) -> str:
    suffix = PurePosixPath(path).suffix
    return suffix[1:].lower() if suffix else "unknown"


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def git_blob_sha(content: bytes) -> str:
    """SHA-1 the source host reports for a blob with this content."""
    header = f"blob {len(content)}\0".encode("ascii")
    return hashlib.sha1(header + content).hexdigest()


EMPTY_BLOB_SHA = git_blob_sha(b"")


def index_entry(path: str, content: bytes) -> FileIndexEntry:
    return FileIndexEntry(size=len(content), hash=content_hash(content), type=file_type(path))


def is_noise_path(path: str) -> bool:
    return any(part in NOISE_DIRS for part in path.split("/")[:-1])


def extract_snapshot(snapshot: bytes) -> Dict[str, bytes]:
    """Unpack a zip snapshot, strip its single root folder and drop noise entries."""
    try:
        with zipfile.ZipFile(io.BytesIO(snapshot)) as archive:
            members = [info for info in archive.infolist() if not info.is_dir()]
            names = [info.filename for info in members]
            prefix = _common_root(names)
            files: Dict[str, bytes] = {}
            for info in members:
                path = info.filename[len(prefix):] if prefix else info.filename
                if not path or is_noise_path(path):
                    continue
                content = archive.read(info)
                if not content:
                    continue
                files[path] = content
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as exc:
        raise ArchiveStorageFailure(f"Snapshot is not a readable zip archive: {exc}") from exc
    return files


def pack_files(files: Mapping[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(
        buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=COMPRESS_LEVEL
    ) as archive:
        for path in sorted(files):
            archive.writestr(path, files[path])
    return buffer.getvalue()


def unpack_files(blob: bytes, paths: Optional[Iterable[str]] = None) -> Dict[str, bytes]:
    """Decompress ``blob`` once and return the requested members (all when ``paths`` is None)."""
    try:
        with zipfile.ZipFile(io.BytesIO(blob)) as archive:
            available = set(archive.namelist())
            wanted = available if paths is None else [path for path in paths if path in available]
            return {path: archive.read(path) for path in wanted}
    except (zipfile.BadZipFile, OSError) as exc:
        raise ArchiveStorageFailure(f"Stored archive is corrupt: {exc}") from exc


def _common_root(names: List[str]) -> str:
    if not names:
        return ""
    first = names[0].split("/", 1)
    if len(first) < 2:
        return ""
    prefix = first[0] + "/"
    return prefix if all(name.startswith(prefix) for name in names) else ""


class RepoArchiveCache:
    """Holds one canonical compressed snapshot per repository.

    Mutations (populate, sync, patch, delete) on one ``repo_id`` are serialized
    through a per-repository lock; reads take no lock and see the last committed
    row. ``last_accessed`` is bumped on a background worker after reads and is
    never awaited by callers.
    """

    def __init__(self, store: ArchiveStore, host: "SourceHostClient | None" = None) -> None:
        self.store = store
        self.host = host
        self._logger = get_logger("archive")
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._touch_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="archive-touch")

    def close(self) -> None:
        """Wait for pending ``last_accessed`` updates and stop the background worker."""
        self._touch_pool.shutdown(wait=True)

    def lock_for(self, repo_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(repo_id, threading.Lock())

    # ------------------------------------------------------------------
    # Mutations

    def populate(
        self,
        repo_id: str,
        owner: str,
        repo: str,
        ref: str,
        *,
        host: "SourceHostClient | None" = None,
    ) -> RepoArchive:
        """Download one snapshot and persist it as the canonical archive.

        Any failure raises; a partially built archive is never stored.
        """
        client = self._require_host(host)
        snapshot = client.download_snapshot(owner, repo, ref)
        return self.populate_from_snapshot(repo_id, snapshot, repo_name=f"{owner}/{repo}", ref=ref)

    def populate_from_snapshot(
        self, repo_id: str, snapshot: bytes, *, repo_name: str = "", ref: str = ""
    ) -> RepoArchive:
        files = extract_snapshot(snapshot)
        if not files:
            raise ArchiveStorageFailure(f"Snapshot for {repo_id} contains no files")
        with self.lock_for(repo_id):
            archive = self._persist(repo_id, files, repo_name=repo_name or repo_id, ref=ref)
        self._logger.info(
            "Stored archive for %s: %d files, %.1fKB compressed",
            repo_id,
            len(files),
            archive.blob_size / 1024,
        )
        return archive

    def sync(
        self,
        repo_id: str,
        owner: str,
        repo: str,
        ref: str,
        *,
        host: "SourceHostClient | None" = None,
    ) -> int:
        """Reconcile the stored archive with the live tree and return the change count.

        Only added or changed blobs are fetched. A repository with no stored
        archive is populated instead and every file counts as a change.
        """
        client = self._require_host(host)
        with self.lock_for(repo_id):
            current = self.store.get(repo_id)
            if current is None:
                files = extract_snapshot(client.download_snapshot(owner, repo, ref))
                if not files:
                    raise ArchiveStorageFailure(f"Snapshot for {repo_id} contains no files")
                self._persist(repo_id, files, repo_name=f"{owner}/{repo}", ref=ref)
                self._logger.info("Synced %s: populated %d files", repo_id, len(files))
                return len(files)

            tree = {
                path: sha for path, sha in client.fetch_tree(owner, repo, ref).items()
                if not is_noise_path(path) and sha != EMPTY_BLOB_SHA
            }
            files = unpack_files(current.blob)
            local = {path: git_blob_sha(content) for path, content in files.items()}

            removed = [path for path in files if path not in tree]
            changed = [path for path, sha in tree.items() if local.get(path) != sha]
            for path in removed:
                del files[path]
            updated: List[str] = []
            for path in changed:
                content = client.fetch_file(owner, repo, path, ref)
                if content:
                    files[path] = content
                    updated.append(path)
                elif files.pop(path, None) is not None:
                    removed.append(path)

            change_count = len(removed) + len(updated)
            if change_count:
                self._persist(repo_id, files, repo_name=f"{owner}/{repo}", ref=ref)
        self._logger.info(
            "Synced %s: %d added/changed, %d removed", repo_id, len(updated), len(removed)
        )
        return change_count

    def patch_file(self, repo_id: str, path: str, content: bytes | str) -> FileIndexEntry:
        """Replace one file inside the archive and return its new index entry."""
        data = content.encode("utf-8") if isinstance(content, str) else content
        with self.lock_for(repo_id):
            current = self.store.get(repo_id)
            if current is None:
                raise ArchiveStorageFailure(f"No archive stored for {repo_id}")
            files = unpack_files(current.blob)
            files[path] = data
            archive = self._persist(repo_id, files, repo_name=current.repo_name, ref=current.ref)
        return archive.file_index[path]

    def delete(self, repo_id: str) -> bool:
        with self.lock_for(repo_id):
            return self.store.delete(repo_id)

    # ------------------------------------------------------------------
    # Reads

    def read_file(self, repo_id: str, path: str) -> Optional[bytes]:
        """Return the file's bytes, or ``None`` when the archive or path is absent."""
        archive = self.store.get(repo_id)
        if archive is None or path not in archive.file_index:
            return None
        content = unpack_files(archive.blob, [path]).get(path)
        self._touch_later(repo_id)
        return content

    def read_files(self, repo_id: str, paths: Iterable[str]) -> Dict[str, bytes]:
        """Return the subset of ``paths`` present in the archive, decompressing once."""
        wanted = list(paths)
        archive = self.store.get(repo_id)
        if archive is None or not wanted:
            return {}
        present = [path for path in wanted if path in archive.file_index]
        result = unpack_files(archive.blob, present) if present else {}
        self._touch_later(repo_id)
        return result

    def get_file_index(self, repo_id: str) -> Optional[Dict[str, FileIndexEntry]]:
        return self.store.get_file_index(repo_id)

    def has_archive(self, repo_id: str) -> bool:
        return self.store.exists(repo_id)

    # ------------------------------------------------------------------
    # Internal helpers

    def _require_host(self, host: "SourceHostClient | None") -> "SourceHostClient":
        client = host or self.host
        if client is None:
            raise ValidationError("A source host client is required to download snapshots")
        return client

    def _persist(
        self, repo_id: str, files: Mapping[str, bytes], *, repo_name: str, ref: str
    ) -> RepoArchive:
        blob = pack_files(files)
        index = {path: index_entry(path, content) for path, content in files.items()}
        archive = RepoArchive(
            repo_id=repo_id,
            blob=blob,
            blob_hash=content_hash(blob),
            blob_size=len(blob),
            file_index=index,
            repo_name=repo_name,
            ref=ref,
        )
        return self.store.put(archive)

    def _touch_later(self, repo_id: str) -> None:
        try:
            self._touch_pool.submit(self._touch, repo_id)
        except RuntimeError:
            self._logger.debug("Skipped last_accessed update for %s; cache closed", repo_id)

    def _touch(self, repo_id: str) -> None:
        try:
            self.store.touch(repo_id)
        except AuditError as exc:
            self._logger.debug("last_accessed update failed for %s: %s", repo_id, exc)


def summarize_index(index: Mapping[str, FileIndexEntry]) -> Tuple[int, int]:
    """Return ``(file_count, total_bytes)`` for an archive index."""
    return len(index), sum(entry.size for entry in index.values())
