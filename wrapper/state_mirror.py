"""
Local state mirror.

S3 is the source of truth; the local directory (default /tmp/moltbot-state)
is a disposable cache. Sync is whole-file overwrite with no diffing or
checksums: a single writer is assumed.

Usage:
    mirror = StateMirror(BlobStore.from_settings(config.s3), config.local_root)
    init_storage(mirror)                         # on startup
    mirror.upload_file(".moltbot/moltbot.json")  # after changes
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Union

from botocore.exceptions import ClientError

from blob_store import BlobStore, ObjectNotFound, content_type_for

COPY_CHUNK_SIZE = 1024 * 1024


class StateMirror:
    def __init__(self, store: BlobStore, local_dir: Union[str, Path]):
        self.store = store
        self.local_dir = Path(local_dir)

    # ------------------------------------------------------------
    # Path mapping
    # ------------------------------------------------------------

    def local_path(self, key: str) -> Path:
        """Local path for a storage key. Rejects keys escaping local_dir."""
        relative = self.store.relative_for(key)
        path = self.local_dir / relative
        root = self.local_dir.resolve()
        resolved = path.resolve()
        if resolved != root and root not in resolved.parents:
            raise ValueError(f"Key resolves outside local directory: {key}")
        return path

    def blob_key(self, local_path: Union[str, Path]) -> str:
        """Storage key for a path under local_dir."""
        relative = Path(local_path).relative_to(self.local_dir).as_posix()
        return self.store.key_for(relative)

    # ------------------------------------------------------------
    # Download
    # ------------------------------------------------------------

    def download_all(self) -> int:
        """Download every object under the prefix. Returns files written."""
        print(f"[s3] Downloading all files from s3://{self.store.bucket}/{self.store.prefix} "
              f"to {self.local_dir}", flush=True)
        self.local_dir.mkdir(parents=True, exist_ok=True)

        total = 0
        for key in self.store.list_keys():
            # Skip "directory" markers
            if key.endswith("/"):
                continue
            if self.download_file(key):
                total += 1

        print(f"[s3] Downloaded {total} files", flush=True)
        return total

    def download_file(self, key: str) -> bool:
        """Download one object. False (not an error) when it does not exist."""
        local_path = self.local_path(key)
        try:
            obj = self.store.get_object(key)
        except ObjectNotFound:
            print(f"[s3] File not found: {key}", flush=True)
            return False

        local_path.parent.mkdir(parents=True, exist_ok=True)
        # Stream into a sibling temp file; the live file is only replaced
        # once the whole body has arrived.
        fd, tmp_name = tempfile.mkstemp(prefix=f".{local_path.name}.", suffix=".part", dir=local_path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                shutil.copyfileobj(obj.body, f, COPY_CHUNK_SIZE)
            # Keep the local mtime pinned to the object's so re-downloads of an
            # unchanged object do not look like a config change.
            if obj.last_modified is not None:
                ts = obj.last_modified.timestamp()
                os.utime(tmp_name, (ts, ts))
            os.replace(tmp_name, local_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        finally:
            obj.body.close()

        print(f"[s3] Downloaded: {key} -> {local_path}", flush=True)
        return True

    # ------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------

    def upload_file(self, relative_path: str) -> bool:
        """Upload one file relative to local_dir. False when the file is absent."""
        local_path = self.local_dir / relative_path
        if not local_path.is_file():
            print(f"[s3] Local file not found: {local_path}", flush=True)
            return False

        key = self.store.key_for(relative_path)
        self.store.put(key, local_path.read_bytes(), content_type_for(str(local_path)))
        print(f"[s3] Uploaded: {local_path} -> s3://{self.store.bucket}/{key}", flush=True)
        return True

    def upload_dir(self, relative_dir: str) -> int:
        """Upload every file under a local subtree. Returns files uploaded."""
        local_dir = self.local_dir / relative_dir
        if not local_dir.is_dir():
            print(f"[s3] Local directory not found: {local_dir}", flush=True)
            return 0

        total = 0
        for path in walk_dir(local_dir):
            if self.upload_file(path.relative_to(self.local_dir).as_posix()):
                total += 1

        print(f"[s3] Uploaded {total} files from {relative_dir}", flush=True)
        return total

    def upload_all(self) -> int:
        print(f"[s3] Uploading all files from {self.local_dir} to "
              f"s3://{self.store.bucket}/{self.store.prefix}", flush=True)
        total = 0
        for path in walk_dir(self.local_dir):
            if self.upload_file(path.relative_to(self.local_dir).as_posix()):
                total += 1
        print(f"[s3] Uploaded {total} files", flush=True)
        return total

    # ------------------------------------------------------------
    # Remote-only helpers
    # ------------------------------------------------------------

    def exists(self, relative_path: str) -> bool:
        return self.store.head(self.store.key_for(relative_path))

    def delete_file(self, relative_path: str) -> bool:
        key = self.store.key_for(relative_path)
        self.store.delete(key)
        print(f"[s3] Deleted: s3://{self.store.bucket}/{key}", flush=True)
        return True


def walk_dir(directory: Path) -> list[Path]:
    """All regular files below directory, sorted."""
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.rglob("*") if p.is_file())


def init_storage(mirror: StateMirror) -> StateMirror:
    """Hydrate local state on startup.

    A bucket or prefix with nothing in it is a normal first run. Other errors
    propagate; callers log them and continue without remote state.
    """
    try:
        mirror.download_all()
        print("[s3] Storage initialized successfully", flush=True)
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code")
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code == "NoSuchBucket":
            print("[s3] Bucket does not exist yet - will create on first upload", flush=True)
        elif code == "NoSuchKey" or status == 404:
            print("[s3] No existing state in S3 - starting fresh", flush=True)
        else:
            print(f"[s3] Failed to initialize storage: {e}", flush=True)
            raise
    return mirror
