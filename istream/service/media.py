from __future__ import annotations

import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from istream.logging import get_logger

logger = get_logger(__name__)

MEDIA_KINDS = {"avatar", "cover_image", "video", "thumbnail"}


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


@dataclass
class StoredObject:
    url: str
    ref: str


class ObjectStorage(Protocol):
    def store(self, local_path: str, kind: str) -> StoredObject:
        ...

    def delete(self, ref: str, kind: str) -> bool:
        ...


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def media_ref_from_url(url: str, base_url: str) -> str | None:
    """Recover the storage ref of a URL this storage produced, if it did."""
    prefix = base_url.rstrip("/") + "/"
    if url and url.startswith(prefix):
        return url[len(prefix):]
    return None


class LocalObjectStorage:
    """Stores uploaded images under ``<root>/media/<kind>/`` and serves them from ``base_url``.

    The uploaded temp file is moved, not copied.
    """

    def __init__(self, root: str, base_url: str) -> None:
        self.root = Path(root) / "media"
        self.base_url = base_url.rstrip("/")
        for kind in MEDIA_KINDS:
            (self.root / kind).mkdir(parents=True, exist_ok=True)

    def _check_kind(self, kind: str) -> None:
        if kind not in MEDIA_KINDS:
            raise ValueError(f"unsupported media kind: {kind}")

    def store(self, local_path: str, kind: str) -> StoredObject:
        self._check_kind(kind)
        source = Path(local_path)
        if not source.is_file():
            raise FileNotFoundError(local_path)
        ref = f"{kind}/{uuid.uuid4().hex}{source.suffix.lower()}"
        target = safe_join(self.root, ref)
        shutil.move(str(source), str(target))
        logger.info("media_stored", kind=kind, ref=ref, size=target.stat().st_size)
        return StoredObject(url=f"{self.base_url}/{ref}", ref=ref)

    def resolve(self, ref: str) -> Path:
        """Local path of a stored object; ``FileNotFoundError`` when it is gone."""
        kind, _, name = ref.partition("/")
        self._check_kind(kind)
        if not name:
            raise FileNotFoundError(ref)
        target = safe_join(self.root, ref)
        if not target.is_file():
            raise FileNotFoundError(ref)
        return target

    def delete(self, ref: str, kind: str) -> bool:
        self._check_kind(kind)
        if not ref.startswith(f"{kind}/"):
            raise PathTraversalError("ref does not belong to media kind")
        target = safe_join(self.root, ref)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        logger.info("media_deleted", kind=kind, ref=ref)
        return True
