from __future__ import annotations

import hashlib
import threading
import zipfile
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Optional

import numpy as np

from common.errors import FeatureCacheError
from common.logging_setup import get_logger
from common.types import Patch
from features.extract import DescriptorSet

log = get_logger("features.cache")


def _image_identity(patch: Patch) -> str:
    if patch.image_path:
        p = Path(patch.image_path)
        try:
            st = p.stat()
            return f"{p.resolve()}:{st.st_size}:{st.st_mtime_ns}"
        except OSError:
            return str(p)
    if patch.image is not None:
        return hashlib.sha1(np.ascontiguousarray(patch.image).tobytes()).hexdigest()
    return ""


class DescriptorCache:
    """
    Disk cache of descriptor sets, one .npz per (patch, image, extractor).

        root/
          └─ {sha1}.npz   (points, descriptors, kind)

    A miss returns None. An unreadable or unwritable entry raises
    FeatureCacheError naming the patch.
    """
    def __init__(self, root: str = "cache/descriptors"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.hits = 0
        self.misses = 0
        self._counts = threading.Lock()

    def key(self, patch: Patch, signature: str) -> str:
        h = hashlib.sha1()
        h.update(patch.id.encode("utf-8"))
        h.update(b"\0")
        h.update(_image_identity(patch).encode("utf-8"))
        h.update(b"\0")
        h.update(signature.encode("utf-8"))
        return h.hexdigest()

    def path_for(self, patch: Patch, signature: str) -> Path:
        return self.root / f"{self.key(patch, signature)}.npz"

    def load(self, patch: Patch, signature: str) -> Optional[DescriptorSet]:
        path = self.path_for(patch, signature)
        if not path.exists():
            with self._counts:
                self.misses += 1
            return None
        try:
            with np.load(path, allow_pickle=False) as z:
                ds = DescriptorSet(z["points"], z["descriptors"], str(z["kind"]))
        except (OSError, ValueError, KeyError, zipfile.BadZipFile) as e:
            raise FeatureCacheError(patch.id, f"cannot read cache entry: {e}", str(path)) from e
        with self._counts:
            self.hits += 1
        return ds

    def store(self, patch: Patch, signature: str, ds: DescriptorSet) -> Path:
        path = self.path_for(patch, signature)
        tmp = path.with_suffix(".tmp.npz")
        try:
            np.savez(tmp, points=ds.points, descriptors=ds.descriptors, kind=np.array(ds.kind))
            tmp.replace(path)
        except OSError as e:
            raise FeatureCacheError(patch.id, f"cannot write cache entry: {e}", str(path)) from e
        return path

    def stats(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses}


class MemoryBudget:
    """
    Byte-bounded LRU of in-memory descriptor sets shared by extraction
    workers. All bookkeeping happens under one lock.
    """
    def __init__(self, limit_bytes: int):
        if limit_bytes <= 0:
            raise ValueError("limit_bytes must be > 0")
        self.limit_bytes = int(limit_bytes)
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, DescriptorSet]" = OrderedDict()
        self._used = 0
        self.evictions = 0

    @classmethod
    def from_megabytes(cls, mb: float) -> "MemoryBudget":
        return cls(int(mb * 1024 * 1024))

    @property
    def used_bytes(self) -> int:
        with self._lock:
            return self._used

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> Optional[DescriptorSet]:
        with self._lock:
            ds = self._entries.get(key)
            if ds is not None:
                self._entries.move_to_end(key)
            return ds

    def put(self, key: str, ds: DescriptorSet) -> None:
        with self._lock:
            old = self._entries.pop(key, None)
            if old is not None:
                self._used -= old.nbytes
            self._evict_locked(ds.nbytes)
            self._entries[key] = ds
            self._used += ds.nbytes

    def release_to_fit(self, nbytes: int) -> int:
        """Evict least recently used entries until nbytes more would fit. Returns bytes freed."""
        with self._lock:
            return self._evict_locked(int(nbytes))

    def _evict_locked(self, nbytes: int) -> int:
        freed = 0
        while self._entries and self._used + nbytes > self.limit_bytes:
            key, ds = self._entries.popitem(last=False)
            self._used -= ds.nbytes
            freed += ds.nbytes
            self.evictions += 1
            log.debug("descriptor set evicted", extra={"extra": {"patch": key, "bytes": ds.nbytes}})
        return freed
