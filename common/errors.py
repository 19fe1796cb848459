from __future__ import annotations

from typing import Optional


class PatchIOError(RuntimeError):
    """Image fetch failed for a patch. Not recoverable; aborts the run."""

    def __init__(self, patch_id: str, reason: str):
        super().__init__(f"Patch {patch_id}: {reason}")
        self.patch_id = patch_id
        self.reason = reason


class FeatureCacheError(RuntimeError):
    """Descriptor cache could not be read or written for a patch."""

    def __init__(self, patch_id: str, reason: str, path: Optional[str] = None):
        where = f" ({path})" if path else ""
        super().__init__(f"Feature cache failure for patch {patch_id}{where}: {reason}")
        self.patch_id = patch_id
        self.reason = reason
        self.path = path
