from __future__ import annotations
"""
Project manifest I/O.

    sections:
      - z: 0
        patches:
          - id: s000_r00_c00
            image: tiles/s000_r00_c00.png     # relative to the manifest
            width: 512
            height: 512
            affine: [[1, 0, 0.0], [0, 1, 0.0]]

Image paths are resolved against the manifest's directory on load and
written back relative to the output manifest's directory when possible.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from common.types import Patch


def _resolve(base: Path, p: Optional[str]) -> Optional[str]:
    if not p:
        return None
    path = Path(p)
    return str(path if path.is_absolute() else (base / path))


def load_project(path: str) -> List[List[Patch]]:
    """Sections in manifest order, each a list of patches."""
    base = Path(path).resolve().parent
    with open(path, "r") as f:
        D = yaml.safe_load(f) or {}
    sections: List[List[Patch]] = []
    seen = set()
    for k, sec in enumerate(D.get("sections", []) or []):
        z = int(sec.get("z", k))
        patches = []
        for rec in sec.get("patches", []) or []:
            pid = str(rec["id"])
            if pid in seen:
                raise ValueError(f"Duplicate patch id in project: {pid}")
            seen.add(pid)
            patches.append(
                Patch(
                    id=pid,
                    section=z,
                    width=int(rec["width"]),
                    height=int(rec["height"]),
                    affine=rec.get("affine", [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]),
                    image_path=_resolve(base, rec.get("image")),
                )
            )
        sections.append(patches)
    return sections


def _relative(base: Path, p: Optional[str]) -> Optional[str]:
    if not p:
        return None
    try:
        return os.path.relpath(Path(p).resolve(), base)
    except ValueError:
        return str(p)


def project_to_dict(sections: Sequence[Sequence[Patch]], base: Path) -> Dict[str, Any]:
    out = []
    for patches in sections:
        if not patches:
            continue
        out.append({
            "z": int(patches[0].section),
            "patches": [
                {
                    "id": p.id,
                    "image": _relative(base, p.image_path),
                    "width": int(p.width),
                    "height": int(p.height),
                    "affine": [[float(v) for v in row] for row in p.affine],
                }
                for p in patches
            ],
        })
    return {"sections": out}


def save_project(sections: Sequence[Sequence[Patch]], path: str) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    D = project_to_dict(sections, out.resolve().parent)
    with out.open("w") as f:
        yaml.safe_dump(D, f, sort_keys=False)
    return out


def append_results(path: str, rows: Sequence[Dict[str, Any]]) -> None:
    """One JSON object per line, appended."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", buffering=1) as f:
        for row in rows:
            f.write(json.dumps(row) + "\n")
