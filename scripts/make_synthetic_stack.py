#!/usr/bin/env python3
"""
Build a small synthetic section stack for registration runs.

Draws one feature-rich specimen image, then for every section:
- shifts/rotates the specimen slightly (section-to-section drift)
- cuts it into an overlapping grid of tiles with jittered true positions
- writes the tiles as PNGs and records a perturbed initial affine per tile

The resulting project.yaml feeds `python -m alignment.pipeline`.

Examples:
  python scripts/make_synthetic_stack.py --out data/synthetic
  python scripts/make_synthetic_stack.py --out data/synthetic --sections 3 --grid 3 3 --tile-size 384
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Tuple

import cv2
import numpy as np

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.types import Patch  # noqa: E402
from alignment.project import save_project  # noqa: E402


def synthesize_specimen(out_size: Tuple[int, int], seed: int = 1234) -> np.ndarray:
    """Generate a feature-rich grayscale image (edges, corners, textures)."""
    w, h = out_size
    rng = np.random.default_rng(seed)
    base = rng.normal(128, 25, size=(h, w)).clip(0, 255).astype(np.uint8)

    for _ in range(int(w * h / 2500)):
        x1, y1 = int(rng.integers(0, w)), int(rng.integers(0, h))
        x2 = int(np.clip(x1 + rng.integers(-60, 60), 0, w - 1))
        y2 = int(np.clip(y1 + rng.integers(-60, 60), 0, h - 1))
        color = int(rng.integers(20, 235))
        cv2.rectangle(base, (min(x1, x2), min(y1, y2)), (max(x1, x2), max(y1, y2)), color, int(rng.integers(1, 3)))
    for _ in range(int(w * h / 4000)):
        c = (int(rng.integers(0, w)), int(rng.integers(0, h)))
        r = int(rng.integers(4, 30))
        cv2.circle(base, c, r, int(rng.integers(0, 255)), -1 if rng.random() < 0.3 else 1)
    return cv2.GaussianBlur(base, (0, 0), 0.8)


def cut_section(
    specimen: np.ndarray,
    z: int,
    grid: Tuple[int, int],
    tile_size: int,
    overlap: float,
    drift: Tuple[float, float, float],
    jitter_px: float,
    perturb_px: float,
    rng: np.random.Generator,
    out_dir: Path,
) -> Tuple[List[Patch], List[Tuple[int, int]]]:
    """Tiles of one section and their true top-left corners in the section image."""
    rows, cols = grid
    dx, dy, deg = drift
    H, W = specimen.shape[:2]
    M = cv2.getRotationMatrix2D((W / 2.0, H / 2.0), deg, 1.0)
    M[:, 2] += (dx, dy)
    section_img = cv2.warpAffine(specimen, M, (W, H), flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REFLECT)

    step = tile_size * (1.0 - overlap)
    margin = int(np.ceil(jitter_px)) + 1
    patches = []
    truth = []
    for r in range(rows):
        for c in range(cols):
            x = int(round(margin + c * step + rng.uniform(-jitter_px, jitter_px)))
            y = int(round(margin + r * step + rng.uniform(-jitter_px, jitter_px)))
            x = int(np.clip(x, 0, W - tile_size))
            y = int(np.clip(y, 0, H - tile_size))
            tile = section_img[y : y + tile_size, x : x + tile_size]
            truth.append((x, y))
            pid = f"s{z:03d}_r{r:02d}_c{c:02d}"
            png = out_dir / f"{pid}.png"
            cv2.imwrite(str(png), tile)
            # nominal grid position plus noise is the microscope's stage guess
            gx = margin + c * step + rng.uniform(-perturb_px, perturb_px)
            gy = margin + r * step + rng.uniform(-perturb_px, perturb_px)
            patches.append(
                Patch(
                    id=pid,
                    section=z,
                    width=tile_size,
                    height=tile_size,
                    affine=[[1.0, 0.0, gx], [0.0, 1.0, gy]],
                    image_path=str(png),
                )
            )
    return patches, truth


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--out", default="data/synthetic", help="Output directory")
    ap.add_argument("--sections", type=int, default=2)
    ap.add_argument("--grid", nargs=2, type=int, default=[2, 2], metavar=("ROWS", "COLS"))
    ap.add_argument("--tile-size", type=int, default=384)
    ap.add_argument("--overlap", type=float, default=0.2, help="Fraction of tile side shared by neighbours")
    ap.add_argument("--jitter", type=float, default=6.0, help="Max true offset from the nominal grid (px)")
    ap.add_argument("--perturb", type=float, default=4.0, help="Max error of the initial placement (px)")
    ap.add_argument("--drift", type=float, default=5.0, help="Max section-to-section shift (px)")
    ap.add_argument("--seed", type=int, default=1234)
    args = ap.parse_args()

    out = Path(args.out)
    tiles_dir = out / "tiles"
    tiles_dir.mkdir(parents=True, exist_ok=True)
    rng = np.random.default_rng(args.seed)

    rows, cols = args.grid
    step = args.tile_size * (1.0 - args.overlap)
    margin = 2 * int(np.ceil(args.jitter)) + 2
    W = int(np.ceil(margin * 2 + (cols - 1) * step + args.tile_size))
    H = int(np.ceil(margin * 2 + (rows - 1) * step + args.tile_size))
    specimen = synthesize_specimen((W, H), seed=args.seed)

    sections = []
    for z in range(args.sections):
        drift = (
            float(rng.uniform(-args.drift, args.drift)),
            float(rng.uniform(-args.drift, args.drift)),
            float(rng.uniform(-0.5, 0.5)),
        )
        patches, _ = cut_section(specimen, z, (rows, cols), args.tile_size, args.overlap, drift,
                                 args.jitter, args.perturb, rng, tiles_dir)
        sections.append(patches)
        print(f"[ok] section {z}: {rows * cols} tiles, drift={drift}")

    manifest = save_project(sections, str(out / "project.yaml"))
    print(f"[ok] wrote {manifest}")
    print("Register it with:")
    print(f"  python -m alignment.pipeline --project {manifest} --out {out / 'aligned.yaml'}")


if __name__ == "__main__":
    main()
