from __future__ import annotations

import argparse
import time
from typing import Dict, List

from common.config import load_params
from common.logging_setup import get_logger, setup_logging
from alignment.driver import LayerRegistrationDriver
from alignment.project import append_results, load_project, save_project

log = get_logger("alignment")


def _result_rows(driver: LayerRegistrationDriver) -> List[Dict]:
    ts = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()) + "Z"
    rows = []
    for t in driver.tiles:
        if t.patch is None:
            continue
        rows.append({
            "ts": ts,
            "patch": t.patch.id,
            "section": t.patch.section,
            "affine": t.patch.affine.tolist(),
            "distance_px": t.distance,
            "error_px2": t.error,
            "matches": t.num_matches,
        })
    return rows


def main() -> None:
    ap = argparse.ArgumentParser(description="Section mosaic registration")
    ap.add_argument("--project", required=True, help="Project manifest (YAML)")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--out", required=True, help="Output manifest with registered transforms")
    ap.add_argument("--results", default=None, help="Append one JSON line per patch (overrides config)")
    ap.add_argument("--model", default=None, choices=["translation", "rigid", "similarity", "affine"])
    ap.add_argument("--workers", type=int, default=None, help="Descriptor extraction threads")
    ap.add_argument("--no-prealigned", action="store_true", help="Match all pairs; never repair by overlap")
    args = ap.parse_args()

    P = load_params(args.config)
    setup_logging(P.log_level)
    P = P.with_overrides(model=args.model, results_file=args.results)
    if args.no_prealigned:
        P = P.with_overrides(prealigned=False)
    if args.workers is not None:
        P.features.workers = int(args.workers)

    sections = load_project(args.project)
    log.info("Project loaded", extra={"extra": {
        "project": args.project,
        "sections": len(sections),
        "patches": sum(len(s) for s in sections),
        "model": P.model,
        "prealigned": P.prealigned,
    }})

    driver = LayerRegistrationDriver(P)
    report = driver.run(sections)

    out = save_project(sections, args.out)
    if P.results_file:
        append_results(P.results_file, _result_rows(driver))
    log.info("Registration written", extra={"extra": {"out": str(out), "report": report.to_dict()}})


if __name__ == "__main__":
    main()
