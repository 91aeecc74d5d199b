"""
exprprep - build matrix + annotation bundles for the three raw datasets.

Pipelines:
    1  drug_response    encoded-header decoding
    2  cell_panel       duplicate trimming and long-to-wide reshape
    3  patient_cohorts  two-cohort merge with manual status correction
"""
from __future__ import annotations
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import step01_drug_response, step02_cell_panel, step03_patient_cohorts
from .checks import PipelineCheckError
from .utils import load_cfg, setup_logging, timer

PIPELINES = {
    "1": ("drug_response", step01_drug_response.run),
    "2": ("cell_panel", step02_cell_panel.run),
    "3": ("patient_cohorts", step03_patient_cohorts.run),
}

log = logging.getLogger("exprprep")


def _select(which: List[str]) -> List[str]:
    if not which or "all" in which:
        return sorted(PIPELINES)
    unknown = [w for w in which if w not in PIPELINES]
    if unknown:
        raise SystemExit(f"unknown pipeline(s): {unknown}; choose from {sorted(PIPELINES)} or 'all'")
    return list(dict.fromkeys(which))


def main(args: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="exprprep",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="config.yaml", help="YAML config (default: config.yaml)")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command")
    p_run = sub.add_parser("run", help="run pipelines by number")
    p_run.add_argument("pipelines", nargs="*", default=["all"], help="1 2 3 or 'all'")

    parsed = parser.parse_args(args)
    if parsed.command is None:
        parser.print_help()
        return 1

    cfg = load_cfg(parsed.config)
    paths = cfg["paths"]
    log_file = Path(paths["logs"]) / "exprprep.log" if "logs" in paths else None
    setup_logging(str(log_file) if log_file else None, getattr(logging, parsed.log_level))

    summary = {}
    status = 0
    for key in _select(parsed.pipelines):
        name, fn = PIPELINES[key]
        try:
            with timer(f"pipeline {key} ({name})"):
                summary[name] = fn(cfg, paths)
        except (PipelineCheckError, FileNotFoundError) as e:
            log.error("pipeline %s (%s) failed: %s", key, name, e)
            summary[name] = {"error": str(e)}
            status = 1
            break
        log.info("%s: %s", name, summary[name])

    out = Path(paths["processed"]) / "run_summary.json"
    out.write_text(json.dumps(summary, indent=2, default=str), encoding="utf-8")
    return status


if __name__ == "__main__":
    sys.exit(main())
