from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import GEOparse

from .checks import IncompleteCopy, SourceMismatch, StructuralMismatch
from .utils import ensure_exists, write_bundle

log = logging.getLogger(__name__)

STATUS_ORDER = ("Resistant", "Sensitive")


@dataclass
class CopyReport:
    copied: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)   # gsm -> reason

    @property
    def ok(self) -> bool:
        return not self.failed


# ---------- loaders ----------

def load_series(path: str | Path):
    # parse local SOFT without downloading
    return GEOparse.get_GEO(filepath=str(ensure_exists(path)), silent=True)

def sample_tables(gse) -> Dict[str, pd.DataFrame]:
    """Per-sample tables in the order the series lists its samples."""
    order = gse.metadata.get("sample_id", list(gse.gsms))
    missing = [g for g in order if g not in gse.gsms]
    if missing:
        raise StructuralMismatch(f"{gse.name}: listed samples without a table: {missing}")
    return {g: gse.gsms[g].table for g in order}

def copy_verified(tables: Mapping[str, pd.DataFrame], id_col: str = "ID_REF",
                  value_col: str = "VALUE", row_ids: Optional[Sequence[str]] = None
                  ) -> Tuple[pd.DataFrame, CopyReport]:
    """Copy each sample's values only if its feature order matches the matrix rows."""
    if not tables:
        raise StructuralMismatch("no sample tables to copy")
    if row_ids is None:
        row_ids = next(iter(tables.values()))[id_col].astype(str).tolist()
    rows = pd.Index(row_ids, name="probe")
    X = pd.DataFrame(np.zeros((len(rows), len(tables))), index=rows,
                     columns=pd.Index(list(tables), name="sample"))

    rep = CopyReport()
    for gsm, t in tables.items():
        ids = t[id_col].astype(str)
        if len(ids) != len(rows):
            rep.failed[gsm] = f"{len(ids)} features, matrix has {len(rows)}"
            continue
        diff = np.flatnonzero(ids.to_numpy() != rows.to_numpy())
        if len(diff):
            i = int(diff[0])
            rep.failed[gsm] = f"row {i}: {ids.iat[i]!r} != {rows[i]!r}"
            continue
        vals = pd.to_numeric(t[value_col], errors="coerce")
        bad = np.flatnonzero((vals.isna() & t[value_col].notna()).to_numpy())
        if len(bad):
            i = int(bad[0])
            raise StructuralMismatch(
                f"sample {gsm}: non-numeric {value_col} {t[value_col].iat[i]!r} for feature {ids.iat[i]}")
        X[gsm] = vals.to_numpy(dtype=float)
        rep.copied.append(gsm)
    return X, rep

def ensure_complete(rep: CopyReport, source: str = "") -> None:
    for gsm, why in rep.failed.items():
        log.warning("%s: sample %s not copied (%s)", source, gsm, why)
    if rep.failed:
        raise IncompleteCopy(
            f"{source}: {len(rep.failed)} of {len(rep.failed) + len(rep.copied)} samples "
            f"failed the feature-order check: {sorted(rep.failed)}")

# ---------- merge ----------

def merge_cohorts(resistant: pd.DataFrame, sensitive: pd.DataFrame) -> pd.DataFrame:
    """Resistant columns then sensitive; row ids must match exactly, in order."""
    a, b = resistant.index, sensitive.index
    if not a.equals(b):
        same_set = len(a) == len(b) and set(a) == set(b)
        n = min(len(a), len(b))
        diff = np.flatnonzero(a[:n].to_numpy() != b[:n].to_numpy())
        where = f"first difference at row {int(diff[0])}: {a[diff[0]]!r} vs {b[diff[0]]!r}" \
            if len(diff) else f"lengths {len(a)} vs {len(b)}"
        kind = "permuted" if same_set else "different"
        raise SourceMismatch(f"row ids are {kind} between cohorts; {where}")
    both = resistant.columns.intersection(sensitive.columns)
    if len(both):
        raise SourceMismatch(f"samples present in both cohorts: {list(both)}")
    return pd.concat([resistant, sensitive], axis=1)

def build_cohort_info(resistant_ids, sensitive_ids, resistant_tag: str, sensitive_tag: str) -> pd.DataFrame:
    ids = list(resistant_ids) + list(sensitive_ids)
    return pd.DataFrame({
        "status": ["Resistant"] * len(resistant_ids) + ["Sensitive"] * len(sensitive_ids),
        "dataset": [resistant_tag] * len(resistant_ids) + [sensitive_tag] * len(sensitive_ids),
    }, index=pd.Index(ids, name="sample"))

def apply_overrides(info: pd.DataFrame, overrides: Optional[Mapping[str, Mapping[str, str]]]) -> pd.DataFrame:
    """Manual corrections: {sample: {field: value}}."""
    info = info.copy()
    for sample, fields in (overrides or {}).items():
        if sample not in info.index:
            raise StructuralMismatch(
                f"override for unknown sample {sample!r}; set patient_cohorts.status_overrides "
                f"in the config to a sample of the merged cohorts")
        for k, v in fields.items():
            if k not in info.columns:
                raise StructuralMismatch(f"override for {sample}: unknown field {k!r}")
            log.warning("override %s.%s: %r -> %r", sample, k, info.at[sample, k], v)
            info.at[sample, k] = v
    return info

def order_by_status(X: pd.DataFrame, info: pd.DataFrame,
                    status_order: Sequence[str] = STATUS_ORDER) -> Tuple[pd.DataFrame, pd.DataFrame]:
    unknown = info.index[~info["status"].isin(status_order)]
    if len(unknown):
        raise StructuralMismatch(f"samples with status outside {list(status_order)}: {list(unknown)}")
    rank = {s: i for i, s in enumerate(status_order)}
    order = sorted(info.index, key=lambda s: (rank[info.at[s, "status"]], s))
    return X.loc[:, order], info.loc[order]

# ---------- entrypoint ----------

def _load_cohort(raw_dir: Path, c: dict, tag: str) -> pd.DataFrame:
    gse = load_series(raw_dir / c["file"])
    X, rep = copy_verified(sample_tables(gse))
    ensure_complete(rep, tag)
    log.info("%s: %d features x %d samples", tag, *X.shape)
    return X

def run(cfg: dict, paths: dict) -> dict:
    c = cfg["patient_cohorts"]
    raw_dir = Path(paths["raw"])
    r_tag, s_tag = c["resistant"]["tag"], c["sensitive"]["tag"]

    Xr = _load_cohort(raw_dir, c["resistant"], r_tag)
    Xs = _load_cohort(raw_dir, c["sensitive"], s_tag)
    X = merge_cohorts(Xr, Xs)

    info = build_cohort_info(Xr.columns, Xs.columns, r_tag, s_tag)
    info = apply_overrides(info, c.get("status_overrides"))
    X, info = order_by_status(X, info)

    out = write_bundle(Path(paths["processed"]) / c.get("bundle", "patient_cohorts"), X, info)
    log.info("wrote %s", out)
    counts = info["status"].value_counts()
    return {"n_genes": X.shape[0], "n_samples": X.shape[1],
            "status": {k: int(v) for k, v in counts.items()}}
