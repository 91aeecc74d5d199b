from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd

from .checks import CheckResult, OrderingViolation, StructuralMismatch, failed
from .utils import ensure_exists, write_bundle, write_matrix

log = logging.getLogger(__name__)

# fixed column set of the panel file, by position
COLUMNS = ["id", "probe", "signal", "detection", "pvalue",
           "panel", "cell_number", "cell_name", "gene_symbol"]
# columns allowed to differ between the two blocks of a duplicated probe
VARYING = ["id", "gc_id", "signal", "detection", "pvalue"]
SAMPLE_COLS = ["panel", "cell_number", "cell_name", "replicate"]
GENE_COLS = ["probe", "gc_id", "gene_symbol"]


@dataclass
class DuplicateReport:
    n_samples: int
    n_probes: int
    expected_rows: int
    actual_rows: int
    anomalies: pd.Series                # probe -> row count, count != n_samples
    duplicated_probe: Optional[str] = None
    cluster_ids: List[str] = field(default_factory=list)
    blocks_identical: bool = False

    @property
    def excess_rows(self) -> int:
        return self.actual_rows - self.expected_rows


# ---------- loaders ----------

def read_panel_table(path: str | Path, sep: str = "\t") -> pd.DataFrame:
    p = ensure_exists(path)
    df = pd.read_csv(p, sep=sep, header=0, names=COLUMNS, dtype=str,
                     compression="infer")
    signal = pd.to_numeric(df["signal"], errors="coerce")
    bad = signal.isna() & df["signal"].notna()
    if bad.any():
        r = df[bad].iloc[0]
        raise StructuralMismatch(
            f"{p.name}: non-numeric signal {r['signal']!r} for probe {r['probe']} (id {r['id']}); "
            f"{int(bad.sum())} such row(s)")
    df["signal"] = signal
    return df

def split_composite_id(df: pd.DataFrame, delimiter: str) -> pd.DataFrame:
    """id 'GC123<delim>R1' -> gc_id 'GC123', replicate 'R1' (first delimiter only)."""
    parts = df["id"].str.split(delimiter, n=1, expand=True)
    if parts.shape[1] < 2 or parts[1].isna().any():
        bad = df.loc[parts.reindex(columns=[1])[1].isna(), "id"].iloc[0]
        raise StructuralMismatch(f"composite id {bad!r} has no {delimiter!r} delimiter")
    df = df.copy()
    df["gc_id"] = parts[0]
    df["replicate"] = parts[1]
    return df

# ---------- duplicates ----------

def detect_duplicates(df: pd.DataFrame, n_samples: int) -> DuplicateReport:
    counts = df.groupby("probe", sort=False).size()
    rep = DuplicateReport(
        n_samples=n_samples,
        n_probes=len(counts),
        expected_rows=len(counts) * n_samples,
        actual_rows=len(df),
        anomalies=counts[counts != n_samples],
    )
    doubled = rep.anomalies[rep.anomalies == 2 * n_samples]
    if len(rep.anomalies) == 1 and len(doubled) == 1:
        probe = doubled.index[0]
        rows = df[df["probe"] == probe]
        gcs = rows["gc_id"].unique().tolist()
        rep.duplicated_probe = probe
        rep.cluster_ids = gcs
        if len(gcs) == 2:
            keep = [c for c in df.columns if c not in VARYING]
            a = rows.loc[rows["gc_id"] == gcs[0], keep].reset_index(drop=True)
            b = rows.loc[rows["gc_id"] == gcs[1], keep].reset_index(drop=True)
            rep.blocks_identical = a.fillna("").equals(b.fillna(""))
    return rep

def choose_extra_cluster(rep: DuplicateReport, configured: Optional[str] = None) -> Optional[str]:
    """Cluster id whose rows get dropped; None when nothing is duplicated."""
    if rep.anomalies.empty:
        return None
    if rep.duplicated_probe is None:
        listing = ", ".join(f"{p}={n}" for p, n in rep.anomalies.head(20).items())
        raise StructuralMismatch(
            f"{len(rep.anomalies)} probe(s) with row count != {rep.n_samples}: {listing}")
    if len(rep.cluster_ids) != 2:
        raise StructuralMismatch(
            f"probe {rep.duplicated_probe} is doubled but maps to cluster ids {rep.cluster_ids}")
    if not rep.blocks_identical:
        raise StructuralMismatch(
            f"probe {rep.duplicated_probe}: blocks for {rep.cluster_ids} differ beyond value columns")
    if configured is None:
        return rep.cluster_ids[1]
    if configured not in rep.cluster_ids:
        raise StructuralMismatch(
            f"configured extra cluster {configured!r} is not one of {rep.cluster_ids} "
            f"for probe {rep.duplicated_probe}")
    return configured

def trim_extra_cluster(df: pd.DataFrame, gc_id: Optional[str], n_genes: int, n_samples: int) -> pd.DataFrame:
    out = df if gc_id is None else df[df["gc_id"] != gc_id].reset_index(drop=True)
    if len(out) != n_genes * n_samples:
        raise StructuralMismatch(
            f"after trimming {gc_id!r}: {len(out)} rows, expected {n_genes} x {n_samples} = {n_genes * n_samples}")
    return out

# ---------- ordering ----------

def _grid(df: pd.DataFrame, col: str, n_samples: int) -> np.ndarray:
    return df[col].fillna("").astype(str).to_numpy().reshape(-1, n_samples)

def verify_ordering(df: pd.DataFrame, n_samples: int,
                    sample_cols=SAMPLE_COLS, gene_cols=GENE_COLS) -> List[CheckResult]:
    """Sample attributes cycle with period n_samples; gene attributes are constant per block."""
    if len(df) % n_samples:
        return [CheckResult("row count", False, f"{len(df)} rows not a multiple of {n_samples}")]
    out = []
    for col in sample_cols:
        g = _grid(df, col, n_samples)
        bad = np.argwhere(g != g[0])
        out.append(_result(df, f"sample column {col}", bad, n_samples))
    for col in gene_cols:
        g = _grid(df, col, n_samples)
        bad = np.argwhere(g != g[:, [0]])
        out.append(_result(df, f"gene column {col}", bad, n_samples))
    # each probe owns exactly one block
    heads = df["probe"].iloc[::n_samples]
    dup = np.flatnonzero(heads.duplicated().to_numpy())
    if len(dup):
        out.append(CheckResult("probe blocks", False, f"probe {heads.iat[dup[0]]} spans several blocks",
                               location=int(dup[0] * n_samples)))
    else:
        out.append(CheckResult("probe blocks", True))
    return out

def _result(df, name, bad, n_samples) -> CheckResult:
    if not len(bad):
        return CheckResult(name, True)
    row = int(bad[0][0] * n_samples + bad[0][1])
    return CheckResult(name, False, f"probe {df['probe'].iat[row]}", location=row)

# ---------- reshape ----------

def _sample_keys(df: pd.DataFrame, sep: str) -> pd.Series:
    return df["cell_name"].fillna("") + sep + df["replicate"].fillna("")

def reshape_fast(df: pd.DataFrame, n_samples: int, sample_sep: str = "_"):
    """Row-major fill; valid only after verify_ordering passed."""
    n_genes = len(df) // n_samples
    first = df.iloc[::n_samples]
    cycle = df.iloc[:n_samples]

    genes = pd.Index(first["probe"].tolist(), name="probe")
    samples = pd.Index(_sample_keys(cycle, sample_sep).tolist(), name="sample")
    X = pd.DataFrame(df["signal"].to_numpy(dtype=float).reshape(n_genes, n_samples),
                     index=genes, columns=samples)

    gene_info = first[["gc_id", "gene_symbol"]].set_axis(genes, axis=0)
    sample_info = cycle[SAMPLE_COLS].set_axis(samples, axis=0)
    return X, gene_info, sample_info

def reshape_lookup(df: pd.DataFrame, sample_sep: str = "_"):
    """Explicit (probe, sample) fill, first-appearance order."""
    df = df.assign(sample=_sample_keys(df, sample_sep))
    dup = df[df.duplicated(["probe", "sample"])]
    if len(dup):
        r = dup.iloc[0]
        raise StructuralMismatch(f"probe {r['probe']} has more than one value for sample {r['sample']}")

    genes = pd.Index(df["probe"].unique(), name="probe")
    samples = pd.Index(df["sample"].unique(), name="sample")
    X = df.pivot(index="probe", columns="sample", values="signal").reindex(index=genes, columns=samples)
    if X.isna().any().any():
        g, s = np.argwhere(X.isna().to_numpy())[0]
        raise StructuralMismatch(f"no value for probe {genes[g]} in sample {samples[s]}")

    gene_info = df.drop_duplicates("probe").set_index("probe")[["gc_id", "gene_symbol"]].reindex(genes)
    sample_info = df.drop_duplicates("sample").set_index("sample")[SAMPLE_COLS].reindex(samples)
    return X, gene_info, sample_info

# ---------- pipeline ----------

def reconcile(df: pd.DataFrame, n_samples: int, n_genes: Optional[int] = None,
              extra_cluster_id: Optional[str] = None, sample_sep: str = "_",
              on_ordering_violation: str = "lookup"):
    """Dedupe, verify, reshape. df must already carry gc_id/replicate."""
    rep = detect_duplicates(df, n_samples)
    log.info("rows: %d actual vs %d expected (%d probes x %d samples)",
             rep.actual_rows, rep.expected_rows, rep.n_probes, n_samples)
    for probe, n in rep.anomalies.items():
        log.warning("probe %s has %d rows (expected %d)", probe, n, n_samples)
    if rep.duplicated_probe is not None:
        log.warning("probe %s maps to cluster ids %s; blocks identical: %s",
                    rep.duplicated_probe, rep.cluster_ids, rep.blocks_identical)

    if n_genes is not None and rep.n_probes != n_genes:
        raise StructuralMismatch(f"{rep.n_probes} distinct probes, expected {n_genes}")
    extra = choose_extra_cluster(rep, extra_cluster_id)
    df = trim_extra_cluster(df, extra, rep.n_probes, n_samples)

    checks = verify_ordering(df, n_samples)
    bad = failed(checks)
    if not bad:
        X, gene_info, sample_info = reshape_fast(df, n_samples, sample_sep)
        strategy = "fast"
    elif on_ordering_violation == "abort":
        raise OrderingViolation("; ".join(str(r) for r in bad))
    else:
        for r in bad:
            log.warning("ordering check %s", r)
        X, gene_info, sample_info = reshape_lookup(df, sample_sep)
        strategy = "lookup"

    summary = {
        "rows_before": rep.actual_rows,
        "rows_after": len(df),
        "dropped_cluster": extra,
        "duplicated_probe": rep.duplicated_probe,
        "reshape": strategy,
        "failed_checks": [r.name for r in bad],
    }
    return X, gene_info, sample_info, rep, summary

def run(cfg: dict, paths: dict) -> dict:
    c = cfg["cell_panel"]
    df = read_panel_table(Path(paths["raw"]) / c["file"], sep=c.get("sep", "\t"))
    df = split_composite_id(df, c["id_delimiter"])

    X, gene_info, sample_info, rep, summary = reconcile(
        df,
        n_samples=int(c["n_samples"]),
        n_genes=c.get("n_genes"),
        extra_cluster_id=c.get("extra_cluster_id"),
        sample_sep=c.get("sample_sep", "_"),
        on_ordering_violation=c.get("on_ordering_violation", "lookup"),
    )
    # long table no longer needed
    del df

    out = write_bundle(Path(paths["processed"]) / c.get("bundle", "cell_panel"),
                       X, sample_info, gene_info)
    write_matrix(rep.anomalies.rename("rows").rename_axis("probe").to_frame(),
                 out / "probe_count_anomalies.tsv")
    log.info("wrote %s: %d genes x %d samples (%s reshape)", out, X.shape[0], X.shape[1], summary["reshape"])
    return {"n_genes": X.shape[0], "n_samples": X.shape[1], **summary}
