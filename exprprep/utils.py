from __future__ import annotations
import logging, time
from pathlib import Path
from typing import Dict, Any, Optional
import yaml
import pandas as pd
from contextlib import contextmanager

from .checks import StructuralMismatch

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

BUNDLE_FILES = {
    "matrix": "expression.tsv.gz",
    "sample_info": "sample_info.tsv",
    "gene_info": "gene_info.tsv",
}

def _abs(path: str | Path, base: Optional[str | Path] = None) -> Path:
    p = Path(path)
    if p.is_absolute():
        return p
    return (Path(base) if base is not None else Path.cwd()) / p

def load_cfg(path: str = "config.yaml") -> Dict[str, Any]:
    """Load YAML (relative to cwd) and resolve paths against the config's dir."""
    p = _abs(path).resolve()
    with open(p, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    cfg["paths"] = resolve_paths(cfg.get("paths", {}), base=p.parent)
    return cfg

def resolve_paths(paths: Dict[str, str], base: Optional[str | Path] = None) -> Dict[str, str]:
    """Make absolute dirs from cfg and create them."""
    out = {}
    for k, v in paths.items():
        pv = _abs(v, base)
        pv.mkdir(parents=True, exist_ok=True)
        out[k] = str(pv)
    return out

def setup_logging(log_path: Optional[str] = None, level: int = logging.INFO) -> None:
    """Console logging, optional file."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()]
    )
    if log_path:
        fp = _abs(log_path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(fp, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(fh)

def read_matrix(path: str | Path) -> pd.DataFrame:
    """TSV/TSV.GZ with index in col0."""
    return pd.read_csv(_abs(path), sep="\t", index_col=0, compression="infer")

def write_matrix(df: pd.DataFrame, path: str | Path) -> None:
    p = _abs(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    comp = "gzip" if str(p).endswith(".gz") else None
    df.to_csv(p, sep="\t", index=True, compression=comp)

def ensure_exists(path: str | Path, msg: str = "") -> Path:
    p = _abs(path)
    if not p.exists():
        raise FileNotFoundError(msg or f"Missing: {p}")
    return p

# ---------- bundles ----------

def _check_keys(ids: pd.Index, what: str) -> None:
    dup = ids[ids.duplicated()].unique().tolist()
    if dup:
        raise StructuralMismatch(f"{what} ids are not unique: {dup[:10]}")

def check_bundle(matrix: pd.DataFrame, sample_info: pd.DataFrame,
                 gene_info: Optional[pd.DataFrame] = None) -> None:
    """Shape contract shared by every dataset bundle."""
    _check_keys(matrix.index, "row")
    _check_keys(matrix.columns, "column")
    if matrix.isna().any().any():
        bad = matrix.columns[matrix.isna().any()].tolist()
        raise StructuralMismatch(f"matrix has missing cells in columns {bad[:10]}")
    if not sample_info.index.equals(matrix.columns):
        raise StructuralMismatch("sample_info index does not match matrix columns (content or order)")
    if gene_info is not None and not gene_info.index.equals(matrix.index):
        raise StructuralMismatch("gene_info index does not match matrix rows (content or order)")

def write_bundle(out_dir: str | Path, matrix: pd.DataFrame, sample_info: pd.DataFrame,
                 gene_info: Optional[pd.DataFrame] = None) -> Path:
    """Verify and persist one dataset bundle; returns the bundle dir."""
    check_bundle(matrix, sample_info, gene_info)
    d = _abs(out_dir)
    d.mkdir(parents=True, exist_ok=True)
    write_matrix(matrix, d / BUNDLE_FILES["matrix"])
    write_matrix(sample_info, d / BUNDLE_FILES["sample_info"])
    if gene_info is not None:
        write_matrix(gene_info, d / BUNDLE_FILES["gene_info"])
    return d

def read_bundle(bundle_dir: str | Path) -> Dict[str, pd.DataFrame]:
    """Load a bundle back; ids and annotation fields come back as strings."""
    d = ensure_exists(bundle_dir)
    out = {}
    for key, name in BUNDLE_FILES.items():
        p = d / name
        if not p.exists():
            continue
        if key == "matrix":
            df = read_matrix(p)
            df.index = df.index.astype(str)
            df.columns = df.columns.astype(str)
        else:
            # keep zero-padded indices and GC ids as written
            df = pd.read_csv(p, sep="\t", index_col=0, dtype=str, keep_default_na=False)
        out[key] = df
    return out

@contextmanager
def timer(name: str):
    """Context timer."""
    t0 = time.time()
    yield
    dt = time.time() - t0
    logging.getLogger(__name__).info(f"{name} done in {dt:.2f}s")
