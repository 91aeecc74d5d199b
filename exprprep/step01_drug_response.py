from __future__ import annotations
import logging
import re
from itertools import accumulate
from pathlib import Path
from typing import List, Optional, Tuple

import pandas as pd

from .checks import StructuralMismatch
from .utils import ensure_exists, write_bundle

log = logging.getLogger(__name__)

SUFFIX_RE = re.compile(r"_\d+$")
CONTRAST_GROUPS = ("0", "1")

# ---------- header decoding ----------

def dedupe_names(names: List[str]) -> List[str]:
    """Suffix repeated names with _1, _2, ... the way the loader does."""
    seen: dict = {}
    out = []
    for n in names:
        k = seen.get(n, 0)
        out.append(n if k == 0 else f"{n}_{k}")
        seen[n] = k + 1
    return out

def strip_dedupe_suffix(name: str) -> str:
    return SUFFIX_RE.sub("", name)

def split_header(name: str) -> Tuple[str, int]:
    """'Taxol1' -> ('Taxol', 1); '1' -> ('', 1)."""
    clean = strip_dedupe_suffix(name)
    if not clean or clean[-1] not in CONTRAST_GROUPS:
        raise StructuralMismatch(
            f"column {name!r}: expected a trailing contrast digit in {CONTRAST_GROUPS}")
    return clean[:-1], int(clean[-1])

def _carry(prev: Optional[str], token: str) -> Optional[str]:
    return token or prev

def carry_forward(tokens: List[str]) -> List[str]:
    """Resolve blank drug tokens to the last explicit name on their left."""
    if tokens and not tokens[0]:
        raise StructuralMismatch("first column carries no drug name; nothing to carry forward")
    return list(accumulate(tokens, _carry))

def build_sample_ids(drugs: List[str], contrasts: List[int]) -> List[str]:
    ids = [f"{d}_{c}_{i:03d}" for i, (d, c) in enumerate(zip(drugs, contrasts), start=1)]
    if len(set(ids)) != len(ids):
        raise StructuralMismatch("rebuilt sample ids are not unique")
    return ids

def decode_columns(X: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Replace encoded headers with <drug>_<contrast>_<index>; return (X, sample_info)."""
    parsed = [split_header(str(c)) for c in X.columns]
    drugs = carry_forward([d for d, _ in parsed])
    contrasts = [c for _, c in parsed]
    ids = build_sample_ids(drugs, contrasts)

    info = pd.DataFrame({
        "drug": drugs,
        "contrast": contrasts,
        "index": [f"{i:03d}" for i in range(1, len(ids) + 1)],
    }, index=pd.Index(ids, name="sample"))

    X = X.copy()
    X.columns = info.index
    return X, info

# ---------- loaders ----------

def read_drug_matrix(path: str | Path) -> pd.DataFrame:
    """Gene ids in col0; header names kept verbatim (blanks included), then deduped."""
    p = ensure_exists(path)
    head = pd.read_csv(p, sep="\t", header=None, nrows=1, dtype=str,
                       keep_default_na=False, compression="infer")
    names = [s.strip() for s in head.iloc[0].tolist()[1:]]
    X = pd.read_csv(p, sep="\t", header=None, skiprows=1, index_col=0,
                    compression="infer")
    if X.shape[1] != len(names):
        raise StructuralMismatch(
            f"{p.name}: header has {len(names)} sample names but rows have {X.shape[1]} values")
    X.columns = dedupe_names(names)
    X.index = X.index.astype(str)
    X.index.name = "gene"
    return X

# ---------- entrypoint ----------

def run(cfg: dict, paths: dict) -> dict:
    c = cfg["drug_response"]
    raw_dir = Path(paths["raw"])
    X = read_drug_matrix(raw_dir / c["file"])
    log.info("drug response matrix: %d genes x %d columns", *X.shape)

    X, info = decode_columns(X)
    out = write_bundle(Path(paths["processed"]) / c.get("bundle", "drug_response"), X, info)
    log.info("wrote %s", out)
    return {"n_genes": X.shape[0], "n_samples": X.shape[1],
            "drugs": info["drug"].nunique()}
