"""
Shared synthetic inputs for the pipeline tests.

The long-format panel builder produces the layout of the real cell-panel file:
one contiguous block of n_samples rows per probe, sample attributes cycling
with period n_samples.
"""
from typing import Optional

import pandas as pd
import pytest

from exprprep.step02_cell_panel import COLUMNS, split_composite_id


def make_panel(n_genes: int, n_samples: int, doubled: Optional[int] = None,
               extra_gc: str = "GCX", split: bool = True) -> pd.DataFrame:
    """
    Build a long table of n_genes x n_samples rows.

    If doubled is given, the probe at that position gets a second block of
    rows under cluster id extra_gc, appended at the end of the table, with
    different signal values but otherwise identical attributes.
    """
    rows = []
    for g in range(n_genes):
        for s in range(n_samples):
            rows.append({
                "id": f"GC{g}_R{s % 2 + 1}",
                "probe": f"{1000 + g}_at",
                "signal": float(g * 1000 + s),
                "detection": "P",
                "pvalue": "0.01",
                "panel": f"PANEL{s // 4}",
                "cell_number": str(s // 2),
                "cell_name": f"CELL{s // 2}",
                "gene_symbol": f"SYM{g}",
            })
    df = pd.DataFrame(rows, columns=COLUMNS)
    if doubled is not None:
        block = df.iloc[doubled * n_samples:(doubled + 1) * n_samples].copy()
        block["id"] = [f"{extra_gc}_{i.split('_', 1)[1]}" for i in block["id"]]
        block["signal"] = block["signal"] + 0.5
        block["detection"] = "A"
        df = pd.concat([df, block], ignore_index=True)
    return split_composite_id(df, "_") if split else df


@pytest.fixture
def panel():
    """4 probes x 6 samples, probe 1 doubled by cluster GCX."""
    return make_panel(4, 6, doubled=1)


@pytest.fixture
def clean_panel():
    return make_panel(4, 6)


def make_sample_table(ids, values) -> pd.DataFrame:
    return pd.DataFrame({"ID_REF": list(ids), "VALUE": list(values)})


@pytest.fixture
def probe_ids():
    return [f"{i}_at" for i in range(1, 6)]

