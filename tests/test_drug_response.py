"""Tests for encoded-header decoding of the drug-response matrix."""
import numpy as np
import pandas as pd
import pytest

from exprprep.checks import StructuralMismatch
from exprprep.step01_drug_response import (
    build_sample_ids,
    carry_forward,
    decode_columns,
    dedupe_names,
    read_drug_matrix,
    split_header,
    strip_dedupe_suffix,
)


def _encode(blocks):
    """[(drug, [contrasts...])] -> header names with explicit first/last only."""
    names = []
    for drug, contrasts in blocks:
        for i, c in enumerate(contrasts):
            explicit = i == 0 or i == len(contrasts) - 1
            names.append(f"{drug if explicit else ''}{c}")
    return dedupe_names(names)


class TestHeaderParts:

    def test_dedupe_names_suffixes_repeats(self):
        assert dedupe_names(["a0", "0", "0", "0", "a1"]) == ["a0", "0", "0_1", "0_2", "a1"]

    @pytest.mark.parametrize("raw, clean", [
        ("Taxol1_3", "Taxol1"),
        ("0_12", "0"),
        ("Dox0", "Dox0"),
    ])
    def test_strip_suffix(self, raw, clean):
        assert strip_dedupe_suffix(raw) == clean

    def test_split_header(self):
        assert split_header("Taxol1") == ("Taxol", 1)
        assert split_header("0_4") == ("", 0)
        assert split_header("5FU0_1") == ("5FU", 0)

    @pytest.mark.parametrize("bad", ["Taxol", "Taxol7", ""])
    def test_split_header_rejects_missing_contrast(self, bad):
        with pytest.raises(StructuralMismatch):
            split_header(bad)


class TestCarryForward:

    @pytest.mark.parametrize("blocks", [
        [("Taxol", [0, 0, 1, 1])],
        [("Taxol", [0, 1]), ("Dox", [0, 0, 0, 1, 1, 1]), ("Cis", [1, 1, 0])],
        [("A", [0, 1, 0, 1, 0]), ("B", [1, 1])],
    ])
    def test_fill_reproduces_block_drug(self, blocks):
        tokens = [split_header(n)[0] for n in _encode(blocks)]
        expected = [d for d, cs in blocks for _ in cs]
        assert carry_forward(tokens) == expected

    def test_first_column_blank_fails(self):
        with pytest.raises(StructuralMismatch, match="first column"):
            carry_forward(["", "Taxol"])

    def test_empty(self):
        assert carry_forward([]) == []


class TestSampleIds:

    def test_format_and_uniqueness(self):
        drugs = ["Taxol"] * 4 + ["Dox"] * 3
        contrasts = [0, 0, 1, 1, 0, 1, 1]
        ids = build_sample_ids(drugs, contrasts)
        assert ids[0] == "Taxol_0_001"
        assert ids[-1] == "Dox_1_007"
        assert len(set(ids)) == len(ids)


class TestDecodeColumns:

    def test_decode(self):
        names = _encode([("Taxol", [0, 0, 1, 1]), ("Dox", [0, 1, 1])])
        X = pd.DataFrame(np.arange(14, dtype=float).reshape(2, 7),
                         index=["g1", "g2"], columns=names)
        Xd, info = decode_columns(X)

        assert list(Xd.columns) == list(info.index)
        assert info["drug"].tolist() == ["Taxol"] * 4 + ["Dox"] * 3
        assert info["contrast"].tolist() == [0, 0, 1, 1, 0, 1, 1]
        assert info["index"].tolist() == [f"{i:03d}" for i in range(1, 8)]
        assert info.index[4] == "Dox_0_005"
        # values untouched
        np.testing.assert_array_equal(Xd.values, X.values)

    def test_read_drug_matrix(self, tmp_path):
        p = tmp_path / "drug.tsv"
        p.write_text(
            "gene\tTaxol0\t0\t0\tTaxol1\tDox0\t1\tDox1\n"
            "g1\t1.0\t2.0\t3.0\t4.0\t5.0\t6.0\t7.0\n"
            "g2\t8.0\t9.0\t10.0\t11.0\t12.0\t13.0\t14.0\n",
            encoding="utf-8",
        )
        X = read_drug_matrix(p)
        assert list(X.columns) == ["Taxol0", "0", "0_1", "Taxol1", "Dox0", "1", "Dox1"]
        assert list(X.index) == ["g1", "g2"]

        Xd, info = decode_columns(X)
        assert list(Xd.columns) == [
            "Taxol_0_001", "Taxol_0_002", "Taxol_0_003", "Taxol_1_004",
            "Dox_0_005", "Dox_1_006", "Dox_1_007",
        ]
        assert Xd.loc["g2", "Dox_1_006"] == 13.0
