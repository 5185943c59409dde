"""
Tests for sample alignment, contrast bookkeeping, thresholding and the
pydeseq2-backed pseudobulk fit.
"""

import numpy as np
import pandas as pd
import pytest

from lungmac.config import DEConfig
from lungmac.de import (
    RESULT_COLUMNS,
    SampleAlignmentError,
    align_sample_metadata,
    call_significant,
    fit_model,
    pairwise_contrasts,
    rank_by_effect,
    run_pseudobulk_de,
    significant_genes,
    variance_stabilize,
)
from lungmac.pseudobulk import aggregate_counts, build_sample_metadata, filter_low_counts


@pytest.fixture
def counts():
    return pd.DataFrame(
        np.arange(16).reshape(4, 4) + 10,
        index=["G1", "G2", "G3", "G4"],
        columns=["A1", "A2", "B1", "B2"],
    )


@pytest.fixture
def sample_meta():
    return pd.DataFrame({"condition": ["A", "A", "B", "B"]}, index=["A1", "A2", "B1", "B2"])


@pytest.fixture
def results():
    return pd.DataFrame(
        {
            "baseMean": [100.0, 50.0, 80.0, 20.0, 10.0, 5.0],
            "log2FoldChange": [3.0, -2.0, 1.2, 0.5, -1.5, 4.0],
            "lfc_shrunk": [2.5, -1.1, 0.4, 0.2, -1.0, 0.9],
            "lfcSE": [0.2] * 6,
            "stat": [10.0, -8.0, 4.0, 1.0, -3.0, 1.0],
            "pvalue": [1e-10, 1e-8, 1e-4, 0.2, 0.01, 0.3],
            "padj": [1e-9, 1e-7, 5e-4, 0.3, 0.04, np.nan],
        },
        index=pd.Index(["Up1", "Down1", "Up2", "Flat", "Down2", "NoPadj"], name="gene"),
    )


class TestAlignment:

    def test_reorders_to_count_columns(self, counts, sample_meta):
        shuffled = sample_meta.iloc[[2, 0, 3, 1]]
        aligned = align_sample_metadata(counts, shuffled)
        assert list(aligned.index) == list(counts.columns)
        assert aligned.loc["B1", "condition"] == "B"

    def test_one_sided_ids_are_named(self, counts, sample_meta):
        meta = sample_meta.rename(index={"B2": "B3"})
        with pytest.raises(SampleAlignmentError) as err:
            align_sample_metadata(counts, meta)
        assert "B2" in str(err.value)
        assert "B3" in str(err.value)

    def test_duplicated_metadata_rows(self, counts, sample_meta):
        meta = pd.concat([sample_meta, sample_meta.iloc[[0]]])
        with pytest.raises(SampleAlignmentError, match="duplicated"):
            align_sample_metadata(counts, meta)

    def test_mismatch_fails_before_fitting(self, counts, sample_meta):
        meta = sample_meta.rename(index={"B2": "B3"})
        with pytest.raises(SampleAlignmentError):
            fit_model(counts, meta, "condition", reference="A")

    def test_alignment_error_is_a_value_error(self):
        assert issubclass(SampleAlignmentError, ValueError)


class TestContrasts:

    def test_against_reference(self):
        assert pairwise_contrasts(["Control", "LPS", "PBS"], "Control") == [
            ("LPS", "Control"),
            ("PBS", "Control"),
        ]

    def test_all_pairs(self):
        assert pairwise_contrasts(["a", "b", "c"]) == [("b", "a"), ("c", "a"), ("c", "b")]

    def test_unknown_reference(self):
        with pytest.raises(ValueError):
            pairwise_contrasts(["a", "b"], "z")

    def test_single_level_design_rejected(self, counts):
        meta = pd.DataFrame({"condition": ["A"] * 4}, index=counts.columns)
        with pytest.raises(ValueError, match="two levels"):
            fit_model(counts, meta, "condition")


class TestSignificance:

    def test_default_thresholds(self, results):
        assert significant_genes(results) == ["Up1", "Down1", "Up2", "Down2"]

    def test_missing_padj_never_significant(self, results):
        assert "NoPadj" not in significant_genes(results, padj_cutoff=1.0, lfc_cutoff=0.0)

    def test_stricter_padj_is_subset(self, results):
        loose = set(significant_genes(results, padj_cutoff=0.05, lfc_cutoff=1.0))
        strict = set(significant_genes(results, padj_cutoff=0.001, lfc_cutoff=1.0))
        assert strict <= loose
        assert strict == {"Up1", "Down1", "Up2"}

    def test_stricter_lfc_is_subset(self, results):
        for lo, hi in [(0.0, 1.0), (1.0, 2.0), (2.0, 3.0)]:
            loose = set(significant_genes(results, 0.05, lo))
            strict = set(significant_genes(results, 0.05, hi))
            assert strict <= loose

    def test_direction_and_shrunk_effect(self, results):
        assert significant_genes(results, direction="up") == ["Up1", "Up2"]
        assert significant_genes(results, direction="down") == ["Down1", "Down2"]
        assert significant_genes(results, use_shrunk=True) == ["Up1", "Down1", "Down2"]
        with pytest.raises(ValueError):
            significant_genes(results, direction="sideways")

    def test_rank_by_effect(self, results):
        assert list(rank_by_effect(results).index[:3]) == ["NoPadj", "Up1", "Down1"]
        assert rank_by_effect(results, use_shrunk=True).index[0] == "Up1"


class TestEffectSelection:

    def test_shrunk_effect_by_default(self, results):
        cfg = DEConfig()
        assert cfg.effect_is_shrunk
        ranked, sig = call_significant(results, cfg)
        # Up2 passes on the raw fold change (1.2) but not on the shrunk one (0.4)
        assert sig == ["Up1", "Down1", "Down2"]
        assert ranked.index[0] == "Up1"
        assert (ranked.loc[sig, "lfc_shrunk"].abs() >= cfg.lfc_cutoff).all()

    def test_follows_shrink_lfc_when_unset(self, results):
        cfg = DEConfig(shrink_lfc=False)
        assert not cfg.effect_is_shrunk
        ranked, sig = call_significant(results, cfg)
        assert sig == ["Up1", "Down1", "Down2", "Up2"]
        assert ranked.index[0] == "NoPadj"

    def test_explicit_override(self, results):
        _, sig = call_significant(results, DEConfig(shrink_lfc=True, use_shrunk=False))
        assert set(sig) == {"Up1", "Down1", "Up2", "Down2"}
        _, sig = call_significant(results, DEConfig(shrink_lfc=False, use_shrunk=True))
        assert set(sig) == {"Up1", "Down1", "Down2"}


@pytest.mark.slow
class TestDESeq2:

    @pytest.fixture
    def toy_inputs(self, toy_pseudobulk_adata):
        pb = aggregate_counts(toy_pseudobulk_adata, "replicate")
        meta = build_sample_metadata(toy_pseudobulk_adata.obs, "replicate", ["condition"])
        return pb, meta

    def test_ten_fold_gene_is_top(self, toy_inputs):
        pb, meta = toy_inputs
        cfg = DEConfig(factor="condition", reference="A", shrink_lfc=False, fit_type="mean")
        _, res = run_pseudobulk_de(pb, meta, cfg)

        assert list(res) == ["condition_B_vs_A"]
        table = res["condition_B_vs_A"]
        assert list(table.columns[:len(RESULT_COLUMNS)]) == RESULT_COLUMNS
        assert set(table.index) == {"G1", "G2", "G3", "G4"}

        top = rank_by_effect(table)
        assert top.index[0] == "G1"
        assert top.loc["G1", "log2FoldChange"] > 3
        assert (table["lfc_shrunk"] == table["log2FoldChange"]).all()
        assert "G1" in significant_genes(table, padj_cutoff=0.05, lfc_cutoff=1.0)

    def test_reference_level_sets_sign(self, toy_inputs):
        pb, meta = toy_inputs
        cfg = DEConfig(factor="condition", reference="B", shrink_lfc=False, fit_type="mean")
        _, res = run_pseudobulk_de(pb, meta, cfg)
        assert res["condition_A_vs_B"].loc["G1", "log2FoldChange"] < -3

    def test_vst_shape(self, toy_inputs):
        pb, meta = toy_inputs
        cfg = DEConfig(factor="condition", reference="A", shrink_lfc=False, fit_type="mean")
        dds, _ = run_pseudobulk_de(pb, meta, cfg)
        vst = variance_stabilize(dds, fit_type="mean")
        assert vst.shape == (4, 4)
        assert list(vst.columns) == ["A1", "A2", "B1", "B2"]
        assert vst.loc["G1", ["B1", "B2"]].min() > vst.loc["G1", ["A1", "A2"]].max()

    def test_shrinkage_on_realistic_counts(self, replicate_adata):
        adata = replicate_adata.copy()
        X = adata.X.toarray()
        treated = adata.obs["condition"].to_numpy() == "Treated"
        X[np.ix_(treated, [0])] *= 8
        adata.X = X

        pb = filter_low_counts(aggregate_counts(adata, "sample"), min_count=10, min_samples=2)
        meta = build_sample_metadata(adata.obs, "sample", ["condition"])
        cfg = DEConfig(factor="condition", reference="Control", shrink_lfc=True)
        _, res = run_pseudobulk_de(pb, meta, cfg)

        table = res["condition_Treated_vs_Control"]
        assert table["lfc_shrunk"].notna().all()
        assert table.loc["Gene00", "lfc_shrunk"] > 0
        assert rank_by_effect(table).index[0] == "Gene00"
