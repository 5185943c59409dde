"""
Smoke tests: every figure function writes a non-empty file.
"""

import numpy as np
import pandas as pd
import pytest

from lungmac.plotting import (
    heatmap_genes,
    plot_enrichment_barplot,
    plot_gene_heatmap,
    plot_ligand_activity_heatmap,
    plot_ligand_target_heatmap,
    plot_lr_bubble,
    plot_pseudotime_density,
    plot_qc_violin,
    plot_volcano,
)
from lungmac.qc import calculate_qc_metrics


@pytest.fixture
def vst(rng):
    samples = ["ctrl_1", "ctrl_2", "lps_1", "lps_2"]
    return pd.DataFrame(
        rng.normal(8, 2, size=(6, 4)),
        index=[f"Gene{i}" for i in range(6)],
        columns=samples,
    )


@pytest.fixture
def sample_meta():
    meta = pd.DataFrame(
        {"condition": ["Control", "Control", "Treated", "Treated"]},
        index=["ctrl_1", "ctrl_2", "lps_1", "lps_2"],
    )
    return meta.assign(replicate=meta.index)


def test_heatmap_writes_file(tmp_path, vst, sample_meta):
    out = plot_gene_heatmap(vst, ["Gene0", "Gene1", "Gene2", "Missing"], sample_meta,
                            ["condition", "replicate"], tmp_path / "heatmap.png", title="top genes")
    assert out.exists() and out.stat().st_size > 0


def test_heatmap_needs_two_genes(tmp_path, vst, sample_meta):
    with pytest.raises(ValueError):
        plot_gene_heatmap(vst, ["Gene0", "Missing"], sample_meta, ["condition"], tmp_path / "h.png")
    assert not (tmp_path / "h.png").exists()


def test_heatmap_genes_drops_missing_and_constant(vst):
    vst.loc["Gene3"] = 5.0
    genes = heatmap_genes(vst, ["Gene3", "Gene0", "Missing", "Gene0", "Gene1"])
    assert genes == ["Gene0", "Gene1"]
    assert heatmap_genes(vst, ["Missing"]) == []


def test_heatmap_rejects_constant_genes(tmp_path, vst, sample_meta):
    vst.loc[["Gene3", "Gene4"]] = 5.0
    assert len(heatmap_genes(vst, ["Gene3", "Gene4", "Gene0"])) < 2
    with pytest.raises(ValueError, match="2"):
        plot_gene_heatmap(vst, ["Gene3", "Gene4", "Gene0"], sample_meta, ["condition"], tmp_path / "h.png")


def test_volcano(tmp_path):
    res = pd.DataFrame(
        {"log2FoldChange": [3.0, -2.0, 0.1, 0.5], "padj": [1e-6, 1e-3, 0.8, np.nan]},
        index=["Il1b", "Marco", "Actb", "Gapdh"],
    )
    out = plot_volcano(res, tmp_path / "volcano.png", label_genes=["Il1b", "Nope"])
    assert out.stat().st_size > 0


def test_volcano_on_shrunk_effect(tmp_path):
    res = pd.DataFrame(
        {"log2FoldChange": [3.0, -2.0, 0.1], "lfc_shrunk": [2.2, -0.4, 0.0], "padj": [1e-6, 1e-3, 0.8]},
        index=["Il1b", "Marco", "Actb"],
    )
    out = plot_volcano(res, tmp_path / "volcano_shrunk.png", lfc_col="lfc_shrunk")
    assert out.stat().st_size > 0
    with pytest.raises(KeyError):
        plot_volcano(res.drop(columns="lfc_shrunk"), tmp_path / "bad.png", lfc_col="lfc_shrunk")


def test_enrichment_barplot(tmp_path):
    enr = pd.DataFrame({
        "Term": ["inflammatory response (GO:0006954)", "phagocytosis (GO:0006909)"],
        "Adjusted P-value": [1e-5, 1e-3],
    })
    assert plot_enrichment_barplot(enr, tmp_path / "go.png").exists()
    assert plot_enrichment_barplot(enr.iloc[:0], tmp_path / "none.png") is None


def test_qc_violin(tmp_path, replicate_adata):
    adata = replicate_adata.copy()
    calculate_qc_metrics(adata)
    assert plot_qc_violin(adata, tmp_path / "qc.png", groupby="sample").exists()


def test_ligand_figures(tmp_path):
    activities = pd.DataFrame({
        "test_ligand": ["Tnf", "Il1b"],
        "aupr_corrected": [0.3, 0.1],
        "pearson": [0.2, 0.05],
    })
    assert plot_ligand_activity_heatmap(activities, tmp_path / "act.png").exists()

    links = pd.DataFrame({"ligand": ["Tnf", "Tnf", "Il1b"], "target": ["Cxcl2", "Nfkbia", "Cxcl2"],
                          "weight": [0.5, 0.2, 0.4]})
    assert plot_ligand_target_heatmap(links, tmp_path / "links.png").exists()
    assert plot_ligand_target_heatmap(links.iloc[:0], tmp_path / "none.png") is None

    pairs = pd.DataFrame({
        "ligand": ["Tnf", "Il1b"],
        "receptor": ["Tnfrsf1a", "Il1r1"],
        "max_score": [2.0, 1.0],
        "direction": ["sender_to_receiver", "receiver_to_sender"],
    })
    assert plot_lr_bubble(pairs, tmp_path / "bubble.png").exists()


def test_pseudotime_density(tmp_path, rng):
    obs = pd.DataFrame({
        "condition": ["Control"] * 30 + ["Treated"] * 30,
        "dpt_pseudotime": np.concatenate([rng.uniform(0, 0.6, 30), rng.uniform(0.3, 1, 30)]),
    })
    assert plot_pseudotime_density(obs, tmp_path / "density.png").exists()
