"""
Tests for root selection, diffusion pseudotime and trajectory summaries.
"""

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy.stats import spearmanr

from lungmac.trajectory import (
    compute_pseudotime,
    prepare_graph,
    pseudotime_gene_trends,
    run_paga,
    select_root,
    trajectory_summary,
)


@pytest.fixture
def linear_adata(rng):
    """
    300 cells along a curved path of differentiation; stage bins s0..s3.

    Cells are denser early (t = u ** 1.5). Gene00 / Gene01 rise / fall with t,
    the rest are mixtures of the two arc coordinates.
    """
    n_cells, n_genes = 300, 20
    t = np.sort(rng.uniform(0, 1, n_cells) ** 1.5)
    t[0] = 0.0
    angle = 0.75 * np.pi * t
    arc = np.column_stack([20 * np.cos(angle), 20 * np.sin(angle)])

    X = np.empty((n_cells, n_genes))
    X[:, 0] = 10 * t
    X[:, 1] = -10 * t
    X[:, 2:] = arc @ rng.normal(0, 1, (2, n_genes - 2))
    # 噪声远小于相邻细胞间距，kNN 图沿轨迹连接
    X += rng.normal(0, 0.01, X.shape)

    obs = pd.DataFrame(
        {
            "t": t,
            "stage": pd.Categorical([f"s{min(int(v * 4), 3)}" for v in t]),
        },
        index=[f"cell{i:03d}" for i in range(n_cells)],
    )
    var = pd.DataFrame(index=[f"Gene{j:02d}" for j in range(n_genes)])
    return ad.AnnData(X=X.astype(np.float32), obs=obs, var=var)


class TestSelectRoot:

    def test_first_present_barcode(self, linear_adata):
        iroot = select_root(linear_adata, root_cells=["missing", "cell010", "cell005"])
        assert iroot == 10

    def test_no_root_cell_present(self, linear_adata):
        with pytest.raises(ValueError):
            select_root(linear_adata, root_cells=["missing"])

    def test_root_required(self, linear_adata):
        with pytest.raises(ValueError, match="root_cells"):
            select_root(linear_adata)

    def test_root_cluster_needs_diffmap(self, linear_adata):
        with pytest.raises(KeyError):
            select_root(linear_adata, root_cluster="s0", groupby="stage")

    def test_unknown_root_cluster(self, linear_adata):
        with pytest.raises(ValueError):
            select_root(linear_adata, root_cluster="s9", groupby="stage")

    def test_root_cluster_uses_extreme_dc1(self, linear_adata):
        linear_adata.obsm["X_diffmap"] = np.column_stack([
            np.ones(linear_adata.n_obs),
            np.linspace(1, -1, linear_adata.n_obs),
        ])
        iroot = select_root(linear_adata, root_cluster="s0", groupby="stage")
        members = np.flatnonzero(linear_adata.obs["stage"].to_numpy() == "s0")
        assert iroot == members.max()


def test_summary_orders_groups_by_mean_pseudotime():
    adata = ad.AnnData(
        X=np.zeros((6, 2), dtype=np.float32),
        obs=pd.DataFrame(
            {
                "cluster": ["late", "early", "mid", "early", "late", "mid"],
                "dpt_pseudotime": [0.9, 0.1, 0.5, 0.0, 1.0, 0.4],
            },
            index=[f"c{i}" for i in range(6)],
        ),
    )
    summary = trajectory_summary(adata, "cluster")
    assert list(summary.index) == ["early", "mid", "late"]
    assert summary.loc["early", "n_cells"] == 2
    assert summary.loc["late", "pseudotime_mean"] == pytest.approx(0.95)


def test_summary_requires_pseudotime(linear_adata):
    with pytest.raises(KeyError):
        trajectory_summary(linear_adata, "stage")


@pytest.mark.slow
class TestPseudotime:

    @pytest.fixture
    def fitted(self, linear_adata):
        prepare_graph(linear_adata, n_pcs=5, n_neighbors=10, seed=0)
        paga = run_paga(linear_adata, "stage")
        compute_pseudotime(linear_adata, root_cells=["cell000"], n_dcs=10)
        return linear_adata, paga

    def test_pseudotime_follows_latent_time(self, fitted):
        adata, _ = fitted
        pt = adata.obs["dpt_pseudotime"].to_numpy()
        assert np.isfinite(pt).all()
        assert pt[0] == pytest.approx(0.0)
        rho, _ = spearmanr(pt, adata.obs["t"])
        assert rho > 0.8

    def test_paga_connects_neighbouring_stages(self, fitted):
        _, paga = fitted
        assert list(paga.index) == ["s0", "s1", "s2", "s3"]
        assert paga.loc["s0", "s1"] > paga.loc["s0", "s3"]

    def test_stage_order(self, fitted):
        adata, _ = fitted
        summary = trajectory_summary(adata, "stage")
        assert list(summary.index) == ["s0", "s1", "s2", "s3"]

    def test_gene_trends(self, fitted):
        adata, _ = fitted
        trends = pseudotime_gene_trends(adata, ["Gene00", "Gene01", "NotAGene"])
        assert list(trends["gene"]) == ["Gene00", "Gene01"]
        assert trends.iloc[0]["spearman_rho"] > 0.8
        assert trends.iloc[1]["spearman_rho"] < -0.8
