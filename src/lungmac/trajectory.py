"""
Pseudotime: PAGA + diffusion map + DPT.

The root is configuration, never an interactive choice: either an explicit
list of root barcodes (first one present in the data is used) or a root
cluster (its cell with the smallest first diffusion component).
"""

import logging
from typing import List, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from scipy.stats import spearmanr

logger = logging.getLogger(__name__)


def prepare_graph(
    adata: ad.AnnData,
    n_pcs: int = 30,
    n_neighbors: int = 15,
    use_rep: Optional[str] = None,
    seed: int = 0,
) -> ad.AnnData:
    """确保有 PCA / neighbors / UMAP"""
    if use_rep is None and "X_pca" not in adata.obsm:
        n_comps = min(n_pcs, adata.n_obs - 1, adata.n_vars - 1)
        logger.info(f"计算PCA (n_comps={n_comps}) ...")
        sc.pp.pca(adata, n_comps=n_comps, svd_solver="arpack", random_state=seed)

    if "neighbors" not in adata.uns:
        rep = use_rep or "X_pca"
        n_use = min(n_pcs, adata.obsm[rep].shape[1])
        logger.info(f"计算neighbors (use_rep={rep}) ...")
        sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_use, use_rep=rep, random_state=seed)

    if "X_umap" not in adata.obsm:
        sc.tl.umap(adata, random_state=seed)
    return adata


def run_paga(adata: ad.AnnData, groups: str) -> pd.DataFrame:
    """PAGA connectivities between ``groups`` as a DataFrame."""
    if groups not in adata.obs.columns:
        raise KeyError(f"obs 中缺少列: {groups}")
    if not isinstance(adata.obs[groups].dtype, pd.CategoricalDtype):
        adata.obs[groups] = adata.obs[groups].astype(str).astype("category")

    sc.tl.paga(adata, groups=groups)
    connectivities = adata.uns["paga"]["connectivities"]
    if sparse.issparse(connectivities):
        connectivities = connectivities.toarray()
    clusters = adata.obs[groups].cat.categories
    logger.info("PAGA分析完成")
    return pd.DataFrame(connectivities, index=clusters, columns=clusters)


def select_root(
    adata: ad.AnnData,
    root_cells: Optional[Sequence[str]] = None,
    root_cluster: Optional[str] = None,
    groupby: str = "leiden",
) -> int:
    """Index of the root cell; needs ``X_diffmap`` when choosing by cluster."""
    if root_cells:
        present = [c for c in root_cells if c in adata.obs_names]
        if not present:
            raise ValueError(f"root_cells 均不在数据中: {list(root_cells)[:5]} ...")
        if len(present) < len(root_cells):
            logger.warning(f"{len(root_cells) - len(present)} 个 root cell 不在数据中")
        iroot = int(adata.obs_names.get_loc(present[0]))
        logger.info(f"root cell: {present[0]}")
        return iroot

    if root_cluster is not None:
        if groupby not in adata.obs.columns:
            raise KeyError(f"obs 中缺少列: {groupby}")
        members = np.flatnonzero(adata.obs[groupby].astype(str).to_numpy() == str(root_cluster))
        if members.size == 0:
            raise ValueError(f"未找到 root cluster {root_cluster} 的细胞")
        if "X_diffmap" not in adata.obsm:
            raise KeyError("选择 root cluster 需要先计算 diffusion map")
        dc1 = adata.obsm["X_diffmap"][members, 1]
        iroot = int(members[np.argmin(dc1)])
        logger.info(f"root cluster {root_cluster}: root cell {adata.obs_names[iroot]}")
        return iroot

    raise ValueError("需要指定 root_cells 或 root_cluster")


def compute_pseudotime(
    adata: ad.AnnData,
    root_cells: Optional[Sequence[str]] = None,
    root_cluster: Optional[str] = None,
    groupby: str = "leiden",
    n_dcs: int = 10,
) -> ad.AnnData:
    """
    Diffusion map + diffusion pseudotime into ``obs["dpt_pseudotime"]``.

    Cells in components disconnected from the root get infinite DPT; those
    are capped to the largest finite value.
    """
    n_comps = max(2, min(n_dcs + 1, adata.n_obs - 2))
    sc.tl.diffmap(adata, n_comps=n_comps)

    adata.uns["iroot"] = select_root(adata, root_cells, root_cluster, groupby)
    sc.tl.dpt(adata, n_dcs=min(n_dcs, n_comps))

    pt = adata.obs["dpt_pseudotime"]
    inf_mask = ~np.isfinite(pt)
    if inf_mask.any():
        logger.warning(f"{int(inf_mask.sum())} 个细胞伪时间为 inf (disconnected components)")
        adata.obs.loc[inf_mask, "dpt_pseudotime"] = pt[~inf_mask].max()

    logger.info(
        f"伪时间范围: [{adata.obs['dpt_pseudotime'].min():.4f}, "
        f"{adata.obs['dpt_pseudotime'].max():.4f}]"
    )
    return adata


def trajectory_summary(adata: ad.AnnData, groupby: str) -> pd.DataFrame:
    """Per-group cell count and pseudotime mean / std, earliest group first."""
    if "dpt_pseudotime" not in adata.obs.columns:
        raise KeyError("obs 中没有 dpt_pseudotime，请先运行 compute_pseudotime")
    grouped = adata.obs.groupby(groupby, observed=True)["dpt_pseudotime"]
    summary = pd.DataFrame({
        "n_cells": grouped.size(),
        "pseudotime_mean": grouped.mean(),
        "pseudotime_std": grouped.std(),
    })
    summary.index = summary.index.astype(str)
    summary.index.name = groupby
    return summary.sort_values("pseudotime_mean", kind="mergesort")


def pseudotime_gene_trends(adata: ad.AnnData, genes: Optional[List[str]] = None) -> pd.DataFrame:
    """Spearman correlation of each gene's expression with pseudotime."""
    if "dpt_pseudotime" not in adata.obs.columns:
        raise KeyError("obs 中没有 dpt_pseudotime，请先运行 compute_pseudotime")
    genes = [g for g in (genes or adata.var_names.tolist()) if g in adata.var_names]
    pt = adata.obs["dpt_pseudotime"].to_numpy()

    rows = []
    for gene in genes:
        x = adata[:, gene].X
        x = x.toarray().ravel() if sparse.issparse(x) else np.asarray(x).ravel()
        if np.all(x == x[0]):
            continue
        rho, pval = spearmanr(x, pt)
        rows.append({"gene": gene, "spearman_rho": rho, "pvalue": pval})

    df = pd.DataFrame(rows, columns=["gene", "spearman_rho", "pvalue"])
    return df.sort_values("spearman_rho", ascending=False, kind="mergesort").reset_index(drop=True)
