"""
Annotation
==========

Normalization, cell-cycle scoring, batch integration (Harmony), Leiden
clustering, marker detection, reference-based label transfer (ingest) and
condition labelling from sample names.
"""

import logging
import re
from typing import Dict, List, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

logger = logging.getLogger(__name__)

# Tirosh et al. 2016 cell-cycle genes, mouse capitalisation
S_GENES = [
    "Mcm5", "Pcna", "Tyms", "Fen1", "Mcm2", "Mcm4", "Rrm1", "Ung", "Gins2",
    "Mcm6", "Cdca7", "Dtl", "Prim1", "Uhrf1", "Cenpu", "Hells", "Rfc2",
    "Rpa2", "Nasp", "Rad51ap1", "Gmnn", "Wdr76", "Slbp", "Ccne2", "Ubr7",
    "Pold3", "Msh2", "Atad2", "Rad51", "Rrm2", "Cdc45", "Cdc6", "Exo1",
    "Tipin", "Dscc1", "Blm", "Casp8ap2", "Usp1", "Clspn", "Pola1", "Chaf1b",
    "Brip1", "E2f8",
]
G2M_GENES = [
    "Hmgb2", "Cdk1", "Nusap1", "Ube2c", "Birc5", "Tpx2", "Top2a", "Ndc80",
    "Cks2", "Nuf2", "Cks1b", "Mki67", "Tmpo", "Cenpf", "Tacc3", "Pimreg",
    "Smc4", "Ccnb2", "Ckap2l", "Ckap2", "Aurkb", "Bub1", "Kif11", "Anp32e",
    "Tubb4b", "Gtse1", "Kif20b", "Hjurp", "Cdca3", "Jpt1", "Cdc20", "Ttk",
    "Cdc25c", "Kif2c", "Rangap1", "Ncapd2", "Dlgap5", "Cdca2", "Cdca8",
    "Ect2", "Kif23", "Hmmr", "Aurka", "Psrc1", "Anln", "Lbr", "Ckap5",
    "Cenpe", "Ctcf", "Nek2", "G2e3", "Gas2l3", "Cbx5", "Cenpa",
]


def normalize(adata: ad.AnnData, target_sum: float = 1e4, n_top_genes: int = 3000) -> ad.AnnData:
    """
    Keep raw counts in ``layers["counts"]``, then total-count normalize,
    log1p and flag highly variable genes.
    """
    adata.layers["counts"] = adata.X.copy()

    logger.info(f"归一化 total-counts ({target_sum:g}) ...")
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)

    n_top = min(n_top_genes, adata.n_vars)
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top)
    logger.info(f"HVG 数量: {int(adata.var['highly_variable'].sum())}")
    return adata


def score_cell_cycle(
    adata: ad.AnnData,
    s_genes: Optional[List[str]] = None,
    g2m_genes: Optional[List[str]] = None,
) -> bool:
    """
    Add S_score / G2M_score / phase to ``adata.obs``.

    Returns False (and leaves obs untouched) when either gene list has no
    gene present in the data.
    """
    s_genes = [g for g in (s_genes or S_GENES) if g in adata.var_names]
    g2m_genes = [g for g in (g2m_genes or G2M_GENES) if g in adata.var_names]
    logger.info(f"细胞周期基因: S={len(s_genes)}, G2M={len(g2m_genes)}")

    if not s_genes or not g2m_genes:
        logger.warning("细胞周期基因不足，跳过 cell-cycle 打分")
        return False

    sc.tl.score_genes_cell_cycle(adata, s_genes=s_genes, g2m_genes=g2m_genes)
    logger.info("phase 分布:\n" + adata.obs["phase"].value_counts().to_string())
    return True


def run_integration(
    adata: ad.AnnData,
    batch_key: Optional[str] = None,
    n_pcs: int = 30,
    seed: int = 0,
) -> str:
    """
    PCA, then Harmony on ``batch_key``.

    Returns the obsm key downstream neighbour graphs should use.
    """
    n_comps = min(n_pcs, adata.n_obs - 1, adata.n_vars - 1)
    logger.info(f"进行 PCA (n_comps={n_comps}) ...")
    sc.pp.pca(adata, n_comps=n_comps, svd_solver="arpack", random_state=seed)

    if batch_key is None:
        return "X_pca"
    if batch_key not in adata.obs.columns:
        raise KeyError(f"batch key '{batch_key}' not in obs")
    if adata.obs[batch_key].nunique() < 2:
        logger.warning(f"{batch_key} 只有一个批次，跳过 Harmony")
        return "X_pca"

    logger.info(f"Harmony 整合 (batch_key={batch_key}) ...")
    sc.external.pp.harmony_integrate(
        adata,
        key=batch_key,
        basis="X_pca",
        adjusted_basis="X_pca_harmony",
        random_state=seed,
    )
    return "X_pca_harmony"


def cluster(
    adata: ad.AnnData,
    use_rep: str = "X_pca",
    n_neighbors: int = 15,
    n_pcs: Optional[int] = None,
    resolution: float = 0.5,
    key_added: str = "leiden",
    seed: int = 0,
) -> ad.AnnData:
    """邻接图 + UMAP + Leiden 聚类"""
    n_pcs = min(n_pcs or adata.obsm[use_rep].shape[1], adata.obsm[use_rep].shape[1])
    logger.info(f"计算邻接图 (use_rep={use_rep}, n_neighbors={n_neighbors}, n_pcs={n_pcs}) ...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, use_rep=use_rep, random_state=seed)

    sc.tl.umap(adata, random_state=seed)

    logger.info(f"Leiden 聚类 (resolution={resolution}) ...")
    sc.tl.leiden(adata, resolution=resolution, key_added=key_added, random_state=seed)
    logger.info(f"cluster 数: {adata.obs[key_added].nunique()}")
    return adata


def find_markers(adata: ad.AnnData, groupby: str = "leiden", n_genes: int = 50) -> pd.DataFrame:
    """
    Wilcoxon marker genes per group.

    Returns a tidy table with columns group, names, scores, logfoldchanges,
    pvals, pvals_adj (top ``n_genes`` per group).
    """
    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method="wilcoxon",
        corr_method="benjamini-hochberg",
        key_added=f"markers_{groupby}",
    )
    markers = sc.get.rank_genes_groups_df(adata, group=None, key=f"markers_{groupby}")
    if "group" not in markers.columns:
        # 只有一个 group 时 scanpy 不返回 group 列
        markers.insert(0, "group", adata.obs[groupby].astype(str).unique()[0])
    markers = markers.groupby("group", observed=True, sort=False).head(n_genes)
    return markers.reset_index(drop=True)


def transfer_labels(
    adata: ad.AnnData,
    reference: ad.AnnData,
    label_key: str = "cell_type",
    predicted_key: str = "predicted_celltype",
    n_pcs: int = 30,
    n_neighbors: int = 15,
) -> ad.AnnData:
    """
    Project ``adata`` onto ``reference`` with ``scanpy.tl.ingest`` and copy
    the reference labels into ``adata.obs[predicted_key]``.

    Both objects must be log-normalized; only shared genes are used.
    """
    if label_key not in reference.obs.columns:
        raise KeyError(f"reference 中缺少标签列: {label_key}")

    shared = adata.var_names.intersection(reference.var_names)
    logger.info(f"共享基因数: {len(shared)}")
    if len(shared) == 0:
        raise ValueError("query 与 reference 没有共享基因，无法进行 label transfer")

    ref = reference[:, shared].copy()
    query = adata[:, shared].copy()

    n_comps = min(n_pcs, ref.n_obs - 1, ref.n_vars - 1)
    sc.pp.pca(ref, n_comps=n_comps, svd_solver="arpack")
    sc.pp.neighbors(ref, n_neighbors=min(n_neighbors, ref.n_obs - 1), n_pcs=n_comps)

    sc.tl.ingest(query, ref, obs=label_key, embedding_method="pca")

    adata.obs[predicted_key] = query.obs[label_key].astype(str).values
    adata.obs[predicted_key] = adata.obs[predicted_key].astype("category")
    logger.info("预测细胞类型分布:\n" + adata.obs[predicted_key].value_counts().to_string())
    return adata


def assign_condition(
    obs: pd.DataFrame,
    sample_key: str,
    patterns: Dict[str, str],
) -> pd.Series:
    """
    Map each sample name to a condition label.

    ``patterns`` maps a regular expression (case-insensitive, searched in the
    sample name) to a label; the first matching pattern wins. A sample that
    matches no pattern is an error.
    """
    if sample_key not in obs.columns:
        raise KeyError(f"obs 中缺少样本列: {sample_key}")

    compiled = [(re.compile(p, re.IGNORECASE), label) for p, label in patterns.items()]
    mapping = {}
    unmatched = []
    for sample in pd.unique(obs[sample_key].astype(str)):
        label = next((lab for rx, lab in compiled if rx.search(sample)), None)
        if label is None:
            unmatched.append(sample)
        mapping[sample] = label

    if unmatched:
        raise ValueError(f"样本无法匹配任何 condition 规则: {unmatched}")

    levels = list(dict.fromkeys(patterns.values()))
    condition = obs[sample_key].astype(str).map(mapping)
    return pd.Series(pd.Categorical(condition, categories=levels), index=obs.index)
