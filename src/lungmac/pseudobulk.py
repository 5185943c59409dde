"""
Pseudobulk aggregation and low-count gene filtering.

输出:
  - counts: genes x replicates（每个 replicate 一列，列 = 该 replicate 所有细胞计数之和）
  - sample metadata: 每个 replicate 一行，包含设计变量与 n_cells
"""

import logging
from typing import List, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

logger = logging.getLogger(__name__)


def _count_matrix(adata: ad.AnnData, layer: Optional[str] = None):
    """计数矩阵来源: 指定 layer > layers['counts'] > raw.X > X"""
    if layer is not None:
        if layer not in adata.layers:
            raise KeyError(f"layer '{layer}' 不存在")
        return adata.layers[layer], adata.var_names
    if "counts" in adata.layers:
        return adata.layers["counts"], adata.var_names
    if adata.raw is not None:
        logger.info("使用 raw.X 作为计数矩阵进行 pseudo-bulk。")
        return adata.raw.X, adata.raw.var_names
    logger.warning("未检测到 counts layer / .raw，使用当前 X 作为 counts (可能是归一化后的)。")
    return adata.X, adata.var_names


def subset_cells(adata: ad.AnnData, key: str, values: Optional[Sequence[str]]) -> ad.AnnData:
    """Keep cells whose ``obs[key]`` is in ``values`` (all cells when values is None)."""
    if not values:
        return adata
    if key not in adata.obs.columns:
        raise KeyError(f"obs 中缺少列: {key}")
    mask = adata.obs[key].astype(str).isin([str(v) for v in values])
    n = int(mask.sum())
    logger.info(f"{key} in {list(values)}: {n} / {adata.n_obs} cells")
    if n == 0:
        raise ValueError(f"没有细胞满足 {key} in {list(values)}")
    return adata[mask.values].copy()


def aggregate_counts(
    adata: ad.AnnData,
    replicate_key: str,
    layer: Optional[str] = None,
    min_cells: int = 1,
) -> pd.DataFrame:
    """
    Sum counts of all cells sharing a replicate label.

    Parameters
    ----------
    adata : AnnData
        cells x genes, raw counts in ``layer`` / ``layers["counts"]`` /
        ``.raw`` / ``.X`` (first available).
    replicate_key : str
        obs column with the replicate identifier; no missing values allowed.
    min_cells : int, default 1
        Replicates with fewer cells are skipped with a warning.

    Returns
    -------
    pd.DataFrame
        genes x replicates; columns in first-occurrence order of the labels.
        Unused categorical levels never produce a column.
    """
    if replicate_key not in adata.obs.columns:
        raise ValueError(f"obs 中缺少 replicate 列: {replicate_key}")

    labels = adata.obs[replicate_key]
    if labels.isna().any():
        n_missing = int(labels.isna().sum())
        raise ValueError(f"{replicate_key} 有 {n_missing} 个细胞缺失 replicate 标签")

    labels = labels.astype(str).to_numpy()
    X, genes = _count_matrix(adata, layer)

    cols = []
    cols_arrays = []
    for label in pd.unique(labels):
        idx = np.flatnonzero(labels == label)
        if idx.size < min_cells:
            logger.warning(f"跳过 {label}: 细胞数 {idx.size} < min_cells={min_cells}")
            continue

        sub = X[idx, :]
        if sparse.issparse(sub):
            summed = np.asarray(sub.sum(axis=0)).ravel()
        else:
            summed = np.asarray(sub).sum(axis=0)

        cols.append(label)
        cols_arrays.append(summed)
        logger.debug(f"pseudo-bulk: label={label}, n_cells={idx.size}")

    if not cols:
        raise ValueError("没有任何 replicate 满足 min_cells 要求")

    mat = np.vstack(cols_arrays).T  # n_genes x n_samples
    counts = pd.DataFrame(mat, index=pd.Index(genes, name="gene"), columns=cols)
    logger.info(f"pseudo-bulk 矩阵: {counts.shape[0]} genes x {counts.shape[1]} samples")
    return counts


def build_sample_metadata(
    obs: pd.DataFrame,
    replicate_key: str,
    design_keys: List[str],
) -> pd.DataFrame:
    """
    One row per replicate with the design columns and ``n_cells``.

    Each design column must take a single value within a replicate.
    """
    missing = [c for c in [replicate_key, *design_keys] if c not in obs.columns]
    if missing:
        raise ValueError(f"obs 中缺少必要列: {missing}")

    df = obs[[replicate_key, *design_keys]].copy()
    df[replicate_key] = df[replicate_key].astype(str)

    n_levels = df.groupby(replicate_key, sort=False, observed=True)[design_keys].nunique(dropna=False)
    bad = n_levels[(n_levels > 1).any(axis=1)]
    if not bad.empty:
        raise ValueError(
            f"设计变量在 replicate 内不唯一: {bad.index.tolist()}"
        )

    meta = df.groupby(replicate_key, sort=False, observed=True)[design_keys].first()
    meta["n_cells"] = df.groupby(replicate_key, sort=False, observed=True).size()
    for key in design_keys:
        if isinstance(obs[key].dtype, pd.CategoricalDtype):
            used = [c for c in obs[key].cat.categories if c in set(meta[key])]
            meta[key] = pd.Categorical(meta[key], categories=used)
    meta.index.name = None
    return meta


def low_count_mask(counts: pd.DataFrame, min_count: int = 10, min_samples: int = 2) -> pd.Series:
    """True for genes with >= min_samples samples at count >= min_count."""
    return (counts >= min_count).sum(axis=1) >= min_samples


def filter_low_counts(counts: pd.DataFrame, min_count: int = 10, min_samples: int = 2) -> pd.DataFrame:
    """
    Drop negligibly expressed genes before model fitting.

    A gene is kept when at least ``min_samples`` samples have a pseudobulk
    count >= ``min_count``. Pure row subset, so applying it twice changes
    nothing.
    """
    keep = low_count_mask(counts, min_count, min_samples)
    logger.info(
        f"低表达基因过滤: {counts.shape[0]} -> {int(keep.sum())} "
        f"(>= {min_samples} samples with count >= {min_count})"
    )
    return counts.loc[keep]


def apply_gene_filter(annotation: pd.DataFrame, counts: pd.DataFrame) -> pd.DataFrame:
    """Restrict a gene-indexed annotation to the genes kept in ``counts``."""
    return annotation.loc[annotation.index.intersection(counts.index, sort=False)]
