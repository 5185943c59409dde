"""
QC metrics and cell / gene filtering.

过滤逻辑（阈值见 QCConfig）:
  - min_genes <= n_genes_by_counts <= max_genes
  - min_counts <= total_counts <= max_counts
  - pct_counts_mt < max_pct_mt
  - 基因至少在 min_cells 个细胞中检测到
"""

import logging
from typing import Dict, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from .config import QCConfig

logger = logging.getLogger(__name__)


def calculate_qc_metrics(adata: ad.AnnData, mt_prefix: str = "mt-") -> ad.AnnData:
    """Add n_genes_by_counts / total_counts / pct_counts_mt to ``adata.obs``."""
    # 线粒体基因（小鼠 mt- 开头，大小写不敏感）
    adata.var["mt"] = adata.var_names.str.upper().str.startswith(mt_prefix.upper())
    logger.info(f"线粒体基因数: {int(adata.var['mt'].sum())}")

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt"],
        percent_top=None,
        log1p=False,
        inplace=True,
    )

    logger.info(f"Median genes/cell: {np.median(adata.obs['n_genes_by_counts']):.0f}")
    logger.info(f"Median counts/cell: {np.median(adata.obs['total_counts']):.0f}")
    logger.info(f"Median MT%: {np.median(adata.obs['pct_counts_mt']):.2f}")
    return adata


def filter_cells(adata: ad.AnnData, cfg: QCConfig) -> Tuple[ad.AnnData, Dict[str, float]]:
    """
    Drop cells outside the QC window.

    Returns the filtered copy (matrix rows and obs rows removed together)
    and a summary dict.
    """
    for col in ["n_genes_by_counts", "total_counts", "pct_counts_mt"]:
        if col not in adata.obs.columns:
            raise KeyError(f"obs 中缺少 QC 指标 {col}，请先运行 calculate_qc_metrics")

    n_cells_before = adata.n_obs
    logger.info("应用过滤阈值:")
    logger.info(f"       {cfg.min_genes} <= n_genes_by_counts <= {cfg.max_genes}")
    logger.info(f"       {cfg.min_counts} <= total_counts <= {cfg.max_counts}")
    logger.info(f"       pct_counts_mt < {cfg.max_pct_mt}")

    obs = adata.obs
    keep_mask = (
        (obs["n_genes_by_counts"] >= cfg.min_genes)
        & (obs["n_genes_by_counts"] <= cfg.max_genes)
        & (obs["total_counts"] >= cfg.min_counts)
        & (obs["total_counts"] <= cfg.max_counts)
        & (obs["pct_counts_mt"] < cfg.max_pct_mt)
    )

    n_keep = int(keep_mask.sum())
    pct = n_keep / n_cells_before * 100 if n_cells_before else 0.0
    logger.info(f"通过过滤的细胞数: {n_keep} (占比 {pct:.2f}%)")

    adata_filtered = adata[keep_mask.values].copy()

    summary = {
        "n_cells_before": n_cells_before,
        "n_cells_after": adata_filtered.n_obs,
        "min_genes_threshold": cfg.min_genes,
        "max_genes_threshold": cfg.max_genes,
        "min_counts_threshold": cfg.min_counts,
        "max_counts_threshold": cfg.max_counts,
        "max_pct_mt_threshold": cfg.max_pct_mt,
    }
    return adata_filtered, summary


def filter_genes(adata: ad.AnnData, min_cells: int = 3) -> ad.AnnData:
    """Keep genes detected (count > 0) in at least ``min_cells`` cells."""
    n_before = adata.n_vars
    keep, _ = sc.pp.filter_genes(adata, min_cells=min_cells, inplace=False)
    adata = adata[:, keep].copy()
    logger.info(f"基因过滤: {n_before} -> {adata.n_vars} (min_cells={min_cells})")
    return adata


def run_qc(adata: ad.AnnData, cfg: QCConfig) -> Tuple[ad.AnnData, pd.DataFrame]:
    """Metrics, cell filter, gene filter; returns the filtered object and a one-row summary."""
    n_genes_before = adata.n_vars
    calculate_qc_metrics(adata, mt_prefix=cfg.mt_prefix)
    adata, summary = filter_cells(adata, cfg)
    adata = filter_genes(adata, min_cells=cfg.min_cells)

    summary.update({
        "n_genes_before": n_genes_before,
        "n_genes_after": adata.n_vars,
        "min_cells_threshold": cfg.min_cells,
    })
    logger.info(f"过滤后 AnnData 维度: n_cells={adata.n_obs}, n_genes={adata.n_vars}")
    return adata, pd.DataFrame({k: [v] for k, v in summary.items()})
