#!/usr/bin/env python3
"""
Stage 4: pseudotime trajectory (PAGA + diffusion pseudotime)

输入:
  paths.annotated_h5ad
    - 需要包含: trajectory.groupby 列; root 由配置给出
      (trajectory.root_cells 或 trajectory.root_cluster，不做交互式选择)

输出:
  results/tables/trajectory_paga.tsv            # PAGA 连接性
  results/tables/pseudotime.tsv                 # 每个细胞的伪时间
  results/tables/trajectory_summary.tsv         # 每个 cluster 的伪时间均值
  results/tables/pseudotime_gene_trends.tsv
  results/figures/paga_graph.pdf
  results/figures/pseudotime_umap.pdf
  results/figures/pseudotime_density.pdf
  data/processed/*.trajectory.h5ad
"""

import argparse
import logging
from pathlib import Path

import scanpy as sc

from lungmac import io, pseudobulk, trajectory
from lungmac.config import load_config
from lungmac.plotting import plot_paga_graph, plot_pseudotime_density, plot_umap_panels
from lungmac.utils import ensure_dir, set_random_seed, setup_logging

ROOT = Path(__file__).resolve().parents[1]
logger = logging.getLogger("lungmac.stage4")


def main():
    parser = argparse.ArgumentParser(description="Stage 4: pseudotime trajectory")
    parser.add_argument("--config", default=str(ROOT / "config" / "pipeline.yaml"))
    parser.add_argument("--root-cells", nargs="+", default=None, help="覆盖配置中的 root_cells")
    parser.add_argument("--root-cluster", default=None, help="覆盖配置中的 root_cluster")
    args = parser.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg.paths.log_file)
    set_random_seed(cfg.seed)
    tables = ensure_dir(cfg.paths.tables_dir)
    figures = ensure_dir(cfg.paths.figures_dir)
    tc = cfg.trajectory
    if args.root_cells:
        tc.root_cells = args.root_cells
    if args.root_cluster:
        tc.root_cluster = args.root_cluster
    if not tc.root_cells and tc.root_cluster is None:
        raise SystemExit("[ERROR] 需要指定 trajectory.root_cells 或 trajectory.root_cluster")

    in_h5ad = Path(cfg.paths.annotated_h5ad)
    if not in_h5ad.exists():
        raise SystemExit(f"[ERROR] 未找到注释后对象: {in_h5ad}，请先运行 Stage 1")
    adata = sc.read_h5ad(in_h5ad)
    logger.info(f"初始维度: {adata.n_obs} cells, {adata.n_vars} genes")

    adata = pseudobulk.subset_cells(adata, cfg.pseudobulk.celltype_key, tc.celltypes)
    if tc.celltypes:
        # 子集后重新构图
        adata.uns.pop("neighbors", None)
        adata.obsm.pop("X_umap", None)
    if tc.groupby not in adata.obs.columns:
        raise SystemExit(f"[ERROR] obs 中缺少必要列: {tc.groupby}")

    use_rep = "X_pca_harmony" if "X_pca_harmony" in adata.obsm else None
    trajectory.prepare_graph(adata, n_pcs=tc.n_pcs, n_neighbors=tc.n_neighbors,
                             use_rep=use_rep, seed=cfg.seed)

    paga = trajectory.run_paga(adata, tc.groupby)
    io.write_table(paga, tables / "trajectory_paga.tsv")

    trajectory.compute_pseudotime(adata, tc.root_cells, tc.root_cluster, tc.groupby, tc.n_dcs)

    condition_key = cfg.annotation.condition_key
    keep_cols = [c for c in [tc.groupby, condition_key, "dpt_pseudotime"] if c in adata.obs.columns]
    io.write_table(adata.obs[keep_cols], tables / "pseudotime.tsv")
    summary = trajectory.trajectory_summary(adata, tc.groupby)
    io.write_table(summary, tables / "trajectory_summary.tsv")
    logger.info("cluster 伪时间顺序:\n" + summary.to_string())

    trends = trajectory.pseudotime_gene_trends(adata, tc.trend_genes)
    io.write_table(trends, tables / "pseudotime_gene_trends.tsv", index=False)

    plot_paga_graph(adata, figures / "paga_graph.pdf")
    plot_umap_panels(adata, [tc.groupby, "dpt_pseudotime"], figures / "pseudotime_umap.pdf",
                     title="Diffusion pseudotime")
    if condition_key in adata.obs.columns:
        plot_pseudotime_density(adata.obs, figures / "pseudotime_density.pdf", groupby=condition_key)

    out_h5ad = in_h5ad.with_name(in_h5ad.name.replace(".h5ad", ".trajectory.h5ad"))
    adata.write_h5ad(out_h5ad)
    logger.info(f"已保存带轨迹分析结果的对象: {out_h5ad}")
    logger.info("Stage 4 完成。")


if __name__ == "__main__":
    main()
