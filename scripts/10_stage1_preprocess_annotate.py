#!/usr/bin/env python3
"""
Stage 1: QC, clustering and annotation of mouse lung macrophages

输入:
  paths.data_dir/<sample>/{matrix.mtx, features.tsv, barcodes.tsv}[.gz]
  paths.reference_h5ad (可选): 带 cell_type 标签、已 log-normalized 的参考数据

输出:
  paths.annotated_h5ad                 # QC + 聚类 + 注释后的对象（layers['counts'] 保留原始计数）
  results/tables/qc_summary.tsv
  results/tables/markers_leiden.tsv
  results/figures/qc_violin.pdf
  results/figures/umap_annotation.pdf
"""

import argparse
import logging
from pathlib import Path

import scanpy as sc

from lungmac import annotation, io, qc
from lungmac.config import load_config
from lungmac.plotting import plot_qc_violin, plot_umap_panels
from lungmac.utils import ensure_dir, set_random_seed, setup_logging

ROOT = Path(__file__).resolve().parents[1]
logger = logging.getLogger("lungmac.stage1")


def main():
    parser = argparse.ArgumentParser(
        description="Stage 1: QC / integration / clustering / label transfer"
    )
    parser.add_argument("--config", default=str(ROOT / "config" / "pipeline.yaml"))
    parser.add_argument("--samples", nargs="+", default=None,
                        help="只读取这些样本目录 (默认: data_dir 下全部)")
    args = parser.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg.paths.log_file)
    set_random_seed(cfg.seed)
    tables = ensure_dir(cfg.paths.tables_dir)
    figures = ensure_dir(cfg.paths.figures_dir)
    ann = cfg.annotation

    if not Path(cfg.paths.data_dir).exists():
        raise SystemExit(f"[ERROR] 数据目录不存在: {cfg.paths.data_dir}")

    # 1. 读取并合并样本
    adata = io.read_samples(cfg.paths.data_dir, samples=args.samples, sample_key=ann.sample_key)

    # 2. QC
    adata, qc_summary = qc.run_qc(adata, cfg.qc)
    io.write_table(qc_summary, tables / "qc_summary.tsv", index=False)
    plot_qc_violin(adata, figures / "qc_violin.pdf", groupby=ann.sample_key)

    # 3. 组别标注
    adata.obs[ann.condition_key] = annotation.assign_condition(
        adata.obs, ann.sample_key, ann.condition_patterns
    )
    logger.info("condition 分布:\n" + adata.obs[ann.condition_key].value_counts().to_string())

    # 4. 归一化 / 细胞周期 / 整合 / 聚类
    annotation.normalize(adata, target_sum=ann.target_sum, n_top_genes=ann.n_top_genes)
    annotation.score_cell_cycle(adata, ann.s_genes, ann.g2m_genes)
    rep = annotation.run_integration(adata, ann.batch_key, n_pcs=ann.n_pcs, seed=cfg.seed)
    annotation.cluster(
        adata,
        use_rep=rep,
        n_neighbors=ann.n_neighbors,
        n_pcs=ann.n_pcs,
        resolution=ann.resolution,
        key_added=ann.cluster_key,
        seed=cfg.seed,
    )

    markers = annotation.find_markers(adata, groupby=ann.cluster_key, n_genes=ann.n_marker_genes)
    io.write_table(markers, tables / f"markers_{ann.cluster_key}.tsv", index=False)

    # 5. 参考数据 label transfer
    umap_colors = [ann.sample_key, ann.condition_key, ann.cluster_key]
    if cfg.paths.reference_h5ad is not None:
        if not Path(cfg.paths.reference_h5ad).exists():
            raise SystemExit(f"[ERROR] reference 不存在: {cfg.paths.reference_h5ad}")
        logger.info(f"读取 reference: {cfg.paths.reference_h5ad}")
        reference = sc.read_h5ad(cfg.paths.reference_h5ad)
        annotation.transfer_labels(
            adata,
            reference,
            label_key=ann.reference_label_key,
            predicted_key=ann.predicted_key,
            n_pcs=ann.n_pcs,
            n_neighbors=ann.n_neighbors,
        )
        umap_colors.append(ann.predicted_key)
    else:
        logger.warning("未配置 reference_h5ad，跳过 label transfer")

    if "phase" in adata.obs.columns:
        umap_colors.append("phase")
    plot_umap_panels(adata, umap_colors, figures / "umap_annotation.pdf",
                     title="Lung macrophages: annotation")

    # 6. 保存
    out_h5ad = Path(cfg.paths.annotated_h5ad)
    out_h5ad.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(out_h5ad)
    logger.info(f"已保存注释后对象: {out_h5ad}")
    logger.info("Stage 1 完成。")


if __name__ == "__main__":
    main()
