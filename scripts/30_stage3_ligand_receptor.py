#!/usr/bin/env python3
"""
Stage 3: ligand-receptor / ligand activity analysis (sender -> macrophage receiver)

输入:
  paths.annotated_h5ad              # log-normalized X, obs 含 ligand.groupby / ligand.condition_key
  paths.lr_network                  # 配体-受体先验网络: 列 from (ligand), to (receptor)
  paths.ligand_target_matrix        # 先验 ligand-target 矩阵: 行 target, 列 ligand

输出:
  results/tables/ligand_activities.tsv        # 全部 potential ligands 的 activity
  results/tables/top_ligands.tsv              # top N differentially-active ligands
  results/tables/ligand_target_links.tsv
  results/tables/lr_pair_scores.tsv
  results/figures/ligand_activity_heatmap.pdf
  results/figures/ligand_target_heatmap.pdf
  results/figures/lr_bubble.pdf
"""

import argparse
import logging
from pathlib import Path

import scanpy as sc

from lungmac import io, ligand
from lungmac.config import load_config
from lungmac.plotting import (
    plot_ligand_activity_heatmap,
    plot_ligand_target_heatmap,
    plot_lr_bubble,
)
from lungmac.utils import ensure_dir, set_random_seed, setup_logging

ROOT = Path(__file__).resolve().parents[1]
logger = logging.getLogger("lungmac.stage3")


def main():
    parser = argparse.ArgumentParser(description="Stage 3: ligand activity analysis")
    parser.add_argument("--config", default=str(ROOT / "config" / "pipeline.yaml"))
    args = parser.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg.paths.log_file)
    set_random_seed(cfg.seed)
    tables = ensure_dir(cfg.paths.tables_dir)
    figures = ensure_dir(cfg.paths.figures_dir)
    lc = cfg.ligand

    if not lc.senders or lc.receiver is None:
        raise SystemExit("[ERROR] 需要在配置中指定 ligand.senders 与 ligand.receiver")
    if lc.condition_test is None or lc.condition_reference is None:
        raise SystemExit("[ERROR] 需要在配置中指定 ligand.condition_test / condition_reference")
    for p in [cfg.paths.annotated_h5ad, cfg.paths.lr_network, cfg.paths.ligand_target_matrix]:
        if p is None or not Path(p).exists():
            raise SystemExit(f"[ERROR] 输入文件缺失: {p}")

    logger.info(f"读取: {cfg.paths.annotated_h5ad}")
    adata = sc.read_h5ad(cfg.paths.annotated_h5ad)
    for col in [lc.groupby, lc.condition_key]:
        if col not in adata.obs.columns:
            raise SystemExit(f"[ERROR] obs 中缺少必要列: {col}")

    lr_network = io.read_prior_table(cfg.paths.lr_network, index_col=None)
    ligand_target = io.read_prior_table(cfg.paths.ligand_target_matrix, index_col=0)
    logger.info(f"LR network: {len(lr_network)} pairs; ligand-target: {ligand_target.shape}")

    # 1. 表达基因与候选配体
    sender_expr = ligand.expressed_genes(adata, lc.groupby, lc.senders, lc.min_pct_expressed)
    receiver_expr = ligand.expressed_genes(adata, lc.groupby, [lc.receiver], lc.min_pct_expressed)
    background = [g for g in receiver_expr if g in ligand_target.index]
    candidates = ligand.potential_ligands(lr_network, sender_expr, receiver_expr)

    # 2. receiver 中的目标基因集
    geneset = ligand.receiver_geneset(
        adata, lc.groupby, lc.receiver, lc.condition_key,
        test=lc.condition_test, reference=lc.condition_reference,
        padj_cutoff=lc.geneset_padj_cutoff, lfc_cutoff=lc.geneset_lfc_cutoff,
        background=background,
    )

    # 3. ligand activity
    activities = ligand.predict_ligand_activities(geneset, background, ligand_target, candidates)
    io.write_table(activities, tables / "ligand_activities.tsv", index=False)
    top = activities.head(lc.top_n_ligands)
    io.write_table(top, tables / "top_ligands.tsv", index=False)

    links = ligand.top_ligand_targets(ligand_target, top["test_ligand"], geneset, lc.n_targets)
    io.write_table(links, tables / "ligand_target_links.tsv", index=False)

    # 4. 配体-受体表达打分
    pairs = ligand.score_ligand_receptor_pairs(
        adata, lr_network, lc.groupby, sender=lc.senders, receiver=[lc.receiver]
    )
    io.write_table(pairs, tables / "lr_pair_scores.tsv", index=False)

    plot_ligand_activity_heatmap(activities, figures / "ligand_activity_heatmap.pdf", lc.top_n_ligands)
    plot_ligand_target_heatmap(links, figures / "ligand_target_heatmap.pdf")
    if len(pairs):
        plot_lr_bubble(pairs, figures / "lr_bubble.pdf")

    logger.info("Top ligands:\n" + top.to_string(index=False))
    logger.info("Stage 3 完成。")


if __name__ == "__main__":
    main()
