#!/usr/bin/env python3
"""
Stage 2: pseudobulk differential expression + GO (biological process) enrichment

输入:
  paths.annotated_h5ad
    - obs 至少包含: replicate 列 (pseudobulk.replicate_key), de.factor,
      以及 pseudobulk.celltype_key（若指定 --celltypes）
  paths.gene_sets: GMT 文件或 Enrichr 库名（默认 enrichment.library）

输出:
  results/tables/pseudobulk_counts.tsv          # genes x replicates
  results/tables/pseudobulk_metadata.tsv
  results/tables/pseudobulk_genes.tsv           # 过滤后基因的注释 (adata.var)
  results/tables/de_{contrast}.tsv              # 每个 contrast 的全部基因结果
  results/tables/de_{contrast}.significant.tsv
  results/tables/go_bp_{contrast}.tsv
  results/tables/vst_counts.tsv
  results/figures/volcano_{contrast}.pdf
  results/figures/go_bp_{contrast}_barplot.pdf
  results/figures/go_bp_{contrast}_heatmap.pdf  # top-N term 基因的 VST 热图
"""

import argparse
import logging
from pathlib import Path

import scanpy as sc

from lungmac import de, enrichment, io, pseudobulk
from lungmac.config import load_config
from lungmac.plotting import (
    heatmap_genes,
    plot_enrichment_barplot,
    plot_gene_heatmap,
    plot_volcano,
)
from lungmac.utils import ensure_dir, set_random_seed, setup_logging

ROOT = Path(__file__).resolve().parents[1]
logger = logging.getLogger("lungmac.stage2")


def main():
    parser = argparse.ArgumentParser(
        description="Stage 2: pseudobulk DE (pyDESeq2) + GO enrichment (gseapy)"
    )
    parser.add_argument("--config", default=str(ROOT / "config" / "pipeline.yaml"))
    parser.add_argument("--celltypes", nargs="+", default=None,
                        help="只对这些细胞类型做 pseudobulk (覆盖配置)")
    parser.add_argument("--contrast", nargs=2, action="append", metavar=("TEST", "REFERENCE"),
                        default=None, help="可重复; 覆盖配置中的 contrasts")
    args = parser.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg.paths.log_file)
    set_random_seed(cfg.seed)
    tables = ensure_dir(cfg.paths.tables_dir)
    figures = ensure_dir(cfg.paths.figures_dir)
    pb_cfg, de_cfg, enr_cfg = cfg.pseudobulk, cfg.de, cfg.enrichment
    if args.celltypes:
        pb_cfg.celltypes = args.celltypes
    if args.contrast:
        de_cfg.contrasts = [list(c) for c in args.contrast]

    in_h5ad = Path(cfg.paths.annotated_h5ad)
    if not in_h5ad.exists():
        raise SystemExit(f"[ERROR] 未找到注释后对象: {in_h5ad}，请先运行 Stage 1")
    logger.info(f"读取: {in_h5ad}")
    adata = sc.read_h5ad(in_h5ad)
    logger.info(f"n_cells={adata.n_obs}, n_genes={adata.n_vars}")

    for col in [pb_cfg.replicate_key, de_cfg.factor]:
        if col not in adata.obs.columns:
            raise SystemExit(f"[ERROR] obs 中缺少必要列: {col}")
    # 1. pseudobulk
    adata = pseudobulk.subset_cells(adata, pb_cfg.celltype_key, pb_cfg.celltypes)
    counts = pseudobulk.aggregate_counts(adata, pb_cfg.replicate_key, min_cells=pb_cfg.min_cells)
    sample_meta = pseudobulk.build_sample_metadata(adata.obs, pb_cfg.replicate_key, [de_cfg.factor])
    # min_cells 可能跳过部分 replicate
    sample_meta = sample_meta.loc[counts.columns]
    counts = pseudobulk.filter_low_counts(counts, pb_cfg.min_count, pb_cfg.min_samples)
    # 基因注释与计数矩阵使用同一过滤结果
    gene_annot = pseudobulk.apply_gene_filter(adata.var, counts)
    io.write_table(counts, tables / "pseudobulk_counts.tsv")
    io.write_table(sample_meta, tables / "pseudobulk_metadata.tsv")
    io.write_table(gene_annot, tables / "pseudobulk_genes.tsv")

    # 2. 差异表达
    dds, results = de.run_pseudobulk_de(counts, sample_meta, de_cfg)
    vst = de.variance_stabilize(dds, fit_type=de_cfg.fit_type)
    io.write_table(vst, tables / "vst_counts.tsv")

    # 3. GO 富集
    gene_sets = enrichment.load_gene_sets(cfg.paths.gene_sets or enr_cfg.library, enr_cfg.organism)
    background = counts.index.tolist()
    effect_col = "lfc_shrunk" if de_cfg.effect_is_shrunk else "log2FoldChange"
    logger.info(f"显著性阈值使用效应量列: {effect_col}")

    for label, res in results.items():
        if "gene_id" in gene_annot.columns:
            res = res.join(gene_annot[["gene_id"]])
        ranked, sig = de.call_significant(res, de_cfg)
        io.write_table(ranked, tables / f"de_{label}.tsv")
        io.write_table(ranked.loc[sig], tables / f"de_{label}.significant.tsv")
        logger.info(f"{label}: 显著基因 {len(sig)} (padj < {de_cfg.padj_cutoff}, |{effect_col}| >= {de_cfg.lfc_cutoff})")

        plot_volcano(res, figures / f"volcano_{label}.pdf",
                     padj_cutoff=de_cfg.padj_cutoff, lfc_cutoff=de_cfg.lfc_cutoff,
                     label_genes=sig[:15], title=label, lfc_col=effect_col)

        if not sig:
            logger.warning(f"{label}: 无显著基因，跳过富集分析")
            continue

        go = enrichment.run_enrichment(
            sig, gene_sets, background=background,
            method=enr_cfg.correction, cutoff=enr_cfg.qvalue_cutoff,
        )
        io.write_table(go, tables / f"go_bp_{label}.tsv", index=False)
        plot_enrichment_barplot(go, figures / f"go_bp_{label}_barplot.pdf",
                                top_n=enr_cfg.top_n_terms, title=f"GO BP: {label}")

        top_genes = enrichment.top_term_genes(go, enr_cfg.top_n_terms, sep=enr_cfg.gene_sep)
        varying = heatmap_genes(vst, top_genes)
        logger.info(f"{label}: top {enr_cfg.top_n_terms} term 基因数 {len(top_genes)} (VST 有变化: {len(varying)})")
        if len(varying) < 2:
            logger.warning(f"{label}: 有变化的 term 基因不足 2 个，跳过热图")
            continue
        plot_gene_heatmap(
            vst, varying, sample_meta.assign(replicate=sample_meta.index),
            annotate=[de_cfg.factor, "replicate"],
            out_file=figures / f"go_bp_{label}_heatmap.pdf",
            title=f"Top GO BP genes: {label}",
        )

    logger.info("Stage 2 完成。")


if __name__ == "__main__":
    main()
