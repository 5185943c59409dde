"""
Figures for the four stages. Every function writes one file and closes it.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns
from matplotlib.patches import Patch

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _save(fig, out_file: PathLike) -> Path:
    out_file = Path(out_file)
    out_file.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_file, dpi=300, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"已保存图: {out_file}")
    return out_file


def _category_colors(values: pd.Series, palette: str):
    levels = list(dict.fromkeys(values.astype(str)))
    colors = dict(zip(levels, sns.color_palette(palette, len(levels))))
    return values.astype(str).map(colors), colors


def heatmap_genes(expr: pd.DataFrame, genes: Sequence[str]) -> List[str]:
    """Genes of ``genes`` present in ``expr`` with non-zero variance across samples (z-score 需要)."""
    present = [g for g in dict.fromkeys(genes) if g in expr.index]
    if not present:
        return []
    std = expr.loc[present].std(axis=1)
    return [g for g in present if std[g] > 0]


def plot_gene_heatmap(
    expr: pd.DataFrame,
    genes: Sequence[str],
    sample_meta: pd.DataFrame,
    annotate: Sequence[str],
    out_file: PathLike,
    title: str = "",
) -> Path:
    """
    Row-scaled, two-way-clustered heatmap of ``genes`` (rows) across samples.

    ``expr`` is genes x samples (e.g. VST counts); ``annotate`` names the
    sample_meta columns drawn as colour bars above the columns.
    """
    genes = heatmap_genes(expr, genes)
    if len(genes) < 2:
        raise ValueError(f"热图至少需要 2 个有变化的基因，当前 {len(genes)} 个")

    data = expr.loc[genes]

    meta = sample_meta.loc[data.columns]
    col_colors = []
    legends = []
    for i, key in enumerate(annotate):
        mapped, lut = _category_colors(meta[key], ["Set2", "Paired", "tab20"][i % 3])
        mapped.name = key
        col_colors.append(mapped)
        legends.append((key, lut))
    col_colors = pd.concat(col_colors, axis=1) if col_colors else None

    g = sns.clustermap(
        data,
        z_score=0,
        cmap="RdBu_r",
        center=0,
        col_colors=col_colors,
        row_cluster=True,
        col_cluster=True,
        figsize=(max(6, 0.5 * data.shape[1] + 4), max(6, 0.2 * data.shape[0] + 3)),
        yticklabels=data.shape[0] <= 80,
        cbar_kws={"label": "row z-score"},
    )
    handles = [
        Patch(facecolor=color, label=f"{key}: {level}")
        for key, lut in legends for level, color in lut.items()
    ]
    if handles:
        g.ax_heatmap.legend(handles=handles, loc="upper left", bbox_to_anchor=(1.15, 1.0), frameon=False)
    if title:
        g.fig.suptitle(title, fontsize=14, fontweight="bold", y=1.02)
    return _save(g.fig, out_file)


def plot_volcano(
    results: pd.DataFrame,
    out_file: PathLike,
    padj_cutoff: float = 0.05,
    lfc_cutoff: float = 1.0,
    label_genes: Optional[Sequence[str]] = None,
    title: str = "Volcano plot",
    lfc_col: str = "log2FoldChange",
) -> Path:
    """火山图; x 轴为 ``lfc_col``（如 lfc_shrunk）"""
    df = results.dropna(subset=["padj"]).copy()
    df["-log10_padj"] = -np.log10(df["padj"] + 1e-300)
    df["effect"] = df[lfc_col]
    sig = (df["padj"] < padj_cutoff) & (df["effect"].abs() >= lfc_cutoff)
    up = sig & (df["effect"] > 0)
    down = sig & (df["effect"] < 0)

    fig, ax = plt.subplots(figsize=(10, 8))
    ax.scatter(df.loc[~sig, "effect"], df.loc[~sig, "-log10_padj"],
               c="gray", alpha=0.5, s=10, label="Not significant")
    ax.scatter(df.loc[down, "effect"], df.loc[down, "-log10_padj"],
               c="blue", alpha=0.6, s=20, label=f"Down ({int(down.sum())})")
    ax.scatter(df.loc[up, "effect"], df.loc[up, "-log10_padj"],
               c="red", alpha=0.6, s=20, label=f"Up ({int(up.sum())})")

    for gene in label_genes or []:
        if gene in df.index:
            ax.annotate(gene, (df.at[gene, "effect"], df.at[gene, "-log10_padj"]),
                        xytext=(5, 5), textcoords="offset points", fontsize=9, fontweight="bold")

    ax.axhline(-np.log10(padj_cutoff), color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axvline(lfc_cutoff, color="black", linestyle="--", linewidth=1, alpha=0.3)
    ax.axvline(-lfc_cutoff, color="black", linestyle="--", linewidth=1, alpha=0.3)
    ax.set_xlabel("Log2 Fold Change" if lfc_col == "log2FoldChange" else f"Log2 Fold Change ({lfc_col})",
                  fontsize=12, fontweight="bold")
    ax.set_ylabel("-Log10 Adjusted P-value", fontsize=12, fontweight="bold")
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.legend(loc="best", fontsize=10)
    ax.grid(True, alpha=0.3)
    return _save(fig, out_file)


def plot_enrichment_barplot(
    enrichment: pd.DataFrame,
    out_file: PathLike,
    top_n: int = 20,
    title: str = "GO Biological Process",
) -> Optional[Path]:
    """富集条形图"""
    if enrichment is None or len(enrichment) == 0:
        logger.warning("无富集结果，跳过条形图绘制")
        return None

    df = enrichment.head(top_n).copy()
    df["-log10(q)"] = -np.log10(df["Adjusted P-value"] + 1e-300)
    df = df.iloc[::-1]

    fig, ax = plt.subplots(figsize=(10, max(6, len(df) * 0.3)))
    colors = plt.cm.Reds(np.linspace(0.4, 0.9, len(df)))
    ax.barh(range(len(df)), df["-log10(q)"], color=colors)
    ax.set_yticks(range(len(df)))
    ax.set_yticklabels(df["Term"].str[:60], fontsize=9)
    ax.set_xlabel("-Log10 Adjusted P-value", fontsize=12, fontweight="bold")
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.grid(True, axis="x", alpha=0.3)
    return _save(fig, out_file)


def plot_qc_violin(adata, out_file: PathLike, groupby: Optional[str] = None) -> Path:
    """QC 指标小提琴图"""
    keys = ["n_genes_by_counts", "total_counts", "pct_counts_mt"]
    fig, axes = plt.subplots(1, len(keys), figsize=(5 * len(keys), 5))
    obs = adata.obs
    for ax, key in zip(axes, keys):
        if groupby is None:
            sns.violinplot(y=obs[key], ax=ax, inner=None, color="lightsteelblue")
        else:
            sns.violinplot(x=obs[groupby].astype(str), y=obs[key], ax=ax, inner=None)
            ax.tick_params(axis="x", rotation=90)
        ax.set_title(key)
    fig.tight_layout()
    return _save(fig, out_file)


def plot_umap_panels(adata, colors: List[str], out_file: PathLike, title: str = "") -> Path:
    """UMAP，每个 obs 列一个子图"""
    colors = [c for c in colors if c in adata.obs.columns or c in adata.var_names]
    fig, axes = plt.subplots(1, len(colors), figsize=(8 * len(colors), 7), squeeze=False)
    for ax, color in zip(axes[0], colors):
        sc.pl.umap(adata, color=color, ax=ax, show=False, legend_loc="right margin", title=color)
    if title:
        fig.suptitle(title, fontsize=14, fontweight="bold")
    fig.tight_layout()
    return _save(fig, out_file)


def plot_paga_graph(adata, out_file: PathLike, title: str = "PAGA graph") -> Path:
    """PAGA 图"""
    fig, ax = plt.subplots(figsize=(10, 9))
    sc.pl.paga(adata, ax=ax, show=False, node_size_scale=2, edge_width_scale=2)
    ax.set_title(title, fontsize=14, fontweight="bold")
    return _save(fig, out_file)


def plot_pseudotime_density(
    obs: pd.DataFrame,
    out_file: PathLike,
    groupby: str = "condition",
    title: str = "Pseudotime density",
) -> Path:
    """各组的伪时间密度分布"""
    fig, ax = plt.subplots(figsize=(8, 5))
    for level, sub in obs.groupby(groupby, observed=True):
        if sub["dpt_pseudotime"].nunique() > 1:
            sns.kdeplot(sub["dpt_pseudotime"], ax=ax, fill=True, alpha=0.3, label=str(level))
    ax.set_xlabel("Pseudotime")
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.legend(title=groupby)
    return _save(fig, out_file)


def plot_ligand_activity_heatmap(
    activities: pd.DataFrame,
    out_file: PathLike,
    top_n: int = 20,
) -> Path:
    """Top ligand activity (AUPR corrected / Pearson) 热图"""
    df = activities.head(top_n).set_index("test_ligand")[["aupr_corrected", "pearson"]]
    fig, ax = plt.subplots(figsize=(4, max(4, 0.3 * len(df) + 1)))
    sns.heatmap(df, cmap="Oranges", annot=True, fmt=".3f", ax=ax,
                cbar_kws={"label": "activity"})
    ax.set_ylabel("Prioritized ligand")
    ax.set_title("Ligand activity", fontsize=12, fontweight="bold")
    return _save(fig, out_file)


def plot_ligand_target_heatmap(links: pd.DataFrame, out_file: PathLike) -> Optional[Path]:
    """ligand -> target 调控潜力热图"""
    if links.empty:
        logger.warning("无 ligand-target 连接，跳过热图")
        return None
    mat = links.pivot_table(index="ligand", columns="target", values="weight", fill_value=0)
    fig, ax = plt.subplots(figsize=(max(6, 0.25 * mat.shape[1] + 2), max(4, 0.3 * mat.shape[0] + 1)))
    sns.heatmap(mat, cmap="Purples", ax=ax, cbar_kws={"label": "regulatory potential"})
    ax.set_xlabel("Predicted target genes")
    ax.set_ylabel("Prioritized ligands")
    return _save(fig, out_file)


def plot_lr_bubble(pairs: pd.DataFrame, out_file: PathLike, top_n: int = 30) -> Path:
    """配体-受体相互作用气泡图"""
    df = pairs.head(top_n)
    fig, ax = plt.subplots(figsize=(10, max(6, len(df) * 0.25)))
    colors = np.where(df["direction"] == "sender_to_receiver", "red", "blue")
    y_pos = np.arange(len(df))
    ax.scatter(df["max_score"], y_pos, s=df["max_score"] / max(df["max_score"].max(), 1e-12) * 200,
               c=colors, alpha=0.6, edgecolors="black")
    ax.set_yticks(y_pos)
    ax.set_yticklabels([f"{l} → {r}" for l, r in zip(df["ligand"], df["receptor"])], fontsize=9)
    ax.invert_yaxis()
    ax.set_xlabel("Interaction Score", fontsize=12, fontweight="bold")
    ax.legend(handles=[Patch(facecolor="red", label="Sender → Receiver"),
                       Patch(facecolor="blue", label="Receiver → Sender")], loc="best")
    ax.grid(True, axis="x", alpha=0.3)
    return _save(fig, out_file)
