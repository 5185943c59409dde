"""
Ligand-receptor communication
=============================

Two views on sender -> receiver signalling:

- ligand activity: how well each potential ligand's prior target
  potentials (ligand-target matrix) predict the genes that change in the
  receiver between conditions (Pearson + AUPR over the expressed
  background);
- pair scores: mean ligand expression in the sender times mean receptor
  expression in the receiver, for every prior ligand-receptor pair.
"""

import logging
from typing import Iterable, List, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from sklearn.metrics import average_precision_score

logger = logging.getLogger(__name__)


def _group_mask(adata: ad.AnnData, groupby: str, groups: Sequence[str]) -> np.ndarray:
    if groupby not in adata.obs.columns:
        raise KeyError(f"obs 中缺少列: {groupby}")
    mask = adata.obs[groupby].astype(str).isin([str(g) for g in groups]).to_numpy()
    if not mask.any():
        raise ValueError(f"没有细胞属于 {groupby} in {list(groups)}")
    return mask


def expressed_genes(
    adata: ad.AnnData,
    groupby: str,
    groups: Sequence[str],
    min_pct: float = 0.10,
) -> List[str]:
    """Genes detected (> 0) in at least ``min_pct`` of the cells in ``groups``."""
    X = adata.X[_group_mask(adata, groupby, groups)]
    if sparse.issparse(X):
        frac = np.asarray((X > 0).mean(axis=0)).ravel()
    else:
        frac = (np.asarray(X) > 0).mean(axis=0)
    genes = adata.var_names[frac >= min_pct].tolist()
    logger.info(f"{list(groups)} 表达基因数 (>= {min_pct:.0%} cells): {len(genes)}")
    return genes


def potential_ligands(
    lr_network: pd.DataFrame,
    sender_expressed: Iterable[str],
    receiver_expressed: Iterable[str],
    ligand_col: str = "from",
    receptor_col: str = "to",
) -> List[str]:
    """Ligands expressed by the sender with at least one receptor expressed by the receiver."""
    for col in (ligand_col, receptor_col):
        if col not in lr_network.columns:
            raise KeyError(f"ligand-receptor network 缺少列: {col}")
    sender = set(sender_expressed)
    receiver = set(receiver_expressed)
    hits = lr_network[
        lr_network[ligand_col].isin(sender) & lr_network[receptor_col].isin(receiver)
    ]
    ligands = list(dict.fromkeys(hits[ligand_col].tolist()))
    logger.info(f"potential ligands: {len(ligands)}")
    return ligands


def receiver_geneset(
    adata: ad.AnnData,
    groupby: str,
    receiver: str,
    condition_key: str,
    test: str,
    reference: str,
    padj_cutoff: float = 0.05,
    lfc_cutoff: float = 0.25,
    background: Optional[Iterable[str]] = None,
) -> List[str]:
    """
    Genes changing in the receiver cells between ``test`` and ``reference``
    (Wilcoxon on log-normalized data, BH-adjusted).
    """
    cells = adata[_group_mask(adata, groupby, [receiver])].copy()
    if condition_key not in cells.obs.columns:
        raise KeyError(f"obs 中缺少列: {condition_key}")
    cells.obs[condition_key] = cells.obs[condition_key].astype(str).astype("category")

    sc.tl.rank_genes_groups(
        cells,
        groupby=condition_key,
        groups=[test],
        reference=reference,
        method="wilcoxon",
        corr_method="benjamini-hochberg",
        key_added="receiver_de",
    )
    res = sc.get.rank_genes_groups_df(cells, group=test, key="receiver_de")
    res = res[(res["pvals_adj"] < padj_cutoff) & (res["logfoldchanges"].abs() >= lfc_cutoff)]
    genes = res["names"].astype(str).tolist()
    if background is not None:
        bg = set(background)
        genes = [g for g in genes if g in bg]
    logger.info(f"receiver {receiver} 基因集 ({test} vs {reference}): {len(genes)} genes")
    return genes


def predict_ligand_activities(
    geneset: Iterable[str],
    background: Iterable[str],
    ligand_target: pd.DataFrame,
    ligands: Iterable[str],
) -> pd.DataFrame:
    """
    Rank ligands by how well their target potentials predict ``geneset``.

    Parameters
    ----------
    geneset : genes of interest (subset of background)
    background : expressed receiver genes
    ligand_target : DataFrame, targets (rows) x ligands (columns)
    ligands : candidate ligands; those missing from the matrix are skipped

    Returns
    -------
    pd.DataFrame
        test_ligand, aupr, aupr_corrected, pearson, rank; sorted by
        aupr_corrected then pearson, descending.
    """
    background = [g for g in dict.fromkeys(background) if g in ligand_target.index]
    if not background:
        raise ValueError("background 与 ligand-target matrix 没有共同基因")
    geneset = set(geneset) & set(background)
    if not geneset:
        raise ValueError("基因集为空（或不在 background 中），无法计算 ligand activity")

    response = np.array([g in geneset for g in background], dtype=int)
    prevalence = response.mean()

    ligands = [l for l in dict.fromkeys(ligands) if l in ligand_target.columns]
    if not ligands:
        raise ValueError("没有候选 ligand 出现在 ligand-target matrix 中")

    sub = ligand_target.loc[background, ligands]
    rows = []
    for ligand in ligands:
        potential = sub[ligand].to_numpy(dtype=float)
        if np.all(potential == potential[0]):
            pearson = 0.0
        else:
            pearson = float(np.corrcoef(potential, response)[0, 1])
        aupr = float(average_precision_score(response, potential))
        rows.append({
            "test_ligand": ligand,
            "aupr": aupr,
            "aupr_corrected": aupr - prevalence,
            "pearson": pearson,
        })

    df = pd.DataFrame(rows)
    df = df.sort_values(
        ["aupr_corrected", "pearson", "test_ligand"],
        ascending=[False, False, True],
        kind="mergesort",
    ).reset_index(drop=True)
    df["rank"] = np.arange(1, len(df) + 1)
    logger.info(f"ligand activity: {len(df)} ligands, top = {df['test_ligand'].head(5).tolist()}")
    return df


def top_ligand_targets(
    ligand_target: pd.DataFrame,
    ligands: Iterable[str],
    geneset: Iterable[str],
    n_targets: int = 200,
) -> pd.DataFrame:
    """
    Ligand-target links: for each ligand, its ``n_targets`` strongest
    targets genome-wide that are also in ``geneset``.
    """
    geneset = set(geneset)
    links = []
    for ligand in ligands:
        if ligand not in ligand_target.columns:
            continue
        top = ligand_target[ligand].nlargest(n_targets)
        top = top[top.index.isin(geneset) & (top > 0)]
        links.extend(
            {"ligand": ligand, "target": target, "weight": float(w)}
            for target, w in top.items()
        )
    return pd.DataFrame(links, columns=["ligand", "target", "weight"])


def _mean_expression(adata: ad.AnnData, mask: np.ndarray) -> pd.Series:
    X = adata.X[mask]
    mean = np.asarray(X.mean(axis=0)).ravel()
    return pd.Series(mean, index=adata.var_names)


def score_ligand_receptor_pairs(
    adata: ad.AnnData,
    lr_network: pd.DataFrame,
    groupby: str,
    sender: Sequence[str],
    receiver: Sequence[str],
    ligand_col: str = "from",
    receptor_col: str = "to",
) -> pd.DataFrame:
    """
    Mean-expression product score per ligand-receptor pair.

    ``score_sender_to_receiver`` = mean ligand (sender) x mean receptor
    (receiver); ``score_receiver_to_sender`` the reverse direction.
    """
    sender_expr = _mean_expression(adata, _group_mask(adata, groupby, sender))
    receiver_expr = _mean_expression(adata, _group_mask(adata, groupby, receiver))

    pairs = lr_network[[ligand_col, receptor_col]].drop_duplicates()
    pairs = pairs[pairs[ligand_col].isin(adata.var_names) & pairs[receptor_col].isin(adata.var_names)]

    lig = pairs[ligand_col].to_numpy()
    rec = pairs[receptor_col].to_numpy()
    df = pd.DataFrame({
        "ligand": lig,
        "receptor": rec,
        "ligand_sender": sender_expr[lig].to_numpy(),
        "ligand_receiver": receiver_expr[lig].to_numpy(),
        "receptor_sender": sender_expr[rec].to_numpy(),
        "receptor_receiver": receiver_expr[rec].to_numpy(),
    })
    df["score_sender_to_receiver"] = df["ligand_sender"] * df["receptor_receiver"]
    df["score_receiver_to_sender"] = df["ligand_receiver"] * df["receptor_sender"]
    df["max_score"] = df[["score_sender_to_receiver", "score_receiver_to_sender"]].max(axis=1)
    df["direction"] = np.where(
        df["score_sender_to_receiver"] >= df["score_receiver_to_sender"],
        "sender_to_receiver",
        "receiver_to_sender",
    )

    # 只保留有表达的相互作用
    df = df[df["max_score"] > 0]
    df = df.sort_values("max_score", ascending=False, kind="mergesort").reset_index(drop=True)
    logger.info(f"识别到 {len(df)} 个配体-受体相互作用")
    return df
