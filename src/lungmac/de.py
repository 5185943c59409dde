"""
Pseudobulk differential expression with pyDESeq2.

The GLM fit, dispersion estimation, Wald test and LFC shrinkage are done by
pydeseq2. This module builds its inputs (validated sample alignment, design
with an explicit reference level), requests contrasts and thresholds the
per-gene results.
"""

import itertools
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from .config import DEConfig

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfc_shrunk", "lfcSE", "stat", "pvalue", "padj"]


class SampleAlignmentError(ValueError):
    """Sample metadata rows do not match pseudobulk columns one-to-one."""


def align_sample_metadata(counts: pd.DataFrame, sample_meta: pd.DataFrame) -> pd.DataFrame:
    """
    Return ``sample_meta`` reordered to ``counts.columns``.

    Identifiers must match exactly (same set, no duplicates on either side);
    anything else raises ``SampleAlignmentError`` naming the offenders.
    """
    col_ids = pd.Index(counts.columns).astype(str)
    row_ids = pd.Index(sample_meta.index).astype(str)

    problems = []
    if col_ids.has_duplicates:
        problems.append(f"duplicated count columns: {col_ids[col_ids.duplicated()].tolist()}")
    if row_ids.has_duplicates:
        problems.append(f"duplicated metadata rows: {row_ids[row_ids.duplicated()].tolist()}")

    only_counts = sorted(set(col_ids) - set(row_ids))
    only_meta = sorted(set(row_ids) - set(col_ids))
    if only_counts:
        problems.append(f"in counts but not in metadata: {only_counts}")
    if only_meta:
        problems.append(f"in metadata but not in counts: {only_meta}")

    if problems:
        raise SampleAlignmentError("Sample identifiers do not align; " + "; ".join(problems))

    aligned = sample_meta.copy()
    aligned.index = row_ids
    return aligned.loc[col_ids]


def pairwise_contrasts(levels: Sequence[str], reference: Optional[str] = None) -> List[Tuple[str, str]]:
    """
    (test, reference) pairs.

    With a reference level: every other level against it. Without: every
    unordered pair, later level tested against the earlier one.
    """
    levels = [str(l) for l in levels]
    if reference is not None:
        if reference not in levels:
            raise ValueError(f"reference level '{reference}' not in {levels}")
        return [(l, reference) for l in levels if l != reference]
    return [(b, a) for a, b in itertools.combinations(levels, 2)]


def fit_model(
    counts: pd.DataFrame,
    sample_meta: pd.DataFrame,
    factor: str,
    reference: Optional[str] = None,
    cfg: Optional[DEConfig] = None,
) -> DeseqDataSet:
    """
    Fit the negative-binomial GLM ``~ factor`` on a genes x samples matrix.

    ``reference`` becomes the first level of the factor (the intercept
    level); by default the first level in the metadata's category order.
    """
    cfg = cfg or DEConfig()
    metadata = align_sample_metadata(counts, sample_meta)

    if factor not in metadata.columns:
        raise KeyError(f"design factor '{factor}' not in sample metadata")
    if metadata[factor].isna().any():
        raise ValueError(f"design factor '{factor}' has missing values")

    values = metadata[factor].astype(str)
    if isinstance(metadata[factor].dtype, pd.CategoricalDtype):
        levels = [str(c) for c in metadata[factor].cat.categories if str(c) in set(values)]
    else:
        levels = list(pd.unique(values))
    if reference is not None:
        if reference not in levels:
            raise ValueError(f"reference level '{reference}' not in {levels}")
        levels = [reference] + [l for l in levels if l != reference]
    if len(levels) < 2:
        raise ValueError(f"design factor '{factor}' needs at least two levels, got {levels}")

    design = pd.DataFrame(index=metadata.index)
    design[factor] = pd.Categorical(values, categories=levels)

    # pydeseq2 要求 samples x genes 的整数矩阵
    count_matrix = counts.T.round().astype(int)
    count_matrix.index = metadata.index

    logger.info(
        f"拟合 DESeq2 模型: ~{factor}, reference={levels[0]}, "
        f"{count_matrix.shape[0]} samples x {count_matrix.shape[1]} genes"
    )
    inference = DefaultInference(n_cpus=cfg.n_cpus)
    dds = DeseqDataSet(
        counts=count_matrix,
        metadata=design,
        design=f"~{factor}",
        fit_type=cfg.fit_type,
        refit_cooks=True,
        inference=inference,
        quiet=True,
    )
    dds.deseq2()
    return dds


def _shrinkage_coeff(dds: DeseqDataSet, factor: str, test: str, reference: str) -> str:
    lfc_columns = list(dds.varm["LFC"].columns)
    candidates = [f"{factor}[T.{test}]", f"{factor}_{test}_vs_{reference}"]
    for name in candidates:
        if name in lfc_columns:
            return name
    raise KeyError(
        f"No LFC coefficient for {test} vs {reference}; available: {lfc_columns}. "
        f"Shrinkage needs '{reference}' as the model reference level."
    )


def run_contrast(
    dds: DeseqDataSet,
    factor: str,
    test: str,
    reference: str,
    cfg: Optional[DEConfig] = None,
) -> pd.DataFrame:
    """
    Wald test for ``test`` vs ``reference`` plus optional LFC shrinkage.

    Returns one row per gene with RESULT_COLUMNS and ``contrast``.
    ``lfc_shrunk`` equals ``log2FoldChange`` when shrinkage is off.
    """
    cfg = cfg or DEConfig()
    label = f"{factor}_{test}_vs_{reference}"
    logger.info(f"Wald 检验: {label}")

    inference = DefaultInference(n_cpus=cfg.n_cpus)
    ds = DeseqStats(
        dds,
        contrast=[factor, test, reference],
        alpha=cfg.alpha,
        inference=inference,
        quiet=True,
    )
    ds.summary()
    results = ds.results_df.copy()
    results["lfc_shrunk"] = results["log2FoldChange"]

    if cfg.shrink_lfc:
        coeff = _shrinkage_coeff(dds, factor, test, reference)
        logger.info(f"LFC shrinkage (coeff={coeff}) ...")
        ds.lfc_shrink(coeff=coeff)
        results["lfc_shrunk"] = ds.results_df["log2FoldChange"]

    results = results[RESULT_COLUMNS].copy()
    results["contrast"] = label
    results.index.name = "gene"

    n_sig = int((results["padj"] < cfg.padj_cutoff).sum())
    logger.info(f"{label}: {len(results)} genes tested, {n_sig} with padj < {cfg.padj_cutoff}")
    return results


def significant_genes(
    results: pd.DataFrame,
    padj_cutoff: float = 0.05,
    lfc_cutoff: float = 1.0,
    use_shrunk: bool = False,
    direction: Optional[str] = None,
) -> List[str]:
    """
    Genes with padj < ``padj_cutoff`` and |effect| >= ``lfc_cutoff``.

    ``direction`` "up" / "down" keeps only positive / negative effects.
    Genes with missing padj are never significant.
    """
    effect = results["lfc_shrunk" if use_shrunk else "log2FoldChange"]
    mask = (results["padj"] < padj_cutoff) & (effect.abs() >= lfc_cutoff)
    if direction == "up":
        mask &= effect > 0
    elif direction == "down":
        mask &= effect < 0
    elif direction is not None:
        raise ValueError(f"direction must be 'up', 'down' or None, got {direction!r}")
    mask = mask.fillna(False)
    return results.index[mask.to_numpy(dtype=bool)].tolist()


def rank_by_effect(results: pd.DataFrame, use_shrunk: bool = False) -> pd.DataFrame:
    """Results sorted by absolute effect size, largest first."""
    col = "lfc_shrunk" if use_shrunk else "log2FoldChange"
    order = results[col].abs().sort_values(ascending=False, kind="mergesort").index
    return results.loc[order]


def call_significant(results: pd.DataFrame, cfg: DEConfig) -> Tuple[pd.DataFrame, List[str]]:
    """
    Ranked table and significant genes of one contrast, both on the effect
    column selected by ``cfg`` (``lfc_shrunk`` when shrinkage is used).
    """
    use_shrunk = cfg.effect_is_shrunk
    ranked = rank_by_effect(results, use_shrunk=use_shrunk)
    sig = significant_genes(ranked, cfg.padj_cutoff, cfg.lfc_cutoff, use_shrunk=use_shrunk)
    return ranked, sig


def variance_stabilize(dds: DeseqDataSet, fit_type: str = "parametric") -> pd.DataFrame:
    """VST expression, genes x samples."""
    dds.vst(use_design=False, fit_type=fit_type)
    vst = dds.layers["vst_counts"]
    return pd.DataFrame(np.asarray(vst).T, index=dds.var_names, columns=dds.obs_names)


def run_pseudobulk_de(
    counts: pd.DataFrame,
    sample_meta: pd.DataFrame,
    cfg: DEConfig,
) -> Tuple[DeseqDataSet, dict]:
    """
    Fit once and run every configured contrast.

    Returns the fitted dataset and ``{contrast_label: results}``.
    """
    factor = cfg.factor
    meta = align_sample_metadata(counts, sample_meta)
    if cfg.contrasts:
        pairs = [(str(t), str(r)) for t, r in cfg.contrasts]
    else:
        levels = (
            [str(c) for c in meta[factor].cat.categories]
            if isinstance(meta[factor].dtype, pd.CategoricalDtype)
            else list(pd.unique(meta[factor].astype(str)))
        )
        levels = [l for l in levels if l in set(meta[factor].astype(str))]
        pairs = pairwise_contrasts(levels, cfg.reference)

    results = {}
    by_reference = {}
    for test, ref in pairs:
        by_reference.setdefault(ref, []).append(test)

    dds = None
    for ref, tests in by_reference.items():
        # 每个 reference 单独拟合，使 shrinkage 系数与 contrast 对应
        dds = fit_model(counts, meta, factor, reference=ref, cfg=cfg)
        for test in tests:
            res = run_contrast(dds, factor, test, ref, cfg)
            results[res["contrast"].iloc[0]] = res
    return dds, results
