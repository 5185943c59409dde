"""
GO biological-process over-representation with gseapy.

The hypergeometric test is gseapy's offline ``enrich``; adjusted p-values
are recomputed with the configured statsmodels correction method so the
method is a pipeline parameter.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import gseapy as gp
import pandas as pd
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

ENRICHMENT_COLUMNS = [
    "Term", "Overlap", "P-value", "Adjusted P-value", "Odds Ratio", "Combined Score", "Genes",
]


def load_gene_sets(
    source: Union[str, Path],
    organism: str = "Mouse",
) -> Dict[str, List[str]]:
    """
    Gene sets from a GMT file, or an Enrichr library name
    (e.g. ``GO_Biological_Process_2023``) fetched through gseapy.
    """
    source_str = str(source)
    if source_str.endswith(".gmt"):
        if not Path(source_str).exists():
            raise FileNotFoundError(f"GMT file not found: {source_str}")
        gene_sets = gp.read_gmt(source_str)
    else:
        logger.info(f"下载 Enrichr 基因集: {source_str} ({organism})")
        gene_sets = gp.get_library(name=source_str, organism=organism)
    logger.info(f"基因集: {len(gene_sets)} terms")
    return gene_sets


def run_enrichment(
    genes: Iterable[str],
    gene_sets: Dict[str, List[str]],
    background: Optional[Iterable[str]] = None,
    method: str = "fdr_bh",
    cutoff: float = 0.05,
) -> pd.DataFrame:
    """
    Over-representation test of ``genes`` against ``gene_sets``.

    Parameters
    ----------
    genes : iterable of str
        Query gene set; must be non-empty.
    gene_sets : dict
        term -> member genes.
    background : iterable of str, optional
        Gene universe (e.g. all tested genes); defaults to the union of the
        gene sets.
    method : str, default "fdr_bh"
        Any ``statsmodels.stats.multitest.multipletests`` method.
    cutoff : float
        Keep terms with adjusted p-value below this.

    Returns
    -------
    pd.DataFrame
        ENRICHMENT_COLUMNS, sorted by adjusted p-value, raw p-value, term.
    """
    gene_list = list(dict.fromkeys(str(g) for g in genes))
    if not gene_list:
        raise ValueError("Empty gene list provided for enrichment analysis")
    if background is not None:
        background = list(dict.fromkeys(str(g) for g in background))

    logger.info(f"富集分析: 输入基因数 {len(gene_list)}, terms {len(gene_sets)}")
    enr = gp.enrich(
        gene_list=gene_list,
        gene_sets=gene_sets,
        background=background,
        outdir=None,
        cutoff=1.0,
        no_plot=True,
        verbose=False,
    )

    results = getattr(enr, "results", None)
    if results is None or len(results) == 0:
        logger.warning("富集分析未找到任何重叠 term")
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

    results = results.copy()
    results["Adjusted P-value"] = multipletests(results["P-value"].to_numpy(), method=method)[1]
    results = results.sort_values(
        ["Adjusted P-value", "P-value", "Term"], kind="mergesort"
    )
    results = results[results["Adjusted P-value"] < cutoff]
    results = results[ENRICHMENT_COLUMNS].reset_index(drop=True)

    logger.info(f"显著 term 数 (adj p < {cutoff}, {method}): {len(results)}")
    return results


def top_term_genes(results: pd.DataFrame, n_terms: int = 10, sep: str = ";") -> List[str]:
    """
    Union of member genes of the ``n_terms`` most significant terms.

    Duplicates removed, first-seen order.
    """
    genes = []
    for field in results.head(n_terms)["Genes"]:
        genes.extend(g.strip() for g in str(field).split(sep) if g.strip())
    return list(dict.fromkeys(genes))
