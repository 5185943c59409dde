"""
Reading per-sample count matrices and prior tables, writing result tables.

Each sample directory holds a 10x-style MatrixMarket triplet::

    <sample>/matrix.mtx[.gz]
    <sample>/features.tsv[.gz]   (or genes.tsv[.gz])
    <sample>/barcodes.tsv[.gz]
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

import anndata as ad
import pandas as pd
import scipy.io
import scipy.sparse

logger = logging.getLogger(__name__)


def _find_file(sample_dir: Path, stems: List[str]) -> Path:
    for stem in stems:
        for suffix in ("", ".gz"):
            p = sample_dir / f"{stem}{suffix}"
            if p.exists():
                return p
    raise FileNotFoundError(f"None of {stems} found in {sample_dir}")


def read_sample_matrix(sample_dir: Union[str, Path]) -> ad.AnnData:
    """
    Read one sample's MatrixMarket counts into a cells x genes AnnData.

    The matrix may be stored genes x cells (10x default) or cells x genes;
    orientation is decided from the barcode / gene list lengths.
    """
    sample_dir = Path(sample_dir)
    mtx = _find_file(sample_dir, ["matrix.mtx"])
    bc = _find_file(sample_dir, ["barcodes.tsv"])
    gn = _find_file(sample_dir, ["features.tsv", "genes.tsv"])

    X = scipy.io.mmread(str(mtx))
    barcodes = pd.read_csv(bc, header=None, sep="\t")[0].astype(str).tolist()

    genes_df = pd.read_csv(gn, header=None, sep="\t")
    # 兼容 1 列或 2 列以上的基因文件
    gene_ids = genes_df.iloc[:, 0].astype(str).tolist()
    if genes_df.shape[1] >= 2:
        gene_names = genes_df.iloc[:, 1].astype(str).tolist()
    else:
        gene_names = gene_ids

    if X.shape == (len(gene_ids), len(barcodes)):
        X = X.T
    elif X.shape != (len(barcodes), len(gene_ids)):
        raise ValueError(
            f"{mtx}: matrix shape {X.shape} matches neither "
            f"(genes={len(gene_ids)}, cells={len(barcodes)}) nor its transpose"
        )

    X = scipy.sparse.csr_matrix(X)

    adata = ad.AnnData(X=X)
    adata.obs_names = barcodes
    adata.var_names = gene_names
    adata.var["gene_id"] = gene_ids
    adata.var_names_make_unique()

    logger.info(f"{sample_dir.name}: n_cells={adata.n_obs}, n_genes={adata.n_vars}")
    return adata


def read_samples(
    data_dir: Union[str, Path],
    samples: Optional[List[str]] = None,
    sample_key: str = "sample",
) -> ad.AnnData:
    """
    Read and merge every sample directory under ``data_dir``.

    Barcodes are prefixed with the sample name so they stay unique after
    merging; genes are outer-joined (absent genes count as zero).
    """
    data_dir = Path(data_dir)
    if samples is None:
        samples = sorted(p.name for p in data_dir.iterdir() if p.is_dir())
    if not samples:
        raise FileNotFoundError(f"No sample directories in {data_dir}")

    adatas = {}
    for name in samples:
        a = read_sample_matrix(data_dir / name)
        a.obs_names = [f"{name}_{bc}" for bc in a.obs_names]
        adatas[name] = a

    merged = ad.concat(adatas, join="outer", merge="same", label=sample_key, fill_value=0)
    merged.obs[sample_key] = pd.Categorical(merged.obs[sample_key], categories=samples)
    merged.X = scipy.sparse.csr_matrix(merged.X)

    logger.info(
        f"Merged {len(samples)} samples: n_cells={merged.n_obs}, n_genes={merged.n_vars}"
    )
    return merged


def read_prior_table(path: Union[str, Path], index_col: Optional[int] = 0) -> pd.DataFrame:
    """
    Load a serialized prior network (ligand-receptor list or
    ligand-target matrix) by file suffix.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Prior table not found: {path}")

    suffixes = "".join(path.suffixes).lower()
    if suffixes.endswith((".pkl", ".pickle")):
        return pd.read_pickle(path)
    if suffixes.endswith(".parquet"):
        return pd.read_parquet(path)
    sep = "," if ".csv" in suffixes else "\t"
    return pd.read_csv(path, sep=sep, index_col=index_col)


def write_table(df: pd.DataFrame, path: Union[str, Path], index: bool = True) -> Path:
    """写出 TSV 表格"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=index)
    logger.info(f"已写出: {path}")
    return path
