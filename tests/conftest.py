"""
Shared fixtures: small synthetic AnnData objects with seeded randomness.
"""

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def replicate_adata(rng):
    """
    Raw-count AnnData: 4 replicates (2 Control, 2 Treated), uneven cell
    numbers, 30 genes, sparse CSR counts.
    """
    reps = ["ctrl_1"] * 7 + ["lps_1"] * 5 + ["ctrl_2"] * 6 + ["lps_2"] * 4
    conditions = ["Control" if r.startswith("ctrl") else "Treated" for r in reps]
    n_genes = 30
    X = rng.negative_binomial(5, 0.3, size=(len(reps), n_genes))

    obs = pd.DataFrame(
        {"sample": pd.Categorical(reps), "condition": pd.Categorical(conditions)},
        index=[f"cell{i:03d}" for i in range(len(reps))],
    )
    var = pd.DataFrame(index=[f"Gene{j:02d}" for j in range(n_genes)])
    return ad.AnnData(X=sparse.csr_matrix(X.astype(np.float32)), obs=obs, var=var)


@pytest.fixture
def toy_pseudobulk_adata():
    """
    4 genes x 12 cells; replicates A1, A2 (condition A) and B1, B2
    (condition B), 3 cells each. G1 is ~10-fold higher in B, G2-G4 flat.
    """
    g1 = [10, 11, 12, 9, 10, 11, 100, 110, 105, 95, 100, 108]
    g2 = [50, 52, 48, 49, 51, 50, 50, 49, 51, 52, 48, 50]
    g3 = [80, 78, 82, 81, 79, 80, 82, 80, 78, 79, 81, 80]
    g4 = [120, 118, 122, 121, 119, 120, 119, 121, 120, 122, 118, 120]
    X = np.array([g1, g2, g3, g4], dtype=np.float32).T  # cells x genes

    reps = ["A1"] * 3 + ["A2"] * 3 + ["B1"] * 3 + ["B2"] * 3
    obs = pd.DataFrame(
        {"replicate": reps, "condition": [r[0] for r in reps]},
        index=[f"c{i}" for i in range(12)],
    )
    var = pd.DataFrame(index=["G1", "G2", "G3", "G4"])
    return ad.AnnData(X=X, obs=obs, var=var)


@pytest.fixture
def two_population_adata(rng):
    """
    Log-normalized AnnData with two well-separated populations
    (cell_type "AM" / "IM") and two conditions, 120 cells x 40 genes.
    Genes 0-9 mark AM, 10-19 mark IM; in AM cells genes 20-24 are higher
    under "Treated".
    """
    n_per = 60
    n_genes = 40
    counts = rng.poisson(1.0, size=(2 * n_per, n_genes)).astype(float)
    counts[:n_per, :10] += rng.poisson(20, size=(n_per, 10))
    counts[n_per:, 10:20] += rng.poisson(20, size=(n_per, 10))

    cell_type = np.array(["AM"] * n_per + ["IM"] * n_per)
    condition = np.tile(["Control", "Treated"], n_per)
    treated_am = (cell_type == "AM") & (condition == "Treated")
    counts[treated_am, 20:25] += rng.poisson(15, size=(int(treated_am.sum()), 5))

    X = np.log1p(counts / counts.sum(axis=1, keepdims=True) * 1e4)
    obs = pd.DataFrame(
        {
            "cell_type": pd.Categorical(cell_type),
            "condition": pd.Categorical(condition),
            "sample": [f"{c}_{i % 2}" for i, c in enumerate(condition)],
        },
        index=[f"cell{i:03d}" for i in range(2 * n_per)],
    )
    var = pd.DataFrame(index=[f"Gene{j:02d}" for j in range(n_genes)])
    adata = ad.AnnData(X=X.astype(np.float32), obs=obs, var=var)
    adata.layers["counts"] = counts.astype(np.float32)
    return adata
