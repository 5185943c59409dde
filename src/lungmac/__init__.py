"""
lungmac: mouse lung macrophage scRNA-seq analysis
===================================================

Four stage pipelines (see scripts/):

- 10: ingestion, QC, clustering, label transfer
- 20: pseudobulk differential expression + GO enrichment
- 30: ligand-receptor / ligand activity analysis
- 40: pseudotime trajectory
"""

__version__ = "0.1.0"

from . import config
from . import utils

__all__ = ["config", "utils", "__version__"]
