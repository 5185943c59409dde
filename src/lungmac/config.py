"""
Pipeline configuration
======================

All thresholds used by the four stage scripts live here as dataclass fields
with the reference defaults. ``load_config`` fills them from a YAML file;
keys missing from the file keep their defaults, unknown keys are an error.
"""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


@dataclass
class PathsConfig:
    data_dir: Path = Path("data/raw")
    reference_h5ad: Optional[Path] = None
    annotated_h5ad: Path = Path("data/processed/macrophages.annotated.h5ad")
    lr_network: Optional[Path] = None
    ligand_target_matrix: Optional[Path] = None
    gene_sets: Optional[str] = None
    tables_dir: Path = Path("results/tables")
    figures_dir: Path = Path("results/figures")
    log_file: Optional[Path] = None


@dataclass
class QCConfig:
    min_genes: int = 200
    max_genes: int = 5000
    min_counts: int = 500
    max_counts: int = 40000
    max_pct_mt: float = 10.0
    min_cells: int = 3
    mt_prefix: str = "mt-"


@dataclass
class AnnotationConfig:
    sample_key: str = "sample"
    condition_key: str = "condition"
    # 样本名 -> 组别，按顺序匹配，第一个命中的生效
    condition_patterns: Dict[str, str] = field(default_factory=lambda: {
        "ctrl": "Control",
        "treat": "Treated",
    })
    batch_key: Optional[str] = "sample"
    target_sum: float = 1e4
    n_top_genes: int = 3000
    n_pcs: int = 30
    n_neighbors: int = 15
    resolution: float = 0.5
    cluster_key: str = "leiden"
    reference_label_key: str = "cell_type"
    predicted_key: str = "predicted_celltype"
    n_marker_genes: int = 50
    s_genes: Optional[List[str]] = None
    g2m_genes: Optional[List[str]] = None


@dataclass
class PseudobulkConfig:
    replicate_key: str = "sample"
    celltype_key: str = "predicted_celltype"
    celltypes: Optional[List[str]] = None
    min_cells: int = 1
    min_count: int = 10
    min_samples: int = 2


@dataclass
class DEConfig:
    factor: str = "condition"
    reference: Optional[str] = None
    contrasts: Optional[List[List[str]]] = None
    padj_cutoff: float = 0.05
    lfc_cutoff: float = 1.0
    alpha: float = 0.05
    shrink_lfc: bool = True
    # 阈值/排序所用效应量; None => 与 shrink_lfc 一致
    use_shrunk: Optional[bool] = None
    fit_type: str = "parametric"
    n_cpus: int = 1

    @property
    def effect_is_shrunk(self) -> bool:
        return self.shrink_lfc if self.use_shrunk is None else bool(self.use_shrunk)


@dataclass
class EnrichmentConfig:
    library: str = "GO_Biological_Process_2023"
    organism: str = "Mouse"
    correction: str = "fdr_bh"
    qvalue_cutoff: float = 0.05
    top_n_terms: int = 10
    gene_sep: str = ";"


@dataclass
class LigandConfig:
    groupby: str = "predicted_celltype"
    senders: List[str] = field(default_factory=list)
    receiver: Optional[str] = None
    condition_key: str = "condition"
    condition_test: Optional[str] = None
    condition_reference: Optional[str] = None
    min_pct_expressed: float = 0.10
    geneset_padj_cutoff: float = 0.05
    geneset_lfc_cutoff: float = 0.25
    top_n_ligands: int = 20
    n_targets: int = 200


@dataclass
class TrajectoryConfig:
    groupby: str = "leiden"
    celltypes: Optional[List[str]] = None
    root_cells: Optional[List[str]] = None
    root_cluster: Optional[str] = None
    n_dcs: int = 10
    n_pcs: int = 30
    n_neighbors: int = 15
    trend_genes: Optional[List[str]] = None


@dataclass
class PipelineConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    annotation: AnnotationConfig = field(default_factory=AnnotationConfig)
    pseudobulk: PseudobulkConfig = field(default_factory=PseudobulkConfig)
    de: DEConfig = field(default_factory=DEConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    ligand: LigandConfig = field(default_factory=LigandConfig)
    trajectory: TrajectoryConfig = field(default_factory=TrajectoryConfig)
    seed: int = 0


def _build(cls, values: Dict[str, Any], where: str):
    known = {f.name: f for f in fields(cls)}
    unknown = set(values) - set(known)
    if unknown:
        raise ValueError(f"Unknown config keys in '{where}': {sorted(unknown)}")

    kwargs = {}
    for name, value in values.items():
        default = getattr(cls(), name)
        if is_dataclass(default):
            kwargs[name] = _build(type(default), value or {}, f"{where}.{name}")
        else:
            kwargs[name] = value
    return cls(**kwargs)


def _resolve_paths(paths: PathsConfig, base_dir: Path) -> PathsConfig:
    for f in fields(paths):
        value = getattr(paths, f.name)
        if value is None:
            continue
        # gene_sets 也可以是 Enrichr 库名，不一定是文件
        if f.name == "gene_sets" and not str(value).endswith(".gmt"):
            continue
        p = Path(value)
        if not p.is_absolute():
            p = base_dir / p
        setattr(paths, f.name, str(p) if f.name == "gene_sets" else p)
    return paths


def config_from_dict(values: Dict[str, Any], base_dir: Union[str, Path] = ".") -> PipelineConfig:
    """Build a PipelineConfig from a nested dict (e.g. parsed YAML)."""
    cfg = _build(PipelineConfig, values or {}, "config")
    cfg.paths = _resolve_paths(cfg.paths, Path(base_dir))
    return cfg


def load_config(config_path: Union[str, Path]) -> PipelineConfig:
    """
    Load the YAML configuration file.

    Relative paths in the ``paths`` section resolve against the directory
    holding the config file's parent (the project root for
    ``config/pipeline.yaml``).
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        values = yaml.safe_load(f) or {}

    return config_from_dict(values, base_dir=config_path.resolve().parents[1])
