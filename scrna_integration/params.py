#!/usr/bin/env python3
"""
Analysis parameters for the condition integration and DE tutorial

This file centralizes every tutorial parameter used in the pipeline.
Modify these values (or pass a JSON override file) to adjust the analysis.
"""

import json
from pathlib import Path

# Input dataset and metadata columns
DATASET = {
    "path": "data/ifnb.h5ad",  # Control vs IFN-beta stimulated PBMCs
    "backup_url": None,  # Optional download location passed to scanpy.read
    "condition_key": "stim",  # Column holding the experimental condition
    "celltype_key": "seurat_annotations",  # Published cell type annotation
    "replicate_key": "replicate",  # Donor / replicate column for pseudobulk
    "control": "CTRL",
    "stimulated": "STIM",
}

# Cell-level and gene-level filters
QC_FILTERS = {
    "min_genes": 200,  # Minimum genes detected per cell
    "max_genes": 5000,  # Maximum genes detected per cell
    "max_mt_pct": 20,  # Maximum mitochondrial gene percentage
    "min_cells": 3,  # Minimum cells expressing a gene
    "mt_pattern": "MT-",  # Human mitochondrial genes (use "mt-" for mouse)
}

NORMALIZATION_PARAMS = {
    "target_sum": 1e4,  # Counts per cell after library size normalization
    "n_top_genes": 2000,  # Variable features used for PCA / integration
    "hvg_flavor": "seurat_v3",  # Variance-stabilizing selection on raw counts
    "max_value": 10,  # Clip scaled values
}

CLUSTERING_PARAMS = {
    "n_pcs": 30,  # Dimensions used for neighbors / integration
    "n_neighbors": 20,
    "resolution": 0.5,  # Leiden resolution
    "auto_resolution": False,  # Sweep resolutions and pick by silhouette
    "random_state": 0,
}

INTEGRATION_PARAMS = {
    "method": "scanorama",  # "scanorama" (mutual nearest neighbors) or "harmony"
    "knn": 20,  # Neighbors used to find mutual matches
    "sigma": 15,  # Gaussian kernel width for correction vectors
    "alpha": 0.1,  # Alignment score cutoff
    "batch_size": 5000,
}

DE_PARAMS = {
    "method": "wilcoxon",
    "corr_method": "benjamini-hochberg",
    "fdr_threshold": 0.05,
    "fc_threshold": 0.25,  # |log2FC| for a gene to be called significant
    "logfc_threshold": 0.1,  # Genes below this |log2FC| are dropped from the table
    "min_pct": 0.1,  # Gene detected in at least this fraction of either group
    "min_cells_per_group": 3,
    "target_celltype": "CD14 Mono",
    # Pseudobulk (replicate-aware) settings
    "min_cells": 10,  # Minimum cells per sample x cell type aggregate
    "min_count": 5,
    "min_samples_expr": 2,
}

INTEGRATION_METHODS = ("scanorama", "harmony")
HVG_FLAVORS = ("seurat_v3", "seurat", "cell_ranger")
DE_METHODS = ("wilcoxon", "t-test", "t-test_overestim_var")

_SECTIONS = {
    "DATASET": DATASET,
    "QC_FILTERS": QC_FILTERS,
    "NORMALIZATION_PARAMS": NORMALIZATION_PARAMS,
    "CLUSTERING_PARAMS": CLUSTERING_PARAMS,
    "INTEGRATION_PARAMS": INTEGRATION_PARAMS,
    "DE_PARAMS": DE_PARAMS,
}

# Values compared numerically in validate_params
_NUMERIC_KEYS = {
    "QC_FILTERS": ("min_genes", "max_genes", "max_mt_pct", "min_cells"),
    "NORMALIZATION_PARAMS": ("target_sum", "n_top_genes"),
    "CLUSTERING_PARAMS": ("n_pcs", "n_neighbors", "resolution"),
    "INTEGRATION_PARAMS": ("knn", "sigma", "alpha", "batch_size"),
    "DE_PARAMS": (
        "fdr_threshold", "fc_threshold", "logfc_threshold", "min_pct",
        "min_cells_per_group", "min_cells", "min_count", "min_samples_expr",
    ),
}


def get_param_summary():
    """Return a formatted summary of current analysis settings"""
    summary = [
        "=== Analysis Settings ===",
        "\nDataset:",
        f"  - File: {DATASET['path']}",
        f"  - Condition: {DATASET['condition_key']} "
        f"({DATASET['control']} vs {DATASET['stimulated']})",
        f"  - Cell types: {DATASET['celltype_key']}",
        "\nQC filters:",
        f"  - Genes per cell: {QC_FILTERS['min_genes']} - {QC_FILTERS['max_genes']}",
        f"  - Max mitochondrial %: {QC_FILTERS['max_mt_pct']}%",
        "\nDimensionality reduction & clustering:",
        f"  - Variable features: {NORMALIZATION_PARAMS['n_top_genes']} "
        f"({NORMALIZATION_PARAMS['hvg_flavor']})",
        f"  - PCs: {CLUSTERING_PARAMS['n_pcs']}, neighbors: {CLUSTERING_PARAMS['n_neighbors']}",
        f"  - Leiden resolution: {CLUSTERING_PARAMS['resolution']}",
        "\nIntegration:",
        f"  - Method: {INTEGRATION_PARAMS['method']}",
        "\nDifferential expression:",
        f"  - Test: {DE_PARAMS['method']} ({DE_PARAMS['corr_method']})",
        f"  - Thresholds: FDR < {DE_PARAMS['fdr_threshold']}, "
        f"|log2FC| > {DE_PARAMS['fc_threshold']}",
    ]

    return "\n".join(summary)


def validate_params():
    """Validate that analysis parameters make sense"""
    not_numbers = [
        f"{name}.{key}"
        for name, keys in _NUMERIC_KEYS.items()
        for key in keys
        if isinstance(_SECTIONS[name][key], bool)
        or not isinstance(_SECTIONS[name][key], (int, float))
    ]
    if not_numbers:
        raise ValueError(f"Parameters must be numbers: {not_numbers}")

    errors = []

    if QC_FILTERS["min_genes"] >= QC_FILTERS["max_genes"]:
        errors.append("min_genes must be less than max_genes")

    if not 0 <= QC_FILTERS["max_mt_pct"] <= 100:
        errors.append("max_mt_pct must be between 0 and 100")

    if NORMALIZATION_PARAMS["hvg_flavor"] not in HVG_FLAVORS:
        errors.append(f"hvg_flavor must be one of {HVG_FLAVORS}")

    if NORMALIZATION_PARAMS["n_top_genes"] < 2:
        errors.append("n_top_genes must be at least 2")

    if CLUSTERING_PARAMS["n_pcs"] < 2:
        errors.append("n_pcs must be at least 2")

    if CLUSTERING_PARAMS["n_neighbors"] < 2:
        errors.append("n_neighbors must be at least 2")

    if CLUSTERING_PARAMS["resolution"] <= 0:
        errors.append("resolution must be positive")

    if INTEGRATION_PARAMS["method"] not in INTEGRATION_METHODS:
        errors.append(f"integration method must be one of {INTEGRATION_METHODS}")

    if DATASET["control"] == DATASET["stimulated"]:
        errors.append("control and stimulated labels must differ")

    if not 0 < DE_PARAMS["fdr_threshold"] < 1:
        errors.append("fdr_threshold must be between 0 and 1")

    if not 0 <= DE_PARAMS["min_pct"] <= 1:
        errors.append("min_pct must be between 0 and 1")

    if DE_PARAMS["fc_threshold"] < 0 or DE_PARAMS["logfc_threshold"] < 0:
        errors.append("fc_threshold and logfc_threshold must be non-negative")

    if DE_PARAMS["method"] not in DE_METHODS:
        errors.append(f"DE method must be one of {DE_METHODS}")

    if DE_PARAMS["min_cells_per_group"] < 1:
        errors.append("min_cells_per_group must be at least 1")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


def update_params(overrides):
    """Merge nested overrides into the module-level parameter dictionaries

    Args:
        overrides: Mapping of section name (e.g. "DE_PARAMS") to a dict of values

    Returns:
        True once the updated parameters pass validation
    """
    unknown = [name for name in overrides if name not in _SECTIONS]
    if unknown:
        raise KeyError(f"Unknown parameter sections: {unknown}")

    for name, values in overrides.items():
        section = _SECTIONS[name]
        bad_keys = [key for key in values if key not in section]
        if bad_keys:
            raise KeyError(f"Unknown keys for {name}: {bad_keys}")

    # Apply only after every key is known, so a bad file changes nothing
    previous = {name: dict(section) for name, section in _SECTIONS.items()}
    for name, values in overrides.items():
        _SECTIONS[name].update(values)

    try:
        return validate_params()
    except (ValueError, TypeError):
        for name, section in _SECTIONS.items():
            section.clear()
            section.update(previous[name])
        raise


def load_param_overrides(path):
    """Load a JSON override file and apply it with update_params"""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        overrides = json.load(f)

    if not isinstance(overrides, dict):
        raise ValueError(f"Override file {path} must contain a JSON object")

    update_params(overrides)
    print(f"Loaded parameter overrides from {path}")
    return overrides


# Run validation on import
validate_params()
