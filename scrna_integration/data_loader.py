#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles dataset loading, metadata validation and splitting by condition
"""

import pandas as pd
import scanpy as sc
import anndata
from pathlib import Path


def load_dataset(path, backup_url=None):
    """Load the example dataset

    Args:
        path: Path to an .h5ad file (or any format scanpy.read understands)
        backup_url: Optional URL scanpy downloads from when path is missing

    Returns:
        AnnData object with unique gene names
    """
    path = Path(path)
    print(f"Loading dataset from {path}...")

    if not path.exists() and backup_url is None:
        raise FileNotFoundError(
            f"Dataset not found at {path}. Download it or set DATASET['backup_url']."
        )

    if backup_url is not None:
        adata = sc.read(path, backup_url=backup_url)
    else:
        adata = sc.read(path)

    adata.var_names_make_unique()
    print(f"Loaded: {adata.n_obs:,} cells x {adata.n_vars:,} genes")

    return adata


def validate_obs_columns(adata, required):
    """Check that the metadata columns needed downstream are present

    Args:
        adata: AnnData object
        required: Iterable of obs column names
    """
    missing = [c for c in required if c not in adata.obs.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")
    return True


def set_condition_order(adata, condition_key, levels):
    """Make the condition column an ordered categorical

    Args:
        adata: AnnData object
        condition_key: Column holding the condition label
        levels: Condition labels in display order (control first)

    Returns:
        AnnData object with the condition column converted in place
    """
    labels = adata.obs[condition_key].astype(str)
    unknown = sorted(set(labels) - set(levels))
    if unknown:
        raise ValueError(
            f"Unexpected labels in '{condition_key}': {unknown} (expected {list(levels)})"
        )

    adata.obs[condition_key] = pd.Categorical(
        labels, categories=list(levels), ordered=True
    )
    return adata


def split_by_condition(adata, condition_key):
    """Split a dataset into one AnnData per condition

    Args:
        adata: AnnData object
        condition_key: Column holding the condition label

    Returns:
        Dict mapping condition label to an AnnData copy, in category order
    """
    print(f"Splitting by '{condition_key}'...")

    conditions = adata.obs[condition_key]
    if isinstance(conditions.dtype, pd.CategoricalDtype):
        levels = [str(c) for c in conditions.cat.categories]
    else:
        levels = list(pd.unique(conditions.astype(str)))

    labels = conditions.astype(str)
    split = {}
    for level in levels:
        mask = (labels == level).values
        if mask.sum() == 0:
            continue
        split[level] = adata[mask].copy()
        print(f"  {level}: {split[level].n_obs:,} cells")

    return split


def merge_conditions(adatas, condition_key):
    """Concatenate per-condition objects back into one dataset

    Cells of each condition stay contiguous, in the order of ``adatas``.

    Args:
        adatas: Dict mapping condition label to AnnData
        condition_key: Column to (re)write with the condition label

    Returns:
        Merged AnnData object
    """
    if not adatas:
        raise ValueError("No datasets to merge")

    levels = list(adatas.keys())
    merged = anndata.concat(
        list(adatas.values()),
        join="inner",
        label=condition_key,
        keys=levels,
        index_unique=None,
        merge="same",
    )
    merged.obs[condition_key] = pd.Categorical(
        merged.obs[condition_key].astype(str), categories=levels, ordered=True
    )
    merged.obs_names_make_unique()

    return merged
