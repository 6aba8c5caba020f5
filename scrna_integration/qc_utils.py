#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation, filtering and QC plots
"""

import scanpy as sc
import matplotlib.pyplot as plt
from pathlib import Path


def calculate_qc_metrics(adata, mt_pattern="MT-"):
    """Calculate QC metrics

    Args:
        adata: AnnData object with raw counts in .X
        mt_pattern: Prefix identifying mitochondrial genes

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    adata.var["mt"] = adata.var_names.str.startswith(mt_pattern)

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True
    )
    adata.obs["percent_mt"] = adata.obs["pct_counts_mt"]

    print(f"  {int(adata.var['mt'].sum())} mitochondrial genes ({mt_pattern}*)")
    print(f"  Median genes/cell: {adata.obs['n_genes_by_counts'].median():.0f}")
    print(f"  Median counts/cell: {adata.obs['total_counts'].median():.0f}")

    return adata


def filter_cells_and_genes(
    adata,
    min_genes=200,
    max_genes=5000,
    max_mt_pct=20,
    min_cells=3,
):
    """Apply QC filtering

    Args:
        adata: AnnData object with QC metrics
        min_genes: Minimum genes per cell
        max_genes: Maximum genes per cell
        max_mt_pct: Maximum mitochondrial percentage
        min_cells: Minimum cells expressing a gene

    Returns:
        Filtered AnnData object
    """
    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    keep = (
        (adata.obs["n_genes_by_counts"] >= min_genes)
        & (adata.obs["n_genes_by_counts"] < max_genes)
        & (adata.obs["percent_mt"] < max_mt_pct)
    )
    adata = adata[keep.values].copy()

    sc.pp.filter_genes(adata, min_cells=min_cells)

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata


def plot_qc_metrics(adata, groupby=None, save_dir=None):
    """Plot QC metrics

    Args:
        adata: AnnData object with QC metrics
        groupby: Optional obs column to split the violins by (e.g. condition)
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    metrics = ["n_genes_by_counts", "total_counts", "percent_mt"]
    fig, axes = plt.subplots(1, len(metrics), figsize=(15, 4))

    for metric, ax in zip(metrics, axes):
        sc.pl.violin(
            adata,
            metric,
            groupby=groupby,
            jitter=0.4,
            ax=ax,
            show=False,
        )
        ax.set_title(metric)

    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "qc_violin_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_violin_plots.png")
        plt.close(fig)
    else:
        plt.show()
