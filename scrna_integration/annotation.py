#!/usr/bin/env python3
"""
Cell type annotation utilities for single-cell RNA-seq analysis
Handles marker gene plots and cluster / annotation agreement
"""

from pathlib import Path

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# Module-level constants: single sources of truth
MARKER_GENES = {  # Canonical PBMC markers
    "CD4 Naive T": ["CD3D", "SELL", "CREM"],
    "CD4 Memory T": ["CD3D", "CREM", "HSPH1"],
    "T activated": ["CD3D", "CACYBP", "GIMAP5"],
    "CD8 T": ["CD8A", "CD3D", "CCL5"],
    "NK": ["GNLY", "NKG7", "CCL5"],
    "B": ["MS4A1", "CD79A"],
    "B Activated": ["CD79A", "MIR155HG", "NME1"],
    "CD14 Mono": ["CD14", "CCL2", "S100A9", "LYZ"],
    "CD16 Mono": ["FCGR3A", "VMO1"],
    "DC": ["HLA-DQA1", "GPR183"],
    "pDC": ["TSPAN13", "IL3RA", "IGJ"],
    "Mk": ["PPBP", "GNG11"],
    "Eryth": ["HBA2", "HBB"],
    "HSPC": ["PRSS57"],
}

# Interferon-stimulated genes: strongly induced in every cell type after IFN-beta
ISG_GENES = ["ISG15", "IFI6", "IFIT1", "IFIT3", "MX1", "CXCL10"]


def available_markers(adata, markers=MARKER_GENES, use_raw=True):
    """Flatten a marker dictionary to the genes present in the data

    Args:
        adata: AnnData object
        markers: Dict of cell type -> genes, or a plain list of genes
        use_raw: Look up genes in .raw when it is set

    Returns:
        Ordered, de-duplicated list of gene names
    """
    var_names = (
        adata.raw.var_names if use_raw and adata.raw is not None else adata.var_names
    )
    genes = (
        [g for gene_list in markers.values() for g in gene_list]
        if isinstance(markers, dict)
        else list(markers)
    )

    seen = set()
    return [g for g in genes if g in var_names and not (g in seen or seen.add(g))]


def annotate_clusters(adata, celltype_key, cluster_key="leiden", purity_threshold=0.6):
    """Label each cluster with its dominant annotated cell type

    Clusters whose dominant cell type is at or below ``purity_threshold`` are
    labelled "Mixed".

    Args:
        adata: AnnData object with annotation and cluster labels
        celltype_key: obs column with cell type annotation
        cluster_key: obs column with cluster labels
        purity_threshold: Minimum proportion of the dominant cell type

    Returns:
        DataFrame with one row per cluster (dominant cell type, purity, n_cells).
        Adds ``cluster_celltype`` and ``cluster_purity`` to adata.obs.
    """
    composition = pd.crosstab(
        adata.obs[cluster_key].astype(str),
        adata.obs[celltype_key].astype(str),
        normalize="index",
    )
    dominant = composition.idxmax(axis=1)
    purity = composition.max(axis=1)
    n_cells = adata.obs[cluster_key].astype(str).value_counts()

    summary = pd.DataFrame(
        {
            "cluster": composition.index,
            "dominant_celltype": dominant.values,
            "purity": purity.values,
            "n_cells": n_cells.reindex(composition.index).values,
        }
    )
    summary["label"] = np.where(
        summary["purity"] > purity_threshold, summary["dominant_celltype"], "Mixed"
    )

    labels = dict(zip(summary["cluster"], summary["label"]))
    purities = dict(zip(summary["cluster"], summary["purity"]))
    clusters = adata.obs[cluster_key].astype(str)
    adata.obs["cluster_celltype"] = clusters.map(labels).values
    adata.obs["cluster_purity"] = clusters.map(purities).astype(float).values

    n_mixed = int((summary["label"] == "Mixed").sum())
    print(f"\n{'='*60}")
    print("CLUSTER PURITY ANALYSIS")
    print(f"{'='*60}")
    print(f"Purity threshold: {purity_threshold*100:.0f}%")
    print(f"Pure clusters: {len(summary) - n_mixed}")
    print(f"Mixed clusters: {n_mixed}")

    return summary


def plot_marker_dotplot(
    adata, markers=MARKER_GENES, groupby="leiden", save_dir=None, filename="marker_genes_dotplot.png"
):
    """Dot plot of marker genes

    Grouping by a "<celltype>_<condition>" column shows each cell type's
    markers side by side for both conditions.

    Args:
        adata: AnnData object with log-normalized values in .raw
        markers: Dict of cell type -> genes, or a list of genes
        groupby: obs column to group cells by
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        filename: File name used when saving
    """
    genes = available_markers(adata, markers)
    if not genes:
        print("  ⚠️  None of the marker genes are present; skipping dot plot")
        return

    sc.pl.dotplot(
        adata,
        genes,
        groupby=groupby,
        standard_scale="var",
        use_raw=adata.raw is not None,
        show=False,
    )
    fig = plt.gcf()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{filename}")
        plt.close(fig)
    else:
        plt.show()


def plot_feature_split(
    adata, genes, split_key, save_dir=None, filename="feature_split_umap.png"
):
    """UMAP expression of each gene, one column per condition

    The color scale of a gene is shared across conditions so induction is visible.

    Args:
        adata: AnnData object with X_umap and log-normalized values in .raw
        genes: Genes to plot (missing genes are skipped)
        split_key: obs column to split by (e.g. condition)
        save_dir: Directory to save plots (optional)
        filename: File name used when saving
    """
    genes = available_markers(adata, list(genes))
    if not genes:
        print("  ⚠️  None of the requested genes are present; skipping feature plot")
        return

    labels = adata.obs[split_key].astype(str)
    if isinstance(adata.obs[split_key].dtype, pd.CategoricalDtype):
        levels = [str(c) for c in adata.obs[split_key].cat.categories if (labels == str(c)).any()]
    else:
        levels = list(pd.unique(labels))

    fig, axes = plt.subplots(
        len(genes), len(levels), figsize=(5 * len(levels), 4 * len(genes)), squeeze=False
    )

    for i, gene in enumerate(genes):
        expr = sc.get.obs_df(adata, keys=[gene], use_raw=adata.raw is not None)[gene]
        vmax = float(np.percentile(expr, 99)) or None
        for j, level in enumerate(levels):
            mask = (labels == level).values
            sc.pl.umap(
                adata[mask].copy(),
                color=gene,
                use_raw=adata.raw is not None,
                vmin=0,
                vmax=vmax,
                title=f"{gene} ({level})",
                ax=axes[i, j],
                show=False,
            )

    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{filename}")
        plt.close(fig)
    else:
        plt.show()
