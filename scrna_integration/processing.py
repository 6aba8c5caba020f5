#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles normalization, variable features, scaling, PCA, UMAP, and clustering
"""

import os
from pathlib import Path

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from sklearn.metrics import adjusted_rand_score, silhouette_score


def normalize_data(adata, target_sum=1e4):
    """Library-size normalize and log-transform

    Raw counts are kept in ``layers["counts"]``; log-normalized values are kept
    in ``layers["lognorm"]`` and in ``.raw`` for differential expression.

    Args:
        adata: AnnData object with raw counts in .X
        target_sum: Total counts per cell after normalization

    Returns:
        Normalized AnnData object
    """
    print("Normalizing data...")

    adata.layers["counts"] = adata.X.copy()

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)

    adata.layers["lognorm"] = adata.X.copy()
    adata.raw = adata

    return adata


def select_variable_features(adata, n_top_genes=2000, flavor="seurat_v3", batch_key=None):
    """Find highly variable genes

    With ``batch_key`` genes are ranked within each batch and the per-batch
    rankings are combined, so features variable in every condition win.

    Args:
        adata: Normalized AnnData object (counts in layers["counts"])
        n_top_genes: Number of variable genes to keep
        flavor: scanpy HVG flavor; "seurat_v3" works on raw counts
        batch_key: Optional obs column to select features per batch

    Returns:
        AnnData object with var["highly_variable"]
    """
    n_top_genes = min(int(n_top_genes), adata.n_vars)
    print(f"Selecting {n_top_genes} variable features ({flavor})...")

    if flavor == "seurat_v3":
        sc.pp.highly_variable_genes(
            adata,
            flavor="seurat_v3",
            n_top_genes=n_top_genes,
            layer="counts",
            batch_key=batch_key,
        )
    else:
        sc.pp.highly_variable_genes(
            adata, flavor=flavor, n_top_genes=n_top_genes, batch_key=batch_key
        )

    print(f"  ✓ {int(adata.var['highly_variable'].sum()):,} highly variable genes")

    return adata


def scale_and_reduce(adata, n_pcs=30, max_value=10):
    """Subset to variable genes, scale and run PCA

    Args:
        adata: AnnData object with var["highly_variable"]
        n_pcs: Number of principal components
        max_value: Clip scaled values at this magnitude

    Returns:
        AnnData object restricted to variable genes with X_pca
    """
    print("Scaling and running PCA...")

    adata = adata[:, adata.var["highly_variable"].values].copy()
    sc.pp.scale(adata, max_value=max_value)

    n_comps = min(int(n_pcs), adata.n_vars - 1, adata.n_obs - 1)
    sc.tl.pca(adata, n_comps=n_comps, svd_solver="arpack", random_state=0)

    return adata


def run_neighbors_umap_clustering(
    adata,
    n_pcs=30,
    n_neighbors=20,
    resolution=0.5,
    use_rep=None,
    key_added="leiden",
    random_state=0,
    auto_resolution=False,
    resolution_grid=None,
    annotation_key=None,
    save_dir=None,
):
    """Build the kNN graph, run UMAP and Leiden clustering

    Args:
        adata: AnnData object with an embedding in .obsm
        n_pcs: Number of embedding dimensions to use
        n_neighbors: k for the kNN graph
        resolution: Leiden resolution if auto_resolution is False
        use_rep: obsm key of the embedding (defaults to X_pca)
        key_added: obs column for the cluster labels
        random_state: Random seed for UMAP and Leiden
        auto_resolution: If True, sweep resolutions and pick a robust choice
        resolution_grid: Optional list of resolutions for sweeping
        annotation_key: Optional obs column compared to each sweep clustering
        save_dir: Directory for sweep outputs (optional)

    Returns:
        AnnData object with neighbors, X_umap and cluster labels
    """
    if use_rep is None:
        use_rep = "X_pca"

    n_dims = min(int(n_pcs), adata.obsm[use_rep].shape[1])

    print(f"Computing neighborhood graph on {use_rep} ({n_dims} dims)...")
    sc.pp.neighbors(
        adata,
        n_neighbors=int(n_neighbors),
        n_pcs=n_dims,
        use_rep=use_rep,
        random_state=random_state,
    )

    print("Running UMAP...")
    sc.tl.umap(adata, random_state=random_state)

    chosen_res = float(resolution)
    if auto_resolution:
        print("Performing Leiden resolution sweep...")
        chosen_res = choose_leiden_resolution(
            adata,
            resolution_grid=resolution_grid,
            use_rep=use_rep,
            annotation_key=annotation_key,
            save_dir=save_dir,
        )
        adata.uns["leiden_optimal_resolution"] = chosen_res
        print(f"Chosen Leiden resolution: {chosen_res}")

    print("Clustering...")
    sc.tl.leiden(
        adata,
        resolution=chosen_res,
        key_added=key_added,
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=random_state,
    )
    print(f"  ✓ {adata.obs[key_added].nunique()} clusters")

    return adata


def process_unintegrated(
    adata,
    target_sum=1e4,
    n_top_genes=2000,
    hvg_flavor="seurat_v3",
    max_value=10,
    n_pcs=30,
    n_neighbors=20,
    resolution=0.5,
    random_state=0,
):
    """Standard workflow on the merged data, without any integration

    Returns:
        AnnData object restricted to variable genes, with X_pca, X_umap and leiden
    """
    print("\n" + "=" * 60)
    print("UNINTEGRATED ANALYSIS")
    print("=" * 60)

    adata = normalize_data(adata, target_sum=target_sum)
    adata = select_variable_features(adata, n_top_genes=n_top_genes, flavor=hvg_flavor)
    adata = scale_and_reduce(adata, n_pcs=n_pcs, max_value=max_value)
    adata = run_neighbors_umap_clustering(
        adata,
        n_pcs=n_pcs,
        n_neighbors=n_neighbors,
        resolution=resolution,
        random_state=random_state,
    )

    return adata


def plot_embeddings(
    adata,
    color_keys,
    basis="umap",
    save_dir=None,
    filename="umap_embeddings.png",
    title_prefix="",
):
    """Plot an embedding colored by several obs columns side by side

    Args:
        adata: AnnData object with X_{basis} coordinates
        color_keys: obs columns (or genes) to color by, one panel each
        basis: Embedding to plot
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        filename: File name used when saving
        title_prefix: Text prepended to each panel title
    """
    print("Plotting embeddings...")

    fig, axes = plt.subplots(1, len(color_keys), figsize=(6 * len(color_keys), 5))
    axes = np.atleast_1d(axes)

    for key, ax in zip(color_keys, axes):
        sc.pl.embedding(
            adata,
            basis=basis,
            color=key,
            legend_loc="on data" if key.startswith("leiden") else "right margin",
            title=f"{title_prefix}{key}",
            ax=ax,
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


def plot_split_umap(adata, split_key, color, save_dir=None, filename="umap_split.png"):
    """One UMAP panel per level of ``split_key``, other cells shown in grey

    Args:
        adata: AnnData object with X_umap
        split_key: obs column to split panels by (e.g. condition)
        color: obs column (or gene) to color cells by
        save_dir: Directory to save plots (optional)
        filename: File name used when saving
    """
    labels = adata.obs[split_key].astype(str)
    levels = list(pd.unique(labels))
    if isinstance(adata.obs[split_key].dtype, pd.CategoricalDtype):
        levels = [str(c) for c in adata.obs[split_key].cat.categories if str(c) in levels]

    coords = adata.obsm["X_umap"]
    fig, axes = plt.subplots(1, len(levels), figsize=(6 * len(levels), 5))
    axes = np.atleast_1d(axes)

    for level, ax in zip(levels, axes):
        mask = (labels == level).values
        ax.scatter(coords[:, 0], coords[:, 1], s=2, c="lightgrey", linewidths=0)
        sc.pl.umap(
            adata[mask].copy(),
            color=color,
            title=f"{level}: {color}",
            ax=ax,
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


def _pick_resolution(sweep, tolerance=0.02):
    scored = sweep[sweep["silhouette"].notna()]
    if scored.empty:
        split = sweep[sweep["n_clusters"] > 1]
        return float((split if not split.empty else sweep)["resolution"].min())

    best = scored["silhouette"].max()
    near_best = scored[scored["silhouette"] >= best - tolerance]
    ranked = near_best.sort_values(["small_cluster_fraction", "n_clusters", "resolution"])
    return float(ranked["resolution"].iloc[0])


def choose_leiden_resolution(
    adata,
    resolution_grid=None,
    min_cluster_size=20,
    use_rep="X_pca",
    annotation_key=None,
    save_dir=None,
):
    """Sweep Leiden resolutions on the current kNN graph and pick one

    Each resolution is scored by silhouette width in ``use_rep`` (the corrected
    embedding after integration) and by the fraction of cells in clusters
    smaller than ``min_cluster_size``. Resolutions within 0.02 of the best
    silhouette are ranked by small-cluster fraction, cluster count and
    resolution, lowest first.

    With ``annotation_key`` the adjusted Rand index against that annotation is
    reported too; it is informative only and does not drive the choice.

    Args:
        adata: AnnData object with neighbors computed
        resolution_grid: Resolutions to test (default 0.2 to 1.2)
        min_cluster_size: Clusters below this size count as small
        use_rep: obsm key used for silhouettes
        annotation_key: Optional obs column with reference labels
        save_dir: Directory for the sweep table and diagnostic plot

    Returns:
        Chosen resolution (float). Adds one ``leiden_<res>`` obs column per
        tested resolution.
    """
    if resolution_grid is None:
        resolution_grid = np.arange(0.2, 1.25, 0.1)
    # one entry per leiden_<res> column
    resolution_grid = np.unique(np.round(np.asarray(resolution_grid, dtype=float), 2))

    embedding = adata.obsm[use_rep]
    reference = adata.obs[annotation_key].astype(str) if annotation_key else None

    rows = []
    for res in resolution_grid:
        key = f"leiden_{res:.2f}"
        sc.tl.leiden(
            adata,
            resolution=float(res),
            key_added=key,
            flavor="igraph",
            n_iterations=2,
            directed=False,
        )
        labels = adata.obs[key].astype(str)
        sizes = labels.value_counts()

        row = {
            "resolution": float(res),
            "n_clusters": int(len(sizes)),
            "silhouette": np.nan,
            "small_cluster_fraction": float(
                sizes[sizes < max(2, int(min_cluster_size))].sum() / len(labels)
            ),
        }
        if len(sizes) > 1:
            try:
                row["silhouette"] = float(silhouette_score(embedding, labels))
            except ValueError:
                # every cell in its own cluster
                pass
        if reference is not None:
            row["ari"] = float(adjusted_rand_score(reference, labels))
        rows.append(row)

    sweep = pd.DataFrame(rows)
    chosen_res = _pick_resolution(sweep)

    summary = sweep.set_index("resolution").loc[chosen_res]
    print(f"  ✓ Resolution {chosen_res}: {int(summary['n_clusters'])} clusters, "
          f"silhouette {summary['silhouette']:.3f}")

    if save_dir:
        save_dir = Path(save_dir)
        os.makedirs(save_dir, exist_ok=True)
        sweep.to_csv(save_dir / "leiden_resolution_sweep.csv", index=False)

        fig, ax1 = plt.subplots(figsize=(7, 4))
        ax2 = ax1.twinx()
        ax1.plot(sweep["resolution"], sweep["silhouette"], "-o", color="#1f77b4",
                 label="silhouette")
        if "ari" in sweep.columns:
            ax1.plot(sweep["resolution"], sweep["ari"], "-^", color="#2ca02c",
                     label=f"ARI vs {annotation_key}")
        ax2.plot(sweep["resolution"], sweep["n_clusters"], "-s", color="#ff7f0e")
        ax1.set_xlabel("Leiden resolution")
        ax1.set_ylabel("Score")
        ax2.set_ylabel("Number of clusters", color="#ff7f0e")
        ax1.axvline(chosen_res, color="gray", linestyle="--", linewidth=1)
        ax1.legend(loc="lower right")
        fig.tight_layout()
        fig.savefig(save_dir / "leiden_sweep_diagnostics.png", dpi=300, bbox_inches="tight")
        plt.close(fig)
        print(f"  Saved: {save_dir}/leiden_resolution_sweep.csv")

    return chosen_res
