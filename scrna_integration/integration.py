#!/usr/bin/env python3
"""
Integration utilities for single-cell RNA-seq analysis
Aligns cells across experimental conditions and measures condition mixing
"""

from pathlib import Path

import harmonypy
import scanpy.external as sce
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from scrna_integration.data_loader import merge_conditions
from scrna_integration.processing import (
    normalize_data,
    select_variable_features,
    scale_and_reduce,
    run_neighbors_umap_clustering,
)

CORRECTED_BASIS = {
    "scanorama": "X_scanorama",
    "harmony": "X_pca_harmony",
}


def _is_contiguous(labels):
    labels = np.asarray(labels)
    if labels.size == 0:
        return True
    n_changes = np.count_nonzero(labels[1:] != labels[:-1])
    return n_changes == len(np.unique(labels)) - 1


def order_cells_by_batch(adata, batch_key):
    """Reorder cells so every batch forms one contiguous block

    Scanorama splits the embedding by batch and expects each batch in one piece.

    Args:
        adata: AnnData object
        batch_key: obs column holding the batch label

    Returns:
        The same object if already contiguous, otherwise a reordered copy
    """
    labels = adata.obs[batch_key].astype(str).values
    if _is_contiguous(labels):
        return adata

    print(f"Reordering cells so each '{batch_key}' batch is contiguous...")
    batches = adata.obs[batch_key]
    if isinstance(batches.dtype, pd.CategoricalDtype):
        codes = batches.cat.codes.values
    else:
        codes = pd.factorize(labels)[0]
    order = np.argsort(codes, kind="stable")

    return adata[order].copy()


def _run_harmony(adata, batch_key, basis):
    """Run Harmony on ``adata.obsm[basis]`` and return a cells × PCs array"""
    embedding = np.asarray(adata.obsm[basis], dtype=np.float64)
    meta = adata.obs[[batch_key]].astype(str)

    harmony_out = harmonypy.run_harmony(embedding, meta, [batch_key])
    corrected = np.asarray(harmony_out.Z_corr, dtype=np.float64)

    # older harmonypy releases return PCs × cells
    if corrected.shape != embedding.shape and corrected.T.shape == embedding.shape:
        corrected = corrected.T
    if corrected.shape != embedding.shape:
        raise ValueError(
            f"Harmony returned shape {corrected.shape}, expected {embedding.shape}"
        )

    return corrected


def correct_embedding(
    adata,
    batch_key,
    method="scanorama",
    basis="X_pca",
    knn=20,
    sigma=15,
    alpha=0.1,
    batch_size=5000,
):
    """Batch-correct a PCA embedding

    Args:
        adata: AnnData object with ``basis`` in .obsm
        batch_key: obs column holding the batch (condition) label
        method: "scanorama" (mutual nearest neighbors) or "harmony"
        basis: obsm key of the embedding to correct
        knn, sigma, alpha, batch_size: Scanorama settings

    Returns:
        Tuple of (AnnData object, obsm key of the corrected embedding)
    """
    if method not in CORRECTED_BASIS:
        raise ValueError(
            f"Unknown integration method '{method}' (expected one of {list(CORRECTED_BASIS)})"
        )

    adjusted_basis = CORRECTED_BASIS[method]
    print(f"Correcting {basis} with {method}...")

    if method == "scanorama":
        adata = order_cells_by_batch(adata, batch_key)
        sce.pp.scanorama_integrate(
            adata,
            batch_key,
            basis=basis,
            adjusted_basis=adjusted_basis,
            knn=int(knn),
            sigma=float(sigma),
            alpha=float(alpha),
            batch_size=int(batch_size),
        )
    else:
        adata.obsm[adjusted_basis] = _run_harmony(adata, batch_key, basis)

    print(f"  ✓ Corrected embedding stored in obsm['{adjusted_basis}']")

    return adata, adjusted_basis


def integrate_conditions(
    adata_by_condition,
    condition_key,
    method="scanorama",
    target_sum=1e4,
    n_top_genes=2000,
    hvg_flavor="seurat_v3",
    max_value=10,
    n_pcs=30,
    n_neighbors=20,
    resolution=0.5,
    random_state=0,
    knn=20,
    sigma=15,
    alpha=0.1,
    batch_size=5000,
    auto_resolution=False,
    annotation_key=None,
    save_dir=None,
):
    """Integrate per-condition datasets and re-run the downstream workflow

    Steps:
    1. Re-normalize each condition from its raw counts
    2. Merge and select variable features within each condition
    3. Scale, PCA and batch-correct the PCA embedding
    4. Neighbors, UMAP and Leiden on the corrected embedding

    Args:
        adata_by_condition: Dict mapping condition label to AnnData (raw counts)
        condition_key: obs column written with the condition label
        method: "scanorama" or "harmony"
        auto_resolution: Sweep Leiden resolutions on the corrected graph
        annotation_key: obs column reported against each sweep clustering
        save_dir: Directory for sweep outputs

    Returns:
        Integrated AnnData object (variable genes only, log-normalized values in .raw)
    """
    print("\n" + "=" * 60)
    print(f"INTEGRATION ({method})")
    print("=" * 60)

    if len(adata_by_condition) < 2:
        raise ValueError(
            f"Integration needs at least two conditions, got {list(adata_by_condition)}"
        )
    if method not in CORRECTED_BASIS:
        raise ValueError(
            f"Unknown integration method '{method}' (expected one of {list(CORRECTED_BASIS)})"
        )

    normalized = {}
    for label, sub in adata_by_condition.items():
        print(f"[{label}]")
        sub = sub.copy()
        if "counts" in sub.layers:
            sub.X = sub.layers["counts"].copy()
        normalized[label] = normalize_data(sub, target_sum=target_sum)

    merged = merge_conditions(normalized, condition_key)
    merged.raw = merged  # concat drops .raw

    merged = select_variable_features(
        merged, n_top_genes=n_top_genes, flavor=hvg_flavor, batch_key=condition_key
    )
    merged = scale_and_reduce(merged, n_pcs=n_pcs, max_value=max_value)

    merged, use_rep = correct_embedding(
        merged,
        condition_key,
        method=method,
        knn=knn,
        sigma=sigma,
        alpha=alpha,
        batch_size=batch_size,
    )

    merged = run_neighbors_umap_clustering(
        merged,
        n_pcs=n_pcs,
        n_neighbors=n_neighbors,
        resolution=resolution,
        use_rep=use_rep,
        random_state=random_state,
        auto_resolution=auto_resolution,
        annotation_key=annotation_key,
        save_dir=save_dir,
    )

    merged.uns["integration"] = {
        "method": method,
        "batch_key": condition_key,
        "use_rep": use_rep,
    }

    return merged


def _cluster_sort_key(label):
    return (0, int(label), "") if str(label).isdigit() else (1, 0, str(label))


def condition_mixing(adata, cluster_key, condition_key):
    """Measure how well each cluster mixes cells from all conditions

    Args:
        adata: AnnData object with cluster and condition labels
        cluster_key: obs column with cluster labels
        condition_key: obs column with condition labels

    Returns:
        DataFrame indexed by cluster with n_cells, one fraction column per
        condition and ``mixing_entropy`` (1 = evenly mixed, 0 = one condition)
    """
    clusters = adata.obs[cluster_key].astype(str)
    conditions = adata.obs[condition_key]
    if isinstance(conditions.dtype, pd.CategoricalDtype):
        levels = [str(c) for c in conditions.cat.categories]
    else:
        levels = sorted(conditions.astype(str).unique())
    conditions = conditions.astype(str)
    levels = [lvl for lvl in levels if (conditions == lvl).any()]

    counts = pd.crosstab(clusters, conditions).reindex(columns=levels, fill_value=0)
    counts = counts.loc[sorted(counts.index, key=_cluster_sort_key)]
    n_cells = counts.sum(axis=1)
    fractions = counts.div(n_cells, axis=0)

    if len(levels) > 1:
        p = fractions.values
        with np.errstate(divide="ignore", invalid="ignore"):
            plogp = np.where(p > 0, p * np.log(p), 0.0)
        entropy = -plogp.sum(axis=1) / np.log(len(levels))
    else:
        entropy = np.zeros(len(fractions))

    mixing = fractions.copy()
    mixing.insert(0, "n_cells", n_cells.values)
    mixing["mixing_entropy"] = entropy
    mixing.index.name = cluster_key
    mixing.columns.name = None

    return mixing


def mixing_summary(mixing_df):
    """Cell-weighted mean mixing entropy over clusters"""
    return float(np.average(mixing_df["mixing_entropy"], weights=mixing_df["n_cells"]))


def plot_condition_composition(
    mixing_df, condition_levels, save_dir=None, filename="condition_composition.png", title=""
):
    """Stacked bar plot of condition fractions per cluster

    Args:
        mixing_df: Output of condition_mixing
        condition_levels: Fraction columns to stack, in order
        save_dir: Directory to save plots (optional)
        filename: File name used when saving
        title: Plot title
    """
    fig, ax = plt.subplots(figsize=(max(6, 0.4 * len(mixing_df) + 2), 4))

    mixing_df[list(condition_levels)].plot(
        kind="bar", stacked=True, ax=ax, width=0.85, colormap="Set2"
    )
    ax.axhline(0.5, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.set_ylim(0, 1)
    ax.set_xlabel("Cluster")
    ax.set_ylabel("Fraction of cells")
    ax.set_title(title or f"Condition composition (mean entropy {mixing_summary(mixing_df):.2f})")
    ax.legend(title="Condition", bbox_to_anchor=(1.02, 1), loc="upper left")

    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{filename}")
        plt.close(fig)
    else:
        plt.show()
