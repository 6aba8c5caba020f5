#!/usr/bin/env python3
"""
Differential expression analysis utilities for single-cell RNA-seq analysis
Handles per-cell Wilcoxon testing, conserved markers, pseudobulk creation and
replicate-aware statistical testing
"""

from pathlib import Path

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from scrna_integration.params import DE_PARAMS

RESULT_COLUMNS = [
    "gene",
    "logFC",
    "P.Value",
    "adj.P.Val",
    "pct.1",
    "pct.2",
    "score",
    "significant",
    "upregulated",
    "downregulated",
]


def create_condition_column(
    adata, celltype_key, condition_key, key_added="celltype_condition"
):
    """Create a column combining cell type and condition, e.g. "CD14 Mono_STIM"

    Args:
        adata: AnnData object
        celltype_key: obs column with cell type annotation
        condition_key: obs column with condition labels
        key_added: Name of the new obs column

    Returns:
        AnnData object with the combined column added
    """
    adata.obs[key_added] = (
        adata.obs[celltype_key].astype(str) + "_" + adata.obs[condition_key].astype(str)
    )
    adata.obs[key_added] = adata.obs[key_added].astype("category")

    return adata


def _expression_matrix(adata, layer=None):
    """Pick the data view used for testing

    A named layer wins; otherwise the log-normalized values in .raw (all genes)
    are used, falling back to .X.
    """
    if layer is not None:
        if layer not in adata.layers:
            raise KeyError(f"Layer '{layer}' not found (available: {list(adata.layers)})")
        return adata.layers[layer], adata.var_names
    if adata.raw is not None:
        return adata.raw.X, adata.raw.var_names
    return adata.X, adata.var_names


def _fraction_expressing(X):
    if sparse.issparse(X):
        return np.asarray((X > 0).sum(axis=0)).ravel() / X.shape[0]
    return (np.asarray(X) > 0).mean(axis=0)


def _add_significance_flags(results, fdr_threshold, fc_threshold):
    results["significant"] = (
        (results["adj.P.Val"] < fdr_threshold)
        & (results["logFC"].abs() > fc_threshold)
        & results["adj.P.Val"].notna()
    )
    results["upregulated"] = results["significant"] & (results["logFC"] > 0)
    results["downregulated"] = results["significant"] & (results["logFC"] < 0)
    return results


def find_markers(
    adata,
    group1,
    group2,
    groupby,
    method="wilcoxon",
    layer=None,
    corr_method="benjamini-hochberg",
    min_pct=0.1,
    logfc_threshold=0.1,
    only_pos=False,
    min_cells_per_group=3,
    fdr_threshold=0.05,
    fc_threshold=0.25,
):
    """Test genes for differential expression between two groups of cells

    Testing always runs on log-normalized expression (``.raw`` or ``layer``),
    never on the scaled or integrated matrix.

    Args:
        adata: AnnData object
        group1: Label of the test group in ``groupby``
        group2: Label of the reference group, or "rest" for all other cells
        groupby: obs column holding the group labels
        method: scanpy test ("wilcoxon", "t-test", "t-test_overestim_var")
        layer: Optional layer to test instead of .raw
        corr_method: Multiple testing correction ("benjamini-hochberg" or "bonferroni")
        min_pct: Keep genes detected in at least this fraction of either group
        logfc_threshold: Keep genes with |log2FC| at least this large
        only_pos: Keep only genes higher in group1
        min_cells_per_group: Minimum cells required in each group
        fdr_threshold: Adjusted p-value cutoff for the significance flags
        fc_threshold: |log2FC| cutoff for the significance flags

    Returns:
        DataFrame with one row per gene sorted by P.Value
    """
    labels = adata.obs[groupby].astype(str)
    in_group1 = (labels == str(group1)).values
    if group2 == "rest":
        in_group2 = ~in_group1
    else:
        in_group2 = (labels == str(group2)).values

    for name, mask in ((group1, in_group1), (group2, in_group2)):
        n_cells = int(mask.sum())
        if n_cells < min_cells_per_group:
            raise ValueError(
                f"Cell group '{name}' has {n_cells} cells "
                f"(need at least {min_cells_per_group})"
            )

    X, var_names = _expression_matrix(adata, layer)
    keep = in_group1 | in_group2
    reference = "rest" if group2 == "rest" else str(group2)
    group_labels = np.where(in_group1[keep], str(group1), reference)

    test = anndata.AnnData(
        X=X[keep],
        obs=pd.DataFrame(
            {"group": pd.Categorical(group_labels, categories=[str(group1), reference])},
            index=adata.obs_names[keep],
        ),
        var=pd.DataFrame(index=var_names),
    )
    test.uns["log1p"] = {"base": None}

    sc.tl.rank_genes_groups(
        test,
        "group",
        groups=[str(group1)],
        reference=reference,
        method=method,
        corr_method=corr_method,
        use_raw=False,
        key_added="find_markers",
    )
    results = sc.get.rank_genes_groups_df(test, group=str(group1), key="find_markers")
    results = results.rename(
        columns={
            "names": "gene",
            "scores": "score",
            "logfoldchanges": "logFC",
            "pvals": "P.Value",
            "pvals_adj": "adj.P.Val",
        }
    )

    pct1 = pd.Series(_fraction_expressing(X[in_group1]), index=var_names)
    pct2 = pd.Series(_fraction_expressing(X[in_group2]), index=var_names)
    results["pct.1"] = pct1.reindex(results["gene"]).values
    results["pct.2"] = pct2.reindex(results["gene"]).values

    keep_genes = (results[["pct.1", "pct.2"]].max(axis=1) >= min_pct) & (
        results["logFC"].abs() >= logfc_threshold
    )
    if only_pos:
        keep_genes &= results["logFC"] > 0
    results = results.loc[keep_genes].copy()

    results = _add_significance_flags(results, fdr_threshold, fc_threshold)
    results = results.sort_values(["P.Value", "score"], ascending=[True, False])

    return results[RESULT_COLUMNS].reset_index(drop=True)


def run_celltype_condition_de(
    adata,
    celltype_key,
    condition_key,
    control,
    stimulated,
    cell_types=None,
    de_params=None,
    layer=None,
):
    """Stimulated vs control Wilcoxon test within every cell type

    Args:
        adata: AnnData object with log-normalized values in .raw
        celltype_key: obs column with cell type annotation
        condition_key: obs column with condition labels
        control: Control condition label (reference)
        stimulated: Stimulated condition label
        cell_types: Cell types to test (default: all annotated types)
        de_params: Dictionary of DE parameters (see params.DE_PARAMS)
        layer: Optional layer to test instead of .raw

    Returns:
        DataFrame with results for all cell types, or None if none could be tested
    """
    if de_params is None:
        de_params = DE_PARAMS

    adata = create_condition_column(adata, celltype_key, condition_key)

    if cell_types is None:
        celltypes = adata.obs[celltype_key]
        if isinstance(celltypes.dtype, pd.CategoricalDtype):
            cell_types = [str(c) for c in celltypes.cat.categories]
        else:
            cell_types = sorted(celltypes.astype(str).unique())

    contrast = f"{stimulated}_vs_{control}"
    results = []

    for cell_type in cell_types:
        try:
            result = find_markers(
                adata,
                f"{cell_type}_{stimulated}",
                f"{cell_type}_{control}",
                groupby="celltype_condition",
                method=de_params["method"],
                layer=layer,
                corr_method=de_params["corr_method"],
                min_pct=de_params["min_pct"],
                logfc_threshold=de_params["logfc_threshold"],
                min_cells_per_group=de_params["min_cells_per_group"],
                fdr_threshold=de_params["fdr_threshold"],
                fc_threshold=de_params["fc_threshold"],
            )
        except ValueError as err:
            print(f"  ⚠️  Skipping {cell_type}: {err}")
            continue

        result["cell_type"] = cell_type
        result["contrast"] = contrast
        results.append(result)

        n_up = int(result["upregulated"].sum())
        n_down = int(result["downregulated"].sum())
        print(f"  ✓ {cell_type}: {n_up + n_down} significant genes ({n_up} up, {n_down} down)")

    if results:
        return pd.concat(results, ignore_index=True)
    else:
        return None


def find_conserved_markers(
    adata,
    cluster,
    cluster_key,
    grouping_key,
    method="wilcoxon",
    layer=None,
    min_pct=0.1,
    logfc_threshold=0.1,
    only_pos=False,
    min_cells_per_group=3,
):
    """Markers of one cluster that hold in every condition

    The cluster is tested against all other cells separately inside each
    condition; only genes reported in every condition are kept. Per-condition
    p-values are combined with the maximum and with Wilkinson's minimum-p
    method, ``1 - (1 - min p)^k``.

    Args:
        adata: AnnData object (integrated clusters, log-normalized values in .raw)
        cluster: Cluster (or cell type) label to characterize
        cluster_key: obs column holding ``cluster``
        grouping_key: obs column with the condition labels

    Returns:
        DataFrame with per-condition columns prefixed "<condition>_" plus
        max_pval and minimump_p_val, sorted by minimump_p_val
    """
    conditions = adata.obs[grouping_key]
    if isinstance(conditions.dtype, pd.CategoricalDtype):
        levels = [str(c) for c in conditions.cat.categories]
    else:
        levels = sorted(conditions.astype(str).unique())
    conditions = conditions.astype(str)

    tables = []
    for level in levels:
        mask = (conditions == level).values
        if not mask.any():
            continue
        try:
            result = find_markers(
                adata[mask],
                str(cluster),
                "rest",
                groupby=cluster_key,
                method=method,
                layer=layer,
                min_pct=min_pct,
                logfc_threshold=logfc_threshold,
                only_pos=only_pos,
                min_cells_per_group=min_cells_per_group,
            )
        except ValueError as err:
            print(f"  ⚠️  Skipping {grouping_key}={level}: {err}")
            continue

        result = result.set_index("gene")[["logFC", "P.Value", "adj.P.Val", "pct.1", "pct.2"]]
        tables.append(result.add_prefix(f"{level}_"))

    if not tables:
        raise ValueError(
            f"Cluster '{cluster}' could not be tested in any level of '{grouping_key}'"
        )

    conserved = pd.concat(tables, axis=1, join="inner")
    pval_cols = [c for c in conserved.columns if c.endswith("_P.Value")]
    min_p = conserved[pval_cols].min(axis=1)
    conserved["max_pval"] = conserved[pval_cols].max(axis=1)
    conserved["minimump_p_val"] = 1 - (1 - min_p) ** len(pval_cols)

    conserved = conserved.sort_values("minimump_p_val")
    conserved.index.name = "gene"

    print(f"  ✓ {len(conserved)} markers of '{cluster}' shared by {len(tables)} conditions")

    return conserved.reset_index()


def average_expression(adata, groupby, layer=None):
    """Average expression per group

    Values are averaged in linear space and reported as log1p.

    Args:
        adata: AnnData object with log-normalized values
        groupby: obs column to group cells by
        layer: Optional layer instead of .raw

    Returns:
        DataFrame of genes x groups
    """
    X, var_names = _expression_matrix(adata, layer)
    labels = adata.obs[groupby]
    if isinstance(labels.dtype, pd.CategoricalDtype):
        groups = [str(c) for c in labels.cat.categories]
    else:
        groups = list(pd.unique(labels.astype(str)))
    labels = labels.astype(str).values

    averages = {}
    for group in groups:
        mask = labels == group
        if not mask.any():
            continue
        sub = X[mask]
        if sparse.issparse(sub):
            mean = np.asarray(sub.expm1().mean(axis=0)).ravel()
        else:
            mean = np.expm1(np.asarray(sub)).mean(axis=0)
        averages[group] = np.log1p(mean)

    return pd.DataFrame(averages, index=var_names)


def create_pseudobulk(
    adata,
    sample_key,
    celltype_key,
    condition_key,
    min_cells=10,
    layer=None,
):
    """Create pseudobulk samples by aggregating cells

    Cells are summed per sample, condition and cell type.

    Args:
        adata: AnnData object with raw counts (in .X or ``layer``)
        sample_key: obs column with the replicate / donor id
        celltype_key: obs column with cell type annotation
        condition_key: obs column with condition labels
        min_cells: Minimum cells required per pseudobulk sample
        layer: Optional layer holding raw counts

    Returns:
        Tuple of (pseudobulk_df [genes x groups], sample_info_df)
    """
    print("Creating pseudobulk samples...")

    for key in (sample_key, celltype_key, condition_key):
        if key not in adata.obs.columns:
            raise KeyError(f"Column '{key}' not found in adata.obs")

    if layer is not None:
        X = adata.layers[layer]
    else:
        X = adata.X
    var_names = adata.var_names

    # A donor measured in both conditions gives one sample per condition
    group_ids = (
        adata.obs[sample_key].astype(str)
        + "--"
        + adata.obs[condition_key].astype(str)
        + "--"
        + adata.obs[celltype_key].astype(str)
    )

    pseudobulk_data = []
    sample_info = []

    for group_id in pd.unique(group_ids):
        mask = (group_ids == group_id).values
        n_cells = int(mask.sum())

        if n_cells < min_cells:
            continue

        group_counts = X[mask].sum(axis=0)
        pseudobulk_data.append(np.asarray(group_counts).ravel())

        sample_meta = adata.obs.loc[mask].iloc[0]
        sample_info.append(
            {
                "group_id": group_id,
                "sample_id": str(sample_meta[sample_key]),
                "celltype": str(sample_meta[celltype_key]),
                "condition": str(sample_meta[condition_key]),
                "n_cells": n_cells,
            }
        )

    sample_info_df = pd.DataFrame(
        sample_info, columns=["group_id", "sample_id", "celltype", "condition", "n_cells"]
    )
    if pseudobulk_data:
        pb_matrix = np.vstack(pseudobulk_data).T  # genes x samples
    else:
        pb_matrix = np.zeros((len(var_names), 0))
    pb_df = pd.DataFrame(pb_matrix, index=var_names, columns=sample_info_df["group_id"].tolist())

    print(f"Created {pb_df.shape[1]} pseudobulk samples from {pb_df.shape[0]} genes")

    return pb_df, sample_info_df


def filter_genes_for_de(pb_df, min_count=5, min_samples=2):
    """Filter genes for differential expression analysis

    Args:
        pb_df: Pseudobulk expression DataFrame
        min_count: Minimum count threshold
        min_samples: Minimum number of samples

    Returns:
        Filtered pseudobulk DataFrame
    """
    expressed_mask = (pb_df >= min_count).sum(axis=1) >= min_samples
    pb_filtered = pb_df.loc[expressed_mask]

    print(f"  Kept {pb_filtered.shape[0]} genes after filtering")

    return pb_filtered


def run_de_with_deseq2(counts_df, sample_info_df, contrast_name, group1, group2,
                       de_params, cell_type):
    """Run DESeq2 differential expression for a single contrast

    Args:
        counts_df: Count matrix (genes × samples)
        sample_info_df: Sample metadata DataFrame
        contrast_name: Name of the contrast
        group1: Test condition
        group2: Reference condition
        de_params: DE parameters dictionary
        cell_type: Cell type being analyzed

    Returns:
        DataFrame with DE results or None
    """
    mask = sample_info_df["condition"].isin([group1, group2])
    contrast_samples = sample_info_df[mask].copy()

    if len(contrast_samples) < 4:
        print(f"  ⚠️  Skipping {contrast_name}: Only {len(contrast_samples)} samples")
        return None

    print(f"  Testing {contrast_name} ({(contrast_samples['condition']==group1).sum()} "
          f"vs {(contrast_samples['condition']==group2).sum()} samples) [DESeq2]")

    contrast_samples["condition"] = pd.Categorical(
        contrast_samples["condition"], categories=[group2, group1]
    )
    contrast_counts = counts_df[contrast_samples["group_id"]]

    # PyDESeq2 expects integer counts as samples × genes
    counts_transposed = pd.DataFrame(
        np.round(contrast_counts.values).astype(int).T,
        index=contrast_counts.columns,
        columns=contrast_counts.index,
    )
    metadata_indexed = contrast_samples.set_index("group_id")

    inference = DefaultInference(n_cpus=1)
    try:
        dds = DeseqDataSet(
            counts=counts_transposed,
            metadata=metadata_indexed,
            design="~condition",
            refit_cooks=True,
            inference=inference,
            quiet=True,
        )
        dds.deseq2()

        stat_res = DeseqStats(
            dds, contrast=["condition", group1, group2], inference=inference, quiet=True
        )
        stat_res.summary()
    except Exception as err:
        print(f"  ✗ Error running DESeq2: {err}")
        print(f"     counts shape = {counts_transposed.shape} (samples × genes)")
        print("     Try use_deseq2=False to use the t-test method instead")
        return None

    results_df = stat_res.results_df.rename(
        columns={
            "log2FoldChange": "logFC",
            "pvalue": "P.Value",
            "padj": "adj.P.Val",
            "baseMean": "AveExpr",
        }
    )
    results_df["gene"] = results_df.index
    results_df["cell_type"] = cell_type
    results_df["contrast"] = contrast_name
    results_df = _add_significance_flags(
        results_df, de_params["fdr_threshold"], de_params["fc_threshold"]
    )

    n_up = int(results_df["upregulated"].sum())
    n_down = int(results_df["downregulated"].sum())
    print(f"    ✓ {n_up + n_down} significant genes ({n_up} up, {n_down} down)")

    return results_df[["gene", "logFC", "P.Value", "adj.P.Val", "AveExpr",
                       "cell_type", "contrast", "significant", "upregulated", "downregulated"]
                      ].reset_index(drop=True)


def run_de_with_ttest(counts_df, sample_info_df, contrast_name, group1, group2,
                      de_params, cell_type):
    """Fallback Welch t-test on log-CPM (not recommended for RNA-seq)

    Args:
        counts_df: Count matrix (genes × samples)
        sample_info_df: Sample metadata DataFrame
        contrast_name: Name of the contrast
        group1: Test condition
        group2: Reference condition
        de_params: DE parameters dictionary
        cell_type: Cell type being analyzed

    Returns:
        DataFrame with DE results or None
    """
    mask1 = sample_info_df["condition"] == group1
    mask2 = sample_info_df["condition"] == group2

    if mask1.sum() < 2 or mask2.sum() < 2:
        print(f"  ⚠️  Skipping {contrast_name}: need 2 samples per group "
              f"({mask1.sum()} vs {mask2.sum()})")
        return None

    print(f"  Testing {contrast_name} ({mask1.sum()} vs {mask2.sum()} samples) [t-test]")

    lib_sizes = counts_df.sum(axis=0)
    log_cpm = np.log2(counts_df.div(lib_sizes, axis=1) * 1e6 + 1)

    group1_data = log_cpm.loc[:, sample_info_df.loc[mask1, "group_id"]].values
    group2_data = log_cpm.loc[:, sample_info_df.loc[mask2, "group_id"]].values

    with np.errstate(divide="ignore", invalid="ignore"):
        _, pvals = stats.ttest_ind(group1_data, group2_data, axis=1, equal_var=False)

    mean1 = group1_data.mean(axis=1)
    mean2 = group2_data.mean(axis=1)
    contrast_df = pd.DataFrame(
        {
            "gene": log_cpm.index,
            "logFC": mean1 - mean2,
            "P.Value": pvals,
            "AveExpr": (mean1 + mean2) / 2,
            "cell_type": cell_type,
            "contrast": contrast_name,
        }
    )
    # Constant genes give NaN p-values
    contrast_df = contrast_df.dropna(subset=["P.Value"]).reset_index(drop=True)
    if contrast_df.empty:
        return None

    contrast_df["adj.P.Val"] = multipletests(contrast_df["P.Value"], method="fdr_bh")[1]
    contrast_df = _add_significance_flags(
        contrast_df, de_params["fdr_threshold"], de_params["fc_threshold"]
    )

    n_up = int(contrast_df["upregulated"].sum())
    n_down = int(contrast_df["downregulated"].sum())
    print(f"    ✓ {n_up + n_down} significant genes ({n_up} up, {n_down} down)")

    return contrast_df


def run_pseudobulk_de(pb_df, sample_info_df, cell_type, control, stimulated, de_params,
                      min_samples_per_group=2, min_genes=100, use_deseq2=True):
    """Replicate-aware stimulated vs control test for one cell type

    Args:
        pb_df: Pseudobulk expression DataFrame (genes × samples)
        sample_info_df: Sample metadata DataFrame
        cell_type: Cell type to analyze
        control: Control condition label (reference)
        stimulated: Stimulated condition label
        de_params: Dictionary of DE parameters (needs 'min_count', 'min_samples_expr',
            'fdr_threshold', 'fc_threshold')
        min_samples_per_group: Minimum number of samples per condition
        min_genes: Minimum genes left after filtering
        use_deseq2: Whether to use DESeq2 (True) or the t-test fallback (False)

    Returns:
        DataFrame with DE results or None
    """
    print(f"\n{'='*60}")
    print(f"PSEUDOBULK DE: {cell_type}")
    print(f"{'='*60}")

    ct_samples = sample_info_df[sample_info_df["celltype"] == cell_type].copy()
    counts_per_condition = ct_samples["condition"].value_counts()
    for condition in (control, stimulated):
        if counts_per_condition.get(condition, 0) < min_samples_per_group:
            print(f"⚠️  Skipping {cell_type}: "
                  f"{counts_per_condition.get(condition, 0)} {condition} samples")
            return None

    ct_counts = filter_genes_for_de(
        pb_df[ct_samples["group_id"]],
        min_count=de_params["min_count"],
        min_samples=de_params["min_samples_expr"],
    )

    if ct_counts.shape[0] < min_genes:
        print(f"⚠️  Skipping {cell_type}: Only {ct_counts.shape[0]} genes after filtering")
        return None

    print(f"  Analyzing {ct_counts.shape[0]:,} genes across {len(ct_samples)} samples")

    contrast_name = f"{stimulated}_vs_{control}"
    if use_deseq2:
        return run_de_with_deseq2(
            ct_counts, ct_samples, contrast_name, stimulated, control, de_params, cell_type
        )
    return run_de_with_ttest(
        ct_counts, ct_samples, contrast_name, stimulated, control, de_params, cell_type
    )


def plot_volcano(de_results, title="", fc_threshold=0.25,
                 pval_threshold=0.05, n_label=10, save_path=None):
    """Plot volcano plot for DE results

    Args:
        de_results: DE results DataFrame (gene, logFC, P.Value, adj.P.Val)
        title: Plot title
        fc_threshold: Log2FC threshold for coloring
        pval_threshold: Adjusted p-value threshold for coloring
        n_label: Number of top genes (by P.Value) to label
        save_path: Path to save figure
    """
    if len(de_results) == 0:
        print(f"No results to plot for {title}")
        return

    results = de_results.copy()
    results["neg_log10_pval"] = -np.log10(results["P.Value"] + 1e-300)

    results["category"] = "Not significant"
    results.loc[
        (results["adj.P.Val"] < pval_threshold) & (results["logFC"] > fc_threshold),
        "category",
    ] = "Upregulated"
    results.loc[
        (results["adj.P.Val"] < pval_threshold) & (results["logFC"] < -fc_threshold),
        "category",
    ] = "Downregulated"

    fig, ax = plt.subplots(figsize=(10, 8))

    ns_data = results[results["category"] == "Not significant"]
    ax.scatter(ns_data["logFC"], ns_data["neg_log10_pval"],
               c="gray", alpha=0.5, s=20, label="Not significant")

    up_data = results[results["category"] == "Upregulated"]
    if len(up_data) > 0:
        ax.scatter(up_data["logFC"], up_data["neg_log10_pval"],
                   c="red", alpha=0.7, s=30, label=f"Upregulated (n={len(up_data)})")

    down_data = results[results["category"] == "Downregulated"]
    if len(down_data) > 0:
        ax.scatter(down_data["logFC"], down_data["neg_log10_pval"],
                   c="blue", alpha=0.7, s=30, label=f"Downregulated (n={len(down_data)})")

    for _, row in results.nsmallest(n_label, "P.Value").iterrows():
        ax.annotate(row["gene"], (row["logFC"], row["neg_log10_pval"]),
                    fontsize=8, xytext=(3, 3), textcoords="offset points")

    ax.axvline(fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axvline(-fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axhline(-np.log10(pval_threshold), color="black", linestyle="--",
               linewidth=1, alpha=0.5)

    ax.set_xlabel("Log2 Fold Change", fontsize=12)
    ax.set_ylabel("-Log10(P-value)", fontsize=12)
    ax.set_title(f"{title}\nVolcano Plot", fontsize=14, fontweight="bold")
    ax.legend(loc="best")
    ax.grid(alpha=0.3)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()


def plot_average_expression_scatter(
    adata,
    cell_type,
    celltype_key,
    condition_key,
    control,
    stimulated,
    label_genes=None,
    n_label=10,
    save_path=None,
):
    """Scatter of average expression in control vs stimulated cells of one type

    Genes off the diagonal respond to the stimulation.

    Args:
        adata: AnnData object with log-normalized values in .raw
        cell_type: Cell type to plot
        celltype_key: obs column with cell type annotation
        condition_key: obs column with condition labels
        control: Control condition label (x axis)
        stimulated: Stimulated condition label (y axis)
        label_genes: Genes to label (default: largest absolute differences)
        n_label: Number of genes labelled when label_genes is None
        save_path: Path to save figure

    Returns:
        DataFrame of average expression (genes x conditions)
    """
    mask = (adata.obs[celltype_key].astype(str) == str(cell_type)).values
    if not mask.any():
        raise ValueError(f"No cells annotated as '{cell_type}' in '{celltype_key}'")

    avg = average_expression(adata[mask], condition_key)
    for condition in (control, stimulated):
        if condition not in avg.columns:
            raise ValueError(f"No {cell_type} cells in condition '{condition}'")

    if label_genes is None:
        diff = (avg[stimulated] - avg[control]).abs()
        label_genes = diff.nlargest(n_label).index.tolist()
    label_genes = [g for g in label_genes if g in avg.index]

    fig, ax = plt.subplots(figsize=(6, 6))
    sns.scatterplot(x=avg[control], y=avg[stimulated], s=10, color="gray",
                    edgecolor=None, ax=ax)
    sns.scatterplot(x=avg.loc[label_genes, control], y=avg.loc[label_genes, stimulated],
                    s=25, color="red", edgecolor=None, ax=ax)
    for gene in label_genes:
        ax.annotate(gene, (avg.loc[gene, control], avg.loc[gene, stimulated]),
                    fontsize=8, xytext=(3, 3), textcoords="offset points")

    lim = float(np.nanmax(avg[[control, stimulated]].values)) * 1.05
    ax.plot([0, lim], [0, lim], color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.set_xlabel(f"{control} (log1p mean expression)")
    ax.set_ylabel(f"{stimulated} (log1p mean expression)")
    ax.set_title(cell_type)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return avg


def plot_de_summary(de_results, save_path=None):
    """Plot summary of differential expression results

    Args:
        de_results: DataFrame with DE results for several cell types
        save_path: Path to save figure

    Returns:
        DataFrame with up/down counts per cell type and contrast
    """
    print("Plotting DE summary...")

    counts = (
        de_results.groupby(["cell_type", "contrast"])[["upregulated", "downregulated"]]
        .sum()
        .astype(int)
        .reset_index()
    )
    counts["n_genes"] = counts["upregulated"] + counts["downregulated"]

    plot_data = counts.set_index("cell_type")[["upregulated", "downregulated"]]
    plot_data = plot_data.sort_values("upregulated", ascending=False)

    fig, ax = plt.subplots(figsize=(max(6, 0.6 * len(plot_data) + 2), 5))
    plot_data.plot(kind="bar", ax=ax, color=["#d62728", "#1f77b4"])
    ax.set_title("Significant DE genes per cell type")
    ax.set_xlabel("Cell type")
    ax.set_ylabel("Number of genes")
    plt.xticks(rotation=45, ha="right")
    plt.tight_layout()

    if save_path:
        plt.savefig(Path(save_path), dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return counts
