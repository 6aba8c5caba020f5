#!/usr/bin/env python3
"""
Single-cell RNA-seq condition integration and differential expression
Modular pipeline version of the tutorial notebooks

This script performs:
1. Dataset loading and QC
2. Unintegrated normalization, PCA, UMAP and clustering
3. Splitting by condition and integration of the conditions
4. Re-clustering on the integrated embedding and condition mixing checks
5. Differential expression on the log-normalized data (Wilcoxon, conserved
   markers, optional pseudobulk DESeq2)

uv run python integration_de_analysis.py --data data/ifnb.h5ad
"""

import re
import warnings
import argparse
import matplotlib
import scanpy as sc
from pathlib import Path

from scrna_integration import params
from scrna_integration.data_loader import (
    load_dataset,
    validate_obs_columns,
    set_condition_order,
    split_by_condition,
)
from scrna_integration.qc_utils import (
    calculate_qc_metrics,
    plot_qc_metrics,
    filter_cells_and_genes,
)
from scrna_integration.processing import (
    process_unintegrated,
    plot_embeddings,
    plot_split_umap,
)
from scrna_integration.integration import (
    integrate_conditions,
    condition_mixing,
    mixing_summary,
    plot_condition_composition,
)
from scrna_integration.annotation import (
    MARKER_GENES,
    ISG_GENES,
    annotate_clusters,
    plot_marker_dotplot,
    plot_feature_split,
)
from scrna_integration.differential_expression import (
    create_condition_column,
    find_markers,
    find_conserved_markers,
    run_celltype_condition_de,
    create_pseudobulk,
    run_pseudobulk_de,
    plot_volcano,
    plot_average_expression_scatter,
    plot_de_summary,
)

# Configure scanpy
sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")


def _safe_name(label):
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", str(label)).strip("_")


def main(
    data_path=None,
    backup_url=None,
    method=None,
    target_celltype=None,
    config_path=None,
    plots_dir_path="plots",
    output_dir_path="outputs",
    run_pseudobulk=True,
):
    """Main analysis pipeline

    Args:
        data_path: Dataset file (defaults to DATASET['path'])
        backup_url: Download URL used when data_path is missing
        method: Integration method (defaults to INTEGRATION_PARAMS['method'])
        target_celltype: Cell type for the focused DE (defaults to DE_PARAMS['target_celltype'])
        config_path: Optional JSON file with parameter overrides
        plots_dir_path: Directory where plots will be saved
        output_dir_path: Directory where tables and the integrated object are written
        run_pseudobulk: Run replicate-aware DE when a replicate column is present

    Returns:
        Tuple of (integrated AnnData, DE results for the target cell type)
    """
    print("Starting condition integration and DE pipeline...")

    if config_path:
        params.load_param_overrides(config_path)

    overrides = {}
    if data_path:
        overrides.setdefault("DATASET", {})["path"] = str(data_path)
    if backup_url:
        overrides.setdefault("DATASET", {})["backup_url"] = backup_url
    if method:
        overrides["INTEGRATION_PARAMS"] = {"method": method}
    if target_celltype:
        overrides["DE_PARAMS"] = {"target_celltype": target_celltype}
    if overrides:
        params.update_params(overrides)

    dataset = params.DATASET
    qc = params.QC_FILTERS
    norm = params.NORMALIZATION_PARAMS
    clust = params.CLUSTERING_PARAMS
    integ = params.INTEGRATION_PARAMS
    de_params = params.DE_PARAMS

    condition_key = dataset["condition_key"]
    celltype_key = dataset["celltype_key"]
    control, stimulated = dataset["control"], dataset["stimulated"]
    target = de_params["target_celltype"]

    plots_dir = Path(plots_dir_path)
    plots_dir.mkdir(parents=True, exist_ok=True)
    output_dir = Path(output_dir_path)
    output_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")

    print("\n" + params.get_param_summary() + "\n")

    # Step 1: Load data
    adata = load_dataset(dataset["path"], backup_url=dataset["backup_url"])
    validate_obs_columns(adata, [condition_key, celltype_key])
    adata = set_condition_order(adata, condition_key, [control, stimulated])

    # Step 2: QC
    adata = calculate_qc_metrics(adata, mt_pattern=qc["mt_pattern"])
    plot_qc_metrics(adata, groupby=condition_key, save_dir=plots_dir)
    adata = filter_cells_and_genes(
        adata,
        min_genes=qc["min_genes"],
        max_genes=qc["max_genes"],
        max_mt_pct=qc["max_mt_pct"],
        min_cells=qc["min_cells"],
    )

    # Step 3: Unintegrated analysis
    unintegrated = process_unintegrated(
        adata.copy(),
        target_sum=norm["target_sum"],
        n_top_genes=norm["n_top_genes"],
        hvg_flavor=norm["hvg_flavor"],
        max_value=norm["max_value"],
        n_pcs=clust["n_pcs"],
        n_neighbors=clust["n_neighbors"],
        resolution=clust["resolution"],
        random_state=clust["random_state"],
    )
    plot_embeddings(
        unintegrated,
        [condition_key, celltype_key, "leiden"],
        save_dir=plots_dir,
        filename="umap_unintegrated.png",
        title_prefix="Unintegrated: ",
    )
    mixing_before = condition_mixing(unintegrated, "leiden", condition_key)
    plot_condition_composition(
        mixing_before, [control, stimulated], save_dir=plots_dir,
        filename="condition_composition_unintegrated.png",
    )

    # Step 4: Split by condition and integrate
    by_condition = split_by_condition(adata, condition_key)
    integrated = integrate_conditions(
        by_condition,
        condition_key,
        method=integ["method"],
        target_sum=norm["target_sum"],
        n_top_genes=norm["n_top_genes"],
        hvg_flavor=norm["hvg_flavor"],
        max_value=norm["max_value"],
        n_pcs=clust["n_pcs"],
        n_neighbors=clust["n_neighbors"],
        resolution=clust["resolution"],
        random_state=clust["random_state"],
        knn=integ["knn"],
        sigma=integ["sigma"],
        alpha=integ["alpha"],
        batch_size=integ["batch_size"],
        auto_resolution=clust["auto_resolution"],
        annotation_key=celltype_key,
        save_dir=plots_dir,
    )

    # Step 5: Visualize the integrated embedding
    plot_embeddings(
        integrated,
        [condition_key, celltype_key, "leiden"],
        save_dir=plots_dir,
        filename="umap_integrated.png",
        title_prefix="Integrated: ",
    )
    plot_split_umap(
        integrated, condition_key, celltype_key, save_dir=plots_dir,
        filename="umap_integrated_split.png",
    )

    mixing_after = condition_mixing(integrated, "leiden", condition_key)
    plot_condition_composition(
        mixing_after, [control, stimulated], save_dir=plots_dir,
        filename="condition_composition_integrated.png",
    )
    mixing_after.to_csv(output_dir / "condition_mixing.csv")
    print("\nCondition mixing (mean normalized entropy):")
    print(f"  Before integration: {mixing_summary(mixing_before):.3f}")
    print(f"  After integration:  {mixing_summary(mixing_after):.3f}")

    annotate_clusters(integrated, celltype_key, cluster_key="leiden")

    # Step 6: Switch to the log-normalized RNA view for differential expression
    print("\nDifferential expression uses log-normalized expression (.raw), "
          "not the integrated embedding.")
    integrated = create_condition_column(integrated, celltype_key, condition_key)

    conserved = find_conserved_markers(
        integrated,
        target,
        celltype_key,
        condition_key,
        method=de_params["method"],
        min_pct=de_params["min_pct"],
        logfc_threshold=de_params["logfc_threshold"],
        only_pos=True,
        min_cells_per_group=de_params["min_cells_per_group"],
    )
    conserved.to_csv(output_dir / f"conserved_markers_{_safe_name(target)}.csv", index=False)

    plot_marker_dotplot(
        integrated, MARKER_GENES, groupby="celltype_condition", save_dir=plots_dir,
        filename="marker_genes_dotplot_by_condition.png",
    )

    # Step 7: One Wilcoxon test - stimulated vs control within the target cell type
    target_de = find_markers(
        integrated,
        f"{target}_{stimulated}",
        f"{target}_{control}",
        groupby="celltype_condition",
        method=de_params["method"],
        corr_method=de_params["corr_method"],
        min_pct=de_params["min_pct"],
        logfc_threshold=de_params["logfc_threshold"],
        min_cells_per_group=de_params["min_cells_per_group"],
        fdr_threshold=de_params["fdr_threshold"],
        fc_threshold=de_params["fc_threshold"],
    )
    target_de.to_csv(output_dir / f"de_{_safe_name(target)}.csv", index=False)
    print(f"\n{target}: {int(target_de['significant'].sum())} significant genes "
          f"({stimulated} vs {control})")
    print(target_de.head(10).to_string(index=False))

    # Step 8: Plot results
    plot_volcano(
        target_de,
        title=f"{target} - {stimulated} vs {control}",
        fc_threshold=de_params["fc_threshold"],
        pval_threshold=de_params["fdr_threshold"],
        save_path=plots_dir / f"volcano_{_safe_name(target)}.png",
    )
    plot_average_expression_scatter(
        integrated, target, celltype_key, condition_key, control, stimulated,
        save_path=plots_dir / f"avg_expression_{_safe_name(target)}.png",
    )
    plot_feature_split(
        integrated, ISG_GENES, condition_key, save_dir=plots_dir,
        filename="isg_feature_split.png",
    )

    all_de = run_celltype_condition_de(
        integrated, celltype_key, condition_key, control, stimulated, de_params=de_params
    )
    if all_de is not None:
        all_de.to_csv(output_dir / "de_all_celltypes.csv", index=False)
        plot_de_summary(all_de, save_path=plots_dir / "de_summary.png")

    # Step 9: Replicate-aware pseudobulk DE
    replicate_key = dataset["replicate_key"]
    if run_pseudobulk and replicate_key in adata.obs.columns:
        pb_df, sample_info_df = create_pseudobulk(
            adata, replicate_key, celltype_key, condition_key,
            min_cells=de_params["min_cells"],
        )
        pb_results = run_pseudobulk_de(
            pb_df, sample_info_df, target, control, stimulated, de_params
        )
        if pb_results is not None:
            pb_results.to_csv(output_dir / "pseudobulk_de.csv", index=False)
    elif run_pseudobulk:
        print(f"\n⚠️  No '{replicate_key}' column; skipping pseudobulk DE")

    # Save results
    output_path = output_dir / "integrated_data.h5ad"
    integrated.write(output_path)
    print(f"Saved integrated data to {output_path}")

    print("Analysis complete!")
    return integrated, target_de


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="scRNA-seq condition integration and differential expression"
    )
    parser.add_argument("--data", default=None, help="Dataset file (.h5ad)")
    parser.add_argument("--backup-url", default=None,
                        help="URL to download the dataset from when --data is missing")
    parser.add_argument(
        "--method",
        choices=list(params.INTEGRATION_METHODS),
        default=None,
        help="Integration method (default: INTEGRATION_PARAMS['method'])",
    )
    parser.add_argument("--celltype", default=None,
                        help="Cell type for the stimulated vs control test")
    parser.add_argument("--config", default=None, help="JSON file with parameter overrides")
    parser.add_argument("--plots-dir", default="plots",
                        help="Directory to write plots to (default: 'plots')")
    parser.add_argument("--output-dir", default="outputs",
                        help="Directory to write tables and h5ad to (default: 'outputs')")
    parser.add_argument("--skip-pseudobulk", action="store_true",
                        help="Do not run the replicate-aware pseudobulk test")
    args = parser.parse_args()

    adata, de_results = main(
        data_path=args.data,
        backup_url=args.backup_url,
        method=args.method,
        target_celltype=args.celltype,
        config_path=args.config,
        plots_dir_path=args.plots_dir,
        output_dir_path=args.output_dir,
        run_pseudobulk=not args.skip_pseudobulk,
    )
