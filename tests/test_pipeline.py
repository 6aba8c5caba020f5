import json

import pandas as pd

import integration_de_analysis


def test_main_runs_end_to_end(tmp_path, raw_adata, restore_params):
    data_path = tmp_path / "ifnb.h5ad"
    raw_adata.write(data_path)

    config_path = tmp_path / "small.json"
    config_path.write_text(
        json.dumps(
            {
                "QC_FILTERS": {"min_genes": 10, "min_cells": 1},
                "NORMALIZATION_PARAMS": {"n_top_genes": 40, "hvg_flavor": "seurat"},
                "CLUSTERING_PARAMS": {"n_pcs": 10, "n_neighbors": 10},
                "INTEGRATION_PARAMS": {"knn": 10},
            }
        )
    )

    plots_dir = tmp_path / "plots"
    output_dir = tmp_path / "outputs"
    adata, de_results = integration_de_analysis.main(
        data_path=data_path,
        config_path=config_path,
        plots_dir_path=plots_dir,
        output_dir_path=output_dir,
    )

    assert adata.uns["integration"]["use_rep"] == "X_scanorama"
    assert "ISG15" in set(de_results.loc[de_results["upregulated"], "gene"])

    for name in (
        "integrated_data.h5ad",
        "condition_mixing.csv",
        "de_CD14_Mono.csv",
        "de_all_celltypes.csv",
        "conserved_markers_CD14_Mono.csv",
        "pseudobulk_de.csv",
    ):
        assert (output_dir / name).exists(), name
    for name in ("umap_unintegrated.png", "umap_integrated.png", "volcano_CD14_Mono.png"):
        assert (plots_dir / name).exists(), name

    mixing = pd.read_csv(output_dir / "condition_mixing.csv", index_col=0)
    assert mixing["mixing_entropy"].between(0, 1).all()
