import numpy as np
import pandas as pd
import pytest

from scrna_integration.processing import (
    normalize_data,
    select_variable_features,
    scale_and_reduce,
    run_neighbors_umap_clustering,
    process_unintegrated,
    plot_embeddings,
    choose_leiden_resolution,
    _pick_resolution,
)


def _small_workflow(adata):
    return process_unintegrated(
        adata,
        n_top_genes=40,
        hvg_flavor="seurat",
        n_pcs=10,
        n_neighbors=10,
        resolution=0.5,
    )


def test_normalize_data_keeps_counts_and_raw(raw_adata):
    counts = raw_adata.X.toarray()
    adata = normalize_data(raw_adata, target_sum=1e4)

    np.testing.assert_allclose(adata.layers["counts"].toarray(), counts)
    assert adata.raw is not None
    assert adata.raw.n_vars == adata.n_vars

    totals = np.expm1(adata.layers["lognorm"].toarray()).sum(axis=1)
    np.testing.assert_allclose(totals, 1e4, rtol=1e-3)


def test_select_variable_features_clamps_n_top(normalized_adata):
    adata = select_variable_features(normalized_adata, n_top_genes=10_000, flavor="seurat")
    assert "highly_variable" in adata.var.columns
    assert adata.var["highly_variable"].sum() <= adata.n_vars


def test_scale_and_reduce_limits_components(normalized_adata):
    adata = select_variable_features(normalized_adata, n_top_genes=20, flavor="seurat")
    adata = scale_and_reduce(adata, n_pcs=50)

    assert adata.var["highly_variable"].all()
    assert adata.obsm["X_pca"].shape[1] == min(50, adata.n_vars - 1)
    assert np.abs(adata.X).max() <= 10 + 1e-6


def test_process_unintegrated(raw_adata):
    adata = _small_workflow(raw_adata)

    assert "X_pca" in adata.obsm and "X_umap" in adata.obsm
    assert adata.obs["leiden"].nunique() >= 2
    # log-normalized values of every gene stay available for DE
    assert adata.raw.n_vars == raw_adata.n_vars
    assert adata.n_vars < raw_adata.n_vars


def test_unintegrated_clusters_split_by_condition(raw_adata):
    adata = _small_workflow(raw_adata)

    per_cluster = adata.obs.groupby("leiden", observed=True)["stim"].agg(
        lambda s: s.astype(str).nunique()
    )
    # the condition effect dominates: most clusters hold a single condition
    assert (per_cluster == 1).mean() >= 0.5


def test_neighbors_use_rep_must_exist(normalized_adata):
    with pytest.raises(KeyError):
        run_neighbors_umap_clustering(normalized_adata, use_rep="X_missing")


def test_choose_leiden_resolution_writes_sweep(tmp_path, raw_adata):
    adata = _small_workflow(raw_adata)

    resolution = choose_leiden_resolution(
        adata,
        resolution_grid=[0.3, 0.6, 1.0],
        min_cluster_size=5,
        annotation_key="seurat_annotations",
        save_dir=tmp_path,
    )
    assert resolution in (0.3, 0.6, 1.0)

    sweep = pd.read_csv(tmp_path / "leiden_resolution_sweep.csv")
    assert list(sweep["resolution"]) == [0.3, 0.6, 1.0]
    assert sweep["ari"].between(-1, 1).all()
    assert "leiden_0.30" in adata.obs.columns


def test_plot_embeddings_saves(tmp_path, raw_adata):
    adata = _small_workflow(raw_adata)
    plot_embeddings(adata, ["stim", "leiden"], save_dir=tmp_path, filename="umap.png")
    assert (tmp_path / "umap.png").exists()


def _sweep(rows):
    return pd.DataFrame(
        rows, columns=["resolution", "n_clusters", "silhouette", "small_cluster_fraction"]
    )


def test_pick_resolution_prefers_fewer_small_clusters_near_best():
    sweep = _sweep([
        (0.2, 3, 0.50, 0.10),
        (0.4, 5, 0.51, 0.00),
        (0.6, 6, 0.52, 0.05),
        (0.8, 9, 0.40, 0.00),
    ])
    # 0.8 has no small clusters but its silhouette is too far from the best
    assert _pick_resolution(sweep) == 0.4


def test_pick_resolution_ties_on_cluster_count_then_resolution():
    sweep = _sweep([
        (0.3, 6, 0.60, 0.0),
        (0.5, 4, 0.59, 0.0),
        (0.7, 4, 0.60, 0.0),
    ])
    assert _pick_resolution(sweep) == 0.5

    assert _pick_resolution(_sweep([(0.9, 4, 0.6, 0.0), (0.5, 4, 0.6, 0.0)])) == 0.5


def test_pick_resolution_without_silhouettes():
    sweep = _sweep([
        (0.2, 1, np.nan, 0.0),
        (0.4, 2, np.nan, 0.0),
        (0.6, 3, np.nan, 0.0),
    ])
    assert _pick_resolution(sweep) == 0.4

    single = _sweep([(0.2, 1, np.nan, 0.0), (0.4, 1, np.nan, 0.0)])
    assert _pick_resolution(single) == 0.2


def test_choose_leiden_resolution_dedupes_grid(tmp_path, raw_adata):
    adata = _small_workflow(raw_adata)

    resolution = choose_leiden_resolution(
        adata, resolution_grid=[0.6, 0.3, 0.6, 0.30000001], min_cluster_size=5,
        save_dir=tmp_path,
    )
    assert resolution in (0.3, 0.6)

    sweep = pd.read_csv(tmp_path / "leiden_resolution_sweep.csv")
    assert list(sweep["resolution"]) == [0.3, 0.6]
    assert "ari" not in sweep.columns
