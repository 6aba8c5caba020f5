import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scrna_integration.data_loader import set_condition_order, split_by_condition
from scrna_integration.processing import process_unintegrated
from scrna_integration.integration import (
    order_cells_by_batch,
    correct_embedding,
    integrate_conditions,
    condition_mixing,
    mixing_summary,
    plot_condition_composition,
)


def _labelled(clusters, conditions):
    obs = pd.DataFrame(
        {"leiden": clusters, "stim": conditions},
        index=[f"c{i}" for i in range(len(clusters))],
    )
    return ad.AnnData(X=np.zeros((len(obs), 1), dtype=np.float32), obs=obs)


def _integrate(raw_adata, method="scanorama", **kwargs):
    set_condition_order(raw_adata, "stim", ["CTRL", "STIM"])
    return integrate_conditions(
        split_by_condition(raw_adata, "stim"),
        "stim",
        method=method,
        n_top_genes=40,
        hvg_flavor="seurat",
        n_pcs=10,
        n_neighbors=10,
        knn=10,
        **kwargs,
    )


def test_order_cells_by_batch_makes_blocks():
    adata = _labelled(["0"] * 6, ["STIM", "CTRL", "STIM", "CTRL", "CTRL", "STIM"])
    adata.obs["stim"] = pd.Categorical(adata.obs["stim"], categories=["CTRL", "STIM"])

    ordered = order_cells_by_batch(adata, "stim")
    assert list(ordered.obs["stim"].astype(str)) == ["CTRL"] * 3 + ["STIM"] * 3
    # stable: original relative order within a batch is kept
    assert list(ordered.obs_names[:3]) == ["c1", "c3", "c4"]


def test_order_cells_by_batch_noop_when_contiguous():
    adata = _labelled(["0"] * 4, ["CTRL", "CTRL", "STIM", "STIM"])
    assert order_cells_by_batch(adata, "stim") is adata


def test_condition_mixing_entropy():
    adata = _labelled(
        ["0"] * 10 + ["1"] * 4,
        ["CTRL"] * 5 + ["STIM"] * 5 + ["CTRL"] * 4,
    )
    mixing = condition_mixing(adata, "leiden", "stim")

    assert list(mixing.columns) == ["n_cells", "CTRL", "STIM", "mixing_entropy"]
    assert mixing.loc["0", "mixing_entropy"] == pytest.approx(1.0)
    assert mixing.loc["1", "mixing_entropy"] == pytest.approx(0.0)
    assert mixing.loc["1", "CTRL"] == pytest.approx(1.0)
    assert mixing_summary(mixing) == pytest.approx(10 / 14)


def test_condition_mixing_sorts_numeric_clusters():
    adata = _labelled(["10", "2", "1", "2"], ["CTRL", "STIM", "CTRL", "STIM"])
    mixing = condition_mixing(adata, "leiden", "stim")
    assert list(mixing.index) == ["1", "2", "10"]


def test_condition_mixing_single_condition():
    adata = _labelled(["0", "0", "1"], ["CTRL", "CTRL", "CTRL"])
    mixing = condition_mixing(adata, "leiden", "stim")
    assert (mixing["mixing_entropy"] == 0).all()


def test_correct_embedding_unknown_method(normalized_adata):
    with pytest.raises(ValueError, match="Unknown integration method"):
        correct_embedding(normalized_adata, "stim", method="combat")


def test_integrate_conditions_needs_two_conditions(raw_adata):
    single = {"CTRL": raw_adata[raw_adata.obs["stim"] == "CTRL"].copy()}
    with pytest.raises(ValueError, match="at least two conditions"):
        integrate_conditions(single, "stim")


def test_integrate_conditions_rejects_unknown_method(raw_adata):
    with pytest.raises(ValueError, match="Unknown integration method"):
        integrate_conditions(split_by_condition(raw_adata, "stim"), "stim", method="combat")


def test_integrate_conditions_scanorama(raw_adata):
    integrated = _integrate(raw_adata)

    assert integrated.uns["integration"] == {
        "method": "scanorama",
        "batch_key": "stim",
        "use_rep": "X_scanorama",
    }
    assert integrated.obsm["X_scanorama"].shape[0] == raw_adata.n_obs
    assert "X_umap" in integrated.obsm
    assert "leiden" in integrated.obs.columns
    assert list(integrated.obs["stim"].cat.categories) == ["CTRL", "STIM"]
    # all genes kept, log-normalized, for differential expression
    assert integrated.raw.n_vars == raw_adata.n_vars
    assert integrated.raw.X.max() < 20


def test_scanorama_moves_the_embedding(raw_adata):
    integrated = _integrate(raw_adata)

    corrected = integrated.obsm["X_scanorama"]
    assert corrected.shape == integrated.obsm["X_pca"].shape
    assert not np.allclose(corrected, integrated.obsm["X_pca"])


def test_plot_condition_composition_saves(tmp_path):
    adata = _labelled(["0", "0", "1", "1"], ["CTRL", "STIM", "CTRL", "CTRL"])
    mixing = condition_mixing(adata, "leiden", "stim")

    plot_condition_composition(mixing, ["CTRL", "STIM"], save_dir=tmp_path, filename="comp.png")
    assert (tmp_path / "comp.png").exists()


def test_integrate_conditions_harmony(raw_adata):
    integrated = _integrate(raw_adata, method="harmony")

    assert integrated.uns["integration"]["use_rep"] == "X_pca_harmony"
    corrected = integrated.obsm["X_pca_harmony"]
    assert corrected.shape == integrated.obsm["X_pca"].shape
    assert not np.allclose(corrected, integrated.obsm["X_pca"])
    assert "leiden" in integrated.obs.columns


@pytest.mark.parametrize("method", ["scanorama", "harmony"])
def test_integration_improves_condition_mixing(raw_adata, method):
    unintegrated = process_unintegrated(
        raw_adata.copy(),
        n_top_genes=40,
        hvg_flavor="seurat",
        n_pcs=10,
        n_neighbors=10,
        resolution=0.5,
    )
    before = mixing_summary(condition_mixing(unintegrated, "leiden", "stim"))

    integrated = _integrate(raw_adata, method=method)
    after = mixing_summary(condition_mixing(integrated, "leiden", "stim"))

    assert after > before


def test_integrate_conditions_auto_resolution(tmp_path, raw_adata):
    integrated = _integrate(
        raw_adata,
        auto_resolution=True,
        annotation_key="seurat_annotations",
        save_dir=tmp_path,
    )

    chosen = integrated.uns["leiden_optimal_resolution"]
    grid = np.round(np.arange(0.2, 1.25, 0.1), 2)
    assert np.isclose(grid, chosen).any()

    sweep = pd.read_csv(tmp_path / "leiden_resolution_sweep.csv")
    assert np.allclose(sweep["resolution"], grid)
    assert "ari" in sweep.columns
    assert (tmp_path / "leiden_sweep_diagnostics.png").exists()
    assert integrated.obs["leiden"].nunique() >= 2
