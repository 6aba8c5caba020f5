import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scrna_integration.params import DE_PARAMS
from scrna_integration.differential_expression import (
    RESULT_COLUMNS,
    create_condition_column,
    find_markers,
    run_celltype_condition_de,
    find_conserved_markers,
    average_expression,
    create_pseudobulk,
    filter_genes_for_de,
    run_de_with_deseq2,
    run_de_with_ttest,
    run_pseudobulk_de,
    plot_volcano,
    plot_average_expression_scatter,
    plot_de_summary,
)
import scrna_integration.differential_expression as de_module
from conftest import ISGS


@pytest.fixture
def labelled_adata(normalized_adata):
    return create_condition_column(normalized_adata, "seurat_annotations", "stim")


def _mono_stim_vs_ctrl(adata, **kwargs):
    return find_markers(
        adata, "CD14 Mono_STIM", "CD14 Mono_CTRL", groupby="celltype_condition", **kwargs
    )


def test_create_condition_column(normalized_adata):
    adata = create_condition_column(normalized_adata, "seurat_annotations", "stim")

    labels = set(adata.obs["celltype_condition"].cat.categories)
    assert "CD14 Mono_STIM" in labels
    assert "CD4 Naive T_CTRL" in labels
    assert len(labels) == 6


def test_find_markers_recovers_interferon_genes(labelled_adata):
    results = _mono_stim_vs_ctrl(labelled_adata)

    assert list(results.columns) == RESULT_COLUMNS
    up = set(results.loc[results["upregulated"], "gene"])
    assert set(ISGS) <= up
    assert results["P.Value"].is_monotonic_increasing


def test_find_markers_uses_all_genes_from_raw(labelled_adata):
    # subsetting .X to a few genes must not change what is tested
    subset = labelled_adata[:, labelled_adata.var_names[:5]].copy()
    results = _mono_stim_vs_ctrl(subset)
    assert "ISG15" in set(results["gene"])


def test_find_markers_layer_view(labelled_adata):
    results = _mono_stim_vs_ctrl(labelled_adata, layer="lognorm")
    assert set(ISGS) <= set(results.loc[results["upregulated"], "gene"])


def test_find_markers_missing_layer(labelled_adata):
    with pytest.raises(KeyError):
        _mono_stim_vs_ctrl(labelled_adata, layer="integrated")


def test_find_markers_only_pos_and_thresholds(labelled_adata):
    results = _mono_stim_vs_ctrl(labelled_adata, only_pos=True, logfc_threshold=0.5)

    assert (results["logFC"] > 0).all()
    assert (results["logFC"].abs() >= 0.5).all()
    assert (results[["pct.1", "pct.2"]].max(axis=1) >= 0.1).all()


def test_find_markers_too_few_cells(labelled_adata):
    with pytest.raises(ValueError, match="Cell group 'pDC_STIM' has 0 cells"):
        find_markers(labelled_adata, "pDC_STIM", "pDC_CTRL", groupby="celltype_condition")


def test_find_markers_against_rest(labelled_adata):
    results = find_markers(
        labelled_adata, "B", "rest", groupby="seurat_annotations", only_pos=True
    )
    assert {"MS4A1", "CD79A"} <= set(results.loc[results["significant"], "gene"])


def test_run_celltype_condition_de_skips_missing_types(labelled_adata):
    results = run_celltype_condition_de(
        labelled_adata,
        "seurat_annotations",
        "stim",
        "CTRL",
        "STIM",
        cell_types=["CD14 Mono", "B", "pDC"],
    )

    assert set(results["cell_type"]) == {"CD14 Mono", "B"}
    assert (results["contrast"] == "STIM_vs_CTRL").all()


def test_run_celltype_condition_de_none_when_nothing_testable(labelled_adata):
    results = run_celltype_condition_de(
        labelled_adata, "seurat_annotations", "stim", "CTRL", "STIM", cell_types=["pDC"]
    )
    assert results is None


def test_find_conserved_markers(labelled_adata):
    conserved = find_conserved_markers(
        labelled_adata, "CD14 Mono", "seurat_annotations", "stim", only_pos=True
    )

    assert {"CD14", "LYZ"} <= set(conserved["gene"])
    for column in ("CTRL_logFC", "STIM_logFC", "CTRL_P.Value", "STIM_P.Value", "max_pval"):
        assert column in conserved.columns

    min_p = conserved[["CTRL_P.Value", "STIM_P.Value"]].min(axis=1)
    np.testing.assert_allclose(conserved["minimump_p_val"], 1 - (1 - min_p) ** 2)
    assert conserved["minimump_p_val"].is_monotonic_increasing


def test_find_conserved_markers_unknown_cluster(labelled_adata):
    with pytest.raises(ValueError, match="could not be tested"):
        find_conserved_markers(labelled_adata, "pDC", "seurat_annotations", "stim")


def test_average_expression_in_linear_space():
    X = np.log1p(np.array([[0.0, 1.0], [2.0, 3.0], [4.0, 4.0]]))
    adata = ad.AnnData(
        X=X,
        obs=pd.DataFrame({"group": ["a", "a", "b"]}, index=["c0", "c1", "c2"]),
        var=pd.DataFrame(index=["g1", "g2"]),
    )

    avg = average_expression(adata, "group")
    assert list(avg.columns) == ["a", "b"]
    assert avg.loc["g1", "a"] == pytest.approx(np.log1p(1.0))
    assert avg.loc["g2", "a"] == pytest.approx(np.log1p(2.0))
    assert avg.loc["g2", "b"] == pytest.approx(np.log1p(4.0))


def test_create_pseudobulk_sums_counts(raw_adata):
    pb_df, sample_info = create_pseudobulk(
        raw_adata, "replicate", "seurat_annotations", "stim", min_cells=5
    )

    # 2 donors x 2 conditions x 3 cell types
    assert pb_df.shape == (raw_adata.n_vars, 12)
    assert list(sample_info.columns) == ["group_id", "sample_id", "celltype", "condition", "n_cells"]
    assert (sample_info["n_cells"] == 15).all()

    mask = (
        (raw_adata.obs["replicate"] == "donor1")
        & (raw_adata.obs["stim"] == "STIM")
        & (raw_adata.obs["seurat_annotations"] == "B")
    ).values
    expected = np.asarray(raw_adata.X[mask].sum(axis=0)).ravel()
    np.testing.assert_allclose(pb_df["donor1--STIM--B"].values, expected)


def test_create_pseudobulk_min_cells(raw_adata):
    pb_df, sample_info = create_pseudobulk(
        raw_adata, "replicate", "seurat_annotations", "stim", min_cells=100
    )
    assert pb_df.shape[1] == 0
    assert sample_info.empty


def test_create_pseudobulk_missing_column(raw_adata):
    with pytest.raises(KeyError, match="donor"):
        create_pseudobulk(raw_adata, "donor", "seurat_annotations", "stim")


def test_filter_genes_for_de():
    pb_df = pd.DataFrame(
        {"s1": [10, 0, 6], "s2": [10, 0, 1], "s3": [10, 9, 1]},
        index=["keep", "one_sample", "low"],
    )
    filtered = filter_genes_for_de(pb_df, min_count=5, min_samples=2)
    assert list(filtered.index) == ["keep"]


def test_pseudobulk_ttest_finds_interferon_genes(raw_adata):
    pb_df, sample_info = create_pseudobulk(
        raw_adata, "replicate", "seurat_annotations", "stim", min_cells=5
    )
    results = run_pseudobulk_de(
        pb_df, sample_info, "CD14 Mono", "CTRL", "STIM", DE_PARAMS,
        min_genes=10, use_deseq2=False,
    )

    assert (results["contrast"] == "STIM_vs_CTRL").all()
    isg = results.set_index("gene").loc[ISGS]
    assert (isg["logFC"] > 0).all()


def test_run_pseudobulk_de_needs_replicates(raw_adata):
    pb_df, sample_info = create_pseudobulk(
        raw_adata, "replicate", "seurat_annotations", "stim", min_cells=5
    )
    one_donor = sample_info[sample_info["sample_id"] == "donor1"]

    result = run_pseudobulk_de(
        pb_df, one_donor, "CD14 Mono", "CTRL", "STIM", DE_PARAMS, min_genes=10
    )
    assert result is None


def test_run_de_with_ttest_drops_constant_genes():
    counts = pd.DataFrame(
        {"a1": [0, 100, 50], "a2": [0, 120, 40], "b1": [0, 10, 45], "b2": [0, 12, 55]},
        index=["absent", "up", "noise"],
    )
    info = pd.DataFrame(
        {"group_id": ["a1", "a2", "b1", "b2"], "condition": ["STIM", "STIM", "CTRL", "CTRL"]}
    )

    results = run_de_with_ttest(counts, info, "STIM_vs_CTRL", "STIM", "CTRL", DE_PARAMS, "B")
    assert "absent" not in set(results["gene"])
    assert results.set_index("gene").loc["up", "logFC"] > 0
    assert results["adj.P.Val"].notna().all()

def test_plot_volcano_saves(tmp_path, labelled_adata):
    results = _mono_stim_vs_ctrl(labelled_adata)
    path = tmp_path / "volcano.png"

    plot_volcano(results, title="CD14 Mono", save_path=path)
    assert path.exists()


def test_plot_average_expression_scatter(tmp_path, labelled_adata):
    path = tmp_path / "avg.png"
    avg = plot_average_expression_scatter(
        labelled_adata, "CD14 Mono", "seurat_annotations", "stim", "CTRL", "STIM",
        save_path=path,
    )

    assert path.exists()
    assert (avg.loc["ISG15", "STIM"] > avg.loc["ISG15", "CTRL"])


def test_plot_average_expression_scatter_unknown_type(labelled_adata):
    with pytest.raises(ValueError, match="No cells annotated"):
        plot_average_expression_scatter(
            labelled_adata, "pDC", "seurat_annotations", "stim", "CTRL", "STIM"
        )


def test_plot_de_summary_counts(tmp_path, labelled_adata):
    results = run_celltype_condition_de(
        labelled_adata, "seurat_annotations", "stim", "CTRL", "STIM"
    )
    counts = plot_de_summary(results, save_path=tmp_path / "summary.png")

    assert set(counts["cell_type"]) == {"CD14 Mono", "B", "CD4 Naive T"}
    assert (counts["n_genes"] == counts["upregulated"] + counts["downregulated"]).all()
    assert (counts["upregulated"] >= len(ISGS)).all()


def test_pseudobulk_deseq2(raw_adata):
    pb_df, sample_info = create_pseudobulk(
        raw_adata, "replicate", "seurat_annotations", "stim", min_cells=5
    )
    results = run_pseudobulk_de(
        pb_df, sample_info, "CD14 Mono", "CTRL", "STIM", DE_PARAMS, min_genes=10
    )

    assert results is not None
    assert {"gene", "logFC", "P.Value", "adj.P.Val", "AveExpr"} <= set(results.columns)
    assert results.set_index("gene").loc["ISG15", "logFC"] > 1


def test_run_de_with_deseq2_fit_failure_returns_none(monkeypatch, raw_adata):
    class FailingDataSet:
        def __init__(self, *args, **kwargs):
            pass

        def deseq2(self):
            raise RuntimeError("dispersion fit did not converge")

    monkeypatch.setattr(de_module, "DeseqDataSet", FailingDataSet)
    pb_df, sample_info = create_pseudobulk(
        raw_adata, "replicate", "seurat_annotations", "stim", min_cells=5
    )
    mono = sample_info[sample_info["celltype"] == "CD14 Mono"]

    result = run_de_with_deseq2(
        pb_df, mono, "STIM_vs_CTRL", "STIM", "CTRL", DE_PARAMS, "CD14 Mono"
    )
    assert result is None
