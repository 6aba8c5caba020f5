# %% [markdown]
# # Notebook 2: Differential Expression Across Conditions
#
# **Condition Integration & DE Tutorial - Part 2 of 2**
#
# **📥 Input:** `outputs/integrated_data.h5ad` (from Notebook 1)
# **📤 Output:** `outputs/differential_expression_results/`
#
# ---
#
# ## Overview
#
# With control and stimulated cells aligned, every cell type is represented in
# both conditions. We can now:
#
# 1. Find **conserved markers**: genes that identify a cell type regardless of condition
# 2. Compare marker expression **between conditions** in a dot plot
# 3. Run a **Wilcoxon rank-sum test** for stimulated vs control cells of one cell type
# 4. Visualize the interferon response (volcano, average expression, feature plots)
# 5. Repeat the test for every cell type
# 6. Re-test with **pseudobulk** DESeq2, which treats donors as replicates
#
# ---

# %% [markdown]
# ## 1. Setup & Load Data

# %%
import warnings
from pathlib import Path

import scanpy as sc

from scrna_integration import params
from scrna_integration.data_loader import load_dataset, validate_obs_columns
from scrna_integration.annotation import (
    MARKER_GENES,
    ISG_GENES,
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

sc.settings.verbosity = 1
warnings.filterwarnings("ignore")

DATASET = params.DATASET
DE_PARAMS = params.DE_PARAMS
CONDITION = DATASET["condition_key"]
CELLTYPE = DATASET["celltype_key"]
CONTROL, STIMULATED = DATASET["control"], DATASET["stimulated"]
TARGET = DE_PARAMS["target_celltype"]  # 🔧 Cell type for the focused test

OUTPUT_DIR = Path("outputs/differential_expression_results/")
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

adata = sc.read_h5ad("outputs/integrated_data.h5ad")
validate_obs_columns(adata, [CONDITION, CELLTYPE, "leiden"])

print(f"✓ Loaded: {adata.n_obs:,} cells")
print(f"  Integration: {adata.uns['integration']['method']} "
      f"on {adata.uns['integration']['use_rep']}")

if adata.raw is None:
    raise ValueError("No log-normalized data in .raw - re-run Notebook 1")
print(f"✓ Log-normalized data available for {adata.raw.n_vars:,} genes")

# %% [markdown]
# ## 2. Switch the Data View
#
# Integration produced a *corrected embedding* that is ideal for clustering
# and visualization, but it is not gene expression. Statistical tests must run
# on the **log-normalized expression** of each gene, kept in `.raw`.
# Every DE function in this notebook reads `.raw` unless a `layer` is passed.
#
# We also create a combined label such as `CD14 Mono_STIM`, so we can compare
# any cell type between conditions.

# %%
adata = create_condition_column(adata, CELLTYPE, CONDITION)
print(adata.obs["celltype_condition"].value_counts().head(10))

# %% [markdown]
# ## 3. Conserved Markers
#
# A conserved marker is up-regulated in the target cell type **in both
# conditions**. We test the cell type against all other cells inside each
# condition separately and keep genes found in both. The p-values are combined
# with `max_pval` and Wilkinson's minimum-p (`1 - (1 - min p)^k`).

# %%
conserved = find_conserved_markers(
    adata,
    TARGET,
    CELLTYPE,
    CONDITION,
    method=DE_PARAMS["method"],
    min_pct=DE_PARAMS["min_pct"],
    logfc_threshold=DE_PARAMS["logfc_threshold"],
    only_pos=True,
)
conserved.to_csv(OUTPUT_DIR / "conserved_markers.csv", index=False)
conserved.head(15)

# %% [markdown]
# ## 4. Marker Genes Across Conditions
#
# Canonical markers per cell type, with each cell type shown once per
# condition. Most markers look the same in both conditions; genes such as
# `CCL2` in monocytes change strongly with stimulation.

# %%
plot_marker_dotplot(adata, MARKER_GENES, groupby="celltype_condition")

# %% [markdown]
# ## 5. Wilcoxon Test: Stimulated vs Control
#
# For the target cell type we compare stimulated against control cells with a
# **Wilcoxon rank-sum test** on every gene, then correct for multiple testing
# (Benjamini-Hochberg).
#
# Columns:
# * `logFC` – log2 fold change, stimulated over control
# * `pct.1` / `pct.2` – fraction of stimulated / control cells expressing the gene
# * `P.Value` / `adj.P.Val` – raw and adjusted p-values
#
# ⚠️ Each cell is treated as an independent observation, so p-values are
# overly optimistic. Section 8 repeats the test with donors as replicates.

# %%
de_results = find_markers(
    adata,
    f"{TARGET}_{STIMULATED}",
    f"{TARGET}_{CONTROL}",
    groupby="celltype_condition",
    method=DE_PARAMS["method"],
    corr_method=DE_PARAMS["corr_method"],
    min_pct=DE_PARAMS["min_pct"],
    logfc_threshold=DE_PARAMS["logfc_threshold"],
    fdr_threshold=DE_PARAMS["fdr_threshold"],
    fc_threshold=DE_PARAMS["fc_threshold"],
)
de_results.to_csv(OUTPUT_DIR / f"de_{TARGET.replace(' ', '_')}.csv", index=False)

print(f"✓ {int(de_results['upregulated'].sum())} up, "
      f"{int(de_results['downregulated'].sum())} down")
de_results.head(15)

# %% [markdown]
# ## 6. Plot the Results

# %%
plot_volcano(
    de_results,
    title=f"{TARGET} - {STIMULATED} vs {CONTROL}",
    fc_threshold=DE_PARAMS["fc_threshold"],
    pval_threshold=DE_PARAMS["fdr_threshold"],
)

# %% [markdown]
# Average expression of every gene in control (x) vs stimulated (y) cells.
# Genes far above the diagonal are induced by interferon.

# %%
avg = plot_average_expression_scatter(
    adata,
    TARGET,
    CELLTYPE,
    CONDITION,
    CONTROL,
    STIMULATED,
    label_genes=["ISG15", "LY6E", "IFI6", "ISG20", "MX1", "IFIT2", "IFIT1", "CXCL10", "CCL8"],
)

# %% [markdown]
# Interferon-stimulated genes on the integrated UMAP, split by condition. The
# induction is visible in **all** cell types, not only in the target.

# %%
plot_feature_split(adata, ISG_GENES, CONDITION)

# %% [markdown]
# ## 7. Every Cell Type
#
# The same test for each annotated cell type. Cell types with too few cells in
# either condition are skipped.

# %%
all_de = run_celltype_condition_de(
    adata, CELLTYPE, CONDITION, CONTROL, STIMULATED, de_params=DE_PARAMS
)
if all_de is not None:
    all_de.to_csv(OUTPUT_DIR / "de_all_celltypes.csv", index=False)
    summary = plot_de_summary(all_de)
    print(summary.to_string(index=False))

# %% [markdown]
# ## 8. Pseudobulk DE (donors as replicates)
#
# **Pseudobulk** sums the raw counts of all cells from the same donor and cell
# type, producing one "bulk" sample per donor. A negative binomial model
# (DESeq2) then compares stimulated against control samples. Variation between
# donors is now part of the test, so the results generalize to new donors.
#
# This needs a replicate column and the raw counts of all genes, so we reload
# the original dataset and copy the annotation over.

# %%
REPLICATE = DATASET["replicate_key"]
counts = load_dataset(DATASET["path"], backup_url=DATASET["backup_url"])

if REPLICATE in counts.obs.columns:
    counts = counts[counts.obs_names.isin(adata.obs_names)].copy()
    pb_df, sample_info_df = create_pseudobulk(
        counts, REPLICATE, CELLTYPE, CONDITION, min_cells=DE_PARAMS["min_cells"]
    )
    pb_results = run_pseudobulk_de(
        pb_df, sample_info_df, TARGET, CONTROL, STIMULATED, DE_PARAMS
    )
    if pb_results is not None:
        pb_results.to_csv(OUTPUT_DIR / "pseudobulk_de.csv", index=False)
        plot_volcano(pb_results, title=f"{TARGET} pseudobulk - {STIMULATED} vs {CONTROL}",
                     fc_threshold=DE_PARAMS["fc_threshold"],
                     pval_threshold=DE_PARAMS["fdr_threshold"])
else:
    print(f"⚠️  No '{REPLICATE}' column in the dataset; pseudobulk DE skipped")

# %% [markdown]
# ### 🔍 Interpretation
#
# * Interferon-response genes (`ISG15`, `IFI6`, `IFIT1`, `MX1`) are among the
#   most significant genes in **both** the per-cell and the pseudobulk test.
# * The per-cell Wilcoxon test usually reports many more significant genes
#   than pseudobulk, because it treats thousands of cells as independent.
#   Prefer pseudobulk when claims should hold across donors.
