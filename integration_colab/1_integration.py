# %% [markdown]
# # Notebook 1: Integrating Control and Stimulated Cells
#
# **Condition Integration & DE Tutorial - Part 1 of 2**
#
# **📥 Input:** `data/ifnb.h5ad` (PBMCs, control vs interferon-beta stimulated)
# **📤 Output:** `outputs/integrated_data.h5ad`
# **➡️ Next:** `2_differential_expression.ipynb`
#
# ---
#
# ## Overview
#
# The dataset contains peripheral blood mononuclear cells from the same donors,
# split into two conditions: untreated (`CTRL`) and stimulated with interferon-beta
# (`STIM`). Interferon changes the expression of hundreds of genes in every
# cell type, so when both conditions are analysed together the cells separate
# **by condition first and by cell type second**.
#
# Integration (batch correction) aligns the two conditions so that matching cell
# types from each condition land in the same clusters. Once the cell types are
# shared, we can ask the interesting question: *how does each cell type respond
# to the stimulation?* (Notebook 2).
#
# **Key Steps:**
# 1. Load data and run basic QC
# 2. Standard workflow without integration (normalize → HVGs → PCA → UMAP → Leiden)
# 3. Split the dataset by condition
# 4. Integrate the conditions (mutual nearest neighbors with Scanorama)
# 5. Re-cluster on the integrated embedding and check condition mixing
#
# ---

# %% [markdown]
# ## 1. Setup & Parameters
#
# All tutorial parameters live in `scrna_integration/params.py`. Change them
# here (or via a JSON override file) and re-run the notebook.

# %%
import warnings
from pathlib import Path

import scanpy as sc

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
from scrna_integration.annotation import annotate_clusters

sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor="white")
warnings.filterwarnings("ignore")

DATASET = params.DATASET
CONDITION = DATASET["condition_key"]
CELLTYPE = DATASET["celltype_key"]
CONTROL, STIMULATED = DATASET["control"], DATASET["stimulated"]

PLOTS_DIR = Path("plots/notebook1")
PLOTS_DIR.mkdir(parents=True, exist_ok=True)
OUTPUT_DIR = Path("outputs")
OUTPUT_DIR.mkdir(exist_ok=True)

print(params.get_param_summary())

# %% [markdown]
# ## 2. Load Data
#
# The object holds raw UMI counts, the condition label (`stim`) and the
# published cell type annotation (`seurat_annotations`). The annotation is only
# used to *judge* integration; the clustering itself never sees it.

# %%
adata = load_dataset(DATASET["path"], backup_url=DATASET["backup_url"])
validate_obs_columns(adata, [CONDITION, CELLTYPE])
adata = set_condition_order(adata, CONDITION, [CONTROL, STIMULATED])

print(adata.obs[CONDITION].value_counts())
print(adata.obs[CELLTYPE].value_counts())

# %% [markdown]
# ## 3. Quality Control
#
# The cells were already filtered by the data authors, so the thresholds are
# permissive. Compare the two conditions: QC distributions should look alike.

# %%
QC = params.QC_FILTERS
adata = calculate_qc_metrics(adata, mt_pattern=QC["mt_pattern"])
plot_qc_metrics(adata, groupby=CONDITION)

adata = filter_cells_and_genes(
    adata,
    min_genes=QC["min_genes"],
    max_genes=QC["max_genes"],
    max_mt_pct=QC["max_mt_pct"],
    min_cells=QC["min_cells"],
)

# %% [markdown]
# ## 4. Analysis Without Integration
#
# The standard workflow on the merged data:
#
# * **Normalize** each cell to 10,000 counts and log-transform
# * Select **2,000 highly variable genes** (variance-stabilizing `seurat_v3` flavor on raw counts)
# * **Scale** and run **PCA** (30 components)
# * Build a **20-nearest-neighbor graph**, embed with **UMAP** and cluster with **Leiden** (resolution 0.5)

# %%
NORM = params.NORMALIZATION_PARAMS
CLUST = params.CLUSTERING_PARAMS

unintegrated = process_unintegrated(
    adata.copy(),
    target_sum=NORM["target_sum"],
    n_top_genes=NORM["n_top_genes"],
    hvg_flavor=NORM["hvg_flavor"],
    max_value=NORM["max_value"],
    n_pcs=CLUST["n_pcs"],
    n_neighbors=CLUST["n_neighbors"],
    resolution=CLUST["resolution"],
    random_state=CLUST["random_state"],
)

plot_embeddings(
    unintegrated,
    [CONDITION, CELLTYPE, "leiden"],
    save_dir=PLOTS_DIR,
    filename="umap_unintegrated.png",
    title_prefix="Unintegrated: ",
)

# %% [markdown]
# ### 🔍 What to look for
#
# Coloured by condition, the UMAP shows two offset copies of every population:
# CD14 monocytes from `CTRL` and from `STIM` sit in different places, and many
# Leiden clusters contain cells of only one condition. Clusters defined this way
# mix up "cell type" and "treatment", which makes comparisons across conditions
# hard to interpret.
#
# The bar plot below makes this quantitative. For every cluster we compute the
# fraction of cells from each condition and a **normalized entropy**: 1 means
# the cluster holds both conditions in equal parts, 0 means it holds only one.

# %%
mixing_before = condition_mixing(unintegrated, "leiden", CONDITION)
plot_condition_composition(
    mixing_before,
    [CONTROL, STIMULATED],
    save_dir=PLOTS_DIR,
    filename="condition_composition_unintegrated.png",
    title="Before integration",
)
print(f"Mean mixing entropy before integration: {mixing_summary(mixing_before):.3f}")

# %% [markdown]
# ## 5. Split by Condition and Integrate
#
# Integration works on the conditions as separate datasets:
#
# 1. **Split** the raw counts by `stim`
# 2. **Re-normalize** each condition on its own
# 3. Select **integration features**: genes ranked as variable within each
#    condition, combined across conditions
# 4. Scale and run PCA on the merged data
# 5. **Correct the PCA embedding** with Scanorama. For every pair of conditions
#    it finds *mutual nearest neighbors* (a control cell and a stimulated cell
#    that are each other's closest match) and uses these pairs as **anchors**.
#    The difference vectors between anchors, smoothed with a Gaussian kernel,
#    move the stimulated cells onto the control cells
# 6. Neighbors, UMAP and Leiden on the corrected embedding
#
# Set `INTEGRATION_PARAMS["method"] = "harmony"` to try Harmony instead,
# which iteratively clusters cells and removes condition-specific centroid offsets.

# %%
INTEG = params.INTEGRATION_PARAMS

by_condition = split_by_condition(adata, CONDITION)

integrated = integrate_conditions(
    by_condition,
    CONDITION,
    method=INTEG["method"],
    target_sum=NORM["target_sum"],
    n_top_genes=NORM["n_top_genes"],
    hvg_flavor=NORM["hvg_flavor"],
    max_value=NORM["max_value"],
    n_pcs=CLUST["n_pcs"],
    n_neighbors=CLUST["n_neighbors"],
    resolution=CLUST["resolution"],
    random_state=CLUST["random_state"],
    knn=INTEG["knn"],
    sigma=INTEG["sigma"],
    alpha=INTEG["alpha"],
    batch_size=INTEG["batch_size"],
    auto_resolution=CLUST["auto_resolution"],  # 🔧 True: pick the resolution by silhouette
    annotation_key=CELLTYPE,
    save_dir=PLOTS_DIR,
)

# %% [markdown]
# ## 6. Visualize the Integrated Data

# %%
plot_embeddings(
    integrated,
    [CONDITION, CELLTYPE, "leiden"],
    save_dir=PLOTS_DIR,
    filename="umap_integrated.png",
    title_prefix="Integrated: ",
)

plot_split_umap(
    integrated, CONDITION, CELLTYPE, save_dir=PLOTS_DIR, filename="umap_integrated_split.png"
)

# %% [markdown]
# ### 🔍 What to look for
#
# After integration, control and stimulated cells overlap and each Leiden
# cluster now corresponds to a cell type present in **both** conditions. The
# side-by-side panels show the same populations in the same positions.

# %%
mixing_after = condition_mixing(integrated, "leiden", CONDITION)
plot_condition_composition(
    mixing_after,
    [CONTROL, STIMULATED],
    save_dir=PLOTS_DIR,
    filename="condition_composition_integrated.png",
    title="After integration",
)

print(f"Mean mixing entropy before integration: {mixing_summary(mixing_before):.3f}")
print(f"Mean mixing entropy after integration:  {mixing_summary(mixing_after):.3f}")

# %% [markdown]
# ### Do the clusters match the published annotation?
#
# A good integration should not only mix conditions but also keep cell types
# apart. Each cluster should be dominated by one annotated cell type.

# %%
cluster_summary = annotate_clusters(integrated, CELLTYPE, cluster_key="leiden")
print(cluster_summary.to_string(index=False))

# %% [markdown]
# ## 7. Save
#
# The integrated object keeps:
#
# * `.X` – scaled values of the integration features
# * `.obsm["X_scanorama"]` (or `X_pca_harmony`) – the corrected embedding
# * `.raw` – log-normalized expression of **all genes**, used for DE in Notebook 2
# * `.layers["counts"]` – raw counts of the integration features

# %%
integrated.write(OUTPUT_DIR / "integrated_data.h5ad")
mixing_after.to_csv(OUTPUT_DIR / "condition_mixing.csv")
print(f"✓ Saved: {OUTPUT_DIR / 'integrated_data.h5ad'}")
