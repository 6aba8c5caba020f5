import matplotlib

matplotlib.use("Agg")

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from scrna_integration import params
from scrna_integration.processing import normalize_data

CELL_TYPES = ["CD14 Mono", "B", "CD4 Naive T"]
MARKERS = {
    "CD14 Mono": ["CD14", "LYZ", "S100A9", "CCL2"],
    "B": ["MS4A1", "CD79A"],
    "CD4 Naive T": ["CD3D", "SELL"],
}
ISGS = ["ISG15", "IFI6", "IFIT1", "IFIT3", "MX1", "CXCL10"]
MT_GENES = ["MT-CO1", "MT-ND1", "MT-ATP6"]
N_SHIFTED = 20


def make_ifnb_like(n_per_group=15, n_background=120, seed=0):
    """
    Small two-condition PBMC-like dataset:
    - conditions CTRL / STIM, 3 cell types, 2 donors each
    - marker block per cell type, ISG block induced in every STIM cell
    - the first N_SHIFTED background genes shifted in STIM (condition effect)
    - cells shuffled so conditions are interleaved
    """
    rng = np.random.default_rng(seed)
    marker_genes = [g for genes in MARKERS.values() for g in genes]
    background = [f"GENE{i}" for i in range(n_background)]
    genes = marker_genes + ISGS + MT_GENES + background
    index = {g: i for i, g in enumerate(genes)}

    base = rng.uniform(0.5, 3.0, size=len(genes))
    blocks = []
    obs_rows = []
    for condition in ["CTRL", "STIM"]:
        for cell_type in CELL_TYPES:
            for donor in ["donor1", "donor2"]:
                rate = base * rng.uniform(0.9, 1.1)
                for gene in MARKERS[cell_type]:
                    rate[index[gene]] += 15
                if condition == "STIM":
                    for gene in ISGS:
                        rate[index[gene]] += 20
                    shifted = [index[g] for g in background[:N_SHIFTED]]
                    rate[shifted] *= 4
                blocks.append(rng.poisson(rate, size=(n_per_group, len(genes))))
                obs_rows += [
                    {"stim": condition, "seurat_annotations": cell_type, "replicate": donor}
                ] * n_per_group

    X = np.vstack(blocks).astype(np.float32)
    obs = pd.DataFrame(obs_rows)
    obs.index = [f"cell{i}" for i in range(len(obs))]

    order = rng.permutation(len(obs))
    adata = ad.AnnData(
        X=sparse.csr_matrix(X[order]),
        obs=obs.iloc[order].copy(),
        var=pd.DataFrame(index=genes),
    )
    return adata


@pytest.fixture
def raw_adata():
    return make_ifnb_like()


@pytest.fixture
def normalized_adata():
    adata = make_ifnb_like()
    return normalize_data(adata, target_sum=1e4)


@pytest.fixture
def restore_params():
    """Snapshot the module-level parameter dicts and restore them afterwards"""
    snapshot = {name: dict(section) for name, section in params._SECTIONS.items()}
    yield params
    for name, section in params._SECTIONS.items():
        section.clear()
        section.update(snapshot[name])
