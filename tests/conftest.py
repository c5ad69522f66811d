import numpy as np
import pandas as pd
import pytest

import anndata as ad

from anndata import AnnData

import bonemarrowmappy as bmm


N_GENES = 120
N_MARKERS = 30
BROAD = {"A": "Progenitor", "B": "Mature"}
PSEUDOTIME = {"A": 0.0, "B": 1.0}


def simulate_counts(
    n_per_type: int = 50,
    celltypes=("A", "B"),
    seed: int = 0,
    prefix: str = "cell",
    batch: str = "s1",
    batch_shift: float = 1.0,
) -> AnnData:
    """Two well separated cell types: each overexpresses its own block of marker genes."""
    rng = np.random.default_rng(seed)
    genes = [f"gene{i}" for i in range(N_GENES)]
    base = np.full(N_GENES, 2.0)

    blocks, labels = [], []
    for i, celltype in enumerate(["A", "B"]):
        if celltype not in celltypes:
            continue
        mean = base.copy()
        mean[i * N_MARKERS:(i + 1) * N_MARKERS] = 30.0
        mean[N_GENES // 2:] *= batch_shift
        blocks.append(rng.poisson(mean, size=(n_per_type, N_GENES)))
        labels += [celltype] * n_per_type

    X = np.vstack(blocks).astype(np.float64)
    obs = pd.DataFrame(
        {
            "CellType_Annotation": labels,
            "CellType_Broad": [BROAD[c] for c in labels],
            "Pseudotime": [PSEUDOTIME[c] for c in labels],
            "CyclePhase": ["G1" if j % 2 else "S" for j in range(len(labels))],
            "sample": batch,
        },
        index=[f"{prefix}{j}" for j in range(len(labels))],
    )
    return AnnData(X=X, obs=obs, var=pd.DataFrame(index=genes))


@pytest.fixture(scope="session")
def reference_counts():
    return simulate_counts(n_per_type=50, seed=0, prefix="ref")


@pytest.fixture(scope="session")
def reference(reference_counts):
    return bmm.pp.build_reference(
        reference_counts,
        n_top_genes=None,
        n_comps=10,
        umap_kwargs={"n_neighbors": 15},
        random_state=0,
    )


@pytest.fixture
def query_counts():
    adata_s1 = simulate_counts(n_per_type=20, seed=1, prefix="q1_", batch="s1")
    adata_s2 = simulate_counts(
        n_per_type=20, seed=2, prefix="q2_", batch="s2", batch_shift=1.3
    )
    return ad.concat([adata_s1, adata_s2])


@pytest.fixture
def mapped_query(query_counts, reference):
    adata = bmm.tl.map_embedding(query_counts, reference, key="sample")
    adata = bmm.tl.mapping_error(adata, reference)
    return bmm.tl.mapping_qc(adata, MAD_threshold=2.5)


def toy_reference(coords, labels, pseudotime=None, broad=None) -> bmm.ReferenceAtlas:
    """Reference whose harmonized, PCA and UMAP coordinates are all ``coords``."""
    coords = np.asarray(coords, dtype=np.float64)
    n, d = coords.shape
    obs = pd.DataFrame(
        {"CellType_Annotation": labels}, index=[f"r{i}" for i in range(n)]
    )
    if pseudotime is not None:
        obs["Pseudotime"] = pseudotime
    if broad is not None:
        obs["CellType_Broad"] = broad

    adata = AnnData(
        X=np.zeros((n, d)),
        obs=obs,
        var=pd.DataFrame(
            {"mean": np.zeros(d), "std": np.ones(d)},
            index=[f"g{i}" for i in range(d)],
        ),
    )
    adata.varm["PCs"] = np.eye(d)
    adata.obsm["X_pca_harmony"] = coords
    adata.obsm["X_umap"] = coords[:, :2]
    adata.uns["harmony"] = {
        "Nr": np.array([float(n)]),
        "C": coords.sum(axis=0, keepdims=True),
        "K": 1,
        "sigma": np.array([0.1]),
        "R": np.ones((1, n)),
    }
    return bmm.ReferenceAtlas(adata)


def toy_query(coords, qc=None, basis=("X_pca_harmony", "X_umap")) -> AnnData:
    coords = np.asarray(coords, dtype=np.float64)
    n = coords.shape[0]
    adata = AnnData(
        X=np.zeros((n, coords.shape[1])),
        obs=pd.DataFrame(index=[f"q{i}" for i in range(n)]),
    )
    adata.obs["mapping_error_QC"] = pd.Categorical(
        ["Pass"] * n if qc is None else qc, categories=["Pass", "Fail"]
    )
    for key in basis:
        adata.obsm[key] = coords[:, :2] if key == "X_umap" else coords
    return adata
