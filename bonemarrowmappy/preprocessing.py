# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging
import warnings

from typing import Sequence

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from scipy import sparse

from ._utils import _harmony_integrate_python, _run_soft_kmeans
from .reference import ReferenceAtlas


logger = logging.getLogger("bonemarrowmappy")


def _check_counts(X, what: str = "counts") -> None:
    values = X.data if sparse.issparse(X) else np.asarray(X)
    if values.dtype.kind not in "biuf":
        raise ValueError(f"Non-numeric {what}: got dtype '{values.dtype}'")
    if values.size == 0:
        return
    if not np.isfinite(values).all():
        raise ValueError(f"{what.capitalize()} contain NaN or infinite values")
    if (values < 0).any():
        raise ValueError(f"{what.capitalize()} contain negative values")
    if values.dtype.kind == "f" and not np.all(np.mod(values, 1) == 0):
        warnings.warn(
            f"Non-integer {what} found. Raw counts are expected, "
            "the query is normalized the same way as the reference."
        )


def _check_cell_ids(cells: pd.Index, metadata: pd.DataFrame) -> None:
    if cells.has_duplicates:
        raise ValueError(
            "Duplicated cell IDs in the count matrix: "
            + ", ".join(map(str, cells[cells.duplicated()].unique()[:5]))
        )
    if metadata.index.has_duplicates:
        raise ValueError(
            "Duplicated cell IDs in the metadata: "
            + ", ".join(map(str, metadata.index[metadata.index.duplicated()].unique()[:5]))
        )

    only_counts = cells.difference(metadata.index)
    only_meta = metadata.index.difference(cells)
    if len(only_counts) or len(only_meta):
        raise ValueError(
            f"Cell IDs of the count matrix and the metadata don't match: "
            f"{len(only_counts)} cells without metadata (e.g. {list(only_counts[:3])}), "
            f"{len(only_meta)} metadata rows without counts (e.g. {list(only_meta[:3])})"
        )


def make_query(
    counts: pd.DataFrame | np.ndarray | sparse.spmatrix,
    metadata: pd.DataFrame,
    genes: Sequence[str] | None = None,
    cells: Sequence[str] | None = None,
) -> AnnData:
    """
    Builds a query ``AnnData`` (cells x genes) from a raw genes x cells count matrix
    and a per-cell metadata table, rejecting malformed input before any computation.

    :param counts: raw counts, genes x cells. A ``DataFrame`` carries gene and cell names itself
    :type counts: pd.DataFrame | np.ndarray | sparse.spmatrix
    :param metadata: per-cell metadata indexed by cell ID
    :type metadata: pd.DataFrame
    :param genes: gene names (rows of ``counts``), required unless ``counts`` is a ``DataFrame``
    :type genes: Sequence[str] | None, optional
    :param cells: cell IDs (columns of ``counts``), required unless ``counts`` is a ``DataFrame``
    :type cells: Sequence[str] | None, optional
    :return: query with raw counts in ``.X`` and ``.layers["counts"]``, metadata in ``.obs``
    """
    if isinstance(counts, pd.DataFrame):
        non_numeric = [
            col for col, dtype in counts.dtypes.items()
            if not pd.api.types.is_numeric_dtype(dtype) or pd.api.types.is_bool_dtype(dtype)
        ]
        if non_numeric:
            raise ValueError(
                f"Non-numeric counts for {len(non_numeric)} cells, e.g. {non_numeric[:3]}"
            )
        genes = counts.index.astype(str)
        cells = counts.columns.astype(str)
        X = counts.to_numpy()
    else:
        if genes is None or cells is None:
            raise ValueError(
                "`genes` and `cells` must be provided when counts are not a DataFrame"
            )
        genes = pd.Index(genes).astype(str)
        cells = pd.Index(cells).astype(str)
        X = counts
        if X.shape != (len(genes), len(cells)):
            raise ValueError(
                f"Count matrix shape {X.shape} doesn't match "
                f"{len(genes)} genes x {len(cells)} cells"
            )

    _check_counts(X)

    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)
    _check_cell_ids(cells, metadata)

    X = sparse.csr_matrix(X.T, dtype=np.float64)
    adata = AnnData(
        X=X,
        obs=metadata.loc[cells],
        var=pd.DataFrame(index=genes),
    )
    if adata.var_names.has_duplicates:
        logger.warning("Gene names are not unique, making them unique")
        adata.var_names_make_unique()
    adata.layers["counts"] = adata.X.copy()

    return adata


def validate_query(adata: AnnData, layer: str | None = None) -> None:
    """
    Checks a pre-bundled query: unique cell IDs and finite, non-negative numeric counts
    in ``adata.X`` (or ``adata.layers[layer]``). Raises ``ValueError`` otherwise.
    """
    if adata.obs_names.has_duplicates:
        raise ValueError(
            "Duplicated cell IDs in the query: "
            + ", ".join(adata.obs_names[adata.obs_names.duplicated()].unique()[:5])
        )
    X = adata.X if layer is None else adata.layers[layer]
    if X is None:
        raise ValueError("Query has no count matrix")
    _check_counts(X)


def harmony_integrate(
    adata: AnnData,
    key: list[str] | str,
    ref_basis_source: str = "X_pca",
    ref_basis_adjusted: str = "X_pca_harmony",
    ref_basis_loadings: str = "PCs",
    verbose: bool = False,
    random_seed: int = 1,
    **harmony_kwargs,
):
    """
    Run Harmony batch correction on a reference, save corrected output to ``adata.obsm``,
    save the cluster-mixture parameters needed for query mapping to ``adata.uns["harmony"]``

    :param adata: reference adata object with batch
    :type adata: AnnData
    :param key: which columns from ``adata.obs`` to use as batch keys (``vars_use`` parameter of Harmony)
    :type key: list[str] | str
    :param ref_basis_source: ``adata.obsm[ref_basis_source]`` will be used as input embedding to Harmony, defaults to "X_pca"
    :type ref_basis_source: str, optional
    :param ref_basis_adjusted: slot where to put corrected coordinates, defaults to "X_pca_harmony"
    :type ref_basis_adjusted: str, optional
    :param ref_basis_loadings: slot with feature loadings to the original embedding, defaults to "PCs"
    :type ref_basis_loadings: str, optional
    :param verbose: if to print logs of steps of integration, defaults to False
    :type verbose: bool, optional
    :param random_seed: random seed, defaults to 1
    :type random_seed: int, optional
    """
    logger.info("Harmony integration of the reference on '%s'", key)
    _harmony_integrate_python(
        adata=adata,
        key=key,
        ref_basis_source=ref_basis_source,
        ref_basis_adjusted=ref_basis_adjusted,
        ref_basis_loadings=ref_basis_loadings,
        verbose=verbose,
        random_state=random_seed,
        **harmony_kwargs,
    )


def build_reference(
    adata: AnnData,
    celltype_key: str = "CellType_Annotation",
    celltype_broad_key: str | None = "CellType_Broad",
    pseudotime_key: str | None = "Pseudotime",
    phase_key: str | None = "CyclePhase",
    batch_key: list[str] | str | None = None,
    n_top_genes: int | None = 2000,
    n_comps: int = 20,
    target_sum: float = 1e4,
    max_value: float | None = 10.0,
    K: int | None = None,
    sigma: float = 0.1,
    umap_kwargs: dict | None = None,
    harmony_kwargs: dict | None = None,
    random_state: int = 0,
) -> ReferenceAtlas:
    """
    Fits a mappable reference from raw counts of annotated cells:
    log(CP10K + 1) normalization, highly variable genes, scaling (means and stds saved),
    PCA (loadings saved), Harmony integration if ``batch_key`` is given
    or soft k-means clustering otherwise, and a UMAP model on the harmonized embedding.

    :param adata: annotated reference with raw counts in ``.X``
    :type adata: AnnData
    :param batch_key: batch columns to integrate with Harmony, defaults to None
    :type batch_key: list[str] | str | None, optional
    :param n_top_genes: number of highly variable genes; ``None`` uses all genes, defaults to 2000
    :type n_top_genes: int | None, optional
    :param n_comps: number of principal components, defaults to 20
    :type n_comps: int, optional
    :param K: number of soft k-means clusters when no batch is given, defaults to ``min(N / 30, 100)``
    :type K: int | None, optional
    :param sigma: soft k-means entropy regularization, defaults to 0.1
    :type sigma: float, optional
    :param umap_kwargs: ``umap.UMAP`` parameters, defaults to ``n_neighbors=30, metric="cosine", min_dist=0.3``
    :type umap_kwargs: dict | None, optional
    :return: reference atlas with a fitted UMAP model
    :rtype: ReferenceAtlas
    """
    import umap

    validate_query(adata)
    assert celltype_key in adata.obs, f"Column '{celltype_key}' not found in adata.obs"

    adata = adata.copy()
    adata.X = adata.X.astype(np.float64)
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)

    if n_top_genes is not None and n_top_genes < adata.n_vars:
        sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, batch_key=batch_key)
        adata = adata[:, adata.var["highly_variable"]].copy()

    adata.uns.pop("log1p", None)
    sc.pp.scale(adata, zero_center=True, max_value=max_value)
    if max_value is not None:
        adata.X[adata.X < -max_value] = -max_value

    n_comps = min(n_comps, adata.n_obs - 1, adata.n_vars - 1)
    # no centering: query coordinates are exactly scaled expression x loadings
    sc.tl.pca(adata, n_comps=n_comps, zero_center=False, random_state=random_state)
    adata.obsm["X_pca"] = np.asarray(adata.X @ adata.varm["PCs"])

    if batch_key is not None:
        harmony_integrate(
            adata, key=batch_key, random_seed=random_state, **(harmony_kwargs or {})
        )
    else:
        logger.info("No batch key given, running soft k-means on the reference PCA")
        adata.obsm["X_pca_harmony"] = adata.obsm["X_pca"].copy()
        adata.uns["harmony"] = _run_soft_kmeans(
            adata.obsm["X_pca"], K=K, sigma=sigma, random_state=random_state
        )

    adata.uns["bonemarrowmap"] = {
        "target_sum": float(target_sum),
        "max_value": np.inf if max_value is None else float(max_value),
    }

    umap_params = {"n_neighbors": 30, "metric": "cosine", "min_dist": 0.3}
    umap_params.update(umap_kwargs or {})
    umap_params["n_neighbors"] = min(umap_params["n_neighbors"], adata.n_obs - 1)
    umap_model = umap.UMAP(random_state=random_state, **umap_params)
    adata.obsm["X_umap"] = np.asarray(umap_model.fit_transform(adata.obsm["X_pca_harmony"]))

    return ReferenceAtlas(
        adata,
        umap_model=umap_model,
        celltype_key=celltype_key,
        celltype_broad_key=celltype_broad_key,
        pseudotime_key=pseudotime_key,
        phase_key=phase_key,
    )
