# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import math

from pathlib import Path
from typing import Mapping, Sequence

import decoupler as dc
import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import issparse

from ._utils import _chunked_apply, _cluster_maha_dist, _mad_threshold
from .mapping import ReferenceMapper, SymphonyMapper
from .reference import ReferenceAtlas


logger = logging.getLogger("bonemarrowmappy")

QC_PASS = "Pass"
QC_FAIL = "Fail"


def _get_mapper(
    reference: ReferenceAtlas, mapper: ReferenceMapper | None, **kwargs
) -> ReferenceMapper:
    if mapper is not None:
        return mapper
    assert isinstance(
        reference, ReferenceAtlas
    ), "reference must be a ReferenceAtlas, see bonemarrowmappy.read_reference"
    return SymphonyMapper(reference, **kwargs)


def _require(adata: AnnData, step: str, obs=(), obsm=()) -> None:
    missing = [f"obs['{key}']" for key in obs if key not in adata.obs]
    missing += [f"obsm['{key}']" for key in obsm if key not in adata.obsm]
    if missing:
        raise ValueError(
            f"{', '.join(missing)} not found in adata_query. Run {step} first."
        )


def _record_stage(adata: AnnData, stage: str, **params) -> None:
    run = dict(adata.uns.get("bonemarrowmap", {}))
    run["stages"] = list(run.get("stages", [])) + [stage]
    run[stage] = {key: value for key, value in params.items() if value is not None}
    adata.uns["bonemarrowmap"] = run


def map_embedding(
    adata_query: AnnData,
    reference: ReferenceAtlas,
    key: list[str] | str | None = None,
    lamb: float | np.ndarray | None = None,
    sigma: float | np.ndarray | None = 0.1,
    min_batch_cells: int = 10,
    transferred_adjusted_basis: str = "X_pca_harmony",
    transferred_primary_basis: str = "X_pca_reference",
    mapper: ReferenceMapper | None = None,
) -> AnnData:
    """Runs Symphony mapping of raw-count ``adata_query`` into the reference harmonized space.

    :param adata_query: query AnnData object with raw counts in ``.X``
    :type adata_query: AnnData
    :param reference: reference atlas
    :type reference: ReferenceAtlas
    :param key: which of the columns from ``adata_query.obs`` to consider as batch keys, defaults to None
    :type key: list[str] | str | None, optional
    :param lamb: Ridge regularization parameter for the linear model, defaults to None (1 for every batch)
    :type lamb: float | np.ndarray | None, optional
    :param sigma: Entropy regularization parameter for soft k-means; None uses the reference sigma, defaults to 0.1
    :type sigma: float | np.ndarray | None, optional
    :param min_batch_cells: cells of batches with fewer cells get the correction of the whole query as one batch, defaults to 10
    :type min_batch_cells: int, optional
    :param transferred_adjusted_basis: in ``obsm[transferred_adjusted_basis]`` symphony-adjusted coords will be saved, defaults to "X_pca_harmony"
    :type transferred_adjusted_basis: str, optional
    :param transferred_primary_basis: in ``obsm[transferred_primary_basis]`` query coordinates in reference PCA will be saved, defaults to "X_pca_reference"
    :type transferred_primary_basis: str, optional
    :param mapper: mapper to use instead of :class:`SymphonyMapper`; its own ``sigma``, ``lamb``
        and ``min_batch_cells`` take precedence over the arguments, defaults to None
    :return: a copy of ``adata_query`` with the embeddings
    :rtype: AnnData
    """
    if isinstance(key, str):
        key = [key]
    if key is not None:
        missing = [k for k in key if k not in adata_query.obs]
        if missing:
            raise ValueError(f"Batch columns {missing} not found in adata_query.obs")

    mapper = _get_mapper(
        reference, mapper, sigma=sigma, lamb=lamb, min_batch_cells=min_batch_cells
    )

    adata = adata_query.copy()
    embeddings = mapper.harmonize(adata, key)

    adata.obsm[transferred_primary_basis] = embeddings["primary"]
    adata.obsm[transferred_adjusted_basis] = embeddings["adjusted"]
    adata.obsm[f"{transferred_adjusted_basis}_symphony_R"] = embeddings["R"].T

    _record_stage(
        adata,
        "map_embedding",
        key=key,
        sigma=getattr(mapper, "sigma", None),
        lamb=getattr(mapper, "lamb", None),
        min_batch_cells=getattr(mapper, "min_batch_cells", None),
        transferred_adjusted_basis=transferred_adjusted_basis,
        transferred_primary_basis=transferred_primary_basis,
    )
    return adata


def mapping_error(
    adata_query: AnnData,
    reference: ReferenceAtlas,
    query_basis_adjusted: str = "X_pca_harmony",
    transferred_primary_basis: str = "X_pca_reference",
    obs: str = "mapping_error_score",
    mapper: ReferenceMapper | None = None,
    batch_size: int = 10000,
    n_jobs: int | None = 1,
) -> AnnData:
    """
    Calculates the per-cell mapping error: Mahalanobis distance of the query cell
    to each reference cluster, weighted by the query cell cluster memberships.
    Higher values mean the cell is poorly represented by the reference.

    :param adata_query: query mapped with :func:`map_embedding`
    :type adata_query: AnnData
    :param reference: reference atlas
    :type reference: ReferenceAtlas
    :param query_basis_adjusted: basis passed to :func:`map_embedding`; cluster memberships are read
        from ``adata_query.obsm[f"{query_basis_adjusted}_symphony_R"]``, defaults to "X_pca_harmony"
    :type query_basis_adjusted: str, optional
    :param obs: at ``adata_query.obs[obs]`` the score will be saved, defaults to "mapping_error_score"
    :type obs: str, optional
    :return: a copy of ``adata_query`` with the score
    :rtype: AnnData
    """
    R_key = f"{query_basis_adjusted}_symphony_R"
    _require(
        adata_query,
        "tl.map_embedding",
        obsm=(transferred_primary_basis, R_key),
    )
    mapper = _get_mapper(reference, mapper, batch_size=batch_size, n_jobs=n_jobs)

    scores = mapper.mapping_error(
        {
            "primary": np.asarray(adata_query.obsm[transferred_primary_basis]),
            # [K, Nq]
            "R": np.asarray(adata_query.obsm[R_key]).T,
        }
    )

    bad = ~np.isfinite(scores)
    if bad.any():
        raise ValueError(
            f"Mapping error could not be computed for {bad.sum()} cells: "
            + ", ".join(adata_query.obs_names[bad][:5])
        )

    adata = adata_query.copy()
    adata.obs[obs] = scores
    _record_stage(adata, "mapping_error", obs=obs)
    return adata


def mapping_qc(
    adata_query: AnnData,
    MAD_threshold: float = 2.5,
    threshold_by_donor: bool = False,
    donor_key: str | None = None,
    min_cells_per_donor: int = 10,
    score_key: str = "mapping_error_score",
    obs: str = "mapping_error_QC",
) -> AnnData:
    """
    Flags cells whose mapping error exceeds ``median + MAD_threshold * MAD`` as "Fail",
    all the others (the boundary included) as "Pass".

    With ``threshold_by_donor`` the median and MAD are computed within each ``donor_key`` group.
    Groups with fewer than ``min_cells_per_donor`` cells or zero MAD use the global threshold.
    The applied threshold is saved to ``adata_query.obs[f"{score_key}_threshold"]``.
    """
    _require(adata_query, "tl.mapping_error", obs=(score_key,))
    if threshold_by_donor:
        if donor_key is None:
            raise ValueError("`donor_key` must be provided with threshold_by_donor=True")
        _require(adata_query, "tl.mapping_qc with an existing donor_key", obs=(donor_key,))

    scores = adata_query.obs[score_key].to_numpy(dtype=np.float64)
    if not np.isfinite(scores).all():
        raise ValueError(f"adata_query.obs['{score_key}'] contains non-finite values")

    median, mad, global_threshold = _mad_threshold(scores, MAD_threshold)
    logger.info(
        "Mapping error: median %.3f, MAD %.3f, global threshold %.3f",
        median,
        mad,
        global_threshold,
    )
    thresholds = np.full(scores.shape[0], global_threshold)

    if threshold_by_donor:
        groups = adata_query.obs.groupby(donor_key, observed=True, sort=True).indices
        for donor, idx in groups.items():
            if len(idx) < min_cells_per_donor:
                logger.warning(
                    "Donor '%s' has %i cells (< %i), using the global mapping error threshold",
                    donor,
                    len(idx),
                    min_cells_per_donor,
                )
                continue
            _, donor_mad, donor_threshold = _mad_threshold(scores[idx], MAD_threshold)
            if donor_mad == 0:
                logger.warning(
                    "Donor '%s' has zero mapping error MAD, using the global threshold",
                    donor,
                )
                continue
            thresholds[idx] = donor_threshold

    qc = np.where(scores <= thresholds, QC_PASS, QC_FAIL)

    adata = adata_query.copy()
    adata.obs[obs] = pd.Categorical(qc, categories=[QC_PASS, QC_FAIL])
    adata.obs[f"{score_key}_threshold"] = thresholds
    logger.info(
        "%i of %i cells failed mapping QC", (qc == QC_FAIL).sum(), qc.shape[0]
    )
    _record_stage(
        adata,
        "mapping_qc",
        MAD_threshold=MAD_threshold,
        threshold_by_donor=threshold_by_donor,
        donor_key=donor_key,
        min_cells_per_donor=min_cells_per_donor,
    )
    return adata


def per_cluster_mapping_error(
    adata_query: AnnData,
    reference: ReferenceAtlas,
    cluster_key: str,
    u: float = 2,
    lamb: float = 0,
    transferred_primary_basis: str = "X_pca_reference",
    obs: str | None = "mapping_error_cluster",
    uns: str | None = "mapping_error_cluster",
) -> AnnData:
    """Calculates the Mahalanobis distance from user-defined query clusters to their nearest
    reference centroid after initial projection into reference PCA space.
    All query cells in a cluster get the same score. Higher distance indicates less confidence.
    Due to the instability of estimating covariance with small numbers of cells, we do not assign a
    score to clusters smaller than u * d, where d is the dimensionality of the embedding and u is specified.

    :param adata_query: query mapped with :func:`map_embedding`
    :type adata_query: AnnData
    :param reference: reference atlas
    :type reference: ReferenceAtlas
    :param cluster_key: column of ``adata_query.obs`` with query cluster labels
    :type cluster_key: str
    :param u: at least u * d cells are to be assigned to a cluster, defaults to 2
    :type u: float, optional
    :param lamb: ridge term added to the cluster covariance before inversion, defaults to 0
    :type lamb: float, optional
    :param obs: If not None, per-cell copy of the cluster distance is written to ``obs[obs]``, defaults to "mapping_error_cluster"
    :type obs: str | None, optional
    :param uns: If not None, per-cluster distances are written to ``uns[uns]``, defaults to "mapping_error_cluster"
    :type uns: str | None, optional
    """
    _require(
        adata_query,
        "tl.map_embedding",
        obs=(cluster_key,),
        obsm=(transferred_primary_basis,),
    )
    harmony = reference.harmony

    # [K, d]
    reference_cluster_centroids = harmony["C"] / harmony["Nr"][..., np.newaxis]
    reference_cluster_centroids_norm = reference_cluster_centroids / np.linalg.norm(
        reference_cluster_centroids, ord=2, axis=1, keepdims=True
    )

    X = np.asarray(adata_query.obsm[transferred_primary_basis])
    groups = adata_query.obs.groupby(cluster_key, observed=True, sort=True).indices
    dists = {}
    for cluster, idx in groups.items():
        dists[cluster] = _cluster_maha_dist(
            X[idx],
            reference_cluster_centroids,
            reference_cluster_centroids_norm,
            u=u,
            lamb=lamb,
        )
        if dists[cluster] is None:
            logger.info(
                "Cluster '%s' contains too few cells to estimate confidence", cluster
            )
    dists = pd.Series(dists, dtype=np.float64)

    adata = adata_query.copy()
    if uns is not None:
        adata.uns[uns] = {
            "key": cluster_key,
            "dist": dists.to_numpy(),
            "cluster_labels": dists.index.astype(str).to_numpy(),
        }
    if obs is not None:
        adata.obs[obs] = adata.obs[cluster_key].map(dists).astype(np.float64).to_numpy()
    return adata


def project_umap(
    adata_query: AnnData,
    reference: ReferenceAtlas,
    query_basis: str = "X_pca_harmony",
    umap_basis: str = "X_umap",
    mapper: ReferenceMapper | None = None,
) -> AnnData:
    """Projects the harmonized query embedding into the reference UMAP with the reference model."""
    _require(adata_query, "tl.map_embedding", obsm=(query_basis,))
    mapper = _get_mapper(reference, mapper)

    adata = adata_query.copy()
    adata.obsm[umap_basis] = mapper.project(np.asarray(adata.obsm[query_basis]))
    _record_stage(adata, "project_umap", umap_basis=umap_basis)
    return adata


def _final_from_initial(initial: pd.Series, passed: np.ndarray) -> pd.Series:
    return initial.where(passed)


def predict_cell_types(
    adata_query: AnnData,
    reference: ReferenceAtlas,
    k_neighbours: int = 30,
    query_basis: str = "X_pca_harmony",
    ref_basis: str | None = None,
    qc_key: str = "mapping_error_QC",
    key_added: str = "predicted_CellType",
    broad_mapping: Mapping[str, str] | None = None,
    mapper: ReferenceMapper | None = None,
    batch_size: int = 10000,
    n_jobs: int | None = 1,
) -> AnnData:
    """
    kNN majority vote of reference cell types in the harmonized space.

    Writes to ``adata_query.obs``:

    - ``initial_{key_added}`` for every cell and ``final_{key_added}``, null for QC "Fail" cells,
    - ``{key_added}_prob``: fraction of the ``k_neighbours`` voting for the predicted label,
    - ``initial_{key_added}_Broad`` and ``final_{key_added}_Broad`` from the fine -> broad table.

    Ties between labels with the same number of votes go to the lexicographically smallest label.

    :param k_neighbours: number of reference neighbours, defaults to 30
    :type k_neighbours: int, optional
    :param ref_basis: reference representation, defaults to the reference harmonized embedding
    :type ref_basis: str | None, optional
    :param broad_mapping: fine -> broad table, defaults to the one stored in the reference labels
    :type broad_mapping: Mapping[str, str] | None, optional
    """
    _require(adata_query, "tl.map_embedding", obsm=(query_basis,))
    _require(adata_query, "tl.mapping_qc", obs=(qc_key,))
    mapper = _get_mapper(reference, mapper, batch_size=batch_size, n_jobs=n_jobs)

    labels, prob = mapper.classify(
        np.asarray(adata_query.obsm[query_basis]),
        reference.celltype_key,
        basis=ref_basis,
        k_neighbours=k_neighbours,
    )
    index = adata_query.obs_names
    passed = (adata_query.obs[qc_key] == QC_PASS).to_numpy()

    initial = pd.Series(
        pd.Categorical(labels, categories=reference.celltypes()), index=index
    )

    adata = adata_query.copy()
    adata.obs[f"initial_{key_added}"] = initial
    adata.obs[f"final_{key_added}"] = _final_from_initial(initial, passed)
    adata.obs[f"{key_added}_prob"] = prob

    if broad_mapping is None:
        broad_mapping = reference.broad_mapping()
    if broad_mapping:
        broad_categories = sorted(set(broad_mapping.values()))
        initial_broad = pd.Series(
            pd.Categorical(
                labels.map(broad_mapping).to_numpy(), categories=broad_categories
            ),
            index=index,
        )
        unmapped = initial_broad.isna().to_numpy()
        if unmapped.any():
            logger.warning(
                "%i cells got a cell type without a broad cell type", unmapped.sum()
            )
        adata.obs[f"initial_{key_added}_Broad"] = initial_broad
        adata.obs[f"final_{key_added}_Broad"] = _final_from_initial(initial_broad, passed)

    _record_stage(adata, "predict_cell_types", k_neighbours=k_neighbours, key_added=key_added)
    return adata


def predict_pseudotime(
    adata_query: AnnData,
    reference: ReferenceAtlas,
    k_neighbours: int = 30,
    query_basis: str = "X_umap",
    ref_basis: str | None = None,
    qc_key: str = "mapping_error_QC",
    key_added: str = "predicted_Pseudotime",
    mapper: ReferenceMapper | None = None,
    batch_size: int = 10000,
    n_jobs: int | None = 1,
) -> AnnData:
    """
    Inverse-distance weighted kNN average of reference pseudotime, by default in UMAP space.
    Writes ``initial_{key_added}`` for every cell and ``final_{key_added}``, NaN for QC "Fail" cells.
    """
    assert (
        reference.pseudotime_key is not None
    ), "Reference has no pseudotime annotation"
    _require(adata_query, "tl.project_umap", obsm=(query_basis,))
    _require(adata_query, "tl.mapping_qc", obs=(qc_key,))
    mapper = _get_mapper(reference, mapper, batch_size=batch_size, n_jobs=n_jobs)

    if ref_basis is None:
        ref_basis = reference.umap_basis if query_basis == "X_umap" else reference.basis

    values = mapper.regress(
        np.asarray(adata_query.obsm[query_basis]),
        reference.pseudotime_key,
        basis=ref_basis,
        k_neighbours=k_neighbours,
    )
    passed = (adata_query.obs[qc_key] == QC_PASS).to_numpy()

    adata = adata_query.copy()
    adata.obs[f"initial_{key_added}"] = values
    adata.obs[f"final_{key_added}"] = np.where(passed, values, np.nan)
    _record_stage(adata, "predict_pseudotime", k_neighbours=k_neighbours, key_added=key_added)
    return adata


def transfer_labels_kNN(
    adata_query: AnnData,
    reference: ReferenceAtlas,
    ref_labels: list[str] | str,
    k_neighbours: int = 30,
    query_labels: list[str] | str | None = None,
    ref_basis: str | None = None,
    query_basis: str = "X_pca_harmony",
    mapper: ReferenceMapper | None = None,
    batch_size: int = 10000,
    n_jobs: int | None = 1,
) -> AnnData:
    """kNN majority vote to transfer any additional reference annotation,
    on the shared reference kNN index (ties go to the lexicographically smallest label).

    :param adata_query: query with ``obsm[query_basis]``
    :type adata_query: AnnData
    :param reference: reference atlas
    :type reference: ReferenceAtlas
    :param ref_labels: either a list of column names or a str of one column name from the reference obs
    :type ref_labels: list[str] | str
    :param k_neighbours: number of reference neighbours, defaults to 30
    :type k_neighbours: int, optional
    :param query_labels: keys in ``adata_query.obs`` where to save transferred ``ref_labels``. If not provided, ``ref_labels`` will be used
    :type query_labels: list[str] | str | None, optional
    :param ref_basis: reference representation, defaults to the reference harmonized embedding
    :type ref_basis: str | None, optional
    :param query_basis: ``adata_query.obsm[query_basis]`` will be used as features for prediction, defaults to "X_pca_harmony"
    :type query_basis: str, optional
    """
    _require(adata_query, "tl.map_embedding", obsm=(query_basis,))
    mapper = _get_mapper(reference, mapper, batch_size=batch_size, n_jobs=n_jobs)

    if isinstance(ref_labels, str):
        ref_labels = [ref_labels]
    if query_labels is None:
        query_labels = ref_labels
    elif isinstance(query_labels, str):
        query_labels = [query_labels]
    assert len(query_labels) == len(
        ref_labels
    ), "query_labels must have the same length as ref_labels"

    X = np.asarray(adata_query.obsm[query_basis])
    adata = adata_query.copy()
    for ref_label, query_label in zip(ref_labels, query_labels):
        labels, _ = mapper.classify(
            X, ref_label, basis=ref_basis, k_neighbours=k_neighbours
        )
        adata.obs[query_label] = labels.to_numpy()
    return adata


def composition(
    adata_query: AnnData | pd.DataFrame,
    donor_key: str,
    label_key: str = "final_predicted_CellType",
    qc_key: str | None = "mapping_error_QC",
    prob_key: str = "predicted_CellType_prob",
    knn_prob_cutoff: float | None = None,
    output_type: str = "proportion",
    celltypes: Sequence[str] | None = None,
    unassigned: str = "Unassigned",
) -> pd.DataFrame:
    """
    Per-donor cell type composition of the mapped query.

    Cells failing QC (``qc_key``) and, if ``knn_prob_cutoff`` is given, cells with kNN
    vote fraction below it are dropped before counting. Tables are dense over all
    cell types: reference categories of ``label_key`` (or ``celltypes``) and ``unassigned``
    for kept cells without a label.

    :param output_type: ``"long"`` (donor, cell type, count, proportion rows),
        ``"count"`` or ``"proportion"`` (donors x cell types), defaults to "proportion"
    :type output_type: str, optional
    :return: composition table
    :rtype: pd.DataFrame
    """
    if output_type not in ("long", "count", "proportion"):
        raise ValueError("`output_type` should be one of 'long', 'count', 'proportion'")

    obs = adata_query.obs if isinstance(adata_query, AnnData) else adata_query
    for col in (donor_key, label_key):
        if col not in obs:
            raise ValueError(f"Column '{col}' not found")

    keep = np.ones(obs.shape[0], dtype=bool)
    if qc_key is not None:
        if qc_key not in obs:
            raise ValueError(f"Column '{qc_key}' not found")
        keep &= (obs[qc_key] == QC_PASS).to_numpy()
    if knn_prob_cutoff is not None:
        if prob_key not in obs:
            raise ValueError(f"Column '{prob_key}' not found")
        keep &= (obs[prob_key] >= knn_prob_cutoff).to_numpy()

    labels = obs[label_key]
    if celltypes is not None:
        categories = list(celltypes)
    elif isinstance(labels.dtype, pd.CategoricalDtype):
        categories = list(labels.cat.categories)
    else:
        categories = sorted(labels.dropna().unique())

    kept_labels = labels[keep].astype(object)
    kept_labels = kept_labels.where(kept_labels.notna(), unassigned)
    unknown = set(kept_labels) - set(categories) - {unassigned}
    if unknown:
        raise ValueError(f"Labels not in `celltypes`: {sorted(map(str, unknown))}")
    if (kept_labels == unassigned).any() and unassigned not in categories:
        categories.append(unassigned)

    donors = obs[donor_key]
    if isinstance(donors.dtype, pd.CategoricalDtype):
        donor_levels = list(donors.cat.remove_unused_categories().cat.categories)
    else:
        donor_levels = sorted(donors.dropna().unique())

    counts = pd.DataFrame(
        0,
        index=pd.Index(donor_levels, name=donor_key),
        columns=pd.Index(categories, name="CellType"),
        dtype=np.int64,
    )
    pairs = pd.DataFrame({"donor": donors[keep].to_numpy(), "celltype": kept_labels.to_numpy()})
    for (donor, celltype), n in pairs.dropna().value_counts().items():
        counts.loc[donor, celltype] = n

    totals = counts.sum(axis=1)
    logger.info(
        "Composition over %i donors from %i of %i cells", len(donor_levels), keep.sum(), keep.shape[0]
    )

    proportions = counts.div(totals.replace(0, np.nan), axis=0).fillna(0.0)

    if output_type == "count":
        return counts
    if output_type == "proportion":
        return proportions

    long = counts.stack().rename("count").to_frame()
    long["proportion"] = proportions.stack()
    return long.reset_index()


def score_genesets_aucell(
    adata: AnnData,
    genesets: Mapping[str, Sequence[str]],
    max_rank: float = 0.05,
    layer: str | None = None,
    batch_size: int = 1000,
    n_jobs: int | None = 1,
    prefix: str = "AUCell_",
) -> AnnData:
    """
    AUCell gene set enrichment per cell (``decoupler.mt.aucell``): genes are ranked by
    expression within each cell and the area under the gene set recovery curve over
    the top ``max_rank`` genes is scored, normalized by its maximum.

    Cells are scored in chunks of ``batch_size`` cells, ``n_jobs`` chunks at a time.

    :param genesets: gene set name -> genes. Genes absent in ``adata`` are ignored
    :type genesets: Mapping[str, Sequence[str]]
    :param max_rank: number of top genes, or a fraction of all genes if below 1, defaults to 0.05
    :type max_rank: float, optional
    :param layer: expression layer, defaults to ``adata.X``
    :type layer: str | None, optional
    :return: a copy of ``adata`` with ``obs[f"{prefix}{name}"]`` scores
    :rtype: AnnData
    """
    X = adata.X if layer is None else adata.layers[layer]
    n_genes = adata.n_vars
    if max_rank < 1:
        max_rank = max(1, math.ceil(max_rank * n_genes))
    max_rank = int(min(max_rank, n_genes))

    names, edges = [], []
    for name, genes in genesets.items():
        genes = pd.unique(pd.Index(genes).astype(str))
        present = [gene for gene in genes if gene in adata.var_names]
        if not present:
            logger.warning("No genes of gene set '%s' found, skipping it", name)
            continue
        if len(present) < len(genes):
            logger.info(
                "Gene set '%s': %i of %i genes found", name, len(present), len(genes)
            )
        names.append(name)
        edges += [(name, gene) for gene in present]
    # [edges] source -> target network
    net = pd.DataFrame(edges, columns=["source", "target"])

    def _score(start: int, stop: int) -> np.ndarray:
        chunk = X[start:stop]
        if issparse(chunk):
            chunk = chunk.astype(np.float64)
        else:
            chunk = np.asarray(chunk, dtype=np.float64)
        chunk_adata = AnnData(
            X=chunk,
            obs=pd.DataFrame(index=adata.obs_names[start:stop]),
            var=pd.DataFrame(index=adata.var_names),
        )
        dc.mt.aucell(data=chunk_adata, net=net, tmin=1, n_up=max_rank)
        scores = pd.DataFrame(chunk_adata.obsm["score_aucell"])
        return scores.reindex(index=chunk_adata.obs_names, columns=names).to_numpy(
            dtype=np.float64
        )

    scores = (
        np.concatenate(_chunked_apply(_score, adata.n_obs, batch_size, n_jobs))
        if names and adata.n_obs
        else np.empty((adata.n_obs, len(names)))
    )

    adata = adata.copy()
    for j, name in enumerate(names):
        adata.obs[f"{prefix}{name}"] = scores[:, j]
    _record_stage(adata, "score_genesets_aucell", max_rank=max_rank)
    return adata


MAPPING_TABLE_COLUMNS = (
    "mapping_error_score",
    "mapping_error_QC",
    "initial_predicted_CellType",
    "final_predicted_CellType",
    "predicted_CellType_prob",
    "initial_predicted_CellType_Broad",
    "final_predicted_CellType_Broad",
    "initial_predicted_Pseudotime",
    "final_predicted_Pseudotime",
    "predicted_CyclePhase",
)


def mapping_table(
    adata_query: AnnData,
    extra_columns: Sequence[str] = (),
    umap_basis: str = "X_umap",
    aucell_prefix: str = "AUCell_",
) -> pd.DataFrame:
    """One row per query cell with the mapping results, UMAP coordinates and AUCell scores."""
    obs = adata_query.obs
    columns = list(extra_columns) + [c for c in MAPPING_TABLE_COLUMNS if c in obs]
    columns += [c for c in obs.columns if c.startswith(aucell_prefix)]

    table = obs[columns].copy()
    if umap_basis in adata_query.obsm:
        coords = np.asarray(adata_query.obsm[umap_basis])
        table["UMAP1"] = coords[:, 0]
        table["UMAP2"] = coords[:, 1]
    table.index.name = "cell_id"
    return table


def write_mapping_table(adata_query: AnnData, file_path: str | Path, **kwargs) -> None:
    """Writes :func:`mapping_table` as CSV, or TSV for ``.tsv``/``.txt`` paths."""
    file_path = Path(file_path)
    sep = "\t" if file_path.suffix in (".tsv", ".txt") else ","
    mapping_table(adata_query, **kwargs).to_csv(file_path, sep=sep)
    logger.info("Mapping results are saved in %s", file_path)
