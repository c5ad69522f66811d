# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import concurrent.futures
import logging
import os

from typing import Callable, Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from harmonypy import run_harmony
from scipy.sparse import issparse
from sklearn.cluster import KMeans

logger = logging.getLogger("bonemarrowmappy")


def _harmony_converged(objective_harmony, epsilon_harmony: float) -> bool:
    """Relative change of the last two Harmony objective values is below ``epsilon_harmony``."""
    objective = np.asarray(objective_harmony, dtype=np.float64).ravel()
    if objective.shape[0] < 2:
        return False
    old, new = objective[-2], objective[-1]
    return bool(abs(old - new) < epsilon_harmony * abs(old))


def _harmony_integrate_python(
    adata: AnnData,
    key: list[str] | str,
    ref_basis_source: str = "X_pca",
    ref_basis_adjusted: str = "X_pca_harmony",
    ref_basis_loadings: str = "PCs",
    verbose: bool = False,
    **harmony_kwargs,
) -> None:
    ref_ho = run_harmony(
        adata.obsm[ref_basis_source],
        meta_data=adata.obs,
        vars_use=key,
        verbose=verbose,
        **harmony_kwargs,
    )

    Z_corr = np.asarray(ref_ho.Z_corr)
    R = np.asarray(ref_ho.R)
    # harmonypy keeps Z as [d, N]; older releases return it as [N, d]
    if Z_corr.shape[0] != adata.n_obs:
        Z_corr = Z_corr.T
    if R.shape[1] != adata.n_obs:
        R = R.T

    adata.obsm[ref_basis_adjusted] = Z_corr

    converged = _harmony_converged(
        getattr(ref_ho, "objective_harmony", []),
        harmony_kwargs.get("epsilon_harmony", 1e-4),
    )
    K = int(R.shape[0])
    # [K] cluster cross entropy regularization coef, as passed to Harmony
    sigma = np.broadcast_to(
        np.asarray(harmony_kwargs.get("sigma", 0.1), dtype=np.float64).ravel(), (K,)
    ).copy()

    adata.uns["harmony"] = {
        # [K] the number of cells softly belonging to each cluster
        "Nr": R.sum(axis=1),
        # [K, d] = [K, Nref] x [Nref, d]
        "C": R @ Z_corr,
        "K": K,
        "sigma": sigma,
        "ref_basis_loadings": ref_basis_loadings,
        "ref_basis_adjusted": ref_basis_adjusted,
        "vars_use": key,
        "converged": converged,
        # [K, Nref]
        "R": R,
    }

    if not converged:
        logger.warning(
            "Harmony didn't converge. "
            "Consider increasing max_iter_harmony parameter value"
        )


def _run_soft_kmeans(
    Z: np.ndarray,
    K: int | None = None,
    sigma: float = 0.1,
    random_state: int = 0,
) -> dict:
    N = Z.shape[0]

    if K is None:
        K = int(np.clip(np.round(N / 30.0), 1, 100))

    model = KMeans(
        n_clusters=K, init="k-means++", n_init=10, max_iter=25, random_state=random_state
    )
    model.fit(Z)
    C = model.cluster_centers_

    # (1) Normalize
    Y = C / np.linalg.norm(C, ord=2, axis=1, keepdims=True)
    # (2) Assign cluster probabilities
    R = _assign_clusters(Z, sigma, Y, K)

    return {
        # [K] the number of cells softly belonging to each cluster
        "Nr": R.sum(axis=1),
        # [K, d] soft cluster sums, same convention as Harmony
        "C": R @ Z,
        "K": K,
        "sigma": np.repeat(np.float64(sigma), K),
        "converged": True,
        # [K, Nref]
        "R": R,
    }


def _cosine_normalize(X: np.ndarray) -> np.ndarray:
    # same scaling as harmonypy before L2 normalization
    X_cos = X / X.max(axis=1, keepdims=True)
    X_cos /= np.linalg.norm(X_cos, ord=2, axis=1, keepdims=True)
    return X_cos


def _assign_clusters(
    X: np.ndarray, sigma: float | np.ndarray, Y: np.ndarray, K: int
) -> np.ndarray:
    if np.isscalar(sigma):
        sigma = np.array([sigma], dtype=np.float64)
    else:
        sigma = np.asarray(sigma, dtype=np.float64).ravel()
        assert (
            len(sigma) in (1, K)
        ), "sigma parameter must be either a single float or an array of length equal to number of clusters"

    X_cos = _cosine_normalize(np.asarray(X, dtype=np.float64))

    # [K, N] = [K, d] x [Nq, d].T
    R = -2 * (1 - Y @ X_cos.T) / sigma[..., np.newaxis]
    R -= np.max(R, axis=0)
    R = np.exp(R)
    R /= R.sum(axis=0, keepdims=True)

    return R


def _small_batch_cells(batch_data: pd.DataFrame, min_batch_cells: int) -> np.ndarray:
    """Mask of cells belonging to a batch (of any batch column) with fewer than ``min_batch_cells`` cells."""
    small_cells = np.zeros(batch_data.shape[0], dtype=bool)
    for col in batch_data.columns:
        batch = batch_data[col]
        sizes = batch.value_counts()
        small = sizes.index[sizes < min_batch_cells]
        if len(small) == 0:
            continue
        logger.warning(
            "%i batch(es) in '%s' have fewer than %i cells (%s); "
            "their cells get the correction estimated over all query cells as one batch",
            len(small),
            col,
            min_batch_cells,
            ", ".join(map(str, small)),
        )
        small_cells |= batch.isin(small).to_numpy()
    return small_cells


def _batch_design(
    batch_data: pd.DataFrame,
    lamb: float | Sequence[float] | None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Builds the Harmony-like design matrix ``phi_`` [B + 1, N] (intercept row first)
    and ridge penalty ``lamb`` [B + 1, B + 1] for query batch correction.
    """
    batch_data = batch_data.astype(str)

    # [B, N] = [N, B].T  (B -- batch num)
    phi = pd.get_dummies(batch_data).to_numpy(dtype=np.float64).T
    # [B + 1, N]
    phi_ = np.concatenate([np.ones((1, phi.shape[1])), phi], axis=0)

    phi_n = batch_data.nunique().to_numpy().astype(int)
    # lambda (ridge regularization coef)
    if lamb is None:
        lamb = np.repeat([1.0] * len(phi_n), phi_n)
    elif np.isscalar(lamb):
        lamb = np.repeat([float(lamb)] * len(phi_n), phi_n)
    elif len(lamb) == len(phi_n):
        lamb = np.repeat(np.asarray(lamb, dtype=np.float64), phi_n)
    else:
        assert len(lamb) == np.sum(phi_n), "each batch variable must have a lambda"
        lamb = np.asarray(lamb, dtype=np.float64)

    # [B + 1, B + 1]
    return phi_, np.diag(np.insert(lamb, 0, 0))


def _correct_query(
    X: np.ndarray,
    phi_: np.ndarray,
    R: np.ndarray,
    Nr: np.ndarray,
    C: np.ndarray,
    lamb: np.ndarray,
) -> np.ndarray:
    # [d, N] = [N, d].T
    X_corr = X.copy().T
    lamb = lamb.copy()
    lamb[0, 0] = 0
    K = R.shape[0]

    for i in range(K):
        # [B + 1, N] = [B + 1, N] * [N]
        Phi_Rk = np.multiply(phi_, R[i, :])

        # [B + 1, B + 1] = [B + 1, N] x [N, B + 1]
        x = Phi_Rk @ phi_.T
        x[0, 0] += Nr[i]

        # [B + 1, d] = [B + 1, N] x [N, d]
        y = Phi_Rk @ X
        y[0, :] += C[i]

        # [B + 1, d] = [B + 1, B + 1] x [B + 1, d]
        W = np.linalg.solve(x + lamb, y)
        W[0, :] = 0  # do not remove the intercept

        # [d, N] -= [B + 1, d].T x [B + 1, N]
        X_corr -= W.T @ Phi_Rk

    return X_corr.T


def _adjust_for_missing_genes(
    adata: AnnData, use_genes_list: pd.Index, use_genes_list_present: np.ndarray
) -> np.ndarray:
    """
    Sets zero expression to missing genes, returns non-sparse matrix.

    :param adata: query adata
    :param use_genes_list: reference genes, in reference order
    :param use_genes_list_present: mask of ``use_genes_list`` genes present in ``adata``
    :return: [cells, genes] dense array with missing genes set to zero
    """
    logger.warning(
        "%i out of %i "
        "genes from the reference are missing in the query dataset or have zero std in the reference, "
        "their expressions in the query will be set to zero",
        (~use_genes_list_present).sum(),
        use_genes_list.shape[0],
    )
    t = np.zeros((adata.shape[0], use_genes_list.shape[0]))

    X = adata[:, use_genes_list[use_genes_list_present]].X
    t[:, use_genes_list_present] = X.toarray() if issparse(X) else np.asarray(X)

    return t


def _map_query_to_ref(
    adata_query: AnnData,
    genes: pd.Index,
    means: np.ndarray,
    stds: np.ndarray,
    loadings: np.ndarray,
    max_value: float | None = 10.0,
) -> np.ndarray:
    """Scales log-normalized query expression with reference statistics and applies loadings."""
    use_genes_list_present = np.asarray(genes.isin(adata_query.var_names) & (stds != 0))

    if not use_genes_list_present.all():
        t = _adjust_for_missing_genes(adata_query, genes, use_genes_list_present)
    else:
        X = adata_query[:, genes].X
        t = X.toarray() if issparse(X) else np.array(X, dtype=np.float64)

    t[:, use_genes_list_present] -= means[use_genes_list_present][np.newaxis]
    t[:, use_genes_list_present] /= stds[use_genes_list_present][np.newaxis]

    if max_value is not None:
        t = np.clip(t, -max_value, max_value)

    # [cells, n_comps] = [cells, genes] x [genes, n_comps]
    return np.asarray(t @ loadings)


def _cluster_covs(X_ref: np.ndarray, R: np.ndarray, K: int, ridge: float = 0.0):
    R_ = R[:, np.newaxis]

    # [d, N_ref]
    X_ref_T = X_ref.T
    # [K, d, N_ref] = [K, 1, Nref] X [d, N_ref]
    X_weighted = np.multiply(R_, X_ref_T)
    # [K, 1]
    v1 = R.sum(axis=1, keepdims=True)
    v2 = (R**2).sum(axis=1, keepdims=True)
    # [K, d, 1]
    X_weighted_mean = (X_weighted.sum(axis=2) / v1)[..., np.newaxis]
    # [K, d, N_ref] = [1, d, N_ref] - [K, d, 1]
    X_centered = X_ref_T[np.newaxis] - X_weighted_mean
    # [K, d, N_ref] = [K, 1, Nref] X [K, d, N_ref]
    X_centered_weighted = np.multiply(R_, X_centered)

    # [K, d, d] = [K, d, N_ref] * [K, d, N_ref]
    cluster_covs = np.einsum("npq,nrq->npr", X_centered_weighted, X_centered)
    # unbiased weighted covariance
    cluster_covs = cluster_covs * (v1 / (v1**2 - v2))[..., np.newaxis]
    if ridge:
        cluster_covs += ridge * np.eye(X_ref.shape[1])[np.newaxis]
    inv_cluster_covs = np.linalg.pinv(cluster_covs, hermitian=True)

    return inv_cluster_covs, X_weighted_mean


def _per_cell_maha_dist(
    X_q: np.ndarray,
    Rq: np.ndarray,
    inv_cluster_covs: np.ndarray,
    cluster_centers: np.ndarray,
) -> np.ndarray:
    # [K, Nq, d] = [1, Nq, d] - [K, 1, d]
    centered = X_q[np.newaxis] - cluster_centers.squeeze(2)[:, np.newaxis]
    # [K, Nq]
    sq = np.sum(np.multiply(centered @ inv_cluster_covs, centered), axis=2)
    maha_dists = np.sqrt(np.clip(sq, 0, None))
    # average distance weighted by cluster membership
    # [Nq] = ([K, Nq] X [K, Nq]).sum()
    return np.sum(np.multiply(maha_dists, Rq), axis=0)


def _cluster_maha_dist(
    query_coords: np.ndarray,
    reference_cluster_centroids: np.ndarray,
    reference_cluster_centroids_norm: np.ndarray,
    u: float,
    lamb: float,
) -> float | None:
    d = reference_cluster_centroids.shape[1]
    cluster_size = query_coords.shape[0]
    if cluster_size < u * d:
        return None

    # query cluster centroid and covariance in PC space
    query_cluster_centroid = query_coords.mean(axis=0)
    query_cluster_centered = query_coords - query_cluster_centroid
    query_cluster_cov = (
        query_cluster_centered.T @ query_cluster_centered / (cluster_size - 1)
    )

    # nearest reference cluster centroid by cosine similarity
    ref_centroid_closest = reference_cluster_centroids[
        np.argmax(reference_cluster_centroids_norm @ query_cluster_centroid)
    ]

    query_cluster_cov += np.diag([lamb] * d)
    inv_cluster_cov = np.linalg.pinv(query_cluster_cov, hermitian=True)
    dif = ref_centroid_closest - query_cluster_centroid
    return float((dif @ inv_cluster_cov @ dif) ** 0.5)


def _mad_threshold(scores: np.ndarray, k: float) -> tuple[float, float, float]:
    """Returns ``(median, MAD, median + k * MAD)``; MAD is not rescaled to sigma."""
    median = float(np.median(scores))
    mad = float(np.median(np.abs(scores - median)))
    return median, mad, median + k * mad


def _knn_vote(neighbor_codes: np.ndarray, n_classes: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Majority vote over ``neighbor_codes`` [N, k] (integer codes of sorted labels).
    Ties go to the smallest code, i.e. the lexicographically smallest label.
    """
    n, k = neighbor_codes.shape
    votes = np.zeros((n, n_classes), dtype=np.int64)
    np.add.at(votes, (np.repeat(np.arange(n), k), neighbor_codes.ravel()), 1)
    # argmax returns the first maximum
    winner = votes.argmax(axis=1)
    return winner, votes[np.arange(n), winner] / k


def _idw_mean(dists: np.ndarray, values: np.ndarray) -> np.ndarray:
    """Inverse-distance weighted mean of ``values`` [N, k]; exact matches take precedence."""
    valid = ~np.isnan(values)
    values = np.where(valid, values, 0.0)

    zero = (dists == 0) & valid
    has_zero = zero.any(axis=1)
    with np.errstate(divide="ignore"):
        w = np.where(dists > 0, 1.0 / dists, 0.0)
    w[has_zero] = zero[has_zero]
    w = w * valid

    w_sum = w.sum(axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.where(w_sum > 0, (w * values).sum(axis=1) / w_sum, np.nan)


def _chunked_apply(
    func: Callable[[int, int], np.ndarray],
    n: int,
    batch_size: int,
    n_jobs: int | None = 1,
) -> list[np.ndarray]:
    """Calls ``func(start, stop)`` on consecutive chunks, in a thread pool if ``n_jobs`` != 1."""
    assert batch_size > 0, "batch_size must be positive"
    bounds = [(start, min(start + batch_size, n)) for start in range(0, n, batch_size)]

    if n_jobs is None or n_jobs < 0:
        n_jobs = os.cpu_count() or 1
    if n_jobs == 1 or len(bounds) <= 1:
        return [func(start, stop) for start, stop in bounds]

    with concurrent.futures.ThreadPoolExecutor(max_workers=n_jobs) as executor:
        return list(executor.map(lambda b: func(*b), bounds))
