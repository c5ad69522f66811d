# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from typing import List

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData

from ._utils import (
    _assign_clusters,
    _batch_design,
    _chunked_apply,
    _cluster_covs,
    _correct_query,
    _idw_mean,
    _knn_vote,
    _map_query_to_ref,
    _per_cell_maha_dist,
    _small_batch_cells,
)
from .reference import ReferenceAtlas


logger = logging.getLogger("bonemarrowmappy")


class ReferenceMapper(ABC):
    """
    Capabilities needed to map a query onto a reference:
    ``harmonize`` (counts -> harmonized embedding), ``project`` (embedding -> 2D)
    and ``classify`` (embedding -> kNN labels).
    """

    def __init__(self, reference: ReferenceAtlas) -> None:
        self.reference = reference

    @abstractmethod
    def harmonize(
        self, adata_query: AnnData, batch_keys: List[str] | None = None
    ) -> dict[str, np.ndarray]:
        """Returns at least ``primary`` (pre-correction) and ``adjusted`` [Nq, d] embeddings."""

    @abstractmethod
    def mapping_error(self, embeddings: dict[str, np.ndarray]) -> np.ndarray:
        """Per-cell mapping error [Nq] from the ``primary`` and ``R`` outputs of ``harmonize``; higher is worse."""

    @abstractmethod
    def project(self, X: np.ndarray) -> np.ndarray:
        """Maps harmonized coordinates [Nq, d] to the reference 2D embedding."""

    @abstractmethod
    def classify(
        self, X: np.ndarray, label: str, basis: str | None = None, k_neighbours: int = 30
    ) -> tuple[pd.Series, np.ndarray]:
        """Majority-vote labels and vote fractions of the ``k_neighbours`` nearest reference cells."""

    @abstractmethod
    def regress(
        self, X: np.ndarray, value: str, basis: str | None = None, k_neighbours: int = 30
    ) -> np.ndarray:
        """Distance-weighted average of a continuous reference annotation."""


class SymphonyMapper(ReferenceMapper):
    """
    Symphony query mapping:

    1. log-normalize query counts as the reference was normalized,
       scale with reference gene means and stds, apply reference gene loadings,
    2. soft-assign query cells to reference clusters,
    3. mixture-of-experts linear correction of the query batch effects
       with reference cluster statistics (``Nr``, ``C``) fixed.
    """

    def __init__(
        self,
        reference: ReferenceAtlas,
        sigma: float | np.ndarray | None = 0.1,
        lamb: float | np.ndarray | None = None,
        min_batch_cells: int = 10,
        batch_size: int = 10000,
        n_jobs: int | None = 1,
    ) -> None:
        super().__init__(reference)
        # None means the per-cluster sigma saved with the reference
        self.sigma = sigma
        self.lamb = lamb
        self.min_batch_cells = min_batch_cells
        self.batch_size = batch_size
        self.n_jobs = n_jobs

        self._inv_cluster_covs = None
        self._cluster_centers = None

    def normalize(self, adata_query: AnnData) -> AnnData:
        adata = adata_query.copy()
        adata.X = adata.X.astype(np.float64)
        sc.pp.normalize_total(adata, target_sum=self.reference.target_sum)
        sc.pp.log1p(adata)
        return adata

    def map_to_reference(self, adata_norm: AnnData) -> np.ndarray:
        ref = self.reference
        return _map_query_to_ref(
            adata_norm,
            genes=ref.genes,
            means=ref.means,
            stds=ref.stds,
            loadings=ref.loadings,
            max_value=ref.max_value,
        )

    def assign_clusters(self, X: np.ndarray) -> np.ndarray:
        harmony = self.reference.harmony
        C = harmony["C"]
        Y = C / np.linalg.norm(C, ord=2, axis=1, keepdims=True)
        sigma = harmony["sigma"] if self.sigma is None else self.sigma
        return _assign_clusters(X, sigma, Y, harmony["K"])

    def correct_query(
        self, X: np.ndarray, R: np.ndarray, batch_data: pd.DataFrame
    ) -> np.ndarray:
        harmony = self.reference.harmony

        def _correct(mask: np.ndarray, batches: pd.DataFrame, lamb) -> np.ndarray:
            phi_, lamb = _batch_design(batches, lamb)
            return _correct_query(X[mask], phi_, R[:, mask], harmony["Nr"], harmony["C"], lamb)

        small = _small_batch_cells(batch_data.astype(str), self.min_batch_cells)
        if not small.any():
            return _correct(np.ones(X.shape[0], dtype=bool), batch_data, self.lamb)

        # cells of too small batches take the correction of the whole query as one batch
        everything = np.ones(X.shape[0], dtype=bool)
        global_lamb = self.lamb if self.lamb is None or np.isscalar(self.lamb) else None
        X_corr = _correct(
            everything, pd.DataFrame({"batch": ["1"] * X.shape[0]}), global_lamb
        )
        if not small.all():
            X_corr[~small] = _correct(~small, batch_data[~small], self.lamb)
        return X_corr

    def harmonize(
        self, adata_query: AnnData, batch_keys: List[str] | None = None
    ) -> dict[str, np.ndarray]:
        # 1. map query to ref initial embedding
        X = self.map_to_reference(self.normalize(adata_query))

        # 2. assign clusters
        R = self.assign_clusters(X)

        # 3. correct query embeddings
        if not batch_keys:
            batch_data = pd.DataFrame(
                {"batch": ["1"] * adata_query.n_obs}, index=adata_query.obs_names
            )
        else:
            batch_data = adata_query.obs[batch_keys]

        return {
            "primary": X,
            "adjusted": self.correct_query(X, R, batch_data),
            "R": R,
        }

    def cluster_statistics(self) -> tuple[np.ndarray, np.ndarray]:
        """Inverse covariances [K, d, d] and weighted means [K, d, 1] of the reference clusters."""
        if self._inv_cluster_covs is None:
            harmony = self.reference.harmony
            self._inv_cluster_covs, self._cluster_centers = _cluster_covs(
                self.reference.embedding, harmony["R"], harmony["K"], ridge=1e-8
            )
        return self._inv_cluster_covs, self._cluster_centers

    def mapping_error(self, embeddings: dict[str, np.ndarray]) -> np.ndarray:
        """
        Weighted Mahalanobis distance of the pre-correction query coordinates
        to every reference cluster, averaged with the query cluster memberships.
        """
        X_primary = embeddings["primary"]
        # [K, Nq]
        R = embeddings["R"]
        inv_cluster_covs, cluster_centers = self.cluster_statistics()
        chunks = _chunked_apply(
            lambda start, stop: _per_cell_maha_dist(
                X_primary[start:stop], R[:, start:stop], inv_cluster_covs, cluster_centers
            ),
            X_primary.shape[0],
            self.batch_size,
            self.n_jobs,
        )
        return np.concatenate(chunks) if chunks else np.empty(0)

    def project(self, X: np.ndarray) -> np.ndarray:
        if self.reference.umap_model is None:
            raise ValueError(
                "Reference has no fitted UMAP model, query cells can't be projected"
            )
        return np.asarray(self.reference.umap_model.transform(X))

    def _kneighbors(self, X: np.ndarray, basis: str | None, k_neighbours: int):
        index = self.reference.knn_index(basis, k_neighbours)
        chunks = _chunked_apply(
            lambda start, stop: np.stack(index.kneighbors(X[start:stop])),
            X.shape[0],
            self.batch_size,
            self.n_jobs,
        )
        # [2, Nq, k]: distances, indices
        stacked = np.concatenate(chunks, axis=1)
        return stacked[0], stacked[1].astype(np.int64)

    def classify(
        self, X: np.ndarray, label: str, basis: str | None = None, k_neighbours: int = 30
    ) -> tuple[pd.Series, np.ndarray]:
        labels = self.reference.labels(label)
        known = labels.notna().to_numpy()
        if not known.all():
            raise ValueError(f"Reference column '{label}' contains missing labels")

        classes, codes = np.unique(labels.astype(str).to_numpy(), return_inverse=True)
        _, idx = self._kneighbors(X, basis, k_neighbours)
        winner, prob = _knn_vote(codes[idx], len(classes))

        return pd.Series(classes[winner]), prob

    def regress(
        self, X: np.ndarray, value: str, basis: str | None = None, k_neighbours: int = 30
    ) -> np.ndarray:
        values = self.reference.labels(value).to_numpy(dtype=np.float64)
        dists, idx = self._kneighbors(X, basis, k_neighbours)
        return _idw_mean(dists, values[idx])
