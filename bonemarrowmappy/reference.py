# pylint: disable=C0103, W0511
"""
Read-only reference atlas: harmonized embedding, labels, projection parameters,
cluster-mixture parameters and the fitted UMAP model.
"""
from __future__ import annotations

import logging
import pickle
import threading

from pathlib import Path

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from sklearn.neighbors import NearestNeighbors


logger = logging.getLogger("bonemarrowmappy")

HARMONY_FIELDS = ("Nr", "C", "K", "sigma", "R")


def _readonly(arr) -> np.ndarray:
    arr = np.asarray(arr)
    view = arr.view()
    view.flags.writeable = False
    return view


class ReferenceAtlas:
    """
    Immutable reference for query mapping.

    Wraps a prepared reference ``AnnData`` (see :func:`bonemarrowmappy.pp.build_reference`)
    holding:

    - ``var["mean"]``, ``var["std"]`` and ``varm[loadings_key]`` of the genes used for projection,
    - ``obsm[basis]`` harmonized embedding and ``obsm[umap_basis]`` 2D coordinates,
    - ``uns["harmony"]`` cluster-mixture parameters (``Nr``, ``C``, ``K``, ``sigma``, ``R``),
    - ``uns["bonemarrowmap"]`` normalization parameters (``target_sum``, ``max_value``),
    - ``obs`` label columns (fine and broad cell type, pseudotime, cell cycle phase).

    The wrapped object is copied once on construction and must not be modified afterwards;
    KNN indices over the reference are built lazily and shared between callers.

    :param adata: prepared reference
    :type adata: AnnData
    :param umap_model: fitted ``umap.UMAP`` model mapping ``obsm[basis]`` to ``obsm[umap_basis]``, defaults to None
    :param celltype_key: fine cell type column, defaults to "CellType_Annotation"
    :param celltype_broad_key: broad cell type column, defaults to "CellType_Broad"
    :param pseudotime_key: pseudotime column, defaults to "Pseudotime"
    :param phase_key: cell cycle phase column, defaults to "CyclePhase"
    """

    def __init__(
        self,
        adata: AnnData,
        umap_model=None,
        celltype_key: str = "CellType_Annotation",
        celltype_broad_key: str | None = "CellType_Broad",
        pseudotime_key: str | None = "Pseudotime",
        phase_key: str | None = "CyclePhase",
        basis: str = "X_pca_harmony",
        umap_basis: str = "X_umap",
        loadings_key: str = "PCs",
    ) -> None:
        self._check(adata, celltype_key, basis, loadings_key)

        self._adata = adata.copy()
        self.umap_model = umap_model
        self.celltype_key = celltype_key
        self.celltype_broad_key = (
            celltype_broad_key if celltype_broad_key in adata.obs else None
        )
        self.pseudotime_key = pseudotime_key if pseudotime_key in adata.obs else None
        self.phase_key = phase_key if phase_key in adata.obs else None
        self.basis = basis
        self.umap_basis = umap_basis
        self.loadings_key = loadings_key

        self._knn_lock = threading.Lock()
        self._knn_indices: dict[tuple[str, int], NearestNeighbors] = {}

    @staticmethod
    def _check(adata: AnnData, celltype_key: str, basis: str, loadings_key: str):
        missing = []
        for col in ("mean", "std"):
            if col not in adata.var:
                missing.append(f"var['{col}']")
        if loadings_key not in adata.varm:
            missing.append(f"varm['{loadings_key}']")
        if basis not in adata.obsm:
            missing.append(f"obsm['{basis}']")
        if celltype_key not in adata.obs:
            missing.append(f"obs['{celltype_key}']")
        if "harmony" not in adata.uns:
            missing.append("uns['harmony']")
        else:
            missing.extend(
                f"uns['harmony']['{field}']"
                for field in HARMONY_FIELDS
                if field not in adata.uns["harmony"]
            )
        if missing:
            raise ValueError(
                "Reference is missing required slots: " + ", ".join(missing)
            )

    def __repr__(self) -> str:
        return (
            f"ReferenceAtlas with n_cells={self.n_cells}, n_genes={len(self.genes)}, "
            f"n_comps={self.embedding.shape[1]}, K={self.K}"
        )

    @property
    def adata(self) -> AnnData:
        """Copy of the underlying reference object."""
        return self._adata.copy()

    @property
    def n_cells(self) -> int:
        return self._adata.n_obs

    @property
    def obs(self) -> pd.DataFrame:
        return self._adata.obs.copy()

    @property
    def genes(self) -> pd.Index:
        return self._adata.var_names

    @property
    def means(self) -> np.ndarray:
        return _readonly(self._adata.var["mean"].to_numpy(dtype=np.float64))

    @property
    def stds(self) -> np.ndarray:
        return _readonly(self._adata.var["std"].to_numpy(dtype=np.float64))

    @property
    def loadings(self) -> np.ndarray:
        return _readonly(self._adata.varm[self.loadings_key])

    @property
    def embedding(self) -> np.ndarray:
        return _readonly(self._adata.obsm[self.basis])

    @property
    def umap(self) -> np.ndarray:
        return self.representation(self.umap_basis)

    def representation(self, basis: str | None = None) -> np.ndarray:
        basis = self.basis if basis is None else basis
        assert basis in self._adata.obsm, f"Reference has no '{basis}' representation"
        return _readonly(self._adata.obsm[basis])

    @property
    def harmony(self) -> dict:
        harmony = self._adata.uns["harmony"]
        return {
            "Nr": _readonly(np.asarray(harmony["Nr"], dtype=np.float64).ravel()),
            "C": _readonly(np.asarray(harmony["C"], dtype=np.float64)),
            "K": int(np.asarray(harmony["K"]).ravel()[0]),
            "sigma": _readonly(np.asarray(harmony["sigma"], dtype=np.float64).ravel()),
            "R": _readonly(np.asarray(harmony["R"], dtype=np.float64)),
        }

    @property
    def K(self) -> int:
        return int(np.asarray(self._adata.uns["harmony"]["K"]).ravel()[0])

    @property
    def target_sum(self) -> float:
        return float(self._adata.uns.get("bonemarrowmap", {}).get("target_sum", 1e4))

    @property
    def max_value(self) -> float | None:
        max_value = self._adata.uns.get("bonemarrowmap", {}).get("max_value", 10.0)
        return None if max_value is None else float(max_value)

    def labels(self, key: str) -> pd.Series:
        assert key in self._adata.obs, f"Column '{key}' not found in reference obs"
        return self._adata.obs[key].copy()

    def celltypes(self) -> pd.Index:
        """Sorted fine cell type categories of the reference."""
        labels = self._adata.obs[self.celltype_key]
        if isinstance(labels.dtype, pd.CategoricalDtype):
            return pd.Index(sorted(labels.cat.categories.astype(str)))
        return pd.Index(sorted(labels.dropna().astype(str).unique()))

    def broad_mapping(self) -> dict[str, str]:
        """Fixed fine -> broad cell type table taken from the reference labels."""
        if self.celltype_broad_key is None:
            return {}

        pairs = (
            self._adata.obs[[self.celltype_key, self.celltype_broad_key]]
            .dropna()
            .astype(str)
            .drop_duplicates()
        )
        ambiguous = pairs[self.celltype_key][pairs[self.celltype_key].duplicated()]
        if len(ambiguous):
            raise ValueError(
                "Fine cell types map to more than one broad cell type: "
                + ", ".join(sorted(ambiguous.unique()))
            )
        return dict(zip(pairs[self.celltype_key], pairs[self.celltype_broad_key]))

    def knn_index(self, basis: str | None = None, n_neighbors: int = 30) -> NearestNeighbors:
        """
        Fitted ``NearestNeighbors`` over ``obsm[basis]`` of the reference.
        Indices are built once per ``(basis, n_neighbors)`` and reused.
        """
        basis = self.basis if basis is None else basis
        assert basis in self._adata.obsm, f"Reference has no '{basis}' representation"
        if n_neighbors > self.n_cells:
            raise ValueError(
                f"n_neighbors={n_neighbors} exceeds the number of reference cells ({self.n_cells})"
            )

        key = (basis, n_neighbors)
        with self._knn_lock:
            if key not in self._knn_indices:
                logger.info(
                    "Building %i-NN index on reference '%s'", n_neighbors, basis
                )
                index = NearestNeighbors(n_neighbors=n_neighbors)
                index.fit(self._adata.obsm[basis])
                self._knn_indices[key] = index
            return self._knn_indices[key]

    def write(self, file_path: str | Path, umap_model_path: str | Path | None = None) -> None:
        """Saves the reference to ``file_path`` (.h5ad) and the UMAP model next to it."""
        file_path = Path(file_path)
        adata = self._adata.copy()
        adata.uns["bonemarrowmap_keys"] = {
            "celltype_key": self.celltype_key,
            "celltype_broad_key": self.celltype_broad_key or "",
            "pseudotime_key": self.pseudotime_key or "",
            "phase_key": self.phase_key or "",
            "basis": self.basis,
            "umap_basis": self.umap_basis,
            "loadings_key": self.loadings_key,
        }
        adata.write_h5ad(file_path)

        if self.umap_model is not None:
            if umap_model_path is None:
                umap_model_path = _default_umap_model_path(file_path)
            with open(umap_model_path, "wb") as model_file:
                pickle.dump(self.umap_model, model_file, protocol=pickle.HIGHEST_PROTOCOL)
            logger.info("UMAP model is saved in %s", umap_model_path)


def _default_umap_model_path(file_path: Path) -> Path:
    return file_path.with_name(f"{file_path.stem}.umap.pkl")


def read_reference(
    file_path: str | Path,
    umap_model_path: str | Path | None = None,
    **kwargs,
) -> ReferenceAtlas:
    """
    Loads a reference saved with :meth:`ReferenceAtlas.write`.

    :param file_path: path to the reference .h5ad file
    :type file_path: str | Path
    :param umap_model_path: pickled UMAP model, defaults to ``<stem>.umap.pkl`` next to ``file_path`` if it exists
    :type umap_model_path: str | Path | None, optional
    :return: reference atlas; ``kwargs`` override the saved column names
    """
    file_path = Path(file_path)
    adata = sc.read_h5ad(file_path)

    saved_keys = {
        key: (value or None)
        for key, value in adata.uns.pop("bonemarrowmap_keys", {}).items()
    }
    saved_keys.update(kwargs)

    if umap_model_path is None and _default_umap_model_path(file_path).exists():
        umap_model_path = _default_umap_model_path(file_path)

    umap_model = None
    if umap_model_path is not None:
        with open(umap_model_path, "rb") as model_file:
            umap_model = pickle.load(model_file)
    else:
        logger.warning(
            "No UMAP model found for %s, query UMAP projection will not be available",
            file_path,
        )

    return ReferenceAtlas(adata, umap_model=umap_model, **saved_keys)
