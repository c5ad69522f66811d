# pylint: disable=C0103, C0116, W0511
"""
End-to-end query mapping: harmonization, mapping error QC, cell type and pseudotime
transfer, optional AUCell scoring and per-donor composition.

    python -m bonemarrowmappy.main reference.h5ad query.h5ad results.csv --batch-key sample
"""
from __future__ import annotations

import argparse
import logging

from dataclasses import dataclass, field

import pandas as pd
import scanpy as sc

from anndata import AnnData

from . import preprocessing as pp
from . import tools as tl
from .mapping import SymphonyMapper
from .reference import ReferenceAtlas, read_reference


logger = logging.getLogger("bonemarrowmappy")


@dataclass
class MappingConfig:
    """Parameters of :func:`run_bonemarrowmap`."""

    batch_key: list[str] | str | None = None
    """Query batch columns to correct; also the default donor column."""

    donor_key: str | None = None
    """Donor column for per-donor QC and composition, defaults to ``batch_key``."""

    MAD_threshold: float = 2.5
    threshold_by_donor: bool = False
    min_cells_per_donor: int = 10
    min_batch_cells: int = 10

    k_neighbours: int = 30
    sigma: float | None = 0.1
    lamb: float | None = None

    knn_prob_cutoff: float | None = None
    output_type: str = "proportion"

    genesets: dict[str, list[str]] = field(default_factory=dict)
    aucell_max_rank: float = 0.05

    batch_size: int = 10000
    n_jobs: int | None = 1

    def __post_init__(self):
        if self.output_type not in ("long", "count", "proportion"):
            raise ValueError("`output_type` should be one of 'long', 'count', 'proportion'")
        if self.k_neighbours < 1:
            raise ValueError("`k_neighbours` must be positive")
        if self.MAD_threshold < 0:
            raise ValueError("`MAD_threshold` must be non-negative")

    @property
    def donor(self) -> str | None:
        if self.donor_key is not None:
            return self.donor_key
        if isinstance(self.batch_key, (list, tuple)):
            return self.batch_key[0] if len(self.batch_key) == 1 else None
        return self.batch_key


def run_bonemarrowmap(
    adata_query: AnnData,
    reference: ReferenceAtlas,
    config: MappingConfig | None = None,
) -> tuple[AnnData, pd.DataFrame | None]:
    """
    Maps a raw-count query onto ``reference``:

    1. ``tl.map_embedding`` -> harmonized embedding
    2. ``tl.mapping_error``, ``tl.mapping_qc`` -> score and Pass/Fail
    3. ``tl.predict_cell_types`` -> initial/final cell types
    4. ``tl.project_umap``, ``tl.predict_pseudotime`` -> initial/final pseudotime
    5. ``tl.score_genesets_aucell`` if gene sets are given
    6. ``tl.composition`` if a donor column is known

    Returns the annotated copy of the query and the composition table (or None).
    """
    config = MappingConfig() if config is None else config
    pp.validate_query(adata_query)

    mapper = SymphonyMapper(
        reference,
        sigma=config.sigma,
        lamb=config.lamb,
        min_batch_cells=config.min_batch_cells,
        batch_size=config.batch_size,
        n_jobs=config.n_jobs,
    )

    adata = tl.map_embedding(adata_query, reference, key=config.batch_key, mapper=mapper)
    adata = tl.mapping_error(adata, reference, mapper=mapper)

    donor = config.donor
    adata = tl.mapping_qc(
        adata,
        MAD_threshold=config.MAD_threshold,
        threshold_by_donor=config.threshold_by_donor,
        donor_key=donor,
        min_cells_per_donor=config.min_cells_per_donor,
    )
    adata = tl.predict_cell_types(
        adata, reference, k_neighbours=config.k_neighbours, mapper=mapper
    )
    if reference.phase_key is not None:
        adata = tl.transfer_labels_kNN(
            adata,
            reference,
            reference.phase_key,
            k_neighbours=config.k_neighbours,
            query_labels="predicted_CyclePhase",
            mapper=mapper,
        )

    if reference.umap_model is not None:
        adata = tl.project_umap(adata, reference, mapper=mapper)
        if reference.pseudotime_key is not None:
            adata = tl.predict_pseudotime(
                adata, reference, k_neighbours=config.k_neighbours, mapper=mapper
            )
    else:
        logger.warning("Reference has no UMAP model, skipping UMAP and pseudotime")

    if config.genesets:
        adata = tl.score_genesets_aucell(
            adata,
            config.genesets,
            max_rank=config.aucell_max_rank,
            batch_size=config.batch_size,
            n_jobs=config.n_jobs,
        )

    composition = None
    if donor is not None:
        composition = tl.composition(
            adata,
            donor_key=donor,
            knn_prob_cutoff=config.knn_prob_cutoff,
            output_type=config.output_type,
        )

    return adata, composition


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bonemarrowmappy",
        description="Map a single-cell query onto a bone marrow reference atlas.",
    )
    parser.add_argument("reference", help="reference .h5ad saved with ReferenceAtlas.write")
    parser.add_argument("query", help="query .h5ad with raw counts in .X")
    parser.add_argument("output", help="per-cell results table (.csv or .tsv)")
    parser.add_argument("--umap-model", default=None, help="pickled UMAP model of the reference")
    parser.add_argument("--batch-key", default=None)
    parser.add_argument("--donor-key", default=None)
    parser.add_argument("--mad-threshold", type=float, default=2.5)
    parser.add_argument("--threshold-by-donor", action="store_true")
    parser.add_argument("--k-neighbours", type=int, default=30)
    parser.add_argument("--knn-prob-cutoff", type=float, default=None)
    parser.add_argument(
        "--output-type", choices=("long", "count", "proportion"), default="proportion"
    )
    parser.add_argument("--composition", default=None, help="where to write the composition table")
    parser.add_argument("--n-jobs", type=int, default=1)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    reference = read_reference(args.reference, umap_model_path=args.umap_model)
    adata_query = sc.read_h5ad(args.query)

    config = MappingConfig(
        batch_key=args.batch_key,
        donor_key=args.donor_key,
        MAD_threshold=args.mad_threshold,
        threshold_by_donor=args.threshold_by_donor,
        k_neighbours=args.k_neighbours,
        knn_prob_cutoff=args.knn_prob_cutoff,
        output_type=args.output_type,
        n_jobs=args.n_jobs,
    )
    adata, composition = run_bonemarrowmap(adata_query, reference, config)

    extra = [config.donor] if config.donor is not None else []
    tl.write_mapping_table(adata, args.output, extra_columns=extra)
    if composition is not None and args.composition is not None:
        composition.to_csv(args.composition)
        logger.info("Composition is saved in %s", args.composition)


if __name__ == "__main__":
    main()
