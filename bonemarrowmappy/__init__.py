"""
Bone marrow reference mapping:

1. Reference (precomputed, see ``pp.build_reference``):
    - log(CP10K + 1) library size normalization of the cells
    - top variable genes, scaled to mean 0 and variance 1 (saving μ and σ for each gene)
    - PCA embedding of the reference cells, saving the gene loadings (U)
    - Harmony (or soft k-means for a reference without batches), saving
      the clusters' soft sizes Nr, the soft cluster sums C and the cells' memberships R
    - UMAP model fitted on the harmonized embedding

2. Query harmonization
    - normalize query counts as the reference, scale with (μ, σ), project with U
    - assign soft cluster memberships (soft k-means with entropy regularisation)
    - mixture of experts correction of the query batches, reference kept fixed

3. Mapping error and QC
    - weighted Mahalanobis distance of each query cell to the reference clusters
    - cells above median + k * MAD (globally or per donor) fail QC

4. Label transfer
    - kNN majority vote of cell types in the harmonized space
    - kNN inverse-distance weighted pseudotime in the reference UMAP
    - initial predictions for every cell, final predictions only for cells passing QC

5. Per-donor composition and AUCell gene set scores
"""

from . import preprocessing as pp
from . import tools as tl
from .main import MappingConfig, run_bonemarrowmap
from .mapping import ReferenceMapper, SymphonyMapper
from .reference import ReferenceAtlas, read_reference

__version__ = "0.1.0"
