"""
Reference label transfer algorithm:

1. Reference building:
    - log(CP10K + 1) library size normalization of the cells
    - subset by the top g variable genes
    - scaling of the genes to have mean 0 and variance 1 (saving μ and σ for each gene)
    - PCA (by default, d=100) to embed the reference cells
        in a low-dimensional space, saving the gene loadings (U)
    savings:
        - gene means (μ) and standard deviations (σ) used to scale the genes
        - PCA gene loadings and singular values

2. Mapping of query
    - scale query genes with the reference μ and σ (never with the query's own)
    - map query to ref (just count coords in PCAs: scaled query x U)

3. Label transferring, with approximate nearest neighbors under angular distance
    - kNN: majority vote among k nearest reference cells
    - MNN: label of the last mutual nearest neighbor, confidence = (number of MNN) / k,
        cells without mutual neighbors get the nearest reference cell's label
        with confidence 0.01
"""

from . import preprocessing as pp
from . import tools as tl
from ._errors import (
    DimensionMismatch,
    EmptyIndex,
    IndexAlreadyBuilt,
    IndexNotBuilt,
    LabelLookupMissing,
    MissingReferenceStatistics,
    ReftransferError,
)
from ._index import AnnIndex, IndexState
from ._transfer import (
    FALLBACK_CONFIDENCE,
    find_mutual_neighbors,
    find_neighbors,
    transfer_knn,
    transfer_mnn,
)
from .mapping import ReferenceBasis, embedding_from_decomposition, project
