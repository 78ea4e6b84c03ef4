# pylint: disable=C0103, C0116, C0114, W0511
from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import issparse

from ._errors import DimensionMismatch

logger = logging.getLogger("reftransferpy")


def _as_dense(X) -> np.ndarray:
    """
    Returns a dense float copy of X, so that callers may modify it in place.
    """
    return X.toarray().astype(np.float64) if issparse(X) else np.array(X, dtype=np.float64)


def _check_embedding(X, name: str, n_comps: int | None = None) -> np.ndarray:
    X = np.asarray(X)
    if X.ndim != 2:
        raise DimensionMismatch(
            f"`{name}` should be a 2-dimensional [samples, components] array, "
            f"got an array of shape {X.shape}"
        )
    if n_comps is not None and X.shape[1] != n_comps:
        raise DimensionMismatch(
            f"`{name}` has {X.shape[1]} components, while {n_comps} are expected"
        )
    return X


def _check_n_neighbors(k) -> int:
    if isinstance(k, (bool, np.bool_)) or not isinstance(k, (int, np.integer)):
        raise TypeError(f"Number of neighbors should be an integer, got {k!r}")
    if k < 1:
        raise ValueError(f"Number of neighbors should be positive, got {k}")
    return int(k)


def _align_query_features(
    adata_query: AnnData, use_genes_list: pd.Index
) -> tuple[np.ndarray, np.ndarray]:
    """
    Subsets query expressions to the reference genes, in the reference order.

    :param adata_query: query adata object
    :type adata_query: AnnData
    :param use_genes_list: reference genes the basis was computed on
    :type use_genes_list: pd.Index
    :return: dense [cells, present genes] matrix and boolean mask of
        which genes from ``use_genes_list`` are present in the query
    :rtype: tuple[np.ndarray, np.ndarray]
    """
    use_genes_list_present = np.asarray(use_genes_list.isin(adata_query.var_names))

    if not use_genes_list_present.all():
        logger.warning(
            "%i out of %i "
            "genes from the reference are missing in the query dataset, "
            "they will not contribute to the query embedding",
            (~use_genes_list_present).sum(),
            use_genes_list.shape[0],
        )

    X = adata_query[:, use_genes_list[use_genes_list_present]].X

    return _as_dense(X), use_genes_list_present


def _use_genes_mask(adata_ref: AnnData, use_genes_column: str | None) -> np.ndarray:
    if use_genes_column is None:
        return np.ones(adata_ref.n_vars, dtype=bool)

    assert (
        use_genes_column in adata_ref.var
    ), f"Column `{use_genes_column}` not found in adata_ref.var. Set `use_genes_column` parameter properly"

    return adata_ref.var[use_genes_column].to_numpy(dtype=bool)
