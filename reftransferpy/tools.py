# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd

from anndata import AnnData

from .mapping import ReferenceBasis, project
from ._index import N_TREES, AnnIndex
from ._transfer import (
    N_NEIGHBORS,
    _LabelSet,
    _knn_labels,
    _mnn_labels,
    find_mutual_neighbors,
    find_neighbors,
)
from ._utils import _align_query_features


logger = logging.getLogger("reftransferpy")


def map_embedding(
    adata_query: AnnData,
    adata_ref: AnnData,
    use_genes_column: str | None = "highly_variable",
    transferred_primary_basis: str = "X_pca_reference",
    ref_basis_loadings: str = "PCs",
    max_value: float | None = 10.0,
    n_comps: int | None = None,
) -> None:
    """
    Maps query cells to the reference embedding: query expressions of the reference genes
    are scaled with reference gene means and stds and multiplied by reference gene loadings.
    Saves the result to ``adata_query.obsm[transferred_primary_basis]``.

    Reference genes missing in the query don't contribute to the query embedding.

    :param adata_query: query adata object, log-normalized the same way as reference
    :type adata_query: AnnData
    :param adata_ref: reference adata object, e.g. prepared with :func:`reftransferpy.pp.build_reference`
    :type adata_ref: AnnData
    :param use_genes_column: ``adata_ref.var[use_genes_column]`` genes were used to build reference basis,
        defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param transferred_primary_basis: slot in ``adata_query.obsm`` where to save
        query embedding, defaults to "X_pca_reference"
    :type transferred_primary_basis: str, optional
    :param ref_basis_loadings: ``adata_ref.varm[ref_basis_loadings]`` will be used
        as gene loadings, defaults to "PCs"
    :type ref_basis_loadings: str, optional
    :param max_value: clip scaled query expressions to ``[-max_value, max_value]``, defaults to 10.0
    :type max_value: float | None, optional
    :param n_comps: use only first ``n_comps`` components, defaults to None (all)
    :type n_comps: int | None, optional
    """
    assert (
        "mean" in adata_ref.var
    ), "Gene expression means are expected to be saved in adata_ref.var"
    assert (
        "std" in adata_ref.var
    ), "Gene expression stds are expected to be saved in adata_ref.var"

    if "log1p" not in adata_query.uns:
        warnings.warn("Gene expressions in adata_query should be log1p-transformed")

    basis = ReferenceBasis.from_adata(
        adata_ref,
        use_genes_column=use_genes_column,
        ref_basis_loadings=ref_basis_loadings,
        reference_basis=None,
        n_comps=n_comps,
    )

    X, use_genes_list_present = _align_query_features(
        adata_query, pd.Index(basis.feature_names)
    )
    if not use_genes_list_present.all():
        basis = basis.subset_features(use_genes_list_present)

    adata_query.obsm[transferred_primary_basis] = project(X, basis, max_value=max_value)


def _labels_to_obs(labels: pd.Series, ref_labels: pd.Series) -> np.ndarray | pd.Categorical:
    if isinstance(ref_labels.dtype, pd.CategoricalDtype):
        return pd.Categorical(labels, categories=ref_labels.cat.categories)
    return labels.to_numpy()


def transfer_labels_kNN(
    adata_query: AnnData,
    adata_ref: AnnData,
    ref_labels: list[str] | str,
    n_neighbors: int = N_NEIGHBORS,
    query_labels: list[str] | str | None = None,
    ref_basis: str = "X_pca",
    query_basis: str = "X_pca_reference",
    n_trees: int = N_TREES,
    random_state: int | None = 0,
    method: str = "auto",
    n_jobs: int | None = None,
) -> None:
    """
    Transfers labels by majority vote of ``n_neighbors`` nearest reference cells
    under angular distance. Nearest neighbors are searched once for all ``ref_labels``.

    :param adata_query: adata object to transfer labels to
    :type adata_query: AnnData
    :param adata_ref: adata object to transfer labels from
    :type adata_ref: AnnData
    :param ref_labels: columns from ``adata_ref.obs`` to transfer
    :type ref_labels: list[str] | str
    :param n_neighbors: number of nearest neighbors, defaults to 30
    :type n_neighbors: int, optional
    :param query_labels: keys in ``adata_query.obs`` where to save transferred ``ref_labels``
        (in corresponding to ``ref_labels`` order). If not provided, same as ``ref_labels`` will be used
    :type query_labels: list[str] | str | None, optional
    :param ref_basis: ``adata_ref.obsm[ref_basis]`` will be used as reference embedding, defaults to "X_pca"
    :type ref_basis: str, optional
    :param query_basis: ``adata_query.obsm[query_basis]`` will be used as query embedding,
        defaults to "X_pca_reference"
    :type query_basis: str, optional
    :param n_trees: number of trees for the nearest neighbors index, defaults to 10
    :type n_trees: int, optional
    :param random_state: random seed for the nearest neighbors index, defaults to 0
    :type random_state: int | None, optional
    :param method: nearest neighbors search method, see :class:`reftransferpy.AnnIndex`, defaults to "auto"
    :type method: str, optional
    :param n_jobs: number of parallel jobs, defaults to None
    :type n_jobs: int | None, optional
    """
    ref_labels, query_labels = _label_keys(ref_labels, query_labels)

    ref_index = AnnIndex.from_embedding(
        adata_ref.obsm[ref_basis],
        n_trees,
        method=method,
        random_state=random_state,
        n_jobs=n_jobs,
    )
    nn_ref = ref_index.query_batch(adata_query.obsm[query_basis], n_neighbors)

    for ref_label, query_label in zip(ref_labels, query_labels):
        label_set = _LabelSet(adata_ref.obs[ref_label].to_numpy(), adata_ref.n_obs)
        res = _knn_labels(nn_ref, label_set)
        adata_query.obs[query_label] = _labels_to_obs(res["label"], adata_ref.obs[ref_label])


def transfer_labels_MNN(
    adata_query: AnnData,
    adata_ref: AnnData,
    ref_labels: list[str] | str,
    n_neighbors: int = N_NEIGHBORS,
    query_labels: list[str] | str | None = None,
    ref_basis: str = "X_pca",
    query_basis: str = "X_pca_reference",
    confidence_suffix: str = "_confidence",
    n_trees: int = N_TREES,
    random_state: int | None = 0,
    method: str = "auto",
    n_jobs: int | None = None,
) -> None:
    """
    Transfers labels through mutual nearest neighbors of query and reference cells.
    A query cell with ``m`` mutual nearest neighbors gets the label of the last of them
    in its neighbors order and confidence ``m / n_neighbors``; a query cell without
    mutual nearest neighbors gets the label of its nearest reference cell and confidence 0.01.
    Confidences are saved to ``adata_query.obs[query_label + confidence_suffix]``.

    Parameters are the same as for :func:`transfer_labels_kNN`.

    :param confidence_suffix: suffix of ``adata_query.obs`` columns for confidences,
        defaults to "_confidence"
    :type confidence_suffix: str, optional
    """
    ref_labels, query_labels = _label_keys(ref_labels, query_labels)

    nn_ref, nn_query = find_neighbors(
        adata_query.obsm[query_basis],
        adata_ref.obsm[ref_basis],
        n_neighbors,
        n_trees=n_trees,
        random_state=random_state,
        method=method,
        n_jobs=n_jobs,
    )
    mutual = find_mutual_neighbors(nn_ref, nn_query)

    for ref_label, query_label in zip(ref_labels, query_labels):
        label_set = _LabelSet(adata_ref.obs[ref_label].to_numpy(), adata_ref.n_obs)
        res = _mnn_labels(nn_ref, mutual, label_set, n_neighbors)
        adata_query.obs[query_label] = _labels_to_obs(res["label"], adata_ref.obs[ref_label])
        adata_query.obs[query_label + confidence_suffix] = res["confidence"].to_numpy()


def _label_keys(
    ref_labels: list[str] | str, query_labels: list[str] | str | None
) -> tuple[list[str], list[str]]:
    if isinstance(ref_labels, str):
        ref_labels = [ref_labels]
    if query_labels is None:
        query_labels = ref_labels
    elif isinstance(query_labels, str):
        query_labels = [query_labels]

    assert len(ref_labels) == len(
        query_labels
    ), "`query_labels` should correspond to `ref_labels`"

    return list(ref_labels), list(query_labels)
