# pylint: disable=C0103, C0114, W0511
from __future__ import annotations

import logging

from collections import Counter
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from scipy.sparse import csr_matrix

from ._errors import DimensionMismatch, LabelLookupMissing
from ._index import N_TREES, AnnIndex
from ._utils import _check_embedding, _check_n_neighbors

logger = logging.getLogger("reftransferpy")

N_NEIGHBORS = 30
# confidence of query points without any mutual nearest neighbor
FALLBACK_CONFIDENCE = 0.01


class _LabelSet:
    """
    Reference labels, looked up by reference id.
    Sequences are indexed by position, mappings and series by their keys.
    """

    def __init__(
        self, reference_labels: Sequence | Mapping | pd.Series, n_reference: int
    ) -> None:
        if isinstance(reference_labels, pd.Series):
            # the series index holds reference ids, not positions
            self.ids = pd.Index(reference_labels.index)
            values = reference_labels.to_numpy()
        elif isinstance(reference_labels, Mapping):
            self.ids = pd.Index(
                np.fromiter(reference_labels.keys(), dtype=np.int64, count=len(reference_labels))
            )
            values = list(reference_labels.values())
        else:
            values = list(np.asarray(reference_labels, dtype=object).ravel())
            if len(values) != n_reference:
                raise DimensionMismatch(
                    f"Got {len(values)} labels for {n_reference} reference samples"
                )
            self.ids = pd.RangeIndex(len(values))

        self.values = np.empty(len(values), dtype=object)
        self.values[:] = values

    def lookup(self, ids: np.ndarray) -> np.ndarray:
        ids = np.asarray(ids)
        positions = self.ids.get_indexer(ids.ravel())
        missing = positions < 0

        labels = np.empty(positions.shape, dtype=object)
        labels[~missing] = self.values[positions[~missing]]
        missing |= pd.isna(labels)

        if missing.any():
            raise LabelLookupMissing(
                f"No labels for reference ids {np.unique(ids.ravel()[missing])[:10].tolist()}, "
                "reference labels and embedding are out of sync"
            )
        return labels.reshape(ids.shape)


def _check_inputs(query_embedding, reference_embedding, k):
    reference_embedding = _check_embedding(reference_embedding, "reference_embedding")
    query_embedding = _check_embedding(
        query_embedding, "query_embedding", n_comps=reference_embedding.shape[1]
    )
    return query_embedding, reference_embedding, _check_n_neighbors(k)


def _majority_vote(labels: np.ndarray) -> object:
    # Counter keeps insertion order and max() returns the first maximum,
    # so ties go to the label met first among the nearest neighbors
    counts = Counter(labels)
    return max(counts, key=counts.get)


def _knn_labels(nn_ref: np.ndarray, label_set: _LabelSet) -> pd.DataFrame:
    # [Nq, k]
    neighbor_labels = label_set.lookup(nn_ref)
    labels = [_majority_vote(row) for row in neighbor_labels]
    return pd.DataFrame({"label": labels, "confidence": [None] * len(labels)})


def _mnn_labels(
    nn_ref: np.ndarray, mutual: np.ndarray, label_set: _LabelSet, k: int
) -> pd.DataFrame:
    # [Nq, k]
    neighbor_labels = label_set.lookup(nn_ref)
    n_query, n_cols = nn_ref.shape

    # [Nq]
    mutual_count = mutual.sum(axis=1)
    anchored = mutual_count > 0
    # the last mutual neighbor in retrieval order wins
    last_mutual = n_cols - 1 - np.argmax(mutual[:, ::-1], axis=1)
    chosen = np.where(anchored, last_mutual, 0)

    logger.info(
        "%i out of %i query points have mutual nearest neighbors in the reference",
        anchored.sum(),
        n_query,
    )

    return pd.DataFrame(
        {
            "label": neighbor_labels[np.arange(n_query), chosen],
            "confidence": np.where(anchored, mutual_count / k, FALLBACK_CONFIDENCE),
        }
    )


def find_neighbors(
    query_embedding: np.ndarray,
    reference_embedding: np.ndarray,
    k: int = N_NEIGHBORS,
    n_trees: int = N_TREES,
    random_state: int | None = 0,
    method: str = "auto",
    n_jobs: int | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Finds nearest neighbors both ways between query and reference.

    :return: ``nn_ref`` [Nq, min(k, N_ref)] -- reference neighbors of each query point,
        ``nn_query`` [N_ref, min(k, Nq)] -- query neighbors of each reference point,
        both nearest first
    :rtype: tuple[np.ndarray, np.ndarray]
    """
    query_embedding, reference_embedding, k = _check_inputs(
        query_embedding, reference_embedding, k
    )

    ref_index = AnnIndex.from_embedding(
        reference_embedding, n_trees, method=method, random_state=random_state, n_jobs=n_jobs
    )
    query_index = AnnIndex.from_embedding(
        query_embedding, n_trees, method=method, random_state=random_state, n_jobs=n_jobs
    )

    nn_ref = ref_index.query_batch(query_embedding, k)
    nn_query = query_index.query_batch(reference_embedding, k)

    return nn_ref, nn_query


def find_mutual_neighbors(nn_ref: np.ndarray, nn_query: np.ndarray) -> np.ndarray:
    """
    For each query point ``i`` and each ``j`` in ``nn_ref[i]``
    tells whether ``i`` is in ``nn_query[j]`` as well.

    :param nn_ref: [Nq, k] reference neighbors of query points
    :type nn_ref: np.ndarray
    :param nn_query: [N_ref, k'] query neighbors of reference points
    :type nn_query: np.ndarray
    :return: [Nq, k] boolean mask, aligned with ``nn_ref``
    :rtype: np.ndarray
    """
    nn_ref = np.asarray(nn_ref)
    nn_query = np.asarray(nn_query)
    n_query, k = nn_ref.shape
    n_ref, k_query = nn_query.shape

    # [N_ref, Nq], 1 where the query point is among reference point's neighbors
    query_graph = csr_matrix(
        (
            np.ones(nn_query.size, dtype=np.int8),
            nn_query.ravel(),
            np.arange(0, nn_query.size + 1, k_query),
        ),
        shape=(n_ref, n_query),
    )

    rows = nn_ref.ravel()
    cols = np.repeat(np.arange(n_query), k)

    return (np.asarray(query_graph[rows, cols]).reshape(n_query, k) > 0)


def transfer_knn(
    query_embedding: np.ndarray,
    reference_embedding: np.ndarray,
    reference_labels: Sequence | Mapping | pd.Series,
    k: int = N_NEIGHBORS,
    n_trees: int = N_TREES,
    random_state: int | None = 0,
    method: str = "auto",
    n_jobs: int | None = None,
) -> pd.DataFrame:
    """
    Transfers labels by majority vote among ``k`` nearest reference neighbors
    of each query point. Ties go to the tied label met first in neighbors order
    (nearest first). No confidence is computed.

    :param query_embedding: [Nq, d] query embedding
    :type query_embedding: np.ndarray
    :param reference_embedding: [N_ref, d] reference embedding
    :type reference_embedding: np.ndarray
    :param reference_labels: labels of reference rows, a sequence of length N_ref,
        a mapping from reference row index to label or a series indexed by reference row index
    :type reference_labels: Sequence | Mapping | pd.Series
    :param k: number of neighbors, defaults to 30
    :type k: int, optional
    :param n_trees: number of trees for the index, defaults to 10
    :type n_trees: int, optional
    :param random_state: seed for the index construction, defaults to 0
    :type random_state: int | None, optional
    :param method: search method, see :class:`AnnIndex`, defaults to "auto"
    :type method: str, optional
    :param n_jobs: number of parallel jobs, defaults to None
    :type n_jobs: int | None, optional
    :return: dataframe with ``label`` and ``confidence`` (all None) columns, one row per query point
    :rtype: pd.DataFrame
    """
    query_embedding, reference_embedding, k = _check_inputs(
        query_embedding, reference_embedding, k
    )
    label_set = _LabelSet(reference_labels, reference_embedding.shape[0])

    ref_index = AnnIndex.from_embedding(
        reference_embedding, n_trees, method=method, random_state=random_state, n_jobs=n_jobs
    )
    nn_ref = ref_index.query_batch(query_embedding, k)

    return _knn_labels(nn_ref, label_set)


def transfer_mnn(
    query_embedding: np.ndarray,
    reference_embedding: np.ndarray,
    reference_labels: Sequence | Mapping | pd.Series,
    k: int = N_NEIGHBORS,
    n_trees: int = N_TREES,
    random_state: int | None = 0,
    method: str = "auto",
    n_jobs: int | None = None,
) -> pd.DataFrame:
    """
    Transfers labels through mutual nearest neighbors (anchors).

    Query point ``i`` and reference point ``j`` are mutual nearest neighbors
    if ``j`` is among ``k`` nearest reference neighbors of ``i``
    and ``i`` is among ``k`` nearest query neighbors of ``j``.
    If query point has ``m > 0`` mutual neighbors, it gets the label
    of the last of them in its neighbors order (nearest first)
    with confidence ``m / k``. Otherwise it gets the label of its nearest
    reference neighbor with confidence ``FALLBACK_CONFIDENCE``.
    Unlike :func:`transfer_knn`, an empty query raises :class:`EmptyIndex`,
    since query points are indexed too.

    Parameters are the same as for :func:`transfer_knn`.

    :return: dataframe with ``label`` and ``confidence`` columns, one row per query point
    :rtype: pd.DataFrame
    """
    query_embedding, reference_embedding, k = _check_inputs(
        query_embedding, reference_embedding, k
    )
    label_set = _LabelSet(reference_labels, reference_embedding.shape[0])

    nn_ref, nn_query = find_neighbors(
        query_embedding,
        reference_embedding,
        k,
        n_trees=n_trees,
        random_state=random_state,
        method=method,
        n_jobs=n_jobs,
    )
    mutual = find_mutual_neighbors(nn_ref, nn_query)

    return _mnn_labels(nn_ref, mutual, label_set, k)
