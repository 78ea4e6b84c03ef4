# pylint: disable=C0103, C0114, W0511
from __future__ import annotations

import enum
import logging

from typing import Sequence

import numpy as np

from pynndescent import NNDescent
from sklearn.neighbors import NearestNeighbors

from ._errors import DimensionMismatch, EmptyIndex, IndexAlreadyBuilt, IndexNotBuilt
from ._utils import _check_embedding, _check_n_neighbors

logger = logging.getLogger("reftransferpy")

N_TREES = 10
# angular distance, 1 - cosine similarity
METRIC = "cosine"
# exact search is used for smaller indexes with method="auto"
SMALL_INDEX_SIZE = 4096
# out-degree of the pynndescent search graph
GRAPH_N_NEIGHBORS = 30

_METHODS = ("auto", "pynndescent", "sklearn")


class IndexState(enum.Enum):
    BUILDING = "building"
    BUILT = "built"


class AnnIndex:
    """
    Approximate nearest neighbors index under angular (cosine) distance.

    The index goes through two states: while :attr:`state` is ``BUILDING``
    vectors can be added with :meth:`add`, then :meth:`build` turns it
    ``BUILT`` and read-only, and only then it can be queried.
    Queries into a built index don't modify it and can be issued from several threads.

    :param dimension: length of the indexed vectors
    :type dimension: int
    :param method: "pynndescent" for random projection forest + NN-descent search graph,
        "sklearn" for exact brute force search, "auto" to use exact search
        for indexes smaller than ``SMALL_INDEX_SIZE``, defaults to "auto"
    :type method: str, optional
    :param random_state: seed for the index construction, defaults to 0
    :type random_state: int | None, optional
    :param n_jobs: number of parallel jobs for build and batch queries, defaults to None
    :type n_jobs: int | None, optional
    """

    def __init__(
        self,
        dimension: int,
        method: str = "auto",
        random_state: int | None = 0,
        n_jobs: int | None = None,
    ) -> None:
        if dimension < 1:
            raise ValueError(f"Index dimension should be positive, got {dimension}")
        if method not in _METHODS:
            raise ValueError(f"`method` should be one of {_METHODS}, got {method!r}")

        self.dimension = int(dimension)
        self.method = method
        self.random_state = random_state
        self.n_jobs = n_jobs
        self.state = IndexState.BUILDING

        self._id_chunks: list[np.ndarray] = []
        self._vector_chunks: list[np.ndarray] = []
        self._seen_ids: set[int] = set()

        # set by build()
        self._ids: np.ndarray | None = None
        self._backend: NNDescent | NearestNeighbors | None = None
        self.backend_method: str | None = None

    def __len__(self) -> int:
        return len(self._seen_ids)

    def __repr__(self) -> str:
        return (
            f"AnnIndex(dimension={self.dimension}, size={len(self)}, "
            f"state={self.state.value}, method={self.backend_method or self.method})"
        )

    @classmethod
    def from_embedding(
        cls,
        embedding: np.ndarray,
        n_trees: int = N_TREES,
        method: str = "auto",
        random_state: int | None = 0,
        n_jobs: int | None = None,
    ) -> "AnnIndex":
        """
        Builds index over embedding rows with ids ``0..N-1``.
        """
        embedding = _check_embedding(embedding, "embedding")
        index = cls(
            embedding.shape[1], method=method, random_state=random_state, n_jobs=n_jobs
        )
        index.add_items(np.arange(embedding.shape[0]), embedding)
        index.build(n_trees)
        return index

    def add(self, item_id: int, vector: Sequence[float]) -> None:
        vector = np.asarray(vector, dtype=np.float64)
        if vector.ndim != 1:
            raise DimensionMismatch(
                f"Expected a single vector of length {self.dimension}, got an array of shape {vector.shape}"
            )
        self.add_items([item_id], vector[np.newaxis])

    def add_items(self, item_ids: Sequence[int], vectors: np.ndarray) -> None:
        """
        Adds ``vectors`` rows under caller-chosen integer ids.
        Ids don't have to be contiguous, but have to be unique.
        """
        if self.state is IndexState.BUILT:
            raise IndexAlreadyBuilt("Index is built and read-only, no items can be added")

        vectors = np.asarray(vectors, dtype=np.float64)
        item_ids = np.asarray(item_ids)

        if vectors.ndim != 2 or vectors.shape[1] != self.dimension:
            raise DimensionMismatch(
                f"Expected vectors of length {self.dimension}, got an array of shape {vectors.shape}"
            )
        if item_ids.shape != (vectors.shape[0],):
            raise DimensionMismatch(
                f"Got {item_ids.size} ids for {vectors.shape[0]} vectors"
            )
        if item_ids.size and not np.issubdtype(item_ids.dtype, np.integer):
            raise TypeError(f"Ids should be integers, got {item_ids.dtype}")

        new_ids = item_ids.astype(np.int64).tolist()
        duplicated = self._seen_ids.intersection(new_ids)
        if duplicated or len(set(new_ids)) != len(new_ids):
            raise ValueError(
                f"Ids should be unique, got repeated ids: {sorted(duplicated)[:10] or new_ids[:10]}"
            )

        self._seen_ids.update(new_ids)
        self._id_chunks.append(item_ids.astype(np.int64))
        self._vector_chunks.append(vectors)

    def build(self, n_trees: int = N_TREES) -> None:
        """
        Finalizes the index, after that it's read-only and can be queried.
        More trees give better recall at the cost of build time and memory.
        """
        if self.state is IndexState.BUILT:
            raise IndexAlreadyBuilt("Index is already built")
        if len(self) == 0:
            raise EmptyIndex("Can't build an index without points, add vectors first")
        if n_trees < 1:
            raise ValueError(f"Number of trees should be positive, got {n_trees}")

        data = np.concatenate(self._vector_chunks, axis=0)
        self._ids = np.concatenate(self._id_chunks)
        self._vector_chunks, self._id_chunks = [], []

        method = self.method
        if method == "auto":
            method = "sklearn" if data.shape[0] < SMALL_INDEX_SIZE else "pynndescent"
        if method == "pynndescent" and data.shape[0] <= GRAPH_N_NEIGHBORS:
            logger.info(
                "Only %i points in the index, exact search will be used", data.shape[0]
            )
            method = "sklearn"

        if method == "pynndescent":
            self._backend = NNDescent(
                data,
                metric=METRIC,
                n_neighbors=GRAPH_N_NEIGHBORS,
                n_trees=n_trees,
                random_state=self.random_state,
                parallel_batch_queries=True,
                n_jobs=self.n_jobs,
            )
            # build the search graph now rather than on first query
            self._backend.prepare()
        else:
            self._backend = NearestNeighbors(
                metric=METRIC, algorithm="brute", n_jobs=self.n_jobs
            ).fit(data)

        self.backend_method = method
        self.state = IndexState.BUILT
        logger.info(
            "Built %s index over %i points of dimension %i", method, len(self), self.dimension
        )

    def query(self, vector: Sequence[float], k: int) -> np.ndarray:
        """
        Returns ids of the (approximate) ``k`` nearest neighbors of ``vector``,
        nearest first. If the index holds fewer than ``k`` points, all of them are returned.
        """
        vector = np.asarray(vector, dtype=np.float64)
        if vector.ndim != 1:
            raise DimensionMismatch(
                f"Expected a single vector of length {self.dimension}, got an array of shape {vector.shape}"
            )
        return self.query_batch(vector[np.newaxis], k)[0]

    def query_batch(self, vectors: np.ndarray, k: int) -> np.ndarray:
        """
        :meth:`query` for every row of ``vectors``.

        :return: [N, min(k, len(index))] array of ids
        :rtype: np.ndarray
        """
        if self.state is not IndexState.BUILT:
            raise IndexNotBuilt("Index has to be built before querying, call `build` first")

        k = min(_check_n_neighbors(k), len(self))
        vectors = np.asarray(vectors, dtype=np.float64)
        if vectors.ndim != 2 or vectors.shape[1] != self.dimension:
            raise DimensionMismatch(
                f"Expected vectors of length {self.dimension}, got an array of shape {vectors.shape}"
            )

        if vectors.shape[0] == 0:
            return np.empty((0, k), dtype=np.int64)

        if self.backend_method == "pynndescent":
            indices, _ = self._backend.query(vectors, k=k)
            if (indices < 0).any():
                raise RuntimeError(
                    "Approximate search found fewer neighbors than requested, "
                    "consider building the index with more trees"
                )
        else:
            indices = self._backend.kneighbors(vectors, n_neighbors=k, return_distance=False)

        return self._ids[indices]
