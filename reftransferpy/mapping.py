# pylint: disable=C0103, C0116, C0114, W0511
from __future__ import annotations

import logging

from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from anndata import AnnData

from ._errors import DimensionMismatch, MissingReferenceStatistics
from ._transfer import transfer_knn, transfer_mnn
from ._utils import _as_dense, _check_embedding, _use_genes_mask

logger = logging.getLogger("reftransferpy")

N_COMPS = 100


def _frozen(a) -> np.ndarray | None:
    if a is None:
        return None
    a = np.array(a, dtype=np.float64)
    a.setflags(write=False)
    return a


def embedding_from_decomposition(u: np.ndarray, singular_values: np.ndarray) -> np.ndarray:
    """
    Re-derives reference embedding from raw decomposition outputs,
    i.e. for ``X = U S V^T`` returns ``U S`` which equals ``X V``.

    :param u: [N, d] left singular vectors
    :type u: np.ndarray
    :param singular_values: [d] singular values (per-component scale factors)
    :type singular_values: np.ndarray
    :return: [N, d] embedding
    :rtype: np.ndarray
    """
    u = _check_embedding(u, "u")
    singular_values = np.asarray(singular_values, dtype=np.float64)

    if singular_values.shape != (u.shape[1],):
        raise DimensionMismatch(
            f"Got {singular_values.shape[0]} singular values for {u.shape[1]} components"
        )
    if (singular_values < 0).any():
        raise ValueError("Singular values are expected to be non-negative")

    # [N, d] = [N, d] * [1, d]
    return u * singular_values[np.newaxis]


class ReferenceBasis:
    """
    Everything from the reference needed to map a query into its embedding:
    feature loadings, feature means and stds the reference was scaled with,
    per-component scale factors, reference embedding and labels.
    All arrays are stored as read-only copies.

    :param loadings: [features, components] loadings of the reference decomposition
    :type loadings: np.ndarray
    :param means: [features] reference means used for centering, defaults to None
    :type means: np.ndarray | None, optional
    :param stds: [features] reference stds used for scaling, defaults to None
    :type stds: np.ndarray | None, optional
    :param singular_values: [components] scale factors of the decomposition, defaults to None
    :type singular_values: np.ndarray | None, optional
    :param embedding: [N_ref, components] reference embedding, defaults to None
    :type embedding: np.ndarray | None, optional
    :param labels: labels for reference embedding rows, a sequence, a mapping or a series
        from row index to label, used by :meth:`transfer_labels`, defaults to None
    :type labels: Sequence | Mapping | pd.Series | None, optional
    :param n_comps: keep only first ``n_comps`` components, defaults to None (keep all)
    :type n_comps: int | None, optional
    :param feature_names: names of the features in the loadings order, defaults to None
    :type feature_names: Sequence[str] | None, optional
    """

    def __init__(
        self,
        loadings: np.ndarray,
        means: np.ndarray | None = None,
        stds: np.ndarray | None = None,
        singular_values: np.ndarray | None = None,
        embedding: np.ndarray | None = None,
        labels: Sequence | Mapping | pd.Series | None = None,
        n_comps: int | None = None,
        feature_names: Sequence[str] | None = None,
    ) -> None:
        loadings = _check_embedding(loadings, "loadings")

        if n_comps is not None:
            if not 0 < n_comps <= loadings.shape[1]:
                raise DimensionMismatch(
                    f"Can't keep {n_comps} components out of {loadings.shape[1]}"
                )
            loadings = loadings[:, :n_comps]
            if singular_values is not None:
                singular_values = np.asarray(singular_values)[:n_comps]
            if embedding is not None:
                embedding = _check_embedding(embedding, "embedding")[:, :n_comps]

        n_features, d = loadings.shape

        for name, values, size in (
            ("means", means, n_features),
            ("stds", stds, n_features),
            ("feature_names", feature_names, n_features),
            ("singular_values", singular_values, d),
        ):
            if values is not None and len(values) != size:
                raise DimensionMismatch(
                    f"`{name}` has length {len(values)}, while {size} is expected"
                )

        if embedding is not None:
            embedding = _check_embedding(embedding, "embedding", n_comps=d)
            if (
                labels is not None
                and not isinstance(labels, (Mapping, pd.Series))
                and len(labels) != embedding.shape[0]
            ):
                raise DimensionMismatch(
                    f"Got {len(labels)} labels for {embedding.shape[0]} reference samples"
                )

        self.loadings = _frozen(loadings)
        self.means = _frozen(means)
        self.stds = _frozen(stds)
        self.singular_values = _frozen(singular_values)
        self.embedding = _frozen(embedding)
        self.labels = labels
        self.feature_names = None if feature_names is None else list(feature_names)

    @property
    def n_features(self) -> int:
        return self.loadings.shape[0]

    @property
    def n_comps(self) -> int:
        return self.loadings.shape[1]

    def __repr__(self) -> str:
        return (
            f"ReferenceBasis(n_features={self.n_features}, n_comps={self.n_comps}, "
            f"centered={self.means is not None}, "
            f"n_ref={None if self.embedding is None else self.embedding.shape[0]})"
        )

    def subset_features(self, mask: np.ndarray) -> "ReferenceBasis":
        """
        Restricts the basis to ``mask`` features, e.g. to those present in the query.
        Dropping a feature is the same as setting its scaled query values to zero.
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.n_features,):
            raise DimensionMismatch(
                f"Feature mask of length {mask.shape[0]} for {self.n_features} features"
            )

        return ReferenceBasis(
            loadings=self.loadings[mask],
            means=None if self.means is None else self.means[mask],
            stds=None if self.stds is None else self.stds[mask],
            singular_values=self.singular_values,
            embedding=self.embedding,
            labels=self.labels,
            feature_names=None
            if self.feature_names is None
            else [f for f, m in zip(self.feature_names, mask) if m],
        )

    def project(
        self, query_features, centered: bool = False, max_value: float | None = None
    ) -> np.ndarray:
        return project(query_features, self, centered=centered, max_value=max_value)

    def transfer_labels(
        self, query_embedding: np.ndarray, mutual: bool = True, **kwargs
    ) -> pd.DataFrame:
        """
        Transfers basis labels to ``query_embedding`` through the basis reference embedding,
        with :func:`reftransferpy.transfer_mnn` or, if ``mutual=False``,
        with :func:`reftransferpy.transfer_knn`. ``kwargs`` are passed to them.
        """
        if self.embedding is None or self.labels is None:
            raise ValueError(
                "Reference embedding and labels are required to transfer labels, "
                "e.g. collect the basis with `ReferenceBasis.from_adata(adata_ref, labels_key=...)`"
            )
        transfer = transfer_mnn if mutual else transfer_knn
        return transfer(query_embedding, self.embedding, self.labels, **kwargs)

    @classmethod
    def from_adata(
        cls,
        adata_ref: AnnData,
        labels_key: str | None = None,
        use_genes_column: str | None = "highly_variable",
        ref_basis_loadings: str = "PCs",
        reference_basis: str | None = "X_pca",
        n_comps: int | None = None,
    ) -> "ReferenceBasis":
        """
        Collects reference basis from adata object,
        e.g. prepared with :func:`reftransferpy.pp.build_reference`.

        :param adata_ref: reference adata object
        :type adata_ref: AnnData
        :param labels_key: ``adata_ref.obs[labels_key]`` will be used as reference labels, defaults to None
        :type labels_key: str | None, optional
        :param use_genes_column: ``adata_ref.var[use_genes_column]`` genes were used
            to compute the basis, defaults to "highly_variable"
        :type use_genes_column: str | None, optional
        :param ref_basis_loadings: ``adata_ref.varm[ref_basis_loadings]`` contains gene loadings, defaults to "PCs"
        :type ref_basis_loadings: str, optional
        :param reference_basis: ``adata_ref.obsm[reference_basis]`` contains reference embedding, defaults to "X_pca".
            If None, basis is collected without reference embedding
        :type reference_basis: str | None, optional
        :param n_comps: keep only first ``n_comps`` components, defaults to None
        :type n_comps: int | None, optional
        """
        assert (
            ref_basis_loadings in adata_ref.varm
        ), f"Gene loadings are expected to be saved in adata_ref.varm['{ref_basis_loadings}']"

        use_genes = _use_genes_mask(adata_ref, use_genes_column)

        means = (
            adata_ref.var["mean"].to_numpy()[use_genes] if "mean" in adata_ref.var else None
        )
        stds = adata_ref.var["std"].to_numpy()[use_genes] if "std" in adata_ref.var else None
        if means is None:
            logger.warning(
                "Gene expression means are not found in adata_ref.var, "
                "queries will have to be centered by the caller"
            )

        embedding = (
            adata_ref.obsm[reference_basis]
            if reference_basis is not None and reference_basis in adata_ref.obsm
            else None
        )

        uns = adata_ref.uns.get("reftransfer", {})
        if "singular_values" in uns:
            singular_values = np.asarray(uns["singular_values"])
        elif embedding is not None:
            # columns of U * S are orthogonal with norms equal to S
            singular_values = np.linalg.norm(np.asarray(embedding), ord=2, axis=0)
        else:
            singular_values = None

        return cls(
            loadings=_as_dense(adata_ref.varm[ref_basis_loadings])[use_genes],
            means=means,
            stds=stds,
            singular_values=singular_values,
            embedding=embedding,
            labels=None if labels_key is None else adata_ref.obs[labels_key].to_numpy(),
            n_comps=n_comps,
            feature_names=adata_ref.var_names[use_genes],
        )


def project(
    query_features,
    basis: ReferenceBasis,
    centered: bool = False,
    max_value: float | None = None,
) -> np.ndarray:
    """
    Maps query samples into the reference embedding:
    ``[samples, features] x [features, components] -> [samples, components]``.

    The query has to be centered with the **reference** feature means
    (and scaled with the reference stds) for its embedding to be comparable with
    the reference one. With ``centered=False`` this is done here using
    ``basis.means`` and ``basis.stds``. Query's own means are never used:
    if the basis has no means, :class:`MissingReferenceStatistics` is raised.
    Features with zero reference std don't contribute to the embedding.
    No scaling by singular values is applied.

    :param query_features: [samples, features] matrix, features in the basis order
    :type query_features: np.ndarray | scipy.sparse.spmatrix
    :param basis: reference basis
    :type basis: ReferenceBasis
    :param centered: whether ``query_features`` are already centered and scaled
        with reference statistics, defaults to False
    :type centered: bool, optional
    :param max_value: clip scaled values to ``[-max_value, max_value]``, defaults to None
    :type max_value: float | None, optional
    :return: [samples, components] query embedding
    :rtype: np.ndarray
    """
    X = _as_dense(query_features)

    if X.ndim != 2:
        raise DimensionMismatch(
            f"Query features should be a 2-dimensional [samples, features] matrix, got shape {X.shape}"
        )
    if X.shape[1] != basis.n_features:
        raise DimensionMismatch(
            f"Query has {X.shape[1]} features, while reference loadings have {basis.n_features}"
        )

    if not centered:
        if basis.means is None:
            raise MissingReferenceStatistics(
                "Reference feature means are required to center the query. "
                "Pass `centered=True` if the query was centered with reference statistics"
            )
        X -= basis.means[np.newaxis]

        if basis.stds is not None:
            nonzero = basis.stds != 0
            X[:, nonzero] /= basis.stds[nonzero][np.newaxis]
            X[:, ~nonzero] = 0

    if max_value is not None:
        X = np.clip(X, -max_value, max_value)

    # [cells, n_comps] = [cells, genes] x [genes, n_comps]
    return X @ basis.loadings
