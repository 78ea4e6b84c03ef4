# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

import numpy as np
import scanpy as sc

from anndata import AnnData

from .mapping import N_COMPS, ReferenceBasis, project
from ._utils import _as_dense, _use_genes_mask


logger = logging.getLogger("reftransferpy")


def build_reference(
    adata_ref: AnnData,
    n_comps: int = N_COMPS,
    use_genes_column: str | None = "highly_variable",
    max_value: float | None = 10.0,
    ref_basis_loadings: str = "PCs",
    reference_basis: str = "X_pca",
    random_state: int = 0,
) -> None:
    """
    Scales reference genes to zero mean and unit variance (saving means and stds
    to ``adata_ref.var``), runs PCA on the scaled expressions and saves
    all the necessary for query mapping to ``adata_ref.uns["reftransfer"]``.
    ``adata_ref.X`` is expected to be log-normalized and is scaled inplace.

    Reference embedding is set to scaled expressions times gene loadings,
    so that it's in the same convention as query embeddings
    obtained with :func:`reftransferpy.tl.map_embedding`.

    :param adata_ref: reference adata object
    :type adata_ref: AnnData
    :param n_comps: number of principal components, defaults to 100
        (capped by the data dimensions)
    :type n_comps: int, optional
    :param use_genes_column: only ``adata_ref.var[use_genes_column]`` genes will be used for PCA,
        defaults to "highly_variable". If None, all genes are used
    :type use_genes_column: str | None, optional
    :param max_value: clip scaled expressions to ``[-max_value, max_value]``, defaults to 10.0
    :type max_value: float | None, optional
    :param ref_basis_loadings: slot in ``adata_ref.varm`` for gene loadings, defaults to "PCs"
    :type ref_basis_loadings: str, optional
    :param reference_basis: slot in ``adata_ref.obsm`` for reference embedding, defaults to "X_pca"
    :type reference_basis: str, optional
    :param random_state: random seed for PCA, defaults to 0
    :type random_state: int, optional
    """
    use_genes = _use_genes_mask(adata_ref, use_genes_column)

    # truncated SVD needs fewer components than both dimensions
    max_comps = min(adata_ref.n_obs, use_genes.sum()) - 1
    if n_comps > max_comps:
        logger.warning(
            "Can't compute %i components for %i cells and %i genes, %i will be computed",
            n_comps,
            adata_ref.n_obs,
            use_genes.sum(),
            max_comps,
        )
        n_comps = max_comps

    sc.pp.scale(adata_ref, zero_center=True, max_value=max_value)
    if max_value is not None:
        adata_ref.X[adata_ref.X < -max_value] = -max_value

    sc.tl.pca(
        adata_ref,
        n_comps=n_comps,
        zero_center=False,
        mask_var=None if use_genes_column is None else use_genes_column,
        random_state=random_state,
    )
    if reference_basis != "X_pca":
        adata_ref.obsm[reference_basis] = adata_ref.obsm.pop("X_pca")
    if ref_basis_loadings != "PCs":
        adata_ref.varm[ref_basis_loadings] = adata_ref.varm.pop("PCs")

    basis = ReferenceBasis(
        loadings=_as_dense(adata_ref.varm[ref_basis_loadings])[use_genes]
    )
    # [cells, n_comps] = [cells, genes] x [genes, n_comps]
    embedding = project(adata_ref.X[:, use_genes], basis, centered=True)
    adata_ref.obsm[reference_basis] = embedding

    adata_ref.uns["reftransfer"] = {
        "n_comps": n_comps,
        # columns of U * S are orthogonal with norms equal to S
        "singular_values": np.linalg.norm(embedding, ord=2, axis=0),
        "use_genes_column": use_genes_column,
        "max_value": max_value,
        "ref_basis_loadings": ref_basis_loadings,
        "reference_basis": reference_basis,
    }

    logger.info(
        "Reference basis of %i components over %i genes is built", n_comps, use_genes.sum()
    )
