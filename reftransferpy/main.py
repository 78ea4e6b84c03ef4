# pylint: disable=E1123, W0621, C0116, W0511, E1121

from __future__ import annotations

import logging

import numpy as np
import scanpy as sc
from anndata import AnnData

import reftransferpy as rt


logger = logging.getLogger("reftransferpy")


def run_reftransfer(
    adata_ref: AnnData,
    adata_query: AnnData,
    labels: list[str],
    n_comps: int,
    n_neighbours: int,
    raw_counts: bool,
    n_top_genes: int | None,
    use_genes_column: str | None,
    transfer: str = "mnn",
    n_trees: int = 10,
    random_seed: int = 0,
) -> None:
    """
    This function is supposed to be used mostly for debugging
    1. preprocessing
        - normalization of both datasets, HVG of reference
        - build_reference(adata_ref)
             -> adata_ref.obsm["X_pca"], adata_ref.uns["reftransfer"]
    2. mapping
        - map_embedding(adata_query, adata_ref)
             -> adata_query.obsm["X_pca_reference"]
    3. transfer labels with kNN or MNN
    """
    search_highly_variable = (
        use_genes_column == "highly_variable"
        and "highly_variable" not in adata_ref.var
        and n_top_genes is not None
    )

    if raw_counts:
        sc.pp.normalize_total(adata_ref, target_sum=1e4)
        sc.pp.log1p(adata_ref)

        sc.pp.normalize_total(adata_query, target_sum=1e4)
        sc.pp.log1p(adata_query)

    if search_highly_variable:
        sc.pp.highly_variable_genes(adata_ref, n_top_genes=n_top_genes)

    rt.pp.build_reference(
        adata_ref,
        n_comps=n_comps,
        use_genes_column=use_genes_column,
        random_state=random_seed,
    )

    rt.tl.map_embedding(
        adata_query,
        adata_ref,
        use_genes_column=use_genes_column,
        transferred_primary_basis="X_pca_reference",
    )

    if transfer == "mnn":
        rt.tl.transfer_labels_MNN(
            adata_query,
            adata_ref,
            labels,
            n_neighbors=n_neighbours,
            ref_basis="X_pca",
            query_basis="X_pca_reference",
            n_trees=n_trees,
            random_state=random_seed,
        )
    elif transfer == "knn":
        rt.tl.transfer_labels_kNN(
            adata_query,
            adata_ref,
            labels,
            n_neighbors=n_neighbours,
            ref_basis="X_pca",
            query_basis="X_pca_reference",
            n_trees=n_trees,
            random_state=random_seed,
        )
    else:
        raise ValueError("`transfer` argument should be `mnn` or `knn`.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    # log-normalized expressions of all genes with louvain clusters
    adata = sc.datasets.pbmc3k_processed()
    adata = adata.raw.to_adata()
    adata.uns["log1p"] = {"base": None}

    rng = np.random.default_rng(0)
    is_ref = rng.random(adata.n_obs) < 0.5
    adata_ref = adata[is_ref].copy()
    adata_query = adata[~is_ref].copy()
    labels = [
        "louvain",
    ]

    n_comps = 50
    n_top_genes = 2000
    n_neighbours = 30
    use_genes_column = "highly_variable"

    run_reftransfer(
        adata_ref=adata_ref,
        adata_query=adata_query,
        labels=labels,
        n_comps=n_comps,
        n_neighbours=n_neighbours,
        raw_counts=False,
        n_top_genes=n_top_genes,
        use_genes_column=use_genes_column,
    )

    for label in labels:
        accuracy = np.mean(
            adata_query.obs[label].astype(str) == adata[~is_ref].obs[label].astype(str)
        )
        logger.info("'%s' transferred with accuracy %.3f", label, accuracy)
