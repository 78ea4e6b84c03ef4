import numpy as np
import pandas as pd
import pytest
from anndata import AnnData

import reftransferpy as rt
from reftransferpy.main import run_reftransfer


def two_clusters(n_cells, n_genes=30, seed=0, counts=False):
    """
    Cells of type "A" express first half of genes, cells of type "B" -- the second one.
    """
    rng = np.random.default_rng(seed)
    cell_type = np.array(["A", "B"])[np.arange(n_cells) % 2]

    profile = np.where(
        (np.arange(n_genes) < n_genes // 2)[np.newaxis] == (cell_type == "A")[:, np.newaxis],
        5.0,
        1.0,
    )
    if counts:
        X = rng.poisson(profile * 4).astype(np.float64)
    else:
        X = profile + rng.normal(scale=0.3, size=profile.shape)

    adata = AnnData(
        X=X,
        obs=pd.DataFrame(
            {"cell_type": pd.Categorical(cell_type), "batch": np.where(cell_type == "A", "b1", "b2")},
            index=[f"cell{seed}_{i}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(index=[f"gene{i}" for i in range(n_genes)]),
    )
    if not counts:
        adata.uns["log1p"] = {"base": None}
    return adata


class TestTools:
    n_comps = 10
    n_neighbors = 10

    def mapped(self):
        adata_ref = two_clusters(80)
        adata_query = two_clusters(40, seed=1)
        truth = adata_query.obs["cell_type"].astype(str).to_numpy()
        adata_query.obs = adata_query.obs.drop(columns=["cell_type", "batch"])

        rt.pp.build_reference(adata_ref, n_comps=self.n_comps, use_genes_column=None)
        rt.tl.map_embedding(adata_query, adata_ref, use_genes_column=None)

        return adata_ref, adata_query, truth

    def test_map_embedding(self):
        _, adata_query, _ = self.mapped()

        assert adata_query.obsm["X_pca_reference"].shape == (40, self.n_comps)
        assert np.isfinite(adata_query.obsm["X_pca_reference"]).all()

    def test_map_embedding_missing_genes(self):
        adata_ref = two_clusters(80)
        adata_query = two_clusters(40, seed=1)[:, 5:].copy()

        rt.pp.build_reference(adata_ref, n_comps=self.n_comps, use_genes_column=None)
        rt.tl.map_embedding(adata_query, adata_ref, use_genes_column=None)

        assert adata_query.obsm["X_pca_reference"].shape == (40, self.n_comps)
        assert np.isfinite(adata_query.obsm["X_pca_reference"]).all()

    def test_map_embedding_without_statistics(self):
        adata_ref = two_clusters(80)
        adata_query = two_clusters(40, seed=1)
        adata_ref.varm["PCs"] = np.ones((adata_ref.n_vars, 3))

        with pytest.raises(AssertionError):
            rt.tl.map_embedding(adata_query, adata_ref, use_genes_column=None)

    def test_transfer_labels_kNN(self):
        adata_ref, adata_query, truth = self.mapped()

        rt.tl.transfer_labels_kNN(
            adata_query, adata_ref, "cell_type", n_neighbors=self.n_neighbors
        )

        assert isinstance(adata_query.obs["cell_type"].dtype, pd.CategoricalDtype)
        assert list(adata_query.obs["cell_type"].cat.categories) == ["A", "B"]
        assert (adata_query.obs["cell_type"].astype(str).to_numpy() == truth).all()

    def test_transfer_labels_kNN_several_labels(self):
        adata_ref, adata_query, truth = self.mapped()

        rt.tl.transfer_labels_kNN(
            adata_query,
            adata_ref,
            ["cell_type", "batch"],
            n_neighbors=self.n_neighbors,
            query_labels=["pred_type", "pred_batch"],
        )

        assert (adata_query.obs["pred_type"].astype(str).to_numpy() == truth).all()
        assert (
            adata_query.obs["pred_batch"].to_numpy() == np.where(truth == "A", "b1", "b2")
        ).all()

    def test_transfer_labels_MNN(self):
        adata_ref, adata_query, truth = self.mapped()

        rt.tl.transfer_labels_MNN(
            adata_query, adata_ref, "cell_type", n_neighbors=self.n_neighbors
        )

        assert (adata_query.obs["cell_type"].astype(str).to_numpy() == truth).all()

        confidence = adata_query.obs["cell_type_confidence"].to_numpy()
        assert ((confidence >= 0.01) & (confidence <= 1.0)).all()
        assert (confidence > rt.FALLBACK_CONFIDENCE).any()

    def test_transfer_labels_wrong_basis(self):
        adata_ref, adata_query, _ = self.mapped()
        adata_query.obsm["X_small"] = adata_query.obsm["X_pca_reference"][:, :3]

        with pytest.raises(rt.DimensionMismatch):
            rt.tl.transfer_labels_MNN(
                adata_query, adata_ref, "cell_type", query_basis="X_small"
            )


class TestRunReftransfer:
    @pytest.mark.parametrize("transfer", ["mnn", "knn"])
    def test_run_reftransfer(self, transfer):
        adata_ref = two_clusters(100, counts=True)
        adata_query = two_clusters(50, seed=1, counts=True)
        truth = adata_query.obs["cell_type"].astype(str).to_numpy()

        run_reftransfer(
            adata_ref=adata_ref,
            adata_query=adata_query,
            labels=["cell_type"],
            n_comps=10,
            n_neighbours=10,
            raw_counts=True,
            n_top_genes=None,
            use_genes_column=None,
            transfer=transfer,
        )

        assert "X_pca_reference" in adata_query.obsm
        assert np.mean(adata_query.obs["cell_type"].astype(str).to_numpy() == truth) > 0.95

    def test_unknown_transfer(self):
        with pytest.raises(ValueError):
            run_reftransfer(
                adata_ref=two_clusters(40, counts=True),
                adata_query=two_clusters(20, seed=1, counts=True),
                labels=["cell_type"],
                n_comps=5,
                n_neighbours=5,
                raw_counts=True,
                n_top_genes=None,
                use_genes_column=None,
                transfer="svm",
            )
