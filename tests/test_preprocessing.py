import numpy as np
import pandas as pd
from anndata import AnnData

import reftransferpy as rt


class TestPreprocessing:
    n_obs = 120
    n_vars = 40
    n_hvg = 30

    def adata(self):
        rng = np.random.default_rng(0)
        adata = AnnData(
            X=rng.gamma(2.0, 1.0, size=(self.n_obs, self.n_vars)),
            var=pd.DataFrame(index=[f"gene{i}" for i in range(self.n_vars)]),
        )
        adata.var["highly_variable"] = np.arange(self.n_vars) < self.n_hvg
        return adata

    def assert_reftransfer_object(self, adata, n_comps):
        assert "mean" in adata.var
        assert "std" in adata.var
        assert adata.obsm["X_pca"].shape == (self.n_obs, n_comps)
        assert adata.varm["PCs"].shape == (self.n_vars, n_comps)
        assert "reftransfer" in adata.uns
        assert adata.uns["reftransfer"]["n_comps"] == n_comps
        assert len(adata.uns["reftransfer"]["singular_values"]) == n_comps
        assert "use_genes_column" in adata.uns["reftransfer"]
        assert "max_value" in adata.uns["reftransfer"]

    def test_build_reference(self):
        adata = self.adata()
        X_raw = adata.X.copy()

        rt.pp.build_reference(adata, n_comps=10)
        self.assert_reftransfer_object(adata, 10)

        # genes not in use get no loadings
        assert (adata.varm["PCs"][self.n_hvg :] == 0).all()

        # raw reference expressions projected with the basis give reference embedding
        basis = rt.ReferenceBasis.from_adata(adata)
        assert basis.n_features == self.n_hvg
        assert np.allclose(
            basis.project(X_raw[:, : self.n_hvg], max_value=10), adata.obsm["X_pca"], atol=1e-6
        )

    def test_n_comps_are_capped(self):
        adata = self.adata()
        rt.pp.build_reference(adata, use_genes_column=None)

        self.assert_reftransfer_object(adata, self.n_vars - 1)

    def test_from_adata_singular_values(self):
        adata = self.adata()
        rt.pp.build_reference(adata, n_comps=10)
        adata.obs["cell_type"] = "T"

        basis = rt.ReferenceBasis.from_adata(adata, labels_key="cell_type", n_comps=5)

        assert basis.n_comps == 5
        assert basis.embedding.shape == (self.n_obs, 5)
        assert len(basis.labels) == self.n_obs
        assert np.allclose(
            basis.singular_values, np.linalg.norm(adata.obsm["X_pca"][:, :5], axis=0)
        )
