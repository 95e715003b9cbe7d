import numpy as np
import pytest

import scmatchpy as smp
from prepare_test_sample import simulate_counts


class TestQC:
    def test_qc_metrics(self):
        adata = simulate_counts()
        smp.pp.qc_metrics(adata)

        assert adata.var["mt"].sum() == 2
        for column in ("n_genes_by_counts", "total_counts", "pct_counts_mt"):
            assert column in adata.obs

        X = adata.X.toarray()
        expected = X[:, -2:].sum(axis=1) / X.sum(axis=1) * 100
        assert np.allclose(adata.obs["pct_counts_mt"], expected, atol=1e-4)

    def test_filter_qc(self):
        adata = simulate_counts()
        smp.pp.qc_metrics(adata)
        threshold = float(np.median(adata.obs["total_counts"]))

        filtered = smp.pp.filter_qc(adata, min_genes=None, min_counts=threshold, min_cells=None)

        assert filtered.n_obs == int((adata.obs["total_counts"] >= threshold).sum())
        assert (filtered.obs["total_counts"] >= threshold).all()
        assert filtered.n_vars == adata.n_vars

    def test_filter_genes(self):
        adata = simulate_counts()
        adata.X[:, 0] = 0
        adata.X.eliminate_zeros()

        filtered = smp.pp.filter_qc(adata, min_genes=None, min_cells=1)

        assert "gene0" not in filtered.var_names
        assert filtered.n_obs == adata.n_obs

    def test_nothing_passes(self, caplog):
        adata = simulate_counts()
        filtered = smp.pp.filter_qc(adata, max_pct_mito=-1)

        assert filtered.n_obs == 0
        assert "No cells passed QC filtering" in caplog.text


class TestMergeReplicates:
    def test_merge(self):
        rep1 = simulate_counts(n_cells_per_type=5, random_seed=1)
        rep2 = simulate_counts(n_cells_per_type=5, random_seed=2)
        rep2 = rep2[:, rep2.var_names[1:]].copy()

        merged = smp.pp.merge_replicates({"rep1": rep1, "rep2": rep2})

        assert merged.n_obs == rep1.n_obs + rep2.n_obs
        assert merged.n_vars == rep1.n_vars
        assert set(merged.obs["batch"]) == {"rep1", "rep2"}
        assert merged.obs_names.is_unique
        assert "cell0-rep1" in merged.obs_names

        gene0 = merged[merged.obs["batch"] == "rep2", "gene0"].X
        assert (gene0.toarray() if hasattr(gene0, "toarray") else gene0).sum() == 0

    def test_merge_list(self):
        rep = simulate_counts(n_cells_per_type=5)
        merged = smp.pp.merge_replicates([rep, rep], batch_key="replicate", index_unique=None)

        assert list(merged.obs["replicate"].unique()) == ["0", "1"]
        assert merged.obs_names.is_unique

    def test_merge_nothing(self):
        with pytest.raises(ValueError):
            smp.pp.merge_replicates({})


class TestPreprocessing:
    def test_standard_preprocess(self):
        adata = simulate_counts()
        counts = adata.X.copy()
        smp.pp.standard_preprocess(adata, n_top_genes=30, n_comps=10)

        assert (adata.layers["counts"] != counts).nnz == 0
        assert adata.raw is not None
        assert "log1p" in adata.uns
        assert adata.var["highly_variable"].sum() == 30
        assert "mean" in adata.var and "std" in adata.var
        assert adata.obsm["X_pca"].shape == (adata.n_obs, 10)
        assert adata.varm["PCs"].shape == (adata.n_vars, 10)


class TestIntegration:
    batch_key = "batch"

    @staticmethod
    def preprocessed():
        adata = simulate_counts(batches=("rep1", "rep2"))
        smp.pp.standard_preprocess(adata, n_top_genes=30, n_comps=10)
        return adata

    def assert_harmony_object(self, adata):
        assert "X_pca_harmony" in adata.obsm
        assert adata.obsm["X_pca_harmony"].shape == adata.obsm["X_pca"].shape
        assert "harmony" in adata.uns
        for key in ("basis", "adjusted_basis", "K", "vars_use", "harmony_kwargs", "converged"):
            assert key in adata.uns["harmony"]

    def test_harmony(self):
        adata = self.preprocessed()
        smp.pp.integrate(adata, key=self.batch_key, flavor="harmony", max_iter_harmony=20)

        self.assert_harmony_object(adata)
        assert adata.obsm["X_pca_harmony"].shape == (adata.n_obs, 10)

    def test_scanorama_large_dimred(self):
        adata = self.preprocessed()
        smp.pp.integrate(adata, key=self.batch_key, flavor="scanorama")

        # default dimred exceeds the 30 highly variable genes
        assert adata.obsm["X_scanorama"].shape == (adata.n_obs, 29)

    def test_scanorama(self):
        adata = self.preprocessed()
        smp.pp.integrate(adata, key=self.batch_key, flavor="scanorama", dimred=10)

        assert adata.obsm["X_scanorama"].shape == (adata.n_obs, 10)
        assert adata.uns["scanorama"]["batches"] == ["rep1", "rep2"]

    def test_unknown_flavor(self):
        adata = self.preprocessed()
        with pytest.raises(ValueError):
            smp.pp.integrate(adata, key=self.batch_key, flavor="combat")

    def test_missing_key(self):
        adata = self.preprocessed()
        with pytest.raises(ValueError):
            smp.pp.integrate(adata, key="donor")
