import logging

import numpy as np
import pandas as pd
import pytest
import scanpy as sc
import scipy.sparse as sparse

from anndata import AnnData
from scipy.stats import spearmanr

import scmatchpy as smp
from prepare_test_sample import simulate_counts


def make_adata(X, obs_names, var_names=None, **obs):
    X = np.asarray(X, dtype=np.float64)
    if var_names is None:
        var_names = [f"g{i}" for i in range(X.shape[1])]
    return AnnData(
        X,
        obs=pd.DataFrame(obs, index=list(obs_names)),
        var=pd.DataFrame(index=list(var_names)),
    )


class TestAlign:
    metadata = pd.DataFrame(
        {"cluster": ["x", "y", "z"], "score": [0.1, 0.2, 0.3]},
        index=["c2", "c3", "c4"],
    )

    def test_partial_overlap(self):
        adata = make_adata([[1, 1], [2, 2], [3, 3]], ["c1", "c2", "c3"])
        adata_aligned, metadata_aligned = smp.tl.align(adata, self.metadata)

        assert list(adata_aligned.obs_names) == ["c2", "c3"]
        assert list(metadata_aligned.index) == ["c2", "c3"]
        assert (adata_aligned.X == np.array([[2, 2], [3, 3]])).all()
        assert list(metadata_aligned["cluster"]) == ["x", "y"]

    def test_sorted_order(self):
        adata = make_adata([[3], [1], [2]], ["c3", "c1", "c2"])
        metadata = pd.DataFrame({"v": [2, 3, 1]}, index=["c2", "c3", "c1"])
        adata_aligned, metadata_aligned = smp.tl.align(adata, metadata)

        assert list(adata_aligned.obs_names) == ["c1", "c2", "c3"]
        assert list(adata_aligned.obs_names) == list(metadata_aligned.index)
        assert list(adata_aligned.X[:, 0]) == [1, 2, 3]
        assert list(metadata_aligned["v"]) == [1, 2, 3]

    def test_idempotent(self):
        adata = make_adata([[1, 1], [2, 2], [3, 3]], ["c1", "c2", "c3"])
        once = smp.tl.align(adata, self.metadata)
        twice = smp.tl.align(*once)

        assert list(twice[0].obs_names) == list(once[0].obs_names)
        assert (twice[0].X == once[0].X).all()
        pd.testing.assert_frame_equal(twice[1], once[1])

    def test_empty_intersection(self, caplog):
        adata = make_adata([[1, 1], [2, 2]], ["a", "b"])
        with caplog.at_level(logging.WARNING, logger="scmatchpy"):
            adata_aligned, metadata_aligned = smp.tl.align(adata, self.metadata)

        assert adata_aligned.shape == (0, 2)
        assert metadata_aligned.shape == (0, 2)
        assert list(metadata_aligned.columns) == ["cluster", "score"]
        assert "No shared cell identifiers" in caplog.text

    def test_annotate(self):
        adata = make_adata([[1], [2], [3]], ["c1", "c2", "c3"])
        adata_aligned, _ = smp.tl.align(adata, self.metadata, annotate=True)

        assert list(adata_aligned.obs["cluster"]) == ["x", "y"]
        assert "cluster" not in adata.obs


class TestAggregate:
    @staticmethod
    def assert_equals(f, s, threshold=1e-7):
        assert (abs(np.asarray(f) - np.asarray(s)) < threshold).all()

    def test_group_means(self):
        adata = make_adata(
            [[1, 1, 1], [2, 2, 2], [4, 4, 4]], ["o1", "o2", "o3"], label=["A", "B", "B"]
        )
        summary = smp.tl.aggregate(adata, "label")

        assert list(summary.columns) == ["A", "B"]
        assert list(summary.index) == ["g0", "g1", "g2"]
        self.assert_equals(summary["A"], [1, 1, 1])
        self.assert_equals(summary["B"], [3, 3, 3])

    def test_sparse_matches_dense(self):
        adata = simulate_counts()
        summary_sparse = smp.tl.aggregate(adata, "cell_type")
        adata.X = adata.X.toarray()
        summary_dense = smp.tl.aggregate(adata, "cell_type")

        pd.testing.assert_frame_equal(summary_sparse, summary_dense)

    def test_matches_manual_mean(self):
        adata = simulate_counts()
        summary = smp.tl.aggregate(adata, "cell_type")
        X = adata.X.toarray()

        for label in ("alpha", "beta", "delta"):
            mask = (adata.obs["cell_type"] == label).to_numpy()
            self.assert_equals(summary[label], X[mask].sum(axis=0) / mask.sum(), 1e-5)

    def test_missing_and_unused_labels(self):
        labels = pd.Categorical(["A", None, "A"], categories=["A", "B"])
        adata = make_adata([[1, 2], [100, 100], [3, 4]], ["o1", "o2", "o3"], label=labels)
        summary = smp.tl.aggregate(adata, "label")

        assert list(summary.columns) == ["A"]
        self.assert_equals(summary["A"], [2, 3])

    def test_labels_sorted_as_strings(self):
        adata = make_adata([[1], [2], [3]], ["o1", "o2", "o3"])
        summary = smp.tl.aggregate(adata, np.array([2, 10, 2]))

        assert list(summary.columns) == ["10", "2"]

    def test_nan_propagates(self):
        adata = make_adata([[1, np.nan], [3, 2]], ["o1", "o2"], label=["A", "A"])
        summary = smp.tl.aggregate(adata, "label")

        assert summary.loc["g0", "A"] == 2
        assert np.isnan(summary.loc["g1", "A"])

    def test_layer_and_key_added(self):
        adata = make_adata([[1, 1], [3, 3]], ["o1", "o2"], label=["A", "A"])
        adata.layers["counts"] = adata.X * 10
        summary = smp.tl.aggregate(adata, "label", layer="counts", key_added="means")

        self.assert_equals(summary["A"], [20, 20])
        self.assert_equals(adata.varm["means"]["A"], [20, 20])

    def test_missing_column(self):
        adata = make_adata([[1]], ["o1"])
        with pytest.raises(ValueError):
            smp.tl.aggregate(adata, "label")


class TestCorrelate:
    rng = np.random.default_rng(0)

    def test_identical_profiles(self):
        summary_a = pd.DataFrame({"g1": [1, 2, 3]}, index=["f1", "f2", "f3"])
        summary_b = pd.DataFrame({"h1": [1, 2, 3]}, index=["f1", "f2", "f3"])
        similarity = smp.tl.correlate(summary_a, summary_b)

        assert similarity.shape == (1, 1)
        assert similarity.loc["g1", "h1"] == pytest.approx(1.0)

    def test_self_correlation(self):
        values = self.rng.normal(size=(40, 4))
        index = [f"f{i}" for i in range(40)]
        summary_a = pd.DataFrame(values, index=index, columns=list("abcd"))
        summary_b = pd.DataFrame(values[:, ::-1], index=index, columns=list("dcba"))
        similarity = smp.tl.correlate(summary_a, summary_b)

        for group in "abcd":
            assert similarity.loc[group, group] == pytest.approx(1.0)

    def test_matches_scipy_with_ties(self):
        a = np.array([1, 2, 2, 3, 5, 5, 5, 0])
        b = np.array([2, 1, 3, 3, 4, 6, 1, 1])
        index = [f"f{i}" for i in range(8)]
        similarity = smp.tl.correlate(
            pd.DataFrame({"a": a}, index=index), pd.DataFrame({"b": b}, index=index)
        )

        assert similarity.loc["a", "b"] == pytest.approx(spearmanr(a, b)[0])

    def test_feature_order_does_not_matter(self):
        index = [f"f{i}" for i in range(30)]
        summary_a = pd.DataFrame(self.rng.normal(size=(30, 3)), index=index, columns=list("abc"))
        summary_b = pd.DataFrame(self.rng.normal(size=(30, 2)), index=index, columns=list("xy"))
        features = index[5:25]

        first = smp.tl.correlate(summary_a, summary_b, features=features)
        second = smp.tl.correlate(summary_a, summary_b, features=set(reversed(features)))

        pd.testing.assert_frame_equal(first, second)

    def test_restricted_to_shared_features(self):
        summary_a = pd.DataFrame({"a": [1, 2, 3, 100]}, index=["f1", "f2", "f3", "f4"])
        summary_b = pd.DataFrame({"b": [3, 2, 1]}, index=["f1", "f2", "f3"])
        similarity = smp.tl.correlate(summary_a, summary_b, features=["f1", "f2", "f3", "f9"])

        assert similarity.loc["a", "b"] == pytest.approx(-1.0)

    def test_degenerate_profile(self, caplog):
        index = ["f1", "f2", "f3"]
        summary_a = pd.DataFrame({"flat": [2, 2, 2], "up": [1, 2, 3]}, index=index)
        summary_b = pd.DataFrame({"b": [1, 3, 2]}, index=index)
        with caplog.at_level(logging.WARNING, logger="scmatchpy"):
            similarity = smp.tl.correlate(summary_a, summary_b)

        assert np.isnan(similarity.loc["flat", "b"])
        assert similarity.loc["up", "b"] == pytest.approx(0.5)
        assert "flat" in caplog.text

    def test_single_shared_feature_is_degenerate(self):
        summary_a = pd.DataFrame({"a": [1, 2]}, index=["f1", "f2"])
        summary_b = pd.DataFrame({"b": [5]}, index=["f1"])
        similarity = smp.tl.correlate(summary_a, summary_b)

        assert np.isnan(similarity.loc["a", "b"])

    def test_no_shared_features(self):
        summary_a = pd.DataFrame({"a": [1, 2]}, index=["f1", "f2"])
        summary_b = pd.DataFrame({"b": [1, 2]}, index=["h1", "h2"])

        with pytest.raises(smp.MissingSharedFeaturesError) as excinfo:
            smp.tl.correlate(summary_a, summary_b)

        assert isinstance(excinfo.value, ValueError)
        assert "f1" in str(excinfo.value)
        assert "h1" in str(excinfo.value)

    def test_empty_summary(self):
        summary_a = pd.DataFrame(index=["f1", "f2"], dtype=float)
        summary_b = pd.DataFrame({"b": [1, 2]}, index=["f1", "f2"])
        similarity = smp.tl.correlate(summary_a, summary_b)

        assert similarity.shape == (0, 1)

    def test_empty_alignment_flows_to_empty_similarity(self):
        adata = make_adata([[1, 2], [3, 4]], ["a", "b"])
        metadata = pd.DataFrame({"cluster": ["x"]}, index=["z"])
        adata_aligned, metadata_aligned = smp.tl.align(adata, metadata)

        summary = smp.tl.aggregate(adata_aligned, metadata_aligned["cluster"].to_numpy())
        summary_b = pd.DataFrame({"b": [1, 2]}, index=["g0", "g1"])
        similarity = smp.tl.correlate(summary, summary_b)

        assert similarity.shape == (0, 1)


class TestCompareToReference:
    def test_clusters_match_reference_types(self):
        adata = simulate_counts(prefix="q", random_seed=1)
        adata_ref = simulate_counts(prefix="r", random_seed=2)
        sc.pp.normalize_total(adata)
        sc.pp.log1p(adata)
        adata.var["highly_variable"] = ~adata.var_names.str.startswith("MT-")

        similarity = smp.tl.compare_to_reference(adata, adata_ref, "cell_type", "cell_type")

        assert list(similarity.index) == ["alpha", "beta", "delta"]
        assert list(similarity.columns) == ["alpha", "beta", "delta"]
        assert (similarity.idxmax(axis=1) == similarity.index).all()
        assert adata.uns["reference_similarity"]["n_features"] == adata.n_vars - 2

    def test_gene_list(self):
        adata = simulate_counts(prefix="q")
        adata_ref = simulate_counts(prefix="r")
        genes = [f"gene{i}" for i in range(20)]

        similarity = smp.tl.compare_to_reference(
            adata, adata_ref, "cell_type", "cell_type", features=genes, key_added=None
        )

        assert similarity.shape == (3, 3)
        assert "reference_similarity" not in adata.uns

    def test_no_shared_genes(self):
        adata = simulate_counts(prefix="q")
        adata_ref = simulate_counts(prefix="r")
        adata_ref.var_names = [f"other{i}" for i in range(adata_ref.n_vars)]

        with pytest.raises(smp.MissingSharedFeaturesError):
            smp.tl.compare_to_reference(adata, adata_ref, "cell_type", "cell_type", features=None)


class TestLabelTransfer:
    def test_transfer_labels_kNN(self):
        adata_ref = simulate_counts(prefix="r", random_seed=3)
        smp.pp.standard_preprocess(adata_ref, n_top_genes=30, n_comps=10)

        adata_query = simulate_counts(prefix="q", random_seed=4)
        truth = adata_query.obs["cell_type"].astype(str).to_numpy()
        sc.pp.normalize_total(adata_query, target_sum=1e4)
        sc.pp.log1p(adata_query)

        smp.tl.map_to_reference(adata_query, adata_ref)
        assert adata_query.obsm["X_pca_reference"].shape == (adata_query.n_obs, 10)

        smp.tl.transfer_labels_kNN(
            adata_query, adata_ref, "cell_type", 5, query_labels="predicted"
        )

        assert (adata_query.obs["predicted"].astype(str).to_numpy() == truth).mean() > 0.9
        proba = adata_query.obs["predicted_proba"]
        assert ((proba > 0) & (proba <= 1)).all()

    def test_missing_query_genes(self, caplog):
        adata_ref = simulate_counts(prefix="r", random_seed=3)
        smp.pp.standard_preprocess(adata_ref, n_top_genes=30, n_comps=10)

        adata_query = simulate_counts(prefix="q", random_seed=4)
        sc.pp.normalize_total(adata_query, target_sum=1e4)
        sc.pp.log1p(adata_query)
        adata_query = adata_query[:, adata_query.var_names[5:]].copy()

        with caplog.at_level(logging.WARNING, logger="scmatchpy"):
            smp.tl.map_to_reference(adata_query, adata_ref)

        assert "missing in the query" in caplog.text
        assert np.isfinite(adata_query.obsm["X_pca_reference"]).all()

    def test_unmapped_query(self):
        adata_ref = simulate_counts(prefix="r")
        adata_ref.obsm["X_pca"] = np.zeros((adata_ref.n_obs, 2))
        adata_query = simulate_counts(prefix="q")

        with pytest.raises(ValueError):
            smp.tl.transfer_labels_kNN(adata_query, adata_ref, "cell_type")


class TestClusterConsensus:
    def test_majority_label(self):
        adata = make_adata(
            np.zeros((5, 1)),
            [f"c{i}" for i in range(5)],
            cluster=["1", "1", "1", "0", "0"],
            label=["T", "T", "B", "B", None],
        )
        consensus = smp.tl.cluster_consensus(adata, "cluster", "label")

        assert list(consensus.index) == ["0", "1"]
        assert list(consensus["label"]) == ["B", "T"]
        assert consensus.loc["1", "fraction"] == pytest.approx(2 / 3)
        assert list(consensus["n_cells"]) == [1, 3]


class TestCluster:
    def test_louvain_resolutions(self):
        adata = simulate_counts()
        smp.pp.standard_preprocess(adata, n_top_genes=30, n_comps=10)

        keys = smp.tl.cluster(adata, resolutions=(0.3, 1.0), n_neighbors=10)

        assert keys == ["louvain_0.3", "louvain_1.0"]
        for key in keys:
            assert adata.obs[key].nunique() >= 2
        assert "X_umap" in adata.obsm

    def test_missing_representation(self):
        adata = simulate_counts()
        with pytest.raises(ValueError):
            smp.tl.cluster(adata, use_rep="X_pca_harmony")
