# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from typing import Iterable, Sequence

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from sklearn.neighbors import KNeighborsClassifier

from ._utils import (
    MissingSharedFeaturesError,
    _get_matrix,
    _group_means,
    _map_query_to_ref,
    _spearman,
)


logger = logging.getLogger("scmatchpy")


def align(
    adata: AnnData,
    metadata: pd.DataFrame,
    annotate: bool = False,
    copy: bool = True,
) -> tuple[AnnData, pd.DataFrame]:
    """
    Restrict ``adata`` and ``metadata`` to the cells present in both,
    in the same (sorted by identifier) order.
    Mismatched identifiers are expected: the overlap may be partial or even empty,
    the latter leaves both outputs empty and logs a warning.

    :param adata: AnnData object, cells are matched by ``adata.obs_names``
    :type adata: AnnData
    :param metadata: cell annotation table indexed by cell identifier
    :type metadata: pd.DataFrame
    :param annotate: if to copy all ``metadata`` columns into the aligned ``adata.obs``, defaults to False
    :type annotate: bool, optional
    :param copy: if False, the aligned AnnData is a view of ``adata``, defaults to True
    :type copy: bool, optional
    :return: aligned AnnData and metadata, ``adata.obs_names`` equal to ``metadata.index`` element-wise
    """
    obs_ids = pd.Index(adata.obs_names.astype(str))
    meta_ids = pd.Index(metadata.index.astype(str))

    shared = np.array(sorted(set(obs_ids) & set(meta_ids)), dtype=object)

    if shared.shape[0] == 0:
        logger.warning(
            "No shared cell identifiers between the count matrix (%i cells) "
            "and the metadata table (%i rows), aligned data is empty",
            obs_ids.shape[0],
            meta_ids.shape[0],
        )
    elif shared.shape[0] < max(obs_ids.shape[0], meta_ids.shape[0]):
        logger.info(
            "Aligned %i cells: dropped %i from the count matrix and %i from the metadata",
            shared.shape[0],
            obs_ids.shape[0] - shared.shape[0],
            meta_ids.shape[0] - shared.shape[0],
        )

    adata_aligned = adata[obs_ids.get_indexer(shared)]
    if copy or annotate:
        adata_aligned = adata_aligned.copy()

    metadata_aligned = metadata.iloc[meta_ids.get_indexer(shared)].copy()
    metadata_aligned.index = pd.Index(shared, name=metadata.index.name)

    if annotate:
        for column in metadata_aligned.columns:
            adata_aligned.obs[column] = metadata_aligned[column].values

    return adata_aligned, metadata_aligned


def aggregate(
    adata: AnnData,
    groupby: str | Sequence,
    layer: str | None = None,
    use_raw: bool = False,
    key_added: str | None = None,
) -> pd.DataFrame:
    """
    Average expression of every gene within each group of cells.
    Cells with a missing group label are ignored; groups without cells are absent.

    :param adata: AnnData object
    :type adata: AnnData
    :param groupby: ``adata.obs`` column with group labels, or labels for each cell
    :type groupby: str | Sequence
    :param layer: ``adata.layers[layer]`` will be averaged instead of ``adata.X``, defaults to None
    :type layer: str | None, optional
    :param use_raw: if to average ``adata.raw.X``, defaults to False
    :type use_raw: bool, optional
    :param key_added: if set, the result is also saved to ``adata.varm[key_added]``, defaults to None
    :type key_added: str | None, optional
    :return: genes x groups table of means, groups sorted by label
    """
    if isinstance(groupby, str):
        if groupby not in adata.obs:
            raise ValueError(f"Column '{groupby}' not found in adata.obs")
        labels = adata.obs[groupby]
    else:
        labels = groupby

    X, var_names = _get_matrix(adata, layer=layer, use_raw=use_raw)
    groups, means = _group_means(X, labels)

    summary = pd.DataFrame(means.T, index=pd.Index(var_names), columns=pd.Index(groups))

    if key_added is not None:
        if use_raw:
            raise ValueError("Cannot save raw gene means to adata.varm")
        adata.varm[key_added] = summary

    return summary


def correlate(
    summary_a: pd.DataFrame,
    summary_b: pd.DataFrame,
    features: Iterable[str] | None = None,
) -> pd.DataFrame:
    """
    Spearman correlation between the group profiles of two datasets.

    Correlation is computed over the features from ``features`` present in both summaries
    (order of ``features`` does not matter). Ties get average ranks.
    Profiles that are constant over those features have no defined correlation
    and get NaN in every cell they take part in.

    :param summary_a: genes x groups means of the first dataset (rows of the result)
    :type summary_a: pd.DataFrame
    :param summary_b: genes x groups means of the second dataset (columns of the result)
    :type summary_b: pd.DataFrame
    :param features: feature ids to restrict to, e.g. highly variable genes of the first dataset. If None, all features of ``summary_a``, defaults to None
    :type features: Iterable[str] | None, optional
    :raises MissingSharedFeaturesError: if no feature is left to correlate over
    :return: groups of ``summary_a`` x groups of ``summary_b`` correlation table
    """
    features = summary_a.index if features is None else pd.Index(list(features))

    shared = features.intersection(summary_a.index).intersection(summary_b.index)
    if shared.shape[0] == 0:
        raise MissingSharedFeaturesError(features, summary_a.index, summary_b.index)
    shared = shared.sort_values()

    A = summary_a.loc[shared].to_numpy(dtype=np.float64)
    B = summary_b.loc[shared].to_numpy(dtype=np.float64)

    corr, degenerate_a, degenerate_b = _spearman(A, B)

    if degenerate_a.any() or degenerate_b.any():
        logger.warning(
            "Correlation is undefined (NaN) for constant or incomplete profiles "
            "over %i shared features: %s",
            shared.shape[0],
            list(summary_a.columns[degenerate_a]) + list(summary_b.columns[degenerate_b]),
        )

    return pd.DataFrame(corr, index=summary_a.columns, columns=summary_b.columns)


def compare_to_reference(
    adata: AnnData,
    adata_ref: AnnData,
    groupby: str,
    ref_groupby: str,
    features: str | Iterable[str] | None = "highly_variable",
    layer: str | None = None,
    use_raw: bool = False,
    ref_layer: str | None = None,
    ref_use_raw: bool = False,
    key_added: str | None = "reference_similarity",
) -> pd.DataFrame:
    """
    Correlate average profiles of ``adata`` groups (e.g. clusters)
    with those of ``adata_ref`` groups (e.g. atlas cell types).

    :param adata: AnnData object with ``adata.obs[groupby]``
    :type adata: AnnData
    :param adata_ref: reference AnnData object with ``adata_ref.obs[ref_groupby]``
    :type adata_ref: AnnData
    :param groupby: ``adata.obs`` column with groups (rows of the result)
    :type groupby: str
    :param ref_groupby: ``adata_ref.obs`` column with groups (columns of the result)
    :type ref_groupby: str
    :param features: boolean ``adata.var`` column or list of genes to correlate over, None for all genes of ``adata``, defaults to "highly_variable"
    :type features: str | Iterable[str] | None, optional
    :param layer: layer of ``adata`` to average, defaults to None
    :type layer: str | None, optional
    :param use_raw: if to average ``adata.raw``, defaults to False
    :type use_raw: bool, optional
    :param ref_layer: layer of ``adata_ref`` to average, defaults to None
    :type ref_layer: str | None, optional
    :param ref_use_raw: if to average ``adata_ref.raw``, defaults to False
    :type ref_use_raw: bool, optional
    :param key_added: if not None, the result is saved to ``adata.uns[key_added]``, defaults to "reference_similarity"
    :type key_added: str | None, optional
    :return: groups x reference groups Spearman correlation table
    """
    if isinstance(features, str):
        if features not in adata.var:
            raise ValueError(
                f"Column `{features}` not found in adata.var. Set `features` parameter properly"
            )
        features = adata.var_names[adata.var[features].to_numpy(dtype=bool)]

    summary = aggregate(adata, groupby, layer=layer, use_raw=use_raw)
    summary_ref = aggregate(adata_ref, ref_groupby, layer=ref_layer, use_raw=ref_use_raw)

    features = summary.index if features is None else pd.Index(list(features))
    similarity = correlate(summary, summary_ref, features=features)

    if key_added is not None:
        shared = features.intersection(summary.index).intersection(summary_ref.index)
        adata.uns[key_added] = {
            "similarity": similarity,
            "groupby": groupby,
            "ref_groupby": ref_groupby,
            "n_features": int(shared.shape[0]),
        }

    return similarity


def cluster(
    adata: AnnData,
    resolutions: Sequence[float] = (0.5, 1.0),
    use_rep: str = "X_pca",
    n_neighbors: int = 15,
    n_pcs: int | None = None,
    key_prefix: str = "louvain",
    umap: bool = True,
    random_state: int = 0,
) -> list[str]:
    """
    Build the neighbourhood graph and run Louvain clustering at several resolutions.

    :param adata: AnnData object
    :type adata: AnnData
    :param resolutions: Louvain resolutions, defaults to (0.5, 1.0)
    :type resolutions: Sequence[float], optional
    :param use_rep: representation for neighbours search, e.g. "X_pca_harmony" after integration, defaults to "X_pca"
    :type use_rep: str, optional
    :param n_neighbors: size of local neighbourhood, defaults to 15
    :type n_neighbors: int, optional
    :param n_pcs: number of components of ``use_rep`` to use, defaults to None
    :type n_pcs: int | None, optional
    :param key_prefix: clusters are saved to ``adata.obs[f"{key_prefix}_{resolution}"]``, defaults to "louvain"
    :type key_prefix: str, optional
    :param umap: if to compute UMAP embedding, defaults to True
    :type umap: bool, optional
    :param random_state: random seed, defaults to 0
    :type random_state: int, optional
    :return: ``adata.obs`` keys of the clusterings, in the order of ``resolutions``
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_pcs,
        use_rep=use_rep,
        random_state=random_state,
    )

    keys = []
    for resolution in resolutions:
        key = f"{key_prefix}_{resolution}"
        sc.tl.louvain(
            adata, resolution=resolution, key_added=key, random_state=random_state
        )
        logger.info(
            "Louvain resolution %s: %i clusters", resolution, adata.obs[key].nunique()
        )
        keys.append(key)

    if umap:
        sc.tl.umap(adata, random_state=random_state)

    return keys


def map_to_reference(
    adata_query: AnnData,
    adata_ref: AnnData,
    use_genes_column: str | None = "highly_variable",
    ref_basis_loadings: str = "PCs",
    key_added: str = "X_pca_reference",
    max_value: float | None = 10.0,
    use_raw: bool | None = None,
) -> None:
    """
    Project query cells into the reference PCA space: query expression is scaled with the reference
    per-gene means and stds and multiplied by the reference gene loadings.
    Reference genes absent from the query are set to zero.

    :param adata_query: query AnnData object with log-normalized expression
    :type adata_query: AnnData
    :param adata_ref: reference AnnData object processed with :func:`scmatchpy.pp.standard_preprocess`
    :type adata_ref: AnnData
    :param use_genes_column: ``adata_ref.var[use_genes_column]`` genes will be used, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param ref_basis_loadings: ``adata_ref.varm[ref_basis_loadings]`` gene loadings, defaults to "PCs"
    :type ref_basis_loadings: str, optional
    :param key_added: in ``adata_query.obsm[key_added]`` the projection will be saved, defaults to "X_pca_reference"
    :type key_added: str, optional
    :param max_value: clip scaled values to this value, defaults to 10.0
    :type max_value: float | None, optional
    :param use_raw: if to use ``adata_query.raw``. If None, used when present, defaults to None
    :type use_raw: bool | None, optional
    """
    if use_raw is None:
        use_raw = adata_query.raw is not None

    if not use_raw and "log1p" not in adata_query.uns:
        warnings.warn("Gene expressions in adata_query should be log1p-transformed")

    X, var_names = _get_matrix(adata_query, use_raw=use_raw)

    adata_query.obsm[key_added] = _map_query_to_ref(
        adata_ref,
        X,
        pd.Index(var_names),
        ref_basis_loadings=ref_basis_loadings,
        max_value=max_value,
        use_genes_column=use_genes_column,
    )


def transfer_labels_kNN(
    adata_query: AnnData,
    adata_ref: AnnData,
    ref_labels: list[str] | str,
    *kNN_args,
    query_labels: list[str] | str | None = None,
    ref_basis: str = "X_pca",
    query_basis: str = "X_pca_reference",
    **kNN_kwargs,
) -> None:
    """Run sklearn kNN classifier for label transferring.
    For every transferred label the probability of the predicted class is saved
    to ``adata_query.obs[f"{label}_proba"]``.

    :param adata_query: AnnData object to predict labels for
    :type adata_query: AnnData
    :param adata_ref: AnnData object to train on
    :type adata_ref: AnnData
    :param ref_labels: either a list of column names or a str of one column name from ``adata_ref.obs`` to use as labels for model training
    :type ref_labels: list[str] | str
    :param query_labels: keys in ``adata_query.obs`` where to save transferred ``ref_labels`` (in corresponding to ``ref_labels`` order). If not provided, ``ref_labels`` will be used
    :type query_labels: list[str] | str | None, optional
    :param ref_basis: ``adata_ref.obsm[ref_basis]`` will be used as features for kNN training, defaults to "X_pca"
    :type ref_basis: str, optional
    :param query_basis: ``adata_query.obsm[query_basis]`` will be used as features for prediction, defaults to "X_pca_reference"
    :type query_basis: str, optional
    """
    ref_labels = [ref_labels] if isinstance(ref_labels, str) else list(ref_labels)
    if query_labels is None:
        query_labels = ref_labels
    query_labels = [query_labels] if isinstance(query_labels, str) else list(query_labels)
    if len(query_labels) != len(ref_labels):
        raise ValueError("`query_labels` must correspond to `ref_labels`")

    if ref_basis not in adata_ref.obsm:
        raise ValueError(f"Embedding '{ref_basis}' not found in adata_ref.obsm")
    if query_basis not in adata_query.obsm:
        raise ValueError(
            f"Embedding '{query_basis}' not found in adata_query.obsm. "
            "First, run scmatchpy.tl.map_to_reference"
        )

    X_ref = adata_ref.obsm[ref_basis]
    X_query = adata_query.obsm[query_basis]

    for ref_label, query_label in zip(ref_labels, query_labels):
        labelled = adata_ref.obs[ref_label].notna().to_numpy()
        knn = KNeighborsClassifier(*kNN_args, **kNN_kwargs)
        knn.fit(X_ref[labelled], adata_ref.obs[ref_label].astype(str).to_numpy()[labelled])

        proba = knn.predict_proba(X_query)
        adata_query.obs[query_label] = pd.Categorical(
            knn.classes_[proba.argmax(axis=1)], categories=knn.classes_
        )
        adata_query.obs[f"{query_label}_proba"] = proba.max(axis=1)


def cluster_consensus(
    adata: AnnData,
    cluster_key: str,
    label_key: str,
) -> pd.DataFrame:
    """
    Majority label (e.g. a transferred reference cell type) of every cluster.

    :param adata: AnnData object
    :type adata: AnnData
    :param cluster_key: ``adata.obs`` column with clusters
    :type cluster_key: str
    :param label_key: ``adata.obs`` column with labels
    :type label_key: str
    :return: table indexed by cluster (sorted) with columns "label", "fraction" and "n_cells"
    """
    for key in (cluster_key, label_key):
        if key not in adata.obs:
            raise ValueError(f"Column '{key}' not found in adata.obs")

    obs = adata.obs[[cluster_key, label_key]].dropna().astype(str)
    if obs.empty:
        logger.warning("No cells with both '%s' and '%s' set", cluster_key, label_key)
        return pd.DataFrame(
            columns=["label", "fraction", "n_cells"], index=pd.Index([], name=cluster_key)
        )

    # rows sorted by cluster
    counts = pd.crosstab(obs[cluster_key], obs[label_key])

    n_cells = counts.sum(axis=1)
    consensus = pd.DataFrame(
        {
            "label": counts.idxmax(axis=1),
            "fraction": counts.max(axis=1) / n_cells,
            "n_cells": n_cells,
        }
    )
    consensus.index.name = cluster_key
    return consensus
