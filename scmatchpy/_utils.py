# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from anndata import AnnData
import scanorama

from harmonypy import run_harmony
from scipy import sparse
from scipy.sparse import issparse
from scipy.stats import rankdata

logger = logging.getLogger("scmatchpy")


class MissingSharedFeaturesError(ValueError):
    """No feature is shared between the restriction set and both summaries."""

    def __init__(self, features, features_a, features_b):
        self.features = list(features)
        self.features_a = list(features_a)
        self.features_b = list(features_b)
        super().__init__(
            "No shared features to correlate: restriction set "
            f"({len(self.features)} ids, e.g. {_preview(self.features)}), "
            f"summary A ({len(self.features_a)} ids, e.g. {_preview(self.features_a)}), "
            f"summary B ({len(self.features_b)} ids, e.g. {_preview(self.features_b)})"
        )


def _preview(ids, n: int = 5) -> str:
    ids = list(ids)
    head = ", ".join(map(str, ids[:n]))
    return f"[{head}, ...]" if len(ids) > n else f"[{head}]"


def _get_matrix(adata: AnnData, layer: str | None = None, use_raw: bool = False):
    if layer is not None and use_raw:
        raise ValueError("Cannot use both `layer` and `use_raw`.")
    if use_raw:
        if adata.raw is None:
            raise ValueError("`use_raw=True` but adata.raw is not set.")
        return adata.raw.X, adata.raw.var_names
    if layer is not None:
        if layer not in adata.layers:
            raise ValueError(f"Layer '{layer}' not found in adata.layers")
        return adata.layers[layer], adata.var_names
    return adata.X, adata.var_names


def _group_means(X, labels) -> tuple[np.ndarray, np.ndarray]:
    """
    Mean of the rows of ``X`` for each distinct non-missing label.

    Args:
        X (np.array | sparse matrix): [N_obs, N_features] matrix
        labels (array-like): [N_obs] labels, missing values are ignored

    Returns:
        tuple[np.ndarray, np.ndarray]: sorted group labels (as str) [G]
        and group means [G, N_features]. A NaN in any member observation
        propagates to the corresponding group mean.
    """
    labels = pd.Series(np.asarray(labels, dtype=object))
    if labels.shape[0] != X.shape[0]:
        raise ValueError(
            f"Got {labels.shape[0]} labels for {X.shape[0]} observations"
        )

    present = labels.notna().to_numpy()
    labels_str = labels[present].astype(str)
    groups = np.array(sorted(labels_str.unique()), dtype=object)

    codes = pd.Categorical(labels_str, categories=groups).codes
    # [G, N_obs] group indicator
    indicator = sparse.csr_matrix(
        (np.ones(codes.shape[0]), (codes, np.flatnonzero(present))),
        shape=(groups.shape[0], X.shape[0]),
    )
    counts = np.asarray(indicator.sum(axis=1)).ravel()

    # [G, N_features] = [G, N_obs] x [N_obs, N_features]
    sums = indicator @ X
    sums = sums.toarray() if issparse(sums) else np.asarray(sums, dtype=np.float64)

    return groups, sums / counts[:, np.newaxis]


def _rank_columns(M: np.ndarray) -> np.ndarray:
    # average ranks for ties, columns containing NaN stay NaN
    ranks = np.full(M.shape, np.nan)
    valid = ~np.isnan(M).any(axis=0)
    if valid.any():
        ranks[:, valid] = rankdata(M[:, valid], method="average", axis=0)
    return ranks


def _centered_ranks(M: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    ranks = _rank_columns(M)
    centered = ranks - ranks.mean(axis=0, keepdims=True)
    norms = np.sqrt((centered**2).sum(axis=0))
    # constant (or NaN) columns have no defined rank correlation
    degenerate = ~(norms > 0)
    centered[:, degenerate] = 0
    return centered, degenerate


def _spearman(A: np.ndarray, B: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Spearman correlation between every column of ``A`` and every column of ``B``.

    Args:
        A (np.ndarray): [F, Ga]
        B (np.ndarray): [F, Gb]

    Returns:
        correlation matrix [Ga, Gb] with NaN for degenerate columns,
        and degenerate masks for A [Ga] and B [Gb]
    """
    Ca, degenerate_a = _centered_ranks(A)
    Cb, degenerate_b = _centered_ranks(B)

    norms_a = np.sqrt((Ca**2).sum(axis=0))
    norms_b = np.sqrt((Cb**2).sum(axis=0))
    norms_a[degenerate_a] = 1
    norms_b[degenerate_b] = 1

    # [Ga, Gb] = [F, Ga].T x [F, Gb]
    corr = (Ca.T @ Cb) / np.outer(norms_a, norms_b)
    corr = np.clip(corr, -1, 1)
    corr[degenerate_a, :] = np.nan
    corr[:, degenerate_b] = np.nan

    return corr, degenerate_a, degenerate_b


def _harmony_integrate(
    adata: AnnData,
    key: list[str] | str,
    basis: str = "X_pca",
    adjusted_basis: str = "X_pca_harmony",
    verbose: bool = False,
    random_seed: int = 1,
    **harmony_kwargs,
) -> None:
    ho = run_harmony(
        adata.obsm[basis],
        meta_data=adata.obs,
        vars_use=key,
        verbose=verbose,
        random_state=random_seed,
        **harmony_kwargs,
    )

    # harmonypy < 2 returns [d, N], later releases [N, d]
    Z_corr = np.asarray(ho.Z_corr)
    if Z_corr.shape[0] != adata.n_obs:
        Z_corr = Z_corr.T
    adata.obsm[adjusted_basis] = Z_corr

    converged = bool(ho.check_convergence(1))

    adata.uns["harmony"] = {
        "basis": basis,
        "adjusted_basis": adjusted_basis,
        # number of soft clusters
        "K": int(ho.K),
        "vars_use": key,
        "harmony_kwargs": harmony_kwargs,
        "converged": converged,
    }

    if not converged:
        logger.warning(
            "Harmony didn't converge. "
            "Consider increasing max_iter_harmony parameter value"
        )


def _scanorama_integrate(
    adata: AnnData,
    key: str,
    adjusted_basis: str = "X_scanorama",
    use_genes_column: str | None = "highly_variable",
    verbose: bool = False,
    **scanorama_kwargs,
) -> None:
    if use_genes_column is not None:
        if use_genes_column not in adata.var:
            raise ValueError(
                f"Column `{use_genes_column}` not found in adata.var. "
                "Set `use_genes_column` parameter properly"
            )
        genes = adata.var_names[adata.var[use_genes_column].to_numpy(dtype=bool)]
    else:
        genes = adata.var_names

    batches = adata.obs[key].astype(str)
    batch_names = sorted(batches.unique())
    # scanorama needs at least two datasets to stitch
    if len(batch_names) < 2:
        raise ValueError(
            f"Scanorama integration needs at least two batches in adata.obs['{key}']"
        )

    positions = [np.flatnonzero(batches.to_numpy() == b) for b in batch_names]
    adatas = [adata[pos][:, genes].copy() for pos in positions]

    # PCA of the stitched panorama cannot have more components than genes or cells
    scanorama_kwargs["dimred"] = min(
        scanorama_kwargs.get("dimred", 100), genes.shape[0] - 1, adata.n_obs - 1
    )

    scanorama.integrate_scanpy(adatas, verbose=verbose, **scanorama_kwargs)

    # [N, d] in the original observation order
    d = adatas[0].obsm["X_scanorama"].shape[1]
    corrected = np.zeros((adata.n_obs, d))
    for pos, ad_batch in zip(positions, adatas):
        corrected[pos] = ad_batch.obsm["X_scanorama"]

    adata.obsm[adjusted_basis] = corrected
    adata.uns["scanorama"] = {
        "adjusted_basis": adjusted_basis,
        "key": key,
        "batches": batch_names,
        "n_genes": int(genes.shape[0]),
        "scanorama_kwargs": scanorama_kwargs,
    }


def _adjust_for_missing_genes(
    X_query, query_var_names: pd.Index, genes: pd.Index, genes_present: np.ndarray
) -> np.ndarray:
    """
    Sets zero expression to missing genes, returns non-sparse matrix.

    Args:
        X_query: query expression matrix [N_q, N_query_genes]
        query_var_names (pd.Index): feature ids of ``X_query``
        genes (pd.Index): which genes expressions to be left
        genes_present (np.ndarray): which genes from ``genes`` are usable in the query

    Returns:
        np.ndarray: non-sparse array of expressions of all the genes
        from ``genes`` with expressions of missing genes set to zero
    """
    logger.warning(
        "%i out of %i "
        "reference genes are missing in the query dataset or have zero std in the reference, "
        "their expressions in the query will be set to zero",
        (~genes_present).sum(),
        genes.shape[0],
    )
    t = np.zeros((X_query.shape[0], genes.shape[0]))

    X = X_query[:, query_var_names.get_indexer(genes[genes_present])]
    t[:, genes_present] = X.toarray() if issparse(X) else X

    return t


def _map_query_to_ref(
    adata_ref: AnnData,
    X_query,
    query_var_names: pd.Index,
    ref_basis_loadings: str = "PCs",
    max_value: float | None = 10.0,
    use_genes_column: str | None = "highly_variable",
) -> np.ndarray:
    if "mean" not in adata_ref.var or "std" not in adata_ref.var:
        raise ValueError(
            "Gene expression means and stds are expected to be saved in adata_ref.var "
            "(run scmatchpy.pp.standard_preprocess on the reference)"
        )
    if ref_basis_loadings not in adata_ref.varm:
        raise ValueError(f"Loadings '{ref_basis_loadings}' not found in adata_ref.varm")

    if use_genes_column is None:
        use_genes = np.ones(adata_ref.n_vars, dtype=bool)
    else:
        if use_genes_column not in adata_ref.var:
            raise ValueError(
                f"Column `{use_genes_column}` not found in adata_ref.var. "
                "Set `use_genes_column` parameter properly"
            )
        use_genes = adata_ref.var[use_genes_column].to_numpy(dtype=bool)

    genes = adata_ref.var_names[use_genes]
    # [N_genes]
    means = adata_ref.var["mean"].to_numpy()[use_genes]
    stds = adata_ref.var["std"].to_numpy()[use_genes]

    genes_present = genes.isin(query_var_names) & (stds != 0)

    if not genes_present.all():
        t = _adjust_for_missing_genes(X_query, query_var_names, genes, genes_present)
    else:
        X = X_query[:, query_var_names.get_indexer(genes)]
        t = X.toarray() if issparse(X) else np.array(X, dtype=np.float64)

    t[:, genes_present] -= means[genes_present][np.newaxis]
    t[:, genes_present] /= stds[genes_present][np.newaxis]

    if max_value is not None:
        t = np.clip(t, -max_value, max_value)

    # [cells, n_comps] = [cells, genes] x [genes, n_comps]
    return np.asarray(t @ adata_ref.varm[ref_basis_loadings][use_genes])
