# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

from typing import Mapping, Sequence

import anndata as ad
import numpy as np
import scanpy as sc

from anndata import AnnData
from ._utils import _harmony_integrate, _scanorama_integrate


logger = logging.getLogger("scmatchpy")


def qc_metrics(
    adata: AnnData,
    mito_prefix: str | tuple[str, ...] = ("MT-", "mt-"),
) -> None:
    """
    Flag mitochondrial genes in ``adata.var["mt"]`` and compute per-cell QC metrics
    (``n_genes_by_counts``, ``total_counts``, ``pct_counts_mt``) in place.

    :param adata: AnnData object with raw counts in ``adata.X``
    :type adata: AnnData
    :param mito_prefix: gene name prefix(es) of mitochondrial genes, defaults to ("MT-", "mt-")
    :type mito_prefix: str | tuple[str, ...], optional
    """
    adata.var["mt"] = adata.var_names.str.startswith(mito_prefix)
    n_mt = int(adata.var["mt"].sum())
    if n_mt == 0:
        logger.warning(
            "No mitochondrial genes found with prefix %s, pct_counts_mt will be 0",
            mito_prefix,
        )
    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True
    )


def filter_qc(
    adata: AnnData,
    min_genes: int | None = 200,
    max_genes: int | None = None,
    min_counts: float | None = None,
    max_counts: float | None = None,
    max_pct_mito: float | None = None,
    min_cells: int | None = 3,
) -> AnnData:
    """
    Apply per-cell quality thresholds, then drop genes detected in too few cells.
    QC metrics are computed first if ``adata.obs`` lacks them.
    Thresholds set to None are skipped.

    :param adata: AnnData object with raw counts
    :type adata: AnnData
    :param min_genes: minimal number of detected genes per cell, defaults to 200
    :type min_genes: int | None, optional
    :param max_genes: maximal number of detected genes per cell (doublet guard), defaults to None
    :type max_genes: int | None, optional
    :param min_counts: minimal total counts per cell, defaults to None
    :type min_counts: float | None, optional
    :param max_counts: maximal total counts per cell, defaults to None
    :type max_counts: float | None, optional
    :param max_pct_mito: maximal percentage of mitochondrial counts, defaults to None
    :type max_pct_mito: float | None, optional
    :param min_cells: minimal number of cells a gene is detected in, defaults to 3
    :type min_cells: int | None, optional
    :return: filtered copy of ``adata``
    """
    required = ("n_genes_by_counts", "total_counts", "pct_counts_mt")
    if not all(col in adata.obs for col in required):
        qc_metrics(adata)

    obs = adata.obs
    keep = np.ones(adata.n_obs, dtype=bool)
    for column, bound, lower in (
        ("n_genes_by_counts", min_genes, True),
        ("n_genes_by_counts", max_genes, False),
        ("total_counts", min_counts, True),
        ("total_counts", max_counts, False),
        ("pct_counts_mt", max_pct_mito, False),
    ):
        if bound is None:
            continue
        values = obs[column].to_numpy()
        keep &= values >= bound if lower else values <= bound

    filtered = adata[keep].copy()
    if filtered.n_obs == 0:
        logger.warning("No cells passed QC filtering")
        return filtered

    if min_cells is not None:
        sc.pp.filter_genes(filtered, min_cells=min_cells)

    logger.info(
        "QC filtering: %i -> %i cells, %i -> %i genes",
        adata.n_obs,
        filtered.n_obs,
        adata.n_vars,
        filtered.n_vars,
    )
    return filtered


def merge_replicates(
    adatas: Mapping[str, AnnData] | Sequence[AnnData],
    batch_key: str = "batch",
    join: str = "outer",
    index_unique: str | None = "-",
) -> AnnData:
    """
    Concatenate replicate datasets along observations.

    :param adatas: mapping replicate label -> AnnData, or a list (labelled by position)
    :type adatas: Mapping[str, AnnData] | Sequence[AnnData]
    :param batch_key: ``adata.obs`` column to record the replicate label in, defaults to "batch"
    :type batch_key: str, optional
    :param join: "outer" keeps the union of genes (absent genes are zero-filled), "inner" the intersection, defaults to "outer"
    :type join: str, optional
    :param index_unique: separator used to suffix barcodes with the replicate label, None to keep barcodes as is, defaults to "-"
    :type index_unique: str | None, optional
    :return: merged AnnData object
    """
    if not isinstance(adatas, Mapping):
        adatas = {str(i): adata for i, adata in enumerate(adatas)}
    if len(adatas) == 0:
        raise ValueError("Nothing to merge")

    merged = ad.concat(
        adatas,
        axis=0,
        join=join,
        label=batch_key,
        index_unique=index_unique,
        fill_value=0,
    )
    if not merged.obs_names.is_unique:
        logger.warning("Duplicated cell barcodes after merging, making them unique")
        merged.obs_names_make_unique()

    logger.info(
        "Merged %i replicates: %i cells, %i genes",
        len(adatas),
        merged.n_obs,
        merged.n_vars,
    )
    return merged


def standard_preprocess(
    adata: AnnData,
    target_sum: float = 1e4,
    n_top_genes: int = 2000,
    batch_key: str | None = None,
    max_value: float | None = 10,
    n_comps: int = 30,
    random_state: int = 0,
) -> None:
    """
    Normalize, log-transform, select highly variable genes, scale and run PCA in place.

    Raw counts are kept in ``adata.layers["counts"]``, log-normalized expression in ``adata.raw``.
    Per-gene ``mean`` and ``std`` used for scaling stay in ``adata.var``,
    so query datasets can later be projected with :func:`scmatchpy.tl.map_to_reference`.

    :param adata: AnnData object with raw counts in ``adata.X``
    :type adata: AnnData
    :param target_sum: library size after normalization, defaults to 1e4
    :type target_sum: float, optional
    :param n_top_genes: number of highly variable genes, defaults to 2000
    :type n_top_genes: int, optional
    :param batch_key: if set, highly variable genes are selected within each batch and combined, defaults to None
    :type batch_key: str | None, optional
    :param max_value: clip scaled values to this value, defaults to 10
    :type max_value: float | None, optional
    :param n_comps: number of principal components, defaults to 30
    :type n_comps: int, optional
    :param random_state: random seed for PCA, defaults to 0
    :type random_state: int, optional
    """
    adata.layers["counts"] = adata.X.copy()

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    adata.raw = adata

    sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, batch_key=batch_key)
    sc.pp.scale(adata, zero_center=True, max_value=max_value)

    n_comps = min(n_comps, int(adata.var["highly_variable"].sum()) - 1, adata.n_obs - 1)
    sc.tl.pca(
        adata,
        n_comps=n_comps,
        mask_var="highly_variable",
        random_state=random_state,
    )


def integrate(
    adata: AnnData,
    key: list[str] | str,
    flavor: str = "harmony",
    basis: str = "X_pca",
    adjusted_basis: str | None = None,
    verbose: bool = False,
    random_seed: int = 1,
    **kwargs,
) -> None:
    """
    Run batch correction on adata and save the corrected embedding to ``adata.obsm``,
    a summary of the run goes to ``adata.uns[flavor]``.

    :param adata: adata object with batch
    :type adata: AnnData
    :param key: which columns from ``adata.obs`` to use as batch keys (scanorama supports a single one)
    :type key: list[str] | str
    :param flavor: "harmony" (harmonypy on ``adata.obsm[basis]``) or "scanorama" (on highly variable expression), defaults to "harmony"
    :type flavor: str, optional
    :param basis: ``adata.obsm[basis]`` will be used as input embedding to Harmony, defaults to "X_pca"
    :type basis: str, optional
    :param adjusted_basis: slot where to put corrected coordinates, defaults to "X_pca_harmony" or "X_scanorama"
    :type adjusted_basis: str | None, optional
    :param verbose: if to print logs of steps of integration, defaults to False
    :type verbose: bool, optional
    :param random_seed: random seed for Harmony, defaults to 1
    :type random_seed: int, optional
    """
    keys = [key] if isinstance(key, str) else list(key)
    missing = [k for k in keys if k not in adata.obs]
    if missing:
        raise ValueError(f"Batch keys not found in adata.obs: {missing}")

    if flavor == "harmony":
        if basis not in adata.obsm:
            raise ValueError(f"Embedding '{basis}' not found in adata.obsm")
        logger.info("Harmony integration with harmonypy is performing.")
        _harmony_integrate(
            adata,
            key=key,
            basis=basis,
            adjusted_basis=adjusted_basis or "X_pca_harmony",
            verbose=verbose,
            random_seed=random_seed,
            **kwargs,
        )
    elif flavor == "scanorama":
        if len(keys) != 1:
            raise ValueError("Scanorama integration supports a single batch key")
        logger.info("Scanorama integration is performing.")
        _scanorama_integrate(
            adata,
            key=keys[0],
            adjusted_basis=adjusted_basis or "X_scanorama",
            verbose=verbose,
            **kwargs,
        )
    else:
        raise ValueError("`flavor` argument should be `harmony` or `scanorama`.")
