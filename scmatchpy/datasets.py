from __future__ import annotations

import logging

from pathlib import Path

import pandas as pd
import scanpy as sc

from anndata import AnnData


logger = logging.getLogger("scmatchpy")

REFERENCE_ATLASES = {
    "pbmcs_10x": "https://zenodo.org/record/7607565/files/pbmcs_10x_reference.h5ad",
    "pancreas": "https://zenodo.org/record/7607565/files/pancreas_plate-based_reference.h5ad",
    "fetal_liver": "https://zenodo.org/record/7607565/files/fetal_liver_reference_3p.h5ad",
    "kidney": "https://zenodo.org/record/7607565/files/kidney_healthy_fetal_reference.h5ad",
    "t_cells": "https://zenodo.org/record/7607565/files/tbru_ref.h5ad",
    "inflammatory": "https://zenodo.org/record/7607565/files/zhang_reference.h5ad",
    "tabula_muris_senis": "https://zenodo.org/record/7607565/files/TMS_facs_reference.h5ad",
}


def reference_atlas(
    name: str,
    file_path: str | Path | None = None,
) -> AnnData:
    """
    Download (once) and read a public reference atlas.

    :param name: one of ``REFERENCE_ATLASES``
    :param file_path: where to cache the atlas, defaults to ``data/reference/<file name>``
    """
    if name not in REFERENCE_ATLASES:
        raise ValueError(
            f"Unknown reference atlas '{name}'. Known: {sorted(REFERENCE_ATLASES)}"
        )
    url = REFERENCE_ATLASES[name]
    if file_path is None:
        file_path = Path("data/reference") / url.rsplit("/", 1)[-1]
    return sc.read(file_path, backup_url=url, sparse=True, cache=True)


def read_counts(
    path: str | Path,
    barcodes: str | Path | None = None,
    features: str | Path | None = None,
    var_names: str = "gene_symbols",
) -> AnnData:
    """
    Read a count matrix into a cells x genes AnnData object.

    Supported inputs: ``.h5ad``, 10x ``.h5``, a 10x directory with
    ``matrix.mtx``/``barcodes.tsv``/``features.tsv`` (optionally gzipped),
    or a genes x cells ``.mtx`` file with explicit ``barcodes`` and ``features`` files.

    :param path: matrix file or 10x directory
    :param barcodes: one cell identifier per line, only for a bare ``.mtx``
    :param features: tab-separated gene table (id, symbol, ...), only for a bare ``.mtx``
    :param var_names: "gene_symbols" or "gene_ids" for 10x inputs, defaults to "gene_symbols"
    """
    path = Path(path)
    name = path.name.lower()

    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names=var_names, cache=False)
    elif name.endswith(".h5ad"):
        adata = sc.read_h5ad(path)
    elif name.endswith(".h5"):
        adata = sc.read_10x_h5(path)
    elif name.endswith((".mtx", ".mtx.gz")):
        if barcodes is None or features is None:
            raise ValueError(
                "`barcodes` and `features` files are required to read a bare .mtx matrix"
            )
        # stored as genes x cells
        adata = sc.read_mtx(path).T
        cell_ids = pd.read_csv(barcodes, header=None, sep="\t", dtype=str)[0]
        feature_table = pd.read_csv(features, header=None, sep="\t", dtype=str)
        column = 1 if var_names == "gene_symbols" and feature_table.shape[1] > 1 else 0
        adata.obs_names = cell_ids.to_numpy()
        adata.var_names = feature_table[column].to_numpy()
        if feature_table.shape[1] > 1:
            adata.var["gene_ids"] = feature_table[0].to_numpy()
    else:
        raise ValueError(f"Unsupported count matrix format: {path}")

    adata.var_names_make_unique()
    adata.obs_names_make_unique()

    logger.info("Read %i cells x %i genes from %s", adata.n_obs, adata.n_vars, path)
    return adata


def read_metadata(
    path: str | Path,
    sep: str | None = None,
    index_col: int | str = 0,
) -> pd.DataFrame:
    """
    Read a cell annotation table (header row, one row per cell).
    The separator is guessed from the file suffix when not given:
    tab for ``.tsv``, ``.txt`` and ``.tab``, comma otherwise.
    """
    path = Path(path)
    if sep is None:
        suffixes = [s.lower() for s in path.suffixes if s.lower() != ".gz"]
        sep = "\t" if suffixes and suffixes[-1] in (".tsv", ".txt", ".tab") else ","

    metadata = pd.read_csv(path, sep=sep, index_col=index_col)
    metadata.index = metadata.index.astype(str)

    duplicated = metadata.index[metadata.index.duplicated()].unique()
    if len(duplicated):
        raise ValueError(
            f"Metadata {path} has {len(duplicated)} duplicated cell identifiers, "
            f"e.g. {list(duplicated[:5])}"
        )

    logger.info(
        "Read metadata for %i cells with columns %s",
        metadata.shape[0],
        list(metadata.columns),
    )
    return metadata
