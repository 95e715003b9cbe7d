# pylint: disable=E1123, W0621, C0116, W0511, E1121

from __future__ import annotations

import argparse
import logging

from pathlib import Path
from typing import Mapping, Sequence

import pandas as pd
import yaml

import scmatchpy as smp


logger = logging.getLogger("scmatchpy")


def load_config(config_path: str | Path) -> dict:
    """Load configuration from YAML file."""
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _read_reference(name: str, path: str | Path | None):
    if path is None or str(path) == "-":
        return smp.datasets.reference_atlas(name)
    return smp.datasets.read_counts(path)


def run_comparison(
    counts: str | Path | Mapping[str, str | Path],
    metadata: str | Path,
    references: Mapping[str, Mapping],
    output_dir: str | Path = "results",
    batch_key: str | None = None,
    index_unique: str | None = None,
    qc: Mapping | None = None,
    target_sum: float = 1e4,
    n_top_genes: int = 2000,
    n_comps: int = 30,
    integration: str | None = None,
    integration_kwargs: Mapping | None = None,
    resolutions: Sequence[float] = (0.5, 1.0),
    n_neighbors: int = 15,
    groupby: str | None = None,
    transfer_labels: bool = False,
    transfer_n_neighbors: int = 10,
    save_adata: bool = False,
) -> dict[str, pd.DataFrame]:
    """
    Whole workflow, from files on disk to one correlation heatmap per reference:
    1. read counts (merging replicates if a mapping label -> path is given) and metadata,
       keep the cells present in both
    2. QC filtering, normalization, HVG, scaling, PCA
    3. optional batch integration (``integration`` = "harmony" or "scanorama", needs ``batch_key``)
    4. Louvain clustering at ``resolutions``, UMAP
    5. for every reference:
        - correlate clusters (``groupby``, defaults to the last resolution) with
          ``reference["groupby"]`` groups over the highly variable genes,
          save ``similarity_<name>.csv`` and ``similarity_<name>.png``
        - optionally transfer ``reference["groupby"]`` labels with kNN
          and save per-cluster consensus ``consensus_<name>.csv``

    ``references`` maps reference name to a dict with keys ``groupby`` and optionally
    ``path`` (registered atlas of that name is downloaded if absent), ``layer``, ``use_raw``.

    Replicate barcodes are kept as they are when ``index_unique`` is None, so a single metadata
    table keyed by the original barcodes matches the merged dataset. With a separator
    (e.g. "-") every barcode gets its replicate label appended and the metadata must use
    the suffixed ids. ``integration_kwargs`` go to :func:`scmatchpy.pp.integrate`.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    # 1. loading
    if isinstance(counts, Mapping):
        batch_key = batch_key or "batch"
        adata = smp.pp.merge_replicates(
            {label: smp.datasets.read_counts(path) for label, path in counts.items()},
            batch_key=batch_key,
            index_unique=index_unique,
        )
    else:
        adata = smp.datasets.read_counts(counts)

    cell_metadata = smp.datasets.read_metadata(metadata)
    adata, _ = smp.tl.align(adata, cell_metadata, annotate=True)

    if adata.n_obs == 0:
        logger.error("No cells left after matching the count matrix with the metadata")
        return {}

    # 2. QC and preprocessing
    adata = smp.pp.filter_qc(adata, **(qc or {}))
    if adata.n_obs == 0:
        logger.error("No cells left after QC filtering")
        return {}

    smp.pp.standard_preprocess(
        adata,
        target_sum=target_sum,
        n_top_genes=n_top_genes,
        batch_key=batch_key,
        n_comps=n_comps,
    )

    # 3. integration
    use_rep = "X_pca"
    if integration is not None:
        if batch_key is None:
            raise ValueError("`batch_key` is required for integration")
        smp.pp.integrate(adata, key=batch_key, flavor=integration, **(integration_kwargs or {}))
        use_rep = adata.uns[integration]["adjusted_basis"]

    # 4. clustering
    cluster_keys = smp.tl.cluster(
        adata, resolutions=resolutions, use_rep=use_rep, n_neighbors=n_neighbors
    )
    groupby = groupby or cluster_keys[-1]

    # 5. reference comparison
    similarities = {}
    for name, reference in references.items():
        logger.info("Comparing '%s' with reference '%s'", groupby, name)
        adata_ref = _read_reference(name, reference.get("path"))
        ref_groupby = reference["groupby"]

        similarity = smp.tl.compare_to_reference(
            adata,
            adata_ref,
            groupby=groupby,
            ref_groupby=ref_groupby,
            use_raw=True,
            ref_layer=reference.get("layer"),
            ref_use_raw=reference.get("use_raw", False),
            key_added=f"similarity_{name}",
        )
        similarity.index.name = groupby
        similarity.columns.name = f"{name}: {ref_groupby}"
        similarity.to_csv(output_dir / f"similarity_{name}.csv")
        smp.pl.similarity_heatmap(
            similarity,
            save=output_dir / f"similarity_{name}.png",
            title=name,
        )
        similarities[name] = similarity

        if transfer_labels:
            if "mean" not in adata_ref.var or "PCs" not in adata_ref.varm:
                logger.warning(
                    "Reference '%s' has no PCA loadings and gene scaling stats, "
                    "skipping label transfer",
                    name,
                )
                continue
            label_key = f"{name}_{ref_groupby}"
            smp.tl.map_to_reference(adata, adata_ref, key_added=f"X_pca_{name}")
            smp.tl.transfer_labels_kNN(
                adata,
                adata_ref,
                ref_groupby,
                transfer_n_neighbors,
                query_labels=label_key,
                query_basis=f"X_pca_{name}",
                weights="distance",
            )
            smp.tl.cluster_consensus(adata, groupby, label_key).to_csv(
                output_dir / f"consensus_{name}.csv"
            )

    if save_adata:
        adata.write(output_dir / "adata.h5ad")

    return similarities


def main(argv: Sequence[str] | None = None):
    parser = argparse.ArgumentParser(
        description="Correlate single-cell clusters with reference atlas cell types"
    )
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--counts", type=str, help="Count matrix (.h5ad, .h5, 10x directory)")
    parser.add_argument("--metadata", type=str, help="Cell annotation table (.csv, .tsv)")
    parser.add_argument(
        "--reference",
        nargs=3,
        action="append",
        metavar=("NAME", "GROUPBY", "PATH"),
        help="Reference atlas; PATH '-' downloads the registered atlas NAME",
    )
    parser.add_argument("--output", type=str, default="results", help="Output directory")
    parser.add_argument("--batch-key", type=str, default=None)
    parser.add_argument("--min-genes", type=int, default=200, help="QC: minimum detected genes per cell")
    parser.add_argument("--min-cells", type=int, default=3, help="QC: minimum cells per gene")
    parser.add_argument("--integration", choices=["harmony", "scanorama"], default=None)
    parser.add_argument("--n-top-genes", type=int, default=2000)
    parser.add_argument("--n-comps", type=int, default=30)
    parser.add_argument("--n-neighbors", type=int, default=15)
    parser.add_argument("--resolutions", nargs="+", type=float, default=[0.5, 1.0])
    parser.add_argument("--groupby", type=str, default=None)
    parser.add_argument("--transfer-labels", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    if args.config:
        config = load_config(args.config)
        clustering = config.get("clustering", {})
        preprocessing = config.get("preprocessing", {})
        integration = config.get("integration", {})
        comparison = config.get("comparison", {})
        return run_comparison(
            counts=config["input"]["counts"],
            metadata=config["input"]["metadata"],
            references=comparison.get("references", {}),
            output_dir=config.get("output", {}).get("dir", args.output),
            batch_key=integration.get("key"),
            index_unique=config["input"].get("index_unique"),
            qc=config.get("qc"),
            target_sum=preprocessing.get("target_sum", 1e4),
            n_top_genes=preprocessing.get("n_top_genes", 2000),
            n_comps=preprocessing.get("n_comps", 30),
            integration=integration.get("flavor"),
            integration_kwargs=integration.get("kwargs"),
            resolutions=clustering.get("resolutions", [0.5, 1.0]),
            n_neighbors=clustering.get("n_neighbors", 15),
            groupby=comparison.get("groupby"),
            transfer_labels=comparison.get("transfer_labels", False),
            transfer_n_neighbors=comparison.get("transfer_n_neighbors", 10),
            save_adata=config.get("output", {}).get("save_adata", False),
        )

    if not args.counts or not args.metadata or not args.reference:
        parser.error("Either --config or --counts, --metadata and --reference are required")

    return run_comparison(
        counts=args.counts,
        metadata=args.metadata,
        references={
            name: {"groupby": groupby, "path": path}
            for name, groupby, path in args.reference
        },
        output_dir=args.output,
        batch_key=args.batch_key,
        qc={"min_genes": args.min_genes, "min_cells": args.min_cells},
        n_top_genes=args.n_top_genes,
        n_comps=args.n_comps,
        integration=args.integration,
        resolutions=args.resolutions,
        n_neighbors=args.n_neighbors,
        groupby=args.groupby,
        transfer_labels=args.transfer_labels,
    )


if __name__ == "__main__":
    main()
