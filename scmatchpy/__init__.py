"""
Comparison of single-cell clusters with reference atlases:

1. Loading and alignment:
    - read a count matrix and a cell annotation table
    - keep only the cells present in both, in one sorted order
        (a partial or even empty overlap is not an error)

2. Quality control and merging:
    - per-cell thresholds on detected genes, total counts and mitochondrial percentage
    - merge replicate datasets, recording the replicate in a batch column

3. Dimensionality reduction and clustering:
    - log(CP10K + 1) normalization, highly variable genes, scaling, PCA
        (gene means and stds are kept to project other datasets later)
    - batch integration with Harmony or Scanorama
    - kNN graph, Louvain clustering at several resolutions, UMAP

4. Reference comparison:
    - average expression of every gene within each cluster / atlas cell type
    - Spearman correlation between every cluster and every atlas cell type
        over the informative genes shared by both datasets;
        constant profiles get NaN, no shared genes is an error
    - labeled heatmap of the correlations

5*. Label transfer:
    - project query cells into the reference PCA space
    - kNN classifier on the reference, majority label per cluster
"""

from . import preprocessing as pp
from . import tools as tl
from . import plotting as pl
from . import datasets
from ._utils import MissingSharedFeaturesError
