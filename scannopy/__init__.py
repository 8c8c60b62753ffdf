"""
Building blocks for single-cell RNA-seq dimensionality reduction and cell-type annotation:

1. Low-rank projection (``tl.pca``)
    - center every gene over the cells
    - truncated SVD (exact, or randomized with an explicit seed)
      of the cells x selected genes matrix (e.g. highly variable genes)
    - percent of variance explained relative to the total variance
      of the centered matrix (its squared Frobenius norm)
    - t-SNE (``tl.tsne``, openTSNE) and UMAP (``tl.umap``, scanpy)
      may be run on top of the resulting embedding

2. Reference label transfer (``tl.classify``)
    - one expression profile per label (``pp.aggregate_reference``)
    - marker genes for every pair of labels (``pp.pairwise_markers``)
    - Spearman correlation of each query cell with every profile,
      over the union of the marker genes
    - fine-tuning: labels within a margin of the best score are rescored
      over the markers of the remaining pairs only, until one label is left
    - pruning of the assignments with an outlier-low delta
      (best minus median score) among the cells of the same label

3. Gene-set scoring (``tl.score_gene_sets``)
    - per-cell gene rankings, ties broken by gene name
    - area under the recovery curve of each gene set over the top ranks
    - bimodality-based activity thresholds (``tl.auc_thresholds``)
    - hypergeometric over-representation test of a gene list (``tl.enrich_gene_sets``)
"""

from . import preprocessing as pp
from . import tools as tl
from ._errors import (
    DegenerateGeneSet,
    EmptyFeatureSet,
    EmptyMarkerSet,
    InvalidRank,
    NoGeneOverlap,
    NonConvergentFit,
    ScannopyError,
)
from ._utils import Embedding, LabelAssignment

__version__ = "0.1.0"
