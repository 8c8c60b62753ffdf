# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from itertools import combinations
from typing import Iterable, Mapping, Sequence

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from scipy.stats import hypergeom
from statsmodels.stats.multitest import multipletests

from ._errors import DegenerateGeneSet, EmptyMarkerSet, NoGeneOverlap
from ._utils import (
    Embedding,
    LabelAssignment,
    _auc,
    _bimodal_threshold,
    _cutoff_rank,
    _fine_tune,
    _get_X,
    _project,
    _prune_by_delta,
    _rank_genes,
    _select_genes,
    _spearman,
    _to_dense,
)
from .preprocessing import pairwise_markers


DEFAULT_TUNE_THRESH = 0.05
DEFAULT_MAX_TUNE_ITER = 20
DEFAULT_TOP_FRACTION = 0.05
IQR_OUTLIER_SCALE = 1.5

logger = logging.getLogger("scannopy")


def pca(
    adata: AnnData,
    n_comps: int = 20,
    use_genes_column: str | None = "highly_variable",
    genes: Iterable[str] | None = None,
    svd_solver: str = "exact",
    random_seed: int = 0,
    layer: str | None = None,
    key_added: str = "X_pca",
    loadings_key: str | None = None,
) -> Embedding:
    """
    Truncated PCA of the gene-centered expression matrix.

    Saves cell coordinates to ``adata.obsm[key_added]``, gene loadings to
    ``adata.varm[loadings_key]`` (zero for the genes left out of the computation)
    and variances to ``adata.uns["pca"]``. A custom ``key_added`` moves the variances
    to ``adata.uns[key_added]`` and the default loadings to ``adata.varm[key_added]``.
    ``variance_percent`` is relative to the total variance of the centered matrix,
    so it sums to at most 100 over the computed components.

    :param adata: adata object, log-normalized expressions expected
    :type adata: AnnData
    :param n_comps: number of components, between 1 and ``min(n_cells, n_genes) - 1``, defaults to 20
    :type n_comps: int, optional
    :param use_genes_column: boolean ``adata.var[use_genes_column]`` selects the genes to use.
        All genes are used if None or if the column is missing, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param genes: explicit genes to use, takes priority over ``use_genes_column``, defaults to None
    :type genes: Iterable[str] | None, optional
    :param svd_solver: ``"exact"`` (deterministic) or ``"randomized"``, defaults to "exact"
    :type svd_solver: str, optional
    :param random_seed: seed of the randomized solver, defaults to 0
    :type random_seed: int, optional
    :param layer: ``adata.layers[layer]`` will be used instead of ``adata.X`` if provided, defaults to None
    :type layer: str | None, optional
    :param key_added: slot of ``adata.obsm`` for the coordinates, defaults to "X_pca"
    :type key_added: str, optional
    :param loadings_key: slot of ``adata.varm`` for the loadings,
        "PCs" for the default ``key_added`` and ``key_added`` otherwise, defaults to None
    :type loadings_key: str | None, optional
    :raises InvalidRank: if ``n_comps`` is out of range
    :raises EmptyFeatureSet: if no gene is selected
    :return: the computed embedding
    :rtype: Embedding
    """
    mask = _select_genes(
        adata, genes=None if genes is None else list(genes), use_genes_column=use_genes_column
    )
    X = _to_dense(_get_X(adata, layer)[:, mask])

    logger.info(
        "Computing %i principal components of %i cells over %i genes (%s solver)",
        n_comps,
        X.shape[0],
        X.shape[1],
        svd_solver,
    )

    coordinates, loadings, S, variance, variance_percent = _project(
        X, n_comps, svd_solver=svd_solver, random_seed=random_seed
    )

    adata.obsm[key_added] = coordinates

    # [G, d]
    PCs = np.zeros((adata.n_vars, n_comps))
    PCs[mask] = loadings
    if loadings_key is None:
        loadings_key = "PCs" if key_added == "X_pca" else key_added
    adata.varm[loadings_key] = PCs

    uns_key = "pca" if key_added == "X_pca" else key_added
    adata.uns[uns_key] = {
        "variance": variance,
        "variance_ratio": variance_percent / 100,
        "variance_percent": variance_percent,
        "params": {
            "n_comps": n_comps,
            "svd_solver": svd_solver,
            "random_seed": random_seed,
            "use_genes_column": use_genes_column,
            "n_genes": int(mask.sum()),
        },
    }

    return Embedding(
        coordinates=coordinates,
        loadings=loadings,
        singular_values=S,
        variance=variance,
        variance_percent=variance_percent,
        genes=adata.var_names[mask],
        obs_names=adata.obs_names.copy(),
        svd_solver=svd_solver,
        random_seed=random_seed if svd_solver == "randomized" else None,
    )


def tsne(
    adata: AnnData,
    use_rep: str = "X_pca",
    key_added: str = "X_tsne",
    perplexity: float = 30,
    random_seed: int = 0,
    use_model: "openTSNE.TSNEEmbedding" | str | None = None,
    save_path: str | None = None,
    use_raw: bool | None = None,
    return_model: bool = False,
    **kwargs,
) -> None | "openTSNE.TSNEEmbedding":
    """
    Run openTSNE dimension reduction on adata if use_model is None,
    or embed ``adata.obsm[use_rep]`` into an existing embedding, saved in use_model.

    :param adata: adata object
    :type adata: AnnData
    :param use_rep: ``adata.obsm[use_rep]`` will be used as features for ``openTSNE`` model, defaults to "X_pca"
    :type use_rep: str, optional
    :param key_added: to ``adata.obsm[key_added]`` embedding will be saved, defaults to "X_tsne"
    :type key_added: str, optional
    :param perplexity: size of the neighbourhood each cell keeps, defaults to 30
    :type perplexity: float, optional
    :param random_seed: seed of the ``openTSNE`` optimisation, defaults to 0
    :type random_seed: int, optional
    :param use_model: ``openTSNE`` model object or path to pickle dumped model to use, defaults to None
    :type use_model: openTSNE.TSNEEmbedding | str | None, optional
    :param save_path: filepath to save pickle of the ``openTSNE`` model, defaults to None
    :type save_path: str | None, optional
    :param use_raw: if to use ``adata.raw.X`` as features when ``use_rep`` is "X", defaults to None
    :type use_raw: bool | None, optional
    :param return_model: if to return ``openTSNE`` model, defaults to False
    :type return_model: bool, optional
    :param kwargs: will be forwarded to the ``openTSNE.TSNE`` init function
    :return: if return_model is True, returns ``openTSNE`` model
    :rtype: None | openTSNE.TSNEEmbedding
    """

    import pickle

    try:
        from openTSNE import TSNE
        from openTSNE import TSNEEmbedding
    except ImportError as exc:
        raise ImportError(
            "\nPlease install openTSNE:\n\n\tpip install openTSNE"
        ) from exc

    if use_model is not None and save_path is not None:
        logger.warning("The model that will be saved is a `PartialTSNEEmbedding`")

    if use_rep != "X":
        X = adata.obsm[use_rep]
    elif use_raw:
        X = _to_dense(adata.raw.X)
    else:
        X = _to_dense(adata.X)

    if use_model is None:
        tsne_obj = TSNE(perplexity=perplexity, random_state=random_seed, **kwargs)
        model = tsne_obj.fit(X)
    else:
        if isinstance(use_model, str):
            with open(use_model, "rb") as model_file:
                model = pickle.load(model_file)
        elif isinstance(use_model, TSNEEmbedding):
            model = use_model
        else:
            raise TypeError(
                "`use_model` should be a path to the model or the model itself."
            )
        model = model.transform(X)

    adata.obsm[key_added] = np.array(model)

    if save_path:
        with open(save_path, "wb") as model_file:
            pickle.dump(model, model_file, protocol=pickle.HIGHEST_PROTOCOL)
            logger.info("Model is saved in %s", save_path)

    if return_model:
        return model
    return None


def umap(
    adata: AnnData,
    use_rep: str = "X_pca",
    n_neighbors: int = 15,
    n_pcs: int | None = None,
    random_seed: int = 0,
    key_added: str = "X_umap",
    **kwargs,
) -> None:
    """
    Build the kNN graph of ``adata.obsm[use_rep]`` and embed it with UMAP.

    The graph is kept under ``adata.uns[key_added + "_neighbors"]``
    so that it does not replace the default ``neighbors`` of the object,
    and a custom ``key_added`` leaves ``adata.obsm["X_umap"]`` untouched.

    :param adata: adata object
    :type adata: AnnData
    :param use_rep: representation to build the graph on, defaults to "X_pca"
    :type use_rep: str, optional
    :param n_neighbors: size of the local neighbourhood, defaults to 15
    :type n_neighbors: int, optional
    :param n_pcs: number of leading components of ``use_rep`` to use, all if None, defaults to None
    :type n_pcs: int | None, optional
    :param random_seed: seed of both the graph and the layout, defaults to 0
    :type random_seed: int, optional
    :param key_added: slot of ``adata.obsm`` for the embedding, defaults to "X_umap"
    :type key_added: str, optional
    :param kwargs: will be forwarded to ``scanpy.tl.umap``
    """
    neighbors_key = f"{key_added}_neighbors"
    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_pcs,
        use_rep=use_rep,
        random_state=random_seed,
        key_added=neighbors_key,
    )
    # scanpy stores the default embedding under obsm["X_umap"] and uns["umap"]
    sc.tl.umap(
        adata,
        random_state=random_seed,
        neighbors_key=neighbors_key,
        key_added=None if key_added == "X_umap" else key_added,
        **kwargs,
    )


def _check_pair_markers(
    labels: list[str], markers: Mapping[tuple[str, str], Iterable[str]]
) -> dict[tuple[str, str], set[str]]:
    pairs = {}
    for a, b in combinations(labels, 2):
        genes = set(markers.get((a, b), ())) | set(markers.get((b, a), ()))
        if not genes:
            raise EmptyMarkerSet((a, b))
        pairs[(a, b)] = genes
    return pairs


def classify(
    adata_query: AnnData,
    reference: pd.DataFrame,
    markers: Mapping[tuple[str, str], Iterable[str]] | None = None,
    fine_tune: bool = True,
    tune_thresh: float = DEFAULT_TUNE_THRESH,
    max_tune_iter: int = DEFAULT_MAX_TUNE_ITER,
    prune: bool = True,
    min_delta: float | None = None,
    iqr_scale: float = IQR_OUTLIER_SCALE,
    layer: str | None = None,
    key_added: str = "labels",
) -> list[LabelAssignment]:
    """
    Label every query cell by Spearman correlation with the reference profiles,
    restricted to marker genes, followed by fine-tuning among the closest labels.

    1. Each cell is scored against every label over the union of all marker genes.
    2. Fine-tuning keeps the labels scoring within ``tune_thresh`` of the best one
       and rescores them over the markers of the remaining label pairs only,
       until one label is left, the candidates stop changing
       or ``max_tune_iter`` rounds were run.
    3. Pruning flags cells whose ``delta`` (best minus median initial score)
       is an outlier-low value among the cells with the same label
       (below Q1 - ``iqr_scale`` * IQR), or below ``min_delta``.

    Ties are always broken by the column order of ``reference``.

    Saves labels to ``adata_query.obs[key_added]``, labels with pruned cells set to NaN
    to ``adata_query.obs[key_added + "_pruned"]``, deltas to ``adata_query.obs[key_added + "_delta"]``
    and initial scores to ``adata_query.obsm[key_added + "_scores"]``.

    :param adata_query: query adata object with log-normalized expressions
    :type adata_query: AnnData
    :param reference: reference profiles, genes x labels, see :func:`scannopy.pp.aggregate_reference`
    :type reference: pd.DataFrame
    :param markers: ``(a, b)`` -> genes higher in ``a`` than in ``b``.
        Markers of a label pair are the union of both orders.
        Computed with :func:`scannopy.pp.pairwise_markers` if None, defaults to None
    :type markers: Mapping[tuple[str, str], Iterable[str]] | None, optional
    :param fine_tune: if to run fine-tuning, defaults to True
    :type fine_tune: bool, optional
    :param tune_thresh: score margin to the best label for staying a candidate, defaults to 0.05
    :type tune_thresh: float, optional
    :param max_tune_iter: maximal number of fine-tuning rounds, defaults to 20
    :type max_tune_iter: int, optional
    :param prune: if to flag low-confidence assignments, defaults to True
    :type prune: bool, optional
    :param min_delta: absolute lower bound on ``delta``, defaults to None
    :type min_delta: float | None, optional
    :param iqr_scale: IQR multiplier of the outlier rule, defaults to 1.5
    :type iqr_scale: float, optional
    :param layer: ``adata_query.layers[layer]`` will be used instead of ``adata_query.X`` if provided, defaults to None
    :type layer: str | None, optional
    :param key_added: prefix of the result slots, defaults to "labels"
    :type key_added: str, optional
    :raises EmptyMarkerSet: if a pair of labels has no marker
    :raises NoGeneOverlap: if no marker gene is found both in the query and the reference
    :return: one assignment per query cell, in ``adata_query.obs_names`` order
    :rtype: list[LabelAssignment]
    """
    if not reference.columns.is_unique:
        raise ValueError("Reference labels should be unique.")
    if not reference.index.is_unique:
        raise ValueError("Reference genes should be unique.")

    reference = reference.copy()
    reference.columns = [str(c) for c in reference.columns]
    reference.index = reference.index.astype(str)
    labels = list(reference.columns)

    if len(labels) < 2:
        raise ValueError("At least two reference labels are needed for classification.")

    if markers is None:
        markers = pairwise_markers(reference)

    pair_genes = _check_pair_markers(labels, markers)
    all_markers = set().union(*pair_genes.values())

    common = sorted(
        all_markers
        & set(adata_query.var_names)
        & set(reference.index)
    )
    if not common:
        raise NoGeneOverlap(len(all_markers))

    logger.info(
        "%i out of %i marker genes are shared by the query and the reference",
        len(common),
        len(all_markers),
    )

    gene_pos = {gene: k for k, gene in enumerate(common)}
    label_pos = {label: k for k, label in enumerate(labels)}
    # (i, j), i < j -> indices of the pair's markers among the common genes
    pair_markers = {
        (label_pos[a], label_pos[b]): np.array(
            sorted(gene_pos[g] for g in genes if g in gene_pos), dtype=int
        )
        for (a, b), genes in pair_genes.items()
    }

    idx = adata_query.var_names.get_indexer(common)
    # [G, N]
    Q = _to_dense(_get_X(adata_query, layer)[:, idx]).astype(np.float64).T
    # [G, L]
    R = reference.loc[common].to_numpy(dtype=np.float64)

    # [N, L]
    scores = _spearman(Q, R)
    first = np.argmax(scores, axis=1)
    deltas = scores.max(axis=1) - np.median(scores, axis=1)

    best = np.empty(adata_query.n_obs, dtype=int)
    tuned = []
    n_iterations = np.zeros(adata_query.n_obs, dtype=int)
    for i in range(adata_query.n_obs):
        if fine_tune:
            best[i], candidates, current, n_iterations[i] = _fine_tune(
                Q[:, i], R, scores[i], pair_markers, tune_thresh, max_tune_iter
            )
        else:
            best[i], candidates, current = first[i], first[i : i + 1], scores[i, first[i : i + 1]]
        tuned.append((candidates, current))

    label_names = np.array(labels, dtype=object)
    final = label_names[best]

    if prune:
        pruned = _prune_by_delta(deltas, final, iqr_scale=iqr_scale, min_delta=min_delta)
    else:
        pruned = np.zeros(adata_query.n_obs, dtype=bool)

    logger.info(
        "Labeled %i cells, %i changed by fine-tuning, %i pruned",
        adata_query.n_obs,
        int((best != first).sum()),
        int(pruned.sum()),
    )

    adata_query.obs[key_added] = pd.Categorical(final, categories=labels)
    adata_query.obs[f"{key_added}_pruned"] = pd.Categorical(
        np.where(pruned, None, final), categories=labels
    )
    adata_query.obs[f"{key_added}_delta"] = deltas
    adata_query.obsm[f"{key_added}_scores"] = pd.DataFrame(
        scores, index=adata_query.obs_names, columns=labels
    )

    return [
        LabelAssignment(
            sample=str(name),
            label=str(final[i]),
            first_label=labels[first[i]],
            scores=pd.Series(scores[i], index=labels, name=str(name)),
            tuned_scores=pd.Series(
                tuned[i][1], index=label_names[tuned[i][0]], name=str(name)
            ),
            delta=float(deltas[i]),
            pruned=bool(pruned[i]),
            n_iterations=int(n_iterations[i]),
        )
        for i, name in enumerate(adata_query.obs_names)
    ]


def gene_rankings(adata: AnnData, layer: str | None = None) -> pd.DataFrame:
    """
    Rank the genes of every cell by decreasing expression, ties broken by gene name.

    :param adata: adata object
    :type adata: AnnData
    :param layer: ``adata.layers[layer]`` will be used instead of ``adata.X`` if provided, defaults to None
    :type layer: str | None, optional
    :return: 1-based ranks, cells x genes
    :rtype: pd.DataFrame
    """
    X = _to_dense(_get_X(adata, layer))
    return pd.DataFrame(
        _rank_genes(X, adata.var_names), index=adata.obs_names, columns=adata.var_names
    )


def auc_score(
    ranking: Sequence[str],
    gene_set: Iterable[str],
    top_fraction: float = DEFAULT_TOP_FRACTION,
    name: str = "gene_set",
) -> float:
    """
    Area under the recovery curve of ``gene_set`` along one ranked gene list,
    computed over the first ``ceil(top_fraction * len(ranking))`` ranks
    and normalized to [0, 1].

    :param ranking: genes, from the most to the least expressed
    :type ranking: Sequence[str]
    :param gene_set: members of the set
    :type gene_set: Iterable[str]
    :param top_fraction: fraction of the ranking the curve is computed over, defaults to 0.05
    :type top_fraction: float, optional
    :param name: name of the set for error messages, defaults to "gene_set"
    :type name: str, optional
    :raises DegenerateGeneSet: if the set is empty or shares no gene with the ranking
    :raises ValueError: if a gene appears twice in the ranking
    :rtype: float
    """
    ranking = list(ranking)
    members = set(gene_set)
    if not members:
        raise DegenerateGeneSet(name)

    position = {gene: rank for rank, gene in enumerate(ranking, start=1)}
    if len(position) < len(ranking):
        raise ValueError("Genes of the ranking should be unique.")

    member_ranks = [position[gene] for gene in sorted(members) if gene in position]
    if not member_ranks:
        raise DegenerateGeneSet(name, "has no gene in the ranking")

    cutoff = _cutoff_rank(len(ranking), top_fraction)

    return float(_auc(np.array([member_ranks]), cutoff)[0])


def score_gene_sets(
    adata: AnnData,
    gene_sets: Mapping[str, Iterable[str]],
    top_fraction: float = DEFAULT_TOP_FRACTION,
    layer: str | None = None,
    rankings: pd.DataFrame | None = None,
    key_added: str | None = "AUC",
) -> pd.DataFrame:
    """
    Gene-set AUC score of every cell for every set of ``gene_sets``.

    Members absent from ``adata.var_names`` are ignored. Saves the scores
    to ``adata.obsm[key_added]`` if ``key_added`` is not None.

    :param adata: adata object
    :type adata: AnnData
    :param gene_sets: set name -> members, iteration order gives the column order
    :type gene_sets: Mapping[str, Iterable[str]]
    :param top_fraction: fraction of each cell's ranking the curve is computed over, defaults to 0.05
    :type top_fraction: float, optional
    :param layer: ``adata.layers[layer]`` will be used instead of ``adata.X`` if provided, defaults to None
    :type layer: str | None, optional
    :param rankings: precomputed :func:`gene_rankings` of adata, defaults to None
    :type rankings: pd.DataFrame | None, optional
    :param key_added: slot of ``adata.obsm`` for the scores, defaults to "AUC"
    :type key_added: str | None, optional
    :raises DegenerateGeneSet: if a set is empty or shares no gene with ``adata.var_names``
    :return: scores, cells x sets
    :rtype: pd.DataFrame
    """
    if rankings is None:
        rankings = gene_rankings(adata, layer=layer)
    else:
        if not rankings.index.equals(adata.obs_names):
            raise ValueError("`rankings` should be indexed by adata.obs_names.")

    # [N, G]
    ranks = rankings.to_numpy()
    cutoff = _cutoff_rank(ranks.shape[1], top_fraction)

    scores = {}
    for name, genes in gene_sets.items():
        members = list(dict.fromkeys(genes))
        if not members:
            raise DegenerateGeneSet(name)

        present = np.asarray(rankings.columns.isin(members))
        if not present.any():
            raise DegenerateGeneSet(name, "has no gene in adata.var_names")
        if present.sum() < len(members):
            logger.info(
                "%i out of %i genes of '%s' are missing and will be ignored",
                len(members) - present.sum(),
                len(members),
                name,
            )

        scores[name] = _auc(ranks[:, present], cutoff)

    scores = pd.DataFrame(scores, index=rankings.index)

    if key_added is not None:
        adata.obsm[key_added] = scores

    return scores


def auc_thresholds(
    adata: AnnData,
    key: str = "AUC",
    random_seed: int = 0,
    max_iter: int = 200,
) -> dict[str, float | None]:
    """
    Propose an activity threshold for each gene set from the bimodality of its scores:
    a two-component Gaussian mixture is fitted, and the threshold is the lowest score
    at which the component with the higher mean becomes the more probable one.

    A set whose fit fails gets no threshold (None), and a
    :class:`scannopy.NonConvergentFit` warning is issued.
    Saves the thresholds to ``adata.uns[key + "_thresholds"]``, NaN standing for None.

    :param adata: adata object scored with :func:`score_gene_sets`
    :type adata: AnnData
    :param key: ``adata.obsm[key]`` holds the scores, defaults to "AUC"
    :type key: str, optional
    :param random_seed: seed of the mixture initialisation, defaults to 0
    :type random_seed: int, optional
    :param max_iter: maximal number of EM iterations, defaults to 200
    :type max_iter: int, optional
    :return: set name -> threshold or None
    :rtype: dict[str, float | None]
    """
    assert key in adata.obsm, f"Scores not found in adata.obsm['{key}']. First, run score_gene_sets."

    scores = adata.obsm[key]
    thresholds = {
        str(name): _bimodal_threshold(
            scores[name], str(name), random_seed=random_seed, max_iter=max_iter
        )
        for name in scores.columns
    }

    adata.uns[f"{key}_thresholds"] = {
        name: np.nan if value is None else value for name, value in thresholds.items()
    }

    return thresholds


def enrich_gene_sets(
    genes: Iterable[str],
    gene_sets: Mapping[str, Iterable[str]],
    background: Iterable[str] | None = None,
) -> pd.DataFrame:
    """
    One-sided hypergeometric over-representation test of ``genes``
    in every set of ``gene_sets``, with Benjamini-Hochberg correction.

    :param genes: genes of interest, e.g. markers of a cluster
    :type genes: Iterable[str]
    :param gene_sets: set name -> members
    :type gene_sets: Mapping[str, Iterable[str]]
    :param background: all the genes that could have been selected,
        defaults to the union of ``genes`` and all the sets
    :type background: Iterable[str] | None, optional
    :raises DegenerateGeneSet: if a set has no gene in the background
    :return: one row per set with ``overlap``, ``set_size``, ``study_size``,
        ``background_size``, ``expected``, ``enrichment_ratio``, ``pvalue`` and ``qvalue``
    :rtype: pd.DataFrame
    """
    study = set(genes)
    if background is None:
        background = study.union(*(set(members) for members in gene_sets.values()))
    else:
        background = set(background)
        outside = study - background
        if outside:
            warnings.warn(
                f"{len(outside)} genes of interest are not in the background and are ignored"
            )
            study &= background

    if not study:
        raise ValueError("No gene of interest left to test.")

    N = len(background)
    n = len(study)

    rows = {}
    for name, members in gene_sets.items():
        members = set(members) & background
        if not members:
            raise DegenerateGeneSet(name, "has no gene in the background")

        M = len(members)
        k = len(study & members)
        expected = n * M / N
        rows[name] = {
            "overlap": k,
            "set_size": M,
            "study_size": n,
            "background_size": N,
            "expected": expected,
            "enrichment_ratio": k / expected,
            # P(X >= k)
            "pvalue": float(hypergeom.sf(k - 1, N, M, n)),
        }

    result = pd.DataFrame.from_dict(rows, orient="index")
    if len(result):
        result["qvalue"] = multipletests(result["pvalue"], method="fdr_bh")[1]
    else:
        result["qvalue"] = pd.Series(dtype=float)

    return result
