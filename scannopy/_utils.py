# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from dataclasses import dataclass
from itertools import combinations

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.linalg import svd
from scipy.sparse import issparse
from scipy.stats import norm, rankdata
from sklearn.exceptions import ConvergenceWarning
from sklearn.mixture import GaussianMixture
from sklearn.utils.extmath import randomized_svd, svd_flip

from ._errors import EmptyFeatureSet, InvalidRank, NonConvergentFit

logger = logging.getLogger("scannopy")


@dataclass
class Embedding:
    """
    Truncated principal-component representation of the cells.

    Components are ordered by decreasing variance explained;
    ``variance_percent`` is given in percent of the total variance
    of the centered matrix, not of the retained components only.
    """

    # [N, d]
    coordinates: np.ndarray
    # [G_used, d]
    loadings: np.ndarray
    # [d]
    singular_values: np.ndarray
    # [d]
    variance: np.ndarray
    # [d]
    variance_percent: np.ndarray
    genes: pd.Index
    obs_names: pd.Index
    svd_solver: str = "exact"
    random_seed: int | None = None

    @property
    def n_comps(self) -> int:
        return self.coordinates.shape[1]

    def to_df(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.coordinates,
            index=self.obs_names,
            columns=[f"PC{i + 1}" for i in range(self.n_comps)],
        )


@dataclass
class LabelAssignment:
    sample: str
    label: str
    # label with the best initial score, before fine-tuning
    first_label: str
    # initial scores over all reference labels
    scores: pd.Series
    # scores of the last fine-tuning round, over the remaining candidates
    tuned_scores: pd.Series
    delta: float
    pruned: bool = False
    n_iterations: int = 0


def _get_X(adata: AnnData, layer: str | None = None):
    if layer is None:
        return adata.X
    assert layer in adata.layers, f"Layer `{layer}` not found in adata.layers"
    return adata.layers[layer]


def _to_dense(X) -> np.ndarray:
    return X.toarray() if issparse(X) else np.asarray(X)


def _select_genes(
    adata: AnnData,
    genes: list[str] | None = None,
    use_genes_column: str | None = "highly_variable",
) -> np.ndarray:
    """
    Boolean mask over ``adata.var_names`` of the genes to use.
    Explicit ``genes`` take priority over ``adata.var[use_genes_column]``.
    """
    if genes is not None:
        mask = np.asarray(adata.var_names.isin(list(genes)))
        source = "genes"
        n_missing = len(set(genes)) - mask.sum()
        if n_missing > 0:
            logger.warning(
                "%i out of %i requested genes are missing in adata.var_names",
                n_missing,
                len(set(genes)),
            )
    elif use_genes_column is not None and use_genes_column in adata.var:
        mask = np.asarray(adata.var[use_genes_column], dtype=bool)
        source = use_genes_column
    else:
        if use_genes_column is not None:
            warnings.warn(
                f"Column `{use_genes_column}` not found in adata.var, all genes will be used"
            )
        mask = np.ones(adata.n_vars, dtype=bool)
        source = None

    if not mask.any():
        raise EmptyFeatureSet(source)

    return mask


def _truncated_svd(
    X: np.ndarray, n_comps: int, svd_solver: str = "exact", random_seed: int = 0
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    max_rank = min(X.shape)
    if n_comps < 1 or n_comps >= max_rank:
        raise InvalidRank(n_comps, max_rank)

    if svd_solver == "exact":
        U, S, Vt = svd(X, full_matrices=False)
        U, S, Vt = U[:, :n_comps], S[:n_comps], Vt[:n_comps]
        U, Vt = svd_flip(U, Vt)
    elif svd_solver == "randomized":
        # seed passed explicitly, never drawn from the global numpy state
        U, S, Vt = randomized_svd(X, n_components=n_comps, random_state=random_seed)
    else:
        raise ValueError("`svd_solver` argument should be `exact` or `randomized`.")

    return U, S, Vt


def _project(
    X: np.ndarray, n_comps: int, svd_solver: str = "exact", random_seed: int = 0
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Returns coordinates, loadings, singular values,
    variance and percent of the total variance for the cells x genes matrix X.
    """
    X_c = X.astype(np.float64, copy=True)
    X_c -= X_c.mean(axis=0, keepdims=True)

    U, S, Vt = _truncated_svd(X_c, n_comps, svd_solver, random_seed)

    # ||X_c||_F^2 is the sum of all squared singular values,
    # so no full decomposition is needed for the denominator
    total_ss = float(np.sum(X_c**2))
    ss = S**2
    variance = ss / max(X_c.shape[0] - 1, 1)
    variance_percent = ss / total_ss * 100 if total_ss > 0 else np.zeros_like(ss)

    # [N, d] = [N, d] * [d]
    coordinates = U * S
    # [G, d] = [d, G].T
    loadings = Vt.T

    return coordinates, loadings, S, variance, variance_percent


def _centered_ranks(X: np.ndarray) -> np.ndarray:
    """
    Average ranks along axis 0, doubled and centered.
    The result is integer-valued, so dot products over it are exact.
    """
    n = X.shape[0]
    return 2.0 * rankdata(X, axis=0) - (n + 1)


def _spearman(query: np.ndarray, ref: np.ndarray) -> np.ndarray:
    """
    Spearman correlation of every query column with every reference column.

    :param query: [G, N] expression of N samples over G genes
    :param ref: [G, L] profiles of L labels over the same G genes
    :return: [N, L] correlations, 0 where either vector is constant
    """
    q = _centered_ranks(query)
    r = _centered_ranks(ref)

    # [N, L] = [G, N].T x [G, L]
    num = q.T @ r
    # [N, L] = [N, 1] * [1, L]
    denom = np.sqrt(np.sum(q * q, axis=0)[:, np.newaxis] * np.sum(r * r, axis=0))

    corr = np.zeros_like(num)
    np.divide(num, denom, out=corr, where=denom > 0)

    return np.clip(corr, -1.0, 1.0)


def _union_markers(pair_markers: dict, candidates: np.ndarray) -> np.ndarray:
    chunks = [
        pair_markers[(a, b)]
        for a, b in combinations(sorted(candidates), 2)
        if (a, b) in pair_markers
    ]
    if not chunks:
        return np.array([], dtype=int)
    return np.unique(np.concatenate(chunks))


def _fine_tune(
    x: np.ndarray,
    ref: np.ndarray,
    scores: np.ndarray,
    pair_markers: dict,
    tune_thresh: float,
    max_iter: int,
) -> tuple[int, np.ndarray, np.ndarray, int]:
    """
    Narrows the candidate labels of one sample until a single label is left,
    the candidate set stops changing, or ``max_iter`` rounds were run.

    :param x: [G] sample expression over the common genes
    :param ref: [G, L] reference profiles over the common genes
    :param scores: [L] initial scores of the sample
    :param pair_markers: (i, j) with i < j -> indices of the pair's marker genes in x
    :return: best label index, candidate indices, their last scores, rounds run
    """
    # candidates are kept in reference order, so argmax breaks ties by it
    candidates = np.flatnonzero(scores >= scores.max() - tune_thresh)
    current = scores[candidates]
    n_iter = 0

    while len(candidates) > 1 and n_iter < max_iter:
        genes = _union_markers(pair_markers, candidates)
        if genes.size == 0:
            break

        n_iter += 1
        current = _spearman(x[genes, np.newaxis], ref[np.ix_(genes, candidates)])[0]

        keep = current >= current.max() - tune_thresh
        if keep.all():
            break
        candidates = candidates[keep]
        current = current[keep]

    best = int(candidates[np.argmax(current)])

    return best, candidates, current, n_iter


def _prune_by_delta(
    deltas: np.ndarray,
    labels: np.ndarray,
    iqr_scale: float = 1.5,
    min_delta: float | None = None,
) -> np.ndarray:
    """
    Flags samples whose delta is an outlier-low value among the samples
    sharing their label (below Q1 - iqr_scale * IQR), or below ``min_delta``.
    """
    pruned = np.zeros(len(deltas), dtype=bool)

    for label in pd.unique(labels):
        idx = labels == label
        q1, q3 = np.percentile(deltas[idx], [25, 75])
        pruned[idx] = deltas[idx] < q1 - iqr_scale * (q3 - q1)

    if min_delta is not None:
        pruned |= deltas < min_delta

    return pruned


def _rank_genes(X: np.ndarray, var_names) -> np.ndarray:
    """
    [N, G] 1-based rank of each gene within each cell, by decreasing expression.
    Ties are broken lexicographically on the gene name.
    """
    # positions of the genes in lexicographic order
    lex = np.argsort(np.asarray(var_names, dtype=str), kind="stable")
    # stable sort keeps the lexicographic order among equal values
    order = np.argsort(-np.asarray(X, dtype=np.float64)[:, lex], axis=1, kind="stable")

    ranks = np.empty(X.shape, dtype=np.int64)
    rows = np.arange(X.shape[0])[:, np.newaxis]
    ranks[rows, lex[order]] = np.arange(1, X.shape[1] + 1)

    return ranks


def _cutoff_rank(n_genes: int, top_fraction: float) -> int:
    if not 0 < top_fraction <= 1:
        raise ValueError("`top_fraction` should be in (0, 1].")

    # rounding guards against 0.07 * 100 == 7.000000000000001
    cutoff = int(np.ceil(round(top_fraction * n_genes, 8)))
    if cutoff < 2:
        raise ValueError(
            f"top_fraction={top_fraction} of {n_genes} genes leaves less than 2 ranks "
            "for the area under the curve, increase `top_fraction`."
        )
    return cutoff


def _auc(member_ranks: np.ndarray, cutoff: int) -> np.ndarray:
    """
    Normalized area under the recovery curve.

    The running count of members seen is accumulated over each unit rank
    step up to ``cutoff``: a member at rank r contributes (cutoff - r).
    The area is divided by the one of a perfect placement, i.e. of the
    same number of members sitting on the top ranks.

    :param member_ranks: [N, k] ranks of the k members of a set in N cells
    """
    k = member_ranks.shape[1]
    # [N]
    area = np.where(member_ranks <= cutoff, cutoff - member_ranks, 0).sum(axis=1)

    n_top = min(k, cutoff)
    max_area = n_top * cutoff - n_top * (n_top + 1) / 2

    return area / max_area


def _mixture_crossover(
    means: np.ndarray, sds: np.ndarray, weights: np.ndarray, lower: float
) -> float | None:
    """
    Lower edge of the region around the higher mean where the component
    with the higher mean is the more probable one, searched from ``lower`` up.
    None if that component wins over the whole range or never wins.
    """
    high = int(np.argmax(means))

    grid = np.linspace(min(lower, means.min()), means.max(), 1000)
    # [2, grid]
    density = weights[:, np.newaxis] * norm.pdf(
        grid, loc=means[:, np.newaxis], scale=sds[:, np.newaxis]
    )
    total = density.sum(axis=0)
    proba = np.full(grid.size, 0.5)
    np.divide(density[high], total, out=proba, where=total > 0)

    below = np.flatnonzero(proba < 0.5)
    if below.size == 0 or below[-1] == grid.size - 1:
        return None

    return float(grid[below[-1] + 1])


def _bimodal_threshold(
    values: np.ndarray,
    name: str,
    random_seed: int = 0,
    max_iter: int = 200,
) -> float | None:
    values = np.asarray(values, dtype=np.float64)
    values = values[np.isfinite(values)]

    if np.unique(values).size < 2:
        warnings.warn(NonConvergentFit(name, "fewer than two distinct scores"))
        return None

    gmm = GaussianMixture(n_components=2, max_iter=max_iter, random_state=random_seed)
    with warnings.catch_warnings():
        # reported below through converged_
        warnings.simplefilter("ignore", ConvergenceWarning)
        gmm.fit(values[:, np.newaxis])

    if not gmm.converged_:
        warnings.warn(
            NonConvergentFit(name, f"no convergence after {max_iter} iterations")
        )
        return None

    means = gmm.means_.ravel()
    threshold = _mixture_crossover(
        means, np.sqrt(gmm.covariances_.ravel()), gmm.weights_, lower=values.min()
    )

    if threshold is None:
        warnings.warn(
            NonConvergentFit(name, "the components do not separate the scores")
        )
        return None

    logger.info(
        "Gene set '%s': components at %.3f and %.3f, threshold %.3f",
        name,
        means.min(),
        means.max(),
        threshold,
    )
    return threshold
