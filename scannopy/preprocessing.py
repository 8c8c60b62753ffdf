# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd

from anndata import AnnData

from ._utils import _get_X, _to_dense


logger = logging.getLogger("scannopy")


def aggregate_reference(
    adata_ref: AnnData,
    label_key: str,
    method: str = "median",
    layer: str | None = None,
) -> pd.DataFrame:
    """
    Collapse a labeled single-cell reference into one expression profile per label.

    Labels keep the order of ``adata_ref.obs[label_key].cat.categories``
    if the column is categorical, and the order of first appearance otherwise.
    This order is the one used to break ties in :func:`scannopy.tl.classify`.

    :param adata_ref: reference adata object with log-normalized expressions
    :type adata_ref: AnnData
    :param label_key: column of ``adata_ref.obs`` with the cell labels
    :type label_key: str
    :param method: ``"median"`` or ``"mean"`` aggregation of the cells of a label, defaults to "median"
    :type method: str, optional
    :param layer: ``adata_ref.layers[layer]`` will be used instead of ``adata_ref.X`` if provided, defaults to None
    :type layer: str | None, optional
    :return: reference profiles, genes x labels
    :rtype: pd.DataFrame
    """
    assert (
        label_key in adata_ref.obs
    ), f"Column `{label_key}` not found in adata_ref.obs."

    if method not in ("median", "mean"):
        raise ValueError("`method` argument should be `median` or `mean`.")

    labels = adata_ref.obs[label_key]
    present = labels.notna().to_numpy()
    if not present.all():
        warnings.warn(
            f"{(~present).sum()} cells without a label in `{label_key}` are ignored"
        )

    if isinstance(labels.dtype, pd.CategoricalDtype):
        order = [c for c in labels.cat.categories if (labels == c).any()]
    else:
        order = list(pd.unique(labels[present]))
    order = [str(label) for label in order]

    X = _to_dense(_get_X(adata_ref, layer))[present]
    expr = pd.DataFrame(X, columns=adata_ref.var_names)
    grouped = expr.groupby(labels[present].astype(str).to_numpy(), sort=False)
    profiles = grouped.median() if method == "median" else grouped.mean()

    logger.info(
        "Aggregated %i cells into %i reference profiles by %s",
        int(present.sum()),
        len(order),
        method,
    )

    # [G, L]
    return profiles.loc[order].T


def pairwise_markers(
    reference: pd.DataFrame,
    n_markers: int | None = None,
    min_diff: float = 0.0,
) -> dict[tuple[str, str], list[str]]:
    """
    For each ordered pair of labels ``(a, b)`` select the genes
    most strongly higher in the profile of ``a`` than in the profile of ``b``.

    :param reference: reference profiles, genes x labels
    :type reference: pd.DataFrame
    :param n_markers: maximal number of markers per ordered pair,
        defaults to ``round(500 * (2 / 3) ** log2(n_labels))``
    :type n_markers: int | None, optional
    :param min_diff: only genes with ``reference[a] - reference[b] > min_diff`` are considered, defaults to 0
    :type min_diff: float, optional
    :return: ``(a, b)`` -> marker genes, by decreasing difference, ties by gene name
    :rtype: dict[tuple[str, str], list[str]]
    """
    labels = list(reference.columns)
    if len(labels) < 2:
        raise ValueError("At least two labels are needed to define markers.")

    if n_markers is None:
        n_markers = int(round(500 * (2 / 3) ** np.log2(len(labels))))

    # genes in lexicographic order, kept by the stable sort among equal differences
    lex = np.argsort(np.asarray(reference.index, dtype=str), kind="stable")
    genes = np.asarray(reference.index, dtype=str)[lex]
    # [G, L]
    values = reference.to_numpy(dtype=np.float64)[lex]

    markers = {}
    for i, a in enumerate(labels):
        for j, b in enumerate(labels):
            if i == j:
                continue
            diff = values[:, i] - values[:, j]
            order = np.argsort(-diff, kind="stable")
            order = order[diff[order] > min_diff][:n_markers]
            markers[(a, b)] = genes[order].tolist()

    logger.info(
        "Selected up to %i markers for each of %i ordered label pairs",
        n_markers,
        len(markers),
    )

    return markers
