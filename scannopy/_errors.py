# pylint: disable=C0114, C0115
from __future__ import annotations


class ScannopyError(Exception):
    """Base class for the typed failures raised by scannopy."""


class InvalidRank(ScannopyError, ValueError):
    def __init__(self, n_comps: int, max_rank: int):
        self.n_comps = n_comps
        self.max_rank = max_rank
        super().__init__(
            f"n_comps={n_comps} is invalid: must be between 1 and {max_rank - 1} "
            f"(strictly below min(n_cells, n_genes) = {max_rank})"
        )


class EmptyFeatureSet(ScannopyError, ValueError):
    def __init__(self, source: str | None = None):
        self.source = source
        detail = f" selected by {source!r}" if source else ""
        super().__init__(f"Feature subset{detail} contains no gene of adata.var_names")


class EmptyMarkerSet(ScannopyError, ValueError):
    """Raised when a pair of labels has no marker genes to tell them apart."""

    def __init__(self, pair: tuple[str, str]):
        self.pair = pair
        super().__init__(
            f"No marker genes defined for the label pair {pair[0]!r} / {pair[1]!r}"
        )


class NoGeneOverlap(ScannopyError, ValueError):
    """Raised when query and reference share none of the marker genes."""

    def __init__(self, n_markers: int):
        self.n_markers = n_markers
        super().__init__(
            f"None of the {n_markers} marker genes is present "
            "in both the query and the reference"
        )


class DegenerateGeneSet(ScannopyError, ValueError):
    def __init__(self, name: str, reason: str = "is empty"):
        self.name = name
        super().__init__(f"Gene set {name!r} {reason}")


class NonConvergentFit(ScannopyError, RuntimeWarning):
    """
    Issued (as a warning) when the score mixture model could not be fitted.
    The scoring pass itself is unaffected, only no threshold is proposed.
    """

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Mixture fit for {name!r} did not converge: {reason}")
