import numpy as np
import pandas as pd
import pytest

from anndata import AnnData

import scannopy as sn

from prepare_test_sample import one_hot_reference, simulated_counts


class TestAggregateReference:
    label_key = "cell_type"

    @staticmethod
    def small_reference(categorical: bool) -> AnnData:
        labels = ["b", "a", "b", "a", "b"]
        X = np.array(
            [
                [1.0, 0.0],
                [0.0, 2.0],
                [3.0, 0.0],
                [0.0, 4.0],
                [5.0, 1.0],
            ]
        )
        obs = pd.DataFrame(
            {"cell_type": pd.Categorical(labels, categories=["a", "b"]) if categorical else labels},
            index=[f"cell{i}" for i in range(5)],
        )
        return AnnData(X=X, obs=obs, var=pd.DataFrame(index=["g1", "g2"]))

    def test_median_profiles(self):
        adata = self.small_reference(categorical=False)
        reference = sn.pp.aggregate_reference(adata, self.label_key)

        # first appearance order
        assert list(reference.columns) == ["b", "a"]
        assert list(reference.index) == ["g1", "g2"]
        assert reference.loc["g1", "b"] == 3.0
        assert reference.loc["g2", "a"] == 3.0

    def test_categorical_order(self):
        adata = self.small_reference(categorical=True)
        reference = sn.pp.aggregate_reference(adata, self.label_key, method="mean")

        assert list(reference.columns) == ["a", "b"]
        assert reference.loc["g1", "b"] == pytest.approx(3.0)
        assert reference.loc["g2", "b"] == pytest.approx(1 / 3)

    def test_unlabeled_cells_are_ignored(self):
        adata = self.small_reference(categorical=False)
        adata.obs.loc["cell4", self.label_key] = np.nan

        with pytest.warns(UserWarning, match="without a label"):
            reference = sn.pp.aggregate_reference(adata, self.label_key)

        assert reference.loc["g1", "b"] == 2.0

    def test_wrong_method(self):
        adata = self.small_reference(categorical=False)

        with pytest.raises(ValueError):
            sn.pp.aggregate_reference(adata, self.label_key, method="max")

    def test_simulated_reference(self):
        adata = simulated_counts()
        reference = sn.pp.aggregate_reference(adata, self.label_key)

        assert list(reference.columns) == ["type0", "type1", "type2"]
        # type0 over-expresses the first block of genes
        assert reference.loc["gene000", "type0"] > reference.loc["gene000", "type1"]


class TestPairwiseMarkers:
    def test_one_hot_markers(self):
        reference = one_hot_reference()
        markers = sn.pp.pairwise_markers(reference)

        assert len(markers) == 6
        assert markers[("A", "B")] == ["A_marker0", "A_marker1", "A_marker2"]
        assert markers[("C", "A")] == ["C_marker0", "C_marker1", "C_marker2"]

    def test_order_and_cap(self):
        reference = pd.DataFrame(
            {"x": [1.0, 4.0, 4.0, 2.0, 0.0], "y": [0.0, 0.0, 0.0, 0.0, 3.0]},
            index=["g1", "g4", "g3", "g2", "g5"],
        )
        markers = sn.pp.pairwise_markers(reference, n_markers=3)

        # equal differences are ordered by gene name
        assert markers[("x", "y")] == ["g3", "g4", "g2"]
        assert markers[("y", "x")] == ["g5"]

    def test_min_diff(self):
        reference = pd.DataFrame(
            {"x": [1.0, 4.0], "y": [0.5, 0.0]}, index=["g1", "g2"]
        )
        markers = sn.pp.pairwise_markers(reference, min_diff=1.0)

        assert markers[("x", "y")] == ["g2"]
        assert markers[("y", "x")] == []

    def test_single_label(self):
        with pytest.raises(ValueError):
            sn.pp.pairwise_markers(pd.DataFrame({"x": [1.0]}, index=["g1"]))
