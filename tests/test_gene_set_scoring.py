import numpy as np
import pandas as pd
import pytest

from anndata import AnnData
from scipy.stats import hypergeom

import scannopy as sn
from scannopy._utils import _mixture_crossover

from prepare_test_sample import simulated_counts


class TestAUC:
    ranking = [f"g{i}" for i in range(10)]

    def test_first_ranks(self):
        score = sn.tl.auc_score(self.ranking, {"g0", "g1", "g2"}, top_fraction=0.5)

        assert score == 1.0

    def test_prefix_and_disjoint_sets(self):
        assert sn.tl.auc_score(self.ranking, self.ranking[:5], top_fraction=0.5) == 1.0
        assert sn.tl.auc_score(self.ranking, ["g7", "g8", "g9"], top_fraction=0.5) == 0.0

    def test_partial_recovery(self):
        # members at ranks 1 and 5 over 5 ranks: (5 - 1 + 5 - 5) / (5 - 1 + 5 - 2)
        score = sn.tl.auc_score(self.ranking, ["g0", "g4"], top_fraction=0.5)

        assert score == pytest.approx(4 / 7)

    def test_missing_members_ignored(self):
        score = sn.tl.auc_score(self.ranking, ["g0", "absent"], top_fraction=0.5)

        assert score == 1.0

    def test_degenerate_sets(self):
        with pytest.raises(sn.DegenerateGeneSet) as err:
            sn.tl.auc_score(self.ranking, [], name="empty")
        assert err.value.name == "empty"

        with pytest.raises(sn.DegenerateGeneSet):
            sn.tl.auc_score(self.ranking, ["absent"])

    def test_duplicated_ranking(self):
        with pytest.raises(ValueError, match="unique"):
            sn.tl.auc_score(["g0", "g1", "g0", "g2"], ["g0"], top_fraction=0.5)

    def test_too_few_ranks(self):
        with pytest.raises(ValueError):
            sn.tl.auc_score(self.ranking, ["g0"], top_fraction=0.05)


class TestScoreGeneSets:
    @staticmethod
    def tied_adata() -> AnnData:
        return AnnData(
            X=np.array([[1.0, 3.0, 3.0, 0.0], [0.0, 0.0, 2.0, 1.0]]),
            obs=pd.DataFrame(index=["cell0", "cell1"]),
            var=pd.DataFrame(index=["d", "c", "b", "a"]),
        )

    def test_rankings_break_ties_by_name(self):
        rankings = sn.tl.gene_rankings(self.tied_adata())

        assert rankings.loc["cell0"].to_dict() == {"d": 3, "c": 2, "b": 1, "a": 4}
        assert rankings.loc["cell1"].to_dict() == {"d": 4, "c": 3, "b": 1, "a": 2}

    def test_score_matrix(self):
        adata = self.tied_adata()
        gene_sets = {"second": ["c", "d"], "first": ["b"], "partial": ["a", "absent"]}

        scores = sn.tl.score_gene_sets(adata, gene_sets, top_fraction=0.5)

        assert list(scores.columns) == ["second", "first", "partial"]
        assert list(scores.index) == ["cell0", "cell1"]
        assert scores.loc["cell0", "first"] == 1.0
        assert scores.loc["cell0", "partial"] == 0.0
        assert scores.loc["cell1", "partial"] == 0.0
        # ranks 2 and 3 of cell0 over 2 ranks: (2 - 2) / (2 - 1)
        assert scores.loc["cell0", "second"] == 0.0
        assert "AUC" in adata.obsm

    def test_matches_single_ranking(self):
        adata = simulated_counts(n_cells=20)
        gene_sets = {
            "block0": [f"gene{j:03d}" for j in range(10)],
            "block1": [f"gene{j:03d}" for j in range(10, 20)],
        }

        rankings = sn.tl.gene_rankings(adata)
        scores = sn.tl.score_gene_sets(adata, gene_sets, top_fraction=0.25, rankings=rankings)

        for cell in adata.obs_names[:5]:
            ranking = rankings.loc[cell].sort_values().index
            for name, genes in gene_sets.items():
                assert scores.loc[cell, name] == pytest.approx(
                    sn.tl.auc_score(ranking, genes, top_fraction=0.25)
                )

    def test_block_genes_score_their_group(self):
        adata = simulated_counts()
        gene_sets = {
            f"block{g}": [f"gene{j:03d}" for j in range(10 * g, 10 * (g + 1))]
            for g in range(3)
        }

        scores = sn.tl.score_gene_sets(adata, gene_sets, top_fraction=0.2)
        mean_scores = scores.groupby(adata.obs["cell_type"].to_numpy()).mean()

        for g in range(3):
            assert mean_scores.loc[f"type{g}"].idxmax() == f"block{g}"

    def test_degenerate_set(self):
        adata = self.tied_adata()

        with pytest.raises(sn.DegenerateGeneSet) as err:
            sn.tl.score_gene_sets(adata, {"ok": ["a"], "empty": []}, top_fraction=0.5)
        assert err.value.name == "empty"

        with pytest.raises(sn.DegenerateGeneSet):
            sn.tl.score_gene_sets(adata, {"absent": ["x", "y"]}, top_fraction=0.5)


class TestThresholds:
    @staticmethod
    def scored_adata() -> AnnData:
        rng = np.random.default_rng(0)
        n = 200
        adata = AnnData(X=np.zeros((n, 1)), obs=pd.DataFrame(index=[f"cell{i}" for i in range(n)]))
        adata.obsm["AUC"] = pd.DataFrame(
            {
                "bimodal": np.concatenate(
                    [rng.normal(0.1, 0.02, n // 2), rng.normal(0.6, 0.05, n // 2)]
                ),
                "constant": np.full(n, 0.3),
            },
            index=adata.obs_names,
        )
        return adata

    def test_bimodal_threshold(self):
        adata = self.scored_adata()

        with pytest.warns(sn.NonConvergentFit, match="constant"):
            thresholds = sn.tl.auc_thresholds(adata)

        assert 0.15 < thresholds["bimodal"] < 0.55
        assert thresholds["constant"] is None
        assert np.isnan(adata.uns["AUC_thresholds"]["constant"])

    def test_crossover_below_the_low_mean(self):
        # wide low component, narrow heavy high component: the high one already
        # wins at the low mean, the scores switch to it around 0.39
        threshold = _mixture_crossover(
            means=np.array([0.45, 0.5]),
            sds=np.array([0.2, 0.05]),
            weights=np.array([0.3, 0.7]),
            lower=0.0,
        )

        assert 0.38 < threshold < 0.40

    def test_non_convergent_fit(self):
        adata = self.scored_adata()
        adata.obsm["AUC"] = adata.obsm["AUC"][["bimodal"]]

        with pytest.warns(sn.NonConvergentFit):
            thresholds = sn.tl.auc_thresholds(adata, max_iter=1)

        assert thresholds["bimodal"] is None


class TestEnrichment:
    background = [f"g{i}" for i in range(100)]

    def test_hypergeometric(self):
        genes = [f"g{i}" for i in range(5)] + [f"g{i}" for i in range(50, 55)]
        gene_sets = {
            "enriched": [f"g{i}" for i in range(10)],
            "disjoint": [f"g{i}" for i in range(90, 100)],
        }

        result = sn.tl.enrich_gene_sets(genes, gene_sets, background=self.background)

        assert list(result.index) == ["enriched", "disjoint"]
        assert result.loc["enriched", "overlap"] == 5
        assert result.loc["enriched", "expected"] == pytest.approx(1.0)
        assert result.loc["enriched", "enrichment_ratio"] == pytest.approx(5.0)
        assert result.loc["enriched", "pvalue"] == pytest.approx(hypergeom.sf(4, 100, 10, 10))
        assert result.loc["disjoint", "pvalue"] == pytest.approx(1.0)
        assert (result["qvalue"] >= result["pvalue"]).all()

    def test_genes_outside_background(self):
        with pytest.warns(UserWarning, match="not in the background"):
            result = sn.tl.enrich_gene_sets(
                ["g1", "other"], {"s": ["g1", "g2"]}, background=self.background
            )

        assert result.loc["s", "study_size"] == 1

    def test_degenerate_set(self):
        with pytest.raises(sn.DegenerateGeneSet):
            sn.tl.enrich_gene_sets(["g1"], {"s": []}, background=self.background)
