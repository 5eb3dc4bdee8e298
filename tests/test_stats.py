"""Tests for association scores, connectivity, and multiple testing."""

import numpy as np
import pandas as pd
import pytest
from scipy.stats import spearmanr
from statsmodels.stats.multitest import multipletests

from diffnet_report.utils.stats import (
    SCORE_METHODS,
    _pc_scores,
    _pls_scores,
    _standardize,
    is_constant,
    apply_bh_correction,
    association_scores,
    connectivity_difference,
    connectivity_scores,
    empirical_pvalues,
)


@pytest.fixture
def X():
    rng = np.random.default_rng(0)
    base = rng.normal(size=(30, 5))
    base[:, 1] += base[:, 0]
    return base


def _ols_coefficients(Z):
    p = Z.shape[1]
    B = np.zeros((p, p))
    for i in range(p):
        others = np.delete(np.arange(p), i)
        coef, *_ = np.linalg.lstsq(Z[:, others], Z[:, i], rcond=None)
        B[i, others] = coef
    return B


class TestAssociationScores:

    @pytest.mark.parametrize("method", SCORE_METHODS)
    def test_symmetric_zero_diagonal(self, X, method):
        S = association_scores(X, method)
        assert S.shape == (5, 5)
        np.testing.assert_allclose(S, S.T, atol=1e-12)
        np.testing.assert_array_equal(np.diag(S), 0.0)

    def test_cor_matches_numpy(self, X):
        expected = np.corrcoef(X, rowvar=False)
        np.fill_diagonal(expected, 0.0)
        np.testing.assert_allclose(association_scores(X, "cor"), expected, atol=1e-12)

    def test_spearman_matches_scipy(self, X):
        expected = spearmanr(X)[0]
        np.fill_diagonal(expected, 0.0)
        np.testing.assert_allclose(association_scores(X, "spearman"), expected, atol=1e-12)

    def test_pc_with_all_components_is_ols(self, X):
        Z = _standardize(X)
        np.testing.assert_allclose(_pc_scores(Z, ncom=4), _ols_coefficients(Z), atol=1e-8)

    def test_pls_with_all_components_is_ols(self, X):
        Z = _standardize(X)
        np.testing.assert_allclose(_pls_scores(Z, ncom=4), _ols_coefficients(Z), atol=1e-4)

    def test_ridge_penalty_shrinks(self, X):
        weak = np.abs(association_scores(X, "RR", rho=0.01)).sum()
        strong = np.abs(association_scores(X, "RR", rho=1000.0)).sum()
        assert strong < weak

    @pytest.mark.parametrize("value", [4.2, 0.1, 8.123])
    @pytest.mark.parametrize("method", ["cor", "spearman"])
    def test_constant_gene_has_no_association(self, X, value, method):
        X = X.copy()
        X[:, 2] = value
        S = association_scores(X, method)
        np.testing.assert_array_equal(S[2], 0.0)
        np.testing.assert_array_equal(S[:, 2], 0.0)

    def test_unknown_method(self, X):
        with pytest.raises(ValueError, match="Unknown score method"):
            association_scores(X, "mutual_information")

    def test_too_few_samples(self):
        with pytest.raises(ValueError, match="at least 2"):
            association_scores(np.ones((1, 4)), "cor")


def test_is_constant_ignores_rounding_residue():
    X = np.column_stack([np.full(7, 4.2), np.arange(7.0), np.full(7, 0.0)])
    np.testing.assert_array_equal(is_constant(X), [True, False, True])
    np.testing.assert_array_equal(_standardize(X)[:, 0], 0.0)


class TestConnectivity:

    def test_mean_absolute_off_diagonal(self):
        S = np.array([
            [0.0, 0.5, -0.5],
            [0.5, 0.0, 0.1],
            [-0.5, 0.1, 0.0],
        ])
        np.testing.assert_allclose(connectivity_scores(S), [0.5, 0.3, 0.3])

    def test_distances(self):
        s1 = np.array([0.5, 0.2])
        s2 = np.array([0.1, 0.4])
        np.testing.assert_allclose(connectivity_difference(s1, s2, "abs"), [0.4, 0.2])
        np.testing.assert_allclose(connectivity_difference(s1, s2, "sqr"), [0.16, 0.04])

    def test_unknown_distance(self):
        with pytest.raises(ValueError, match="Unknown distance"):
            connectivity_difference(np.zeros(2), np.zeros(2), "max")


def test_empirical_pvalues_count_ties_and_add_one():
    observed = np.array([1.0, 0.0])
    null = np.array([
        [2.0, 0.0],
        [0.5, 0.0],
        [1.0, 0.0],
    ])
    np.testing.assert_allclose(empirical_pvalues(observed, null), [0.75, 1.0])


class TestBHCorrection:

    def test_grouped_matches_per_group_correction(self):
        df = pd.DataFrame(
            {
                "stratum": ["all", "all", "all", "HeLa", "HeLa"],
                "pvalue": [0.01, 0.04, 0.5, 0.02, 0.03],
            },
            index=["p1", "p2", "p3", "p1", "p2"],
        )
        out = apply_bh_correction(df, group_cols=["stratum"])
        _, fdr_all, _, _ = multipletests([0.01, 0.04, 0.5], method="fdr_bh")
        _, fdr_hela, _, _ = multipletests([0.02, 0.03], method="fdr_bh")
        np.testing.assert_allclose(out["FDR"].values, np.r_[fdr_all, fdr_hela])
        assert (out["neg_log10_FDR"] >= 0).all()

    def test_missing_pvalues_treated_as_one(self):
        df = pd.DataFrame({"pvalue": [0.01, np.nan]})
        out = apply_bh_correction(df)
        assert out["FDR"].iloc[1] == 1.0
