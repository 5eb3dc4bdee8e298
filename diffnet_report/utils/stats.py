"""Shared statistical functions: association scores, connectivity, FDR."""

from typing import Optional
import numpy as np
import pandas as pd
from scipy.stats import rankdata
from sklearn.cross_decomposition import PLSRegression
from sklearn.linear_model import Ridge
from statsmodels.stats.multitest import multipletests

SCORE_METHODS = ("cor", "spearman", "PC", "PLS", "RR")
DISTANCES = ("abs", "sqr")


def _standardize(X: np.ndarray) -> np.ndarray:
    """Center and scale each column to unit variance.

    Constant columns are returned as all zeros so that they contribute no
    association to any other gene.
    """
    X = np.asarray(X, dtype=float)
    constant = is_constant(X)
    centered = X - X.mean(axis=0)
    sd = X.std(axis=0, ddof=1)
    safe_sd = np.where(constant, 1.0, sd)
    Z = centered / safe_sd
    Z[:, constant] = 0.0
    return Z


def is_constant(X: np.ndarray) -> np.ndarray:
    """Flag columns whose values are all identical.

    Uses the column range rather than the variance: the computed variance of
    a column of 4.2s is ≈1e-30, not 0.
    """
    X = np.asarray(X, dtype=float)
    return (X.max(axis=0) - X.min(axis=0)) == 0


def _n_components(ncom: int, n_samples: int, n_genes: int) -> int:
    return max(1, min(ncom, n_samples - 1, n_genes - 1))


# ── Association scores ────────────────────────────────────────────────────────

def _correlation_scores(Z: np.ndarray) -> np.ndarray:
    return Z.T @ Z / (Z.shape[0] - 1)


def _pc_scores(Z: np.ndarray, ncom: int) -> np.ndarray:
    """Principal component regression of each gene on all other genes.

    The first ncom right singular vectors of the predictor block define the
    components; with orthogonal components the regression coefficients map
    back to genes as V_k diag(1/s_k) U_k' y.
    """
    n, p = Z.shape
    k = _n_components(ncom, n, p)
    S = np.zeros((p, p))
    for i in range(p):
        others = np.delete(np.arange(p), i)
        U, s, Vt = np.linalg.svd(Z[:, others], full_matrices=False)
        if s[0] <= 0:
            continue
        # singular values are sorted, so rank-deficient components trail
        k_eff = int((s[:k] > s[0] * 1e-10).sum())
        S[i, others] = Vt[:k_eff].T @ ((U[:, :k_eff].T @ Z[:, i]) / s[:k_eff])
    return S


def _pls_scores(Z: np.ndarray, ncom: int) -> np.ndarray:
    n, p = Z.shape
    k = _n_components(ncom, n, p)
    S = np.zeros((p, p))
    for i in range(p):
        others = np.delete(np.arange(p), i)
        model = PLSRegression(n_components=k, scale=False)
        model.fit(Z[:, others], Z[:, i])
        S[i, others] = np.ravel(model.coef_)
    return S


def _ridge_scores(Z: np.ndarray, rho: float) -> np.ndarray:
    p = Z.shape[1]
    S = np.zeros((p, p))
    for i in range(p):
        others = np.delete(np.arange(p), i)
        model = Ridge(alpha=rho, fit_intercept=False)
        model.fit(Z[:, others], Z[:, i])
        S[i, others] = model.coef_
    return S


def association_scores(
    X: np.ndarray,
    method: str = "cor",
    ncom: int = 3,
    rho: float = 10.0,
) -> np.ndarray:
    """Compute the gene × gene association score matrix for one group.

    Methods:
      - 'cor':      Pearson correlation.
      - 'spearman': Spearman rank correlation.
      - 'PC':       principal component regression of each gene on the others.
      - 'PLS':      partial least squares regression of each gene on the others.
      - 'RR':       ridge regression of each gene on the others.

    Regression-based scores are asymmetric (gene i regressed on j differs from
    j on i) and are symmetrized as (S + S') / 2.

    Args:
        X: Array of shape (n_samples × n_genes).
        method: One of SCORE_METHODS.
        ncom: Number of components for 'PC' and 'PLS'. Clipped to
            min(n_samples − 1, n_genes − 1).
        rho: Ridge penalty for 'RR'.

    Returns:
        Symmetric (n_genes × n_genes) array with a zero diagonal.

    Raises:
        ValueError: For an unknown method or fewer than 2 samples/genes.
    """
    if method not in SCORE_METHODS:
        raise ValueError(f"Unknown score method '{method}'. Choose: {', '.join(SCORE_METHODS)}.")
    X = np.asarray(X, dtype=float)
    if X.ndim != 2 or X.shape[0] < 2 or X.shape[1] < 2:
        raise ValueError(f"Need at least 2 samples and 2 genes, got shape {X.shape}.")

    if method == "spearman":
        Z = _standardize(rankdata(X, axis=0))
    else:
        Z = _standardize(X)

    if method in ("cor", "spearman"):
        S = _correlation_scores(Z)
    elif method == "PC":
        S = _pc_scores(Z, ncom)
    elif method == "PLS":
        S = _pls_scores(Z, ncom)
    else:
        S = _ridge_scores(Z, rho)

    if method in ("PC", "PLS", "RR"):
        S = (S + S.T) / 2.0
    np.fill_diagonal(S, 0.0)
    return S


def connectivity_scores(S: np.ndarray) -> np.ndarray:
    """Per-gene connectivity: mean absolute association with every other gene.

    Formula: s_i = Σ_{j≠i} |S_ij| / (p − 1)
    """
    S = np.asarray(S, dtype=float)
    p = S.shape[0]
    off_diag = np.abs(S) * (1.0 - np.eye(p))
    return off_diag.sum(axis=1) / (p - 1)


def connectivity_difference(
    s_control: np.ndarray,
    s_treatment: np.ndarray,
    distance: str = "abs",
) -> np.ndarray:
    """Per-gene test statistic comparing connectivity between two networks.

    'abs' gives |s1 − s2|; 'sqr' gives (s1 − s2)².
    """
    diff = np.asarray(s_control, dtype=float) - np.asarray(s_treatment, dtype=float)
    if distance == "abs":
        return np.abs(diff)
    if distance == "sqr":
        return diff**2
    raise ValueError(f"Unknown distance '{distance}'. Choose: {', '.join(DISTANCES)}.")


def empirical_pvalues(observed: np.ndarray, null: np.ndarray) -> np.ndarray:
    """Permutation p-values, one per gene.

    p = (#{null ≥ observed} + 1) / (B + 1), so that a p-value is never zero
    for a finite number of permutations B.

    Args:
        observed: Array of shape (n_genes,).
        null: Array of shape (B × n_genes) of permutation statistics.
    """
    observed = np.asarray(observed, dtype=float)
    null = np.atleast_2d(np.asarray(null, dtype=float))
    n_extreme = (null >= observed[np.newaxis, :]).sum(axis=0)
    return (n_extreme + 1) / (null.shape[0] + 1)


# ── Multiple testing ──────────────────────────────────────────────────────────

def apply_bh_correction(
    df: pd.DataFrame,
    pvalue_col: str = "pvalue",
    group_cols: Optional[list] = None,
) -> pd.DataFrame:
    """Apply Benjamini-Hochberg FDR correction to a p-value column.

    Adds 'FDR' and 'neg_log10_FDR' columns to the DataFrame. When group_cols
    is specified, correction is applied independently within each group
    (e.g., per cell line stratum).

    Args:
        df: DataFrame containing a column of p-values.
        pvalue_col: Name of the column containing raw p-values.
        group_cols: Optional list of column names defining groups for
            within-group correction.

    Returns:
        Copy of df with 'FDR' and 'neg_log10_FDR' columns added.
    """
    df = df.copy()
    if df.empty:
        df["FDR"] = pd.Series(dtype=float)
        df["neg_log10_FDR"] = pd.Series(dtype=float)
        return df

    if group_cols:
        fdr_vals = np.ones(len(df))
        for positions in df.groupby(group_cols, sort=False).indices.values():
            pvals = df[pvalue_col].iloc[positions].fillna(1.0).values
            _, fdr, _, _ = multipletests(pvals, method="fdr_bh")
            fdr_vals[positions] = fdr
        df["FDR"] = fdr_vals
    else:
        pvals = df[pvalue_col].fillna(1.0).values
        _, fdr, _, _ = multipletests(pvals, method="fdr_bh")
        df["FDR"] = fdr

    df["neg_log10_FDR"] = -np.log10(df["FDR"].clip(lower=np.finfo(float).tiny))
    return df
