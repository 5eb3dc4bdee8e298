"""Static figures for the connectivity report.

All plot functions accept an output_path argument and save to disk as PNG
plus an SVG copy. They do not call plt.show().
"""

from pathlib import Path
from typing import Optional
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns


def _save(fig: plt.Figure, output_path: str | Path) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    fig.savefig(output_path.with_suffix(".svg"), bbox_inches="tight")
    plt.close(fig)
    return output_path


def plot_connectivity(
    results: pd.DataFrame,
    output_path: str | Path,
    alpha: float = 0.05,
    pvalue_col: str = "pvalue",
    label_top: int = 10,
    title: str = "",
    figsize: tuple = (6, 6),
) -> Path:
    """Scatter control vs. treatment connectivity for one stratum.

    Each point is a probe. Probes with p < alpha are colored and the
    label_top most significant ones are labeled. Points off the diagonal
    gained (above) or lost (below) connectivity under treatment.

    Args:
        results: Per-probe results with 'connectivity_control',
            'connectivity_treatment', and pvalue_col columns. The probe ID is
            taken from a 'probe' column if present, else from the index.
        output_path: Path to save the figure.
        alpha: Significance threshold for highlighting.
        pvalue_col: Column used for significance ('pvalue' or 'FDR').
        label_top: Number of most significant probes to annotate.
        title: Figure title.
        figsize: Figure width × height in inches.
    """
    df = results.copy()
    if "probe" not in df.columns:
        df["probe"] = df.index.astype(str)
    sig_label = f"{'p' if pvalue_col == 'pvalue' else pvalue_col} < {alpha}"
    df["significant"] = np.where(df[pvalue_col] < alpha, sig_label, "n.s.")

    fig, ax = plt.subplots(figsize=figsize)
    sns.scatterplot(
        data=df,
        x="connectivity_control",
        y="connectivity_treatment",
        hue="significant",
        hue_order=[sig_label, "n.s."],
        palette={sig_label: "firebrick", "n.s.": "lightgrey"},
        edgecolor="gray",
        linewidth=0.3,
        ax=ax,
    )
    lim = max(df["connectivity_control"].max(), df["connectivity_treatment"].max()) * 1.05
    ax.plot([0, lim], [0, lim], ls="--", color="gray", lw=0.8)
    ax.set_xlim(0, lim)
    ax.set_ylim(0, lim)

    top = df[df[pvalue_col] < alpha].nsmallest(label_top, pvalue_col)
    for _, row in top.iterrows():
        ax.annotate(row["probe"], (row["connectivity_control"], row["connectivity_treatment"]),
                    fontsize=7, xytext=(3, 3), textcoords="offset points")

    ax.set_xlabel("Connectivity (control)")
    ax.set_ylabel("Connectivity (treatment)")
    ax.set_title(title)
    ax.legend(title=None, frameon=False)
    plt.tight_layout()
    return _save(fig, output_path)


def plot_pvalue_histogram(
    results: pd.DataFrame,
    output_path: str | Path,
    stratum_col: Optional[str] = "stratum",
    pvalue_col: str = "pvalue",
    bins: int = 20,
    figsize: tuple = (7, 4),
) -> Path:
    """Histogram of permutation p-values, one layer per stratum.

    A roughly uniform histogram with a peak near zero is expected when a
    subset of genes is rewired; a uniform one suggests no signal.
    """
    fig, ax = plt.subplots(figsize=figsize)
    hue = stratum_col if stratum_col and stratum_col in results.columns else None
    sns.histplot(
        data=results,
        x=pvalue_col,
        hue=hue,
        bins=bins,
        binrange=(0, 1),
        element="step",
        ax=ax,
    )
    ax.set_xlabel("Permutation p-value")
    ax.set_ylabel("Probes")
    plt.tight_layout()
    return _save(fig, output_path)
