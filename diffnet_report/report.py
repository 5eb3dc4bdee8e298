"""Differential connectivity report for a microarray experiment.

Loads a wide microarray expression table, splits replicate arrays into
control and treatment matrices (pooled across cell lines and/or per cell
line), runs the individual gene connectivity permutation test on each
stratum, and renders the significant genes as tables.

Pipeline:
  1. Load the flat expression file; orient it so samples are rows.
  2. Optionally attach condition / cell line labels from a sample sheet.
  3. Separate annotation columns from probe columns, average duplicated
     probes, and optionally restrict to a probe list.
  4. For each stratum ('all' and/or each cell line): drop probes with missing
     values or no variance, then run the connectivity test.
  5. Aggregate per-stratum results, add BH FDR within each stratum, and rank.
  6. Filter significant genes (p-value or FDR below alpha).
  7. Write CSV tables and an HTML report; optionally GraphML networks and
     connectivity figures.

Usage:
    python -m diffnet_report.report --config configs/default_config.yaml \\
        --expression-file data/microarray.csv \\
        --condition-col Condition --control-label control --treatment-label treated \\
        --cell-line-col CellLine --by-cell-line \\
        --output-dir results/report/
"""

import argparse
import html
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from . import __version__
from .connectivity_test import run_connectivity_test
from .networks import export_networks
from .reshape import (
    ConditionMatrices,
    attach_sample_sheet,
    collapse_duplicate_probes,
    iter_strata,
    orient_samples_by_probes,
    select_probes,
    split_metadata,
)
from .utils.io import (
    load_config,
    load_expression,
    load_probe_list,
    load_sample_sheet,
    safe_name,
    save_table,
)
from .utils.plotting import plot_connectivity, plot_pvalue_histogram
from .utils.stats import apply_bh_correction

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

_TABLE_CSS = """
body { font-family: sans-serif; margin: 2em; }
table.results { border-collapse: collapse; margin-bottom: 1.5em; font-size: 0.9em; }
table.results th, table.results td { border: 1px solid #ccc; padding: 3px 8px; text-align: right; }
table.results th { background: #f0f0f0; }
p.empty { color: #777; font-style: italic; }
"""


# ── Aggregation and filtering ─────────────────────────────────────────────────

def aggregate_results(results: dict[str, pd.DataFrame]) -> pd.DataFrame:
    """Concatenate per-stratum test results into one long table.

    Adds BH FDR within each stratum and the within-stratum rank by p-value
    (1 = most significant).

    Args:
        results: Dict mapping stratum label → per-probe results DataFrame
            (index = probe) from the connectivity test.

    Returns:
        DataFrame with columns 'stratum', 'probe', the result columns,
        'FDR', 'neg_log10_FDR', and 'rank'.

    Raises:
        ValueError: If results is empty.
    """
    if not results:
        raise ValueError("No strata were tested.")

    frames = []
    for stratum, res in results.items():
        df = res.reset_index().rename(columns={res.index.name or "index": "probe"})
        df.insert(0, "stratum", stratum)
        frames.append(df)
    combined = pd.concat(frames, ignore_index=True)

    combined = apply_bh_correction(combined, pvalue_col="pvalue", group_cols=["stratum"])
    combined["rank"] = (
        combined.groupby("stratum", sort=False)["pvalue"]
        .rank(method="min")
        .astype(int)
    )
    return combined


def filter_significant(
    df: pd.DataFrame,
    alpha: float = 0.05,
    use_fdr: bool = False,
) -> pd.DataFrame:
    """Keep genes whose p-value (or FDR) is below alpha.

    Strata keep their order of appearance; within a stratum rows are sorted
    by p-value, then probe ID.
    """
    col = "FDR" if use_fdr else "pvalue"
    sig = df[df[col] < alpha].copy()
    order = {s: i for i, s in enumerate(dict.fromkeys(df["stratum"]))}
    sig["_order"] = sig["stratum"].map(order)
    sig = sig.sort_values(["_order", "pvalue", "probe"]).drop(columns="_order")
    return sig.reset_index(drop=True)


def annotate_probes(
    df: pd.DataFrame,
    annotation: pd.DataFrame,
    probe_col: str = "probe",
) -> pd.DataFrame:
    """Left-join probe annotation (gene symbol, description, ...) onto results.

    Args:
        df: Results table with a 'probe' column.
        annotation: Table with one row per probe.
        probe_col: Column of annotation holding the probe ID.

    Returns:
        df with the annotation columns inserted right after 'probe'.

    Raises:
        ValueError: If probe_col is missing from the annotation.
    """
    if probe_col not in annotation.columns:
        raise ValueError(f"Probe annotation missing column: '{probe_col}'")
    ann = annotation.drop_duplicates(subset=probe_col).copy()
    ann[probe_col] = ann[probe_col].astype(str)
    ann = ann.rename(columns={probe_col: "probe"})
    extra = [c for c in ann.columns if c != "probe" and c not in df.columns]

    merged = df.merge(ann[["probe"] + extra], on="probe", how="left")
    pos = merged.columns.get_loc("probe") + 1
    cols = [c for c in merged.columns if c not in extra]
    return merged[cols[:pos] + extra + cols[pos:]]


def summarize_stratum(matrices: ConditionMatrices) -> dict:
    """One row of the stratum summary table (hits are counted after filtering)."""
    return {
        "stratum": matrices.stratum,
        "n_control": matrices.n_control,
        "n_treatment": matrices.n_treatment,
        "n_probes": len(matrices.probes),
    }


# ── Rendering ─────────────────────────────────────────────────────────────────

def _html_table(df: pd.DataFrame) -> str:
    return df.to_html(
        index=False,
        classes="results",
        border=0,
        float_format=lambda x: f"{x:.4g}",
        na_rep="",
    )


def render_html(
    significant: pd.DataFrame,
    summary: pd.DataFrame,
    params: dict,
    title: str,
    alpha: float,
    use_fdr: bool = False,
) -> str:
    """Build the HTML report: parameters, stratum summary, significant genes.

    One table of significant genes is rendered per stratum in summary order;
    a stratum without significant genes gets a "No significant genes" line.
    """
    criterion = f"{'FDR' if use_fdr else 'p'} < {alpha}"
    param_df = pd.DataFrame(
        {"parameter": list(params.keys()), "value": [str(v) for v in params.values()]}
    )

    parts = [
        "<!DOCTYPE html>",
        "<html><head><meta charset='utf-8'>",
        f"<title>{html.escape(title)}</title>",
        f"<style>{_TABLE_CSS}</style>",
        "</head><body>",
        f"<h1>{html.escape(title)}</h1>",
        f"<p>Generated {datetime.now():%Y-%m-%d %H:%M} by diffnet_report {__version__}.</p>",
        "<h2>Parameters</h2>",
        _html_table(param_df),
        "<h2>Strata</h2>",
        _html_table(summary),
    ]

    for stratum in summary["stratum"]:
        heading = f"Significant genes: {stratum} ({criterion})"
        parts.append(f"<h2>{html.escape(heading)}</h2>")
        table = significant[significant["stratum"] == stratum].drop(columns="stratum")
        if table.empty:
            parts.append("<p class='empty'>No significant genes.</p>")
        else:
            parts.append(_html_table(table))

    parts.append("</body></html>")
    return "\n".join(parts)


def render_tables(
    significant: pd.DataFrame,
    all_results: pd.DataFrame,
    summary: pd.DataFrame,
    output_dir: str | Path,
    params: dict,
    title: str = "Differential connectivity report",
    alpha: float = 0.05,
    use_fdr: bool = False,
) -> Path:
    """Write all result tables and the HTML report.

    Files written to output_dir:
      - all_results.csv:           every probe × stratum
      - significant_genes.csv:     significant rows across strata
      - significant_<stratum>.csv: significant rows per stratum
      - strata_summary.csv:        samples, probes and hits per stratum
      - report.html:               rendered tables

    Returns:
        Path to report.html.
    """
    output_dir = Path(output_dir)
    save_table(all_results, output_dir / "all_results.csv", index=False)
    save_table(significant, output_dir / "significant_genes.csv", index=False)
    save_table(summary, output_dir / "strata_summary.csv", index=False)
    for stratum in summary["stratum"]:
        table = significant[significant["stratum"] == stratum]
        save_table(table, output_dir / f"significant_{safe_name(stratum)}.csv", index=False)

    report_path = output_dir / "report.html"
    report_path.write_text(
        render_html(significant, summary, params, title, alpha, use_fdr=use_fdr),
        encoding="utf-8",
    )
    log.info("Report saved: %s", report_path)
    return report_path


# ── Full pipeline ─────────────────────────────────────────────────────────────

def run_report(
    expression_path: str | Path,
    output_dir: str | Path,
    condition_col: str = "Condition",
    control_label: str = "control",
    treatment_label: str = "treatment",
    cell_line_col: Optional[str] = None,
    by_cell_line: bool = False,
    pooled: bool = True,
    metadata_cols: Optional[list[str]] = None,
    sample_col: Optional[str] = None,
    probe_axis: str = "columns",
    sample_sheet_path: Optional[str | Path] = None,
    sheet_sample_col: str = "sample",
    probe_list_path: Optional[str | Path] = None,
    annotation_path: Optional[str | Path] = None,
    annotation_probe_col: str = "probe",
    collapse: str = "mean",
    engine: str = "python",
    scores: str = "cor",
    distance: str = "abs",
    n_permutations: int = 1000,
    ncom: int = 3,
    rho: float = 10.0,
    seed: Optional[int] = None,
    stratify: bool = True,
    alpha: float = 0.05,
    use_fdr: bool = False,
    min_samples: int = 3,
    min_variance: float = 0.0,
    network_threshold: Optional[float] = None,
    plot: bool = False,
    rscript_path: str = "Rscript",
    title: str = "Differential connectivity report",
) -> dict:
    """Run the complete differential connectivity report.

    Args:
        expression_path: Flat expression file (CSV/TSV/Excel).
        output_dir: Root output directory.
        condition_col: Annotation column with the condition label.
        control_label: Condition value of control arrays.
        treatment_label: Condition value of treatment arrays.
        cell_line_col: Optional annotation column with the cell line.
        by_cell_line: Also test each cell line on its own.
        pooled: Test all cell lines pooled (stratum 'all').
        metadata_cols: All non-probe columns of the table. Defaults to the
            condition and cell line columns.
        sample_col: Column holding sample IDs (probe_axis='columns').
        probe_axis: 'columns' (samples as rows) or 'rows' (probes as rows).
        sample_sheet_path: Optional sample sheet providing condition and
            cell line per sample; required when probe_axis='rows'.
        sheet_sample_col: Sample ID column of the sample sheet.
        probe_list_path: Optional file of probe IDs to test.
        annotation_path: Optional probe annotation table for the output.
        annotation_probe_col: Probe ID column of the annotation table.
        collapse: How to merge duplicated probes ('mean' or 'median').
        engine: 'python' or 'r'.
        scores: Association score method.
        distance: 'abs' or 'sqr'.
        n_permutations: Permutations per stratum.
        ncom: Components for 'PC'/'PLS' scores.
        rho: Ridge penalty for 'RR' scores.
        seed: Permutation seed, reused for every stratum.
        stratify: Permute within cell lines in the pooled stratum.
        alpha: Significance threshold.
        use_fdr: Filter on FDR instead of the raw p-value.
        min_samples: Minimum arrays per group and stratum.
        min_variance: Probes at or below this variance in a group are dropped.
        network_threshold: If set, export GraphML networks around significant
            genes with edges at |score| >= network_threshold.
        plot: Write connectivity scatter plots and a p-value histogram.
        rscript_path: Rscript binary for the R engine.
        title: Report title.

    Returns:
        Dict with keys 'results' (all rows), 'significant', and 'summary'.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    annot_cols = [condition_col] + ([cell_line_col] if cell_line_col else [])
    if metadata_cols is None:
        metadata_cols = annot_cols
    else:
        metadata_cols = list(dict.fromkeys(annot_cols + list(metadata_cols)))

    # Load and reshape
    raw = load_expression(expression_path)
    df = orient_samples_by_probes(raw, probe_axis=probe_axis, sample_col=sample_col)
    if sample_sheet_path:
        sheet = load_sample_sheet(sample_sheet_path, sheet_sample_col)
        df = attach_sample_sheet(df, sheet, annot_cols)
    elif probe_axis == "rows":
        raise ValueError("probe_axis='rows' requires a sample sheet with sample annotation.")

    metadata, probes = split_metadata(df, metadata_cols)
    probes = collapse_duplicate_probes(probes, how=collapse)
    if probe_list_path:
        probes = select_probes(probes, load_probe_list(probe_list_path))
    log.info("Loaded %d samples × %d probes from %s",
             probes.shape[0], probes.shape[1], expression_path)

    # Test each stratum
    results: dict[str, pd.DataFrame] = {}
    strata: dict[str, ConditionMatrices] = {}
    summary_rows = []
    for matrices in iter_strata(
        metadata, probes,
        condition_col=condition_col,
        control_label=control_label,
        treatment_label=treatment_label,
        cell_line_col=cell_line_col,
        by_cell_line=by_cell_line,
        pooled=pooled,
        min_samples=min_samples,
        min_variance=min_variance,
    ):
        res = run_connectivity_test(
            matrices,
            engine=engine,
            scores=scores,
            distance=distance,
            n_permutations=n_permutations,
            ncom=ncom,
            rho=rho,
            seed=seed,
            stratify=stratify,
            work_dir=output_dir / "r_engine",
            rscript_path=rscript_path,
        )
        results[matrices.stratum] = res
        strata[matrices.stratum] = matrices
        summary_rows.append(summarize_stratum(matrices))

    all_results = aggregate_results(results)
    if annotation_path:
        annotation = load_expression(annotation_path)
        all_results = annotate_probes(all_results, annotation, probe_col=annotation_probe_col)
    significant = filter_significant(all_results, alpha=alpha, use_fdr=use_fdr)

    summary = pd.DataFrame(summary_rows)
    summary["n_significant"] = [
        int((significant["stratum"] == s).sum()) for s in summary["stratum"]
    ]
    log.info("Significant genes (%s < %s): %s", "FDR" if use_fdr else "p", alpha,
             ", ".join(f"{r.stratum}={r.n_significant}" for r in summary.itertuples()))

    # Association networks around significant genes
    if network_threshold is not None:
        net_tables = []
        for stratum, matrices in strata.items():
            genes = significant.loc[significant["stratum"] == stratum, "probe"].tolist()
            if not genes:
                continue
            net = export_networks(
                matrices, genes, output_dir / "networks",
                scores=scores, threshold=network_threshold, ncom=ncom, rho=rho,
            )
            net_tables.append(net.reset_index().assign(stratum=stratum))
        if net_tables:
            significant = significant.merge(
                pd.concat(net_tables, ignore_index=True), on=["stratum", "probe"], how="left"
            )

    params = {
        "expression_file": str(expression_path),
        "condition": f"{condition_col}: {control_label} vs {treatment_label}",
        "cell_line_col": cell_line_col,
        "engine": engine,
        "scores": scores,
        "distance": distance,
        "n_permutations": n_permutations,
        "seed": seed,
        "alpha": alpha,
        "criterion": "FDR" if use_fdr else "p-value",
    }
    render_tables(
        significant, all_results, summary, output_dir, params,
        title=title, alpha=alpha, use_fdr=use_fdr,
    )

    if plot:
        pvalue_col = "FDR" if use_fdr else "pvalue"
        for stratum in results:
            plot_connectivity(
                all_results[all_results["stratum"] == stratum],
                output_dir / "figures" / f"connectivity_{safe_name(stratum)}.png",
                alpha=alpha,
                pvalue_col=pvalue_col,
                title=f"Connectivity: {stratum}",
            )
        plot_pvalue_histogram(all_results, output_dir / "figures" / "pvalue_histogram.png")

    return {"results": all_results, "significant": significant, "summary": summary}


# ── CLI ───────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Differential gene connectivity report for control vs. treatment microarrays."
    )
    parser.add_argument("--config", help="Path to YAML config file.")
    parser.add_argument("--expression-file", required=True, help="Flat expression table.")
    parser.add_argument("--output-dir", required=True, help="Output directory.")
    parser.add_argument("--condition-col", default="Condition")
    parser.add_argument("--control-label", default="control")
    parser.add_argument("--treatment-label", default="treatment")
    parser.add_argument("--cell-line-col", default=None)
    parser.add_argument("--by-cell-line", action="store_true",
                        help="Also test each cell line separately.")
    parser.add_argument("--no-pooled", action="store_true",
                        help="Skip the pooled 'all' stratum.")
    parser.add_argument("--metadata-cols", nargs="+", default=None,
                        help="All non-probe columns (condition and cell line are added).")
    parser.add_argument("--sample-col", default=None, help="Sample ID column.")
    parser.add_argument("--probe-axis", default="columns", choices=["columns", "rows"])
    parser.add_argument("--sample-sheet", default=None, help="Sample annotation CSV.")
    parser.add_argument("--sheet-sample-col", default="sample")
    parser.add_argument("--probe-list", default=None, help="File of probe IDs to test.")
    parser.add_argument("--annotation", default=None, help="Probe annotation table.")
    parser.add_argument("--annotation-probe-col", default="probe")
    parser.add_argument("--collapse", default="mean", choices=["mean", "median"])
    parser.add_argument("--engine", default="python", choices=["python", "r"])
    parser.add_argument("--scores", default="cor", choices=["cor", "spearman", "PC", "PLS", "RR"])
    parser.add_argument("--distance", default="abs", choices=["abs", "sqr"])
    parser.add_argument("--n-permutations", type=int, default=1000)
    parser.add_argument("--ncom", type=int, default=3)
    parser.add_argument("--rho", type=float, default=10.0)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--no-stratify", action="store_true",
                        help="Permute freely across cell lines in the pooled stratum.")
    parser.add_argument("--alpha", type=float, default=0.05)
    parser.add_argument("--use-fdr", action="store_true")
    parser.add_argument("--min-samples", type=int, default=3)
    parser.add_argument("--min-variance", type=float, default=0.0)
    parser.add_argument("--network-threshold", type=float, default=None)
    parser.add_argument("--plot", action="store_true")
    parser.add_argument("--rscript-path", default="Rscript")
    parser.add_argument("--title", default="Differential connectivity report")
    args = parser.parse_args()

    cfg = load_config(args.config) if args.config else {}
    rp_cfg = cfg.get("report", {})

    run_report(
        expression_path=args.expression_file,
        output_dir=args.output_dir,
        condition_col=rp_cfg.get("condition_col", args.condition_col),
        control_label=rp_cfg.get("control_label", args.control_label),
        treatment_label=rp_cfg.get("treatment_label", args.treatment_label),
        cell_line_col=rp_cfg.get("cell_line_col", args.cell_line_col),
        by_cell_line=rp_cfg.get("by_cell_line", args.by_cell_line),
        pooled=rp_cfg.get("pooled", not args.no_pooled),
        metadata_cols=rp_cfg.get("metadata_cols", args.metadata_cols),
        sample_col=rp_cfg.get("sample_col", args.sample_col),
        probe_axis=rp_cfg.get("probe_axis", args.probe_axis),
        sample_sheet_path=args.sample_sheet,
        sheet_sample_col=rp_cfg.get("sheet_sample_col", args.sheet_sample_col),
        probe_list_path=args.probe_list,
        annotation_path=args.annotation,
        annotation_probe_col=rp_cfg.get("annotation_probe_col", args.annotation_probe_col),
        collapse=rp_cfg.get("collapse", args.collapse),
        engine=rp_cfg.get("engine", args.engine),
        scores=rp_cfg.get("scores", args.scores),
        distance=rp_cfg.get("distance", args.distance),
        n_permutations=rp_cfg.get("n_permutations", args.n_permutations),
        ncom=rp_cfg.get("ncom", args.ncom),
        rho=rp_cfg.get("rho", args.rho),
        seed=rp_cfg.get("seed", args.seed),
        stratify=rp_cfg.get("stratify", not args.no_stratify),
        alpha=rp_cfg.get("alpha", args.alpha),
        use_fdr=rp_cfg.get("use_fdr", args.use_fdr),
        min_samples=rp_cfg.get("min_samples", args.min_samples),
        min_variance=rp_cfg.get("min_variance", args.min_variance),
        network_threshold=rp_cfg.get("network_threshold", args.network_threshold),
        plot=args.plot,
        rscript_path=args.rscript_path,
        title=rp_cfg.get("title", args.title),
    )


if __name__ == "__main__":
    main()
