"""Reshape a wide microarray table into control and treatment matrices.

Microarray exports hold one row per hybridized array (replicate sample) and
one column per probe (Clone Number), alongside a few annotation columns such
as the biological condition and the cell line. The connectivity test needs
two numeric sample × probe matrices over an identical, identically ordered
probe set: one for the control state and one for the treatment state.

Pipeline:
  1. Orient the table so samples are rows (transpose probe-per-row exports).
  2. Optionally attach condition / cell line labels from a sample sheet.
  3. Separate annotation columns from numeric probe columns.
  4. Average repeated spots of the same probe.
  5. Optionally restrict to a requested probe list.
  6. Split samples by condition, pooled and/or per cell line.
  7. Drop probes with missing values or no variance in either group.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

import pandas as pd

from .utils.stats import is_constant

log = logging.getLogger(__name__)

POOLED_STRATUM = "all"


@dataclass
class ConditionMatrices:
    """Control and treatment sample × probe matrices for one stratum.

    Attributes:
        stratum: 'all' for pooled samples, otherwise the cell line label.
        control: DataFrame (control samples × probes).
        treatment: DataFrame (treatment samples × probes).
        control_strata: Cell line of each control sample when several cell
            lines are pooled, else None.
        treatment_strata: Cell line of each treatment sample, else None.
    """

    stratum: str
    control: pd.DataFrame
    treatment: pd.DataFrame
    control_strata: Optional[pd.Series] = None
    treatment_strata: Optional[pd.Series] = None

    @property
    def probes(self) -> list[str]:
        return self.control.columns.tolist()

    @property
    def n_control(self) -> int:
        return self.control.shape[0]

    @property
    def n_treatment(self) -> int:
        return self.treatment.shape[0]


# ── Table orientation and annotation ──────────────────────────────────────────

def orient_samples_by_probes(
    df: pd.DataFrame,
    probe_axis: str = "columns",
    sample_col: Optional[str] = None,
) -> pd.DataFrame:
    """Return the table with one row per sample.

    Args:
        df: Raw table from load_expression.
        probe_axis: 'columns' if probes are already columns (samples as rows),
            'rows' if each row is a probe and each column a sample. For 'rows'
            the first column holds the probe IDs.
        sample_col: For probe_axis='columns', the column holding sample IDs
            to use as the index. Ignored for 'rows'.

    Returns:
        DataFrame indexed by sample ID (strings).

    Raises:
        ValueError: For an unknown probe_axis, a missing sample_col, or
            repeated sample IDs.
    """
    if probe_axis == "rows":
        probe_ids = df.iloc[:, 0].astype(str)
        out = df.iloc[:, 1:].T
        out.columns = probe_ids.tolist()
    elif probe_axis == "columns":
        out = df.copy()
        if sample_col is not None:
            if sample_col not in out.columns:
                raise ValueError(f"Sample ID column not found: '{sample_col}'")
            out = out.set_index(sample_col)
    else:
        raise ValueError(f"Unknown probe_axis '{probe_axis}'. Choose: columns, rows.")

    out.index = out.index.astype(str)
    out.columns = [str(c) for c in out.columns]
    _check_unique_samples(out.index)
    return out


def _check_unique_samples(index: pd.Index) -> None:
    dup = index[index.duplicated()].unique().tolist()
    if dup:
        raise ValueError(f"Duplicate sample IDs: {dup}")


def attach_sample_sheet(
    expr: pd.DataFrame,
    sheet: pd.DataFrame,
    columns: list[str],
) -> pd.DataFrame:
    """Join sample annotation columns onto an expression table by sample ID.

    Args:
        expr: Samples × columns DataFrame indexed by sample ID.
        sheet: Sample sheet indexed by sample ID (see load_sample_sheet).
        columns: Annotation columns to copy (e.g. ['Condition', 'CellLine']).

    Returns:
        expr with the annotation columns prepended.

    Raises:
        ValueError: If a column is absent from the sheet or samples in expr
            have no entry in the sheet.
    """
    missing_cols = [c for c in columns if c not in sheet.columns]
    if missing_cols:
        raise ValueError(f"Sample sheet missing columns: {missing_cols}")

    missing_samples = expr.index.difference(sheet.index).tolist()
    if missing_samples:
        raise ValueError(f"Samples missing from sample sheet: {missing_samples}")

    annot = sheet.loc[expr.index, columns]
    return pd.concat([annot, expr.drop(columns=columns, errors="ignore")], axis=1)


def split_metadata(
    df: pd.DataFrame,
    metadata_cols: list[str],
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Separate annotation columns from probe columns.

    Every column not listed in metadata_cols is treated as a probe. Probe
    values are coerced to floats.

    Args:
        df: Samples × columns DataFrame.
        metadata_cols: Annotation column names (condition, cell line, ...).

    Returns:
        Tuple of (metadata, probes) DataFrames sharing the sample index.

    Raises:
        ValueError: If a metadata column is missing or a probe column holds
            non-numeric values.
    """
    missing = [c for c in metadata_cols if c not in df.columns]
    if missing:
        raise ValueError(f"Expression table missing annotation columns: {missing}")

    metadata = df[metadata_cols].copy()
    raw = df.drop(columns=metadata_cols)
    if raw.shape[1] == 0:
        raise ValueError("Expression table has no probe columns.")

    # positional build keeps repeated probe labels intact
    probes = pd.DataFrame(
        {i: pd.to_numeric(raw.iloc[:, i], errors="coerce") for i in range(raw.shape[1])},
        index=raw.index,
    )
    probes.columns = raw.columns
    bad = probes.isna().values & raw.notna().values
    if bad.any():
        offenders = sorted(set(raw.columns[bad.any(axis=0)]))
        raise ValueError(f"Non-numeric values in probe columns: {offenders}")

    return metadata, probes.astype(float)


# ── Probe-level cleanup ───────────────────────────────────────────────────────

def collapse_duplicate_probes(probes: pd.DataFrame, how: str = "mean") -> pd.DataFrame:
    """Average columns that share a probe ID (repeated spots of one clone).

    Column order follows the first occurrence of each probe.

    Args:
        probes: Samples × probes DataFrame, possibly with repeated labels.
        how: 'mean' or 'median'.

    Returns:
        DataFrame with unique probe columns.
    """
    if how not in ("mean", "median"):
        raise ValueError(f"Unknown collapse method '{how}'. Choose: mean, median.")
    if probes.columns.is_unique:
        return probes

    n_dup = int(probes.columns.duplicated().sum())
    log.info("Collapsing %d duplicated probe columns (%s)", n_dup, how)
    order = list(dict.fromkeys(probes.columns))
    collapsed = probes.T.groupby(level=0, sort=False).agg(how).T
    return collapsed[order]


def select_probes(probes: pd.DataFrame, probe_list: list[str]) -> pd.DataFrame:
    """Restrict to the requested probes, in the requested order.

    Args:
        probes: Samples × probes DataFrame.
        probe_list: Probe IDs of interest.

    Returns:
        Subset DataFrame.

    Raises:
        ValueError: If none of the requested probes are present.
    """
    present = [p for p in probe_list if p in probes.columns]
    unknown = [p for p in probe_list if p not in probes.columns]
    if unknown:
        log.warning("%d requested probes not in dataset: %s", len(unknown), unknown)
    if not present:
        raise ValueError("None of the requested probes are present in the dataset.")
    return probes[present]


# ── Condition split ───────────────────────────────────────────────────────────

def split_conditions(
    metadata: pd.DataFrame,
    probes: pd.DataFrame,
    condition_col: str,
    control_label: str,
    treatment_label: str,
    cell_line_col: Optional[str] = None,
    cell_line: Optional[str] = None,
    min_samples: int = 3,
) -> ConditionMatrices:
    """Split samples into control and treatment matrices.

    Samples whose condition is neither label are ignored. With cell_line set,
    only samples of that cell line are used; otherwise all cell lines are
    pooled and each sample's cell line is recorded so the permutation test
    can respect it.

    Args:
        metadata: Sample annotation DataFrame (same index as probes).
        probes: Samples × probes DataFrame.
        condition_col: Column holding the condition label.
        control_label: Condition value of control samples.
        treatment_label: Condition value of treatment samples.
        cell_line_col: Optional column holding the cell line.
        cell_line: Restrict to this cell line (requires cell_line_col).
        min_samples: Minimum samples required in each group.

    Returns:
        ConditionMatrices for the stratum.

    Raises:
        ValueError: If the two labels are equal, sample IDs repeat, a label
            is absent, or a group has too few samples.
    """
    if str(control_label) == str(treatment_label):
        raise ValueError(
            f"control_label and treatment_label are both '{control_label}'."
        )
    _check_unique_samples(metadata.index)

    condition = metadata[condition_col].astype(str)
    mask = pd.Series(True, index=metadata.index)
    stratum = POOLED_STRATUM
    if cell_line is not None:
        if cell_line_col is None:
            raise ValueError("cell_line given without cell_line_col.")
        mask &= metadata[cell_line_col].astype(str) == str(cell_line)
        stratum = str(cell_line)

    groups = {}
    for label in (control_label, treatment_label):
        idx = metadata.index[mask & (condition == str(label))]
        if len(idx) == 0:
            raise ValueError(
                f"No samples with {condition_col} == '{label}' in stratum '{stratum}'."
            )
        if len(idx) < min_samples:
            raise ValueError(
                f"Stratum '{stratum}': {len(idx)} samples with {condition_col} == "
                f"'{label}', need at least {min_samples}."
            )
        groups[label] = idx

    control_strata = treatment_strata = None
    if cell_line is None and cell_line_col is not None:
        lines = metadata[cell_line_col].astype(str)
        if lines.loc[groups[control_label].append(groups[treatment_label])].nunique() > 1:
            control_strata = lines.loc[groups[control_label]]
            treatment_strata = lines.loc[groups[treatment_label]]

    return ConditionMatrices(
        stratum=stratum,
        control=probes.loc[groups[control_label]],
        treatment=probes.loc[groups[treatment_label]],
        control_strata=control_strata,
        treatment_strata=treatment_strata,
    )


def drop_uninformative_probes(
    matrices: ConditionMatrices,
    min_variance: float = 0.0,
) -> ConditionMatrices:
    """Remove probes that cannot be scored in both groups.

    A probe is dropped when it has any missing value or a variance of at most
    min_variance in either the control or the treatment group.

    Returns:
        New ConditionMatrices over the retained probes.

    Raises:
        ValueError: If fewer than 2 probes remain.
    """
    keep = pd.Series(True, index=matrices.control.columns)
    for name, mat in (("control", matrices.control), ("treatment", matrices.treatment)):
        has_na = mat.isna().any(axis=0)
        low_var = (mat.var(axis=0, ddof=1) <= min_variance) | is_constant(mat.to_numpy())
        for probe in mat.columns[(has_na & keep).values]:
            log.warning("[%s] Dropping probe %s: missing values in %s",
                        matrices.stratum, probe, name)
        for probe in mat.columns[(low_var & ~has_na & keep).values]:
            log.warning("[%s] Dropping probe %s: no variance in %s",
                        matrices.stratum, probe, name)
        keep &= ~(has_na | low_var)

    probes = keep.index[keep].tolist()
    if len(probes) < 2:
        raise ValueError(
            f"Stratum '{matrices.stratum}': only {len(probes)} informative probes remain."
        )
    return ConditionMatrices(
        stratum=matrices.stratum,
        control=matrices.control[probes],
        treatment=matrices.treatment[probes],
        control_strata=matrices.control_strata,
        treatment_strata=matrices.treatment_strata,
    )


def iter_strata(
    metadata: pd.DataFrame,
    probes: pd.DataFrame,
    condition_col: str,
    control_label: str,
    treatment_label: str,
    cell_line_col: Optional[str] = None,
    by_cell_line: bool = False,
    pooled: bool = True,
    min_samples: int = 3,
    min_variance: float = 0.0,
) -> Iterator[ConditionMatrices]:
    """Yield cleaned ConditionMatrices for each stratum to be tested.

    The pooled stratum comes first (if requested) and its failure is fatal.
    Per-cell-line strata follow in sorted order; a cell line that cannot be
    tested is skipped with a warning.

    Raises:
        ValueError: If by_cell_line is set without cell_line_col, or if the
            pooled stratum cannot be built.
    """
    if by_cell_line and cell_line_col is None:
        raise ValueError("by_cell_line requires cell_line_col.")
    if not pooled and not by_cell_line:
        raise ValueError("Nothing to test: enable pooled and/or by_cell_line.")

    split_kwargs = dict(
        condition_col=condition_col,
        control_label=control_label,
        treatment_label=treatment_label,
        cell_line_col=cell_line_col,
        min_samples=min_samples,
    )

    if pooled:
        matrices = split_conditions(metadata, probes, **split_kwargs)
        yield drop_uninformative_probes(matrices, min_variance=min_variance)

    if by_cell_line:
        for line in sorted(metadata[cell_line_col].dropna().astype(str).unique()):
            try:
                matrices = split_conditions(metadata, probes, cell_line=line, **split_kwargs)
                matrices = drop_uninformative_probes(matrices, min_variance=min_variance)
            except ValueError as e:
                log.warning("Skipping cell line %s: %s", line, e)
                continue
            yield matrices
