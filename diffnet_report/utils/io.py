"""I/O helpers for loading expression tables and saving report outputs."""

import re
from pathlib import Path
from typing import Optional
import pandas as pd
import yaml

_SEPARATORS = {".csv": ",", ".tsv": "\t", ".txt": "\t"}
_EXCEL_SUFFIXES = {".xls", ".xlsx"}


def load_expression(
    path: str | Path,
    sep: Optional[str] = None,
    sheet_name: Optional[str | int] = None,
) -> pd.DataFrame:
    """Load a flat microarray expression table.

    The table is read as-is; orientation (probes as columns or rows) and the
    split into annotation vs. probe columns are handled in reshape.

    Args:
        path: Path to a .csv, .tsv/.txt or .xls/.xlsx file.
        sep: Column separator. Inferred from the file suffix if None.
        sheet_name: Sheet to read from an Excel workbook (default: first).

    Returns:
        DataFrame with the raw table contents.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file holds no rows.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expression file not found: {path}")

    suffix = path.suffix.lower()
    if suffix in _EXCEL_SUFFIXES:
        df = pd.read_excel(path, sheet_name=0 if sheet_name is None else sheet_name)
    else:
        df = pd.read_csv(path, sep=sep or _SEPARATORS.get(suffix, ","))

    if df.empty:
        raise ValueError(f"Expression file is empty: {path}")
    return df


def load_sample_sheet(path: str | Path, sample_col: str) -> pd.DataFrame:
    """Load a sample annotation sheet (one row per array).

    Args:
        path: CSV/TSV with one column of sample IDs plus annotation columns
            such as condition and cell line.
        sample_col: Column holding the sample IDs.

    Returns:
        DataFrame indexed by sample ID.

    Raises:
        ValueError: If sample_col is missing or sample IDs are duplicated.
    """
    sheet = load_expression(path)
    if sample_col not in sheet.columns:
        raise ValueError(f"Sample sheet missing column: '{sample_col}'")
    dupes = sheet[sample_col][sheet[sample_col].duplicated()].unique().tolist()
    if dupes:
        raise ValueError(f"Duplicated sample IDs in sample sheet: {dupes}")
    sheet[sample_col] = sheet[sample_col].astype(str)
    return sheet.set_index(sample_col)


def load_probe_list(path: str | Path) -> list[str]:
    """Load a list of probe IDs (Clone Numbers), one per line.

    Blank lines and lines starting with '#' are ignored. Order is kept and
    repeated IDs are dropped.
    """
    probes: list[str] = []
    with open(path) as f:
        for line in f:
            probe = line.strip()
            if probe and not probe.startswith("#") and probe not in probes:
                probes.append(probe)
    return probes


def safe_name(label: str) -> str:
    """Turn a stratum label such as 'MCF7/ADR' into a file-name component."""
    return re.sub(r"[^\w.-]+", "_", str(label))


def save_table(df: pd.DataFrame, path: str | Path, index: bool = True) -> Path:
    """Save a DataFrame to CSV, creating parent directories as needed.

    Args:
        df: Table to save.
        path: Output CSV path.
        index: Whether to write the index.

    Returns:
        The output path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=index)
    return path


def load_config(path: str | Path) -> dict:
    """Load a YAML configuration file.

    Args:
        path: Path to a YAML config file.

    Returns:
        Dictionary of configuration parameters (empty for an empty file).

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        return yaml.safe_load(f) or {}
