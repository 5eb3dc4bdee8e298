"""
Shared fixtures: synthetic microarray tables with a known rewired probe.

In control arrays probes clone_00..clone_03 share a latent factor and are
strongly co-expressed. In treatment arrays clone_00 is decoupled from the
module (pure noise) while clone_01..clone_03 stay co-expressed. Remaining
probes are independent noise in both conditions.
"""

import numpy as np
import pandas as pd
import pytest

N_PROBES = 8
MODULE = [0, 1, 2, 3]
REWIRED_PROBE = "clone_00"
PROBES = [f"clone_{i:02d}" for i in range(N_PROBES)]


def make_expression_table(
    n_per_group: int = 20,
    cell_lines: tuple = ("HeLa", "MCF7"),
    noise: float = 0.3,
    seed: int = 7,
) -> pd.DataFrame:
    """Wide table: one row per array, annotation columns then probe columns."""
    rng = np.random.default_rng(seed)
    rows = []
    per_line = n_per_group // len(cell_lines)
    for condition in ("control", "treatment"):
        for line in cell_lines:
            for rep in range(per_line):
                z = rng.normal()
                values = rng.normal(size=N_PROBES)
                for i in MODULE:
                    if condition == "treatment" and i == 0:
                        continue
                    values[i] = z + noise * values[i]
                row = {
                    "Sample": f"{condition[:4]}_{line}_{rep}",
                    "Condition": condition,
                    "CellLine": line,
                    "Replicate": rep + 1,
                }
                row.update({p: 8.0 + v for p, v in zip(PROBES, values)})
                rows.append(row)
    return pd.DataFrame(rows)


@pytest.fixture
def expression_table():
    return make_expression_table()


@pytest.fixture
def expression_csv(tmp_path, expression_table):
    path = tmp_path / "microarray.csv"
    expression_table.to_csv(path, index=False)
    return path


@pytest.fixture
def split_table(expression_table):
    """(metadata, probes) indexed by sample ID."""
    df = expression_table.set_index("Sample")
    return df[["Condition", "CellLine", "Replicate"]], df[PROBES].astype(float)


@pytest.fixture
def rewired_table():
    """Larger, cleaner table where the rewiring of clone_00 dominates the null."""
    return make_expression_table(n_per_group=60, noise=0.2, seed=11)


@pytest.fixture
def rewired_csv(tmp_path, rewired_table):
    path = tmp_path / "microarray_rewired.csv"
    rewired_table.to_csv(path, index=False)
    return path
