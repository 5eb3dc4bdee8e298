"""Tests for the static report figures."""

import pandas as pd
import pytest

from diffnet_report.utils import plotting


@pytest.fixture
def stratum_results():
    return pd.DataFrame(
        {
            "connectivity_control": [0.6, 0.2, 0.3],
            "connectivity_treatment": [0.1, 0.25, 0.3],
            "pvalue": [0.001, 0.4, 0.9],
            "FDR": [0.003, 0.6, 0.9],
        },
        index=pd.Index(["clone_00", "clone_01", "clone_02"], name="probe"),
    )


@pytest.fixture
def legend_texts(monkeypatch):
    """Capture the legend entries of the figure handed to _save."""
    texts = []

    def capture(fig, output_path):
        legend = fig.axes[0].get_legend()
        texts.extend(t.get_text() for t in legend.get_texts())
        plotting.plt.close(fig)
        return output_path

    monkeypatch.setattr(plotting, "_save", capture)
    return texts


@pytest.mark.parametrize("pvalue_col, expected", [("pvalue", "p < 0.05"), ("FDR", "FDR < 0.05")])
def test_connectivity_legend_names_criterion(stratum_results, legend_texts, tmp_path,
                                             pvalue_col, expected):
    plotting.plot_connectivity(stratum_results, tmp_path / "c.png", pvalue_col=pvalue_col)
    assert legend_texts == [expected, "n.s."]


def test_connectivity_writes_png_and_svg(stratum_results, tmp_path):
    out = plotting.plot_connectivity(stratum_results, tmp_path / "figures" / "c.png")
    assert out.exists()
    assert out.with_suffix(".svg").exists()
