from __future__ import annotations
import pytest
from padt import plots
from padt.cleaning import clean_records
from padt.prevalence import prevalence_comparison

matplotlib = pytest.importorskip("matplotlib")
matplotlib.use("Agg")
import matplotlib.pyplot as pyplot  # noqa: E402


@pytest.fixture
def captured(monkeypatch):
    """Render with matplotlib enabled and keep the figures open for inspection."""
    monkeypatch.delenv("PADT_DISABLE_PLOTS", raising=False)
    monkeypatch.setattr(plots, "plt", pyplot)
    figures = []

    def keep(fig, outdir, filename):
        figures.append(fig)
        return filename

    monkeypatch.setattr(plots, "_save", keep)
    yield figures
    for fig in figures:
        pyplot.close(fig)


def test_start_and_end_share_one_axis_bound(captured, make_records, panel, tmp_path):
    df, _ = clean_records(make_records(10, present={
        "peanut_alg_start": [0],
        "peanut_alg_end": [0, 1, 2, 3, 4, 5],
        "egg_alg_start": [1, 2],
    }))
    comparison = prevalence_comparison(df, panel)
    assert comparison["axis_max"] == pytest.approx(0.6)

    name = plots.save_prevalence_comparison(comparison["start"], comparison["end"],
                                            comparison["axis_max"], str(tmp_path))
    assert name == "prevalence_start_end.png"
    start_ax, end_ax = captured[0].axes
    assert start_ax.get_xlim() == end_ax.get_xlim()
    assert start_ax.get_xlim()[1] == pytest.approx(0.66)


def test_disabled_plots_render_nothing(monkeypatch, make_records, panel, tmp_path):
    monkeypatch.setenv("PADT_DISABLE_PLOTS", "1")
    df, _ = clean_records(make_records(2, present={"milk_alg_start": [0]}))
    comparison = prevalence_comparison(df, panel)
    assert plots.save_prevalence_comparison(comparison["start"], comparison["end"],
                                            comparison["axis_max"], str(tmp_path)) is None
    assert not any(tmp_path.iterdir())
