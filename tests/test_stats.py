from __future__ import annotations
import json
from pathlib import Path
import numpy as np
import pandas as pd
import pytest
from padt.allergens import CONDITIONS, DEFAULT_PANEL, resolve_pairs
from padt.cleaning import clean_records, load_records
from padt.stats import (
    allergen_correlation,
    binary_indicators,
    birth_year_series,
    build_tables,
    cooccurrence,
    correlation_pairs,
    demographic_summary,
    fit_trend,
    simple_report,
)

SAMPLE = Path(__file__).resolve().parents[1] / "data" / "examples" / "allergy_records.csv"


def _clean(df):
    cleaned, _ = clean_records(df)
    return cleaned


def test_binary_indicators_use_presence(make_records, panel):
    df = _clean(make_records(3, peanut_alg_start=[0.0, None, 4.2]))
    indicators = binary_indicators(df, panel)
    assert indicators["PEANUT"].tolist() == [1, 0, 1]
    assert set(indicators.columns) == {"PEANUT", "EGG", "MILK"}


def test_cooccurrence_milk_egg(make_records, panel):
    df = _clean(make_records(10, present={
        "milk_alg_start": [0, 1, 2, 3, 4],
        "egg_alg_start": [0, 1, 2, 7],
        "peanut_alg_start": [5],
    }))
    table = cooccurrence(df, resolve_pairs(None, panel))
    assert table["pair"].tolist() == ["egg_peanut", "milk_egg"]
    freq = table.set_index("pair")["frequency"]
    assert freq["milk_egg"] == pytest.approx(0.3)
    assert freq["egg_peanut"] == 0.0


def test_cooccurrence_only_named_pairs(make_records, panel):
    df = _clean(make_records(2, present={"peanut_alg_start": [0], "milk_alg_start": [0]}))
    table = cooccurrence(df, resolve_pairs([("MILK", "EGG")], panel))
    assert table["pair"].tolist() == ["milk_egg"]


def test_correlation_symmetric_with_unit_diagonal(make_records, panel):
    df = _clean(make_records(6, present={
        "peanut_alg_start": [0, 1, 2],
        "egg_alg_start": [0, 1, 4],
        "milk_alg_start": [3, 5],
    }))
    matrix = allergen_correlation(df, panel)
    values = matrix.to_numpy()
    assert np.allclose(values, values.T)
    assert np.allclose(np.diag(values), 1.0)
    pairs = correlation_pairs(matrix)
    assert len(pairs) == 3
    assert list(zip(pairs["allergen_x"], pairs["allergen_y"])) == [
        ("PEANUT", "EGG"), ("PEANUT", "MILK"), ("EGG", "MILK"),
    ]


def test_zero_variance_correlation_is_undefined(make_records, panel):
    df = _clean(make_records(4, present={"egg_alg_start": [0, 1], "milk_alg_start": [1, 2]}))
    pairs = correlation_pairs(allergen_correlation(df, panel))
    peanut = pairs[(pairs["allergen_x"] == "PEANUT") | (pairs["allergen_y"] == "PEANUT")]
    assert peanut["correlation"].tolist() == [None, None]


def test_birth_year_series_skips_empty_years(make_records, panel):
    df = _clean(make_records(
        4,
        birth_year=[2008, 2008, 2010, 2011],
        present={"peanut_alg_end": [0, 2]},
    ))
    series = birth_year_series(df, panel[0])
    assert series["birth_year"].tolist() == [2008, 2010, 2011]
    assert series["prevalence"].tolist() == [0.5, 1.0, 0.0]
    assert 2009 not in series["birth_year"].tolist()


def test_fit_trend_recovers_slope():
    years = np.arange(2000, 2006)
    series = pd.DataFrame({"birth_year": years, "prevalence": 0.1 + 0.02 * (years - 2000)})
    fit = fit_trend(series)
    assert fit is not None
    assert fit.slope == pytest.approx(0.02)
    assert fit.r_squared == pytest.approx(1.0)


def test_fit_trend_band_brackets_line():
    series = pd.DataFrame({
        "birth_year": [2005, 2006, 2007, 2008, 2009],
        "prevalence": [0.10, 0.15, 0.12, 0.20, 0.22],
    })
    fit = fit_trend(series)
    assert fit is not None
    assert fit.slope > 0
    band = fit.band
    assert (band["lower"] < band["fitted"]).all()
    assert (band["fitted"] < band["upper"]).all()
    assert 0 <= fit.p_value <= 1


def test_fit_trend_needs_three_years():
    series = pd.DataFrame({"birth_year": [2005, 2006], "prevalence": [0.1, 0.2]})
    assert fit_trend(series) is None


def test_demographic_summary_counts(make_records):
    df = _clean(make_records(4, gender_factor=["S0", "S1", "S1", "S1"], atopic_march_cohort=[True, False, True, True]))
    summary = demographic_summary(df)
    gender = summary[summary["field"] == "gender"].set_index("category")
    assert gender.loc["Female", "n"] == 3
    assert gender.loc["Female", "pct"] == 75.0
    cohort = summary[summary["field"] == "atopic_march_cohort"].set_index("category")
    assert cohort.loc["True", "n"] == 3


def test_tables_do_not_mutate_clean_table(make_records, panel):
    df = _clean(make_records(5, present={"peanut_alg_start": [0], "asthma_end": [1]}))
    snapshot = df.copy()
    build_tables(df, panel, resolve_pairs(None, panel), [CONDITIONS["asthma"]])
    pd.testing.assert_frame_equal(df, snapshot)


def test_report_excludes_treenut(make_records, panel):
    df = _clean(make_records(4, present={
        "treenut_alg_start": [0, 1],
        "treenut_alg_end": [0],
        "peanut_alg_start": [0],
    }))
    report, tables = simple_report(df, panel, resolve_pairs(None, panel), [CONDITIONS["asthma"]])
    assert "treenut" not in json.dumps(report).lower()
    for table in tables.values():
        assert not any("treenut" in str(c).lower() for c in table.columns)


def test_report_on_sample_file():
    df, _ = clean_records(load_records(str(SAMPLE)))
    report, tables = simple_report(
        df,
        DEFAULT_PANEL,
        resolve_pairs(None, DEFAULT_PANEL),
        [CONDITIONS["asthma"], CONDITIONS["allergic_rhinitis"]],
        alerts={"min_partition": 5},
    )
    json.dumps(report)
    assert report["records"] == 58
    assert report["allergen_order"] == tables["prevalence_end"]["allergen"].tolist()
    for name, table in tables.items():
        if "prevalence" in table.columns and name != "birth_year_trend_fit":
            values = pd.to_numeric(table["prevalence"], errors="coerce").dropna()
            assert ((values >= 0) & (values <= 1)).all(), name
    for field in ("gender", "race", "ethnicity", "payer"):
        sizes = tables[f"prevalence_by_{field}_start"].groupby(field, sort=False)["n"].first()
        assert sizes.sum() == 58
        assert report["axis_max"][f"prevalence_by_{field}"] is not None
    assert "comorbidity_asthma_has_allergen" in tables
    assert any(a["type"] == "small_partition" for a in report["alerts"])
