from __future__ import annotations
import pandas as pd
from padt.allergens import CONDITIONS, END, START, UNRECOGNIZED
from padt.cleaning import clean_records
from padt.prevalence import (
    allergen_order,
    comorbidity,
    grouped_comparison,
    grouped_prevalence,
    prevalence,
    prevalence_comparison,
    prevalence_table,
    shared_axis_max,
)


def _clean(df):
    cleaned, _ = clean_records(df)
    return cleaned


def test_prevalence_counts_presence(make_records, panel):
    df = _clean(make_records(4, present={"peanut_alg_start": [0, 2]}))
    assert prevalence(df, panel[0], START) == 0.5
    assert prevalence(df, panel[0], END) == 0.0


def test_presence_not_value_decides(make_records, panel):
    df = _clean(make_records(4, peanut_alg_start=[0.0, 12.0, None, None]))
    assert prevalence(df, panel[0], START) == 0.5


def test_empty_table_is_undefined(make_records, panel):
    df = _clean(make_records(2)).iloc[0:0]
    assert prevalence(df, panel[0], START) is None
    table = prevalence_table(df, START, panel)
    assert table["prevalence"].tolist() == [None, None, None]


def test_negative_age_record_absent_from_aggregates(make_records, panel):
    df = _clean(make_records(
        3,
        age_start_years=[-1.0, 1.0, 1.0],
        present={"peanut_alg_start": [0, 1]},
    ))
    assert prevalence(df, panel[0], START) == 0.5
    table = grouped_prevalence(df, "gender", START, panel)
    assert table["n"].max() == 2


def test_end_chart_reuses_start_ranking(make_records, panel):
    df = _clean(make_records(4, present={
        "milk_alg_start": [0, 1, 2],
        "peanut_alg_start": [0, 1],
        "egg_alg_start": [3],
        "egg_alg_end": [0, 1, 2, 3],
        "milk_alg_end": [0],
    }))
    order = allergen_order(df, panel)
    assert order == ["MILK", "PEANUT", "EGG"]
    comparison = prevalence_comparison(df, panel)
    assert comparison["start"]["allergen"].tolist() == order
    assert comparison["end"]["allergen"].tolist() == order
    assert comparison["axis_max"] == 1.0


def test_ties_keep_panel_order(make_records, panel):
    df = _clean(make_records(2, present={"egg_alg_start": [0], "milk_alg_start": [1]}))
    assert allergen_order(df, panel) == ["EGG", "MILK", "PEANUT"]


def test_gender_partitions_sum_to_total(make_records, panel):
    df = _clean(make_records(
        5,
        gender_factor=["S0 - Male", "S1 - Female", "S1 - Female", "S0 - Male", "S1"],
        present={"peanut_alg_start": [0, 1]},
    ))
    table = grouped_prevalence(df, "gender", START, panel)
    sizes = table.groupby("gender", sort=False)["n"].first()
    assert list(sizes.index) == ["Male", "Female"]
    assert sizes.sum() == len(df)
    peanut = table[table["allergen"] == "PEANUT"].set_index("gender")["prevalence"]
    assert peanut["Male"] == 0.5
    assert peanut["Female"] == 1 / 3


def test_empty_partition_is_undefined(make_records, panel):
    df = _clean(make_records(3))
    table = grouped_prevalence(df, "race", START, panel)
    assert table["race"].unique().tolist() == ["White", "Black", "Asian/Pacific Islander", "Other", "Unknown"]
    assert table.loc[table["race"] == "Black", "prevalence"].tolist() == [None, None, None]
    assert table.loc[table["race"] == "White", "prevalence"].tolist() == [0.0, 0.0, 0.0]


def test_unrecognized_partition_is_visible(make_records, panel):
    df = _clean(make_records(3, gender_factor=["S0", "S1", "X9 - ?"], present={"milk_alg_end": [2]}))
    table = grouped_prevalence(df, "gender", END, panel)
    assert UNRECOGNIZED in table["gender"].tolist()
    milk = table[table["allergen"] == "MILK"].set_index("gender")["prevalence"]
    assert milk[UNRECOGNIZED] == 1.0


def test_grouped_comparison_shares_axis(make_records, panel):
    df = _clean(make_records(
        4,
        payer_factor=["P0", "P0", "P1", "P1"],
        present={"egg_alg_start": [0], "egg_alg_end": [2, 3]},
    ))
    result = grouped_comparison(df, "payer", panel)
    assert result["axis_max"] == 1.0
    assert result["sizes"]["n"].tolist() == [2, 2]
    assert shared_axis_max(result["start"]) == 0.5


def test_prevalence_within_bounds(make_records, panel):
    df = _clean(make_records(6, present={"peanut_alg_start": [0, 1, 2, 3, 4, 5], "egg_alg_end": [1]}))
    for point in (START, END):
        values = pd.to_numeric(prevalence_table(df, point, panel)["prevalence"])
        assert ((values >= 0) & (values <= 1)).all()


def test_comorbidity_partitions(make_records, panel):
    df = _clean(make_records(4, present={
        "asthma_end": [0, 1],
        "peanut_alg_end": [0, 3],
        "milk_alg_end": [1],
    }))
    result = comorbidity(df, CONDITIONS["asthma"], panel)
    burden = result["has_allergen"].set_index("status")
    assert burden.loc["present", "prevalence"] == 1.0
    assert burden.loc["absent", "prevalence"] == 0.5
    assert burden["n"].sum() == len(df)
    within = result["allergens"]
    assert within["allergen"].tolist() == ["EGG", "PEANUT", "MILK"]
    assert within["prevalence"].tolist() == [0.0, 0.5, 0.5]


def test_comorbidity_without_condition_is_undefined(make_records, panel):
    df = _clean(make_records(2, present={"egg_alg_end": [0]}))
    result = comorbidity(df, CONDITIONS["allergic_rhinitis"], panel)
    burden = result["has_allergen"].set_index("status")
    assert burden.loc["present", "prevalence"] is None
    assert burden.loc["absent", "prevalence"] == 0.5
    assert result["allergens"]["prevalence"].tolist() == [None, None, None]
