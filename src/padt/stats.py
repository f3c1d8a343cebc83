from __future__ import annotations
from dataclasses import dataclass
from typing import Any
import numpy as np
import pandas as pd
from scipy import stats as sp_stats
from .allergens import (
    Allergen,
    Condition,
    END,
    GROUP_FIELDS,
    POINTS,
    START,
    pair_name,
)
from .prevalence import (
    comorbidity,
    grouped_comparison,
    partition_sizes,
    present,
    prevalence_comparison,
    shared_axis_max,
    sort_by_prevalence,
    with_undefined,
)
from .schema import AGE_COLUMNS

def binary_indicators(df: pd.DataFrame, panel: list[Allergen], point: str = START) -> pd.DataFrame:
    return pd.DataFrame(
        {a.name: present(df, a.column(point)).astype(int) for a in panel},
        index=df.index,
    )

def allergen_correlation(df: pd.DataFrame, panel: list[Allergen]) -> pd.DataFrame:
    """Pearson correlation between 0/1 start-of-observation indicators."""
    indicators = binary_indicators(df, panel, START)
    return indicators.corr(method="pearson")

def correlation_pairs(matrix: pd.DataFrame) -> pd.DataFrame:
    names = list(matrix.columns)
    rows = []
    for i, first in enumerate(names):
        for second in names[i + 1:]:
            value = matrix.loc[first, second]
            rows.append({
                "allergen_x": first,
                "allergen_y": second,
                "correlation": None if pd.isna(value) else float(value),
            })
    table = pd.DataFrame(rows, columns=["allergen_x", "allergen_y", "correlation"])
    table["correlation"] = pd.Series([r["correlation"] for r in rows], index=table.index, dtype=object)
    return table

def cooccurrence(df: pd.DataFrame, pairs: list[tuple[Allergen, Allergen]]) -> pd.DataFrame:
    """Share of records with both allergens of each named pair present, lowest first."""
    n = len(df)
    rows = []
    for first, second in pairs:
        both = present(df, first.column(START)) & present(df, second.column(START))
        count = int(both.sum())
        rows.append({
            "pair": pair_name(first.name, second.name),
            "allergen_x": first.name,
            "allergen_y": second.name,
            "n": n,
            "count": count,
            "frequency": float(count / n) if n else None,
        })
    table = pd.DataFrame(rows, columns=["pair", "allergen_x", "allergen_y", "n", "count", "frequency"])
    table = with_undefined(table, col="frequency")
    return sort_by_prevalence(table, ascending=True, col="frequency")

def birth_year_series(df: pd.DataFrame, allergen: Allergen, point: str = END) -> pd.DataFrame:
    """(birth_year, prevalence) points; years without records do not appear."""
    flags = present(df, allergen.column(point)).astype(int)
    years = pd.to_numeric(df["birth_year"], errors="coerce")
    grouped = flags.groupby(years).agg(["size", "sum"])
    series = pd.DataFrame({
        "allergen": allergen.name,
        "birth_year": grouped.index.astype(int),
        "n": grouped["size"].astype(int).to_numpy(),
        "count": grouped["sum"].astype(int).to_numpy(),
    })
    series["prevalence"] = series["count"] / series["n"]
    return series.sort_values("birth_year").reset_index(drop=True)

@dataclass(frozen=True)
class TrendFit:
    slope: float
    intercept: float
    r_squared: float | None
    p_value: float | None
    confidence: float
    band: pd.DataFrame

    def summary(self) -> dict[str, Any]:
        return {
            "slope": self.slope,
            "intercept": self.intercept,
            "r_squared": self.r_squared,
            "p_value": self.p_value,
            "confidence": self.confidence,
        }

def fit_trend(series: pd.DataFrame, confidence: float = 0.95) -> TrendFit | None:
    """Ordinary least squares of prevalence on birth year with a mean-response band.

    Returns None when fewer than three distinct birth years are available.
    """
    x = series["birth_year"].to_numpy(dtype=float)
    y = series["prevalence"].to_numpy(dtype=float)
    if len(np.unique(x)) < 3:
        return None

    slope, intercept = np.polyfit(x, y, 1)
    fitted = intercept + slope * x
    n = len(x)
    dof = n - 2
    ssr = float(np.sum((y - fitted) ** 2))
    sst = float(np.sum((y - y.mean()) ** 2))
    x_mean = x.mean()
    sxx = float(np.sum((x - x_mean) ** 2))
    s = np.sqrt(ssr / dof)

    t_crit = sp_stats.t.ppf((1 + confidence) / 2, dof)
    half_width = t_crit * s * np.sqrt(1 / n + (x - x_mean) ** 2 / sxx)
    band = pd.DataFrame({
        "birth_year": series["birth_year"].to_numpy(),
        "fitted": fitted,
        "lower": fitted - half_width,
        "upper": fitted + half_width,
    })

    se_slope = s / np.sqrt(sxx)
    p_value = None
    if se_slope > 0:
        p_value = float(2 * sp_stats.t.sf(abs(slope / se_slope), dof))
    r_squared = None if sst == 0 else float(1 - ssr / sst)
    return TrendFit(
        slope=float(slope),
        intercept=float(intercept),
        r_squared=r_squared,
        p_value=p_value,
        confidence=confidence,
        band=band,
    )

def birth_year_trends(df: pd.DataFrame, panel: list[Allergen],
                      confidence: float = 0.95) -> dict[str, dict[str, Any]]:
    trends: dict[str, dict[str, Any]] = {}
    for allergen in panel:
        series = birth_year_series(df, allergen, END)
        trends[allergen.name] = {"series": series, "fit": fit_trend(series, confidence)}
    return trends

def trend_summary(trends: dict[str, dict[str, Any]]) -> pd.DataFrame:
    rows = []
    for name, entry in trends.items():
        fit = entry["fit"]
        row = {"allergen": name, "points": len(entry["series"])}
        row.update(fit.summary() if fit else {
            "slope": None, "intercept": None, "r_squared": None, "p_value": None, "confidence": None,
        })
        rows.append(row)
    return pd.DataFrame(rows, columns=["allergen", "points", "slope", "intercept",
                                       "r_squared", "p_value", "confidence"])

def demographic_summary(df: pd.DataFrame) -> pd.DataFrame:
    total = len(df)
    rows = []
    for field in GROUP_FIELDS:
        if field not in df.columns:
            continue
        for _, entry in partition_sizes(df, field).iterrows():
            rows.append({"field": field, "category": entry[field], "n": int(entry["n"])})
    if "atopic_march_cohort" in df.columns:
        flags = df["atopic_march_cohort"]
        for label, count in (("True", int((flags == True).sum())),  # noqa: E712
                             ("False", int((flags == False).sum())),  # noqa: E712
                             ("Missing", int(flags.isna().sum()))):
            if label == "Missing" and not count:
                continue
            rows.append({"field": "atopic_march_cohort", "category": label, "n": count})
    table = pd.DataFrame(rows, columns=["field", "category", "n"])
    table["pct"] = pd.Series(
        [round(n / total * 100, 2) if total else None for n in table["n"]],
        index=table.index,
        dtype=object,
    )
    return table

def age_summary(df: pd.DataFrame) -> pd.DataFrame:
    sub = df[AGE_COLUMNS].apply(pd.to_numeric, errors="coerce")
    return sub.describe().T.reset_index().rename(columns={"index": "variable"})

def build_tables(df: pd.DataFrame, panel: list[Allergen],
                 pairs: list[tuple[Allergen, Allergen]],
                 conditions: list[Condition]) -> tuple[dict[str, pd.DataFrame], dict[str, float | None]]:
    """Compute every named output table from the cleaned record table.

    Returns the tables and, for each chart that compares two aggregates, the
    shared axis bound.
    """
    tables: dict[str, pd.DataFrame] = {}
    axis_max: dict[str, float | None] = {}

    tables["demographics"] = demographic_summary(df)
    tables["age_summary"] = age_summary(df)

    overall = prevalence_comparison(df, panel)
    tables["prevalence_start"] = overall["start"]
    tables["prevalence_end"] = overall["end"]
    axis_max["prevalence"] = overall["axis_max"]

    for field in GROUP_FIELDS:
        grouped = grouped_comparison(df, field, panel)
        for point in POINTS:
            tables[f"prevalence_by_{field}_{point}"] = grouped[point]
        axis_max[f"prevalence_by_{field}"] = grouped["axis_max"]

    matrix = allergen_correlation(df, panel)
    tables["correlation_matrix"] = matrix.reset_index().rename(columns={"index": "allergen"})
    tables["correlation_pairs"] = correlation_pairs(matrix)
    tables["cooccurrence"] = cooccurrence(df, pairs)

    trends = birth_year_trends(df, panel)
    series = [entry["series"] for entry in trends.values()]
    tables["birth_year_trend"] = (pd.concat(series, ignore_index=True) if series
                                  else pd.DataFrame(columns=["allergen", "birth_year", "n", "count", "prevalence"]))
    tables["birth_year_trend_fit"] = trend_summary(trends)
    bands = [entry["fit"].band.assign(allergen=name) for name, entry in trends.items() if entry["fit"]]
    if bands:
        tables["birth_year_trend_band"] = pd.concat(bands, ignore_index=True)

    for condition in conditions:
        result = comorbidity(df, condition, panel)
        tables[f"comorbidity_{condition.name}_has_allergen"] = result["has_allergen"]
        tables[f"comorbidity_{condition.name}_allergens"] = result["allergens"]
        axis_max[f"comorbidity_{condition.name}"] = shared_axis_max(result["allergens"])
    return tables, axis_max

def _records(table: pd.DataFrame) -> list[dict[str, Any]]:
    return table.astype(object).where(table.notna(), None).to_dict(orient="records")

def _partition_alerts(tables: dict[str, pd.DataFrame], min_partition: int | None) -> list[dict[str, object]]:
    alerts: list[dict[str, object]] = []
    for field in GROUP_FIELDS:
        sizes = tables.get(f"prevalence_by_{field}_{START}")
        if sizes is None:
            continue
        for category, n in sizes.groupby(field, sort=False)["n"].first().items():
            if n == 0:
                alerts.append({
                    "type": "undefined",
                    "field": field,
                    "category": category,
                    "message": f"No records with {field} = {category}; prevalence is undefined.",
                })
            elif min_partition is not None and n < min_partition:
                alerts.append({
                    "type": "small_partition",
                    "field": field,
                    "category": category,
                    "n": int(n),
                    "threshold": min_partition,
                })
    return alerts

def simple_report(
    df: pd.DataFrame,
    panel: list[Allergen],
    pairs: list[tuple[Allergen, Allergen]],
    conditions: list[Condition],
    alerts: dict[str, object] | None = None,
) -> tuple[dict[str, Any], dict[str, pd.DataFrame]]:
    tables, axis_max = build_tables(df, panel, pairs, conditions)
    report: dict[str, Any] = {
        "records": len(df),
        "allergens": [a.name for a in panel],
        "allergen_order": tables["prevalence_start"]["allergen"].tolist(),
        "axis_max": axis_max,
        "tables": {name: _records(table) for name, table in tables.items()},
    }
    min_partition = (alerts or {}).get("min_partition")
    report["alerts"] = _partition_alerts(
        tables,
        int(min_partition) if isinstance(min_partition, (int, float)) else None,
    )
    return report, tables
