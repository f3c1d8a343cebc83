from __future__ import annotations
from typing import Any
import pandas as pd
from .allergens import Allergen, Condition, END, START, UNRECOGNIZED, field_labels

def present(df: pd.DataFrame, col: str) -> pd.Series:
    """Presence flags: a recorded age, whatever its value, means diagnosed."""
    return df[col].notna()

def _ratio(count: int, n: int) -> float | None:
    if n == 0:
        return None
    return float(count / n)

def with_undefined(table: pd.DataFrame, col: str = "prevalence") -> pd.DataFrame:
    """Store undefined ratios as None in an object column instead of NaN."""
    values = [None if (n == 0 or v is None or pd.isna(v)) else float(v)
              for n, v in zip(table["n"], table[col])]
    table[col] = pd.Series(values, index=table.index, dtype=object)
    return table

def sort_by_prevalence(table: pd.DataFrame, ascending: bool, col: str = "prevalence") -> pd.DataFrame:
    key = pd.to_numeric(table[col], errors="coerce")
    order = key.sort_values(ascending=ascending, na_position="last", kind="mergesort").index
    return table.loc[order].reset_index(drop=True)

def prevalence(df: pd.DataFrame, allergen: Allergen, point: str) -> float | None:
    """Fraction of records with the allergen present at ``point``; None for an empty table."""
    return _ratio(int(present(df, allergen.column(point)).sum()), len(df))

def prevalence_table(df: pd.DataFrame, point: str, panel: list[Allergen],
                     order: list[str] | None = None) -> pd.DataFrame:
    lookup = {a.name: a for a in panel}
    names = order if order is not None else [a.name for a in panel]
    rows = []
    n = len(df)
    for name in names:
        count = int(present(df, lookup[name].column(point)).sum())
        rows.append({"allergen": name, "n": n, "count": count, "prevalence": _ratio(count, n)})
    table = pd.DataFrame(rows, columns=["allergen", "n", "count", "prevalence"])
    return with_undefined(table)

def partitions(df: pd.DataFrame, field: str) -> list[str]:
    """Enumerated labels in declared order, then any other value actually present."""
    labels = field_labels(field)
    seen = [str(v) for v in df[field].dropna().unique()]
    extras = sorted(v for v in seen if v not in labels and v != UNRECOGNIZED)
    out = labels + extras
    if UNRECOGNIZED in seen:
        out.append(UNRECOGNIZED)
    return out

def partition_sizes(df: pd.DataFrame, field: str) -> pd.DataFrame:
    counts = df[field].astype(str).value_counts()
    rows = [{field: label, "n": int(counts.get(label, 0))} for label in partitions(df, field)]
    return pd.DataFrame(rows, columns=[field, "n"])

def grouped_prevalence(df: pd.DataFrame, field: str, point: str, panel: list[Allergen]) -> pd.DataFrame:
    """Per-partition prevalence for every allergen in the panel.

    ``field`` is one of the recoded demographic columns (gender, race,
    ethnicity, payer). Partitions with no records keep a row whose prevalence
    is None.
    """
    rows = []
    labels = df[field].astype(str)
    for label in partitions(df, field):
        part = df.loc[labels == label]
        n = len(part)
        for allergen in panel:
            count = int(present(part, allergen.column(point)).sum())
            rows.append({
                field: label,
                "allergen": allergen.name,
                "n": n,
                "count": count,
                "prevalence": _ratio(count, n),
            })
    table = pd.DataFrame(rows, columns=[field, "allergen", "n", "count", "prevalence"])
    return with_undefined(table)

def allergen_order(df: pd.DataFrame, panel: list[Allergen]) -> list[str]:
    """Allergen names ranked by start prevalence, highest first; ties keep panel order."""
    table = sort_by_prevalence(prevalence_table(df, START, panel), ascending=False)
    return table["allergen"].tolist()

def shared_axis_max(*tables: pd.DataFrame, col: str = "prevalence") -> float | None:
    values = [pd.to_numeric(t[col], errors="coerce") for t in tables if col in t.columns and not t.empty]
    if not values:
        return None
    peak = pd.concat(values).max()
    return None if pd.isna(peak) else float(peak)

def prevalence_comparison(df: pd.DataFrame, panel: list[Allergen]) -> dict[str, Any]:
    order = allergen_order(df, panel)
    start = prevalence_table(df, START, panel, order=order)
    end = prevalence_table(df, END, panel, order=order)
    return {
        "order": order,
        "start": start,
        "end": end,
        "axis_max": shared_axis_max(start, end),
    }

def grouped_comparison(df: pd.DataFrame, field: str, panel: list[Allergen]) -> dict[str, Any]:
    start = grouped_prevalence(df, field, START, panel)
    end = grouped_prevalence(df, field, END, panel)
    return {
        "field": field,
        "sizes": partition_sizes(df, field),
        "start": start,
        "end": end,
        "axis_max": shared_axis_max(start, end),
    }

def comorbidity(df: pd.DataFrame, condition: Condition, panel: list[Allergen]) -> dict[str, Any]:
    """Allergy burden among children with and without a condition at end of observation."""
    has_condition = present(df, condition.column)
    end_cols = [a.column(END) for a in panel]
    has_allergen = df[end_cols].notna().any(axis=1) if end_cols else pd.Series(False, index=df.index)

    rows = []
    for status, mask in (("present", has_condition), ("absent", ~has_condition)):
        n = int(mask.sum())
        count = int((has_allergen & mask).sum())
        rows.append({
            "condition": condition.name,
            "status": status,
            "n": n,
            "count": count,
            "prevalence": _ratio(count, n),
        })
    burden = with_undefined(pd.DataFrame(rows, columns=["condition", "status", "n", "count", "prevalence"]))
    within = prevalence_table(df.loc[has_condition], END, panel)
    return {
        "condition": condition.name,
        "has_allergen": burden,
        "allergens": sort_by_prevalence(within, ascending=True),
    }
