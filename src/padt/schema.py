from __future__ import annotations
import pandas as pd
from .allergens import Allergen, CONDITIONS, DEMOGRAPHIC_CODES, EXCLUDED_ALLERGEN

IDENTITY_COLUMNS = ["subject_id", "birth_year", "atopic_march_cohort"]
AGE_COLUMNS = ["age_start_years", "age_end_years"]
CONDITION_COLUMNS = [c.column for c in CONDITIONS.values()]

def required_columns(panel: list[Allergen]) -> list[str]:
    cols = list(IDENTITY_COLUMNS) + list(DEMOGRAPHIC_CODES) + list(AGE_COLUMNS)
    for allergen in panel:
        cols.extend(allergen.columns())
    cols.extend(CONDITION_COLUMNS)
    return cols

def numeric_columns(panel: list[Allergen]) -> list[str]:
    cols = ["birth_year"] + list(AGE_COLUMNS)
    for allergen in panel:
        cols.extend(allergen.columns())
    cols.extend(CONDITION_COLUMNS)
    return cols

def validate_schema(df: pd.DataFrame, panel: list[Allergen]) -> list[str]:
    """Return list of human-readable errors; empty when the frame can be loaded."""
    messages: list[str] = []
    missing = [col for col in required_columns(panel) if col not in df.columns]
    if missing:
        messages.append(f"Missing required columns: {', '.join(missing)}")
    for col in numeric_columns(panel):
        if col not in df.columns:
            continue
        series = df[col]
        coerced = pd.to_numeric(series, errors="coerce")
        bad = coerced.isna() & series.notna()
        if bad.any():
            sample = ", ".join(str(v) for v in series[bad].unique()[:3])
            messages.append(f"Column '{col}' has {int(bad.sum())} non-numeric value(s): {sample}")
    return messages

def column_role(col: str) -> str:
    if EXCLUDED_ALLERGEN in col:
        return "excluded"
    if col in IDENTITY_COLUMNS:
        return "identity"
    if col in AGE_COLUMNS:
        return "age"
    if col in DEMOGRAPHIC_CODES or col in {out for out, _ in DEMOGRAPHIC_CODES.values()}:
        return "demographic"
    if "_alg_" in col:
        return "allergen"
    if col.endswith("_start") or col.endswith("_end"):
        return "condition"
    return "other"

def build_data_dictionary(df: pd.DataFrame) -> pd.DataFrame:
    info = []
    total = len(df)
    for col in df.columns:
        series = df[col]
        present = int(series.notna().sum())
        info.append({
            "column": col,
            "role": column_role(col),
            "dtype": str(series.dtype),
            "present": present,
            "present_pct": round(present / total * 100, 2) if total else 0.0,
            "example": series.dropna().iloc[0] if present else "",
        })
    return pd.DataFrame(info)
