from __future__ import annotations
import pandas as pd
from .allergens import (
    Allergen,
    COLUMN_ALIASES,
    DEFAULT_PANEL,
    DEMOGRAPHIC_CODES,
    EXCLUDED_ALLERGEN,
    LABEL_ALIASES,
    UNRECOGNIZED,
)
from .schema import numeric_columns, validate_schema

TRUE_VALUES = {"true", "t", "1", "yes", "y"}
FALSE_VALUES = {"false", "f", "0", "no", "n"}

class RecordLoadError(ValueError):
    """Raised when the record file cannot be turned into a record table."""

def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = (df.columns
                  .str.strip().str.lower()
                  .str.replace(" ", "_")
                  .str.replace("-", "_"))
    aliases = {old: new for old, new in COLUMN_ALIASES.items()
               if old in df.columns and new not in df.columns}
    return df.rename(columns=aliases)

def load_records(path: str, panel: list[Allergen] | None = None) -> pd.DataFrame:
    """Read the record CSV and enforce the required column set."""
    panel = DEFAULT_PANEL if panel is None else panel
    try:
        df = pd.read_csv(path)
    except FileNotFoundError:
        raise RecordLoadError(f"Input file not found: {path}")
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        raise RecordLoadError(f"Could not parse {path}: {exc}") from exc
    df = normalize_columns(df)
    problems = validate_schema(df, panel)
    if problems:
        raise RecordLoadError("; ".join(problems))
    for col in numeric_columns(panel):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df

def _code_lookup(codes: dict[str, str]) -> dict[str, str]:
    lookup: dict[str, str] = {}
    for code, label in codes.items():
        lookup[code.lower()] = label
        lookup[label.lower()] = label
    for alias, label in LABEL_ALIASES.items():
        if label in codes.values():
            lookup[alias] = label
    return lookup

def _recode_value(value: object, lookup: dict[str, str]) -> str | None:
    if value is None or (isinstance(value, float) and pd.isna(value)) or value is pd.NA:
        return None
    text = str(value).strip().lower()
    if text in lookup:
        return lookup[text]
    if " - " in text:
        code, label = (part.strip() for part in text.split(" - ", 1))
        if code in lookup:
            return lookup[code]
        if label in lookup:
            return lookup[label]
    return None

def recode_demographics(df: pd.DataFrame) -> tuple[pd.DataFrame, list[dict[str, object]]]:
    """Replace raw demographic code columns with their labels.

    Values outside a field's enumerated set are labelled ``Unrecognized`` and
    reported as encoding alerts, so they stay visible in grouped tables.
    """
    df = df.copy()
    alerts: list[dict[str, object]] = []
    for raw_col, (out_col, codes) in DEMOGRAPHIC_CODES.items():
        if raw_col not in df.columns:
            continue
        lookup = _code_lookup(codes)
        labels = df[raw_col].map(lambda v: _recode_value(v, lookup))
        bad = labels.isna()
        if bad.any():
            raw_values = sorted({str(v) for v in df.loc[bad, raw_col].tolist()})
            alerts.append({
                "type": "encoding",
                "column": raw_col,
                "values": raw_values,
                "count": int(bad.sum()),
                "message": f"{int(bad.sum())} value(s) in '{raw_col}' outside "
                           f"{', '.join(codes.values())}; labelled {UNRECOGNIZED}.",
            })
        df[out_col] = labels.where(~bad, UNRECOGNIZED).astype(object)
        df = df.drop(columns=[raw_col])
    return df, alerts

def coerce_cohort_flag(df: pd.DataFrame, col: str = "atopic_march_cohort") -> tuple[pd.DataFrame, list[dict[str, object]]]:
    df = df.copy()
    if col not in df.columns:
        return df, []
    if pd.api.types.is_bool_dtype(df[col]):
        return df, []

    def parse(value: object) -> object:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
        return pd.NA

    flags = df[col].map(parse)
    bad = flags.isna()
    alerts: list[dict[str, object]] = []
    if bad.any():
        alerts.append({
            "type": "encoding",
            "column": col,
            "values": sorted({str(v) for v in df.loc[bad, col].tolist()}),
            "count": int(bad.sum()),
            "message": f"{int(bad.sum())} value(s) in '{col}' are not TRUE/FALSE.",
        })
    df[col] = flags.astype("boolean")
    return df, alerts

def filter_age(df: pd.DataFrame) -> pd.DataFrame:
    keep = pd.to_numeric(df["age_start_years"], errors="coerce") >= 0
    return df.loc[keep].reset_index(drop=True)

def drop_treenut(df: pd.DataFrame) -> pd.DataFrame:
    cols = [c for c in df.columns if EXCLUDED_ALLERGEN in c.lower()]
    return df.drop(columns=cols)

def clean_records(df: pd.DataFrame, atopic_march_only: bool = False) -> tuple[pd.DataFrame, list[dict[str, object]]]:
    """Recode, filter and prune a loaded record table.

    Returns the cleaned table and the data-quality alerts raised along the way.
    The input frame is left untouched.
    """
    df = drop_treenut(normalize_columns(df))
    df, alerts = recode_demographics(df)
    df, cohort_alerts = coerce_cohort_flag(df)
    alerts.extend(cohort_alerts)

    before = len(df)
    df = filter_age(df)
    dropped = before - len(df)
    if dropped:
        alerts.append({
            "type": "malformed",
            "column": "age_start_years",
            "count": dropped,
            "message": f"Dropped {dropped} record(s) with negative or missing age_start_years.",
        })
    if atopic_march_only and "atopic_march_cohort" in df.columns:
        df = df.loc[df["atopic_march_cohort"].fillna(False).astype(bool)].reset_index(drop=True)
    return df, alerts
