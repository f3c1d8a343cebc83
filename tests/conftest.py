from __future__ import annotations
import numpy as np
import pandas as pd
import pytest
from padt.allergens import Allergen

PANEL = [Allergen("PEANUT", "peanut"), Allergen("EGG", "egg"), Allergen("MILK", "milk")]

def build_records(n: int, present: dict[str, list[int]] | None = None,
                  panel: list[Allergen] | None = None, **overrides) -> pd.DataFrame:
    """Raw-looking records: every required column, allergens absent unless listed in ``present``."""
    panel = PANEL if panel is None else panel
    data: dict[str, object] = {
        "subject_id": list(range(1, n + 1)),
        "birth_year": [2010] * n,
        "gender_factor": ["S0 - Male"] * n,
        "race_factor": ["R0 - White"] * n,
        "ethnicity_factor": ["E0 - Non-Hispanic"] * n,
        "payer_factor": ["P0 - Non-Medicaid"] * n,
        "atopic_march_cohort": [False] * n,
        "age_start_years": [1.0] * n,
        "age_end_years": [5.0] * n,
    }
    for allergen in panel:
        for col in allergen.columns():
            data[col] = [np.nan] * n
    for col in ("atopic_derm_end", "allergic_rhinitis_end", "asthma_end"):
        data[col] = [np.nan] * n
    for col, rows in (present or {}).items():
        values = [np.nan] * n
        for i in rows:
            values[i] = 1.5
        data[col] = values
    data.update(overrides)
    return pd.DataFrame(data)

@pytest.fixture
def panel() -> list[Allergen]:
    return list(PANEL)

@pytest.fixture
def make_records():
    return build_records
