from __future__ import annotations
from dataclasses import dataclass

START = "start"
END = "end"
POINTS = (START, END)

EXCLUDED_ALLERGEN = "treenut"

@dataclass(frozen=True)
class Allergen:
    name: str
    stem: str

    def column(self, point: str) -> str:
        if point not in POINTS:
            raise ValueError(f"Unknown observation point '{point}' (expected one of {', '.join(POINTS)})")
        return f"{self.stem}_alg_{point}"

    def columns(self) -> list[str]:
        return [self.column(p) for p in POINTS]

@dataclass(frozen=True)
class Condition:
    name: str
    column: str

ALLERGEN_LIBRARY: dict[str, Allergen] = {
    a.name: a
    for a in [
        Allergen("SHELLFISH", "shellfish"),
        Allergen("FISH", "fish"),
        Allergen("MILK", "milk"),
        Allergen("SOY", "soy"),
        Allergen("EGG", "egg"),
        Allergen("WHEAT", "wheat"),
        Allergen("PEANUT", "peanut"),
        Allergen("SESAME", "sesame"),
        Allergen("WALNUT", "walnut"),
        Allergen("PECAN", "pecan"),
        Allergen("PISTACHIO", "pistach"),
        Allergen("ALMOND", "almond"),
        Allergen("BRAZIL NUT", "brazil"),
        Allergen("HAZELNUT", "hazelnut"),
        Allergen("CASHEW", "cashew"),
    ]
}

DEFAULT_PANEL: list[Allergen] = list(ALLERGEN_LIBRARY.values())

# Pairs of clinical interest; reported in this set only, never all pairs.
COOCCURRENCE_PAIRS: list[tuple[str, str]] = [
    ("MILK", "EGG"),
    ("MILK", "SOY"),
    ("MILK", "WHEAT"),
    ("EGG", "WHEAT"),
    ("EGG", "PEANUT"),
    ("PEANUT", "SESAME"),
    ("PEANUT", "CASHEW"),
    ("WALNUT", "PECAN"),
    ("CASHEW", "PISTACHIO"),
    ("SHELLFISH", "FISH"),
]

CONDITIONS: dict[str, Condition] = {
    "asthma": Condition("asthma", "asthma_end"),
    "allergic_rhinitis": Condition("allergic_rhinitis", "allergic_rhinitis_end"),
    "eczema": Condition("eczema", "atopic_derm_end"),
}

DEFAULT_COMORBIDITIES = ["asthma", "allergic_rhinitis"]

# header spellings folded onto the canonical column before validation
COLUMN_ALIASES: dict[str, str] = {
    "eczema_start": "atopic_derm_start",
    "eczema_end": "atopic_derm_end",
}

UNRECOGNIZED = "Unrecognized"

# raw column -> (output column, {code: label}); labels keep declared order
DEMOGRAPHIC_CODES: dict[str, tuple[str, dict[str, str]]] = {
    "gender_factor": ("gender", {
        "S0": "Male",
        "S1": "Female",
    }),
    "race_factor": ("race", {
        "R0": "White",
        "R1": "Black",
        "R2": "Asian/Pacific Islander",
        "R3": "Other",
        "R4": "Unknown",
    }),
    "ethnicity_factor": ("ethnicity", {
        "E0": "Non-Hispanic",
        "E1": "Hispanic",
    }),
    "payer_factor": ("payer", {
        "P0": "Non-Medicaid",
        "P1": "Medicaid",
    }),
}

# alternate spellings seen in the raw export
LABEL_ALIASES: dict[str, str] = {
    "asian or pacific islander": "Asian/Pacific Islander",
    "non hispanic": "Non-Hispanic",
    "non medicaid": "Non-Medicaid",
}

GROUP_FIELDS = [out for out, _ in DEMOGRAPHIC_CODES.values()]

def field_labels(field: str) -> list[str]:
    for out, codes in DEMOGRAPHIC_CODES.values():
        if out == field:
            return list(codes.values())
    raise ValueError(f"Unknown grouping field '{field}'. Available: {', '.join(GROUP_FIELDS)}")

def available_allergens() -> list[str]:
    return list(ALLERGEN_LIBRARY.keys())

def pair_name(first: str, second: str) -> str:
    return f"{first.lower().replace(' ', '_')}_{second.lower().replace(' ', '_')}"

def is_excluded(allergen: Allergen) -> bool:
    return EXCLUDED_ALLERGEN in allergen.name.lower() or EXCLUDED_ALLERGEN in allergen.stem.lower()

def _library(custom: dict[str, Allergen] | None) -> dict[str, Allergen]:
    library = dict(ALLERGEN_LIBRARY)
    if custom:
        library.update(custom)
    for allergen in library.values():
        if is_excluded(allergen):
            raise SystemExit(f"[PADT] {allergen.name} ({allergen.stem}) is excluded from every analysis.")
    return library

def resolve_panel(names: list[str] | None,
                  custom: dict[str, Allergen] | None = None) -> list[Allergen]:
    """Return the allergens requested by name, in library order when none are given."""
    library = _library(custom)
    if not names:
        return list(library.values())
    panel: list[Allergen] = []
    for name in names:
        key = str(name).strip().upper()
        if EXCLUDED_ALLERGEN in key.lower():
            raise SystemExit(f"[PADT] {key} is excluded from every analysis.")
        if key not in library:
            raise SystemExit(f"[PADT] Unknown allergen '{name}'. Available: {', '.join(library)}")
        if library[key] not in panel:
            panel.append(library[key])
    return panel

def resolve_pairs(pairs: list[tuple[str, str]] | None,
                  panel: list[Allergen],
                  custom: dict[str, Allergen] | None = None) -> list[tuple[Allergen, Allergen]]:
    """Keep the pairs whose members are both in the panel.

    A pair naming an allergen missing from the library (and from ``custom``)
    is a configuration error; a known pair outside the panel is skipped.
    """
    library = _library(custom)
    lookup = {a.name: a for a in panel}
    resolved: list[tuple[Allergen, Allergen]] = []
    for first, second in (COOCCURRENCE_PAIRS if pairs is None else pairs):
        a, b = str(first).strip().upper(), str(second).strip().upper()
        unknown = [name for name in (a, b) if name not in library and name not in lookup]
        if unknown:
            raise SystemExit(f"[PADT] Unknown allergen in co-occurrence pair {a}_{b}: {', '.join(unknown)}")
        if a == b:
            raise SystemExit(f"[PADT] Co-occurrence pair {a}_{b} names the same allergen twice")
        if a in lookup and b in lookup:
            resolved.append((lookup[a], lookup[b]))
    return resolved
