from __future__ import annotations
import os
import numpy as np
import pandas as pd
from .allergens import GROUP_FIELDS

def _plots_disabled() -> bool:
    flag = os.environ.get("PADT_DISABLE_PLOTS", "")
    return flag.lower() in {"1", "true", "yes", "on"}

if not _plots_disabled():
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    plt.style.use("seaborn-v0_8")
else:
    plt = None  # type: ignore[assignment]

PALETTE = ["#4477AA", "#66CCEE", "#228833", "#CCBB44", "#EE6677", "#AA3377", "#BBBBBB"]

def _defined(table: pd.DataFrame, col: str = "prevalence") -> pd.DataFrame:
    """Drop undefined cells so they are never drawn as zero."""
    out = table.copy()
    out[col] = pd.to_numeric(out[col], errors="coerce")
    return out.dropna(subset=[col])

def _axis_limit(axis_max: float | None) -> float:
    if not axis_max:
        return 1.0
    return min(1.0, axis_max * 1.1)

def _save(fig, outdir: str, filename: str) -> str:
    fig.tight_layout()
    fig.savefig(os.path.join(outdir, filename))
    plt.close(fig)
    return filename

def save_age_histograms(df: pd.DataFrame, outdir: str) -> list[str]:
    if _plots_disabled() or plt is None:
        return []
    os.makedirs(outdir, exist_ok=True)
    files: list[str] = []
    for c in ("age_start_years", "age_end_years"):
        if c not in df.columns:
            continue
        series = pd.to_numeric(df[c], errors="coerce").dropna()
        if series.empty:
            continue
        fig, ax = plt.subplots()
        series.plot(kind="hist", bins=20, ax=ax, color=PALETTE[0], title=f"Distribution: {c}")
        ax.set_xlabel(c)
        ax.set_ylabel("Children")
        files.append(_save(fig, outdir, f"hist_{c}.png"))
    return files

def save_prevalence_comparison(start: pd.DataFrame, end: pd.DataFrame, axis_max: float | None,
                               outdir: str) -> str | None:
    """Start and end prevalence side by side, same allergen order, same x-axis."""
    if _plots_disabled() or plt is None:
        return None
    start, end = _defined(start), _defined(end)
    if start.empty and end.empty:
        return None
    os.makedirs(outdir, exist_ok=True)
    order = start["allergen"].tolist()[::-1]
    fig, axes = plt.subplots(1, 2, figsize=(10, max(3, len(order) * 0.35)), sharey=True)
    for ax, table, title, color in ((axes[0], start, "Start of observation", PALETTE[0]),
                                    (axes[1], end, "End of observation", PALETTE[4])):
        values = table.set_index("allergen")["prevalence"].reindex(order)
        ax.barh(order, values.fillna(0).to_numpy(), color=color)
        ax.set_xlim(0, _axis_limit(axis_max))
        ax.set_title(title)
        ax.set_xlabel("Prevalence")
    return _save(fig, outdir, "prevalence_start_end.png")

def save_grouped_prevalence(table: pd.DataFrame, field: str, point: str, axis_max: float | None,
                            outdir: str) -> str | None:
    if _plots_disabled() or plt is None:
        return None
    table = _defined(table)
    if table.empty:
        return None
    os.makedirs(outdir, exist_ok=True)
    wide = table.pivot(index="allergen", columns=field, values="prevalence")
    wide = wide.reindex(table["allergen"].drop_duplicates())
    fig, ax = plt.subplots(figsize=(max(6, len(wide) * 0.6), 4))
    width = 0.8 / max(1, len(wide.columns))
    positions = np.arange(len(wide))
    for i, category in enumerate(wide.columns):
        ax.bar(positions + i * width, wide[category].to_numpy(), width=width,
               color=PALETTE[i % len(PALETTE)], label=str(category))
    ax.set_xticks(positions + width * (len(wide.columns) - 1) / 2)
    ax.set_xticklabels(wide.index, rotation=45, ha="right")
    ax.set_ylim(0, _axis_limit(axis_max))
    ax.set_ylabel("Prevalence")
    ax.set_title(f"Prevalence by {field} ({point} of observation)")
    ax.legend()
    return _save(fig, outdir, f"prevalence_by_{field}_{point}.png")

def save_correlation_heatmap(matrix: pd.DataFrame, outdir: str) -> str | None:
    if _plots_disabled() or plt is None:
        return None
    values = matrix.set_index("allergen").astype(float)
    if values.empty:
        return None
    os.makedirs(outdir, exist_ok=True)
    masked = values.to_numpy().copy()
    masked[np.tril_indices_from(masked)] = np.nan
    fig, ax = plt.subplots(figsize=(max(6, len(values) * 0.5), max(5, len(values) * 0.45)))
    image = ax.imshow(masked, cmap="RdBu_r", vmin=-1, vmax=1)
    ax.set_xticks(range(len(values.columns)))
    ax.set_xticklabels(values.columns, rotation=45, ha="right")
    ax.set_yticks(range(len(values.index)))
    ax.set_yticklabels(values.index)
    ax.set_title("Allergen correlation (start of observation)")
    fig.colorbar(image, ax=ax, shrink=0.8)
    return _save(fig, outdir, "correlation_heatmap.png")

def save_cooccurrence_bars(table: pd.DataFrame, outdir: str) -> str | None:
    if _plots_disabled() or plt is None:
        return None
    table = _defined(table, col="frequency")
    if table.empty:
        return None
    os.makedirs(outdir, exist_ok=True)
    fig, ax = plt.subplots(figsize=(7, max(3, len(table) * 0.4)))
    ax.barh(table["pair"], table["frequency"], color=PALETTE[2])
    ax.set_xlabel("Co-occurrence frequency")
    ax.set_title("Allergen pairs of clinical interest")
    return _save(fig, outdir, "cooccurrence.png")

def save_trend(series: pd.DataFrame, band: pd.DataFrame | None, allergen: str, outdir: str) -> str | None:
    """Scatter of end prevalence by birth year with its least-squares line."""
    if _plots_disabled() or plt is None:
        return None
    if series.empty:
        return None
    os.makedirs(outdir, exist_ok=True)
    fig, ax = plt.subplots()
    ax.scatter(series["birth_year"], series["prevalence"], color=PALETTE[0])
    if band is not None and not band.empty:
        ax.plot(band["birth_year"], band["fitted"], color=PALETTE[4])
        ax.fill_between(band["birth_year"], band["lower"], band["upper"], color=PALETTE[4], alpha=0.2)
    ax.set_title(f"Trend: {allergen} prevalence by birth year")
    ax.set_xlabel("Birth year")
    ax.set_ylabel("Prevalence (end of observation)")
    slug = allergen.lower().replace(" ", "_")
    return _save(fig, outdir, f"trend_{slug}.png")

def save_comorbidity(has_allergen: pd.DataFrame, allergens: pd.DataFrame, condition: str,
                     outdir: str) -> str | None:
    if _plots_disabled() or plt is None:
        return None
    burden, within = _defined(has_allergen), _defined(allergens)
    if burden.empty and within.empty:
        return None
    os.makedirs(outdir, exist_ok=True)
    fig, axes = plt.subplots(1, 2, figsize=(11, max(3, len(within) * 0.35)))
    axes[0].bar(burden["status"], burden["prevalence"], color=[PALETTE[0], PALETTE[6]][:len(burden)])
    axes[0].set_ylim(0, 1)
    axes[0].set_title(f"Any food allergy by {condition}")
    axes[1].barh(within["allergen"], within["prevalence"], color=PALETTE[3])
    axes[1].set_title(f"Allergen prevalence with {condition}")
    axes[1].set_xlabel("Prevalence")
    return _save(fig, outdir, f"comorbidity_{condition}.png")

def render_all(df: pd.DataFrame, tables: dict[str, pd.DataFrame],
               axis_max: dict[str, float | None], outdir: str) -> list[str]:
    if _plots_disabled() or plt is None:
        return []
    produced: list[str] = []

    def keep(result: str | list[str] | None) -> None:
        if isinstance(result, list):
            produced.extend(result)
        elif result:
            produced.append(result)

    keep(save_age_histograms(df, outdir))
    keep(save_prevalence_comparison(tables["prevalence_start"], tables["prevalence_end"],
                                    axis_max.get("prevalence"), outdir))
    for field in GROUP_FIELDS:
        for point in ("start", "end"):
            name = f"prevalence_by_{field}_{point}"
            if name in tables:
                keep(save_grouped_prevalence(tables[name], field, point,
                                             axis_max.get(f"prevalence_by_{field}"), outdir))
    keep(save_correlation_heatmap(tables["correlation_matrix"], outdir))
    keep(save_cooccurrence_bars(tables["cooccurrence"], outdir))
    trend = tables["birth_year_trend"]
    bands = tables.get("birth_year_trend_band")
    for allergen, series in trend.groupby("allergen", sort=False):
        band = bands.loc[bands["allergen"] == allergen] if bands is not None else None
        keep(save_trend(series, band, str(allergen), outdir))
    for name in tables:
        if name.startswith("comorbidity_") and name.endswith("_has_allergen"):
            condition = name[len("comorbidity_"):-len("_has_allergen")]
            keep(save_comorbidity(tables[name], tables[f"comorbidity_{condition}_allergens"],
                                  condition, outdir))
    return produced
