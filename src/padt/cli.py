from __future__ import annotations
import argparse, importlib, os, json, sys, hashlib, subprocess, tempfile, platform
from pathlib import Path
from datetime import datetime, timezone
import numpy as np
import pandas as pd
try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore
from .allergens import (
    Allergen,
    CONDITIONS,
    DEFAULT_COMORBIDITIES,
    DEMOGRAPHIC_CODES,
    is_excluded,
    resolve_pairs,
    resolve_panel,
)
from .cleaning import RecordLoadError, clean_records, load_records
from .stats import simple_report
from .plots import render_all
from .schema import build_data_dictionary
from . import __version__

def _normalize_custom_allergens(raw: object) -> dict[str, Allergen]:
    """Turn [padt.panel.definitions.NAME] tables into Allergen entries."""
    if not isinstance(raw, dict):
        return {}
    custom: dict[str, Allergen] = {}
    for name, payload in raw.items():
        if not isinstance(payload, dict):
            continue
        stem = payload.get("stem")
        if not isinstance(stem, str) or not stem.strip():
            raise SystemExit(f"[PADT] Allergen definition '{name}' needs a non-empty stem")
        key = str(name).strip().upper()
        allergen = Allergen(key, stem.strip().lower())
        if is_excluded(allergen):
            raise SystemExit(f"[PADT] Allergen definition '{name}' uses an excluded allergen ({allergen.stem})")
        custom[key] = allergen
    return custom

def _normalize_pairs(raw: object) -> list[tuple[str, str]] | None:
    if isinstance(raw, dict):
        raw = raw.get("pairs")
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise SystemExit("[PADT] cooccurrence.pairs must be a list of [first, second] entries")
    pairs: list[tuple[str, str]] = []
    for entry in raw:
        if isinstance(entry, str) and "_" in entry:
            first, second = entry.split("_", 1)
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            first, second = entry
        else:
            raise SystemExit(f"[PADT] Could not read co-occurrence pair: {entry!r}")
        pairs.append((str(first).upper(), str(second).upper()))
    return pairs

def _normalize_conditions(raw: object) -> list[str] | None:
    if raw is None:
        return None
    values = [raw] if isinstance(raw, str) else raw
    if not isinstance(values, list):
        return None
    names = [str(v).strip().lower() for v in values]
    unknown = [n for n in names if n not in CONDITIONS]
    if unknown:
        raise SystemExit(f"[PADT] Unknown condition(s): {', '.join(unknown)}. Available: {', '.join(CONDITIONS)}")
    return names

def _normalize_alerts(raw_alerts: object) -> dict[str, object]:
    if not isinstance(raw_alerts, dict):
        return {}
    alerts: dict[str, object] = {}
    min_partition = raw_alerts.get("min_partition")
    if isinstance(min_partition, (int, float)) and not isinstance(min_partition, bool):
        alerts["min_partition"] = int(min_partition)
    return alerts

def _sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1 << 16), b""):
            digest.update(block)
    return digest.hexdigest()

def _prepare_dataframe(path: str, panel: list[Allergen],
                       atopic_march_only: bool = False) -> tuple[pd.DataFrame, dict[str, object], list[dict[str, object]]]:
    try:
        df_raw = load_records(path, panel)
    except RecordLoadError as exc:
        raise SystemExit(f"[PADT] Could not load records: {exc}")
    provenance: dict[str, object] = {
        "input_path": os.path.abspath(path),
        "input_hash": _sha256(path),
        "raw_rows": len(df_raw),
        "columns": list(df_raw.columns),
    }
    df, alerts = clean_records(df_raw, atopic_march_only=atopic_march_only)
    provenance["post_clean_rows"] = len(df)
    provenance["atopic_march_only"] = atopic_march_only
    return df, provenance, alerts

def _demo_records(n: int = 240, seed: int = 7) -> pd.DataFrame:
    """Synthetic records shaped like the source export, for the demo command."""
    rng = np.random.default_rng(seed)
    rows: dict[str, object] = {
        "SUBJECT_ID": np.arange(1, n + 1),
        "BIRTH_YEAR": rng.integers(2004, 2013, n),
    }
    for raw_col, (_, codes) in DEMOGRAPHIC_CODES.items():
        choices = [f"{code} - {label}" for code, label in codes.items()]
        rows[raw_col.upper()] = rng.choice(choices, n)
    rows["ATOPIC_MARCH_COHORT"] = rng.random(n) < 0.3
    start = np.round(rng.uniform(0, 4, n), 2)
    start[:3] = -1.0
    rows["AGE_START_YEARS"] = start
    rows["AGE_END_YEARS"] = np.round(start + rng.uniform(1, 10, n), 2)

    def maybe_age(p: float) -> np.ndarray:
        ages = np.round(rng.uniform(0, 8, n), 2)
        return np.where(rng.random(n) < p, ages, np.nan)

    stems = [a.stem for a in resolve_panel(None)] + ["treenut"]
    for i, stem in enumerate(stems):
        p = 0.02 + 0.08 * ((i * 7) % 5) / 4
        alg_start = maybe_age(p)
        rows[f"{stem.upper()}_ALG_START"] = alg_start
        rows[f"{stem.upper()}_ALG_END"] = np.where(rng.random(n) < 0.7, alg_start + 1, np.nan)
    for condition in ("ATOPIC_DERM", "ALLERGIC_RHINITIS", "ASTHMA"):
        rows[f"{condition}_START"] = maybe_age(0.25)
        rows[f"{condition}_END"] = np.where(np.isnan(rows[f"{condition}_START"]), np.nan,
                                            rows[f"{condition}_START"] + 2)
    return pd.DataFrame(rows)

def _configure_demo_args(args: argparse.Namespace) -> argparse.Namespace:
    """Seed a temp CSV for a one-command demo and set sensible defaults."""
    tmp_dir = tempfile.mkdtemp(prefix="padt-demo-")
    demo_csv = os.path.join(tmp_dir, "demo.csv")
    _demo_records().to_csv(demo_csv, index=False)
    if args.outdir is None:
        stamp = datetime.now(timezone.utc).strftime("demo_%Y%m%dT%H%M%SZ")
        args.outdir = os.path.join("outputs", stamp)
    args.input = demo_csv
    return args

def _ensure_outdir(path: str) -> None:
    os.makedirs(path, exist_ok=True)

def _maybe_dry_run(
    args: argparse.Namespace,
    provenance: dict[str, object],
) -> bool:
    """Return True if dry-run is enabled and we should stop after validation."""
    if not getattr(args, "dry_run", False):
        return False
    parts = [
        f"input={provenance.get('input_path')}",
        f"outdir={args.outdir}",
        f"raw_rows={provenance.get('raw_rows')}",
        f"clean_rows={provenance.get('post_clean_rows')}",
        f"allergens={len(args.panel)}",
    ]
    sys.stderr.write("[PADT] Dry run: validation complete. " + "; ".join(parts) + "\n")
    return True

def _write_data_dictionary(df: pd.DataFrame, outdir: str) -> None:
    _ensure_outdir(outdir)
    dictionary = build_data_dictionary(df)
    dictionary.to_csv(os.path.join(outdir, "data_dictionary.csv"), index=False)

def _write_clean_csv(df: pd.DataFrame, outdir: str) -> None:
    _ensure_outdir(outdir)
    df.to_csv(os.path.join(outdir, "clean_records.csv"), index=False)
    _write_data_dictionary(df, outdir)

def _write_report(df: pd.DataFrame, args: argparse.Namespace,
                  extra_alerts: list[dict[str, object]] | None = None) -> tuple[list[dict[str, object]], dict[str, pd.DataFrame], dict[str, float | None], list[str]]:
    report, tables = simple_report(df, args.panel, args.pairs, args.conditions, alerts=args.alerts)
    alert_items = list(extra_alerts or []) + report.get("alerts", [])
    report["alerts"] = alert_items
    _ensure_outdir(args.outdir)
    with open(os.path.join(args.outdir, "report.json"), "w") as f:
        json.dump(report, f, indent=2)
    table_dir = os.path.join(args.outdir, "tables")
    _ensure_outdir(table_dir)
    written = []
    for name, table in tables.items():
        table.to_csv(os.path.join(table_dir, f"{name}.csv"), index=False)
        written.append(f"tables/{name}.csv")
    _persist_alerts(args.outdir, alert_items)
    return alert_items, tables, report["axis_max"], written

def _run_clean(args: argparse.Namespace) -> None:
    df, provenance, alerts = _prepare_dataframe(args.input, args.panel, args.atopic_march_only)
    if _maybe_dry_run(args, provenance):
        return
    _write_clean_csv(df, args.outdir)
    _persist_alerts(args.outdir, alerts)
    print("[PADT] saved: clean_records.csv")
    outputs = ["clean_records.csv", "data_dictionary.csv"]
    if alerts:
        outputs.append("alerts.json")
    _write_manifest(args.outdir, args, provenance, alerts, outputs)
    _print_alert_summary(alerts)

def _print_alert_summary(alerts: list[dict[str, object]]) -> None:
    if not alerts:
        return
    print(f"[PADT][alerts] {len(alerts)} issue(s) detected (see alerts.json):")
    for alert in alerts[:5]:
        kind = alert.get("type")
        if kind in {"encoding", "malformed"}:
            msg = f"- {alert.get('message')}"
        elif kind == "undefined":
            msg = f"- Undefined: {alert.get('field')} = {alert.get('category')} has no records"
        elif kind == "small_partition":
            msg = (f"- Small partition: {alert.get('field')} = {alert.get('category')} "
                   f"n={alert.get('n')} < {alert.get('threshold')}")
        else:
            msg = f"- {alert}"
        print(msg)
    if len(alerts) > 5:
        print("  ...")

def _persist_alerts(outdir: str, alerts: list[dict[str, object]]) -> None:
    """Write alerts.json, or remove a stale one from an earlier run into the same outdir."""
    path = Path(outdir) / "alerts.json"
    if not alerts:
        path.unlink(missing_ok=True)
        return
    _ensure_outdir(outdir)
    path.write_text(json.dumps(alerts, indent=2), encoding="utf-8")

def _run_stats(args: argparse.Namespace) -> None:
    df, provenance, clean_alerts = _prepare_dataframe(args.input, args.panel, args.atopic_march_only)
    if _maybe_dry_run(args, provenance):
        return
    _write_data_dictionary(df, args.outdir)
    alerts, _, _, written = _write_report(df, args, extra_alerts=clean_alerts)
    print("[PADT] saved: report.json and tables/")
    outputs = ["report.json", "data_dictionary.csv"] + written
    if alerts:
        outputs.append("alerts.json")
    _write_manifest(args.outdir, args, provenance, alerts, outputs)
    _print_alert_summary(alerts)

def _run_plot(args: argparse.Namespace) -> None:
    df, provenance, clean_alerts = _prepare_dataframe(args.input, args.panel, args.atopic_march_only)
    if _maybe_dry_run(args, provenance):
        return
    report, tables = simple_report(df, args.panel, args.pairs, args.conditions, alerts=args.alerts)
    _ensure_outdir(args.outdir)
    plot_files = render_all(df, tables, report["axis_max"], args.outdir)
    print(f"[PADT] saved: {len(plot_files)} chart(s)")
    _write_manifest(args.outdir, args, provenance, clean_alerts, plot_files)

def _run_full(args: argparse.Namespace) -> None:
    df, provenance, clean_alerts = _prepare_dataframe(args.input, args.panel, args.atopic_march_only)
    if _maybe_dry_run(args, provenance):
        return
    _write_clean_csv(df, args.outdir)
    alerts, tables, axis_max, written = _write_report(df, args, extra_alerts=clean_alerts)
    plot_files = render_all(df, tables, axis_max, args.outdir)
    print("[PADT] saved: clean_records.csv, report.json, tables/ and charts")
    outputs = ["clean_records.csv", "data_dictionary.csv", "report.json"] + written
    if alerts:
        outputs.append("alerts.json")
    outputs.extend(plot_files)
    _write_manifest(args.outdir, args, provenance, alerts, outputs)
    _print_alert_summary(alerts)

def _run_demo(args: argparse.Namespace) -> None:
    print("[PADT] Running demo with synthetic records...")
    _run_full(args)
    print(f"[PADT] Demo complete. Outputs written to: {args.outdir}")

def _run_doctor(args: argparse.Namespace) -> None:
    """Environment sanity checks for PADT."""
    checks: list[tuple[str, bool, str]] = [
        ("python>=3.9", sys.version_info >= (3, 9), platform.python_version()),
    ]
    for mod in ("pandas", "numpy", "scipy", "matplotlib"):
        try:
            version = getattr(importlib.import_module(mod), "__version__", "unknown")
            checks.append((mod, True, str(version)))
        except ImportError as exc:
            checks.append((mod, False, str(exc)))

    plots_off = os.environ.get("PADT_DISABLE_PLOTS", "").lower() in {"1", "true", "yes", "on"}
    checks.append(("plotting", True, "disabled via PADT_DISABLE_PLOTS" if plots_off else "enabled"))

    if args.input:
        try:
            rows = len(load_records(args.input, args.panel))
            checks.append(("input loads", True, f"{args.input}: {rows} row(s)"))
        except RecordLoadError as exc:
            checks.append(("input loads", False, str(exc)))
    passed = all(flag for _, flag, _ in checks)
    for name, ok, note in checks:
        status = "OK" if ok else "FAIL"
        print(f"[PADT][{status}] {name} ({note})")
    if not passed:
        sys.exit("[PADT] Doctor checks failed. See items marked FAIL.")
    print("[PADT] Doctor checks passed.")

def _split_config_args(argv: list[str]) -> tuple[str | None, list[str]]:
    """Pull --config out before subcommand parsing; it is accepted anywhere."""
    pre = argparse.ArgumentParser(add_help=False, allow_abbrev=False)
    pre.add_argument("--config", metavar="PROFILE")
    known, rest = pre.parse_known_args(argv)
    return known.config, rest

def _load_config(path: str | None) -> tuple[dict[str, object], dict[str, str]]:
    if not path:
        return {}, {}
    cfg_path = Path(path).expanduser()
    if not cfg_path.exists():
        raise SystemExit(f"[PADT] Config file not found: {path}")
    content = cfg_path.read_bytes()
    try:
        data = tomllib.loads(content.decode())
    except tomllib.TOMLDecodeError as exc:
        raise SystemExit(f"[PADT] Could not parse config {path}: {exc}")
    config_meta = {
        "path": str(cfg_path),
        "hash": hashlib.sha256(content).hexdigest(),
    }
    profile = data.get("padt") if isinstance(data, dict) else None
    if isinstance(profile, dict):
        data = profile
    if not isinstance(data, dict):
        raise SystemExit("[PADT] Config file must contain a [padt] table or key/value pairs")
    base = cfg_path.parent
    for key in ("input", "outdir"):
        value = data.get(key)
        if isinstance(value, str) and value:
            data[key] = str((base / value).resolve())
    if "allergens" in data and isinstance(data["allergens"], str):
        data["allergens"] = [data["allergens"]]
    cohort_only = data.get("atopic_march_only")
    if isinstance(cohort_only, str):
        cohort_only = cohort_only.lower() in {"1", "true", "yes"}
    if isinstance(cohort_only, bool):
        data["atopic_march_only"] = cohort_only
    else:
        data.pop("atopic_march_only", None)

    panel_entry = data.get("panel")
    if isinstance(panel_entry, dict) and "definitions" in panel_entry:
        data["custom_allergens"] = _normalize_custom_allergens(panel_entry.get("definitions"))

    pairs = _normalize_pairs(data.get("cooccurrence"))
    if pairs is not None:
        data["pair_names"] = pairs

    conditions = _normalize_conditions(data.get("conditions"))
    if conditions is not None:
        data["conditions"] = conditions
    else:
        data.pop("conditions", None)

    normalized_alerts = _normalize_alerts(data.get("alerts"))
    if normalized_alerts:
        data["alerts"] = normalized_alerts
    else:
        data.pop("alerts", None)

    return data, config_meta

def _merge_config(args: argparse.Namespace, config: dict[str, object], allow_command_override: bool) -> argparse.Namespace:
    if not config:
        return args
    if allow_command_override and isinstance(config.get("command"), str):
        args.command = config["command"]  # type: ignore[assignment]
    for key in ("input", "outdir", "allergens", "atopic_march_only"):
        if getattr(args, key, None) is None and config.get(key) is not None:
            setattr(args, key, config[key])
    for key in ("custom_allergens", "pair_names", "conditions", "alerts"):
        if config.get(key) is not None:
            setattr(args, key, config[key])
    return args

def _finalize_args(args: argparse.Namespace, parser: argparse.ArgumentParser) -> argparse.Namespace:
    for key in ("input", "outdir", "allergens", "custom_allergens", "pair_names", "conditions", "alerts"):
        if not hasattr(args, key):
            setattr(args, key, None)
    if not hasattr(args, "atopic_march_only") or args.atopic_march_only is None:
        args.atopic_march_only = False
    args.panel = resolve_panel(args.allergens, args.custom_allergens)
    args.pairs = resolve_pairs(args.pair_names, args.panel, args.custom_allergens)
    names = args.conditions if args.conditions is not None else DEFAULT_COMORBIDITIES
    args.conditions = [CONDITIONS[name] for name in names]
    if args.command == "doctor":
        return args
    if args.outdir is None:
        stamp = datetime.now(timezone.utc).strftime("run_%Y%m%dT%H%M%SZ")
        args.outdir = os.path.join("outputs", stamp)
        sys.stderr.write(f"[PADT] No --outdir provided; using '{args.outdir}'.\n")
    if args.input is None:
        parser.error("Missing --input. Provide a CSV path or use --config <profile.toml>.")
    return args

def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--input", help="Path to the record CSV")
    common.add_argument("--outdir", help="Directory for outputs")
    common.add_argument(
        "--allergens",
        nargs="*",
        help="Allergen panel to analyse (default: every allergen except TREENUT)",
    )
    common.add_argument(
        "--atopic-march-only",
        action="store_true",
        default=None,
        help="Restrict the analysis to the atopic march cohort.",
    )
    common.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate inputs/config and stop before writing outputs.",
    )

    parser = argparse.ArgumentParser(description="PADT CLI")
    sub = parser.add_subparsers(dest="command", metavar="command")
    sub.required = True

    sub.add_parser("clean", parents=[common], help="Recode + filter records and write clean_records.csv")
    sub.add_parser("stats", parents=[common], help="Write report.json and tables/ (prevalence, correlation, trends)")
    sub.add_parser("plot", parents=[common], help="Render charts from the aggregate tables")
    sub.add_parser("run", parents=[common], help="Run the full pipeline (clean + stats + plot)")
    demo = sub.add_parser("demo", help="Run PADT against synthetic records (no config needed)")
    demo.add_argument("--outdir", help="Directory for outputs (defaults to outputs/demo_<timestamp>)")
    doctor = sub.add_parser("doctor", help="Run environment checks (Python, deps, input path)")
    doctor.add_argument("--input", help="Optional input path to check")
    return parser

def main(argv: list[str] | None = None):
    parser = _build_parser()
    raw_args = list(sys.argv[1:] if argv is None else argv)
    config_path, cleaned = _split_config_args(raw_args)
    insert_default_command = not cleaned or cleaned[0].startswith("-")
    if insert_default_command:
        cleaned = ["run"] + cleaned
    args = parser.parse_args(cleaned)
    if args.command == "demo":
        config, config_meta = {}, {"path": None, "hash": None}
        args = _configure_demo_args(args)
    else:
        config, config_meta = _load_config(config_path)
        args = _merge_config(args, config, allow_command_override=insert_default_command)
    args = _finalize_args(args, parser)
    args._config_path = config_meta.get("path")
    args._config_hash = config_meta.get("hash")
    _log_config_summary(args)
    command = args.command
    actions = {
        "clean": _run_clean,
        "stats": _run_stats,
        "plot": _run_plot,
        "run": _run_full,
        "demo": _run_demo,
        "doctor": _run_doctor,
    }
    action = actions.get(command)
    if not action:
        parser.error(f"Unknown command: {command}")
    action(args)

def _git_sha() -> str | None:
    try:
        result = subprocess.run(["git", "rev-parse", "HEAD"], capture_output=True, text=True, check=True,
                                cwd=Path(__file__).resolve().parent)
        return result.stdout.strip()
    except (OSError, subprocess.CalledProcessError):
        return None

def _write_manifest(outdir: str, args: argparse.Namespace, provenance: dict[str, object],
                    alerts: list[dict[str, object]], outputs: list[str]) -> None:
    manifest = {
        "padt_version": __version__,
        "git_sha": _git_sha(),
        "run_at": datetime.now(timezone.utc).isoformat(),
        "command": args.command,
        "allergens": [a.name for a in args.panel],
        "cooccurrence_pairs": [[x.name, y.name] for x, y in args.pairs],
        "conditions": [c.name for c in args.conditions],
        "atopic_march_only": args.atopic_march_only,
        "config_path": getattr(args, "_config_path", None),
        "config_hash": getattr(args, "_config_hash", None),
        "input": {
            "path": provenance.get("input_path"),
            "sha256": provenance.get("input_hash"),
            "raw_rows": provenance.get("raw_rows"),
            "post_clean_rows": provenance.get("post_clean_rows"),
        },
        "alerts_count": len(alerts),
        "outputs": sorted(set(outputs)),
        "python_version": sys.version,
    }
    _ensure_outdir(outdir)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    for name in ("run_manifest.json", f"run_manifest_{stamp}.json"):
        with open(os.path.join(outdir, name), "w") as f:
            json.dump(manifest, f, indent=2)

def _log_config_summary(args: argparse.Namespace) -> None:
    """Print a short summary of parsed config args for quick sanity-checks."""
    cfg = getattr(args, "_config_path", None)
    if not cfg:
        return
    parts = [
        f"config={cfg}",
        f"input={args.input}",
        f"outdir={args.outdir}",
        f"allergens={len(args.panel)}",
        f"pairs={len(args.pairs)}",
    ]
    if args.alerts:
        parts.append(f"alerts={args.alerts}")
    sys.stderr.write("[PADT] Config summary: " + "; ".join(parts) + "\n")

if __name__ == "__main__":
    main()
