"""
SVAC — Per-Conflict Estimate Plots (Phase 03)

For each estimate file (static, dynamic) draws one PDF per conflict:
posterior mean theta by year as black squares, with vertical bars spanning
the 95% credible interval.  By default only the conflicts holding the ten
worst (highest) rank values are drawn.

Usage:
  uv run python analysis/03_plots/plot_estimates.py
      [--input-static PATH] [--input-dynamic PATH] [--all-conflicts]
      [--n-worst 10] [--run-id ID]

Inputs default to the latest 01_static_lvm / 02_dynamic_lvm runs of the
dataset.  A type whose input cannot be found is skipped.

Outputs (in results/<dataset>/03_plots/<date>/):
  - plots/pp-<type>-estimates-<country>-<conflictid>.pdf
  - plots/overview_<type>.png
  - log-plot-<type>-estimates.txt, run_log.txt, run_info.json
  - 03_plots_report.html
"""

import argparse
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import polars as pl

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext, resolve_upstream_dir, tee_to_file
except ModuleNotFoundError:
    from run_context import (  # type: ignore[no-redef]
        RunContext,
        resolve_upstream_dir,
        tee_to_file,
    )

try:
    from analysis.lvm_diagnostics import save_fig
except ModuleNotFoundError:
    from lvm_diagnostics import save_fig  # type: ignore[no-redef]

try:
    from analysis.plot_estimates_report import build_plot_estimates_report
except ModuleNotFoundError:
    from plot_estimates_report import build_plot_estimates_report  # type: ignore[no-redef]

from svac_lvm.config import (
    CONFLICT_COL,
    COUNTRY_COL,
    DEFAULT_DATASET,
    DEFAULT_SOURCES,
    RANK_COL,
    THETA_COLUMNS,
    YEAR_COL,
)
from svac_lvm.dataset import prevalence_column, read_svac_csv

# ── Constants ────────────────────────────────────────────────────────────────

ESTIMATE_TYPES: tuple[str, ...] = ("static", "dynamic")
UPSTREAM_PHASE: dict[str, str] = {"static": "01_static_lvm", "dynamic": "02_dynamic_lvm"}
N_WORST: int = 10
PDF_SIZE: tuple[float, float] = (15, 6)
OVERVIEW_MAX_PANELS: int = 12

PLOTS_PRIMER = """\
# Per-Conflict Estimate Plots

## Purpose

Shows, for individual conflicts, how the estimated prevalence of reported
sexual violence by the government moves over the years, with the
uncertainty the model attaches to each year.

## Method

For each estimate type (static, dynamic) the conflicts to plot are those
with at least one row among the ten largest distinct `rank` values, unless
`--all-conflicts` is given.  Each plot covers the conflict's observed years;
the y range is the rounded range of the three source codes and the
interval bounds.

## Outputs

| File | Description |
|------|-------------|
| `plots/pp-<type>-estimates-<country>-<id>.pdf` | One plot per conflict |
| `plots/overview_<type>.png` | Small multiples of the plotted conflicts |
| `log-plot-<type>-estimates.txt` | Per-type log |

## Interpretation Guide

- **Black square**: posterior mean theta for that year.
- **Vertical bar**: 95% credible interval.  Long bars mean few or
  disagreeing sources.
- **Dotted line**: theta = 0, the average conflict-year.
"""


# ── Selection and Layout ─────────────────────────────────────────────────────


def select_worst_reported(df: pl.DataFrame, n: int = N_WORST) -> list:
    """Conflict ids whose rows hold one of the *n* largest distinct rank values.

    Ids are returned in order of first appearance in *df*.
    """
    ranks = df[RANK_COL].drop_nulls().unique().sort(descending=True).head(n)
    worst = df.filter(pl.col(RANK_COL).is_in(ranks.to_list()))
    return worst[CONFLICT_COL].unique(maintain_order=True).to_list()


def all_conflicts(df: pl.DataFrame) -> list:
    return df[CONFLICT_COL].drop_nulls().unique(maintain_order=True).to_list()


def sanitize_country(name: str) -> str:
    """Make a country name safe for a file name.

    Parentheses and commas are removed; apostrophes and spaces become ``-``.
    """
    for ch in "(),":
        name = name.replace(ch, "")
    return name.replace("'", "-").replace(" ", "-")


def axis_limits(
    pdata: pl.DataFrame,
    sources: tuple[str, ...] | list[str] = DEFAULT_SOURCES,
) -> tuple[int, int, int, int]:
    """(xmin, xmax, ymin, ymax) for one conflict's plot.

    x spans the observed years.  y spans the source codes together with the
    credible interval bounds, each end rounded half-to-even.
    """
    years = pdata[YEAR_COL].drop_nulls()
    xmin, xmax = int(years.min()), int(years.max())

    prev_cols = [prevalence_column(s) for s in sources if prevalence_column(s) in pdata.columns]
    upper_vals = [pdata[c] for c in prev_cols] + [pdata["theta_upper"]]
    lower_vals = [pdata[c] for c in prev_cols] + [pdata["theta_low"]]
    hi = max(_finite(s).max() for s in upper_vals if _finite(s).len() > 0)
    lo = min(_finite(s).min() for s in lower_vals if _finite(s).len() > 0)
    # Built-in round() rounds halves to even
    return xmin, xmax, int(round(lo)), int(round(hi))


def _finite(series: pl.Series) -> pl.Series:
    s = series.drop_nulls().cast(pl.Float64)
    return s.filter(s.is_finite())


def country_of(pdata: pl.DataFrame) -> str:
    """First non-null country name of a conflict, or an empty string."""
    if COUNTRY_COL not in pdata.columns:
        return ""
    names = pdata[COUNTRY_COL].drop_nulls()
    return str(names[0]) if names.len() > 0 else ""


def plot_title(country: str, conflict: object) -> str:
    return (
        "Point Estimate of Prevalence of Reported Sexual Violence for Government of "
        f"{country} in conflict {conflict} (with credible intervals)"
    )


def output_name(model_type: str, country: str, conflict: object) -> str:
    return f"pp-{model_type}-estimates-{sanitize_country(country)}-{conflict}.pdf"


# ── Plots ────────────────────────────────────────────────────────────────────


def plot_conflict(
    pdata: pl.DataFrame,
    model_type: str,
    conflict: object,
    out_dir: Path,
) -> Path:
    """Draw one conflict's estimates and credible intervals to a PDF."""
    country = country_of(pdata)
    xmin, xmax, ymin, ymax = axis_limits(pdata)

    fig, ax = plt.subplots(figsize=PDF_SIZE)
    ax.set_xlim(xmin, xmax)
    ax.set_ylim(ymin, ymax)
    ax.set_xticks(np.arange(xmin, xmax + 1, 1))
    ax.set_yticks(np.arange(ymin, ymax + 1, 1))
    ax.set_ylabel("Prevalence")
    ax.set_title(plot_title(country, conflict))
    for side in ("top", "right"):
        ax.spines[side].set_visible(False)

    ax.axhline(0, linestyle=":", color="black", linewidth=1)

    years = pdata[YEAR_COL].to_numpy()
    ax.vlines(
        years,
        pdata["theta_low"].to_numpy(),
        pdata["theta_upper"].to_numpy(),
        colors="black",
        linewidth=2.5,
    )
    ax.plot(years, pdata["theta"].to_numpy(), linestyle="none", marker="s", color="black")

    fig.tight_layout()
    path = out_dir / output_name(model_type, country, conflict)
    fig.savefig(path, format="pdf")
    plt.close(fig)
    return path


def plot_overview(
    df: pl.DataFrame,
    conflicts: list,
    model_type: str,
    out_path: Path,
) -> None:
    """Small multiples of theta and its interval for the first plotted conflicts."""
    shown = conflicts[:OVERVIEW_MAX_PANELS]
    if not shown:
        return
    ncols = min(3, len(shown))
    nrows = (len(shown) + ncols - 1) // ncols
    fig, axes = plt.subplots(
        nrows, ncols, figsize=(5 * ncols, 3 * nrows), squeeze=False, sharey=True
    )

    for idx, conflict in enumerate(shown):
        ax = axes[idx // ncols, idx % ncols]
        pdata = df.filter(pl.col(CONFLICT_COL) == conflict).sort(YEAR_COL)
        years = pdata[YEAR_COL].to_numpy()
        ax.fill_between(
            years,
            pdata["theta_low"].to_numpy(),
            pdata["theta_upper"].to_numpy(),
            color="#4a86c8",
            alpha=0.25,
        )
        ax.plot(years, pdata["theta"].to_numpy(), marker="s", markersize=3, color="black")
        ax.axhline(0, linestyle=":", color="gray", linewidth=0.8)
        country = country_of(pdata)
        ax.set_title(f"{country} ({conflict})", fontsize=9)

    for idx in range(len(shown), nrows * ncols):
        axes[idx // ncols, idx % ncols].set_visible(False)

    fig.suptitle(f"{model_type.capitalize()} estimates — plotted conflicts", fontsize=13)
    fig.tight_layout()
    save_fig(fig, out_path)


def make_plots_for_estimates(
    df: pl.DataFrame,
    model_type: str,
    out_dir: Path,
    *,
    every_conflict: bool = False,
    n_worst: int = N_WORST,
) -> pl.DataFrame:
    """Plot every selected conflict of one estimate frame.

    Returns one row per PDF written: conflict, country, years and file name.
    """
    missing = [c for c in (CONFLICT_COL, YEAR_COL, *THETA_COLUMNS) if c not in df.columns]
    if not every_conflict and RANK_COL not in df.columns:
        missing.append(RANK_COL)
    if missing:
        msg = f"{model_type} estimates are missing column(s): {', '.join(missing)}"
        raise ValueError(msg)

    print(f"Shape: {df.height} rows x {df.width} columns")
    for name, dtype in df.schema.items():
        print(f"  {name}: {dtype}")

    conflicts = all_conflicts(df) if every_conflict else select_worst_reported(df, n_worst)
    print(f"Unique conflicts to work on: {len(conflicts)}")

    rows: list[dict] = []
    for conflict in conflicts:
        pdata = df.filter(pl.col(CONFLICT_COL) == conflict)
        country = country_of(pdata)
        print(f"Now working on {country} {conflict}")
        path = plot_conflict(pdata, model_type, conflict, out_dir)
        rows.append(
            {
                "conflict": str(conflict),
                "country": country,
                "n_years": pdata.height,
                "file": path.name,
            }
        )

    plot_overview(df, conflicts, model_type, out_dir / f"overview_{model_type}.png")
    return pl.DataFrame(
        rows,
        schema={"conflict": pl.Utf8, "country": pl.Utf8, "n_years": pl.Int64, "file": pl.Utf8},
    )


# ── CLI ──────────────────────────────────────────────────────────────────────


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SVAC per-conflict estimate plots")
    parser.add_argument("--input-static", type=Path, default=None, help="Static estimates CSV")
    parser.add_argument("--input-dynamic", type=Path, default=None, help="Dynamic estimates CSV")
    parser.add_argument("--logfile-static", type=Path, default=None, help="Static log file")
    parser.add_argument("--logfile-dynamic", type=Path, default=None, help="Dynamic log file")
    parser.add_argument("--dataset", default=DEFAULT_DATASET, help="Results directory label")
    parser.add_argument(
        "--all-conflicts",
        action="store_true",
        help="Plot every conflict instead of the worst reported",
    )
    parser.add_argument(
        "--n-worst",
        type=int,
        default=N_WORST,
        help=f"Distinct rank values that select conflicts (default: {N_WORST})",
    )
    parser.add_argument("--run-id", default=None, help="Run ID for upstream data resolution")
    return parser.parse_args(argv)


def resolve_input(
    model_type: str,
    args: argparse.Namespace,
    dataset_root: Path,
) -> Path | None:
    explicit = getattr(args, f"input_{model_type}")
    if explicit is not None:
        return explicit
    phase = UPSTREAM_PHASE[model_type]
    upstream = resolve_upstream_dir(phase, dataset_root, args.run_id)
    path = upstream / "data" / f"{model_type}_estimates.csv"
    return path if path.exists() else None


def plot_available(args: argparse.Namespace, ctx: RunContext) -> dict[str, pl.DataFrame]:
    """Plot every estimate type whose input can be found; return the files per type."""
    produced: dict[str, pl.DataFrame] = {}
    for model_type in ESTIMATE_TYPES:
        path = resolve_input(model_type, args, ctx.dataset_root)
        if path is None:
            print(f"\nNo {model_type} estimates found, skipping")
            continue

        logfile = getattr(args, f"logfile_{model_type}") or (
            ctx.run_dir / f"log-plot-{model_type}-estimates.txt"
        )
        print(f"\n{model_type.upper()} estimates: {path}")
        with tee_to_file(logfile):
            df = read_svac_csv(path)
            produced[model_type] = make_plots_for_estimates(
                df,
                model_type,
                ctx.plots_dir,
                every_conflict=args.all_conflicts,
                n_worst=args.n_worst,
            )
    return produced


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    # Managed by hand: a run that plots nothing must not move `latest`
    ctx = RunContext(
        dataset=args.dataset,
        analysis_name="03_plots",
        params=vars(args),
        primer=PLOTS_PRIMER,
        run_id=args.run_id,
    )
    produced: dict[str, pl.DataFrame] = {}
    ctx.setup()
    try:
        print(f"SVAC Estimate Plots — output: {ctx.run_dir}")
        produced = plot_available(args, ctx)
        if produced:
            build_plot_estimates_report(
                ctx.report,
                produced=produced,
                plots_dir=ctx.plots_dir,
                every_conflict=args.all_conflicts,
                n_worst=args.n_worst,
            )
        else:
            print("No estimate files available; nothing plotted")
    finally:
        ctx.finalize(failed=not produced)

    return 0 if produced else 1


if __name__ == "__main__":
    sys.exit(main())
