"""
SVAC — Dynamic Ordinal Latent Variable Model (Phase 02)

Same measurement model as the static phase, but each conflict's latent
prevalence follows a Gaussian random walk across its years instead of being
independent per row.  Years without any source report borrow strength from
their neighbours, and the intervals show it.

Usage:
  uv run python analysis/02_dynamic_lvm/dynamic_lvm.py
      [--input data/svac_main.csv] [--constants config/constants.yaml]
      [--n-iter 4000] [--n-chains 4] [--static-dir PATH] [--strict]

Outputs (in results/<dataset>/02_dynamic_lvm/<date>/):
  - data/:   dynamic_estimates.csv (input order + theta columns), cutpoints,
             tau, top movers, NetCDF
  - plots/:  R-hat distribution, cutpoints, tau posterior, static vs dynamic
  - model_manifest.json, run_info.json, run_log.txt
  - 02_dynamic_lvm_report.html
"""

import argparse
import json
import shutil
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import arviz as az
import matplotlib.pyplot as plt
import numpy as np
import polars as pl
import pymc as pm
import pytensor.tensor as pt
from scipy import stats

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext, resolve_upstream_dir
except ModuleNotFoundError:
    from run_context import RunContext, resolve_upstream_dir  # type: ignore[no-redef]

try:
    from analysis.lvm_diagnostics import plot_cutpoints_by_source, plot_rhat, save_fig
except ModuleNotFoundError:
    from lvm_diagnostics import (  # type: ignore[no-redef]
        plot_cutpoints_by_source,
        plot_rhat,
        save_fig,
    )

try:
    from analysis.static_lvm import (
        CREDIBLE_INTERVAL,
        add_measurement_model,
        attach_theta,
        check_convergence,
        extract_cutpoints,
        extract_discrimination,
        lvm_coords,
        print_header,
        sample_lvm,
        summarize_theta,
    )
except ModuleNotFoundError:
    from static_lvm import (  # type: ignore[no-redef]
        CREDIBLE_INTERVAL,
        add_measurement_model,
        attach_theta,
        check_convergence,
        extract_cutpoints,
        extract_discrimination,
        lvm_coords,
        print_header,
        sample_lvm,
        summarize_theta,
    )

try:
    from analysis.static_lvm_data import summarize_coverage
except ModuleNotFoundError:
    from static_lvm_data import summarize_coverage  # type: ignore[no-redef]

try:
    from analysis.dynamic_lvm_data import (
        order_panel,
        prepare_dynamic_data,
        restore_input_order,
        trajectory_lengths,
    )
except ModuleNotFoundError:
    from dynamic_lvm_data import (  # type: ignore[no-redef]
        order_panel,
        prepare_dynamic_data,
        restore_input_order,
        trajectory_lengths,
    )

try:
    from analysis.dynamic_lvm_report import build_dynamic_lvm_report
except ModuleNotFoundError:
    from dynamic_lvm_report import build_dynamic_lvm_report  # type: ignore[no-redef]

from svac_lvm.config import (
    CONFLICT_COL,
    COUNTRY_COL,
    DEFAULT_CONSTANTS,
    DEFAULT_DATASET,
    DEFAULT_INPUT,
    MIN_CHAINS,
    MIN_ITER,
    YEAR_COL,
    available_cores,
    int_at_least,
    load_constants,
)
from svac_lvm.dataset import read_svac_csv, validate_prevalence, write_svac_csv

# ── Constants ────────────────────────────────────────────────────────────────

TAU_PRIOR_SD: float = 0.5
TOP_MOVERS_N: int = 20
MIN_SHARED_ROWS: int = 5
"""Fewest rows shared with the static estimates for a correlation to be reported."""

DYNAMIC_VAR_NAMES: list[str] = ["theta", "beta", "tau"]

# ── Primer ───────────────────────────────────────────────────────────────────

DYNAMIC_LVM_PRIMER = """\
# Dynamic Ordinal Latent Variable Model

## Purpose

The static model treats every conflict-year as unrelated to the year before.
Reported sexual violence in a conflict is persistent, so this phase lets
theta drift smoothly within a conflict.  Years with thin or missing source
coverage are pulled toward the neighbouring years of the same conflict.

## Method

### Random walk within conflict (non-centered)

```
tau ~ HalfNormal(0.5)                          -- evolution SD per year
z_i ~ Normal(0, 1)
theta_i = z_i                                  -- first year of a conflict
theta_i = theta_prev + tau * sqrt(gap_i) * z_i -- later years, gap in years
```

Rows are sorted by conflict then year before the walk is built; estimates
are written back in input order.  A repeated (conflict, year) pair is an
input error.

### Measurement model

Identical to the static phase: positive discrimination `beta_s`, ordered
cutpoints per source, `OrderedLogistic(beta_s * theta_i, cut_s)` on
observed codes only.

### Sampling

nutpie, `dynamic_iter` iterations per chain (half tuning), fixed seed.
Convergence: every R-hat below 1.1.

## Outputs

| File | Description |
|------|-------------|
| `data/dynamic_estimates.csv` | Input rows + theta, theta_sd, theta_upper, theta_low |
| `data/tau_dynamic.csv` | Posterior of the evolution SD |
| `data/top_movers.csv` | Conflicts with the largest change in theta |
| `data/static_correlation.csv` | Agreement with the static estimates |
| `data/idata_dynamic.nc` | Full posterior (ArviZ NetCDF) |
| `plots/rhat_dynamic.png`, `plots/cutpoints_dynamic.png`, `plots/tau_dynamic.png` | Diagnostics |

## Interpretation Guide

- **tau**: typical year-to-year change in theta.  Small tau means
  prevalence is close to constant within a conflict.
- **Movers**: total movement sums absolute year-to-year changes in the
  posterior mean; net movement is last year minus first year.
- **Static correlation**: high values mean the random walk mostly smooths
  the static estimates rather than reordering them.
"""


# ── Model ────────────────────────────────────────────────────────────────────


def segment_cumsum(step, segment_start: np.ndarray):
    """Cumulative sum of *step* that restarts at every segment start.

    ``segment_start[i]`` is the index of the first element of the segment
    holding element i.  Accepts numpy arrays or pytensor tensors.
    """
    cumulative = pt.cumsum(step)
    return cumulative - (cumulative[segment_start] - step[segment_start])


def build_dynamic_lvm_graph(data: dict) -> pm.Model:
    """Build the dynamic ordinal LVM graph (no sampling).

    theta is a segment-wise cumulative sum of non-centered steps: the first
    step of each conflict is its starting level, later steps are scaled by
    ``tau * sqrt(year gap)``.

    Args:
        data: Dict from ``prepare_dynamic_data()``.

    Returns:
        PyMC model ready for nutpie compilation.
    """
    is_first = np.asarray(data["is_first"], dtype=bool)
    step_scale = np.asarray(data["step_scale"], dtype=np.float64)
    segment_start = np.asarray(data["segment_start"], dtype=np.int64)

    with pm.Model(coords=lvm_coords(data)) as model:
        tau = pm.HalfNormal("tau", sigma=TAU_PRIOR_SD)
        z = pm.Normal("z", mu=0, sigma=1, dims="case")

        step = pt.where(is_first, z, tau * step_scale * z)
        theta = pm.Deterministic("theta", segment_cumsum(step, segment_start), dims="case")

        add_measurement_model(data, theta)

    return model


# ── Posterior Extraction ─────────────────────────────────────────────────────


def extract_tau_posterior(idata: az.InferenceData) -> pl.DataFrame:
    """Posterior summary of the evolution SD."""
    samples = idata.posterior["tau"].values.ravel()
    lo, hi = np.quantile(samples, CREDIBLE_INTERVAL)
    return pl.DataFrame(
        {
            "tau_mean": [float(samples.mean())],
            "tau_sd": [float(samples.std(ddof=1))],
            "tau_q2.5": [float(lo)],
            "tau_q97.5": [float(hi)],
        }
    )


def identify_movers(
    estimates: pl.DataFrame,
    n_top: int = TOP_MOVERS_N,
) -> pl.DataFrame:
    """Conflicts whose posterior mean theta changed most across their years.

    Total movement = sum of |theta[t] - theta[t-1]| over consecutive
    observed years.  Net movement = last year's theta - first year's.
    Conflicts with a single year are skipped.
    """
    schema = {
        CONFLICT_COL: estimates.schema.get(CONFLICT_COL, pl.Int64),
        COUNTRY_COL: pl.Utf8,
        "n_years": pl.Int64,
        "first_year": pl.Int64,
        "last_year": pl.Int64,
        "total_movement": pl.Float64,
        "net_movement": pl.Float64,
        "direction": pl.Utf8,
    }
    has_country = COUNTRY_COL in estimates.columns

    rows: list[dict] = []
    for (conflict,), group in estimates.group_by([CONFLICT_COL], maintain_order=True):
        group = group.sort(YEAR_COL)
        if group.height < 2:
            continue
        theta = group["theta"].to_numpy()
        total = float(np.abs(np.diff(theta)).sum())
        net = float(theta[-1] - theta[0])
        rows.append(
            {
                CONFLICT_COL: conflict,
                COUNTRY_COL: group[COUNTRY_COL][0] if has_country else None,
                "n_years": group.height,
                "first_year": int(group[YEAR_COL][0]),
                "last_year": int(group[YEAR_COL][-1]),
                "total_movement": total,
                "net_movement": net,
                "direction": "increase" if net > 0 else "decrease",
            }
        )

    if not rows:
        return pl.DataFrame(schema=schema)
    return pl.DataFrame(rows, schema=schema).sort("total_movement", descending=True).head(n_top)


def correlate_with_static(dynamic: pl.DataFrame, static: pl.DataFrame) -> pl.DataFrame:
    """Pearson r and Spearman rho between dynamic and static theta.

    Rows are matched on (conflict, year).  Returns an empty frame when fewer
    than ``MIN_SHARED_ROWS`` rows match.
    """
    schema = {"n_shared": pl.Int64, "pearson_r": pl.Float64, "spearman_rho": pl.Float64}
    keys = [CONFLICT_COL, YEAR_COL]
    merged = dynamic.select(keys + ["theta"]).join(
        static.select(keys + [pl.col("theta").alias("theta_static")]),
        on=keys,
        how="inner",
    )
    merged = merged.drop_nulls(["theta", "theta_static"])
    if merged.height < MIN_SHARED_ROWS:
        return pl.DataFrame(schema=schema)

    x = merged["theta"].to_numpy()
    y = merged["theta_static"].to_numpy()
    r, _ = stats.pearsonr(x, y)
    rho, _ = stats.spearmanr(x, y)
    return pl.DataFrame(
        {"n_shared": [merged.height], "pearson_r": [float(r)], "spearman_rho": [float(rho)]},
        schema=schema,
    )


# ── Plots ────────────────────────────────────────────────────────────────────


def plot_tau_posterior(idata: az.InferenceData, out_path: Path) -> None:
    """Histogram of the evolution SD posterior."""
    samples = idata.posterior["tau"].values.ravel()

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.hist(samples, bins=50, density=True, alpha=0.7, color="#666666")
    ax.axvline(float(np.mean(samples)), color="black", linestyle="--", linewidth=1, label="Mean")
    ax.set_xlabel("tau (evolution SD per year)")
    ax.set_ylabel("Density")
    ax.set_title("Posterior Distribution of Evolution SD (tau)")
    ax.legend()
    fig.tight_layout()
    save_fig(fig, out_path)


def plot_static_correlation(
    dynamic: pl.DataFrame,
    static: pl.DataFrame,
    out_path: Path,
) -> None:
    """Scatter of dynamic against static theta on shared rows."""
    keys = [CONFLICT_COL, YEAR_COL]
    merged = dynamic.select(keys + ["theta"]).join(
        static.select(keys + [pl.col("theta").alias("theta_static")]),
        on=keys,
        how="inner",
    )
    if merged.height == 0:
        return

    fig, ax = plt.subplots(figsize=(7, 7))
    ax.scatter(merged["theta_static"], merged["theta"], s=12, alpha=0.5, color="#4a86c8")
    lims = [
        min(merged["theta_static"].min(), merged["theta"].min()),
        max(merged["theta_static"].max(), merged["theta"].max()),
    ]
    ax.plot(lims, lims, color="gray", linestyle=":", linewidth=1)
    ax.set_xlabel("Static theta")
    ax.set_ylabel("Dynamic theta")
    ax.set_title("Dynamic vs. Static Estimates")
    fig.tight_layout()
    save_fig(fig, out_path)


# ── CLI ──────────────────────────────────────────────────────────────────────


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SVAC dynamic ordinal latent variable model")
    parser.add_argument("--input", type=Path, default=DEFAULT_INPUT, help="Pipe-delimited input")
    parser.add_argument(
        "--constants",
        type=Path,
        default=DEFAULT_CONSTANTS,
        help="YAML file with random_seed and dynamic_iter/dynamic_chains",
    )
    parser.add_argument("--dataset", default=DEFAULT_DATASET, help="Results directory label")
    parser.add_argument(
        "--n-iter", type=int_at_least(MIN_ITER), default=None, help="Override dynamic_iter"
    )
    parser.add_argument(
        "--n-chains", type=int_at_least(MIN_CHAINS), default=None, help="Override dynamic_chains"
    )
    parser.add_argument("--output", type=Path, default=None, help="Also copy estimates here")
    parser.add_argument(
        "--static-dir",
        type=Path,
        default=None,
        help="Static LVM output directory (default: latest 01_static_lvm run)",
    )
    parser.add_argument("--run-id", default=None, help="Group outputs under a pipeline run")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 1 when R-hat fails the convergence threshold",
    )
    return parser.parse_args(argv)


def load_static_estimates(args: argparse.Namespace, dataset_root: Path) -> pl.DataFrame | None:
    """Static estimates for comparison, or None when no static run is found."""
    static_dir = resolve_upstream_dir("01_static_lvm", dataset_root, args.run_id, args.static_dir)
    path = static_dir / "data" / "static_estimates.csv"
    if not path.exists():
        print(f"  No static estimates at {path}, skipping comparison")
        return None
    print(f"  Static estimates: {path}")
    return read_svac_csv(path)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    constants = load_constants(args.constants)
    n_iter = args.n_iter if args.n_iter is not None else constants.dynamic_iter
    n_chains = args.n_chains if args.n_chains is not None else constants.dynamic_chains
    n_tune = n_iter // 2
    n_draws = n_iter - n_tune
    sources = list(constants.sources)

    raw = read_svac_csv(args.input)
    validated = validate_prevalence(raw, sources, constants.n_categories)

    with RunContext(
        dataset=args.dataset,
        analysis_name="02_dynamic_lvm",
        params=vars(args),
        primer=DYNAMIC_LVM_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print(f"SVAC Dynamic LVM — {args.input}")
        print(f"Output:    {ctx.run_dir}")
        print(f"Sources:   {', '.join(sources)}")
        print(f"Sampling:  {n_iter} iter ({n_tune} tune + {n_draws} draws), {n_chains} chains")

        # ── Phase 1: Prepare data ──
        print_header("PHASE 1: ORDER PANEL")
        ordered, data = prepare_dynamic_data(validated, sources, constants.n_categories)
        lengths = trajectory_lengths(data)
        coverage = summarize_coverage(data)
        print(f"  Rows: {data['n_all']}, conflicts: {data['n_conflicts']}")
        print(f"  Conflicts with gaps between years: {int((lengths['n_gaps'] > 0).sum())}")

        # ── Phase 2: Sample ──
        print_header("PHASE 2: MCMC SAMPLING")
        model = build_dynamic_lvm_graph(data)
        idata, sampling_time = sample_lvm(
            model,
            draws=n_draws,
            tune=n_tune,
            chains=n_chains,
            cores=available_cores(n_chains),
            seed=constants.random_seed,
        )
        idata.to_netcdf(str(ctx.data_dir / "idata_dynamic.nc"))
        print("  Saved: idata_dynamic.nc")

        # ── Phase 3: Convergence ──
        print_header("PHASE 3: CONVERGENCE DIAGNOSTICS")
        cut_vars = [f"cut_{s}" for s in sources]
        diagnostics = check_convergence(idata, DYNAMIC_VAR_NAMES + cut_vars)
        plot_rhat(idata, DYNAMIC_VAR_NAMES + cut_vars, "dynamic", ctx.plots_dir)

        # ── Phase 4: Extract posteriors ──
        print_header("PHASE 4: EXTRACT POSTERIORS")
        cutpoints = extract_cutpoints(idata, sources)
        discrimination = extract_discrimination(idata, sources)
        tau = extract_tau_posterior(idata)
        plot_cutpoints_by_source(idata, sources, "dynamic", ctx.plots_dir)
        plot_tau_posterior(idata, ctx.plots_dir / "tau_dynamic.png")
        tau_row = tau.row(0, named=True)
        print(
            f"  tau = {tau_row['tau_mean']:.4f} "
            f"[{tau_row['tau_q2.5']:.4f}, {tau_row['tau_q97.5']:.4f}]"
        )

        # theta is in sorted order; attach to the sorted raw rows, then restore
        ordered_raw = order_panel(raw)
        estimates = restore_input_order(attach_theta(ordered_raw, summarize_theta(idata)))
        out_path = write_svac_csv(estimates, ctx.data_dir / "dynamic_estimates.csv")
        write_svac_csv(cutpoints, ctx.data_dir / "cutpoints_dynamic.csv")
        write_svac_csv(tau, ctx.data_dir / "tau_dynamic.csv")
        print(f"  Saved: {out_path.name} ({estimates.height} rows)")
        if args.output is not None:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(out_path, args.output)
            print(f"  Copied estimates to {args.output}")

        # ── Phase 5: Movers and static comparison ──
        print_header("PHASE 5: MOVERS AND STATIC COMPARISON")
        movers = identify_movers(estimates)
        write_svac_csv(movers, ctx.data_dir / "top_movers.csv")
        for row in movers.head(5).iter_rows(named=True):
            print(
                f"  {row[CONFLICT_COL]} ({row[COUNTRY_COL]}): total {row['total_movement']:.2f}, "
                f"net {row['net_movement']:+.2f}"
            )

        correlation = None
        static = load_static_estimates(args, ctx.dataset_root)
        if static is not None:
            correlation = correlate_with_static(estimates, static)
            if correlation.height > 0:
                c = correlation.row(0, named=True)
                print(
                    f"  Static vs dynamic: r = {c['pearson_r']:.3f}, "
                    f"rho = {c['spearman_rho']:.3f} (n = {c['n_shared']})"
                )
                write_svac_csv(correlation, ctx.data_dir / "static_correlation.csv")
            plot_static_correlation(estimates, static, ctx.plots_dir / "static_vs_dynamic.png")

        # ── Phase 6: Manifest + report ──
        print_header("PHASE 6: MANIFEST AND REPORT")
        manifest = {
            "model": "dynamic ordinal LVM (random walk within conflict)",
            "priors": {
                "tau": f"HalfNormal({TAU_PRIOR_SD})",
                "z": "Normal(0, 1)",
                "beta": "HalfNormal(2.5)",
                "cutpoints": "Normal(0, 5), ordered",
            },
            "sampling": {
                "iter": n_iter,
                "tune": n_tune,
                "draws": n_draws,
                "chains": n_chains,
                "seed": constants.random_seed,
                "sampling_time_s": sampling_time,
            },
            "data": {
                "input": str(args.input),
                "n_all": data["n_all"],
                "n_conflicts": data["n_conflicts"],
                **{f"n_{s}": data[f"n_{s}"] for s in sources},
            },
            "diagnostics": diagnostics,
        }
        with open(ctx.run_dir / "model_manifest.json", "w") as f:
            json.dump(manifest, f, indent=2, default=str)
        print("  Saved: model_manifest.json")

        build_dynamic_lvm_report(
            ctx.report,
            estimates=estimates,
            coverage=coverage,
            lengths=lengths,
            cutpoints=cutpoints,
            discrimination=discrimination,
            tau=tau,
            movers=movers,
            correlation=correlation,
            diagnostics=diagnostics,
            plots_dir=ctx.plots_dir,
            sampling={"iter": n_iter, "chains": n_chains, "seed": constants.random_seed},
        )

    if args.strict and not diagnostics["rhat_ok"]:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
