"""
SVAC — Static Ordinal Latent Variable Model (Phase 01)

Estimates one latent sexual violence prevalence value (theta) per row of the
SVAC panel from the ordinal prevalence codes reported by several sources
(State Department, Amnesty International, Human Rights Watch).  Any source
may be missing for a row; missing codes are simply absent from the
likelihood.

Usage:
  uv run python analysis/01_static_lvm/static_lvm.py
      [--input data/svac_main.csv] [--constants config/constants.yaml]
      [--n-iter 2000] [--n-chains 4] [--output estimates.csv] [--strict]

Outputs (in results/<dataset>/01_static_lvm/<date>/):
  - data/:   static_estimates.csv (input + theta columns), cutpoints, NetCDF
  - plots/:  R-hat distribution, cutpoints by source
  - model_manifest.json, run_info.json, run_log.txt
  - 01_static_lvm_report.html
"""

import argparse
import json
import shutil
import sys
import time
from pathlib import Path

import arviz as az
import numpy as np
import nutpie
import polars as pl
import pymc as pm

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

try:
    from analysis.run_context import RunContext
except ModuleNotFoundError:
    from run_context import RunContext  # type: ignore[no-redef]

try:
    from analysis.lvm_diagnostics import RHAT_THRESHOLD, plot_cutpoints_by_source, plot_rhat
except ModuleNotFoundError:
    from lvm_diagnostics import (  # type: ignore[no-redef]
        RHAT_THRESHOLD,
        plot_cutpoints_by_source,
        plot_rhat,
    )

try:
    from analysis.static_lvm_data import (
        category_frequencies,
        prepare_lvm_data,
        summarize_coverage,
    )
except ModuleNotFoundError:
    from static_lvm_data import (  # type: ignore[no-redef]
        category_frequencies,
        prepare_lvm_data,
        summarize_coverage,
    )

try:
    from analysis.static_lvm_report import build_static_lvm_report
except ModuleNotFoundError:
    from static_lvm_report import build_static_lvm_report  # type: ignore[no-redef]

from svac_lvm.config import (
    DEFAULT_CONSTANTS,
    DEFAULT_DATASET,
    DEFAULT_INPUT,
    MIN_CHAINS,
    MIN_ITER,
    available_cores,
    int_at_least,
    load_constants,
)
from svac_lvm.dataset import read_svac_csv, validate_prevalence, write_svac_csv

# ── Constants ────────────────────────────────────────────────────────────────

ESS_THRESHOLD: int = 400
MAX_DIVERGENCES: int = 10
CUTPOINT_PRIOR_SD: float = 5.0
BETA_PRIOR_SD: float = 2.5
CREDIBLE_INTERVAL: tuple[float, float] = (0.025, 0.975)
TOP_CASES_N: int = 15
"""Number of highest-theta rows listed in the report."""

STATIC_VAR_NAMES: list[str] = ["theta", "beta"]

# ── Primer ───────────────────────────────────────────────────────────────────

STATIC_LVM_PRIMER = """\
# Static Ordinal Latent Variable Model

## Purpose

Each source codes the prevalence of reported sexual violence by an armed
actor in a conflict-year on an ordinal scale (0 = none, 1 = isolated,
2 = numerous, 3 = massive).  The sources disagree and each misses many
conflict-years.  The latent variable model pools them into one estimate per
conflict-year, theta, with a 95% credible interval that widens when fewer
or conflicting sources are available.

## Method

### Ordinal logistic measurement model

```
theta_i ~ Normal(0, 1)                               -- latent prevalence per row
beta_s  ~ HalfNormal(2.5)                            -- source discrimination (positive)
cut_s   ~ Normal(0, 5), ordered                      -- source cutpoints (K - 1 per source)
y_si    ~ OrderedLogistic(beta_s * theta_i, cut_s)   -- only where source s observed row i
```

**Missing data:** each source contributes only the rows it observes, through
its own index vector into theta.  No imputation.

**Identification:** theta has a standard normal prior (location and scale);
positive discrimination fixes the direction (higher theta = higher prevalence).

### Sampling

nutpie (NUTS), `iter` iterations per chain from the constants file: the
first half tunes and is discarded, the second half is kept.  Fixed seed.
Convergence: every R-hat below 1.1.

## Outputs

| File | Description |
|------|-------------|
| `data/static_estimates.csv` | Input rows + theta, theta_sd, theta_upper, theta_low (pipe-delimited) |
| `data/cutpoints_static.csv` | Cutpoint posterior summaries per source |
| `data/idata_static.nc` | Full posterior (ArviZ NetCDF) |
| `plots/rhat_static.png` | R-hat distribution |
| `plots/cutpoints_static.png` | Cutpoint posteriors by source |

## Interpretation Guide

- **theta**: posterior mean, on the standard normal latent scale.  Compare
  rows, not absolute values.
- **theta_low / theta_upper**: 2.5% and 97.5% posterior quantiles.
- **Cutpoints**: where a source moves from one category to the next.  A
  source with higher cutpoints needs more violence before reporting it.
- **beta**: how sharply a source separates low from high prevalence.
"""


# ── Model ────────────────────────────────────────────────────────────────────


def add_measurement_model(data: dict, theta) -> None:
    """Attach discrimination, cutpoints and OrderedLogistic likelihoods to the open model.

    Must be called inside a ``pm.Model`` context that defines the ``source``
    and ``cutpoint`` coordinates.  *theta* is the latent vector (one entry
    per row); each source indexes into it with its own observed positions.
    """
    n_cut = data["n_categories"] - 1
    beta = pm.HalfNormal("beta", sigma=BETA_PRIOR_SD, dims="source")

    for k, source in enumerate(data["sources"]):
        cut = pm.Normal(
            f"cut_{source}",
            mu=0,
            sigma=CUTPOINT_PRIOR_SD,
            dims="cutpoint",
            transform=pm.distributions.transforms.ordered,
            initval=np.linspace(-2, 2, n_cut),
        )
        if data[f"n_{source}"] == 0:
            continue
        eta = beta[k] * theta[data[f"index_{source}"]]
        pm.OrderedLogistic(
            f"obs_{source}",
            eta=eta,
            cutpoints=cut,
            observed=data[source],
            compute_p=False,
        )


def lvm_coords(data: dict) -> dict:
    """Model coordinates shared by the static and dynamic graphs."""
    n_cut = data["n_categories"] - 1
    return {
        "case": data["case_ids"],
        "source": data["sources"],
        "cutpoint": [f"{k}|{k + 1}" for k in range(n_cut)],
    }


def build_static_lvm_graph(data: dict) -> pm.Model:
    """Build the static ordinal LVM graph (no sampling).

    Args:
        data: Index dict from ``prepare_lvm_data()``.

    Returns:
        PyMC model ready for nutpie compilation.
    """
    with pm.Model(coords=lvm_coords(data)) as model:
        theta = pm.Normal("theta", mu=0, sigma=1, dims="case")
        add_measurement_model(data, theta)
    return model


def sample_lvm(
    model: pm.Model,
    *,
    draws: int,
    tune: int,
    chains: int,
    cores: int,
    seed: int,
) -> tuple[az.InferenceData, float]:
    """Compile *model* with nutpie and sample it with a fixed seed.

    Returns:
        (InferenceData, sampling_time_seconds).
    """
    print("  Compiling model with nutpie...")
    compiled = nutpie.compile_pymc_model(model)

    print(f"  Sampling: {draws} draws, {tune} tune, {chains} chains on {cores} cores")
    print(f"  seed={seed}, sampler=nutpie (Rust NUTS)")

    t0 = time.time()
    idata = nutpie.sample(
        compiled,
        draws=draws,
        tune=tune,
        chains=chains,
        cores=cores,
        seed=seed,
        progress_bar=True,
        store_divergences=True,
    )
    sampling_time = time.time() - t0

    print(f"  Sampling complete in {sampling_time:.1f}s")
    return idata, sampling_time


# ── Diagnostics ──────────────────────────────────────────────────────────────


def check_convergence(
    idata: az.InferenceData,
    var_names: list[str],
    rhat_threshold: float = RHAT_THRESHOLD,
) -> dict:
    """Run standard MCMC convergence diagnostics.

    Returns dict with per-variable R-hat max and bulk ESS min, divergence
    count, and ``rhat_ok`` / ``all_ok`` flags.
    """
    diag: dict = {"rhat_threshold": rhat_threshold}

    rhat = az.rhat(idata, var_names=var_names)
    ess = az.ess(idata, var_names=var_names)

    rhat_max_all = 0.0
    ess_min_all = float("inf")
    for var in var_names:
        rhat_max = float(rhat[var].max())
        ess_min = float(ess[var].min())
        diag[f"{var}_rhat_max"] = rhat_max
        diag[f"{var}_ess_min"] = ess_min
        rhat_max_all = max(rhat_max_all, rhat_max)
        ess_min_all = min(ess_min_all, ess_min)

        rhat_status = "OK" if rhat_max < rhat_threshold else "WARNING"
        ess_status = "OK" if ess_min > ESS_THRESHOLD else "WARNING"
        print(f"  R-hat ({var}): max = {rhat_max:.4f}  {rhat_status}")
        print(f"  ESS ({var}):   min = {ess_min:.0f}  {ess_status}")

    diag["rhat_max"] = rhat_max_all
    diag["ess_bulk_min"] = ess_min_all

    if "diverging" in idata.sample_stats:
        divergences = int(idata.sample_stats["diverging"].sum().values)
    else:
        divergences = 0
    diag["divergences"] = divergences
    div_ok = divergences < MAX_DIVERGENCES
    print(f"  Divergences:  {divergences}  {'OK' if div_ok else 'WARNING'}")

    diag["rhat_ok"] = rhat_max_all < rhat_threshold
    diag["all_ok"] = diag["rhat_ok"] and ess_min_all > ESS_THRESHOLD and div_ok
    if diag["rhat_ok"]:
        print(f"  CONVERGENCE: all R-hat < {rhat_threshold}")
    else:
        print(f"  CONVERGENCE: R-hat >= {rhat_threshold}; run more iterations")

    return diag


# ── Posterior Extraction ─────────────────────────────────────────────────────


def summarize_theta(idata: az.InferenceData, var: str = "theta") -> dict[str, np.ndarray]:
    """Per-row posterior mean, sd and 95% percentile interval of *var*.

    The interval is the 2.5% and 97.5% quantiles of the pooled draws, not an HDI.
    """
    post = idata.posterior[var]
    stacked = post.stack(sample=("chain", "draw")).transpose(..., "sample").values
    lo, hi = np.quantile(stacked, CREDIBLE_INTERVAL, axis=-1)
    return {
        "theta": stacked.mean(axis=-1),
        "theta_sd": stacked.std(axis=-1, ddof=1),
        "theta_upper": hi,
        "theta_low": lo,
    }


def attach_theta(df: pl.DataFrame, summary: dict[str, np.ndarray]) -> pl.DataFrame:
    """Append theta summary columns to the input frame, row order preserved."""
    n = len(summary["theta"])
    if n != df.height:
        msg = f"theta summary has {n} rows, frame has {df.height}"
        raise ValueError(msg)
    return df.with_columns(
        [
            pl.Series(col, np.asarray(summary[col], dtype=float))
            for col in ("theta", "theta_sd", "theta_upper", "theta_low")
        ]
    )


def extract_cutpoints(idata: az.InferenceData, sources: list[str]) -> pl.DataFrame:
    """Posterior summaries of every cutpoint, one row per (source, cutpoint)."""
    rows: list[dict] = []
    for source in sources:
        post = idata.posterior[f"cut_{source}"]
        samples = post.values.reshape(-1, post.shape[-1])
        lo, hi = np.quantile(samples, CREDIBLE_INTERVAL, axis=0)
        for k in range(samples.shape[1]):
            rows.append(
                {
                    "source": source,
                    "cutpoint": f"{k}|{k + 1}",
                    "mean": float(samples[:, k].mean()),
                    "sd": float(samples[:, k].std(ddof=1)),
                    "q2.5": float(lo[k]),
                    "q97.5": float(hi[k]),
                }
            )
    return pl.DataFrame(
        rows,
        schema={
            "source": pl.Utf8,
            "cutpoint": pl.Utf8,
            "mean": pl.Float64,
            "sd": pl.Float64,
            "q2.5": pl.Float64,
            "q97.5": pl.Float64,
        },
    )


def extract_discrimination(idata: az.InferenceData, sources: list[str]) -> pl.DataFrame:
    """Posterior summary of each source's discrimination (beta)."""
    post = idata.posterior["beta"]
    samples = post.values.reshape(-1, post.shape[-1])
    lo, hi = np.quantile(samples, CREDIBLE_INTERVAL, axis=0)
    return pl.DataFrame(
        {
            "source": sources,
            "beta_mean": samples.mean(axis=0),
            "beta_sd": samples.std(axis=0, ddof=1),
            "beta_q2.5": lo,
            "beta_q97.5": hi,
        }
    )


# ── CLI ──────────────────────────────────────────────────────────────────────


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SVAC static ordinal latent variable model")
    parser.add_argument("--input", type=Path, default=DEFAULT_INPUT, help="Pipe-delimited input")
    parser.add_argument(
        "--constants",
        type=Path,
        default=DEFAULT_CONSTANTS,
        help="YAML file with random_seed, static_iter, static_chains",
    )
    parser.add_argument("--dataset", default=DEFAULT_DATASET, help="Results directory label")
    parser.add_argument(
        "--n-iter", type=int_at_least(MIN_ITER), default=None, help="Override static_iter"
    )
    parser.add_argument(
        "--n-chains", type=int_at_least(MIN_CHAINS), default=None, help="Override static_chains"
    )
    parser.add_argument("--output", type=Path, default=None, help="Also copy estimates here")
    parser.add_argument("--run-id", default=None, help="Group outputs under a pipeline run")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 1 when R-hat fails the convergence threshold",
    )
    return parser.parse_args(argv)


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    constants = load_constants(args.constants)
    n_iter = args.n_iter if args.n_iter is not None else constants.static_iter
    n_chains = args.n_chains if args.n_chains is not None else constants.static_chains
    n_tune = n_iter // 2
    n_draws = n_iter - n_tune
    sources = list(constants.sources)

    raw = read_svac_csv(args.input)
    df = validate_prevalence(raw, sources, constants.n_categories)

    with RunContext(
        dataset=args.dataset,
        analysis_name="01_static_lvm",
        params=vars(args),
        primer=STATIC_LVM_PRIMER,
        run_id=args.run_id,
    ) as ctx:
        print(f"SVAC Static LVM — {args.input}")
        print(f"Output:    {ctx.run_dir}")
        print(f"Sources:   {', '.join(sources)}")
        print(f"Sampling:  {n_iter} iter ({n_tune} tune + {n_draws} draws), {n_chains} chains")

        # ── Phase 1: Prepare data ──
        print_header("PHASE 1: PREPARE DATA")
        data = prepare_lvm_data(df, sources, constants.n_categories)
        coverage = summarize_coverage(data)
        frequencies = category_frequencies(data)
        print(f"  Rows: {data['n_all']}")
        for row in coverage.iter_rows(named=True):
            print(f"    {row['item']:16s} {row['n_rows']:6d}  ({row['pct_rows']:.1f}%)")

        # ── Phase 2: Sample ──
        print_header("PHASE 2: MCMC SAMPLING")
        model = build_static_lvm_graph(data)
        idata, sampling_time = sample_lvm(
            model,
            draws=n_draws,
            tune=n_tune,
            chains=n_chains,
            cores=available_cores(n_chains),
            seed=constants.random_seed,
        )
        idata.to_netcdf(str(ctx.data_dir / "idata_static.nc"))
        print("  Saved: idata_static.nc")

        # ── Phase 3: Convergence ──
        print_header("PHASE 3: CONVERGENCE DIAGNOSTICS")
        cut_vars = [f"cut_{s}" for s in sources]
        diagnostics = check_convergence(idata, STATIC_VAR_NAMES + cut_vars)
        plot_rhat(idata, STATIC_VAR_NAMES + cut_vars, "static", ctx.plots_dir)

        # ── Phase 4: Extract posteriors ──
        print_header("PHASE 4: EXTRACT POSTERIORS")
        cutpoints = extract_cutpoints(idata, sources)
        discrimination = extract_discrimination(idata, sources)
        plot_cutpoints_by_source(idata, sources, "static", ctx.plots_dir)
        for row in discrimination.iter_rows(named=True):
            print(
                f"  beta[{row['source']}] = {row['beta_mean']:.3f} "
                f"[{row['beta_q2.5']:.3f}, {row['beta_q97.5']:.3f}]"
            )

        estimates = attach_theta(raw, summarize_theta(idata))
        out_path = write_svac_csv(estimates, ctx.data_dir / "static_estimates.csv")
        write_svac_csv(cutpoints, ctx.data_dir / "cutpoints_static.csv")
        print(f"  Saved: {out_path.name} ({estimates.height} rows)")
        if args.output is not None:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(out_path, args.output)
            print(f"  Copied estimates to {args.output}")

        # ── Phase 5: Manifest + report ──
        print_header("PHASE 5: MANIFEST AND REPORT")
        manifest = {
            "model": "static ordinal LVM",
            "priors": {
                "theta": "Normal(0, 1)",
                "beta": f"HalfNormal({BETA_PRIOR_SD})",
                "cutpoints": f"Normal(0, {CUTPOINT_PRIOR_SD}), ordered",
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
                **{f"n_{s}": data[f"n_{s}"] for s in sources},
            },
            "diagnostics": diagnostics,
        }
        with open(ctx.run_dir / "model_manifest.json", "w") as f:
            json.dump(manifest, f, indent=2, default=str)
        print("  Saved: model_manifest.json")

        build_static_lvm_report(
            ctx.report,
            estimates=estimates,
            coverage=coverage,
            frequencies=frequencies,
            cutpoints=cutpoints,
            discrimination=discrimination,
            diagnostics=diagnostics,
            plots_dir=ctx.plots_dir,
            sampling={"iter": n_iter, "chains": n_chains, "seed": constants.random_seed},
            top_n=TOP_CASES_N,
        )

    if args.strict and not diagnostics["rhat_ok"]:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
