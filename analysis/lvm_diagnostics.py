"""Diagnostic plots shared by the static and dynamic LVM phases.

R-hat distribution against the convergence threshold, and the posterior
of each source's cutpoints on the latent scale.

Usage (called from static_lvm.py / dynamic_lvm.py):
    from analysis.lvm_diagnostics import plot_rhat, plot_cutpoints_by_source
    plot_rhat(idata, ["theta", "beta"], "static", ctx.plots_dir)
"""

from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import arviz as az
import matplotlib.pyplot as plt
import numpy as np

RHAT_THRESHOLD: float = 1.1
"""Chains are treated as converged when every R-hat is below this value."""

SOURCE_COLORS: dict[str, str] = {
    "state": "#1b9e77",
    "ai": "#d95f02",
    "hrw": "#7570b3",
}


def save_fig(fig: plt.Figure, path: Path, dpi: int = 150) -> None:
    """Save figure and close to free memory."""
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    print(f"  Saved: {path.name}")


def collect_rhat(idata: az.InferenceData, var_names: list[str]) -> np.ndarray:
    """Flatten R-hat values of every element of *var_names* into one array."""
    rhat = az.rhat(idata, var_names=var_names)
    parts = [np.asarray(rhat[v].values, dtype=float).ravel() for v in var_names]
    values = np.concatenate(parts) if parts else np.array([], dtype=float)
    return values[np.isfinite(values)]


def plot_rhat(
    idata: az.InferenceData,
    var_names: list[str],
    model_type: str,
    out_dir: Path,
    threshold: float = RHAT_THRESHOLD,
) -> Path:
    """Histogram of R-hat across all monitored parameters with the threshold marked."""
    values = collect_rhat(idata, var_names)
    n_bad = int((values >= threshold).sum())

    fig, ax = plt.subplots(figsize=(10, 5))
    ax.hist(values, bins=40, color="#4C72B0", alpha=0.8, edgecolor="black", linewidth=0.3)
    ax.axvline(threshold, color="red", linestyle="--", label=f"R-hat = {threshold}")
    ax.set_xlabel("R-hat")
    ax.set_ylabel("Number of parameters")
    ax.set_title(
        f"{model_type.capitalize()} model — R-hat distribution "
        f"({n_bad} of {len(values)} at or above {threshold})"
    )
    ax.legend()
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    fig.tight_layout()
    path = out_dir / f"rhat_{model_type}.png"
    save_fig(fig, path)
    return path


def plot_cutpoints_by_source(
    idata: az.InferenceData,
    sources: list[str],
    model_type: str,
    out_dir: Path,
) -> Path:
    """One panel per source: posterior density of every cutpoint."""
    n = len(sources)
    fig, axes = plt.subplots(1, n, figsize=(6 * n, 4.5), squeeze=False, sharex=True)

    for idx, source in enumerate(sources):
        ax = axes[0, idx]
        post = idata.posterior[f"cut_{source}"]
        n_cut = post.shape[-1]
        color = SOURCE_COLORS.get(source, "#666666")
        for k in range(n_cut):
            samples = post[..., k].values.ravel()
            ax.hist(
                samples,
                bins=60,
                density=True,
                histtype="stepfilled",
                alpha=0.35 + 0.5 * k / max(n_cut, 1),
                color=color,
                label=f"{k} | {k + 1}",
            )
        ax.set_title(source)
        ax.set_xlabel("Latent scale")
        ax.legend(title="Cutpoint", fontsize=8)
        ax.spines["top"].set_visible(False)
        ax.spines["right"].set_visible(False)

    axes[0, 0].set_ylabel("Density")
    fig.suptitle(f"{model_type.capitalize()} model — cutpoints by source", fontsize=14, y=1.02)
    fig.tight_layout()
    path = out_dir / f"cutpoints_{model_type}.png"
    save_fig(fig, path)
    return path
