"""Configuration constants and sampler settings for the SVAC latent variable models."""

import argparse
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

try:
    from importlib.metadata import version as _pkg_version

    PACKAGE_VERSION = _pkg_version("svac-lvm")
except Exception:
    PACKAGE_VERSION = "dev"

DELIMITER = "|"
NA_TOKEN = "NA"

DEFAULT_INPUT = Path("data/svac_main.csv")
DEFAULT_CONSTANTS = Path("config/constants.yaml")
DEFAULT_DATASET = "svac"

DEFAULT_SOURCES: tuple[str, ...] = ("state", "ai", "hrw")
DEFAULT_N_CATEGORIES = 4  # prevalence 0 (none) .. 3 (massive)

CONFLICT_COL = "conflictid_new"
COUNTRY_COL = "country"
YEAR_COL = "year"
RANK_COL = "rank"

THETA_COLUMNS: tuple[str, ...] = ("theta", "theta_sd", "theta_upper", "theta_low")

# iter >= 2 leaves at least one tuning and one kept draw per chain
MIN_ITER = 2
MIN_CHAINS = 1


@dataclass(frozen=True)
class LVMConstants:
    """Sampler settings read from the constants YAML file.

    ``*_iter`` is the total number of iterations per chain. The first half
    tunes the sampler and is discarded; the second half is kept.
    """

    random_seed: int
    static_iter: int
    static_chains: int
    dynamic_iter: int
    dynamic_chains: int
    sources: tuple[str, ...] = DEFAULT_SOURCES
    n_categories: int = DEFAULT_N_CATEGORIES

    @property
    def static_tune(self) -> int:
        return self.static_iter // 2

    @property
    def static_draws(self) -> int:
        return self.static_iter - self.static_tune

    @property
    def dynamic_tune(self) -> int:
        return self.dynamic_iter // 2

    @property
    def dynamic_draws(self) -> int:
        return self.dynamic_iter - self.dynamic_tune


def _require_int(raw: dict, key: str, minimum: int) -> int:
    if key not in raw:
        msg = f"constants file is missing required key '{key}'"
        raise ValueError(msg)
    value = raw[key]
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"'{key}' must be an integer, got {value!r}"
        raise ValueError(msg)
    if value < minimum:
        msg = f"'{key}' must be >= {minimum}, got {value}"
        raise ValueError(msg)
    return value


def load_constants(path: Path | str = DEFAULT_CONSTANTS) -> LVMConstants:
    """Load sampler settings from a YAML file.

    ``random_seed``, ``static_iter`` and ``static_chains`` are required.
    ``dynamic_iter`` and ``dynamic_chains`` fall back to the static values.
    """
    path = Path(path)
    if not path.exists():
        msg = f"constants file not found: {path}"
        raise FileNotFoundError(msg)

    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        msg = f"constants file must contain a mapping, got {type(raw).__name__}"
        raise ValueError(msg)

    random_seed = _require_int(raw, "random_seed", 0)
    static_iter = _require_int(raw, "static_iter", MIN_ITER)
    static_chains = _require_int(raw, "static_chains", MIN_CHAINS)

    dynamic_iter = static_iter
    if "dynamic_iter" in raw:
        dynamic_iter = _require_int(raw, "dynamic_iter", MIN_ITER)
    dynamic_chains = static_chains
    if "dynamic_chains" in raw:
        dynamic_chains = _require_int(raw, "dynamic_chains", MIN_CHAINS)

    sources = raw.get("sources", list(DEFAULT_SOURCES))
    if not isinstance(sources, list) or not sources or not all(isinstance(s, str) for s in sources):
        msg = f"'sources' must be a non-empty list of names, got {sources!r}"
        raise ValueError(msg)
    if len(set(sources)) != len(sources):
        msg = f"'sources' contains duplicates: {sources}"
        raise ValueError(msg)

    n_categories = DEFAULT_N_CATEGORIES
    if "n_categories" in raw:
        n_categories = _require_int(raw, "n_categories", 2)

    return LVMConstants(
        random_seed=random_seed,
        static_iter=static_iter,
        static_chains=static_chains,
        dynamic_iter=dynamic_iter,
        dynamic_chains=dynamic_chains,
        sources=tuple(sources),
        n_categories=n_categories,
    )


def available_cores(n_chains: int) -> int:
    """Cores to hand to the sampler: one per chain, never more than the machine has."""
    detected = os.cpu_count() or 1
    return max(1, min(detected, n_chains))


def int_at_least(minimum: int):
    """argparse ``type=`` for integer flags that override a constants-file value.

    Applies the floor load_constants() enforces, so a bad ``--n-iter`` or
    ``--n-chains`` stops at argument parsing instead of inside the sampler.
    """

    def parse(text: str) -> int:
        try:
            value = int(text)
        except ValueError:
            msg = f"expected an integer, got {text!r}"
            raise argparse.ArgumentTypeError(msg) from None
        if value < minimum:
            msg = f"must be >= {minimum}, got {value}"
            raise argparse.ArgumentTypeError(msg)
        return value

    return parse
