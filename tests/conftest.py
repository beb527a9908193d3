"""Shared fixtures for SVAC LVM tests.

Small synthetic panels and posteriors: nothing here runs the sampler.
"""

import sys
from pathlib import Path

import arviz as az
import numpy as np
import polars as pl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

# ── Panel fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def svac_panel() -> pl.DataFrame:
    """Eight rows, three conflicts, each source missing somewhere.

    Rows are deliberately out of (conflict, year) order.  Conflict 203 has a
    gap (1990 -> 1993).  Row 5 is observed by no source.
    """
    return pl.DataFrame(
        {
            "conflictid_new": [101, 101, 203, 101, 203, 305, 203, 305],
            "country": [
                "Sudan",
                "Sudan",
                "Congo, Democratic Republic of (Zaire)",
                "Sudan",
                "Congo, Democratic Republic of (Zaire)",
                "Cote d'Ivoire",
                "Congo, Democratic Republic of (Zaire)",
                "Cote d'Ivoire",
            ],
            "year": [1990, 1989, 1993, 1991, 1989, 2002, 1990, 2003],
            "rank": [3, 1, 8, 2, 6, 4, 7, 5],
            "state_prev": [1, 0, 3, None, 2, None, 3, 1],
            "ai_prev": [None, 0, 3, 1, None, None, 2, None],
            "hrw_prev": [2, None, None, 1, 2, None, 3, 0],
        },
        schema_overrides={
            "state_prev": pl.Int64,
            "ai_prev": pl.Int64,
            "hrw_prev": pl.Int64,
        },
    )


@pytest.fixture
def constants_file(tmp_path: Path) -> Path:
    path = tmp_path / "constants.yaml"
    path.write_text(
        "random_seed: 20160711\n"
        "static_iter: 2000\n"
        "static_chains: 4\n"
        "dynamic_iter: 3001\n"
        "dynamic_chains: 2\n"
    )
    return path


# ── Posterior fixtures ───────────────────────────────────────────────────────


@pytest.fixture
def sources() -> list[str]:
    return ["state", "ai", "hrw"]


@pytest.fixture
def fake_idata(sources: list[str]) -> az.InferenceData:
    """Hand-built posterior with 2 chains x 50 draws over 4 cases.

    theta for case k is centred on k (0, 1, 2, 3) so summaries are easy to
    check.  Cutpoints are ordered and beta positive.
    """
    rng = np.random.default_rng(0)
    n_chain, n_draw, n_case = 2, 50, 4
    theta = np.arange(n_case)[None, None, :] + rng.normal(0, 0.1, (n_chain, n_draw, n_case))
    posterior = {
        "theta": theta,
        "beta": np.abs(rng.normal(1.0, 0.05, (n_chain, n_draw, len(sources)))),
        "tau": np.abs(rng.normal(0.3, 0.02, (n_chain, n_draw))),
    }
    for k, source in enumerate(sources):
        base = np.array([-1.0, 0.0, 1.0]) + 0.1 * k
        posterior[f"cut_{source}"] = base[None, None, :] + rng.normal(
            0, 0.05, (n_chain, n_draw, 3)
        )
    return az.from_dict(
        posterior=posterior,
        sample_stats={"diverging": np.zeros((n_chain, n_draw), dtype=bool)},
        coords={
            "case": [f"c{i}" for i in range(n_case)],
            "source": sources,
            "cutpoint": ["0|1", "1|2", "2|3"],
        },
        dims={
            "theta": ["case"],
            "beta": ["source"],
            **{f"cut_{s}": ["cutpoint"] for s in sources},
        },
    )


@pytest.fixture
def fake_sampler():
    """Factory for stand-ins of ``sample_lvm`` that skip MCMC.

    ``fake_sampler(theta_means)`` returns a callable with sample_lvm's
    signature.  Its posterior puts case k's theta around ``theta_means[k]``
    (2 chains x 50 draws) and covers beta, tau and every ``cut_<source>`` of
    the model it is given.  ``stuck=True`` shifts the second chain's theta so
    R-hat fails.  Each call's keyword arguments are kept in ``.calls``.
    """

    def make(theta_means, *, stuck: bool = False):
        calls: list[dict] = []

        def sample(model, *, draws, tune, chains, cores, seed):
            calls.append(
                {"draws": draws, "tune": tune, "chains": chains, "cores": cores, "seed": seed}
            )
            cases = list(model.coords["case"])
            sources = list(model.coords["source"])
            cut_labels = list(model.coords["cutpoint"])
            means = np.asarray(theta_means, dtype=float)
            assert means.shape == (len(cases),)

            rng = np.random.default_rng(seed)
            n_chain, n_draw = 2, 50
            theta = means[None, None, :] + rng.normal(0, 0.1, (n_chain, n_draw, len(cases)))
            if stuck:
                theta[1] += 5.0
            posterior = {
                "theta": theta,
                "beta": np.abs(rng.normal(1.0, 0.05, (n_chain, n_draw, len(sources)))),
                "tau": np.abs(rng.normal(0.3, 0.02, (n_chain, n_draw))),
            }
            base = np.linspace(-1.0, 1.0, len(cut_labels))
            for source in sources:
                posterior[f"cut_{source}"] = base[None, None, :] + rng.normal(
                    0, 0.05, (n_chain, n_draw, len(cut_labels))
                )
            idata = az.from_dict(
                posterior=posterior,
                sample_stats={"diverging": np.zeros((n_chain, n_draw), dtype=bool)},
                coords={"case": cases, "source": sources, "cutpoint": cut_labels},
                dims={
                    "theta": ["case"],
                    "beta": ["source"],
                    **{f"cut_{s}": ["cutpoint"] for s in sources},
                },
            )
            return idata, 0.1

        sample.calls = calls  # type: ignore[attr-defined]
        return sample

    return make
