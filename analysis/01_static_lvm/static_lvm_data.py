"""Pure data logic for the static latent variable model.

Turns a panel frame with partially missing per-source prevalence codes into
the ragged index arrays the sampler needs.  No I/O or plotting: all
functions take DataFrames in and return dicts/DataFrames out.
"""

import numpy as np
import polars as pl

from svac_lvm.config import CONFLICT_COL, YEAR_COL
from svac_lvm.dataset import prevalence_column


def _case_ids(df: pl.DataFrame) -> list[str]:
    """Readable per-row labels for the ``case`` coordinate.

    ``<conflict>:<year>`` when both columns exist, otherwise the row number.
    Duplicate labels get a ``#n`` suffix so coordinates stay unique.
    """
    if CONFLICT_COL in df.columns and YEAR_COL in df.columns:
        raw = [f"{c}:{y}" for c, y in zip(df[CONFLICT_COL].to_list(), df[YEAR_COL].to_list())]
    else:
        raw = [str(i) for i in range(df.height)]

    seen: dict[str, int] = {}
    ids: list[str] = []
    for label in raw:
        n = seen.get(label, 0)
        ids.append(label if n == 0 else f"{label}#{n}")
        seen[label] = n + 1
    return ids


def prepare_lvm_data(
    df: pl.DataFrame,
    sources: tuple[str, ...] | list[str],
    n_categories: int,
) -> dict:
    """Build index arrays for the ordinal LVM from a validated panel frame.

    Each source enters the likelihood only where it is observed.  For every
    source ``s`` the result holds:

      - ``index_<s>``: row positions (0-based, into the full frame) where s is observed
      - ``<s>``: the observed prevalence codes, 0-based categories
      - ``n_<s>``: how many rows s observes

    plus ``n_all``, ``index_all``, ``sources``, ``n_categories`` and ``case_ids``.
    """
    n_all = df.height
    index_all = np.arange(n_all, dtype=np.int64)

    data: dict = {
        "n_all": n_all,
        "index_all": index_all,
        "sources": list(sources),
        "n_categories": n_categories,
        "case_ids": _case_ids(df),
    }

    for source in sources:
        values = df[prevalence_column(source)]
        observed = values.is_not_null().to_numpy()
        data[f"index_{source}"] = index_all[observed]
        data[source] = values.drop_nulls().to_numpy().astype(np.int64)
        data[f"n_{source}"] = int(observed.sum())

    return data


def summarize_coverage(data: dict) -> pl.DataFrame:
    """Per-source observation counts and how many rows each source count covers.

    Returns one row per source (observed count and share of all rows) followed
    by one row per "observed by k sources" bucket, k = 0..len(sources).
    """
    n_all = data["n_all"]
    sources = data["sources"]

    rows: list[dict] = []
    per_row = np.zeros(n_all, dtype=np.int64)
    for source in sources:
        n_obs = data[f"n_{source}"]
        per_row[data[f"index_{source}"]] += 1
        rows.append(
            {
                "item": source,
                "n_rows": n_obs,
                "pct_rows": 100.0 * n_obs / n_all if n_all else 0.0,
            }
        )

    for k in range(len(sources) + 1):
        n_rows = int((per_row == k).sum())
        rows.append(
            {
                "item": f"observed by {k}",
                "n_rows": n_rows,
                "pct_rows": 100.0 * n_rows / n_all if n_all else 0.0,
            }
        )

    return pl.DataFrame(
        rows,
        schema={"item": pl.Utf8, "n_rows": pl.Int64, "pct_rows": pl.Float64},
    )


def category_frequencies(data: dict) -> pl.DataFrame:
    """Observed count of each prevalence category per source."""
    rows: list[dict] = []
    for source in data["sources"]:
        counts = np.bincount(data[source], minlength=data["n_categories"])
        for k, count in enumerate(counts):
            rows.append({"source": source, "category": k, "count": int(count)})
    return pl.DataFrame(
        rows,
        schema={"source": pl.Utf8, "category": pl.Int64, "count": pl.Int64},
    )
