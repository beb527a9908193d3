"""Pure data logic for the dynamic latent variable model.

Orders the panel so each conflict's years are contiguous, then builds the
random-walk bookkeeping (segment starts, year gaps) that lets the model
express theta as a cumulative sum of steps within each conflict.  No I/O.
"""

import numpy as np
import polars as pl

try:
    from analysis.static_lvm_data import prepare_lvm_data
except ModuleNotFoundError:
    from static_lvm_data import prepare_lvm_data  # type: ignore[no-redef]

from svac_lvm.config import CONFLICT_COL, YEAR_COL

ROW_ID_COL: str = "__row_id"
"""Position of each row in the input file, kept through sorting."""


def order_panel(
    df: pl.DataFrame,
    group_col: str = CONFLICT_COL,
    time_col: str = YEAR_COL,
) -> pl.DataFrame:
    """Stable sort by conflict then year, recording the original row order.

    Rows missing a conflict id or year cannot be placed on a trajectory and
    raise ``ValueError``.
    """
    for col in (group_col, time_col):
        if col not in df.columns:
            msg = f"panel is missing column '{col}'"
            raise ValueError(msg)
        n_null = df[col].null_count()
        if n_null:
            msg = f"column '{col}' has {n_null} missing value(s); dynamic model needs every row placed"
            raise ValueError(msg)

    return df.with_row_index(ROW_ID_COL).sort([group_col, time_col], maintain_order=True)


def build_walk_index(
    df: pl.DataFrame,
    group_col: str = CONFLICT_COL,
    time_col: str = YEAR_COL,
) -> dict:
    """Random-walk structure for a frame already sorted by ``order_panel()``.

    Returns:
        Dict with, per row: ``segment_start`` (row of the conflict's first
        year), ``is_first``, ``step_scale`` (square root of the year gap to
        the previous row, 1.0 on first rows), plus ``conflict_ids`` (in
        sorted order) and ``n_conflicts``.

    Raises:
        ValueError: on a repeated (conflict, year) pair or unsorted years.
    """
    groups = df[group_col].to_list()
    years = df[time_col].to_numpy().astype(np.float64)
    n = len(groups)

    segment_start = np.zeros(n, dtype=np.int64)
    is_first = np.zeros(n, dtype=bool)
    step_scale = np.ones(n, dtype=np.float64)
    conflict_ids: list = []
    seen: set = set()

    for i in range(n):
        if i == 0 or groups[i] != groups[i - 1]:
            if groups[i] in seen:
                msg = f"conflict {groups[i]} is not contiguous; sort with order_panel() first"
                raise ValueError(msg)
            conflict_ids.append(groups[i])
            seen.add(groups[i])
            segment_start[i] = i
            is_first[i] = True
            continue

        segment_start[i] = segment_start[i - 1]
        gap = years[i] - years[i - 1]
        if gap == 0:
            msg = f"duplicate year {int(years[i])} in conflict {groups[i]}"
            raise ValueError(msg)
        if gap < 0:
            msg = f"years out of order in conflict {groups[i]}"
            raise ValueError(msg)
        step_scale[i] = np.sqrt(gap)

    return {
        "segment_start": segment_start,
        "is_first": is_first,
        "step_scale": step_scale,
        "conflict_ids": conflict_ids,
        "n_conflicts": len(conflict_ids),
    }


def prepare_dynamic_data(
    df: pl.DataFrame,
    sources: tuple[str, ...] | list[str],
    n_categories: int,
) -> tuple[pl.DataFrame, dict]:
    """Sort the panel and build the combined measurement + walk index dict.

    Returns:
        (ordered frame with ``__row_id``, data dict).  All indices in the
        dict refer to positions in the ordered frame.
    """
    ordered = order_panel(df)
    data = prepare_lvm_data(ordered, sources, n_categories)
    data.update(build_walk_index(ordered))
    data["row_id"] = ordered[ROW_ID_COL].to_numpy().astype(np.int64)
    return ordered, data


def restore_input_order(ordered: pl.DataFrame) -> pl.DataFrame:
    """Undo ``order_panel()``: sort back by ``__row_id`` and drop it."""
    return ordered.sort(ROW_ID_COL).drop(ROW_ID_COL)


def trajectory_lengths(data: dict) -> pl.DataFrame:
    """Number of years and span covered by each conflict's trajectory."""
    starts = np.flatnonzero(data["is_first"])
    ends = np.append(starts[1:], len(data["is_first"]))
    return pl.DataFrame(
        {
            "conflict": [str(c) for c in data["conflict_ids"]],
            "n_years": (ends - starts).astype(np.int64),
            "n_gaps": [
                int((data["step_scale"][s + 1 : e] > 1.0).sum()) for s, e in zip(starts, ends)
            ],
        }
    )
