"""Pipe-delimited CSV input/output for SVAC panel data and LVM estimates."""

from pathlib import Path

import polars as pl

from svac_lvm.config import DELIMITER, NA_TOKEN


def prevalence_column(source: str) -> str:
    """Column holding a source's prevalence code, e.g. ``state`` -> ``state_prev``."""
    return f"{source}_prev"


def _prevalence_to_int(df: pl.DataFrame) -> pl.DataFrame:
    """Cast ``*_prev`` columns to Int64 where that loses nothing.

    All-null columns and floats holding whole numbers are cast.  Anything else
    (text, fractional codes) is left for validate_prevalence to reject.
    """
    casts = []
    for col in df.columns:
        if not col.endswith("_prev"):
            continue
        series = df[col]
        if series.null_count() == series.len():
            casts.append(pl.col(col).cast(pl.Int64))
        elif series.dtype.is_float():
            observed = series.drop_nulls().drop_nans()
            if (observed == observed.round(0)).all():
                casts.append(pl.col(col).fill_nan(None).cast(pl.Int64))
    return df.with_columns(casts) if casts else df


def read_svac_csv(path: Path | str) -> pl.DataFrame:
    """Read a pipe-delimited SVAC file. ``NA`` and empty fields become null.

    Prevalence columns (``*_prev``) come back as Int64 whenever their values
    are whole numbers, including columns with no observed value at all.
    """
    path = Path(path)
    if not path.exists():
        msg = f"input file not found: {path}"
        raise FileNotFoundError(msg)
    df = pl.read_csv(
        path,
        separator=DELIMITER,
        null_values=[NA_TOKEN, ""],
        infer_schema_length=None,
    )
    return _prevalence_to_int(df)


def write_svac_csv(df: pl.DataFrame, path: Path | str) -> Path:
    """Write a frame as pipe-delimited CSV with a header and ``NA`` for nulls."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.write_csv(path, separator=DELIMITER, null_value=NA_TOKEN)
    return path


def validate_prevalence(
    df: pl.DataFrame,
    sources: tuple[str, ...] | list[str],
    n_categories: int,
) -> pl.DataFrame:
    """Check the prevalence columns and return the frame with them cast to Int64.

    Every source column must exist, be numeric, hold whole numbers in
    ``[0, n_categories - 1]`` (nulls allowed) and have at least one observed
    value.
    """
    cols = [prevalence_column(s) for s in sources]
    missing = [c for c in cols if c not in df.columns]
    if missing:
        msg = f"input is missing prevalence column(s): {', '.join(missing)}"
        raise ValueError(msg)

    casts = []
    for col in cols:
        series = df[col]
        if not series.dtype.is_numeric():
            msg = f"column '{col}' must be numeric, got {series.dtype}"
            raise ValueError(msg)

        observed = series.drop_nulls().drop_nans() if series.dtype.is_float() else series.drop_nulls()
        if observed.len() == 0:
            msg = f"column '{col}' has no observed values"
            raise ValueError(msg)

        if series.dtype.is_float() and (observed != observed.round(0)).any():
            msg = f"column '{col}' contains non-integer prevalence codes"
            raise ValueError(msg)

        lo, hi = observed.min(), observed.max()
        if lo < 0 or hi > n_categories - 1:
            msg = (
                f"column '{col}' has values outside [0, {n_categories - 1}] "
                f"(min={lo}, max={hi})"
            )
            raise ValueError(msg)

        if series.dtype.is_float():
            casts.append(pl.col(col).fill_nan(None).cast(pl.Int64))
        else:
            casts.append(pl.col(col).cast(pl.Int64))

    return df.with_columns(casts)
