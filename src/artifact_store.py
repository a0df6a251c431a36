"""
artifact_store.py
-----------------
Reading and writing of pipeline artifacts.

Large loan-month tables are stored as parquet (pyarrow engine), small
summary tables as CSV, fitted models with joblib. Every write goes to a
temporary file in the destination directory and is then renamed over the
target, so a failed write never leaves a partial artifact behind.
"""

import os
import tempfile
from pathlib import Path

import joblib
import pandas as pd


def _atomic_write(path, writer):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        writer(tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


def write_parquet(df, path):
    """Write a DataFrame to parquet atomically and report its size."""
    path = _atomic_write(
        path, lambda tmp: df.to_parquet(tmp, engine="pyarrow", index=False)
    )
    size_mb = path.stat().st_size / (1024 * 1024)
    print(f"  Saved {path.name}: {len(df):,} rows, {size_mb:,.1f} MB")
    return path


def write_csv(df, path, index=False):
    """Write a summary table to CSV atomically."""
    path = _atomic_write(path, lambda tmp: df.to_csv(tmp, index=index))
    print(f"  Saved {path.name}: {len(df):,} rows")
    return path


def write_joblib(obj, path):
    return _atomic_write(path, lambda tmp: joblib.dump(obj, tmp))


def require_artifact(path, producing_stage):
    """
    Fail fast when a later stage runs before the stage that produces its
    input.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(
            f"Required artifact not found: {path}. "
            f"Run {producing_stage} first."
        )
    return path


def read_parquet(path, producing_stage, columns=None):
    return pd.read_parquet(require_artifact(path, producing_stage), columns=columns)


def read_csv(path, producing_stage, **kwargs):
    return pd.read_csv(require_artifact(path, producing_stage), **kwargs)


def read_joblib(path, producing_stage):
    return joblib.load(require_artifact(path, producing_stage))
