"""
data_pipeline.py
----------------
Freddie Mac Single-Family Loan-Level Data Ingestion

Reads the raw origination (sample_orig_YYYY.txt) and servicing
(sample_svcg_YYYY.txt) files and the weekly FRED 30-year mortgage rate
series, and produces typed tables ready for panel construction.

Data source: Freddie Mac Single-Family Loan-Level Dataset (sample files)
Format: Pipe-delimited (|), no header row, one file per cohort year.

Column Selection:
    pandas.read_csv(usecols=[...]) returns the selected columns in their
    ON-DISK order, labelled by their 0-based position, regardless of the
    order in which they were requested. We therefore never rely on the
    returned order: each selected column is renamed through a
    position -> name map and the table is then reordered to the requested
    field order.

        Requested: loan_id (20), credit_score (1), orig_rate (13)
        Returned:  [0, 12, 19]
        Renamed:   [credit_score, orig_rate, loan_id]
        Reordered: [loan_id, credit_score, orig_rate]

Interim Cache:
    Each parsed file is saved as parquet in data/interim/ (keyed by its
    resolved path) and reloaded on later runs instead of re-parsing the
    text file. The cache is NOT
    invalidated automatically; delete data/interim/ after replacing raw
    files.
"""

import hashlib
import time
import warnings
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from artifact_store import write_csv, write_parquet
from pipeline_config import (
    ORIG_COLUMN_TYPES,
    ORIG_FIELD_POSITIONS,
    RECORD_KINDS,
    SENTINEL_VALUES,
    SVCG_COLUMN_TYPES,
    SVCG_FIELD_POSITIONS,
)


LAYOUTS = {
    "orig": (ORIG_FIELD_POSITIONS, ORIG_COLUMN_TYPES),
    "svcg": (SVCG_FIELD_POSITIONS, SVCG_COLUMN_TYPES),
}

KIND_LABELS = {
    "orig": "origination",
    "svcg": "performance",
}

_MISSING_STRINGS = ["", "NA", " "]


# ---------------------------------------------------------------------------
# FILE MANIFEST
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawFileManifest:
    """
    Explicit list of (kind, path) pairs for the raw files of one run.

    search_dirs records where the files were looked for, so that a missing
    kind can be reported with the locations that were actually checked.
    """

    entries: tuple = ()
    search_dirs: tuple = ()

    def __post_init__(self):
        for kind, _ in self.entries:
            if kind not in RECORD_KINDS:
                raise ValueError(f"Unknown record kind '{kind}' (expected one of {RECORD_KINDS})")

    def files(self, kind):
        return sorted(Path(path) for k, path in self.entries if k == kind)


def discover_raw_files(search_dirs):
    """
    Build a manifest from the files already placed in the raw directories.

    A .txt file is an origination file if its name contains "orig" and a
    servicing file if it contains "svcg" (sample_orig_2017.txt,
    sample_svcg_2017.txt). This matching belongs to the acquisition side;
    the loader only ever sees the resulting manifest.
    """
    entries = []
    seen = set()

    for directory in search_dirs:
        directory = Path(directory)
        if not directory.is_dir():
            continue
        for f in sorted(directory.iterdir()):
            if f.suffix != ".txt" or f.resolve() in seen:
                continue
            if "orig" in f.name:
                entries.append(("orig", f))
            elif "svcg" in f.name:
                entries.append(("svcg", f))
            else:
                continue
            seen.add(f.resolve())

    return RawFileManifest(
        entries=tuple(entries),
        search_dirs=tuple(Path(d) for d in search_dirs),
    )


def _missing_files_message(kind, search_dirs):
    label = KIND_LABELS[kind]
    locations = "\n".join(f"  - {d}" for d in search_dirs) or "  (none configured)"
    return (
        f"No {label} files found.\n"
        f"Download the Freddie Mac Single-Family Loan-Level sample dataset from\n"
        f"https://www.freddiemac.com/research/datasets/sf-loanlevel-dataset\n"
        f"and place the {label} files (sample_{kind}_YYYY.txt) in one of:\n"
        f"{locations}\n"
        f"Expected files: sample_{kind}_2016.txt, sample_{kind}_2017.txt, ..."
    )


# ---------------------------------------------------------------------------
# PARSING
# ---------------------------------------------------------------------------

def apply_column_types(df, column_types):
    """
    Coerce selected columns to their analytical types.

    Numeric coercion never raises: unparseable or blank cells become nulls.
    Layout sentinels (credit score 9999, LTV/DTI 999) become nulls as well.
    Every column without a numeric type is kept as a stripped string, with
    blanks turned into nulls. zb_code stays a string so "01" is never read
    as the number 1.
    """
    df = df.copy()

    for col in df.columns:
        if col in column_types:
            values = pd.to_numeric(df[col], errors="coerce")
            sentinels = SENTINEL_VALUES.get(col)
            if sentinels:
                values = values.mask(values.isin(sentinels))
            if column_types[col] == "Int64":
                values = values.round().astype("Int64")
            else:
                values = values.astype(column_types[col])
            df[col] = values
        else:
            values = df[col].astype("string").str.strip()
            df[col] = values.mask(values.eq("").fillna(False))

    return df


def read_pipe_file(filepath, field_positions, column_types=None, chunksize=500_000):
    """
    Read a header-less pipe-delimited file, keeping only the requested
    fields.

    Parameters
    ----------
    filepath : str or Path
        Raw text file.
    field_positions : dict
        Ordered mapping of field name -> 1-based column position.
    column_types : dict, optional
        Field name -> "Int64" or a numpy float dtype, applied after
        selection.

    Returns
    -------
    pd.DataFrame
        Columns named and ordered as in field_positions.
    """
    index_to_name = {position - 1: name for name, position in field_positions.items()}
    if len(index_to_name) != len(field_positions):
        raise ValueError("Two fields share the same column position")

    reader = pd.read_csv(
        filepath,
        sep="|",
        header=None,
        usecols=sorted(index_to_name),
        dtype=str,
        na_values=_MISSING_STRINGS,
        keep_default_na=False,
        skip_blank_lines=True,
        chunksize=chunksize,
    )

    chunks = []
    total_rows = 0
    for chunk_num, chunk in enumerate(reader, start=1):
        total_rows += len(chunk)
        chunks.append(chunk)
        if chunk_num % 10 == 0:
            print(f"    ...processed {total_rows:,} rows")

    df = pd.concat(chunks, ignore_index=True)

    # Columns come back labelled by original position in file order.
    df = df.rename(columns=index_to_name)
    df = df[list(field_positions)]

    return apply_column_types(df, column_types or {})


def verify_column_alignment(filepath, kind):
    """
    Read one row from a raw file and verify the column mapping.

    Runs before the bulk load so that a layout change is caught before
    minutes of parsing are spent on misaligned columns:
        - loan_id should be an alphanumeric sequence number (F17Q10000001)
        - origination: occupancy is P, S, I or 9; credit score 300-850 or 9999
        - servicing: reporting period is a YYYYMM integer
    """
    field_positions, _ = LAYOUTS[kind]
    index_to_name = {position - 1: name for name, position in field_positions.items()}

    print(f"  Verifying column alignment on first row of {Path(filepath).name}...")
    row = pd.read_csv(
        filepath,
        sep="|",
        header=None,
        nrows=1,
        usecols=sorted(index_to_name),
        dtype=str,
        keep_default_na=False,
    ).rename(columns=index_to_name).iloc[0]

    loan_id = str(row["loan_id"]).strip()
    if not (len(loan_id) >= 8 and loan_id.isalnum()):
        raise ValueError(
            f"Column alignment error: loan_id = '{loan_id}' (expected sequence number)"
        )

    if kind == "orig":
        occupancy = str(row["occupancy"]).strip()
        if occupancy not in ("P", "S", "I", "9"):
            raise ValueError(
                f"Column alignment error: occupancy = '{occupancy}' (expected P/S/I)"
            )
        score = pd.to_numeric(row["credit_score"], errors="coerce")
        if pd.notna(score) and not (300 <= score <= 850 or score == 9999):
            raise ValueError(
                f"Column alignment error: credit_score = {score} (expected 300-850)"
            )
        print(f"  Column alignment verified: loan_id={loan_id}, "
              f"occupancy={occupancy}, credit_score={row['credit_score']}")
    else:
        period = str(row["monthly_rpt_period"]).strip()
        if not (len(period) == 6 and period.isdigit() and 1 <= int(period[4:]) <= 12):
            raise ValueError(
                f"Column alignment error: monthly_rpt_period = '{period}' (expected YYYYMM)"
            )
        print(f"  Column alignment verified: loan_id={loan_id}, period={period}")

    return True


def interim_cache_path(filepath, config):
    """
    Interim parquet snapshot for one raw file.

    The name carries a digest of the resolved path: raw files are searched
    in several directories and two of them may hold the same file name.
    """
    filepath = Path(filepath)
    digest = hashlib.sha1(str(filepath.resolve()).encode("utf-8")).hexdigest()[:10]
    return Path(config.interim_dir) / f"{filepath.stem}_{digest}.parquet"


def load_records(manifest, kind, config):
    """
    Load every file of one kind from the manifest into a single table.

    Files are parsed one at a time (or reloaded from their interim parquet
    snapshot), collected, and concatenated once at the end.

    Raises
    ------
    FileNotFoundError
        If the manifest holds no file of this kind. There is no synthetic
        fallback; the run cannot continue without real data.
    """
    files = manifest.files(kind)
    if not files:
        raise FileNotFoundError(_missing_files_message(kind, manifest.search_dirs))

    field_positions, column_types = LAYOUTS[kind]
    label = KIND_LABELS[kind]
    print(f"  Found {len(files)} {label} files")

    frames = []
    for f in files:
        cache_path = interim_cache_path(f, config)

        if cache_path.exists():
            print(f"  {f.name}: loading interim snapshot {cache_path.name}")
            df = pd.read_parquet(cache_path)
        else:
            t_start = time.time()
            print(f"  Reading {label}: {f.name}")
            df = read_pipe_file(f, field_positions, column_types)
            print(f"    {len(df):,} rows, {df['loan_id'].nunique():,} loans "
                  f"in {time.time() - t_start:.1f} seconds")
            write_parquet(df, cache_path)

        frames.append(df)

    result = pd.concat(frames, ignore_index=True)
    print(f"  Total {label} records: {len(result):,}")
    return result


def load_origination_data(manifest, config):
    return load_records(manifest, "orig", config)


def load_performance_data(manifest, config):
    return load_records(manifest, "svcg", config)


# ---------------------------------------------------------------------------
# MARKET RATES (FRED MORTGAGE30US)
# ---------------------------------------------------------------------------

def fetch_mortgage_rate_series(fred_api_key, csv_path, series_id="MORTGAGE30US",
                               start_date="1971-04-02"):
    """
    Download the weekly 30-year fixed mortgage rate from FRED and save it
    as CSV (DATE, <series_id>). Skips the download when the CSV exists.
    """
    csv_path = Path(csv_path)
    if csv_path.exists():
        print(f"  FRED data already exists at {csv_path}")
        return csv_path

    from fredapi import Fred

    print(f"  Fetching {series_id} from FRED...")
    fred = Fred(api_key=fred_api_key)
    data = fred.get_series(series_id, observation_start=start_date)
    print(f"    Retrieved {len(data):,} observations")

    frame = data.rename(series_id).rename_axis("DATE").reset_index()
    write_csv(frame, csv_path)
    return csv_path


def load_mortgage_rates(csv_path, series_id="MORTGAGE30US"):
    """
    Load the weekly FRED series and average it to one row per month.

    FRED has exported the date column both as DATE and observation_date,
    and older exports mark missing weeks with ".". Missing weeks are
    dropped before averaging.

    Returns
    -------
    pd.DataFrame
        Columns: year_month (YYYYMM int), market_rate (percent).
    """
    raw = pd.read_csv(csv_path)

    if "DATE" in raw.columns:
        date_col = "DATE"
    elif "observation_date" in raw.columns:
        date_col = "observation_date"
    else:
        date_col = raw.columns[0]
    rate_col = series_id if series_id in raw.columns else raw.columns[-1]

    rates = pd.DataFrame({
        "date": pd.to_datetime(raw[date_col], errors="coerce"),
        "rate": pd.to_numeric(raw[rate_col], errors="coerce"),
    }).dropna()

    rates["year_month"] = rates["date"].dt.year * 100 + rates["date"].dt.month
    monthly = (
        rates.groupby("year_month", as_index=False)["rate"].mean()
        .rename(columns={"rate": "market_rate"})
    )
    monthly["year_month"] = monthly["year_month"].astype(np.int64)

    return monthly.sort_values("year_month").reset_index(drop=True)


# ---------------------------------------------------------------------------
# RAW DATA VALIDATION
# ---------------------------------------------------------------------------

def find_post_exit_records(perf):
    """
    Return servicing rows reported AFTER the loan's first zero-balance code.

    Panel construction assumes a loan leaves the pool at its first
    zero-balance code. Rows after that point are either data errors or
    reperforming loans and would give the loan a second chance to exit.
    """
    exits = perf.loc[perf["zb_code"].notna(), ["loan_id", "monthly_rpt_period"]]
    first_exit = exits.groupby("loan_id")["monthly_rpt_period"].min().rename("exit_period")

    timeline = perf[["loan_id", "monthly_rpt_period", "zb_code"]].merge(
        first_exit, left_on="loan_id", right_index=True, how="inner"
    )
    after = timeline["monthly_rpt_period"] > timeline["exit_period"]
    return timeline.loc[after.fillna(False)].reset_index(drop=True)


def find_duplicate_periods(perf):
    """Return rows whose (loan_id, monthly_rpt_period) key is not unique."""
    dup = perf.duplicated(subset=["loan_id", "monthly_rpt_period"], keep=False)
    return perf.loc[dup, ["loan_id", "monthly_rpt_period"]].reset_index(drop=True)


def validate_raw_data(orig, perf, config):
    """
    Audit the loaded origination and servicing tables before panel
    construction.

    Prints unique-loan counts and their overlap, prepayment event counts,
    and missing rates of the key columns. Checks the single-exit and
    unique-period invariants: violations are reported with a warning, or
    raise ValueError when config.strict_exit_invariant is set.

    Returns
    -------
    dict
        Summary counts.
    """
    print("\n" + "=" * 60)
    print("RAW DATA VALIDATION")
    print("=" * 60)

    orig_loans = set(orig["loan_id"].dropna())
    perf_loans = set(perf["loan_id"].dropna())
    common = orig_loans & perf_loans
    print(f"  Unique loans in origination: {len(orig_loans):,}")
    print(f"  Unique loans in performance: {len(perf_loans):,}")
    print(f"  Loans in both files:         {len(common):,}")

    zb = perf["zb_code"].astype("string").str.strip().str.zfill(2)
    n_prepays = int((zb == config.prepay_code).sum())
    print(f"  Prepayment events (zb_code={config.prepay_code}): {n_prepays:,}")
    if n_prepays == 0:
        warnings.warn("No prepayment events found. Check zb_code column parsing.")

    for col in ["loan_id", "monthly_rpt_period", "loan_age"]:
        if col in perf.columns and len(perf) > 0:
            missing_pct = 100 * perf[col].isna().mean()
            print(f"  {col:<22} {missing_pct:>6.2f}% missing")

    post_exit = find_post_exit_records(perf)
    duplicates = find_duplicate_periods(perf)

    problems = []
    if len(post_exit) > 0:
        problems.append(
            f"{len(post_exit):,} servicing rows for "
            f"{post_exit['loan_id'].nunique():,} loans reported after the "
            f"first zero-balance code"
        )
    if len(duplicates) > 0:
        problems.append(f"{len(duplicates):,} rows share a (loan_id, period) key")

    for problem in problems:
        if config.strict_exit_invariant:
            raise ValueError(f"Servicing invariant violated: {problem}")
        warnings.warn(f"Servicing invariant violated: {problem}")

    if not problems:
        print("  Single-exit and unique-period invariants hold")

    return {
        "orig_loans": len(orig_loans),
        "perf_loans": len(perf_loans),
        "common_loans": len(common),
        "prepay_events": n_prepays,
        "post_exit_rows": len(post_exit),
        "duplicate_rows": len(duplicates),
    }
