"""
Panel Construction Module for the Prepayment Hazard Study
=========================================================

Converts loan-level origination records and loan-month servicing records
into a single loan-month panel suitable for discrete-time hazard modeling.

The transformation follows this logic:
- Each output row is one loan observed in one reporting month
- The row universe is the INNER join of servicing and origination on
  loan_id: loans present in only one source are out of scope
- The market mortgage rate is LEFT-joined by reporting month, so months
  without a rate keep their rows (with a null rate) until the final drop
- Covariates are derived with vectorized column expressions
- Rows missing any critical field are dropped, never imputed

The inputs are never modified: every step works on a new frame, so the
origination and servicing tables can be shared with other consumers while
the panel is built.

Author: Saurabh Chavan
"""

import time

import numpy as np
import pandas as pd


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ORIG_PANEL_COLS = [
    "loan_id", "credit_score", "upb", "ltv", "orig_rate", "orig_term",
    "dti", "state", "occupancy", "property_type",
]

# Loan-level attributes carried onto every loan-month row.
ORIG_JOIN_COLS = [
    "loan_id", "orig_rate", "credit_score", "ltv", "dti",
    "occupancy", "state", "property_type",
]

PERF_PANEL_COLS = [
    "loan_id", "monthly_rpt_period", "current_upb", "loan_age",
    "zb_code", "current_rate",
]

# Rows missing any of these are dropped in the final step.
CRITICAL_COLS = ["loan_id", "monthly_rpt_period", "y", "incentive", "loan_age"]

# Loan age buckets (months). The lowest bucket is open below, so age 0 and
# anomalous negative ages fall into "0-12" rather than becoming null.
AGE_BINS = [-np.inf, 12, 24, 36, 48, 60, np.inf]
AGE_LABELS = ["0-12", "13-24", "25-36", "37-48", "49-60", "60+"]


# ---------------------------------------------------------------------------
# Vectorized feature derivations
# ---------------------------------------------------------------------------

def compute_prepay_flag(zb_code, prepay_code="01"):
    """
    Prepayment indicator from the zero balance code.

    Freddie Mac files carry the code as "01", but a round trip through a
    numeric parser leaves "1". Both are normalized to two characters
    before comparing. Missing codes mean the loan is still active (y=0).
    """
    normalized = zb_code.astype("string").str.strip().str.zfill(2)
    return (normalized == prepay_code).fillna(False).astype(np.int64)


def compute_covid_flag(periods, covid_start, covid_end):
    """1 when covid_start <= period <= covid_end (both ends inclusive)."""
    in_window = (periods >= covid_start) & (periods <= covid_end)
    return in_window.fillna(False).astype(np.int64)


def assign_age_bucket(loan_age):
    """Bucket loan age into 12-month bands; null age stays null."""
    buckets = pd.cut(
        pd.to_numeric(loan_age, errors="coerce").astype("float64"),
        bins=AGE_BINS,
        labels=AGE_LABELS,
    )
    # Plain strings for parquet round trips.
    return buckets.astype("string")


def derive_panel_features(panel, config):
    """
    Add the computed PanelRow fields to a joined loan-month frame.

    y               = 1 if the zero balance code is the prepayment code
    incentive       = orig_rate - market_rate (null if market rate is null)
    covid           = 1 inside the COVID window
    covid_incentive = covid * incentive, with missing incentive read as 0
    age_bucket      = loan age band
    """
    panel = panel.copy()

    panel["y"] = compute_prepay_flag(panel["zb_code"], config.prepay_code)

    panel["incentive"] = (
        panel["orig_rate"].astype("float64") - panel["market_rate"].astype("float64")
    )

    panel["covid"] = compute_covid_flag(
        panel["monthly_rpt_period"], config.covid_start, config.covid_end
    )

    panel["covid_incentive"] = panel["covid"] * panel["incentive"].fillna(0.0)

    panel["age_bucket"] = assign_age_bucket(panel["loan_age"])

    return panel


# ---------------------------------------------------------------------------
# Panel construction
# ---------------------------------------------------------------------------

def select_target_cohort(orig, target_term):
    """
    Restrict origination records to the target tenor (360-month FRM).

    If the table has no orig_term column, or the column is entirely
    missing, the filter is skipped and the table is returned unchanged.
    """
    if "orig_term" not in orig.columns or orig["orig_term"].isna().all():
        print("    No usable orig_term column, tenor filter skipped")
        return orig

    keep = (orig["orig_term"] == target_term).fillna(False).astype(bool)
    return orig.loc[keep].copy()


def build_loan_month_panel(orig, perf, macro, config):
    """
    Construct the loan-month panel with all covariates for hazard modeling.

    Steps (order matters):
        1. Project origination to the needed columns, keep the target tenor
        2. Project servicing to the needed columns
        3. Inner-join servicing to origination on loan_id
        4. Left-join the monthly market rate on reporting period
        5. Derive y, incentive, covid, covid_incentive, age_bucket
        6. Drop rows missing any critical field

    Parameters
    ----------
    orig : pd.DataFrame
        Origination records, one row per loan.
    perf : pd.DataFrame
        Servicing records, one row per loan per reporting month.
    macro : pd.DataFrame
        Monthly market rate with columns year_month, market_rate.
    config : PipelineConfig

    Returns
    -------
    pd.DataFrame
        Loan-month panel. panel.attrs["rows_dropped_missing"] holds the
        number of rows removed in step 6.

    Raises
    ------
    pandas.errors.MergeError
        If origination repeats a loan_id or the rate table repeats a month.
    """
    print(f"\n{'='*70}")
    print("Building loan-month panel")
    print(f"{'='*70}")
    t_start = time.time()

    # ------------------------------------------------------------------
    # Step 1: Prepare origination data
    # ------------------------------------------------------------------
    t0 = time.time()
    print("  Step 1: Filtering origination data...")
    orig_cols = [c for c in ORIG_PANEL_COLS if c in orig.columns]
    orig_subset = orig.loc[:, orig_cols].copy()
    print(f"    Origination records: {len(orig_subset):,}")

    orig_subset = select_target_cohort(orig_subset, config.target_term)
    print(f"    After {config.target_term}-month term filter: {len(orig_subset):,} loans")
    print(f"    Step 1 done in {time.time() - t0:.1f}s")

    # ------------------------------------------------------------------
    # Step 2: Prepare servicing data
    # ------------------------------------------------------------------
    t0 = time.time()
    print("  Step 2: Preparing performance data...")
    perf_cols = [c for c in PERF_PANEL_COLS if c in perf.columns]
    perf_subset = perf.loc[:, perf_cols].copy()
    print(f"    Performance records: {len(perf_subset):,}")
    print(f"    Step 2 done in {time.time() - t0:.1f}s")

    # ------------------------------------------------------------------
    # Step 3: Inner join on loan_id
    # ------------------------------------------------------------------
    # Loans with servicing rows but no origination record (or the reverse)
    # are excluded here on purpose.
    t0 = time.time()
    print("  Step 3: Joining performance with origination (inner)...")
    loan_attrs = orig_subset.loc[:, [c for c in ORIG_JOIN_COLS if c in orig_subset.columns]]
    panel = perf_subset.merge(
        loan_attrs, on="loan_id", how="inner", validate="many_to_one"
    )
    print(f"    After join: {len(panel):,} rows, {panel['loan_id'].nunique():,} loans")
    print(f"    Step 3 done in {time.time() - t0:.1f}s")

    # ------------------------------------------------------------------
    # Step 4: Left join market rates
    # ------------------------------------------------------------------
    t0 = time.time()
    print("  Step 4: Joining with FRED rates...")
    rates = macro.loc[:, ["year_month", "market_rate"]].rename(
        columns={"year_month": "monthly_rpt_period"}
    )
    rates["monthly_rpt_period"] = rates["monthly_rpt_period"].astype("Int64")
    panel["monthly_rpt_period"] = panel["monthly_rpt_period"].astype("Int64")
    panel = panel.merge(
        rates, on="monthly_rpt_period", how="left", validate="many_to_one"
    )
    n_unmatched = int(panel["market_rate"].isna().sum())
    print(f"    Rows without a market rate: {n_unmatched:,}")
    print(f"    Step 4 done in {time.time() - t0:.1f}s")

    # ------------------------------------------------------------------
    # Step 5: Feature engineering
    # ------------------------------------------------------------------
    t0 = time.time()
    print("  Step 5: Feature engineering (vectorized)...")
    panel = derive_panel_features(panel, config)
    print(f"    Step 5 done in {time.time() - t0:.1f}s")

    # ------------------------------------------------------------------
    # Step 6: Drop rows with missing critical variables
    # ------------------------------------------------------------------
    t0 = time.time()
    print("  Step 6: Dropping missing values...")
    initial_rows = len(panel)
    panel = panel.dropna(subset=CRITICAL_COLS).reset_index(drop=True)
    n_dropped = initial_rows - len(panel)
    print(f"    Dropped {n_dropped:,} of {initial_rows:,} rows with missing values")
    print(f"    Step 6 done in {time.time() - t0:.1f}s")

    panel.attrs["rows_dropped_missing"] = n_dropped

    print(f"  Panel construction complete in {time.time() - t_start:.1f}s")
    print(f"    Final panel: {len(panel):,} loan-month observations")
    if len(panel) > 0:
        print(f"    Unique loans: {panel['loan_id'].nunique():,}")
        print(f"    Time range: {panel['monthly_rpt_period'].min()} to "
              f"{panel['monthly_rpt_period'].max()}")
        print(f"    Prepayment events: {int(panel['y'].sum()):,}")

    return panel


def split_panel(panel, config):
    """
    Split the panel by reporting period into train, validation and test.

    Returns
    -------
    dict
        "train", "validation", "test" -> independent DataFrame copies.
    """
    period = panel["monthly_rpt_period"]
    in_train = (period < config.train_cutoff).fillna(False).astype(bool)
    in_test = (period >= config.val_cutoff).fillna(False).astype(bool)
    in_val = (~in_train) & (~in_test) & period.notna()

    splits = {
        "train": panel.loc[in_train].copy(),
        "validation": panel.loc[in_val].copy(),
        "test": panel.loc[in_test].copy(),
    }

    print("  Data split:")
    print(f"    Train (< {config.train_cutoff}):      {len(splits['train']):>12,} observations")
    print(f"    Validation (< {config.val_cutoff}): {len(splits['validation']):>12,} observations")
    print(f"    Test (>= {config.val_cutoff}):      {len(splits['test']):>12,} observations")

    return splits


def select_covid_window(panel, config):
    """Copy of the panel rows whose reporting period lies in the COVID window."""
    in_window = compute_covid_flag(panel["monthly_rpt_period"], config.covid_start, config.covid_end)
    return panel.loc[in_window == 1].copy()
