"""
Test Loan-Month Panel Construction on Synthetic Data
====================================================

Small in-memory origination / servicing / rate tables with known answers.

This script tests:
1. Join correctness (inner join on loan_id)
2. Prepayment flag under padded and unpadded zero balance codes
3. Missing market rate propagates to incentive and is dropped
4. COVID indicator boundaries (inclusive on both ends)
5. Loan age buckets, including age 0 and negative ages
6. Inputs are never modified
7. Tenor filter, duplicate keys and the period split
8. Stored panel keeps the zero balance code as a string

Author: Saurabh Chavan
"""

import sys
import tempfile
import time
import traceback
from pathlib import Path

import numpy as np
import pandas as pd
from pandas.errors import MergeError

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from artifact_store import write_parquet
from panel_engine import (
    assign_age_bucket,
    build_loan_month_panel,
    compute_covid_flag,
    compute_prepay_flag,
    derive_panel_features,
    select_covid_window,
    split_panel,
)
from pipeline_config import PipelineConfig


CONFIG = PipelineConfig()

# Counters
passed = 0
failed = 0


def check(condition, test_name, detail=""):
    """Report pass/fail for a single test."""
    global passed, failed
    if condition:
        passed += 1
        print(f"  PASS: {test_name}")
    else:
        failed += 1
        print(f"  FAIL: {test_name}")
    if detail:
        print(f"        {detail}")
    assert condition, test_name


# ---------------------------------------------------------------------------
# Synthetic tables
# ---------------------------------------------------------------------------

MONTHS = [202001, 202002, 202003, 202004]


def make_orig(loan_ids=("L1", "L2", "L3", "L5"), terms=None):
    n = len(loan_ids)
    return pd.DataFrame({
        "loan_id": pd.array(list(loan_ids), dtype="string"),
        "credit_score": pd.array([760, 700, 680, 720][:n], dtype="Int64"),
        "upb": [200000.0] * n,
        "ltv": pd.array([80, 90, 75, 60][:n], dtype="Int64"),
        "orig_rate": [4.5, 4.0, 3.75, 4.25][:n],
        "orig_term": pd.array(terms or [360] * n, dtype="Int64"),
        "dti": pd.array([35, 40, 30, 25][:n], dtype="Int64"),
        "state": pd.array(["CA", "TX", "NY", "FL"][:n], dtype="string"),
        "occupancy": pd.array(["P", "P", "I", "S"][:n], dtype="string"),
        "property_type": pd.array(["SF"] * n, dtype="string"),
    })


def make_perf(exit_code="01"):
    """L1 prepays in month 2 with no later rows; L2, L3 run 4 months; L4 has no origination."""
    rows = []
    for loan in ["L1", "L2", "L3", "L4"]:
        for age, period in enumerate(MONTHS, start=10):
            zb = None
            if loan == "L1" and period == 202002:
                zb = exit_code
            rows.append((loan, period, age, zb))
            if zb is not None:
                break
    return pd.DataFrame({
        "loan_id": pd.array([r[0] for r in rows], dtype="string"),
        "monthly_rpt_period": pd.array([r[1] for r in rows], dtype="Int64"),
        "current_upb": [150000.0] * len(rows),
        "loan_age": pd.array([r[2] for r in rows], dtype="Int64"),
        "zb_code": pd.array([r[3] for r in rows], dtype="string"),
        "current_rate": [4.5] * len(rows),
    })


def make_rates(months=MONTHS):
    return pd.DataFrame({
        "year_month": np.array(months, dtype=np.int64),
        "market_rate": [3.7, 3.5, 3.4, 3.3][:len(months)],
    })


# ===========================================================================
# TEST 1: Join correctness and exit scenario
# ===========================================================================
def test_join_and_exit_scenario():
    print("\n" + "=" * 70)
    print("TEST 1: Inner join and single prepayment exit")
    print("=" * 70)

    panel = build_loan_month_panel(make_orig(), make_perf(), make_rates(), CONFIG)

    check(len(panel) == 10, "3 loans x 4 months minus 2 post-exit months", f"rows={len(panel)}")
    loans = set(panel["loan_id"])
    check(loans == {"L1", "L2", "L3"}, "Only loans present in both sources", str(sorted(loans)))
    check("L4" not in loans, "Servicing-only loan produces no rows")
    check("L5" not in loans, "Origination-only loan produces no rows")

    events = panel.loc[panel["y"] == 1]
    check(len(events) == 1, "Exactly one prepayment event")
    check(events.iloc[0]["loan_id"] == "L1" and int(events.iloc[0]["monthly_rpt_period"]) == 202002,
          "Event is L1 in its exit month")
    check(panel.attrs["rows_dropped_missing"] == 0, "No rows dropped with complete rates")

    l2 = panel.loc[panel["loan_id"] == "L2"].sort_values("monthly_rpt_period")
    expected = [4.0 - r for r in [3.7, 3.5, 3.4, 3.3]]
    check(np.allclose(l2["incentive"].to_numpy(), expected), "incentive = orig_rate - market_rate")


# ===========================================================================
# TEST 2: Prepayment flag
# ===========================================================================
def test_prepay_flag():
    print("\n" + "=" * 70)
    print("TEST 2: Prepayment flag from zero balance code")
    print("=" * 70)

    codes = pd.Series(["01", "1", " 01", None, "02", "96"], dtype="string")
    flags = compute_prepay_flag(codes).tolist()
    check(flags == [1, 1, 1, 0, 0, 0], "Padded and unpadded '01' both flagged", str(flags))

    panel = build_loan_month_panel(make_orig(), make_perf(exit_code="1"), make_rates(), CONFIG)
    check(int(panel["y"].sum()) == 1, "Unpadded code in servicing gives the same event")


# ===========================================================================
# TEST 3: Missing market rate
# ===========================================================================
def test_missing_rate_propagation():
    print("\n" + "=" * 70)
    print("TEST 3: Missing market rate -> null incentive -> dropped")
    print("=" * 70)

    joined = make_perf().merge(make_orig(), on="loan_id", how="inner")
    joined = joined.merge(
        make_rates(MONTHS[:3])
        .rename(columns={"year_month": "monthly_rpt_period"})
        .astype({"monthly_rpt_period": "Int64"}),
        on="monthly_rpt_period", how="left",
    )
    features = derive_panel_features(joined, CONFIG)
    check((features["incentive"].isna() == features["market_rate"].isna()).all(),
          "incentive is null exactly where market_rate is null")
    check((features.loc[features["incentive"].isna(), "covid_incentive"] == 0).all(),
          "covid_incentive reads missing incentive as 0")

    panel = build_loan_month_panel(make_orig(), make_perf(), make_rates(MONTHS[:3]), CONFIG)
    check(panel["incentive"].notna().all(), "No null incentive survives")
    check(202004 not in set(panel["monthly_rpt_period"].astype(int)), "Rateless month removed")
    check(panel.attrs["rows_dropped_missing"] == 2, "Dropped row count recorded",
          f"dropped={panel.attrs['rows_dropped_missing']}")


# ===========================================================================
# TEST 4: COVID indicator
# ===========================================================================
def test_covid_boundaries():
    print("\n" + "=" * 70)
    print("TEST 4: COVID window boundaries")
    print("=" * 70)

    periods = pd.Series([202002, 202003, 202112, 202201], dtype="Int64")
    flags = compute_covid_flag(periods, CONFIG.covid_start, CONFIG.covid_end).tolist()
    check(flags == [0, 1, 1, 0], "202003 and 202112 inside, neighbours outside", str(flags))

    check(CONFIG.is_covid_period(202003) and CONFIG.is_covid_period(202112),
          "Config agrees on the boundary months")

    panel = build_loan_month_panel(make_orig(), make_perf(), make_rates(), CONFIG)
    in_window = panel["monthly_rpt_period"].astype(int).between(202003, 202112)
    check((panel["covid"] == in_window.astype(int)).all(), "Panel covid flag matches window")

    periods_frame = pd.DataFrame({
        "monthly_rpt_period": pd.array([202002, 202003, None, 202112, 202201], dtype="Int64"),
        "y": [0, 1, 0, 0, 1],
    })
    window = select_covid_window(periods_frame, CONFIG)
    check(window["monthly_rpt_period"].tolist() == [202003, 202112],
          "Window selection keeps boundary months and skips missing periods",
          str(window["monthly_rpt_period"].tolist()))
    window.loc[:, "y"] = 9
    check((periods_frame["y"] != 9).all(), "Window selection returns a copy")

# ===========================================================================
# TEST 5: Age buckets
# ===========================================================================
def test_age_buckets():
    print("\n" + "=" * 70)
    print("TEST 5: Loan age buckets")
    print("=" * 70)

    ages = pd.Series([-1, 0, 12, 13, 60, 61, None], dtype="Int64")
    buckets = assign_age_bucket(ages)
    expected = ["0-12", "0-12", "0-12", "13-24", "49-60", "60+"]
    check(buckets.iloc[:6].tolist() == expected, "Bucket edges", str(buckets.tolist()))
    check(pd.isna(buckets.iloc[6]), "Missing age stays missing")


# ===========================================================================
# TEST 6: No mutation of inputs
# ===========================================================================
def test_inputs_unchanged():
    print("\n" + "=" * 70)
    print("TEST 6: Inputs are not modified")
    print("=" * 70)

    orig, perf, rates = make_orig(), make_perf(), make_rates()
    orig_before, perf_before, rates_before = orig.copy(), perf.copy(), rates.copy()

    panel = build_loan_month_panel(orig, perf, rates, CONFIG)
    check(orig.equals(orig_before), "Origination table unchanged")
    check(perf.equals(perf_before), "Servicing table unchanged")
    check(rates.equals(rates_before), "Rate table unchanged")

    splits = split_panel(panel, CONFIG)
    splits["validation"]["y"] = 99
    check(not (panel["y"] == 99).any(), "Split frames are independent copies")


# ===========================================================================
# TEST 7: Tenor filter, duplicates, split
# ===========================================================================
def test_filters_and_split():
    print("\n" + "=" * 70)
    print("TEST 7: Tenor filter, duplicate keys and period split")
    print("=" * 70)

    orig = make_orig(terms=[360, 180, 360, 360])
    panel = build_loan_month_panel(orig, make_perf(), make_rates(), CONFIG)
    check("L2" not in set(panel["loan_id"]), "180-month loan excluded")

    no_term = make_orig().drop(columns=["orig_term"])
    panel = build_loan_month_panel(no_term, make_perf(), make_rates(), CONFIG)
    check(panel["loan_id"].nunique() == 3, "Tenor filter skipped without orig_term")

    all_na_term = make_orig().assign(orig_term=pd.array([pd.NA] * 4, dtype="Int64"))
    panel = build_loan_month_panel(all_na_term, make_perf(), make_rates(), CONFIG)
    check(panel["loan_id"].nunique() == 3, "Tenor filter skipped when orig_term is all missing")

    dup_orig = pd.concat([make_orig(), make_orig(("L1",))], ignore_index=True)
    try:
        build_loan_month_panel(dup_orig, make_perf(), make_rates(), CONFIG)
        raised = False
    except MergeError:
        raised = True
    check(raised, "Repeated origination loan_id raises MergeError")

    panel = pd.DataFrame({
        "monthly_rpt_period": pd.array([201912, 202001, 202012, 202201, 202305], dtype="Int64"),
        "y": [0, 0, 1, 0, 0],
    })
    splits = split_panel(panel, CONFIG)
    check(splits["train"]["monthly_rpt_period"].tolist() == [201912], "Train before 202001")
    check(splits["validation"]["monthly_rpt_period"].tolist() == [202001, 202012],
          "Validation 202001-202112")
    check(splits["test"]["monthly_rpt_period"].tolist() == [202201, 202305], "Test from 202201")


# ===========================================================================
# TEST 8: Persisted panel keeps codes as strings
# ===========================================================================
def test_zero_balance_code_round_trip():
    print("\n" + "=" * 70)
    print("TEST 8: zb_code survives a parquet round trip as a string")
    print("=" * 70)

    panel = build_loan_month_panel(make_orig(), make_perf(), make_rates(), CONFIG)

    with tempfile.TemporaryDirectory() as tmp:
        path = write_parquet(panel, Path(tmp) / "loan_month_panel.parquet")
        back = pd.read_parquet(path)

    check(pd.api.types.is_string_dtype(back["zb_code"]), "zb_code read back as strings",
          str(back["zb_code"].dtype))
    codes = back["zb_code"].dropna().tolist()
    check(codes == ["01"], "Exit code still '01'", str(codes))
    check((back["y"] == compute_prepay_flag(back["zb_code"])).all(),
          "Prepay flag reproducible from the stored code")


# ===========================================================================
# MAIN
# ===========================================================================
if __name__ == "__main__":
    print("=" * 70)
    print("PREPAYMENT HAZARD STUDY - PANEL ENGINE TEST SUITE")
    print("=" * 70)

    t_start = time.time()

    for test in [
        test_join_and_exit_scenario,
        test_prepay_flag,
        test_missing_rate_propagation,
        test_covid_boundaries,
        test_age_buckets,
        test_inputs_unchanged,
        test_filters_and_split,
        test_zero_balance_code_round_trip,
    ]:
        try:
            test()
        except AssertionError:
            pass
        except Exception:
            failed += 1
            traceback.print_exc()

    elapsed = time.time() - t_start

    print("\n" + "=" * 70)
    print("TEST RESULTS")
    print("=" * 70)
    print(f"  Passed:   {passed}")
    print(f"  Failed:   {failed}")
    print(f"  Time:     {elapsed:.1f} seconds")

    if failed == 0:
        print("\n  ALL TESTS PASSED.")
    else:
        print(f"\n  {failed} TEST(S) FAILED.")

    sys.exit(0 if failed == 0 else 1)
