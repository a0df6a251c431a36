"""
aggregate_series.py
-------------------
Collapses the loan-month panel into monthly portfolio time series.

One row per reporting month:
    prepay_count   number of prepayment events (sum of y)
    alive_count    number of loans observed that month
    market_rate    the month's market mortgage rate
    avg_incentive  mean refinancing incentive over loans with a value
    prepay_rate    prepay_count / alive_count

The market rate is the same for every loan in a month (it is joined by
month), so the first non-missing value is taken rather than a mean.
"""

import numpy as np
import pandas as pd


PERIOD_ORDER = ["Pre-COVID", "COVID", "Post-COVID"]


def compute_aggregate_series(panel):
    """
    Compute the monthly aggregate prepayment series, sorted by period.
    """
    print("Computing aggregate series...")

    agg = (
        panel.groupby("monthly_rpt_period", sort=True)
        .agg(
            prepay_count=("y", "sum"),
            alive_count=("y", "size"),
            market_rate=("market_rate", "first"),   # first non-missing
            avg_incentive=("incentive", "mean"),    # skips missing
        )
        .reset_index()
    )

    agg["prepay_count"] = agg["prepay_count"].astype(np.int64)
    agg["alive_count"] = agg["alive_count"].astype(np.int64)
    agg["prepay_rate"] = agg["prepay_count"] / agg["alive_count"]

    agg = agg.sort_values("monthly_rpt_period").reset_index(drop=True)
    print(f"  Aggregate series: {len(agg):,} months")

    return agg


def classify_period(periods, config):
    """Label YYYYMM periods as Pre-COVID, COVID or Post-COVID."""
    periods = pd.Series(periods)
    labels = np.where(
        periods < config.covid_start, "Pre-COVID",
        np.where(periods <= config.covid_end, "COVID", "Post-COVID"),
    )
    return pd.Series(labels, index=periods.index)


def summarize_by_period(panel, agg, config):
    """
    Compare prepayment before, during and after the COVID window.

    weighted_rate is the portfolio rate (events / loan-months over the
    whole window); simple_rate is the unweighted mean of the monthly rates.
    Rates are in percent.
    """
    panel_period = classify_period(panel["monthly_rpt_period"].astype("int64"), config)
    agg_period = classify_period(agg["monthly_rpt_period"].astype("int64"), config)

    rows = []
    for period in PERIOD_ORDER:
        sub_agg = agg.loc[agg_period == period]
        if len(sub_agg) == 0:
            continue
        sub_y = panel.loc[panel_period == period, "y"]

        rows.append({
            "period_type": period,
            "n_months": len(sub_agg),
            "weighted_rate": 100 * sub_y.mean(),
            "simple_rate": 100 * sub_agg["prepay_rate"].mean(),
            "mean_market_rate": sub_agg["market_rate"].mean(),
            "mean_incentive": sub_agg["avg_incentive"].mean(),
            "total_prepays": int(sub_agg["prepay_count"].sum()),
        })

    summary = pd.DataFrame(rows)

    print("\n  Prepayment by period:")
    for _, row in summary.iterrows():
        print(f"    {row['period_type']:<11s} months={row['n_months']:>3d}  "
              f"weighted={row['weighted_rate']:.3f}%  simple={row['simple_rate']:.3f}%  "
              f"prepays={row['total_prepays']:,}")

    return summary
