"""
Decomposition and Quantification Engine
=======================================

Scenario calculations on fitted hazard coefficients:

1. Counterfactual zeroing: predict the COVID-period hazard with and
   without selected interaction terms in the linear predictor. The
   coefficients are left alone; the excluded terms simply contribute
   nothing. The gap measures how much those terms moved prepayment.

2. Baseline excess: predict with the baseline (pre-break) coefficients
   only, as if no structural break happened. excess = y - p_baseline,
   averaged within a group (region, occupancy, month), is the part of
   observed prepayment the baseline model cannot explain.

3. Weighted decomposition: split the overall excess into the part
   attributable to selected groups deviating from the overall excess,
   weighted by their share of observations, plus a residual.

All probabilities use the logistic sigmoid. Rates in the output tables are
in percent.

Author: Saurabh Chavan
"""

import warnings

import numpy as np
import pandas as pd

from hazard_model import (
    BEHAVIORAL_TERMS,
    INTERCEPT,
    add_behavioral_interactions,
    canonical_term_name,
)


# Interaction terms whose effect the counterfactual removes.
BIAS_TERMS = ["covid_loan_age", "covid_credit_score"]

# State groups by 2020-2021 net domestic migration.
HOT_STATES = ["FL", "TX", "AZ", "NV", "ID", "NC", "TN", "SC", "GA"]   # Sunbelt + Idaho
COLD_STATES = ["CA", "NY", "IL", "MA", "NJ", "CT"]                   # high cost, high density

HOT_LABEL = "Hot/Inflow"
COLD_LABEL = "Cold/Outflow"
OTHER_LABEL = "Other"

VALID_OCCUPANCY = ["P", "S", "I"]   # primary, second home, investment


# ---------------------------------------------------------------------------
# Coefficients and linear predictor
# ---------------------------------------------------------------------------

def sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def coefficients_from_table(table):
    """
    Build a term -> estimate mapping from a coefficient table (as written to
    m*_coefficients.csv). Intercept labels are canonicalized, so tables
    written with "(Intercept)" or "const" read the same as new ones.
    """
    return {
        canonical_term_name(term): float(estimate)
        for term, estimate in zip(table["term"], table["estimate"])
    }


def lookup_coefficient(coefs, term):
    """
    Coefficient for a term, or 0.0 with a warning when the table does not
    have it. A simpler nested model legitimately lacks the interaction
    terms, so this never raises.
    """
    key = canonical_term_name(term)
    if key in coefs:
        return float(coefs[key])

    warnings.warn(f"Coefficient for '{term}' not found, assuming 0.0", UserWarning)
    return 0.0


def linear_predictor(coefs, df, terms=None, exclude=()):
    """
    Intercept + sum of coefficient * column over terms, skipping any term
    in exclude.

    Parameters
    ----------
    coefs : dict
        term -> estimate.
    df : pd.DataFrame
    terms : list of str, optional
        Covariates to include. Defaults to every non-intercept term in coefs.
    exclude : iterable of str
        Terms whose contribution is set to zero.

    Returns
    -------
    pd.Series
        Linear predictor, NaN where an included covariate is missing.
    """
    if terms is None:
        terms = [t for t in coefs if t != INTERCEPT]
    exclude = {canonical_term_name(t) for t in exclude}
    active = [t for t in terms if canonical_term_name(t) not in exclude]

    if any(t in BEHAVIORAL_TERMS and t not in df.columns for t in active):
        df = add_behavioral_interactions(df)

    eta = pd.Series(lookup_coefficient(coefs, INTERCEPT), index=df.index, dtype="float64")
    for term in active:
        eta = eta + lookup_coefficient(coefs, term) * df[term].astype("float64")
    return eta


def predict_scenario(coefs, df, terms=None, exclude=()):
    """Per-row probability under one scenario."""
    return sigmoid(linear_predictor(coefs, df, terms=terms, exclude=exclude))


# ---------------------------------------------------------------------------
# Counterfactual zeroing
# ---------------------------------------------------------------------------

def counterfactual_impact(coefs, subpanel, bias_terms=BIAS_TERMS, terms=None):
    """
    Compare the mean monthly prepayment rate with and without bias_terms.

    Scenario A keeps every term; scenario B drops bias_terms from the
    linear predictor. Rows where either scenario is undefined (missing
    covariate) are left out of both means.

    Returns
    -------
    dict
        rate_with_bias, rate_without_bias (percent), difference (percentage
        points, A - B), relative_change_pct (difference relative to B),
        n_obs.
    """
    prob_a = predict_scenario(coefs, subpanel, terms=terms)
    prob_b = predict_scenario(coefs, subpanel, terms=terms, exclude=bias_terms)

    scored = prob_a.notna() & prob_b.notna()
    rate_a = 100 * prob_a[scored].mean()
    rate_b = 100 * prob_b[scored].mean()
    diff = rate_a - rate_b
    rel_change = 100 * diff / rate_b if rate_b else np.nan

    return {
        "rate_with_bias": float(rate_a),
        "rate_without_bias": float(rate_b),
        "difference": float(diff),
        "relative_change_pct": float(rel_change),
        "n_obs": int(scored.sum()),
    }


def quantification_table(impact):
    """The counterfactual result as a metric/value table."""
    return pd.DataFrame({
        "metric": [
            "Rate Actual (Scenario A)",
            "Rate NoBias (Scenario B)",
            "Difference",
            "Relative Impact %",
        ],
        "value": [
            impact["rate_with_bias"],
            impact["rate_without_bias"],
            impact["difference"],
            impact["relative_change_pct"],
        ],
    })


# ---------------------------------------------------------------------------
# Baseline excess
# ---------------------------------------------------------------------------

def baseline_excess(coefs, subpanel, baseline_terms):
    """
    Add the baseline-only probability and the excess to a copy of subpanel.

        p_baseline = sigmoid(Intercept + sum over baseline_terms)
        excess     = y - p_baseline

    Rows without a baseline prediction (missing covariate) are dropped and
    counted.
    """
    df = subpanel.copy()
    df["p_baseline"] = predict_scenario(coefs, df, terms=baseline_terms)

    n_before = len(df)
    df = df.loc[df["p_baseline"].notna()].copy()
    n_dropped = n_before - len(df)
    if n_dropped:
        print(f"    Dropped {n_dropped:,} of {n_before:,} rows without a baseline prediction")

    df["excess"] = df["y"].astype("float64") - df["p_baseline"]
    return df


def assign_region_group(states):
    """Label each state Hot/Inflow, Cold/Outflow or Other."""
    states = pd.Series(states).astype("string").str.strip()
    labels = np.where(
        states.isin(HOT_STATES).fillna(False), HOT_LABEL,
        np.where(states.isin(COLD_STATES).fillna(False), COLD_LABEL, OTHER_LABEL),
    )
    return pd.Series(labels, index=states.index)


def excess_by_group(df, group_col, sort_by_excess=True):
    """
    Observed, expected and excess rates (percent) and counts per group.

    df must carry y, p_baseline and excess (see baseline_excess). Grouping
    by monthly_rpt_period gives the excess over time; pass
    sort_by_excess=False to keep chronological order.
    """
    stats = (
        df.groupby(group_col, sort=True)
        .agg(
            obs_rate=("y", "mean"),
            exp_rate=("p_baseline", "mean"),
            excess_rate=("excess", "mean"),
            count=("y", "size"),
        )
        .reset_index()
    )

    for col in ["obs_rate", "exp_rate", "excess_rate"]:
        stats[col] = 100 * stats[col].astype("float64")

    if sort_by_excess:
        stats = stats.sort_values("excess_rate", ascending=False).reset_index(drop=True)
    return stats


def occupancy_subset(df):
    """Rows with a recognized occupancy code (P, S, I)."""
    keep = df["occupancy"].astype("string").isin(VALID_OCCUPANCY).fillna(False).astype(bool)
    return df.loc[keep]


# ---------------------------------------------------------------------------
# Weighted decomposition
# ---------------------------------------------------------------------------

def weighted_excess_decomposition(df, group_col, groups):
    """
    Split the overall excess into a group component and a residual.

        overall      = mean excess over all rows (percent)
        contribution = sum over g in groups of
                       (n_g / n_total) * (excess_g - overall)
        residual     = overall - contribution

    This is a linear accounting identity: it attributes the part of the
    overall excess carried by the selected groups being above or below the
    average. It is not a causal estimate of what the groups caused.

    Returns
    -------
    dict
        overall_excess, contribution, residual, n_total, and per-group
        share/excess entries.
    """
    n_total = len(df)
    if n_total == 0:
        raise ValueError("Cannot decompose excess over an empty sample")

    overall = 100 * df["excess"].mean()

    group_labels = df[group_col]
    contribution = 0.0
    per_group = {}
    for g in groups:
        sub = df.loc[(group_labels == g).fillna(False).astype(bool), "excess"]
        share = len(sub) / n_total
        excess_g = 100 * sub.mean() if len(sub) else 0.0
        contribution += share * (excess_g - overall)
        per_group[g] = {"share": share, "excess": excess_g, "count": len(sub)}

    return {
        "overall_excess": float(overall),
        "contribution": float(contribution),
        "residual": float(overall - contribution),
        "n_total": n_total,
        "groups": per_group,
    }


def decomposition_table(result, component_label="Geographic"):
    """The decomposition as a component/value/share table."""
    overall = result["overall_excess"]
    values = [overall, result["contribution"], result["residual"]]
    return pd.DataFrame({
        "component": ["Total Excess", component_label, "Residual"],
        "value": values,
        "share_of_total_pct": [100 * v / overall if overall else np.nan for v in values],
    })
