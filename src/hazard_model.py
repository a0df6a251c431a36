"""
Prepayment Hazard Model Module
==============================

Discrete-time hazard models of voluntary prepayment on the loan-month
panel. Each row is one loan in one month; y = 1 if the loan prepaid that
month. A logistic regression on this panel estimates the monthly hazard:

    logit(P(y=1)) = linear predictor

Three nested specifications:

    M0 (baseline)       Intercept + incentive + loan_age + credit_score + ltv
                        fit on Train only
    M1 (structural)     M0 + covid + covid_incentive
                        fit on Train + Validation
    M2 (behavioral)     M1 + covid_loan_age + covid_credit_score
                        fit on Train + Validation

Reading the COVID terms:
- covid:              level shift of the hazard during COVID
- covid_incentive:    change in rate sensitivity during COVID
- covid_loan_age:     > 0 means the COVID effect grows with loan age
                      (sunk-cost attachment weakened)
- covid_credit_score: > 0 means the COVID effect grows with credit score
                      (overconfidence amplified)

Estimation is unpenalized maximum likelihood (statsmodels Logit) so that
standard errors and log-likelihoods are available. Confidence intervals use
the normal approximation, estimate +/- 1.96 * SE; with millions of
loan-months the t and normal quantiles are indistinguishable.

Author: Saurabh Chavan
"""

import time
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import PerfectSeparationError
from scipy import stats
from sklearn.metrics import brier_score_loss, roc_auc_score

warnings.filterwarnings("ignore", category=FutureWarning)


# ---------------------------------------------------------------------------
# Model specifications
# ---------------------------------------------------------------------------

INTERCEPT = "Intercept"

BASE_TERMS = ["incentive", "loan_age", "credit_score", "ltv"]
STRUCTURAL_TERMS = ["covid", "covid_incentive"]
BEHAVIORAL_TERMS = ["covid_loan_age", "covid_credit_score"]

MODEL_TERMS = {
    "M0": BASE_TERMS,
    "M1": BASE_TERMS + STRUCTURAL_TERMS,
    "M2": BASE_TERMS + STRUCTURAL_TERMS + BEHAVIORAL_TERMS,
}

Z_95 = 1.96
LOG_LOSS_EPS = 1e-15
LR_NOISE_TOL = 1e-6

# Labels different estimation packages give the intercept.
_INTERCEPT_ALIASES = {"const", "(Intercept)", "Intercept", "intercept"}


class ModelFitError(RuntimeError):
    """A hazard model could not be estimated on the given sample."""


def canonical_term_name(term):
    """Map every intercept label to "Intercept"; other names pass through."""
    term = str(term).strip()
    return INTERCEPT if term in _INTERCEPT_ALIASES else term


@dataclass(frozen=True)
class FittedModel:
    """
    A fitted hazard specification.

    coefficients has one row per term (Intercept first) with columns
    term, estimate, std_error, z_value, p_value, ci_lower, ci_upper.
    """

    name: str
    terms: tuple
    coefficients: pd.DataFrame = field(repr=False)
    log_likelihood: float
    deviance: float
    n_obs: int
    n_events: int
    sample_label: str

    @property
    def params(self):
        return dict(zip(self.coefficients["term"], self.coefficients["estimate"]))


# ---------------------------------------------------------------------------
# Design matrix
# ---------------------------------------------------------------------------

def add_behavioral_interactions(df):
    """
    Return a copy of df with the M2 interaction columns:
        covid_loan_age     = covid * loan_age
        covid_credit_score = covid * credit_score
    """
    df = df.copy()
    df["covid_loan_age"] = df["covid"] * df["loan_age"].astype("float64")
    df["covid_credit_score"] = df["covid"] * df["credit_score"].astype("float64")
    return df


def _prepare_design_frame(df, terms):
    if any(t in BEHAVIORAL_TERMS for t in terms) and not set(BEHAVIORAL_TERMS) <= set(df.columns):
        df = add_behavioral_interactions(df)
    return df


def _check_required_columns(df, terms, name):
    required = ["y"] + list(terms)
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ModelFitError(f"{name}: required columns absent from sample: {missing}")

    all_missing = [c for c in required if df[c].isna().all()]
    if all_missing:
        raise ModelFitError(f"{name}: required columns entirely missing in sample: {all_missing}")


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------

def fit_hazard_model(data, name, sample_label="train", terms=None):
    """
    Fit one logistic hazard specification by maximum likelihood.

    Rows missing y or any covariate are excluded (listwise deletion) and
    counted. Estimation failures are raised, never replaced by a degraded
    fit.

    Parameters
    ----------
    data : pd.DataFrame
        Panel sample (a split or union of splits).
    name : str
        "M0", "M1" or "M2" (selects the terms unless terms is given).
    sample_label : str
        Description of the estimation sample, e.g. "train" or
        "train+validation". Likelihood-ratio tests compare it.
    terms : list of str, optional
        Covariates (the intercept is always added).

    Returns
    -------
    FittedModel

    Raises
    ------
    ModelFitError
        Required column absent or entirely missing, no complete rows,
        outcome without variation, rank-deficient design matrix, or an
        estimation failure inside statsmodels.
    """
    terms = list(MODEL_TERMS[name] if terms is None else terms)

    print(f"\nFitting {name} on {sample_label}...")
    t_start = time.time()

    df = _prepare_design_frame(data, terms)
    _check_required_columns(df, terms, name)

    complete = df[["y"] + terms].dropna()
    n_excluded = len(df) - len(complete)
    print(f"  Observations: {len(complete):,} "
          f"(excluded {n_excluded:,} with missing covariates)")
    if len(complete) == 0:
        raise ModelFitError(f"{name}: no complete observations in {sample_label}")

    y = complete["y"].astype("float64").to_numpy()
    if y.min() == y.max():
        raise ModelFitError(f"{name}: outcome has no variation in {sample_label}")

    X = sm.add_constant(complete[terms].astype("float64"), has_constant="add")

    rank = np.linalg.matrix_rank(X.to_numpy())
    if rank < X.shape[1]:
        constant = [c for c in terms if complete[c].nunique() <= 1]
        raise ModelFitError(
            f"{name}: design matrix is rank-deficient (rank {rank} < {X.shape[1]} columns)"
            + (f"; constant covariates: {constant}" if constant else "")
        )

    try:
        result = sm.Logit(y, X).fit(disp=0, maxiter=100)
    except (np.linalg.LinAlgError, PerfectSeparationError, ValueError) as exc:
        raise ModelFitError(f"{name}: estimation failed on {sample_label}: {exc}") from exc

    if not result.mle_retvals.get("converged", True):
        warnings.warn(f"{name}: maximum likelihood did not converge on {sample_label}")

    estimates = result.params.to_numpy()
    std_errors = result.bse.to_numpy()

    coefficients = pd.DataFrame({
        "term": [canonical_term_name(t) for t in X.columns],
        "estimate": estimates,
        "std_error": std_errors,
        "z_value": result.tvalues.to_numpy(),
        "p_value": result.pvalues.to_numpy(),
        "ci_lower": estimates - Z_95 * std_errors,
        "ci_upper": estimates + Z_95 * std_errors,
    })

    model = FittedModel(
        name=name,
        terms=tuple(terms),
        coefficients=coefficients,
        log_likelihood=float(result.llf),
        deviance=float(-2.0 * result.llf),
        n_obs=int(result.nobs),
        n_events=int(y.sum()),
        sample_label=sample_label,
    )

    print(f"  {name} fitted in {time.time() - t_start:.1f} seconds. "
          f"Log-likelihood: {model.log_likelihood:,.2f}, deviance: {model.deviance:,.2f}")
    print_coefficient_table(model)

    return model


def print_coefficient_table(model):
    print(f"\n  {'Term':<22s} {'Estimate':>12s} {'Std.Err':>10s} {'95% CI':>26s}")
    print(f"  {'-'*22} {'-'*12} {'-'*10} {'-'*26}")
    for _, row in model.coefficients.iterrows():
        ci = f"[{row['ci_lower']:.5f}, {row['ci_upper']:.5f}]"
        print(f"  {row['term']:<22s} {row['estimate']:>12.5f} {row['std_error']:>10.5f} {ci:>26s}")


def fit_nested_models(splits):
    """
    Fit M0, M1, M2 and the M0 refit used for likelihood-ratio testing.

    Returns
    -------
    dict
        "M0" (train), "M1", "M2" and "M0_refit" (train+validation).
    """
    train = splits["train"]
    train_val = pd.concat([splits["train"], splits["validation"]], ignore_index=True)
    train_val = add_behavioral_interactions(train_val)

    return {
        "M0": fit_hazard_model(train, "M0", sample_label="train"),
        "M1": fit_hazard_model(train_val, "M1", sample_label="train+validation"),
        "M2": fit_hazard_model(train_val, "M2", sample_label="train+validation"),
        "M0_refit": fit_hazard_model(train_val, "M0", sample_label="train+validation"),
    }


# ---------------------------------------------------------------------------
# Prediction & evaluation
# ---------------------------------------------------------------------------

def predict_proba(model, df):
    """
    Predicted monthly prepayment probability for each row of df.

    Rows with a missing covariate get NaN.
    """
    df = _prepare_design_frame(df, model.terms)
    params = model.params

    eta = pd.Series(params.get(INTERCEPT, 0.0), index=df.index, dtype="float64")
    for term in model.terms:
        eta = eta + params[term] * df[term].astype("float64")

    return 1.0 / (1.0 + np.exp(-eta))


def compute_log_loss(y, p, eps=LOG_LOSS_EPS):
    """
    Mean binary cross-entropy. Probabilities are clipped to [eps, 1 - eps]
    so an exact 0 or 1 prediction cannot produce an infinite loss.
    """
    y = np.asarray(y, dtype=float)
    p = np.clip(np.asarray(p, dtype=float), eps, 1.0 - eps)
    return float(-np.mean(y * np.log(p) + (1.0 - y) * np.log(1.0 - p)))


def score_split(model, df):
    """
    Log loss plus AUC and Brier score for one split.

    AUC is undefined when the split has only one outcome class and is
    reported as NaN.
    """
    p = predict_proba(model, df)
    scored = p.notna()
    y = df.loc[scored, "y"].astype(int).to_numpy()
    p = p[scored].to_numpy()

    if len(y) == 0:
        return {"log_loss": np.nan, "auc": np.nan, "brier": np.nan, "n_obs": 0}

    if len(np.unique(y)) == 2:
        auc = roc_auc_score(y, p)
        brier = brier_score_loss(y, p)
    else:
        auc = np.nan
        brier = np.mean((p - y) ** 2)

    return {
        "log_loss": compute_log_loss(y, p),
        "auc": float(auc),
        "brier": float(brier),
        "n_obs": int(len(y)),
    }


def evaluate_model(model, splits):
    """
    Score a model on train, validation and test.

    Every model is scored on all three splits even when it was fit on a
    superset of train: train loss of M1/M2 is in-sample fit, test loss is
    out-of-sample.

    Returns
    -------
    dict
        split name -> metrics dict.
    """
    results = {name: score_split(model, df) for name, df in splits.items()}

    print(f"\n  {model.name} evaluation:")
    for split_name, m in results.items():
        print(f"    {split_name:>10s}: log loss={m['log_loss']:.5f}  "
              f"AUC={m['auc']:.4f}  Brier={m['brier']:.5f}  n={m['n_obs']:,}")

    return results


def build_metrics_table(evaluations):
    """One row per model with train/val/test log loss, AUC and Brier."""
    rows = []
    for model_name, results in evaluations.items():
        row = {"model": model_name}
        for split_name, prefix in [("train", "train"), ("validation", "val"), ("test", "test")]:
            m = results[split_name]
            row[f"{prefix}_logloss"] = m["log_loss"]
            row[f"{prefix}_auc"] = m["auc"]
            row[f"{prefix}_brier"] = m["brier"]
        rows.append(row)
    return pd.DataFrame(rows)


# ---------------------------------------------------------------------------
# Likelihood-ratio tests
# ---------------------------------------------------------------------------

def likelihood_ratio_test(restricted, unrestricted, alpha=0.05):
    """
    Likelihood-ratio test between nested models.

    LR = 2 * (loglik(unrestricted) - loglik(restricted)), compared with a
    chi-squared distribution whose degrees of freedom equal the number of
    added terms.

    Both models must be fit on the same sample; comparing log-likelihoods
    from different samples is meaningless, so it is refused.

    Raises
    ------
    ValueError
        Different estimation samples, or the terms are not nested.
    """
    if (restricted.sample_label != unrestricted.sample_label
            or restricted.n_obs != unrestricted.n_obs):
        raise ValueError(
            f"Cannot compare {restricted.name} ({restricted.sample_label}, "
            f"n={restricted.n_obs:,}) with {unrestricted.name} "
            f"({unrestricted.sample_label}, n={unrestricted.n_obs:,}): "
            f"models must be fit on the same sample"
        )

    added = [t for t in unrestricted.terms if t not in restricted.terms]
    if not set(restricted.terms) < set(unrestricted.terms):
        raise ValueError(
            f"{restricted.name} is not nested in {unrestricted.name}"
        )

    # MLE of a nested model cannot exceed the larger one. Negatives within
    # LR_NOISE_TOL are optimizer noise; anything larger means a bad fit.
    raw_stat = 2.0 * (unrestricted.log_likelihood - restricted.log_likelihood)
    if raw_stat < -LR_NOISE_TOL:
        raise ValueError(
            f"{unrestricted.name} log-likelihood ({unrestricted.log_likelihood:,.4f}) is below "
            f"{restricted.name} ({restricted.log_likelihood:,.4f}); "
            f"the larger model probably did not converge"
        )
    lr_stat = max(raw_stat, 0.0)
    df = len(added)
    p_value = float(stats.chi2.sf(lr_stat, df))

    return {
        "test": f"{restricted.name} vs {unrestricted.name}",
        "loglik_restricted": restricted.log_likelihood,
        "loglik_unrestricted": unrestricted.log_likelihood,
        "lr_statistic": lr_stat,
        "df": df,
        "p_value": p_value,
        "significant": p_value < alpha,
        "added_terms": ",".join(added),
    }


def print_lrt_result(result):
    p = result["p_value"]
    p_text = "<1e-10" if p < 1e-10 else f"{p:.3g}"
    print(f"\n  Likelihood Ratio Test: {result['test']}")
    print(f"    Log-likelihood (restricted):   {result['loglik_restricted']:,.2f}")
    print(f"    Log-likelihood (unrestricted): {result['loglik_unrestricted']:,.2f}")
    print(f"    LR statistic: {result['lr_statistic']:,.2f}, df={result['df']}, p={p_text}")
    print(f"    {'REJECT H0: added terms are significant' if result['significant'] else 'Fail to reject H0'}")


# ---------------------------------------------------------------------------
# Reporting helpers
# ---------------------------------------------------------------------------

def compute_monthly_predictions(panel, models):
    """
    Observed prepayment rate and mean predicted probability per month for
    each model, over the full panel.
    """
    pred = panel[["monthly_rpt_period", "y"]].copy()
    for name, model in models.items():
        pred[f"{name.lower()}_pred"] = predict_proba(model, panel).to_numpy()

    agg_spec = {"observed": ("y", "mean")}
    for name in models:
        col = f"{name.lower()}_pred"
        agg_spec[col] = (col, "mean")

    monthly = (
        pred.groupby("monthly_rpt_period", sort=True)
        .agg(**agg_spec)
        .reset_index()
    )
    return monthly


def interpret_behavioral_terms(model):
    """
    Sign reading of the M2 interaction terms.

    Returns
    -------
    dict
        term -> (estimate, interpretation).
    """
    params = model.params
    readings = {}

    if "covid_loan_age" in params:
        b = params["covid_loan_age"]
        readings["covid_loan_age"] = (
            b,
            "COVID effect increases with loan age: sunk-cost attachment weakened"
            if b > 0 else
            "COVID effect decreases with loan age: sunk-cost attachment strengthened",
        )

    if "covid_credit_score" in params:
        b = params["covid_credit_score"]
        readings["covid_credit_score"] = (
            b,
            "COVID effect increases with credit score: overconfidence amplified"
            if b > 0 else
            "COVID effect decreases with credit score: overconfidence not confirmed",
        )

    for term, (b, text) in readings.items():
        print(f"    {term} = {b:.6f} -> {text}")

    return readings
