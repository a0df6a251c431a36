"""
Hazard Model Pipeline
=====================

Fits the nested prepayment hazard models on the loan-month panel and tests
whether the COVID terms are significant.

Steps:
1. Load the loan-month panel
2. Split by reporting period into train / validation / test
3. Fit M0 (train), M1 and M2 (train + validation), and M0 refit on
   train + validation for likelihood-ratio testing
4. Evaluate every model on every split
5. Likelihood-ratio tests: M0 vs M1, M1 vs M2
6. Save coefficients, metrics, tests, monthly predictions and models

Run this AFTER run_build_panel.py.

Author: Saurabh Chavan
"""

import sys
import time
import warnings
from pathlib import Path

import pandas as pd

warnings.filterwarnings("ignore", category=FutureWarning)

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from artifact_store import read_parquet, write_csv, write_joblib
from hazard_model import (
    build_metrics_table,
    compute_monthly_predictions,
    evaluate_model,
    fit_nested_models,
    interpret_behavioral_terms,
    likelihood_ratio_test,
    print_lrt_result,
)
from panel_engine import split_panel
from pipeline_config import PipelineConfig


def main(config=None):
    config = config or PipelineConfig(project_root=project_root)
    config.ensure_dirs()
    results_dir = config.results_dir

    t_pipeline_start = time.time()

    print("=" * 70)
    print("PREPAYMENT HAZARD STUDY - MODEL FITTING")
    print("=" * 70)

    # ------------------------------------------------------------------
    # Step 1: Load panel
    # ------------------------------------------------------------------
    print("\nStep 1: Loading loan-month panel...")
    panel = read_parquet(config.panel_path, "run_build_panel.py")
    print(f"  Loaded {len(panel):,} loan-months, {panel['loan_id'].nunique():,} loans")

    # ------------------------------------------------------------------
    # Step 2: Split
    # ------------------------------------------------------------------
    print("\nStep 2: Splitting by reporting period...")
    splits = split_panel(panel, config)
    for name, df in splits.items():
        rate = df["y"].mean() if len(df) else float("nan")
        print(f"    {name:<10s} prepay rate: {rate:.5f}")

    # ------------------------------------------------------------------
    # Step 3: Fit
    # ------------------------------------------------------------------
    print("\nStep 3: Fitting nested hazard models...")
    models = fit_nested_models(splits)

    print("\n  Behavioral interaction terms (M2):")
    interpret_behavioral_terms(models["M2"])

    # ------------------------------------------------------------------
    # Step 4: Evaluate
    # ------------------------------------------------------------------
    print("\nStep 4: Evaluating models on all splits...")
    evaluations = {name: evaluate_model(models[name], splits) for name in ["M0", "M1", "M2"]}
    metrics = build_metrics_table(evaluations)

    print(f"\n  {'Model':<6s} {'Train LL':>10s} {'Val LL':>10s} {'Test LL':>10s} {'Test AUC':>10s}")
    print(f"  {'-'*6} {'-'*10} {'-'*10} {'-'*10} {'-'*10}")
    for _, row in metrics.iterrows():
        print(f"  {row['model']:<6s} {row['train_logloss']:>10.5f} {row['val_logloss']:>10.5f} "
              f"{row['test_logloss']:>10.5f} {row['test_auc']:>10.4f}")

    # ------------------------------------------------------------------
    # Step 5: Likelihood-ratio tests
    # ------------------------------------------------------------------
    # Both tests compare models fit on train + validation; M0 on train
    # alone is not comparable.
    print("\nStep 5: Likelihood-ratio tests...")
    lrt_results = [
        likelihood_ratio_test(models["M0_refit"], models["M1"]),
        likelihood_ratio_test(models["M1"], models["M2"]),
    ]
    for result in lrt_results:
        print_lrt_result(result)

    # ------------------------------------------------------------------
    # Step 6: Save
    # ------------------------------------------------------------------
    print("\nStep 6: Saving results...")
    for name in ["M0", "M1", "M2"]:
        coefs = models[name].coefficients[
            ["term", "estimate", "std_error", "ci_lower", "ci_upper"]
        ]
        write_csv(coefs, results_dir / f"{name.lower()}_coefficients.csv")

    write_csv(metrics, results_dir / "model_metrics.csv")
    write_csv(pd.DataFrame(lrt_results), results_dir / "lrt_results.csv")

    monthly = compute_monthly_predictions(
        panel, {name: models[name] for name in ["M0", "M1", "M2"]}
    )
    write_csv(monthly, results_dir / "monthly_predictions.csv")

    write_joblib(models, results_dir / "hazard_models.pkl")
    print(f"  Saved fitted models to {results_dir / 'hazard_models.pkl'}")

    elapsed = time.time() - t_pipeline_start
    print(f"\n{'='*70}")
    print("HAZARD MODEL PIPELINE COMPLETE")
    print(f"Total time: {elapsed:.1f} seconds ({elapsed/60:.1f} minutes)")
    print(f"{'='*70}")


if __name__ == "__main__":
    main()
