"""
Panel Construction Pipeline
===========================

Builds the loan-month panel and the monthly aggregate series from the raw
Freddie Mac sample files and the FRED mortgage rate.

Steps:
1. Fetch (or reuse) the FRED 30-year mortgage rate series
2. Discover the raw origination and servicing files
3. Verify column alignment on the first row of each kind
4. Load origination and servicing records (interim parquet cache)
5. Validate the raw tables (overlap, exits, duplicate periods)
6. Build the loan-month panel
7. Save the panel and the aggregate series

Raw files go in data/raw/freddiemac/orig, data/raw/freddiemac/svcg, or
directly in data/raw/. The FRED API key is read from FRED_API_KEY (a .env
file in the project root is loaded first); without a key the rate CSV
must already be in data/raw/.

Author: Saurabh Chavan
"""

import os
import sys
import time
import warnings
from pathlib import Path

import dotenv

warnings.filterwarnings("ignore", category=FutureWarning)

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from aggregate_series import compute_aggregate_series, summarize_by_period
from artifact_store import write_csv, write_parquet
from data_pipeline import (
    discover_raw_files,
    fetch_mortgage_rate_series,
    load_mortgage_rates,
    load_origination_data,
    load_performance_data,
    validate_raw_data,
    verify_column_alignment,
)
from panel_engine import build_loan_month_panel
from pipeline_config import PipelineConfig


def prepare_market_rates(config):
    """Fetch the FRED series if needed and save the monthly averages."""
    csv_path = config.fred_csv_path
    api_key = os.getenv("FRED_API_KEY")

    if api_key:
        fetch_mortgage_rate_series(api_key, csv_path, series_id=config.fred_series_id)
    elif not csv_path.exists():
        raise FileNotFoundError(
            f"FRED rate file not found at {csv_path} and FRED_API_KEY is not set. "
            f"Add FRED_API_KEY to .env or download {config.fred_series_id} manually."
        )

    rates = load_mortgage_rates(csv_path, series_id=config.fred_series_id)
    print(f"  Monthly market rates: {len(rates):,} months "
          f"({rates['year_month'].min()} to {rates['year_month'].max()})")
    write_csv(rates, config.macro_rates_path)
    return rates


def main(config=None):
    config = config or PipelineConfig(project_root=project_root)
    dotenv.load_dotenv(Path(config.project_root) / ".env")
    config.ensure_dirs()

    t_pipeline_start = time.time()

    print("=" * 70)
    print("PREPAYMENT HAZARD STUDY - PANEL CONSTRUCTION")
    print("=" * 70)

    # ------------------------------------------------------------------
    # Step 1: Market rates
    # ------------------------------------------------------------------
    print("\nStep 1: Preparing FRED mortgage rates...")
    rates = prepare_market_rates(config)

    # ------------------------------------------------------------------
    # Step 2: Raw file manifest
    # ------------------------------------------------------------------
    print("\nStep 2: Discovering raw files...")
    manifest = discover_raw_files(config.raw_search_dirs)
    orig_files = manifest.files("orig")
    svcg_files = manifest.files("svcg")
    print(f"  Origination files: {len(orig_files)}")
    print(f"  Servicing files:   {len(svcg_files)}")

    # ------------------------------------------------------------------
    # Step 3: Column alignment
    # ------------------------------------------------------------------
    print("\nStep 3: Verifying column alignment...")
    if orig_files:
        verify_column_alignment(orig_files[0], "orig")
    if svcg_files:
        verify_column_alignment(svcg_files[0], "svcg")

    # ------------------------------------------------------------------
    # Step 4: Load records
    # ------------------------------------------------------------------
    print("\nStep 4: Loading raw records...")
    orig = load_origination_data(manifest, config)
    perf = load_performance_data(manifest, config)

    # ------------------------------------------------------------------
    # Step 5: Validate
    # ------------------------------------------------------------------
    print("\nStep 5: Validating raw records...")
    validate_raw_data(orig, perf, config)

    # ------------------------------------------------------------------
    # Step 6: Build panel
    # ------------------------------------------------------------------
    print("\nStep 6: Building loan-month panel...")
    panel = build_loan_month_panel(orig, perf, rates, config)
    del orig, perf

    # ------------------------------------------------------------------
    # Step 7: Save
    # ------------------------------------------------------------------
    print("\nStep 7: Saving panel and aggregate series...")
    write_parquet(panel, config.panel_path)

    agg = compute_aggregate_series(panel)
    write_csv(agg, config.aggregate_path)

    summary = summarize_by_period(panel, agg, config)
    write_csv(summary, config.processed_dir / "period_summary.csv")

    elapsed = time.time() - t_pipeline_start
    print(f"\n{'='*70}")
    print("PANEL CONSTRUCTION COMPLETE")
    print(f"Total time: {elapsed:.1f} seconds ({elapsed/60:.1f} minutes)")
    print(f"{'='*70}")


if __name__ == "__main__":
    main()
