"""
Pipeline Configuration
======================

Single source of truth for paths, study dates, and the Freddie Mac file
layouts used by the prepayment hazard study.

All stage entry points take a PipelineConfig explicitly, so the COVID
window, the train/validation/test cutoffs, and the directory layout are
visible in every signature and can be swapped out in tests.

Column positions follow the Freddie Mac Single-Family Loan-Level Dataset
file layout (sample_orig_YYYY.txt and sample_svcg_YYYY.txt). Both files are
pipe-delimited with NO header row. Positions below are 1-based, exactly as
printed in the layout document; the loader converts to 0-based indices.

Author: Saurabh Chavan
"""

from dataclasses import dataclass, replace
from pathlib import Path


# ---------------------------------------------------------------------------
# ORIGINATION FILE LAYOUT (sample_orig_YYYY.txt)
# ---------------------------------------------------------------------------
# Minimal subset needed for hazard modeling. Order here is the column order
# of the parsed table, NOT the order on disk.
# ---------------------------------------------------------------------------

ORIG_FIELD_POSITIONS = {
    "loan_id": 20,              # Loan Sequence Number (primary key)
    "credit_score": 1,          # 300-850, 9999 = not available
    "first_payment_date": 2,    # YYYYMM
    "orig_rate": 13,            # Original interest rate (percent)
    "orig_term": 22,            # Original loan term (months)
    "upb": 11,                  # Original UPB
    "ltv": 12,                  # Original LTV (percent), 999 = not available
    "dti": 10,                  # Original DTI (percent), 999 = not available
    "occupancy": 8,             # P=Primary, S=Second home, I=Investment
    "state": 17,                # Property state (2-letter)
    "property_type": 18,        # SF, CO, CP, MH, PU
}

ORIG_COLUMN_TYPES = {
    "credit_score": "Int64",
    "first_payment_date": "Int64",
    "orig_rate": "float64",
    "orig_term": "Int64",
    "upb": "float64",
    "ltv": "Int64",
    "dti": "Int64",
}

# ---------------------------------------------------------------------------
# PERFORMANCE / SERVICING FILE LAYOUT (sample_svcg_YYYY.txt)
# ---------------------------------------------------------------------------

SVCG_FIELD_POSITIONS = {
    "loan_id": 1,               # Loan Sequence Number
    "monthly_rpt_period": 2,    # YYYYMM
    "current_upb": 3,           # Current actual UPB
    "loan_age": 5,              # Months since origination
    "zb_code": 9,               # Zero balance code (01 = prepaid or matured)
    "current_rate": 11,         # Current interest rate
}

SVCG_COLUMN_TYPES = {
    "monthly_rpt_period": "Int64",
    "current_upb": "float64",
    "loan_age": "Int64",
    "current_rate": "float64",
}

# Sentinel codes the layout uses for "not available". These become nulls
# during type coercion, never model inputs.
SENTINEL_VALUES = {
    "credit_score": [9999],
    "ltv": [999],
    "dti": [999],
}

# Zero balance codes:
#   01 = Prepaid or matured (the prepayment event)
#   02 = Third party sale
#   03 = Short sale or charge off
#   06 = Repurchased
#   09 = REO disposition
#   15 = Note sale
#   16 = Reperforming loan sale
#   96 = Removal (COVID-19 related)
PREPAY_ZERO_BALANCE_CODE = "01"

RECORD_KINDS = ("orig", "svcg")


@dataclass(frozen=True)
class PipelineConfig:
    """
    Immutable study configuration.

    Reporting periods are integers in YYYYMM form. The COVID window is
    inclusive on both ends. Splits:
        Train:      monthly_rpt_period <  train_cutoff
        Validation: train_cutoff <= monthly_rpt_period < val_cutoff
        Test:       monthly_rpt_period >= val_cutoff
    """

    project_root: Path = Path(__file__).resolve().parent.parent

    covid_start: int = 202003
    covid_end: int = 202112

    train_cutoff: int = 202001
    val_cutoff: int = 202201

    # 30-year fixed-rate cohort restriction
    target_term: int = 360
    prepay_code: str = PREPAY_ZERO_BALANCE_CODE

    fred_series_id: str = "MORTGAGE30US"

    # When True, rows reported after a loan's first zero-balance code abort
    # the load instead of producing a warning.
    strict_exit_invariant: bool = False

    @property
    def data_dir(self):
        return Path(self.project_root) / "data"

    @property
    def raw_dir(self):
        return self.data_dir / "raw"

    @property
    def freddie_dir(self):
        return self.raw_dir / "freddiemac"

    @property
    def interim_dir(self):
        return self.data_dir / "interim"

    @property
    def processed_dir(self):
        return self.data_dir / "processed"

    @property
    def results_dir(self):
        return self.data_dir / "results"

    @property
    def fred_csv_path(self):
        return self.raw_dir / f"{self.fred_series_id}.csv"

    @property
    def macro_rates_path(self):
        return self.processed_dir / "fred_rates.csv"

    @property
    def panel_path(self):
        return self.processed_dir / "loan_month_panel.parquet"

    @property
    def aggregate_path(self):
        return self.processed_dir / "aggregate_series.csv"

    @property
    def raw_search_dirs(self):
        """Locations scanned for raw files, in priority order."""
        return (
            self.freddie_dir / "orig",
            self.freddie_dir / "svcg",
            self.raw_dir,
        )

    def with_root(self, project_root):
        """Return a copy of this configuration rooted somewhere else."""
        return replace(self, project_root=Path(project_root))

    def is_covid_period(self, period):
        return self.covid_start <= period <= self.covid_end

    def ensure_dirs(self):
        """Create the interim, processed and results directories."""
        for directory in (self.interim_dir, self.processed_dir, self.results_dir):
            directory.mkdir(parents=True, exist_ok=True)


DEFAULT_CONFIG = PipelineConfig()
