"""
Observation alignment: calendar years, brood years and covariates.

**Aligner (aligner.py):**
- Year-range validation of escapement, harvest and age composition
- Zero-count age-composition policy
- Masks for imputed pre-data cells and incomplete recent broods

**Covariate summaries (covariates.py):**
- Registry of SummaryFunction variants turning daily series into annual values
"""

from salmon_ipm.alignment.aligner import AlignedData, CovariateInfo, DataAligner
from salmon_ipm.alignment.covariates import (
    SUMMARY_REGISTRY,
    SummaryFunction,
    resolve_summary,
)

__all__ = [
    "AlignedData",
    "CovariateInfo",
    "DataAligner",
    "SUMMARY_REGISTRY",
    "SummaryFunction",
    "resolve_summary",
]
