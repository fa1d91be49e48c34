"""
Integrated population model (IPM) for salmon with covariate model selection.

This package provides the complete fit-and-select pipeline:
1. DataAligner: calendar-year / brood-year alignment of observations
2. ModelBuilder: PyMC age-structured state-space model per candidate
3. FitOrchestrator: adaptation, burn-in, sampling and cached results
4. LOOEvaluator: PSIS-LOO information criterion and candidate ranking
5. ConvergenceDiagnostics: Rhat, autocorrelation and ESS

**Usage:**
```python
from salmon_ipm import RunConfig, CandidateConfig, run_model_selection

config = RunConfig(
    age_min=3, age_max=6,
    candidates=[CandidateConfig("flow_max", summary="max_7day_mean", lag=1)],
)
selection = run_model_selection(config, escapement, harvest, age_comp,
                                covariates={"flow_max": daily_flow})
print(selection.ranking)
```
"""

from salmon_ipm.alignment import AlignedData, DataAligner
from salmon_ipm.config import CandidateConfig, MCMCConfig, RunConfig, load_config
from salmon_ipm.errors import (
    CacheCorruptionError,
    ConvergenceWarning,
    DataAlignmentError,
    InferenceEngineError,
    IPMError,
    ModelSpecError,
    NumericalUnderflowWarning,
)
from salmon_ipm.inference import (
    FitOrchestrator,
    FitResult,
    ModelBuilder,
    ModelCandidate,
    PriorSpec,
)
from salmon_ipm.pipeline import SelectionResult, run_model_selection, summarize_states
from salmon_ipm.selection import ConvergenceDiagnostics, LOOEvaluator

__version__ = "0.1.0"

__all__ = [
    "AlignedData",
    "DataAligner",
    "CandidateConfig",
    "MCMCConfig",
    "RunConfig",
    "load_config",
    "IPMError",
    "DataAlignmentError",
    "ModelSpecError",
    "InferenceEngineError",
    "CacheCorruptionError",
    "NumericalUnderflowWarning",
    "ConvergenceWarning",
    "FitOrchestrator",
    "FitResult",
    "ModelBuilder",
    "ModelCandidate",
    "PriorSpec",
    "SelectionResult",
    "run_model_selection",
    "summarize_states",
    "ConvergenceDiagnostics",
    "LOOEvaluator",
]
