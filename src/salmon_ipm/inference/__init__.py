"""
Bayesian inference for the integrated population model.

1. ModelBuilder: assemble the PyMC model for a candidate
2. PyMCEngine: NUTS adaptation / burn-in / thinned sampling
3. NetCDFResultStore: atomic, key-addressed persistence of fits
4. FitOrchestrator: memoized, failure-isolated fitting of all candidates

**Usage:**
```python
from salmon_ipm.inference import FitOrchestrator, build_candidates

orchestrator = FitOrchestrator(config, aligned)
outcomes = orchestrator.run(build_candidates(config))
```
"""

from salmon_ipm.inference.engine import InferenceEngine, PyMCEngine
from salmon_ipm.inference.model_builder import (
    BASELINE_ID,
    ModelBuilder,
    ModelCandidate,
    PriorSpec,
    build_candidates,
)
from salmon_ipm.inference.orchestrator import CandidateOutcome, FitOrchestrator, FitResult
from salmon_ipm.inference.store import MemoryResultStore, NetCDFResultStore, ResultStore

__all__ = [
    "InferenceEngine",
    "PyMCEngine",
    "BASELINE_ID",
    "ModelBuilder",
    "ModelCandidate",
    "PriorSpec",
    "build_candidates",
    "CandidateOutcome",
    "FitOrchestrator",
    "FitResult",
    "MemoryResultStore",
    "NetCDFResultStore",
    "ResultStore",
]
