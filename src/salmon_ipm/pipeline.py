"""
End-to-end model selection.

    DataAligner -> ModelBuilder -> FitOrchestrator -> {LOOEvaluator, ConvergenceDiagnostics}

**Usage:**
```python
from salmon_ipm.config import load_config
from salmon_ipm.pipeline import run_model_selection, summarize_states

config = load_config("run.yaml")
selection = run_model_selection(config, escapement, harvest, age_comp, covariates)
print(selection.ranking)
states = summarize_states(selection.best.idata)
```
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

import arviz as az
import numpy as np
import pandas as pd

from salmon_ipm.alignment.aligner import AlignedData, DataAligner
from salmon_ipm.config import RunConfig
from salmon_ipm.inference.engine import PyMCEngine
from salmon_ipm.inference.model_builder import PriorSpec, build_candidates
from salmon_ipm.inference.orchestrator import (
    CandidateOutcome,
    EngineFactory,
    FitOrchestrator,
    FitResult,
)
from salmon_ipm.inference.store import ResultStore
from salmon_ipm.selection.diagnostics import ConvergenceDiagnostics
from salmon_ipm.selection.loo import LOOEvaluator

logger = logging.getLogger(__name__)


@dataclass
class SelectionResult:
    """Final artifact of one run."""
    data: AlignedData
    outcomes: List[CandidateOutcome]
    ranking: pd.DataFrame
    diagnostics: Dict[str, pd.DataFrame] = field(default_factory=dict)
    best: Optional[FitResult] = None

    @property
    def failed(self) -> List[str]:
        return [o.candidate.candidate_id for o in self.outcomes if not o.ok]


def run_model_selection(
    config: RunConfig,
    escapement: pd.Series,
    harvest: pd.Series,
    age_comp: pd.DataFrame,
    covariates: Optional[Mapping[str, pd.Series]] = None,
    engine_factory: EngineFactory = PyMCEngine,
    store: Optional[ResultStore] = None,
    prior_spec: Optional[PriorSpec] = None,
) -> SelectionResult:
    """
    Align data, fit every candidate, rank by LOOIC with diagnostics attached.

    DataAlignmentError and ModelSpecError abort the run; a candidate whose
    fit fails still appears in the ranking with status "failed".
    """
    data = DataAligner(config).align(escapement, harvest, age_comp, covariates)
    candidates = build_candidates(config)

    orchestrator = FitOrchestrator(
        config, data, store=store, engine_factory=engine_factory, prior_spec=prior_spec
    )
    outcomes = orchestrator.run(candidates)

    checker = ConvergenceDiagnostics(
        rhat_threshold=config.rhat_threshold, max_lag=config.acf_max_lag
    )
    diagnostics: Dict[str, pd.DataFrame] = {}
    summaries: Dict[str, Dict] = {}
    for outcome in outcomes:
        if not outcome.ok:
            continue
        cid = outcome.candidate.candidate_id
        diagnostics[cid] = checker.compute(outcome.result.idata, thin=config.mcmc.thin)
        summaries[cid] = checker.summarize(diagnostics[cid])

    evaluator = LOOEvaluator(delta_se_multiplier=config.delta_se_multiplier)
    ranking = evaluator.rank(outcomes, summaries)

    best = None
    ranked_ok = ranking[ranking["status"] == "ok"]
    if len(ranked_ok):
        best_id = ranked_ok.iloc[0]["candidate_id"]
        best = next(o.result for o in outcomes if o.candidate.candidate_id == best_id)
        logger.info("Best candidate: %s (LOOIC %.2f)", best_id, ranked_ok.iloc[0]["looic"])
    else:
        logger.warning("No candidate was fitted successfully")

    return SelectionResult(
        data=data, outcomes=outcomes, ranking=ranking, diagnostics=diagnostics, best=best
    )


def summarize_states(
    idata: az.InferenceData,
    var_names=("spawners", "run", "recruits"),
    quantiles=(0.025, 0.5, 0.975),
) -> pd.DataFrame:
    """
    Posterior quantiles of latent states per year.

    Returns
    -------
    table : pd.DataFrame
        Columns: state, year, and one column per quantile (e.g. q0.5).
    """
    frames = []
    for name in var_names:
        if name not in idata.posterior:
            continue
        values = idata.posterior[name]
        dim = values.dims[-1]
        draws = values.stack(sample=("chain", "draw")).transpose(dim, "sample").values
        frame = pd.DataFrame({"state": name, "year": values[dim].values})
        for q in quantiles:
            frame[f"q{q:g}"] = np.quantile(draws, q, axis=1)
        frames.append(frame)
    if not frames:
        return pd.DataFrame(columns=["state", "year"] + [f"q{q:g}" for q in quantiles])
    return pd.concat(frames, ignore_index=True)
