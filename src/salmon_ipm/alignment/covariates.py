"""
Covariate summary registry.

Maps covariate summary names to SummaryFunction implementations that turn a
daily environmental series (e.g. river discharge) into one value per year.
Summaries are resolved once, when a candidate is constructed, so an unknown
name fails before any fitting starts.

Available summaries:
- annual: series is already one value per year, passed through
- min_7day_mean / max_7day_mean / median_7day_mean / range_7day_mean:
  statistic of the 7-day running mean within each year
- threshold_exceedance: number of days the 7-day running mean exceeds a threshold
"""

from typing import Dict, Optional, Sequence, Type

import numpy as np
import pandas as pd

from salmon_ipm.errors import ModelSpecError


class SummaryFunction:
    """
    Turn a daily series into a year-indexed series.

    Parameters
    ----------
    window : int
        Running-mean window in days. Default 7.
    months : sequence of int, optional
        Restrict the summary to these calendar months (1-12).
    """

    name = "base"

    def __init__(self, window: int = 7, months: Optional[Sequence[int]] = None) -> None:
        if window < 1:
            raise ModelSpecError(f"window must be >= 1. Got {window}")
        if months is not None and not all(1 <= m <= 12 for m in months):
            raise ModelSpecError(f"months must be in 1..12. Got {list(months)}")
        self.window = window
        self.months = None if months is None else tuple(months)

    def running_mean(self, daily: pd.Series) -> pd.Series:
        if not isinstance(daily.index, pd.DatetimeIndex):
            raise ModelSpecError(
                f"{self.name} needs a daily series with a DatetimeIndex. "
                f"Got {type(daily.index).__name__}"
            )
        smoothed = daily.sort_index().rolling(self.window, min_periods=self.window).mean()
        if self.months is not None:
            smoothed = smoothed[smoothed.index.month.isin(self.months)]
        return smoothed.dropna()

    def reduce(self, values: pd.Series) -> float:
        raise NotImplementedError

    def __call__(self, daily: pd.Series) -> pd.Series:
        smoothed = self.running_mean(daily)
        annual = smoothed.groupby(smoothed.index.year).apply(self.reduce)
        annual.index = annual.index.astype(int)
        annual.index.name = "year"
        return annual.astype(float)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(window={self.window}, months={self.months})"


class AnnualValue(SummaryFunction):
    """Series already holds one value per year."""

    name = "annual"

    def __call__(self, series: pd.Series) -> pd.Series:
        annual = series.astype(float).copy()
        annual.index = pd.Index(np.asarray(annual.index).astype(int), name="year")
        if annual.index.has_duplicates:
            raise ModelSpecError("Annual covariate series has duplicate years")
        return annual.sort_index()


class MinRunningMean(SummaryFunction):
    name = "min_7day_mean"

    def reduce(self, values: pd.Series) -> float:
        return float(values.min())


class MaxRunningMean(SummaryFunction):
    name = "max_7day_mean"

    def reduce(self, values: pd.Series) -> float:
        return float(values.max())


class MedianRunningMean(SummaryFunction):
    name = "median_7day_mean"

    def reduce(self, values: pd.Series) -> float:
        return float(values.median())


class RangeRunningMean(SummaryFunction):
    name = "range_7day_mean"

    def reduce(self, values: pd.Series) -> float:
        return float(values.max() - values.min())


class ThresholdExceedance(SummaryFunction):
    """Count of days whose running mean exceeds ``threshold``."""

    name = "threshold_exceedance"

    def __init__(
        self,
        threshold: float,
        window: int = 7,
        months: Optional[Sequence[int]] = None,
    ) -> None:
        super().__init__(window=window, months=months)
        self.threshold = float(threshold)

    def reduce(self, values: pd.Series) -> float:
        return float((values > self.threshold).sum())

    def __repr__(self) -> str:
        return (
            f"ThresholdExceedance(threshold={self.threshold}, "
            f"window={self.window}, months={self.months})"
        )


SUMMARY_REGISTRY: Dict[str, Type[SummaryFunction]] = {
    cls.name: cls
    for cls in (
        AnnualValue,
        MinRunningMean,
        MaxRunningMean,
        MedianRunningMean,
        RangeRunningMean,
        ThresholdExceedance,
    )
}


def resolve_summary(name: str, **kwargs) -> SummaryFunction:
    """Look up and instantiate a summary by name."""
    try:
        cls = SUMMARY_REGISTRY[name]
    except KeyError:
        raise ModelSpecError(
            f"Unknown covariate summary {name!r}. Available: {sorted(SUMMARY_REGISTRY)}"
        ) from None
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ModelSpecError(f"Bad arguments for summary {name!r}: {e}") from e
