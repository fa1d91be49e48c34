"""
Model selection: LOO comparison and convergence diagnostics.
"""

from salmon_ipm.selection.diagnostics import ConvergenceDiagnostics
from salmon_ipm.selection.loo import LOOEvaluator, LOOResult

__all__ = ["ConvergenceDiagnostics", "LOOEvaluator", "LOOResult"]
