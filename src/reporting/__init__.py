"""Run reporting."""

from reporting.report import PhaseResult, RunReport, serializable_context

__all__ = ['PhaseResult', 'RunReport', 'serializable_context']
