# app/services/scoring.py - Confidence / warning signal attached to finished executions

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from app.services.step_context import StepContext


@dataclass
class ConfidenceSignal:
    confidence_score: int | None = None
    warning_flag: str | None = None


class ConfidenceScorer(Protocol):
    def score(self, context: StepContext) -> ConfidenceSignal | None:
        ...


class FactCheckScorer:
    """Reads the first step JSON carrying ``confidence_score`` (fact-check output).

    ``overall_verdict`` becomes the warning flag unless it is ``safe``.
    """

    def score(self, context: StepContext) -> ConfidenceSignal | None:
        for index in sorted(context.entries):
            data = context.entries[index].json
            if not isinstance(data, dict):
                continue
            score = data.get("confidence_score")
            if not isinstance(score, (int, float)) or isinstance(score, bool):
                continue
            verdict = data.get("overall_verdict")
            warning = None if verdict == "safe" or not verdict else str(verdict)
            return ConfidenceSignal(confidence_score=int(round(score)), warning_flag=warning)
        return None
