# app/services/step_context.py - Accumulated step outputs of one execution, keyed by step index

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.models.execution import StepResult, StepResultStatus
from app.providers.llm import extract_json_block


@dataclass
class StepOutputEntry:
    step_index: int
    status: StepResultStatus
    text: str = ""
    json: dict[str, Any] | None = None
    output: dict[str, Any] = field(default_factory=dict)

    @property
    def is_done(self) -> bool:
        return self.status == StepResultStatus.DONE


@dataclass
class StepContext:
    """Outputs accumulated by the steps of one execution so far.

    Only terminal outcomes are recorded: ``done`` entries carry text and parsed
    JSON, ``skipped`` entries carry nothing.
    """

    input_data: dict[str, Any]
    entries: dict[int, StepOutputEntry] = field(default_factory=dict)

    @classmethod
    def from_step_results(cls, input_data: dict[str, Any] | None, results: list[StepResult]) -> "StepContext":
        context = cls(input_data=dict(input_data or {}))
        for result in sorted(results, key=lambda item: item.step_index):
            if result.status in (StepResultStatus.DONE, StepResultStatus.SKIPPED):
                context.record(result.step_index, result.status, result.output_full)
        return context

    @property
    def original_input(self) -> str:
        for key in ("text", "transcript_text"):
            value = self.input_data.get(key)
            if isinstance(value, str) and value:
                return value
        return ""

    @property
    def previous_output(self) -> str:
        for index in sorted(self.entries, reverse=True):
            entry = self.entries[index]
            if entry.is_done:
                return entry.text
        return self.original_input

    def record(self, step_index: int, status: StepResultStatus, output: dict[str, Any] | None) -> StepOutputEntry:
        if status != StepResultStatus.DONE:
            entry = StepOutputEntry(step_index=step_index, status=status)
        else:
            output = dict(output or {})
            text = output.get("text")
            text = text if isinstance(text, str) else ""
            entry = StepOutputEntry(
                step_index=step_index,
                status=status,
                text=text,
                json=extract_json_block(text),
                output=output,
            )
        self.entries[step_index] = entry
        return entry

    def nearest_done(self, step_index: int) -> StepOutputEntry | None:
        """The entry for step_index if it ran, else the nearest lower-index done entry.

        None means no upstream step produced output and callers fall back to the
        original input.
        """
        for index in range(step_index, -1, -1):
            entry = self.entries.get(index)
            if entry is not None and entry.is_done:
                return entry
        return None

    def snapshot(self) -> dict[str, Any]:
        return {
            "original_input": self.original_input,
            "previous_output": self.previous_output,
            "steps": [
                {
                    "step_index": entry.step_index,
                    "text": entry.text,
                    "json": entry.json,
                    "output": {key: value for key, value in entry.output.items() if key != "text"},
                }
                for index, entry in sorted(self.entries.items())
                if entry.is_done
            ],
        }
