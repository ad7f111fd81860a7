# app/utils/exceptions.py - Recipe engine exception classes


class RecipeEngineError(Exception):
    """Base class for errors raised by the recipe engine services."""


class RecipeNotFoundError(RecipeEngineError):
    def __init__(self, recipe_id: str):
        super().__init__(f"Recipe with ID '{recipe_id}' not found")
        self.recipe_id = recipe_id


class RecipeInactiveError(RecipeEngineError):
    def __init__(self, recipe_id: str):
        super().__init__("Recipe is no longer active")
        self.recipe_id = recipe_id


class RecipeNotExecutableError(RecipeEngineError):
    """Recipe has no steps (or an invalid step list) and cannot be run."""


class ExecutionNotFoundError(RecipeEngineError):
    def __init__(self, execution_id: str):
        super().__init__(f"Execution with ID '{execution_id}' not found")
        self.execution_id = execution_id


class InvalidExecutionStateError(RecipeEngineError):
    """Requested control operation is not permitted from the current status."""

    def __init__(self, message: str, *, status: str | None = None):
        super().__init__(message)
        self.status = status


class StepError(Exception):
    """A single step failed. Caught at the step executor boundary."""

    kind = "step"


class InputResolutionError(StepError):
    kind = "input_resolution"


class ConditionEvaluationError(StepError):
    kind = "condition"
