from __future__ import annotations

ERROR_VALUE = "Error"


class GridEngineError(Exception):
    """Base class for every error the engine reports."""


class ShapeError(GridEngineError):
    """Input is not a recognised record container."""


class MergeAmbiguityError(GridEngineError):
    """No candidate key cleared the uniqueness thresholds."""


class ReconciliationFailure(GridEngineError):
    pass


class PivotConfigurationError(GridEngineError):
    pass


class FormulaError(GridEngineError):
    pass


class FormulaSyntaxError(FormulaError):
    pass


class FormulaDependencyError(FormulaError):
    pass


class FormulaEvaluationError(FormulaError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Calculation error: {message}")
        self.reason = message


CalculationError = FormulaEvaluationError
