"""
exceptions.py

Error taxonomy for the rearrest survival re-analysis. All errors are deterministic
data or configuration failures; none of them is retried.
"""


class AnalysisError(Exception):
    """Base exception for the re-analysis pipeline"""
    pass


class DataValidationError(AnalysisError):
    """Missing or malformed input columns; raised before any fitting"""
    pass


class DegenerateFoldError(AnalysisError):
    """A training or test partition contains zero events"""

    def __init__(self, message: str, repetition: int = None, fold: int = None):
        super().__init__(message)
        self.repetition = repetition
        self.fold = fold


class ModelFitError(AnalysisError):
    """Cox partial-likelihood maximization did not converge"""

    def __init__(self, message: str, model_name: str = None):
        super().__init__(message)
        self.model_name = model_name


class CacheMissError(AnalysisError):
    """Cached artifact absent while recomputation is disabled"""
    pass


class HorizonError(AnalysisError):
    """Requested integration cutoff lies beyond the well-defined horizon"""
    pass
