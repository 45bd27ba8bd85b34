from .analysis import ConfirmRequest, RetryRequest, StartAnalysisRequest

__all__ = ["ConfirmRequest", "RetryRequest", "StartAnalysisRequest"]
