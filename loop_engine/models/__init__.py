from .loop import LoopAlgorithmInputModel, LoopAlgorithmOutputModel, PredictionModel

__all__ = ["LoopAlgorithmInputModel", "LoopAlgorithmOutputModel", "PredictionModel"]
