"""
The admission pipeline: ordered stages around a business handler.
"""

from .pipeline import Pipeline, PipelineResponse
from .stages import AuthStage, HandleStage, RateLimitStage, Stage, ValidateStage

__all__ = [
    "AuthStage",
    "HandleStage",
    "Pipeline",
    "PipelineResponse",
    "RateLimitStage",
    "Stage",
    "ValidateStage",
]
