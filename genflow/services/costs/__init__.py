from __future__ import annotations

# Re-export cost services for centralized imports.

from genflow.services.costs.estimator import CostEstimate, CostEstimator, StepEstimate
from genflow.services.costs.pricing import image_credits, video_credits, video_seconds

__all__ = [
    "CostEstimate",
    "CostEstimator",
    "StepEstimate",
    "image_credits",
    "video_credits",
    "video_seconds",
]
