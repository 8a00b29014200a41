from .base import Projection
from .session import SessionProjection, aggregate_session
from .spec_timeline import SpecHashSpan, SpecHashTimelineProjection

__all__ = [
    "Projection",
    "SessionProjection",
    "SpecHashSpan",
    "SpecHashTimelineProjection",
    "aggregate_session",
]
