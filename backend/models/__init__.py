"""Models package."""
from backend.models.learning import (
    CorrectionFeedbackRecord,
    LearnedPatternRecord,
    LearningLogRecord,
    LearningMetricsRecord,
)

__all__ = [
    "CorrectionFeedbackRecord",
    "LearnedPatternRecord",
    "LearningLogRecord",
    "LearningMetricsRecord",
]
