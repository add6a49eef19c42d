"""Filter implementations."""

from .feedback_filter import FeedbackFilter, Filter, FilterResult

__all__ = ["FeedbackFilter", "Filter", "FilterResult"]
