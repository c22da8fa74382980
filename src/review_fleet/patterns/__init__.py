"""Detection pattern sets and loader exports."""

from .defaults import default_patterns
from .loader import PatternLoadError, PatternLoader, load_patterns
from .models import DetectionPatterns

__all__ = [
    "DetectionPatterns",
    "PatternLoadError",
    "PatternLoader",
    "default_patterns",
    "load_patterns",
]
