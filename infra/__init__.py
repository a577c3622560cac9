"""Infrastructure modules for the order lifecycle engine"""

from .cache import ReadThroughCache  # noqa: F401
from .concurrency import ApiLimiters, CircuitBreaker, ConcurrencyLimiter, FailureTracker  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401

__all__ = [
	"ApiLimiters",
	"CircuitBreaker",
	"ConcurrencyLimiter",
	"FailureTracker",
	"MetricsRecorder",
	"ReadThroughCache",
]
