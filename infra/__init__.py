"""Infrastructure modules for levelbounce"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .backoff import Backoff, BackoffPolicy, retry_call  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"Backoff",
	"BackoffPolicy",
	"retry_call",
	"MetricsRecorder",
	"StateStore",
]
