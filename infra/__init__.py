"""Infrastructure modules for crypto-sentinel"""

from .alerting import AlertService, AlertSeverity, OnceLogger  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"OnceLogger",
	"MetricsRecorder",
	"StateStore",
]
