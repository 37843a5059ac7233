"""Infrastructure modules for perptrader"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .state_store import InMemoryStore, SQLiteStore, Store, create_store_from_config  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"Store",
	"InMemoryStore",
	"SQLiteStore",
	"create_store_from_config",
]
