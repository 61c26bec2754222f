"""Infrastructure modules for the sniper: notifications, metrics, wallet RPC"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .solana_rpc import SolanaRpcClient  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"SolanaRpcClient",
]
