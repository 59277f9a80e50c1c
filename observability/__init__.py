from .audit import AuditLog, now_ms
from .logging import build_log_context, configure_logging, log_event

__all__ = ["AuditLog", "build_log_context", "configure_logging", "log_event", "now_ms"]
