"""
Audit logging system for the Discord Auth Proxy.

This module records login-flow events (initiation, cancellation, CSRF
failures, provider failures, account binding) for operators, separately
from the application's diagnostic logging.
"""

import logging
import threading
import time
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from enum import Enum


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    OAUTH_INITIATED = "oauth_initiated"
    OAUTH_COMPLETED = "oauth_completed"
    OAUTH_FAILED = "oauth_failed"
    OAUTH_CANCELLED = "oauth_cancelled"
    CSRF_MISMATCH = "csrf_mismatch"
    ACCOUNT_CREATED = "account_created"
    SETTINGS_UPDATED = "settings_updated"


@dataclass
class AuditEvent:
    """Represents a single audit event."""
    event_id: str
    event_type: AuditEventType
    timestamp: str
    external_id: Optional[str]
    user_ip: Optional[str]
    user_agent: Optional[str]
    success: bool
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit event to dictionary."""
        result = asdict(self)
        result['event_type'] = self.event_type.value
        return result


class AuditLogger:
    """
    In-memory audit trail with a dedicated ``audit`` log channel.

    Keeps the most recent events for the health/admin API and writes every
    event to the ``audit`` logger.
    """

    MAX_EVENTS = 10000

    def __init__(self):
        """Initialize the audit logger."""
        self.logger = logging.getLogger(f"{__name__}.AuditLogger")
        self.events: List[AuditEvent] = []
        self.storage_lock = threading.Lock()
        self.event_counter = 0

        self._setup_audit_logging()

    def _setup_audit_logging(self):
        """Set up dedicated audit logging configuration."""
        audit_logger = logging.getLogger('audit')
        audit_logger.setLevel(logging.INFO)

        if not audit_logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(asctime)s - AUDIT - %(levelname)s - %(message)s'))
            audit_logger.addHandler(handler)

        self.audit_logger = audit_logger

    def _generate_event_id(self) -> str:
        """Generate a unique event ID."""
        with self.storage_lock:
            self.event_counter += 1
            return f"audit_{int(time.time())}_{self.event_counter}"

    def log_event(self, event_type: AuditEventType, external_id: Optional[str] = None,
                  user_ip: Optional[str] = None, user_agent: Optional[str] = None,
                  success: bool = True, details: Optional[Dict[str, Any]] = None) -> str:
        """
        Log an audit event.

        Args:
            event_type: Type of audit event
            external_id: Optional Discord user ID
            user_ip: Optional user IP address
            user_agent: Optional user agent string
            success: Whether the operation was successful
            details: Optional additional event details (never tokens or secrets)

        Returns:
            Generated event ID
        """
        event = AuditEvent(
            event_id=self._generate_event_id(),
            event_type=event_type,
            timestamp=datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            external_id=external_id,
            user_ip=user_ip,
            user_agent=user_agent,
            success=success,
            details=details or {}
        )

        with self.storage_lock:
            self.events.append(event)
            if len(self.events) > self.MAX_EVENTS:
                self.events = self.events[-self.MAX_EVENTS:]

        level = logging.INFO if success else logging.WARNING
        self.audit_logger.log(
            level,
            f"Event: {event_type.value} | External ID: {external_id} | "
            f"IP: {user_ip} | Success: {success}"
        )

        return event.event_id

    def get_recent_events(self, limit: int = 100,
                          event_type: Optional[AuditEventType] = None) -> List[Dict[str, Any]]:
        """
        Get the most recent audit events, newest first.

        Args:
            limit: Maximum number of events to return
            event_type: Optional event type filter

        Returns:
            List of audit event dictionaries
        """
        results = []
        with self.storage_lock:
            for event in reversed(self.events):
                if event_type is None or event.event_type == event_type:
                    results.append(event.to_dict())
                    if len(results) >= limit:
                        break
        return results

    def get_audit_statistics(self) -> Dict[str, Any]:
        """
        Get audit statistics for the health endpoint.

        Returns:
            Dictionary with event counts by type and overall success rate
        """
        with self.storage_lock:
            total_events = len(self.events)
            event_types = {}
            success_count = 0
            for event in self.events:
                event_types[event.event_type.value] = event_types.get(event.event_type.value, 0) + 1
                if event.success:
                    success_count += 1

        success_rate = (success_count / total_events * 100) if total_events > 0 else 0

        return {
            'total_events': total_events,
            'success_rate_percent': round(success_rate, 2),
            'event_types': event_types
        }

    def clear(self) -> None:
        with self.storage_lock:
            self.events.clear()


# Global audit logger instance
audit_logger = AuditLogger()


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    return audit_logger
