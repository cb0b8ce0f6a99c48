# =============================================================================
# caseflow_core/offline/connection_manager.py
# Connection Status Detection and Management
# =============================================================================
"""
ConnectionMonitor - detects and monitors internet/backend connectivity.

Features:
- Socket-level reachability checks (public DNS, then the sync backend)
- Periodic background checks, faster while offline
- Callbacks on status change (the sync engine uses this to sync on reconnect)
- User-forced offline mode
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"           # Internet and sync backend reachable
    OFFLINE = "offline"         # No connectivity (or forced offline)
    DEGRADED = "degraded"       # Internet OK but backend unavailable
    CHECKING = "checking"       # Currently checking status
    UNKNOWN = "unknown"         # Initial state


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    internet_available: bool = False
    backend_available: bool = False
    forced_offline: bool = False
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


class ConnectionMonitor:
    """
    Connectivity monitor for the sync backend.

    Usage:
        monitor = ConnectionMonitor(backend_host="crm.example.com", backend_port=443)
        monitor.register_callback(on_change)
        monitor.initialize()
        if monitor.is_online:
            ...
    """

    CHECK_INTERVAL_ONLINE = 30      # Seconds between checks when online
    CHECK_INTERVAL_OFFLINE = 10     # Seconds between checks when offline
    CONNECTION_TIMEOUT = 5          # Timeout for connection tests

    PUBLIC_HOSTS: List[Tuple[str, int]] = [
        ("8.8.8.8", 53),            # Google DNS
        ("1.1.1.1", 53),            # Cloudflare DNS
        ("208.67.222.222", 53),     # OpenDNS
    ]

    def __init__(
        self,
        backend_host: Optional[str] = None,
        backend_port: int = 443,
        check_interval: Optional[float] = None,
    ):
        self.backend_host = backend_host
        self.backend_port = backend_port
        if check_interval is not None:
            self.CHECK_INTERVAL_ONLINE = check_interval
        self._state = ConnectionState()
        self._state_lock = threading.Lock()
        self._callbacks: List[Callable[[ConnectionState], None]] = []
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()
        self._initialized = False

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        """Check if we have full connectivity."""
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state.status == ConnectionStatus.OFFLINE

    def initialize(self, start_monitoring: bool = True) -> None:
        """
        Run an initial check and optionally start background monitoring.
        """
        if self._initialized:
            return

        self.check_connection()
        if start_monitoring:
            self.start_monitoring()

        self._initialized = True
        logger.info(f"ConnectionMonitor initialized. Status: {self._state.status.value}")

    def check_connection(self) -> ConnectionState:
        """
        Perform a connection check and update state.

        Returns:
            Updated ConnectionState
        """
        with self._state_lock:
            old_status = self._state.status
            if self._state.forced_offline:
                return self._state

            self._state.status = ConnectionStatus.CHECKING
            self._state.last_check = datetime.now()

            internet_ok = self._check_internet()
            backend_ok = self._check_backend() if internet_ok else False
            self._state.internet_available = internet_ok
            self._state.backend_available = backend_ok

            if internet_ok and backend_ok:
                self._state.status = ConnectionStatus.ONLINE
                self._state.last_online = datetime.now()
                self._state.consecutive_failures = 0
                self._state.error_message = None
            elif internet_ok:
                self._state.status = ConnectionStatus.DEGRADED
                self._state.consecutive_failures += 1
            else:
                self._state.status = ConnectionStatus.OFFLINE
                self._state.consecutive_failures += 1

            changed = old_status != self._state.status

        if changed:
            logger.info(f"Connection status changed: {old_status.value} -> {self._state.status.value}")
            self._notify_callbacks()

        return self._state

    def _reachable(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=self.CONNECTION_TIMEOUT):
                return True
        except OSError as e:
            logger.debug(f"{host}:{port} unreachable: {e}")
            self._state.error_message = str(e)
            return False

    def _check_internet(self) -> bool:
        """
        Check internet connectivity by attempting to reach well-known hosts.
        """
        return any(self._reachable(host, port) for host, port in self.PUBLIC_HOSTS)

    def _check_backend(self) -> bool:
        """
        Check the sync backend. With no backend configured the store runs
        local-only and this is treated as available.
        """
        if not self.backend_host:
            return True
        return self._reachable(self.backend_host, self.backend_port)

    def start_monitoring(self) -> None:
        """Start background connection monitoring."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="ConnectionMonitor"
        )
        self._monitor_thread.start()
        logger.debug("Connection monitoring started")

    def stop_monitoring(self) -> None:
        """Stop background connection monitoring."""
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
            self._monitor_thread = None
        logger.debug("Connection monitoring stopped")

    def _monitoring_loop(self) -> None:
        """Background monitoring loop."""
        while not self._stop_monitoring.is_set():
            interval = (
                self.CHECK_INTERVAL_ONLINE
                if self.is_online
                else self.CHECK_INTERVAL_OFFLINE
            )

            if self._stop_monitoring.wait(timeout=interval):
                break

            try:
                self.check_connection()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """
        Register a callback for connection status changes.

        Args:
            callback: Function called with ConnectionState when status changes
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def force_offline(self) -> None:
        """Force offline mode until set_online() is called."""
        with self._state_lock:
            self._state.forced_offline = True
            self._state.status = ConnectionStatus.OFFLINE
            self._state.internet_available = False
            self._state.backend_available = False
        self._notify_callbacks()
        logger.info("Forced offline mode")

    def set_online(self) -> ConnectionState:
        """Leave forced-offline mode and re-check immediately."""
        with self._state_lock:
            self._state.forced_offline = False
        logger.info("Leaving forced offline mode")
        return self.check_connection()

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "internet": self._state.internet_available,
            "backend": self._state.backend_available,
            "forced_offline": self._state.forced_offline,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }
