"""
Connection lifecycle manager

Owns every status change of a Connection:

    created -> deploying -> connected
                         -> error

deploying -> deploying is a re-check. Deployment timeout is soft: the
connection stays deploying and a later refresh() can complete it.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from .models import Connection, ConnectionStatus, utc_now

logger = logging.getLogger(__name__)

REMOTE_DEPLOYED = "DEPLOYED"
REMOTE_DEPLOY_FAILED = "DEPLOY_FAILED"

ALLOWED_TRANSITIONS: Dict[ConnectionStatus, Set[ConnectionStatus]] = {
    ConnectionStatus.CREATED: {ConnectionStatus.DEPLOYING},
    ConnectionStatus.DEPLOYING: {ConnectionStatus.DEPLOYING, ConnectionStatus.CONNECTED,
                                 ConnectionStatus.ERROR},
    ConnectionStatus.CONNECTED: set(),
    ConnectionStatus.ERROR: set(),
}


class LifecycleError(Exception):
    """Illegal connection status transition"""


class ConnectionLifecycle:
    """
    Drives a connection through deployment

    Args:
        store: Trade store holding connections
        client: Remote account client
        poll_interval: Seconds between deployment status checks
        timeout: Seconds to wait for deployment before leaving it deploying
        sleep: Sleep function, injectable for tests
        clock: Monotonic clock in seconds, injectable for tests
    """

    def __init__(self, store, client, poll_interval: float = 2.0, timeout: float = 120.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.client = client
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def transition(self, connection: Connection, status: ConnectionStatus) -> Connection:
        """Validate and persist a status change"""
        allowed = ALLOWED_TRANSITIONS[connection.status]
        if status not in allowed:
            raise LifecycleError(
                f"Illegal transition {connection.status.value} -> {status.value} "
                f"for connection {connection.id}"
            )

        previous = connection.status
        connection.status = status
        connection.updated_at = utc_now()
        self.store.save_connection(connection)

        if previous != status:
            logger.info(f"Connection {connection.id}: {previous.value} -> {status.value}")
        return connection

    def _apply_remote_state(self, connection: Connection, remote_state: str) -> Optional[Connection]:
        if remote_state == REMOTE_DEPLOYED:
            return self.transition(connection, ConnectionStatus.CONNECTED)
        if remote_state == REMOTE_DEPLOY_FAILED:
            logger.error(f"Remote deployment failed for connection {connection.id}")
            return self.transition(connection, ConnectionStatus.ERROR)
        return None

    def deploy(self, connection: Connection) -> Connection:
        """Request deployment, then poll until deployed, failed or timed out"""
        self.client.deploy_account(connection.remote_account_id)
        self.transition(connection, ConnectionStatus.DEPLOYING)
        return self.wait_for_deployed(connection)

    def wait_for_deployed(self, connection: Connection) -> Connection:
        started = self._clock()
        while self._clock() - started < self.timeout:
            remote_state = self.client.account_state(connection.remote_account_id)
            settled = self._apply_remote_state(connection, remote_state)
            if settled is not None:
                return settled
            self._sleep(self.poll_interval)

        logger.warning(f"Connection {connection.id} still deploying after {self.timeout:.0f}s")
        return self.transition(connection, ConnectionStatus.DEPLOYING)

    def refresh(self, connection: Connection) -> Connection:
        """One status check for a connection left deploying"""
        if connection.status != ConnectionStatus.DEPLOYING:
            return connection
        remote_state = self.client.account_state(connection.remote_account_id)
        settled = self._apply_remote_state(connection, remote_state)
        return settled if settled is not None else connection

    def mark_imported(self, connection: Connection, when: Optional[datetime] = None) -> Connection:
        connection.last_import_at = when or utc_now()
        connection.updated_at = utc_now()
        self.store.save_connection(connection)
        return connection
