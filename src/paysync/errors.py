"""Domain exceptions surfaced to callers of the connection store and sync engine."""


class PaySyncError(Exception):
    """Root of all domain errors raised by paysync."""


class ValidationError(PaySyncError):
    """Bad caller input (missing owner reference, unknown provider, bad state)."""


class NotFoundError(PaySyncError):
    """Entity absent, or not visible to the caller's owner scope."""


class ConnectionNotFound(NotFoundError):
    pass


class JobNotFound(NotFoundError):
    pass


class ConnectionNotActive(PaySyncError):
    """Sync requested for a connection whose status is revoked or error."""

    def __init__(self, connection_id: str, status: str):
        super().__init__(f"Connection {connection_id} is {status}")
        self.connection_id = connection_id
        self.status = status


class SyncAlreadyRunning(PaySyncError):
    """Another job for the same connection is still pending or processing."""

    def __init__(self, connection_id: str, job_id: str):
        super().__init__(f"Sync job {job_id} is already running for connection {connection_id}")
        self.connection_id = connection_id
        self.job_id = job_id


class ProviderAuthError(PaySyncError):
    """The provider rejected an authorization code or credential."""
