"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from paysync.config import get_settings

_engine = None


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}  # shared between the API and sync jobs
    return {}


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            connect_args=_connect_args(settings.database_url),
        )
        # Import all models so metadata is populated before create_all
        from paysync.models.audit import AuditEvent  # noqa
        from paysync.models.connection import Connection  # noqa
        from paysync.models.payroll import Employee, PayRun, PayStatement  # noqa
        from paysync.models.sync import SyncJob  # noqa
        SQLModel.metadata.create_all(_engine)
    return _engine
