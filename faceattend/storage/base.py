from abc import ABC, abstractmethod

from ..models import AppSettings, AppState, Identity, Session


class AttendanceRepository(ABC):
    """Storage contract shared by every backend.

    Implementations raise ``PersistenceError`` for any storage or network
    failure; callers never see backend-specific exceptions.
    """

    backend_name = "abstract"

    @abstractmethod
    def load_all(self) -> AppState: ...

    @abstractmethod
    def save_identity(self, identity: Identity) -> None: ...

    @abstractmethod
    def delete_identity(self, identity_id: str) -> None: ...

    @abstractmethod
    def append_historical_record(self, session: Session) -> None: ...

    @abstractmethod
    def save_settings(self, settings: AppSettings) -> None: ...

    @abstractmethod
    def clear(self) -> None:
        """Remove every identity and historical record, keeping settings."""
