"""
Component wiring

Builds every engine component on one shared storage backend. There is no
module-level instance; callers own the system they create.
"""

from datetime import datetime
from typing import Callable, Optional

from .authorization import ActionAuthorizer
from .config import WaypointConfig, get_config
from .directory import ActorDirectory
from .events import EventDispatcher
from .instances import RequestRepository
from .ledger import AuditLedger
from .lifecycle import RequestLifecycleManager
from .reporting import AnalyticsReader
from .sla import SLAEscalator, SLATracker
from .storage import StorageInterface, create_storage
from .workflows import WorkflowStore


class ApprovalSystem:
    """Approval engine with all components initialized"""

    def __init__(self, settings: Optional[WaypointConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings or get_config()
        self.storage = storage or create_storage(self.settings.database_url)

        self.directory = ActorDirectory(self.storage)
        self.workflow_store = WorkflowStore(self.storage, max_steps=self.settings.max_steps)
        self.repository = RequestRepository(self.storage)
        self.ledger = AuditLedger(self.storage, self.directory,
                                  enable_chain=self.settings.enable_audit_chain, clock=clock)
        self.dispatcher = EventDispatcher()
        self.authorizer = ActionAuthorizer()
        self.sla_tracker = SLATracker(self.repository, clock=clock)
        self.lifecycle = RequestLifecycleManager(
            self.repository, self.workflow_store, self.ledger,
            authorizer=self.authorizer,
            tracker=self.sla_tracker,
            dispatcher=self.dispatcher,
            directory=self.directory,
            settings=self.settings,
            clock=clock,
        )
        self.escalator = SLAEscalator(self.sla_tracker, self.lifecycle)
        self.analytics = AnalyticsReader(self.repository, self.ledger)

    def close(self) -> None:
        self.storage.close()
