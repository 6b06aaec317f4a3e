from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional

from taskpulse.config import get_settings, reset_settings_cache
from taskpulse.logging import get_logger
from taskpulse.service.accounts import AccountService
from taskpulse.service.auth import Authenticator, SessionService
from taskpulse.service.email import EmailService
from taskpulse.service.notifications import DailySummarySender, NotificationDispatchJob
from taskpulse.service.registry import SessionRegistry
from taskpulse.service.scheduler import build_scheduler
from taskpulse.service.tokens import CredentialCodec
from taskpulse.storage.memory import MemoryStore
from taskpulse.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds the explicitly wired service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.store_type = store_type
        logger.info("runtime_store_initialized", store_type=store_type)

        self.codec = CredentialCodec.from_settings(self.settings)
        self.registry = SessionRegistry(self.store)
        self.authenticator = Authenticator(self.codec, self.store)
        self.sessions = SessionService(self.codec, self.registry)
        self.email = EmailService.from_settings(self.settings)
        self.accounts = AccountService(
            self.store,
            self.sessions,
            email=self.email,
            reset_ttl=timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.summary_sender = DailySummarySender(self.store, self.email)
        self.dispatch = NotificationDispatchJob(self.store, self.summary_sender)
        self.scheduler = build_scheduler(
            self.settings,
            store=self.store,
            registry=self.registry,
            dispatch=self.dispatch,
        )

    def close(self) -> None:
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
