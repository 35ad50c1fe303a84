"""
Composition root for the identity subsystem.
Wires configuration, storage, the protection ledger and the services around
externally supplied transport and authorization oracle implementations.
"""

import logging
import random
from dataclasses import dataclass

from config.config import Config, config
from src.data.database_factory import SessionScope, get_session, setup_database
from src.logic.protection_ledger import ProtectionLedger
from src.logic.protection_monitor import IdentityChange, MonitorResult, ProtectionMonitor
from src.services.admin_service import IdentityAdminService
from src.services.audit_service import OperatorAuditService
from src.services.interfaces import AuthorizationOracle, Transport
from src.services.interview_service import InterviewService
from src.utils.identity_error_handler import IdentityErrorHandler
from src.utils.logging import configure_logging

logger = logging.getLogger(__name__)


@dataclass
class IdentityRuntime:
    """Assembled services sharing one ledger and one error handler."""

    config: Config
    ledger: ProtectionLedger
    error_handler: IdentityErrorHandler
    audit_service: OperatorAuditService
    interview_service: InterviewService
    protection_monitor: ProtectionMonitor
    admin_service: IdentityAdminService

    def on_identity_change(self, change: IdentityChange) -> MonitorResult:
        """Entry point for the transport's identity change notifications."""
        return self.protection_monitor.handle_change(change)

    def close(self) -> None:
        self.protection_monitor.close()


def build_identity_runtime(
    transport: Transport,
    oracle: AuthorizationOracle,
    app_config: Config | None = None,
    session_scope: SessionScope | None = None,
    ledger: ProtectionLedger | None = None,
    rng: random.Random | None = None,
) -> IdentityRuntime:
    """
    Assemble the identity subsystem.

    Args:
        transport: platform messaging and display-identifier mutation
        oracle: attribution of recent identity changes
        app_config: configuration, the global one by default
        session_scope: transactional scope factory; when omitted the database
            is set up from the configured DSN
        ledger: existing ledger to share, a fresh one by default
        rng: random source for identifier draws

    Returns:
        IdentityRuntime: the wired services
    """
    app_config = app_config or config
    configure_logging(app_config.log_level)

    if session_scope is None:
        setup_database(app_config.database.dsn)
        session_scope = get_session

    ledger = ledger if ledger is not None else ProtectionLedger()
    error_handler = IdentityErrorHandler()
    flags = app_config.feature_flags

    audit_service = OperatorAuditService(
        transport,
        session_scope=session_scope,
        persist_events=flags.enable_audit_persistence and app_config.persistence.persist_operator_events,
    )
    interview_service = InterviewService(
        transport,
        ledger,
        audit_service,
        session_scope=session_scope,
        interview_config=app_config.interview,
        identifier_config=app_config.identifier,
        error_handler=error_handler,
        alternate_path_enabled=flags.enable_alternate_path,
        rng=rng,
    )
    protection_monitor = ProtectionMonitor(
        ledger,
        oracle,
        transport,
        audit_service,
        protection_config=app_config.protection,
        error_handler=error_handler,
        enabled=flags.enable_protection_monitor,
        alerts_enabled=flags.enable_operator_alerts,
    )
    admin_service = IdentityAdminService(
        interview_service,
        ledger,
        transport,
        audit_service,
        session_scope=session_scope,
        identifier_config=app_config.identifier,
    )

    if app_config.persistence.rehydrate_ledger_on_start:
        loaded = admin_service.protect_onboarded()
        logger.info(f"Protection ledger rehydrated with {loaded} entries")

    logger.info(
        f"Identity runtime ready ({app_config.environment}, "
        f"monitor={'on' if flags.enable_protection_monitor else 'off'})"
    )
    return IdentityRuntime(
        config=app_config,
        ledger=ledger,
        error_handler=error_handler,
        audit_service=audit_service,
        interview_service=interview_service,
        protection_monitor=protection_monitor,
        admin_service=admin_service,
    )
