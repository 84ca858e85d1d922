"""
Builds a fully wired DeprecationOrchestrator from configuration.
"""

from datetime import datetime
from functools import partial
from typing import Callable, Mapping, Optional

from .backup import BackupValidator
from .catalog import CatalogReader
from .config import (
    BACKUP_DIR,
    BACKUP_ENCRYPTION_ENABLED,
    CORE_ELEMENTS,
    DEPRECATION_ENVIRONMENT,
    METADATA_DB_PATH,
    TARGET_DB_PATH,
    EnvironmentPolicy,
    load_policies,
)
from .dao import DeprecationStore
from .db import connect_target
from .monitor import AccessMonitor
from .orchestrator import DeprecationOrchestrator
from .rollback import RollbackManager
from .safety import SafetyCheckEngine, make_row_counter


def build_orchestrator(target_path: str = TARGET_DB_PATH,
                       metadata_path: str = METADATA_DB_PATH,
                       backup_dir: str = BACKUP_DIR,
                       policies: Optional[Mapping[str, EnvironmentPolicy]] = None,
                       environment: str = DEPRECATION_ENVIRONMENT,
                       encrypt_backups: bool = BACKUP_ENCRYPTION_ENABLED,
                       clock: Callable[[], datetime] = datetime.now,
                       **orchestrator_options) -> DeprecationOrchestrator:
    """
    Wire every component against one target database and one metadata store.

    Args:
        target_path: Database whose elements are deprecated
        metadata_path: Separate SQLite file for deprecation metadata
        backup_dir: Where backup files are written
        policies: Environment policies (loaded from DEPRECATION_POLICY_FILE when omitted)
        environment: Default environment for new plans
        encrypt_backups: Encrypt backup payloads
        clock: Time source shared by all components
        **orchestrator_options: Passed through to DeprecationOrchestrator
    """
    if policies is None:
        policies = load_policies()

    connect = partial(connect_target, target_path)
    store = DeprecationStore(metadata_path)
    catalog = CatalogReader(connect)
    monitor = AccessMonitor(store, clock=clock)
    backups = BackupValidator(store, connect, backup_dir=backup_dir, encrypt=encrypt_backups, clock=clock)
    safety = SafetyCheckEngine(catalog, monitor, make_row_counter(connect), core_elements=CORE_ELEMENTS,
                               clock=clock)
    rollback = RollbackManager(store, backups, connect, metadata_path, clock=clock)

    return DeprecationOrchestrator(
        store=store,
        catalog=catalog,
        safety=safety,
        backups=backups,
        monitor=monitor,
        rollback=rollback,
        connect_target=connect,
        policies=policies,
        default_environment=environment,
        metadata_path=metadata_path,
        clock=clock,
        **orchestrator_options,
    )


def shutdown(orchestrator: DeprecationOrchestrator):
    """Flush the monitor and release worker pools."""
    orchestrator.monitor.stop()
    orchestrator.safety.shutdown()
    orchestrator.backups.shutdown()
