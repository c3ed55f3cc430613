"""Create-time bootstrap of new PostgreSQL clusters."""
from __future__ import annotations

from .datadir import (
    DataDirectoryState,
    PreparedDirectories,
    classify_data_directory,
    prepare_directories,
)
from .provisioning import ProvisioningSession, generate_password
from .sequencer import BOOTSTRAP_LOG_NAME, BootstrapSequencer

__all__ = [
    # data directory helpers
    "DataDirectoryState",
    "PreparedDirectories",
    "classify_data_directory",
    "prepare_directories",
    # provisioning helpers
    "ProvisioningSession",
    "generate_password",
    # sequencing
    "BOOTSTRAP_LOG_NAME",
    "BootstrapSequencer",
]
