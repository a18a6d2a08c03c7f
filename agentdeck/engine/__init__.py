"""agentdeck engine: agent CLI discovery, install and per-session process control."""
from .models import (
    CliLocation,
    DiscoveryMethod,
    InstallResult,
    ProcessState,
    Session,
    SessionStatus,
)
from .config import HostConfig
from .errors import (
    AgentDeckError,
    AssetLoadError,
    CliNotFoundError,
    InvalidTransitionError,
    ProcessSpawnError,
    ProtocolError,
    SessionNotFoundError,
    StdinUnavailableError,
    StdinWriteError,
    UnknownSurfaceError,
)
from .cli_resolver import CachedResolver, CliResolver
from .installer import CliInstaller
from .permission_config import PermissionConfig, derive_permission_config
from .process_handler import ProcessHandler
from .session_registry import SessionRegistry

__all__ = [
    # Models
    "CliLocation",
    "DiscoveryMethod",
    "InstallResult",
    "ProcessState",
    "Session",
    "SessionStatus",
    "PermissionConfig",
    # Config
    "HostConfig",
    # Components
    "CachedResolver",
    "CliInstaller",
    "CliResolver",
    "ProcessHandler",
    "SessionRegistry",
    "derive_permission_config",
    # Errors
    "AgentDeckError",
    "AssetLoadError",
    "CliNotFoundError",
    "InvalidTransitionError",
    "ProcessSpawnError",
    "ProtocolError",
    "SessionNotFoundError",
    "StdinUnavailableError",
    "StdinWriteError",
    "UnknownSurfaceError",
]
