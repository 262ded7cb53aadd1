"""py-test-containers: Disposable containers for test suites."""

# All errors (foundational)
from py_test_containers.errors import (
    BackoffError,
    CleanupError,
    ConfigurationError,
    EngineError,
    EngineNotFoundError,
    LogProtocolError,
    OperationTimeoutError,
    ReaperError,
    TestContainersError,
)

from py_test_containers.backoff import with_exponential_backoff
from py_test_containers.config import ManagerConfig
from py_test_containers.container import Container
from py_test_containers.discovery import (
    DockerLocator,
    EngineEndpoint,
    EnvironmentLocator,
    PropertiesFileLocator,
    find_first_reachable,
    resolve_engine_endpoint,
)
from py_test_containers.engine import EngineClient, LogFrameDemuxer
from py_test_containers.manager import TestContainerManager
from py_test_containers.network import Network
from py_test_containers.reaper import Reaper
from py_test_containers.timeout import run_with_timeout

# Core types (foundational, used everywhere)
from py_test_containers.types import (
    ContainerPortBinding,
    CreateContainerSettings,
    ExposedPort,
    LogEvent,
    SocketProtocol,
    StreamType,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "TestContainerManager",
    "ManagerConfig",
    "Container",
    "Network",
    "Reaper",
    # Engine
    "EngineClient",
    "EngineEndpoint",
    "LogFrameDemuxer",
    # Discovery
    "DockerLocator",
    "EnvironmentLocator",
    "PropertiesFileLocator",
    "find_first_reachable",
    "resolve_engine_endpoint",
    # Utilities
    "with_exponential_backoff",
    "run_with_timeout",
    # Types
    "ContainerPortBinding",
    "CreateContainerSettings",
    "ExposedPort",
    "LogEvent",
    "SocketProtocol",
    "StreamType",
    # Errors
    "TestContainersError",
    "EngineError",
    "BackoffError",
    "OperationTimeoutError",
    "LogProtocolError",
    "EngineNotFoundError",
    "ReaperError",
    "CleanupError",
    "ConfigurationError",
]
