from .config import (
    FlushSettings,
    RetentionPolicy,
    UplinkConfig,
    UplinkConfigError,
    endpoint_credentials,
    integration_settings,
    load_uplink_config_from_env,
)
from .coordinator import FlushCoordinator
from .registry import UploadRegistry, UploadTask
from .scheduler import FlushScheduler, PeriodicTimer
from .storage import BatchHandle, SqliteEventStorage
from .transport import FutureUploadHandle, HttpTransport
from .uploader import BatchUploader, UploadOutcome, classify_outcome

__version__ = "0.1.0"

__all__ = [
    "BatchHandle",
    "BatchUploader",
    "FlushCoordinator",
    "FlushScheduler",
    "FlushSettings",
    "FutureUploadHandle",
    "HttpTransport",
    "PeriodicTimer",
    "RetentionPolicy",
    "SqliteEventStorage",
    "UplinkConfig",
    "UplinkConfigError",
    "UploadOutcome",
    "UploadRegistry",
    "UploadTask",
    "classify_outcome",
    "endpoint_credentials",
    "integration_settings",
    "load_uplink_config_from_env",
]
