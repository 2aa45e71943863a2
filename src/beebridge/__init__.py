"""beebridge - generation orchestration between a desktop UI and a diffusion worker."""

__version__ = "0.1.0"

from beebridge.core.config import BridgeConfig, config
from beebridge.core.coordinator import SessionCoordinator
from beebridge.core.models import AppSettings, GenerationRequest, ProgressSnapshot

__all__ = [
    "AppSettings",
    "BridgeConfig",
    "config",
    "GenerationRequest",
    "ProgressSnapshot",
    "SessionCoordinator",
]
