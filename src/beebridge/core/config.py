"""Configuration management for the beebridge generation bridge.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the BEEBRIDGE_ prefix,
allowing the worker command and timing constants to be changed without code
changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (BEEBRIDGE_* prefix)
2. .env file in the project root
3. Default values defined in BridgeConfig

Example .env file:
    BEEBRIDGE_WORKER_EXECUTABLE=/usr/bin/python3
    BEEBRIDGE_WORKER_SCRIPT=backends/stable_diffusion/diffusionbee_backend.py
    BEEBRIDGE_POLL_INTERVAL=0.5
    BEEBRIDGE_TERMINATE_GRACE_PERIOD=5

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from beebridge.core.config import config

    print(config.worker_command())
    print(config.poll_interval)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- outputs_dir: Default destination offered to the worker for generated images
- settings_file.parent: Where the persisted user settings live

See Also
--------
- BridgeConfig: Full configuration class documentation
"""

import sys
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BridgeConfig(BaseSettings):
    """Main configuration for the beebridge generation bridge.

    Attributes
    ----------
    Worker Process:
        worker_executable : str
            Program used to launch the worker (the current interpreter by default)
        worker_script : Path | None
            Worker entry script passed as the first argument, if any
        worker_args : list[str]
            Extra arguments appended after the script
        worker_cwd : Path | None
            Working directory for the worker process
        terminate_grace_period : float
            Seconds to wait for a cooperative exit before killing the worker

    Session Behaviour:
        poll_interval : float
            Seconds between progress polls
        decode_error_threshold : int
            Consecutive unparseable lines tolerated before a session fails

    Paths:
        settings_file : Path
            JSON file holding the persisted user settings
        outputs_dir : Path
            Default output directory for generated images

    Models:
        available_models : list[str]
            Model identifiers offered to the UI

    Server:
        server_host : str
            Bind address for the local HTTP surface
        server_port : int
            Port for the local HTTP surface (1024-65535)
        log_level : str
            Root logging level used by the server entry point

    Examples
    --------
        >>> custom = BridgeConfig(poll_interval=0.1, worker_script=None)
        >>> custom.worker_command()[0] == custom.worker_executable
        True
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BEEBRIDGE_",
        case_sensitive=False,
    )

    # Worker process
    worker_executable: str = Field(
        default=sys.executable,
        description="Program used to launch the worker process",
    )
    worker_script: Path | None = Field(
        default=Path("backends/stable_diffusion/diffusionbee_backend.py"),
        description="Worker entry script (first argument), or None",
    )
    worker_args: list[str] = Field(
        default_factory=list,
        description="Extra arguments appended to the worker command",
    )
    worker_cwd: Path | None = Field(
        default=None,
        description="Working directory for the worker process",
    )
    terminate_grace_period: float = Field(
        default=5.0,
        description="Seconds to wait for a cooperative exit before killing the worker",
        gt=0,
    )

    # Session behaviour
    poll_interval: float = Field(
        default=0.5,
        description="Seconds between progress polls",
        gt=0,
    )
    decode_error_threshold: int = Field(
        default=3,
        description="Consecutive unparseable worker lines tolerated before failing",
        ge=1,
    )
    history_size: int = Field(
        default=50,
        description="Cleared sessions kept in the in-memory result history",
        ge=1,
    )

    # Paths
    settings_file: Path = Field(
        default=Path("data/settings.json"),
        description="JSON file holding persisted user settings",
    )
    outputs_dir: Path = Field(
        default=Path("outputs"),
        description="Default directory for generated images",
    )

    # Models
    available_models: list[str] = Field(
        default_factory=lambda: ["stable-diffusion-v1-5"],
        description="Model identifiers offered to the UI",
    )

    # Server
    server_host: str = Field(
        default="127.0.0.1",
        description="Bind address (local only by default)",
    )
    server_port: int = Field(
        default=7861,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level for the server entry point",
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        self.settings_file.parent.mkdir(parents=True, exist_ok=True)

    def worker_command(self) -> list[str]:
        """Build the argv list used to spawn the worker.

        Returns:
            ``[worker_executable, worker_script?, *worker_args]``
        """
        argv = [self.worker_executable]
        if self.worker_script is not None:
            argv.append(str(self.worker_script))
        argv.extend(self.worker_args)
        return argv


# Global configuration instance
# Loaded from environment variables (BEEBRIDGE_* prefix) and .env file.
config = BridgeConfig()
