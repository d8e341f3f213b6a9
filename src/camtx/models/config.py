"""Service configuration for the camera transmitter."""

import os
from dataclasses import dataclass


@dataclass
class AppConfig:
    """Configuration class for the camtx service."""

    http_host: str = "0.0.0.0"  # noqa: S104
    http_port: int = 8888
    log_level: str = "INFO"
    log_file: str | None = None
    config_path: str | None = None  # Overrides the resolved configuration file path
    teardown_timeout: float = 5.0  # Seconds to wait for a graceful pipeline stop
    quiescence_seconds: float = 1.0  # Delay after teardown before the camera is reused
    recovery_policy: str = "terminate"  # terminate or restart on fatal pipeline errors
    max_restarts: int = 3
    restart_window: float = 60.0
    max_encoder_attempts: int = 6

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create config from environment variables."""
        return cls(
            http_host=os.getenv("CAMTX_HTTP_HOST", "0.0.0.0"),  # noqa: S104
            http_port=int(os.getenv("CAMTX_HTTP_PORT", "8888")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE"),
            config_path=os.getenv("CAMTX_CONFIG_PATH") or None,
            teardown_timeout=float(os.getenv("CAMTX_TEARDOWN_TIMEOUT", "5.0")),
            quiescence_seconds=float(os.getenv("CAMTX_QUIESCENCE_SECONDS", "1.0")),
            recovery_policy=os.getenv("CAMTX_RECOVERY_POLICY", "terminate").strip().lower(),
            max_restarts=int(os.getenv("CAMTX_MAX_RESTARTS", "3")),
            restart_window=float(os.getenv("CAMTX_RESTART_WINDOW", "60.0")),
            max_encoder_attempts=int(os.getenv("CAMTX_MAX_ENCODER_ATTEMPTS", "6")),
        )

    def validate(self) -> None:
        """Validate the configuration.

        :raises ValueError: If any of the fields are invalid.
        """
        if self.http_port <= 0 or self.http_port > 65535:
            port_error = f"Invalid HTTP port: {self.http_port}. Must be between 1 and 65535"
            raise ValueError(port_error)
        if self.teardown_timeout <= 0:
            timeout_error = f"Teardown timeout must be positive, got {self.teardown_timeout}"
            raise ValueError(timeout_error)
        if self.quiescence_seconds < 0:
            quiescence_error = (
                f"Quiescence interval cannot be negative, got {self.quiescence_seconds}"
            )
            raise ValueError(quiescence_error)
        if self.recovery_policy not in ("terminate", "restart"):
            policy_error = (
                f"Unknown recovery policy: {self.recovery_policy}. Use 'terminate' or 'restart'"
            )
            raise ValueError(policy_error)
        if self.max_restarts < 0 or self.restart_window <= 0:
            budget_error = "Restart budget needs max_restarts >= 0 and a positive window"
            raise ValueError(budget_error)
        if self.max_encoder_attempts < 1:
            attempts_error = "At least one encoder attempt is required"
            raise ValueError(attempts_error)
