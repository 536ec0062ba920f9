"""Runtime configuration for plugin worker processes."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

_ENV_PREFIX = "SATELLITE_"
_LEGACY_ENV_PREFIX = "OPSROCKET_"


@dataclass(frozen=True, slots=True)
class SupervisorSettings:
    """Child process supervision settings."""

    kill_timeout_seconds: float = 9.0
    stderr_buffer_bytes: int = 32_768
    first_line_chars: int = 256
    stream_drain_seconds: float = 5.0


@dataclass(frozen=True, slots=True)
class HttpSettings:
    """HTTP request plugin settings."""

    max_redirects: int = 32
    preview_chars: int = 32_768
    json_parse_max_bytes: int = 1_048_576
    user_agent: str = "satellite-plugins/1.0"


@dataclass(frozen=True, slots=True)
class Settings:
    """Process-wide settings, built once at entry and passed by reference."""

    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    marker_key: str = "opsrocket"
    log_level: str = "INFO"
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    http: HttpSettings = field(default_factory=HttpSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment, accepting OPSROCKET_* aliases."""

        return cls(
            temp_dir=Path(_env("TEMP_DIR", tempfile.gettempdir())),
            marker_key=_env("MARKER_KEY", "opsrocket"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            supervisor=SupervisorSettings(
                kill_timeout_seconds=float(_env("CHILD_KILL_TIMEOUT", "9")),
                stderr_buffer_bytes=int(_env("STDERR_BUFFER_BYTES", "32768")),
                first_line_chars=int(_env("STDERR_FIRST_LINE_CHARS", "256")),
                stream_drain_seconds=float(_env("STREAM_DRAIN_SECONDS", "5")),
            ),
            http=HttpSettings(
                max_redirects=int(_env("HTTP_MAX_REDIRECTS", "32")),
                preview_chars=int(_env("HTTP_PREVIEW_CHARS", "32768")),
                json_parse_max_bytes=int(_env("HTTP_JSON_PARSE_MAX_BYTES", "1048576")),
                user_agent=_env("HTTP_USER_AGENT", "satellite-plugins/1.0"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for unusable values."""

        if not self.marker_key.strip():
            raise ValueError("SATELLITE_MARKER_KEY must be a non-empty string.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Unknown SATELLITE_LOG_LEVEL: {self.log_level!r}")
        if self.supervisor.kill_timeout_seconds <= 0:
            raise ValueError("SATELLITE_CHILD_KILL_TIMEOUT must be > 0.")
        if self.supervisor.stderr_buffer_bytes <= 0:
            raise ValueError("SATELLITE_STDERR_BUFFER_BYTES must be > 0.")
        if self.supervisor.first_line_chars <= 0:
            raise ValueError("SATELLITE_STDERR_FIRST_LINE_CHARS must be > 0.")
        if self.supervisor.stream_drain_seconds < 0:
            raise ValueError("SATELLITE_STREAM_DRAIN_SECONDS must be >= 0.")
        if self.http.max_redirects < 0:
            raise ValueError("SATELLITE_HTTP_MAX_REDIRECTS must be >= 0.")
        if self.http.preview_chars <= 0:
            raise ValueError("SATELLITE_HTTP_PREVIEW_CHARS must be > 0.")


def _env(name: str, default: str) -> str:
    value = os.getenv(_ENV_PREFIX + name)
    if value is None:
        value = os.getenv(_LEGACY_ENV_PREFIX + name)
    if value is None:
        return default
    return value.strip()
