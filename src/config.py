"""
Validator configuration.

Environment Variables:
    PLC_RECOVERY_WINDOW_HOURS=72
    PLC_ALLOW_MALLEABLE_SIG=false
    PLC_STRICT_NULLIFIED_FLAGS=false
    LOG_LEVEL=INFO
    LOG_FORMAT=json   (anything else selects the console format)
"""

import os
from dataclasses import dataclass
from datetime import timedelta

# Period after a disputed operation during which a more powerful rotation key
# may fork around it
DEFAULT_RECOVERY_WINDOW_HOURS = 72


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class ValidatorConfig:
    """Configuration for operation-log validation."""

    recovery_window_hours: float = DEFAULT_RECOVERY_WINDOW_HOURS

    # Accept high-S ECDSA signatures
    allow_malleable_sig: bool = False

    # Also require the source to flag every recomputed nullification
    strict_nullified_flags: bool = False

    log_level: str = "INFO"
    json_logs: bool = False

    @property
    def recovery_window(self) -> timedelta:
        return timedelta(hours=self.recovery_window_hours)

    @classmethod
    def from_env(cls) -> "ValidatorConfig":
        """Create configuration from environment variables."""
        return cls(
            recovery_window_hours=float(
                os.getenv("PLC_RECOVERY_WINDOW_HOURS", str(DEFAULT_RECOVERY_WINDOW_HOURS))
            ),
            allow_malleable_sig=_env_flag("PLC_ALLOW_MALLEABLE_SIG"),
            strict_nullified_flags=_env_flag("PLC_STRICT_NULLIFIED_FLAGS"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            json_logs=os.getenv("LOG_FORMAT", "").lower() == "json",
        )
