"""
Environment configuration for the classroom MDM realtime core.

All timing constants of the core (command TTL, presence staleness, sweep
cadence, device heartbeat and reconnect tuning) are read from environment
variables once at startup so they can be tuned per deployment.
"""
import os
from typing import Optional


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        print(f"[CONFIG] WARNING: invalid {name}={raw!r}, using {default}")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw.strip())
    except ValueError:
        print(f"[CONFIG] WARNING: invalid {name}={raw!r}, using {default}")
        return default


class Config:
    """Application configuration with environment overrides"""

    def __init__(self):
        self._server_url: Optional[str] = None

        # Pending commands older than this are no longer offered by the pull fallback
        self.COMMAND_TTL_SECONDS = _int_env("COMMAND_TTL_SECONDS", 300)

        # Presence: online devices silent for longer than this are demoted to offline
        self.PRESENCE_STALE_SECONDS = _int_env("PRESENCE_STALE_SECONDS", 300)
        self.PRESENCE_SWEEP_INTERVAL_SECONDS = _int_env("PRESENCE_SWEEP_INTERVAL_SECONDS", 60)

        # Device side cadence
        self.HEARTBEAT_INTERVAL_SECONDS = _int_env("HEARTBEAT_INTERVAL_SECONDS", 15)
        self.PENDING_POLL_SECONDS = _int_env("PENDING_POLL_SECONDS", 30)
        self.POLICY_REFRESH_SECONDS = _int_env("POLICY_REFRESH_SECONDS", 300)
        self.RECONNECT_DELAY_SECONDS = _float_env("RECONNECT_DELAY_SECONDS", 1.0)
        self.RECONNECT_DELAY_MAX_SECONDS = _float_env("RECONNECT_DELAY_MAX_SECONDS", 10.0)
        self.RECONNECT_RANDOMIZATION = _float_env("RECONNECT_RANDOMIZATION", 0.5)

        # Outbound webhook (optional, best-effort)
        self.WEBHOOK_URL: Optional[str] = os.getenv("WEBHOOK_URL") or None
        self.WEBHOOK_TIMEOUT_SECONDS = _float_env("WEBHOOK_TIMEOUT_SECONDS", 5.0)

    @property
    def server_url(self) -> str:
        """
        Base URL of the API as seen by devices.

        Priority:
        1. Manual override via SERVER_URL environment variable
        2. Fallback: http://localhost:3005
        """
        if self._server_url is not None:
            return self._server_url

        manual_url = os.getenv("SERVER_URL")
        if manual_url:
            self._server_url = self._normalize_url(manual_url)
        else:
            self._server_url = "http://localhost:3005"
        return self._server_url

    @property
    def websocket_url(self) -> str:
        """Websocket base derived from server_url (http -> ws, https -> wss)"""
        url = self.server_url
        if url.startswith("https://"):
            return "wss://" + url[len("https://"):]
        return "ws://" + url[len("http://"):]

    @staticmethod
    def _normalize_url(url: str) -> str:
        """
        Normalize URL to ensure it has a protocol prefix and no trailing slash.

        Args:
            url: URL that may or may not have a protocol

        Returns:
            str: URL with https:// prefix (or http:// for localhost), without trailing slash
        """
        url = url.strip()

        if url.startswith("http://") or url.startswith("https://"):
            return url.rstrip("/")

        if "localhost" in url or url.startswith("127.0.0.1"):
            return f"http://{url}".rstrip("/")
        return f"https://{url}".rstrip("/")

    def get_database_url(self) -> str:
        """Get the database URL from environment"""
        return os.getenv("DATABASE_URL", "sqlite:///./data.db")

    def validate(self) -> tuple[bool, list[str], list[str]]:
        """
        Validate timing relationships and optional integrations.

        Returns:
            tuple: (is_valid, list_of_errors, list_of_warnings)
        """
        errors = []
        warnings = []

        if self.COMMAND_TTL_SECONDS <= 0:
            errors.append("COMMAND_TTL_SECONDS must be positive")
        if self.PRESENCE_SWEEP_INTERVAL_SECONDS <= 0:
            errors.append("PRESENCE_SWEEP_INTERVAL_SECONDS must be positive")
        if self.HEARTBEAT_INTERVAL_SECONDS <= 0:
            errors.append("HEARTBEAT_INTERVAL_SECONDS must be positive")

        # Staleness must leave room for several missed heartbeats, otherwise devices flap
        if self.PRESENCE_STALE_SECONDS <= self.HEARTBEAT_INTERVAL_SECONDS * 4:
            warnings.append(
                "PRESENCE_STALE_SECONDS should exceed 4x HEARTBEAT_INTERVAL_SECONDS to avoid status flapping"
            )

        if self.RECONNECT_DELAY_MAX_SECONDS < self.RECONNECT_DELAY_SECONDS:
            errors.append("RECONNECT_DELAY_MAX_SECONDS must be >= RECONNECT_DELAY_SECONDS")

        db_url = self.get_database_url()
        if "sqlite" in db_url.lower():
            warnings.append("SQLite database detected - PostgreSQL recommended for production scale")

        if not self.WEBHOOK_URL:
            warnings.append("WEBHOOK_URL not set - outbound event webhooks disabled")

        return (len(errors) == 0, errors, warnings)

    def print_config_summary(self):
        """Print configuration summary for debugging"""
        print("\n" + "=" * 60)
        print("Classroom MDM Configuration")
        print("=" * 60)
        print(f"Server URL: {self.server_url}")
        print(f"Database: {self.get_database_url()}")
        print(f"Command TTL: {self.COMMAND_TTL_SECONDS}s")
        print(f"Presence staleness: {self.PRESENCE_STALE_SECONDS}s (sweep every {self.PRESENCE_SWEEP_INTERVAL_SECONDS}s)")
        print(f"Webhook: {'✓ Set' if self.WEBHOOK_URL else '✗ Disabled'}")

        is_valid, errors, warnings = self.validate()
        if is_valid:
            print("Status: ✓ Configuration valid")
            if warnings:
                print(f"Warnings: {len(warnings)} configuration warnings")
        else:
            print("Status: ✗ Configuration issues detected:")
            for error in errors:
                print(f"  - {error}")
        print("=" * 60 + "\n")


# Global config instance
config = Config()
