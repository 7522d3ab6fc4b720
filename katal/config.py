"""
config.py — every knob the bot has, read once at startup.

Sources, later wins: built-in defaults < environment (a .env file is loaded
into the environment by the entry point) < command-line flags.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from . import crypto
from .errors import ConfigError
from .utils import random_code

log = logging.getLogger(__name__)

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
    "wss://relay.primal.net",
    "wss://nostr.mom",
]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


@dataclass
class Settings:
    identity: crypto.Identity
    identity_generated: bool = False
    unlock_code: str = ""
    web_port: int = 6798
    server_port: int = 6799
    smb_port: int = 445
    save_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "katal")
    dashboard_dir: Path = Path("public")
    smb_credentials_file: Path = Path("/var/run/smb_credentials.txt")
    aria2_url: str = "http://localhost:6398/jsonrpc"
    aria2_secret: Optional[str] = None
    relays: List[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    log_level: str = "INFO"

    # Timing / bounds
    event_window: float = 120.0
    reconnect_interval: float = 100.0
    health_interval: float = 60.0
    settle_delay: float = 0.1
    close_retry_delay: float = 5.0
    publish_timeout: float = 10.0
    retry_delay: float = 1.0
    max_retries: int = 2
    max_stored_events: int = 1000
    stats_interval: float = 25 * 60.0
    stats_initial_delay: float = 55.0
    autoclean_max_age: float = 30 * 24 * 60 * 60.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """
        Build settings from an environment mapping, then apply any non-None
        keyword overrides (what the CLI passes).

        Raises:
            ConfigError: invalid identity secret, malformed numbers or an
            unknown log level.
        """
        env = os.environ if env is None else env
        overrides = {k: v for k, v in overrides.items() if v is not None}

        secret_raw = overrides.pop("privkey", None) or env.get("BOT_PRIVKEY") or env.get("NSEC")
        if secret_raw:
            identity = crypto.Identity.from_secret(crypto.parse_secret(secret_raw))
            generated = False
        else:
            identity = crypto.Identity.generate()
            generated = True

        relays_env = [r.strip() for r in env.get("RELAYS", "").split(",") if r.strip()]
        settings = cls(
            identity=identity,
            identity_generated=generated,
            unlock_code=env.get("UNLOCKCODE") or random_code(),
            web_port=_int_env(env, "WEBPORT", 6798),
            server_port=_int_env(env, "SERVERPORT", 6799),
            smb_port=_int_env(env, "SMBPORT", 445),
            save_dir=Path(env.get("SAVE_DIR") or Path(tempfile.gettempdir()) / "katal"),
            dashboard_dir=Path(env.get("DASHBOARD_DIR") or "public"),
            smb_credentials_file=Path(env.get("SMB_CREDENTIALS_FILE") or "/var/run/smb_credentials.txt"),
            aria2_url=env.get("ARIA2_RPC_URL") or "http://localhost:6398/jsonrpc",
            aria2_secret=env.get("ARIA2_SECRET") or None,
            relays=relays_env or list(DEFAULT_RELAYS),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            event_window=_float_env(env, "EVENT_WINDOW", 120.0),
            stats_interval=_float_env(env, "STATS_INTERVAL", 25 * 60.0),
        )
        for key, value in overrides.items():
            if not hasattr(settings, key):
                raise ConfigError(f"Unknown setting: {key}")
            setattr(settings, key, value)
        settings.save_dir = Path(settings.save_dir)
        if not settings.relays:
            raise ConfigError("At least one relay is required")
        settings.log_level = str(settings.log_level).upper()
        if settings.log_level not in LOG_LEVELS:
            raise ConfigError(f"Invalid LOG_LEVEL: {settings.log_level} (expected one of {', '.join(LOG_LEVELS)})")
        return settings

    def log_summary(self) -> None:
        log.info("Bot pubkey (hex): %s", self.identity.pubkey)
        log.info("Bot pubkey (npub): %s", self.identity.npub)
        if self.identity_generated:
            log.info("Generated new private key for this session: %s", self.identity.nsec)
            log.warning("This key will be lost when the bot stops. Consider adding NSEC to .env file to persist identity.")
        log.info("Unlock Code: %s", self.unlock_code)
        log.info("Relays: %s", ", ".join(self.relays))
        log.info("Storage root: %s", self.save_dir)
