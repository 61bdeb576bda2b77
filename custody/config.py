import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError

log = logging.getLogger(__name__)

DEFAULT_ENGINE_URL = "http://127.0.0.1:8787"
DEFAULT_TOKEN_CLASS_ID = "aa226da0e61396b9c9ae55131600f3d836058048023af3fe807a9c8b35e11bad"
DEFAULT_TOKEN_VALUE = "1000000000000000000"
DEFAULT_ENGINE_TIMEOUT = 30.0
DEFAULT_RESOLVER_TIMEOUT = 15.0


def _float_setting(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if value <= 0:
        log.warning("Ignoring non-positive %s=%r, using %s", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    bot_token: str
    bot_secret: str
    resolver_url: Optional[str] = None
    web_url: Optional[str] = None
    engine_url: str = DEFAULT_ENGINE_URL
    gateway_url: Optional[str] = None
    token_class_id: str = DEFAULT_TOKEN_CLASS_ID
    token_value: str = DEFAULT_TOKEN_VALUE
    staging_dir: Path = Path(tempfile.gettempdir())
    engine_timeout: float = DEFAULT_ENGINE_TIMEOUT
    resolver_timeout: float = DEFAULT_RESOLVER_TIMEOUT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``env`` (defaults to ``.env`` + the process environment).

        Raises ``ConfigError`` when ``BOT_TOKEN`` or ``BOT_SECRET`` is missing.
        """
        if env is None:
            load_dotenv()
            env = os.environ
        bot_token = (env.get("BOT_TOKEN") or "").strip()
        bot_secret = env.get("BOT_SECRET") or ""
        if not bot_token:
            raise ConfigError("BOT_TOKEN not set")
        if not bot_secret:
            raise ConfigError("BOT_SECRET not set")
        staging_raw = (env.get("STAGING_DIR") or "").strip()
        return cls(
            bot_token=bot_token,
            bot_secret=bot_secret,
            resolver_url=(env.get("RESOLVER_URL") or "").strip() or None,
            web_url=(env.get("WEB_URL") or "").strip() or None,
            engine_url=((env.get("ENGINE_URL") or "").strip() or DEFAULT_ENGINE_URL).rstrip("/"),
            gateway_url=(env.get("GATEWAY_URL") or "").strip() or None,
            token_class_id=(env.get("TOKEN_CLASS_ID") or "").strip() or DEFAULT_TOKEN_CLASS_ID,
            token_value=(env.get("TOKEN_VALUE") or "").strip() or DEFAULT_TOKEN_VALUE,
            staging_dir=Path(staging_raw) if staging_raw else Path(tempfile.gettempdir()),
            engine_timeout=_float_setting(env, "ENGINE_TIMEOUT", DEFAULT_ENGINE_TIMEOUT),
            resolver_timeout=_float_setting(env, "RESOLVER_TIMEOUT", DEFAULT_RESOLVER_TIMEOUT),
            log_level=((env.get("LOG_LEVEL") or "").strip() or "INFO").upper(),
        )
