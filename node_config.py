"""
Node configuration.

Settings come from ``P2P_*`` environment variables, with command line
options (see ``transport_node.main``) taking precedence.
"""

import os
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

log = logging.getLogger(__name__)

CERT_FILE_NAME = "cert.pem"
KEY_FILE_NAME = "key.pem"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got {raw!r}")


@dataclass
class NodeConfig:
    """Runtime settings of a transport node."""
    host: str = "0.0.0.0"
    port: int = 22000
    cert_dir: str = "certs"
    common_name: str = "destroyer-p2p"
    lifetime_days: int = 20 * 365
    renew_within_days: int = 30
    allow_tls12: bool = False
    sniff_timeout: float = 1.0
    log_dir: str = "logs"

    @property
    def cert_path(self) -> str:
        return os.path.join(self.cert_dir, CERT_FILE_NAME)

    @property
    def key_path(self) -> str:
        return os.path.join(self.cert_dir, KEY_FILE_NAME)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "NodeConfig":
        """Build a configuration from ``P2P_*`` variables (``os.environ`` by default).

        Raises:
            ValueError: If a numeric variable does not parse
        """
        if env is None:
            env = os.environ
        defaults = cls()
        config = cls(
            host=env.get("P2P_LISTEN_HOST") or defaults.host,
            port=_env_int(env, "P2P_LISTEN_PORT", defaults.port),
            cert_dir=env.get("P2P_CERT_DIR") or defaults.cert_dir,
            common_name=env.get("P2P_COMMON_NAME") or defaults.common_name,
            lifetime_days=_env_int(env, "P2P_CERT_LIFETIME_DAYS", defaults.lifetime_days),
            renew_within_days=_env_int(env, "P2P_CERT_RENEW_DAYS", defaults.renew_within_days),
            allow_tls12=_env_bool(env, "P2P_ALLOW_TLS12", defaults.allow_tls12),
            sniff_timeout=_env_float(env, "P2P_SNIFF_TIMEOUT", defaults.sniff_timeout),
            log_dir=env.get("P2P_LOG_DIR") or defaults.log_dir,
        )
        if not 0 <= config.port <= 65535:
            raise ValueError(f"P2P_LISTEN_PORT out of range: {config.port}")
        if config.lifetime_days <= 0:
            raise ValueError(f"P2P_CERT_LIFETIME_DAYS must be positive, got {config.lifetime_days}")
        log.debug(f"Configuration from environment: {config}")
        return config
