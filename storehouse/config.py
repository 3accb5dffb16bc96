import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("storehouse.config")

KEY_FILENAME = ".storehouse_key"
SUPPORTED_SIGNATURE_ALGORITHMS = ("sha1", "sha256")

DEFAULT_PORT = 8888
DEFAULT_SSL_PORT = 4443
DEFAULT_FETCH_TIMEOUT_SECONDS = 30
DEFAULT_MAX_UPLOAD_SIZE_MB = 500
DEFAULT_MAX_CONCURRENT_WRITES = 10
DEFAULT_WRITE_RATE_LIMIT = "100 per hour"
DEFAULT_TEMP_MAX_AGE_MINUTES = 60
DEFAULT_CLEANUP_INTERVAL_MINUTES = 5


class ConfigurationError(RuntimeError):
    """Raised when the server cannot start with the supplied settings."""


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, raw_value, default
        )
        return default


def _safe_float_env(key: str, default: float) -> float:
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value == "":
        return default
    try:
        value = float(raw_value)
    except ValueError:
        logger.warning("Invalid value for %s: %s. Using default: %s", key, raw_value, default)
        return default
    if value <= 0:
        return default
    return value


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    logger.warning("Invalid boolean for %s: %s. Ignoring.", env_key, raw_value)
    return None


def _bool_env(env_key: str, default: bool) -> bool:
    value = _get_optional_bool_env(env_key)
    return default if value is None else value


def _str_env(env_key: str, default: Optional[str]) -> Optional[str]:
    value = os.environ.get(env_key)
    if value is None or value.strip() == "":
        return default
    return value


def read_key_file(path: Path) -> Optional[str]:
    """Return the stripped secret stored in *path*, or None when absent."""

    try:
        contents = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as error:
        raise ConfigurationError(f"Unable to read key file {path}: {error}") from error
    return contents or None


def resolve_secret(explicit: Optional[str] = None, key_file: Optional[Path] = None) -> str:
    """Find the shared secret: explicit value, environment, then key file.

    The key file defaults to ``.storehouse_key`` in the working directory.
    """

    if explicit:
        return explicit

    env_secret = os.environ.get("STOREHOUSE_SECRET")
    if env_secret:
        return env_secret

    candidate = key_file if key_file is not None else Path.cwd() / KEY_FILENAME
    secret = read_key_file(candidate)
    if secret:
        return secret

    raise ConfigurationError(
        "You must specify a secret (--secret, STOREHOUSE_SECRET or a "
        f"{KEY_FILENAME} file)."
    )


@dataclass(frozen=True)
class StorehouseConfig:
    """Immutable server settings built once at startup.

    The core consumes ``secret``, ``directory`` and ``overwrite``; the
    remaining fields configure the HTTP layer around it.
    """

    secret: str = field(repr=False)
    directory: str = "./"
    overwrite: bool = True
    upload_url: str = "/upload"
    fetch_url: str = "/fetch"
    allow_download: bool = False
    download_prefix: str = "/"
    cors: bool = False
    cors_origin: str = "*"
    port: int = DEFAULT_PORT
    ssl_port: int = DEFAULT_SSL_PORT
    ssl_key: Optional[str] = None
    ssl_cert: Optional[str] = None
    signature_algorithm: str = "sha1"
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    block_private_urls: bool = False
    max_upload_size_mb: int = DEFAULT_MAX_UPLOAD_SIZE_MB
    max_concurrent_writes: int = DEFAULT_MAX_CONCURRENT_WRITES
    write_rate_limit: str = DEFAULT_WRITE_RATE_LIMIT
    temp_dir: Optional[str] = None
    temp_max_age_minutes: int = DEFAULT_TEMP_MAX_AGE_MINUTES
    cleanup_interval_minutes: int = DEFAULT_CLEANUP_INTERVAL_MINUTES
    log_file: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.secret:
            raise ConfigurationError("You must specify a secret.")
        if self.signature_algorithm not in SUPPORTED_SIGNATURE_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported signature algorithm: {self.signature_algorithm}. "
                f"Choose one of {', '.join(SUPPORTED_SIGNATURE_ALGORITHMS)}."
            )
        for route in (self.upload_url, self.fetch_url, self.download_prefix):
            if not route.startswith("/"):
                raise ConfigurationError(f"Route paths must start with '/': {route}")
        if self.upload_url == self.fetch_url:
            raise ConfigurationError("Upload and fetch URLs must differ.")

    @property
    def staging_dir(self) -> str:
        """Directory receiving upload payloads before they are committed."""

        if self.temp_dir:
            return self.temp_dir
        return os.path.join(self.directory, ".storehouse_tmp")

    def within_staging_dir(self, location: str) -> bool:
        staging = os.path.abspath(self.staging_dir)
        location = os.path.abspath(location)
        return location == staging or location.startswith(staging + os.sep)

    @property
    def tls_enabled(self) -> bool:
        return bool(self.ssl_key and self.ssl_cert)

    def secret_fingerprint(self) -> str:
        """Short, log-safe fingerprint of the active secret."""

        return hashlib.sha256(self.secret.encode("utf-8")).hexdigest()[:12]


def load_config(key_file: Optional[Path] = None, **overrides: Any) -> StorehouseConfig:
    """Build the configuration from ``STOREHOUSE_*`` variables and *overrides*.

    Overrides whose value is None are ignored so CLI flags that were not
    given fall through to the environment and then to the defaults.
    """

    secret = resolve_secret(overrides.pop("secret", None), key_file=key_file)

    settings = {
        "directory": _str_env("STOREHOUSE_DIRECTORY", "./"),
        "overwrite": _bool_env("STOREHOUSE_OVERWRITE", True),
        "upload_url": _str_env("STOREHOUSE_UPLOAD_URL", "/upload"),
        "fetch_url": _str_env("STOREHOUSE_FETCH_URL", "/fetch"),
        "allow_download": _bool_env("STOREHOUSE_ALLOW_DOWNLOAD", False),
        "download_prefix": _str_env("STOREHOUSE_DOWNLOAD_PREFIX", "/"),
        "cors": _bool_env("STOREHOUSE_CORS", False),
        "cors_origin": _str_env("STOREHOUSE_CORS_ORIGIN", "*"),
        "port": _safe_int_env("STOREHOUSE_PORT", DEFAULT_PORT),
        "ssl_port": _safe_int_env("STOREHOUSE_SSL_PORT", DEFAULT_SSL_PORT),
        "ssl_key": _str_env("STOREHOUSE_SSL_KEY", None),
        "ssl_cert": _str_env("STOREHOUSE_SSL_CERT", None),
        "signature_algorithm": (_str_env("STOREHOUSE_SIGNATURE_ALGORITHM", "sha1") or "sha1").lower(),
        "fetch_timeout": _safe_float_env("STOREHOUSE_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT_SECONDS),
        "block_private_urls": _bool_env("STOREHOUSE_BLOCK_PRIVATE_URLS", False),
        "max_upload_size_mb": _safe_int_env("STOREHOUSE_MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB),
        "max_concurrent_writes": _safe_int_env(
            "STOREHOUSE_MAX_CONCURRENT_WRITES", DEFAULT_MAX_CONCURRENT_WRITES
        ),
        "write_rate_limit": _str_env("STOREHOUSE_WRITE_RATE_LIMIT", DEFAULT_WRITE_RATE_LIMIT),
        "temp_dir": _str_env("STOREHOUSE_TEMP_DIR", None),
        "temp_max_age_minutes": _safe_int_env(
            "STOREHOUSE_TEMP_MAX_AGE_MINUTES", DEFAULT_TEMP_MAX_AGE_MINUTES
        ),
        "cleanup_interval_minutes": _safe_int_env(
            "STOREHOUSE_CLEANUP_INTERVAL_MINUTES", DEFAULT_CLEANUP_INTERVAL_MINUTES
        ),
        "log_file": _str_env("STOREHOUSE_LOG_FILE", None),
    }
    settings.update({key: value for key, value in overrides.items() if value is not None})
    return StorehouseConfig(secret=secret, **settings)
