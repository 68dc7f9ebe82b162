"""Configuration settings for rpi_imagegen.

Two layers:

- ``Settings`` (pydantic-settings) reads defaults and environment variables.
  Variable names carry no prefix (RPI_MODEL, IMAGE_SIZE, WIFI_SSID, ...).
- ``BuildConfig`` is the immutable, validated configuration of one build,
  produced by :func:`resolve_build_config`.

Configuration precedence: CLI flags > env vars > build profile > defaults.
"""

from __future__ import annotations

import json
import re
import secrets
import string
import subprocess
from datetime import date
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from rpi_imagegen.device.layout import MIB, parse_size
from rpi_imagegen.types import ImagegenError

SUPPORTED_MODELS = (4, 5)

DEFAULT_LOCALES = """en_US.UTF-8 UTF-8
en_US ISO-8859-1
fr_FR.UTF-8 UTF-8
fr_FR ISO-8859-1
fr_FR@euro ISO-8859-15"""

DEFAULT_PACKAGES = (
    "base base-devel dosfstools git mkinitcpio-utils neovim nftables openssh "
    "python qrencode rsync sudo tailscale uboot-tools unzip zerotier-one zsh "
    "iwd wireless-regdb linux-firmware crda raspberrypi-bootloader "
    "firmware-raspberrypi zstd"
)

DEFAULT_BUILD_DEPS = (
    "qemu-user-static-binfmt qemu-user-static dosfstools wget libarchive "
    "arch-install-scripts parted tree fping pwgen git s3cmd zstd"
)

DEFAULT_SSH_KEY_URLS = "https://github.com/ts-sz.keys https://gitlab.com/mg.stratzone.keys"

ROOT_PASSWORD_LENGTH = 17

# Smallest boot partition mkfs.vfat -F32 formats without complaint
MIN_BOOT_PARTITION_SIZE = 32 * MIB

_HOSTNAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
_TIMEZONE_PATTERN = re.compile(r"^[A-Za-z0-9_+\-]+(/[A-Za-z0-9_+\-]+)*$")
_ZT_NETWORK_PATTERN = re.compile(r"^[0-9a-fA-F]{16}$")


class ConfigValidationError(ImagegenError):
    """Raised when the build configuration is invalid."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Invalid configuration for '{field}': {message}", code="validation")
        self.field = field


class Settings(BaseSettings):
    """Environment layer of the configuration.

    Every field can be overridden by the environment variable of the same
    name (case-insensitive) or by a `.env` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    # Target
    rpi_model: int = Field(default=5, description="Raspberry Pi model (4 or 5)")
    arm_version: str = Field(default="aarch64", description="Target architecture")

    # Image
    image_size: str = Field(default="4G", description="Total image size")
    image_name_prefix: str = Field(default="archlinux-rpi")
    boot_partition_size: str = Field(default="512M", description="FAT32 boot size")

    # System
    os_timezone: str = Field(default="Europe/Paris")
    os_default_locale: str = Field(default="en_US.UTF-8")
    os_keymap: str = Field(default="us-acentos")
    os_locales: str = Field(default=DEFAULT_LOCALES, description="locale.gen lines")
    os_packages: str = Field(default=DEFAULT_PACKAGES)
    build_deps: str = Field(default=DEFAULT_BUILD_DEPS)
    rpi_hostname: str = Field(default="", description="Auto-generated when empty")
    root_password: str = Field(default="", description="Generated when empty")

    # Network
    ssh_pub_key_urls: str = Field(default=DEFAULT_SSH_KEY_URLS)
    ssh_port: int = Field(default=34522)
    wifi_ssid: str = Field(default="")
    wifi_password: str = Field(default="")
    zt_network_id: str = Field(default="")

    # Downloads
    arch_aarch64_mirror: str = Field(default="http://os.archlinuxarm.org/os")
    arch_aarch64_img: str = Field(default="ArchLinuxARM-rpi-aarch64-latest.tar.gz")
    arch_aarch64_img_md5: str = Field(
        default="ArchLinuxARM-rpi-aarch64-latest.tar.gz.md5"
    )
    download_retries: int = Field(default=5, ge=1, le=20)
    download_timeout: int = Field(default=60, ge=1)
    download_retry_wait: float = Field(default=10.0, ge=0)

    # Paths
    workdir: Path | None = Field(
        default=None,
        description="Scratch directory (a fresh rpi-build.* under the CWD if not set)",
    )
    output_dir: Path | None = Field(
        default=None, description="Artifact directory (CWD if not set)"
    )

    # Operational modes
    no_cleanup: bool = Field(default=False)
    debug: bool = Field(default=False)
    install_build_deps: bool = Field(default=False)
    keep_raw_image: bool = Field(default=False)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


# Settings field -> BuildConfig field
_SETTINGS_TO_CONFIG = {
    "rpi_model": "rpi_model",
    "arm_version": "arm_version",
    "image_size": "image_size",
    "image_name_prefix": "image_name_prefix",
    "boot_partition_size": "boot_partition_size",
    "os_timezone": "timezone",
    "os_default_locale": "default_locale",
    "os_keymap": "keymap",
    "os_locales": "locales",
    "os_packages": "packages",
    "build_deps": "build_deps",
    "rpi_hostname": "hostname",
    "root_password": "root_password",
    "ssh_pub_key_urls": "ssh_key_urls",
    "ssh_port": "ssh_port",
    "wifi_ssid": "wifi_ssid",
    "wifi_password": "wifi_password",
    "zt_network_id": "zt_network_id",
    "arch_aarch64_mirror": "mirror",
    "arch_aarch64_img": "archive_name",
    "arch_aarch64_img_md5": "archive_md5_name",
    "download_retries": "download_retries",
    "download_timeout": "download_timeout",
    "download_retry_wait": "download_retry_wait",
    "workdir": "workdir",
    "output_dir": "output_dir",
    "no_cleanup": "no_cleanup",
    "debug": "debug",
    "install_build_deps": "install_build_deps",
    "keep_raw_image": "keep_raw_image",
}


def _split_words(value: Any) -> Any:
    if isinstance(value, str):
        return tuple(value.split())
    return value


class BuildConfig(BaseModel):
    """Resolved, immutable parameters of one build."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rpi_model: int
    arm_version: str = "aarch64"
    image_size: int
    boot_partition_size: int
    image_name_prefix: str = "archlinux-rpi"

    hostname: str
    timezone: str
    default_locale: str
    keymap: str
    locales: tuple[str, ...]
    packages: tuple[str, ...] = ()
    build_deps: tuple[str, ...] = ()
    root_password: str = Field(repr=False, min_length=1)

    ssh_key_urls: tuple[str, ...] = ()
    ssh_port: int = Field(default=22, ge=1, le=65535)
    wifi_ssid: str = ""
    wifi_password: str = Field(default="", repr=False)
    zt_network_id: str = ""

    mirror: str
    archive_name: str
    archive_md5_name: str
    download_retries: int = Field(default=5, ge=1)
    download_timeout: int = Field(default=60, ge=1)
    download_retry_wait: float = Field(default=10.0, ge=0)

    workdir: Path | None = None
    output_dir: Path

    no_cleanup: bool = False
    debug: bool = False
    install_build_deps: bool = False
    keep_raw_image: bool = False

    build_date: str
    short_sha: str = "local"

    @field_validator("rpi_model")
    @classmethod
    def validate_model(cls, v: int) -> int:
        """Only the Pi 4 and Pi 5 are supported."""
        if v not in SUPPORTED_MODELS:
            raise ValueError(f"must be 4 or 5, got {v}")
        return v

    @field_validator("image_size", "boot_partition_size", mode="before")
    @classmethod
    def parse_sizes(cls, v: Any) -> Any:
        """Accept '4G'-style strings as well as byte counts."""
        if isinstance(v, (str, int)) and not isinstance(v, bool):
            return parse_size(v)
        return v

    @field_validator("locales", mode="before")
    @classmethod
    def split_locales(cls, v: Any) -> Any:
        """One locale.gen entry per non-empty line."""
        if isinstance(v, str):
            return tuple(line.strip() for line in v.splitlines() if line.strip())
        return v

    @field_validator("packages", "build_deps", "ssh_key_urls", mode="before")
    @classmethod
    def split_lists(cls, v: Any) -> Any:
        """Whitespace-separated strings become tuples."""
        return _split_words(v)

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        if not _HOSTNAME_PATTERN.match(v):
            raise ValueError(f"'{v}' is not a valid hostname")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Zone names are relative paths under /usr/share/zoneinfo."""
        if not _TIMEZONE_PATTERN.match(v) or ".." in v.split("/"):
            raise ValueError(f"'{v}' is not a valid timezone name")
        return v

    @field_validator("zt_network_id")
    @classmethod
    def validate_zt_network_id(cls, v: str) -> str:
        if v and not _ZT_NETWORK_PATTERN.match(v):
            raise ValueError("must be a 16-digit hexadecimal ZeroTier network ID")
        return v.lower()

    @field_validator("mirror")
    @classmethod
    def strip_mirror(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_partition_sizes(self) -> BuildConfig:
        """The boot partition must be whole MiB and leave room for root."""
        if self.boot_partition_size % MIB:
            raise ValueError("boot_partition_size must be a whole number of MiB")
        if self.boot_partition_size < MIN_BOOT_PARTITION_SIZE:
            raise ValueError("boot_partition_size must be at least 32M")
        if self.boot_partition_size >= self.image_size:
            raise ValueError("boot_partition_size must be smaller than image_size")
        return self

    @property
    def image_name(self) -> str:
        return (
            f"{self.image_name_prefix}-{self.arm_version}-rpi{self.rpi_model}"
            f"_v{self.short_sha}_{self.build_date}.img"
        )

    @property
    def archive_url(self) -> str:
        return f"{self.mirror}/{self.archive_name}"

    @property
    def archive_md5_url(self) -> str:
        return f"{self.mirror}/{self.archive_md5_name}"

    @property
    def wifi_enabled(self) -> bool:
        return bool(self.wifi_ssid and self.wifi_password)

    def masked_dump(self) -> dict[str, Any]:
        """Dump the configuration as JSON-compatible data with secrets masked."""
        data = self.model_dump(mode="json")
        for key in ("root_password", "wifi_password"):
            if data.get(key):
                data[key] = "********"
        data["image_name"] = self.image_name
        return data


def get_settings() -> Settings:
    """Get the environment settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ConfigValidationError: If an environment value is invalid.
    """
    try:
        return Settings()
    except ValidationError as e:
        raise _to_config_error(e, env_names=True) from e


def git_short_sha(cwd: Path | None = None) -> str:
    """Return the abbreviated HEAD commit of the working tree, or 'local'."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return "local"
    sha = result.stdout.strip()
    return sha if result.returncode == 0 and sha else "local"


def generate_password(length: int = ROOT_PASSWORD_LENGTH) -> str:
    """Generate a random alphanumeric password."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def load_profile(path: Path) -> dict[str, Any]:
    """Load a YAML build profile.

    Keys are BuildConfig field names (e.g. ``hostname``, ``packages``).

    Args:
        path: Path to the YAML file.

    Returns:
        Profile mapping.

    Raises:
        ConfigValidationError: If the file is unreadable, not a mapping, or
            contains unknown keys.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigValidationError("profile", f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigValidationError("profile", f"invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            "profile", f"expected a YAML mapping, got {type(data).__name__}"
        )

    derived = {"build_date", "short_sha"}
    for key in data:
        if key not in BuildConfig.model_fields or key in derived:
            raise ConfigValidationError(str(key), "unknown profile key")
    return data


def resolve_build_config(
    overrides: dict[str, Any] | None = None,
    *,
    settings: Settings | None = None,
    profile_path: Path | None = None,
    short_sha: str | None = None,
    today: date | None = None,
) -> BuildConfig:
    """Merge defaults, profile, environment, and CLI flags into a BuildConfig.

    No resource is touched: this is a pure transform apart from reading the
    profile file and asking git for the current commit.

    Args:
        overrides: CLI flag values keyed by BuildConfig field; None values
            are ignored.
        settings: Environment settings (loaded if not provided).
        profile_path: Optional YAML build profile.
        short_sha: Commit id used in the image name and default hostname.
        today: Build date (today if not provided).

    Returns:
        Validated, frozen BuildConfig.

    Raises:
        ConfigValidationError: Naming the first offending field.
    """
    if settings is None:
        settings = get_settings()

    data: dict[str, Any] = {
        _SETTINGS_TO_CONFIG[name]: value
        for name, value in settings.model_dump().items()
        if name in _SETTINGS_TO_CONFIG
    }
    from_env = {
        _SETTINGS_TO_CONFIG[name]
        for name in settings.model_fields_set
        if name in _SETTINGS_TO_CONFIG
    }

    if profile_path is not None:
        for key, value in load_profile(profile_path).items():
            if key not in from_env:
                data[key] = value

    for key, value in (overrides or {}).items():
        if key not in BuildConfig.model_fields:
            raise ConfigValidationError(key, "unknown option")
        if value is not None:
            data[key] = value

    data["short_sha"] = short_sha if short_sha is not None else git_short_sha()
    data["build_date"] = (today or date.today()).strftime("%Y%m%d")

    if not data.get("hostname"):
        data["hostname"] = f"archlinux-{data['short_sha']}-rpi{data.get('rpi_model')}"
    if not data.get("root_password"):
        data["root_password"] = generate_password()
    if not data.get("output_dir"):
        data["output_dir"] = Path.cwd()

    try:
        return BuildConfig.model_validate(data)
    except ValidationError as e:
        raise _to_config_error(e) from e


def _to_config_error(
    error: ValidationError, env_names: bool = False
) -> ConfigValidationError:
    first = error.errors()[0]
    loc = first.get("loc") or ("config",)
    field = str(loc[0])
    if env_names:
        field = field.upper()
    message = first.get("msg", "invalid value")
    # model_validator errors carry no field location
    if not first.get("loc"):
        field = "config"
    return ConfigValidationError(field, message)


def print_config_json(config: BuildConfig) -> str:
    """Render a resolved configuration as JSON with secrets masked."""
    return json.dumps(config.masked_dump(), indent=2)


__all__ = [
    "BuildConfig",
    "ConfigValidationError",
    "SUPPORTED_MODELS",
    "Settings",
    "generate_password",
    "get_settings",
    "git_short_sha",
    "load_profile",
    "print_config_json",
    "resolve_build_config",
]
