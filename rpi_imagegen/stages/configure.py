"""System configuration stages.

These write files under the mounted root and enable services through the
chroot. Paths are always built relative to ``ctx.root``.
"""

from __future__ import annotations

import logging
import os
import string
from importlib import resources
from pathlib import Path

from rpi_imagegen.fetch import fetch_ssh_keys
from rpi_imagegen.finalize import ROOT_PASSWORD_FILE, write_root_credential
from rpi_imagegen.stages.pipeline import StageContext
from rpi_imagegen.types import ImagegenError

logger = logging.getLogger(__name__)

CONSOLE_FONT = "eurlatgr"

SSHD_DROP_INS = {
    "10-dns.conf": "UseDNS no",
    "30-root-login.conf": "PermitRootLogin prohibit-password",
    "40-address-family.conf": "AddressFamily any",
}

FSTAB = "LABEL=RPI64-BOOT  /boot   vfat    defaults        0       0\n"

NETWORK_UNITS = ("20-wired.network", "20-wireless.network")

_IWD_PLAIN_CHARS = set(string.ascii_letters + string.digits + "-_ ")


def read_data(name: str) -> str:
    """Read a file shipped in the package's data directory."""
    return (resources.files("rpi_imagegen") / "data" / name).read_text(encoding="utf-8")


def write_file(path: Path, content: str, mode: int | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    if mode is not None:
        path.chmod(mode)
    logger.debug("Wrote %s", path)
    return path


def iwd_network_filename(ssid: str) -> str:
    """Name of iwd's PSK profile for an SSID.

    iwd uses the SSID itself when it only contains alphanumerics, '-', '_'
    and spaces, and '=' followed by the hex-encoded SSID otherwise.
    """
    if ssid and all(c in _IWD_PLAIN_CHARS for c in ssid):
        return f"{ssid}.psk"
    return f"={ssid.encode('utf-8').hex()}.psk"


def configure_locales(ctx: StageContext) -> None:
    cfg = ctx.config
    write_file(ctx.root / "etc/locale.gen", "\n".join(cfg.locales) + "\n")
    ctx.chroot.run(["locale-gen"])
    write_file(ctx.root / "etc/locale.conf", f"LANG={cfg.default_locale}\n")
    write_file(
        ctx.root / "etc/vconsole.conf",
        f"KEYMAP={cfg.keymap}\nFONT={CONSOLE_FONT}\n",
    )


def configure_timezone(ctx: StageContext) -> None:
    """Point /etc/localtime at the configured zone.

    Raises:
        ImagegenError: If the zone does not exist in the target.
    """
    zone = Path("/usr/share/zoneinfo") / ctx.config.timezone
    if not (ctx.root / zone.relative_to("/")).exists():
        raise ImagegenError(
            f"Unknown timezone '{ctx.config.timezone}'", code="unknown_timezone"
        )

    localtime = ctx.root / "etc/localtime"
    if localtime.is_symlink() or localtime.exists():
        localtime.unlink()
    localtime.symlink_to(zone)
    logger.info("Timezone set to %s", ctx.config.timezone)


def configure_hostname(ctx: StageContext) -> None:
    write_file(ctx.root / "etc/hostname", f"{ctx.config.hostname}\n")
    logger.info("Hostname set to %s", ctx.config.hostname)


def configure_root_password(ctx: StageContext) -> None:
    """Set the root password in the target and store it for the operator."""
    ctx.chroot.run(["chpasswd"], input_text=f"root:{ctx.config.root_password}\n")
    ctx.root_password_path = write_root_credential(
        ctx.output_dir / ROOT_PASSWORD_FILE, ctx.config.root_password
    )


def configure_networking(ctx: StageContext) -> None:
    network_dir = ctx.root / "etc/systemd/network"
    network_dir.mkdir(parents=True, exist_ok=True)
    network_dir.chmod(0o755)
    for unit in NETWORK_UNITS:
        write_file(network_dir / unit, read_data(unit), mode=0o644)
    ctx.chroot.enable_service("systemd-networkd")


def skip_wifi(ctx: StageContext) -> str | None:
    if not ctx.config.wifi_enabled:
        return "no WiFi credentials provided"
    return None


def configure_wifi(ctx: StageContext) -> None:
    cfg = ctx.config
    iwd_dir = ctx.root / "var/lib/iwd"
    iwd_dir.mkdir(parents=True, exist_ok=True)
    iwd_dir.chmod(0o700)
    write_file(
        iwd_dir / iwd_network_filename(cfg.wifi_ssid),
        f"[Security]\nPreSharedKey={cfg.wifi_password}\n\n[Settings]\nAutoConnect=true\n",
        mode=0o600,
    )
    ctx.chroot.enable_service("iwd")
    logger.info("WiFi configured for SSID %s", cfg.wifi_ssid)


def configure_ssh(ctx: StageContext) -> None:
    """Install authorized keys and sshd drop-ins, then enable sshd.

    Key sources that fail are skipped; an empty key set is only a warning
    since the root password still allows console login.
    """
    keys = fetch_ssh_keys(ctx.http_client, ctx.config.ssh_key_urls)
    if not keys:
        logger.warning("No SSH keys were downloaded; key authentication will not work")

    ssh_dir = ctx.root / "root/.ssh"
    ssh_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(ssh_dir, 0o700)
    write_file(
        ssh_dir / "authorized_keys",
        "".join(f"{key}\n" for key in keys),
        mode=0o600,
    )

    drop_ins = dict(SSHD_DROP_INS)
    drop_ins["20-port.conf"] = f"Port {ctx.config.ssh_port}"
    config_dir = ctx.root / "etc/ssh/sshd_config.d"
    for name in sorted(drop_ins):
        write_file(config_dir / name, drop_ins[name] + "\n")

    ctx.chroot.enable_service("sshd")
    logger.info("SSH configured on port %d with %d key(s)", ctx.config.ssh_port, len(keys))


def configure_fstab(ctx: StageContext) -> None:
    write_file(ctx.root / "etc/fstab", FSTAB)


def skip_zerotier(ctx: StageContext) -> str | None:
    if not ctx.config.zt_network_id:
        return "no ZeroTier network ID provided"
    return None


def configure_zerotier(ctx: StageContext) -> None:
    ctx.chroot.enable_service("zerotier-one")
    join_file = (
        ctx.root / "var/lib/zerotier-one/networks.d" / f"{ctx.config.zt_network_id}.conf"
    )
    join_file.parent.mkdir(parents=True, exist_ok=True)
    join_file.touch()
    logger.info("ZeroTier will join %s", ctx.config.zt_network_id)


__all__ = [
    "configure_fstab",
    "configure_hostname",
    "configure_locales",
    "configure_networking",
    "configure_root_password",
    "configure_ssh",
    "configure_timezone",
    "configure_wifi",
    "configure_zerotier",
    "iwd_network_filename",
    "read_data",
    "skip_wifi",
    "skip_zerotier",
]
