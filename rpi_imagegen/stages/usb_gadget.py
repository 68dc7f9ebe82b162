"""USB serial gadget console.

Turns the USB-C port into a CDC-ACM serial device with a login getty on
/dev/ttyGS0, so the board can be reached over its power cable.
"""

from __future__ import annotations

import logging

from rpi_imagegen.stages.configure import read_data, write_file
from rpi_imagegen.stages.pipeline import StageContext

logger = logging.getLogger(__name__)

CONFIG_TXT_MARKER = "# === USB SERIAL GADGET CONFIGURATION ==="
CMDLINE_MODULES = "modules-load=dwc2,g_serial"

CM5_HOST_OVERLAY = "dtoverlay=dwc2,dr_mode=host"
CM5_DEVICE_OVERLAY = "dtoverlay=dwc2,dr_mode=device"

SETUP_SCRIPT = "usr/local/bin/setup-usb-serial-gadget.sh"
INFO_SCRIPT = "usr/local/bin/usb-console-info"
GADGET_SERVICE = "usb-serial-gadget.service"
GETTY_SERVICE = "serial-getty@ttyGS0.service"


def patch_config_txt(content: str, rpi_model: int) -> str:
    """Enable the UART and put the dwc2 controller in device mode.

    On the Pi 5 the firmware config carries a ``[cm5]`` section selecting
    host mode; it is switched to device mode in place. The Pi 4 gets the
    overlay appended.
    """
    content += f"\n{CONFIG_TXT_MARKER}\nenable_uart=1\n"

    if rpi_model == 5:
        lines = content.splitlines(keepends=True)
        in_cm5 = False
        for i, line in enumerate(lines):
            stripped = line.strip()
            if stripped.startswith("[") and stripped.endswith("]"):
                in_cm5 = stripped == "[cm5]"
                continue
            if in_cm5:
                lines[i] = line.replace(CM5_HOST_OVERLAY, CM5_DEVICE_OVERLAY)
        content = "".join(lines)
    else:
        content += "dtoverlay=dwc2\n"

    return content + "\n"


def patch_cmdline(content: str) -> str:
    """Append the gadget modules to every kernel command line."""
    return "".join(f"{line} {CMDLINE_MODULES}\n" for line in content.splitlines())


def configure_usb_console(ctx: StageContext) -> None:
    config_txt = ctx.boot / "config.txt"
    existing = config_txt.read_text(encoding="utf-8") if config_txt.exists() else ""
    write_file(config_txt, patch_config_txt(existing, ctx.config.rpi_model))

    cmdline = ctx.boot / "cmdline.txt"
    if cmdline.exists():
        write_file(cmdline, patch_cmdline(cmdline.read_text(encoding="utf-8")))
    else:
        logger.warning("%s not found; gadget modules load via modules-load.d only", cmdline)

    write_file(ctx.root / "etc/modules-load.d/usb-gadget.conf", read_data("usb-gadget.conf"))
    write_file(ctx.root / SETUP_SCRIPT, read_data("setup-usb-serial-gadget.sh"), mode=0o755)
    write_file(
        ctx.root / "etc/systemd/system" / GADGET_SERVICE,
        read_data(GADGET_SERVICE),
        mode=0o644,
    )

    ctx.chroot.enable_service(GADGET_SERVICE)
    ctx.chroot.enable_service(GETTY_SERVICE)

    write_file(ctx.root / INFO_SCRIPT, read_data("usb-console-info"), mode=0o755)
    bashrc = ctx.root / "etc/bash.bashrc"
    with bashrc.open("a", encoding="utf-8") as f:
        f.write("\n# USB Serial Console alias\nalias usb-info='usb-console-info'\n")

    logger.info("USB serial console enabled on ttyGS0")


__all__ = ["configure_usb_console", "patch_cmdline", "patch_config_txt"]
