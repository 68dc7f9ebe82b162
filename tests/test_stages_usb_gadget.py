"""Tests for the USB serial console stage."""

import stat

from rpi_imagegen.stages.usb_gadget import (
    CMDLINE_MODULES,
    CONFIG_TXT_MARKER,
    configure_usb_console,
    patch_cmdline,
    patch_config_txt,
)

PI5_CONFIG = """# See /boot/overlays/README
auto_initramfs=1

[cm4]
dtoverlay=dwc2,dr_mode=host

[cm5]
dtoverlay=dwc2,dr_mode=host

[all]
arm_64bit=1
"""


class TestPatchConfigTxt:
    """Tests for patch_config_txt function."""

    def test_pi5_switches_cm5_to_device_mode(self):
        patched = patch_config_txt(PI5_CONFIG, 5)

        cm4, cm5 = patched.split("[cm5]")
        assert "dtoverlay=dwc2,dr_mode=host" in cm4
        assert "dtoverlay=dwc2,dr_mode=device" in cm5.split("[all]")[0]
        assert f"{CONFIG_TXT_MARKER}\nenable_uart=1\n" in patched
        assert "\ndtoverlay=dwc2\n" not in patched

    def test_pi4_appends_overlay(self):
        patched = patch_config_txt("arm_64bit=1\n", 4)

        assert patched.startswith("arm_64bit=1\n")
        assert patched.endswith("enable_uart=1\ndtoverlay=dwc2\n\n")

    def test_empty_config(self):
        assert patch_config_txt("", 5) == f"\n{CONFIG_TXT_MARKER}\nenable_uart=1\n\n"


def test_patch_cmdline():
    original = "root=/dev/mmcblk0p2 rw rootwait console=serial0,115200\n"
    assert patch_cmdline(original) == (
        f"root=/dev/mmcblk0p2 rw rootwait console=serial0,115200 {CMDLINE_MODULES}\n"
    )


class TestConfigureUsbConsole:
    """Tests for configure_usb_console stage."""

    def test_full_setup(self, stage_context, runner):
        root = stage_context.root
        (root / "boot/config.txt").write_text(PI5_CONFIG)
        (root / "boot/cmdline.txt").write_text("root=LABEL=RPI64-ROOT rw\n")
        (root / "etc/bash.bashrc").write_text("# system bashrc\n")

        configure_usb_console(stage_context)

        assert "dr_mode=device" in (root / "boot/config.txt").read_text()
        assert (root / "boot/cmdline.txt").read_text() == (
            "root=LABEL=RPI64-ROOT rw modules-load=dwc2,g_serial\n"
        )
        assert (root / "etc/modules-load.d/usb-gadget.conf").read_text().splitlines()[-2:] == [
            "dwc2",
            "g_serial",
        ]

        setup = root / "usr/local/bin/setup-usb-serial-gadget.sh"
        assert setup.read_text().startswith("#!/bin/bash")
        assert stat.S_IMODE(setup.stat().st_mode) == 0o755
        unit = root / "etc/systemd/system/usb-serial-gadget.service"
        assert "ExecStart=/usr/local/bin/setup-usb-serial-gadget.sh" in unit.read_text()
        assert stat.S_IMODE(unit.stat().st_mode) == 0o644
        info = root / "usr/local/bin/usb-console-info"
        assert stat.S_IMODE(info.stat().st_mode) == 0o755

        bashrc = (root / "etc/bash.bashrc").read_text()
        assert bashrc.startswith("# system bashrc\n")
        assert "alias usb-info='usb-console-info'" in bashrc

        assert runner.chroot_commands() == [
            ["systemctl", "enable", "usb-serial-gadget.service"],
            ["systemctl", "enable", "serial-getty@ttyGS0.service"],
        ]

    def test_missing_cmdline(self, stage_context, caplog):
        configure_usb_console(stage_context)

        assert not (stage_context.root / "boot/cmdline.txt").exists()
        assert (stage_context.root / "boot/config.txt").exists()
        assert "cmdline.txt not found" in caplog.text
