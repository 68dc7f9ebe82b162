"""Raspberry Pi Image Generator - Arch Linux ARM disk images for the Pi 4 and 5.

This package turns the upstream Arch Linux ARM root filesystem archive into a
customized, compressed, bootable SD card image: loop device and mount
lifecycle, an ordered provisioning pipeline run through a qemu-user chroot,
and guaranteed teardown on every exit path.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
