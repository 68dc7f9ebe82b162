"""Provisioning stages run against the mounted image."""

from rpi_imagegen.stages.configure import (
    configure_fstab,
    configure_hostname,
    configure_locales,
    configure_networking,
    configure_root_password,
    configure_ssh,
    configure_timezone,
    configure_wifi,
    configure_zerotier,
    skip_wifi,
    skip_zerotier,
)
from rpi_imagegen.stages.pipeline import (
    PipelineResult,
    Stage,
    StageContext,
    StageFailedError,
    run_stages,
)
from rpi_imagegen.stages.system import (
    clean_boot_partition,
    extract_base_system,
    init_pacman,
    install_emulation_shim,
    install_kernel,
    install_packages,
    remove_old_packages,
    update_system,
)
from rpi_imagegen.stages.usb_gadget import configure_usb_console


def default_stages() -> list[Stage]:
    """Return the provisioning stages in execution order."""
    return [
        Stage("extract_base_system", extract_base_system),
        Stage("install_emulation_shim", install_emulation_shim),
        Stage("clean_boot_partition", clean_boot_partition),
        Stage("init_pacman", init_pacman),
        Stage("remove_old_packages", remove_old_packages),
        Stage("install_kernel", install_kernel),
        Stage("install_packages", install_packages),
        Stage("configure_locales", configure_locales),
        Stage("configure_timezone", configure_timezone),
        Stage("configure_hostname", configure_hostname),
        Stage("configure_root_password", configure_root_password),
        Stage("configure_networking", configure_networking),
        Stage("configure_wifi", configure_wifi, skip_if=skip_wifi),
        Stage("configure_ssh", configure_ssh),
        Stage("configure_fstab", configure_fstab),
        Stage("configure_zerotier", configure_zerotier, skip_if=skip_zerotier),
        Stage("configure_usb_console", configure_usb_console),
        Stage("update_system", update_system),
    ]


__all__ = [
    "PipelineResult",
    "Stage",
    "StageContext",
    "StageFailedError",
    "default_stages",
    "run_stages",
]
