"""Root filesystem expansion for plain partitions and LVM."""
import re
from typing import Tuple

from vmbootstrap.config import BootstrapContext
from vmbootstrap.detect import detect_root_device, detect_root_fstype
from vmbootstrap.utils import capture, log_info, log_step, log_success, log_warn

LVM_TOOLS = ("lvm2", "e2fsprogs", "xfsprogs", "cloud-guest-utils")
PARTITION_TOOLS = ("cloud-guest-utils", "e2fsprogs")


def is_lvm_device(device: str) -> bool:
    """Check if the device is a device-mapper (LVM) volume."""
    return device.startswith("/dev/mapper/") or device.startswith("/dev/dm-")


def disk_and_partition(device: str) -> Tuple[str, str]:
    """Parent disk (``/dev/sda``) and partition number (``1``) of a partition.

    Either value is '' when it cannot be resolved.
    """
    parent = capture("lsblk", "-no", "PKNAME", device).splitlines()
    disk = f"/dev/{parent[0].strip()}" if parent and parent[0].strip() else ""
    match = re.search(r"(\d+)$", device)
    return disk, match.group(1) if match else ""


def _first_field(output: str) -> str:
    """First whitespace-separated field of ``output``."""
    fields = output.split()
    return fields[0] if fields else ""


def expand_lvm_root(ctx: BootstrapContext, root_dev: str, fstype: str) -> None:
    """Grow the partition, PV, LV and filesystem under an LVM root."""
    runner = ctx.runner
    log_info(f"Detected LVM root: {root_dev}")
    runner.run("apt-get", "-y", "install", *LVM_TOOLS, warn="Failed to install LVM/FS tools")

    vg_name = _first_field(capture("lvs", "--noheadings", "-o", "vg_name", root_dev))
    lv_name = _first_field(capture("lvs", "--noheadings", "-o", "lv_name", root_dev))
    if not vg_name or not lv_name:
        log_warn(f"Could not determine VG/LV for {root_dev}")
        return
    log_info(f"VG: {vg_name}, LV: {lv_name}")

    pv_dev = _first_field(capture("pvs", "--noheadings", "-o", "pv_name", "-S", f"vg_name={vg_name}"))
    if not pv_dev:
        log_warn(f"Could not find physical volume for VG '{vg_name}'")
        return
    log_info(f"Physical volume: {pv_dev}")

    disk, part_num = disk_and_partition(pv_dev)
    if disk and part_num:
        log_info(f"Growing partition {part_num} on {disk}...")
        runner.run("growpart", disk, part_num, note="Partition already at max size")

    log_info("Resizing physical volume...")
    runner.run("pvresize", pv_dev, warn="pvresize failed")

    log_info("Extending logical volume...")
    runner.run("lvextend", "-l", "+100%FREE", f"/dev/{vg_name}/{lv_name}",
               note="LV already at max size")

    log_info("Resizing filesystem...")
    if fstype == "ext4":
        runner.run("resize2fs", root_dev, warn="resize2fs failed")
    elif fstype == "xfs":
        # xfs_growfs wants the mountpoint, not the device
        runner.run("xfs_growfs", "/", warn="xfs_growfs failed")
    else:
        log_warn(f"Filesystem '{fstype}' resize not supported")
        return

    log_success("LVM filesystem expansion complete")


def expand_partition_root(ctx: BootstrapContext, root_dev: str, fstype: str) -> None:
    """Grow a plain ext4 root partition and its filesystem."""
    if fstype != "ext4":
        log_warn(f"Root filesystem is '{fstype}', only ext4 expansion is supported")
        return

    disk, part_num = disk_and_partition(root_dev)
    if not disk or not part_num:
        log_warn("Could not determine disk/partition for root device")
        return

    runner = ctx.runner
    log_info(f"Growing partition {part_num} on {disk}...")
    runner.run("apt-get", "-y", "install", *PARTITION_TOOLS, warn="Failed to install expansion tools")
    runner.run("growpart", disk, part_num, warn="growpart failed (disk may already be full size)")
    runner.run("resize2fs", root_dev, warn="resize2fs failed")
    log_success("Filesystem expansion complete")


def expand_root_filesystem(ctx: BootstrapContext) -> None:
    """Grow the root partition, volume and filesystem to fill the disk."""
    log_step("Expanding root filesystem")

    root_dev = detect_root_device()
    if not root_dev:
        log_warn("Could not detect root device, skipping expansion")
        return
    fstype = detect_root_fstype()

    if is_lvm_device(root_dev):
        expand_lvm_root(ctx, root_dev, fstype)
    else:
        expand_partition_root(ctx, root_dev, fstype)
