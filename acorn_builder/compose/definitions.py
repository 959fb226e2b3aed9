"""AcornOS component definitions.

Components are grouped by phase; the phase number is the priority, so the
base rootfs is laid over the filesystem skeleton, configuration is laid over
the base rootfs, and the live-session tweaks come last.

    FILESYSTEM (0)   FHS directories and merged-/usr symlinks
    BASE (5)         unpacked Alpine rootfs, relocated for merged-/usr
    KERNEL (10)      kernel modules, firmware, apk signing keys
    INIT (20)        OpenRC runlevels and boot services
    SERVICES (30)    network, ssh, chrony
    CONFIG (40)      branding, sysconfig
    FINAL (50)       live session (serial autologin, test instrumentation)
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from acorn_builder.compose.operations import (
    Component,
    CopyFile,
    EnableService,
    EnsureDir,
    Symlink,
    WriteFile,
    dirs,
    group,
    tree_component,
    user,
    write_file,
)
from acorn_builder.config.settings import (
    DEFAULT_PROMPT_SENTINEL,
    DEFAULT_READY_SENTINEL,
    get_setting,
)
from acorn_builder.exceptions import ConfigurationError, SigningKeyError
from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_compose()

PRIORITY_FILESYSTEM = 0
PRIORITY_BASE = 5
PRIORITY_KERNEL = 10
PRIORITY_INIT = 20
PRIORITY_SERVICES = 30
PRIORITY_CONFIG = 40
PRIORITY_FINAL = 50

OS_NAME = "AcornOS"

MERGED_USR = {"bin": "usr/bin", "sbin": "usr/sbin", "lib": "usr/lib"}


# ==============================================================================
# Phase 1: Filesystem
# ==============================================================================

FHS_DIRS = (
    "etc",
    "home",
    "root",
    "tmp",
    "var",
    "run",
    "mnt",
    "media",
    "srv",
    "opt",
    "usr/bin",
    "usr/sbin",
    "usr/lib",
    "usr/lib/modules",
    "usr/share",
    "usr/local/bin",
    "usr/local/lib",
    "usr/local/share",
    "var/log",
    "var/tmp",
    "var/cache",
    "var/spool",
    "var/lib",
    "dev",
    "proc",
    "sys",
    "boot",
)


def filesystem_component() -> Component:
    ops = dirs(*FHS_DIRS)
    ops += [Symlink(link, f"usr/{link}") for link in MERGED_USR]
    ops += [
        EnsureDir("tmp", 0o1777),
        EnsureDir("var/tmp", 0o1777),
        EnsureDir("root", 0o700),
    ]
    return Component("filesystem", PRIORITY_FILESYSTEM, tuple(ops))


def base_rootfs_component(rootfs: Path) -> Component:
    """The unpacked upstream rootfs, relocated onto the merged-/usr skeleton."""
    return tree_component("base-rootfs", rootfs, PRIORITY_BASE, remap=MERGED_USR)


# ==============================================================================
# Phase 2: Kernel
# ==============================================================================

MODULES_DIR = "usr/lib/modules"
FIRMWARE_DIR = "usr/lib/firmware"
APK_KEYS_DIR = "etc/apk/keys"


def find_kernel_version(modules_root: Path) -> str:
    """Name of the kernel version directory under ``lib/modules``.

    Raises:
        ConfigurationError: No version directory exists
    """
    modules_root = Path(modules_root)
    versions = []
    if modules_root.is_dir():
        versions = sorted(entry.name for entry in modules_root.iterdir() if entry.is_dir())
    if not versions:
        raise ConfigurationError(f"No kernel version directory found in {modules_root}")
    if len(versions) > 1:
        log.warning(f"Several kernel versions in {modules_root}; using {versions[0]}")
    return versions[0]


def kernel_modules_component(modules_root: Path) -> Component:
    """Every module of the kernel, under /usr/lib/modules/<version>."""
    return tree_component("kernel-modules", modules_root, PRIORITY_KERNEL, prefix=MODULES_DIR)


def firmware_component(firmware_root: Path) -> Component:
    return tree_component("firmware", firmware_root, PRIORITY_KERNEL, prefix=FIRMWARE_DIR)


def apk_keys_component(keys_root: Path) -> Component:
    """Alpine signing keys; these replace the copies the upstream rootfs ships."""
    keys = sorted(path for path in Path(keys_root).glob("*.pub") if path.is_file())
    ops = [EnsureDir(APK_KEYS_DIR)]
    ops += [CopyFile(f"{APK_KEYS_DIR}/{key.name}", key, 0o644) for key in keys]
    overrides = frozenset(f"{APK_KEYS_DIR}/{key.name}" for key in keys)
    return Component("apk-keys", PRIORITY_KERNEL, tuple(ops), overrides)


def verify_apk_keys(root: Path, required: Iterable[str] = ()) -> list[str]:
    """Check the materialized rootfs carries PEM apk signing keys.

    Returns the key file names found.

    Raises:
        SigningKeyError: No keys, a key that is not PEM, or a required key missing
    """
    keys_dir = Path(root) / APK_KEYS_DIR
    keys = sorted(path for path in keys_dir.glob("*.pub")) if keys_dir.is_dir() else []
    if not keys:
        raise SigningKeyError(f"no keys in /{APK_KEYS_DIR}")
    for key in keys:
        if "BEGIN PUBLIC KEY" not in key.read_text(encoding="utf-8", errors="replace"):
            raise SigningKeyError(f"{key.name} is not a PEM public key")
    names = [key.name for key in keys]
    missing = [name for name in required if name not in names]
    if missing:
        raise SigningKeyError(f"missing {', '.join(missing)}", missing)
    log.debug(f"Verified {len(names)} apk signing keys")
    return names


# ==============================================================================
# Phase 3: Init (OpenRC)
# ==============================================================================

RUNLEVELS = ("sysinit", "boot", "default", "nonetwork", "shutdown")

SYSINIT_SERVICES = ("devfs", "dmesg", "hwdrivers", "modules", "sysfs", "procfs")
BOOT_SERVICES = (
    "hostname",
    "bootmisc",
    "hwclock",
    "sysctl",
    "localmount",
    "fsck",
    "root",
    "swap",
    "seedrng",
    "urandom",
)
SHUTDOWN_SERVICES = ("killprocs", "mount-ro", "savecache")


def openrc_component() -> Component:
    ops = dirs("etc/init.d", "etc/conf.d")
    ops += dirs(*(f"etc/runlevels/{level}" for level in RUNLEVELS))
    ops += [EnableService(name, "sysinit") for name in SYSINIT_SERVICES]
    ops += [EnableService(name, "boot") for name in BOOT_SERVICES]
    ops += [EnableService(name, "shutdown") for name in SHUTDOWN_SERVICES]
    return Component("openrc", PRIORITY_INIT, tuple(ops))


# ==============================================================================
# Phase 5: Services
# ==============================================================================


def network_component() -> Component:
    ops = dirs(
        "etc/network",
        "etc/network/if-down.d",
        "etc/network/if-post-down.d",
        "etc/network/if-pre-up.d",
        "etc/network/if-up.d",
    )
    ops += [
        write_file("etc/conf.d/dhcpcd", '# DHCP client configuration\ndhcpcd_args="--quiet"\n'),
        EnableService("networking", "boot"),
        EnableService("dhcpcd", "default"),
    ]
    return Component("network", PRIORITY_SERVICES, tuple(ops))


def ssh_component() -> Component:
    return Component(
        "ssh",
        PRIORITY_SERVICES,
        (
            EnsureDir("etc/ssh"),
            EnsureDir("var/empty/sshd", 0o755),
            EnsureDir("run/sshd", 0o755),
            group("sshd", 22),
            user("sshd", 22, 22, "/var/empty/sshd", "/sbin/nologin"),
            EnableService("sshd", "default"),
        ),
    )


def chrony_component() -> Component:
    return Component(
        "chrony",
        PRIORITY_SERVICES,
        (
            EnsureDir("var/lib/chrony"),
            EnsureDir("var/log/chrony"),
            group("chrony", 123),
            user("chrony", 123, 123, "/var/lib/chrony", "/sbin/nologin"),
            EnableService("chronyd", "default"),
        ),
    )


# ==============================================================================
# Phase 6: Config
# ==============================================================================

OS_RELEASE = f"""NAME="{OS_NAME}"
ID=acornos
ID_LIKE=alpine
VERSION_ID=1.0
PRETTY_NAME="{OS_NAME}"
HOME_URL="https://levitateos.org/acorn"
BUG_REPORT_URL="https://github.com/levitateos/levitateos/issues"
"""

MOTD = r"""
    _                          ___  ____
   / \   ___ ___  _ __ _ __   / _ \/ ___|
  / _ \ / __/ _ \| '__| '_ \ | | | \___ \
 / ___ \ (_| (_) | |  | | | || |_| |___) |
/_/   \_\___\___/|_|  |_| |_| \___/|____/

Welcome to AcornOS!

"""

HOSTS = "127.0.0.1\tlocalhost\n::1\t\tlocalhost\n127.0.1.1\tacornos\n"

BRANDING_FILES = {
    "etc/os-release": OS_RELEASE,
    "etc/hostname": "acornos\n",
    "etc/motd": MOTD,
    "etc/issue": f"{OS_NAME} \\n \\l\n\n",
    "etc/hosts": HOSTS,
}


def branding_component() -> Component:
    """Identity files; these replace whatever the upstream rootfs ships."""
    ops = tuple(write_file(path, text) for path, text in BRANDING_FILES.items())
    return Component("branding", PRIORITY_CONFIG, ops, frozenset(BRANDING_FILES))


FSTAB = (
    "# /etc/fstab - AcornOS\n"
    "# <device>    <mount>    <type>    <options>    <dump> <pass>\n"
    "proc         /proc      proc      defaults     0      0\n"
    "sysfs        /sys       sysfs     defaults     0      0\n"
    "devpts       /dev/pts   devpts    defaults     0      0\n"
    "tmpfs        /tmp       tmpfs     defaults     0      0\n"
)

SHELLS = "/bin/sh\n/bin/ash\n/bin/bash\n/usr/bin/bash\n"


def sysconfig_component() -> Component:
    return Component(
        "sysconfig",
        PRIORITY_CONFIG,
        (write_file("etc/fstab", FSTAB), write_file("etc/shells", SHELLS)),
        frozenset({"etc/fstab", "etc/shells"}),
    )


# ==============================================================================
# Phase 9: Live session
# ==============================================================================

# Serial getty last so the test harness gets a login shell on ttyS0
LIVE_INITTAB = """# /etc/inittab - AcornOS Live

::sysinit:/sbin/openrc sysinit
::sysinit:/sbin/openrc boot
::wait:/sbin/openrc default

# Virtual terminals
tty1::respawn:/sbin/getty 38400 tty1
tty2::respawn:/sbin/getty 38400 tty2
tty3::respawn:/sbin/getty 38400 tty3

# Serial console with autologin
ttyS0::respawn:/sbin/getty -n -l /usr/local/bin/serial-autologin 115200 ttyS0 vt100

::ctrlaltdel:/sbin/reboot
::shutdown:/sbin/openrc shutdown
"""

SERIAL_AUTOLOGIN = """#!/bin/sh
# Called by getty -l as the login program on the serial console
exec /bin/sh -l
"""

LIVE_SHADOW = (
    "root::0:0:99999:7:::\n"
    "bin:!:0:0:99999:7:::\n"
    "daemon:!:0:0:99999:7:::\n"
    "nobody:!:0:0:99999:7:::\n"
)


def live_profile_script(ready_sentinel: str, prompt_sentinel: str) -> str:
    """Profile snippet that emits the console sentinels on ttyS0 only."""
    return f"""#!/bin/ash
# Test mode instrumentation: active only on the serial console

case "$-" in
    *i*) ;;
    *) return ;;
esac

if [ "$(tty)" = "/dev/ttyS0" ]; then
    export ACORN_TEST_MODE=1
else
    return
fi

echo "{ready_sentinel}"

_acorn_prompt() {{
    echo "{prompt_sentinel}"
}}

PS1='$(_acorn_prompt)# '
"""


def live_component(
    ready_sentinel: str | None = None, prompt_sentinel: str | None = None
) -> Component:
    ready = ready_sentinel or get_setting("ready_sentinel", DEFAULT_READY_SENTINEL)
    prompt = prompt_sentinel or get_setting("prompt_sentinel", DEFAULT_PROMPT_SENTINEL)
    return Component(
        "live",
        PRIORITY_FINAL,
        (
            write_file("etc/inittab", LIVE_INITTAB),
            write_file("etc/issue", f"\n{OS_NAME} Live - \\l\n\nLogin as 'root' (no password)\n\n"),
            write_file("etc/shadow", LIVE_SHADOW, 0o640),
            write_file("usr/local/bin/serial-autologin", SERIAL_AUTOLOGIN, 0o755),
            write_file("etc/profile.d/00-acorn-test.sh", live_profile_script(ready, prompt)),
        ),
        frozenset({"etc/inittab", "etc/issue", "etc/shadow"}),
    )


def default_components(
    base_rootfs: Path,
    modules_root: Path | None = None,
    firmware_root: Path | None = None,
    keys_root: Path | None = None,
) -> list[Component]:
    """Every component of the AcornOS root filesystem, in declaration order.

    The kernel phase components are included only for the roots given.
    """
    components = [filesystem_component(), base_rootfs_component(base_rootfs)]
    if modules_root is not None:
        components.append(kernel_modules_component(modules_root))
    if firmware_root is not None:
        components.append(firmware_component(firmware_root))
    if keys_root is not None:
        components.append(apk_keys_component(keys_root))
    return components + [
        openrc_component(),
        network_component(),
        ssh_component(),
        chrony_component(),
        branding_component(),
        sysconfig_component(),
        live_component(),
    ]


# ==============================================================================
# Initramfs
# ==============================================================================

INITRAMFS_DIRS = ("bin", "sbin", "dev", "proc", "sys", "tmp", "mnt", "newroot", "run", "etc")

BUSYBOX_COMMANDS = (
    "sh",
    "mount",
    "umount",
    "mkdir",
    "cat",
    "ls",
    "sleep",
    "switch_root",
    "echo",
    "test",
    "grep",
    "sed",
    "ln",
    "rm",
    "cp",
    "mv",
    "chmod",
    "mknod",
    "losetup",
    "insmod",
    "modprobe",
    "find",
    "head",
)

# Loaded by /init in this order; paths are relative to lib/modules/<version>
BOOT_MODULES = (
    "kernel/drivers/block/loop",
    "kernel/fs/squashfs/squashfs",
    "kernel/fs/overlayfs/overlay",
    "kernel/fs/isofs/isofs",
    "kernel/drivers/scsi/sr_mod",
    "kernel/drivers/cdrom/cdrom",
    "kernel/drivers/scsi/virtio_scsi",
)
MODULE_SUFFIXES = (".ko.zst", ".ko", ".ko.gz", ".ko.xz")
MODULE_METADATA = (
    "modules.dep",
    "modules.dep.bin",
    "modules.alias",
    "modules.alias.bin",
    "modules.builtin",
)

INIT_TEMPLATE = """#!/bin/sh
# Live boot: find the medium by label, mount the squashfs read-only,
# overlay a tmpfs and switch_root into it.
mount -t proc proc /proc
mount -t sysfs sysfs /sys
mount -t devtmpfs devtmpfs /dev

for module in {modules}; do
    modprobe "$module" 2>/dev/null
done

mkdir -p /mnt/medium /mnt/lower /mnt/overlay
for attempt in 1 2 3 4 5 6 7 8 9 10; do
    device=$(findfs LABEL={label} 2>/dev/null) && break
    sleep 1
done
if [ -z "$device" ]; then
    echo "Unable to mount root: no device labelled {label}"
    exec sh
fi

mount -o ro "$device" /mnt/medium
mount -t squashfs -o loop,ro /mnt/medium/live/filesystem.squashfs /mnt/lower
mount -t tmpfs tmpfs /mnt/overlay
mkdir -p /mnt/overlay/upper /mnt/overlay/work
mount -t overlay overlay \\
    -o lowerdir=/mnt/lower,upperdir=/mnt/overlay/upper,workdir=/mnt/overlay/work /newroot

exec switch_root /newroot /sbin/init
"""


def init_script(label: str) -> str:
    modules = " ".join(module.rsplit("/", 1)[-1] for module in BOOT_MODULES)
    return INIT_TEMPLATE.format(label=label, modules=modules)


def boot_modules_component(modules_root: Path) -> Component:
    """The modules ``/init`` loads, plus the depmod metadata needed to load them.

    A module with no file under any known suffix is taken to be built into
    the kernel and skipped.
    """
    version = find_kernel_version(modules_root)
    source = Path(modules_root) / version
    target = f"lib/modules/{version}"
    ops = [EnsureDir(target)]
    builtin = []
    for module in BOOT_MODULES:
        for suffix in MODULE_SUFFIXES:
            path = source / f"{module}{suffix}"
            if path.is_file():
                ops.append(CopyFile(f"{target}/{module}{suffix}", path, 0o644))
                break
        else:
            builtin.append(module.rsplit("/", 1)[-1])
    ops += [
        CopyFile(f"{target}/{name}", source / name, 0o644)
        for name in MODULE_METADATA
        if (source / name).is_file()
    ]
    if builtin:
        log.info(f"Kernel {version}: {len(builtin)} boot modules built in ({', '.join(builtin)})")
    return Component("initramfs-modules", 5, tuple(ops))


def initramfs_components(
    busybox: Path, label: str | None = None, modules_root: Path | None = None
) -> list[Component]:
    """Components of the live initramfs: busybox applets, boot modules and ``/init``.

    ``modules_root`` is the kernel's ``lib/modules`` directory; None means
    every boot module is built into the kernel.
    """
    label = label or get_setting("iso_label", "ACORNOS")
    ops = dirs(*INITRAMFS_DIRS)
    ops.append(CopyFile("bin/busybox", busybox, 0o755))
    ops += [Symlink(f"bin/{command}", "busybox") for command in BUSYBOX_COMMANDS]
    ops.append(Symlink("sbin/findfs", "../bin/busybox"))
    components = [Component("initramfs-busybox", 0, tuple(ops))]
    if modules_root is not None:
        components.append(boot_modules_component(modules_root))
    components.append(Component("initramfs-init", 10, (write_file("init", init_script(label), 0o755),)))
    return components


# ==============================================================================
# ISO root
# ==============================================================================

KERNEL_ISO_PATH = "boot/vmlinuz"
INITRAMFS_ISO_PATH = "boot/initramfs.img"
SQUASHFS_ISO_PATH = "live/filesystem.squashfs"

# The last console= becomes /dev/console; serial must come last
KERNEL_CONSOLES = "console=tty0 console=ttyS0,115200n8"

GRUB_TEMPLATE = """# Serial console for automated testing
serial --speed=115200 --unit=0 --word=8 --parity=no --stop=1
terminal_input serial console
terminal_output serial console

set default=0
set timeout=5

menuentry '{name}' {{
    linux /{kernel} root=LABEL={label} {consoles}
    initrd /{initramfs}
}}

menuentry '{name} (Emergency Shell)' {{
    linux /{kernel} root=LABEL={label} {consoles} emergency
    initrd /{initramfs}
}}
"""


def grub_config(label: str) -> str:
    return GRUB_TEMPLATE.format(
        name=OS_NAME,
        kernel=KERNEL_ISO_PATH,
        initramfs=INITRAMFS_ISO_PATH,
        label=label,
        consoles=KERNEL_CONSOLES,
    )


def iso_root_components(
    kernel: Path, initramfs: Path, squashfs: Path, label: str | None = None
) -> list[Component]:
    """Layout of the ISO filesystem handed to grub-mkrescue."""
    label = label or get_setting("iso_label", "ACORNOS")
    return [
        Component(
            "iso-payload",
            0,
            (
                CopyFile(KERNEL_ISO_PATH, kernel, 0o644),
                CopyFile(INITRAMFS_ISO_PATH, initramfs, 0o644),
                CopyFile(SQUASHFS_ISO_PATH, squashfs, 0o644),
            ),
        ),
        Component(
            "iso-boot",
            10,
            (WriteFile("boot/grub/grub.cfg", grub_config(label).encode("utf-8")),),
        ),
    ]
