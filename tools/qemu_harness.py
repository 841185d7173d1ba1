"""Boot the UEFI guest in QEMU over emulated PXE/TFTP.

Pipeline (leaves first):
  artifact  -> locate the .efi image the NIC boot ROM will fetch
  configure -> freeze a VmConfig from a named Profile + firmware path
  launch    -> spawn one qemu-system-x86_64, inherit the terminal, wait

Every failure is a HarnessError carrying the exit code the entry point
should return; nothing is retried and no fallback config is tried.
"""

import enum
import os
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
BUILD_ROOT = os.path.join(REPO_ROOT, "target")
TARGET = "x86_64-unknown-uefi"
BUILD_PROFILE = "debug"
BOOT_FILENAME = "FuzzOS.efi"

DEFAULT_OVMF_PATH = "/usr/share/OVMF/OVMF_CODE.fd"
KVM_DEVICE = "/dev/kvm"
QEMU_NAME = "qemu-system-x86_64"

MEMORY_MB = 128
NIC_DRIVER = "e1000"
NETDEV_ID = "n0"

# Shell conventions: 127 not found, 126 found but not runnable, 128+N signal N.
EXIT_NOT_FOUND = 127
EXIT_NOT_RUNNABLE = 126
EXIT_SIGNAL_BASE = 128
TERMINATE_TIMEOUT = 5  # seconds


class HarnessError(Exception):
    """Fatal launcher error; exit_code is what the process should exit with."""

    def __init__(self, message, exit_code=1):
        super().__init__(message)
        self.exit_code = exit_code


class BuildError(HarnessError):
    pass


class MissingFileError(HarnessError):
    pass


class ConfigError(HarnessError):
    pass


class SpawnError(HarnessError):
    pass


def log(message):
    print(message, file=sys.stderr)


def exit_status(returncode):
    """Map Popen's -N (killed by signal N) onto the shell's 128+N."""
    if returncode < 0:
        return EXIT_SIGNAL_BASE - returncode
    return returncode


def _start_error(exc):
    if isinstance(exc, FileNotFoundError):
        return EXIT_NOT_FOUND
    return EXIT_NOT_RUNNABLE


# Artifact locator

def artifact_dir(build_root=BUILD_ROOT, target=TARGET, build_profile=BUILD_PROFILE):
    """Directory cargo writes the guest image to; served as the TFTP root."""
    return os.path.join(build_root, target, build_profile)


def build_guest(cargo=None, cwd=REPO_ROOT):
    """Run `cargo build` in the foreground; output goes straight to the terminal."""
    cargo = cargo or os.environ.get("CARGO_BIN", "cargo")
    args = [cargo, "build"]
    log("+ " + shlex.join(args))
    try:
        result = subprocess.run(args, cwd=cwd)
    except OSError as exc:
        raise BuildError(f"cannot run build tool {cargo}: {exc.strerror}",
                         exit_code=_start_error(exc))
    if result.returncode != 0:
        raise BuildError(
            f"build failed (exit={result.returncode})",
            exit_code=exit_status(result.returncode),
        )


def locate_artifact(tftp_root, boot_filename=BOOT_FILENAME):
    """Check the boot image is in place before QEMU's boot ROM goes looking."""
    if not os.path.isdir(tftp_root):
        raise MissingFileError(f"missing TFTP root directory: {tftp_root}")
    image = os.path.join(tftp_root, boot_filename)
    if not os.path.isfile(image):
        raise MissingFileError(f"missing boot image: {image} (did the build run?)")
    return BootDelivery(tftp_root=tftp_root, boot_filename=boot_filename)


# VM configurator

class ConsoleMode(enum.Enum):
    GRAPHICAL = "graphical"
    HEADLESS = "headless"


class Profile(enum.Enum):
    """Machine topology presets. None leaves the choice to QEMU."""

    Q35_SMP6 = ("q35", 6)
    EMULATOR_DEFAULTS = (None, None)

    def __init__(self, machine, cpu_count):
        self.machine = machine
        self.cpu_count = cpu_count


@dataclass(frozen=True)
class BootDelivery:
    tftp_root: str
    boot_filename: str


@dataclass(frozen=True)
class NetworkDevice:
    driver: str = NIC_DRIVER
    netdev_id: str = NETDEV_ID


@dataclass(frozen=True)
class VmConfig:
    memory_mb: int
    hardware_acceleration: bool
    firmware_path: str
    network_device: NetworkDevice
    boot_delivery: BootDelivery
    console_mode: ConsoleMode = ConsoleMode.HEADLESS
    cpu_count: Optional[int] = None
    machine: Optional[str] = None


def default_firmware_path():
    return os.environ.get("OVMF_PATH", DEFAULT_OVMF_PATH)


def kvm_available(device=KVM_DEVICE):
    """True when the host exposes KVM and we may open it."""
    return os.path.exists(device) and os.access(device, os.R_OK | os.W_OK)


def configure(profile, boot_delivery, firmware_path=None, accel=None,
              memory_mb=MEMORY_MB):
    """Build the frozen VmConfig for one run.

    accel=None probes the host; if KVM is missing we run unaccelerated but
    say so on stderr.
    """
    firmware_path = firmware_path or default_firmware_path()

    if profile.cpu_count is not None and profile.cpu_count < 1:
        raise ConfigError(f"cpu count must be >= 1, got {profile.cpu_count}")
    if memory_mb < 1:
        raise ConfigError(f"memory must be >= 1 MB, got {memory_mb}")
    if not os.path.isfile(firmware_path) or not os.access(firmware_path, os.R_OK):
        raise MissingFileError(f"missing required file: {firmware_path}")

    if accel is None:
        accel = kvm_available()
        if not accel:
            log(f"warning: {KVM_DEVICE} unavailable, running without hardware acceleration")

    return VmConfig(
        memory_mb=memory_mb,
        hardware_acceleration=accel,
        firmware_path=firmware_path,
        network_device=NetworkDevice(),
        boot_delivery=boot_delivery,
        console_mode=ConsoleMode.HEADLESS,
        cpu_count=profile.cpu_count,
        machine=profile.machine,
    )


def resolve_qemu_bin():
    """$QEMU_BIN if it exists, else whatever PATH (or a Windows install) offers."""
    options = [
        os.environ.get("QEMU_BIN"),
        shutil.which(QEMU_NAME),
        shutil.which(QEMU_NAME + ".exe"),
    ]
    if os.name == "nt":
        root = os.environ.get("ProgramFiles", r"C:\Program Files")
        options.append(os.path.join(root, "qemu", QEMU_NAME + ".exe"))
    return next((path for path in options if path and os.path.isfile(path)), None)


def _opt(value):
    # QEMU's -device/-netdev parser splits on ","; ",," is a literal comma.
    return str(value).replace(",", ",,")


def qemu_args(config, qemu_bin=QEMU_NAME):
    """Render a VmConfig as a qemu-system-x86_64 argv."""
    args = [qemu_bin]
    if config.machine:
        args += ["-machine", config.machine]
    if config.cpu_count:
        args += ["-smp", str(config.cpu_count)]
    if config.hardware_acceleration:
        args.append("-enable-kvm")
    args += ["-m", str(config.memory_mb)]
    if config.console_mode is ConsoleMode.HEADLESS:
        args.append("-nographic")
    args += ["-bios", config.firmware_path]

    nic = config.network_device
    boot = config.boot_delivery
    args += [
        "-device", f"driver={_opt(nic.driver)},netdev={_opt(nic.netdev_id)}",
        "-netdev",
        f"user,id={_opt(nic.netdev_id)},tftp={_opt(boot.tftp_root)},"
        f"bootfile={_opt(boot.boot_filename)}",
    ]
    return args


# Process launcher

def _reap(proc):
    """Give the child a grace period, then terminate, then kill; always wait."""
    try:
        proc.wait(timeout=TERMINATE_TIMEOUT)
        return
    except subprocess.TimeoutExpired:
        pass
    proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_TIMEOUT)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def launch(args):
    """Run QEMU attached to this terminal and return its exit status.

    Ctrl-C reaches QEMU through the terminal as well, so on an interrupt we
    let it shut down and report its status. The child never outlives us.
    """
    log("+ " + shlex.join(args))
    try:
        proc = subprocess.Popen(args)
    except OSError as exc:
        raise SpawnError(f"cannot start emulator {args[0]}: {exc.strerror}",
                         exit_code=_start_error(exc))

    try:
        try:
            proc.wait()
        except KeyboardInterrupt:
            log("interrupted, waiting for the emulator to exit")
            _reap(proc)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
    return exit_status(proc.returncode)


def boot(profile, build=False, firmware_path=None, tftp_root=None,
         boot_filename=BOOT_FILENAME, qemu_bin=None):
    """Optionally build, then configure and run the VM. Returns an exit code."""
    try:
        if build:
            build_guest()
        delivery = locate_artifact(tftp_root or artifact_dir(), boot_filename)
        config = configure(profile, delivery, firmware_path=firmware_path)
        return launch(qemu_args(config, qemu_bin or resolve_qemu_bin() or QEMU_NAME))
    except HarnessError as exc:
        log(f"error: {exc}")
        return exc.exit_code
