import subprocess

import pytest

import qemu_harness

BOOT_FILENAME = "Guest.efi"


class FakeProc:
    """Stand-in for a running QEMU; exits with `returncode` when waited on.

    interrupt: the first wait() raises KeyboardInterrupt.
    lingers: keeps running until signalled; timed waits expire.
    ignores_term: terminate() has no effect, only kill() stops it.
    """

    def __init__(self, args, returncode=0, interrupt=False, lingers=False,
                 ignores_term=False):
        self.args = args
        self._exit = returncode
        self._interrupt = interrupt
        self._running = lingers
        self._ignores_term = ignores_term
        self.returncode = None
        self.terminated = False
        self.killed = False

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self._interrupt:
            self._interrupt = False
            raise KeyboardInterrupt
        if self._running and timeout is not None:
            raise subprocess.TimeoutExpired(self.args, timeout)
        self.returncode = self._exit
        return self.returncode

    def terminate(self):
        self.terminated = True
        if not self._ignores_term:
            self._running = False
            self._exit = -15

    def kill(self):
        self.killed = True
        self._running = False
        self._exit = -9


class FakeQemu:
    """Records every emulator spawn instead of starting a process."""

    def __init__(self):
        self.spawned = []
        self.procs = []
        self.returncode = 0
        self.interrupt = False
        self.lingers = False
        self.ignores_term = False
        self.error = None

    def __call__(self, args, **kwargs):
        if self.error:
            raise self.error
        self.spawned.append(list(args))
        proc = FakeProc(args, self.returncode, self.interrupt, self.lingers,
                        self.ignores_term)
        self.procs.append(proc)
        return proc


class FakeCargo:
    """Records build invocations and returns a canned exit code."""

    def __init__(self):
        self.calls = []
        self.returncode = 0
        self.error = None

    def __call__(self, args, **kwargs):
        if self.error:
            raise self.error
        self.calls.append(list(args))
        return subprocess.CompletedProcess(args=args, returncode=self.returncode)


@pytest.fixture
def fake_qemu(monkeypatch):
    """Replace subprocess.Popen inside the harness with a recorder."""
    fake = FakeQemu()
    monkeypatch.setattr(qemu_harness.subprocess, "Popen", fake)
    return fake


@pytest.fixture
def fake_cargo(monkeypatch):
    """Replace subprocess.run inside the harness with a recorder."""
    fake = FakeCargo()
    monkeypatch.setattr(qemu_harness.subprocess, "run", fake)
    return fake


@pytest.fixture
def kvm(monkeypatch):
    """Pretend the host has KVM."""
    monkeypatch.setattr(qemu_harness, "kvm_available", lambda: True)


@pytest.fixture
def firmware(tmp_path):
    """An OVMF image on disk."""
    path = tmp_path / "fw" / "OVMF_CODE.fd"
    path.parent.mkdir()
    path.write_bytes(b"\x00" * 16)
    return str(path)


@pytest.fixture
def tftp_root(tmp_path):
    """A build output directory holding the guest image."""
    root = tmp_path / "out" / "debug"
    root.mkdir(parents=True)
    (root / BOOT_FILENAME).write_bytes(b"MZ")
    return str(root)


@pytest.fixture
def delivery(tftp_root):
    return qemu_harness.BootDelivery(tftp_root=tftp_root, boot_filename=BOOT_FILENAME)
