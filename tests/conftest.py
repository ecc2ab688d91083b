"""
Pytest configuration and shared fixtures for rawdisk-encryptor tests.

This module provides fakes for every host adapter (command runner, partition
probe, encryption backend, TPM2 enroller) so the pipeline can be exercised
without root, loop devices or cryptsetup.
"""

import os
import shutil
import subprocess
from collections import namedtuple
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from rawdisk_encryptor import logging as logging_module
from rawdisk_encryptor.config import settings
from rawdisk_encryptor.domain.models import MIB
from rawdisk_encryptor.services.build import BuildBackends
from rawdisk_encryptor.storage.exceptions import CommandError


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: needs root, loop devices and cryptsetup on the host"
    )


def pytest_collection_modifyitems(config, items):
    tools = ("losetup", "cryptsetup", "qemu-img", "parted", "partx", "mkfs.ext4", "mkfs.vfat")
    if os.geteuid() == 0 and all(shutil.which(tool) for tool in tools):
        return
    skip = pytest.mark.skip(reason="requires root and disk tooling")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


# ==============================================================================
# Command Runner Fakes
# ==============================================================================


def strip_privilege(command: List[str]) -> List[str]:
    """Drop the sudo prefix ``privileged`` adds when tests run unprivileged."""
    command = list(command)
    if command and command[0] == "sudo":
        command = command[1:]
        while command and command[0].startswith("--preserve-env"):
            command = command[1:]
    return command


class RecordedCall:
    def __init__(self, argv, raw, input_text, env, timeout, check):
        self.argv = argv
        self.raw = raw
        self.input_text = input_text
        self.env = env
        self.timeout = timeout
        self.check = check

    def __repr__(self) -> str:
        return f"RecordedCall({' '.join(self.argv)})"


class FakeRunner:
    """
    Stand-in for ``run_command`` that records every invocation.

    Responses are scripted by command prefix: the first registered prefix
    matching the start of the (sudo-stripped) argv wins. Unscripted commands
    succeed with empty output.
    """

    def __init__(self):
        self.calls: List[RecordedCall] = []
        self._responses: List[tuple] = []

    def respond(self, prefix, stdout="", stderr="", returncode=0, handler=None):
        self._responses.insert(0, (list(prefix), stdout, stderr, returncode, handler))
        return self

    def __call__(
        self,
        command,
        *,
        check=True,
        input_text=None,
        env=None,
        timeout=None,
        log_output=True,
        log_command=True,
    ):
        argv = strip_privilege(command)
        self.calls.append(RecordedCall(argv, list(command), input_text, env, timeout, check))
        stdout, stderr, returncode = "", "", 0
        for prefix, out, err, code, handler in self._responses:
            if argv[: len(prefix)] == prefix:
                if handler is not None:
                    out, err, code = handler(argv)
                stdout, stderr, returncode = out, err, code
                break
        if check and returncode != 0:
            raise CommandError(command, returncode, stderr, stdout)
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)

    @property
    def commands(self) -> List[List[str]]:
        return [call.argv for call in self.calls]

    def find(self, *prefix) -> List[RecordedCall]:
        prefix = list(prefix)
        return [call for call in self.calls if call.argv[: len(prefix)] == prefix]

    def index(self, *prefix) -> int:
        prefix = list(prefix)
        for position, call in enumerate(self.calls):
            if call.argv[: len(prefix)] == prefix:
                return position
        raise ValueError(f"{prefix} was never run")


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Fixture providing a recording command runner."""
    return FakeRunner()


# ==============================================================================
# Host Adapter Fakes
# ==============================================================================


class FakeProbe:
    """PartitionProbe returning a healthy EFI/boot/root layout by default."""

    def __init__(self, sizes=None, fstypes=None):
        self.sizes = sizes or {1: 100 * MIB, 2: 200 * MIB, 3: 1000 * MIB}
        self.types = {
            1: "C12A7328-F81F-11D2-BA4B-00A0C93EC93B",
            2: "0FC63DAF-8483-4772-8E79-3D69D8477DE4",
            3: "0FC63DAF-8483-4772-8E79-3D69D8477DE4",
        }
        self.parted = {1: "fat32", 2: "ext4", 3: "ext4"}
        self.blkid = "vfat"
        self.file_output = "DOS/MBR boot sector, FAT (32-bit), sectors/cluster 8"
        self.fstypes = fstypes or {1: "vfat", 2: "ext4", 3: "ext4"}

    @staticmethod
    def _number(partition: str) -> int:
        return int(partition.rsplit("p", 1)[-1])

    def partition_types(self, device):
        return dict(self.types)

    def parted_filesystems(self, device):
        return dict(self.parted)

    def blkid_type(self, partition):
        return self.blkid

    def file_signature(self, partition):
        return self.file_output

    def fstype(self, partition):
        return self.fstypes.get(self._number(partition))

    def size_bytes(self, partition):
        return self.sizes[self._number(partition)]


class FakeEncryptionBackend:
    """EncryptionBackend tracking active mappings in memory."""

    def __init__(self, events: Optional[List[str]] = None):
        self.events = events if events is not None else []
        self.active: Dict[str, str] = {}
        self.passphrases: Dict[str, str] = {}
        self.close_results: List[bool] = []
        self.fail_open = False

    def format(self, device, passphrase, *, cipher, key_size):
        self.events.append(f"format {device}")
        self.passphrases[device] = passphrase

    def open(self, device, mapper_name, passphrase=None, *, key_file=None, readonly=False):
        if self.fail_open:
            raise CommandError(["cryptsetup", "luksOpen", device, mapper_name], 2, "No key available")
        self.events.append(f"open {mapper_name}" + (" ro" if readonly else ""))
        self.active[mapper_name] = device

    def is_active(self, mapper_name):
        return mapper_name in self.active

    def close(self, mapper_name):
        self.events.append(f"close {mapper_name}")
        if self.close_results:
            result = self.close_results.pop(0)
            if result:
                self.active.pop(mapper_name, None)
            return result
        self.active.pop(mapper_name, None)
        return True

    def force_remove(self, mapper_name):
        self.events.append(f"dmsetup remove {mapper_name}")
        self.active.pop(mapper_name, None)

    def flush(self, mapper_name):
        self.events.append(f"flush {mapper_name}")


class FakeTpm2Enroller:
    def __init__(self, tool=True, device=True, error: Optional[Exception] = None):
        self.tool = tool
        self.device = device
        self.error = error
        self.enrollments = []

    def tool_available(self):
        return self.tool

    def device_available(self):
        return self.device

    def enroll(self, enrollment, passphrase, *, timeout):
        if self.error is not None:
            raise self.error
        self.enrollments.append((enrollment, passphrase, timeout))


class FakeCopier:
    """Records block copies instead of running dd."""

    Copy = namedtuple("Copy", "source target total_bytes block_size label")

    def __init__(self, events: Optional[List[str]] = None, on_copy: Optional[Callable] = None):
        self.copies = []
        self.events = events if events is not None else []
        self.on_copy = on_copy

    def __call__(self, source, target, *, total_bytes=None, block_size="4M", label=None):
        self.copies.append(self.Copy(source, target, total_bytes, block_size, label))
        self.events.append(f"copy {label}")
        if self.on_copy is not None:
            self.on_copy(source, target, label)


DiskUsage = namedtuple("DiskUsage", "total used free")


@pytest.fixture
def events() -> List[str]:
    """Shared ordered event log for backend fakes."""
    return []


@pytest.fixture
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def fake_encryption(events) -> FakeEncryptionBackend:
    return FakeEncryptionBackend(events)


@pytest.fixture
def fake_tpm() -> FakeTpm2Enroller:
    return FakeTpm2Enroller()


@pytest.fixture
def fake_copier(events) -> FakeCopier:
    return FakeCopier(events)


@pytest.fixture
def fake_runner_with_loops(fake_runner) -> FakeRunner:
    """Runner whose losetup hands out /dev/loop7 then /dev/loop8."""
    devices = iter(["/dev/loop7", "/dev/loop8", "/dev/loop9"])
    fake_runner.respond(["losetup", "--show"], handler=lambda argv: (next(devices) + "\n", "", 0))
    return fake_runner


@pytest.fixture
def backends(fake_runner_with_loops, fake_probe, fake_encryption, fake_tpm, fake_copier):
    """BuildBackends wired entirely to fakes."""
    return BuildBackends(
        runner=fake_runner_with_loops,
        probe=fake_probe,
        formatter=None,
        encryption=fake_encryption,
        tpm=fake_tpm,
        copier=fake_copier,
        disk_usage=lambda path: DiskUsage(10**13, 0, 10**12),
        exists=lambda path: True,
        which=lambda name: f"/usr/bin/{name}",
    )


# ==============================================================================
# File System Fixtures
# ==============================================================================


@pytest.fixture
def source_image(tmp_path) -> Path:
    """An (empty) input image file."""
    path = tmp_path / "ubuntu-2204-efi.raw"
    path.write_bytes(b"\0" * 4096)
    return path


@pytest.fixture
def output_image(tmp_path) -> Path:
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    return out_dir / "ubuntu-2204-efi-encrypted.raw"


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """Fixture providing a temporary settings file path."""
    settings_dir = tmp_path / ".config" / "rawdisk-encryptor"
    settings_dir.mkdir(parents=True)
    return settings_dir / "settings.json"


# ==============================================================================
# Global State
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset settings and registered secrets around each test."""
    settings.load_settings(Path("/nonexistent/settings.json"))
    yield
    logging_module.clear_secrets()
    settings.load_settings(Path("/nonexistent/settings.json"))


@pytest.fixture
def captured_logs():
    """Route loguru records into a list for inspection."""
    records = []
    logging_module.logger.remove()
    handler_id = logging_module.logger.add(
        lambda message: records.append(message.record), level="TRACE"
    )
    yield records
    logging_module.logger.remove(handler_id)


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")
