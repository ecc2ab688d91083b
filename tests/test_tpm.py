"""Tests for TPM2 enrollment."""

import pytest

from rawdisk_encryptor.storage.exceptions import CommandError, Tpm2EnrollmentError
from rawdisk_encryptor.storage.tpm import SystemdTpm2Enroller, enroll_tpm2

PASSPHRASE = "tpm-test-passphrase"


class TestSystemdTpm2Enroller:
    def test_tool_available(self, fake_runner):
        enroller = SystemdTpm2Enroller(fake_runner, which=lambda name: None)
        assert enroller.tool_available() is False

    def test_device_listed(self, fake_runner):
        fake_runner.respond(
            ["systemd-cryptenroll", "--tpm2-device=list"],
            stdout="PATH        DEVICE      DRIVER\n/dev/tpmrm0 MSFT0101:00 tpm_crb\n",
        )
        assert SystemdTpm2Enroller(fake_runner).device_available() is True

    def test_header_only_means_no_device(self, fake_runner):
        fake_runner.respond(
            ["systemd-cryptenroll", "--tpm2-device=list"], stdout="PATH DEVICE DRIVER\n"
        )
        assert SystemdTpm2Enroller(fake_runner).device_available() is False

    def test_no_device(self, fake_runner):
        fake_runner.respond(
            ["systemd-cryptenroll", "--tpm2-device=list"], stderr="No TPM2 devices", returncode=1
        )
        assert SystemdTpm2Enroller(fake_runner).device_available() is False

    def test_enroll_passes_passphrase_through_environment(self, fake_runner, mocker):
        mocker.patch("rawdisk_encryptor.storage.commands.os.geteuid", return_value=1000)
        fake_runner.respond(["systemd-cryptenroll", "--tpm2-device=list"], stdout="/dev/tpmrm0\n")

        enrollment = enroll_tpm2(
            "/dev/loop8p3",
            PASSPHRASE,
            SystemdTpm2Enroller(fake_runner, which=lambda name: "/usr/bin/" + name),
            timeout=30,
        )

        call = fake_runner.find("systemd-cryptenroll", "--wipe-slot=1")[0]
        assert call.argv == [
            "systemd-cryptenroll",
            "--wipe-slot=1",
            "--tpm2-device=auto",
            "--tpm2-pcrs=1+3+5+7+11+12+14+15",
            "/dev/loop8p3",
        ]
        assert call.raw[:2] == ["sudo", "--preserve-env=PASSWORD"]
        assert call.env == {"PASSWORD": PASSPHRASE}
        assert call.timeout == 30
        assert PASSPHRASE not in " ".join(call.raw)
        assert enrollment.enrolled is True


class TestEnrollTpm2:
    def test_skip_issues_no_command(self, fake_runner):
        enroller = SystemdTpm2Enroller(fake_runner, which=lambda name: "/usr/bin/" + name)

        assert enroll_tpm2("/dev/loop8p3", PASSPHRASE, enroller, skip=True) is None
        assert fake_runner.calls == []

    def test_missing_tool_is_soft(self, fake_tpm, captured_logs):
        fake_tpm.tool = False

        assert enroll_tpm2("/dev/loop8p3", PASSPHRASE, fake_tpm) is None
        assert fake_tpm.enrollments == []
        assert any(r["level"].name == "WARNING" for r in captured_logs)

    def test_missing_device_is_soft(self, fake_tpm):
        fake_tpm.device = False
        assert enroll_tpm2("/dev/loop8p3", PASSPHRASE, fake_tpm) is None

    def test_enrollment_failure_is_fatal(self, fake_tpm):
        fake_tpm.error = CommandError(["systemd-cryptenroll"], 1, "TPM2 operation failed")

        with pytest.raises(Tpm2EnrollmentError, match="TPM2 operation failed"):
            enroll_tpm2("/dev/loop8p3", PASSPHRASE, fake_tpm)

    def test_custom_pcrs_and_slot(self, fake_tpm):
        enrollment = enroll_tpm2(
            "/dev/loop8p3", PASSPHRASE, fake_tpm, wipe_slot=2, pcrs=[7, 11]
        )

        assert enrollment.pcr_argument == "7+11"
        assert enrollment.wipe_slot == 2
        assert fake_tpm.enrollments[0][1] == PASSPHRASE
