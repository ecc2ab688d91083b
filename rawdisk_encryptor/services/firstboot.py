"""First-boot configuration injection into an encrypted image.

Mounts the boot and (decrypted) root filesystems of an image produced by
``build``, resets its machine-id and installs a oneshot systemd service that
runs once on the first boot of the instance. The service:

    - sets the hostname from ``/boot/hostname``
    - installs a netplan config from ``/boot/config.yaml``
    - waits for network (bounded: 5 attempts, 5 s apart)
    - copies cloud-init overrides from ``/boot``
    - updates packages
    - creates the node user and installs ``/boot/ssh_key``
    - leaves ``/var/lib/first-boot-config.done`` as a completion marker

No password is ever defaulted. The root password is only changed (and
expired) when one is configured. Without a user password the node user is
locked and reachable through its SSH key only.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional

from rawdisk_encryptor.domain.models import LuksState, LuksVolume, partition_device_path
from rawdisk_encryptor.logging import LoggerFactory, operation_context, register_secret
from rawdisk_encryptor.services.build import BuildBackends
from rawdisk_encryptor.storage import loop
from rawdisk_encryptor.storage.cleanup import ResourceScope, interrupt_guard
from rawdisk_encryptor.storage.commands import CommandRunner, privileged
from rawdisk_encryptor.storage.exceptions import InputNotFoundError
from rawdisk_encryptor.storage.luks import EncryptedVolume
from rawdisk_encryptor.storage.mount import is_mountpoint_active, mount, unmount
from rawdisk_encryptor.storage.validation import validate_input_image

log = LoggerFactory.for_firstboot()

ROOT_PASSWORD_VARIABLE = "FIRSTBOOT_ROOT_PASSWORD"
USER_PASSWORD_VARIABLE = "FIRSTBOOT_USER_PASSWORD"

SERVICE_NAME = "first-boot-config.service"
SCRIPT_PATH = "/usr/local/bin/first-boot-config.sh"
NETPLAN_PATH = "/etc/netplan/01-netcfg.yaml"
CLOUD_INIT_CFG = "99-disable-network-config.cfg"

DEFAULT_NETPLAN = """\
network:
  version: 2
  renderer: networkd
  ethernets:
    eth0:
      dhcp4: true
      dhcp6: false
      optional: false
"""

DISABLE_NETWORK_CFG = "network: {config: disabled}\n"

SERVICE_UNIT = """\
[Unit]
Description=First Boot Configuration Service
After=network.target systemd-networkd-wait-online.service
Wants=systemd-networkd-wait-online.service
ConditionFirstBoot=yes

[Service]
Type=oneshot
ExecStart=@SCRIPT_PATH@
StandardOutput=journal+console
StandardError=journal+console
RemainAfterExit=yes
TimeoutSec=600

[Install]
WantedBy=multi-user.target
"""

FIRST_BOOT_SCRIPT = r"""#!/bin/bash
set -euo pipefail

exec > >(tee /var/log/first-boot.log) 2>&1
echo "Starting first boot configuration at $(date)"

check_network() {
    for ((i=1; i<=@NETWORK_ATTEMPTS@; i++)); do
        if ping -c 1 8.8.8.8 &>/dev/null; then
            echo "Network connectivity verified"
            return 0
        fi
        echo "Network not ready (attempt $i/@NETWORK_ATTEMPTS@), retrying in @NETWORK_DELAY@ seconds..."
        sleep @NETWORK_DELAY@
    done
    return 1
}

HOSTNAME_FILE="/boot/hostname"
if [[ -f "$HOSTNAME_FILE" ]]; then
    NEW_HOSTNAME=$(tr -d '[:space:]' < "$HOSTNAME_FILE")
    if [[ -n "$NEW_HOSTNAME" ]]; then
        echo "Setting hostname to: $NEW_HOSTNAME"
        hostnamectl set-hostname "$NEW_HOSTNAME"
        sed -i "1i 127.0.1.1\t$NEW_HOSTNAME" /etc/hosts
    fi
fi

NETPLAN_SRC="/boot/config.yaml"
NETPLAN_DEST="@NETPLAN_PATH@"
if [[ -f "$NETPLAN_SRC" ]]; then
    echo "Applying Netplan config from $NETPLAN_SRC"
    cp "$NETPLAN_SRC" "$NETPLAN_DEST"
    chmod 600 "$NETPLAN_DEST"
    netplan generate && netplan apply
fi

echo "Waiting for network..."
check_network || echo "Warning: Network connectivity check failed"

CLOUD_INIT_NET_SRC="/boot/@CLOUD_INIT_CFG@"
if [[ -f "$CLOUD_INIT_NET_SRC" ]]; then
    mkdir -p /etc/cloud/cloud.cfg.d
    cp "$CLOUD_INIT_NET_SRC" /etc/cloud/cloud.cfg.d/
    chmod 600 /etc/cloud/cloud.cfg.d/@CLOUD_INIT_CFG@
fi

echo "Updating package lists..."
apt-get update -q
echo "Upgrading installed packages..."
apt-get upgrade -y -q
apt-get autoremove -y -q

USER_NAME=@USER_NAME@
if ! id "$USER_NAME" &>/dev/null; then
    echo "Creating $USER_NAME..."
    useradd -m -s /bin/bash "$USER_NAME"
    @USER_CREDENTIALS@
    usermod -aG sudo "$USER_NAME"
    echo "$USER_NAME ALL=(ALL) NOPASSWD:ALL" > "/etc/sudoers.d/$USER_NAME"
    chmod 440 "/etc/sudoers.d/$USER_NAME"
fi

SSH_SRC="/boot/ssh_key"
if [[ -f "$SSH_SRC" ]]; then
    USER_HOME=$(getent passwd "$USER_NAME" | cut -d: -f6)
    mkdir -p "$USER_HOME/.ssh"
    cp "$SSH_SRC" "$USER_HOME/.ssh/authorized_keys"
    chmod 700 "$USER_HOME/.ssh"
    chmod 600 "$USER_HOME/.ssh/authorized_keys"
    chown -R "$USER_NAME:$USER_NAME" "$USER_HOME/.ssh"
fi

touch /var/lib/first-boot-config.done
echo "First boot configuration completed at $(date)"
"""


@dataclass
class FirstBootConfig:
    """What to inject; passwords are optional and never defaulted."""

    root_password: Optional[str] = field(default=None, repr=False)
    user_name: str = "ec2-user"
    user_password: Optional[str] = field(default=None, repr=False)
    keyfile_name: str = "root_crypt.key"
    mapper_name: str = "luks-root"
    mount_boot: Path = Path("/mnt/boot")
    mount_root: Path = Path("/mnt/root")
    network_attempts: int = 5
    network_delay: int = 5


def config_from_env(environ: Optional[Mapping[str, str]] = None, **overrides) -> FirstBootConfig:
    """Build a FirstBootConfig, taking passwords from the environment."""
    environ = os.environ if environ is None else environ
    config = FirstBootConfig(
        root_password=environ.get(ROOT_PASSWORD_VARIABLE) or None,
        user_password=environ.get(USER_PASSWORD_VARIABLE) or None,
        **overrides,
    )
    for secret in (config.root_password, config.user_password):
        if secret:
            register_secret(secret)
    return config


def render_service_unit() -> str:
    return SERVICE_UNIT.replace("@SCRIPT_PATH@", SCRIPT_PATH)


def render_first_boot_script(config: FirstBootConfig, password_hash: Optional[str] = None) -> str:
    """Render the first-boot script for ``config``.

    ``password_hash`` is a crypt(3) hash for the node user; without it the
    account is created locked.
    """
    if password_hash:
        credentials = f'usermod -p {shlex.quote(password_hash)} "$USER_NAME"'
    else:
        credentials = 'passwd -l "$USER_NAME"'
    replacements = {
        "@NETWORK_ATTEMPTS@": str(int(config.network_attempts)),
        "@NETWORK_DELAY@": str(int(config.network_delay)),
        "@NETPLAN_PATH@": NETPLAN_PATH,
        "@CLOUD_INIT_CFG@": CLOUD_INIT_CFG,
        "@USER_NAME@": shlex.quote(config.user_name),
        "@USER_CREDENTIALS@": credentials,
    }
    script = FIRST_BOOT_SCRIPT
    for token, value in replacements.items():
        script = script.replace(token, value)
    return script


def hash_password(password: str, *, runner: CommandRunner) -> str:
    """SHA-512 crypt hash via ``openssl passwd -6``; the password goes on stdin."""
    result = runner(["openssl", "passwd", "-6", "-stdin"], input_text=f"{password}\n", log_output=False)
    return result.stdout.strip()


def file_exists(path, *, runner: CommandRunner) -> bool:
    return runner(privileged(["test", "-f", str(path)]), check=False).returncode == 0


def write_file(path, content: str, *, mode: str = "644", runner: CommandRunner) -> None:
    """Write ``content`` to a root-owned ``path`` through ``tee``."""
    runner(privileged(["tee", str(path)]), input_text=content, log_output=False)
    runner(privileged(["chmod", mode, str(path)]))
    log.debug(f"Wrote {path}")


def inject_first_boot(
    image_path,
    config: FirstBootConfig,
    *,
    passphrase: Optional[str] = None,
    backends: Optional[BuildBackends] = None,
    is_mounted: Callable[[str], bool] = is_mountpoint_active,
) -> None:
    """Install the first-boot service into the encrypted image at ``image_path``.

    The root volume is unlocked with the keyfile stored on the boot partition
    when present, otherwise with ``passphrase``.

    Raises:
        InputNotFoundError: Image missing, or neither keyfile nor passphrase
        CommandError: Any external tool failed
    """
    backends = backends or BuildBackends()
    runner = backends.runner
    if passphrase:
        register_secret(passphrase)
    validate_input_image(image_path)
    boot_dir = Path(config.mount_boot)
    root_dir = Path(config.mount_root)

    with operation_context("inject", image=str(image_path)) as op_log, interrupt_guard(), ResourceScope(
        op_log
    ) as scope:
        loop_dev = loop.attach(image_path, partscan=True, runner=runner)
        scope.register(f"detach loop {loop_dev}", lambda: loop.detach(loop_dev, runner=runner))
        efi_part, boot_part, root_part = (partition_device_path(loop_dev, n) for n in (1, 2, 3))
        loop.wait_for_partitions([efi_part, boot_part, root_part], exists=backends.exists)

        def mount_scoped(device: str, mountpoint: Path, fstype: Optional[str] = None) -> None:
            mount(device, mountpoint, fstype=fstype, runner=runner)
            scope.register(
                f"unmount {mountpoint}",
                lambda: unmount(mountpoint, runner=runner, is_active=is_mounted),
            )

        log.info("Mounting /boot partition...")
        mount_scoped(boot_part, boot_dir, "ext4")

        keyfile = boot_dir / config.keyfile_name
        key_file: Optional[str] = None
        if file_exists(keyfile, runner=runner):
            key_file = str(keyfile)
        elif not passphrase:
            raise InputNotFoundError(keyfile)
        else:
            log.info(f"Keyfile {keyfile} not found, unlocking with passphrase")

        log.info("Unlocking LUKS root partition...")
        volume = EncryptedVolume(
            LuksVolume(device=root_part, mapper_name=config.mapper_name, state=LuksState.CLOSED),
            backends.encryption,
        )
        scope.register(f"close mapping {config.mapper_name}", volume.release)
        volume.open(None if key_file else passphrase, key_file=key_file)

        log.info("Mounting decrypted root and /boot, /boot/efi inside it...")
        mount_scoped(volume.volume.mapper_path, root_dir)
        mount_scoped(boot_part, root_dir / "boot", "ext4")
        mount_scoped(efi_part, root_dir / "boot" / "efi")

        log.info("Regenerating machine-id...")
        machine_id = root_dir / "etc" / "machine-id"
        runner(privileged(["rm", "-f", str(machine_id)]))
        runner(privileged(["touch", str(machine_id)]))

        if config.root_password:
            log.info("Changing root password (expires on first login)...")
            runner(
                privileged(["chroot", str(root_dir), "chpasswd"]),
                input_text=f"root:{config.root_password}\n",
                log_output=False,
            )
            runner(privileged(["chroot", str(root_dir), "passwd", "-e", "root"]))
        else:
            log.info("No root password configured, leaving root account unchanged")

        for directory in ("etc/netplan", "etc/cloud/cloud.cfg.d", "usr/local/bin", "etc/systemd/system"):
            runner(privileged(["mkdir", "-p", str(root_dir / directory)]))

        log.info("Creating default Netplan config...")
        write_file(root_dir / NETPLAN_PATH.lstrip("/"), DEFAULT_NETPLAN, mode="600", runner=runner)

        log.info("Writing systemd service...")
        write_file(
            root_dir / "etc" / "systemd" / "system" / SERVICE_NAME,
            render_service_unit(),
            runner=runner,
        )

        password_hash = None
        if config.user_password:
            password_hash = hash_password(config.user_password, runner=runner)
            register_secret(password_hash)
        else:
            log.warning(f"No password for {config.user_name}; the account will be SSH-key only")
        log.info("Writing first-boot-config.sh...")
        write_file(
            root_dir / SCRIPT_PATH.lstrip("/"),
            render_first_boot_script(config, password_hash),
            mode="755",
            runner=runner,
        )

        runner(privileged(["chroot", str(root_dir), "systemctl", "enable", SERVICE_NAME]))

        cloud_cfg = boot_dir / CLOUD_INIT_CFG
        if not file_exists(cloud_cfg, runner=runner):
            write_file(cloud_cfg, DISABLE_NETWORK_CFG, runner=runner)

        op_log.info(
            f"Injection complete; first boot will configure hostname, network, "
            f"packages and user {config.user_name}"
        )
