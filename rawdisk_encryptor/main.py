import argparse
import os
import sys
from pathlib import Path

from rawdisk_encryptor import __version__
from rawdisk_encryptor.config import settings
from rawdisk_encryptor.domain.models import AlignmentMode, BuildOptions
from rawdisk_encryptor.logging import LoggerFactory, setup_logging
from rawdisk_encryptor.services.build import build_encrypted_image
from rawdisk_encryptor.services.firstboot import config_from_env, inject_first_boot
from rawdisk_encryptor.services.verify import VERIFY_MAPPER_NAME, verify_encrypted_image
from rawdisk_encryptor.storage.exceptions import BuildInterrupted, ImageBuildError
from rawdisk_encryptor.storage.luks import CryptsetupBackend, reclaim_mapper
from rawdisk_encryptor.storage.validation import PASSPHRASE_VARIABLE, require_passphrase


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rawdisk-encryptor",
        description="Create a LUKS2-encrypted raw disk image from a 3-partition Ubuntu image",
        epilog=f"The LUKS passphrase is read from the {PASSPHRASE_VARIABLE} environment variable.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw output of every external command")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="Build an encrypted image")
    build.add_argument("-n", "--no-tpm2", action="store_true", help="Skip TPM2 enrollment")
    build.add_argument(
        "-c", "--cipher", default=settings.get_setting("luks_cipher"), help="LUKS cipher"
    )
    build.add_argument(
        "-k",
        "--key-size",
        type=int,
        default=settings.get_int("luks_key_size"),
        help="LUKS key size in bits",
    )
    build.add_argument(
        "--alignment",
        choices=[mode.value for mode in AlignmentMode],
        default=settings.get_setting("alignment"),
        help="Round partition sizes to whole sectors or whole MiB",
    )
    build.add_argument(
        "--mapper-name",
        default=settings.get_setting("mapper_name"),
        help="Device-mapper name used while populating the root",
    )
    build.add_argument("input", type=Path, help="Unencrypted source image")
    build.add_argument("output", type=Path, help="Encrypted image to create")

    verify = subparsers.add_parser(
        "verify", help="Check that the encrypted root matches the source root"
    )
    verify.add_argument("--mapper-name", default=VERIFY_MAPPER_NAME)
    verify.add_argument("input", type=Path, help="Unencrypted source image")
    verify.add_argument("output", type=Path, help="Encrypted image built from it")

    inject = subparsers.add_parser(
        "inject", help="Install the first-boot configuration service into an encrypted image"
    )
    inject.add_argument("--user", default="ec2-user", help="Node user created on first boot")
    inject.add_argument("--keyfile-name", default="root_crypt.key", help="Keyfile on /boot")
    inject.add_argument("--mapper-name", default="luks-root")
    inject.add_argument("--mount-boot", type=Path, default=Path("/mnt/boot"))
    inject.add_argument("--mount-root", type=Path, default=Path("/mnt/root"))
    inject.add_argument("image", type=Path, help="Encrypted image to modify")

    cleanup = subparsers.add_parser(
        "cleanup", help="Remove a leftover device-mapper mapping from an aborted run"
    )
    cleanup.add_argument("--mapper-name", default=settings.get_setting("mapper_name"))
    return parser


def options_from_args(args, passphrase: str) -> BuildOptions:
    return BuildOptions(
        input_path=args.input,
        output_path=args.output,
        passphrase=passphrase,
        cipher=args.cipher,
        key_size=args.key_size,
        skip_tpm2=args.no_tpm2,
        alignment=AlignmentMode.parse(args.alignment),
        mapper_name=args.mapper_name,
        block_size=settings.get_setting("dd_block_size"),
        luks_header_size=settings.get_int("luks_header_size"),
        tpm2_pcrs=tuple(settings.get_setting("tpm2_pcrs")),
        tpm2_wipe_slot=settings.get_int("tpm2_wipe_slot"),
        tpm2_timeout=float(settings.get_int("tpm2_timeout_seconds")),
        reclaim_stale_mapper=settings.get_bool("reclaim_stale_mapper", True),
        install_missing_tools=settings.get_bool("install_missing_tools", True),
    )


def run(args, backends=None) -> None:
    if args.command == "build":
        build_encrypted_image(options_from_args(args, require_passphrase()), backends)
    elif args.command == "verify":
        verify_encrypted_image(
            args.input,
            args.output,
            require_passphrase(),
            backends,
            mapper_name=args.mapper_name,
        )
    elif args.command == "inject":
        config = config_from_env(
            user_name=args.user,
            keyfile_name=args.keyfile_name,
            mapper_name=args.mapper_name,
            mount_boot=args.mount_boot,
            mount_root=args.mount_root,
        )
        # keyfile on /boot is preferred; the passphrase is only a fallback
        passphrase = os.environ.get(PASSPHRASE_VARIABLE) or None
        inject_first_boot(args.image, config, passphrase=passphrase, backends=backends)
    elif args.command == "cleanup":
        backend = backends.encryption if backends else CryptsetupBackend()
        if reclaim_mapper(backend, args.mapper_name, force=True):
            LoggerFactory.for_system().info(f"Removed mapping {args.mapper_name}")
        else:
            LoggerFactory.for_system().info(f"No mapping named {args.mapper_name}")


def main(argv=None, backends=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    try:
        run(args, backends)
    except BuildInterrupted as error:
        log.error(f"Interrupted: {error}")
        return 1
    except ImageBuildError as error:
        log.error(str(error))
        return 1
    except KeyboardInterrupt:
        log.error("Interrupted")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
