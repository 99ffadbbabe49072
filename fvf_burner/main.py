"""Command-line entry point."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from fvf_burner.__version__ import __version__
from fvf_burner.config import settings
from fvf_burner.domain.models import PipelineContext, TargetKind, TargetRequest
from fvf_burner.logging import LoggerFactory, setup_logging
from fvf_burner.pipeline.approval import Approver, ConsoleApprover
from fvf_burner.pipeline.cleanup import cleanup_image_files
from fvf_burner.pipeline.image import prepare_image_source
from fvf_burner.pipeline.runner import run_pipeline
from fvf_burner.preflight import check_required_tools
from fvf_burner.storage.exceptions import ProvisioningError

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fvf-burner",
        description="Write an OS image to a disk or file, grow a partition and regenerate filesystem UUIDs",
    )
    parser.add_argument("--image", help="Path to the uncompressed raw image (.img/.raw)")
    parser.add_argument("--archive", help="Compressed file the image came from (offered for cleanup)")
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--device", help="Block device to write to (e.g. sdb or /dev/sdb)")
    target.add_argument("--file", help="Regular file to write to (created if missing)")
    parser.add_argument("--file-size", type=int, metavar="MB", help="Size of a new target file in MB")
    parser.add_argument("--resize-partition", type=int, metavar="N", help="Partition number to expand")
    parser.add_argument(
        "--resize-end",
        metavar="MB|max",
        help="New partition end in MB, or 'max' for all available space",
    )
    parser.add_argument("--no-resize", action="store_true", help="Skip the partition resize step")
    parser.add_argument("--block-size", help="dd block size for the image copy (default from settings)")
    parser.add_argument("--cleanup", action="store_true", help="Remove the archive and image after success")
    parser.add_argument("-y", "--yes", action="store_true", help="Approve confirmation prompts")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Approve capacity overrides and forced signature wipes",
    )
    parser.add_argument("--skip-preflight", action="store_true", help="Do not check for required tools")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (includes copy progress)")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_answers(args: argparse.Namespace) -> dict[str, str]:
    """Translate command-line flags into preset answers for approval gates."""
    answers: dict[str, str] = {}
    if args.file_size is not None:
        answers["target.file_size"] = str(args.file_size)
    if args.resize_partition is not None:
        answers["resize.offer"] = "yes"
        answers["resize.partition"] = str(args.resize_partition)
    elif args.yes:
        # --yes cannot pick a partition, so it never opts into a resize
        answers["resize.offer"] = "no"
    if args.resize_end is not None:
        if args.resize_end.strip().lower() == "max":
            answers["resize.mode"] = "max"
        else:
            answers["resize.mode"] = "custom"
            answers["resize.end"] = args.resize_end
    elif args.yes and args.resize_partition is not None:
        answers["resize.mode"] = "max"
    if args.cleanup:
        answers["cleanup.archive"] = "yes"
        answers["cleanup.image"] = "yes"
    elif args.yes:
        # --yes alone never deletes the operator's files
        answers["cleanup.archive"] = "no"
        answers["cleanup.image"] = "no"
    return answers


def _parse_path(value: str) -> str:
    if not value.strip():
        raise ValueError("a path is required")
    return value.strip()


def build_request(args: argparse.Namespace, approver: Approver) -> TargetRequest:
    if args.device:
        return TargetRequest(kind=TargetKind.DEVICE, path=args.device)
    if args.file:
        return TargetRequest(kind=TargetKind.FILE, path=args.file)
    kind = approver.choose("target.kind", "Write to a device or a file", ("device", "file"))
    if kind == "file":
        return TargetRequest(
            kind=TargetKind.FILE,
            path=approver.ask("target.file", "Path of the target file", _parse_path),
        )
    return TargetRequest(kind=TargetKind.DEVICE, path="")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    if args.block_size:
        settings.override_setting("copy_block_size", args.block_size)

    approver = ConsoleApprover(build_answers(args), assume_yes=args.yes, force=args.force)
    try:
        if not args.skip_preflight:
            check_required_tools()
        image_path = args.image or approver.ask("image", "Path to the raw image", _parse_path)
        image = prepare_image_source(image_path, args.archive)
        request = build_request(args, approver)
        context = run_pipeline(
            PipelineContext(request=request, image=image),
            approver,
            skip_resize=args.no_resize,
        )
        cleanup_image_files(context.image, approver)
    except KeyboardInterrupt:
        log.warning("Interrupted by operator")
        return EXIT_INTERRUPTED
    except ProvisioningError as error:
        log.error(f"{error.step or 'setup'} failed: {error}")
        return EXIT_FAILURE
    log.success(f"Provisioning of {context.target.display_name} complete")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
