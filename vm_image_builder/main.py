import argparse
import sys
from pathlib import Path

from vm_image_builder.__version__ import __version__
from vm_image_builder.build.pipeline import Pipeline
from vm_image_builder.config.settings import load_build_config
from vm_image_builder.exceptions import BuildError, BuildInterrupted
from vm_image_builder.logging import LoggerFactory, setup_logging


EXIT_INTERRUPTED = 130


def build_parser():
    parser = argparse.ArgumentParser(
        prog="vm-image-builder",
        description="Build a bootable VM disk image from a minimal Debian bootstrap",
    )
    parser.add_argument("-c", "--config", type=Path, help="JSON build configuration")
    parser.add_argument("--size", help="Image size, e.g. 2G")
    parser.add_argument("-o", "--output", type=Path, help="Raw image path")
    parser.add_argument("--export", type=Path, help="Converted image path")
    parser.add_argument("--format", dest="export_format", help="Export format, e.g. qcow2")
    parser.add_argument("--release", help="Distribution release, e.g. bookworm")
    parser.add_argument("--mirror", help="Package mirror URL")
    parser.add_argument("--hostname", help="Hostname set on first boot")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--no-log-files", action="store_true", help="Only log to stderr")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def overrides_from_args(args):
    image = {}
    if args.size:
        image["size"] = args.size
    if args.output:
        image["raw_path"] = str(args.output)
    if args.export:
        image["export_path"] = str(args.export)
    if args.export_format:
        image["export_format"] = args.export_format

    overrides = {}
    if image:
        overrides["image"] = image
    if args.release:
        overrides["release"] = args.release
    if args.mirror:
        overrides["mirror"] = args.mirror
    if args.hostname:
        overrides["identity"] = {"hostname": args.hostname}
    return overrides


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        debug=args.debug,
        trace=args.trace,
        log_dir=args.log_dir,
        file_logging=not args.no_log_files,
    )
    log = LoggerFactory.for_system()

    try:
        config = load_build_config(args.config, overrides_from_args(args))
        result = Pipeline(config).run()
    except KeyboardInterrupt:
        log.error("Build interrupted")
        return EXIT_INTERRUPTED
    except BuildInterrupted as error:
        log.error(f"{error} (stage: {error.stage or '-'})")
        return error.exit_code
    except BuildError as error:
        log.error(f"Build failed at stage {error.stage or '-'}: {error.kind}: {error}")
        return error.exit_code

    log.info(f"Raw image: {result.raw_path}")
    log.info(f"Exported image: {result.export_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
