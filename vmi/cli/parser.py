# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/cli/parser.py
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

from .. import __version__
from ..config import Config
from ..core.logger import Log, c
from ..core.utils import U
from ..formats.ovf.manifest import ALGORITHMS
from ..formats.vmdk.codec import WRITE_VARIANTS
from .help_texts import EXAMPLES, YAML_EXAMPLE


class HelpFormatter(argparse.RawDescriptionHelpFormatter, argparse.ArgumentDefaultsHelpFormatter):
    """Raw description formatting plus default values in help."""


def _build_epilog() -> str:
    return c(EXAMPLES, "cyan") + "\n" + c("Configuration:\n", "cyan", ["bold"]) + c(YAML_EXAMPLE, "cyan")


def _add_global(p: argparse.ArgumentParser) -> None:
    p.add_argument("--version", action="version", version=__version__)
    p.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML config file (repeatable; later overrides earlier). Default: $VMI_CONFIG.",
    )
    p.add_argument("--dump-config", action="store_true", help="Print the merged config and exit.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -v, -vv, -vvv")
    p.add_argument("-q", "--quiet", action="count", default=0, help="Less output: -q warnings, -qq errors")
    p.add_argument("--log-file", dest="log_file", default=None, help="Also write logs to this file.")
    p.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit logs as NDJSON.")
    p.add_argument("--work-dir", dest="work_dir", default=None, help="Directory for cloud export downloads.")


def _add_source_reading(p: argparse.ArgumentParser) -> None:
    p.add_argument("--disk-index", dest="disk_index", type=int, default=None, help="OVF disk to read (0-based).")
    p.add_argument(
        "--no-verify",
        dest="verify",
        action="store_false",
        help="Skip OVF manifest checksum verification.",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="vmi",
        description=c("vmi: convert and inspect VM disk images (raw, VMDK, OVF/OVA, AWS, GCE)", "green", ["bold"]),
        formatter_class=HelpFormatter,
        epilog=_build_epilog(),
    )
    _add_global(p)
    sub = p.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    conv = sub.add_parser("convert", help="Convert an image", formatter_class=HelpFormatter)
    conv.add_argument("--from", dest="src", required=True, help="Source path or cloud reference.")
    conv.add_argument("--to", dest="dst", required=True, help="Destination path or cloud target.")
    conv.add_argument(
        "--format",
        dest="format",
        default=None,
        help="Destination format (raw, vmdk, ovf, ova, device). Default: from the destination extension.",
    )
    conv.add_argument("--source-format", dest="source_format", default=None, help="Skip detection of the source format.")
    conv.add_argument(
        "--dest-variant",
        dest="dest_variant",
        choices=WRITE_VARIANTS,
        default=None,
        help="VMDK variant to write (default: source createType, else monolithicSparse).",
    )
    conv.add_argument(
        "--disk-format",
        dest="disk_format",
        choices=("vmdk", "raw"),
        default=None,
        help="Disk file format inside an OVF/OVA package.",
    )
    conv.add_argument(
        "--manifest-algorithm",
        dest="manifest_algorithm",
        choices=sorted(ALGORITHMS),
        default=None,
        help="OVF manifest digest (default: source manifest's, else SHA256).",
    )
    conv.add_argument("--name", dest="name", default=None, help="Image or OVF virtual system name.")
    conv.add_argument("--no-progress", dest="progress", action="store_false", help="Do not show a progress bar.")
    conv.add_argument("--json", dest="json", action="store_true", help="Print the result as JSON.")
    _add_source_reading(conv)

    ins = sub.add_parser("inspect", help="Show image metadata", formatter_class=HelpFormatter)
    ins.add_argument("source", help="Image path or cloud reference.")
    ins.add_argument("--format", dest="format", default=None, help="Skip format detection.")
    ins.add_argument("--json", dest="json", action="store_true", help="Print JSON instead of a table.")
    _add_source_reading(ins)
    return p


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """CLI flags win over config file values."""
    lg = config.logging
    if args.verbose:
        lg.verbose = args.verbose
    if args.quiet:
        lg.quiet = args.quiet
    if args.log_file:
        lg.log_file = args.log_file
    if args.json_logs:
        lg.json = True
    if args.work_dir:
        config.pipeline.work_dir = Path(args.work_dir).expanduser()
    return config


def parse_args_with_config(
    argv: Optional[Sequence[str]] = None,
) -> Tuple[argparse.Namespace, Config, logging.Logger]:
    """
    Parse the command line, load and merge config files, apply CLI
    overrides, then set up logging from the result.
    """
    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(list(argv))

    config = apply_overrides(Config.load(args.config), args)
    logger = Log.configure(config.logging)

    if args.dump_config:
        print(U.json_dump(config.to_dict()))
        raise SystemExit(0)
    return args, config, logger
