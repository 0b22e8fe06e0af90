"""Command line entry point for the BSDIFF40 patcher.

Usage:
    python main.py apply old.bin new.bin update.patch [--fast] [--sha256 HEX]
    python main.py info update.patch
"""

import argparse
import json
import os
import sys
import tomllib

import bspatch

DEFAULTS = {
    "fast": False,
    "ext_len": 0,
    "zero_comment": False,
    "debug": False,
}

_BOOL_KEYS = ("fast", "zero_comment", "debug")


def load_config(config_path: str):
    """Load patch options from JSON, YAML or TOML based on extension."""
    try:
        with open(config_path, "r") as f:
            text = f.read()
    except OSError as exc:
        raise RuntimeError("Config file not found: {}".format(config_path)) from exc
    _, ext = os.path.splitext(config_path)
    ext = ext.lower()
    if ext in (".yaml", ".yml"):
        import yaml
        cfg = yaml.safe_load(text) or {}
    elif ext == ".toml":
        cfg = tomllib.loads(text)
    else:
        cfg = json.loads(text)
    if not isinstance(cfg, dict):
        raise ValueError("{} must contain a mapping".format(os.path.basename(config_path)))

    out = dict(DEFAULTS)
    for key in _BOOL_KEYS:
        if key in cfg:
            if not isinstance(cfg[key], bool):
                raise ValueError("'{}' must be true or false".format(key))
            out[key] = cfg[key]
    if "ext_len" in cfg:
        ext_len = cfg["ext_len"]
        if isinstance(ext_len, bool) or not isinstance(ext_len, int) or ext_len < 0:
            raise ValueError("'ext_len' must be a non-negative integer")
        out["ext_len"] = ext_len
    return out


def _non_negative_int(text):
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return value


def _resolve_options(args):
    opts = load_config(args.config) if args.config else dict(DEFAULTS)
    if args.fast:
        opts["fast"] = True
    if args.zero_comment:
        opts["zero_comment"] = True
    if args.debug:
        opts["debug"] = True
    if args.ext_len is not None:
        opts["ext_len"] = args.ext_len
    return opts


def cmd_apply(args):
    opts = _resolve_options(args)
    try:
        code = bspatch.apply_patch(
            args.old,
            args.new,
            args.patch,
            ext_len=opts["ext_len"],
            zero_comment=opts["zero_comment"],
            fast=opts["fast"],
            expected_hash=args.sha256,
            log=True,
            debug=opts["debug"],
        )
    except bspatch.PatchError as exc:
        print("Patch failed ({}): {}".format(exc.reason, exc), file=sys.stderr)
        return 1
    except OSError as exc:
        print("Patch failed (I/O error): {}".format(exc), file=sys.stderr)
        return 1
    if code != bspatch.RESULT_SUCCESS:
        names = {
            bspatch.RESULT_OLD_FILE_ERR: "old file error",
            bspatch.RESULT_NEW_FILE_ERR: "new file error",
            bspatch.RESULT_DIFF_FILE_ERR: "patch file error",
        }
        print("Patch failed: {}".format(names.get(code, code)), file=sys.stderr)
        return code
    return 0


def cmd_info(args):
    try:
        with open(args.patch, "rb") as f:
            data = f.read()
    except OSError as exc:
        print("Cannot read patch: {}".format(exc), file=sys.stderr)
        return 1
    try:
        header = bspatch.read_header(data)
    except bspatch.FormatError as exc:
        print("Not a BSDIFF40 patch: {}".format(exc), file=sys.stderr)
        return 1
    print("Patch:        {}".format(args.patch))
    print("Patch size:   {:,} bytes".format(len(data)))
    print("Control len:  {:,} bytes".format(header.ctrl_len))
    print("Diff len:     {:,} bytes".format(header.diff_len))
    print("Extra len:    {:,} bytes".format(max(len(data) - header.extra_offset, 0)))
    print("New size:     {:,} bytes".format(header.new_size))
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Apply BSDIFF40 binary patches")
    sub = parser.add_subparsers(dest="command", required=True)

    ap = sub.add_parser("apply", help="Rebuild a new file from old file and patch")
    ap.add_argument("old", help="Old (reference) file")
    ap.add_argument("new", help="Output file")
    ap.add_argument("patch", help="BSDIFF40 patch file")
    ap.add_argument("--fast", action="store_true",
                    help="Hold everything in memory instead of streaming")
    ap.add_argument("--ext-len", type=_non_negative_int, default=None,
                    help="Bytes after the comment length field in the old file")
    ap.add_argument("--zero-comment", action="store_true",
                    help="Zero the old file's trailing comment length field")
    ap.add_argument("--sha256", default=None, help="Expected SHA-256 of the output")
    ap.add_argument("--config", default=None, help="JSON, YAML or TOML options file")
    ap.add_argument("--debug", action="store_true", help="Print every control triple")
    ap.set_defaults(func=cmd_apply)

    inf = sub.add_parser("info", help="Show patch header")
    inf.add_argument("patch", help="BSDIFF40 patch file")
    inf.set_defaults(func=cmd_info)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
