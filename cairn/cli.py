"""CAIRN CLI — Command-line interface for the CAIRN verifier.

Commands:
  cairn verify <file.cairo>    — Verify every function, print verdicts
  cairn ir <file.cairo>        — Emit specs and IR of every function (JSON)

Exit codes of `verify`: 0 all Verified, 1 some Falsified, 2 any Error
(including an unreadable or unparsable file).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from typing import List, Optional

from cairn import __version__
from cairn.annotations import build_spec
from cairn.callgraph import Composer
from cairn.config import CairnConfig, load_config
from cairn.errors import CompileError
from cairn.ir import IRBuilder
from cairn.parser import parse
from cairn.report import VerificationReport

logger = logging.getLogger(__name__)


def _read_source(path: str) -> Optional[str]:
    if not os.path.exists(path):
        print(json.dumps({"error": f"File not found: {path}"}))
        return None
    with open(path, "r") as f:
        return f.read()


def _config_for(args: argparse.Namespace) -> CairnConfig:
    start_dir = os.path.dirname(os.path.abspath(args.file))
    config = load_config(getattr(args, "config", None), start_dir=start_dir)
    return config.merged(
        timeout_ms=getattr(args, "timeout", None),
        workers=getattr(args, "workers", None),
        word_bits=getattr(args, "word_bits", None),
        format=getattr(args, "format", None),
    )


def _run_composer(composer: Composer) -> VerificationReport:
    """Run in a worker thread so Ctrl-C can cancel the solver cleanly."""
    result: List[VerificationReport] = []
    failure: List[BaseException] = []

    def target() -> None:
        try:
            result.append(composer.run())
        except Exception as e:  # re-raised in the calling thread
            failure.append(e)

    worker = threading.Thread(target=target, name="cairn-composer")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        logger.warning("interrupted, cancelling verification")
        composer.cancel()
        worker.join()
    if failure:
        raise failure[0]
    return result[0]


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify a source file and print one verdict per function."""
    source = _read_source(args.file)
    if source is None:
        return 2

    config = _config_for(args)
    logging.getLogger("cairn").setLevel(
        logging.DEBUG if args.verbose else getattr(logging, config.log_level, logging.WARNING)
    )

    try:
        program = parse(source, filename=args.file)
    except CompileError as e:
        print(e.to_json())
        return 2

    report = _run_composer(Composer(program, config))
    if config.format == "json":
        print(report.to_json())
    else:
        print(report.format_text())
    return report.exit_code


def cmd_ir(args: argparse.Namespace) -> int:
    """Emit each function's specification and IR as JSON."""
    source = _read_source(args.file)
    if source is None:
        return 2

    try:
        program = parse(source, filename=args.file)
    except CompileError as e:
        print(e.to_json())
        return 2

    builder = IRBuilder(program)
    out = []
    status = 0
    for func in program.functions:
        entry = {"name": func.name}
        try:
            entry["ir"] = builder.build(func).to_dict()
            if func.has_contract:
                entry["spec"] = build_spec(func, builder.storage).to_dict()
        except CompileError as e:
            entry["errors"] = [d.to_dict() for d in e.errors]
            status = 2
        out.append(entry)
    print(json.dumps(out, indent=2))
    return status


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="cairn",
        description="CAIRN — modular verifier for annotated storage contracts",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # verify
    p_verify = subparsers.add_parser("verify", help="Verify every function of a source file")
    p_verify.add_argument("file", help="Contract source file (.cairo)")
    p_verify.add_argument("--timeout", type=int, help="Solver timeout per function in milliseconds")
    p_verify.add_argument("--workers", type=int, help="Parallel verification processes")
    p_verify.add_argument("--word-bits", type=int, dest="word_bits",
                          help="Model felts as wrapping words of this many bits")
    p_verify.add_argument("--format", choices=["text", "json"], help="Output format")
    p_verify.add_argument("--config", help="Path to a .cairnrc file")
    p_verify.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p_verify.set_defaults(func=cmd_verify)

    # ir
    p_ir = subparsers.add_parser("ir", help="Emit specifications and IR as JSON")
    p_ir.add_argument("file", help="Contract source file (.cairo)")
    p_ir.set_defaults(func=cmd_ir)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s")
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
