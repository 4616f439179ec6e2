#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-
import logging
from argparse import ArgumentParser
from sys import stdout

from stack_symbolizer.core.errors import SymbolizerError
from stack_symbolizer.core.kallsyms import KALLSYMS_PATH, KernelSymbolTable
from stack_symbolizer.core.perf_map import PERF_MAP_DIR
from stack_symbolizer.core.proc_maps import PROC_ROOT, ProcessImageMap
from stack_symbolizer.core.stack import (
    PERF_MAX_STACK_DEPTH,
    StackSymbolizer,
    format_frame,
)
from stack_symbolizer.core.syms_cache import SymsCache
from stack_symbolizer.utils.pretty_print import (
    pretty_print_header,
    pretty_print_records,
    pretty_print_table,
)


def hex_number(string):
    return int(string.lower().replace("0x", ""), 16)


def build_argument_parser():
    args = ArgumentParser(
        description="Resolve kernel or user-space return addresses, as found "
        + "in stack traces, into function names and offsets, using the kernel's "
        + "exported symbols or the memory map and ELF objects of a process"
    )

    args.add_argument(
        "addresses",
        help="Hexadecimal addresses to resolve, innermost frame first (a null "
        + "address ends the trace)",
        nargs="*",
        type=hex_number,
        metavar="HEX_NUMBER",
    )

    args.add_argument(
        "-p",
        "--pid",
        help="Resolve the addresses in the address space of this process "
        + "(rather than against the kernel symbols)",
        type=int,
    )

    args.add_argument(
        "--symbol",
        help="Print the address of this kernel symbol",
        metavar="NAME",
    )

    args.add_argument(
        "--show-maps",
        help="Print the executable, file-backed mappings of the process",
        action="store_true",
    )

    args.add_argument(
        "--kallsyms",
        help="Path to the kernel symbol listing (default: %s)" % KALLSYMS_PATH,
        default=KALLSYMS_PATH,
    )

    args.add_argument(
        "--proc-root",
        help="Path to the proc filesystem (default: %s)" % PROC_ROOT,
        default=PROC_ROOT,
    )

    args.add_argument(
        "--perf-map-dir",
        help="Directory holding the JIT symbol maps (perf-<pid>.map) "
        + "(default: %s)" % PERF_MAP_DIR,
        default=PERF_MAP_DIR,
    )

    args.add_argument(
        "--lenient",
        help="Skip kernel symbols with a malformed address rather than failing",
        action="store_true",
    )

    args.add_argument(
        "--track-start-time",
        help="Check the start time of the process, so that a reused process "
        + "id is not resolved with stale symbols",
        action="store_true",
    )

    args.add_argument(
        "--max-depth",
        help="Maximum number of frames to resolve (default: %d)"
        % PERF_MAX_STACK_DEPTH,
        type=int,
        default=PERF_MAX_STACK_DEPTH,
    )

    args.add_argument(
        "-v", "--verbose", help="Print debugging messages", action="store_true"
    )

    return args


def print_frames(frames):
    rows = [["Address", "Symbol", "Offset", "Object"]]

    for frame in frames:
        rows.append(
            [
                "0x%016x" % frame.address,
                format_frame(frame),
                "0x%x" % frame.offset if frame.symbol else "N/A",
                frame.object_path or "N/A",
            ]
        )

    pretty_print_table(rows)


def run(args):
    if args.show_maps:
        if args.pid is None:
            exit("[!] Please specify the process to inspect with --pid")

        pretty_print_header("Executable mappings of process %d" % args.pid)

        regions = ProcessImageMap.parse(args.pid, args.proc_root)

        if regions:
            pretty_print_records(regions)
        else:
            logging.info("[i] No executable file-backed mapping")

    ksyms = None

    if args.symbol or (args.addresses and args.pid is None):
        ksyms = KernelSymbolTable.load(args.kallsyms, strict=not args.lenient)

    if args.symbol:
        symbol = ksyms.get_symbol(args.symbol)

        if symbol is None:
            exit("[!] No kernel symbol named %r" % args.symbol)

        pretty_print_records([symbol])

    if args.addresses:
        symbolizer = StackSymbolizer(ksyms, max_depth=args.max_depth)

        if args.pid is None:
            pretty_print_header("Kernel stack")

            print_frames(symbolizer.kernel_stack(args.addresses))

        else:
            symbolizer.syms_cache = SymsCache(
                proc_root=args.proc_root,
                perf_map_dir=args.perf_map_dir,
                track_start_time=args.track_start_time,
            )

            pretty_print_header("User stack of process %d" % args.pid)

            print_frames(symbolizer.user_stack(args.pid, args.addresses))


def main(argv=None):
    args = build_argument_parser().parse_args(argv)

    logging.basicConfig(
        stream=stdout,
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )

    if not (args.addresses or args.symbol or args.show_maps):
        exit("[!] Nothing to do: please provide addresses, --symbol or --show-maps")

    try:
        run(args)

    except SymbolizerError as error:
        exit("[!] %s" % error)


if __name__ == "__main__":
    main()
