#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

import logging
from re import fullmatch, match
from typing import List

from stack_symbolizer.core.errors import SymbolSourceError
from stack_symbolizer.core.symbol import Symbol

"""
    Parser for the symbol maps written by just-in-time compilers (the JVM
    through perf-map-agent, V8 with --perf-basic-prof, LuaJIT, the CPython
    perf trampoline...) for the benefit of profilers:

        /tmp/perf-<pid>.map

    Each line describes one generated function, with hexadecimal start
    address and size, the name running to the end of the line:

        7f8b8c100000 40 java.lang.String.charAt(I)C
        0x7f8b8d100000 0x1a8 LazyCompile:*processRequest /app/server.js:45

    Addresses are absolute runtime addresses of the process.
"""


PERF_MAP_DIR = "/tmp"


def perf_map_path(pid: int, perf_map_dir: str = PERF_MAP_DIR) -> str:
    return "%s/perf-%d.map" % (perf_map_dir, pid)


def is_perf_map(path: str) -> bool:
    return bool(match(r"(?:.*/)?perf-\d+\.map$", path))


def load_perf_map(path: str) -> List[Symbol]:
    """
    Return the Symbol entries of a JIT symbol map, in file order.
    Malformed lines are skipped.
    """

    symbols: List[Symbol] = []
    skipped_lines = 0

    try:
        with open(path, "r", errors="replace") as perf_map_file:
            for line in perf_map_file:
                fields = line.strip().split(None, 2)

                if len(fields) < 3 or not all(
                    fullmatch(r"(?:0x)?[0-9a-fA-F]+", field) for field in fields[:2]
                ):
                    skipped_lines += line.strip() != ""
                    continue

                symbols.append(
                    Symbol(
                        name=fields[2],
                        start=int(fields[0], 16),
                        size=int(fields[1], 16),
                    )
                )

    except OSError as error:
        raise SymbolSourceError(
            error.errno, "Cannot read JIT symbol map: %s" % error.strerror, path
        ) from error

    if skipped_lines:
        logging.debug("[i] Skipped %d malformed lines in %s" % (skipped_lines, path))

    return symbols
