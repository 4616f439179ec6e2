#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

import logging
from re import fullmatch
from typing import Iterable, List, NamedTuple

from stack_symbolizer.core.errors import ProcessNotFoundError, SymbolParseError

"""
    Parse the memory map of a process (/proc/<pid>/maps), keeping only the
    executable, file-backed regions, which are the only ones that can be
    symbolized. Each line looks like:

        55d4a3e00000-55d4a3e21000 r-xp 00002000 fd:01 1835145  /usr/bin/bash

    i.e. <start>-<end> <perms> <file offset> <dev major>:<dev minor> <inode> [path]

    The path may contain spaces, and may be suffixed with " (deleted)" when
    the backing file was unlinked after being mapped.
"""


PROC_ROOT = "/proc"

VDSO_PATH = "[vdso]"

DELETED_SUFFIX = " (deleted)"

# Mappings whose path starts with one of these are not backed by a file
# that could hold symbols

NON_FILE_BACKED_PREFIXES = (
    "//anon",
    "/dev/zero",
    "/anon_hugepage",
    "[stack",
    "/SYSV",
    "[heap]",
    "[vsyscall]",
)


class MappedRegion(NamedTuple):
    start_addr: int
    end_addr: int
    file_offset: int
    dev_major: int
    dev_minor: int
    inode: int
    backing_path: str

    deleted: bool = False


def is_file_backed(path: str) -> bool:
    if not path:
        return False

    return not path.startswith(NON_FILE_BACKED_PREFIXES)


def is_vdso(path: str) -> bool:
    return path == VDSO_PATH


def _parse_hex(field: str, line_number: int) -> int:
    if not fullmatch(r"[0-9a-fA-F]+", field):
        raise SymbolParseError(
            "Malformed hexadecimal field %r at line %d of a memory map"
            % (field, line_number)
        )

    return int(field, 16)


class ProcessImageMap:
    @staticmethod
    def parse(pid: int, proc_root: str = PROC_ROOT) -> List[MappedRegion]:
        """
        Read /proc/<pid>/maps and return its executable, file-backed
        regions, up to the [vdso] mapping.

        Raises ProcessNotFoundError when the map cannot be read (the
        process exited, or we lack the permission to inspect it).
        """

        maps_path = "%s/%d/maps" % (proc_root, pid)

        try:
            with open(maps_path, "r", errors="replace") as maps_file:
                lines = maps_file.readlines()

        except OSError as error:
            raise ProcessNotFoundError(pid, error.strerror) from error

        regions = ProcessImageMap.parse_lines(lines)

        logging.debug(
            "[i] %d executable file-backed regions in %s" % (len(regions), maps_path)
        )

        return regions

    @staticmethod
    def parse_lines(lines: Iterable[str]) -> List[MappedRegion]:
        regions = []

        for line_number, line in enumerate(lines, 1):
            line = line.strip()

            if not line:
                continue

            fields = line.split(None, 5)

            if len(fields) < 5:
                raise SymbolParseError(
                    "Truncated memory map record at line %d: %r" % (line_number, line)
                )

            address_range, permissions, file_offset, device, inode = fields[:5]
            path = fields[5].strip() if len(fields) > 5 else ""

            start_addr, _, end_addr = address_range.partition("-")
            dev_major, _, dev_minor = device.partition(":")

            if not fullmatch(r"\d+", inode):
                raise SymbolParseError(
                    "Malformed inode %r at line %d of a memory map" % (inode, line_number)
                )

            if len(permissions) < 3 or permissions[2] != "x":
                continue

            if not is_file_backed(path):
                continue

            # Nothing that follows the vDSO is relevant for symbolization
            if is_vdso(path):
                break

            deleted = path.endswith(DELETED_SUFFIX)
            if deleted:
                path = path[: -len(DELETED_SUFFIX)]

            regions.append(
                MappedRegion(
                    start_addr=_parse_hex(start_addr, line_number),
                    end_addr=_parse_hex(end_addr, line_number),
                    file_offset=_parse_hex(file_offset, line_number),
                    dev_major=_parse_hex(dev_major, line_number),
                    dev_minor=_parse_hex(dev_minor, line_number),
                    inode=int(inode),
                    backing_path=path,
                    deleted=deleted,
                )
            )

        return regions
