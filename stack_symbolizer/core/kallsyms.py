#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

import logging
from bisect import bisect_left
from enum import Enum
from re import fullmatch
from typing import Iterable, Iterator, List, NamedTuple, Optional

from stack_symbolizer.core.errors import SymbolParseError, SymbolSourceError

"""
    This class will take the kernel's exported symbol list (/proc/kallsyms,
    or any file in the same format), and answer "which kernel function
    contains this instruction pointer?" questions for stack traces.

    Each line of the listing looks like:

        ffffffff81000000 T _stext
        ffffffffc0a1b2c0 t floppy_interrupt	[floppy]

    Only the address, the type letter and the name are used for lookups; the
    optional module column is kept for display.

    The table is sorted by address descending (ties broken by name
    descending), so that a binary search for the first entry whose address
    is lower than or equal to a query address yields the nearest preceding
    symbol, and duplicate addresses always yield the same entry.
"""


KALLSYMS_PATH = "/proc/kallsyms"


# Symbol types are the same as exposed by "man nm"


class KallsymsSymbolType(Enum):
    # Seen in actual kernels
    ABSOLUTE = "A"
    BSS = "B"
    DATA = "D"
    RODATA = "R"
    TEXT = "T"
    WEAK_OBJECT_WITH_DEFAULT = "V"
    WEAK_SYMBOL_WITH_DEFAULT = "W"

    # Seen on nm's manpage
    SMALL_DATA = "G"
    INDIRECT_FUNCTION = "I"
    DEBUGGING = "N"
    STACK_UNWIND = "P"
    COMMON = "C"
    SMALL_BSS = "S"
    UNDEFINED = "U"
    UNIQUE_GLOBAL = "u"
    WEAK_OBJECT = "v"
    WEAK_SYMBOL = "w"
    STABS_DEBUG = "-"
    UNKNOWN = "?"


class KernelSymbol(NamedTuple):
    name: str
    address: int

    symbol_type: KallsymsSymbolType = KallsymsSymbolType.UNKNOWN
    is_global: bool = False
    module: Optional[str] = None


def parse_symbol_type(type_letter: str):
    """
    Return the (KallsymsSymbolType, is_global) pair for an nm-style type
    letter: uppercase letters are global symbols, lowercase local ones,
    except for "u", "v" and "w" which are always global.
    """

    if type_letter in "uvw":
        return KallsymsSymbolType(type_letter), True

    try:
        return KallsymsSymbolType(type_letter.upper()), type_letter.isupper()

    except ValueError:
        return KallsymsSymbolType.UNKNOWN, False


class KernelSymbolTable:
    symbols: List[KernelSymbol] = None

    def __init__(self, symbols: Iterable[KernelSymbol] = ()):
        self.symbols = sorted(
            symbols, key=lambda symbol: (symbol.address, symbol.name), reverse=True
        )

        # Ascending, so that it can be bisected
        self._negated_addresses = [-symbol.address for symbol in self.symbols]

    @classmethod
    def load(cls, path: str = KALLSYMS_PATH, strict: bool = True):
        """
        Read and parse a kallsyms listing.

        With strict=True, a line with at least three fields but a
        malformed address aborts the whole load with a SymbolParseError,
        since a partially built table could mislead resolution. With
        strict=False such lines are skipped with a warning.
        """

        try:
            with open(path, "r", errors="replace") as kallsyms_file:
                table = cls.from_lines(kallsyms_file, strict)

        except OSError as error:
            raise SymbolSourceError(
                error.errno, "Cannot read kernel symbols: %s" % error.strerror, path
            ) from error

        logging.info("[+] Loaded %d kernel symbols from %s" % (len(table), path))

        if table.symbols and not any(symbol.address for symbol in table.symbols):
            logging.warning(
                "[!] WARNING: All kernel symbol addresses are null, "
                + "kernel pointers are probably hidden (kernel.kptr_restrict)"
            )

        return table

    @classmethod
    def from_lines(cls, lines: Iterable[str], strict: bool = True):
        symbols = []

        for line_number, line in enumerate(lines, 1):
            fields = line.split()

            if len(fields) < 3:
                continue

            if not fullmatch(r"[0-9a-fA-F]+", fields[0]):
                if strict:
                    raise SymbolParseError(
                        "Malformed kernel symbol address %r at line %d"
                        % (fields[0], line_number)
                    )

                logging.warning(
                    "[!] Skipping malformed kernel symbol address %r at line %d"
                    % (fields[0], line_number)
                )
                continue

            symbol_type, is_global = parse_symbol_type(fields[1][0])

            module = None
            if len(fields) > 3 and fields[3].startswith("["):
                module = fields[3].strip("[]")

            symbols.append(
                KernelSymbol(
                    name=fields[2],
                    address=int(fields[0], 16),
                    symbol_type=symbol_type,
                    is_global=is_global,
                    module=module,
                )
            )

        return cls(symbols)

    def map_addr(self, address: int) -> Optional[KernelSymbol]:
        """
        Return the symbol with the largest address not exceeding the given
        one, or None when the address is below every known symbol.
        """

        index = bisect_left(self._negated_addresses, -address)

        if index < len(self.symbols):
            return self.symbols[index]

        return None

    def get_symbol(self, name: str) -> Optional[KernelSymbol]:
        for symbol in self.symbols:
            if symbol.name == name:
                return symbol

        return None

    def __len__(self) -> int:
        return len(self.symbols)

    def __iter__(self) -> Iterator[KernelSymbol]:
        return iter(self.symbols)
