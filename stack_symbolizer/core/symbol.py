#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

from bisect import bisect_left
from typing import Iterable, List, NamedTuple, Optional


class Symbol(NamedTuple):
    name: str
    start: int
    size: int


class SymbolTable:
    """
    Symbols of one backing object, sorted by start address descending, for
    nearest-below lookups keyed by object-relative offsets.
    """

    def __init__(self, symbols: Iterable[Symbol] = ()):
        self.symbols: List[Symbol] = sorted(
            symbols, key=lambda symbol: (symbol.start, symbol.name), reverse=True
        )

        self._negated_starts = [-symbol.start for symbol in self.symbols]

    def find_symbol(self, offset: int) -> Optional[Symbol]:
        index = bisect_left(self._negated_starts, -offset)

        if index < len(self.symbols):
            return self.symbols[index]

        return None

    def __len__(self) -> int:
        return len(self.symbols)

    def __iter__(self):
        return iter(self.symbols)
