#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

import logging
from typing import Iterable, List, NamedTuple, Optional, Union

from stack_symbolizer.core.errors import SymbolizerError
from stack_symbolizer.core.kallsyms import KernelSymbol, KernelSymbolTable
from stack_symbolizer.core.symbol import Symbol
from stack_symbolizer.core.syms_cache import SymsCache

"""
    Turn the raw return addresses of a stack trace, as collected by a
    tracer (for example from a BPF stack map), into symbolized frames.

    Stack maps are fixed-size arrays of PERF_MAX_STACK_DEPTH entries, where
    unused slots are zero: the first zero address ends the trace.
"""


PERF_MAX_STACK_DEPTH = 127

UNKNOWN_SYMBOL = "Unknown"


class StackFrame(NamedTuple):
    address: int

    # KernelSymbol for kernel frames, Symbol for user frames
    symbol: Optional[Union[KernelSymbol, Symbol]] = None

    # Distance from the start of the symbol
    offset: int = 0

    # Path of the object containing the address, when known
    object_path: Optional[str] = None


def format_frame(frame: StackFrame) -> str:
    if frame.symbol is None:
        return UNKNOWN_SYMBOL

    return "%s+0x%x" % (frame.symbol.name, frame.offset)


def _trace_addresses(addresses: Iterable[int], max_depth: int) -> List[int]:
    trace = []

    for address in addresses:
        if not address or len(trace) >= max_depth:
            break

        trace.append(address)

    return trace


class StackSymbolizer:
    def __init__(
        self,
        ksyms: Optional[KernelSymbolTable] = None,
        syms_cache: Optional[SymsCache] = None,
        max_depth: int = PERF_MAX_STACK_DEPTH,
    ):
        self.ksyms = ksyms
        self.syms_cache = syms_cache
        self.max_depth = max_depth

    def kernel_stack(self, addresses: Iterable[int]) -> List[StackFrame]:
        frames = []

        for address in _trace_addresses(addresses, self.max_depth):
            symbol = self.ksyms.map_addr(address) if self.ksyms is not None else None

            if symbol is None:
                frames.append(StackFrame(address))
            else:
                frames.append(
                    StackFrame(address, symbol, address - symbol.address, symbol.module)
                )

        return frames

    def user_stack(self, pid: int, addresses: Iterable[int]) -> List[StackFrame]:
        """
        Symbolize the user-space stack of a process. When the process
        cannot be inspected (it may have exited since the trace was taken,
        or its memory map may be malformed), the frames are returned
        unresolved.
        """

        trace = _trace_addresses(addresses, self.max_depth)

        if not trace:
            return []

        syms = None

        if self.syms_cache is not None:
            try:
                syms = self.syms_cache.get_syms(pid)

            except SymbolizerError as error:
                logging.info("[i] %s" % error)

        frames = []

        for address in trace:
            if syms is None:
                frames.append(StackFrame(address))
                continue

            symbol, dso, dso_offset = syms.resolve_with_object(address)

            if symbol is None:
                frames.append(StackFrame(address, object_path=dso.path if dso else None))
            else:
                frames.append(
                    StackFrame(address, symbol, dso_offset - symbol.start, dso.path)
                )

        return frames

    def format_kernel_stack(self, addresses: Iterable[int]) -> List[str]:
        return [format_frame(frame) for frame in self.kernel_stack(addresses)]

    def format_user_stack(self, pid: int, addresses: Iterable[int]) -> List[str]:
        return [format_frame(frame) for frame in self.user_stack(pid, addresses)]
