#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

"""
    Exceptions raised by the symbolization engine.

    Each one also derives from the closest built-in exception, so that
    callers which do not know about this package can still catch an
    OSError, a ValueError or a LookupError.
"""


class SymbolizerError(Exception):
    pass


class SymbolSourceError(SymbolizerError, OSError):
    """A symbol source (such as /proc/kallsyms) could not be read"""


class SymbolParseError(SymbolizerError, ValueError):
    """A record of a symbol source or memory map is malformed"""


class ElfFormatError(SymbolizerError, ValueError):
    """An ELF object lacks an expected structure"""


class ProcessNotFoundError(SymbolizerError, LookupError):
    """The process vanished, or its memory map cannot be inspected"""

    def __init__(self, pid: int, reason: str = None):
        self.pid = pid
        self.reason = reason

        message = "Process %d cannot be inspected" % pid
        if reason:
            message += " (%s)" % reason

        super().__init__(message)


class UnsupportedObjectError(SymbolizerError, NotImplementedError):
    """No symbol loader exists for this kind of backing object"""
