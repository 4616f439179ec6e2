#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

import logging
from enum import IntEnum
from io import BytesIO
from lzma import LZMADecompressor, LZMAError
from os.path import exists
from typing import BinaryIO, List, NamedTuple, Optional, Tuple

from stack_symbolizer.core.errors import (
    ElfFormatError,
    SymbolizerError,
    SymbolSourceError,
    UnsupportedObjectError,
)
from stack_symbolizer.core.perf_map import is_perf_map, load_perf_map
from stack_symbolizer.core.proc_maps import MappedRegion, is_vdso
from stack_symbolizer.core.symbol import Symbol, SymbolTable
from stack_symbolizer.core.vdso_symbols import (
    VDSO_IMAGE_DIR,
    VDSO_SYMBOLS,
    find_vdso_image,
)
from stack_symbolizer.utils.elf import (
    E_TYPE,
    SPECIAL_SECTION_INDEX,
    ST_INFO_TYPE,
    ElfDynsym,
    ElfFile,
    ElfSymtab,
)

"""
    A Dso ("dynamic shared object") stands for one object backing one or
    more executable mappings of a process: the main executable, a shared
    library, the vDSO, or a JIT compiler's symbol map.

    It is built in two phases:

    - Metadata only, while the memory map of the process is parsed: the
      mapped ranges, the kind of object, and for position-independent
      objects the link-time address and file offset of ".text".
    - Symbols, loaded by an explicit ensure_loaded() call the first time an
      address falls into the object.

    Position-independent code is mapped at an arbitrary base, so a runtime
    address is first turned into a file offset using the mapping, then into
    a link-time address using ".text":

        offset = (address - range.start) + range.file_offset
        offset += text_virtual_addr - text_file_offset

    For non-PIE executables, runtime addresses already are link-time
    addresses. JIT maps hold runtime addresses too.
"""


class DsoKind(IntEnum):
    EXECUTABLE = 0
    POSITION_INDEPENDENT = 1
    JIT_MAP = 2
    VDSO = 3
    UNKNOWN = 4


class LoadRange(NamedTuple):
    start: int
    end: int
    file_offset: int


FUNCTION_SYMBOL_TYPES = (ST_INFO_TYPE.STT_FUNC, ST_INFO_TYPE.STT_GNU_IFUNC)


def _function_symbols(symtab: ElfSymtab) -> List[Symbol]:
    symbols = []

    for symbol in symtab.symbol_table:
        if symbol.st_info_type not in FUNCTION_SYMBOL_TYPES:
            continue

        if (
            symbol.st_shndx == SPECIAL_SECTION_INDEX.SHN_UNDEF
            or not symbol.st_value
            or not symbol.symbol_name
        ):
            continue

        symbols.append(
            Symbol(name=symbol.symbol_name, start=symbol.st_value, size=symbol.st_size)
        )

    return symbols


def _static_symtab(elf_file: ElfFile) -> Optional[ElfSymtab]:
    return next(
        (
            section
            for section in elf_file.sections
            if isinstance(section, ElfSymtab) and not isinstance(section, ElfDynsym)
        ),
        None,
    )


def _minidebuginfo_symbols(elf_file: ElfFile, data: BinaryIO) -> List[Symbol]:
    """
    Symbols from ".gnu_debugdata" (MiniDebugInfo): an XZ-compressed ELF
    object holding the ".symtab" that was stripped from the main one.
    """

    debugdata = elf_file.get_section_by_name(".gnu_debugdata")

    if debugdata is None:
        return []

    try:
        embedded = LZMADecompressor().decompress(debugdata.read_contents(data))

    except LZMAError as error:
        raise ElfFormatError("Corrupted .gnu_debugdata section: %s" % error) from error

    embedded_symtab = _static_symtab(ElfFile.from_bytes(BytesIO(embedded)))

    return _function_symbols(embedded_symtab) if embedded_symtab else []


def load_elf_symbols(path: str) -> List[Symbol]:
    """
    Return the function symbols of an ELF object, from ".symtab", else
    from MiniDebugInfo, else from ".dynsym" (the only table left in
    stripped shared objects).
    """

    try:
        with open(path, "rb") as elf_fd:
            elf_file = ElfFile.from_bytes(elf_fd)

            symtab = _static_symtab(elf_file)
            symbols = _function_symbols(symtab) if symtab else []

            if not symbols:
                symbols = _minidebuginfo_symbols(elf_file, elf_fd)

    except OSError as error:
        raise SymbolSourceError(
            error.errno, "Cannot read ELF object: %s" % error.strerror, path
        ) from error

    if not symbols:
        dynsym = next(
            (section for section in elf_file.sections if isinstance(section, ElfDynsym)),
            None,
        )

        if dynsym:
            symbols = _function_symbols(dynsym)

    return symbols


def load_text_section_info(elf_file: ElfFile, path: str) -> Tuple[int, int]:
    """
    Return the (link-time virtual address, file offset) pair of ".text".
    """

    text = elf_file.get_section_by_name(".text")

    if text is None:
        raise ElfFormatError("No .text section in %s" % path)

    return text.section_header.sh_addr, text.section_header.sh_offset


def classify_elf(elf_file: ElfFile) -> DsoKind:
    if elf_file.elf_type == E_TYPE.ET_EXEC:
        return DsoKind.EXECUTABLE

    if elf_file.elf_type == E_TYPE.ET_DYN:
        return DsoKind.POSITION_INDEPENDENT

    return DsoKind.UNKNOWN


class Dso:
    path: str = None
    open_path: str = None

    ranges: List[LoadRange] = None

    kind: DsoKind = DsoKind.UNKNOWN

    # Position-independent objects' ".text" link-time address and file offset
    text_virtual_addr: int = 0
    text_file_offset: int = 0

    # Filled by ensure_loaded()
    symbol_table: Optional[SymbolTable] = None
    load_error: Optional[SymbolizerError] = None

    def __init__(
        self,
        path: str,
        root_prefix: str = None,
        vdso_image_dir: str = VDSO_IMAGE_DIR,
        map_file: str = None,
    ):
        self.path = path
        self.ranges = []
        self.vdso_image_dir = vdso_image_dir
        self.vdso_image: Optional[str] = None

        # Objects mapped by a process living in another mount namespace
        # are reachable through /proc/<pid>/root
        self.open_path = path
        if root_prefix and path.startswith("/") and exists(root_prefix + path):
            self.open_path = root_prefix + path

        # A deleted (maybe since replaced) file stays reachable as mapped
        # through /proc/<pid>/map_files, when we are allowed to read it
        if map_file and exists(map_file):
            self.open_path = map_file

    def add_range(self, region: MappedRegion):
        self.ranges.append(
            LoadRange(
                start=region.start_addr,
                end=region.end_addr,
                file_offset=region.file_offset,
            )
        )

    def classify(self) -> DsoKind:
        """
        Determine the kind of object, and for position-independent objects
        the location of ".text". Unreadable objects are UNKNOWN, while an
        ELF object without ".text" raises an ElfFormatError.
        """

        try:
            elf_file = ElfFile.from_path(self.open_path, read_contents=False)

        except (OSError, ElfFormatError) as error:
            logging.debug("[i] %s is not a readable ELF object: %s" % (self.path, error))

            elf_file = None

        if elf_file is not None:
            self.kind = classify_elf(elf_file)

            if self.kind == DsoKind.POSITION_INDEPENDENT:
                self.text_virtual_addr, self.text_file_offset = load_text_section_info(
                    elf_file, self.path
                )

        elif is_vdso(self.path):
            self.kind = DsoKind.VDSO

            self.vdso_image = find_vdso_image(image_dir=self.vdso_image_dir)

            if self.vdso_image:
                try:
                    (
                        self.text_virtual_addr,
                        self.text_file_offset,
                    ) = load_text_section_info(
                        ElfFile.from_path(self.vdso_image, read_contents=False),
                        self.vdso_image,
                    )

                except (OSError, ElfFormatError) as error:
                    logging.warning(
                        "[!] Ignoring vDSO image %s: %s" % (self.vdso_image, error)
                    )

                    self.vdso_image = None

        elif is_perf_map(self.path):
            self.kind = DsoKind.JIT_MAP

        else:
            self.kind = DsoKind.UNKNOWN

        return self.kind

    def find_range(self, address: int) -> Optional[LoadRange]:
        for load_range in self.ranges:
            if load_range.start <= address < load_range.end:
                return load_range

        return None

    def file_relative_offset(self, address: int, load_range: LoadRange) -> int:
        if self.kind in (DsoKind.POSITION_INDEPENDENT, DsoKind.VDSO):
            offset = address - load_range.start + load_range.file_offset
            offset += self.text_virtual_addr - self.text_file_offset

            return offset

        return address

    def load_symbol_table(self) -> SymbolTable:
        if self.kind in (DsoKind.EXECUTABLE, DsoKind.POSITION_INDEPENDENT):
            symbols = load_elf_symbols(self.open_path)

        elif self.kind == DsoKind.JIT_MAP:
            symbols = load_perf_map(self.open_path)

        elif self.kind == DsoKind.VDSO:
            symbols = (
                load_elf_symbols(self.vdso_image) if self.vdso_image else VDSO_SYMBOLS
            )

        else:
            raise UnsupportedObjectError(
                "No symbol loader for %s (%s)" % (self.path, self.kind.name)
            )

        return SymbolTable(symbols)

    @property
    def is_loaded(self) -> bool:
        return self.symbol_table is not None

    def ensure_loaded(self) -> bool:
        """
        Load the symbol table if this was not attempted yet. Return whether
        symbols are available; a failure is remembered in load_error and
        not retried.
        """

        if self.symbol_table is not None:
            return True

        if self.load_error is not None:
            return False

        try:
            self.symbol_table = self.load_symbol_table()

        except SymbolizerError as error:
            self.load_error = error

            if isinstance(error, UnsupportedObjectError):
                logging.debug("[i] %s" % error)
            else:
                logging.warning("[!] Cannot load symbols of %s: %s" % (self.path, error))

            return False

        logging.debug(
            "[+] Loaded %d symbols from %s" % (len(self.symbol_table), self.open_path)
        )

        return True

    def find_symbol(self, offset: int) -> Optional[Symbol]:
        if self.symbol_table is None:
            return None

        return self.symbol_table.find_symbol(offset)

    def __repr__(self):
        return "<Dso %s %s, %d ranges>" % (self.path, self.kind.name, len(self.ranges))
