#!/usr/bin/env python3
#-*- encoding: Utf-8 -*-
from ctypes import BigEndianStructure, LittleEndianStructure, sizeof
from ctypes import c_uint8, c_uint16, c_int32, c_uint32, c_int64, c_uint64, c_char
from io import BytesIO, SEEK_END
from enum import IntEnum
from typing import BinaryIO, List, Optional
import zlib

from stack_symbolizer.core.errors import ElfFormatError

"""
    This file contains a read-only wrapper for parsing ELF files, as needed
    to classify the objects mapped by a process and extract their symbols.

    o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o
    o                                                                         o
    o The ELF specification is here => https://uclibc.org/docs/elf-64-gen.pdf o
    o                                                                         o
    o ftp://www.linux-mips.org/pub/linux/mips/doc/ABI/elf64-2.4.pdf           o
    o                                                                         o
    o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o o

    Each exposed object may have the following methods, which are called in
        this order when all present:

    - from_bytes (classmethod, taking at least a seekable binary stream): return
        an instance of a subclass of the concerned object while automatically
        inferring parameters such as endianness, bit size or section type

    - __init__ (taking two booleans): initialize the structure with the knowledge
        of whether the structure should be 64-bit or 32-bit, and whether it should
        be big- or little-endian

    - unserialize (taking a stream): unserialize the structure at the current offset
    - _unserialize_contents (taking a stream): unserialize the contents of a section
        (if the concerned object is a section), while unserialize() will unserialize
        the section header
    - post_unserialize (taking no arguments): called once all sections have been
        unserialized, complete fields of the concerned object based on the contents
        of other sections (a symbol table entry with string table entry...)

    Section contents are only read for string and symbol tables, and only when
    the ElfFile was asked to (read_contents=True). Other section contents can
    be fetched afterwards with ElfSection.read_contents(), as long as the
    stream is still open.
"""



Elf32_Addr = c_uint32
Elf32_Half = c_uint16
Elf32_Off = c_uint32
Elf32_Sword = c_int32
Elf32_Word = c_uint32

Elf64_Addr = c_uint64
Elf64_Half = c_uint16
Elf64_Off = c_uint64
Elf64_Sword = c_int32
Elf64_Sxword = c_int64
Elf64_Word = c_uint32
Elf64_Lword = c_uint64
Elf64_Xword = c_uint64


# (structure class, is_big_endian, is_64_bits) => generated ctypes class

_generated_structure_classes = {}


class VariableEndiannessAndWordsizeStructure:

    def __new__(cls, is_big_endian = False, is_64_bits = False):

        actual_class = _generated_structure_classes.get((cls, is_big_endian, is_64_bits))

        if actual_class is None:

            actual_class = type(
                cls.__name__,

                (
                    BigEndianStructure
                    if is_big_endian
                    else LittleEndianStructure,
                    VariableEndiannessAndWordsizeStructure,
                ),

                {
                    **{name: getattr(cls, name) for name in dir(cls) if '__' not in name or name == '__init__'},

                    'is_big_endian': is_big_endian,
                    'is_64_bits': is_64_bits,

                    '_pack_': True,
                    '_layout_': 'ms',
                    '_fields_': [
                        (
                            field[0], field[1] if is_64_bits else {
                                c_int64: c_int32,
                                c_uint64: c_uint32
                            }.get(field[1], field[1]), field[2] if len(field) > 2 else None
                        )[:3 if len(field) > 2 else 2]

                        for field
                        in cls._fields_
                    ]
                }
            )

            _generated_structure_classes[(cls, is_big_endian, is_64_bits)] = actual_class

        return actual_class()

    def unserialize(self, data : BinaryIO):

        expected_size = sizeof(self)

        if data.readinto(self) != expected_size:

            raise ElfFormatError('Truncated %s structure' % type(self).__name__)



class ElfFile:

    def __init__(self, is_big_endian = False, is_64_bits = False, read_contents = True):

        self.is_big_endian = is_big_endian
        self.is_64_bits = is_64_bits

        # Whether string and symbol tables get read while unserializing

        self.read_contents = read_contents

        self.sections : List[ElfSection] = []

        self.section_string_table : ElfStrtab = None

        self.file_header = ElfFileHeader(is_big_endian, is_64_bits)

    @classmethod
    def from_bytes(cls, data : BinaryIO, read_contents = True):

        file_header = data.read(E_IDENT_INDEXES.EI_NIDENT)

        if len(file_header) < E_IDENT_INDEXES.EI_NIDENT or not file_header.startswith(b'\x7fELF'):

            raise ElfFormatError('Not an ELF object (bad magic)')

        is_64_bits = {
            EI_CLASS.ELFCLASS32: False,
            EI_CLASS.ELFCLASS64: True
        }.get(file_header[E_IDENT_INDEXES.EI_CLASS])

        is_big_endian = {
            EI_DATA.ELFDATA2LSB: False,
            EI_DATA.ELFDATA2MSB: True
        }.get(file_header[E_IDENT_INDEXES.EI_DATA])

        if is_64_bits is None or is_big_endian is None:

            raise ElfFormatError('Unsupported ELF class or data encoding')

        obj = cls(is_big_endian, is_64_bits, read_contents)

        data.seek(0)
        obj.unserialize(data)

        return obj

    @classmethod
    def from_path(cls, path : str, read_contents = True):

        with open(path, 'rb') as fd:

            return cls.from_bytes(fd, read_contents)

    def unserialize(self, data : BinaryIO):

        self.file_header.unserialize(data)

        # Parse section headers, and the contents we were asked for

        if self.file_header.e_shoff:

            data.seek(0, SEEK_END)

            if self.file_header.e_shoff + self.file_header.e_shentsize * self.file_header.e_shnum > data.tell():

                raise ElfFormatError('Section header table at file offset 0x%x runs past the end of the file' %
                    self.file_header.e_shoff)

            for num_section in range(self.file_header.e_shnum):

                data.seek(self.file_header.e_shoff + self.file_header.e_shentsize * num_section)

                self.sections.append(ElfSection.from_bytes(data, self,
                    self.read_contents or num_section == self.file_header.e_shstrndx))

        # Remember about the string symbol table section

        if self.file_header.e_shstrndx < len(self.sections):

            self.section_string_table = self.sections[self.file_header.e_shstrndx]

        # Name sections and link symbols (now that string tables are parsed)

        for section in self.sections:

            section.post_unserialize()

    @property
    def elf_type(self) -> int:

        return self.file_header.e_type

    def get_section_by_name(self, section_name : str) -> Optional['ElfSection']:

        return next((section for section in self.sections
            if section.section_name == section_name), None)



class SH_TYPE(IntEnum):

    SHT_NULL = 0 # Inactive section.
    SHT_PROGBITS = 1 # Information defined by the program
    SHT_SYMTAB = 2 # Symbol table (one per object file)
    SHT_STRTAB = 3 # String table (multiple sections OK)
    SHT_RELA = 4 # Relocation with explicit addends
    SHT_HASH = 5 # Symbol hash table (one per object)
    SHT_DYNAMIC = 6 # Dynamic linking information
    SHT_NOTE = 7 # Vendor-specific file information
    SHT_NOBITS = 8 # Section contains no bits in object file
    SHT_REL = 9 # Relocation without explicit addends
    SHT_SHLIB = 10 # Reserved, non-conforming
    SHT_DYNSYM = 11 # Dynamic linking symbol table (one)

    SHT_INIT_ARRAY = 14 # Array of constructors
    SHT_FINI_ARRAY = 15 # Array of destructors
    SHT_PREINIT_ARRAY = 16 # Array of pre-constructors
    SHT_GROUP = 17 # Section group
    SHT_SYMTAB_SHNDX = 18 # Extended section indeces

    SHT_GNU_HASH = 0x6ffffff6
    SHT_GNU_VERDEF = 0x6ffffffd
    SHT_GNU_VERNEED = 0x6ffffffe
    SHT_GNU_VERSYM = 0x6fffffff


class SH_FLAGS(IntEnum):

    SHF_WRITE = 0x1 # Section writable during execution
    SHF_ALLOC = 0x2 # Section occupies memory
    SHF_EXECINSTR = 0x4 # Section contains executable instruc-tions
    SHF_COMPRESSED = 0x800 # Section contents start with a compression header


class ELF_COMPRESSION_TYPE(IntEnum):

    ELFCOMPRESS_ZLIB = 1
    ELFCOMPRESS_ZSTD = 2



class ElfSectionHeader(VariableEndiannessAndWordsizeStructure):

    _fields_ = [

          ('sh_name', Elf64_Word), # Section name, index in string table
          ('sh_type', Elf64_Word), # Type of section
          ('sh_flags', Elf64_Xword), # Miscellaneous section attributes
          ('sh_addr', Elf64_Addr), # Section virtual addr at execution
          ('sh_offset', Elf64_Off), # Section file offset
          ('sh_size', Elf64_Xword), # Size of section in bytes
          ('sh_link', Elf64_Word), # Index of another section -> REL(A)|HASH->SYMTAB, SYMTAB->STRTAB, DYNAMIC|DYMSYM->DYNSTR
          ('sh_info', Elf64_Word), # Additional section information
          ('sh_addralign', Elf64_Xword), # Section alignment
          ('sh_entsize', Elf64_Xword), # Entry size if section holds table
    ]


class Elf32CompressionHeader(VariableEndiannessAndWordsizeStructure):

    _fields_ = [
        ('ch_type', Elf32_Word), # ELFCOMPRESS_* algorithm
        ('ch_size', Elf32_Word), # Uncompressed size
        ('ch_addralign', Elf32_Word), # Uncompressed alignment
    ]


class Elf64CompressionHeader(Elf32CompressionHeader):

    _fields_ = [
        ('ch_type', Elf64_Word), # ELFCOMPRESS_* algorithm
        ('ch_reserved', Elf64_Word),
        ('ch_size', Elf64_Xword), # Uncompressed size
        ('ch_addralign', Elf64_Xword), # Uncompressed alignment
    ]


def decompress_section_contents(contents : bytes, is_big_endian : bool, is_64_bits : bool) -> bytes:

    """
        Decompress the contents of a SHF_COMPRESSED section, which
        start with an ElfXX_Chdr structure followed by the compressed
        stream.
    """

    header_class = Elf64CompressionHeader if is_64_bits else Elf32CompressionHeader

    header = header_class(is_big_endian, is_64_bits)

    header.unserialize(BytesIO(contents))

    payload = contents[sizeof(header):]

    if header.ch_type == ELF_COMPRESSION_TYPE.ELFCOMPRESS_ZLIB:

        try:
            decompressed = zlib.decompress(payload)
        except zlib.error as error:
            raise ElfFormatError('Corrupted zlib section contents: %s' % error) from error

    elif header.ch_type == ELF_COMPRESSION_TYPE.ELFCOMPRESS_ZSTD:

        try:
            import zstandard as zstd
        except ModuleNotFoundError as error:
            raise ElfFormatError('This object has ZSTD-compressed sections, ' +
                'but the "zstandard" python package was not found') from error

        try:
            decompressed = zstd.ZstdDecompressor().decompressobj().decompress(payload)
        except zstd.ZstdError as error:
            raise ElfFormatError('Corrupted zstd section contents: %s' % error) from error

    else:

        raise ElfFormatError('Unknown section compression type %d' % header.ch_type)

    if len(decompressed) != header.ch_size:

        raise ElfFormatError('Decompressed section size mismatch (%d != %d)' % (len(decompressed), header.ch_size))

    return decompressed


class ElfSection:

    section_name : str = ''

    elf_file : ElfFile = None

    section_header : ElfSectionHeader = None


    def __init__(self, elf_file : ElfFile):

        self.elf_file = elf_file

        self.is_big_endian = elf_file.is_big_endian
        self.is_64_bits = elf_file.is_64_bits

        self.section_header = ElfSectionHeader(self.is_big_endian, self.is_64_bits)

    @classmethod
    def from_bytes(cls, data : BinaryIO, elf_file : ElfFile, read_contents = True):

        section_header_offset = data.tell()

        # Guess the correct type for the class to create
        # based on the section header

        impersonal_section = cls(elf_file)
        impersonal_section.section_header.unserialize(data)

        section_class = SECTION_TYPE_TO_CLASS.get(
            impersonal_section.section_header.sh_type,
            ElfSection
        )

        data.seek(section_header_offset)

        obj = section_class(elf_file)
        obj.unserialize(data, read_contents)

        return obj

    def unserialize(self, data : BinaryIO, read_contents = True):

        """
            Consider that:
            a) We are at the position of the section header corresponding
               to the current section
        """

        self.section_header.unserialize(data)

        if read_contents:

            self._unserialize_contents(data)

    def _unserialize_contents(self, data : BinaryIO):

        pass

    def read_contents(self, data : BinaryIO) -> bytes:

        """
            Read (and decompress if needed) the section contents from
            the stream the ELF file was parsed from.
        """

        # Corrupted headers may point anywhere, check before seeking

        data.seek(0, SEEK_END)

        stream_size = data.tell()

        if self.section_header.sh_offset + self.section_header.sh_size > stream_size:

            raise ElfFormatError('Section at file offset 0x%x (size 0x%x) runs past the end of the file' % (
                self.section_header.sh_offset, self.section_header.sh_size))

        data.seek(self.section_header.sh_offset)

        contents = data.read(self.section_header.sh_size)

        if len(contents) != self.section_header.sh_size:

            raise ElfFormatError('Section at file offset 0x%x is truncated' % self.section_header.sh_offset)

        if self.section_header.sh_flags & SH_FLAGS.SHF_COMPRESSED:

            contents = decompress_section_contents(contents, self.is_big_endian, self.is_64_bits)

        return contents

    def post_unserialize(self):

        # Name sections (now that .shstrndx is parsed)

        section_string_table = self.elf_file.section_string_table

        if isinstance(section_string_table, ElfStrtab) and section_string_table.raw_string_table is not None:

            self.section_name = section_string_table.return_string_from_offset(self.section_header.sh_name)



class ElfNullSection(ElfSection):

    pass


class ElfProgbits(ElfSection):

    # virtual adress stored in self.section_header.sh_addr

    pass


class ElfNoBits(ElfProgbits):

    def read_contents(self, data : BinaryIO) -> bytes:

        return b''


class ST_INFO_TYPE(IntEnum): # SYMBOL_TYPE

    STT_NOTYPE = 0 # Not specified
    STT_OBJECT = 1 # Data object: variable, array, etc.
    STT_FUNC = 2 # Function or other executable code
    STT_SECTION = 3 # Section. Exists primarily for relocation
    STT_FILE = 4 # Name (pathname?) of the source file associated with object. Binding is STT_LOCAL, section index is SHN_ABS, and it precedes other STB_LOCAL symbols if present
    STT_GNU_IFUNC = 10 # Indirect function, resolved at load time

class ST_INFO_BINDING(IntEnum): # SYMBOL_BINDING

    STB_LOCAL = 0 # Not visible outside object file where defined
    STB_GLOBAL = 1 # Visible to all object files. Multiple definitions cause errors. Force extraction of defining object from archive file.
    STB_WEAK = 2 # Visible to all object files. Ignored if STB_GLOBAL with same name found. Do not force extraction of defining object from archive file. Value is 0 if undefined.

class SPECIAL_SECTION_INDEX(IntEnum):

    SHN_UNDEF = 0
    SHN_LORESERVE = 0xff00
    SHN_ABS = 0xfff1
    SHN_COMMON = 0xfff2
    SHN_XINDEX = 0xffff

class Elf32LittleEndianSymbolTableEntry(VariableEndiannessAndWordsizeStructure):

    _fields_ = [
        ('st_name', Elf32_Word), # Symbol name, index in string tbl
        ('st_value', Elf32_Addr), # Value of the symbol
        ('st_size', Elf32_Word), # Associated symbol size
        ('st_info_type', c_uint8, 4), # Type and binding attributes
        ('st_info_binding', c_uint8, 4),
        ('st_other', c_uint8), # No defined meaning, 0
        ('st_shndx', Elf32_Half), # Associated section index
    ]

    symbol_name : str = None

class Elf32BigEndianSymbolTableEntry(Elf32LittleEndianSymbolTableEntry):

    _fields_ = [
        ('st_name', Elf32_Word), # Symbol name, index in string tbl
        ('st_value', Elf32_Addr), # Value of the symbol
        ('st_size', Elf32_Word), # Associated symbol size
        ('st_info_binding', c_uint8, 4), # Type and binding attributes
        ('st_info_type', c_uint8, 4),
        ('st_other', c_uint8), # No defined meaning, 0
        ('st_shndx', Elf32_Half), # Associated section index
    ]


class Elf64LittleEndianSymbolTableEntry(Elf32LittleEndianSymbolTableEntry):

    _fields_ = [
        ('st_name', Elf64_Word), # Symbol name, index in string tbl
        ('st_info_type', c_uint8, 4), # Type and binding attributes
        ('st_info_binding', c_uint8, 4),
        ('st_other', c_uint8), # No defined meaning, 0
        ('st_shndx', Elf64_Half), # Associated section index
        ('st_value', Elf64_Addr), # Value of the symbol
        ('st_size', Elf64_Xword), # Associated symbol size
    ]


class Elf64BigEndianSymbolTableEntry(Elf64LittleEndianSymbolTableEntry):

    _fields_ = [
        ('st_name', Elf64_Word), # Symbol name, index in string tbl
        ('st_info_binding', c_uint8, 4), # Type and binding attributes
        ('st_info_type', c_uint8, 4),
        ('st_other', c_uint8), # No defined meaning, 0
        ('st_shndx', Elf64_Half), # Associated section index
        ('st_value', Elf64_Addr), # Value of the symbol
        ('st_size', Elf64_Xword), # Associated symbol size
    ]



class ElfSymtab(ElfSection):

    string_table : ElfSection = None # .dynstr or .strtab

    symbol_table : List[Elf32LittleEndianSymbolTableEntry] = None

    def __init__(self, elf_file : ElfFile):

        super().__init__(elf_file)

        self.symbol_table = []

    def _unserialize_contents(self, data : BinaryIO):

        self.symbol_table = []

        symbol_class = {
            (False, False): Elf32LittleEndianSymbolTableEntry,
            (True, False): Elf32BigEndianSymbolTableEntry,
            (False, True): Elf64LittleEndianSymbolTableEntry,
            (True, True): Elf64BigEndianSymbolTableEntry,
        }[(self.is_big_endian, self.is_64_bits)]

        if not self.section_header.sh_entsize:

            raise ElfFormatError('Symbol table at file offset 0x%x has a null entry size' % self.section_header.sh_offset)

        raw_contents = self.read_contents(data)

        contents = BytesIO(raw_contents)

        for num_symbol in range(len(raw_contents) // self.section_header.sh_entsize):

            contents.seek(num_symbol * self.section_header.sh_entsize)

            symbol = symbol_class(self.is_big_endian, self.is_64_bits)

            symbol.unserialize(contents)

            self.symbol_table.append(symbol)


    def post_unserialize(self):

        super().post_unserialize()

        # Link strings to symbols

        if self.section_header.sh_link >= len(self.elf_file.sections):

            raise ElfFormatError('Symbol table %s links to a missing string table' % self.section_name)

        self.string_table = self.elf_file.sections[self.section_header.sh_link]

        if not isinstance(self.string_table, ElfStrtab) or self.string_table.raw_string_table is None:

            return

        for symbol in self.symbol_table:

            symbol.symbol_name = self.string_table.return_string_from_offset(symbol.st_name)


class ElfDynsym(ElfSymtab):

    pass


class ElfStrtab(ElfSection):

    raw_string_table : bytes = None

    def _unserialize_contents(self, data : BinaryIO):

        self.raw_string_table = self.read_contents(data)

    def return_string_from_offset(self, offset):

        end_offset = self.raw_string_table.find(b'\x00', offset)

        if end_offset == -1:
            end_offset = len(self.raw_string_table)

        return self.raw_string_table[offset:end_offset].decode('utf-8', 'replace')



SECTION_TYPE_TO_CLASS = {
    SH_TYPE.SHT_NULL: ElfNullSection,
    SH_TYPE.SHT_PROGBITS: ElfProgbits,
    SH_TYPE.SHT_NOBITS: ElfNoBits,
    SH_TYPE.SHT_SYMTAB: ElfSymtab,
    SH_TYPE.SHT_STRTAB: ElfStrtab,
    SH_TYPE.SHT_DYNSYM: ElfDynsym
}



class E_IDENT_INDEXES(IntEnum):

    EI_MAG0 = 0
    EI_MAG1 = 1
    EI_MAG2 = 2
    EI_MAG3 = 3
    EI_CLASS = 4
    EI_DATA = 5
    EI_VERSION = 6
    EI_OSABI = 7
    EI_ABIVERSION = 8
    EI_NIDENT = 16


class EI_CLASS(IntEnum):

    ELFCLASS32 = 1

    ELFCLASS64 = 2


class EI_DATA(IntEnum):

    ELFDATA2LSB = 1 # Little-endian objects

    ELFDATA2MSB = 2 # Big-endian objects


class E_TYPE(IntEnum):

    ET_NONE = 0 # No file type

    ET_REL = 1 # Relocatable object file

    ET_EXEC = 2 # Executable file

    ET_DYN = 3 # Shared object file

    ET_CORE = 4 # Core file


class ElfFileHeader(VariableEndiannessAndWordsizeStructure):

    _fields_ = [

      ('EI_MAG', c_char * 4), # ELF "magic number"
      ('EI_CLASS', c_uint8), # File class
      ('EI_DATA', c_uint8), # Data encoding
      ('EI_VERSION', c_uint8), # File version
      ('EI_OSABI', c_uint8), # OS/ABI identification
      ('EI_ABIVERSION', c_uint8), # ABI version
      ('EI_PAD', c_uint8 * 7),

      ('e_type', Elf64_Half),
      ('e_machine', Elf64_Half),
      ('e_version', Elf64_Word),
      ('e_entry', Elf64_Addr), # Entry point virtual address
      ('e_phoff', Elf64_Off), # Program header table file offset
      ('e_shoff', Elf64_Off), # Section header table file offset
      ('e_flags', Elf64_Word),
      ('e_ehsize', Elf64_Half),
      ('e_phentsize', Elf64_Half),
      ('e_phnum', Elf64_Half),
      ('e_shentsize', Elf64_Half),
      ('e_shnum', Elf64_Half),
      ('e_shstrndx', Elf64_Half),
    ]
