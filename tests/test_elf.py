import struct
import unittest
from io import BytesIO

from stack_symbolizer.core.errors import ElfFormatError
from stack_symbolizer.utils.elf import (
    E_TYPE,
    ST_INFO_TYPE,
    ElfDynsym,
    ElfFile,
    ElfNoBits,
    ElfProgbits,
    ElfStrtab,
    ElfSymtab,
)
from tests.elf_builder import ET_EXEC, STT_OBJECT, build_elf, patch_section_header

SYMBOLS = [("main", 0x1010, 0x20), ("helper", 0x1000, 0x10), ("counter", 0x4000, 8, STT_OBJECT)]


class TestElfFile(unittest.TestCase):
    def test_sections(self):
        elf_file = ElfFile.from_bytes(BytesIO(build_elf(SYMBOLS)))

        self.assertTrue(elf_file.is_64_bits)
        self.assertFalse(elf_file.is_big_endian)
        self.assertEqual(elf_file.elf_type, E_TYPE.ET_DYN)

        self.assertEqual(
            [section.section_name for section in elf_file.sections],
            ["", ".text", ".strtab", ".symtab", ".shstrtab"],
        )

        text = elf_file.get_section_by_name(".text")
        self.assertIsInstance(text, ElfProgbits)
        self.assertEqual(text.section_header.sh_addr, 0x1000)
        self.assertEqual(text.section_header.sh_offset, 0x1000)

        self.assertIsNone(elf_file.get_section_by_name(".data"))

    def test_symbols(self):
        elf_file = ElfFile.from_bytes(BytesIO(build_elf(SYMBOLS, elf_type=ET_EXEC)))

        self.assertEqual(elf_file.elf_type, E_TYPE.ET_EXEC)

        symtab = elf_file.get_section_by_name(".symtab")
        self.assertIsInstance(symtab, ElfSymtab)
        self.assertIsInstance(symtab.string_table, ElfStrtab)

        # Index 0 is the null symbol
        names = [symbol.symbol_name for symbol in symtab.symbol_table]
        self.assertEqual(names, ["", "main", "helper", "counter"])

        main = symtab.symbol_table[1]
        self.assertEqual(main.st_value, 0x1010)
        self.assertEqual(main.st_size, 0x20)
        self.assertEqual(main.st_info_type, ST_INFO_TYPE.STT_FUNC)
        self.assertEqual(symtab.symbol_table[3].st_info_type, ST_INFO_TYPE.STT_OBJECT)

    def test_dynsym(self):
        elf_file = ElfFile.from_bytes(BytesIO(build_elf(SYMBOLS, symbol_table="dynsym")))

        dynsym = elf_file.get_section_by_name(".dynsym")
        self.assertIsInstance(dynsym, ElfDynsym)
        self.assertEqual(dynsym.symbol_table[2].symbol_name, "helper")

    def test_headers_only(self):
        elf_file = ElfFile.from_bytes(BytesIO(build_elf(SYMBOLS)), read_contents=False)

        symtab = elf_file.get_section_by_name(".symtab")
        self.assertEqual(symtab.symbol_table, [])
        self.assertEqual(elf_file.get_section_by_name(".text").section_header.sh_addr, 0x1000)

    def test_compressed_tables(self):
        for compression in ("zlib", "zstd"):
            with self.subTest(compression=compression):
                elf_file = ElfFile.from_bytes(
                    BytesIO(build_elf(SYMBOLS, compression=compression))
                )

                symtab = elf_file.get_section_by_name(".symtab")
                self.assertEqual(
                    [symbol.symbol_name for symbol in symtab.symbol_table][1:],
                    ["main", "helper", "counter"],
                )

    def test_nobits_contents(self):
        data = BytesIO(build_elf(symbol_table="minidebuginfo"))
        elf_file = ElfFile.from_bytes(data)

        debugdata = elf_file.get_section_by_name(".gnu_debugdata")
        self.assertTrue(debugdata.read_contents(data).startswith(b"\xfd7zXZ"))

        self.assertEqual(ElfNoBits(elf_file).read_contents(data), b"")

    def test_not_elf(self):
        with self.assertRaises(ElfFormatError):
            ElfFile.from_bytes(BytesIO(b"#!/bin/sh\necho hello\n"))

        with self.assertRaises(ElfFormatError):
            ElfFile.from_bytes(BytesIO(b"\x7fELF"))

    def test_truncated(self):
        with self.assertRaises(ElfFormatError):
            ElfFile.from_bytes(BytesIO(build_elf(SYMBOLS)[:0x40]))

    def test_section_headers_past_end_of_file(self):
        data = bytearray(build_elf(SYMBOLS))
        struct.pack_into("<Q", data, 0x28, 0xFFFFFFFFFFFFFF00)

        with self.assertRaises(ElfFormatError):
            ElfFile.from_bytes(BytesIO(bytes(data)), read_contents=False)

    def test_section_past_end_of_file(self):
        for size in (0xFFFFFFFFFFFFFF00, 0x7FFFFFFF):
            with self.subTest(size=size):
                data = patch_section_header(build_elf(SYMBOLS), ".symtab", "sh_size", size)

                with self.assertRaises(ElfFormatError):
                    ElfFile.from_bytes(BytesIO(data))

                # Only the section headers are needed here
                elf_file = ElfFile.from_bytes(BytesIO(data), read_contents=False)
                self.assertEqual(elf_file.get_section_by_name(".symtab").symbol_table, [])

    def test_corrupted_section_names(self):
        data = patch_section_header(
            build_elf(SYMBOLS), ".shstrtab", "sh_offset", 0xFFFFFFFFFFFFFF00
        )

        with self.assertRaises(ElfFormatError):
            ElfFile.from_bytes(BytesIO(data), read_contents=False)

    def test_bad_class(self):
        data = bytearray(build_elf(SYMBOLS))
        data[4] = 7

        with self.assertRaises(ElfFormatError):
            ElfFile.from_bytes(BytesIO(bytes(data)))


if __name__ == "__main__":
    unittest.main()
