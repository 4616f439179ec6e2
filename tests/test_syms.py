import os
import tempfile
import unittest

from stack_symbolizer.core.dso import DsoKind
from stack_symbolizer.core.errors import ElfFormatError
from stack_symbolizer.core.proc_maps import MappedRegion
from stack_symbolizer.core.syms import Syms
from tests.elf_builder import ET_EXEC, build_elf, patch_section_header, write_elf

BASE = 0x7F0000000000


def region(path, start, end, file_offset=0):
    return MappedRegion(start, end, file_offset, 0xFD, 1, 1234, path)


class TestSyms(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

        self.library = write_elf(
            os.path.join(self.tmpdir.name, "libf.so"),
            [("f", 0x1000, 0x10), ("g", 0x1800, 0x10)],
            text_addr=0x1000,
            text_offset=0x1000,
        )

    def test_position_independent_mapping(self):
        syms = Syms()
        syms.add_mapping(region(self.library, BASE + 0x1000, BASE + 0x2000, 0x1000))

        symbol = syms.resolve(BASE + 0x1005)

        self.assertEqual(symbol.name, "f")
        self.assertEqual(symbol.start, 0x1000)
        self.assertEqual(syms.resolve(BASE + 0x1805).name, "g")

    def test_symbols_loaded_on_first_use(self):
        syms = Syms()
        dso = syms.add_mapping(region(self.library, BASE + 0x1000, BASE + 0x2000, 0x1000))

        self.assertFalse(dso.is_loaded)

        syms.resolve(BASE + 0x1005)

        self.assertTrue(dso.is_loaded)

    def test_outside_every_mapping(self):
        syms = Syms()
        syms.add_mapping(region(self.library, BASE + 0x1000, BASE + 0x2000, 0x1000))

        self.assertIsNone(syms.resolve(BASE + 0x2000))
        self.assertIsNone(syms.resolve(0x1005))
        self.assertEqual(syms.find_dso(BASE + 0x3000), (None, 0))

    def test_several_ranges_of_one_object(self):
        syms = Syms()
        first = syms.add_mapping(region(self.library, BASE + 0x1000, BASE + 0x1800, 0x1000))
        second = syms.add_mapping(region(self.library, BASE + 0x1800, BASE + 0x2000, 0x1800))

        self.assertIs(first, second)
        self.assertEqual(len(first.ranges), 2)
        self.assertEqual(len(syms), 1)
        self.assertEqual(syms.resolve(BASE + 0x1804).name, "g")

    def test_executable_mapping(self):
        executable = write_elf(
            os.path.join(self.tmpdir.name, "a.out"), [("main", 0x401000, 0x80)],
            elf_type=ET_EXEC, text_addr=0x401000,
        )

        syms = Syms()
        syms.add_mapping(region(executable, 0x401000, 0x402000, 0x1000))

        symbol, dso, offset = syms.resolve_with_object(0x401010)

        self.assertEqual(symbol.name, "main")
        self.assertEqual(dso.kind, DsoKind.EXECUTABLE)
        self.assertEqual(offset, 0x401010)

    def test_unknown_object(self):
        script = os.path.join(self.tmpdir.name, "blob.bin")
        with open(script, "wb") as blob:
            blob.write(b"\x00" * 64)

        syms = Syms()
        syms.add_mapping(region(script, BASE, BASE + 0x1000))

        symbol, dso, _ = syms.resolve_with_object(BASE + 0x10)

        self.assertIsNone(symbol)
        self.assertEqual(dso.kind, DsoKind.UNKNOWN)

    def test_broken_object_does_not_prevent_others(self):
        broken = write_elf(
            os.path.join(self.tmpdir.name, "broken.so"), [("x", 0x1000, 4)], with_text=False
        )

        syms = Syms()

        with self.assertRaises(ElfFormatError):
            syms.add_mapping(region(broken, BASE + 0x10000, BASE + 0x11000))

        syms.add_mapping(region(self.library, BASE + 0x1000, BASE + 0x2000, 0x1000))

        self.assertEqual(syms.dsos[broken].kind, DsoKind.UNKNOWN)
        self.assertIsNone(syms.resolve(BASE + 0x10010))
        self.assertEqual(syms.resolve(BASE + 0x1005).name, "f")

    def test_perf_map(self):
        perf_map = os.path.join(self.tmpdir.name, "perf-12.map")
        with open(perf_map, "w") as perf_map_file:
            perf_map_file.write("7e0000000000 100 jitted_function\n")

        syms = Syms()
        syms.add_mapping(region(self.library, BASE + 0x1000, BASE + 0x2000, 0x1000))
        syms.add_perf_map(perf_map)

        self.assertEqual(syms.resolve(0x7E0000000010).name, "jitted_function")
        self.assertIsNone(syms.resolve(0x7E0000000100))
        self.assertEqual(syms.resolve(BASE + 0x1005).name, "f")

    def write_corrupted_library(self, name, section, field):
        path = os.path.join(self.tmpdir.name, name)

        with open(path, "wb") as library:
            library.write(
                patch_section_header(
                    build_elf([("f", 0x1000, 0x10)]), section, field, 0xFFFFFFFFFFFFFF00
                )
            )

        return path

    def test_corrupted_symbol_table(self):
        corrupted = self.write_corrupted_library("libcorrupt.so", ".symtab", "sh_size")

        syms = Syms()
        dso = syms.add_mapping(region(corrupted, BASE, BASE + 0x2000))
        syms.add_mapping(region(self.library, BASE + 0x10000, BASE + 0x12000))

        self.assertEqual(dso.kind, DsoKind.POSITION_INDEPENDENT)

        with self.assertLogs(level="WARNING"):
            self.assertIsNone(syms.resolve(BASE + 0x1005))

        self.assertIsInstance(dso.load_error, ElfFormatError)
        self.assertIsNone(syms.resolve(BASE + 0x1006))
        self.assertEqual(syms.resolve(BASE + 0x11005).name, "f")

    def test_corrupted_section_names(self):
        corrupted = self.write_corrupted_library("libnames.so", ".shstrtab", "sh_offset")

        syms = Syms()
        dso = syms.add_mapping(region(corrupted, BASE, BASE + 0x2000))

        self.assertEqual(dso.kind, DsoKind.UNKNOWN)
        self.assertIsNone(syms.resolve(BASE + 0x1005))

    def test_deleted_mapping_read_through_map_files(self):
        proc_root = os.path.join(self.tmpdir.name, "proc")
        map_files = os.path.join(proc_root, "12", "map_files")
        os.makedirs(map_files)

        # The file at the mapped path was replaced by another build
        replaced = write_elf(
            os.path.join(self.tmpdir.name, "libreplaced.so"), [("new_f", 0x1000, 0x10)]
        )
        write_elf(
            os.path.join(map_files, "%x-%x" % (BASE, BASE + 0x2000)),
            [("old_f", 0x1000, 0x10)],
        )

        syms = Syms(pid=12, proc_root=proc_root)
        dso = syms.add_mapping(
            region(replaced, BASE, BASE + 0x2000)._replace(deleted=True)
        )

        self.assertEqual(dso.open_path, os.path.join(map_files, "%x-%x" % (BASE, BASE + 0x2000)))
        self.assertEqual(syms.resolve(BASE + 0x1005).name, "old_f")

        # Without access to map_files, the path is opened
        other = Syms(pid=13, proc_root=proc_root)
        other.add_mapping(region(replaced, BASE, BASE + 0x2000)._replace(deleted=True))

        self.assertEqual(other.resolve(BASE + 0x1005).name, "new_f")

    def test_root_prefix(self):
        syms = Syms(pid=12, proc_root="/proc")

        self.assertEqual(syms.root_prefix, "/proc/12/root")
        self.assertIsNone(Syms().root_prefix)


if __name__ == "__main__":
    unittest.main()
