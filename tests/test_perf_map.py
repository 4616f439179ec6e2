import os
import tempfile
import unittest

from stack_symbolizer.core.errors import SymbolSourceError
from stack_symbolizer.core.perf_map import is_perf_map, load_perf_map, perf_map_path
from stack_symbolizer.core.symbol import Symbol, SymbolTable


class TestPerfMap(unittest.TestCase):
    def test_load(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = perf_map_path(1234, tmpdir)

            with open(path, "w") as perf_map_file:
                perf_map_file.write(
                    "7f8b8c100000 40 java.lang.String.charAt(I)C\n"
                    "\n"
                    "not a record\n"
                    "0x7f8b8d100000 0x1a8 LazyCompile:*processRequest /app/server.js:45\n"
                )

            symbols = load_perf_map(path)

        self.assertEqual(
            symbols,
            [
                Symbol("java.lang.String.charAt(I)C", 0x7F8B8C100000, 0x40),
                Symbol(
                    "LazyCompile:*processRequest /app/server.js:45",
                    0x7F8B8D100000,
                    0x1A8,
                ),
            ],
        )

    def test_missing_map(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(SymbolSourceError):
                load_perf_map(os.path.join(tmpdir, "perf-1.map"))

    def test_naming_convention(self):
        self.assertEqual(perf_map_path(99), "/tmp/perf-99.map")
        self.assertTrue(is_perf_map("/tmp/perf-99.map"))
        self.assertTrue(is_perf_map("perf-99.map"))
        self.assertFalse(is_perf_map("/tmp/perf-99.map.old"))
        self.assertFalse(is_perf_map("/usr/lib/libperf.so"))


class TestSymbolTable(unittest.TestCase):
    def test_find_symbol(self):
        table = SymbolTable(
            [Symbol("a", 0x100, 0x10), Symbol("c", 0x300, 0x10), Symbol("b", 0x200, 0)]
        )

        self.assertEqual([symbol.name for symbol in table], ["c", "b", "a"])
        self.assertIsNone(table.find_symbol(0xFF))
        self.assertEqual(table.find_symbol(0x100).name, "a")
        self.assertEqual(table.find_symbol(0x2FF).name, "b")
        self.assertEqual(table.find_symbol(0x10000).name, "c")
        self.assertEqual(len(table), 3)


if __name__ == "__main__":
    unittest.main()
