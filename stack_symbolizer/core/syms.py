#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

from typing import Dict, List, Optional, Tuple

from stack_symbolizer.core.dso import Dso, DsoKind
from stack_symbolizer.core.errors import SymbolizerError
from stack_symbolizer.core.proc_maps import PROC_ROOT, MappedRegion
from stack_symbolizer.core.symbol import Symbol
from stack_symbolizer.core.vdso_symbols import VDSO_IMAGE_DIR


class Syms:
    """
    Symbol index of one process: the objects backing its executable
    mappings, keyed by path, and the JIT symbol maps it published.

    Addresses are resolved by finding the object whose mapped ranges
    contain them, translating them into object-relative offsets, and
    searching the object's symbols (loaded on first use).
    """

    def __init__(
        self,
        pid: int = None,
        proc_root: str = PROC_ROOT,
        vdso_image_dir: str = VDSO_IMAGE_DIR,
    ):
        self.pid = pid
        self.proc_root = proc_root
        self.vdso_image_dir = vdso_image_dir

        self.root_prefix = None
        if pid is not None:
            self.root_prefix = "%s/%d/root" % (proc_root, pid)

        self.dsos: Dict[str, Dso] = {}
        self.jit_maps: List[Dso] = []

    def add_mapping(self, region: MappedRegion) -> Dso:
        """
        Record a mapped region, creating and classifying its Dso when it is
        the first region backed by that path. A classification error leaves
        the Dso as UNKNOWN (so that other mappings still resolve) and is
        re-raised for the caller to report.
        """

        dso = self.dsos.get(region.backing_path)
        is_new = dso is None

        if is_new:
            dso = Dso(
                region.backing_path,
                self.root_prefix,
                self.vdso_image_dir,
                self.map_file_path(region) if region.deleted else None,
            )
            self.dsos[region.backing_path] = dso

        dso.add_range(region)

        if is_new:
            try:
                dso.classify()

            except SymbolizerError:
                dso.kind = DsoKind.UNKNOWN
                raise

        return dso

    def map_file_path(self, region: MappedRegion) -> Optional[str]:
        if self.pid is None:
            return None

        return "%s/%d/map_files/%x-%x" % (
            self.proc_root,
            self.pid,
            region.start_addr,
            region.end_addr,
        )

    def add_perf_map(self, path: str) -> Dso:
        dso = Dso(path, self.root_prefix)
        dso.kind = DsoKind.JIT_MAP

        self.jit_maps.append(dso)

        return dso

    def find_dso(self, address: int) -> Tuple[Optional[Dso], int]:
        """
        Return the object mapped at this address and the object-relative
        offset of the address, or (None, 0).
        """

        for dso in self.dsos.values():
            load_range = dso.find_range(address)

            if load_range is not None:
                return dso, dso.file_relative_offset(address, load_range)

        return None, 0

    def resolve_with_object(
        self, address: int
    ) -> Tuple[Optional[Symbol], Optional[Dso], int]:
        """
        Return the symbol containing this address, the object it was found
        in, and the object-relative offset the symbol was searched with.
        """

        dso, offset = self.find_dso(address)

        if dso is None:
            return self._resolve_jit(address)

        if not dso.ensure_loaded():
            return None, dso, offset

        return dso.find_symbol(offset), dso, offset

    def resolve(self, address: int) -> Optional[Symbol]:
        symbol, _, _ = self.resolve_with_object(address)

        return symbol

    def _resolve_jit(
        self, address: int
    ) -> Tuple[Optional[Symbol], Optional[Dso], int]:
        # JIT maps come with sizes but no ranges, so the size bounds the match

        for dso in self.jit_maps:
            if not dso.ensure_loaded():
                continue

            symbol = dso.find_symbol(address)

            if symbol is not None and address < symbol.start + symbol.size:
                return symbol, dso, address

        return None, None, address

    def __len__(self) -> int:
        return len(self.dsos)

    def __repr__(self):
        return "<Syms pid=%s, %d objects, %d JIT maps>" % (
            self.pid,
            len(self.dsos),
            len(self.jit_maps),
        )
