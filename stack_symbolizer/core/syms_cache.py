#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

import logging
from os.path import exists
from threading import Lock
from typing import Dict, Optional, Tuple

from stack_symbolizer.core.errors import (
    ProcessNotFoundError,
    SymbolizerError,
    SymbolParseError,
)
from stack_symbolizer.core.perf_map import PERF_MAP_DIR, perf_map_path
from stack_symbolizer.core.proc_maps import PROC_ROOT, ProcessImageMap
from stack_symbolizer.core.syms import Syms
from stack_symbolizer.core.vdso_symbols import VDSO_IMAGE_DIR

"""
    The SymsCache keeps one Syms index per process id, built on the first
    lookup for that process and reused afterwards, so that resolving the
    stacks of a process seen many times only parses its memory map and its
    ELF objects once.

    Entries are never refreshed on their own. A process id that gets reused
    by the kernel after the original process exited would thus be resolved
    with the symbols of the original process; with track_start_time=True,
    the start time of the process (field 22 of /proc/<pid>/stat) is checked
    on every lookup, and a mismatch rebuilds the entry.

    Failures to inspect a process are never cached, as the process may
    simply not have been visible yet.

    The cache may be shared between threads: a registry lock guards the
    entries, and one lock per process id guarantees that a given index is
    built at most once, without blocking lookups for other processes.
"""


# Index of "starttime" amongst the fields following the command name

STAT_START_TIME_INDEX = 19


def read_start_time(pid: int, proc_root: str = PROC_ROOT) -> int:
    stat_path = "%s/%d/stat" % (proc_root, pid)

    try:
        with open(stat_path, "r", errors="replace") as stat_file:
            stat = stat_file.read()

    except OSError as error:
        raise ProcessNotFoundError(pid, error.strerror) from error

    # The command name is parenthesized and may contain spaces or parentheses
    fields = stat[stat.rfind(")") + 1 :].split()

    try:
        return int(fields[STAT_START_TIME_INDEX])

    except (IndexError, ValueError) as error:
        raise SymbolParseError("Malformed %s" % stat_path) from error


class SymsCache:
    def __init__(
        self,
        proc_root: str = PROC_ROOT,
        perf_map_dir: Optional[str] = PERF_MAP_DIR,
        vdso_image_dir: str = VDSO_IMAGE_DIR,
        track_start_time: bool = False,
    ):
        self.proc_root = proc_root
        self.perf_map_dir = perf_map_dir
        self.vdso_image_dir = vdso_image_dir
        self.track_start_time = track_start_time

        # pid => (start time or None, index)
        self._entries: Dict[int, Tuple[Optional[int], Syms]] = {}

        self._lock = Lock()
        self._build_locks: Dict[int, Lock] = {}

    def get_syms(self, pid: int) -> Syms:
        """
        Return the symbol index of a process, building it on first use.

        Raises ProcessNotFoundError when the process cannot be inspected.
        """

        start_time = None
        if self.track_start_time:
            try:
                start_time = read_start_time(pid, self.proc_root)

            except ProcessNotFoundError:
                self.evict(pid)
                raise

        with self._lock:
            syms = self._lookup(pid, start_time)
            if syms is not None:
                return syms

            build_lock = self._build_locks.setdefault(pid, Lock())

        with build_lock:
            # Another thread may have built it while we were waiting
            with self._lock:
                syms = self._lookup(pid, start_time)
                if syms is not None:
                    return syms

            try:
                syms = self._load_pid(pid)

                with self._lock:
                    self._entries[pid] = (start_time, syms)

            finally:
                with self._lock:
                    self._build_locks.pop(pid, None)

        return syms

    def _lookup(self, pid: int, start_time: Optional[int]) -> Optional[Syms]:
        entry = self._entries.get(pid)

        if entry is None:
            return None

        cached_start_time, syms = entry

        if cached_start_time != start_time:
            logging.info(
                "[i] Process %d was replaced by a new one, dropping its symbols" % pid
            )

            del self._entries[pid]
            return None

        return syms

    def _load_pid(self, pid: int) -> Syms:
        regions = ProcessImageMap.parse(pid, self.proc_root)

        syms = Syms(pid, self.proc_root, self.vdso_image_dir)

        for region in regions:
            try:
                syms.add_mapping(region)

            except SymbolizerError as error:
                logging.warning(
                    "[!] Process %d: cannot use %s: %s" % (pid, region.backing_path, error)
                )

        if self.perf_map_dir is not None:
            path = perf_map_path(pid, self.perf_map_dir)

            if exists(syms.root_prefix + path) or exists(path):
                syms.add_perf_map(path)

        logging.debug("[+] Indexed %r" % syms)

        return syms

    def evict(self, pid: int) -> bool:
        with self._lock:
            return self._entries.pop(pid, None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __contains__(self, pid: int) -> bool:
        with self._lock:
            return pid in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
