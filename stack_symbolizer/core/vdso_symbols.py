#!/usr/bin/env python3
# -*- encoding: Utf-8 -*-

from os import uname
from os.path import exists
from typing import Optional

from stack_symbolizer.core.symbol import Symbol

"""
    The vDSO is a small shared object that the kernel maps into every
    process ("[vdso]" in /proc/<pid>/maps). It has no backing file, so its
    symbols are taken from either:

    - The unstripped image that "make vdso_install" puts into the modules
      directory of the running kernel, when present.
    - The constant table below otherwise, which describes the x86-64 vDSO
      layout of a reference 6.x build. Offsets are relative to the start of
      the image, which is also the start of the mapping.
"""


VDSO_IMAGE_DIR = "/lib/modules/{release}/vdso"

VDSO_IMAGE_NAMES = ("vdso64.so", "vdso.so")


VDSO_SYMBOLS = (
    Symbol(name="__vdso_gettimeofday", start=0x0A20, size=0x3C0),
    Symbol(name="__vdso_time", start=0x0DE0, size=0x30),
    Symbol(name="__vdso_clock_gettime", start=0x0E10, size=0x440),
    Symbol(name="__vdso_clock_getres", start=0x1250, size=0x90),
    Symbol(name="__vdso_getcpu", start=0x12E0, size=0x40),
    Symbol(name="__vdso_sgx_enter_enclave", start=0x1320, size=0x9C),
)


def find_vdso_image(
    release: str = None, image_dir: str = VDSO_IMAGE_DIR
) -> Optional[str]:
    if release is None:
        release = uname().release

    directory = image_dir.format(release=release)

    for image_name in VDSO_IMAGE_NAMES:
        image_path = "%s/%s" % (directory, image_name)

        if exists(image_path):
            return image_path

    return None
