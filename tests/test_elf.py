import struct

import pytest

from apkforge.elf import DynTag, ElfError, ElfFile, is_elf, parse

INTERP = b"/lib/ld-musl-x86_64.so.1\x00"


def build_elf(
    *,
    bits=64,
    endian="<",
    interp=INTERP,
    needed=("libc.so.6",),
    soname="libfoo.so.1",
    dynamic=True,
    extra=(),
):
    is64 = bits == 64
    ehsize, phentsize, shentsize = (64, 56, 64) if is64 else (52, 32, 40)
    dyn_fmt = endian + ("qQ" if is64 else "iI")

    sections = [("", 0, b"", 0)]
    if interp is not None:
        sections.append((".interp", 1, interp, 0))
    if dynamic:
        dynstr = bytearray(b"\x00")
        entries = []
        pairs = [(1, name) for name in needed] + ([(14, soname)] if soname else [])
        for tag, text in pairs:
            entries.append((tag, len(dynstr)))
            dynstr += text.encode() + b"\x00"
        entries.append((0, 0))
        sections.append((".dynstr", 3, bytes(dynstr), 0))
        link = len(sections) - 1
        blob = b"".join(struct.pack(dyn_fmt, *entry) for entry in entries)
        sections.append((".dynamic", 6, blob, link))
    sections.extend((name, 1, blob, 0) for name, blob in extra)

    shstrtab = bytearray(b"\x00")
    name_offsets = []
    for name, *_ in sections:
        if name:
            name_offsets.append(len(shstrtab))
            shstrtab += name.encode() + b"\x00"
        else:
            name_offsets.append(0)
    name_offsets.append(len(shstrtab))
    shstrtab += b".shstrtab\x00"
    sections.append((".shstrtab", 3, bytes(shstrtab), 0))

    phnum = 1 if interp is not None else 0
    start = ehsize + phnum * phentsize
    body = bytearray()
    offsets = []
    for _, _, blob, _ in sections:
        offsets.append(start + len(body) if blob else 0)
        body += blob
    shoff = start + len(body)

    phdrs = b""
    if interp is not None:
        size = len(interp)
        if is64:
            phdrs = struct.pack(endian + "IIQQQQQQ", 3, 4, offsets[1], 0, 0, size, size, 1)
        else:
            phdrs = struct.pack(endian + "IIIIIIII", 3, offsets[1], 0, 0, size, size, 4, 1)

    sh_fmt = endian + ("IIQQQQIIQQ" if is64 else "IIIIIIIIII")
    shdrs = b"".join(
        struct.pack(sh_fmt, name_offsets[i], stype, 0, 0, offsets[i], len(blob), link, 0, 1, 0)
        for i, (_, stype, blob, link) in enumerate(sections)
    )
    ident = b"\x7fELF" + bytes([2 if is64 else 1, 1 if endian == "<" else 2, 1]) + bytes(9)
    header = ident + struct.pack(
        endian + ("HHIQQQIHHHHHH" if is64 else "HHIIIIIHHHHHH"),
        3, 62, 1, 0, ehsize if phnum else 0, shoff, 0,
        ehsize, phentsize, phnum, shentsize, len(sections), len(sections) - 1,
    )
    return header + phdrs + bytes(body) + shdrs


def test_is_elf_detects_magic():
    assert is_elf(build_elf()) is True
    assert is_elf(b"#!/bin/sh\necho hi\n") is False
    assert is_elf(b"") is False


def test_parse_rejects_non_elf():
    with pytest.raises(ElfError):
        parse(b"#!/bin/sh\necho hi\n")


def test_parse_rejects_truncated_header():
    with pytest.raises(ElfError):
        parse(build_elf()[:40])


def test_parse_rejects_unknown_class():
    data = bytearray(build_elf())
    data[4] = 7
    with pytest.raises(ElfError):
        parse(bytes(data))


@pytest.mark.parametrize("bits", [32, 64])
@pytest.mark.parametrize("endian", ["<", ">"])
def test_reads_interpreter_needed_and_soname(bits, endian):
    data = build_elf(bits=bits, endian=endian, needed=("libc.so.6", "libm.so.6"))
    elf = parse(data)
    assert elf.is_64bit is (bits == 64)
    assert elf.interpreter() == "/lib/ld-musl-x86_64.so.1"
    assert elf.imported_libraries() == ["libc.so.6", "libm.so.6"]
    assert elf.dynamic_strings(DynTag.SONAME) == ["libfoo.so.1"]


def test_missing_interpreter_gives_empty_string():
    elf = parse(build_elf(interp=None))
    assert elf.interpreter() == ""
    assert elf.imported_libraries() == ["libc.so.6"]


def test_missing_soname_gives_empty_list():
    elf = parse(build_elf(soname=None))
    assert elf.dynamic_strings(DynTag.SONAME) == []


def test_object_without_dynamic_section_has_no_libraries():
    elf = parse(build_elf(dynamic=False, interp=None))
    assert elf.imported_libraries() == []
    assert elf.dynamic_strings(DynTag.SONAME) == []


def test_non_string_tag_is_rejected():
    elf = parse(build_elf())
    with pytest.raises(ElfError):
        elf.dynamic_strings(DynTag.NULL)


def test_section_lookup_by_name():
    elf = parse(build_elf(extra=((".debug", b"debuginfo"),)))
    debug = elf.section(".debug")
    assert debug.data == b"debuginfo"
    assert elf.section(".zdebug") is None
    assert elf.section(".dynstr").type == 3


def test_accepts_bytearray():
    elf = ElfFile(bytearray(build_elf()))
    assert elf.imported_libraries() == ["libc.so.6"]