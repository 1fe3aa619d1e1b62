"""Read the parts of an ELF object that dependency scanning and linting need."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field

ELF_MAGIC = b"\x7fELF"


class ElfError(ValueError):
    """The data is not a well-formed ELF object."""


class ProgramType(enum.IntEnum):
    NULL = 0
    LOAD = 1
    DYNAMIC = 2
    INTERP = 3
    NOTE = 4


class SectionType(enum.IntEnum):
    NULL = 0
    PROGBITS = 1
    SYMTAB = 2
    STRTAB = 3
    RELA = 4
    HASH = 5
    DYNAMIC = 6
    NOTE = 7
    NOBITS = 8


class DynTag(enum.IntEnum):
    NULL = 0
    NEEDED = 1
    SONAME = 14
    RPATH = 15
    RUNPATH = 29


_STRING_TAGS = frozenset({DynTag.NEEDED, DynTag.SONAME, DynTag.RPATH, DynTag.RUNPATH})


@dataclass(frozen=True)
class Section:
    """One entry of the section header table, with its contents."""

    name: str
    type: int
    flags: int
    offset: int
    size: int
    link: int
    entsize: int
    data: bytes = field(repr=False)


@dataclass(frozen=True)
class ProgramHeader:
    """One entry of the program header table."""

    type: int
    flags: int
    offset: int
    filesz: int


def _unpack(fmt: str, data: bytes, offset: int, what: str) -> tuple:
    try:
        return struct.unpack_from(fmt, data, offset)
    except struct.error as exc:
        raise ElfError(f"truncated {what}") from exc


def _slice(data: bytes, offset: int, size: int, what: str) -> bytes:
    if offset < 0 or size < 0 or offset + size > len(data):
        raise ElfError(f"{what} lies outside the file")
    return data[offset : offset + size]


def _cstring(table: bytes, offset: int) -> str | None:
    if offset >= len(table):
        return None
    end = table.find(b"\x00", offset)
    if end < 0:
        end = len(table)
    return table[offset:end].decode("utf-8", errors="replace")


class ElfFile:
    """A parsed ELF object held in memory."""

    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        data = bytes(data)
        if len(data) < 16 or data[:4] != ELF_MAGIC:
            raise ElfError("bad magic number")
        ei_class, ei_data, ei_version = data[4], data[5], data[6]
        if ei_class == 1:
            self.is_64bit = False
        elif ei_class == 2:
            self.is_64bit = True
        else:
            raise ElfError(f"unknown ELF class {ei_class}")
        if ei_data == 1:
            endian, self.byte_order = "<", "little"
        elif ei_data == 2:
            endian, self.byte_order = ">", "big"
        else:
            raise ElfError(f"unknown ELF data encoding {ei_data}")
        if ei_version != 1:
            raise ElfError(f"unknown ELF version {ei_version}")

        self._data = data
        self._endian = endian
        header_fmt = endian + ("HHIQQQIHHHHHH" if self.is_64bit else "HHIIIIIHHHHHH")
        (
            self.type,
            self.machine,
            _version,
            _entry,
            phoff,
            shoff,
            _flags,
            _ehsize,
            phentsize,
            phnum,
            shentsize,
            shnum,
            shstrndx,
        ) = _unpack(header_fmt, data, 16, "ELF header")

        self.programs = tuple(self._read_programs(phoff, phentsize, phnum))
        self.sections = tuple(self._read_sections(shoff, shentsize, shnum, shstrndx))

    def _read_programs(self, phoff: int, phentsize: int, phnum: int):
        fmt = self._endian + ("IIQQQQQQ" if self.is_64bit else "IIIIIIII")
        if phnum and phentsize < struct.calcsize(fmt):
            raise ElfError("program header entries are too small")
        for index in range(phnum):
            fields = _unpack(fmt, self._data, phoff + index * phentsize, "program header")
            if self.is_64bit:
                p_type, p_flags, p_offset, _, _, p_filesz, _, _ = fields
            else:
                p_type, p_offset, _, _, p_filesz, _, p_flags, _ = fields
            yield ProgramHeader(type=p_type, flags=p_flags, offset=p_offset, filesz=p_filesz)

    def _read_sections(self, shoff: int, shentsize: int, shnum: int, shstrndx: int):
        fmt = self._endian + ("IIQQQQIIQQ" if self.is_64bit else "IIIIIIIIII")
        if shnum and shentsize < struct.calcsize(fmt):
            raise ElfError("section header entries are too small")
        raw = []
        for index in range(shnum):
            (name_off, s_type, s_flags, _addr, s_offset, s_size, s_link, _info, _align,
             s_entsize) = _unpack(fmt, self._data, shoff + index * shentsize, "section header")
            contents = (
                b"" if s_type == SectionType.NOBITS
                else _slice(self._data, s_offset, s_size, "section")
            )
            raw.append((name_off, s_type, s_flags, s_offset, s_size, s_link, s_entsize, contents))

        names = b""
        if 0 < shstrndx < len(raw):
            names = raw[shstrndx][7]
        for name_off, s_type, s_flags, s_offset, s_size, s_link, s_entsize, contents in raw:
            yield Section(
                name=_cstring(names, name_off) or "",
                type=s_type,
                flags=s_flags,
                offset=s_offset,
                size=s_size,
                link=s_link,
                entsize=s_entsize,
                data=contents,
            )

    def section(self, name: str) -> Section | None:
        """Return the first section called ``name``, or None."""
        return next((s for s in self.sections if s.name == name), None)

    def interpreter(self) -> str:
        """Return the program interpreter named by PT_INTERP, or "" when there is none."""
        for program in self.programs:
            if program.type != ProgramType.INTERP:
                continue
            raw = _slice(self._data, program.offset, program.filesz, "interpreter")
            return raw.strip(b"\x00").decode("utf-8", errors="replace")
        return ""

    def dynamic_strings(self, tag: int) -> list[str]:
        """Return the strings held by the dynamic entries carrying ``tag``."""
        tag = int(tag)
        if tag not in _STRING_TAGS:
            raise ElfError(f"non-string-valued tag {tag}")
        dynamic = next((s for s in self.sections if s.type == SectionType.DYNAMIC), None)
        if dynamic is None:
            return []
        if dynamic.link >= len(self.sections):
            raise ElfError("dynamic section links to a missing string table")
        strings = self.sections[dynamic.link].data

        fmt = self._endian + ("qQ" if self.is_64bit else "iI")
        size = struct.calcsize(fmt)
        usable = len(dynamic.data) - len(dynamic.data) % size
        found = []
        for entry_tag, value in struct.iter_unpack(fmt, dynamic.data[:usable]):
            if entry_tag != tag:
                continue
            text = _cstring(strings, value)
            if text is not None:
                found.append(text)
        return found

    def imported_libraries(self) -> list[str]:
        """Return the libraries this object needs at run time."""
        return self.dynamic_strings(DynTag.NEEDED)


def is_elf(data: bytes | bytearray | memoryview) -> bool:
    """Tell whether ``data`` starts with the ELF magic number."""
    return bytes(data[:4]) == ELF_MAGIC


def parse(data: bytes | bytearray | memoryview) -> ElfFile:
    """Parse ``data`` as an ELF object."""
    return ElfFile(data)