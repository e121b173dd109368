"""Minimal PE/COFF reader and writer for managed modules.

WHY: The relinker edits a managed module's metadata, which lives inside
a PE image at an RVA named by the CLI header. Finding it, and putting a
rebuilt (possibly larger) copy back, needs just enough of the PE format:
the headers, the section table, and data directory 14.

HOW: PEImage.parse() walks the DOS header, COFF header, optional header
(PE32 or PE32+) and section table with struct. read_metadata() maps the
metadata RVA to a file offset. write_metadata() stores a rebuilt blob in
place when it fits the original extent, otherwise at the tail of the
last section, updating section sizes, SizeOfImage and the CLI header.

RULES:
- Only images with a CLI header are accepted
- Nothing outside the touched header fields and the metadata is changed
- Growth needs the last section to end the file (no trailing overlay)
- Malformed images raise MetadataFormatError
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List

PE32_MAGIC = 0x10B
PE32_PLUS_MAGIC = 0x20B

CLI_HEADER_DIRECTORY = 14

SCN_MEM_DISCARDABLE = 0x02000000
SCN_MEM_READ = 0x40000000

_COFF_HEADER = struct.Struct("<HHIIIHH")
_SECTION_HEADER = struct.Struct("<8sIIIIIIHHI")


class MetadataFormatError(ValueError):
    """Raised when a module is not a well-formed managed PE image.

    WHY: A truncated or native-only file must stop the relink before
    anything is written; the original file stays untouched.
    """


def align(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


@dataclass
class Section:
    """One entry of the section table.

    RULES:
    - header_offset is the file offset of this section's 40-byte header
    """

    name: str
    virtual_size: int
    virtual_address: int
    raw_size: int
    raw_offset: int
    characteristics: int
    header_offset: int

    def contains_rva(self, rva: int) -> bool:
        extent = max(self.virtual_size, self.raw_size)
        return self.virtual_address <= rva < self.virtual_address + extent


class PEImage:
    """A managed PE image held in memory as a mutable byte array."""

    def __init__(self, data: bytes) -> None:
        self.data = bytearray(data)
        self._parse()

    @classmethod
    def parse(cls, data: bytes) -> PEImage:
        return cls(data)

    # ------------------------------------------------------------------
    # Header parsing
    # ------------------------------------------------------------------

    def _u16(self, offset: int) -> int:
        return struct.unpack_from("<H", self.data, offset)[0]

    def _u32(self, offset: int) -> int:
        return struct.unpack_from("<I", self.data, offset)[0]

    def _parse(self) -> None:
        data = self.data
        if len(data) < 0x40 or data[:2] != b"MZ":
            raise MetadataFormatError("Not a PE image (missing MZ header)")

        pe_offset = self._u32(0x3C)
        if data[pe_offset:pe_offset + 4] != b"PE\x00\x00":
            raise MetadataFormatError("Not a PE image (missing PE signature)")

        try:
            (_machine, section_count, _stamp, _symtab, _symbols,
             optional_size, _chars) = _COFF_HEADER.unpack_from(data, pe_offset + 4)
        except struct.error as e:
            raise MetadataFormatError("Truncated COFF header") from e

        self.optional_offset = pe_offset + 4 + _COFF_HEADER.size
        magic = self._u16(self.optional_offset)
        if magic == PE32_MAGIC:
            directories_offset = self.optional_offset + 96
        elif magic == PE32_PLUS_MAGIC:
            directories_offset = self.optional_offset + 112
        else:
            raise MetadataFormatError("Unknown optional header magic 0x{:x}".format(magic))

        self.is_pe32_plus = magic == PE32_PLUS_MAGIC
        self.section_alignment = self._u32(self.optional_offset + 32)
        self.file_alignment = self._u32(self.optional_offset + 36)
        directory_count = self._u32(directories_offset - 4)
        if directory_count <= CLI_HEADER_DIRECTORY:
            raise MetadataFormatError("Image has no CLI header directory")

        self.sections: List[Section] = []
        table_offset = self.optional_offset + optional_size
        for i in range(section_count):
            header_offset = table_offset + i * _SECTION_HEADER.size
            try:
                fields = _SECTION_HEADER.unpack_from(data, header_offset)
            except struct.error as e:
                raise MetadataFormatError("Truncated section table") from e
            self.sections.append(Section(
                name=fields[0].rstrip(b"\x00").decode("ascii", "replace"),
                virtual_size=fields[1],
                virtual_address=fields[2],
                raw_size=fields[3],
                raw_offset=fields[4],
                characteristics=fields[9],
                header_offset=header_offset,
            ))

        cli_rva = self._u32(directories_offset + CLI_HEADER_DIRECTORY * 8)
        if cli_rva == 0:
            raise MetadataFormatError("Image has no CLI header (not a managed module)")
        self.cli_header_offset = self.rva_to_offset(cli_rva)
        self.metadata_rva = self._u32(self.cli_header_offset + 8)
        self.metadata_size = self._u32(self.cli_header_offset + 12)

    def rva_to_offset(self, rva: int) -> int:
        for section in self.sections:
            if section.contains_rva(rva):
                return section.raw_offset + (rva - section.virtual_address)
        raise MetadataFormatError("RVA 0x{:x} is outside every section".format(rva))

    # ------------------------------------------------------------------
    # Metadata access
    # ------------------------------------------------------------------

    def read_metadata(self) -> bytes:
        offset = self.rva_to_offset(self.metadata_rva)
        end = offset + self.metadata_size
        if end > len(self.data):
            raise MetadataFormatError("Metadata extends past the end of the file")
        return bytes(self.data[offset:end])

    def write_metadata(self, blob: bytes) -> None:
        """Store a rebuilt metadata blob, growing the image if needed."""
        if len(blob) <= self.metadata_size:
            offset = self.rva_to_offset(self.metadata_rva)
            padding = self.metadata_size - len(blob)
            self.data[offset:offset + self.metadata_size] = blob + b"\x00" * padding
            self._set_metadata_directory(self.metadata_rva, len(blob))
            return
        self._append_to_last_section(blob)

    def _append_to_last_section(self, blob: bytes) -> None:
        last = max(self.sections, key=lambda s: s.virtual_address)
        if last.raw_offset + last.raw_size != len(self.data):
            raise MetadataFormatError(
                "Cannot grow metadata: data follows the last section ({})".format(last.name)
            )

        position = align(last.virtual_size or last.raw_size, 4)
        virtual_size = position + len(blob)
        raw_size = align(virtual_size, self.file_alignment)

        end = last.raw_offset + raw_size
        if len(self.data) < end:
            self.data.extend(b"\x00" * (end - len(self.data)))
        start = last.raw_offset + position
        self.data[start:start + len(blob)] = blob

        last.virtual_size = virtual_size
        last.raw_size = raw_size
        last.characteristics = (last.characteristics | SCN_MEM_READ) & ~SCN_MEM_DISCARDABLE
        struct.pack_into("<II", self.data, last.header_offset + 8, virtual_size, last.virtual_address)
        struct.pack_into("<I", self.data, last.header_offset + 16, raw_size)
        struct.pack_into("<I", self.data, last.header_offset + 36, last.characteristics)

        image_size = align(last.virtual_address + virtual_size, self.section_alignment)
        struct.pack_into("<I", self.data, self.optional_offset + 56, image_size)

        self._set_metadata_directory(last.virtual_address + position, len(blob))

    def _set_metadata_directory(self, rva: int, size: int) -> None:
        struct.pack_into("<II", self.data, self.cli_header_offset + 8, rva, size)
        self.metadata_rva = rva
        self.metadata_size = size

    def to_bytes(self) -> bytes:
        return bytes(self.data)
