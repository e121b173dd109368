"""ECMA-335 metadata reader and writer.

WHY: Relinking swaps assembly references inside a compiled module. The
references live in the metadata tables, their names and keys in the
#Strings and #Blob heaps, and every other table that points at a
reference has to follow when rows move. Rewriting the metadata is the
only way to do this without a full assembly-rewriting framework.

HOW: MetadataRoot splits the metadata blob into named streams and joins
them back. TableStream decodes the "#~" stream into plain row lists
using the schema below, and re-encodes it with column widths recomputed
from the new row counts and heap sizes. CliModule ties a PE image, its
root and its tables together and exposes the assembly-level operations
the relinker needs.

RULES:
- Only the compressed "#~" table stream is supported; "#-" raises
- Rows are lists of ints: heap offsets, 1-based row indexes, raw
  coded-index values and fixed-width integers, in column order
- Untouched tables re-encode to the same values
- Heaps only grow; existing offsets stay valid
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from vanilla_coreifier.relink.pe import MetadataFormatError, PEImage, align

logger = logging.getLogger(__name__)

METADATA_SIGNATURE = 0x424A5342

(
    MODULE, TYPE_REF, TYPE_DEF, FIELD_PTR, FIELD, METHOD_PTR, METHOD_DEF,
    PARAM_PTR, PARAM, INTERFACE_IMPL, MEMBER_REF, CONSTANT, CUSTOM_ATTRIBUTE,
    FIELD_MARSHAL, DECL_SECURITY, CLASS_LAYOUT, FIELD_LAYOUT, STANDALONE_SIG,
    EVENT_MAP, EVENT_PTR, EVENT, PROPERTY_MAP, PROPERTY_PTR, PROPERTY,
    METHOD_SEMANTICS, METHOD_IMPL, MODULE_REF, TYPE_SPEC, IMPL_MAP, FIELD_RVA,
    ENC_LOG, ENC_MAP, ASSEMBLY, ASSEMBLY_PROCESSOR, ASSEMBLY_OS, ASSEMBLY_REF,
    ASSEMBLY_REF_PROCESSOR, ASSEMBLY_REF_OS, FILE, EXPORTED_TYPE,
    MANIFEST_RESOURCE, NESTED_CLASS, GENERIC_PARAM, METHOD_SPEC,
    GENERIC_PARAM_CONSTRAINT,
) = range(0x2D)

TABLE_COUNT = 0x2D

# HeapSizes flags in the "#~" header
HEAP_STRINGS_WIDE = 0x01
HEAP_GUID_WIDE = 0x02
HEAP_BLOB_WIDE = 0x04
HEAP_EXTRA_DATA = 0x40

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

# Coded index name -> (tag bits, tables by tag; None marks an unused tag)
CODED_INDEXES: Dict[str, Tuple[int, Sequence[Optional[int]]]] = {
    "TypeDefOrRef": (2, (TYPE_DEF, TYPE_REF, TYPE_SPEC)),
    "HasConstant": (2, (FIELD, PARAM, PROPERTY)),
    "HasCustomAttribute": (5, (
        METHOD_DEF, FIELD, TYPE_REF, TYPE_DEF, PARAM, INTERFACE_IMPL,
        MEMBER_REF, MODULE, DECL_SECURITY, PROPERTY, EVENT, STANDALONE_SIG,
        MODULE_REF, TYPE_SPEC, ASSEMBLY, ASSEMBLY_REF, FILE, EXPORTED_TYPE,
        MANIFEST_RESOURCE, GENERIC_PARAM, GENERIC_PARAM_CONSTRAINT, METHOD_SPEC,
    )),
    "HasFieldMarshal": (1, (FIELD, PARAM)),
    "HasDeclSecurity": (2, (TYPE_DEF, METHOD_DEF, ASSEMBLY)),
    "MemberRefParent": (3, (TYPE_DEF, TYPE_REF, MODULE_REF, METHOD_DEF, TYPE_SPEC)),
    "HasSemantics": (1, (EVENT, PROPERTY)),
    "MethodDefOrRef": (1, (METHOD_DEF, MEMBER_REF)),
    "MemberForwarded": (1, (FIELD, METHOD_DEF)),
    "Implementation": (2, (FILE, ASSEMBLY_REF, EXPORTED_TYPE)),
    "CustomAttributeType": (3, (None, None, METHOD_DEF, MEMBER_REF, None)),
    "ResolutionScope": (2, (MODULE, MODULE_REF, ASSEMBLY_REF, TYPE_REF)),
    "TypeOrMethodDef": (1, (TYPE_DEF, METHOD_DEF)),
}

# Column kinds: ("u", width) | ("heap", name) | ("index", table) | ("coded", name)
U1 = ("u", 1)
U2 = ("u", 2)
U4 = ("u", 4)
STRING = ("heap", "#Strings")
GUID = ("heap", "#GUID")
BLOB = ("heap", "#Blob")


def _index(table: int) -> Tuple[str, int]:
    return ("index", table)


def _coded(name: str) -> Tuple[str, str]:
    return ("coded", name)


TABLE_SCHEMA: Dict[int, Sequence[tuple]] = {
    MODULE: (U2, STRING, GUID, GUID, GUID),
    TYPE_REF: (_coded("ResolutionScope"), STRING, STRING),
    TYPE_DEF: (U4, STRING, STRING, _coded("TypeDefOrRef"), _index(FIELD), _index(METHOD_DEF)),
    FIELD_PTR: (_index(FIELD),),
    FIELD: (U2, STRING, BLOB),
    METHOD_PTR: (_index(METHOD_DEF),),
    METHOD_DEF: (U4, U2, U2, STRING, BLOB, _index(PARAM)),
    PARAM_PTR: (_index(PARAM),),
    PARAM: (U2, U2, STRING),
    INTERFACE_IMPL: (_index(TYPE_DEF), _coded("TypeDefOrRef")),
    MEMBER_REF: (_coded("MemberRefParent"), STRING, BLOB),
    CONSTANT: (U1, U1, _coded("HasConstant"), BLOB),
    CUSTOM_ATTRIBUTE: (_coded("HasCustomAttribute"), _coded("CustomAttributeType"), BLOB),
    FIELD_MARSHAL: (_coded("HasFieldMarshal"), BLOB),
    DECL_SECURITY: (U2, _coded("HasDeclSecurity"), BLOB),
    CLASS_LAYOUT: (U2, U4, _index(TYPE_DEF)),
    FIELD_LAYOUT: (U4, _index(FIELD)),
    STANDALONE_SIG: (BLOB,),
    EVENT_MAP: (_index(TYPE_DEF), _index(EVENT)),
    EVENT_PTR: (_index(EVENT),),
    EVENT: (U2, STRING, _coded("TypeDefOrRef")),
    PROPERTY_MAP: (_index(TYPE_DEF), _index(PROPERTY)),
    PROPERTY_PTR: (_index(PROPERTY),),
    PROPERTY: (U2, STRING, BLOB),
    METHOD_SEMANTICS: (U2, _index(METHOD_DEF), _coded("HasSemantics")),
    METHOD_IMPL: (_index(TYPE_DEF), _coded("MethodDefOrRef"), _coded("MethodDefOrRef")),
    MODULE_REF: (STRING,),
    TYPE_SPEC: (BLOB,),
    IMPL_MAP: (U2, _coded("MemberForwarded"), STRING, _index(MODULE_REF)),
    FIELD_RVA: (U4, _index(FIELD)),
    ENC_LOG: (U4, U4),
    ENC_MAP: (U4,),
    ASSEMBLY: (U4, U2, U2, U2, U2, U4, BLOB, STRING, STRING),
    ASSEMBLY_PROCESSOR: (U4,),
    ASSEMBLY_OS: (U4, U4, U4),
    ASSEMBLY_REF: (U2, U2, U2, U2, U4, BLOB, STRING, STRING, BLOB),
    ASSEMBLY_REF_PROCESSOR: (U4, _index(ASSEMBLY_REF)),
    ASSEMBLY_REF_OS: (U4, U4, U4, _index(ASSEMBLY_REF)),
    FILE: (U4, STRING, BLOB),
    EXPORTED_TYPE: (U4, U4, STRING, STRING, _coded("Implementation")),
    MANIFEST_RESOURCE: (U4, U4, STRING, _coded("Implementation")),
    NESTED_CLASS: (_index(TYPE_DEF), _index(TYPE_DEF)),
    GENERIC_PARAM: (U2, U2, _coded("TypeOrMethodDef"), STRING),
    METHOD_SPEC: (_coded("MethodDefOrRef"), BLOB),
    GENERIC_PARAM_CONSTRAINT: (_index(GENERIC_PARAM), _coded("TypeDefOrRef")),
}


def coded_tag(name: str, table: int) -> int:
    """Tag value of ``table`` within coded index ``name``."""
    return list(CODED_INDEXES[name][1]).index(table)


def encode_coded(name: str, table: int, row: int) -> int:
    bits = CODED_INDEXES[name][0]
    return (row << bits) | coded_tag(name, table)


def decode_coded(name: str, value: int) -> Tuple[Optional[int], int]:
    """Split a coded index into (table, row). Unused tags give table None."""
    bits, tables = CODED_INDEXES[name]
    tag = value & ((1 << bits) - 1)
    table = tables[tag] if tag < len(tables) else None
    return table, value >> bits


# ---------------------------------------------------------------------------
# Heaps
# ---------------------------------------------------------------------------


def read_compressed_uint(data: bytes, offset: int) -> Tuple[int, int]:
    """Decode an ECMA-335 compressed unsigned integer.

    Returns:
        (value, number of bytes consumed)
    """
    first = data[offset]
    if first & 0x80 == 0:
        return first, 1
    if first & 0xC0 == 0x80:
        return ((first & 0x3F) << 8) | data[offset + 1], 2
    if first & 0xE0 == 0xC0:
        value = struct.unpack_from(">I", data, offset)[0] & 0x1FFFFFFF
        return value, 4
    raise MetadataFormatError("Bad compressed integer at blob offset {}".format(offset))


def write_compressed_uint(value: int) -> bytes:
    if value < 0x80:
        return bytes((value,))
    if value < 0x4000:
        return struct.pack(">H", 0x8000 | value)
    if value < 0x20000000:
        return struct.pack(">I", 0xC0000000 | value)
    raise ValueError("Value too large for a compressed integer: {}".format(value))


# ---------------------------------------------------------------------------
# Metadata root
# ---------------------------------------------------------------------------


class MetadataRoot:
    """The metadata header plus its named streams, in original order."""

    def __init__(self, header: bytes, flags: int, streams: List[Tuple[str, bytes]]) -> None:
        # header: signature through the padded version string
        self.header = header
        self.flags = flags
        self.streams = streams

    @classmethod
    def parse(cls, blob: bytes) -> MetadataRoot:
        try:
            signature, _major, _minor, _reserved, length = struct.unpack_from("<IHHII", blob, 0)
        except struct.error as e:
            raise MetadataFormatError("Truncated metadata root") from e
        if signature != METADATA_SIGNATURE:
            raise MetadataFormatError("Bad metadata signature 0x{:08x}".format(signature))

        offset = 16 + length
        streams: List[Tuple[str, bytes]] = []
        try:
            flags, count = struct.unpack_from("<HH", blob, offset)
            offset += 4
            for _ in range(count):
                stream_offset, size = struct.unpack_from("<II", blob, offset)
                offset += 8
                end = blob.index(b"\x00", offset)
                name = blob[offset:end].decode("ascii")
                offset = align(end + 1, 4)
                if stream_offset + size > len(blob):
                    raise MetadataFormatError("Stream {} extends past the metadata".format(name))
                streams.append((name, bytes(blob[stream_offset:stream_offset + size])))
        except (struct.error, ValueError) as e:
            if isinstance(e, MetadataFormatError):
                raise
            raise MetadataFormatError("Malformed metadata stream headers") from e

        return cls(bytes(blob[:16 + length]), flags, streams)

    def get(self, name: str) -> Optional[bytes]:
        for stream_name, data in self.streams:
            if stream_name == name:
                return data
        return None

    def set(self, name: str, data: bytes) -> None:
        for i, (stream_name, _) in enumerate(self.streams):
            if stream_name == name:
                self.streams[i] = (name, data)
                return
        self.streams.append((name, data))

    def to_bytes(self) -> bytes:
        headers_size = sum(8 + align(len(name) + 1, 4) for name, _ in self.streams)
        offset = len(self.header) + 4 + headers_size

        out = bytearray(self.header)
        out += struct.pack("<HH", self.flags, len(self.streams))
        body = bytearray()
        for name, data in self.streams:
            padded = align(len(data), 4)
            out += struct.pack("<II", offset + len(body), padded)
            encoded = name.encode("ascii") + b"\x00"
            out += encoded + b"\x00" * (align(len(encoded), 4) - len(encoded))
            body += data + b"\x00" * (padded - len(data))
        return bytes(out + body)


# ---------------------------------------------------------------------------
# Table stream
# ---------------------------------------------------------------------------


class TableStream:
    """Decoded "#~" stream: header fields plus row lists per table."""

    def __init__(
        self,
        header: bytes,
        heap_sizes: int,
        valid: int,
        sorted_mask: int,
        rows: Dict[int, List[List[int]]],
        extra: bytes,
        reserved: int = 1,
    ) -> None:
        self.header = header  # reserved, major, minor (first 6 bytes)
        self.heap_sizes = heap_sizes
        self.reserved = reserved
        self.valid = valid
        self.sorted_mask = sorted_mask
        self.rows = rows
        self.extra = extra
        self._original_counts = {t: len(r) for t, r in rows.items()}

    @staticmethod
    def _heap_width(heap_sizes: int, heap: str) -> int:
        flag = {"#Strings": HEAP_STRINGS_WIDE, "#GUID": HEAP_GUID_WIDE, "#Blob": HEAP_BLOB_WIDE}[heap]
        return 4 if heap_sizes & flag else 2

    @staticmethod
    def _column_widths(heap_sizes: int, counts: Dict[int, int]) -> Dict[int, List[int]]:
        def width(column: tuple) -> int:
            kind, arg = column
            if kind == "u":
                return arg
            if kind == "heap":
                return TableStream._heap_width(heap_sizes, arg)
            if kind == "index":
                return 2 if counts.get(arg, 0) < 0x10000 else 4
            bits, tables = CODED_INDEXES[arg]
            largest = max(counts.get(t, 0) for t in tables if t is not None)
            return 2 if largest < (1 << (16 - bits)) else 4

        return {table: [width(c) for c in schema] for table, schema in TABLE_SCHEMA.items()}

    @classmethod
    def parse(cls, data: bytes) -> TableStream:
        try:
            heap_sizes, reserved = data[6], data[7]
            valid, sorted_mask = struct.unpack_from("<QQ", data, 8)
        except (IndexError, struct.error) as e:
            raise MetadataFormatError("Truncated table stream header") from e

        if valid >> TABLE_COUNT:
            raise MetadataFormatError("Module uses unsupported metadata tables")

        offset = 24
        counts: Dict[int, int] = {}
        for table in range(TABLE_COUNT):
            if valid & (1 << table):
                counts[table] = struct.unpack_from("<I", data, offset)[0]
                offset += 4

        extra = b""
        if heap_sizes & HEAP_EXTRA_DATA:
            extra = bytes(data[offset:offset + 4])
            offset += 4

        widths = cls._column_widths(heap_sizes, counts)
        rows: Dict[int, List[List[int]]] = {}
        for table in range(TABLE_COUNT):
            if table not in counts:
                continue
            table_widths = widths[table]
            table_rows = []
            for _ in range(counts[table]):
                row = []
                for w in table_widths:
                    if offset + w > len(data):
                        raise MetadataFormatError("Table stream is truncated")
                    row.append(int.from_bytes(data[offset:offset + w], "little"))
                    offset += w
                table_rows.append(row)
            rows[table] = table_rows

        return cls(bytes(data[:6]), heap_sizes, valid, sorted_mask, rows, extra, reserved)

    def encode(self, strings_size: int, guid_size: int, blob_size: int) -> bytes:
        heap_sizes = self.heap_sizes
        if strings_size >= 0x10000:
            heap_sizes |= HEAP_STRINGS_WIDE
        if guid_size >= 0x10000:
            heap_sizes |= HEAP_GUID_WIDE
        if blob_size >= 0x10000:
            heap_sizes |= HEAP_BLOB_WIDE

        # Tables emptied here drop out of the mask; ones present-but-empty stay
        valid = 0
        for table in range(TABLE_COUNT):
            count = len(self.rows.get(table, ()))
            originally_empty = self._original_counts.get(table) == 0
            if count or originally_empty:
                valid |= 1 << table

        counts = {t: len(self.rows.get(t, ())) for t in range(TABLE_COUNT) if valid & (1 << t)}
        widths = self._column_widths(heap_sizes, counts)

        out = bytearray(self.header)
        out += struct.pack("<BBQQ", heap_sizes, self.reserved, valid, self.sorted_mask)
        for table in range(TABLE_COUNT):
            if table in counts:
                out += struct.pack("<I", counts[table])
        out += self.extra
        for table in range(TABLE_COUNT):
            if table not in counts:
                continue
            table_widths = widths[table]
            for row in self.rows[table]:
                for value, w in zip(row, table_widths):
                    out += value.to_bytes(w, "little")
        return bytes(out)


# ---------------------------------------------------------------------------
# Module
# ---------------------------------------------------------------------------


@dataclass
class AssemblyIdentity:
    """Name, version and key of an assembly or assembly reference."""

    name: str
    version: Tuple[int, int, int, int]
    flags: int
    public_key: bytes
    culture: str = ""

    @property
    def version_string(self) -> str:
        return ".".join(str(part) for part in self.version)


class CliModule:
    """A managed module opened for metadata editing."""

    def __init__(self, data: bytes) -> None:
        self.image = PEImage.parse(data)
        self.root = MetadataRoot.parse(self.image.read_metadata())

        if self.root.get("#-") is not None:
            raise MetadataFormatError("Uncompressed (#-) metadata tables are not supported")
        tables = self.root.get("#~")
        if tables is None:
            raise MetadataFormatError("Module has no #~ metadata stream")
        self.tables = TableStream.parse(tables)
        self.strings = bytearray(self.root.get("#Strings") or b"\x00")
        self.blobs = bytearray(self.root.get("#Blob") or b"\x00")

    @classmethod
    def load(cls, path: Path) -> CliModule:
        with open(path, "rb") as f:
            return cls(f.read())

    # ------------------------------------------------------------------
    # Heaps
    # ------------------------------------------------------------------

    def string(self, offset: int) -> str:
        end = self.strings.index(b"\x00", offset)
        return self.strings[offset:end].decode("utf-8")

    def blob(self, offset: int) -> bytes:
        if offset == 0:
            return b""
        length, used = read_compressed_uint(self.blobs, offset)
        start = offset + used
        return bytes(self.blobs[start:start + length])

    def add_string(self, value: str) -> int:
        """Return a #Strings offset for value, reusing an existing entry."""
        if not value:
            return 0
        encoded = value.encode("utf-8") + b"\x00"
        found = self.strings.find(encoded)
        if found > 0:
            return found
        offset = len(self.strings)
        self.strings += encoded
        return offset

    def add_blob(self, value: bytes) -> int:
        if not value:
            return 0
        offset = len(self.blobs)
        self.blobs += write_compressed_uint(len(value)) + value
        return offset

    # ------------------------------------------------------------------
    # Assemblies
    # ------------------------------------------------------------------

    def assembly_identity(self) -> AssemblyIdentity:
        rows = self.tables.rows.get(ASSEMBLY)
        if not rows:
            raise MetadataFormatError("Module has no assembly manifest")
        _hash_alg, major, minor, build, rev, flags, key, name, culture = rows[0]
        return AssemblyIdentity(
            name=self.string(name),
            version=(major, minor, build, rev),
            flags=flags,
            public_key=self.blob(key),
            culture=self.string(culture),
        )

    def assembly_references(self) -> List[AssemblyIdentity]:
        refs = []
        for row in self.tables.rows.get(ASSEMBLY_REF, []):
            major, minor, build, rev, flags, key, name, culture, _hash = row
            refs.append(AssemblyIdentity(
                name=self.string(name),
                version=(major, minor, build, rev),
                flags=flags,
                public_key=self.blob(key),
                culture=self.string(culture),
            ))
        return refs

    def replace_assembly_references(
        self,
        removed: Sequence[int],
        replacement: AssemblyIdentity,
    ) -> bool:
        """Remove the given AssemblyRef rows and point their users at one replacement.

        Args:
            removed: 0-based AssemblyRef row positions to remove.
            replacement: Identity of the assembly that takes their place.

        Returns:
            True when a new reference row was appended, False when an
            existing reference to the replacement was reused.

        RULES:
        - Rows are removed from the highest position down
        - TypeRef scopes and Implementation columns that named a removed
          row are redirected to the replacement
        - Custom attributes and OS/processor rows owned by a removed row
          are dropped
        """
        refs = self.tables.rows.setdefault(ASSEMBLY_REF, [])
        removed_rows = {i + 1 for i in removed}
        original_count = len(refs)

        existing = None
        for i, ref in enumerate(self.assembly_references()):
            if i + 1 not in removed_rows and ref.name == replacement.name:
                existing = i + 1
                break

        appended = existing is None
        if appended:
            refs.append([
                replacement.version[0], replacement.version[1],
                replacement.version[2], replacement.version[3],
                replacement.flags,
                self.add_blob(replacement.public_key),
                self.add_string(replacement.name),
                self.add_string(replacement.culture),
                0,
            ])
            target_old = original_count + 1
        else:
            target_old = existing

        for position in sorted(removed, reverse=True):
            del refs[position]

        # Old 1-based row -> new 1-based row
        remap: Dict[int, int] = {}
        shift = 0
        for old in range(1, original_count + 2):
            if old in removed_rows:
                shift += 1
                continue
            remap[old] = old - shift
        target = remap[target_old]
        for old in removed_rows:
            remap[old] = target

        self._remap_references(remap, removed_rows)
        return appended

    def _remap_references(self, remap: Dict[int, int], removed_rows: set) -> None:
        rows = self.tables.rows

        def remap_coded(name: str, value: int) -> int:
            table, row = decode_coded(name, value)
            if table != ASSEMBLY_REF or row == 0:
                return value
            return encode_coded(name, ASSEMBLY_REF, remap.get(row, row))

        for row in rows.get(TYPE_REF, []):
            row[0] = remap_coded("ResolutionScope", row[0])
        for row in rows.get(EXPORTED_TYPE, []):
            row[4] = remap_coded("Implementation", row[4])
        for row in rows.get(MANIFEST_RESOURCE, []):
            row[3] = remap_coded("Implementation", row[3])

        def owned_by_removed(name: str, value: int) -> bool:
            table, row = decode_coded(name, value)
            return table == ASSEMBLY_REF and row in removed_rows

        if CUSTOM_ATTRIBUTE in rows:
            kept = [
                row for row in rows[CUSTOM_ATTRIBUTE]
                if not owned_by_removed("HasCustomAttribute", row[0])
            ]
            for row in kept:
                row[0] = remap_coded("HasCustomAttribute", row[0])
            kept.sort(key=lambda row: row[0])
            rows[CUSTOM_ATTRIBUTE] = kept

        for table, column in ((ASSEMBLY_REF_PROCESSOR, 1), (ASSEMBLY_REF_OS, 3)):
            if table in rows:
                kept = [row for row in rows[table] if row[column] not in removed_rows]
                for row in kept:
                    row[column] = remap.get(row[column], row[column])
                rows[table] = kept

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        guid = self.root.get("#GUID") or b""
        self.root.set("#Strings", bytes(self.strings))
        self.root.set("#Blob", bytes(self.blobs))
        self.root.set("#~", self.tables.encode(len(self.strings), len(guid), len(self.blobs)))
        self.image.write_metadata(self.root.to_bytes())
        logger.debug(
            "Rebuilt metadata: %d bytes at RVA 0x%x",
            self.image.metadata_size, self.image.metadata_rva,
        )
        return self.image.to_bytes()
