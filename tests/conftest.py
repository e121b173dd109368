"""Shared test fixtures for the vanilla_coreifier test suite.

WHY: Most test modules need the same three things: a small but real
managed module to relink, an Everest source tree (on disk or as a
release archive), and an HTTP client that never touches the network.
Centralizing them here keeps every test on the same layout.

HOW:
  build_module     — synthesises a PE image with ECMA-335 metadata
                     (Module, TypeRef, TypeDef, CustomAttribute,
                     Assembly, AssemblyRef tables) from plain arguments
  everest_tree     — writes an Everest source folder under tmp_path,
                     including importable collaborator modules
  everest_archive  — the same tree zipped under "main/"
  mock_client      — builds an httpx.Client on a MockTransport

RULES:
- Built modules use 2-byte heap and table indexes (everything is small)
- Collaborator modules imported through the hook are removed from
  sys.modules after each test
- Temp files created by the code under test land in a per-test folder
"""

from __future__ import annotations

import io
import json
import struct
import sys
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple

import httpx
import pytest


# ---------------------------------------------------------------------------
# Managed module builder
# ---------------------------------------------------------------------------

TEXT_RVA = 0x2000
SECTION_ALIGNMENT = 0x2000
FILE_ALIGNMENT = 0x200
CLI_HEADER_SIZE = 72
SORTED_TABLES = 0x000016003301FA00

Version = Tuple[int, int, int, int]


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def _pad4(data: bytes) -> bytes:
    return data + b"\x00" * (-len(data) % 4)


class _Heaps:
    def __init__(self) -> None:
        self.strings = bytearray(b"\x00")
        self.blobs = bytearray(b"\x00")
        self._string_offsets: Dict[str, int] = {}

    def s(self, text: str) -> int:
        if not text:
            return 0
        if text not in self._string_offsets:
            self._string_offsets[text] = len(self.strings)
            self.strings += text.encode("utf-8") + b"\x00"
        return self._string_offsets[text]

    def b(self, data: bytes) -> int:
        if not data:
            return 0
        offset = len(self.blobs)
        if len(data) < 0x80:
            self.blobs += bytes((len(data),))
        else:
            self.blobs += struct.pack(">H", 0x8000 | len(data))
        self.blobs += data
        return offset


def _metadata_root(streams: Sequence[Tuple[str, bytes]]) -> bytes:
    version = b"v4.0.30319\x00\x00"
    header = struct.pack("<IHHII", 0x424A5342, 1, 1, 0, len(version)) + version
    header += struct.pack("<HH", 0, len(streams))
    headers_size = sum(8 + _align(len(name) + 1, 4) for name, _ in streams)

    offset = len(header) + headers_size
    body = b""
    for name, data in streams:
        data = _pad4(data)
        encoded = name.encode("ascii") + b"\x00"
        header += struct.pack("<II", offset + len(body), len(data))
        header += encoded + b"\x00" * (-len(encoded) % 4)
        body += data
    return header + body


def build_module(
    assembly_name: str = "Celeste",
    version: Version = (1, 4, 0, 0),
    references: Iterable[Tuple[str, Version]] = (("mscorlib", (4, 0, 0, 0)),),
    type_refs: Iterable[Tuple[int, str, str]] = (),
    ref_attributes: Iterable[int] = (),
    public_key: bytes = b"",
    pe32_plus: bool = False,
    trailing: bytes = b"",
) -> bytes:
    """Build a managed PE image.

    Args:
        assembly_name: Name in the Assembly row (also "<name>.dll" module name).
        version: Assembly version.
        references: (name, version) per AssemblyRef row, in order.
        type_refs: (1-based AssemblyRef row, namespace, name) per TypeRef.
        ref_attributes: 1-based AssemblyRef rows that own a custom attribute.
            When non-empty, the Assembly row gets one as well.
        public_key: Assembly public key (sets the PublicKey flag).
        pe32_plus: Emit a PE32+ optional header.
        trailing: Bytes appended after the last section.
    """
    heaps = _Heaps()
    tables: Dict[int, list] = {}

    tables[0x00] = [struct.pack("<HHHHH", 0, heaps.s(assembly_name + ".dll"), 1, 0, 0)]

    type_ref_rows = [
        struct.pack("<HHH", (row << 2) | 2, heaps.s(name), heaps.s(namespace))
        for row, namespace, name in type_refs
    ]
    if type_ref_rows:
        tables[0x01] = type_ref_rows

    tables[0x02] = [struct.pack("<IHHHHH", 0, heaps.s("<Module>"), 0, 0, 1, 1)]

    ref_attributes = list(ref_attributes)
    if ref_attributes:
        # Type column points at MemberRef row 1 (tag 3)
        attribute_type = (1 << 3) | 3
        parents = [(1 << 5) | 14] + [(row << 5) | 15 for row in ref_attributes]
        tables[0x0C] = [
            struct.pack("<HHH", parent, attribute_type, 0) for parent in sorted(parents)
        ]

    flags = 0x0001 if public_key else 0
    tables[0x20] = [struct.pack(
        "<IHHHHIHHH", 0x8004, *version, flags, heaps.b(public_key), heaps.s(assembly_name), 0,
    )]

    tables[0x23] = [
        struct.pack("<HHHHIHHHH", *ref_version, 0, 0, heaps.s(name), 0, 0)
        for name, ref_version in references
    ]

    valid = 0
    for table in tables:
        valid |= 1 << table
    table_stream = struct.pack("<IBBBBQQ", 0, 2, 0, 0, 1, valid, SORTED_TABLES)
    for table in sorted(tables):
        table_stream += struct.pack("<I", len(tables[table]))
    for table in sorted(tables):
        table_stream += b"".join(tables[table])

    metadata = _metadata_root([
        ("#~", table_stream),
        ("#Strings", bytes(heaps.strings)),
        ("#US", b"\x00"),
        ("#GUID", b"\x11" * 16),
        ("#Blob", bytes(heaps.blobs)),
    ])

    cli_header = struct.pack(
        "<IHHIIII", CLI_HEADER_SIZE, 2, 5, TEXT_RVA + CLI_HEADER_SIZE, len(metadata), 1, 0,
    )
    cli_header += b"\x00" * (CLI_HEADER_SIZE - len(cli_header))
    text = cli_header + metadata
    text_raw = _align(len(text), FILE_ALIGNMENT)

    reloc_rva = _align(TEXT_RVA + len(text), SECTION_ALIGNMENT)
    reloc_offset = FILE_ALIGNMENT + text_raw
    reloc = struct.pack("<IIHH", TEXT_RVA, 12, 0, 0)
    image_size = _align(reloc_rva + len(reloc), SECTION_ALIGNMENT)

    optional_size = 240 if pe32_plus else 224
    optional = bytearray(optional_size)
    struct.pack_into("<H", optional, 0, 0x20B if pe32_plus else 0x10B)
    struct.pack_into("<II", optional, 32, SECTION_ALIGNMENT, FILE_ALIGNMENT)
    struct.pack_into("<II", optional, 56, image_size, FILE_ALIGNMENT)
    directories = 112 if pe32_plus else 96
    struct.pack_into("<I", optional, directories - 4, 16)
    struct.pack_into("<II", optional, directories + 14 * 8, TEXT_RVA, CLI_HEADER_SIZE)

    dos = bytearray(0x80)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, 0x80)

    machine = 0x8664 if pe32_plus else 0x14C
    headers = bytes(dos) + b"PE\x00\x00"
    headers += struct.pack("<HHIIIHH", machine, 2, 0, 0, 0, optional_size, 0x2102)
    headers += bytes(optional)
    headers += struct.pack(
        "<8sIIIIIIHHI", b".text", len(text), TEXT_RVA, text_raw, FILE_ALIGNMENT,
        0, 0, 0, 0, 0x60000020,
    )
    headers += struct.pack(
        "<8sIIIIIIHHI", b".reloc", len(reloc), reloc_rva, FILE_ALIGNMENT, reloc_offset,
        0, 0, 0, 0, 0x42000040,
    )
    headers += b"\x00" * (FILE_ALIGNMENT - len(headers))

    text += b"\x00" * (text_raw - len(text))
    reloc += b"\x00" * (FILE_ALIGNMENT - len(reloc))
    return headers + text + reloc + trailing


XNA_REFERENCES = (
    ("mscorlib", (4, 0, 0, 0)),
    ("Microsoft.Xna.Framework", (4, 0, 0, 0)),
    ("Microsoft.Xna.Framework.Game", (4, 0, 0, 0)),
    ("Microsoft.Xna.Framework.Graphics", (4, 0, 0, 0)),
)


@pytest.fixture
def module_builder() -> Callable[..., bytes]:
    """The build_module() function, for tests that need custom modules."""
    return build_module


@pytest.fixture
def xna_module() -> bytes:
    """A game module referencing mscorlib and three XNA assemblies."""
    return build_module(
        references=XNA_REFERENCES,
        type_refs=[
            (2, "Microsoft.Xna.Framework", "Vector2"),
            (1, "System", "Object"),
            (4, "Microsoft.Xna.Framework.Graphics", "Texture2D"),
        ],
    )


@pytest.fixture
def fna_module() -> bytes:
    """The replacement framework module."""
    return build_module(assembly_name="FNA", version=(23, 3, 0, 0))


# ---------------------------------------------------------------------------
# Everest source tree
# ---------------------------------------------------------------------------

COLLABORATOR_MODULES = ("netcoreifier", "miniinstaller", "hostwriter", "vc_helper")

NETCOREIFIER_PY = '''\
import shutil
from pathlib import Path

import vc_helper

CALLS = []


def convert_to_net_core(input_path, output_path):
    CALLS.append((input_path, output_path))
    template = Path(__file__).resolve().parent / "converted-template.dll"
    shutil.copyfile(str(template), output_path)
    vc_helper.mark(output_path)
'''

MINIINSTALLER_PY = '''\
from pathlib import Path


def create_runtime_config_files(module_path, extra):
    path = Path(module_path)
    path.with_suffix(".runtimeconfig.json").write_text("{}")
'''

HOSTWRITER_PY = '''\
from pathlib import Path


def create_app_host(template_path, host_path, entry_relative_path,
                    resources_from=None, windows_gui=False):
    Path(host_path).write_text(
        "host:{}:{}".format(Path(template_path).name, entry_relative_path)
    )
'''

VC_HELPER_PY = '''\
MARKED = []


def mark(path):
    MARKED.append(path)
'''


def _everest_files(converted: bytes, fna: bytes) -> Dict[str, bytes]:
    return {
        "everest-lib/FNA.dll": fna,
        "everest-lib/FNA.pdb": b"fna-symbols",
        "everest-lib/piton-runtime.yaml": b"runtime: piton\n",
        "everest-lib/lib64-linux/libSDL2-2.0.so.0": b"everest-sdl2",
        "everest-lib/lib64-linux/libFNA3D.so.0": b"everest-fna3d",
        "everest-lib/lib64-win-x64/SDL2.dll": b"everest-sdl2-x64",
        "everest-lib/lib64-win-x64/fmodstudio64.dll": b"everest-fmod-x64",
        "everest-lib/lib64-win-x86/SDL2.dll": b"everest-sdl2-x86",
        "everest-lib/lib64-osx/libSDL2-2.0.0.dylib": b"everest-sdl2-osx",
        "everest-lib/lib64-osx/libFAudio.0.dylib": b"everest-faudio-osx",
        "everest-lib/docs/nested/readme.txt": b"nested",
        "piton-apphosts/linux": b"linux-template",
        "piton-apphosts/osx": b"osx-template",
        "piton-apphosts/win.x64.exe": b"win64-template",
        "piton-apphosts/win.x86.exe": b"win32-template",
        "converted-template.dll": converted,
        "netcoreifier.py": NETCOREIFIER_PY.encode(),
        "miniinstaller.py": MINIINSTALLER_PY.encode(),
        "hostwriter.py": HOSTWRITER_PY.encode(),
        "vc_helper.py": VC_HELPER_PY.encode(),
    }


@pytest.fixture
def everest_files(xna_module, fna_module) -> Dict[str, bytes]:
    """Logical path → content for a complete Everest source."""
    return _everest_files(xna_module, fna_module)


@pytest.fixture
def everest_tree(tmp_path, everest_files) -> Path:
    """An Everest source folder on disk."""
    root = tmp_path / "everest"
    for logical, content in everest_files.items():
        path = root.joinpath(*logical.split("/"))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


def make_archive(files: Dict[str, bytes], root: str = "main/") -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(root, b"")
        for logical, content in files.items():
            zf.writestr(root + logical, content)
    return buf.getvalue()


@pytest.fixture
def archive_builder() -> Callable[[Dict[str, bytes]], bytes]:
    """The make_archive() function, for tests that need a custom archive."""
    return make_archive


@pytest.fixture
def everest_archive(everest_files) -> bytes:
    """The Everest source as a release zip (entries under main/)."""
    return make_archive(everest_files)


@pytest.fixture(autouse=True)
def _forget_collaborator_modules():
    """Drop modules imported through a source hook after each test."""
    yield
    for name in COLLABORATOR_MODULES:
        sys.modules.pop(name, None)


@pytest.fixture
def temp_root(tmp_path, monkeypatch) -> Path:
    """Redirect tempfile to a per-test folder and return it."""
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

VERSIONS_URL = "https://versions.test/everest-versions"
DOWNLOAD_URL = "https://downloads.test/everest-main.zip"


RELEASE_LISTING = [
    {"branch": "stable", "version": 4465, "mainDownload": "https://downloads.test/old.zip"},
    {"branch": "beta", "version": 5000, "mainDownload": "https://downloads.test/beta.zip"},
    {"branch": "stable", "version": 4500, "mainDownload": DOWNLOAD_URL},
    {"branch": "dev", "version": 5100, "mainDownload": "https://downloads.test/dev.zip"},
]


@pytest.fixture
def release_listing() -> list:
    """A version listing whose newest stable entry (4500) points at DOWNLOAD_URL."""
    return [dict(entry) for entry in RELEASE_LISTING]


@pytest.fixture
def remote_routes(release_listing, everest_archive) -> Dict[str, object]:
    """Routes serving the listing and the Everest archive."""
    return {VERSIONS_URL: release_listing, DOWNLOAD_URL: everest_archive}


@pytest.fixture
def mock_client() -> Callable[..., httpx.Client]:
    """Factory: mock_client(routes) → httpx.Client serving ``routes``.

    routes maps a URL to an httpx.Response, raw bytes, a JSON-able list,
    or an exception instance to raise.
    """
    def factory(routes: Dict[str, object]) -> httpx.Client:
        def handler(request: httpx.Request) -> httpx.Response:
            route: Optional[object] = routes.get(str(request.url))
            if route is None:
                return httpx.Response(404)
            if isinstance(route, Exception):
                raise route
            if isinstance(route, httpx.Response):
                return route
            if isinstance(route, bytes):
                return httpx.Response(200, content=route)
            return httpx.Response(200, content=json.dumps(route).encode())

        return httpx.Client(transport=httpx.MockTransport(handler))

    return factory
