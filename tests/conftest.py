"""Shared pytest fixtures for all tests."""

import logging
import os
import struct
import zipfile
from pathlib import Path

import pytest

from signplan.certificates import CertificateKey, CertificateResolver, ExtensionSignPolicy
from signplan.tracking import TrackingEngine

FILE_ALIGNMENT = 0x200
SECTION_ALIGNMENT = 0x2000
TEXT_RVA = 0x2000
PE_OFFSET = 0x80
CLI_HEADER_SIZE = 72

# Metadata table ids used by the builder
MODULE, TYPE_REF, TYPE_DEF, METHOD_DEF = 0x00, 0x01, 0x02, 0x06
MEMBER_REF, CUSTOM_ATTRIBUTE, ASSEMBLY = 0x0A, 0x0C, 0x20

ASSEMBLY_PARENT = (1 << 5) | 14  # HasCustomAttribute: Assembly row 1
FIRST_TYPE_DEF_PARENT = (1 << 5) | 3  # HasCustomAttribute: TypeDef row 1
CTOR_STRING_SIGNATURE = bytes([0x20, 0x01, 0x01, 0x0E])  # instance void .ctor(string)
CTOR_INT_SIGNATURE = bytes([0x20, 0x01, 0x01, 0x08])  # instance void .ctor(int32)


def _align(value, alignment):
    return (value + alignment - 1) // alignment * alignment


def _compressed(length):
    if length < 0x80:
        return bytes([length])
    if length < 0x4000:
        return bytes([0x80 | (length >> 8), length & 0xFF])
    return struct.pack(">I", 0xC0000000 | length)


def _ser_string(value):
    data = value.encode("utf-8")
    return _compressed(len(data)) + data


class MetadataBuilder:
    """Builds a minimal CLI metadata blob with an assembly manifest."""

    def __init__(self, assembly_name="app", public_key=b"", include_assembly=True):
        self.strings = bytearray(b"\0")
        self.blobs = bytearray(b"\0")
        self.type_refs = []
        self.type_defs = []
        self.method_defs = []
        self.member_refs = []
        self.attributes = []
        self.assembly_name = assembly_name
        self.public_key = public_key
        self.include_assembly = include_assembly
        self.type_defs.append(struct.pack("<IHHHHH", 0, self.string("<Module>"), 0, 0, 1, 1))

    def string(self, value):
        if not value:
            return 0
        offset = len(self.strings)
        self.strings += value.encode("utf-8") + b"\0"
        return offset

    def blob(self, value):
        offset = len(self.blobs)
        self.blobs += _compressed(len(value)) + value
        return offset

    def add_attribute(
        self,
        namespace,
        type_name,
        value,
        via="memberref",
        parent=ASSEMBLY_PARENT,
        signature=CTOR_STRING_SIGNATURE,
    ):
        """Add a custom attribute with one string argument."""
        value_blob = self.blob(b"\x01\x00" + _ser_string(value) + b"\x00\x00")
        signature_blob = self.blob(signature)

        if via == "memberref":
            self.type_refs.append(
                struct.pack("<HHH", 0, self.string(type_name), self.string(namespace))
            )
            member_parent = (len(self.type_refs) << 3) | 1  # MemberRefParent: TypeRef
            self.member_refs.append(
                struct.pack("<HHH", member_parent, self.string(".ctor"), signature_blob)
            )
            constructor = (len(self.member_refs) << 3) | 3  # CustomAttributeType: MemberRef
        else:
            self.method_defs.append(
                struct.pack(
                    "<IHHHHH", 0, 0, 0x1886, self.string(".ctor"), signature_blob, 1
                )
            )
            self.type_defs.append(
                struct.pack(
                    "<IHHHHH",
                    0x00100001,
                    self.string(type_name),
                    self.string(namespace),
                    0,
                    1,
                    len(self.method_defs),
                )
            )
            constructor = (len(self.method_defs) << 3) | 2  # CustomAttributeType: MethodDef

        self.attributes.append(struct.pack("<HHH", parent, constructor, value_blob))

    def _table_stream(self):
        tables = {
            MODULE: [struct.pack("<HHHHH", 0, self.string(self.assembly_name + ".dll"), 1, 0, 0)],
            TYPE_REF: self.type_refs,
            TYPE_DEF: self.type_defs,
            METHOD_DEF: self.method_defs,
            MEMBER_REF: self.member_refs,
            CUSTOM_ATTRIBUTE: self.attributes,
        }
        if self.include_assembly:
            public_key = self.blob(self.public_key) if self.public_key else 0
            tables[ASSEMBLY] = [
                struct.pack(
                    "<IHHHHIHHH",
                    0x8004,
                    1, 0, 0, 0,
                    0x0001 if self.public_key else 0,
                    public_key,
                    self.string(self.assembly_name),
                    0,
                )
            ]

        present = [(table, rows) for table, rows in sorted(tables.items()) if rows]
        valid = sum(1 << table for table, _ in present)
        header = struct.pack("<IBBBBQQ", 0, 2, 0, 0, 1, valid, 0)
        header += b"".join(struct.pack("<I", len(rows)) for _, rows in present)
        body = b"".join(b"".join(rows) for _, rows in present)
        data = header + body
        return data.ljust(_align(len(data), 4), b"\0")

    def build(self):
        table_stream = self._table_stream()
        streams = [
            ("#~", table_stream),
            ("#Strings", bytes(self.strings).ljust(_align(len(self.strings), 4), b"\0")),
            ("#US", b"\0\0\0\0"),
            ("#GUID", b"\x11" * 16),
            ("#Blob", bytes(self.blobs).ljust(_align(len(self.blobs), 4), b"\0")),
        ]

        version = b"v4.0.30319".ljust(12, b"\0")
        root = struct.pack("<IHHII", 0x424A5342, 1, 1, 0, len(version)) + version
        root += struct.pack("<HH", 0, len(streams))

        offset = len(root) + sum(8 + _align(len(name) + 1, 4) for name, _ in streams)
        headers = b""
        bodies = b""
        for name, data in streams:
            encoded = name.encode("ascii")
            headers += struct.pack("<II", offset, len(data))
            headers += encoded.ljust(_align(len(encoded) + 1, 4), b"\0")
            bodies += data
            offset += len(data)

        return root + headers + bodies


def build_assembly_metadata(
    assembly_name="app",
    public_key=b"",
    target_framework=None,
    via="memberref",
    include_assembly=True,
):
    """Metadata with an AssemblyTitle attribute and an optional TargetFramework attribute."""
    builder = MetadataBuilder(assembly_name, public_key, include_assembly)
    builder.add_attribute("System.Reflection", "AssemblyTitleAttribute", assembly_name)
    if target_framework is not None:
        builder.add_attribute(
            "System.Runtime.Versioning", "TargetFrameworkAttribute", target_framework, via=via
        )
    return builder.build()


def build_pe(metadata=None, signed=False):
    """
    Build a minimal PE32 image with one section.

    Args:
        metadata: CLI metadata blob; when given a CLI header is emitted
        signed: Append a certificate table and point the security directory at it
    """
    if metadata is not None:
        metadata_rva = TEXT_RVA + CLI_HEADER_SIZE
        cli_header = struct.pack("<IHHII", CLI_HEADER_SIZE, 2, 5, metadata_rva, len(metadata))
        section_body = cli_header.ljust(CLI_HEADER_SIZE, b"\0") + metadata
    else:
        section_body = b"\xc3"

    raw_size = _align(len(section_body), FILE_ALIGNMENT)
    image_size = TEXT_RVA + _align(len(section_body), SECTION_ALIGNMENT)

    certificate = struct.pack("<IHH", 16, 0x0200, 0x0002) + b"\0" * 8
    directories = [(0, 0)] * 16
    if metadata is not None:
        directories[14] = (TEXT_RVA, CLI_HEADER_SIZE)
    if signed:
        directories[4] = (FILE_ALIGNMENT + raw_size, len(certificate))

    dos_header = (b"MZ" + b"\0" * 58 + struct.pack("<I", PE_OFFSET)).ljust(PE_OFFSET, b"\0")
    file_header = struct.pack("<HHIIIHH", 0x14C, 1, 0, 0, 0, 0xE0, 0x2102)
    optional_header = struct.pack(
        "<HBB" + "I" * 9 + "H" * 6 + "I" * 4 + "HH" + "I" * 6,
        0x10B, 14, 0,
        raw_size, 0, 0,
        0, TEXT_RVA, 0,
        0x10000000, SECTION_ALIGNMENT, FILE_ALIGNMENT,
        6, 0, 0, 0, 6, 0,
        0, image_size, FILE_ALIGNMENT, 0,
        3, 0x8540,
        0x100000, 0x1000, 0x100000, 0x1000,
        0, 16,
    )
    data_directories = b"".join(struct.pack("<II", va, size) for va, size in directories)
    section_header = struct.pack(
        "<8sIIIIIIHHI",
        b".text",
        len(section_body),
        TEXT_RVA,
        raw_size,
        FILE_ALIGNMENT,
        0, 0, 0, 0,
        0x60000020,
    )

    headers = dos_header + b"PE\0\0" + file_header + optional_header + data_directories
    headers += section_header
    image = headers.ljust(FILE_ALIGNMENT, b"\0") + section_body.ljust(raw_size, b"\0")
    if signed:
        image += certificate
    return image


@pytest.fixture
def make_metadata():
    """Factory for CLI metadata blobs."""
    return build_assembly_metadata


@pytest.fixture
def metadata_builder():
    """MetadataBuilder class for custom metadata layouts."""
    return MetadataBuilder


@pytest.fixture
def make_pe(tmp_path):
    """Factory writing PE images to tmp_path."""

    def _make(name, managed=False, signed=False, metadata=None, directory=None, **metadata_args):
        if managed and metadata is None:
            metadata = build_assembly_metadata(**metadata_args)
        target = Path(directory) if directory else tmp_path
        target.mkdir(parents=True, exist_ok=True)
        path = target / name
        path.write_bytes(build_pe(metadata=metadata, signed=signed))
        return path

    return _make


@pytest.fixture
def pe_bytes():
    """Raw PE image builder."""
    return build_pe


@pytest.fixture
def make_zip(tmp_path):
    """Factory writing zip archives to tmp_path from a {name: bytes} mapping."""

    def _make(name, entries, directory=None):
        target = Path(directory) if directory else tmp_path
        target.mkdir(parents=True, exist_ok=True)
        path = target / name
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for entry_name, data in entries.items():
                archive.writestr(entry_name, data)
        return path

    return _make


@pytest.fixture
def make_engine(tmp_path):
    """Factory for TrackingEngine instances staging under tmp_path/temp."""

    def _make(
        certificates=None,
        explicit_certificates=None,
        extensions=None,
        public_key_tokens=None,
        default_certificate="Microsoft400",
        **engine_args,
    ):
        table = {CertificateKey(name): cert for name, cert in (certificates or {}).items()}
        table.update(explicit_certificates or {})
        policy = ExtensionSignPolicy(extensions or {})
        resolver = CertificateResolver(
            explicit_certificates=table,
            public_key_token_certificates=public_key_tokens,
            extension_policy=policy,
            default_certificate=default_certificate,
        )
        return TrackingEngine(resolver, str(tmp_path / "temp"), **engine_args)

    return _make


@pytest.fixture
def sample_config_data():
    """Representative configuration dictionary."""
    return {
        "temp_dir": "obj/signing",
        "default_certificate": "Microsoft400",
        "certificates": {"app.dll": "CertA", "vendor.dll": "None"},
        "explicit_certificates": [
            {
                "file": "lib.dll",
                "public_key_token": "31bf3856ad364e35",
                "target_framework": ".NETFramework,Version=v4.7.2",
                "certificate": "3PartySHA2",
            }
        ],
        "public_key_tokens": {"31bf3856ad364e35": "MicrosoftSHA2"},
        "extensions": {".dll": "Microsoft400", ".txt": "None"},
        "containers": {"max_depth": 4, "fail_on_error": False},
    }


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo CLI logging configuration between tests."""
    yield

    logger = logging.getLogger("signplan")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch):
    """Reset environment variables before each test."""
    # Store original env vars
    original_env = dict(os.environ)

    yield

    # Restore original env vars after test
    os.environ.clear()
    os.environ.update(original_env)
