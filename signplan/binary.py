"""Binary inspection: PE detection, Authenticode presence and assembly identity."""

import enum
import os
import struct
from dataclasses import dataclass
from typing import Optional, Tuple

import pefile

from .framework import normalize_framework_name
from .logging import get_logger
from .metadata import MetadataError, MetadataReader

logger = get_logger("binary")

IMAGE_DIRECTORY_ENTRY_SECURITY = pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_SECURITY"]
IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR = pefile.DIRECTORY_ENTRY[
    "IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR"
]

CLI_HEADER_SIZE = 72


class AssemblyKind(enum.Enum):
    """Classification of a file by what kind of image it holds."""

    MANAGED = "managed"  # PE with CLI metadata and an assembly manifest
    NATIVE = "native"  # PE without a readable assembly manifest
    UNRECOGNIZED = "unrecognized"  # not a PE image


@dataclass(frozen=True)
class BinaryInfo:
    """Identity attributes of a file relevant to certificate selection."""

    kind: AssemblyKind
    is_already_signed: bool = False
    public_key_token: str = ""
    target_framework: str = ""

    @property
    def is_pe(self) -> bool:
        return self.kind is not AssemblyKind.UNRECOGNIZED

    @property
    def is_managed(self) -> bool:
        return self.kind is AssemblyKind.MANAGED


def is_pe_file(path: str) -> bool:
    """
    Check the DOS and NT headers of a file for the PE signature.

    Returns False for short or non-PE files rather than raising.
    """
    with open(path, "rb") as f:
        if f.read(2) != b"MZ":
            return False
        f.seek(0x3C)
        raw = f.read(4)
        if len(raw) != 4:
            return False
        e_lfanew, = struct.unpack("<I", raw)
        f.seek(e_lfanew)
        return f.read(4) == b"PE\0\0"


def is_authenticode_signed(pe: pefile.PE) -> bool:
    """True when the certificate table directory entry is populated."""
    directories = pe.OPTIONAL_HEADER.DATA_DIRECTORY
    if len(directories) <= IMAGE_DIRECTORY_ENTRY_SECURITY:
        return False
    return directories[IMAGE_DIRECTORY_ENTRY_SECURITY].Size > 0


def read_cli_metadata(pe: pefile.PE, data: bytes) -> Optional[bytes]:
    """
    Locate the CLI metadata blob of a PE image.

    Args:
        pe: Parsed PE headers
        data: Full image bytes the headers were parsed from

    Returns:
        Metadata bytes, or None when the image has no CLI header

    Raises:
        MetadataError: If the CLI header points outside the image
    """
    directories = pe.OPTIONAL_HEADER.DATA_DIRECTORY
    if len(directories) <= IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR:
        return None

    cli_directory = directories[IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR]
    if cli_directory.VirtualAddress == 0 or cli_directory.Size == 0:
        return None

    try:
        header_offset = pe.get_offset_from_rva(cli_directory.VirtualAddress)
        header = data[header_offset:header_offset + CLI_HEADER_SIZE]
        if len(header) < 16:
            raise MetadataError("CLI header is truncated")

        # cb, runtime version, then the metadata directory
        metadata_rva, metadata_size = struct.unpack_from("<II", header, 8)
        metadata_offset = pe.get_offset_from_rva(metadata_rva)
    except pefile.PEFormatError as e:
        raise MetadataError(f"CLI header cannot be mapped: {e}")

    metadata = data[metadata_offset:metadata_offset + metadata_size]
    if len(metadata) != metadata_size:
        raise MetadataError("CLI metadata extends past end of image")
    return metadata


def classify_assembly(pe: pefile.PE, data: bytes) -> Tuple[AssemblyKind, Optional[MetadataReader]]:
    """
    Classify a parsed PE image as managed or native.

    Images without CLI metadata, with metadata that fails to decode, or with
    metadata but no assembly manifest (modules) are native.

    Returns:
        Tuple of (kind, metadata reader for managed images or None)
    """
    try:
        metadata = read_cli_metadata(pe, data)
        if metadata is None:
            return AssemblyKind.NATIVE, None
        reader = MetadataReader(metadata)
    except MetadataError as e:
        logger.debug(f"Unreadable CLI metadata, treating image as native: {e}")
        return AssemblyKind.NATIVE, None

    if not reader.has_assembly:
        return AssemblyKind.NATIVE, None
    return AssemblyKind.MANAGED, reader


def get_target_framework(reader: MetadataReader, path: str = "") -> str:
    """
    Normalized target framework of an assembly, or empty string.

    A framework string that doesn't parse is returned as written.
    """
    value = reader.get_target_framework()
    if not value:
        return ""
    try:
        return normalize_framework_name(value)
    except ValueError as e:
        logger.warning(f"Unrecognized target framework {value!r} in {path}: {e}")
        return value


def inspect_binary(path: str) -> BinaryInfo:
    """
    Inspect a file for the attributes used in certificate resolution.

    Args:
        path: Path to file

    Returns:
        BinaryInfo; files that are not PE images yield UNRECOGNIZED with
        all other fields empty

    Raises:
        OSError: If the file cannot be read
    """
    if not is_pe_file(path):
        return BinaryInfo(kind=AssemblyKind.UNRECOGNIZED)

    with open(path, "rb") as f:
        data = f.read()

    try:
        pe = pefile.PE(data=data, fast_load=True)
    except pefile.PEFormatError as e:
        logger.debug(f"PE headers of {path} could not be parsed: {e}")
        return BinaryInfo(kind=AssemblyKind.UNRECOGNIZED)

    try:
        is_signed = is_authenticode_signed(pe)
        kind, reader = classify_assembly(pe, data)
        if reader is None:
            return BinaryInfo(kind=kind, is_already_signed=is_signed)

        try:
            token = reader.get_public_key_token()
            framework = get_target_framework(reader, path)
        except MetadataError as e:
            logger.debug(f"Assembly identity of {path} could not be read: {e}")
            return BinaryInfo(kind=AssemblyKind.NATIVE, is_already_signed=is_signed)

        return BinaryInfo(
            kind=kind,
            is_already_signed=is_signed,
            public_key_token=token,
            target_framework=framework,
        )
    finally:
        pe.close()


def describe(info: BinaryInfo, path: Optional[str] = None) -> str:
    """Human-readable multi-line summary of an inspection result."""
    lines = []
    if path:
        lines.append(f"File: {os.path.basename(path)}")
    lines.extend(
        [
            f"Kind: {info.kind.value}",
            f"Already signed: {'yes' if info.is_already_signed else 'no'}",
            f"Public key token: {info.public_key_token or '-'}",
            f"Target framework: {info.target_framework or '-'}",
        ]
    )
    return "\n".join(lines)
