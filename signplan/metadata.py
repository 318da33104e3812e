"""
Reader for CLI (ECMA-335) metadata embedded in managed PE images.

Only the structures needed to identify an assembly are decoded: the metadata
root and stream headers, the `#~` table stream, and the `#Strings` and `#Blob`
heaps. Row sizes depend on every table that precedes the one being read, so the
full table schema for tables 0x00-0x2C is described here even though only a
handful of tables are ever read.
"""

import hashlib
import struct
from typing import Dict, Iterator, Optional, Tuple

METADATA_SIGNATURE = 0x424A5342

# Table ids (ECMA-335 II.22)
MODULE = 0x00
TYPE_REF = 0x01
TYPE_DEF = 0x02
FIELD_PTR = 0x03
FIELD = 0x04
METHOD_PTR = 0x05
METHOD_DEF = 0x06
PARAM_PTR = 0x07
PARAM = 0x08
INTERFACE_IMPL = 0x09
MEMBER_REF = 0x0A
CONSTANT = 0x0B
CUSTOM_ATTRIBUTE = 0x0C
FIELD_MARSHAL = 0x0D
DECL_SECURITY = 0x0E
CLASS_LAYOUT = 0x0F
FIELD_LAYOUT = 0x10
STAND_ALONE_SIG = 0x11
EVENT_MAP = 0x12
EVENT_PTR = 0x13
EVENT = 0x14
PROPERTY_MAP = 0x15
PROPERTY_PTR = 0x16
PROPERTY = 0x17
METHOD_SEMANTICS = 0x18
METHOD_IMPL = 0x19
MODULE_REF = 0x1A
TYPE_SPEC = 0x1B
IMPL_MAP = 0x1C
FIELD_RVA = 0x1D
ENC_LOG = 0x1E
ENC_MAP = 0x1F
ASSEMBLY = 0x20
ASSEMBLY_PROCESSOR = 0x21
ASSEMBLY_OS = 0x22
ASSEMBLY_REF = 0x23
ASSEMBLY_REF_PROCESSOR = 0x24
ASSEMBLY_REF_OS = 0x25
FILE = 0x26
EXPORTED_TYPE = 0x27
MANIFEST_RESOURCE = 0x28
NESTED_CLASS = 0x29
GENERIC_PARAM = 0x2A
METHOD_SPEC = 0x2B
GENERIC_PARAM_CONSTRAINT = 0x2C

STRING = "string"
GUID = "guid"
BLOB = "blob"


def _index(table: int) -> Tuple[str, int]:
    return ("index", table)


def _coded(name: str) -> Tuple[str, str]:
    return ("coded", name)


# Tag order matters: the position of a table is its tag value.
CODED_INDEXES: Dict[str, Tuple[Optional[int], ...]] = {
    "TypeDefOrRef": (TYPE_DEF, TYPE_REF, TYPE_SPEC),
    "HasConstant": (FIELD, PARAM, PROPERTY),
    "HasCustomAttribute": (
        METHOD_DEF, FIELD, TYPE_REF, TYPE_DEF, PARAM, INTERFACE_IMPL,
        MEMBER_REF, MODULE, DECL_SECURITY, PROPERTY, EVENT, STAND_ALONE_SIG,
        MODULE_REF, TYPE_SPEC, ASSEMBLY, ASSEMBLY_REF, FILE, EXPORTED_TYPE,
        MANIFEST_RESOURCE, GENERIC_PARAM, GENERIC_PARAM_CONSTRAINT, METHOD_SPEC,
    ),
    "HasFieldMarshal": (FIELD, PARAM),
    "HasDeclSecurity": (TYPE_DEF, METHOD_DEF, ASSEMBLY),
    "MemberRefParent": (TYPE_DEF, TYPE_REF, MODULE_REF, METHOD_DEF, TYPE_SPEC),
    "HasSemantics": (EVENT, PROPERTY),
    "MethodDefOrRef": (METHOD_DEF, MEMBER_REF),
    "MemberForwarded": (FIELD, METHOD_DEF),
    "Implementation": (FILE, ASSEMBLY_REF, EXPORTED_TYPE),
    "CustomAttributeType": (None, None, METHOD_DEF, MEMBER_REF, None),
    "ResolutionScope": (MODULE, MODULE_REF, ASSEMBLY_REF, TYPE_REF),
    "TypeOrMethodDef": (TYPE_DEF, METHOD_DEF),
}

# Column layouts. Integers are fixed-width columns in bytes.
TABLE_SCHEMAS = {
    MODULE: (2, STRING, GUID, GUID, GUID),
    TYPE_REF: (_coded("ResolutionScope"), STRING, STRING),
    TYPE_DEF: (4, STRING, STRING, _coded("TypeDefOrRef"), _index(FIELD), _index(METHOD_DEF)),
    FIELD_PTR: (_index(FIELD),),
    FIELD: (2, STRING, BLOB),
    METHOD_PTR: (_index(METHOD_DEF),),
    METHOD_DEF: (4, 2, 2, STRING, BLOB, _index(PARAM)),
    PARAM_PTR: (_index(PARAM),),
    PARAM: (2, 2, STRING),
    INTERFACE_IMPL: (_index(TYPE_DEF), _coded("TypeDefOrRef")),
    MEMBER_REF: (_coded("MemberRefParent"), STRING, BLOB),
    CONSTANT: (2, _coded("HasConstant"), BLOB),
    CUSTOM_ATTRIBUTE: (_coded("HasCustomAttribute"), _coded("CustomAttributeType"), BLOB),
    FIELD_MARSHAL: (_coded("HasFieldMarshal"), BLOB),
    DECL_SECURITY: (2, _coded("HasDeclSecurity"), BLOB),
    CLASS_LAYOUT: (2, 4, _index(TYPE_DEF)),
    FIELD_LAYOUT: (4, _index(FIELD)),
    STAND_ALONE_SIG: (BLOB,),
    EVENT_MAP: (_index(TYPE_DEF), _index(EVENT)),
    EVENT_PTR: (_index(EVENT),),
    EVENT: (2, STRING, _coded("TypeDefOrRef")),
    PROPERTY_MAP: (_index(TYPE_DEF), _index(PROPERTY)),
    PROPERTY_PTR: (_index(PROPERTY),),
    PROPERTY: (2, STRING, BLOB),
    METHOD_SEMANTICS: (2, _index(METHOD_DEF), _coded("HasSemantics")),
    METHOD_IMPL: (_index(TYPE_DEF), _coded("MethodDefOrRef"), _coded("MethodDefOrRef")),
    MODULE_REF: (STRING,),
    TYPE_SPEC: (BLOB,),
    IMPL_MAP: (2, _coded("MemberForwarded"), STRING, _index(MODULE_REF)),
    FIELD_RVA: (4, _index(FIELD)),
    ENC_LOG: (4, 4),
    ENC_MAP: (4,),
    ASSEMBLY: (4, 2, 2, 2, 2, 4, BLOB, STRING, STRING),
    ASSEMBLY_PROCESSOR: (4,),
    ASSEMBLY_OS: (4, 4, 4),
    ASSEMBLY_REF: (2, 2, 2, 2, 4, BLOB, STRING, STRING, BLOB),
    ASSEMBLY_REF_PROCESSOR: (4, _index(ASSEMBLY_REF)),
    ASSEMBLY_REF_OS: (4, 4, 4, _index(ASSEMBLY_REF)),
    FILE: (4, STRING, BLOB),
    EXPORTED_TYPE: (4, 4, STRING, STRING, _coded("Implementation")),
    MANIFEST_RESOURCE: (4, 4, STRING, _coded("Implementation")),
    NESTED_CLASS: (_index(TYPE_DEF), _index(TYPE_DEF)),
    GENERIC_PARAM: (2, 2, _coded("TypeOrMethodDef"), STRING),
    METHOD_SPEC: (_coded("MethodDefOrRef"), BLOB),
    GENERIC_PARAM_CONSTRAINT: (_index(GENERIC_PARAM), _coded("TypeDefOrRef")),
}

# Heap size flags in the #~ stream header
HEAP_STRING_WIDE = 0x01
HEAP_GUID_WIDE = 0x02
HEAP_BLOB_WIDE = 0x04
HEAP_EXTRA_DATA = 0x40

# Signature element types
SIG_GENERIC = 0x10
ELEMENT_TYPE_VOID = 0x01
ELEMENT_TYPE_STRING = 0x0E

TARGET_FRAMEWORK_NAMESPACE = "System.Runtime.Versioning"
TARGET_FRAMEWORK_TYPE = "TargetFrameworkAttribute"


class MetadataError(Exception):
    """CLI metadata is missing, truncated or malformed."""
    pass


def decode_compressed_uint(data: bytes, offset: int) -> Tuple[int, int]:
    """
    Decode an ECMA-335 compressed unsigned integer.

    Returns:
        Tuple of (value, offset just past the encoded integer)
    """
    if offset >= len(data):
        raise MetadataError("Compressed integer out of range")

    first = data[offset]
    if first & 0x80 == 0:
        return first, offset + 1
    if first & 0xC0 == 0x80:
        if offset + 2 > len(data):
            raise MetadataError("Compressed integer is truncated")
        return ((first & 0x3F) << 8) | data[offset + 1], offset + 2
    if first & 0xE0 == 0xC0:
        if offset + 4 > len(data):
            raise MetadataError("Compressed integer is truncated")
        value = (
            ((first & 0x1F) << 24)
            | (data[offset + 1] << 16)
            | (data[offset + 2] << 8)
            | data[offset + 3]
        )
        return value, offset + 4
    raise MetadataError(f"Invalid compressed integer lead byte 0x{first:02x}")


def public_key_token(public_key: bytes) -> str:
    """
    Derive the strong-name public key token from a public key.

    The token is the last 8 bytes of the SHA-1 of the key, in reverse order,
    as lower-case hex. An empty key yields an empty token.
    """
    if not public_key:
        return ""
    return hashlib.sha1(public_key).digest()[-8:][::-1].hex()


class MetadataReader:
    """Structural reader over a CLI metadata blob."""

    def __init__(self, data: bytes):
        """
        Parse the metadata root, stream headers and table layout.

        Args:
            data: Metadata bytes, starting at the metadata root signature

        Raises:
            MetadataError: If the blob is not valid CLI metadata
        """
        self.data = data
        try:
            streams = self._read_stream_headers()
            if "#~" in streams:
                table_stream = streams["#~"]
            elif "#-" in streams:
                table_stream = streams["#-"]
            else:
                raise MetadataError("Metadata has no table stream")

            self._strings = streams.get("#Strings", b"")
            self._blobs = streams.get("#Blob", b"")
            self._read_table_layout(table_stream)
        except struct.error as e:
            raise MetadataError(f"Metadata is truncated: {e}")

    def _read_stream_headers(self) -> Dict[str, bytes]:
        data = self.data
        signature, = struct.unpack_from("<I", data, 0)
        if signature != METADATA_SIGNATURE:
            raise MetadataError("Metadata root signature not found")

        version_length, = struct.unpack_from("<I", data, 12)
        offset = 16 + version_length
        stream_count, = struct.unpack_from("<H", data, offset + 2)
        offset += 4

        streams = {}
        for _ in range(stream_count):
            stream_offset, stream_size = struct.unpack_from("<II", data, offset)
            name_start = offset + 8
            name_end = data.find(b"\0", name_start, name_start + 32)
            if name_end < 0:
                raise MetadataError("Unterminated metadata stream name")

            name = data[name_start:name_end].decode("ascii", errors="replace")
            name_length = name_end - name_start + 1
            offset = name_start + ((name_length + 3) & ~3)

            if stream_offset + stream_size > len(data):
                raise MetadataError(f"Metadata stream {name} extends past end of metadata")
            streams[name] = data[stream_offset:stream_offset + stream_size]

        return streams

    def _read_table_layout(self, stream: bytes) -> None:
        if len(stream) < 24:
            raise MetadataError("Metadata table stream header is truncated")
        heap_sizes = stream[6]
        valid, = struct.unpack_from("<Q", stream, 8)

        offset = 24
        self._row_counts: Dict[int, int] = {}
        for table in range(64):
            if valid & (1 << table):
                self._row_counts[table], = struct.unpack_from("<I", stream, offset)
                offset += 4

        if heap_sizes & HEAP_EXTRA_DATA:
            offset += 4

        self._string_size = 4 if heap_sizes & HEAP_STRING_WIDE else 2
        self._guid_size = 4 if heap_sizes & HEAP_GUID_WIDE else 2
        self._blob_size = 4 if heap_sizes & HEAP_BLOB_WIDE else 2

        # table id -> (offset, row size, column sizes)
        self._tables: Dict[int, Tuple[int, int, Tuple[int, ...]]] = {}
        for table in sorted(self._row_counts):
            schema = TABLE_SCHEMAS.get(table)
            if schema is None:
                # Layout of this and every later table is unknown
                break

            sizes = tuple(self._column_size(column) for column in schema)
            row_size = sum(sizes)
            self._tables[table] = (offset, row_size, sizes)
            offset += row_size * self._row_counts[table]

        if offset > len(stream):
            raise MetadataError("Metadata table data is truncated")
        self._table_stream = stream

    def _column_size(self, column) -> int:
        if isinstance(column, int):
            return column
        if column == STRING:
            return self._string_size
        if column == GUID:
            return self._guid_size
        if column == BLOB:
            return self._blob_size

        kind, target = column
        if kind == "index":
            return 2 if self.row_count(target) < 0x10000 else 4

        tables = CODED_INDEXES[target]
        tag_bits = (len(tables) - 1).bit_length()
        max_rows = max(self.row_count(table) for table in tables if table is not None)
        return 2 if max_rows < (1 << (16 - tag_bits)) else 4

    def row_count(self, table: int) -> int:
        """Number of rows in a table (0 when the table is absent)."""
        return self._row_counts.get(table, 0)

    def read_row(self, table: int, row: int) -> Tuple[int, ...]:
        """
        Read the raw column values of a table row.

        Args:
            table: Table id
            row: 1-based row number

        Returns:
            Tuple of integer column values (heap offsets and indexes undecoded)
        """
        if not 1 <= row <= self.row_count(table):
            raise MetadataError(f"Row {row} out of range for table 0x{table:02x}")
        if table not in self._tables:
            raise MetadataError(f"Metadata table 0x{table:02x} has an unknown layout")

        offset, row_size, sizes = self._tables[table]
        offset += (row - 1) * row_size
        values = []
        for size in sizes:
            values.append(int.from_bytes(self._table_stream[offset:offset + size], "little"))
            offset += size
        return tuple(values)

    def decode_coded_index(self, kind: str, value: int) -> Tuple[Optional[int], int]:
        """Split a coded index into (table id, row). Unused tags give (None, row)."""
        tables = CODED_INDEXES[kind]
        tag_bits = (len(tables) - 1).bit_length()
        tag = value & ((1 << tag_bits) - 1)
        row = value >> tag_bits
        if tag >= len(tables):
            return None, row
        return tables[tag], row

    def get_string(self, index: int) -> str:
        """Read a null-terminated UTF-8 string from the #Strings heap."""
        if index >= len(self._strings):
            raise MetadataError(f"String heap index {index} out of range")
        end = self._strings.find(b"\0", index)
        if end < 0:
            end = len(self._strings)
        try:
            return self._strings[index:end].decode("utf-8")
        except UnicodeDecodeError as e:
            raise MetadataError(f"Invalid string at heap index {index}: {e}")

    def get_blob(self, index: int) -> bytes:
        """Read a length-prefixed blob from the #Blob heap."""
        if index >= len(self._blobs):
            raise MetadataError(f"Blob heap index {index} out of range")
        length, start = decode_compressed_uint(self._blobs, index)
        if start + length > len(self._blobs):
            raise MetadataError(f"Blob at heap index {index} is truncated")
        return self._blobs[start:start + length]

    @property
    def has_assembly(self) -> bool:
        """True when the metadata carries an assembly manifest."""
        return self.row_count(ASSEMBLY) > 0

    def get_assembly_name(self) -> str:
        return self.get_string(self.read_row(ASSEMBLY, 1)[7])

    def get_public_key_token(self) -> str:
        """Public key token of the assembly, empty when it has no strong name."""
        public_key = self.get_blob(self.read_row(ASSEMBLY, 1)[6])
        return public_key_token(public_key)

    def iter_assembly_attributes(self) -> Iterator[Tuple[int, int]]:
        """Yield (constructor coded index, value blob index) for assembly-level attributes."""
        for row_number in range(1, self.row_count(CUSTOM_ATTRIBUTE) + 1):
            parent, constructor, value = self.read_row(CUSTOM_ATTRIBUTE, row_number)
            table, row = self.decode_coded_index("HasCustomAttribute", parent)
            if table == ASSEMBLY and row == 1:
                yield constructor, value

    def get_attribute_type_name(self, constructor: int) -> Optional[Tuple[str, str]]:
        """
        Resolve the (namespace, name) of the type declaring an attribute constructor.

        Returns:
            Tuple of (namespace, type name), or None if the constructor's
            parent is not a type reference or definition
        """
        table, row = self.decode_coded_index("CustomAttributeType", constructor)
        if table == MEMBER_REF:
            parent = self.read_row(MEMBER_REF, row)[0]
            parent_table, parent_row = self.decode_coded_index("MemberRefParent", parent)
            return self._type_name(parent_table, parent_row)
        if table == METHOD_DEF:
            return self._type_name(TYPE_DEF, self._declaring_type(row))
        return None

    def _type_name(self, table: Optional[int], row: int) -> Optional[Tuple[str, str]]:
        if table == TYPE_REF:
            _scope, name, namespace = self.read_row(TYPE_REF, row)
        elif table == TYPE_DEF:
            _flags, name, namespace = self.read_row(TYPE_DEF, row)[:3]
        else:
            return None
        return self.get_string(namespace), self.get_string(name)

    def _declaring_type(self, method_row: int) -> int:
        # TypeDef.MethodList is non-decreasing; the owner is the last type whose
        # method list starts at or before the method.
        owner = 0
        for type_row in range(1, self.row_count(TYPE_DEF) + 1):
            if self.read_row(TYPE_DEF, type_row)[5] > method_row:
                break
            owner = type_row
        if owner == 0:
            raise MetadataError(f"No declaring type for method row {method_row}")
        return owner

    def _constructor_signature(self, constructor: int) -> bytes:
        table, row = self.decode_coded_index("CustomAttributeType", constructor)
        if table == MEMBER_REF:
            return self.get_blob(self.read_row(MEMBER_REF, row)[2])
        if table == METHOD_DEF:
            return self.get_blob(self.read_row(METHOD_DEF, row)[4])
        raise MetadataError(f"Invalid attribute constructor 0x{constructor:x}")

    def get_target_framework(self) -> Optional[str]:
        """
        Raw value of the assembly's TargetFrameworkAttribute.

        Returns:
            The attribute's string argument, or None when the attribute is
            absent or does not take a single string
        """
        for constructor, value in self.iter_assembly_attributes():
            type_name = self.get_attribute_type_name(constructor)
            if type_name != (TARGET_FRAMEWORK_NAMESPACE, TARGET_FRAMEWORK_TYPE):
                continue

            if not _takes_single_string(self._constructor_signature(constructor)):
                return None
            return _read_string_argument(self.get_blob(value))

        return None


def _takes_single_string(signature: bytes) -> bool:
    if not signature:
        return False

    offset = 1
    if signature[0] & SIG_GENERIC:
        _, offset = decode_compressed_uint(signature, offset)
    param_count, offset = decode_compressed_uint(signature, offset)
    if param_count != 1 or len(signature) < offset + 2:
        return False
    return signature[offset] == ELEMENT_TYPE_VOID and signature[offset + 1] == ELEMENT_TYPE_STRING


def _read_string_argument(blob: bytes) -> Optional[str]:
    if blob[:2] != b"\x01\x00":
        raise MetadataError("Custom attribute blob has no prolog")
    if blob[2:3] == b"\xff":
        return None

    length, start = decode_compressed_uint(blob, 2)
    if start + length > len(blob):
        raise MetadataError("Custom attribute string argument is truncated")
    try:
        return blob[start:start + length].decode("utf-8")
    except UnicodeDecodeError as e:
        raise MetadataError(f"Invalid custom attribute string: {e}")
