"""Unit tests for metadata.py module."""

import hashlib

import pytest

from signplan.metadata import (
    ASSEMBLY,
    CUSTOM_ATTRIBUTE,
    MetadataError,
    MetadataReader,
    decode_compressed_uint,
    public_key_token,
)

PUBLIC_KEY = bytes(range(160))
INT_CONSTRUCTOR = bytes([0x20, 0x01, 0x01, 0x08])


def expected_token(key):
    return hashlib.sha1(key).digest()[-8:][::-1].hex()


class TestDecodeCompressedUint:
    """Tests for decode_compressed_uint."""

    @pytest.mark.parametrize(
        "data,expected",
        [
            (b"\x03", (0x03, 1)),
            (b"\x7f", (0x7F, 1)),
            (b"\x80\x80", (0x80, 2)),
            (b"\xbf\xff", (0x3FFF, 2)),
            (b"\xc0\x00\x40\x00", (0x4000, 4)),
            (b"\xdf\xff\xff\xff", (0x1FFFFFFF, 4)),
        ],
    )
    def test_decode(self, data, expected):
        """Test the encodings from ECMA-335 II.23.2."""
        assert decode_compressed_uint(data, 0) == expected

    def test_decode_at_offset(self):
        """Test decoding from the middle of a buffer."""
        assert decode_compressed_uint(b"\x00\x81\x02", 1) == (0x102, 3)

    def test_truncated(self):
        """Test a two-byte encoding missing its second byte."""
        with pytest.raises(MetadataError, match="truncated"):
            decode_compressed_uint(b"\x81", 0)

    def test_out_of_range(self):
        """Test decoding past the end of the buffer."""
        with pytest.raises(MetadataError):
            decode_compressed_uint(b"", 0)

    def test_invalid_lead_byte(self):
        """Test a lead byte with no valid encoding."""
        with pytest.raises(MetadataError, match="lead byte"):
            decode_compressed_uint(b"\xff\x00\x00\x00", 0)


class TestPublicKeyToken:
    """Tests for public_key_token."""

    def test_token_is_reversed_sha1_tail(self):
        """Test the token derivation."""
        token = public_key_token(PUBLIC_KEY)

        assert token == expected_token(PUBLIC_KEY)
        assert len(token) == 16
        assert token == token.lower()

    def test_empty_key(self):
        """Test an assembly without a strong name has no token."""
        assert public_key_token(b"") == ""


class TestMetadataReader:
    """Tests for MetadataReader."""

    def test_reads_assembly_identity(self, make_metadata):
        """Test reading name and public key token."""
        reader = MetadataReader(make_metadata(assembly_name="Contoso.Core", public_key=PUBLIC_KEY))

        assert reader.has_assembly
        assert reader.row_count(ASSEMBLY) == 1
        assert reader.get_assembly_name() == "Contoso.Core"
        assert reader.get_public_key_token() == expected_token(PUBLIC_KEY)

    def test_assembly_without_strong_name(self, make_metadata):
        """Test an unsigned assembly yields an empty token."""
        reader = MetadataReader(make_metadata())

        assert reader.get_public_key_token() == ""

    def test_module_without_manifest(self, make_metadata):
        """Test metadata with no Assembly row."""
        reader = MetadataReader(make_metadata(include_assembly=False))

        assert not reader.has_assembly
        assert reader.row_count(ASSEMBLY) == 0

    def test_target_framework_via_member_ref(self, make_metadata):
        """Test the attribute constructor referenced through a TypeRef."""
        reader = MetadataReader(make_metadata(target_framework=".NETCoreApp,Version=v8.0"))

        assert reader.row_count(CUSTOM_ATTRIBUTE) == 2
        assert reader.get_target_framework() == ".NETCoreApp,Version=v8.0"

    def test_target_framework_via_method_def(self, make_metadata):
        """Test an attribute type defined in the assembly itself."""
        reader = MetadataReader(
            make_metadata(target_framework=".NETFramework,Version=v4.8", via="methoddef")
        )

        assert reader.get_target_framework() == ".NETFramework,Version=v4.8"

    def test_no_target_framework(self, make_metadata):
        """Test an assembly without the attribute."""
        assert MetadataReader(make_metadata()).get_target_framework() is None

    def test_attribute_on_type_is_ignored(self, metadata_builder):
        """Test only assembly-level attributes are considered."""
        builder = metadata_builder()
        builder.add_attribute(
            "System.Runtime.Versioning",
            "TargetFrameworkAttribute",
            ".NETFramework,Version=v2.0",
            parent=(1 << 5) | 3,
        )
        reader = MetadataReader(builder.build())

        assert reader.get_target_framework() is None

    def test_attribute_with_other_constructor(self, metadata_builder):
        """Test a same-named attribute whose constructor doesn't take one string."""
        builder = metadata_builder()
        builder.add_attribute(
            "System.Runtime.Versioning",
            "TargetFrameworkAttribute",
            "ignored",
            signature=INT_CONSTRUCTOR,
        )

        assert MetadataReader(builder.build()).get_target_framework() is None

    def test_attribute_with_other_namespace(self, metadata_builder):
        """Test a same-named attribute from another namespace."""
        builder = metadata_builder()
        builder.add_attribute("Contoso", "TargetFrameworkAttribute", ".NETFramework,Version=v4.0")

        assert MetadataReader(builder.build()).get_target_framework() is None

    def test_attribute_type_names(self, metadata_builder):
        """Test resolving attribute constructor declaring types."""
        builder = metadata_builder()
        builder.add_attribute("System.Reflection", "AssemblyTitleAttribute", "x")
        builder.add_attribute("Contoso.Attributes", "MarkerAttribute", "y", via="methoddef")
        reader = MetadataReader(builder.build())

        names = [
            reader.get_attribute_type_name(constructor)
            for constructor, _value in reader.iter_assembly_attributes()
        ]
        assert names == [
            ("System.Reflection", "AssemblyTitleAttribute"),
            ("Contoso.Attributes", "MarkerAttribute"),
        ]

    def test_read_row_out_of_range(self, make_metadata):
        """Test reading a row beyond the table."""
        reader = MetadataReader(make_metadata())

        with pytest.raises(MetadataError, match="out of range"):
            reader.read_row(ASSEMBLY, 2)

    def test_bad_signature(self):
        """Test data that is not a metadata root."""
        with pytest.raises(MetadataError, match="signature"):
            MetadataReader(b"\x00" * 64)

    def test_truncated_metadata(self, make_metadata):
        """Test metadata cut short inside the stream headers."""
        with pytest.raises(MetadataError):
            MetadataReader(make_metadata()[:40])
