"""Data model for tracked files, containers and the signing plan."""

import enum
import json
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from .content import hash_to_string


class DecisionKind(enum.Enum):
    SIGN = "sign"
    ALREADY_SIGNED = "already_signed"
    IGNORE = "ignore"


@dataclass(frozen=True)
class SignDecision:
    """What to do with a file: sign with a certificate, leave signed, or ignore."""

    kind: DecisionKind
    certificate: Optional[str] = None

    @classmethod
    def sign(cls, certificate: str) -> "SignDecision":
        return cls(DecisionKind.SIGN, certificate)

    @classmethod
    def already_signed(cls) -> "SignDecision":
        return cls(DecisionKind.ALREADY_SIGNED)

    @classmethod
    def ignore(cls) -> "SignDecision":
        return cls(DecisionKind.IGNORE)

    @property
    def should_sign(self) -> bool:
        return self.kind is DecisionKind.SIGN

    def __str__(self) -> str:
        if self.should_sign:
            return f"sign({self.certificate})"
        return self.kind.value


@dataclass(frozen=True)
class ContentIdentityKey:
    """Identity of a signing unit: same bytes under the same file name."""

    content_hash: bytes
    file_name: str

    @classmethod
    def for_path(cls, path: str, content_hash: bytes) -> "ContentIdentityKey":
        return cls(content_hash, os.path.basename(path))


@dataclass(frozen=True)
class TrackedFile:
    """A file with a sign decision, created once per content identity."""

    full_path: str
    content_hash: bytes
    decision: SignDecision

    @property
    def file_name(self) -> str:
        return os.path.basename(self.full_path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.full_path,
            "content_hash": hash_to_string(self.content_hash),
            "decision": self.decision.kind.value,
            "certificate": self.decision.certificate,
        }


@dataclass(frozen=True)
class ZipPart:
    """A signable entry of a container, by its path inside the archive."""

    relative_path: str
    tracked_file: TrackedFile


@dataclass(frozen=True)
class ContainerDescriptor:
    """
    A container and its nested parts.

    Parts cover every entry whose extension is signable, including ignored
    and already-signed entries that are repacked unchanged; check
    `part.tracked_file.decision` to tell them apart.
    """

    owner: TrackedFile
    parts: Tuple[ZipPart, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "container": self.owner.to_dict(),
            "parts": [
                {"relative_path": part.relative_path, **part.tracked_file.to_dict()}
                for part in self.parts
            ],
        }


@dataclass(frozen=True)
class MissingCertificateEntry:
    file_name: str
    suggested_certificate: str


@dataclass(frozen=True)
class ContainerFailure:
    """A container whose nested contents could not be examined."""

    path: str
    reason: str


@dataclass(frozen=True)
class SigningPlan:
    """Immutable plan consumed by the signing executor."""

    files_to_sign: Tuple[TrackedFile, ...] = ()
    containers: Mapping[bytes, ContainerDescriptor] = field(
        default_factory=lambda: MappingProxyType({})
    )
    files_to_copy: Tuple[Tuple[str, str], ...] = ()
    failed_containers: Tuple[ContainerFailure, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert plan to a JSON-serializable dictionary."""
        return {
            "files_to_sign": [tracked.to_dict() for tracked in self.files_to_sign],
            "containers": {
                hash_to_string(content_hash): descriptor.to_dict()
                for content_hash, descriptor in self.containers.items()
            },
            "files_to_copy": [
                {"source": source, "destination": destination}
                for source, destination in self.files_to_copy
            ],
            "failed_containers": [
                {"path": failure.path, "reason": failure.reason}
                for failure in self.failed_containers
            ],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def save(self, output_path: str) -> str:
        """
        Save plan as JSON.

        Args:
            output_path: Path to output file

        Returns:
            Path to saved file
        """
        with open(output_path, "w") as f:
            f.write(self.to_json())

        return output_path
