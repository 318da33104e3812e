"""Certificate resolution for tracked files."""

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from .logging import get_logger
from .models import SignDecision

logger = get_logger("certificates")

# Certificate name meaning "do not sign this file, on purpose"
IGNORE_CERTIFICATE = "None"

# Certificates that can replace an existing signature
DEFAULT_RESIGN_CERTIFICATES = ("3PartyDual", "3PartySHA2")


@dataclass(frozen=True)
class CertificateKey:
    """Lookup key for the explicit certificate table; compared case-insensitively."""

    file_name: str
    public_key_token: str = ""
    target_framework: str = ""

    def __post_init__(self):
        object.__setattr__(self, "file_name", self.file_name.lower())
        object.__setattr__(self, "public_key_token", (self.public_key_token or "").lower())
        object.__setattr__(self, "target_framework", (self.target_framework or "").lower())


@dataclass(frozen=True)
class Resolution:
    """Outcome of certificate resolution."""

    decision: SignDecision
    suggested_certificate: Optional[str] = None  # set when no certificate was found

    @property
    def is_missing(self) -> bool:
        return self.suggested_certificate is not None


class ExtensionSignPolicy:
    """Per-extension signing policy used for archive entries and suggestions."""

    def __init__(
        self,
        certificates: Optional[Dict[str, str]] = None,
        ignore_certificate: str = IGNORE_CERTIFICATE,
    ):
        """
        Initialize policy.

        Args:
            certificates: Mapping of extension (".dll") to certificate name or
                the ignore sentinel
            ignore_certificate: Sentinel certificate name meaning "do not sign"
        """
        self.certificates = {
            _normalize_extension(ext): cert for ext, cert in (certificates or {}).items()
        }
        self.ignore_certificate = ignore_certificate

    def certificate_for(self, extension: str) -> Optional[str]:
        """Certificate registered for an extension, or None if unregistered."""
        return self.certificates.get(_normalize_extension(extension))

    def should_sign(self, extension: str) -> bool:
        """True when the extension is registered with a real certificate."""
        certificate = self.certificate_for(extension)
        if certificate is None:
            return False
        return certificate.lower() != self.ignore_certificate.lower()


def _normalize_extension(extension: str) -> str:
    extension = extension.lower()
    if extension and not extension.startswith("."):
        extension = "." + extension
    return extension


class CertificateResolver:
    """Resolves the sign decision for a file from its identity attributes."""

    def __init__(
        self,
        explicit_certificates: Optional[Dict[CertificateKey, str]] = None,
        public_key_token_certificates: Optional[Dict[str, str]] = None,
        extension_policy: Optional[ExtensionSignPolicy] = None,
        default_certificate: Optional[str] = None,
        resign_certificates: Iterable[str] = DEFAULT_RESIGN_CERTIFICATES,
        ignore_certificate: str = IGNORE_CERTIFICATE,
    ):
        """
        Initialize resolver.

        Args:
            explicit_certificates: Certificate table keyed by (name, token, framework)
                with partial keys for the less specific entries
            public_key_token_certificates: Default certificate per public key
                token, used only to suggest certificates for missing entries
            extension_policy: Extension table, used only for suggestions
            default_certificate: Fallback suggestion
            resign_certificates: Certificates allowed to replace an existing signature
            ignore_certificate: Sentinel certificate name meaning "do not sign"
        """
        self.explicit_certificates = dict(explicit_certificates or {})
        self.public_key_token_certificates = {
            token.lower(): cert
            for token, cert in (public_key_token_certificates or {}).items()
        }
        self.extension_policy = extension_policy or ExtensionSignPolicy()
        self.default_certificate = default_certificate
        self.resign_certificates = {cert.lower() for cert in resign_certificates}
        self.ignore_certificate = ignore_certificate

    def lookup(
        self, file_name: str, public_key_token: str = "", target_framework: str = ""
    ) -> Optional[str]:
        """
        Find the most specific certificate table entry for a file.

        Tries (name, token, framework), then (name, token), then (name).
        """
        keys = (
            CertificateKey(file_name, public_key_token, target_framework),
            CertificateKey(file_name, public_key_token),
            CertificateKey(file_name),
        )
        for key in keys:
            certificate = self.explicit_certificates.get(key)
            if certificate is not None:
                return certificate
        return None

    def resolve(
        self,
        file_name: str,
        public_key_token: str = "",
        target_framework: str = "",
        is_already_signed: bool = False,
        full_path: Optional[str] = None,
    ) -> Resolution:
        """
        Decide whether and how a file is signed.

        Args:
            file_name: Base name of the file
            public_key_token: Strong-name token, empty if none
            target_framework: Normalized target framework, empty if none
            is_already_signed: True if the file carries a signature
            full_path: Path used in log messages

        Returns:
            Resolution; `suggested_certificate` is set when the file has no
            certificate and is not already signed
        """
        display_path = full_path or file_name
        certificate = self.lookup(file_name, public_key_token, target_framework)

        if certificate is None:
            if is_already_signed:
                logger.debug(f"Skipping already signed file {display_path}")
                return Resolution(SignDecision.already_signed())

            suggestion = self.suggest_certificate(file_name, public_key_token)
            logger.debug(f"No certificate for {display_path}, suggesting {suggestion}")
            return Resolution(SignDecision.ignore(), suggested_certificate=suggestion)

        if certificate.lower() == self.ignore_certificate.lower():
            return Resolution(SignDecision.ignore())

        if is_already_signed and certificate.lower() not in self.resign_certificates:
            logger.debug(f"Asked to sign this file but it was already signed: {display_path}")
            return Resolution(SignDecision.already_signed())

        return Resolution(SignDecision.sign(certificate))

    def suggest_certificate(self, file_name: str, public_key_token: str = "") -> str:
        """
        Heuristic certificate for a file missing from the table.

        Prefers the default for the file's public key token, then the
        extension table, then the configured default certificate.
        """
        if public_key_token:
            certificate = self.public_key_token_certificates.get(public_key_token.lower())
            if certificate:
                return certificate

        extension = os.path.splitext(file_name)[1]
        if self.extension_policy.should_sign(extension):
            return self.extension_policy.certificate_for(extension)

        return self.default_certificate or ""
