"""Tracking engine: content-addressed deduplication and sign decisions for a run."""

import concurrent.futures
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

from .binary import inspect_binary
from .certificates import CertificateResolver, ExtensionSignPolicy
from .containers import (
    DEFAULT_CONTAINER_EXTENSIONS,
    DEFAULT_MAX_DEPTH,
    ContainerUnpacker,
    NestedDuplicateError,
)
from .content import get_content_hash
from .logging import get_logger
from .models import (
    ContainerDescriptor,
    ContainerFailure,
    ContentIdentityKey,
    MissingCertificateEntry,
    SigningPlan,
    TrackedFile,
)
from .plan import SUGGESTIONS_FILE_NAME, PlanEmitter

if TYPE_CHECKING:
    from .config import SigningConfig

logger = get_logger("tracking")

CONTAINER_STAGING_DIR_NAME = "ContainerSigning"


@dataclass
class RunContext:
    """State shared by the engine and the unpacker for exactly one run."""

    files_by_key: Dict[ContentIdentityKey, TrackedFile] = field(default_factory=dict)
    files_to_sign: List[TrackedFile] = field(default_factory=list)
    files_to_copy: List[Tuple[str, str]] = field(default_factory=list)
    containers: Dict[bytes, ContainerDescriptor] = field(default_factory=dict)
    missing_certificates: List[MissingCertificateEntry] = field(default_factory=list)
    failed_containers: List[ContainerFailure] = field(default_factory=list)
    depth: int = 0  # current container nesting

    def checkpoint(self) -> Tuple[int, ...]:
        """Sizes of the accumulated collections, for `restore`."""
        return (
            len(self.files_by_key),
            len(self.files_to_sign),
            len(self.files_to_copy),
            len(self.containers),
            len(self.missing_certificates),
            len(self.failed_containers),
        )

    def restore(self, checkpoint: Tuple[int, ...]) -> None:
        """
        Discard everything recorded since `checkpoint`.

        Entries are only ever appended, and dicts keep insertion order, so the
        newest keys are the ones past the recorded size.
        """
        keys, to_sign, to_copy, containers, missing, failed = checkpoint
        for key in list(self.files_by_key)[keys:]:
            del self.files_by_key[key]
        for content_hash in list(self.containers)[containers:]:
            del self.containers[content_hash]
        del self.files_to_sign[to_sign:]
        del self.files_to_copy[to_copy:]
        del self.missing_certificates[missing:]
        del self.failed_containers[failed:]


class TrackingEngine:
    """Assigns each distinct (content, file name) a single sign decision."""

    def __init__(
        self,
        resolver: CertificateResolver,
        temp_dir: str,
        extension_policy: Optional[ExtensionSignPolicy] = None,
        container_extensions: Iterable[str] = DEFAULT_CONTAINER_EXTENSIONS,
        max_container_depth: int = DEFAULT_MAX_DEPTH,
        fail_on_container_error: bool = False,
    ):
        """
        Initialize engine.

        Args:
            resolver: Certificate resolver
            temp_dir: Root for staged container contents and the suggestions report
            extension_policy: Archive entry policy (default: the resolver's)
            container_extensions: Extensions of files treated as containers
            max_container_depth: Maximum nesting of containers
            fail_on_container_error: Abort the run on an unreadable container
        """
        self.resolver = resolver
        self.temp_dir = temp_dir
        self.container_extensions = {ext.lower() for ext in container_extensions}
        self.context = RunContext()
        self.unpacker = ContainerUnpacker(
            self,
            os.path.join(temp_dir, CONTAINER_STAGING_DIR_NAME),
            extension_policy or resolver.extension_policy,
            max_depth=max_container_depth,
            fail_on_error=fail_on_container_error,
        )
        self.emitter = PlanEmitter(os.path.join(temp_dir, SUGGESTIONS_FILE_NAME))

    def is_container(self, path: str) -> bool:
        return os.path.splitext(path)[1].lower() in self.container_extensions

    def track(
        self, path: str, content_hash: Optional[bytes] = None, is_nested: bool = False
    ) -> TrackedFile:
        """
        Track a file, creating its record on first sight of its content identity.

        Args:
            path: Full path to the file
            content_hash: Precomputed content hash (computed when omitted)
            is_nested: True for files staged out of a container

        Returns:
            The TrackedFile for the file's content identity

        Raises:
            NestedDuplicateError: If a nested file's identity is already tracked
        """
        if content_hash is None:
            content_hash = get_content_hash(path)

        key = ContentIdentityKey.for_path(path, content_hash)
        existing = self.context.files_by_key.get(key)
        if existing is not None:
            # The unpacker checks the cache before extracting nested files
            if is_nested:
                raise NestedDuplicateError(
                    f"Nested file {path} has the same content identity as {existing.full_path}"
                )

            logger.debug(f"Same content as {existing.full_path}, copying signed result to {path}")
            self.context.files_to_copy.append((existing.full_path, path))
            return existing

        tracked = self._create_tracked_file(path, content_hash)
        self.context.files_by_key[key] = tracked

        if self.is_container(path):
            if content_hash in self.context.containers:
                logger.debug(f"Container content of {path} already unpacked")
            else:
                descriptor = self.unpacker.unpack(tracked)
                if descriptor is not None:
                    self.context.containers[content_hash] = descriptor

        # Appended after unpacking so nested files precede their container
        if tracked.decision.should_sign:
            self.context.files_to_sign.append(tracked)

        return tracked

    def _create_tracked_file(self, path: str, content_hash: bytes) -> TrackedFile:
        info = inspect_binary(path)
        file_name = os.path.basename(path)
        resolution = self.resolver.resolve(
            file_name,
            public_key_token=info.public_key_token,
            target_framework=info.target_framework,
            is_already_signed=info.is_already_signed,
            full_path=path,
        )

        if resolution.is_missing:
            self.context.missing_certificates.append(
                MissingCertificateEntry(file_name, resolution.suggested_certificate)
            )

        logger.debug(f"{path}: {resolution.decision}")
        return TrackedFile(full_path=path, content_hash=content_hash, decision=resolution.decision)

    def _hash_inputs(self, paths: Sequence[str], parallel: bool) -> List[bytes]:
        if parallel and len(paths) > 1:
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=min(32, len(paths))
            ) as executor:
                return list(executor.map(get_content_hash, paths))
        return [get_content_hash(path) for path in paths]

    def run(self, paths: Sequence[str], parallel: bool = True) -> SigningPlan:
        """
        Track every input and emit the signing plan.

        Args:
            paths: Explicit list of files to process, in order
            parallel: Hash inputs concurrently (tracking itself stays sequential)

        Returns:
            SigningPlan

        Raises:
            MissingCertificateError: If any file lacks a certificate
            ArchiveFormatError: If a container is unreadable in strict mode
            OSError: If an input cannot be read
        """
        self.context = RunContext()
        paths = list(paths)
        logger.info(f"Processing {len(paths)} file(s)")

        for path, content_hash in zip(paths, self._hash_inputs(paths, parallel)):
            self.track(path, content_hash, is_nested=False)

        return self.emit()

    def emit(self) -> SigningPlan:
        """Emit the plan from the current run state."""
        return self.emitter.emit(self.context)

    @classmethod
    def from_config(cls, config: "SigningConfig") -> "TrackingEngine":
        """
        Create engine from configuration.

        Args:
            config: SigningConfig

        Returns:
            TrackingEngine
        """
        extension_policy = ExtensionSignPolicy(
            config.get_extension_certificates(),
            ignore_certificate=config.get_ignore_certificate(),
        )
        resolver = CertificateResolver(
            explicit_certificates=config.get_explicit_certificates(),
            public_key_token_certificates=config.get_public_key_token_certificates(),
            extension_policy=extension_policy,
            default_certificate=config.get_default_certificate(),
            resign_certificates=config.get_resign_certificates(),
            ignore_certificate=config.get_ignore_certificate(),
        )
        return cls(
            resolver,
            config.get_temp_dir(),
            extension_policy=extension_policy,
            container_extensions=config.get_container_extensions(),
            max_container_depth=config.get_max_container_depth(),
            fail_on_container_error=config.fail_on_container_error(),
        )
