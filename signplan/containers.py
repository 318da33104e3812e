"""Container unpacking: nested entries of zip-based archives."""

import os
import posixpath
import shutil
import zipfile
import zlib
from typing import TYPE_CHECKING, List, Optional

from .certificates import ExtensionSignPolicy
from .content import get_content_hash, hash_to_string
from .logging import get_logger
from .models import ContainerDescriptor, ContainerFailure, ContentIdentityKey, TrackedFile, ZipPart

if TYPE_CHECKING:
    from .tracking import TrackingEngine

logger = get_logger("containers")

DEFAULT_CONTAINER_EXTENSIONS = (".zip", ".nupkg", ".vsix")
DEFAULT_MAX_DEPTH = 16

# Raised by zipfile for corrupt, truncated, encrypted or unsupported archives
ARCHIVE_ERRORS = (
    OSError,
    EOFError,
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    zlib.error,
    NotImplementedError,
    RuntimeError,
)


class ArchiveFormatError(Exception):
    """A container could not be opened or read."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot unpack container {path}: {reason}")


class NestedDuplicateError(RuntimeError):
    """A nested file was tracked although its content identity is already known."""


class ContainerUnpacker:
    """Opens containers and feeds their signable entries back to the tracking engine."""

    def __init__(
        self,
        engine: "TrackingEngine",
        staging_dir: str,
        extension_policy: ExtensionSignPolicy,
        max_depth: int = DEFAULT_MAX_DEPTH,
        fail_on_error: bool = False,
    ):
        """
        Initialize unpacker.

        Args:
            engine: Tracking engine owning the run state
            staging_dir: Directory nested files are extracted into, one
                subdirectory per content hash
            extension_policy: Decides which entries are examined
            max_depth: Maximum nesting of containers inside containers
            fail_on_error: Raise ArchiveFormatError instead of skipping a
                container that cannot be read
        """
        self.engine = engine
        self.staging_dir = staging_dir
        self.extension_policy = extension_policy
        self.max_depth = max_depth
        self.fail_on_error = fail_on_error

    def unpack(self, container: TrackedFile) -> Optional[ContainerDescriptor]:
        """
        Build the descriptor of a container, tracking each signable entry.

        Args:
            container: Tracked record of the container file

        Returns:
            ContainerDescriptor, or None if the container could not be read

        Raises:
            ArchiveFormatError: If the container cannot be read and
                fail_on_error is set
        """
        context = self.engine.context
        if context.depth >= self.max_depth:
            return self._fail(container, f"containers nested deeper than {self.max_depth} levels")

        checkpoint = context.checkpoint()
        context.depth += 1
        try:
            parts = self._read_parts(container)
        except NestedDuplicateError:
            raise
        except ARCHIVE_ERRORS as e:
            # Entries tracked before the failure must not reach the plan
            context.restore(checkpoint)
            return self._fail(container, f"{type(e).__name__}: {e}", e)
        finally:
            context.depth -= 1

        logger.debug(f"Container {container.full_path} has {len(parts)} signable parts")
        return ContainerDescriptor(owner=container, parts=tuple(parts))

    def _read_parts(self, container: TrackedFile) -> List[ZipPart]:
        parts = []
        with zipfile.ZipFile(container.full_path) as archive:
            for entry in archive.infolist():
                if entry.is_dir():
                    continue

                relative_path = entry.filename
                file_name = posixpath.basename(relative_path.replace("\\", "/"))
                extension = posixpath.splitext(file_name)[1]
                if not self.extension_policy.should_sign(extension):
                    continue

                with archive.open(entry) as stream:
                    content_hash = get_content_hash(stream)

                # Same bytes under the same name reuse the earlier decision
                key = ContentIdentityKey(content_hash, file_name)
                tracked = self.engine.context.files_by_key.get(key)
                if tracked is None:
                    staged_path = self._extract(archive, entry, content_hash, file_name)
                    tracked = self.engine.track(staged_path, content_hash, is_nested=True)
                else:
                    logger.debug(f"Reusing {tracked.full_path} for {relative_path} in {container.full_path}")

                # Ignored and already-signed entries stay parts so they are repacked
                parts.append(ZipPart(relative_path=relative_path, tracked_file=tracked))

        return parts

    def _extract(
        self,
        archive: zipfile.ZipFile,
        entry: zipfile.ZipInfo,
        content_hash: bytes,
        file_name: str,
    ) -> str:
        target_dir = os.path.join(self.staging_dir, hash_to_string(content_hash))
        os.makedirs(target_dir, exist_ok=True)
        target_path = os.path.join(target_dir, file_name)

        with archive.open(entry) as source, open(target_path, "wb") as target:
            shutil.copyfileobj(source, target)

        return target_path

    def _fail(
        self, container: TrackedFile, reason: str, cause: Optional[BaseException] = None
    ) -> None:
        if self.fail_on_error:
            raise ArchiveFormatError(container.full_path, reason) from cause

        logger.error(
            f"Unable to unpack container {container.full_path}: {reason}. "
            f"None of its nested files are part of the plan."
        )
        self.engine.context.failed_containers.append(
            ContainerFailure(path=container.full_path, reason=reason)
        )
        return None
