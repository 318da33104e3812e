"""Configuration file loading and validation."""

import copy
import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List
from .certificates import CertificateKey, DEFAULT_RESIGN_CERTIFICATES, IGNORE_CERTIFICATE
from .containers import DEFAULT_CONTAINER_EXTENSIONS, DEFAULT_MAX_DEPTH

DEFAULT_TEMP_DIR = os.path.join("obj", "signing")
CONFIG_DIR_NAME = ".signing"
CONFIG_FILE_NAMES = ("config.yaml", "config.yml")
CONFIG_PATH_ENV_VAR = "SIGNPLAN_CONFIG"


class ConfigError(Exception):
    """Configuration validation error."""
    pass


class SigningConfig:
    """Configuration for signing plan generation."""

    def __init__(self, data: Dict[str, Any], source: Optional[Path] = None):
        """
        Initialize configuration from dictionary.

        Args:
            data: Configuration dictionary from YAML
            source: File the configuration was read from, if any
        """
        self.data = data
        self.source = source
        self._validate()

    def _validate(self) -> None:
        """Validate configuration schema."""
        for name in ("temp_dir", "default_certificate", "ignore_certificate"):
            if name in self.data and not isinstance(self.data[name], str):
                raise ConfigError(f"{name} must be a string")

        # Mapping tables: key -> certificate name
        for name in ("certificates", "public_key_tokens", "extensions"):
            if name not in self.data:
                continue
            table = self.data[name]
            if not isinstance(table, dict):
                raise ConfigError(f"{name} must be a dictionary")
            for key, value in table.items():
                if not isinstance(value, str):
                    raise ConfigError(f"{name}.{key} must be a certificate name")

        if "explicit_certificates" in self.data:
            entries = self.data["explicit_certificates"]
            if not isinstance(entries, list):
                raise ConfigError("explicit_certificates must be a list")

            for idx, entry in enumerate(entries):
                if not isinstance(entry, dict):
                    raise ConfigError(f"explicit_certificates[{idx}] must be a dictionary")

                if "file" not in entry:
                    raise ConfigError(
                        f"explicit_certificates[{idx}] missing required 'file' field"
                    )

                if "certificate" not in entry:
                    raise ConfigError(
                        f"explicit_certificates[{idx}] missing required 'certificate' field"
                    )

        for name in ("resign_certificates", "container_extensions"):
            if name in self.data and not isinstance(self.data[name], list):
                raise ConfigError(f"{name} must be a list")

        if "containers" in self.data:
            containers = self.data["containers"]
            if not isinstance(containers, dict):
                raise ConfigError("containers must be a dictionary")

            max_depth = containers.get("max_depth", DEFAULT_MAX_DEPTH)
            if isinstance(max_depth, bool) or not isinstance(max_depth, int) or max_depth < 1:
                raise ConfigError("containers.max_depth must be a positive integer")

            if "fail_on_error" in containers and not isinstance(
                containers["fail_on_error"], bool
            ):
                raise ConfigError("containers.fail_on_error must be boolean")

    def get_temp_dir(self) -> str:
        """
        Get root directory for staged container contents and reports.

        Returns:
            Directory path
        """
        return self.data.get("temp_dir", DEFAULT_TEMP_DIR)

    def get_default_certificate(self) -> Optional[str]:
        return self.data.get("default_certificate")

    def get_ignore_certificate(self) -> str:
        return self.data.get("ignore_certificate", IGNORE_CERTIFICATE)

    def get_explicit_certificates(self) -> Dict[CertificateKey, str]:
        """
        Get the combined certificate table.

        Entries of `certificates` are keyed by base name only; entries of
        `explicit_certificates` may add a public key token and target framework.

        Returns:
            Mapping of CertificateKey to certificate name
        """
        table = {
            CertificateKey(str(name)): certificate
            for name, certificate in self.data.get("certificates", {}).items()
        }
        for entry in self.data.get("explicit_certificates", []):
            key = CertificateKey(
                str(entry["file"]),
                str(entry.get("public_key_token") or ""),
                str(entry.get("target_framework") or ""),
            )
            table[key] = entry["certificate"]
        return table

    def get_public_key_token_certificates(self) -> Dict[str, str]:
        return {
            str(token): certificate
            for token, certificate in self.data.get("public_key_tokens", {}).items()
        }

    def get_extension_certificates(self) -> Dict[str, str]:
        return dict(self.data.get("extensions", {}))

    def get_resign_certificates(self) -> List[str]:
        return list(self.data.get("resign_certificates", DEFAULT_RESIGN_CERTIFICATES))

    def get_container_extensions(self) -> List[str]:
        return list(self.data.get("container_extensions", DEFAULT_CONTAINER_EXTENSIONS))

    def get_max_container_depth(self) -> int:
        return self.data.get("containers", {}).get("max_depth", DEFAULT_MAX_DEPTH)

    def fail_on_container_error(self) -> bool:
        return self.data.get("containers", {}).get("fail_on_error", False)

    def merge_with_cli_args(
        self,
        temp_dir: Optional[str] = None,
        fail_on_container_error: Optional[bool] = None,
    ) -> "SigningConfig":
        """
        Merge configuration with CLI arguments.
        CLI arguments take precedence over config file.

        Args:
            temp_dir: Temp directory from CLI
            fail_on_container_error: Strict container handling from CLI

        Returns:
            New SigningConfig with merged values
        """
        merged = copy.deepcopy(self.data)

        if temp_dir:
            merged["temp_dir"] = temp_dir

        if fail_on_container_error is not None:
            merged.setdefault("containers", {})["fail_on_error"] = fail_on_container_error

        return SigningConfig(merged, source=self.source)

    def apply_environment_overrides(self) -> "SigningConfig":
        """
        Apply environment variable overrides.

        Environment variables:
        - SIGNPLAN_TEMP_DIR: Override temp directory
        - SIGNPLAN_DEFAULT_CERTIFICATE: Override default certificate

        Returns:
            New SigningConfig with environment overrides applied
        """
        merged = copy.deepcopy(self.data)

        temp_dir = os.getenv("SIGNPLAN_TEMP_DIR")
        if temp_dir:
            merged["temp_dir"] = temp_dir

        default_certificate = os.getenv("SIGNPLAN_DEFAULT_CERTIFICATE")
        if default_certificate:
            merged["default_certificate"] = default_certificate

        return SigningConfig(merged, source=self.source)


def load_config(config_path) -> SigningConfig:
    """
    Read a signing configuration from a YAML file.

    An empty file yields an empty configuration.

    Args:
        config_path: Path to the YAML file (str or Path)

    Returns:
        SigningConfig remembering the file as its source

    Raises:
        FileNotFoundError: If the path is not an existing file
        ConfigError: If the YAML is malformed, is not a mapping, or fails validation
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    elif not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, not {type(data).__name__}")

    return SigningConfig(data, source=path)


def _config_file_in(directory: Path) -> Optional[Path]:
    for name in CONFIG_FILE_NAMES:
        candidate = directory / CONFIG_DIR_NAME / name
        if candidate.is_file():
            return candidate
    return None


def find_default_config(start: Optional[Path] = None) -> Optional[Path]:
    """
    Locate the signing configuration for a build tree.

    Looks for .signing/config.yaml (or config.yml) in `start` and each of its
    parents, stopping at the repository root (the first directory with a .git
    entry). The home directory is searched last.

    Args:
        start: Directory to search from (default: the working directory)

    Returns:
        Path to the config file, or None if there is none
    """
    start = Path(start) if start is not None else Path.cwd()
    for directory in (start, *start.parents):
        found = _config_file_in(directory)
        if found is not None:
            return found
        if (directory / ".git").exists():
            break

    return _config_file_in(Path.home())


def load_default_config() -> Optional[SigningConfig]:
    """
    Load the configuration a run uses when none is given on the command line.

    SIGNPLAN_CONFIG names the file explicitly; otherwise `find_default_config`
    decides.

    Returns:
        SigningConfig, or None if no configuration file applies

    Raises:
        FileNotFoundError: If SIGNPLAN_CONFIG names a missing file
        ConfigError: If the file is invalid
    """
    explicit = os.getenv(CONFIG_PATH_ENV_VAR)
    config_path = Path(explicit) if explicit else find_default_config()
    if config_path is None:
        return None
    return load_config(config_path)
