"""Target framework name parsing and normalization."""

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class FrameworkName:
    """A parsed target framework moniker such as `.NETFramework,Version=v4.7.2`."""

    identifier: str
    version: Tuple[int, ...]
    profile: str = ""

    @property
    def full_name(self) -> str:
        """Canonical display form: `identifier,Version=vX.Y[,Profile=name]`."""
        name = f"{self.identifier},Version=v{'.'.join(str(part) for part in self.version)}"
        if self.profile:
            name += f",Profile={self.profile}"
        return name

    @classmethod
    def parse(cls, value: str) -> "FrameworkName":
        """
        Parse a framework name string.

        Args:
            value: Framework name, e.g. ".NETCoreApp,Version=v3.1"

        Returns:
            FrameworkName

        Raises:
            ValueError: If the string is not a valid framework name
        """
        if not value:
            raise ValueError("Framework name is empty")

        components = value.split(",")
        if len(components) not in (2, 3):
            raise ValueError(f"Invalid framework name: {value!r}")

        identifier = components[0].strip()
        if not identifier:
            raise ValueError(f"Framework name has no identifier: {value!r}")

        version = None
        profile = ""
        for component in components[1:]:
            parts = component.split("=")
            if len(parts) != 2:
                raise ValueError(f"Invalid framework name component: {component!r}")

            key = parts[0].strip().lower()
            setting = parts[1].strip()
            if key == "version":
                if setting[:1] in ("v", "V"):
                    setting = setting[1:]
                version = _parse_version(setting)
            elif key == "profile":
                profile = setting
            else:
                raise ValueError(f"Unknown framework name component: {component!r}")

        if version is None:
            raise ValueError(f"Framework name has no version: {value!r}")

        return cls(identifier=identifier, version=version, profile=profile)


def _parse_version(value: str) -> Tuple[int, ...]:
    parts = value.split(".")
    if not 2 <= len(parts) <= 4:
        raise ValueError(f"Invalid version: {value!r}")
    try:
        numbers = tuple(int(part) for part in parts)
    except ValueError:
        raise ValueError(f"Invalid version: {value!r}")
    if any(number < 0 for number in numbers):
        raise ValueError(f"Invalid version: {value!r}")
    return numbers


def normalize_framework_name(value: str) -> str:
    """Return the canonical full name for a framework string."""
    return FrameworkName.parse(value).full_name
