"""
Module content providers - where load(), import_module() and upload_files()
get their content from.

The interpreter only ever calls `resolve(locator)`; remote package fetching
and on-disk caching belong to providers outside this package. Included here:
- DirectoryModuleProvider: locators are relative paths under a root directory
- InMemoryModuleProvider: locators are keys of a dict (tests, embedding)
- CachedModuleProvider: per-interpretation cache around another provider
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from enclaveplan.errors import ModuleNotFoundInProviderError

logger = logging.getLogger(__name__)


class ModuleContentProvider(ABC):
    """Abstract base class for module content providers."""

    @abstractmethod
    def resolve(self, locator: str) -> str:
        """
        Return the source text a locator points to.

        Raises:
            ModuleNotFoundInProviderError: If the locator cannot be resolved
        """
        pass

    def resolve_bytes(self, locator: str) -> bytes:
        """Return the raw content a locator points to."""
        return self.resolve(locator).encode("utf-8")


class DirectoryModuleProvider(ModuleContentProvider):
    """
    Resolves locators as relative paths under a root directory.

    Every call reads the file again; the interpreter caches content per
    interpretation. Locators that are absolute or escape the root are refused.

    Example directory structure:
        modules/
            lib/
                helpers.star
            static/
                config.json
    """

    def __init__(self, root: Path | str):
        """
        Initialize the provider.

        Args:
            root: Directory that locators are resolved against
        """
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, locator: str) -> str:
        content = self.resolve_bytes(locator)
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ModuleNotFoundInProviderError(f"Module '{locator}' is not valid UTF-8 text: {e}")

    def resolve_bytes(self, locator: str) -> bytes:
        path = self._locate(locator)
        try:
            content = path.read_bytes()
        except OSError as e:
            raise ModuleNotFoundInProviderError(f"Failed to read module '{locator}': {e}")
        logger.debug(f"Read module '{locator}' from {path} ({len(content)} bytes)")
        return content

    def _locate(self, locator: str) -> Path:
        if not locator or Path(locator).is_absolute():
            raise ModuleNotFoundInProviderError(f"Module locator must be a relative path, got '{locator}'")
        path = (self._root / locator).resolve()
        if not path.is_relative_to(self._root):
            raise ModuleNotFoundInProviderError(
                f"Module locator '{locator}' points outside of {self._root}"
            )
        if not path.is_file():
            raise ModuleNotFoundInProviderError(f"Module not found: {locator}")
        return path


class InMemoryModuleProvider(ModuleContentProvider):
    """Resolves locators from an in-memory mapping."""

    def __init__(self, modules: dict[str, str | bytes] | None = None):
        self._modules: dict[str, str | bytes] = dict(modules or {})

    def add(self, locator: str, content: str | bytes) -> None:
        self._modules[locator] = content

    def resolve(self, locator: str) -> str:
        content = self._get(locator)
        if isinstance(content, bytes):
            return content.decode("utf-8")
        return content

    def resolve_bytes(self, locator: str) -> bytes:
        content = self._get(locator)
        if isinstance(content, str):
            return content.encode("utf-8")
        return content

    def _get(self, locator: str) -> str | bytes:
        if locator not in self._modules:
            raise ModuleNotFoundInProviderError(f"Module not found: {locator}")
        return self._modules[locator]


class CachedModuleProvider(ModuleContentProvider):
    """
    Remembers what another provider returned.

    The interpreter wraps its provider in one of these per interpretation,
    so a script sees one consistent snapshot of each module while later
    interpretations pick up changes.
    """

    def __init__(self, provider: ModuleContentProvider):
        self._provider = provider
        self._text: dict[str, str] = {}
        self._raw: dict[str, bytes] = {}

    def resolve(self, locator: str) -> str:
        if locator not in self._text:
            self._text[locator] = self._provider.resolve(locator)
        return self._text[locator]

    def resolve_bytes(self, locator: str) -> bytes:
        if locator not in self._raw:
            self._raw[locator] = self._provider.resolve_bytes(locator)
        return self._raw[locator]
