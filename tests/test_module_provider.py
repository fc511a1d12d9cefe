"""Tests for module content providers."""

import pytest

from enclaveplan.errors import ModuleNotFoundInProviderError
from enclaveplan.interpreter import ScriptInterpreter
from enclaveplan.module_provider import (
    CachedModuleProvider,
    DirectoryModuleProvider,
    InMemoryModuleProvider,
)
from enclaveplan.schemas import Print


@pytest.fixture
def modules_root(tmp_path):
    root = tmp_path / "modules"
    (root / "lib").mkdir(parents=True)
    (root / "lib" / "helpers.star").write_text("PORT = 8080\n")
    (root / "static").mkdir()
    (root / "static" / "logo.bin").write_bytes(b"\x89PNG\xff")
    (tmp_path / "secret.star").write_text("TOKEN = 1\n")
    return root


class TestDirectoryModuleProvider:
    """Tests for DirectoryModuleProvider."""

    def test_resolves_relative_locator(self, modules_root):
        provider = DirectoryModuleProvider(modules_root)
        assert provider.resolve("lib/helpers.star") == "PORT = 8080\n"

    def test_reads_see_changes_on_disk(self, modules_root):
        provider = DirectoryModuleProvider(modules_root)
        provider.resolve("lib/helpers.star")

        (modules_root / "lib" / "helpers.star").write_text("PORT = 9090\n")

        assert provider.resolve("lib/helpers.star") == "PORT = 9090\n"

    def test_binary_content(self, modules_root):
        provider = DirectoryModuleProvider(modules_root)

        assert provider.resolve_bytes("static/logo.bin") == b"\x89PNG\xff"
        with pytest.raises(ModuleNotFoundInProviderError, match="not valid UTF-8"):
            provider.resolve("static/logo.bin")

    def test_missing_module(self, modules_root):
        with pytest.raises(ModuleNotFoundInProviderError, match="Module not found: lib/nope.star"):
            DirectoryModuleProvider(modules_root).resolve("lib/nope.star")

    def test_escaping_locator_refused(self, modules_root):
        with pytest.raises(ModuleNotFoundInProviderError, match="points outside"):
            DirectoryModuleProvider(modules_root).resolve("../secret.star")

    def test_absolute_locator_refused(self, modules_root):
        absolute = str(modules_root / "lib" / "helpers.star")
        with pytest.raises(ModuleNotFoundInProviderError, match="must be a relative path"):
            DirectoryModuleProvider(modules_root).resolve(absolute)


class TestInMemoryModuleProvider:
    def test_text_and_bytes(self):
        provider = InMemoryModuleProvider({"a.star": "x = 1\n"})
        provider.add("data.bin", b"\x00\x01")

        assert provider.resolve("a.star") == "x = 1\n"
        assert provider.resolve_bytes("a.star") == b"x = 1\n"
        assert provider.resolve_bytes("data.bin") == b"\x00\x01"

    def test_missing_locator(self):
        with pytest.raises(ModuleNotFoundInProviderError, match="Module not found: x.star"):
            InMemoryModuleProvider().resolve("x.star")


class TestCachedModuleProvider:
    """Tests for the per-interpretation cache."""

    def test_snapshot_within_one_provider(self, modules_root):
        cached = CachedModuleProvider(DirectoryModuleProvider(modules_root))
        cached.resolve("lib/helpers.star")

        (modules_root / "lib" / "helpers.star").write_text("PORT = 9090\n")

        assert cached.resolve("lib/helpers.star") == "PORT = 8080\n"

    def test_failures_are_not_cached(self):
        inner = InMemoryModuleProvider()
        cached = CachedModuleProvider(inner)
        with pytest.raises(ModuleNotFoundInProviderError):
            cached.resolve("late.star")

        inner.add("late.star", "X = 1\n")

        assert cached.resolve("late.star") == "X = 1\n"

    def test_long_lived_interpreter_sees_module_changes(self, modules_root):
        interpreter = ScriptInterpreter(DirectoryModuleProvider(modules_root))
        script = 'load("lib/helpers.star", "PORT")\nprint(PORT)\n'

        first = interpreter.interpret(script)
        (modules_root / "lib" / "helpers.star").write_text("PORT = 9090\n")
        second = interpreter.interpret(script)

        assert [i.message for i in first.instructions if isinstance(i, Print)] == ["8080"]
        assert [i.message for i in second.instructions if isinstance(i, Print)] == ["9090"]
