"""Tests for environment variable handling."""

import os
from pathlib import Path

import pytest

from shiftdeck.config.env_loader import get_env_var, load_env_file, substitute_env_vars
from shiftdeck.lib.errors import ConfigError


class TestSubstituteEnvVars:
    """Tests for ${VAR} substitution."""

    def test_substitutes_set_variables(
        self, isolated_env: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Every reference is replaced."""
        monkeypatch.setenv("REGISTRY", "registry.local")
        monkeypatch.setenv("TAG", "1.2.3")

        result = substitute_env_vars("image: ${REGISTRY}/api:${TAG}")

        assert result == "image: registry.local/api:1.2.3"

    def test_plain_dollar_untouched(self) -> None:
        """Only the braced form is substituted."""
        assert substitute_env_vars("cost: $5 and $HOME") == "cost: $5 and $HOME"

    def test_unset_variable_raises(self, isolated_env: dict[str, str]) -> None:
        """An unset variable names itself in the error."""
        os.environ.pop("SHIFTDECK_TEST_MISSING", None)

        with pytest.raises(ConfigError) as exc_info:
            substitute_env_vars("x: ${SHIFTDECK_TEST_MISSING}")

        assert exc_info.value.field == "SHIFTDECK_TEST_MISSING"


class TestGetEnvVar:
    """Tests for get_env_var."""

    def test_blank_uses_default(
        self, isolated_env: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Blank values count as unset."""
        monkeypatch.setenv("SHIFTDECK_BLANK", "  ")

        assert get_env_var("SHIFTDECK_BLANK", "fallback") == "fallback"
        assert get_env_var("SHIFTDECK_UNSET") is None


class TestLoadEnvFile:
    """Tests for .env loading."""

    def test_loads_file_without_overriding(
        self,
        tmp_path: Path,
        isolated_env: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Variables in the file are added; existing ones win."""
        env_file = tmp_path / ".env"
        env_file.write_text(
            "SHIFTDECK_FROM_FILE=file\nSHIFTDECK_PRESET=file\n", encoding="utf-8"
        )
        monkeypatch.setenv("SHIFTDECK_PRESET", "process")

        assert load_env_file(env_file) is True
        assert os.environ["SHIFTDECK_FROM_FILE"] == "file"
        assert os.environ["SHIFTDECK_PRESET"] == "process"

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file is not an error."""
        assert load_env_file(tmp_path / ".env") is False
