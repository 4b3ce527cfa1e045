"""Tests for model alias resolution and backend detection."""

from __future__ import annotations

import pytest

from cadence.models import detect_backend, resolve_model


class TestDetectBackend:
    @pytest.mark.parametrize("model_id", ["gpt-5.3-codex", "GPT-4o", "my-codex-finetune"])
    def test_codex(self, model_id: str):
        assert detect_backend(model_id) == "codex"

    @pytest.mark.parametrize("model_id", ["claude-opus-4-6", "sonnet", "anything-else"])
    def test_claude(self, model_id: str):
        assert detect_backend(model_id) == "claude"


class TestResolveModel:
    def test_alias(self):
        assert resolve_model("opus") == ("claude-opus-4-6", "claude")
        assert resolve_model("5.2") == ("gpt-5.2-codex", "codex")

    def test_alias_is_case_insensitive(self):
        assert resolve_model("Sonnet") == ("claude-sonnet-4-5-20250929", "claude")

    def test_exact_id(self):
        assert resolve_model("gpt-5.1-codex-max") == ("gpt-5.1-codex-max", "codex")

    def test_substring(self):
        assert resolve_model("haiku-4-5") == ("claude-haiku-4-5-20251001", "claude")

    def test_unknown_passes_through(self):
        assert resolve_model("claude-future-9") == ("claude-future-9", "claude")
        assert resolve_model("gpt-7") == ("gpt-7", "codex")
