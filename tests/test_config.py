import logging
import pytest
from fleetsafe.config import config, positive_int_env, setup_logging

class TestPositiveIntEnv:
    """Test validation of integer settings read from the environment."""

    def test_default_is_used(self, monkeypatch):
        monkeypatch.delenv("VIOLATION_BUCKET_SECONDS", raising=False)
        assert positive_int_env("VIOLATION_BUCKET_SECONDS", "60") == 60

    def test_environment_overrides_default(self, monkeypatch):
        monkeypatch.setenv("VIOLATION_BUCKET_SECONDS", "300")
        assert positive_int_env("VIOLATION_BUCKET_SECONDS", "60") == 300

    @pytest.mark.parametrize("raw", ["0", "-5"])
    def test_non_positive_is_rejected(self, monkeypatch, raw):
        monkeypatch.setenv("VIOLATION_BUCKET_SECONDS", raw)
        with pytest.raises(ValueError, match="VIOLATION_BUCKET_SECONDS"):
            positive_int_env("VIOLATION_BUCKET_SECONDS", "60")

class TestSetupLogging:
    """Test logging initialisation."""

    def test_repeat_calls_add_no_handlers(self, monkeypatch, tmp_path):
        root = logging.getLogger()
        monkeypatch.setattr(root, "handlers", [])
        monkeypatch.setattr(root, "level", root.level)
        monkeypatch.setattr(config, "log_file", str(tmp_path / "fleetsafe.log"))

        setup_logging()
        installed = list(root.handlers)
        try:
            setup_logging()
            assert root.handlers == installed
            assert sum(isinstance(h, logging.FileHandler) for h in root.handlers) == 1
        finally:
            for handler in installed:
                handler.close()

    def test_existing_handlers_are_kept(self, monkeypatch):
        root = logging.getLogger()
        existing = logging.NullHandler()
        monkeypatch.setattr(root, "handlers", [existing])
        logger = setup_logging()
        assert root.handlers == [existing]
        assert logger.name == "fleetsafe"
