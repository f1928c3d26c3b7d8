"""
Tests for configuration loading.
"""
import pytest
from decimal import Decimal
from tally_ingest.config import IngestConfig, configure_logging


class TestIngestConfig:
    """Tests for environment-driven settings."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("TALLY_MAX_WORKERS", "3")
        monkeypatch.setenv("TALLY_SYNC_API_URL", "http://sync:3000")
        monkeypatch.setenv("TALLY_XML_EXTRACTOR", "LXML")
        monkeypatch.setenv("TALLY_AMOUNT_EPSILON", "0.5")

        config = IngestConfig.from_env()
        assert config.max_workers == 3
        assert config.sync_api_url == "http://sync:3000"
        assert config.xml_extractor == "lxml"
        assert config.amount_epsilon == Decimal("0.5")

    def test_bad_epsilon_falls_back(self, monkeypatch):
        monkeypatch.setenv("TALLY_AMOUNT_EPSILON", "a lot")
        assert IngestConfig().amount_epsilon == Decimal("0.01")

    def test_defaults_are_valid(self):
        assert IngestConfig(db_url="postgresql://localhost/db", xml_extractor="regex").validate() == []

    def test_validate_reports_every_error(self):
        config = IngestConfig(db_url="", max_workers=0, link_batch_size=0, xml_extractor="sax")
        errors = config.validate()
        assert "DB_URL is required" in errors
        assert "TALLY_MAX_WORKERS must be at least 1" in errors
        assert "TALLY_LINK_BATCH_SIZE must be at least 1" in errors
        assert any("TALLY_XML_EXTRACTOR" in e for e in errors)

    def test_configure_logging_with_file(self, tmp_path):
        log_file = tmp_path / "ingest.log"
        configure_logging(IngestConfig(log_file=str(log_file)), verbose=True)
        from loguru import logger
        logger.debug("hello")
        logger.complete()
        assert "hello" in log_file.read_text()
        logger.remove()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
