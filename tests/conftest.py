"""Pytest configuration and fixtures for fpbackup tests."""

import pytest
from hypothesis import settings, Phase

from fpbackup.config import Configuration, FingerprintConfig, LoggingConfig, RetentionConfig

# Configure hypothesis to use fewer examples for faster test runs
# Disable shrinking phase to speed up tests further
settings.register_profile(
    "fast",
    max_examples=10,
    deadline=10000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate]
)
settings.register_profile("ci", max_examples=50, deadline=10000)
settings.register_profile("dev", max_examples=2, deadline=10000)

# Use the fast profile by default
settings.load_profile("fast")


@pytest.fixture
def make_config(tmp_path):
    """Build a Configuration rooted in tmp_path."""
    def _make(**overrides) -> Configuration:
        source = overrides.pop("source_directory", tmp_path / "source")
        destination = overrides.pop("backup_destination", tmp_path / "backups")
        return Configuration(
            backup_destination=destination,
            source_directory=source,
            exclude_patterns=overrides.pop("exclude_patterns", ["*.tmp", "cache/"]),
            fingerprint=overrides.pop("fingerprint", FingerprintConfig(max_workers=2)),
            retention=overrides.pop("retention", RetentionConfig(days=30)),
            logging=LoggingConfig(
                level="DEBUG",
                log_file=tmp_path / "logs" / "fpbackup.log",
                error_log_file=tmp_path / "logs" / "fpbackup.err",
            ),
            **overrides,
        )
    return _make
