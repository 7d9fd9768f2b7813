"""
Pytest configuration and fixtures for NFSe Downloader tests.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from nfse_downloader.config import Config


@pytest.fixture
def cfg(tmp_path):
    """Config sem esperas, com downloads em diretório temporário."""
    return Config(
        USERNAME="12345678000199",
        PASSWORD="segredo",
        START_DATE="2024-01-01",
        END_DATE="2024-01-31",
        HEADLESS=True,
        MAX_RETRIES=3,
        MAX_FILES_PER_BUCKET=11,
        MAX_CONCURRENT_EXECUTIONS=50,
        DOWNLOAD_PATH=str(tmp_path / "downloads"),
        INGEST_JSONL_PATH=str(tmp_path / "out" / "nfse_records.jsonl"),
        STRATEGY_TIMEOUT_MS=10,
        DOWNLOAD_TIMEOUT_MS=10,
        WAIT_BETWEEN_DOWNLOADS_MS=0,
        WAIT_BETWEEN_PAGES_MS=0,
        SEARCH_SETTLE_MS=0,
        DROPDOWN_SETTLE_MS=0,
        RELOAD_SETTLE_MS=0,
        RETRY_DELAY_MS=0,
        SHUTDOWN_GRACE_SECONDS=1.0,
    )


@pytest.fixture
def staging_dir(cfg):
    path = cfg.staging_root / "job-1" / "2024-01"
    path.mkdir(parents=True, exist_ok=True)
    return path
