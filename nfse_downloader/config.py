"""
Configuração do NFSe Downloader.

Centraliza constantes do portal, timeouts, limites e variáveis de ambiente.
Cada execução recebe sua própria instância (ver Config.with_overrides).
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "sim", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass
class Config:
    """Configurações do downloader."""

    # === IDENTIFICAÇÃO ===
    CONNECTOR_NAME: str = "nfse_imperatriz"
    CONNECTOR_VERSION: str = "1.0.0"

    # === PORTAL ===
    PORTAL_BASE_URL: str = "https://imperatriz-ma.prefeituramoderna.com.br/meuiss_new/nfe/index.php"

    # === CREDENCIAIS / PERÍODO (via variáveis de ambiente) ===
    USERNAME: str = field(default_factory=lambda: os.getenv("XMLITZ_USERNAME", ""))
    PASSWORD: str = field(default_factory=lambda: os.getenv("XMLITZ_PASSWORD", ""))
    START_DATE: str = field(default_factory=lambda: os.getenv("XMLITZ_START_DATE", ""))
    END_DATE: str = field(default_factory=lambda: os.getenv("XMLITZ_END_DATE", ""))

    # === NAVEGADOR ===
    HEADLESS: bool = field(default_factory=lambda: _env_bool("XMLITZ_HEADLESS", True))
    VIEWPORT_WIDTH: int = 1100
    VIEWPORT_HEIGHT: int = 633
    USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    )
    LOCALE: str = "pt-BR"
    TIMEZONE_ID: str = "America/Sao_Paulo"
    BLOCKED_RESOURCE_TYPES: List[str] = field(default_factory=lambda: [
        "image", "font", "stylesheet", "media",
    ])
    BLOCKED_URL_PATTERNS: List[str] = field(default_factory=lambda: [
        "cdn-cgi/rum", "analytics", "tracking", "gtag",
        "google-analytics", "facebook.com", "doubleclick.net",
    ])

    # === TIMEOUTS (ms) ===
    NAVIGATION_TIMEOUT_MS: int = 30000
    ELEMENT_TIMEOUT_MS: int = 10000
    DOWNLOAD_TIMEOUT_MS: int = 5000
    STRATEGY_TIMEOUT_MS: int = 3000

    # === ESPERAS (ms) ===
    WAIT_BETWEEN_DOWNLOADS_MS: int = 1000
    WAIT_BETWEEN_PAGES_MS: int = 2000
    SEARCH_SETTLE_MS: int = 3000
    DROPDOWN_SETTLE_MS: int = 400
    RELOAD_SETTLE_MS: int = 2000

    # === RETRY ===
    MAX_RETRIES: int = field(default_factory=lambda: _env_int("XMLITZ_MAX_RETRIES", 3))
    RETRY_DELAY_MS: int = 2000

    # === PAGINAÇÃO ===
    PAGE_SIZE: int = 50  # totalRows_documento do portal
    MAX_PAGES: int = 100  # Limite de segurança por período

    # === DEDUPLICAÇÃO ===
    # Quantidade de arquivos no bucket a partir da qual o download é pulado.
    # 0 desabilita a regra.
    MAX_FILES_PER_BUCKET: int = field(
        default_factory=lambda: _env_int("XMLITZ_MAX_FILES_PER_BUCKET", 11)
    )
    FILE_CACHE_TTL: float = 30.0
    FILE_CACHE_MAX_SIZE: int = 100
    HASH_CACHE_TTL: float = 300.0
    HASH_CACHE_MAX_SIZE: int = 1000
    XML_DATA_CACHE_TTL: float = 600.0
    XML_DATA_CACHE_MAX_SIZE: int = 500
    VERDICT_CACHE_TTL: float = 60.0
    VERDICT_CACHE_MAX_SIZE: int = 200

    # === EXECUÇÕES ===
    MAX_CONCURRENT_EXECUTIONS: int = field(
        default_factory=lambda: _env_int("XMLITZ_MAX_CONCURRENT", 50)
    )
    SHUTDOWN_GRACE_SECONDS: float = 30.0
    JOB_LOG_SIZE: int = 50

    # === PATHS DE SAÍDA ===
    DOWNLOAD_PATH: str = field(
        default_factory=lambda: os.getenv("XMLITZ_DOWNLOAD_PATH", "downloads")
    )
    STAGING_DIRNAME: str = ".staging"
    INGEST_JSONL_PATH: str = field(
        default_factory=lambda: os.getenv("XMLITZ_INGEST_JSONL", "out/nfse_records.jsonl")
    )
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("XMLITZ_LOG_LEVEL", "INFO"))

    # === URLs DERIVADAS ===
    @property
    def login_url(self) -> str:
        return f"{self.PORTAL_BASE_URL}?out=2"

    @property
    def reports_url(self) -> str:
        return f"{self.PORTAL_BASE_URL}?pg=relatorio"

    @property
    def download_root(self) -> Path:
        return Path(self.DOWNLOAD_PATH).resolve()

    @property
    def staging_root(self) -> Path:
        return self.download_root / self.STAGING_DIRNAME

    # === SUPABASE (via variáveis de ambiente) ===
    @property
    def supabase_url(self) -> Optional[str]:
        return os.getenv("SUPABASE_URL")

    @property
    def supabase_key(self) -> Optional[str]:
        return os.getenv("SUPABASE_SERVICE_KEY")

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def with_overrides(self, **overrides) -> "Config":
        """
        Retorna uma cópia com os campos informados substituídos.

        Valores None são ignorados, o que permite repassar parâmetros
        opcionais de uma requisição sem filtrá-los antes.
        """
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    @staticmethod
    def mask_cnpj(cnpj: Optional[str]) -> Optional[str]:
        """Mascara CNPJ para logs (4 primeiros + **** + 4 últimos)."""
        if not cnpj or len(cnpj) < 8:
            return cnpj
        return f"{cnpj[:4]}****{cnpj[-4:]}"
