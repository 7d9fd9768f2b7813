"""
Motor de Download com Retry.

Responsável por:
1. Verificar duplicatas antes de qualquer ação no navegador
2. Abrir o menu da linha e clicar no link do XML (estratégias nomeadas)
3. Capturar o download na pasta de staging e entregar ao motor de dedup
4. Retry com espera crescente e reload da página no segundo retry
5. Disparar a ingestão após cada página com pelo menos um download

Falhas de download são dados (DownloadOutcome), não exceções: só
AuthenticationError atravessa esta fronteira.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import aiofiles.os
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .config import Config
from .dedup import DeduplicationEngine, remove_file
from .errors import (
    AuthenticationError,
    DownloadFailureError,
    ElementNotFoundError,
    analyze_error,
)
from .ingest import IngestionSink, IngestResult
from .periods import Period
from .resilience import linear_delay

logger = logging.getLogger(__name__)


# =============================================================================
# ESTRATÉGIAS DE SELETOR
# =============================================================================

@dataclass(frozen=True)
class SelectorStrategy:
    """
    Estratégia nomeada: monta o seletor para a linha e tenta clicar.

    Retorna False (sem exceção) quando o elemento não aparece, para que a
    próxima estratégia seja tentada. Isso não conta como retry.
    """
    name: str
    build: Callable[[int], str]

    def selector(self, row_index: int) -> str:
        return self.build(row_index)

    async def __call__(self, page: Page, row_index: int, timeout_ms: int) -> bool:
        selector = self.build(row_index)
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms)
            await page.click(selector, timeout=timeout_ms)
            return True
        except PlaywrightError as e:
            logger.debug(f"[DOWNLOAD] Estratégia {self.name} falhou na linha {row_index}: {e}")
            return False


DROPDOWN_STRATEGIES = (
    SelectorStrategy("tr-nth-of-type", lambda i: f"tr:nth-of-type({i}) button.dropdown-toggle"),
    SelectorStrategy("tbody-nth-child", lambda i: f"tbody tr:nth-child({i}) .dropdown-toggle"),
    SelectorStrategy(
        "bs-toggle", lambda i: f'tbody tr:nth-child({i}) button[data-bs-toggle="dropdown"]'
    ),
)

LINK_STRATEGIES = (
    SelectorStrategy("terceiro-link", lambda i: f"tr:nth-of-type({i}) a:nth-of-type(3)"),
    SelectorStrategy("ultimo-dropdown", lambda i: f"tr:nth-of-type({i}) .dropdown-menu a:last-child"),
    SelectorStrategy("href-xml", lambda i: f'tr:nth-of-type({i}) a[href*="xml"]'),
    SelectorStrategy("qualquer-dropdown", lambda i: f"tr:nth-of-type({i}) .dropdown-menu a"),
    # Último recurso: busca pelo texto do link
    SelectorStrategy(
        "texto-xml",
        lambda i: f"xpath=//tr[{i}]//a[contains(text(), 'XML') or contains(text(), 'xml')]",
    ),
)


# =============================================================================
# NÚMERO DA NOTA NA LINHA
# =============================================================================

ROW_CELLS_SCRIPT = """(idx) => {
    const row = document.querySelector(`tbody tr:nth-of-type(${idx})`);
    if (!row) return [];
    return Array.from(row.querySelectorAll('td')).slice(0, 4)
        .map(td => (td.textContent || '').trim());
}"""

_NOTE_RE = re.compile(r"\b(\d{9,10})\b")
_NOTE_FALLBACK_RE = re.compile(r"\b(\d{6,8})\b")


def extract_note_number(cells: Sequence[str]) -> Optional[str]:
    """Número da nota nas 4 primeiras células (9-10 dígitos, ou 6-8 sem data)."""
    for text in list(cells)[:4]:
        match = _NOTE_RE.search(text)
        if match:
            return match.group(1)
        fallback = _NOTE_FALLBACK_RE.search(text)
        if fallback and "/" not in text and "-" not in text:
            return fallback.group(1)
    return None


# =============================================================================
# RESULTADOS E ESTATÍSTICAS
# =============================================================================

class DownloadStatus(str, Enum):
    DOWNLOADED = "downloaded"  # Baixado e organizado
    DUPLICATE = "duplicate"  # Baixado, mas o dedup descartou
    SKIPPED = "skipped"  # Pulado na verificação pré-download
    FAILED = "failed"


@dataclass
class DownloadOutcome:
    """Resultado do download de uma linha."""
    row_index: int
    status: DownloadStatus
    attempts: int = 0
    file_name: Optional[str] = None
    target_path: Optional[str] = None
    reason: Optional[str] = None
    duplicate_of: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    dropdown_strategy: Optional[str] = None
    link_strategy: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status != DownloadStatus.FAILED

    @property
    def skipped(self) -> bool:
        return self.status in (DownloadStatus.SKIPPED, DownloadStatus.DUPLICATE)


@dataclass
class DownloadStats:
    """
    Contadores de uma execução.

    Invariante: successful + failed + skipped == attempts (uma tentativa
    por linha; retries são contados à parte).
    """
    attempts: int = 0
    successful: int = 0
    failed: int = 0
    retries: int = 0
    skipped: int = 0
    duplicates: int = 0

    def register(self, outcome: DownloadOutcome) -> None:
        self.attempts += 1
        if outcome.status == DownloadStatus.DOWNLOADED:
            self.successful += 1
        elif outcome.status == DownloadStatus.FAILED:
            self.failed += 1
        else:
            self.skipped += 1
            self.duplicates += 1

    @property
    def success_rate(self) -> float:
        if self.attempts == 0:
            return 0.0
        return self.successful / self.attempts * 100

    def to_dict(self) -> dict:
        return {
            "attempts": self.attempts,
            "successful": self.successful,
            "failed": self.failed,
            "retries": self.retries,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "success_rate": round(self.success_rate, 2),
        }


@dataclass
class PageDownloadResult:
    """Resultado de uma página inteira."""
    outcomes: List[DownloadOutcome] = field(default_factory=list)
    ingest: Optional[IngestResult] = None

    @property
    def successful(self) -> int:
        return sum(1 for o in self.outcomes if o.status == DownloadStatus.DOWNLOADED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == DownloadStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    @property
    def organized_paths(self) -> List[str]:
        return [
            o.target_path for o in self.outcomes
            if o.status == DownloadStatus.DOWNLOADED and o.target_path
        ]


# =============================================================================
# MOTOR
# =============================================================================

class DownloadEngine:
    """Baixa os XMLs de uma página, linha a linha, para um período."""

    def __init__(
        self,
        page: Page,
        cfg: Config,
        dedup: DeduplicationEngine,
        cnpj: str,
        period: Period,
        staging_dir: Path,
        ingestion_sink: Optional[IngestionSink] = None,
        stats: Optional[DownloadStats] = None,
        job_id: Optional[int] = None,
        dropdown_strategies: Sequence[SelectorStrategy] = DROPDOWN_STRATEGIES,
        link_strategies: Sequence[SelectorStrategy] = LINK_STRATEGIES,
    ):
        self.page = page
        self.config = cfg
        self.dedup = dedup
        self.cnpj = cnpj
        self.period = period
        self.staging_dir = Path(staging_dir)
        self.ingestion_sink = ingestion_sink
        self.stats = stats or DownloadStats()
        self.job_id = job_id
        self.dropdown_strategies = tuple(dropdown_strategies)
        self.link_strategies = tuple(link_strategies)
        self.page_number: Optional[int] = None

    @property
    def nominal_bucket(self) -> Path:
        return self.dedup.bucket_dir(self.cnpj, self.period.year, self.period.month)

    async def download_page(
        self, row_indices: Sequence[int], page_number: Optional[int] = None
    ) -> PageDownloadResult:
        """
        Baixa as linhas informadas em sequência.

        Args:
            row_indices: Índices 1-based das linhas de nota na tabela
            page_number: Página da pesquisa (apenas para contexto de log)

        Returns:
            PageDownloadResult com um DownloadOutcome por linha
        """
        self.page_number = page_number
        result = PageDownloadResult()
        if not row_indices:
            logger.warning("[DOWNLOAD] Nenhuma nota para download")
            return result

        total = len(row_indices)
        for position, row_index in enumerate(row_indices, start=1):
            logger.info(f"[DOWNLOAD] Processando XML {position}/{total} (linha {row_index})")
            result.outcomes.append(await self.download_single(row_index))

            if position < total:
                await asyncio.sleep(self.config.WAIT_BETWEEN_DOWNLOADS_MS / 1000)

        logger.info(
            f"[DOWNLOAD] Página concluída: {result.successful} baixados, "
            f"{result.skipped} pulados, {result.failed} falhas"
        )

        if result.successful > 0:
            result.ingest = await self._ingest(result.organized_paths)

        return result

    async def download_single(self, row_index: int) -> DownloadOutcome:
        """
        Baixa o XML de uma linha com até MAX_RETRIES retries.

        Nunca levanta exceção, exceto AuthenticationError.
        """
        outcome = await self._precheck(row_index)
        if outcome:
            self.stats.register(outcome)
            return outcome

        max_retries = self.config.MAX_RETRIES
        last_error: Optional[BaseException] = None

        for attempt in range(max_retries + 1):
            try:
                outcome = await self._attempt(row_index)
                outcome.attempts = attempt + 1
                self.stats.register(outcome)
                return outcome

            except AuthenticationError:
                raise

            except Exception as e:
                last_error = e
                info = analyze_error(e, self._context(row_index, attempt))
                logger.warning(
                    f"[DOWNLOAD] Erro na linha {row_index} tentativa {attempt + 1}/"
                    f"{max_retries + 1} ({info.type.value}): {e} | contexto={info.context}"
                )
                await self._close_menu()

                if attempt < max_retries:
                    self.stats.retries += 1
                    await asyncio.sleep(
                        linear_delay(attempt, self.config.RETRY_DELAY_MS / 1000)
                    )
                    if attempt == 1:
                        await self._reload()

        info = analyze_error(last_error, self._context(row_index, max_retries))
        logger.error(
            f"[DOWNLOAD] XML linha {row_index} falhou após {max_retries + 1} tentativas: "
            f"{last_error}"
        )
        outcome = DownloadOutcome(
            row_index=row_index,
            status=DownloadStatus.FAILED,
            attempts=max_retries + 1,
            error=str(last_error),
            error_type=info.type.value,
        )
        self.stats.register(outcome)
        return outcome

    async def _precheck(self, row_index: int) -> Optional[DownloadOutcome]:
        note_number = await self.extract_note_number(row_index)
        check = await self.dedup.should_skip_download(self.nominal_bucket, note_number)
        if not check.should_skip:
            return None

        logger.info(
            f"[DOWNLOAD] Linha {row_index} pulada ({check.reason.value}), "
            f"nota={note_number}, arquivos no bucket={check.existing_count}"
        )
        return DownloadOutcome(
            row_index=row_index,
            status=DownloadStatus.SKIPPED,
            attempts=0,
            reason=check.reason.value,
            file_name=f"note-{note_number}.xml" if note_number else None,
        )

    async def extract_note_number(self, row_index: int) -> Optional[str]:
        try:
            cells = await self.page.evaluate(ROW_CELLS_SCRIPT, row_index)
        except PlaywrightError as e:
            logger.debug(f"[DOWNLOAD] Erro ao ler células da linha {row_index}: {e}")
            return None
        return extract_note_number(cells or [])

    async def _attempt(self, row_index: int) -> DownloadOutcome:
        timeout = self.config.STRATEGY_TIMEOUT_MS

        dropdown = await self._run_strategies(self.dropdown_strategies, row_index, timeout)
        if dropdown is None:
            raise ElementNotFoundError(
                f"Falha ao abrir dropdown na linha {row_index}", row=row_index
            )
        await asyncio.sleep(self.config.DROPDOWN_SETTLE_MS / 1000)

        try:
            async with self.page.expect_download(
                timeout=self.config.DOWNLOAD_TIMEOUT_MS
            ) as download_info:
                link = await self._run_strategies(self.link_strategies, row_index, timeout)
                if link is None:
                    raise ElementNotFoundError(
                        f"Nenhum link XML encontrado na linha {row_index}", row=row_index
                    )
            download = await download_info.value
        except PlaywrightTimeoutError as e:
            raise DownloadFailureError(
                f"Download não detectado em {self.config.DOWNLOAD_TIMEOUT_MS}ms",
                row=row_index,
            ) from e

        staged = await self._save(download, row_index)
        organized = await self.dedup.organize(staged, self.cnpj, self.period)

        if organized.organized:
            logger.info(f"[DOWNLOAD] XML linha {row_index} baixado: {organized.file_name}")
            status = DownloadStatus.DOWNLOADED
        else:
            status = DownloadStatus.DUPLICATE

        return DownloadOutcome(
            row_index=row_index,
            status=status,
            file_name=organized.file_name,
            target_path=organized.target_path,
            reason=organized.reason.value if organized.reason else None,
            duplicate_of=organized.duplicate_of,
            dropdown_strategy=dropdown,
            link_strategy=link,
        )

    async def _run_strategies(
        self, strategies: Sequence[SelectorStrategy], row_index: int, timeout_ms: int
    ) -> Optional[str]:
        for strategy in strategies:
            if await strategy(self.page, row_index, timeout_ms):
                logger.debug(f"[DOWNLOAD] Estratégia {strategy.name} funcionou na linha {row_index}")
                return strategy.name
        return None

    async def _save(self, download, row_index: int) -> Path:
        await aiofiles.os.makedirs(self.staging_dir, exist_ok=True)
        file_name = download.suggested_filename or f"nfse-linha-{row_index}.xml"
        staged = self.staging_dir / file_name
        await download.save_as(staged)

        if not await aiofiles.os.path.exists(staged) or await aiofiles.os.path.getsize(staged) == 0:
            await remove_file(staged)
            raise DownloadFailureError(f"Arquivo baixado vazio: {file_name}", row=row_index)
        if staged.suffix.lower() != ".xml":
            await remove_file(staged)
            raise DownloadFailureError(f"Arquivo baixado não é XML: {file_name}", row=row_index)
        return staged

    async def _close_menu(self) -> None:
        try:
            await self.page.keyboard.press("Escape")
        except PlaywrightError as e:
            logger.debug(f"[DOWNLOAD] Não foi possível fechar o dropdown: {e}")

    async def _reload(self) -> None:
        logger.info("[DOWNLOAD] Recarregando página para retry")
        try:
            await self.page.reload(wait_until="domcontentloaded", timeout=10000)
            await asyncio.sleep(self.config.RELOAD_SETTLE_MS / 1000)
        except PlaywrightError as e:
            logger.warning(f"[DOWNLOAD] Erro ao recarregar página: {e}")

    async def _ingest(self, paths: List[str]) -> Optional[IngestResult]:
        if not self.ingestion_sink or not paths:
            return None
        try:
            result = await self.ingestion_sink.process_files(paths)
        except Exception as e:
            logger.error(f"[DOWNLOAD] Erro na ingestão de {len(paths)} arquivos: {e}")
            return IngestResult(total=len(paths), success=0, errors=len(paths))
        logger.info(
            f"[DOWNLOAD] Ingestão: {result.success}/{result.total} processados, "
            f"{result.errors} erros"
        )
        return result

    def _context(self, row_index: int, attempt: int) -> dict:
        return {
            "job_id": self.job_id,
            "period": self.period.label,
            "page": self.page_number,
            "row": row_index,
            "attempt": attempt + 1,
        }
