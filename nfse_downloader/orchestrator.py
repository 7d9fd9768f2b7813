"""
Orquestrador do pipeline de download.

Sequência por execução:
1. Abre o navegador e autentica (uma vez, reutilizado por todos os períodos)
2. Divide o intervalo em períodos mensais
3. Para cada período: navega até o relatório e executa
   pesquisa -> contagem -> download até acabarem as páginas
4. Agrega contadores e gera o RunReport

Falha em um período é registrada e o próximo período segue. Falha de
autenticação aborta a execução inteira.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from .auth import Authenticator
from .browser import BrowserSession
from .cache import DuplicateCache
from .config import Config
from .dedup import DeduplicationEngine
from .download import DownloadEngine, DownloadStats
from .errors import AuthenticationError, analyze_error
from .ingest import IngestionSink
from .navigation import Navigator
from .periods import Period, split_into_periods
from .search import SearchDriver

logger = logging.getLogger(__name__)


@dataclass
class ProgressSnapshot:
    """Progresso enviado ao gerenciador de execuções após cada página."""
    pages_processed: int = 0
    notes_found: int = 0
    xmls_downloaded: int = 0
    xmls_skipped: int = 0
    failures: int = 0
    current_period: Optional[str] = None
    current_page: int = 0

    def to_dict(self) -> dict:
        return {
            "pagesProcessed": self.pages_processed,
            "notesFound": self.notes_found,
            "xmlsDownloaded": self.xmls_downloaded,
            "xmlsSkipped": self.xmls_skipped,
            "failures": self.failures,
            "currentPeriod": self.current_period,
            "currentPage": self.current_page,
        }


@dataclass
class PeriodResult:
    """Contadores de um período."""
    period: str
    pages_processed: int = 0
    notes_found: int = 0
    xmls_downloaded: int = 0
    xmls_skipped: int = 0
    duplicates: int = 0
    failures: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "period": self.period,
            "pagesProcessed": self.pages_processed,
            "notesFound": self.notes_found,
            "xmlsDownloaded": self.xmls_downloaded,
            "xmlsSkipped": self.xmls_skipped,
            "duplicates": self.duplicates,
            "failures": self.failures,
            "error": self.error,
        }


@dataclass
class RunReport:
    """Relatório final de uma execução."""
    success: bool
    duration: int
    pages_processed: int
    notes_found: int
    xmls_downloaded: int
    xmls_skipped: int
    duplicates_detected: int
    failures: int
    success_rate: int
    download_path: str
    cancelled: bool = False
    period_errors: int = 0
    periods: List[PeriodResult] = field(default_factory=list)
    download_stats: dict = field(default_factory=dict)

    @property
    def last_error(self) -> Optional[str]:
        """Último erro de período; sem ele, o total de falhas de download."""
        for period in reversed(self.periods):
            if period.error:
                return period.error
        if self.failures:
            return f"{self.failures} falha(s) de download"
        return None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "duration": self.duration,
            "pagesProcessed": self.pages_processed,
            "notesFound": self.notes_found,
            "xmlsDownloaded": self.xmls_downloaded,
            "xmlsSkipped": self.xmls_skipped,
            "duplicatesDetected": self.duplicates_detected,
            "failures": self.failures,
            "successRate": self.success_rate,
            "downloadPath": self.download_path,
            "cancelled": self.cancelled,
            "periodErrors": self.period_errors,
            "periods": [p.to_dict() for p in self.periods],
            "downloadStats": self.download_stats,
        }


def compute_success_rate(downloaded: int, notes_found: int) -> int:
    if notes_found <= 0:
        return 0
    return round(downloaded / notes_found * 100)


class PipelineOrchestrator:
    """
    Executa o pipeline completo para uma execução.

    Args:
        cfg: Configuração já com os parâmetros da execução
        job_id: Identificador da execução (contexto de log e staging)
        progress_callback: Recebe um ProgressSnapshot após cada página
        should_continue: Checkpoint de cancelamento (False interrompe)
        ingestion_sink: Destino dos XMLs organizados
        session_factory: Cria a sessão de navegador (padrão: BrowserSession)
        dedup: Motor de deduplicação compartilhado
    """

    def __init__(
        self,
        cfg: Config,
        job_id: Optional[int] = None,
        progress_callback: Optional[Callable[[ProgressSnapshot], None]] = None,
        should_continue: Optional[Callable[[], bool]] = None,
        ingestion_sink: Optional[IngestionSink] = None,
        session_factory: Callable[[Config], BrowserSession] = BrowserSession,
        dedup: Optional[DeduplicationEngine] = None,
    ):
        self.config = cfg
        self.job_id = job_id
        self.progress_callback = progress_callback
        self.should_continue = should_continue
        self.ingestion_sink = ingestion_sink
        self.session_factory = session_factory
        self.dedup = dedup or DeduplicationEngine(cfg, DuplicateCache(cfg))

        self.download_stats = DownloadStats()
        self.period_results: List[PeriodResult] = []
        self.progress = ProgressSnapshot()
        self.cancelled = False

    @property
    def staging_root(self) -> Path:
        job_dir = f"job-{self.job_id}" if self.job_id is not None else "local"
        return self.config.staging_root / job_dir

    async def execute(self) -> RunReport:
        """
        Executa todas as etapas.

        Raises:
            AuthenticationError: login falhou (a execução inteira é abortada)
        """
        started = time.monotonic()
        periods = split_into_periods(self.config.START_DATE, self.config.END_DATE)
        logger.info("=" * 60)
        logger.info(f"INICIANDO EXECUÇÃO {self.job_id or '-'}: {len(periods)} período(s)")
        logger.info(f"CNPJ: {Config.mask_cnpj(self.config.USERNAME)}")
        logger.info(f"Intervalo: {self.config.START_DATE} a {self.config.END_DATE}")
        logger.info("=" * 60)

        session = self.session_factory(self.config)
        try:
            page = await session.open()
            await Authenticator(page, self.config).login(
                self.config.USERNAME, self.config.PASSWORD
            )

            for period in periods:
                if self._is_cancelled():
                    logger.info(f"Execução {self.job_id} cancelada antes de {period.label}")
                    break
                self.period_results.append(await self._run_period(page, period))
        finally:
            await self._close(session)

        report = self._build_report(started)
        logger.info(f"Relatório final: {report.to_dict()}")
        return report

    async def _run_period(self, page, period: Period) -> PeriodResult:
        result = PeriodResult(period=period.label)
        page_number = 0
        logger.info(f"[{period.label}] Processando {period.start_iso} a {period.end_iso}")

        try:
            await Navigator(page, self.config).navigate_to_reports()
            search = SearchDriver(page, self.config, period)
            downloader = DownloadEngine(
                page,
                self.config,
                self.dedup,
                cnpj=self.config.USERNAME,
                period=period,
                staging_dir=self.staging_root / period.label,
                ingestion_sink=self.ingestion_sink,
                stats=self.download_stats,
                job_id=self.job_id,
            )

            page_number = 1
            while True:
                await search.search_page(page_number)
                count = await search.count_notes()
                if count == 0:
                    logger.info(f"[{period.label}] Página {page_number} sem notas - fim da busca")
                    break

                result.notes_found += count
                rows = search.last_rows or list(range(1, count + 1))
                page_result = await downloader.download_page(rows, page_number)

                result.xmls_downloaded += page_result.successful
                result.xmls_skipped += page_result.skipped
                result.duplicates += page_result.skipped
                result.failures += page_result.failed
                result.pages_processed += 1
                self._push_progress(period, page_number, count, page_result)

                if not await search.has_next_page():
                    logger.info(f"[{period.label}] Última página processada")
                    break
                if page_number >= self.config.MAX_PAGES:
                    logger.warning(
                        f"[{period.label}] Limite de segurança atingido ({self.config.MAX_PAGES} páginas)"
                    )
                    break
                if self._is_cancelled():
                    logger.info(f"[{period.label}] Cancelamento detectado após página {page_number}")
                    break

                page_number += 1
                await asyncio.sleep(self.config.WAIT_BETWEEN_PAGES_MS / 1000)

        except AuthenticationError:
            raise

        except Exception as e:
            info = analyze_error(e, {
                "job_id": self.job_id,
                "period": period.label,
                "page": page_number,
            })
            logger.error(
                f"[{period.label}] Falha no período ({info.type.value}): {e} | contexto={info.context}"
            )
            result.error = str(e)

        logger.info(
            f"[{period.label}] Concluído: páginas={result.pages_processed}, "
            f"notas={result.notes_found}, baixados={result.xmls_downloaded}, "
            f"pulados={result.xmls_skipped}, falhas={result.failures}"
        )
        return result

    def _push_progress(self, period: Period, page_number: int, count: int, page_result) -> None:
        self.progress.pages_processed += 1
        self.progress.notes_found += count
        self.progress.xmls_downloaded += page_result.successful
        self.progress.xmls_skipped += page_result.skipped
        self.progress.failures += page_result.failed
        self.progress.current_period = period.label
        self.progress.current_page = page_number

        if self.progress_callback:
            self.progress_callback(ProgressSnapshot(**vars(self.progress)))

    def _is_cancelled(self) -> bool:
        if self.should_continue is not None and not self.should_continue():
            self.cancelled = True
        return self.cancelled

    async def _close(self, session) -> None:
        try:
            await session.close()
        except Exception as e:
            logger.error(f"Erro ao encerrar navegador: {e}")

    def _build_report(self, started: float) -> RunReport:
        pages = sum(p.pages_processed for p in self.period_results)
        notes = sum(p.notes_found for p in self.period_results)
        downloaded = sum(p.xmls_downloaded for p in self.period_results)
        skipped = sum(p.xmls_skipped for p in self.period_results)
        duplicates = sum(p.duplicates for p in self.period_results)
        failures = sum(p.failures for p in self.period_results)
        period_errors = sum(1 for p in self.period_results if p.error)

        return RunReport(
            success=downloaded > 0 or (failures == 0 and period_errors == 0),
            duration=round(time.monotonic() - started),
            pages_processed=pages,
            notes_found=notes,
            xmls_downloaded=downloaded,
            xmls_skipped=skipped,
            duplicates_detected=duplicates,
            failures=failures,
            success_rate=compute_success_rate(downloaded, notes),
            download_path=str(self.config.download_root),
            cancelled=self.cancelled,
            period_errors=period_errors,
            periods=list(self.period_results),
            download_stats=self.download_stats.to_dict(),
        )
